"""
Exception hierarchy for the ingestion pipeline.

Each IngestError carries the ErrorKind recorded on a failed session and
whether retrying the session can succeed without a new upload.
"""

from typing import Optional

from qbank.ingest.models import ErrorKind, Stage


class IngestError(Exception):
    """Base class for session-level pipeline failures."""

    kind: ErrorKind = ErrorKind.EXTRACTION_ERROR
    retryable: bool = True

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class FetchFailedError(IngestError):
    """Source document unreachable or unreadable."""

    kind = ErrorKind.FETCH_FAILED


class RenderFailedError(IngestError):
    """A page could not be rendered."""

    kind = ErrorKind.RENDER_FAILED


class UnsupportedDocumentError(IngestError):
    """Corrupt or unsupported document; needs a new upload."""

    kind = ErrorKind.UNSUPPORTED_DOCUMENT
    retryable = False


class StorageError(IngestError):
    """Artifact upload or download failed."""

    kind = ErrorKind.STORAGE_ERROR


class ExtractionTimeoutError(IngestError):
    """Extraction service did not answer within the timeout."""

    kind = ErrorKind.EXTRACTION_TIMEOUT


class ExtractionError(IngestError):
    """Extraction service failed or returned an unusable payload."""

    kind = ErrorKind.EXTRACTION_ERROR


class PersistenceError(IngestError):
    """Question store rejected a write for a reason other than a duplicate."""

    kind = ErrorKind.PERSISTENCE_ERROR


class IllegalTransitionError(RuntimeError):
    """Requested session stage change is not allowed by the state machine."""

    def __init__(self, source: Stage, target: Stage):
        super().__init__(f"Illegal session transition: {source.value} -> {target.value}")
        self.source = source
        self.target = target
