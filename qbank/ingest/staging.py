"""
Stage renderer/uploader.

Moves a source document into object storage and turns it into stored page
artifacts, one chunk at a time:

    fetch source -> store source -> render chunk -> upload chunk (bounded pool)

A chunk is reported as processed only after every page in it is durably
stored. The chunk boundary is the only place callers check for pause/cancel.
"""

import hashlib
import logging
import shutil
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import httpx

from qbank.config import config
from qbank.ingest.errors import FetchFailedError, IngestError, StorageError
from qbank.ingest.models import Artifact, ImportSession
from qbank.ingest.renderer import PageRenderer, RenderedUnit
from qbank.ingest.retry import call_with_retry
from qbank.ingest.storage import ArtifactStore, page_key, source_key

logger = logging.getLogger(__name__)


@dataclass
class ChunkResult:
    """Outcome of one render+upload chunk."""

    artifacts: list[Artifact] = field(default_factory=list)
    error: Optional[IngestError] = None


def fetch_source(uri: str, timeout: float = None) -> bytes:
    """
    Read a source document from a local path or http(s) URL.

    Raises:
        FetchFailedError: If the document cannot be read
    """
    timeout = timeout or config.FETCH_TIMEOUT

    if uri.startswith(("http://", "https://")):
        try:
            with httpx.Client(timeout=timeout, follow_redirects=True) as client:
                response = client.get(uri)
                response.raise_for_status()
                return response.content
        except httpx.HTTPStatusError as e:
            raise FetchFailedError(
                f"Fetching {uri} returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise FetchFailedError(f"Fetching {uri} failed: {e}") from e

    path = Path(uri)
    try:
        return path.read_bytes()
    except OSError as e:
        raise FetchFailedError(f"Cannot read {path}: {e}") from e


def compute_source_digest(uri: str) -> str:
    """
    SHA-256 of a local source's bytes.

    Remote sources are not downloaded at enqueue time; their digest is taken
    over the URL instead. Unreadable local paths also fall back to the path
    digest so enqueue never fails; the fetch error surfaces when the
    session runs.
    """
    if not uri.startswith(("http://", "https://")):
        path = Path(uri)
        if path.is_file():
            digest = hashlib.sha256()
            with open(path, "rb") as f:
                for block in iter(lambda: f.read(1024 * 1024), b""):
                    digest.update(block)
            return digest.hexdigest()
    return hashlib.sha256(f"uri:{uri}".encode("utf-8")).hexdigest()


class ArtifactStager:
    """
    Render and upload a session's pages with bounded concurrency.

    Usage:
        stager = ArtifactStager(store)
        stager.upload_source(session)
        total = stager.count_units(session)
        while session.processed_units < total:
            result = stager.stage_chunk(session)
            ...
    """

    def __init__(
        self,
        store: ArtifactStore,
        renderer: Optional[PageRenderer] = None,
        concurrency: Optional[int] = None,
        attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        staging_dir: Optional[Path] = None,
        fetcher: Callable[[str], bytes] = fetch_source,
    ):
        """
        Initialize the stager.

        Args:
            store: Durable artifact storage
            renderer: Page renderer (PyMuPDF by default)
            concurrency: Uploads in flight per chunk; also the chunk size
            attempts: Upload attempts per page before the page fails
            backoff_seconds: Initial retry delay
            staging_dir: Local cache for downloaded source documents
            fetcher: Callable reading a source URI into bytes
        """
        self.store = store
        self.renderer = renderer or PageRenderer()
        self.concurrency = concurrency or config.UPLOAD_CONCURRENCY
        self.attempts = attempts or config.RETRY_ATTEMPTS
        self.backoff_seconds = (
            config.RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self.staging_dir = Path(staging_dir or config.STAGING_DIR)
        self.fetcher = fetcher

    # ------------------------------------------------------------------
    # Source document
    # ------------------------------------------------------------------

    def source_key(self, session: ImportSession) -> str:
        return source_key(session.artifact_root, session.source_name)

    def upload_source(self, session: ImportSession) -> bool:
        """
        Store the source document unless it is already stored.

        Returns:
            True if an upload happened, False if the source was already present
        """
        key = self.source_key(session)
        if self.store.exists(key):
            logger.info(f"Source already stored for {session.source_name}, skipping upload")
            return False

        data = self.fetcher(session.source_uri)
        call_with_retry(
            lambda: self.store.put(key, data, content_type="application/pdf"),
            attempts=self.attempts,
            backoff_seconds=self.backoff_seconds,
            description=f"Source upload {key}",
        )
        logger.info(f"Stored source {session.source_name} ({len(data)} bytes) at {key}")
        return True

    def local_source(self, session: ImportSession) -> Path:
        """Local copy of the stored source, downloaded from storage if missing."""
        key = self.source_key(session)
        path = self.staging_dir / key
        if path.is_file():
            return path

        data = call_with_retry(
            lambda: self.store.get(key),
            attempts=self.attempts,
            backoff_seconds=self.backoff_seconds,
            description=f"Source download {key}",
        )
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".part")
        tmp_path.write_bytes(data)
        tmp_path.replace(path)
        return path

    def discard_local_source(self, session: ImportSession) -> None:
        """Remove the staging copy once the session no longer needs pages."""
        shutil.rmtree(self.staging_dir / session.artifact_root, ignore_errors=True)

    def count_units(self, session: ImportSession) -> int:
        return self.renderer.count_units(self.local_source(session))

    # ------------------------------------------------------------------
    # Page artifacts
    # ------------------------------------------------------------------

    def _upload_unit(self, session: ImportSession, unit: RenderedUnit) -> Artifact:
        key = page_key(session.artifact_root, unit.unit_index)
        artifact = Artifact(unit_index=unit.unit_index, storage_key=key, content_type=unit.content_type)
        # Left over from a chunk that failed on an earlier page
        if self.store.exists(key):
            logger.debug(f"Page {key} already stored, skipping upload")
            return artifact

        call_with_retry(
            lambda: self.store.put(key, unit.data, content_type=unit.content_type),
            attempts=self.attempts,
            backoff_seconds=self.backoff_seconds,
            description=f"Page upload {key}",
        )
        return artifact

    def stage_chunk(self, session: ImportSession) -> ChunkResult:
        """
        Render and upload the next chunk of pages after processed_units.

        Pages that were uploaded before the first failed page in the chunk
        are returned as artifacts so their progress is kept; the failure is
        returned alongside them.
        """
        if session.total_units is None:
            raise ValueError("total_units must be known before staging pages")

        start = session.processed_units
        end = min(start + self.concurrency, session.total_units)
        if start >= end:
            return ChunkResult()

        source = self.local_source(session)
        try:
            units = call_with_retry(
                lambda: self.renderer.render_units(source, range(start, end)),
                attempts=self.attempts,
                backoff_seconds=self.backoff_seconds,
                description=f"Render pages {start + 1}-{end} of {session.source_name}",
            )
        except IngestError as e:
            return ChunkResult(error=e)

        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            futures = [executor.submit(self._upload_unit, session, unit) for unit in units]

        # Keep the contiguous prefix of successful uploads, in page order
        result = ChunkResult()
        for future in futures:
            error = future.exception()
            if error is None:
                result.artifacts.append(future.result())
                continue
            if isinstance(error, IngestError):
                result.error = error
            else:
                result.error = StorageError(f"Unexpected upload failure: {error}")
                result.error.__cause__ = error
            break

        return result

    def list_artifacts(self, session: ImportSession) -> list[Artifact]:
        """Stored page artifacts for the whole document, in page order."""
        artifacts = []
        for unit_index in range(session.total_units or 0):
            key = page_key(session.artifact_root, unit_index)
            artifacts.append(
                Artifact(unit_index=unit_index, storage_key=key, url=self.store.url_for(key))
            )
        return artifacts
