"""
Ingestion pipeline for qbank-ingest.

    from qbank.ingest import SessionRunner, DuplicateIndex, get_content_hash
"""

from .content_hash import get_content_hash, normalize_question_text
from .control import CancellationToken
from .dedup import DuplicateIndex
from .events import ProgressChannel, SessionEvent
from .models import BatchJob, ClassificationHints, DocumentSpec, ImportSession, Stage
from .pipeline import SessionRunner
from .session import SessionStateMachine

__all__ = [
    "get_content_hash",
    "normalize_question_text",
    "CancellationToken",
    "DuplicateIndex",
    "ProgressChannel",
    "SessionEvent",
    "BatchJob",
    "ClassificationHints",
    "DocumentSpec",
    "ImportSession",
    "Stage",
    "SessionRunner",
    "SessionStateMachine",
]
