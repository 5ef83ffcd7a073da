"""
Data model for the question ingestion pipeline.

ImportSession   - one per source document, the unit of resumable progress
BatchJob        - ordered group of sessions plus aggregate counters
Artifact        - one stored page of a source document
ExtractedQuestionCandidate - transient output of the extraction service
QuestionRecord  - a validated, deduplicated question ready for the corpus
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def optional_text(value) -> Optional[str]:
    """Coerce a loosely typed payload field to str or None.

    Numbers become their string form; containers and other objects are dropped.
    """
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _int_list(values) -> list[int]:
    return [v for v in values or [] if isinstance(v, int) and not isinstance(v, bool)]


class Stage(str, Enum):
    """Processing stage of an import session."""

    QUEUED = "queued"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    RENDERING = "rendering"
    STORING_ARTIFACTS = "storing_artifacts"
    EXTRACTING = "extracting"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


# Forward path through the pipeline, in order
FORWARD_STAGES = (
    Stage.QUEUED,
    Stage.UPLOADING,
    Stage.UPLOADED,
    Stage.RENDERING,
    Stage.STORING_ARTIFACTS,
    Stage.EXTRACTING,
    Stage.PERSISTING,
    Stage.COMPLETED,
)

PROCESSING_STAGES = frozenset({
    Stage.UPLOADING,
    Stage.UPLOADED,
    Stage.RENDERING,
    Stage.STORING_ARTIFACTS,
    Stage.EXTRACTING,
    Stage.PERSISTING,
})

# Stages from which a cancel is honoured (nothing committed to the corpus yet)
CANCELLABLE_STAGES = frozenset({
    Stage.QUEUED,
    Stage.UPLOADING,
    Stage.UPLOADED,
    Stage.RENDERING,
    Stage.STORING_ARTIFACTS,
    Stage.EXTRACTING,
    Stage.PAUSED,
})

# Stages at which the batch loop stops driving a session
SETTLED_STAGES = frozenset({
    Stage.COMPLETED,
    Stage.FAILED,
    Stage.CANCELLED,
    Stage.PAUSED,
})

TERMINAL_STAGES = frozenset({Stage.COMPLETED, Stage.FAILED, Stage.CANCELLED})


class ErrorKind(str, Enum):
    """Error taxonomy for session and candidate failures."""

    FETCH_FAILED = "fetch_failed"
    RENDER_FAILED = "render_failed"
    UNSUPPORTED_DOCUMENT = "unsupported_document"
    STORAGE_ERROR = "storage_error"
    EXTRACTION_TIMEOUT = "extraction_timeout"
    EXTRACTION_ERROR = "extraction_error"
    VALIDATION_FAILED = "validation_failed"
    PERSISTENCE_ERROR = "persistence_error"


class JobStatus(Enum):
    """Status of a batch job."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    DONE = "done"


@dataclass
class ClassificationHints:
    """Subject/system/category tags forwarded to extraction and persisted."""

    subject: Optional[str] = None
    category: Optional[str] = None
    system: Optional[str] = None

    def to_dict(self) -> dict:
        return {"subject": self.subject, "category": self.category, "system": self.system}


@dataclass
class DocumentSpec:
    """A document to enqueue: a local path or http(s) URL plus its hints."""

    source: str
    hints: ClassificationHints = field(default_factory=ClassificationHints)
    name: Optional[str] = None

    @property
    def source_name(self) -> str:
        if self.name:
            return self.name
        return self.source.rstrip("/").rsplit("/", 1)[-1]


@dataclass
class ImportSession:
    """Per-document pipeline state. Retries reuse the same id."""

    source_name: str
    source_uri: str
    order_index: int
    job_id: uuid.UUID
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    source_digest: Optional[str] = None
    stage: Stage = Stage.QUEUED
    resume_stage: Optional[Stage] = None
    total_units: Optional[int] = None
    processed_units: int = 0
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    error_retryable: bool = True
    retry_count: int = 0
    hints: ClassificationHints = field(default_factory=ClassificationHints)
    artifact_session_id: Optional[uuid.UUID] = None

    # Outcome counters, persisted so a resumed session reports exact totals
    inserted_count: int = 0
    duplicates_skipped: int = 0
    invalid_dropped: int = 0
    needs_review_count: int = 0
    persist_cursor: int = 0

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def artifact_root(self) -> str:
        """Storage prefix holding this session's source and page artifacts."""
        return f"sessions/{self.artifact_session_id or self.id}"

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    @property
    def units_remaining(self) -> Optional[int]:
        if self.total_units is None:
            return None
        return self.total_units - self.processed_units


@dataclass
class BatchJob:
    """Ordered list of sessions plus aggregate counters."""

    name: str
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    session_ids: list[uuid.UUID] = field(default_factory=list)
    status: JobStatus = JobStatus.PENDING

    total_items: int = 0
    completed_items: int = 0
    failed_items: int = 0
    cancelled_items: int = 0
    inserted_items: int = 0
    duplicates_skipped: int = 0
    invalid_candidates_dropped: int = 0
    needs_review_items: int = 0

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def counters(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in BATCH_COUNTERS}


BATCH_COUNTERS = (
    "total_items",
    "completed_items",
    "failed_items",
    "cancelled_items",
    "inserted_items",
    "duplicates_skipped",
    "invalid_candidates_dropped",
    "needs_review_items",
)


@dataclass
class Artifact:
    """One stored unit (page) of a source document."""

    unit_index: int  # 0-based
    storage_key: str
    url: Optional[str] = None
    content_type: str = "image/png"

    @property
    def page_number(self) -> int:
        return self.unit_index + 1


@dataclass
class OptionCandidate:
    """Answer option as proposed by the extraction service."""

    letter: str
    text: str
    is_correct: bool = False
    explanation: Optional[str] = None


@dataclass
class ExtractedQuestionCandidate:
    """Question proposed by the extraction service; not yet validated."""

    text: str
    options: list[OptionCandidate] = field(default_factory=list)
    explanation: Optional[str] = None
    has_image: bool = False
    image_refs: list[str] = field(default_factory=list)
    image_description: Optional[str] = None
    correct_answer: Optional[str] = None
    difficulty: Optional[str] = None
    category: Optional[str] = None
    question_pages: list[int] = field(default_factory=list)
    explanation_pages: list[int] = field(default_factory=list)
    needs_manual_review: bool = False

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "options": [
                {
                    "letter": o.letter,
                    "text": o.text,
                    "is_correct": o.is_correct,
                    "explanation": o.explanation,
                }
                for o in self.options
            ],
            "explanation": self.explanation,
            "has_image": self.has_image,
            "image_refs": list(self.image_refs),
            "image_description": self.image_description,
            "correct_answer": self.correct_answer,
            "difficulty": self.difficulty,
            "category": self.category,
            "question_pages": list(self.question_pages),
            "explanation_pages": list(self.explanation_pages),
            "needs_manual_review": self.needs_manual_review,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExtractedQuestionCandidate":
        return cls(
            text=optional_text(data.get("text")) or "",
            options=[
                OptionCandidate(
                    letter=optional_text(o.get("letter")) or "",
                    text=optional_text(o.get("text")) or "",
                    is_correct=bool(o.get("is_correct")),
                    explanation=optional_text(o.get("explanation")),
                )
                for o in data.get("options") or []
                if isinstance(o, dict)
            ],
            explanation=optional_text(data.get("explanation")),
            has_image=bool(data.get("has_image")),
            image_refs=[str(ref) for ref in data.get("image_refs") or []],
            image_description=optional_text(data.get("image_description")),
            correct_answer=optional_text(data.get("correct_answer")),
            difficulty=optional_text(data.get("difficulty")),
            category=optional_text(data.get("category")),
            question_pages=_int_list(data.get("question_pages")),
            explanation_pages=_int_list(data.get("explanation_pages")),
            needs_manual_review=bool(data.get("needs_manual_review")),
        )


@dataclass
class QuestionImage:
    """Reference from a question to a stored page artifact."""

    storage_key: str
    position: str  # question | explanation
    image_order: int = 0
    page_number: Optional[int] = None


@dataclass
class QuestionRecord:
    """Durable question row. content_hash is unique across the corpus."""

    content_hash: str
    source_session_id: uuid.UUID
    text: str
    options: list[OptionCandidate]
    explanation: str = ""
    subject: Optional[str] = None
    system: Optional[str] = None
    category: Optional[str] = None
    difficulty: str = "medium"
    has_image: bool = False
    image_description: Optional[str] = None
    needs_manual_review: bool = False
    images: list[QuestionImage] = field(default_factory=list)
    source_name: Optional[str] = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    created_at: datetime = field(default_factory=utcnow)
