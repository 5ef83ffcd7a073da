"""
Persistence writer: commits validated candidates as QuestionRecords.

One transaction per record. The DuplicateIndex is consulted before the
insert and updated only after the store confirms a new row; a unique
violation on content_hash at insert time is reported as a duplicate.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from qbank.ingest.content_hash import get_content_hash
from qbank.ingest.dedup import DuplicateIndex
from qbank.ingest.models import (
    ExtractedQuestionCandidate,
    ImportSession,
    QuestionImage,
    QuestionRecord,
)
from qbank.ingest.storage import page_key

logger = logging.getLogger(__name__)

DIFFICULTIES = ("easy", "medium", "hard")


@dataclass
class PersistOutcome:
    """Result of persisting one candidate."""

    outcome: str  # inserted | duplicate
    content_hash: str
    question_id: Optional[str] = None
    needs_review: bool = False


def _images_for(candidate: ExtractedQuestionCandidate, session: ImportSession) -> list[QuestionImage]:
    """Resolve 1-based page numbers to stored page artifact keys."""
    images = []
    total = session.total_units
    for position, pages in (
        ("question", candidate.question_pages),
        ("explanation", candidate.explanation_pages),
    ):
        order = 0
        for page_number in pages:
            if page_number < 1 or (total is not None and page_number > total):
                logger.debug(f"Ignoring out-of-range page {page_number} for {session.source_name}")
                continue
            images.append(
                QuestionImage(
                    storage_key=page_key(session.artifact_root, page_number - 1),
                    position=position,
                    image_order=order,
                    page_number=page_number,
                )
            )
            order += 1
    return images


def build_record(
    candidate: ExtractedQuestionCandidate,
    session: ImportSession,
    content_hash: Optional[str] = None,
) -> QuestionRecord:
    """Build the durable record for a validated candidate."""
    difficulty = candidate.difficulty
    difficulty = difficulty.strip().lower() if isinstance(difficulty, str) else "medium"
    if difficulty not in DIFFICULTIES:
        difficulty = "medium"

    hints = session.hints
    return QuestionRecord(
        content_hash=content_hash or get_content_hash(candidate.text),
        source_session_id=session.id,
        text=candidate.text,
        options=list(candidate.options),
        explanation=candidate.explanation or "",
        subject=hints.subject,
        system=hints.system,
        category=candidate.category or hints.category,
        difficulty=difficulty,
        has_image=candidate.has_image,
        image_description=candidate.image_description,
        needs_manual_review=candidate.needs_manual_review,
        images=_images_for(candidate, session),
        source_name=session.source_name,
    )


class QuestionWriter:
    """
    Dedup-checked writer in front of a question store.

    The store must provide insert_question(record) -> Optional[id], returning
    None when a row with the same content_hash already exists.
    """

    def __init__(self, question_store, index: DuplicateIndex):
        self.question_store = question_store
        self.index = index

    def persist(self, candidate: ExtractedQuestionCandidate, session: ImportSession) -> PersistOutcome:
        """
        Persist one validated candidate unless its fingerprint is known.

        Raises:
            PersistenceError: If the store fails for a reason other than a duplicate
        """
        content_hash = get_content_hash(candidate.text)
        if self.index.contains(content_hash):
            logger.info(f"Duplicate question skipped: {candidate.text[:60]!r}")
            return PersistOutcome(outcome="duplicate", content_hash=content_hash)

        record = build_record(candidate, session, content_hash)
        question_id = self.question_store.insert_question(record)

        # Only a committed row (or one already committed elsewhere) marks the hash as seen
        self.index.record(content_hash)
        if question_id is None:
            logger.info(f"Question {content_hash[:12]} already in corpus (unique constraint)")
            return PersistOutcome(outcome="duplicate", content_hash=content_hash)

        return PersistOutcome(
            outcome="inserted",
            content_hash=content_hash,
            question_id=str(question_id),
            needs_review=record.needs_manual_review,
        )
