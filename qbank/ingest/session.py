"""
Session state machine.

    queued -> uploading -> uploaded -> rendering -> storing_artifacts
           -> extracting -> persisting -> completed

    processing stage          -> failed | paused
    queued .. extracting      -> cancelled
    failed | cancelled        -> resume_stage   (retry command)
    paused                    -> resume_stage   (resume)

Every change is saved to the session store before the event is published
and before the caller starts the next unit of work, so a crash loses at most
the unit in flight.
"""

import logging
from typing import Optional

from qbank.ingest.errors import IllegalTransitionError, IngestError
from qbank.ingest.events import EventKind, ProgressChannel, SessionEvent
from qbank.ingest.models import (
    CANCELLABLE_STAGES,
    FORWARD_STAGES,
    PROCESSING_STAGES,
    ImportSession,
    Stage,
    utcnow,
)

logger = logging.getLogger(__name__)

# Outcome name -> batch counter deltas
OUTCOME_DELTAS = {
    "inserted": {"inserted_items": 1},
    "duplicate": {"duplicates_skipped": 1},
    "invalid": {"invalid_candidates_dropped": 1},
}

OUTCOME_EVENTS = {
    "inserted": EventKind.CANDIDATE_INSERTED,
    "duplicate": EventKind.CANDIDATE_DUPLICATE,
    "invalid": EventKind.CANDIDATE_INVALID,
}


def next_stage(stage: Stage) -> Optional[Stage]:
    """Next stage on the forward path, or None at the end / off the path."""
    if stage not in FORWARD_STAGES:
        return None
    index = FORWARD_STAGES.index(stage)
    if index + 1 >= len(FORWARD_STAGES):
        return None
    return FORWARD_STAGES[index + 1]


def is_transition_allowed(source: Stage, target: Stage, resume_stage: Optional[Stage] = None) -> bool:
    """Check a stage change against the transition table."""
    if next_stage(source) == target:
        return True
    if source in PROCESSING_STAGES and target in (Stage.FAILED, Stage.PAUSED):
        return True
    if target == Stage.CANCELLED and source in CANCELLABLE_STAGES:
        return True
    if source in (Stage.FAILED, Stage.CANCELLED, Stage.PAUSED):
        return resume_stage is not None and target == resume_stage
    return False


class SessionStateMachine:
    """
    Drives one ImportSession through its stages.

    Usage:
        machine = SessionStateMachine(session, session_store, channel)
        machine.advance()              # queued -> uploading
        machine.record_units(3)
        machine.fail(StorageError("..."))
    """

    def __init__(self, session: ImportSession, store, channel: Optional[ProgressChannel] = None):
        """
        Args:
            session: Session to drive (mutated in place)
            store: Session store with a save(session) method
            channel: Where progress events are published
        """
        self.session = session
        self.store = store
        self.channel = channel

    @property
    def stage(self) -> Stage:
        return self.session.stage

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _save(self) -> None:
        self.session.updated_at = utcnow()
        self.store.save(self.session)

    def _publish(self, kind: str, deltas: Optional[dict] = None, message: Optional[str] = None) -> None:
        if self.channel is None:
            return
        s = self.session
        self.channel.publish(
            SessionEvent(
                kind=kind,
                session_id=s.id,
                job_id=s.job_id,
                stage=s.stage,
                processed_units=s.processed_units,
                total_units=s.total_units,
                error_kind=s.error_kind,
                message=message,
                deltas=deltas or {},
            )
        )

    def _move(self, target: Stage) -> Stage:
        source = self.session.stage
        if not is_transition_allowed(source, target, self.session.resume_stage):
            raise IllegalTransitionError(source, target)
        self.session.stage = target
        logger.info(f"Session {self.session.source_name}: {source.value} -> {target.value}")
        return source

    # ------------------------------------------------------------------
    # Forward progress
    # ------------------------------------------------------------------

    def advance(self) -> Stage:
        """Move to the next forward stage and persist."""
        target = next_stage(self.session.stage)
        if target is None:
            raise IllegalTransitionError(self.session.stage, self.session.stage)

        self._move(target)
        if target == Stage.PERSISTING:
            self.session.persist_cursor = 0
        self._save()

        if target == Stage.COMPLETED:
            self._publish(EventKind.SESSION_COMPLETED, {"completed_items": 1})
        else:
            self._publish(EventKind.STAGE_CHANGED)
        return target

    def set_total_units(self, total: int) -> None:
        """Record the unit count. Only settable once per artifact root."""
        if self.session.total_units is not None and self.session.total_units != total:
            raise ValueError(
                f"total_units already {self.session.total_units}, refusing to change to {total}"
            )
        if total < self.session.processed_units:
            raise ValueError(f"total_units {total} below processed_units {self.session.processed_units}")
        self.session.total_units = total
        self._save()

    def record_units(self, count: int) -> None:
        """Count newly stored units. Never decreases, never exceeds total."""
        if count < 0:
            raise ValueError("processed unit count cannot decrease")
        if count == 0:
            return
        new_total = self.session.processed_units + count
        if self.session.total_units is not None and new_total > self.session.total_units:
            raise ValueError(
                f"processed_units {new_total} would exceed total_units {self.session.total_units}"
            )
        self.session.processed_units = new_total
        self._save()
        self._publish(EventKind.UNITS_PROCESSED)

    def note_retry(self, error: IngestError) -> None:
        """Count a re-issued external call (retry_count)."""
        self.session.retry_count += 1
        self._save()
        self._publish(EventKind.RETRY_SCHEDULED, message=str(error))

    def record_candidate(self, outcome: str, needs_review: bool = False) -> None:
        """
        Record the outcome of one candidate in the persisting stage.

        Args:
            outcome: "inserted", "duplicate" or "invalid"
            needs_review: Inserted record was flagged for manual review
        """
        s = self.session
        if outcome == "inserted":
            s.inserted_count += 1
        elif outcome == "duplicate":
            s.duplicates_skipped += 1
        elif outcome == "invalid":
            s.invalid_dropped += 1
        else:
            raise ValueError(f"Unknown candidate outcome: {outcome}")

        deltas = dict(OUTCOME_DELTAS[outcome])
        if outcome == "inserted" and needs_review:
            s.needs_review_count += 1
            deltas["needs_review_items"] = 1

        s.persist_cursor += 1
        self._save()
        self._publish(OUTCOME_EVENTS[outcome], deltas)

    # ------------------------------------------------------------------
    # Interruptions
    # ------------------------------------------------------------------

    def fail(self, error: IngestError) -> None:
        """Move to failed, remembering where to resume."""
        stage = self.session.stage
        self._move(Stage.FAILED)
        self.session.resume_stage = stage
        self.session.error_kind = error.kind
        self.session.error_message = str(error)
        self.session.error_retryable = error.retryable
        self._save()
        logger.error(
            f"Session {self.session.source_name} failed at {stage.value} "
            f"({error.kind.value}): {error}"
        )
        self._publish(EventKind.SESSION_FAILED, {"failed_items": 1}, message=str(error))

    def pause(self) -> bool:
        """Pause a processing session. Returns False if nothing to pause."""
        stage = self.session.stage
        if stage == Stage.PAUSED or stage not in PROCESSING_STAGES:
            return False
        self._move(Stage.PAUSED)
        self.session.resume_stage = stage
        self._save()
        self._publish(EventKind.SESSION_PAUSED)
        return True

    def resume(self) -> Stage:
        """Return a paused session to the stage it was paused at."""
        if self.session.stage != Stage.PAUSED:
            return self.session.stage
        target = self.session.resume_stage
        self._move(target)
        self._save()
        self._publish(EventKind.STAGE_CHANGED)
        return target

    def can_cancel(self) -> bool:
        return self.session.stage in CANCELLABLE_STAGES

    def cancel(self) -> bool:
        """Cancel unless already terminal or committing. Artifacts are kept."""
        stage = self.session.stage
        if not self.can_cancel():
            return False
        self._move(Stage.CANCELLED)
        # A paused session resumes where it was paused
        self.session.resume_stage = self.session.resume_stage if stage == Stage.PAUSED else stage
        self._save()
        self._publish(EventKind.SESSION_CANCELLED, {"cancelled_items": 1})
        return True

    def reopen(self, max_retries: int) -> bool:
        """
        Reopen a failed or cancelled session at its resume stage (retry command).

        Returns:
            True if the session was reopened, False if the retry is refused
        """
        s = self.session
        if s.stage not in (Stage.FAILED, Stage.CANCELLED):
            logger.info(f"Retry ignored for {s.source_name}: stage is {s.stage.value}")
            return False
        if s.stage == Stage.FAILED and not s.error_retryable:
            logger.warning(
                f"Retry refused for {s.source_name}: {s.error_kind.value} is not retryable"
            )
            return False
        if s.retry_count >= max_retries:
            logger.warning(f"Retry refused for {s.source_name}: {s.retry_count} retries used")
            return False

        source = s.stage
        if s.resume_stage is None:
            s.resume_stage = Stage.QUEUED
        self._move(s.resume_stage)
        s.error_kind = None
        s.error_message = None
        s.error_retryable = True
        s.retry_count += 1
        self._save()

        counter = "failed_items" if source == Stage.FAILED else "cancelled_items"
        self._publish(EventKind.SESSION_REOPENED, {counter: -1})
        return True
