"""
Batch orchestrator for qbank-ingest.

Drives the sessions of a batch job one at a time, in order_index order.
Session progress reaches the job only through the deltas carried by
progress events, which are added to the stored counters; counters are never
recomputed from scratch.
"""

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Iterable, Optional, Union

from qbank.config import config
from qbank.ingest.control import CancellationToken
from qbank.ingest.dedup import DuplicateIndex
from qbank.ingest.events import ProgressChannel
from qbank.ingest.extraction import ExtractionAdapter
from qbank.ingest.models import (
    TERMINAL_STAGES,
    BatchJob,
    ClassificationHints,
    DocumentSpec,
    ImportSession,
    JobStatus,
    Stage,
)
from qbank.ingest.persistence import QuestionWriter
from qbank.ingest.pipeline import SessionRunner
from qbank.ingest.staging import ArtifactStager, compute_source_digest
from qbank.telemetry import EventLogger

logger = logging.getLogger(__name__)


class NotFoundError(LookupError):
    """Unknown batch job or import session id."""


def _as_uuid(value) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


class BatchOrchestrator:
    """
    Enqueue, run, pause, cancel and retry batch imports.

    Usage:
        orchestrator = build_orchestrator()
        job = orchestrator.enqueue(["exam1.pdf", "exam2.pdf"], hints=ClassificationHints(subject="Genetics"))
        job = orchestrator.run(job.id)
        orchestrator.retry(failed_session_id)
    """

    def __init__(
        self,
        session_store,
        batch_store,
        question_store,
        stager: ArtifactStager,
        extractor: ExtractionAdapter,
        channel: Optional[ProgressChannel] = None,
        event_log: Optional[EventLogger] = None,
        index: Optional[DuplicateIndex] = None,
        max_session_retries: Optional[int] = None,
        **runner_options,
    ):
        """
        Initialize orchestrator.

        Args:
            session_store: Import session repository
            batch_store: Batch job repository
            question_store: Question corpus repository
            stager: Source/page renderer and uploader
            extractor: Extraction adapter
            channel: Progress channel (a private one is created if not provided)
            event_log: JSONL telemetry sink
            index: Duplicate index (a fresh one is owned if not provided)
            max_session_retries: Retry commands refused beyond this retry_count
            **runner_options: Passed to SessionRunner (attempts, backoff_seconds, ...)
        """
        self.session_store = session_store
        self.batch_store = batch_store
        self.question_store = question_store
        self.channel = channel or ProgressChannel()
        self.event_log = event_log
        self.index = index or DuplicateIndex()
        self.max_session_retries = max_session_retries or config.MAX_SESSION_RETRIES

        self.writer = QuestionWriter(question_store, self.index)
        self.runner = SessionRunner(
            session_store,
            stager,
            extractor,
            self.writer,
            channel=self.channel,
            **runner_options,
        )

        self._subscription = self.channel.subscribe()
        self._tokens: dict[uuid.UUID, CancellationToken] = {}
        self._active: set[uuid.UUID] = set()
        self._lock = threading.Lock()

    # ==========================================================================
    # Internals
    # ==========================================================================

    def _token(self, job_id: uuid.UUID) -> CancellationToken:
        with self._lock:
            return self._tokens.setdefault(job_id, CancellationToken())

    def _is_active(self, job_id: uuid.UUID) -> bool:
        with self._lock:
            return job_id in self._active

    def _get_job(self, job_id) -> BatchJob:
        job = self.batch_store.get(_as_uuid(job_id))
        if job is None:
            raise NotFoundError(f"Batch job not found: {job_id}")
        return job

    def _get_session(self, session_id) -> ImportSession:
        session = self.session_store.get(_as_uuid(session_id))
        if session is None:
            raise NotFoundError(f"Import session not found: {session_id}")
        return session

    def _apply_events(self) -> int:
        """Fold pending session deltas into job counters."""
        events = self._subscription.drain()
        for event in events:
            if event.deltas:
                self.batch_store.apply_delta(event.job_id, event.deltas)
            if self.event_log is not None:
                self.event_log.record(event)
        return len(events)

    def _ensure_seeded(self) -> None:
        if not self.index.seeded:
            self.index.seed(self.question_store.iter_content_hashes())

    def _drive(self, session: ImportSession, token: CancellationToken) -> ImportSession:
        for _ in self.runner.steps(session, token):
            self._apply_events()
        self._apply_events()
        return session

    def _cancel_remaining(self, job_id: uuid.UUID) -> int:
        cancelled = 0
        for session in self.session_store.list_for_job(job_id):
            machine = self.runner.machine_for(session)
            if machine.cancel():
                cancelled += 1
            elif session.stage not in TERMINAL_STAGES:
                logger.info(f"Session {session.source_name} is {session.stage.value}; not cancelled")
        self._apply_events()
        return cancelled

    def _settle_status(self, job_id: uuid.UUID, token: CancellationToken) -> JobStatus:
        sessions = self.session_store.list_for_job(job_id)
        if all(s.stage in TERMINAL_STAGES for s in sessions):
            status = JobStatus.CANCELLED if token.cancel_requested else JobStatus.DONE
        elif token.cancel_requested:
            status = JobStatus.CANCELLED
        else:
            status = JobStatus.PAUSED
        self.batch_store.set_status(job_id, status)
        return status

    # ==========================================================================
    # Commands
    # ==========================================================================

    def enqueue(
        self,
        documents: Iterable[Union[DocumentSpec, str]],
        name: Optional[str] = None,
        hints: Optional[ClassificationHints] = None,
    ) -> BatchJob:
        """
        Create a batch job with one queued session per distinct source.

        Args:
            documents: DocumentSpecs, or plain paths/URLs using the shared hints
            name: Job name (timestamped default)
            hints: Classification hints for plain string documents

        Returns:
            The persisted BatchJob
        """
        hints = hints or ClassificationHints()
        job = BatchJob(
            name=name or f"import_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}"
        )

        sessions = []
        seen = set()
        for doc in documents:
            spec = doc if isinstance(doc, DocumentSpec) else DocumentSpec(source=str(doc), hints=hints)
            digest = compute_source_digest(spec.source)
            if digest in seen:
                logger.warning(f"Skipping repeated source in job {job.name}: {spec.source_name}")
                continue
            seen.add(digest)

            session = ImportSession(
                source_name=spec.source_name,
                source_uri=spec.source,
                order_index=len(sessions),
                job_id=job.id,
                source_digest=digest,
                hints=spec.hints,
            )

            previous = self.session_store.find_reusable(digest)
            if previous is not None:
                session.artifact_session_id = previous.artifact_session_id or previous.id
                session.total_units = previous.total_units
                session.processed_units = previous.processed_units
                logger.info(
                    f"Reusing {previous.processed_units} stored pages of {spec.source_name} "
                    f"from session {previous.id}"
                )
            sessions.append(session)

        job.session_ids = [s.id for s in sessions]
        job.total_items = len(sessions)
        self.batch_store.create(job)
        for session in sessions:
            self.session_store.save(session)

        logger.info(f"Enqueued job {job.name} ({job.id}) with {len(sessions)} documents")
        return job

    def run(self, job_id) -> BatchJob:
        """
        Process the job's sessions in order until done, paused or cancelled.

        Completed, failed and cancelled sessions are skipped; a paused
        session is resumed where it stopped.
        """
        job = self._get_job(job_id)
        token = self._token(job.id)

        with self._lock:
            if job.id in self._active:
                logger.warning(f"Job {job.id} is already running")
                return job
            self._active.add(job.id)

        try:
            if token.cancel_requested:
                self._cancel_remaining(job.id)
                self._settle_status(job.id, token)
                return self._get_job(job.id)

            self._ensure_seeded()
            self.batch_store.set_status(job.id, JobStatus.RUNNING)
            logger.info(f"Running job {job.name} ({job.total_items} documents)")

            for session in self.session_store.list_for_job(job.id):
                if session.stage in TERMINAL_STAGES:
                    continue
                if token.should_stop:
                    break

                self._drive(session, token)
                if session.stage == Stage.PAUSED:
                    break

            if token.cancel_requested:
                self._cancel_remaining(job.id)

            status = self._settle_status(job.id, token)
            logger.info(f"Job {job.name}: {status.value}")
        finally:
            with self._lock:
                self._active.discard(job.id)

        return self._get_job(job.id)

    def pause(self, job_id) -> BatchJob:
        """Request a cooperative pause. Repeating it is a no-op."""
        job = self._get_job(job_id)
        token = self._token(job.id)
        if token.pause_requested:
            return job

        token.request_pause()
        logger.info(f"Pause requested for job {job.name}")
        if not self._is_active(job.id) and job.status in (JobStatus.PENDING, JobStatus.RUNNING):
            self.batch_store.set_status(job.id, JobStatus.PAUSED)
        return self._get_job(job.id)

    def resume(self, job_id) -> BatchJob:
        """Clear the pause flag and continue the job."""
        job = self._get_job(job_id)
        self._token(job.id).clear_pause()
        return self.run(job.id)

    def cancel(self, job_id) -> BatchJob:
        """
        Cancel the job. A running session stops at its next chunk boundary
        unless it is already persisting; stored artifacts are kept.
        """
        job = self._get_job(job_id)
        token = self._token(job.id)
        token.request_cancel()

        if self._is_active(job.id):
            logger.info(f"Cancel requested for running job {job.name}")
            return job

        cancelled = self._cancel_remaining(job.id)
        self._settle_status(job.id, token)
        logger.info(f"Cancelled job {job.name} ({cancelled} sessions)")
        return self._get_job(job.id)

    def retry(self, session_id, run: bool = True) -> ImportSession:
        """
        Reopen a failed or cancelled session at its resume stage.

        Retrying a completed session, a non-retryable failure or a session
        out of retries is a logged no-op.

        While the job is being run elsewhere the session is only reopened
        and the next run of the job picks it up.
        """
        session = self._get_session(session_id)
        machine = self.runner.machine_for(session)
        reopened = machine.reopen(self.max_session_retries)
        self._apply_events()
        if not reopened or not run:
            return session

        self._ensure_seeded()
        with self._lock:
            if session.job_id in self._active:
                logger.warning(
                    f"Job {session.job_id} is running; {session.source_name} reopened for its next run"
                )
                return session
            self._active.add(session.job_id)
        try:
            self.batch_store.set_status(session.job_id, JobStatus.RUNNING)
            self._drive(session, CancellationToken())
            self._settle_status(session.job_id, CancellationToken())
        finally:
            with self._lock:
                self._active.discard(session.job_id)
        return session

    # ==========================================================================
    # Reporting
    # ==========================================================================

    def status(self, job_id) -> dict:
        """Job counters plus per-session progress."""
        self._apply_events()
        job = self._get_job(job_id)
        sessions = self.session_store.list_for_job(job.id)

        return {
            "job_id": str(job.id),
            "name": job.name,
            "status": job.status.value,
            "counters": job.counters,
            "sessions": [
                {
                    "session_id": str(s.id),
                    "source_name": s.source_name,
                    "order_index": s.order_index,
                    "stage": s.stage.value,
                    "processed_units": s.processed_units,
                    "total_units": s.total_units,
                    "error_kind": s.error_kind.value if s.error_kind else None,
                    "error_message": s.error_message,
                    "retry_count": s.retry_count,
                    "inserted": s.inserted_count,
                    "duplicates_skipped": s.duplicates_skipped,
                    "invalid_dropped": s.invalid_dropped,
                    "needs_review": s.needs_review_count,
                }
                for s in sessions
            ],
        }

    def stats(self) -> dict:
        return {
            "questions": self.question_store.count(),
            "duplicate_index_size": len(self.index),
            "duplicate_index_seeded": self.index.seeded,
        }


def build_orchestrator(channel: Optional[ProgressChannel] = None) -> BatchOrchestrator:
    """Orchestrator wired to Postgres, the configured artifact store and the extraction API."""
    from qbank.db.repositories import (
        PostgresBatchStore,
        PostgresQuestionStore,
        PostgresSessionStore,
    )
    from qbank.ingest.extraction import ExtractionClient
    from qbank.ingest.storage import get_artifact_store

    config.ensure_dirs()
    store = get_artifact_store()
    return BatchOrchestrator(
        session_store=PostgresSessionStore(),
        batch_store=PostgresBatchStore(),
        question_store=PostgresQuestionStore(),
        stager=ArtifactStager(store),
        extractor=ExtractionClient(store=store),
        channel=channel,
        event_log=EventLogger(),
    )
