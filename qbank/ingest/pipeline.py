"""
Per-session ingestion pipeline.

Drives one ImportSession from its current stage to a settled stage
(completed, failed, paused or cancelled), one step at a time:

    queued -> upload source -> count pages -> render+upload chunks
           -> extract -> validate + persist in batches -> completed

SessionRunner.steps() is a generator: it performs one unit of work per
iteration and yields, so the caller can fold progress events into batch
counters between units. The cancellation token is checked before every
step; steps are chunk-sized, which bounds pause/cancel latency.
"""

import json
import logging
import time
from typing import Callable, Iterator, Optional

from qbank.config import config
from qbank.ingest.control import CancellationToken
from qbank.ingest.errors import IngestError, StorageError
from qbank.ingest.events import ProgressChannel
from qbank.ingest.extraction import ExtractionAdapter
from qbank.ingest.models import (
    SETTLED_STAGES,
    ExtractedQuestionCandidate,
    ImportSession,
    Stage,
)
from qbank.ingest.persistence import QuestionWriter
from qbank.ingest.retry import call_with_retry
from qbank.ingest.session import SessionStateMachine
from qbank.ingest.staging import ArtifactStager
from qbank.ingest.storage import candidates_key
from qbank.ingest.validation import validate_candidate

logger = logging.getLogger(__name__)


class SessionRunner:
    """
    Runs sessions through the pipeline stages.

    Usage:
        runner = SessionRunner(session_store, stager, extractor, writer, channel)
        for stage in runner.steps(session, token):
            ...  # drain progress events
    """

    def __init__(
        self,
        session_store,
        stager: ArtifactStager,
        extractor: ExtractionAdapter,
        writer: QuestionWriter,
        channel: Optional[ProgressChannel] = None,
        attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        persist_batch_size: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize runner.

        Args:
            session_store: Store with save(session)
            stager: Source/page renderer and uploader
            extractor: Extraction adapter
            writer: Dedup-checked question writer
            channel: Progress event channel
            attempts: Extraction attempts per call
            backoff_seconds: Initial delay between extraction attempts
            persist_batch_size: Candidates persisted per step
            sleep: Sleep function (injectable for tests)
        """
        self.session_store = session_store
        self.stager = stager
        self.extractor = extractor
        self.writer = writer
        self.channel = channel
        self.attempts = attempts or config.RETRY_ATTEMPTS
        self.backoff_seconds = (
            config.RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self.persist_batch_size = persist_batch_size or config.PERSIST_BATCH_SIZE
        self.sleep = sleep

        # session id -> candidates loaded from the snapshot
        self._candidates: dict = {}

    @property
    def artifact_store(self):
        return self.stager.store

    def machine_for(self, session: ImportSession) -> SessionStateMachine:
        return SessionStateMachine(session, self.session_store, self.channel)

    # ==========================================================================
    # Driver
    # ==========================================================================

    def steps(self, session: ImportSession, token: Optional[CancellationToken] = None) -> Iterator[Stage]:
        """
        Advance the session one unit of work per iteration.

        Yields:
            The session stage after each unit of work
        """
        token = token or CancellationToken()
        machine = self.machine_for(session)

        if session.stage == Stage.PAUSED and not token.should_stop:
            machine.resume()
            yield session.stage

        while session.stage not in SETTLED_STAGES:
            if token.cancel_requested and machine.can_cancel():
                machine.cancel()
                yield session.stage
                return

            if token.pause_requested:
                # A queued session has nothing in flight; leave it queued
                if session.stage != Stage.QUEUED:
                    machine.pause()
                    yield session.stage
                return

            try:
                self._step(machine)
            except IngestError as e:
                machine.fail(e)
                self._candidates.pop(session.id, None)
            yield session.stage

        if session.stage == Stage.COMPLETED:
            self.stager.discard_local_source(session)

    def run(self, session: ImportSession, token: Optional[CancellationToken] = None) -> ImportSession:
        """Drive the session until it settles."""
        for _ in self.steps(session, token):
            pass
        return session

    # ==========================================================================
    # Stage handlers
    # ==========================================================================

    def _step(self, machine: SessionStateMachine) -> None:
        handler = {
            Stage.QUEUED: self._start,
            Stage.UPLOADING: self._upload_source,
            Stage.UPLOADED: self._begin_render,
            Stage.RENDERING: self._count_units,
            Stage.STORING_ARTIFACTS: self._store_chunk,
            Stage.EXTRACTING: self._extract,
            Stage.PERSISTING: self._persist_batch,
        }[machine.stage]
        handler(machine)

    def _start(self, machine: SessionStateMachine) -> None:
        machine.advance()

    def _upload_source(self, machine: SessionStateMachine) -> None:
        self.stager.upload_source(machine.session)
        machine.advance()

    def _begin_render(self, machine: SessionStateMachine) -> None:
        machine.advance()

    def _count_units(self, machine: SessionStateMachine) -> None:
        session = machine.session
        if session.total_units is None:
            total = self.stager.count_units(session)
            machine.set_total_units(total)
            logger.info(f"{session.source_name}: {total} pages")
        else:
            logger.info(
                f"{session.source_name}: {session.total_units} pages known, "
                f"{session.processed_units} already stored"
            )
        machine.advance()

    def _store_chunk(self, machine: SessionStateMachine) -> None:
        session = machine.session
        if session.processed_units >= session.total_units:
            machine.advance()
            return

        result = self.stager.stage_chunk(session)
        machine.record_units(len(result.artifacts))
        if result.error is not None:
            raise result.error

        logger.debug(
            f"{session.source_name}: stored {session.processed_units}/{session.total_units} pages"
        )
        if session.processed_units >= session.total_units:
            machine.advance()

    def _extract(self, machine: SessionStateMachine) -> None:
        session = machine.session
        artifacts = self.stager.list_artifacts(session)

        candidates = call_with_retry(
            lambda: self.extractor.extract(artifacts, session.hints, session.source_name),
            attempts=self.attempts,
            backoff_seconds=self.backoff_seconds,
            on_retry=lambda attempt, error: machine.note_retry(error),
            description=f"Extraction for {session.source_name}",
            sleep=self.sleep,
        )
        # Persist from the same normalized shape a restart reloads from the snapshot
        candidates = [ExtractedQuestionCandidate.from_dict(c.to_dict()) for c in candidates]

        self._save_snapshot(session, candidates)
        self._candidates[session.id] = candidates
        logger.info(f"{session.source_name}: {len(candidates)} candidates extracted")
        machine.advance()

    def _persist_batch(self, machine: SessionStateMachine) -> None:
        session = machine.session
        candidates = self._load_candidates(session)

        end = min(session.persist_cursor + self.persist_batch_size, len(candidates))
        while session.persist_cursor < end:
            result = validate_candidate(candidates[session.persist_cursor])
            if not result.valid:
                machine.record_candidate("invalid")
                continue
            outcome = self.writer.persist(result.candidate, session)
            machine.record_candidate(outcome.outcome, needs_review=outcome.needs_review)

        if session.persist_cursor >= len(candidates):
            self._candidates.pop(session.id, None)
            logger.info(
                f"{session.source_name}: inserted={session.inserted_count} "
                f"duplicates={session.duplicates_skipped} invalid={session.invalid_dropped}"
            )
            machine.advance()

    # ==========================================================================
    # Candidate snapshot
    # ==========================================================================

    def _save_snapshot(self, session: ImportSession, candidates: list[ExtractedQuestionCandidate]) -> None:
        data = json.dumps([c.to_dict() for c in candidates], ensure_ascii=False).encode("utf-8")
        call_with_retry(
            lambda: self.artifact_store.put(
                candidates_key(session.artifact_root), data, content_type="application/json"
            ),
            attempts=self.attempts,
            backoff_seconds=self.backoff_seconds,
            description=f"Candidate snapshot for {session.source_name}",
            sleep=self.sleep,
        )

    def _load_candidates(self, session: ImportSession) -> list[ExtractedQuestionCandidate]:
        cached = self._candidates.get(session.id)
        if cached is not None:
            return cached

        key = candidates_key(session.artifact_root)
        raw = self.artifact_store.get(key)
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StorageError(f"Corrupt candidate snapshot {key}: {e}", retryable=False) from e
        if not isinstance(payload, list):
            raise StorageError(f"Corrupt candidate snapshot {key}: expected a list", retryable=False)

        candidates = [
            ExtractedQuestionCandidate.from_dict(item) for item in payload if isinstance(item, dict)
        ]
        self._candidates[session.id] = candidates
        return candidates
