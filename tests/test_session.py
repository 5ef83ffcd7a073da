"""
Tests for the session state machine.
"""

import pytest

from qbank.ingest.errors import (
    ExtractionTimeoutError,
    IllegalTransitionError,
    StorageError,
    UnsupportedDocumentError,
)
from qbank.ingest.events import EventKind
from qbank.ingest.models import ErrorKind, Stage
from qbank.ingest.session import SessionStateMachine, is_transition_allowed, next_stage


def _advance_to(machine, stage):
    while machine.stage != stage:
        machine.advance()


class TestTransitionTable:
    """Tests for the allowed stage changes."""

    def test_forward_path(self):
        """Each forward stage should lead to the next."""
        assert next_stage(Stage.QUEUED) == Stage.UPLOADING
        assert next_stage(Stage.EXTRACTING) == Stage.PERSISTING
        assert next_stage(Stage.PERSISTING) == Stage.COMPLETED
        assert next_stage(Stage.COMPLETED) is None
        assert next_stage(Stage.FAILED) is None

    def test_no_skipping_or_going_back(self):
        """Forward stages cannot be skipped or reversed."""
        assert not is_transition_allowed(Stage.UPLOADING, Stage.RENDERING)
        assert not is_transition_allowed(Stage.EXTRACTING, Stage.STORING_ARTIFACTS)

    def test_failure_and_pause_from_processing(self):
        """Processing stages may fail or pause; queued may not."""
        assert is_transition_allowed(Stage.RENDERING, Stage.FAILED)
        assert is_transition_allowed(Stage.PERSISTING, Stage.PAUSED)
        assert not is_transition_allowed(Stage.QUEUED, Stage.PAUSED)

    def test_cancel_not_from_persisting(self):
        """Cancel is honoured before persisting, never during or after it."""
        assert is_transition_allowed(Stage.QUEUED, Stage.CANCELLED)
        assert is_transition_allowed(Stage.EXTRACTING, Stage.CANCELLED)
        assert not is_transition_allowed(Stage.PERSISTING, Stage.CANCELLED)
        assert not is_transition_allowed(Stage.COMPLETED, Stage.CANCELLED)

    def test_resume_only_to_resume_stage(self):
        """Failed and paused sessions resume only at their recorded stage."""
        assert is_transition_allowed(Stage.FAILED, Stage.EXTRACTING, Stage.EXTRACTING)
        assert not is_transition_allowed(Stage.FAILED, Stage.QUEUED, Stage.EXTRACTING)
        assert not is_transition_allowed(Stage.PAUSED, Stage.RENDERING, None)


class TestSessionStateMachine:
    """Tests for SessionStateMachine."""

    def test_every_change_is_saved(self, make_session, session_store):
        """Each transition should be persisted before the event is published."""
        session = make_session()
        machine = SessionStateMachine(session, session_store)
        _advance_to(machine, Stage.RENDERING)
        stages = [stage for sid, stage in session_store.saves if sid == session.id]
        assert stages == [Stage.QUEUED, Stage.UPLOADING, Stage.UPLOADED, Stage.RENDERING]
        assert session_store.get(session.id).stage == Stage.RENDERING

    def test_events_published(self, make_session, session_store, channel):
        """Transitions should publish events; completion carries a counter delta."""
        sub = channel.subscribe()
        session = make_session()
        machine = SessionStateMachine(session, session_store, channel)
        _advance_to(machine, Stage.COMPLETED)

        events = sub.drain()
        assert [e.kind for e in events][-1] == EventKind.SESSION_COMPLETED
        assert events[-1].deltas == {"completed_items": 1}
        assert all(e.session_id == session.id for e in events)

    def test_advance_past_completed_raises(self, make_session, session_store):
        """Advancing a completed session is a programming error."""
        machine = SessionStateMachine(make_session(), session_store)
        _advance_to(machine, Stage.COMPLETED)
        with pytest.raises(IllegalTransitionError):
            machine.advance()

    def test_units_monotonic_and_bounded(self, make_session, session_store):
        """processed_units should never decrease nor exceed total_units."""
        machine = SessionStateMachine(make_session(), session_store)
        machine.set_total_units(5)
        machine.record_units(3)
        with pytest.raises(ValueError):
            machine.record_units(-1)
        with pytest.raises(ValueError):
            machine.record_units(3)
        assert machine.session.processed_units == 3

    def test_total_units_fixed_once_known(self, make_session, session_store):
        """total_units should not change once recorded."""
        machine = SessionStateMachine(make_session(), session_store)
        machine.set_total_units(5)
        machine.set_total_units(5)
        with pytest.raises(ValueError):
            machine.set_total_units(6)

    def test_fail_records_error_and_resume_stage(self, make_session, session_store, channel):
        """A failure should record the kind, message and stage to resume."""
        sub = channel.subscribe()
        machine = SessionStateMachine(make_session(), session_store, channel)
        _advance_to(machine, Stage.EXTRACTING)
        machine.fail(ExtractionTimeoutError("timed out"))

        session = session_store.get(machine.session.id)
        assert session.stage == Stage.FAILED
        assert session.resume_stage == Stage.EXTRACTING
        assert session.error_kind == ErrorKind.EXTRACTION_TIMEOUT
        assert session.error_message == "timed out"
        assert sub.drain()[-1].deltas == {"failed_items": 1}

    def test_pause_and_resume(self, make_session, session_store):
        """A paused session should resume at the stage it was paused in."""
        machine = SessionStateMachine(make_session(), session_store)
        _advance_to(machine, Stage.STORING_ARTIFACTS)
        assert machine.pause()
        assert machine.stage == Stage.PAUSED
        assert not machine.pause()
        assert machine.resume() == Stage.STORING_ARTIFACTS

    def test_queued_session_not_paused(self, make_session, session_store):
        """Pausing a queued session is a no-op."""
        machine = SessionStateMachine(make_session(), session_store)
        assert not machine.pause()
        assert machine.stage == Stage.QUEUED

    def test_cancel(self, make_session, session_store, channel):
        """Cancel should be honoured before persisting and remember the stage."""
        sub = channel.subscribe()
        machine = SessionStateMachine(make_session(), session_store, channel)
        _advance_to(machine, Stage.STORING_ARTIFACTS)
        assert machine.cancel()
        assert machine.stage == Stage.CANCELLED
        assert machine.session.resume_stage == Stage.STORING_ARTIFACTS
        assert sub.drain()[-1].deltas == {"cancelled_items": 1}
        assert not machine.cancel()

    def test_cancel_paused_keeps_resume_stage(self, make_session, session_store):
        """Cancelling a paused session should resume where it was paused."""
        machine = SessionStateMachine(make_session(), session_store)
        _advance_to(machine, Stage.RENDERING)
        machine.pause()
        machine.cancel()
        assert machine.session.resume_stage == Stage.RENDERING

    def test_cancel_refused_while_persisting(self, make_session, session_store):
        """A persisting session should not be cancelled."""
        machine = SessionStateMachine(make_session(), session_store)
        _advance_to(machine, Stage.PERSISTING)
        assert not machine.cancel()
        assert machine.stage == Stage.PERSISTING

    def test_record_candidate_outcomes(self, make_session, session_store, channel):
        """Candidate outcomes should update counters, cursor and deltas."""
        sub = channel.subscribe()
        machine = SessionStateMachine(make_session(), session_store, channel)
        _advance_to(machine, Stage.PERSISTING)
        sub.drain()

        machine.record_candidate("inserted", needs_review=True)
        machine.record_candidate("duplicate")
        machine.record_candidate("invalid")

        s = machine.session
        assert (s.inserted_count, s.duplicates_skipped, s.invalid_dropped, s.needs_review_count) == (1, 1, 1, 1)
        assert s.persist_cursor == 3
        assert [e.deltas for e in sub.drain()] == [
            {"inserted_items": 1, "needs_review_items": 1},
            {"duplicates_skipped": 1},
            {"invalid_candidates_dropped": 1},
        ]
        with pytest.raises(ValueError):
            machine.record_candidate("bogus")


class TestReopen:
    """Tests for the retry command on a single session."""

    def test_reopen_failed(self, make_session, session_store, channel):
        """A retryable failure should reopen at its resume stage."""
        sub = channel.subscribe()
        machine = SessionStateMachine(make_session(), session_store, channel)
        _advance_to(machine, Stage.STORING_ARTIFACTS)
        machine.fail(StorageError("upload failed"))
        sub.drain()

        assert machine.reopen(max_retries=5)
        s = machine.session
        assert s.stage == Stage.STORING_ARTIFACTS
        assert s.retry_count == 1
        assert s.error_kind is None
        assert sub.drain()[-1].deltas == {"failed_items": -1}

    def test_reopen_cancelled(self, make_session, session_store, channel):
        """A cancelled session should reopen at the stage it was cancelled in."""
        sub = channel.subscribe()
        machine = SessionStateMachine(make_session(), session_store, channel)
        _advance_to(machine, Stage.UPLOADED)
        machine.cancel()
        sub.drain()

        assert machine.reopen(max_retries=5)
        assert machine.stage == Stage.UPLOADED
        assert sub.drain()[-1].deltas == {"cancelled_items": -1}

    def test_non_retryable_refused(self, make_session, session_store):
        """An unsupported document cannot be retried without a new upload."""
        machine = SessionStateMachine(make_session(), session_store)
        _advance_to(machine, Stage.RENDERING)
        machine.fail(UnsupportedDocumentError("corrupt"))
        assert not machine.reopen(max_retries=5)
        assert machine.stage == Stage.FAILED

    def test_exhausted_retries_refused(self, make_session, session_store):
        """No reopen once retry_count reaches the limit."""
        machine = SessionStateMachine(make_session(), session_store)
        _advance_to(machine, Stage.EXTRACTING)
        machine.session.retry_count = 2
        machine.fail(ExtractionTimeoutError("timed out"))
        assert not machine.reopen(max_retries=2)

    def test_completed_refused(self, make_session, session_store):
        """Retrying a completed session is a no-op."""
        machine = SessionStateMachine(make_session(), session_store)
        _advance_to(machine, Stage.COMPLETED)
        assert not machine.reopen(max_retries=5)
        assert machine.stage == Stage.COMPLETED
