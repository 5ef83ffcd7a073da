"""
Pytest configuration and fixtures for qbank-ingest tests.
"""

import uuid

import pytest
from unittest.mock import MagicMock, patch

from qbank.ingest.dedup import DuplicateIndex
from qbank.ingest.events import ProgressChannel
from qbank.ingest.models import ClassificationHints, ImportSession
from qbank.ingest.persistence import QuestionWriter
from qbank.ingest.pipeline import SessionRunner
from qbank.ingest.staging import ArtifactStager

from tests.fakes import (
    FakeRenderer,
    MemoryBatchStore,
    MemoryQuestionStore,
    MemorySessionStore,
    RecordingArtifactStore,
    ScriptedExtractor,
    fake_fetch,
)


# =============================================================================
# In-memory collaborators
# =============================================================================


@pytest.fixture
def session_store():
    return MemorySessionStore()


@pytest.fixture
def batch_store():
    return MemoryBatchStore()


@pytest.fixture
def question_store():
    return MemoryQuestionStore()


@pytest.fixture
def artifact_store():
    return RecordingArtifactStore()


@pytest.fixture
def renderer():
    """Ten-page document."""
    return FakeRenderer(pages=10)


@pytest.fixture
def extractor():
    return ScriptedExtractor()


@pytest.fixture
def channel():
    return ProgressChannel()


@pytest.fixture
def stager(artifact_store, renderer, tmp_path):
    """Stager with chunks of 3 pages and no retry delay."""
    return ArtifactStager(
        artifact_store,
        renderer=renderer,
        concurrency=3,
        attempts=3,
        backoff_seconds=0,
        staging_dir=tmp_path / "staging",
        fetcher=fake_fetch,
    )


@pytest.fixture
def duplicate_index():
    return DuplicateIndex()


@pytest.fixture
def runner(session_store, stager, extractor, question_store, duplicate_index, channel):
    """SessionRunner wired to in-memory fakes."""
    return SessionRunner(
        session_store,
        stager,
        extractor,
        QuestionWriter(question_store, duplicate_index),
        channel=channel,
        attempts=3,
        backoff_seconds=0,
        persist_batch_size=4,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def make_session(session_store):
    """Factory for saved queued sessions."""
    job_id = uuid.uuid4()

    def _make(source_name: str = "block1.pdf", order_index: int = 0, **kwargs) -> ImportSession:
        session = ImportSession(
            source_name=source_name,
            source_uri=f"/exams/{source_name}",
            order_index=order_index,
            job_id=job_id,
            hints=kwargs.pop("hints", ClassificationHints(subject="Genetics", system="Renal")),
            **kwargs,
        )
        session_store.save(session)
        return session

    return _make


# =============================================================================
# Mock fixtures
# =============================================================================


@pytest.fixture
def mock_pg_pool():
    """Mock PostgreSQL connection pool."""
    with patch("qbank.db.postgres.get_pg_pool") as mock:
        mock_pool = MagicMock()
        mock_conn = MagicMock()
        mock_cursor = MagicMock()

        mock_pool.connection.return_value.__enter__ = MagicMock(return_value=mock_conn)
        mock_pool.connection.return_value.__exit__ = MagicMock(return_value=False)
        mock_conn.cursor.return_value.__enter__ = MagicMock(return_value=mock_cursor)
        mock_conn.cursor.return_value.__exit__ = MagicMock(return_value=False)

        mock.return_value = mock_pool
        yield mock_cursor


# =============================================================================
# Pytest markers
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (require DB)"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with -m 'not slow')"
    )
