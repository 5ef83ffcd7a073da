"""
Postgres repositories for batch jobs, import sessions and questions.

Batch counters are only ever changed by adding deltas (SET col = col + %s),
so concurrent observers and orchestrator restarts never lose progress.
Each question is written in its own transaction; the unique constraint on
content_hash turns a racing duplicate into a no-op insert.
"""

import logging
import uuid
from typing import Iterator, Optional

import psycopg

from qbank.db.postgres import get_pg_connection
from qbank.ingest.errors import PersistenceError
from qbank.ingest.models import (
    BATCH_COUNTERS,
    BatchJob,
    ClassificationHints,
    ErrorKind,
    ImportSession,
    JobStatus,
    QuestionRecord,
    Stage,
)

logger = logging.getLogger(__name__)

SESSION_COLUMNS = (
    "session_id",
    "job_id",
    "source_name",
    "source_uri",
    "source_digest",
    "order_index",
    "stage",
    "resume_stage",
    "total_units",
    "processed_units",
    "error_kind",
    "error_message",
    "error_retryable",
    "retry_count",
    "subject",
    "category",
    "system",
    "artifact_session_id",
    "inserted_count",
    "duplicates_skipped",
    "invalid_dropped",
    "needs_review_count",
    "persist_cursor",
    "created_at",
    "updated_at",
)


# =============================================================================
# Row mapping
# =============================================================================


def _session_params(session: ImportSession) -> tuple:
    return (
        session.id,
        session.job_id,
        session.source_name,
        session.source_uri,
        session.source_digest,
        session.order_index,
        session.stage.value,
        session.resume_stage.value if session.resume_stage else None,
        session.total_units,
        session.processed_units,
        session.error_kind.value if session.error_kind else None,
        session.error_message,
        session.error_retryable,
        session.retry_count,
        session.hints.subject,
        session.hints.category,
        session.hints.system,
        session.artifact_session_id,
        session.inserted_count,
        session.duplicates_skipped,
        session.invalid_dropped,
        session.needs_review_count,
        session.persist_cursor,
        session.created_at,
        session.updated_at,
    )


def session_from_row(row: dict) -> ImportSession:
    """Build an ImportSession from an import_sessions row."""
    return ImportSession(
        id=row["session_id"],
        job_id=row["job_id"],
        source_name=row["source_name"],
        source_uri=row["source_uri"],
        source_digest=row["source_digest"],
        order_index=row["order_index"],
        stage=Stage(row["stage"]),
        resume_stage=Stage(row["resume_stage"]) if row["resume_stage"] else None,
        total_units=row["total_units"],
        processed_units=row["processed_units"],
        error_kind=ErrorKind(row["error_kind"]) if row["error_kind"] else None,
        error_message=row["error_message"],
        error_retryable=row["error_retryable"],
        retry_count=row["retry_count"],
        hints=ClassificationHints(
            subject=row["subject"],
            category=row["category"],
            system=row["system"],
        ),
        artifact_session_id=row["artifact_session_id"],
        inserted_count=row["inserted_count"],
        duplicates_skipped=row["duplicates_skipped"],
        invalid_dropped=row["invalid_dropped"],
        needs_review_count=row["needs_review_count"],
        persist_cursor=row["persist_cursor"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def job_from_row(row: dict, session_ids: Optional[list] = None) -> BatchJob:
    """Build a BatchJob from a batch_jobs row."""
    job = BatchJob(
        id=row["job_id"],
        name=row["name"],
        status=JobStatus(row["status"]),
        session_ids=list(session_ids or []),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
    for name in BATCH_COUNTERS:
        setattr(job, name, row[name])
    return job


# =============================================================================
# Sessions
# =============================================================================


class PostgresSessionStore:
    """Import session persistence."""

    def save(self, session: ImportSession) -> None:
        """Insert or update the full session row."""
        columns = ", ".join(SESSION_COLUMNS)
        placeholders = ", ".join(["%s"] * len(SESSION_COLUMNS))
        updates = ", ".join(
            f"{col} = EXCLUDED.{col}"
            for col in SESSION_COLUMNS
            if col not in ("session_id", "job_id", "created_at")
        )
        with get_pg_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO import_sessions ({columns})
                    VALUES ({placeholders})
                    ON CONFLICT (session_id) DO UPDATE SET {updates}
                    """,
                    _session_params(session),
                )
            conn.commit()

    def get(self, session_id: uuid.UUID) -> Optional[ImportSession]:
        with get_pg_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM import_sessions WHERE session_id = %s", (session_id,))
                row = cur.fetchone()
        return session_from_row(row) if row else None

    def list_for_job(self, job_id: uuid.UUID) -> list[ImportSession]:
        """Sessions of a job in processing order."""
        with get_pg_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT * FROM import_sessions WHERE job_id = %s ORDER BY order_index",
                    (job_id,),
                )
                rows = cur.fetchall()
        return [session_from_row(row) for row in rows]

    def find_reusable(self, source_digest: str) -> Optional[ImportSession]:
        """
        Most recent cancelled or retryable-failed session for the same source
        that already stored pages.
        """
        with get_pg_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT * FROM import_sessions
                    WHERE source_digest = %s
                    AND processed_units > 0
                    AND (stage = 'cancelled' OR (stage = 'failed' AND error_retryable))
                    ORDER BY updated_at DESC
                    LIMIT 1
                    """,
                    (source_digest,),
                )
                row = cur.fetchone()
        return session_from_row(row) if row else None


# =============================================================================
# Batch jobs
# =============================================================================


class PostgresBatchStore:
    """Batch job persistence with additive counter updates."""

    def create(self, job: BatchJob) -> None:
        with get_pg_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO batch_jobs (job_id, name, status, total_items, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (job.id, job.name, job.status.value, job.total_items, job.created_at, job.updated_at),
                )
            conn.commit()

    def get(self, job_id: uuid.UUID) -> Optional[BatchJob]:
        with get_pg_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM batch_jobs WHERE job_id = %s", (job_id,))
                row = cur.fetchone()
                if not row:
                    return None
                cur.execute(
                    "SELECT session_id FROM import_sessions WHERE job_id = %s ORDER BY order_index",
                    (job_id,),
                )
                session_ids = [r["session_id"] for r in cur.fetchall()]
        return job_from_row(row, session_ids)

    def list_jobs(self, limit: int = 20) -> list[BatchJob]:
        with get_pg_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT * FROM batch_jobs ORDER BY created_at DESC LIMIT %s",
                    (limit,),
                )
                rows = cur.fetchall()
        return [job_from_row(row) for row in rows]

    def set_status(self, job_id: uuid.UUID, status: JobStatus) -> None:
        with get_pg_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE batch_jobs SET status = %s, updated_at = now() WHERE job_id = %s",
                    (status.value, job_id),
                )
            conn.commit()

    def apply_delta(self, job_id: uuid.UUID, deltas: dict[str, int]) -> None:
        """Add session-reported deltas to the job counters."""
        deltas = {k: v for k, v in deltas.items() if v}
        if not deltas:
            return

        unknown = set(deltas) - set(BATCH_COUNTERS)
        if unknown:
            raise ValueError(f"Unknown batch counters: {sorted(unknown)}")

        assignments = ", ".join(f"{name} = {name} + %s" for name in deltas)
        with get_pg_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE batch_jobs SET {assignments}, updated_at = now() WHERE job_id = %s",
                    (*deltas.values(), job_id),
                )
            conn.commit()


# =============================================================================
# Questions
# =============================================================================


class PostgresQuestionStore:
    """Question corpus persistence."""

    def iter_content_hashes(self, batch_size: int = 5000) -> Iterator[str]:
        """Stream every persisted content hash (for seeding the duplicate index)."""
        with get_pg_connection() as conn:
            with conn.cursor(name="content_hashes") as cur:
                cur.itersize = batch_size
                cur.execute("SELECT content_hash FROM questions")
                for row in cur:
                    yield row["content_hash"]

    def count(self) -> int:
        with get_pg_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) FROM questions")
                row = cur.fetchone()
        return row["count"] if row else 0

    def insert_question(self, record: QuestionRecord) -> Optional[uuid.UUID]:
        """
        Insert a question with its options and image references.

        Returns:
            The new question id, or None if the content_hash already exists

        Raises:
            PersistenceError: On any database error
        """
        try:
            with get_pg_connection() as conn:
                with conn.transaction():
                    with conn.cursor() as cur:
                        cur.execute(
                            """
                            INSERT INTO questions (
                                question_id, content_hash, source_session_id, source_name,
                                question_text, explanation, subject, system, category,
                                difficulty, has_image, image_description,
                                needs_manual_review, created_at
                            )
                            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                            ON CONFLICT (content_hash) DO NOTHING
                            RETURNING question_id
                            """,
                            (
                                record.id,
                                record.content_hash,
                                record.source_session_id,
                                record.source_name,
                                record.text,
                                record.explanation,
                                record.subject,
                                record.system,
                                record.category,
                                record.difficulty,
                                record.has_image,
                                record.image_description,
                                record.needs_manual_review,
                                record.created_at,
                            ),
                        )
                        row = cur.fetchone()
                        if row is None:
                            return None

                        question_id = row["question_id"]
                        cur.executemany(
                            """
                            INSERT INTO question_options
                                (question_id, letter, option_text, is_correct, explanation)
                            VALUES (%s, %s, %s, %s, %s)
                            """,
                            [
                                (question_id, opt.letter, opt.text, opt.is_correct, opt.explanation)
                                for opt in record.options
                            ],
                        )
                        if record.images:
                            cur.executemany(
                                """
                                INSERT INTO question_images
                                    (question_id, storage_key, position, image_order, page_number)
                                VALUES (%s, %s, %s, %s, %s)
                                """,
                                [
                                    (
                                        question_id,
                                        img.storage_key,
                                        img.position,
                                        img.image_order,
                                        img.page_number,
                                    )
                                    for img in record.images
                                ],
                            )
            return question_id
        except psycopg.Error as e:
            raise PersistenceError(
                f"Failed to insert question {record.content_hash[:12]}: {e}"
            ) from e
