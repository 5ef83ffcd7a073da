"""
Database schema for the question bank and the ingestion pipeline.

All statements are idempotent; apply_schema() can be run on every deploy.
"""

import logging

from qbank.db.postgres import get_pg_connection

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS batch_jobs (
        job_id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        total_items INTEGER NOT NULL DEFAULT 0,
        completed_items INTEGER NOT NULL DEFAULT 0,
        failed_items INTEGER NOT NULL DEFAULT 0,
        cancelled_items INTEGER NOT NULL DEFAULT 0,
        inserted_items INTEGER NOT NULL DEFAULT 0,
        duplicates_skipped INTEGER NOT NULL DEFAULT 0,
        invalid_candidates_dropped INTEGER NOT NULL DEFAULT 0,
        needs_review_items INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ DEFAULT now(),
        updated_at TIMESTAMPTZ DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS import_sessions (
        session_id UUID PRIMARY KEY,
        job_id UUID NOT NULL REFERENCES batch_jobs(job_id) ON DELETE CASCADE,
        source_name TEXT NOT NULL,
        source_uri TEXT NOT NULL,
        source_digest TEXT,
        order_index INTEGER NOT NULL,
        stage TEXT NOT NULL DEFAULT 'queued',
        resume_stage TEXT,
        total_units INTEGER,
        processed_units INTEGER NOT NULL DEFAULT 0,
        error_kind TEXT,
        error_message TEXT,
        error_retryable BOOLEAN NOT NULL DEFAULT TRUE,
        retry_count INTEGER NOT NULL DEFAULT 0,
        subject TEXT,
        category TEXT,
        system TEXT,
        artifact_session_id UUID,
        inserted_count INTEGER NOT NULL DEFAULT 0,
        duplicates_skipped INTEGER NOT NULL DEFAULT 0,
        invalid_dropped INTEGER NOT NULL DEFAULT 0,
        needs_review_count INTEGER NOT NULL DEFAULT 0,
        persist_cursor INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ DEFAULT now(),
        updated_at TIMESTAMPTZ DEFAULT now(),
        UNIQUE (job_id, source_digest),
        CHECK (total_units IS NULL OR processed_units <= total_units)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_import_sessions_job ON import_sessions(job_id, order_index)",
    "CREATE INDEX IF NOT EXISTS idx_import_sessions_digest ON import_sessions(source_digest)",
    """
    CREATE TABLE IF NOT EXISTS questions (
        question_id UUID PRIMARY KEY,
        content_hash TEXT NOT NULL UNIQUE,
        source_session_id UUID REFERENCES import_sessions(session_id) ON DELETE SET NULL,
        source_name TEXT,
        question_text TEXT NOT NULL,
        explanation TEXT NOT NULL DEFAULT '',
        subject TEXT,
        system TEXT,
        category TEXT,
        difficulty TEXT NOT NULL DEFAULT 'medium',
        has_image BOOLEAN NOT NULL DEFAULT FALSE,
        image_description TEXT,
        needs_manual_review BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_questions_subject ON questions(subject, system)",
    """
    CREATE TABLE IF NOT EXISTS question_options (
        question_id UUID NOT NULL REFERENCES questions(question_id) ON DELETE CASCADE,
        letter TEXT NOT NULL,
        option_text TEXT NOT NULL,
        is_correct BOOLEAN NOT NULL DEFAULT FALSE,
        explanation TEXT,
        PRIMARY KEY (question_id, letter)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS question_images (
        question_id UUID NOT NULL REFERENCES questions(question_id) ON DELETE CASCADE,
        storage_key TEXT NOT NULL,
        position TEXT NOT NULL CHECK (position IN ('question', 'explanation')),
        image_order INTEGER NOT NULL DEFAULT 0,
        page_number INTEGER,
        PRIMARY KEY (question_id, position, image_order)
    )
    """,
]


def apply_schema() -> int:
    """
    Create all tables and indexes that do not exist yet.

    Returns:
        Number of statements executed
    """
    with get_pg_connection() as conn:
        with conn.cursor() as cur:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)
        conn.commit()

    logger.info(f"Schema applied ({len(SCHEMA_STATEMENTS)} statements)")
    return len(SCHEMA_STATEMENTS)
