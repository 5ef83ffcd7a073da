"""
qbank-ingest - question bank ingestion pipeline

Turns scanned exam PDFs into deduplicated question records:
- PyMuPDF page rendering with chunked, bounded-concurrency uploads
- Local or MinIO object storage for page artifacts
- External vision model extraction with retries and timeouts
- Resumable per-document sessions with pause, cancel and retry
- PostgreSQL corpus with a unique content fingerprint per question
"""

__version__ = "1.0.0"
