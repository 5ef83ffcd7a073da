"""
Batch processing for qbank-ingest.

Provides sequential, resumable processing of document batches:
- Ordered per-document sessions
- Cooperative pause and cancel
- Per-session retry without redoing stored work
"""

from .orchestrator import BatchOrchestrator, NotFoundError, build_orchestrator

__all__ = [
    "BatchOrchestrator",
    "NotFoundError",
    "build_orchestrator",
]
