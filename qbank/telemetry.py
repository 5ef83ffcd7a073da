"""
Ingestion telemetry for qbank-ingest.

Logs every pipeline progress event in JSONL format for debugging,
auditing imports and reproducing failures.

Enable with: QBANK_TELEMETRY=1
"""

import json
import logging
from pathlib import Path
from typing import Optional

from qbank.config import config
from qbank.ingest.events import SessionEvent

logger = logging.getLogger(__name__)


def is_telemetry_enabled() -> bool:
    """Check if telemetry is enabled via environment variable."""
    return config.TELEMETRY_ENABLED


# Default log path
TELEMETRY_LOG_PATH = Path(config.PROJECT_ROOT) / "logs" / "ingest_events.jsonl"


class EventLogger:
    """
    Appends progress events to a JSONL file.

    Usage:
        event_log = EventLogger()
        for event in subscription.drain():
            event_log.record(event)
    """

    def __init__(self, log_path: Path = None, enabled: Optional[bool] = None):
        """
        Initialize event logger.

        Args:
            log_path: Path to JSONL log file (default: logs/ingest_events.jsonl)
            enabled: Override QBANK_TELEMETRY
        """
        self.log_path = Path(log_path or TELEMETRY_LOG_PATH)
        self.enabled = is_telemetry_enabled() if enabled is None else enabled
        self.written = 0

    def record(self, event: SessionEvent) -> None:
        """Append one event. Write failures are logged and counted as lost."""
        if not self.enabled:
            return

        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a", encoding="utf-8") as f:
                json.dump(event.to_dict(), f)
                f.write("\n")
            self.written += 1
        except OSError as e:
            logger.warning(f"Failed to write telemetry: {e}")

    def record_all(self, events: list[SessionEvent]) -> None:
        for event in events:
            self.record(event)


def read_event_log(
    log_path: Path = None,
    session_id: str = None,
    limit: int = 100,
) -> list[dict]:
    """
    Read progress events from the JSONL file.

    Args:
        log_path: Path to log file (default: logs/ingest_events.jsonl)
        session_id: Optional filter by session id
        limit: Maximum number of records to return

    Returns:
        List of event dicts, oldest first
    """
    log_path = Path(log_path or TELEMETRY_LOG_PATH)

    if not log_path.exists():
        return []

    results = []
    with open(log_path, "r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue
            if session_id and data.get("session_id") != str(session_id):
                continue
            results.append(data)
            if len(results) >= limit:
                break

    return results
