"""
In-memory duplicate index over question fingerprints.

Owned by a BatchOrchestrator and handed to its QuestionWriter; never a
module-level singleton, so independent pipeline runs do not see each other's
state. The unique constraint on questions.content_hash remains the backstop
when several processes write to the same corpus.
"""

import logging
from typing import Iterable

logger = logging.getLogger(__name__)


class DuplicateIndex:
    """
    Set of fingerprints known to be in the persisted corpus.

    Usage:
        index = DuplicateIndex()
        index.seed(question_store.iter_content_hashes())
        if not index.contains(fp):
            ...persist...
            index.record(fp)

    record() must only be called after the question is committed.
    """

    def __init__(self):
        self._fingerprints: set[str] = set()
        self._seeded = False

    @property
    def seeded(self) -> bool:
        return self._seeded

    def seed(self, existing_fingerprints: Iterable[str]) -> int:
        """
        Load fingerprints from the persisted corpus.

        Returns:
            Number of fingerprints in the index after seeding
        """
        self._fingerprints.update(fp for fp in existing_fingerprints if fp)
        self._seeded = True
        logger.info(f"Duplicate index seeded with {len(self._fingerprints)} fingerprints")
        return len(self._fingerprints)

    def contains(self, fingerprint: str) -> bool:
        return fingerprint in self._fingerprints

    def record(self, fingerprint: str) -> None:
        self._fingerprints.add(fingerprint)

    def __len__(self) -> int:
        return len(self._fingerprints)

    def __contains__(self, fingerprint: str) -> bool:
        return self.contains(fingerprint)
