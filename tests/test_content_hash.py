"""
Tests for question fingerprints and the duplicate index.
"""

from qbank.ingest.content_hash import get_content_hash, normalize_question_text
from qbank.ingest.dedup import DuplicateIndex


class TestNormalization:
    """Tests for text normalization before hashing."""

    def test_collapses_whitespace_and_case(self):
        """Whitespace runs and case differences should disappear."""
        assert normalize_question_text("  A 45-year-old   MAN\npresents ") == "a 45-year-old man presents"

    def test_nfkc(self):
        """Compatibility characters should normalize to their plain form."""
        assert normalize_question_text("ﬁbrosis") == "fibrosis"

    def test_empty(self):
        """Empty input should normalize to an empty string."""
        assert normalize_question_text("") == ""
        assert normalize_question_text(None) == ""


class TestContentHash:
    """Tests for get_content_hash."""

    def test_deterministic(self):
        """Same text should always produce the same fingerprint."""
        text = "Which enzyme is deficient in this patient?"
        assert get_content_hash(text) == get_content_hash(text)

    def test_known_value(self):
        """Fingerprint should be SHA-256 of the normalized text."""
        import hashlib

        expected = hashlib.sha256("which enzyme is deficient?".encode("utf-8")).hexdigest()
        assert get_content_hash("  Which   ENZYME is deficient? ") == expected

    def test_formatting_noise_ignored(self):
        """Re-extraction noise should not change the fingerprint."""
        a = get_content_hash("A 30-year-old woman presents with fatigue.")
        b = get_content_hash("a 30-year-old  woman\npresents with FATIGUE.  ")
        assert a == b

    def test_different_questions_differ(self):
        """Different text should produce different fingerprints."""
        assert get_content_hash("Question one") != get_content_hash("Question two")

    def test_hex_length(self):
        """Fingerprint should be a 64-character hex string."""
        fp = get_content_hash("anything")
        assert len(fp) == 64
        int(fp, 16)


class TestDuplicateIndex:
    """Tests for the in-memory duplicate index."""

    def test_seed_and_contains(self):
        """Seeded fingerprints should be reported as known."""
        index = DuplicateIndex()
        assert not index.seeded
        assert index.seed(["a", "b", ""]) == 2
        assert index.seeded
        assert index.contains("a")
        assert "b" in index
        assert not index.contains("c")

    def test_record(self):
        """Recorded fingerprints should be known afterwards."""
        index = DuplicateIndex()
        index.record("x")
        assert index.contains("x")
        assert len(index) == 1

    def test_instances_are_independent(self):
        """Two indexes should never share state."""
        first, second = DuplicateIndex(), DuplicateIndex()
        first.record("shared?")
        assert not second.contains("shared?")

    def test_seed_accepts_generator(self):
        """Seeding should consume any iterable, such as a DB cursor stream."""
        index = DuplicateIndex()
        index.seed(fp for fp in ("1", "2", "3"))
        assert len(index) == 3
