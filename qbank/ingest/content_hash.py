"""
Content fingerprints for question deduplication.

The same question extracted twice (re-runs, overlapping uploads, a second
scan of the same exam) must produce the same fingerprint. Text is normalized
before hashing so that formatting noise introduced by the extractor does not
defeat deduplication:

1. Unicode NFKC normalization
2. Case folding
3. Whitespace runs collapsed to a single space
4. Leading/trailing whitespace trimmed

The digest is SHA-256 over the UTF-8 bytes of the normalized text. Stability
across processes and releases matters more than speed here; the hash is not
used for anything adversarial.
"""

import hashlib
import unicodedata


def normalize_question_text(text: str) -> str:
    """
    Normalize question text for fingerprinting.

    Examples:
        "  A 45-year-old   MAN\\npresents " -> "a 45-year-old man presents"
    """
    if not text:
        return ""

    normalized = unicodedata.normalize("NFKC", text)
    normalized = normalized.casefold()
    return " ".join(normalized.split())


def get_content_hash(text: str) -> str:
    """
    Generate a stable fingerprint for question text.

    Args:
        text: Raw question text as extracted

    Returns:
        64-character hex string
    """
    normalized = normalize_question_text(text)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()
