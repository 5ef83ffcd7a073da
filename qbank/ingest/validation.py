"""
Structural validation of extracted question candidates.

A candidate is accepted when it has usable question text, at least two
distinctly-lettered options with text, and a correct answer reported by the
extractor. The correct answer is never inferred:

- exactly one option flagged correct      -> accepted
- none flagged, correct_answer names one  -> that option is flagged, accepted
- none flagged and no usable letter       -> dropped (validation_failed)
- several flagged                         -> accepted, needs_manual_review
"""

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Optional

from qbank.ingest.models import ExtractedQuestionCandidate, OptionCandidate

logger = logging.getLogger(__name__)

MIN_QUESTION_LENGTH = 10
MIN_OPTIONS = 2
MISSING_MARKER = "MISSING_FROM_PDF"

_WATERMARK_RE = re.compile(r"(?:CS\s*)?CamScanner", re.IGNORECASE)
_BLANK_LINES_RE = re.compile(r"\n{3,}")
_SPACE_RUN_RE = re.compile(r"[ \t]{3,}")

# Free-text fields that must hold str or None
_TEXT_FIELDS = (
    "text",
    "explanation",
    "image_description",
    "correct_answer",
    "difficulty",
    "category",
)


def clean_text(text: Optional[str]) -> str:
    """Strip scanner watermarks and collapse runaway whitespace."""
    if not text or not isinstance(text, str):
        return ""
    text = _WATERMARK_RE.sub("", text)
    text = _BLANK_LINES_RE.sub("\n\n", text)
    text = _SPACE_RUN_RE.sub(" ", text)
    return text.strip()


def _malformed_fields(candidate: ExtractedQuestionCandidate) -> list[str]:
    """Names of candidate fields holding a value of the wrong type."""
    bad = [
        name
        for name in _TEXT_FIELDS
        if not isinstance(getattr(candidate, name), (str, type(None)))
    ]
    for index, opt in enumerate(candidate.options):
        if not isinstance(opt, OptionCandidate):
            bad.append(f"options[{index}]")
            continue
        for name in ("letter", "text", "explanation"):
            if not isinstance(getattr(opt, name), (str, type(None))):
                bad.append(f"options[{index}].{name}")
    for name in ("question_pages", "explanation_pages"):
        pages = getattr(candidate, name)
        if any(not isinstance(p, int) or isinstance(p, bool) for p in pages):
            bad.append(name)
    return bad


@dataclass
class ValidationResult:
    """Outcome of validating one candidate."""

    candidate: ExtractedQuestionCandidate
    valid: bool = True
    reasons: list[str] = field(default_factory=list)

    @property
    def needs_manual_review(self) -> bool:
        return self.candidate.needs_manual_review


def validate_candidate(candidate: ExtractedQuestionCandidate) -> ValidationResult:
    """
    Clean and validate a candidate.

    Returns:
        ValidationResult whose candidate is a cleaned copy of the input
    """
    malformed = _malformed_fields(candidate)
    if malformed:
        reasons = [f"wrong type for {', '.join(malformed)}"]
        logger.debug(f"Dropping candidate with malformed fields: {reasons[0]}")
        return ValidationResult(candidate=candidate, valid=False, reasons=reasons)

    reasons = []

    text = clean_text(candidate.text)
    if text == MISSING_MARKER or len(text) < MIN_QUESTION_LENGTH:
        reasons.append("question text missing or too short")

    options = [
        OptionCandidate(
            letter=(opt.letter or "").strip().upper(),
            text=clean_text(opt.text),
            is_correct=bool(opt.is_correct),
            explanation=clean_text(opt.explanation) or None,
        )
        for opt in candidate.options
    ]

    if len(options) < MIN_OPTIONS:
        reasons.append(f"fewer than {MIN_OPTIONS} options")
    if any(not opt.letter or not opt.text for opt in options):
        reasons.append("option without letter or text")
    letters = [opt.letter for opt in options]
    if len(set(letters)) != len(letters):
        reasons.append("duplicate option letters")

    correct = [opt for opt in options if opt.is_correct]
    if not correct and candidate.correct_answer:
        letter = candidate.correct_answer.strip().upper()
        for opt in options:
            if opt.letter == letter:
                opt.is_correct = True
                correct = [opt]
                break

    if not correct:
        reasons.append("no correct option identified")

    explanation = clean_text(candidate.explanation)
    if explanation == MISSING_MARKER:
        explanation = ""

    cleaned = replace(
        candidate,
        text=text,
        options=options,
        explanation=explanation,
        image_description=clean_text(candidate.image_description) or None,
        needs_manual_review=len(correct) > 1,
    )

    if reasons:
        logger.debug(f"Dropping candidate {text[:60]!r}: {'; '.join(reasons)}")
        return ValidationResult(candidate=cleaned, valid=False, reasons=reasons)

    if cleaned.needs_manual_review:
        logger.info(f"Candidate {text[:60]!r} has {len(correct)} correct options; flagged for review")
    if not explanation:
        logger.debug(f"Candidate {text[:60]!r} has no explanation")

    return ValidationResult(candidate=cleaned, valid=True)
