"""
Extraction adapter: the boundary to the external question-extraction model.

Sends stored page artifacts plus classification hints to an
OpenAI-compatible chat-completions endpoint and parses the returned JSON into
ExtractedQuestionCandidates. This is the only non-deterministic call in the
pipeline; it always runs with an explicit timeout and its failures are mapped
onto the pipeline's error taxonomy:

    timeout                    -> ExtractionTimeoutError (retryable)
    transport error, 429, 5xx  -> ExtractionError (retryable)
    402, other 4xx             -> ExtractionError (not retryable)
    unparseable body           -> ExtractionError (retryable)
"""

import base64
import json
import logging
import re
from typing import Optional

import httpx

from qbank.config import config
from qbank.ingest.errors import ExtractionError, ExtractionTimeoutError
from qbank.ingest.models import (
    Artifact,
    ClassificationHints,
    ExtractedQuestionCandidate,
    OptionCandidate,
    optional_text,
)
from qbank.ingest.storage import ArtifactStore
from qbank.prompts import (
    QUESTION_EXTRACTION_PROMPT,
    QUESTION_EXTRACTION_SYSTEM_PROMPT,
    format_prompt,
)

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class ExtractionAdapter:
    """Interface for question extraction backends."""

    def extract(
        self,
        artifacts: list[Artifact],
        hints: ClassificationHints,
        source_name: str = "",
    ) -> list[ExtractedQuestionCandidate]:
        raise NotImplementedError


def parse_extraction_content(content: str) -> list[dict]:
    """
    Pull the questions list out of a model response.

    Accepts bare JSON, JSON inside Markdown fences, or JSON surrounded by
    prose. A bare list is accepted as the questions list.

    Raises:
        ExtractionError: If no JSON can be parsed
    """
    if not content or not content.strip():
        raise ExtractionError("Empty response from extraction service")

    text = content
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1)

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        match = _OBJECT_RE.search(text)
        if not match:
            raise ExtractionError(f"No JSON found in response: {content[:200]!r}")
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ExtractionError(f"Failed to parse extraction response: {e}") from e

    if isinstance(parsed, list):
        questions = parsed
    elif isinstance(parsed, dict):
        questions = parsed.get("questions") or []
    else:
        raise ExtractionError(f"Unexpected response type: {type(parsed).__name__}")

    if not isinstance(questions, list):
        questions = [questions]
    return [q for q in questions if isinstance(q, dict)]


def _page_list(value) -> list[int]:
    if value is None:
        return []
    if not isinstance(value, list):
        value = [value]
    pages = []
    for item in value:
        try:
            pages.append(int(item))
        except (TypeError, ValueError):
            continue
    return pages


def candidate_from_payload(raw: dict) -> ExtractedQuestionCandidate:
    """Convert one raw question dict into a candidate (no validation)."""
    raw_options = raw.get("options") or raw.get("answer_choices") or []
    if not isinstance(raw_options, list):
        raw_options = []
    raw_refs = raw.get("image_refs")
    if not isinstance(raw_refs, list):
        raw_refs = []

    options = []
    for index, opt in enumerate(raw_options):
        if not isinstance(opt, dict):
            continue
        letter = opt.get("letter") or opt.get("choice_id") or chr(ord("A") + index)
        options.append(
            OptionCandidate(
                letter=str(letter).strip().upper(),
                text=optional_text(opt.get("text") or opt.get("choice_text")) or "",
                is_correct=bool(opt.get("is_correct") or opt.get("isCorrect")),
                explanation=optional_text(opt.get("explanation")),
            )
        )

    correct = optional_text(
        raw.get("correct_answer") or raw.get("correctAnswer") or raw.get("answer")
    )

    return ExtractedQuestionCandidate(
        text=optional_text(
            raw.get("question_text") or raw.get("text") or raw.get("questionText")
        ) or "",
        options=options,
        explanation=optional_text(raw.get("explanation") or raw.get("explanation_text")),
        has_image=bool(raw.get("has_image")),
        image_refs=[str(ref) for ref in raw_refs],
        image_description=optional_text(raw.get("image_description")),
        correct_answer=correct.strip().upper() if correct else None,
        difficulty=optional_text(raw.get("difficulty")),
        category=optional_text(raw.get("category")),
        question_pages=_page_list(raw.get("question_pages") or raw.get("questionPageNumbers")),
        explanation_pages=_page_list(
            raw.get("explanation_pages") or raw.get("explanationPageNumbers")
        ),
    )


class ExtractionClient(ExtractionAdapter):
    """
    Extract questions through an OpenAI-compatible chat completions API.

    Usage:
        client = ExtractionClient(store=artifact_store)
        candidates = client.extract(artifacts, ClassificationHints(subject="Genetics"))
    """

    def __init__(
        self,
        store: Optional[ArtifactStore] = None,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        max_tokens: Optional[int] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize client.

        Args:
            store: Artifact store used to inline pages that have no URL
            api_url: Chat completions endpoint (from config if not provided)
            api_key: Bearer token (from config if not provided)
            model: Model identifier
            timeout: Per-call timeout in seconds
            max_tokens: Response token limit
            transport: Custom httpx transport (tests)
        """
        self.store = store
        self.api_url = api_url or config.EXTRACTION_API_URL
        self.api_key = api_key or config.EXTRACTION_API_KEY
        self.model = model or config.EXTRACTION_MODEL
        self.timeout = timeout or config.EXTRACTION_TIMEOUT
        self.max_tokens = max_tokens or config.EXTRACTION_MAX_TOKENS
        self.transport = transport

    def _image_url(self, artifact: Artifact) -> str:
        if artifact.url:
            return artifact.url
        if self.store is None:
            raise ExtractionError(
                f"Artifact {artifact.storage_key} has no URL and no store to inline from",
                retryable=False,
            )
        data = base64.b64encode(self.store.get(artifact.storage_key)).decode("ascii")
        return f"data:{artifact.content_type};base64,{data}"

    def build_payload(
        self,
        artifacts: list[Artifact],
        hints: ClassificationHints,
        source_name: str = "",
    ) -> dict:
        """Build the chat completions request body."""
        pages = "\n".join(f"Page {a.page_number}" for a in artifacts)
        prompt = format_prompt(
            QUESTION_EXTRACTION_PROMPT,
            source_name=source_name or "unknown",
            subject=hints.subject or "General",
            system=hints.system or "General",
            category=hints.category or "General",
            pages=pages,
        )

        content = [{"type": "text", "text": prompt}]
        for artifact in artifacts:
            content.append({"type": "image_url", "image_url": {"url": self._image_url(artifact)}})

        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": QUESTION_EXTRACTION_SYSTEM_PROMPT},
                {"role": "user", "content": content},
            ],
            "temperature": 0.1,
            "max_tokens": self.max_tokens,
        }

    def extract(
        self,
        artifacts: list[Artifact],
        hints: ClassificationHints,
        source_name: str = "",
    ) -> list[ExtractedQuestionCandidate]:
        """
        Extract question candidates from page artifacts.

        Args:
            artifacts: Stored pages, in page order
            hints: Subject/system/category of the document
            source_name: Document name, for the prompt and logs

        Returns:
            List of unvalidated candidates

        Raises:
            ExtractionTimeoutError: If the service does not answer in time
            ExtractionError: On transport, HTTP or parse failures
        """
        if not self.api_key:
            raise ExtractionError("EXTRACTION_API_KEY not configured", retryable=False)

        payload = self.build_payload(artifacts, hints, source_name)
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        logger.info(f"Requesting extraction for {source_name} ({len(artifacts)} pages)")
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(self.api_url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise ExtractionTimeoutError(
                f"Extraction timed out after {self.timeout:.0f}s for {source_name}"
            ) from e
        except httpx.HTTPError as e:
            raise ExtractionError(f"Extraction request failed: {e}") from e

        if response.status_code == 429:
            raise ExtractionError("Extraction service rate limit exceeded")
        if response.status_code == 402:
            raise ExtractionError("Extraction service credits exhausted", retryable=False)
        if response.status_code >= 400:
            raise ExtractionError(
                f"Extraction service returned HTTP {response.status_code}: {response.text[:200]}",
                retryable=response.status_code >= 500,
            )

        try:
            body = response.json()
            content = body["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExtractionError(f"Malformed extraction response envelope: {e}") from e

        questions = parse_extraction_content(content)
        candidates = [candidate_from_payload(q) for q in questions]
        logger.info(f"Extraction returned {len(candidates)} candidates for {source_name}")
        return candidates
