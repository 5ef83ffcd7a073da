"""
Tests for the extraction adapter (HTTP boundary mocked with httpx.MockTransport).
"""

import json

import httpx
import pytest

from qbank.ingest.errors import ExtractionError, ExtractionTimeoutError
from qbank.ingest.extraction import (
    ExtractionClient,
    candidate_from_payload,
    parse_extraction_content,
)
from qbank.ingest.models import Artifact, ClassificationHints
from qbank.ingest.validation import validate_candidate

from tests.fakes import RecordingArtifactStore


QUESTIONS = {
    "questions": [
        {
            "question_text": "A 60-year-old man has crushing chest pain. Which artery is occluded?",
            "options": [
                {"letter": "A", "text": "LAD", "is_correct": True, "explanation": "Anterior leads"},
                {"letter": "B", "text": "RCA", "is_correct": False},
            ],
            "correct_answer": "A",
            "explanation": "ST elevation in V1-V4.",
            "difficulty": "hard",
            "question_pages": [1],
            "explanation_pages": [2, 3],
        }
    ]
}


def _chat_response(content: str, status: int = 200) -> httpx.Response:
    return httpx.Response(status, json={"choices": [{"message": {"content": content}}]})


def _client(handler, store=None) -> ExtractionClient:
    return ExtractionClient(
        store=store,
        api_url="https://extraction.test/v1/chat/completions",
        api_key="test-key",
        model="test-model",
        timeout=5,
        transport=httpx.MockTransport(handler),
    )


ARTIFACTS = [
    Artifact(unit_index=0, storage_key="sessions/s/page-001.png", url="https://cdn.test/page-001.png"),
    Artifact(unit_index=1, storage_key="sessions/s/page-002.png", url="https://cdn.test/page-002.png"),
]


class TestParseContent:
    """Tests for tolerant response parsing."""

    def test_bare_json(self):
        """Plain JSON should parse."""
        assert len(parse_extraction_content(json.dumps(QUESTIONS))) == 1

    def test_fenced_json(self):
        """JSON inside Markdown fences should parse."""
        content = "Here you go:\n```json\n" + json.dumps(QUESTIONS) + "\n```"
        assert len(parse_extraction_content(content)) == 1

    def test_json_in_prose(self):
        """JSON surrounded by prose should parse."""
        content = "Extracted questions: " + json.dumps(QUESTIONS) + " Done."
        assert len(parse_extraction_content(content)) == 1

    def test_bare_list(self):
        """A bare list should be accepted as the question list."""
        assert len(parse_extraction_content(json.dumps(QUESTIONS["questions"]))) == 1

    def test_unparseable(self):
        """Content without JSON should raise a retryable ExtractionError."""
        with pytest.raises(ExtractionError) as exc_info:
            parse_extraction_content("I could not read these pages.")
        assert exc_info.value.retryable

    def test_empty(self):
        """Empty content should raise ExtractionError."""
        with pytest.raises(ExtractionError):
            parse_extraction_content("  ")


class TestCandidateFromPayload:
    """Tests for mapping raw question dicts onto candidates."""

    def test_full_payload(self):
        """All documented fields should map onto the candidate."""
        candidate = candidate_from_payload(QUESTIONS["questions"][0])
        assert candidate.text.startswith("A 60-year-old")
        assert [o.letter for o in candidate.options] == ["A", "B"]
        assert candidate.options[0].explanation == "Anterior leads"
        assert candidate.correct_answer == "A"
        assert candidate.difficulty == "hard"
        assert candidate.question_pages == [1]
        assert candidate.explanation_pages == [2, 3]

    def test_alternative_keys(self):
        """Alternative key spellings should be accepted."""
        candidate = candidate_from_payload(
            {
                "questionText": "Which vitamin deficiency causes this rash?",
                "answer_choices": [{"choice_text": "Niacin"}, {"choice_text": "Thiamine"}],
                "correctAnswer": "a",
                "questionPageNumbers": ["4"],
            }
        )
        assert candidate.text.startswith("Which vitamin")
        assert [o.letter for o in candidate.options] == ["A", "B"]
        assert candidate.correct_answer == "A"
        assert candidate.question_pages == [4]

    def test_loosely_typed_fields_coerced(self):
        """Numbers become text and structured values are dropped."""
        candidate = candidate_from_payload(
            {
                "question_text": "Which nerve is injured in this fracture?",
                "options": [
                    {"letter": "A", "text": 12, "explanation": {"why": "no"}},
                    {"letter": "B", "text": "Radial", "is_correct": True},
                ],
                "difficulty": 2,
                "explanation": ["Radial groove"],
                "category": None,
                "image_refs": "fig1",
            }
        )
        assert candidate.difficulty == "2"
        assert candidate.explanation is None
        assert candidate.options[0].text == "12"
        assert candidate.options[0].explanation is None
        assert candidate.image_refs == []
        assert validate_candidate(candidate).valid


class TestExtractionClient:
    """Tests for ExtractionClient.extract."""

    def test_success(self):
        """A good response should produce candidates; request carries pages and hints."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return _chat_response(json.dumps(QUESTIONS))

        candidates = _client(handler).extract(
            ARTIFACTS, ClassificationHints(subject="Cardiology", system="Cardiovascular"), "block1.pdf"
        )

        assert len(candidates) == 1
        assert seen["auth"] == "Bearer test-key"
        body = seen["body"]
        assert body["model"] == "test-model"
        user_content = body["messages"][1]["content"]
        assert "Cardiology" in user_content[0]["text"]
        assert "block1.pdf" in user_content[0]["text"]
        assert [part["image_url"]["url"] for part in user_content[1:]] == [
            "https://cdn.test/page-001.png",
            "https://cdn.test/page-002.png",
        ]

    def test_inlines_artifacts_without_url(self):
        """Artifacts without a URL should be sent as base64 data URLs."""
        store = RecordingArtifactStore()
        store.put("sessions/s/page-001.png", b"png-bytes")
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return _chat_response(json.dumps({"questions": []}))

        _client(handler, store=store).extract(
            [Artifact(unit_index=0, storage_key="sessions/s/page-001.png")], ClassificationHints()
        )
        url = seen["body"]["messages"][1]["content"][1]["image_url"]["url"]
        assert url.startswith("data:image/png;base64,")

    def test_timeout(self):
        """A transport timeout should raise ExtractionTimeoutError."""

        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ExtractionTimeoutError) as exc_info:
            _client(handler).extract(ARTIFACTS, ClassificationHints())
        assert exc_info.value.retryable

    def test_connection_error_retryable(self):
        """Connection failures should be retryable extraction errors."""

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ExtractionError) as exc_info:
            _client(handler).extract(ARTIFACTS, ClassificationHints())
        assert exc_info.value.retryable

    def test_rate_limited_retryable(self):
        """HTTP 429 should be retryable."""
        with pytest.raises(ExtractionError) as exc_info:
            _client(lambda r: httpx.Response(429)).extract(ARTIFACTS, ClassificationHints())
        assert exc_info.value.retryable

    def test_credits_exhausted_not_retryable(self):
        """HTTP 402 should not be retryable."""
        with pytest.raises(ExtractionError) as exc_info:
            _client(lambda r: httpx.Response(402)).extract(ARTIFACTS, ClassificationHints())
        assert not exc_info.value.retryable

    def test_server_error_retryable(self):
        """HTTP 5xx should be retryable; other 4xx should not."""
        with pytest.raises(ExtractionError) as exc_info:
            _client(lambda r: httpx.Response(503, text="busy")).extract(ARTIFACTS, ClassificationHints())
        assert exc_info.value.retryable

        with pytest.raises(ExtractionError) as exc_info:
            _client(lambda r: httpx.Response(400, text="bad")).extract(ARTIFACTS, ClassificationHints())
        assert not exc_info.value.retryable

    def test_malformed_envelope(self):
        """A body without choices should raise ExtractionError."""
        with pytest.raises(ExtractionError):
            _client(lambda r: httpx.Response(200, json={"error": "x"})).extract(
                ARTIFACTS, ClassificationHints()
            )

    def test_missing_api_key(self):
        """Without an API key the call should fail without retrying."""
        client = _client(lambda r: _chat_response("{}"))
        client.api_key = None
        with pytest.raises(ExtractionError) as exc_info:
            client.extract(ARTIFACTS, ClassificationHints())
        assert not exc_info.value.retryable
