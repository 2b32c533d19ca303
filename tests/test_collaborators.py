"""
Tests for the semantic validator client, the generative repairers and the
error-learning store.

HTTP sessions are replaced with small fakes that record requests.
"""

import json
from unittest.mock import AsyncMock

import pytest

from flow_agent.agent.collaborators import (
    ErrorLearningStore,
    FixHint,
    HttpSemanticValidator,
    LLMRepairer,
    build_repair_messages,
    format_known_fixes,
    parse_repair_response,
    parse_validator_errors,
)
from flow_agent.agent.error_handler import AuthenticationError, ExternalServiceError, FailureBackoff
from flow_agent.agent.signatures import normalize_error
from flow_agent.core.llm_client import LLMResponse, LLMStatusError
from flow_agent.models.diagnostics import ExternalError
from flow_agent.models.record import HEADER_LINE


class FakeResponse:
    def __init__(self, status, body):
        self.status = status
        self.body = body

    async def json(self, content_type=None):
        return self.body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return False


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.requests = []
        self.closed = False

    def post(self, url, json=None, headers=None):
        self.requests.append({"url": url, "json": json, "headers": headers or {}})
        return self.response

    async def close(self):
        self.closed = True


def validator_with(status, body):
    validator = HttpSemanticValidator("https://validator/api", token="tok", bot_id="bot-1")
    validator.session = FakeSession(FakeResponse(status, body))
    return validator


class TestValidatorErrors:
    """Test normalization of the validator's error payload."""

    def test_empty(self):
        assert parse_validator_errors(None) == []
        assert parse_validator_errors([]) == []

    def test_plain_string(self):
        assert parse_validator_errors("boom") == [ExternalError(message="boom")]

    def test_nested_form(self):
        errors = parse_validator_errors(
            [
                {
                    "node_num": "300",
                    "row_num": 4,
                    "err_msgs": [
                        {"field_name": "Message", "error_description": "too long", "field_entry": "x"},
                        {"field_name": "Next Nodes", "error_description": "bad node"},
                    ],
                }
            ]
        )
        assert [(e.node_id, e.row, e.field, e.message) for e in errors] == [
            (300, 4, "Message", "too long"),
            (300, 4, "Next Nodes", "bad node"),
        ]
        assert errors[0].entry == "x"

    def test_flat_form(self):
        errors = parse_validator_errors({"nodeId": "abc", "field": "Command", "message": "unknown command"})
        assert errors == [ExternalError(node_id=None, field="Command", message="unknown command")]

    def test_nested_form_with_string_messages(self):
        errors = parse_validator_errors([{"node_num": 5, "err_msgs": ["bad thing"]}])
        assert errors == [ExternalError(node_id=5, message="bad thing")]


class TestHttpSemanticValidator:
    """Test the HTTP validator client."""

    async def test_accepted(self):
        validator = validator_with(200, {"valid": True, "errors": [], "versionId": "v9"})
        outcome = await validator.validate("doc")

        assert outcome.valid
        assert outcome.version_id == "v9"
        request = validator.session.requests[0]
        assert request["json"] == {"csv": "doc", "botId": "bot-1", "token": "tok"}
        assert request["headers"]["Authorization"] == "Bearer tok"

    async def test_errors_reported(self):
        body = {"valid": False, "errors": [{"nodeId": 300, "field": "Message", "message": "too long"}]}
        outcome = await validator_with(200, body).validate("doc")

        assert not outcome.valid
        assert outcome.errors == [ExternalError(node_id=300, field="Message", message="too long")]

    async def test_string_error_messages(self):
        body = {"valid": False, "errors": [{"node_num": 5, "err_msgs": ["bad thing"]}]}
        outcome = await validator_with(200, body).validate("doc")
        assert outcome.errors == [ExternalError(node_id=5, message="bad thing")]

    async def test_valid_flag_with_errors_is_not_valid(self):
        body = {"valid": True, "errors": [{"message": "too long"}]}
        assert not (await validator_with(200, body).validate("doc")).valid

    async def test_http_401(self):
        with pytest.raises(AuthenticationError):
            await validator_with(401, {}).validate("doc")

    async def test_auth_error_in_body(self):
        with pytest.raises(AuthenticationError, match="expired"):
            await validator_with(200, {"authError": True, "error": "token expired"}).validate("doc")

    async def test_server_error(self):
        with pytest.raises(ExternalServiceError) as exc_info:
            await validator_with(500, {"error": "down for maintenance"}).validate("doc")
        assert exc_info.value.status == 500
        assert not isinstance(exc_info.value, AuthenticationError)

    async def test_no_json_body(self):
        with pytest.raises(ExternalServiceError):
            await validator_with(502, None).validate("doc")

    async def test_close(self):
        validator = validator_with(200, {})
        session = validator.session
        await validator.close()
        assert session.closed


class TestRepairResponse:
    """Test reading the generative repairer's answer."""

    def test_json_answer(self):
        proposal = parse_repair_response(
            json.dumps({"csv": "a,b\nc,d", "fixesMade": ["quoted cell"], "stillBroken": ["node 5"]})
        )
        assert proposal.csv == "a,b\nc,d"
        assert proposal.fixes_made == ["quoted cell"]
        assert proposal.still_broken == ["node 5"]

    def test_bare_document_in_fence(self):
        proposal = parse_repair_response(f"```csv\n{HEADER_LINE}\n1,D,Start\n```")
        assert proposal.csv == f"{HEADER_LINE}\n1,D,Start"
        assert proposal.fixes_made == []

    def test_no_document(self):
        with pytest.raises(ValueError):
            parse_repair_response("I could not fix this.")

    def test_prompt_messages(self):
        errors = [ExternalError(node_id=300, field="Message", message="too long")]
        messages = build_repair_messages("doc", errors, hints="PROVEN FIXES", iteration=2)

        assert messages[0].role == "system"
        assert HEADER_LINE in messages[0].content
        assert "Iteration 2" in messages[1].content
        assert "node 300 [Message]: too long" in messages[1].content
        assert "PROVEN FIXES" in messages[1].content
        assert messages[1].content.endswith("Document:\ndoc")


class TestLLMRepairer:
    """Test the model-backed repairer with a mocked client."""

    async def test_proposal(self):
        client = AsyncMock()
        client.call.return_value = LLMResponse(content=json.dumps({"csv": "a,b\nc,d"}), model="test-model")
        repairer = LLMRepairer(client)

        proposal = await repairer.propose("doc", [ExternalError(message="bad")])

        assert proposal.csv == "a,b\nc,d"
        assert client.call.await_args.kwargs["json_mode"] is True

    async def test_unauthorized(self):
        client = AsyncMock()
        client.call.side_effect = LLMStatusError(401, "invalid key")
        with pytest.raises(AuthenticationError):
            await LLMRepairer(client).propose("doc", [ExternalError(message="bad")])

    async def test_provider_error(self):
        client = AsyncMock()
        client.call.side_effect = LLMStatusError(503, "overloaded")
        with pytest.raises(ExternalServiceError) as exc_info:
            await LLMRepairer(client).propose("doc", [ExternalError(message="bad")])
        assert exc_info.value.status == 503

    async def test_close(self):
        client = AsyncMock()
        await LLMRepairer(client).close()
        client.close_session.assert_awaited_once()


class TestKnownFixes:
    """Test formatting of proven fixes for the repair prompt."""

    def test_best_fix_per_type(self):
        hints = [
            FixHint(signature="a", error_type="INVALID_JSON", description="quote keys", confidence=0.8),
            FixHint(signature="b", error_type="INVALID_JSON", description="drop braces", confidence=0.6),
            FixHint(signature="c", error_type="MESSAGE_LENGTH", description="shorten", confidence=0.5),
        ]
        text = format_known_fixes(hints)
        assert text.splitlines() == [
            "PROVEN FIXES (apply these first):",
            "- For INVALID_JSON errors: quote keys (80% success rate)",
            "- For MESSAGE_LENGTH errors: shorten (50% success rate)",
        ]

    def test_no_hints(self):
        assert format_known_fixes([]) == ""


class TestErrorLearningStore:
    """Test the in-memory record and the remote mirror."""

    async def test_confidence_filter(self):
        store = ErrorLearningStore()
        error = ExternalError(node_id=300, field="Message", message="too long")

        pattern_id = await store.log_pattern(error, "")
        await store.log_fix_attempt(pattern_id, "shortened message", True)
        await store.log_fix_attempt(pattern_id, "removed emoji", False)

        hints = await store.get_known_fixes([ExternalError(node_id=301, field="Message", message="too long")])
        assert [hint.description for hint in hints] == ["shortened message"]
        assert hints[0].error_type == "MESSAGE_ERROR"

    async def test_occurrences_counted_per_signature(self):
        store = ErrorLearningStore()
        await store.log_pattern(ExternalError(node_id=1, message="Node 1 does not exist"))
        await store.log_pattern(ExternalError(node_id=2, message="Node 2 does not exist"))

        signature = normalize_error(ExternalError(message="Node 9 does not exist"))
        assert store.patterns[signature]["occurrence_count"] == 2

    async def test_remote_pattern_id(self):
        store = ErrorLearningStore("https://store/api/", token="secret")
        store.session = FakeSession(FakeResponse(200, {"pattern_id": 42}))

        pattern_id = await store.log_pattern(ExternalError(field="Message", message="too long"))

        assert pattern_id == "42"
        request = store.session.requests[0]
        assert request["url"] == "https://store/api/patterns"
        assert request["headers"] == {"Authorization": "Bearer secret"}

    async def test_failures_are_swallowed_and_throttled(self):
        store = ErrorLearningStore("https://store/api", backoff=FailureBackoff(max_failures=3, rng=lambda: 0.99))
        store.session = FakeSession(FakeResponse(500, {}))
        error = ExternalError(message="too long")

        for _ in range(5):
            assert await store.log_pattern(error) == normalize_error(error)

        assert len(store.session.requests) == 3

    async def test_remote_percentage_confidence(self):
        fixes = [
            {"error_patterns": {"error_signature": "sig"}, "fix_description": "shortened", "confidence_score": 85},
            {"error_patterns": {"error_signature": "sig"}, "fix_description": "reworded", "confidence_score": 0.6},
            "not a fix",
        ]
        store = ErrorLearningStore("https://store/api")
        store.session = FakeSession(FakeResponse(200, {"fixes": fixes}))

        hints = await store.get_known_fixes([ExternalError(field="Message", message="too long")])

        assert [(hint.description, hint.confidence) for hint in hints] == [("shortened", 0.85), ("reworded", 0.6)]
