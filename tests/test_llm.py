"""Tests for storyline.llm — the arbiter's completion backends."""

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from storyline.arbiter import ArbiterQueue, EvaluationRequest
from storyline.llm import EchoLLM, HttpLLM, LLMError

VERDICT = '{"decision": "win", "next_transition": "gate-market", "reason": "The guard stepped aside"}'


def _response(body, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    if status >= 400:
        resp.raise_for_status.side_effect = httpx.HTTPStatusError("", request=MagicMock(), response=resp)
    return resp


def _request() -> EvaluationRequest:
    return EvaluationRequest(
        checkpoint_key="gate",
        checkpoint_name="The City Gate",
        objective="Get past the gate guard",
        latest_text="The guard opens the gate.",
        reason="trigger",
        turn=1,
    )


@pytest.fixture
def post():
    """Patch httpx.AsyncClient.post; set `.return_value` or `.side_effect` per test."""
    mock = AsyncMock(return_value=_response({"results": [{"text": VERDICT}]}))
    with patch("httpx.AsyncClient.post", mock):
        yield mock


# ---------------------------------------------------------------------------
# Request shape
# ---------------------------------------------------------------------------

class TestKoboldCpp:
    async def test_returns_verdict_text(self, post) -> None:
        llm = HttpLLM("http://localhost:5001/")
        assert await llm("arbiter", "Judge the checkpoint.") == VERDICT
        assert post.call_args[0][0] == "http://localhost:5001/api/v1/generate"

    async def test_response_length_caps_the_verdict(self, post) -> None:
        await HttpLLM("http://localhost:5001", response_length=256)("arbiter", "p")
        assert post.call_args.kwargs["json"] == {"prompt": "p", "max_length": 256}

    async def test_zero_length_leaves_limit_to_backend(self, post) -> None:
        await HttpLLM("http://localhost:5001", model="ignored")("arbiter", "p")
        assert post.call_args.kwargs["json"] == {"prompt": "p"}

    async def test_auth_header_only_with_key(self, post) -> None:
        await HttpLLM("http://localhost:5001")("arbiter", "p")
        assert "Authorization" not in post.call_args.kwargs["headers"]
        await HttpLLM("http://localhost:5001", api_key="secret")("arbiter", "p")
        assert post.call_args.kwargs["headers"]["Authorization"] == "Bearer secret"


class TestOpenAI:
    async def test_model_and_max_tokens(self, post) -> None:
        post.return_value = _response({"choices": [{"text": "FAIL"}]})
        llm = HttpLLM("http://localhost:8080", provider_format="openai", model="mistral-7b", response_length=64)
        assert await llm("arbiter", "p") == "FAIL"
        assert post.call_args[0][0] == "http://localhost:8080/v1/completions"
        assert post.call_args.kwargs["json"] == {"prompt": "p", "model": "mistral-7b", "max_tokens": 64}

    async def test_kobold_body_is_rejected(self, post) -> None:
        llm = HttpLLM("http://localhost:8080", provider_format="openai")
        with pytest.raises(LLMError, match="OpenAI-compatible"):
            await llm("arbiter", "p")


class TestSettings:
    def test_negative_response_length_clamped(self) -> None:
        llm = HttpLLM("http://localhost:5001", response_length=-10)
        assert llm.response_length == 0
        llm.response_length = 128
        assert llm.response_length == 128

    def test_unknown_format(self) -> None:
        with pytest.raises(ValueError, match="grpc"):
            HttpLLM("http://localhost:5001", provider_format="grpc")


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFailures:
    @pytest.mark.parametrize("error, message", [
        (httpx.ConnectError("refused"), "Cannot connect"),
        (httpx.ReadTimeout("slow"), "timed out"),
        (httpx.ReadError("reset by peer"), "request failed"),
    ])
    async def test_transport_errors(self, post, error, message) -> None:
        post.side_effect = error
        with pytest.raises(LLMError, match=message):
            await HttpLLM("http://localhost:5001")("arbiter", "p")

    async def test_http_status(self, post) -> None:
        post.return_value = _response({}, status=503)
        with pytest.raises(LLMError, match="HTTP 503"):
            await HttpLLM("http://localhost:5001")("arbiter", "p")

    async def test_non_json_body(self, post) -> None:
        resp = _response({})
        resp.json.side_effect = ValueError("Expecting value")
        post.return_value = resp
        with pytest.raises(LLMError, match="non-JSON"):
            await HttpLLM("http://localhost:5001")("arbiter", "p")

    @pytest.mark.parametrize("body", [[], {"results": []}, {"results": ["text"]}, {"results": [{}]}])
    async def test_unexpected_body(self, post, body) -> None:
        post.return_value = _response(body)
        with pytest.raises(LLMError, match="KoboldCpp"):
            await HttpLLM("http://localhost:5001")("arbiter", "p")


# ---------------------------------------------------------------------------
# Through the arbiter queue
# ---------------------------------------------------------------------------

class TestWithQueue:
    async def test_backend_verdict_drives_outcome(self, post) -> None:
        queue = ArbiterQueue(HttpLLM("http://localhost:5001", response_length=256))
        payload = await queue.evaluate(_request())
        assert payload.outcome == "win"
        assert payload.next_transition_id == "gate-market"
        assert "Get past the gate guard" in post.call_args.kwargs["json"]["prompt"]

    async def test_backend_down_is_continue(self, post) -> None:
        post.side_effect = httpx.ConnectError("refused")
        queue = ArbiterQueue(HttpLLM("http://localhost:5001"))
        payload = await queue.evaluate(_request())
        assert payload.outcome == "continue"
        assert "Cannot connect" in payload.error

    async def test_echo_never_advances(self) -> None:
        payload = await ArbiterQueue(EchoLLM()).evaluate(_request())
        assert payload.outcome == "continue"
        assert payload.error is None
