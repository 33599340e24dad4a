"""
Tests for llm.py - JSON Parsing and Provider Error Mapping
"""
import asyncio
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import openai
import pytest

from app.schemas.research import FoundationOutput, StageOutput
from app.services.errors import FatalProviderError, TransientProviderError
from app.services.llm import ResearchLLMClient, parse_json_response

_REQUEST = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")


def _completion(content, finish_reason="stop"):
    return SimpleNamespace(
        choices=[SimpleNamespace(finish_reason=finish_reason, message=SimpleNamespace(content=content))]
    )


def _client(content=None, side_effect=None, finish_reason="stop"):
    client = MagicMock()
    if side_effect is not None:
        client.chat.completions.create.side_effect = side_effect
    else:
        client.chat.completions.create.return_value = _completion(content, finish_reason)
    return client


def _status_error(cls, status_code):
    response = httpx.Response(status_code, request=_REQUEST)
    return cls(f"HTTP {status_code}", response=response, body=None)


class TestParseJsonResponse:
    """Tests for turning model replies into JSON objects."""

    def test_plain_object(self):
        assert parse_json_response('{"a": 1}') == {"a": 1}

    def test_strips_code_fences(self):
        content = '```json\n{"confidence": {"level": "HIGH"}}\n```'
        assert parse_json_response(content) == {"confidence": {"level": "HIGH"}}

    def test_repairs_trailing_commas(self):
        assert parse_json_response('{"items": [1, 2,], "b": 3,}') == {"items": [1, 2], "b": 3}

    def test_repair_can_be_disabled(self):
        with pytest.raises(FatalProviderError, match="Invalid JSON"):
            parse_json_response('{"b": 3,}', allow_repair=False)

    @pytest.mark.parametrize("content", [None, "", "   ", "```json\n```"])
    def test_empty_reply_is_fatal(self, content):
        with pytest.raises(FatalProviderError, match="Empty"):
            parse_json_response(content)

    def test_non_object_is_fatal(self):
        with pytest.raises(FatalProviderError, match="JSON object"):
            parse_json_response("[1, 2, 3]")

    def test_prose_is_fatal(self):
        with pytest.raises(FatalProviderError):
            parse_json_response("I could not find any information about this company.")


class TestResearchLLMClient:
    """Tests for the structured-output client with a mocked OpenAI SDK."""

    def test_returns_validated_output(self):
        client = _client('{"confidence": {"level": "MEDIUM"}, "summary": "ok"}')
        llm = ResearchLLMClient(client, model="test-model", max_tokens=500, temperature=0.0)

        result = asyncio.run(llm.complete(("system", "user"), StageOutput))

        assert result["confidence"]["level"] == "MEDIUM"
        assert result["summary"] == "ok"
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][0] == {"role": "system", "content": "system"}

    def test_schema_mismatch_is_fatal(self):
        client = _client('{"confidence": {"level": "HIGH"}}')
        llm = ResearchLLMClient(client, model="test-model")

        with pytest.raises(FatalProviderError, match="FoundationOutput"):
            asyncio.run(llm.complete("user only", FoundationOutput))

    def test_truncated_reply_is_fatal(self):
        client = _client('{"confidence": ', finish_reason="length")
        llm = ResearchLLMClient(client, model="test-model")

        with pytest.raises(FatalProviderError, match="truncated"):
            asyncio.run(llm.complete("prompt", StageOutput))

    @pytest.mark.parametrize(
        "error,expected,status_code",
        [
            (_status_error(openai.RateLimitError, 429), TransientProviderError, 429),
            (_status_error(openai.InternalServerError, 503), TransientProviderError, 503),
            (_status_error(openai.AuthenticationError, 401), FatalProviderError, 401),
            (_status_error(openai.BadRequestError, 400), FatalProviderError, 400),
            (openai.APIConnectionError(request=_REQUEST), TransientProviderError, None),
        ],
    )
    def test_maps_provider_errors(self, error, expected, status_code):
        llm = ResearchLLMClient(_client(side_effect=error), model="test-model")

        with pytest.raises(expected) as exc_info:
            asyncio.run(llm.complete("prompt", StageOutput))

        assert exc_info.value.status_code == status_code
