from __future__ import annotations

import asyncio
import json
import logging
import re
from functools import lru_cache
from contextlib import contextmanager
from threading import BoundedSemaphore
from typing import Any, Type

import openai
from openai import OpenAI
from pydantic import BaseModel, ValidationError

from ..core.config import get_settings
from .errors import FatalProviderError, TransientProviderError

logger = logging.getLogger(__name__)

_llm_semaphore: BoundedSemaphore | None = None

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def _get_semaphore() -> BoundedSemaphore:
    """
    Lazy-initialised global semaphore for limiting concurrent LLM calls.
    """
    global _llm_semaphore
    if _llm_semaphore is None:
        settings = get_settings()
        _llm_semaphore = BoundedSemaphore(settings.LLM_MAX_CONCURRENCY)
    return _llm_semaphore


@contextmanager
def limit_llm_concurrency():
    """
    Simple context manager to bound concurrent calls to the LLM provider.

    Use inside the thread that actually performs the HTTP request.
    """
    sem = _get_semaphore()
    sem.acquire()
    try:
        yield
    finally:
        sem.release()


@lru_cache(maxsize=1)
def get_llm_client() -> OpenAI:
    """
    Centralised factory for the OpenAI‑compatible client.

    - If OPENROUTER_API_KEY is set, route requests via OpenRouter.
    - Otherwise, fall back to the standard OpenAI API using OPENAI_API_KEY.

    Retries are handled by ``with_retry`` so the SDK's own retries are disabled.
    """
    settings = get_settings()

    if settings.OPENROUTER_API_KEY:
        return OpenAI(
            base_url="https://openrouter.ai/api/v1",
            api_key=settings.OPENROUTER_API_KEY.strip(),
            timeout=settings.LLM_TIMEOUT_SECONDS,
            max_retries=0,
            default_headers={
                "HTTP-Referer": settings.FRONTEND_ORIGIN or "http://localhost:3000",
                "X-Title": "Company Research Orchestrator",
            },
        )

    if settings.OPENAI_API_KEY:
        return OpenAI(
            api_key=settings.OPENAI_API_KEY.strip(),
            timeout=settings.LLM_TIMEOUT_SECONDS,
            max_retries=0,
        )

    raise RuntimeError(
        "No LLM API key configured. Set either OPENAI_API_KEY or OPENROUTER_API_KEY."
    )


def parse_json_response(content: str | None, allow_repair: bool = True) -> dict[str, Any]:
    """
    Parse a model reply into a JSON object.

    Markdown code fences are stripped; with ``allow_repair`` trailing commas
    are removed before a second attempt. Raises ``FatalProviderError``.
    """
    text = _CODE_FENCE_RE.sub("", (content or "").strip())
    if not text:
        raise FatalProviderError("Empty response from LLM")

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        if not allow_repair:
            raise FatalProviderError(f"Invalid JSON response: {e}") from e
        try:
            data = json.loads(_TRAILING_COMMA_RE.sub(r"\1", text))
        except json.JSONDecodeError:
            raise FatalProviderError(f"Invalid JSON response: {e}") from e

    if not isinstance(data, dict):
        raise FatalProviderError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _map_provider_error(error: Exception) -> Exception:
    if isinstance(error, openai.APIStatusError):
        status = error.status_code
        if status == 429 or 500 <= status < 600:
            return TransientProviderError(str(error), status_code=status)
        return FatalProviderError(str(error), status_code=status)
    if isinstance(error, openai.APIConnectionError):
        return TransientProviderError(str(error))
    return error


class ResearchLLMClient:
    """
    Structured-output client: one prompt in, one schema-validated JSON object out.
    """

    def __init__(
        self,
        client: OpenAI | None = None,
        *,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> None:
        settings = get_settings()
        self._client = client
        self.model = model or settings.LLM_MODEL
        self.max_tokens = max_tokens or settings.LLM_MAX_TOKENS
        self.temperature = settings.LLM_TEMPERATURE if temperature is None else temperature

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = get_llm_client()
        return self._client

    def _call_sync(self, system_prompt: str, user_prompt: str) -> str:
        with limit_llm_concurrency():
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                response_format={"type": "json_object"},
            )
        choice = resp.choices[0]
        if choice.finish_reason == "length":
            raise FatalProviderError("LLM response truncated at max_tokens")
        return choice.message.content or ""

    async def complete(self, prompt: tuple[str, str] | str, schema: Type[BaseModel]) -> dict[str, Any]:
        """
        Run one completion and validate it against ``schema``.

        Raises ``TransientProviderError`` for rate limits, 5xx and network
        errors, ``FatalProviderError`` for everything the caller should not retry.
        """
        if isinstance(prompt, str):
            system_prompt, user_prompt = "", prompt
        else:
            system_prompt, user_prompt = prompt

        try:
            content = await asyncio.to_thread(self._call_sync, system_prompt, user_prompt)
        except (openai.APIStatusError, openai.APIConnectionError) as e:
            raise _map_provider_error(e) from e

        data = parse_json_response(content)
        try:
            validated = schema.model_validate(data)
        except ValidationError as e:
            logger.warning(
                "LLM response failed schema validation: %s",
                e.errors()[:3],
            )
            raise FatalProviderError(f"Response does not match {schema.__name__}: {e.error_count()} errors") from e

        return validated.model_dump(mode="json")
