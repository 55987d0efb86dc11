# src/align_planner/llm/client.py

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from typing import Any

import httpx
import openai
from openai import OpenAI

from ..core.ports import ChatMessage
from ..errors import LLMError
from ..tasks.task_models import AISettings

logger = logging.getLogger(__name__)

_CHAT_SUFFIX = "/chat/completions"


def _is_auth_error(exc: Exception) -> bool:
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return True
    return exc.__class__.__name__ in {"UnauthorizedError"}


def _is_rate_limit_error(exc: Exception) -> bool:
    return isinstance(exc, openai.RateLimitError)


def _is_connection_error(exc: Exception) -> bool:
    return isinstance(exc, (openai.APIConnectionError, openai.APITimeoutError, httpx.TimeoutException))


def _is_not_found_error(exc: Exception) -> bool:
    return isinstance(exc, openai.NotFoundError)


def normalize_base_url(endpoint: str) -> str:
    """
    The settings screen stores the full chat endpoint
    ('https://host/v1/chat/completions'); the SDK wants the API root ('https://host/v1').
    """
    url = (endpoint or "").strip().rstrip("/")
    if url.endswith(_CHAT_SUFFIX):
        url = url[: -len(_CHAT_SUFFIX)]
    return url


def _close_stream(stream: Any) -> None:
    close = getattr(stream, "close", None)
    if callable(close):
        try:
            close()
        except (httpx.HTTPError, openai.APIError) as e:
            logger.debug("LLM: stream close failed: %s", e)


class OpenAIChatClient:
    """
    OpenAI-compatible streaming chat client configured from AISettings.

    - The SDK client is created lazily: no key is needed until the first request.
    - Automatic retries are disabled; a failure is reported right away as LLMError.
    """

    def __init__(self, ai_settings: AISettings, *, timeout_seconds: float = 30.0, temperature: float = 0.7) -> None:
        self._ai = ai_settings
        self._timeout = httpx.Timeout(connect=5.0, read=timeout_seconds, write=10.0, pool=5.0)
        self._temperature = temperature
        self._client: OpenAI | None = None

    @property
    def model(self) -> str:
        return self._ai.model

    def _get_client(self) -> OpenAI:
        if self._client is not None:
            return self._client

        if not self._ai.api_key.strip():
            raise LLMError("LLM is not configured (missing API key). Set it with /ai key <key>.")
        base_url = normalize_base_url(self._ai.api_endpoint)
        if not base_url:
            raise LLMError("LLM is not configured (missing API endpoint).")

        self._client = OpenAI(
            base_url=base_url,
            api_key=self._ai.api_key,
            timeout=self._timeout,
            max_retries=0,
        )
        return self._client

    def stream_chat(self, messages: list[ChatMessage], system_prompt: str | None = None) -> Iterable[str]:
        """
        Stream the reply in text chunks.

        Auth, rate-limit, 404 and network failures are mapped to LLMError with a readable message.
        """
        client = self._get_client()
        model = (self._ai.model or "").strip()
        if not model:
            raise LLMError("LLM is not configured (no model).")

        payload = list(messages)
        if system_prompt:
            payload.insert(0, {"role": "system", "content": system_prompt})

        logger.info("LLM: request model=%s messages=%d", model, len(payload))
        t0 = time.monotonic()
        stream = None
        used_any = False
        try:
            stream = client.chat.completions.create(
                model=model,
                stream=True,
                messages=payload,
                temperature=self._temperature,
            )
            for chunk in stream:
                if not chunk.choices:
                    continue
                delta = getattr(chunk.choices[0], "delta", None)
                content = getattr(delta, "content", None) if delta is not None else None
                if content:
                    if not used_any:
                        logger.info("LLM: first token from model=%s (%.2fs)", model, time.monotonic() - t0)
                    used_any = True
                    yield content
        except openai.APIError as e:
            if _is_auth_error(e):
                raise LLMError("LLM authentication failed. Check the API key.") from e
            if _is_not_found_error(e):
                raise LLMError(f"LLM model or endpoint not found: {model}") from e
            if _is_rate_limit_error(e):
                raise LLMError("LLM is rate-limited. Try again later.") from e
            if _is_connection_error(e):
                raise LLMError("LLM network/timeout error. Try again later.") from e
            raise LLMError(f"LLM request failed: {e.__class__.__name__}") from e
        except httpx.HTTPError as e:
            raise LLMError("LLM network/timeout error. Try again later.") from e
        finally:
            if stream is not None:
                _close_stream(stream)

        if not used_any:
            raise LLMError(f"Model returned no content: {model}")
        logger.debug("LLM: completed model=%s (%.2fs)", model, time.monotonic() - t0)
