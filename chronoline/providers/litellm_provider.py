"""LiteLLM adapter implementing the ModelBackend interface.

Routes generations to any LLM provider via LiteLLM's unified API.
Each session keeps its own message history and replays it on every
generation; replies are recorded back into the history so later turns
see them as context. Handles timeouts and retry with exponential
backoff for transient failures.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator
from typing import Any

import litellm

# Suppress LiteLLM's "Give Feedback / Get Help" and "Provider List" banners
litellm.suppress_debug_info = True

from chronoline.exceptions import BackendError
from chronoline.providers.base import Generation, ModelBackend, ModelSession, SessionMessage
from chronoline.schemas.config import ModelConfig
from chronoline.schemas.streaming import Fragment, Role

logger = logging.getLogger(__name__)

_DEFAULT_MAX_RETRIES = 3
_BASE_BACKOFF = 1.0  # seconds


def _short_error_reason(error: BaseException) -> str:
    """Extract a short, user-friendly reason from a LiteLLM error.

    Maps error types and status codes to concise descriptions instead
    of dumping full JSON error payloads.
    """
    error_str = str(error).lower()
    if "rate" in error_str or "429" in error_str:
        return "rate limit"
    if "overloaded" in error_str or "529" in error_str:
        return "overloaded"
    if "timeout" in error_str or isinstance(error, TimeoutError):
        return "timeout"
    if "503" in error_str or "unavailable" in error_str:
        return "service unavailable"
    if "500" in error_str or "internal" in error_str:
        return "server error"
    if "connection" in error_str:
        return "connection error"
    return str(error)[:80]


def build_messages(history: list[SessionMessage]) -> list[dict[str, str]]:
    """Convert session history to OpenAI-format messages.

    Consecutive appends with the same role are joined into one message,
    so a reply recorded after an assistant prefill extends the prefill.
    """
    messages: list[dict[str, str]] = []
    for entry in history:
        if messages and messages[-1]["role"] == entry.role:
            messages[-1]["content"] += entry.text
        else:
            messages.append({"role": str(entry.role), "content": entry.text})
    return messages


class LiteLLMGeneration(Generation):
    """A generation over the session history captured at request time."""

    def __init__(self, session: LiteLLMSession, role: Role) -> None:
        self._session = session
        self._role = role
        self._messages = build_messages(session.messages)
        self._prefill = ""
        if self._messages and self._messages[-1]["role"] == Role.ASSISTANT:
            self._prefill = self._messages[-1]["content"]
            # A final assistant turn may not end in whitespace
            sent = self._prefill.rstrip()
            if session.config.supports_prefill and sent:
                self._messages = [
                    *self._messages[:-1], {"role": str(Role.ASSISTANT), "content": sent}
                ]
            else:
                self._messages = self._messages[:-1]

    async def text(self) -> str:
        kwargs = self._session.completion_kwargs(self._messages)
        response = await self._session.call_with_retry(kwargs)
        content = _extract_content(response)
        self._session.record_reply(content, self._role)
        return content

    async def stream(self) -> AsyncIterator[Fragment]:
        # The prefill steers the model but is scaffolding, not output
        if self._prefill:
            yield Fragment(text=self._prefill, hidden=True, role=self._role)

        kwargs = self._session.completion_kwargs(self._messages)
        kwargs["stream"] = True
        response = await self._session.call_with_retry(kwargs)

        accumulated: list[str] = []
        try:
            async for chunk in response:
                delta = ""
                if chunk.choices and chunk.choices[0].delta:
                    delta = chunk.choices[0].delta.content or ""
                if delta:
                    accumulated.append(delta)
                    yield Fragment(text=delta, role=self._role)
        except (litellm.APIError, litellm.APIConnectionError, litellm.Timeout) as e:
            raise BackendError(
                f"Generation on {self._session.display_name} failed: {_short_error_reason(e)}"
            ) from e

        self._session.record_reply("".join(accumulated), self._role)


class LiteLLMSession(ModelSession):
    """Session whose history is sent to litellm.acompletion() per generation."""

    def __init__(
        self,
        config: ModelConfig,
        *,
        timeout: int = 120,
        max_retries: int = _DEFAULT_MAX_RETRIES,
    ) -> None:
        super().__init__(config)
        self._timeout = timeout
        self._max_retries = max_retries
        # Resolve API key from environment
        self._api_key = os.environ.get(config.api_key_env, "")

    @property
    def config(self) -> ModelConfig:
        return self._config

    def _generate(self, role: Role) -> Generation:
        return LiteLLMGeneration(self, role)

    def completion_kwargs(self, messages: list[dict[str, str]]) -> dict[str, Any]:
        """Build the kwargs dict for litellm.acompletion."""
        kwargs: dict[str, Any] = {
            "model": self._config.model,
            "messages": messages,
            "timeout": float(self._timeout),
            "max_tokens": self._config.max_tokens,
        }
        if self._api_key:
            kwargs["api_key"] = self._api_key
        if self._config.api_base:
            kwargs["api_base"] = self._config.api_base
        return kwargs

    async def call_with_retry(self, kwargs: dict[str, Any]) -> Any:
        """Call litellm.acompletion with exponential backoff retry.

        Retries on transient errors (rate limits, server errors, timeouts).
        Non-retryable errors (auth, invalid request) are raised immediately.

        Raises:
            BackendError: If the call fails permanently or all retries fail.
        """
        last_error: Exception | None = None

        for attempt in range(self._max_retries):
            try:
                return await litellm.acompletion(**kwargs)
            except TimeoutError as e:
                last_error = e
            except litellm.AuthenticationError:
                raise BackendError(
                    f"Authentication failed for {self._config.display_name}. "
                    f"Check that {self._config.api_key_env} is set correctly."
                ) from None
            except litellm.BadRequestError as e:
                raise BackendError(
                    f"Bad request to {self._config.display_name}: {_short_error_reason(e)}"
                ) from e
            except (
                litellm.Timeout,
                litellm.RateLimitError,
                litellm.ServiceUnavailableError,
                litellm.InternalServerError,
                litellm.APIConnectionError,
            ) as e:
                last_error = e

            if attempt < self._max_retries - 1:
                backoff = _BASE_BACKOFF * (2**attempt)
                logger.warning(
                    "Retry %d/%d for %s (%s, backoff: %.1fs)",
                    attempt + 1,
                    self._max_retries,
                    self._config.display_name,
                    _short_error_reason(last_error),
                    backoff,
                )
                await asyncio.sleep(backoff)

        raise BackendError(
            f"{self._config.display_name} unavailable after {self._max_retries} "
            f"attempts ({_short_error_reason(last_error)})"
        ) from last_error


def _extract_content(response: Any) -> str:
    """Extract text content from a LiteLLM response."""
    if not response.choices:
        return ""
    message = response.choices[0].message
    return (message.content or "") if message else ""


class LiteLLMBackend(ModelBackend):
    """Opens LiteLLM sessions on models from the registry."""

    def __init__(
        self,
        registry: dict[str, ModelConfig],
        *,
        timeout: int = 120,
        max_retries: int = _DEFAULT_MAX_RETRIES,
    ) -> None:
        self._registry = registry
        self._timeout = timeout
        self._max_retries = max_retries

    @property
    def registry(self) -> dict[str, ModelConfig]:
        return dict(self._registry)

    async def open(self, model_key: str) -> LiteLLMSession:
        config = self._registry.get(model_key)
        if config is None:
            raise BackendError(f"Unknown model '{model_key}'")
        logger.debug("Opening session on %s (%s)", config.display_name, config.model)
        return LiteLLMSession(config, timeout=self._timeout, max_retries=self._max_retries)
