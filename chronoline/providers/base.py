"""Abstract model backend and session interfaces.

The session controller talks to language models exclusively through
these classes: open a session, append message fragments, request a
generation, read it either whole or as a stream of fragments, close.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from chronoline.exceptions import SessionClosedError
from chronoline.schemas.config import ModelConfig
from chronoline.schemas.streaming import Fragment, Role

logger = logging.getLogger(__name__)


class SessionMessage:
    """One appended message in a session's history."""

    __slots__ = ("text", "role", "hidden")

    def __init__(self, text: str, role: Role, hidden: bool) -> None:
        self.text = text
        self.role = role
        self.hidden = hidden

    def __repr__(self) -> str:
        return f"SessionMessage(role={self.role!s}, hidden={self.hidden}, text={self.text[:40]!r})"


class Generation(ABC):
    """A single pending generation on a session.

    Exactly one of ``text()`` or ``stream()`` is consumed per generation.
    Once the reply is complete it is recorded in the session history.
    """

    @abstractmethod
    async def text(self) -> str:
        """Wait for the full reply and return its visible text."""

    @abstractmethod
    def stream(self) -> AsyncIterator[Fragment]:
        """Yield the reply fragment by fragment, in generation order."""


class ModelSession(ABC):
    """A stateful conversation with one model.

    Lifecycle: opened, zero or more appends, generations, closed once.
    Any use after ``close()``, including a second ``close()``, raises
    SessionClosedError.
    """

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        self._messages: list[SessionMessage] = []
        self._closed = False

    @property
    def model_id(self) -> str:
        """LiteLLM model identifier backing this session."""
        return self._config.model

    @property
    def display_name(self) -> str:
        return self._config.display_name

    @property
    def messages(self) -> list[SessionMessage]:
        """Message history in append order."""
        return list(self._messages)

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionClosedError(f"Session on {self._config.model} is already closed")

    async def append(
        self, text: str, *, role: Role = Role.USER, hidden: bool = False
    ) -> None:
        """Append a message fragment to the conversation history."""
        self._ensure_open()
        self._messages.append(SessionMessage(text, role, hidden))

    def generate(self, *, role: Role = Role.ASSISTANT) -> Generation:
        """Request a generation continuing the conversation as ``role``."""
        self._ensure_open()
        return self._generate(role)

    def record_reply(self, text: str, role: Role = Role.ASSISTANT) -> None:
        """Append a finished reply to the history as context for later turns.

        Generations call this once their reply is complete, so a following
        generation on the same session sees it.
        """
        if text and not self._closed:
            self._messages.append(SessionMessage(text, role, hidden=False))

    async def close(self) -> None:
        """Release the session. Must be called exactly once."""
        self._ensure_open()
        self._closed = True
        logger.debug("Closed session on %s", self._config.display_name)
        await self._release()

    @abstractmethod
    def _generate(self, role: Role) -> Generation:
        """Build the backend-specific generation for the current history."""

    async def _release(self) -> None:
        """Free backend resources. Default: nothing to release."""


class ModelBackend(ABC):
    """Factory for model sessions."""

    @abstractmethod
    async def open(self, model_key: str) -> ModelSession:
        """Open a new session on the registry model ``model_key``.

        Raises:
            BackendError: If the session cannot be opened.
        """
