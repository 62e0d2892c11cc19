"""Generation session controller.

Drives the prompt protocol for one timeline request:

1. Classify the requested event on a short-lived session with the fast
   classifier model. Only an exact "yes" counts as historical.
2. Open the primary session and branch:
   - not historical: ask for a single-field JSON rejection, stream it.
   - historical: ask for a free-text account of the key moments, keep
     the reply as context, then ask for the same account reformatted as
     JSON, primed with an opening code fence, and stream that.

The classifier session is opened, used and closed before the primary
session opens. The primary session is closed exactly once, on every
exit path.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import aclosing, asynccontextmanager
from enum import StrEnum

from chronoline.events import EventType, TimelineEventEmitter
from chronoline.exceptions import ChronolineError
from chronoline.prompts import render_prompt
from chronoline.providers.base import ModelBackend, ModelSession
from chronoline.schemas.config import AppConfig
from chronoline.schemas.streaming import Fragment, Role

logger = logging.getLogger(__name__)

# Hidden assistant turn that nudges the model straight into JSON
JSON_PRIMER = "```json\n"


class ControllerState(StrEnum):
    """Lifecycle states of a TimelineSessionController."""

    CREATED = "created"
    CLASSIFYING = "classifying"
    GENERATING_REJECTION = "generating_rejection"
    GENERATING_TIMELINE = "generating_timeline"
    STREAMING = "streaming"
    CLOSED = "closed"
    ERROR = "error"


def is_affirmative(reply: str) -> bool:
    """Return True only for a reply that is exactly "yes" once trimmed and lowercased.

    Anything else, including "Yes." or an empty reply, counts as "no".
    """
    return reply.strip().lower() == "yes"


@asynccontextmanager
async def open_session(backend: ModelBackend, model_key: str) -> AsyncIterator[ModelSession]:
    """Open a session and close it on every exit path."""
    session = await backend.open(model_key)
    try:
        yield session
    finally:
        await session.close()


class TimelineSessionController:
    """Runs one timeline request against a model backend.

    One instance per request. ``run(event)`` is an async generator of
    output fragments; iterate it once. ``aclose()`` releases the primary
    session and may be called any number of times.
    """

    def __init__(
        self,
        backend: ModelBackend,
        config: AppConfig,
        *,
        emitter: TimelineEventEmitter | None = None,
    ) -> None:
        self._backend = backend
        self._config = config
        self._emitter = emitter
        self._state = ControllerState.CREATED
        self._session: ModelSession | None = None
        self._historical: bool | None = None
        self._summary = ""

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def is_historical(self) -> bool | None:
        """Classification outcome, or None before classification finishes."""
        return self._historical

    @property
    def summary(self) -> str:
        """Free-text account captured before the JSON pass (timeline branch only)."""
        return self._summary

    async def _emit(self, event_type: EventType, **data: object) -> None:
        if self._emitter is not None:
            await self._emitter.emit(event_type, **data)

    async def classify(self, event: str) -> bool:
        """Ask the classifier model whether ``event`` is historical.

        The classifier session is always closed before this returns or
        raises.
        """
        self._state = ControllerState.CLASSIFYING
        async with open_session(self._backend, self._config.classifier_model) as classifier:
            await classifier.append(self._config.system_prompt, role=Role.SYSTEM)
            await classifier.append(
                render_prompt("classify", event=event), role=Role.USER, hidden=True
            )
            reply = await classifier.generate(role=Role.ASSISTANT).text()

        historical = is_affirmative(reply)
        logger.debug("Classified %r as historical=%s (reply %r)", event, historical, reply)
        return historical

    async def run(self, event: str) -> AsyncIterator[Fragment]:
        """Classify, branch and stream the output fragments for ``event``.

        Raises:
            ChronolineError: If the controller has already been used.
            BackendError: If the backend fails at any point.
        """
        if self._state is not ControllerState.CREATED:
            raise ChronolineError(f"Controller already used (state: {self._state})")

        await self._emit(EventType.REQUEST_STARTED, event=event)
        try:
            self._historical = await self.classify(event)
            await self._emit(EventType.CLASSIFIED, historical=self._historical)

            session = await self._open_primary()
            if self._historical:
                await self._prepare_timeline(session, event)
            else:
                await self._prepare_rejection(session)

            branch = self._state
            generation = session.generate(role=Role.ASSISTANT)
            self._state = ControllerState.STREAMING
            await self._emit(
                EventType.GENERATION_STARTED, branch=str(branch), model=session.model_id
            )

            async with aclosing(generation.stream()) as fragments:
                async for fragment in fragments:
                    yield fragment
        except Exception:
            self._state = ControllerState.ERROR
            raise
        finally:
            await self.aclose()

    async def _open_primary(self) -> ModelSession:
        session = await self._backend.open(self._config.generator_model)
        self._session = session
        await session.append(self._config.system_prompt, role=Role.SYSTEM)
        return session

    async def _prepare_rejection(self, session: ModelSession) -> None:
        self._state = ControllerState.GENERATING_REJECTION
        await session.append(render_prompt("rejection"), role=Role.USER, hidden=True)

    async def _prepare_timeline(self, session: ModelSession, event: str) -> None:
        self._state = ControllerState.GENERATING_TIMELINE

        # First pass: free-form account; the reply stays in the history
        await session.append(
            render_prompt("key_events", event=event), role=Role.USER, hidden=True
        )
        self._summary = await session.generate(role=Role.ASSISTANT).text()
        logger.debug("Captured %d chars of event summary", len(self._summary))

        # Second pass: mechanical reformat into JSON
        await session.append(render_prompt("reformat"), role=Role.USER, hidden=True)
        await session.append(JSON_PRIMER, role=Role.ASSISTANT, hidden=True)

    async def aclose(self) -> None:
        """Release the primary session if it is open. Safe to call repeatedly."""
        session, self._session = self._session, None
        if self._state is not ControllerState.ERROR:
            self._state = ControllerState.CLOSED
        if session is None or session.closed:
            return
        try:
            await session.close()
        except Exception:
            logger.warning("Failed to close session on %s", session.display_name, exc_info=True)
