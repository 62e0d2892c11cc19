"""Token relay: fragment stream to server-sent events.

Reframes the controller's fragments as ``data: <json>\\n\\n`` events.
Hidden fragments are dropped. Every run ends with exactly one terminal
frame, ``{"done": true}`` or ``{"type": "error", ...}``, unless the
consumer goes away first, in which case nothing more is sent. The
controller is closed on every exit path.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

import anyio

from chronoline.controller import TimelineSessionController
from chronoline.events import EventType, TimelineEventEmitter
from chronoline.exceptions import ChronolineError
from chronoline.schemas.streaming import StreamFrame

logger = logging.getLogger(__name__)

_GENERIC_ERROR = "The timeline could not be generated. Please try again."


def error_message(error: BaseException) -> str:
    """Human-readable text for an error frame, never a traceback."""
    if isinstance(error, ChronolineError) and str(error):
        return str(error)
    if isinstance(error, TimeoutError):
        return "The model took too long to respond."
    return _GENERIC_ERROR


class TokenRelay:
    """Relays one controller run as server-sent event frames.

    Iterate ``frames()`` once. After it finishes, ``error`` holds the
    exception that ended the run, if any, and ``fragments_relayed`` the
    number of text frames sent.
    """

    def __init__(
        self,
        controller: TimelineSessionController,
        event: str,
        *,
        emitter: TimelineEventEmitter | None = None,
    ) -> None:
        self._controller = controller
        self._event = event
        self._emitter = emitter
        self.error: BaseException | None = None
        self.fragments_relayed = 0
        self.terminated = False

    async def _emit(self, event_type: EventType, **data: object) -> None:
        if self._emitter is not None:
            await self._emitter.emit(event_type, **data)

    async def frames(self) -> AsyncIterator[bytes]:
        """Yield encoded SSE frames until the terminal frame."""
        fragments = self._controller.run(self._event)
        try:
            try:
                async for fragment in fragments:
                    if fragment.hidden:
                        continue
                    if not fragment.text:
                        continue
                    self.fragments_relayed += 1
                    yield StreamFrame.text_frame(fragment.text).to_sse()
            except Exception as e:
                self.error = e
                logger.debug("Timeline stream for %r failed: %s", self._event, e)
                await self._emit(EventType.ERROR, message=error_message(e))
                self.terminated = True
                yield StreamFrame.error_frame(error_message(e)).to_sse()
                return

            await self._emit(EventType.REQUEST_COMPLETED, fragments=self.fragments_relayed)
            self.terminated = True
            yield StreamFrame.done_frame().to_sse()
        finally:
            # Disconnects arrive as cancellation; cleanup must still run
            with anyio.CancelScope(shield=True):
                if not self.terminated:
                    logger.debug("Client disconnected from stream for %r", self._event)
                    await self._emit(EventType.REQUEST_CANCELLED, fragments=self.fragments_relayed)
                await fragments.aclose()
                await self._controller.aclose()
