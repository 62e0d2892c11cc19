"""Client-side consumer of the timeline event stream.

Posts a timeline request, reads the server-sent events, and feeds every
text frame into a Materializer so the latest schema-valid document is
always available. Each change of document or state is pushed to an
``on_update`` callback (the rendering side).

State machine::

    idle ──run──▶ loading ──first text──▶ streaming ──done/error──▶ done
      ▲              │                        │
      └───cancel─────┘                        └──────cancel──────▶ done
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from enum import StrEnum
from typing import Any

import httpx

from chronoline.exceptions import ChronolineError
from chronoline.materializer import Materializer
from chronoline.schemas.streaming import FrameType, StreamFrame
from chronoline.schemas.timeline import TimelineDocument

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:8000"


class StreamState(StrEnum):
    """Consumer-side state of a timeline stream."""

    IDLE = "idle"
    LOADING = "loading"
    STREAMING = "streaming"
    DONE = "done"


UpdateListener = Callable[[TimelineDocument, StreamState], Any]


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the ``data`` payload of each server-sent event.

    Multi-line data fields are joined with newlines; comments and other
    fields are ignored.
    """
    data_lines: list[str] = []
    async for line in lines:
        line = line.rstrip("\r")
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field == "data":
            data_lines.append(value[1:] if value.startswith(" ") else value)
    if data_lines:
        yield "\n".join(data_lines)


class TimelineStreamConsumer:
    """Consumes one timeline stream at a time.

    Args:
        base_url: Server root, used when no client is supplied.
        client: Optional httpx.AsyncClient; the consumer never closes a
                client it did not create.
        on_update: Called with (document, state) whenever either changes.
        timeout: Request timeout in seconds for a consumer-owned client.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        client: httpx.AsyncClient | None = None,
        on_update: UpdateListener | None = None,
        timeout: float = 120.0,
    ) -> None:
        self._base_url = base_url
        self._client = client
        self._on_update = on_update
        self._timeout = timeout
        self._materializer = Materializer(TimelineDocument)
        self._state = StreamState.IDLE
        self._error: str | None = None
        self._cancelled = False
        self._task: asyncio.Task[Any] | None = None

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def document(self) -> TimelineDocument:
        return self._materializer.document  # type: ignore[return-value]

    @property
    def error(self) -> str | None:
        """Message of the error that ended the last stream, if any."""
        return self._error

    @property
    def text(self) -> str:
        """Cumulative visible text of the current stream."""
        return self._materializer.text

    def _set_state(self, state: StreamState) -> None:
        if state is self._state:
            return
        self._state = state
        self._notify()

    def _notify(self) -> None:
        if self._on_update is not None:
            self._on_update(self.document, self._state)

    async def run(self, event: str) -> TimelineDocument:
        """Request a timeline for ``event`` and consume the stream to its end.

        Returns the final document. Returns immediately, without changing
        state, for an empty event.

        Raises:
            ChronolineError: If a stream is already in flight.
        """
        if self._state in (StreamState.LOADING, StreamState.STREAMING):
            raise ChronolineError("A timeline request is already in flight")
        if not event:
            return self.document

        self._materializer.reset()
        self._error = None
        self._cancelled = False
        self._task = asyncio.current_task()
        self._set_state(StreamState.LOADING)

        client = self._client or httpx.AsyncClient(
            base_url=self._base_url, timeout=self._timeout
        )
        try:
            try:
                await self._consume(client, event)
            finally:
                if self._client is None:
                    # A cancel() landing here must not leave the client half closed
                    await asyncio.shield(client.aclose())
        except asyncio.CancelledError:
            if not self._cancelled:
                raise
            # Cancellation we asked for ourselves is a normal outcome
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
        except httpx.HTTPStatusError as e:
            self._abort(f"Server rejected the request ({e.response.status_code})")
        except httpx.HTTPError as e:
            if not self._cancelled:
                self._abort(f"Connection failed: {e}")
        finally:
            self._task = None

        if not self._cancelled and self._state is not StreamState.DONE:
            self._abort("Stream ended before completion")
        return self.document

    async def _consume(self, client: httpx.AsyncClient, event: str) -> None:
        body = {"stream": True, "params": {"event": event}}
        async with client.stream("POST", "/timeline", json=body) as response:
            response.raise_for_status()
            async for data in iter_sse_data(response.aiter_lines()):
                if self._cancelled:
                    break
                try:
                    frame = StreamFrame.from_data(data)
                except ValueError:
                    self._abort("Received a malformed frame")
                    break
                if self._handle_frame(frame) or self._cancelled:
                    break

    def _handle_frame(self, frame: StreamFrame) -> bool:
        """Apply one frame. Returns True when the frame ends the stream."""
        if frame.done:
            self._set_state(StreamState.DONE)
            return True
        if frame.type == FrameType.ERROR:
            self._abort(frame.text or "Unknown error")
            return True
        if frame.type == FrameType.TEXT and frame.text:
            self._materializer.feed(frame.text)
            if self._state is StreamState.LOADING:
                self._state = StreamState.STREAMING
            self._notify()
        return False

    def _abort(self, message: str) -> None:
        """Stop consuming, keep the last document, and record ``message``."""
        logger.warning("Timeline stream aborted: %s", message)
        self._error = message
        self._set_state(StreamState.DONE)

    def cancel(self) -> None:
        """Stop the in-flight stream. Always safe to call.

        A stream still waiting for its first frame returns to idle; one
        that has started rendering is marked done.
        """
        if self._state is StreamState.LOADING:
            target = StreamState.IDLE
        elif self._state is StreamState.STREAMING:
            target = StreamState.DONE
        else:
            return

        self._cancelled = True
        self._set_state(target)

        task = self._task
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not None and task is not current and not task.done():
            task.cancel()
