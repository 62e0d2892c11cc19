"""Tests for chronoline.client — SSE parsing and the stream consumer state machine."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import patch

import httpx
import pytest
from conftest import FakeBackend

from chronoline.client import StreamState, TimelineStreamConsumer, iter_sse_data
from chronoline.exceptions import ChronolineError
from chronoline.schemas.timeline import DocumentKind, TimelineDocument
from chronoline.server import create_app

BASE_URL = "http://chronoline.test"


# ── Helpers ───────────────────────────────────────────────────


def _sse(payload: dict) -> bytes:
    return f"data: {json.dumps(payload)}\n\n".encode()


def _text(text: str) -> bytes:
    return _sse({"type": "text", "text": text})


DONE = _sse({"done": True})


async def _lines(*lines: str):
    for line in lines:
        yield line


def _transport(*chunks: bytes, status_code: int = 200, gate: asyncio.Event | None = None):
    """MockTransport streaming ``chunks``; waits on ``gate`` after the first chunk."""
    requests: list[httpx.Request] = []

    async def body():
        for i, chunk in enumerate(chunks):
            yield chunk
            if gate is not None and i == 0:
                await gate.wait()

    async def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            status_code,
            headers={"content-type": "text/event-stream"},
            content=body(),
        )

    transport = httpx.MockTransport(handler)
    transport.requests = requests  # type: ignore[attr-defined]
    return transport


class _SlowClosingClient(httpx.AsyncClient):
    """AsyncClient whose ``aclose`` waits on ``gate`` before closing."""

    def __init__(self, transport: httpx.AsyncBaseTransport) -> None:
        super().__init__(transport=transport, base_url=BASE_URL)
        self.closing = asyncio.Event()
        self.closed = asyncio.Event()
        self.gate = asyncio.Event()

    async def aclose(self) -> None:
        self.closing.set()
        await self.gate.wait()
        await super().aclose()
        self.closed.set()


class _Recorder:
    def __init__(self) -> None:
        self.updates: list[tuple[object, StreamState]] = []

    def __call__(self, document, state) -> None:
        self.updates.append((document, state))

    @property
    def states(self) -> list[StreamState]:
        collapsed: list[StreamState] = []
        for _, state in self.updates:
            if not collapsed or collapsed[-1] is not state:
                collapsed.append(state)
        return collapsed


# ── SSE parsing ──────────────────────────────────────────────


class TestIterSseData:
    @pytest.mark.asyncio
    async def test_single_events(self):
        lines = _lines('data: {"a": 1}', "", 'data: {"b": 2}', "")
        assert [d async for d in iter_sse_data(lines)] == ['{"a": 1}', '{"b": 2}']

    @pytest.mark.asyncio
    async def test_multiline_data_joined(self):
        lines = _lines("data: one", "data: two", "")
        assert [d async for d in iter_sse_data(lines)] == ["one\ntwo"]

    @pytest.mark.asyncio
    async def test_comments_and_other_fields_ignored(self):
        lines = _lines(": keep-alive", "event: message", "id: 3", "data: x", "")
        assert [d async for d in iter_sse_data(lines)] == ["x"]

    @pytest.mark.asyncio
    async def test_crlf_and_no_space(self):
        lines = _lines("data:x\r", "\r")
        assert [d async for d in iter_sse_data(lines)] == ["x"]

    @pytest.mark.asyncio
    async def test_trailing_event_without_blank_line(self):
        lines = _lines("data: last")
        assert [d async for d in iter_sse_data(lines)] == ["last"]


# ── Consumer ─────────────────────────────────────────────────


class TestConsumerHappyPath:
    @pytest.mark.asyncio
    async def test_timeline_stream(self):
        recorder = _Recorder()
        transport = _transport(
            _text('{"events": [{"timeRange": "1912", '),
            _text('"description": "Titanic sinks"}'),
            _text("]}"),
            DONE,
        )
        async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
            consumer = TimelineStreamConsumer(client=client, on_update=recorder)
            doc = await consumer.run("The Sinking of the Titanic")

        assert consumer.state is StreamState.DONE
        assert consumer.error is None
        assert doc.kind is DocumentKind.TIMELINE
        assert doc.events[0].description == "Titanic sinks"
        assert recorder.states == [StreamState.LOADING, StreamState.STREAMING, StreamState.DONE]

    @pytest.mark.asyncio
    async def test_request_body(self):
        transport = _transport(DONE)
        async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
            await TimelineStreamConsumer(client=client).run("Fall of Rome")

        request = transport.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/timeline"
        assert json.loads(request.content) == {"stream": True, "params": {"event": "Fall of Rome"}}

    @pytest.mark.asyncio
    async def test_documents_grow_with_each_frame(self):
        recorder = _Recorder()
        transport = _transport(_text('{"rejection": "Sorry'), _text(', no."}'), DONE)
        async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
            await TimelineStreamConsumer(client=client, on_update=recorder).run("x")

        rejections = [doc.rejection for doc, state in recorder.updates if state is StreamState.STREAMING]
        assert rejections == ["Sorry", "Sorry, no."]

    @pytest.mark.asyncio
    async def test_empty_event_is_noop(self):
        transport = _transport(DONE)
        async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
            consumer = TimelineStreamConsumer(client=client)
            await consumer.run("")
        assert consumer.state is StreamState.IDLE
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_can_run_again_after_done(self):
        bodies = [
            _text('{"rejection": "no"}') + DONE,
            _text('{"events": []}') + DONE,
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=bodies.pop(0))

        async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url=BASE_URL
        ) as client:
            consumer = TimelineStreamConsumer(client=client)
            first = await consumer.run("a")
            second = await consumer.run("b")

        assert first.rejection == "no"
        assert second.rejection is None
        assert consumer.text == '{"events": []}'


class TestConsumerErrors:
    @pytest.mark.asyncio
    async def test_error_frame_keeps_last_document(self):
        transport = _transport(
            _text('{"events": [{"timeRange": "1912"}'),
            _sse({"type": "error", "text": "Model unavailable"}),
        )
        async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
            consumer = TimelineStreamConsumer(client=client)
            doc = await consumer.run("x")

        assert consumer.state is StreamState.DONE
        assert consumer.error == "Model unavailable"
        assert doc.events[0].time_range == "1912"

    @pytest.mark.asyncio
    async def test_error_before_any_text(self):
        transport = _transport(_sse({"type": "error", "text": "boom"}))
        async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
            consumer = TimelineStreamConsumer(client=client)
            await consumer.run("x")
        assert consumer.state is StreamState.DONE
        assert consumer.error == "boom"

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        transport = _transport(b'{"detail": "bad"}', status_code=422)
        async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
            consumer = TimelineStreamConsumer(client=client)
            await consumer.run("x")
        assert consumer.state is StreamState.DONE
        assert consumer.error == "Server rejected the request (422)"

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url=BASE_URL
        ) as client:
            consumer = TimelineStreamConsumer(client=client)
            await consumer.run("x")
        assert consumer.state is StreamState.DONE
        assert "connection refused" in consumer.error

    @pytest.mark.asyncio
    async def test_stream_ends_without_terminal_frame(self):
        transport = _transport(_text('{"rejection": "par'))
        async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
            consumer = TimelineStreamConsumer(client=client)
            doc = await consumer.run("x")
        assert consumer.state is StreamState.DONE
        assert consumer.error == "Stream ended before completion"
        assert doc.rejection == "par"

    @pytest.mark.asyncio
    async def test_malformed_frame(self):
        transport = _transport(b"data: {not json\n\n", DONE)
        async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
            consumer = TimelineStreamConsumer(client=client)
            await consumer.run("x")
        assert consumer.error == "Received a malformed frame"
        assert consumer.state is StreamState.DONE

    @pytest.mark.asyncio
    async def test_deeply_nested_text_still_completes(self):
        transport = _transport(_text('{"events": [' + "[" * 5000), DONE)
        async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
            consumer = TimelineStreamConsumer(client=client)
            doc = await consumer.run("x")

        assert consumer.state is StreamState.DONE
        assert consumer.error is None
        assert doc == TimelineDocument()


class TestConsumerCancel:
    @pytest.mark.asyncio
    async def test_cancel_while_loading_returns_to_idle(self):
        started = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            started.set()
            await asyncio.Event().wait()
            raise AssertionError("unreachable")

        async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url=BASE_URL
        ) as client:
            consumer = TimelineStreamConsumer(client=client)
            task = asyncio.create_task(consumer.run("x"))
            await started.wait()
            assert consumer.state is StreamState.LOADING

            consumer.cancel()
            await task

        assert consumer.state is StreamState.IDLE
        assert consumer.error is None
        assert not task.cancelled()

    @pytest.mark.asyncio
    async def test_cancel_while_streaming_marks_done(self):
        streaming = asyncio.Event()
        gate = asyncio.Event()

        def on_update(document, state):
            if state is StreamState.STREAMING:
                streaming.set()

        transport = _transport(
            _text('{"events": [{"timeRange": "1912"}'), _text("]}"), DONE, gate=gate
        )
        async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
            consumer = TimelineStreamConsumer(client=client, on_update=on_update)
            task = asyncio.create_task(consumer.run("x"))
            await streaming.wait()

            consumer.cancel()
            doc = await task

        assert consumer.state is StreamState.DONE
        assert consumer.error is None
        # Only the frame received before cancelling was applied
        assert consumer.text == '{"events": [{"timeRange": "1912"}'
        assert doc.events[0].time_range == "1912"

    @pytest.mark.asyncio
    async def test_cancel_while_closing_owned_client(self):
        # The stream ends without a terminal frame, so the consumer is
        # still streaming while it closes the client it created
        client = _SlowClosingClient(_transport(_text('{"rejection": "par')))
        with patch("chronoline.client.httpx.AsyncClient", return_value=client):
            consumer = TimelineStreamConsumer(base_url=BASE_URL)
            task = asyncio.create_task(consumer.run("x"))
            await client.closing.wait()
            assert consumer.state is StreamState.STREAMING

            consumer.cancel()
            doc = await task

        assert not task.cancelled()
        assert consumer.state is StreamState.DONE
        assert consumer.error is None
        assert doc.rejection == "par"

        client.gate.set()
        await client.closed.wait()

    def test_cancel_when_idle_is_noop(self):
        consumer = TimelineStreamConsumer()
        consumer.cancel()
        assert consumer.state is StreamState.IDLE

    @pytest.mark.asyncio
    async def test_cancel_when_done_is_noop(self):
        transport = _transport(DONE)
        async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
            consumer = TimelineStreamConsumer(client=client)
            await consumer.run("x")
        consumer.cancel()
        consumer.cancel()
        assert consumer.state is StreamState.DONE

    @pytest.mark.asyncio
    async def test_second_run_while_in_flight_rejected(self):
        started = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            started.set()
            await asyncio.Event().wait()
            raise AssertionError("unreachable")

        async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url=BASE_URL
        ) as client:
            consumer = TimelineStreamConsumer(client=client)
            task = asyncio.create_task(consumer.run("x"))
            await started.wait()
            with pytest.raises(ChronolineError, match="already in flight"):
                await consumer.run("y")
            consumer.cancel()
            await task


# ── End to end ───────────────────────────────────────────────


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_against_app(self, app_config, historical_backend):
        app = create_app(backend=historical_backend, config=app_config)
        recorder = _Recorder()
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url=BASE_URL
        ) as client:
            consumer = TimelineStreamConsumer(client=client, on_update=recorder)
            doc = await consumer.run("The Sinking of the Titanic")

        assert consumer.state is StreamState.DONE
        assert consumer.error is None
        assert [e.time_range for e in doc.events] == ["1912-04-10", "1912-04-14"]
        assert not consumer.text.startswith("```")
        assert recorder.states[0] is StreamState.LOADING
        assert recorder.states[-1] is StreamState.DONE

    @pytest.mark.asyncio
    async def test_rejection_against_app(self, app_config, rejection_backend):
        app = create_app(backend=rejection_backend, config=app_config)
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url=BASE_URL
        ) as client:
            doc = await TimelineStreamConsumer(client=client).run("my birthday party")

        assert doc.kind is DocumentKind.REJECTION
        assert doc.events == []

    @pytest.mark.asyncio
    async def test_backend_failure_against_app(self, app_config):
        from chronoline.exceptions import BackendError

        backend = FakeBackend(open_errors={"classifier": BackendError("Classifier down")})
        app = create_app(backend=backend, config=app_config)
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url=BASE_URL
        ) as client:
            consumer = TimelineStreamConsumer(client=client)
            await consumer.run("x")

        assert consumer.state is StreamState.DONE
        assert consumer.error == "Classifier down"
