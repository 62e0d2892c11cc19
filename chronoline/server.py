"""FastAPI application exposing the timeline stream.

``POST /timeline`` classifies the requested event, generates either a
rejection or a timeline, and streams the model output as server-sent
events. Each event's ``data:`` payload is one JSON frame; the stream
ends after the terminal ``done`` or ``error`` frame.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from chronoline import __version__
from chronoline.controller import TimelineSessionController
from chronoline.events import EventType, TimelineEvent, TimelineEventEmitter
from chronoline.providers.base import ModelBackend
from chronoline.providers.litellm_provider import LiteLLMBackend
from chronoline.providers.registry import load_app_config, load_models, validate_config
from chronoline.relay import TokenRelay
from chronoline.schemas.config import AppConfig
from chronoline.schemas.timeline import TimelineRequest

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "X-Accel-Buffering": "no",
    "Cache-Control": "no-cache",
}


def log_request_event(event: TimelineEvent) -> None:
    """Listener that logs the milestones of one request at info level."""
    rid = event.request_id
    if event.type == EventType.REQUEST_STARTED:
        logger.info("[%s] Timeline requested for %r", rid, event.data.get("event"))
    elif event.type == EventType.CLASSIFIED:
        logger.info("[%s] Classified historical=%s", rid, event.data.get("historical"))
    elif event.type == EventType.REQUEST_COMPLETED:
        logger.info(
            "[%s] Stream completed in %.1fs (%d fragments)",
            rid, event.elapsed, event.data.get("fragments", 0),
        )
    elif event.type == EventType.REQUEST_CANCELLED:
        logger.info("[%s] Stream cancelled by client after %.1fs", rid, event.elapsed)


async def relay_stream(relay: TokenRelay, request_id: str) -> AsyncIterator[bytes]:
    """Pass the relay's frames through, then report a failed run."""
    async for frame in relay.frames():
        yield frame
    if relay.error is not None:
        logger.error(
            "[%s] Timeline request failed: %s", request_id, relay.error,
            exc_info=relay.error,
        )


def create_app(
    backend: ModelBackend | None = None,
    config: AppConfig | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        backend: Model backend to use. Defaults to a LiteLLMBackend over
                 the TOML model registry.
        config: Application defaults. Defaults to defaults.toml.

    Raises:
        ConfigError: If the configuration cannot be loaded or names a
                     model missing from the registry.
    """
    config = config or load_app_config()
    if backend is None:
        registry = load_models()
        validate_config(config, registry)
        backend = LiteLLMBackend(
            registry, timeout=config.timeout, max_retries=config.max_retries
        )

    app = FastAPI(
        title="Chronoline",
        description="Streaming historical timelines from language models",
        version=__version__,
    )
    app.state.backend = backend
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.post("/timeline")
    async def timeline(body: TimelineRequest, request: Request) -> StreamingResponse:
        """Stream a timeline (or rejection) for ``body.params.event``."""
        emitter = TimelineEventEmitter()
        emitter.add_listener(log_request_event)

        controller = TimelineSessionController(
            request.app.state.backend, request.app.state.config, emitter=emitter
        )
        relay = TokenRelay(controller, body.params.event, emitter=emitter)
        return StreamingResponse(
            relay_stream(relay, emitter.request_id),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.get("/health")
    async def health() -> dict:
        """Report service status and the configured models."""
        return {
            "status": "ok",
            "version": __version__,
            "classifier_model": config.classifier_model,
            "generator_model": config.generator_model,
        }

    return app
