"""Pydantic schemas shared across the chronoline pipeline."""

from chronoline.schemas.config import AppConfig, ModelConfig
from chronoline.schemas.streaming import Fragment, FrameType, Role, StreamFrame
from chronoline.schemas.timeline import (
    DocumentKind,
    TimelineDocument,
    TimelineEntry,
    TimelineRequest,
    TimelineRequestParams,
)

__all__ = [
    "AppConfig",
    "DocumentKind",
    "Fragment",
    "FrameType",
    "ModelConfig",
    "Role",
    "StreamFrame",
    "TimelineDocument",
    "TimelineEntry",
    "TimelineRequest",
    "TimelineRequestParams",
]
