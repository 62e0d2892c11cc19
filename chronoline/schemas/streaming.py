"""Streaming schemas for fragment delivery and transport frames.

A Fragment is one unit of generated (or appended) text tagged with its
conversational role and a visibility flag. A StreamFrame is the JSON
payload of one server-sent event.
"""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class Role(StrEnum):
    """Conversational role of a message or fragment."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Fragment(BaseModel):
    """A single fragment of text produced during a generation."""

    text: str = Field(description="Text carried by this fragment")
    hidden: bool = Field(
        default=False,
        description="True for prompt scaffolding never meant for display",
    )
    role: Role = Field(default=Role.ASSISTANT, description="Role that produced the text")


class FrameType(StrEnum):
    """Non-terminal and error frame types on the transport."""

    TEXT = "text"
    ERROR = "error"


class StreamFrame(BaseModel):
    """One transport frame: a text delta, the done marker, or an error."""

    type: FrameType | None = None
    text: str | None = None
    done: bool | None = None

    @classmethod
    def text_frame(cls, text: str) -> StreamFrame:
        return cls(type=FrameType.TEXT, text=text)

    @classmethod
    def done_frame(cls) -> StreamFrame:
        return cls(done=True)

    @classmethod
    def error_frame(cls, message: str) -> StreamFrame:
        return cls(type=FrameType.ERROR, text=message)

    @property
    def is_terminal(self) -> bool:
        return bool(self.done) or self.type == FrameType.ERROR

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json", exclude_none=True))

    def to_sse(self) -> bytes:
        """Encode as a single server-sent event."""
        return f"data: {self.to_json()}\n\n".encode("utf-8")

    @classmethod
    def from_data(cls, data: str) -> StreamFrame:
        """Parse the ``data:`` payload of a server-sent event."""
        payload: dict[str, Any] = json.loads(data)
        return cls.model_validate(payload)
