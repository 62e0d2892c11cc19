"""Timeline document schemas.

Defines the document the model is asked to produce (either a rejection
message or a list of timeline entries) and the request body accepted by
the HTTP endpoint.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DocumentKind(StrEnum):
    """Which variant a materialized document currently resolves to."""

    PENDING = "pending"
    REJECTION = "rejection"
    TIMELINE = "timeline"


class TimelineEntry(BaseModel):
    """A single moment in a historical event's timeline."""

    model_config = ConfigDict(populate_by_name=True)

    time_range: str = Field(
        default="",
        alias="timeRange",
        description="Date or time span of this moment (e.g. '1912-04-14')",
    )
    description: str = Field(
        default="", description="What happened during this time frame"
    )


class TimelineDocument(BaseModel):
    """The structured output of a timeline request.

    Exactly one of the two shapes is meaningful for a finished document:
    ``rejection`` set with no events, or ``events`` populated with no
    rejection. Partial documents may have neither yet.
    """

    model_config = ConfigDict(populate_by_name=True)

    rejection: str | None = Field(
        default=None,
        description="Polite decline when the request is not a historical event",
    )
    events: list[TimelineEntry] = Field(
        default_factory=list, description="Timeline entries in model order"
    )

    @property
    def kind(self) -> DocumentKind:
        if self.rejection is not None:
            return DocumentKind.REJECTION
        if self.events:
            return DocumentKind.TIMELINE
        return DocumentKind.PENDING

    def to_payload(self) -> dict[str, Any]:
        """Serialize with wire field names, omitting an absent rejection."""
        return self.model_dump(by_alias=True, exclude_none=True)


class TimelineRequestParams(BaseModel):
    """Parameters of a timeline request."""

    event: str = Field(min_length=1, description="The event to build a timeline for")


class TimelineRequest(BaseModel):
    """Body of ``POST /timeline``."""

    stream: bool = Field(default=True, description="Accepted for compatibility; always streamed")
    params: TimelineRequestParams
