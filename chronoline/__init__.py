"""Chronoline — streaming historical timelines from language models."""

__version__ = "0.1.0"

from chronoline.materializer import Materializer, materialize
from chronoline.schemas.timeline import TimelineDocument, TimelineEntry

__all__ = ["Materializer", "TimelineDocument", "TimelineEntry", "materialize"]
