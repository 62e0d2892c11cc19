"""Tests for chronoline.schemas — timeline documents and transport frames."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from chronoline.schemas.streaming import Fragment, FrameType, Role, StreamFrame
from chronoline.schemas.timeline import (
    DocumentKind,
    TimelineDocument,
    TimelineEntry,
    TimelineRequest,
)


class TestTimelineDocument:
    def test_defaults(self):
        doc = TimelineDocument()
        assert doc.events == []
        assert doc.rejection is None
        assert doc.kind is DocumentKind.PENDING

    def test_payload_uses_wire_names(self):
        doc = TimelineDocument(events=[TimelineEntry(time_range="1912", description="sinks")])
        assert doc.to_payload() == {"events": [{"timeRange": "1912", "description": "sinks"}]}

    def test_payload_omits_absent_rejection(self):
        assert "rejection" not in TimelineDocument().to_payload()

    def test_payload_includes_rejection_and_events(self):
        payload = TimelineDocument(rejection="no").to_payload()
        assert payload == {"rejection": "no", "events": []}

    def test_kind_timeline(self):
        doc = TimelineDocument.model_validate({"events": [{"timeRange": "1912"}]})
        assert doc.kind is DocumentKind.TIMELINE

    def test_kind_rejection_wins(self):
        doc = TimelineDocument(rejection="", events=[TimelineEntry()])
        assert doc.kind is DocumentKind.REJECTION

    def test_entry_accepts_alias_and_name(self):
        assert TimelineEntry(timeRange="a").time_range == "a"
        assert TimelineEntry(time_range="b").time_range == "b"


class TestTimelineRequest:
    def test_parses_body(self):
        req = TimelineRequest.model_validate({"stream": True, "params": {"event": "Titanic"}})
        assert req.params.event == "Titanic"

    def test_stream_flag_optional(self):
        req = TimelineRequest.model_validate({"params": {"event": "Titanic"}})
        assert req.stream is True

    def test_empty_event_rejected(self):
        with pytest.raises(ValidationError):
            TimelineRequest.model_validate({"params": {"event": ""}})

    def test_missing_params_rejected(self):
        with pytest.raises(ValidationError):
            TimelineRequest.model_validate({"event": "Titanic"})


class TestFragment:
    def test_defaults(self):
        fragment = Fragment(text="hi")
        assert fragment.hidden is False
        assert fragment.role is Role.ASSISTANT

    def test_role_is_string(self):
        assert Role.SYSTEM == "system"
        assert str(Role.USER) == "user"


class TestStreamFrame:
    def test_text_frame_json(self):
        assert json.loads(StreamFrame.text_frame("he").to_json()) == {"type": "text", "text": "he"}

    def test_done_frame_json(self):
        assert json.loads(StreamFrame.done_frame().to_json()) == {"done": True}

    def test_error_frame_json(self):
        payload = json.loads(StreamFrame.error_frame("boom").to_json())
        assert payload == {"type": "error", "text": "boom"}

    def test_sse_encoding(self):
        raw = StreamFrame.text_frame('a "quoted"\nline').to_sse()
        assert raw.startswith(b"data: ")
        assert raw.endswith(b"\n\n")
        # The JSON payload itself never contains a raw newline
        assert raw.count(b"\n") == 2

    def test_from_data_round_trip(self):
        frame = StreamFrame.from_data('{"type": "text", "text": "x"}')
        assert frame.type is FrameType.TEXT
        assert frame.text == "x"
        assert not frame.is_terminal

    def test_terminal_frames(self):
        assert StreamFrame.done_frame().is_terminal
        assert StreamFrame.error_frame("x").is_terminal

    def test_from_data_rejects_garbage(self):
        with pytest.raises(ValueError):
            StreamFrame.from_data("not json")
