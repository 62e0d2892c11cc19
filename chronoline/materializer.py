"""Partial-JSON materializer.

Derives the best currently-available document from the cumulative text
of a streaming generation. The text is usually truncated mid-structure,
so after a failed strict parse the materializer runs a lenient recovery
scan that closes open strings, arrays and objects at the truncation
point, then coerces the result onto a Pydantic schema, filling anything
missing or mistyped with the schema's defaults.

``materialize`` is a pure function of the text: feeding the same
cumulative text twice yields identical documents, and every prefix of a
well-formed document yields a schema-valid one.
"""

from __future__ import annotations

import json
import logging
import re
import types
from typing import Any, TypeVar, Union, get_args, get_origin

from pydantic import BaseModel, ValidationError

from chronoline.schemas.timeline import TimelineDocument

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_NUMBER_RE = re.compile(r"-?(?:0|[1-9]\d*)(?:\.\d+)?(?:[eE][+-]?\d+)?")
_LITERALS = {"true": True, "false": False, "null": None}
_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}
_WHITESPACE = " \t\n\r"


class _Missing:
    """Marker for a value that has not started or cannot be used yet."""

    def __repr__(self) -> str:
        return "<missing>"


_MISSING: Any = _Missing()


class _RecoveringParser:
    """Lenient JSON scanner that stops cleanly at the end of its input.

    Anything it cannot make sense of (a truncated literal, a stray
    character) is treated as the end of input, so every enclosing
    container is closed implicitly at that point.
    """

    def __init__(self, text: str, start: int = 0) -> None:
        self._text = text
        self._end = len(text)
        self._pos = start

    def parse(self) -> Any:
        return self._value()

    # ── Helpers ──────────────────────────────────────────────

    def _at_end(self) -> bool:
        return self._pos >= self._end

    def _skip_ws(self) -> None:
        while self._pos < self._end and self._text[self._pos] in _WHITESPACE:
            self._pos += 1

    def _stop(self) -> Any:
        self._pos = self._end
        return _MISSING

    # ── Values ───────────────────────────────────────────────

    def _value(self) -> Any:
        self._skip_ws()
        if self._at_end():
            return _MISSING

        char = self._text[self._pos]
        if char == "{":
            return self._object()
        if char == "[":
            return self._array()
        if char == '"':
            value, _ = self._string()
            return value
        if char == "-" or char.isdigit():
            return self._number()
        if char in "tfn":
            return self._literal()
        return self._stop()

    def _object(self) -> dict[str, Any]:
        self._pos += 1
        obj: dict[str, Any] = {}

        while True:
            self._skip_ws()
            if self._at_end():
                return obj

            char = self._text[self._pos]
            if char == "}":
                self._pos += 1
                return obj
            if char == ",":
                self._pos += 1
                continue
            if char != '"':
                self._stop()
                return obj

            key, closed = self._string()
            if not closed or key is _MISSING:
                return obj

            self._skip_ws()
            if self._at_end():
                return obj
            if self._text[self._pos] != ":":
                self._stop()
                return obj
            self._pos += 1

            # A key whose value has not started is left out entirely
            value = self._value()
            if value is _MISSING:
                return obj
            obj[key] = value

    def _array(self) -> list[Any]:
        self._pos += 1
        items: list[Any] = []

        while True:
            self._skip_ws()
            if self._at_end():
                return items

            char = self._text[self._pos]
            if char == "]":
                self._pos += 1
                return items
            if char == ",":
                self._pos += 1
                continue

            value = self._value()
            if value is _MISSING:
                return items
            items.append(value)

    def _string(self) -> tuple[Any, bool]:
        """Scan a string starting at its opening quote.

        Returns the decoded text and whether the closing quote was seen.
        An escape sequence cut off by the end of input is dropped so the
        same prefix always decodes the same way.
        """
        self._pos += 1
        text = self._text
        chunks: list[str] = []

        while self._pos < self._end:
            char = text[self._pos]
            if char == '"':
                self._pos += 1
                return "".join(chunks), True
            if char != "\\":
                run_end = self._pos + 1
                while run_end < self._end and text[run_end] not in '"\\':
                    run_end += 1
                chunks.append(text[self._pos:run_end])
                self._pos = run_end
                continue

            if self._pos + 1 >= self._end:
                break
            marker = text[self._pos + 1]
            if marker in _ESCAPES:
                chunks.append(_ESCAPES[marker])
                self._pos += 2
                continue
            if marker != "u":
                self._stop()
                break

            decoded = self._unicode_escape(self._pos)
            if decoded is None:
                break
            char_text, consumed = decoded
            chunks.append(char_text)
            self._pos += consumed

        self._pos = self._end
        return "".join(chunks), False

    def _unicode_escape(self, start: int) -> tuple[str, int] | None:
        """Decode ``\\uXXXX`` (and a following low surrogate) at ``start``."""
        code = self._hex4(start + 2)
        if code is None:
            return None

        if 0xD800 <= code <= 0xDBFF:
            follow = start + 6
            if follow >= self._end:
                return None
            if self._text.startswith("\\u", follow):
                low = self._hex4(follow + 2)
                if low is None:
                    return None
                if 0xDC00 <= low <= 0xDFFF:
                    combined = 0x10000 + ((code - 0xD800) << 10) + (low - 0xDC00)
                    return chr(combined), 12
            elif self._text[follow] == "\\" and follow + 1 >= self._end:
                return None

        return chr(code), 6

    def _hex4(self, start: int) -> int | None:
        digits = self._text[start:start + 4]
        if len(digits) < 4:
            return None
        try:
            return int(digits, 16)
        except ValueError:
            self._stop()
            return None

    def _number(self) -> Any:
        match = _NUMBER_RE.match(self._text, self._pos)
        if match is None:
            return self._stop()
        # A number running into the end of input may still grow
        if match.end() >= self._end:
            return self._stop()
        self._pos = match.end()
        number = match.group(0)
        if any(c in number for c in ".eE"):
            return float(number)
        return int(number)

    def _literal(self) -> Any:
        rest = self._text[self._pos:self._pos + 5]
        for word, value in _LITERALS.items():
            if rest.startswith(word):
                self._pos += len(word)
                return value
        return self._stop()


# ── Schema coercion ──────────────────────────────────────────


def _coerce_value(annotation: Any, raw: Any) -> Any:
    """Coerce a recovered value onto a field annotation.

    Returns _MISSING when the value does not fit, so the caller can fall
    back to the field default.
    """
    if annotation is Any:
        return raw
    if annotation is str:
        return raw if isinstance(raw, str) else _MISSING
    if annotation is bool:
        return raw if isinstance(raw, bool) else _MISSING
    if annotation is int:
        return raw if isinstance(raw, int) and not isinstance(raw, bool) else _MISSING
    if annotation is float:
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return float(raw)
        return _MISSING
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        if not isinstance(raw, dict):
            return _MISSING
        return _coerce_model(annotation, raw)

    origin = get_origin(annotation)
    args = get_args(annotation)

    if origin in (Union, types.UnionType):
        if raw is None:
            return _MISSING
        for option in args:
            if option is type(None):
                continue
            value = _coerce_value(option, raw)
            if value is not _MISSING:
                return value
        return _MISSING

    if origin is list:
        if not isinstance(raw, list):
            return _MISSING
        item_type = args[0] if args else Any
        items = [_coerce_value(item_type, item) for item in raw]
        return [item for item in items if item is not _MISSING]

    return _MISSING


def _coerce_model(schema: type[ModelT], raw: dict[str, Any]) -> ModelT:
    values: dict[str, Any] = {}
    for name, field in schema.model_fields.items():
        key = field.alias or name
        if key in raw:
            candidate = raw[key]
        elif name in raw:
            candidate = raw[name]
        else:
            continue

        value = _coerce_value(field.annotation, candidate)
        if value is not _MISSING:
            values[name] = value

    try:
        return schema.model_validate(values)
    except ValidationError:
        logger.debug("Coerced values rejected by %s, using defaults", schema.__name__)
        return schema()


def coerce(data: Any, schema: type[ModelT]) -> ModelT:
    """Coerce already-parsed JSON data onto ``schema``, defaulting mismatches."""
    if not isinstance(data, dict):
        return schema()
    return _coerce_model(schema, data)


# ── Public API ───────────────────────────────────────────────


def materialize(text: str, schema: type[ModelT] = TimelineDocument) -> ModelT:  # type: ignore[assignment]
    """Derive the best schema-valid document from cumulative text.

    Text before the first ``{`` (such as a Markdown fence) and anything
    after the root object closes are ignored. Every field of ``schema``
    must declare a default.

    Args:
        text: All text received so far, concatenated in order.
        schema: Pydantic model the document must conform to.

    Returns:
        A ``schema`` instance. Never raises for malformed input.
    """
    start = text.find("{")
    if start < 0:
        return schema()

    try:
        data, _ = json.JSONDecoder().raw_decode(text, start)
    except (json.JSONDecodeError, RecursionError):
        # The recovery scan hits the same nesting limit and falls back to defaults
        try:
            data = _RecoveringParser(text, start).parse()
        except RecursionError:
            logger.debug("Recovery scan exceeded nesting limit, using defaults")
            return schema()

    return coerce(data, schema)


class Materializer:
    """Holds the cumulative text of one stream and its latest document.

    Each ``feed`` re-derives the document from the whole buffer; the new
    document replaces the previous one.
    """

    def __init__(self, schema: type[BaseModel] = TimelineDocument) -> None:
        self._schema = schema
        self._chunks: list[str] = []
        self._document: BaseModel = schema()

    @property
    def text(self) -> str:
        """All text fed so far."""
        return "".join(self._chunks)

    @property
    def document(self) -> BaseModel:
        """The most recently materialized document."""
        return self._document

    def feed(self, text: str) -> BaseModel:
        """Append ``text`` and return the refreshed document."""
        if text:
            self._chunks.append(text)
            self._document = materialize(self.text, self._schema)
        return self._document

    def reset(self) -> None:
        """Discard all text and return to the schema defaults."""
        self._chunks.clear()
        self._document = self._schema()
