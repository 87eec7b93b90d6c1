"""Recover the real payload from a Coze workflow reply.

The workflow platform re-serialises nested results inconsistently: the
report may arrive as ``data`` directly, as a JSON string in ``data``, or as a
JSON string nested inside another JSON string. ``normalize_response`` tries
each unwrapping in order and classifies what it finds, so callers only ever
deal with :class:`NormalizedContent`.

Nothing in this module raises on malformed input; unparseable strings
degrade to free text.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import json
from typing import Any, Mapping

COMPARISON_REPORT_FIELDS = frozenset({"summary", "added", "modified", "deleted", "statistics", "detailed"})
CHECKLIST_FIELDS = frozenset({"id", "name", "status", "matched"})

_MISSING = object()


class ContentKind(str, Enum):
    STRUCTURED = "structured"
    FREE_TEXT = "free_text"


@dataclass(frozen=True)
class NormalizedContent:
    kind: ContentKind
    value: Any
    schema: str | None = None

    @property
    def is_structured(self) -> bool:
        return self.kind is ContentKind.STRUCTURED

    def as_text(self) -> str:
        if isinstance(self.value, str):
            return self.value
        if self.value is None:
            return ""
        return json.dumps(self.value, ensure_ascii=False, indent=2)


def _try_parse_json(raw: str) -> Any:
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        return _MISSING


def extract_content(body: Any) -> Any:
    """Walk the ``data`` envelope of a workflow reply and return the payload.

    Returns ``None`` when the reply carries no usable ``data`` field.
    """
    if not isinstance(body, Mapping) or "data" not in body:
        return None

    data = body["data"]
    if isinstance(data, str):
        parsed = _try_parse_json(data)
        if parsed is _MISSING:
            return data
        if isinstance(parsed, Mapping):
            inner = parsed.get("data")
            if isinstance(inner, str):
                inner_parsed = _try_parse_json(inner)
                return inner if inner_parsed is _MISSING else inner_parsed
            return inner or parsed
        return parsed

    if isinstance(data, list):
        return data

    if isinstance(data, Mapping):
        inner = data.get("data")
        if isinstance(inner, str):
            inner_parsed = _try_parse_json(inner)
            return inner if inner_parsed is _MISSING else inner_parsed
        return inner or data

    return None


def _has_any_field(value: Any, fields: frozenset[str]) -> bool:
    return isinstance(value, Mapping) and any(field in value for field in fields)


def detect_schema(content: Any) -> str | None:
    if isinstance(content, list):
        if content and _has_any_field(content[0], CHECKLIST_FIELDS):
            return "checklist"
        return None
    if _has_any_field(content, COMPARISON_REPORT_FIELDS):
        return "comparison_report"
    if _has_any_field(content, CHECKLIST_FIELDS):
        return "checklist"
    return None


def classify_content(content: Any) -> NormalizedContent:
    schema = detect_schema(content)
    if schema is not None:
        return NormalizedContent(kind=ContentKind.STRUCTURED, value=content, schema=schema)

    # A report can still be hiding in a string one level further down.
    if isinstance(content, str):
        parsed = _try_parse_json(content)
        if parsed is not _MISSING and not isinstance(parsed, str):
            schema = detect_schema(parsed)
            if schema is not None:
                return NormalizedContent(kind=ContentKind.STRUCTURED, value=parsed, schema=schema)

    return NormalizedContent(kind=ContentKind.FREE_TEXT, value=content)


def normalize_response(body: Any) -> NormalizedContent:
    return classify_content(extract_content(body))
