from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

FENCED_JSON_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
RAW_EXCERPT_LIMIT = 400


@dataclass(slots=True, frozen=True)
class ParseOk:
    value: dict[str, Any]

    @property
    def ok(self) -> bool:
        return True


@dataclass(slots=True, frozen=True)
class ParseError:
    reason: str
    raw: str = ""

    @property
    def ok(self) -> bool:
        return False


ParseResult = ParseOk | ParseError


def _strict(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None


def parse_json_object(text: str | None) -> ParseResult:
    """Parse a model reply that should contain one JSON object.

    Stage one parses the whole reply (or the body of a fenced ``json`` block).
    Stage two falls back to the span between the first ``{`` and the last ``}``
    so prose around the object is tolerated. Never raises.
    """
    if text is None or not text.strip():
        return ParseError("empty response")
    content = text.strip()
    excerpt = content[:RAW_EXCERPT_LIMIT]

    fenced = FENCED_JSON_PATTERN.search(content)
    candidate = fenced.group(1).strip() if fenced else content
    parsed = _strict(candidate)
    if parsed is None:
        start = content.find("{")
        end = content.rfind("}")
        if start == -1 or end <= start:
            return ParseError("no JSON object found", excerpt)
        parsed = _strict(content[start : end + 1])
        if parsed is None:
            return ParseError("invalid JSON", excerpt)

    if not isinstance(parsed, dict):
        return ParseError(f"expected a JSON object, got {type(parsed).__name__}", excerpt)
    return ParseOk(parsed)
