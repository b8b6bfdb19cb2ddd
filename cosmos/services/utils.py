import json
import re
from collections.abc import Sequence
from typing import Any, TypeVar

from cosmos.services.errors import SchemaViolation

T = TypeVar("T")

_OPENING_FENCE = re.compile(r"^```[\w+-]*[ \t]*\n?")
_CLOSING_FENCE = re.compile(r"\n?```\s*$")


def normalize_source_key(source: str) -> str:
    return re.sub(r"\s+", " ", (source or "").strip().lower())


def strip_code_fence(raw_text: str) -> str:
    cleaned = (raw_text or "").strip()
    if cleaned.startswith("```"):
        cleaned = _OPENING_FENCE.sub("", cleaned, count=1)
        cleaned = _CLOSING_FENCE.sub("", cleaned, count=1)
    return cleaned.strip()


def parse_model_json(raw_text: str) -> Any:
    cleaned = strip_code_fence(raw_text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise SchemaViolation(f"Model did not return valid JSON: {exc.msg} at position {exc.pos}.") from exc


def batched(items: Sequence[T], size: int) -> list[list[T]]:
    if size < 1:
        raise ValueError("Batch size must be at least 1.")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def dedupe_preserving_order(values) -> list:
    seen = set()
    out = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


def to_pretty_json(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False)
