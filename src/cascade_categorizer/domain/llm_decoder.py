import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

_FENCE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


class DecodeStatus(str, Enum):
    STRICT = "strict"
    FENCED = "fenced"
    UNPARSEABLE = "unparseable"


@dataclass(frozen=True)
class DecodedResponse:
    status: DecodeStatus
    items: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is not DecodeStatus.UNPARSEABLE


def _as_items(payload: Any) -> list[dict[str, Any]] | None:
    # Some models wrap the array in an object, e.g. {"results": [...]}.
    if isinstance(payload, dict):
        for value in payload.values():
            if isinstance(value, list):
                payload = value
                break
        else:
            payload = [payload]
    if not isinstance(payload, list):
        return None
    return [item for item in payload if isinstance(item, dict)]


def _try_load(text: str) -> list[dict[str, Any]] | None:
    try:
        payload = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return _as_items(payload)


def decode(raw: str | None) -> DecodedResponse:
    """Decode an LLM reply that should hold a JSON array of per-transaction objects."""
    if not raw or not raw.strip():
        return DecodedResponse(DecodeStatus.UNPARSEABLE, error="empty response")

    text = raw.strip()
    items = _try_load(text)
    if items is not None:
        return DecodedResponse(DecodeStatus.STRICT, items)

    fenced = _FENCE.search(text)
    if fenced:
        items = _try_load(fenced.group(1).strip())
        if items is not None:
            return DecodedResponse(DecodeStatus.FENCED, items)

    # Last resort: the outermost [...] span inside surrounding prose.
    start, end = text.find("["), text.rfind("]")
    if 0 <= start < end:
        items = _try_load(text[start:end + 1])
        if items is not None:
            return DecodedResponse(DecodeStatus.FENCED, items)

    return DecodedResponse(DecodeStatus.UNPARSEABLE, error=f"could not parse JSON: {text[:120]!r}")
