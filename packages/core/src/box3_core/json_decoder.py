"""Tolerant decoding of JSON objects from free-form model output.

Every stage that reads oracle output goes through ``decode_json_object``.
Strategies are tried in a fixed order:

1. strict parse of the whole (stripped) response
2. the first fenced code block (```json ... ``` or ``` ... ```)
3. a brace scan for the first balanced ``{...}`` that parses

Each strategy retries once after a light repair (trailing commas,
smart quotes) before giving up.
"""

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .exceptions import ResponseParseError

_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
_SMART_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})


class DecodeStrategy(str, Enum):
    """Which fallback produced the decoded object."""

    DIRECT = "direct"
    FENCED = "fenced"
    BRACE_SCAN = "brace_scan"


@dataclass(frozen=True)
class DecodedObject:
    """A JSON object recovered from model output."""

    data: dict[str, Any]
    strategy: DecodeStrategy
    repaired: bool = False


def _repair(text: str) -> str:
    return _TRAILING_COMMA.sub(r"\1", text.translate(_SMART_QUOTES))


def _loads_object(text: str) -> tuple[Optional[dict[str, Any]], bool]:
    """Parse text as a JSON object, retrying once after repair."""
    for repaired, candidate in ((False, text), (True, _repair(text))):
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value, repaired
        return None, False
    return None, False


def _balanced_objects(text: str):
    """Yield every balanced ``{...}`` span, outermost first, in order."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        end = -1
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    end = index
                    break
        if end != -1:
            yield text[start:end + 1]
        start = text.find("{", start + 1)


def decode_json_object(response: Optional[str]) -> Optional[DecodedObject]:
    """Recover the first JSON object from a model response.

    Args:
        response: Raw text returned by the oracle.

    Returns:
        DecodedObject with the parsed dict and the strategy that found it,
        or None when no strategy yields an object.
    """
    if not response or not response.strip():
        return None

    data, repaired = _loads_object(response.strip())
    if data is not None:
        return DecodedObject(data, DecodeStrategy.DIRECT, repaired)

    for match in _FENCE_PATTERN.finditer(response):
        data, repaired = _loads_object(match.group(1).strip())
        if data is not None:
            return DecodedObject(data, DecodeStrategy.FENCED, repaired)

    for candidate in _balanced_objects(response):
        data, repaired = _loads_object(candidate)
        if data is not None:
            return DecodedObject(data, DecodeStrategy.BRACE_SCAN, repaired)

    return None


def require_json_object(response: Optional[str], operation: str) -> dict[str, Any]:
    """Decode a response or raise ResponseParseError.

    Convenience for stage code that converts parse failures into stage
    errors at its boundary.
    """
    decoded = decode_json_object(response)
    if decoded is None:
        excerpt = (response or "")[:200]
        raise ResponseParseError(
            f"No JSON object found in {operation} response",
            operation=operation,
            excerpt=excerpt,
        )
    return decoded.data


__all__ = [
    "DecodeStrategy",
    "DecodedObject",
    "decode_json_object",
    "require_json_object",
]
