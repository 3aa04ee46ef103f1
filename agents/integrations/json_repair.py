"""
JSON response repair

Generation output that should be JSON is often wrapped in markdown fences,
preceded by chatter, or cut off mid-object when max_tokens is hit. These
helpers recover what they can; callers fall back to a reduced-confidence
default when even the repaired text does not parse.
"""

import json
import logging
import re
from typing import Any, Optional

logger = logging.getLogger(__name__)


_FENCE_OPEN = re.compile(r"^```(?:json)?\s*\n?", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\n?```\s*$")
_TRAILING_COMMA = re.compile(r",\s*$")
# A dangling `"key": "partial value` (or `"key":`) at the very end
_PARTIAL_PAIR = re.compile(r',?\s*"[^"]*"\s*:\s*"?[^"}\]]*$')
_COMMA_BEFORE_CLOSE = re.compile(r",\s*([}\]])")


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json fence, if any"""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_OPEN.sub("", cleaned)
        cleaned = _FENCE_CLOSE.sub("", cleaned)
    return cleaned.strip()


def _skip_preamble(text: str) -> str:
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return text
    return text[min(starts):]


def repair_json(text: str) -> str:
    """
    Best-effort repair of truncated JSON.

    Drops a trailing comma or half-written key/value pair, then closes
    every bracket and brace still open outside of string literals, in
    nesting order.
    """
    repaired = text.strip()
    repaired = _TRAILING_COMMA.sub("", repaired)

    in_string = False
    escape_next = False
    for char in repaired:
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string

    if in_string:
        # Truncated inside a string: drop the pair if it is a value, else close it
        trimmed = _PARTIAL_PAIR.sub("", repaired)
        repaired = trimmed if trimmed != repaired else repaired + '"'
    else:
        repaired = _PARTIAL_PAIR.sub("", repaired) if repaired.rstrip().endswith(":") else repaired

    repaired = _TRAILING_COMMA.sub("", repaired)

    stack = []
    in_string = False
    escape_next = False
    for char in repaired:
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in "{[":
            stack.append(char)
        elif char in "}]" and stack:
            stack.pop()

    closers = {"{": "}", "[": "]"}
    repaired += "".join(closers[c] for c in reversed(stack))
    return _COMMA_BEFORE_CLOSE.sub(r"\1", repaired)


def parse_json_response(text: str, default: Optional[Any] = None, context: str = "response") -> Any:
    """
    Parse generation output as JSON, repairing it when needed.

    Returns ``default`` when nothing parses.
    """
    if not text:
        return default

    cleaned = _skip_preamble(strip_code_fences(text))

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    repaired = repair_json(cleaned)
    try:
        result = json.loads(repaired)
        logger.info(f"Repaired malformed {context} JSON ({len(cleaned)} chars)")
        return result
    except json.JSONDecodeError:
        logger.warning(f"Failed to parse {context} JSON, using defaults: {cleaned[:200]!r}")
        return default
