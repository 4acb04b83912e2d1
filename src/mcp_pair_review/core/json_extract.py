"""Best-effort extraction of a JSON object from free-form reviewer output."""

import json
import re
from typing import Any

from loguru import logger

_JSON_FENCE = re.compile(r"```json\s*\n(.*?)\n```", re.DOTALL)
_ANY_FENCE = re.compile(r"```\s*\n(.*?)\n```", re.DOTALL)

# Upper bound for the balanced-brace scan
_MAX_SCAN = 100_000


def _from_fenced_block(text: str) -> Any:
    match = _JSON_FENCE.search(text) or _ANY_FENCE.search(text)
    if match:
        content = match.group(1).strip()
        if content.startswith("{") and content.endswith("}"):
            return json.loads(content)
    raise ValueError("no JSON code block found")


def _from_outer_braces(text: str) -> Any:
    first = text.find("{")
    last = text.rfind("}")
    if first != -1 and last >= first:
        return json.loads(text[first : last + 1])
    raise ValueError("no braces found")


def _from_balanced_braces(text: str) -> Any:
    start = text.find("{")
    if start == -1:
        raise ValueError("no opening brace")

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, min(len(text), start + _MAX_SCAN)):
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
                return json.loads(text[start : index + 1])
    raise ValueError("no balanced JSON object found")


def _whole_text(text: str) -> Any:
    return json.loads(text.strip())


_STRATEGIES = (
    _from_fenced_block,
    _from_outer_braces,
    _from_balanced_braces,
    _whole_text,
)


def extract_json(text: str | None, label: str = "unknown") -> dict[str, Any] | None:
    """Return the first well-formed JSON object found in ``text``.

    Strategies are tried in order: fenced ``json`` block, any fenced
    block, outermost ``{...}`` span, first balanced object, whole text.

    Args:
        text: Raw reviewer output
        label: Label used in log messages (stage number, "synthesis", ...)

    Returns:
        Parsed object, or None if no strategy produced a JSON object
    """
    if not text or not text.strip():
        return None

    for index, strategy in enumerate(_STRATEGIES, 1):
        try:
            data = strategy(text)
        except (ValueError, json.JSONDecodeError) as e:
            logger.debug(f"[{label}] JSON strategy {index} failed: {e}")
            continue
        if isinstance(data, dict):
            logger.debug(f"[{label}] JSON extracted with strategy {index}")
            return data

    logger.warning(f"[{label}] Could not extract JSON from reviewer output")
    logger.debug(f"[{label}] Output preview: {text[:200]}")
    return None
