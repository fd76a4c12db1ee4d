"""Extract JSON payloads from model replies.

Model replies often wrap JSON in a fenced code block or surround it with
prose. ``extract_json`` tries the fenced block first, then the whole
reply, then the outermost ``{...}`` span.
"""

import json
import re
from typing import Any

import structlog

from fixflow.exceptions import ResponseParseError

log = structlog.get_logger(__name__)

_FENCED_JSON = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL)
_FENCED_ANY = re.compile(r"```\s*(.*?)\s*```", re.DOTALL)


def extract_json(text: str) -> Any:
    """Parse the JSON document contained in a model reply.

    Args:
        text: Raw reply text.

    Returns:
        The decoded JSON value.

    Raises:
        ResponseParseError: If no candidate parses as JSON.
    """
    candidates: list[str] = []
    for pattern in (_FENCED_JSON, _FENCED_ANY):
        match = pattern.search(text)
        if match:
            candidates.append(match.group(1))
    candidates.append(text.strip())

    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue

    log.error("json_parse_failed", preview=text[:500])
    raise ResponseParseError("Failed to parse JSON from model response")


def extract_json_object(text: str) -> dict[str, Any]:
    """Like ``extract_json`` but require a JSON object."""
    value = extract_json(text)
    if not isinstance(value, dict):
        raise ResponseParseError(f"Expected a JSON object, got {type(value).__name__}")
    return value
