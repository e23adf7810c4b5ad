"""Parsing of model responses that should contain a JSON array of transactions."""

import json
import logging
import re

from ..exceptions import ExtractionParseFailure

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*(?:```|$)", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*([\]}])")


def _strip_fences(content: str) -> str:
    match = _FENCE_RE.search(content)
    return match.group(1) if match else content


def _truncate_to_last_object(content: str) -> str | None:
    """Cut a truncated array after its last complete top-level object and close it."""
    start = content.find("[")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    last_complete = -1
    for i in range(start + 1, len(content)):
        char = content[i]
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
                last_complete = i

    if last_complete == -1:
        return "[]"
    return content[start : last_complete + 1] + "]"


def parse_transaction_json(content: str) -> list[dict]:
    """Parse a model response into a list of transaction records.

    Tolerates markdown code fences, trailing commas, prose around the array,
    and a response cut off mid-array (everything after the last complete
    object is dropped).

    Raises:
        ExtractionParseFailure: If nothing usable can be recovered.
    """
    text = _strip_fences(str(content).strip()).strip()
    if not text:
        raise ExtractionParseFailure("Empty response from vision model")

    attempts = [(text, False)]
    start = text.find("[")
    end = text.rfind("]")
    if start != -1 and end > start:
        attempts.append((text[start : end + 1], False))
    truncated = _truncate_to_last_object(text)
    if truncated is not None:
        attempts.append((truncated, True))

    for candidate, repaired in attempts:
        candidate = _TRAILING_COMMA_RE.sub(r"\1", candidate)
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            parsed = parsed.get("transactions", [parsed])
        if isinstance(parsed, list):
            if repaired:
                logger.info(f"Recovered {len(parsed)} record(s) from a truncated response")
            return [item for item in parsed if isinstance(item, dict)]

    raise ExtractionParseFailure(f"Could not parse vision response as JSON: {text[:200]}")
