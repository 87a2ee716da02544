from __future__ import annotations

import json


class JSONExtractionError(ValueError):
    pass


def extract_first_json_object(text: str) -> dict:
    """Extract and parse the first JSON object from an LLM response.

    Providers without native structured output often wrap the object in prose or
    a ```json fence; everything outside the outermost braces is ignored.
    """
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        raise JSONExtractionError("No JSON object found in response.")

    candidate = text[start : end + 1].strip()
    try:
        obj = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise JSONExtractionError(f"Invalid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise JSONExtractionError("Top-level JSON value is not an object.")
    return obj


def entity_from_json(text: str) -> str | None:
    """Return the `entity` field when `text` is exactly a JSON object carrying one."""
    s = (text or "").strip()
    if not (s.startswith("{") and s.endswith("}")):
        return None
    try:
        obj = json.loads(s)
    except json.JSONDecodeError:
        return None
    if isinstance(obj, dict) and "entity" in obj and obj["entity"] is not None:
        return str(obj["entity"]).strip()
    return None
