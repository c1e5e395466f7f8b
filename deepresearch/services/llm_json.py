from __future__ import annotations

import json
import re
from typing import Any

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def extract_json_object(raw_text: str) -> dict[str, Any]:
    """Pull the first JSON object out of a free-text model reply.

    Raises json.JSONDecodeError when no object can be parsed.
    """
    text = (raw_text or "").strip()
    fenced = _FENCED_JSON.search(text)
    if fenced:
        text = fenced.group(1)
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise json.JSONDecodeError("object not found", text, 0)
    parsed = json.loads(text[start : end + 1])
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("not an object", text, 0)
    return parsed


def split_trailing_json(content: str, required_key: str) -> tuple[str, dict[str, Any] | None]:
    """Separate prose from a JSON block appended after it.

    Looks for a fenced ```json block first, then for a bare object containing
    `required_key`. Returns (prose, parsed) or (content, None).
    """
    text = content or ""
    fenced = list(_FENCED_JSON.finditer(text))
    for match in reversed(fenced):
        try:
            parsed = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict) and required_key in parsed:
            prose = (text[: match.start()] + text[match.end() :]).strip()
            return prose, parsed

    marker = text.rfind(f'"{required_key}"')
    if marker >= 0:
        start = text.rfind("{", 0, marker)
        end = text.rfind("}")
        while start >= 0 and end > marker:
            try:
                parsed = json.loads(text[start : end + 1])
            except json.JSONDecodeError:
                start = text.rfind("{", 0, start)
                continue
            if isinstance(parsed, dict) and required_key in parsed:
                prose = (text[:start] + text[end + 1 :]).strip()
                return prose, parsed
            break

    return text.strip(), None
