"""Shared utilities for parsing LLM responses."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


def parse_llm_json(raw: str) -> Dict[str, Any]:
    """Parse a JSON object out of an LLM reply.

    Handles ``json`` code fences and chatty preambles. Anything that does not
    decode to a JSON object yields ``{}``.
    """
    if not raw:
        return {}

    text = _FENCE_RE.sub("", raw.strip())
    for candidate in (text, _outer_braces(raw)):
        if not candidate:
            continue
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
    return {}


def _outer_braces(raw: str) -> str:
    start = raw.find("{")
    end = raw.rfind("}") + 1
    if start >= 0 and end > start:
        return raw[start:end]
    return ""


def as_str_list(value: Any) -> List[str]:
    """Coerce a JSON field that should be a list of strings.

    A bare string becomes a one-item list; non-string items are dropped.
    """
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [v for v in value if isinstance(v, str) and v.strip()]
    return []
