"""
Locate JSON payloads inside free-form LLM output.

Models wrap JSON in prose or markdown fences often enough that a plain
json.loads() on the response is not reliable. These helpers find the first
balanced object/array, counting braces only outside string literals.
"""

import json
import re
from typing import Any, List, Optional

_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


def strip_code_fence(text: str) -> str:
    """Return the content of the first ``` fence, or the trimmed text."""
    if not text:
        return ""
    match = _FENCE_PATTERN.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def _scan_balanced(text: str, start: int, open_ch: str, close_ch: str) -> Optional[str]:
    depth = 0
    in_string = False
    escaped = False

    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def extract_first_json_object(response: str) -> Optional[str]:
    """
    Find the first balanced {...} in a model response.

    Args:
        response: Raw model text (may contain prose or code fences)

    Returns:
        The JSON object substring, or None if no balanced object exists
    """
    text = strip_code_fence(response)
    start = text.find("{")
    while start != -1:
        candidate = _scan_balanced(text, start, "{", "}")
        if candidate is not None:
            return candidate
        start = text.find("{", start + 1)
    return None


def extract_first_json_array(response: str) -> Optional[str]:
    """
    Find the first balanced [...] in a model response.

    An array of objects ("[{") is preferred over any earlier bare bracket,
    which is usually prose like "[1번]".
    """
    text = strip_code_fence(response)
    match = re.search(r"\[\s*\{", text)
    start = match.start() if match else text.find("[")
    while start != -1:
        candidate = _scan_balanced(text, start, "[", "]")
        if candidate is not None:
            return candidate
        start = text.find("[", start + 1)
    return None


def parse_json_object(response: str) -> Optional[dict]:
    """extract_first_json_object + json.loads; None when absent or invalid."""
    raw = extract_first_json_object(response)
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def parse_json_array(response: str) -> Optional[List[Any]]:
    """extract_first_json_array + json.loads; None when absent or invalid."""
    raw = extract_first_json_array(response)
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, list) else None
