# services/extraction/parsing.py
from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterable, Optional, Sequence

from services.extraction.errors import UnparseableResponse
from services.records.domain import DEFAULT_DEFECT_CATEGORY, DEFECT_CATEGORIES

_FENCE_RE = re.compile(r"^\s*```[A-Za-z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)
_BARE_SIZE_RE = re.compile(r"^\d{2,3}(\.\d)?$")


def _safe_str(x: Any) -> str:
    if x is None:
        return ""
    if isinstance(x, str):
        return x.strip()
    return str(x).strip()


def strip_code_fences(text: str) -> str:
    """
    '```json\\n{...}\\n```' -> '{...}'. Text without a fence is returned stripped.
    """
    s = _safe_str(text)
    m = _FENCE_RE.match(s)
    if m:
        return m.group(1).strip()
    return s


def parse_json_object(text: str) -> Dict[str, Any]:
    body = strip_code_fences(text)
    if not body:
        raise UnparseableResponse("Empty model response")
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError as e:
        raise UnparseableResponse(f"Model response was not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise UnparseableResponse("Model JSON was not an object")
    return parsed


def normalize_size(v: str) -> str:
    """
    Screen sizes are inch strings: '32' -> '32"'. Anything else is left alone.
    """
    s = _safe_str(v)
    if _BARE_SIZE_RE.fullmatch(s):
        return f'{s}"'
    return s


_FIELD_NORMALIZERS = {
    "size": normalize_size,
}


def label_fields(parsed: Dict[str, Any], keys: Sequence[str]) -> Dict[str, str]:
    """
    Hard schema lock: every requested key present, no extra keys, values as stripped strings.
    """
    out: Dict[str, str] = {}
    for k in keys:
        v = _safe_str(parsed.get(k))
        fn = _FIELD_NORMALIZERS.get(k)
        out[k] = fn(v) if (fn and v) else v
    return out


def parse_label_response(text: Optional[str], keys: Sequence[str]) -> Dict[str, str]:
    """Never raises: unparseable text yields all keys with empty values."""
    try:
        parsed = parse_json_object(text or "")
    except UnparseableResponse:
        return {k: "" for k in keys}
    return label_fields(parsed, keys)


def match_defect_category(
    text: Optional[str],
    categories: Iterable[str] = DEFECT_CATEGORIES,
    default: str = DEFAULT_DEFECT_CATEGORY,
) -> str:
    """First category whose name is a case-insensitive substring of the text."""
    lowered = _safe_str(text).lower()
    if lowered:
        for category in categories:
            if category.lower() in lowered:
                return category
    return default
