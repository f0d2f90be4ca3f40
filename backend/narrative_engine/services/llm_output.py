"""Helpers for reading structured data out of model responses."""
from __future__ import annotations

from typing import Any, Dict, Optional
import json
import re


_FENCED_BLOCK = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)```")
_SMART_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})


def _loads_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        payload = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return payload if isinstance(payload, dict) else None


def extract_json_object(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Return the JSON object carried by ``text`` or None.

    Tries the raw text first, then a fenced block, then the outermost brace
    span. Smart quotes are normalised before the fallback attempts.
    """
    if not text or not text.strip():
        return None
    payload = _loads_object(text.strip())
    if payload is not None:
        return payload

    candidates = []
    fenced = _FENCED_BLOCK.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        for variant in (candidate, candidate.translate(_SMART_QUOTES)):
            payload = _loads_object(variant.strip())
            if payload is not None:
                return payload
    return None


def strip_code_fences(text: Optional[str]) -> str:
    """Remove a surrounding ``` fence from free-text output."""
    if not text:
        return ""
    cleaned = text.strip()
    fenced = _FENCED_BLOCK.search(cleaned)
    if fenced and cleaned.startswith("```"):
        return fenced.group(1).strip()
    return cleaned.replace("```", "").strip()
