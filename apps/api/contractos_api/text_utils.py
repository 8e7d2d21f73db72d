from __future__ import annotations

import json
import re
import unicodedata
from typing import Any

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", flags=re.DOTALL)
_CL_NUMBER_RE = re.compile(r"^-?\d{1,3}(\.\d{3})+(,\d+)?$|^-?\d+,\d+$")
_PLAIN_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")


def _extract_json_object(text: str) -> dict[str, Any] | None:
    """
    Best-effort extraction of a single JSON object from an LLM response.

    Handles bare JSON, JSON wrapped in ``` fences and JSON embedded in prose.
    """
    if not text:
        return None
    candidates: list[str] = [text.strip()]
    candidates.extend(m.group(1).strip() for m in _FENCE_RE.finditer(text))
    match = re.search(r"\{.*\}", text, flags=re.DOTALL)
    if match:
        candidates.append(match.group(0))
    for candidate in candidates:
        if not candidate:
            continue
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _coerce_number(value: Any) -> tuple[float | None, bool]:
    """
    Coerce an extracted numeric value to float.

    Returns `(number, coerced)`; `coerced` is true when the input was a string that needed
    rewriting. Chilean formatting uses `.` for thousands and `,` for decimals, so
    "1.234,56" becomes 1234.56 and "209,81" becomes 209.81.
    """
    if value is None or isinstance(value, bool):
        return None, False
    if isinstance(value, (int, float)):
        return float(value), False
    if not isinstance(value, str):
        return None, False
    text = value.strip().replace(" ", "")
    for prefix in ("UF", "uf", "$", "CLP", "clp"):
        if text.startswith(prefix):
            text = text[len(prefix):]
    text = text.rstrip("%")
    if not text:
        return None, False
    if _CL_NUMBER_RE.match(text):
        return float(text.replace(".", "").replace(",", ".")), True
    if _PLAIN_NUMBER_RE.match(text):
        return float(text), True
    return None, False


def _fold_text(value: str) -> str:
    """Lower-case and strip accents, for keyword matching on Spanish task names."""
    normalized = unicodedata.normalize("NFKD", value or "")
    return "".join(ch for ch in normalized if not unicodedata.combining(ch)).lower().strip()


def _estimate_tokens(text: str) -> int:
    if not isinstance(text, str) or not text:
        return 0
    # Rough heuristic: ~4 chars per token.
    return max(1, len(text) // 4)
