from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from ..spec_io import load_rule_table
from ..text_utils import _fold_text


@dataclass(frozen=True)
class NormalizedTaskNumber:
    value: str | None
    changed: bool
    warning: str | None = None


@lru_cache(maxsize=1)
def _compiled_rules() -> tuple[re.Pattern[str], list[tuple[re.Pattern[str], str]], list[dict[str, Any]]]:
    table = load_rule_table("task_rules")
    canonical = re.compile(table.get("canonical_pattern") or r"^\d+(\.\d+)*$")
    number_rules = [
        (re.compile(rule["pattern"], flags=re.IGNORECASE), rule.get("replace", ""))
        for rule in table.get("number_rules") or []
    ]
    name_rules = [
        {
            "code": str(rule["code"]),
            "all": [_fold_text(str(k)) for k in rule.get("all") or []],
            "override": bool(rule.get("override")),
        }
        for rule in table.get("name_rules") or []
        if rule.get("code") and rule.get("all")
    ]
    return canonical, number_rules, name_rules


def _match_name(name: str | None, rules: list[dict[str, Any]]) -> dict[str, Any] | None:
    folded = _fold_text(name or "")
    if not folded:
        return None
    for rule in rules:
        if all(keyword in folded for keyword in rule["all"]):
            return rule
    return None


def normalize_task_number(number: Any, name: str | None = None) -> NormalizedTaskNumber:
    """
    Normalise a hierarchical task number so repeated extractions converge on one key.

    "3.0" -> "3", "1-1" -> "1.1"; an empty number is filled from the task name when a
    keyword rule matches ("Visita a terreno" -> "1.2"). Codes that no rule can make
    canonical pass through unchanged with a warning.
    """
    canonical, number_rules, name_rules = _compiled_rules()
    original = None if number is None else str(number).strip()
    if isinstance(number, float) and number.is_integer():
        original = str(int(number))

    value = original or ""
    for pattern, replace in number_rules:
        value = pattern.sub(replace, value).strip()

    name_rule = _match_name(name, name_rules)
    if name_rule and (not value or name_rule["override"]):
        return NormalizedTaskNumber(name_rule["code"], name_rule["code"] != original)

    if not value:
        return NormalizedTaskNumber(None, False, f"task {name!r} has no number and no name rule matched")
    if not canonical.match(value):
        return NormalizedTaskNumber(original, False, f"task number {original!r} is not canonical; kept as-is")
    return NormalizedTaskNumber(value, value != original)
