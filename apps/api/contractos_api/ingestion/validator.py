from __future__ import annotations

import copy
import logging
from typing import Any

from jsonschema import Draft202012Validator
from pydantic import ValidationError

from ..config import reconcile_tolerance
from ..spec_io import load_json_schema
from ..text_utils import _coerce_number
from .classifier import document_type_config
from .models import (
    ContractExtraction,
    EdpExtraction,
    ExtractedPayload,
    MemoExtraction,
    Provenance,
    UnparsedExtraction,
    ValidationWarning,
)
from .normalize import normalize_task_number
from .reconcile import reconcile_sum

logger = logging.getLogger(__name__)

_MODELS = {
    "contract": ContractExtraction,
    "edp": EdpExtraction,
    "memo": MemoExtraction,
    "unknown": UnparsedExtraction,
}
_TASK_LIST_FIELDS = ("tasks", "tasks_executed")
_MAX_FIXES = 200
_DEFAULT_CONFIDENCE = 0.8
_INFORMATIONAL = {"number_coerced", "task_number_normalized"}


def _dotted(path: Any) -> str:
    return ".".join(str(p) for p in path) or "$"


def _schema_types(schema: dict[str, Any]) -> set[str]:
    declared = schema.get("type")
    if isinstance(declared, str):
        return {declared}
    if isinstance(declared, list):
        return {str(t) for t in declared}
    return set()


def _coerce_numbers(
    value: Any,
    schema: dict[str, Any],
    path: list[Any],
    warnings: list[ValidationWarning],
) -> Any:
    """Rewrite numeric strings (including Chilean "1.234,56") where the schema wants a number."""
    types = _schema_types(schema)
    if types & {"number", "integer"} and "string" not in types and isinstance(value, str):
        number, coerced = _coerce_number(value)
        if number is not None and coerced:
            if "integer" in types and "number" not in types and number.is_integer():
                number = int(number)
            warnings.append(
                ValidationWarning(
                    code="number_coerced",
                    message=f"{_dotted(path)}: coerced {value!r} to {number}",
                    field=_dotted(path),
                    details={"original": value, "value": number},
                )
            )
            return number
        return value
    if isinstance(value, dict):
        props = schema.get("properties") or {}
        for key in list(value.keys()):
            if isinstance(props.get(key), dict):
                value[key] = _coerce_numbers(value[key], props[key], path + [key], warnings)
    elif isinstance(value, list) and isinstance(schema.get("items"), dict):
        for idx, item in enumerate(value):
            value[idx] = _coerce_numbers(item, schema["items"], path + [idx], warnings)
    return value


def _resolve(data: Any, path: list[Any]) -> Any:
    node = data
    for part in path:
        node = node[part]
    return node


def _drop_enclosing_item(data: dict[str, Any], path: list[Any]) -> list[Any] | None:
    """Remove the nearest array item enclosing `path`; returns the removed location."""
    for cut in range(len(path) - 1, -1, -1):
        if isinstance(path[cut], int):
            container = _resolve(data, path[:cut])
            if isinstance(container, list) and path[cut] < len(container):
                del container[path[cut]]
                return path[: cut + 1]
    return None


def _repair_structure(
    data: dict[str, Any],
    validator: Draft202012Validator,
    warnings: list[ValidationWarning],
) -> None:
    """Make `data` schema-valid by nulling offending fields or dropping broken array items."""
    for _ in range(_MAX_FIXES):
        errors = sorted(validator.iter_errors(data), key=lambda e: (len(e.absolute_path), list(map(str, e.absolute_path))))
        if not errors:
            return
        error = errors[0]
        path = list(error.absolute_path)

        if error.validator == "required" and isinstance(error.instance, dict):
            missing = [k for k in error.validator_value if k not in error.instance]
            for key in missing:
                error.instance[key] = None
                field = _dotted(path + [key])
                warnings.append(
                    ValidationWarning(code="field_missing", message=f"{field} is missing", field=field)
                )
            continue

        if not path:
            data.clear()
            warnings.append(ValidationWarning(code="schema_violation", message=error.message, field="$"))
            continue

        parent = _resolve(data, path[:-1])
        leaf = path[-1]
        if isinstance(parent, list) or parent.get(leaf) is None:
            removed = _drop_enclosing_item(data, path)
            if removed is None:
                parent.pop(leaf, None)
                removed = path
            warnings.append(
                ValidationWarning(
                    code="item_dropped",
                    message=f"{_dotted(removed)} dropped: {error.message}",
                    field=_dotted(removed),
                )
            )
            continue

        warnings.append(
            ValidationWarning(
                code="field_invalid",
                message=f"{_dotted(path)} set to null: {error.message}",
                field=_dotted(path),
                details={"rejected": parent[leaf]},
            )
        )
        parent[leaf] = None

    logger.warning("Structural repair did not converge after %s fixes", _MAX_FIXES)


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _normalize_tasks(data: dict[str, Any], payload_warnings: list[ValidationWarning]) -> bool:
    """Normalise task numbers in place. Returns True when a duplicate key was found."""
    duplicate = False
    for list_field in _TASK_LIST_FIELDS:
        items = data.get(list_field)
        if not isinstance(items, list):
            continue
        seen: set[str] = set()
        kept: list[dict[str, Any]] = []
        for idx, item in enumerate(items):
            result = normalize_task_number(item.get("task_number"), item.get("name"))
            if result.changed:
                payload_warnings.append(
                    ValidationWarning(
                        code="task_number_normalized",
                        message=f"{list_field}.{idx}: {item.get('task_number')!r} -> {result.value!r}",
                        field=f"{list_field}.{idx}.task_number",
                        details={"original": item.get("task_number"), "value": result.value},
                    )
                )
            if result.warning:
                payload_warnings.append(
                    ValidationWarning(
                        code="task_number_unmapped",
                        message=result.warning,
                        field=f"{list_field}.{idx}.task_number",
                    )
                )
            item["task_number"] = result.value
            if result.value is not None and result.value in seen:
                duplicate = True
                payload_warnings.append(
                    ValidationWarning(
                        code="task_number_duplicate",
                        message=f"{list_field}: task {result.value} appears more than once; later entry dropped",
                        field=f"{list_field}.{idx}.task_number",
                        details={"dropped": item},
                    )
                )
                continue
            if result.value is not None:
                seen.add(result.value)
            kept.append(item)
        data[list_field] = kept
    return duplicate


def _reconcile(
    data: dict[str, Any],
    rules: list[dict[str, Any]],
    tolerance: float,
    payload: ExtractedPayload,
) -> None:
    for rule in rules:
        label = str(rule.get("label") or "reconciliation")
        total = data.get(rule.get("total"))
        if total is None:
            continue
        if rule.get("items"):
            items = data.get(rule["items"]) or []
            values = [item.get(rule.get("item_field")) for item in items if isinstance(item, dict)]
            if not any(v is not None for v in values):
                continue
        else:
            values = [data.get(name) for name in rule.get("addends") or []]
            if any(v is None for v in values):
                continue
        check = reconcile_sum(label, total, values, tolerance)
        if check.within_tolerance:
            continue
        payload.warn(
            ValidationWarning(
                code="reconciliation_mismatch",
                message=check.describe(),
                field=str(rule.get("total")),
                details={
                    "label": label,
                    "declared_total": check.declared_total,
                    "computed_total": check.computed_total,
                    "discrepancy": check.absolute_diff,
                    "relative_diff": check.relative_diff,
                    "tolerance": tolerance,
                },
            ),
            review=True,
        )


def _provenance(raw: Any, source_filename: str | None) -> list[Provenance]:
    out: list[Provenance] = []
    if not isinstance(raw, list):
        return out
    for item in raw:
        if not isinstance(item, dict) or not item.get("field"):
            continue
        try:
            out.append(Provenance.model_validate({"filename": source_filename, **item}))
        except ValidationError:
            continue
    return out


def _build_structured(document_type: str, data: dict[str, Any], payload_warnings: list[ValidationWarning]) -> Any:
    model = _MODELS[document_type]
    fields = {k: v for k, v in data.items() if k in model.model_fields and k != "kind"}
    for key in list(fields):
        if fields[key] is None and key in ("tasks", "tasks_executed", "risks", "obligations"):
            fields[key] = []
    try:
        return model.model_validate({"kind": document_type, **fields})
    except ValidationError as exc:
        for err in exc.errors():
            top = err["loc"][0] if err.get("loc") else None
            if top in fields:
                payload_warnings.append(
                    ValidationWarning(code="field_invalid", message=f"{top}: {err['msg']}", field=str(top))
                )
                fields.pop(top, None)
    return model.model_validate({"kind": document_type, **fields})


def validate_extraction(
    raw: Any,
    document_type: str,
    *,
    source_filename: str | None = None,
    tolerance: float | None = None,
    classification_confident: bool = True,
) -> ExtractedPayload:
    """
    Turn raw model output into a typed, reviewed `ExtractedPayload`.

    Never raises for bad content: invalid non-critical fields are nulled with a warning,
    critical gaps and reconciliation mismatches set `review_required`.
    """
    if document_type not in _MODELS:
        document_type = "unknown"
    tol = reconcile_tolerance() if tolerance is None else tolerance
    cfg = document_type_config(document_type)
    schema = load_json_schema(document_type)
    warnings: list[ValidationWarning] = []

    if isinstance(raw, dict):
        data = copy.deepcopy(raw)
    else:
        data = {}
        warnings.append(
            ValidationWarning(code="not_an_object", message="model output was not a JSON object", field="$")
        )

    data = _coerce_numbers(data, schema, [], warnings)
    validator = Draft202012Validator(schema, format_checker=Draft202012Validator.FORMAT_CHECKER)
    _repair_structure(data, validator, warnings)

    duplicate = _normalize_tasks(data, warnings)
    structured = _build_structured(document_type, data, warnings)

    raw_confidence, _ = _coerce_number(data.get("confidence"))
    payload = ExtractedPayload(
        document_type=document_type,
        source_filename=source_filename,
        raw_output=raw if isinstance(raw, dict) else {"value": raw},
        structured=structured,
        warnings=warnings,
        provenance=_provenance(data.get("provenance"), source_filename),
    )

    if duplicate:
        payload.review_required = True

    for field in cfg.get("critical_fields") or []:
        if _is_empty(data.get(field)):
            payload.warn(
                ValidationWarning(
                    code="critical_field_missing",
                    message=f"critical field {field} is missing or invalid",
                    field=field,
                ),
                review=True,
            )

    if not classification_confident or document_type == "unknown":
        payload.warn(
            ValidationWarning(
                code="low_confidence_classification",
                message="document type could not be derived from the storage path",
            ),
            review=True,
        )

    _reconcile(data, cfg.get("reconciliation") or [], tol, payload)

    confidence = raw_confidence if raw_confidence is not None else _DEFAULT_CONFIDENCE
    confidence -= 0.05 * sum(1 for w in payload.warnings if w.code not in _INFORMATIONAL)
    if payload.review_required:
        confidence -= 0.2
    if not classification_confident:
        confidence = min(confidence, 0.5)
    payload.confidence = round(max(0.0, min(confidence, 1.0)), 3)
    return payload
