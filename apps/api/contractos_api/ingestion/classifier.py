from __future__ import annotations

from typing import Any

from ..spec_io import load_rule_table
from ..text_utils import _fold_text
from .models import Classification


def _document_types() -> dict[str, Any]:
    return load_rule_table("document_types")


def _folder_index() -> dict[str, str]:
    index: dict[str, str] = {}
    for doc_type, cfg in (_document_types().get("types") or {}).items():
        for folder in (cfg or {}).get("folders") or []:
            index[_fold_text(str(folder))] = doc_type
    return index


def fallback_type() -> str:
    return str(_document_types().get("fallback_type") or "unknown")


def document_type_config(document_type: str) -> dict[str, Any]:
    types = _document_types().get("types") or {}
    cfg = types.get(document_type) or types.get(fallback_type()) or {}
    return cfg if isinstance(cfg, dict) else {}


def classify_storage_path(path: str | None) -> Classification:
    """
    Map a storage path to a document type using the folder convention.

    `<project>/<entity-code>/<type-folder>/<filename>` is the canonical layout; the older
    `<project>/<type-folder>/<filename>` layout is still recognised. Anything else, or an
    unrecognised folder, yields the fallback type with `confident=False`.
    """
    parts = [p for p in (path or "").strip().split("/") if p]
    project = parts[0] if parts else None
    filename = parts[-1] if len(parts) >= 2 else None

    entity_code: str | None = None
    type_folder: str | None = None
    if len(parts) >= 4:
        entity_code = parts[1]
        type_folder = parts[2]
    elif len(parts) == 3:
        type_folder = parts[1]

    doc_type = _folder_index().get(_fold_text(type_folder)) if type_folder else None
    return Classification(
        document_type=doc_type or fallback_type(),
        project_prefix=project,
        entity_code=entity_code,
        type_folder=type_folder,
        filename=filename,
        confident=doc_type is not None,
    )
