from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml


def _schema_root() -> Path:
    configured = os.environ.get("COS_SCHEMA_ROOT")
    if configured:
        path = Path(configured).resolve()
        if path.exists():
            return path
    return Path(__file__).resolve().parent / "schemas"


def _read_yaml(path: Path) -> Any:
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise RuntimeError(f"Not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise RuntimeError(f"Failed to read YAML: {path}") from exc


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise RuntimeError(f"Not found: {path}") from exc
    except ValueError as exc:
        raise RuntimeError(f"Failed to read JSON: {path}") from exc


@lru_cache(maxsize=None)
def load_rule_table(name: str) -> dict[str, Any]:
    """Load `<schema_root>/<name>.yaml` once per process."""
    data = _read_yaml(_schema_root() / f"{name}.yaml")
    return data if isinstance(data, dict) else {}


@lru_cache(maxsize=None)
def load_json_schema(name: str) -> dict[str, Any]:
    data = _read_json(_schema_root() / f"{name}.schema.json")
    if not isinstance(data, dict):
        raise RuntimeError(f"Schema {name} is not a JSON object")
    return data
