from __future__ import annotations

from uuid import UUID

from fastapi import HTTPException


def validate_uuid_or_400(value: str, *, field_name: str) -> str:
    """Canonical lower-case UUID string, or a 400 naming the offending field."""
    try:
        return str(UUID(str(value)))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"{field_name} must be a UUID, got {value!r}") from exc


def optional_uuid_or_400(value: str | None, *, field_name: str) -> str | None:
    if value is None or not str(value).strip():
        return None
    return validate_uuid_or_400(value, field_name=field_name)


def clamp_page(limit: int, offset: int = 0, *, maximum: int = 500) -> tuple[int, int]:
    return max(1, min(int(limit), maximum)), max(0, int(offset))
