from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from ..services.core import healthz as service_healthz
from ..services.core import readyz as service_readyz


router = APIRouter(tags=["core"])


@router.get("/healthz", summary="Liveness, DB ping and ingest queue depth")
def healthz() -> dict[str, Any]:
    return service_healthz()


@router.get("/readyz", summary="503 until Postgres answers", responses={503: {"description": "Database unavailable"}})
def readyz() -> dict[str, str]:
    return service_readyz()
