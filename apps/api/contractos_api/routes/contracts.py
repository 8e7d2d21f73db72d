from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from ..services.contracts import get_contract as service_get_contract


router = APIRouter(tags=["contracts"])


@router.get("/contracts/{code}")
def get_contract(code: str) -> JSONResponse:
    return service_get_contract(code)
