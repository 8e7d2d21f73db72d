from __future__ import annotations

import logging

import psycopg
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import configure_logging
from .db import init_db_pool, shutdown_db_pool
from .errors import IngestError
from .routes.contracts import router as contracts_router
from .routes.core import router as core_router
from .routes.ingest import router as ingest_router

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="ContractOS Ingest API", version="0.1.0")

    @app.on_event("startup")
    def _startup_db_pool() -> None:
        init_db_pool()

    @app.on_event("shutdown")
    def _shutdown_db_pool() -> None:
        shutdown_db_pool()

    @app.exception_handler(IngestError)
    def _ingest_error_handler(request: Request, exc: IngestError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.http_status, content={"ok": False, "error": exc.to_dict()})

    @app.exception_handler(psycopg.Error)
    def _database_error_handler(request: Request, exc: psycopg.Error) -> JSONResponse:
        logger.error("%s %s hit a database error: %s", request.method, request.url.path, exc)
        status = 503 if isinstance(exc, psycopg.OperationalError) else 500
        error = {"kind": "database_error", "message": str(exc).strip() or type(exc).__name__}
        if exc.sqlstate:
            error["details"] = {"sqlstate": exc.sqlstate}
        return JSONResponse(status_code=status, content={"ok": False, "error": error})

    app.include_router(core_router)
    app.include_router(ingest_router)
    app.include_router(contracts_router)

    return app


# Docker and uvicorn use `contractos_api.main:app`; `contractos_api.main` re-exports this app.
app = create_app()
