"""FastAPI entrypoint for the home-kitchen marketplace order API."""

from __future__ import annotations

import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api.v1.api import api_router
from app.core.config import configure_logging, settings
from app.core.errors import MarketplaceError
from app.db import session as db_session
from app.db.base import Base

logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, debug=settings.debug)
app.include_router(api_router, prefix="/api/v1")


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    logger.info("[BOOTSTRAP] env=%s", settings.app_env)
    Base.metadata.create_all(bind=db_session.engine)


@app.exception_handler(MarketplaceError)
def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    """Render domain errors as a stable ``{"error": {...}}`` envelope."""
    if exc.status_code >= 500:
        logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("[API] %s %s rejected: %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


def run() -> None:
    uvicorn.run("app.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
