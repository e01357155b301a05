"""
FastAPI application factory.

The application owns exactly one ClonerOrchestrator, created here and shared
by every request through ``Depends(get_orchestrator)``. Its background
operations are cancelled when the application shuts down.

Usage:
    >>> app = create_app()
    >>> # uvicorn.run(app)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from dbcloner.api.auth import BearerTokenSessionProvider, SessionProvider
from dbcloner.api.routes import router
from dbcloner.config import ClonerSettings, get_settings
from dbcloner.orchestrator import ClonerOrchestrator

logger = logging.getLogger(__name__)


def create_app(
    settings: ClonerSettings | None = None,
    *,
    orchestrator: ClonerOrchestrator | None = None,
    session_provider: SessionProvider | None = None,
) -> FastAPI:
    """
    Build the cloner API.

    Args:
        settings: Service configuration; process settings if omitted.
        orchestrator: Orchestrator to serve; one is built from settings if omitted.
        session_provider: Session source; bearer tokens from settings if omitted.

    Returns:
        Configured FastAPI application.
    """
    settings = settings or get_settings()
    orchestrator = orchestrator or ClonerOrchestrator(settings=settings)
    session_provider = session_provider or BearerTokenSessionProvider(settings.superuser_tokens)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Database cloner API ready at %s", settings.api_prefix)
        try:
            yield
        finally:
            await app.state.orchestrator.shutdown()

    app = FastAPI(title="dbcloner", lifespan=lifespan)
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.state.session_provider = session_provider

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        # Submitted values are left out: they may contain credentials
        errors = [
            {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": "Invalid request", "errors": errors},
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(router, prefix=settings.api_prefix)
    return app


__all__ = ["create_app"]
