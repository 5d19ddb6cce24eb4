"""
Internal RPC application.

Loopback-only FastAPI app through which the event listeners, the scheduler
and the operator CLI reach the reconciler.
"""

from contextlib import asynccontextmanager
from typing import Callable, Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from ..core.config import settings
from ..core.exceptions import (
    GhostVaultException,
    NotFoundError,
    RPCAuthError,
    RPCMethodNotFoundError,
)
from ..core.store import Store
from ..reconciler.operator import OperatorService
from .routes import router
from .schemas import create_error_response


logger = structlog.get_logger(__name__)


def _error_status(exc: GhostVaultException) -> int:
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if exc.code == "VALIDATION_ERROR":
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if exc.code.startswith("NODE_") or exc.code.startswith("RPC_") or exc.code == "REMOTE_NODE_ERROR":
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_400_BAD_REQUEST


def _envelope(status_code: int, message: str, error_code: str, details=None) -> JSONResponse:
    body = create_error_response(message=message, error_code=error_code, details=details)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def create_app(
    operator: OperatorService,
    store: Store,
    request_exit: Optional[Callable[[], None]] = None,
) -> FastAPI:
    """Build the app around already initialised services."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting internal RPC server", address=settings.cli_address)
        yield
        logger.info("Internal RPC server stopped")

    app = FastAPI(
        title="GhostVault internal RPC",
        version=settings.app_version,
        docs_url="/docs" if settings.is_development else None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.operator = operator
    app.state.store = store
    app.include_router(router)

    @app.exception_handler(GhostVaultException)
    async def ghostvault_exception_handler(request: Request, exc: GhostVaultException):
        if isinstance(exc, (RPCAuthError, RPCMethodNotFoundError)):
            logger.critical(
                "Fatal node RPC error, shutting down",
                error=exc.message,
                code=exc.code,
                path=request.url.path,
            )
            (request_exit or operator.request_exit)()
        else:
            logger.error("RPC method failed", error=exc.message, code=exc.code, path=request.url.path)
        return _envelope(_error_status(exc), exc.message, exc.code, exc.details)

    @app.exception_handler(PydanticValidationError)
    async def params_exception_handler(request: Request, exc: PydanticValidationError):
        return _envelope(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Invalid parameters",
            "VALIDATION_ERROR",
            {"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
        )

    @app.exception_handler(RequestValidationError)
    async def request_exception_handler(request: Request, exc: RequestValidationError):
        return _envelope(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Invalid request body",
            "VALIDATION_ERROR",
            {"errors": [str(e.get("msg")) for e in exc.errors()]},
        )

    return app
