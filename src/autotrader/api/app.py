"""FastAPI application factory for the trading trigger surface."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from autotrader.api import routes
from autotrader.exceptions import (
    GatewayError,
    NoActiveExchangeError,
    PositionNotFoundError,
    StateConflict,
    TradingError,
    ValidationRejection,
)
from autotrader.logging import get_logger

logger = get_logger(__name__)

# Most specific first; the first isinstance match wins.
_STATUS_CODES: list[tuple[type[TradingError], int]] = [
    (ValidationRejection, 422),
    (PositionNotFoundError, 404),
    (StateConflict, 409),
    (NoActiveExchangeError, 409),
    (GatewayError, 502),
]


async def _trading_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map the TradingError hierarchy onto HTTP status codes."""
    status_code = next(
        (code for exc_type, code in _STATUS_CODES if isinstance(exc, exc_type)), 500
    )
    body: dict[str, Any] = {
        "success": False,
        "error": str(exc),
        "error_type": type(exc).__name__,
    }
    if isinstance(exc, ValidationRejection):
        body["adjustments"] = exc.result.adjustments
    logger.warning(
        "request_failed",
        path=request.url.path,
        status_code=status_code,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return JSONResponse(body, status_code=status_code)


def create_app(lifespan: Any = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        lifespan: Optional async context manager for application lifespan events.
                  Used by main.py to inject startup/shutdown logic.

    Returns:
        Configured FastAPI application. Route handlers read the dispatcher,
        monitor, force-close coordinator and rules cache from app.state.
    """
    app = FastAPI(title="Autotrader", lifespan=lifespan)

    app.state.cron_secret = ""
    app.add_exception_handler(TradingError, _trading_error_handler)
    app.include_router(routes.router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app
