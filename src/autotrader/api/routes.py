"""JSON endpoints: cron trigger, manual close, admin force-close, trade validation."""

from __future__ import annotations

import secrets
from dataclasses import asdict
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from autotrader.exceptions import UnknownSymbolError
from autotrader.logging import get_logger
from autotrader.models import CloseReason, OrderIntent, OrderSide, OrderType, Position
from autotrader.validation.signals import (
    intent_from_signal,
    normalize_signal_action,
    position_side_for_action,
)
from autotrader.validation.validator import validate

logger = get_logger(__name__)

router = APIRouter()


def _decimal_to_str(obj: Any) -> Any:
    """Recursively convert Decimal values to strings for JSON serialization."""
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, dict):
        return {k: _decimal_to_str(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_decimal_to_str(item) for item in obj]
    return obj


def _position_json(position: Position) -> dict[str, Any]:
    return _decimal_to_str(asdict(position))


async def require_cron_secret(
    request: Request,
    authorization: str | None = Header(default=None),
) -> None:
    """Reject the request unless it carries the configured bearer secret.

    An empty secret disables the check.
    """
    secret: str = request.app.state.cron_secret
    if not secret:
        return
    expected = f"Bearer {secret}"
    if authorization is None or not secrets.compare_digest(authorization, expected):
        logger.warning("cron_auth_rejected", path=request.url.path)
        raise HTTPException(status_code=401, detail="Unauthorized")


class OpenPositionRequest(BaseModel):
    """Manual order request body."""

    symbol: str
    side: OrderSide
    order_type: OrderType = OrderType.MARKET
    quantity: Decimal | None = None
    price: Decimal | None = None
    quote_amount: Decimal | None = None
    take_profit_price: Decimal | None = None
    stop_loss_price: Decimal | None = None
    take_profit_percent: Decimal | None = None
    stop_loss_percent: Decimal | None = None

    def to_intent(self) -> OrderIntent:
        return OrderIntent(
            symbol=self.symbol.upper(),
            side=self.side,
            order_type=self.order_type,
            quantity=self.quantity,
            price=self.price,
            quote_amount=self.quote_amount,
            take_profit_price=self.take_profit_price,
            stop_loss_price=self.stop_loss_price,
            take_profit_percent=self.take_profit_percent,
            stop_loss_percent=self.stop_loss_percent,
        )


class SignalRequest(BaseModel):
    """Webhook signal body."""

    symbol: str
    action: str
    quote_amount: Decimal | None = None  # required for entries
    stop_loss_percent: Decimal | None = None
    take_profit_percent: Decimal | None = None


class ValidateRequest(OpenPositionRequest):
    """Dry-run validation body; current_price overrides the live price."""

    current_price: Decimal | None = None


class CloseRequest(BaseModel):
    reason: CloseReason = CloseReason.MANUAL


@router.api_route(
    "/cron/monitor-positions",
    methods=["GET", "POST"],
    dependencies=[Depends(require_cron_secret)],
)
async def monitor_positions(request: Request) -> JSONResponse:
    """Run one TP/SL monitor pass and report its counters."""
    report = await request.app.state.monitor.monitor_positions()
    return JSONResponse({"success": True, **asdict(report)})


@router.post("/positions/{position_id}/close")
async def close_position(
    position_id: str, request: Request, body: CloseRequest | None = None
) -> JSONResponse:
    """Close one position (idempotent)."""
    reason = body.reason if body is not None else CloseReason.MANUAL
    position = await request.app.state.dispatcher.close(position_id, reason)
    logger.info("position_closed_via_api", position_id=position_id, reason=reason.value)
    return JSONResponse({"success": True, "position": _position_json(position)})


@router.post(
    "/admin/users/{user_id}/force-close",
    dependencies=[Depends(require_cron_secret)],
)
async def force_close_user(user_id: str, request: Request) -> JSONResponse:
    """Close every open position owned by a user."""
    summary = await request.app.state.force_close.force_close_all(user_id)
    return JSONResponse(
        {
            "success": summary.failed_count == 0,
            "user_id": summary.user_id,
            "closed_count": summary.closed_count,
            "failed_count": summary.failed_count,
            "errors": [asdict(error) for error in summary.errors],
            "results": [
                {
                    "position_id": result.position_id,
                    "symbol": result.symbol,
                    "success": result.success,
                    "attempts": result.attempts,
                    "error": result.error,
                }
                for result in summary.results
            ],
        }
    )


@router.post("/portfolios/{portfolio_id}/positions")
async def open_position(
    portfolio_id: str, body: OpenPositionRequest, request: Request
) -> JSONResponse:
    """Open a position from a manual order request."""
    result = await request.app.state.dispatcher.open(portfolio_id, body.to_intent())
    return JSONResponse(
        {
            "success": True,
            "position": _position_json(result.position),
            "adjustments": result.adjustments,
        },
        status_code=201,
    )


@router.post("/portfolios/{portfolio_id}/signals")
async def receive_signal(
    portfolio_id: str, body: SignalRequest, request: Request
) -> JSONResponse:
    """Act on a webhook signal.

    Entry signals open a position sized by quote_amount. Exit signals close
    the portfolio's open position on that symbol and side (404 if none).
    """
    try:
        action = normalize_signal_action(body.action)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if not action.is_entry:
        position = await request.app.state.dispatcher.close_open(
            portfolio_id,
            body.symbol.upper(),
            position_side_for_action(action),
            CloseReason.SIGNAL,
        )
        logger.info(
            "signal_executed",
            portfolio_id=portfolio_id,
            symbol=position.symbol,
            action=action.value,
            position_id=position.id,
        )
        return JSONResponse({"success": True, "position": _position_json(position)})

    if body.quote_amount is None:
        raise HTTPException(status_code=400, detail="quote_amount is required for entry signals")
    intent = intent_from_signal(
        body.symbol,
        body.action,
        body.quote_amount,
        stop_loss_percent=body.stop_loss_percent,
        take_profit_percent=body.take_profit_percent,
    )

    result = await request.app.state.dispatcher.open(portfolio_id, intent)
    logger.info(
        "signal_executed",
        portfolio_id=portfolio_id,
        symbol=intent.symbol,
        action=action.value,
        position_id=result.position.id,
    )
    return JSONResponse(
        {
            "success": True,
            "position": _position_json(result.position),
            "adjustments": result.adjustments,
        },
        status_code=201,
    )


@router.post("/trade/validate")
async def validate_trade(body: ValidateRequest, request: Request) -> JSONResponse:
    """Dry-run an order request against exchange rules without placing it."""
    intent = body.to_intent()
    try:
        rules = await request.app.state.rules_cache.get(intent.symbol)
    except UnknownSymbolError:
        rules = None

    current_price = body.current_price
    needs_price = intent.order_type is OrderType.MARKET or intent.quote_amount is not None
    if current_price is None and rules is not None and needs_price:
        current_price = await request.app.state.dispatcher.fetch_price(intent.symbol)

    result = validate(intent, rules, current_price)
    payload = _decimal_to_str(asdict(result))
    payload["has_adjustments"] = result.has_adjustments
    return JSONResponse(payload, status_code=422 if result.rejected else 200)
