"""Take-profit / stop-loss supervision of open positions.

One monitor_positions() call is one pass:
1. Load all OPEN positions, group them by portfolio, and resolve each
   portfolio's active exchange once
2. Fetch each distinct symbol's price once (batch, then per-symbol fallback)
3. Refresh current_price / unrealized PnL for every priced position
4. Close positions whose stop-loss or take-profit has been crossed

Positions are evaluated concurrently up to max_concurrency. A failure on one
position is logged and counted but never aborts the pass; the position stays
OPEN and is retried on the next pass. The pass runs under an overall deadline;
closes already handed to the dispatcher run to completion regardless.
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from uuid import uuid4

import structlog

from autotrader.config import MonitorSettings
from autotrader.exceptions import CloseInProgressError, GatewayError
from autotrader.exchange.gateway import ExchangeGateway
from autotrader.exchange.selection import select_active_exchange
from autotrader.logging import get_logger
from autotrader.models import CloseReason, ExchangeAccount, Position, PositionSide
from autotrader.position.dispatcher import OrderDispatcher
from autotrader.position.pnl import compute_pnl
from autotrader.store.position_store import PositionStore

logger = get_logger(__name__)


def evaluate_exit(position: Position, price: Decimal) -> CloseReason | None:
    """Return the exit a price triggers for a position, if any.

    LONG: stop-loss at or below its threshold, take-profit at or above.
    SHORT: the reverse. Stop-loss wins when both are crossed.
    """
    stop_loss = position.stop_loss_price
    take_profit = position.take_profit_price

    if position.side is PositionSide.LONG:
        sl_hit = stop_loss is not None and price <= stop_loss
        tp_hit = take_profit is not None and price >= take_profit
    else:
        sl_hit = stop_loss is not None and price >= stop_loss
        tp_hit = take_profit is not None and price <= take_profit

    if sl_hit:
        return CloseReason.STOP_LOSS
    if tp_hit:
        return CloseReason.TAKE_PROFIT
    return None


@dataclass
class MonitorReport:
    """Counters for one monitor pass."""

    checked: int = 0
    refreshed: int = 0
    triggered: int = 0
    closed: int = 0
    failed: int = 0
    skipped: int = 0
    timed_out: bool = False
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    started_at: float = 0.0  # wall clock, comparable with Position.closed_at


class PositionMonitor:
    """Periodic TP/SL evaluator over every open position.

    Holds no position state between passes except a consecutive
    close-failure counter per position, used to raise a CRITICAL alert when
    a position keeps failing to close.

    Args:
        store: Position store to read positions and write PnL refreshes.
        gateway: Gateway for prices.
        dispatcher: Performs the idempotent close.
        settings: Monitor settings (deadline, concurrency, alert threshold).
        price_timeout_seconds: Timeout for each price request.
    """

    def __init__(
        self,
        store: PositionStore,
        gateway: ExchangeGateway,
        dispatcher: OrderDispatcher,
        settings: MonitorSettings | None = None,
        price_timeout_seconds: float = 3.0,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._dispatcher = dispatcher
        self._settings = settings or MonitorSettings()
        self._price_timeout = price_timeout_seconds
        self._close_failures: dict[str, int] = {}

    async def monitor_positions(self) -> MonitorReport:
        """Run one supervision pass over all OPEN positions.

        Returns:
            MonitorReport with per-pass counters. Never raises for a
            single position's failure.
        """
        report = MonitorReport(started_at=time.time())
        started = time.monotonic()

        with structlog.contextvars.bound_contextvars(pass_id=uuid4().hex[:8]):
            try:
                await asyncio.wait_for(
                    self._run_pass(report),
                    timeout=self._settings.deadline_seconds,
                )
            except asyncio.TimeoutError:
                report.timed_out = True
                logger.warning(
                    "monitor_deadline_exceeded",
                    deadline=self._settings.deadline_seconds,
                    checked=report.checked,
                    closed=report.closed,
                )

            report.duration_seconds = time.monotonic() - started
            logger.info(
                "monitor_pass_complete",
                checked=report.checked,
                refreshed=report.refreshed,
                triggered=report.triggered,
                closed=report.closed,
                failed=report.failed,
                skipped=report.skipped,
                duration=round(report.duration_seconds, 3),
            )
        return report

    async def _run_pass(self, report: MonitorReport) -> None:
        positions = await self._store.list_open_positions()
        open_ids = {position.id for position in positions}
        for position_id in [pid for pid in self._close_failures if pid not in open_ids]:
            del self._close_failures[position_id]
        if not positions:
            logger.debug("monitor_no_open_positions")
            return

        by_portfolio: dict[str, list[Position]] = defaultdict(list)
        for position in positions:
            by_portfolio[position.portfolio_id].append(position)

        accounts: dict[str, ExchangeAccount | None] = {}
        for portfolio_id in by_portfolio:
            account = select_active_exchange(
                await self._store.list_exchanges(portfolio_id)
            )
            if account is None:
                logger.warning("monitor_no_active_exchange", portfolio_id=portfolio_id)
            accounts[portfolio_id] = account

        symbols = sorted({position.symbol for position in positions})
        prices = await self._fetch_prices(symbols)

        semaphore = asyncio.Semaphore(self._settings.max_concurrency)
        await asyncio.gather(
            *(
                self._evaluate(
                    position,
                    prices.get(position.symbol),
                    accounts[position.portfolio_id],
                    semaphore,
                    report,
                )
                for position in positions
            )
        )

    async def _fetch_prices(self, symbols: list[str]) -> dict[str, Decimal]:
        """Fetch prices in one batch, falling back to per-symbol requests."""
        prices: dict[str, Decimal] = {}
        try:
            prices = dict(
                await asyncio.wait_for(
                    self._gateway.get_prices(symbols), timeout=self._price_timeout
                )
            )
        except (GatewayError, asyncio.TimeoutError) as exc:
            logger.warning(
                "batch_price_fetch_failed",
                symbols=len(symbols),
                error=str(exc) or type(exc).__name__,
            )

        missing = [symbol for symbol in symbols if symbol not in prices]
        if not missing:
            return prices

        results = await asyncio.gather(
            *(
                asyncio.wait_for(self._gateway.get_price(symbol), timeout=self._price_timeout)
                for symbol in missing
            ),
            return_exceptions=True,
        )
        for symbol, result in zip(missing, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "price_unavailable",
                    symbol=symbol,
                    error=str(result) or type(result).__name__,
                )
            else:
                prices[symbol] = result
        return prices

    async def _evaluate(
        self,
        position: Position,
        price: Decimal | None,
        account: ExchangeAccount | None,
        semaphore: asyncio.Semaphore,
        report: MonitorReport,
    ) -> None:
        """Refresh PnL and apply the exit rule to one position."""
        async with semaphore:
            report.checked += 1
            if price is None or price <= 0:
                report.skipped += 1
                return

            pnl, pnl_percent = compute_pnl(
                position.side, position.entry_price, price, position.quantity
            )
            try:
                if await self._store.update_mark(position.id, price, pnl, pnl_percent):
                    report.refreshed += 1
            except Exception as exc:
                logger.warning(
                    "pnl_refresh_failed",
                    position_id=position.id,
                    symbol=position.symbol,
                    error=str(exc),
                    exc_info=True,
                )

            reason = evaluate_exit(position, price)
            if reason is None:
                return

            report.triggered += 1
            logger.info(
                "exit_triggered",
                position_id=position.id,
                symbol=position.symbol,
                reason=reason.value,
                price=str(price),
                stop_loss=str(position.stop_loss_price),
                take_profit=str(position.take_profit_price),
            )

            if account is None:
                self._record_close_failure(
                    position, report, f"portfolio {position.portfolio_id} has no exchange"
                )
                return

            try:
                closed = await self._dispatcher.close(position.id, reason, exchange=account)
            except CloseInProgressError:
                logger.info("close_in_progress_elsewhere", position_id=position.id)
                return
            except Exception as exc:
                self._record_close_failure(position, report, str(exc) or type(exc).__name__)
                return

            self._close_failures.pop(position.id, None)
            if (
                closed.close_reason is reason
                and closed.closed_at is not None
                and closed.closed_at >= report.started_at
            ):
                report.closed += 1
            else:
                logger.info(
                    "close_already_done_elsewhere",
                    position_id=position.id,
                    close_reason=closed.close_reason.value if closed.close_reason else None,
                )

    def _record_close_failure(
        self, position: Position, report: MonitorReport, message: str
    ) -> None:
        failures = self._close_failures.get(position.id, 0) + 1
        self._close_failures[position.id] = failures
        report.failed += 1
        report.errors.append(f"{position.id} ({position.symbol}): {message}")

        alert = failures >= self._settings.close_failure_alert_threshold
        log = logger.critical if alert else logger.error
        log(
            "monitor_close_failed",
            position_id=position.id,
            symbol=position.symbol,
            consecutive_failures=failures,
            error=message,
        )
