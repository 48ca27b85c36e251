"""Order dispatch: open positions from validated intents and close them once.

Open flow:
1. Resolve the portfolio's active exchange credentials
2. Fetch symbol rules (TTL cache) and a reference price, then validate
3. Check the account can fund the order (quote asset to buy, base to sell)
4. Place the entry order with a timeout
5. Persist the position and its entry order in one transaction

Nothing is written until the exchange acknowledges the entry order, so a
gateway failure or timeout leaves no trace in the store.

Close flow:
1. Compare-and-swap OPEN -> CLOSING (the single point of exclusion)
2. Place the opposite-side market order with a timeout
3. Record the exit order and move CLOSING -> CLOSED with realized PnL
   (the store write is retried before giving up)
Any failure before CLOSED reverts CLOSING -> OPEN so the next attempt can
retry. Concurrent close() calls for the same id inside this process share
one in-flight task; the task is shielded from caller cancellation so a
placed exit order is always recorded.
"""

import asyncio
import time
from dataclasses import dataclass, field
from decimal import Decimal
from uuid import uuid4

from autotrader.config import TradingSettings
from autotrader.exceptions import (
    CloseInProgressError,
    GatewayError,
    NoActiveExchangeError,
    PositionNotFoundError,
    PriceUnavailableError,
    StateConflict,
    UnknownSymbolError,
    ValidationRejection,
)
from autotrader.exchange.gateway import ExchangeGateway
from autotrader.exchange.rules_cache import SymbolRulesCache
from autotrader.exchange.selection import select_active_exchange
from autotrader.logging import get_logger
from autotrader.models import (
    CloseReason,
    ExchangeAccount,
    Order,
    OrderAck,
    OrderIntent,
    OrderRequest,
    OrderRole,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    PositionSide,
    PositionStatus,
)
from autotrader.position.pnl import compute_pnl
from autotrader.store.position_store import PositionStore
from autotrader.validation.signals import position_side_for, protective_prices
from autotrader.validation.validator import EPSILON, AdjustmentResult, validate

logger = get_logger(__name__)

_FAILED_ORDER_STATUSES = (OrderStatus.REJECTED, OrderStatus.CANCELLED)


@dataclass
class DispatchResult:
    """A successfully opened position with the adjustments made to the request."""

    position: Position
    entry_order: Order
    adjustments: list[str] = field(default_factory=list)


class OrderDispatcher:
    """Opens and closes positions through an ExchangeGateway.

    Args:
        gateway: Live or paper gateway used for prices and orders.
        store: Position store; the only place position status changes.
        rules_cache: TTL cache of symbol rules.
        settings: Trading settings (timeouts, balance check, record retries).
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        store: PositionStore,
        rules_cache: SymbolRulesCache,
        settings: TradingSettings | None = None,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._rules_cache = rules_cache
        self._settings = settings or TradingSettings()
        self._inflight: dict[str, asyncio.Task[Position]] = {}

    # ──────────────────────────────────────────────
    # Open
    # ──────────────────────────────────────────────

    async def open(
        self,
        portfolio_id: str,
        intent: OrderIntent,
        validated: AdjustmentResult | None = None,
    ) -> DispatchResult:
        """Validate an intent, place the entry order and persist the position.

        Args:
            portfolio_id: Portfolio that will own the position.
            intent: Requested order.
            validated: Result of an earlier validate() call for this intent.
                When omitted, rules and a reference price are fetched here.

        Returns:
            DispatchResult with the persisted position and any adjustments.

        Raises:
            NoActiveExchangeError: If the portfolio has no exchange credentials.
            ValidationRejection: If the intent cannot be made exchange-valid
                or the account balance cannot fund it.
            GatewayError: If rules, price or order placement fail or time out.
        """
        account = await self._resolve_account(portfolio_id)

        if validated is None:
            validated = await self._validate(intent)
        if validated.rejected:
            logger.warning(
                "open_rejected",
                portfolio_id=portfolio_id,
                symbol=intent.symbol,
                reason=validated.rejection_reason,
            )
            raise ValidationRejection(validated)

        if self._settings.balance_check:
            await self._check_balance(portfolio_id, intent, validated, account)

        request = OrderRequest(
            symbol=intent.symbol,
            side=intent.side,
            order_type=intent.order_type,
            quantity=validated.adjusted_quantity,
            price=validated.adjusted_price,
        )
        ack = await self._submit(request, account)

        entry_price = (
            ack.average_price
            or validated.adjusted_price
            or validated.effective_price
        )
        if entry_price is None or entry_price <= 0:
            raise PriceUnavailableError(
                f"No entry price for {intent.symbol}: order {ack.order_id} "
                "has no fill price and no reference price was available"
            )
        quantity = ack.filled_quantity if ack.filled_quantity > 0 else request.quantity

        side = position_side_for(intent.side)
        stop_loss, take_profit = protective_prices(
            entry_price, side, intent.stop_loss_percent, intent.take_profit_percent
        )
        now = time.time()
        position = Position(
            id=str(uuid4()),
            portfolio_id=portfolio_id,
            symbol=intent.symbol,
            side=side,
            entry_price=entry_price,
            quantity=quantity,
            status=PositionStatus.OPEN,
            source=intent.source,
            current_price=entry_price,
            take_profit_price=intent.take_profit_price or take_profit,
            stop_loss_price=intent.stop_loss_price or stop_loss,
            created_at=now,
            updated_at=now,
        )
        entry_order = Order(
            id=str(uuid4()),
            position_id=position.id,
            portfolio_id=portfolio_id,
            exchange_order_id=ack.order_id,
            role=OrderRole.ENTRY,
            symbol=intent.symbol,
            side=intent.side,
            order_type=intent.order_type,
            price=entry_price,
            quantity=quantity,
            status=ack.status,
            fill_percent=ack.fill_percent,
            created_at=now,
        )

        try:
            await self._store.create_position(position, entry_order)
        except Exception:
            # The exchange holds a fill the store does not know about.
            logger.critical(
                "position_persist_failed",
                portfolio_id=portfolio_id,
                symbol=intent.symbol,
                exchange_order_id=ack.order_id,
                quantity=str(quantity),
                exc_info=True,
            )
            raise

        logger.info(
            "position_opened",
            position_id=position.id,
            portfolio_id=portfolio_id,
            symbol=position.symbol,
            side=position.side.value,
            entry_price=str(entry_price),
            quantity=str(quantity),
            adjustments=len(validated.adjustments),
        )
        return DispatchResult(
            position=position,
            entry_order=entry_order,
            adjustments=list(validated.adjustments),
        )

    async def _validate(self, intent: OrderIntent) -> AdjustmentResult:
        """Fetch rules and, when needed, a reference price, then validate."""
        try:
            rules = await self._rules_cache.get(intent.symbol)
        except UnknownSymbolError:
            rules = None
        except asyncio.TimeoutError as exc:
            raise GatewayError(f"Timed out fetching rules for {intent.symbol}") from exc

        current_price: Decimal | None = None
        needs_price = intent.order_type is OrderType.MARKET or intent.quote_amount is not None
        if rules is not None and needs_price:
            current_price = await self.fetch_price(intent.symbol)

        return validate(intent, rules, current_price)

    async def _check_balance(
        self,
        portfolio_id: str,
        intent: OrderIntent,
        validated: AdjustmentResult,
        account: ExchangeAccount,
    ) -> None:
        """Reject an entry the account's free balance cannot cover.

        Buys need ``quantity * price`` of the quote asset, sells need
        ``quantity`` of the base asset. The check is skipped when the market
        does not name its assets or no price is known for a buy.

        Raises:
            ValidationRejection: On a shortfall.
            GatewayError: If the balance fetch times out.
        """
        try:
            rules = await self._rules_cache.get(intent.symbol)
        except asyncio.TimeoutError as exc:
            raise GatewayError(f"Timed out fetching rules for {intent.symbol}") from exc

        required: Decimal | None
        if intent.side is OrderSide.BUY:
            asset = rules.quote_asset
            price = validated.adjusted_price or validated.effective_price
            required = validated.adjusted_quantity * price if price else None
        else:
            asset = rules.base_asset
            required = validated.adjusted_quantity
        if not asset or required is None:
            logger.debug("balance_check_skipped", symbol=intent.symbol, asset=asset)
            return

        try:
            balance = await asyncio.wait_for(
                self._gateway.get_balance(asset, account),
                timeout=self._settings.price_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise GatewayError(
                f"Timed out after {self._settings.price_timeout_seconds}s "
                f"fetching {asset} balance"
            ) from exc

        if balance.free < required - EPSILON:
            rejected = AdjustmentResult.reject(
                f"Insufficient {asset} balance. "
                f"Available: {balance.free:.8f}, Required: {required:.8f}",
                validated.adjustments,
            )
            logger.warning(
                "open_rejected",
                portfolio_id=portfolio_id,
                symbol=intent.symbol,
                reason=rejected.rejection_reason,
            )
            raise ValidationRejection(rejected)

    async def fetch_price(self, symbol: str) -> Decimal:
        """Fetch one symbol's price with the configured price timeout.

        Raises:
            PriceUnavailableError: On timeout or gateway failure.
        """
        try:
            return await asyncio.wait_for(
                self._gateway.get_price(symbol),
                timeout=self._settings.price_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise PriceUnavailableError(
                f"Timed out after {self._settings.price_timeout_seconds}s "
                f"fetching price for {symbol}"
            ) from exc

    # ──────────────────────────────────────────────
    # Close
    # ──────────────────────────────────────────────

    async def close(
        self,
        position_id: str,
        reason: CloseReason,
        exchange: ExchangeAccount | None = None,
    ) -> Position:
        """Close a position exactly once.

        Args:
            position_id: Position to close.
            reason: Why it is being closed; stored on the position.
            exchange: Credentials to close with. Resolved from the
                portfolio when omitted.

        Returns:
            The CLOSED position. If another actor already closed it, that
            position is returned without an exchange call.

        Raises:
            PositionNotFoundError: If the id does not exist.
            CloseInProgressError: If another process holds it in CLOSING.
            StateConflict: If it is in another terminal state.
            NoActiveExchangeError: If no credentials can be resolved.
            GatewayError: If the exit order fails; the position is OPEN again.
        """
        task = self._inflight.get(position_id)
        if task is None:
            task = asyncio.ensure_future(
                self._close_once(position_id, reason, exchange)
            )
            self._inflight[position_id] = task
            task.add_done_callback(
                lambda done, pid=position_id: self._forget_inflight(pid, done)
            )
        else:
            logger.info("close_coalesced", position_id=position_id, reason=reason.value)
        return await asyncio.shield(task)

    async def close_open(
        self,
        portfolio_id: str,
        symbol: str,
        side: PositionSide,
        reason: CloseReason,
    ) -> Position:
        """Close a portfolio's open position on one symbol and side.

        The oldest match is closed when several are open.

        Raises:
            PositionNotFoundError: If no such position is open.
            Anything close() raises.
        """
        position = await self._store.find_open_position(portfolio_id, symbol, side)
        if position is None:
            raise PositionNotFoundError(
                f"No open {side.value} position for {symbol} in portfolio {portfolio_id}"
            )
        return await self.close(position.id, reason)

    def _forget_inflight(self, position_id: str, task: asyncio.Task[Position]) -> None:
        if self._inflight.get(position_id) is task:
            del self._inflight[position_id]

    async def _close_once(
        self,
        position_id: str,
        reason: CloseReason,
        exchange: ExchangeAccount | None,
    ) -> Position:
        position = await self._store.get_position(position_id)
        if position is None:
            raise PositionNotFoundError(f"Position {position_id} not found")
        if position.status is not PositionStatus.OPEN:
            return self._observe_terminal(position)

        account = exchange or await self._resolve_account(position.portfolio_id)

        if not await self._store.compare_and_set_status(
            position_id, PositionStatus.OPEN, PositionStatus.CLOSING
        ):
            current = await self._store.get_position(position_id)
            if current is None:
                raise PositionNotFoundError(f"Position {position_id} not found")
            return self._observe_terminal(current)

        logger.info(
            "position_closing",
            position_id=position_id,
            symbol=position.symbol,
            reason=reason.value,
        )

        request = OrderRequest(
            symbol=position.symbol,
            side=position.exit_side,
            order_type=OrderType.MARKET,
            quantity=position.quantity,
        )
        try:
            ack = await self._submit(request, account)
        except Exception as exc:
            await self._revert_closing(position_id)
            logger.error(
                "position_close_failed",
                position_id=position_id,
                symbol=position.symbol,
                reason=reason.value,
                error=str(exc),
            )
            if isinstance(exc, GatewayError):
                raise
            raise GatewayError(f"Close failed for position {position_id}: {exc}") from exc

        return await self._record_close(position, reason, request, ack)

    def _observe_terminal(self, position: Position) -> Position:
        """Resolve a lost race against the state the winner left behind."""
        if position.status is PositionStatus.CLOSED:
            logger.info("close_already_done", position_id=position.id)
            return position
        if position.status is PositionStatus.CLOSING:
            raise CloseInProgressError(
                f"Position {position.id} is being closed by another actor"
            )
        raise StateConflict(
            f"Position {position.id} is {position.status.value} and cannot be closed"
        )

    async def _record_close(
        self,
        position: Position,
        reason: CloseReason,
        request: OrderRequest,
        ack: OrderAck,
    ) -> Position:
        """Record a filled exit order and move the position to CLOSED.

        The store write is retried with linear backoff. If every attempt
        fails the exchange holds a fill the store does not, so the position
        is reverted to OPEN and the exit order id is logged at CRITICAL.

        Raises:
            GatewayError: If the fill could not be recorded.
            StateConflict: If the position is no longer CLOSING when recorded.
        """
        exit_price = ack.average_price
        if exit_price is None or exit_price <= 0:
            exit_price = position.current_price or position.entry_price
            logger.warning(
                "exit_price_estimated",
                position_id=position.id,
                order_id=ack.order_id,
                exit_price=str(exit_price),
            )

        pnl, pnl_percent = compute_pnl(
            position.side, position.entry_price, exit_price, position.quantity
        )
        closed_at = time.time()
        exit_order = Order(
            id=str(uuid4()),
            position_id=position.id,
            portfolio_id=position.portfolio_id,
            exchange_order_id=ack.order_id,
            role=OrderRole.EXIT,
            symbol=position.symbol,
            side=request.side,
            order_type=OrderType.MARKET,
            price=exit_price,
            quantity=position.quantity,
            status=ack.status,
            fill_percent=ack.fill_percent,
            pnl=pnl,
            created_at=closed_at,
        )

        attempts = max(1, self._settings.record_close_attempts)
        recorded = False
        for attempt in range(1, attempts + 1):
            try:
                recorded = await self._store.finalize_close(
                    position.id,
                    exit_price=exit_price,
                    pnl=pnl,
                    pnl_percent=pnl_percent,
                    reason=reason,
                    exit_order=exit_order,
                    closed_at=closed_at,
                )
                break
            except Exception as exc:
                if attempt == attempts:
                    logger.critical(
                        "exit_fill_unrecorded",
                        position_id=position.id,
                        symbol=position.symbol,
                        exchange_order_id=ack.order_id,
                        quantity=str(position.quantity),
                        exit_price=str(exit_price),
                        attempts=attempts,
                        exc_info=True,
                    )
                    await self._revert_closing(position.id)
                    raise GatewayError(
                        f"Exit order {ack.order_id} for position {position.id} filled "
                        f"but could not be recorded: {exc}"
                    ) from exc
                logger.warning(
                    "close_record_retry",
                    position_id=position.id,
                    exchange_order_id=ack.order_id,
                    attempt=attempt,
                    error=str(exc),
                )
                await asyncio.sleep(self._settings.record_close_backoff_seconds * attempt)

        if not recorded:
            raise StateConflict(f"Position {position.id} left CLOSING before it was recorded")

        logger.info(
            "position_closed",
            position_id=position.id,
            symbol=position.symbol,
            reason=reason.value,
            exit_price=str(exit_price),
            pnl=str(pnl),
            pnl_percent=str(pnl_percent.quantize(Decimal("0.01"))),
        )

        closed = await self._store.get_position(position.id)
        assert closed is not None
        return closed

    async def _revert_closing(self, position_id: str) -> None:
        try:
            reverted = await self._store.compare_and_set_status(
                position_id, PositionStatus.CLOSING, PositionStatus.OPEN
            )
        except Exception:
            logger.critical("close_revert_failed", position_id=position_id, exc_info=True)
            return
        if reverted:
            logger.info("position_reopened", position_id=position_id)

    # ──────────────────────────────────────────────
    # Shared helpers
    # ──────────────────────────────────────────────

    async def _resolve_account(self, portfolio_id: str) -> ExchangeAccount:
        account = select_active_exchange(await self._store.list_exchanges(portfolio_id))
        if account is None:
            raise NoActiveExchangeError(
                f"Portfolio {portfolio_id} has no exchange credentials"
            )
        return account

    async def _submit(self, request: OrderRequest, account: ExchangeAccount) -> OrderAck:
        """Place an order with the order timeout and reject failed statuses."""
        try:
            ack = await asyncio.wait_for(
                self._gateway.place_order(request, account),
                timeout=self._settings.order_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.error(
                "order_timeout",
                symbol=request.symbol,
                side=request.side.value,
                timeout=self._settings.order_timeout_seconds,
            )
            raise GatewayError(
                f"Order placement timed out after "
                f"{self._settings.order_timeout_seconds}s for {request.symbol}"
            ) from exc

        if ack.status in _FAILED_ORDER_STATUSES:
            raise GatewayError(
                f"Order {ack.order_id} for {request.symbol} was {ack.status.value.lower()}"
            )
        return ack
