"""Paper trading gateway with simulated fills.

Market data (symbol rules, prices) comes from a real gateway; order
placement is simulated against the current price with configurable
slippage. Market orders fill instantly. Limit orders fill instantly at
their limit price when marketable and otherwise rest as NEW. Each fill
moves the account's virtual base and quote balances.

Implements the same ExchangeGateway ABC as CcxtGateway, so dispatch and
monitoring code is identical in paper and live mode.
"""

import time
from decimal import Decimal
from uuid import uuid4

from autotrader.exceptions import PriceUnavailableError
from autotrader.exchange.gateway import ExchangeGateway
from autotrader.exchange.types import SymbolRules
from autotrader.logging import get_logger
from autotrader.models import (
    Balance,
    ExchangeAccount,
    OrderAck,
    OrderRequest,
    OrderSide,
    OrderStatus,
    OrderType,
)

logger = get_logger(__name__)


class PaperGateway(ExchangeGateway):
    """Simulated order gateway for paper trading.

    Args:
        market_data: Gateway serving real symbol rules and prices.
        slippage: Fractional slippage applied to market fills
            (higher for buys, lower for sells).
        initial_balances: Starting balance per asset, given to every
            exchange account the first time it is seen.
    """

    def __init__(
        self,
        market_data: ExchangeGateway,
        slippage: Decimal = Decimal("0.0005"),
        initial_balances: dict[str, Decimal] | None = None,
    ) -> None:
        self._market_data = market_data
        self._slippage = slippage
        self._initial_balances = dict(initial_balances or {})
        self._virtual_balances: dict[str, dict[str, Decimal]] = {}
        self._resting: dict[str, OrderRequest] = {}

    def set_initial_balance(
        self, credentials: ExchangeAccount, asset: str, amount: Decimal
    ) -> None:
        """Set starting virtual balance of an asset for one exchange account."""
        self._balances_for(credentials)[asset] = amount

    def _balances_for(self, credentials: ExchangeAccount) -> dict[str, Decimal]:
        balances = self._virtual_balances.get(credentials.id)
        if balances is None:
            balances = dict(self._initial_balances)
            self._virtual_balances[credentials.id] = balances
        return balances

    async def connect(self) -> None:
        await self._market_data.connect()

    async def close(self) -> None:
        await self._market_data.close()

    async def get_symbol_rules(self, symbol: str) -> SymbolRules:
        return await self._market_data.get_symbol_rules(symbol)

    async def get_price(self, symbol: str) -> Decimal:
        return await self._market_data.get_price(symbol)

    async def get_prices(self, symbols: list[str]) -> dict[str, Decimal]:
        return await self._market_data.get_prices(symbols)

    async def get_balance(self, asset: str, credentials: ExchangeAccount) -> Balance:
        free = self._balances_for(credentials).get(asset, Decimal("0"))
        return Balance(asset=asset, free=free, locked=Decimal("0"))

    async def place_order(
        self, request: OrderRequest, credentials: ExchangeAccount
    ) -> OrderAck:
        """Simulate order execution using the current market price.

        1. Fetch price from the market-data gateway.
        2. Market orders: apply slippage and fill completely.
        3. Limit orders: fill at the limit price when marketable, else rest.
        4. Move the virtual balances by the filled amount.
        5. Return an OrderAck with is_simulated=True.

        Raises:
            PriceUnavailableError: If the price is missing or non-positive.
        """
        price = await self._market_data.get_price(request.symbol)
        if price <= 0:
            raise PriceUnavailableError(f"No usable price for {request.symbol}")

        order_id = f"paper_{uuid4().hex[:12]}"

        if request.order_type is OrderType.LIMIT and request.price is not None:
            marketable = (
                request.price >= price
                if request.side is OrderSide.BUY
                else request.price <= price
            )
            if not marketable:
                self._resting[order_id] = request
                logger.info(
                    "paper_order_resting",
                    order_id=order_id,
                    symbol=request.symbol,
                    side=request.side.value,
                    limit_price=str(request.price),
                    market_price=str(price),
                )
                return OrderAck(
                    order_id=order_id,
                    symbol=request.symbol,
                    side=request.side,
                    status=OrderStatus.NEW,
                    quantity=request.quantity,
                    filled_quantity=Decimal("0"),
                    average_price=None,
                    fill_percent=Decimal("0"),
                    timestamp=time.time(),
                    is_simulated=True,
                )
            fill_price = request.price
        elif request.side is OrderSide.BUY:
            fill_price = price * (Decimal("1") + self._slippage)
        else:
            fill_price = price * (Decimal("1") - self._slippage)

        await self._apply_fill(request, fill_price, credentials)

        logger.info(
            "paper_order_filled",
            order_id=order_id,
            symbol=request.symbol,
            side=request.side.value,
            quantity=str(request.quantity),
            fill_price=str(fill_price),
            exchange_account=credentials.id,
        )

        return OrderAck(
            order_id=order_id,
            symbol=request.symbol,
            side=request.side,
            status=OrderStatus.FILLED,
            quantity=request.quantity,
            filled_quantity=request.quantity,
            average_price=fill_price,
            fill_percent=Decimal("100"),
            timestamp=time.time(),
            is_simulated=True,
        )

    async def _apply_fill(
        self, request: OrderRequest, fill_price: Decimal, credentials: ExchangeAccount
    ) -> None:
        rules = await self._market_data.get_symbol_rules(request.symbol)
        if not rules.base_asset or not rules.quote_asset:
            logger.debug("paper_balance_untracked", symbol=request.symbol)
            return

        balances = self._balances_for(credentials)
        cost = request.quantity * fill_price
        zero = Decimal("0")
        if request.side is OrderSide.BUY:
            balances[rules.quote_asset] = balances.get(rules.quote_asset, zero) - cost
            balances[rules.base_asset] = balances.get(rules.base_asset, zero) + request.quantity
        else:
            balances[rules.base_asset] = balances.get(rules.base_asset, zero) - request.quantity
            balances[rules.quote_asset] = balances.get(rules.quote_asset, zero) + cost

    async def cancel_order(
        self, order_id: str, symbol: str, credentials: ExchangeAccount
    ) -> bool:
        """Cancel a resting paper order. Returns False for unknown or filled orders."""
        removed = self._resting.pop(order_id, None) is not None
        logger.info(
            "paper_order_cancelled",
            order_id=order_id,
            symbol=symbol,
            found=removed,
        )
        return removed
