"""Live exchange gateway implementation via ccxt async.

Wraps a ccxt.async_support exchange with market loading, symbol rule
extraction, and per-credential private clients. All numeric values coming
back from ccxt are converted through Decimal(str(value)) to avoid float
precision loss.

Symbols may be given either as ccxt unified symbols ("BTC/USDT") or as
exchange market ids ("BTCUSDT"); results are keyed by the caller's spelling.
"""

import time
from decimal import Decimal
from typing import Any

import ccxt.async_support as ccxt_async

from autotrader.config import ExchangeSettings
from autotrader.exceptions import GatewayError, PriceUnavailableError, UnknownSymbolError
from autotrader.exchange.gateway import ExchangeGateway
from autotrader.exchange.types import SymbolRules, precision_from_step
from autotrader.logging import get_logger
from autotrader.models import (
    Balance,
    ExchangeAccount,
    OrderAck,
    OrderRequest,
    OrderStatus,
)

logger = get_logger(__name__)

_CCXT_STATUS = {
    "closed": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELLED,
    "cancelled": OrderStatus.CANCELLED,
    "rejected": OrderStatus.REJECTED,
    "expired": OrderStatus.CANCELLED,
}


def _to_decimal(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    if value is None or value == "":
        return default
    return Decimal(str(value))


def parse_order_status(raw_status: str | None, filled: Decimal) -> OrderStatus:
    """Map a ccxt order status onto OrderStatus.

    ccxt reports partially filled orders as "open" with a non-zero fill.
    """
    if raw_status in _CCXT_STATUS:
        return _CCXT_STATUS[raw_status]
    if filled > 0:
        return OrderStatus.PARTIALLY_FILLED
    return OrderStatus.NEW


class CcxtGateway(ExchangeGateway):
    """Concrete exchange gateway backed by ccxt async."""

    def __init__(self, settings: ExchangeSettings) -> None:
        self._settings = settings
        self._exchange = self._create_client(
            settings.api_key.get_secret_value(),
            settings.api_secret.get_secret_value(),
        )
        self._markets: dict = {}
        self._markets_by_id: dict[str, dict] = {}
        self._account_clients: dict[str, Any] = {}

    @property
    def exchange(self) -> Any:
        """Access the underlying market-data ccxt instance."""
        return self._exchange

    def _create_client(self, api_key: str, api_secret: str) -> Any:
        exchange_class = getattr(ccxt_async, self._settings.exchange_id, None)
        if exchange_class is None:
            raise ValueError(f"Unsupported ccxt exchange id: {self._settings.exchange_id}")
        client = exchange_class(
            {
                "apiKey": api_key,
                "secret": api_secret,
                "enableRateLimit": True,
            }
        )
        if self._settings.sandbox:
            client.set_sandbox_mode(True)
        return client

    def _account_client(self, credentials: ExchangeAccount) -> Any:
        """Return (creating on first use) the private client for a credential row."""
        client = self._account_clients.get(credentials.id)
        if client is None:
            client = self._create_client(credentials.api_key, credentials.api_secret)
            if self._markets:
                client.set_markets(self._markets)
            self._account_clients[credentials.id] = client
        return client

    async def connect(self) -> None:
        """Initialize connection by loading markets."""
        logger.info("connecting_to_exchange", exchange=self._settings.exchange_id)
        await self.load_markets()
        logger.info(
            "exchange_connected",
            exchange=self._settings.exchange_id,
            market_count=len(self._markets),
        )

    async def close(self) -> None:
        """Clean up ccxt async resources. CRITICAL: must be called to avoid resource leaks."""
        logger.info("closing_exchange_connections", accounts=len(self._account_clients))
        for client in self._account_clients.values():
            await client.close()
        self._account_clients.clear()
        await self._exchange.close()
        logger.info("exchange_connections_closed")

    async def load_markets(self) -> dict:
        """Load and cache market data, indexed by unified symbol and market id."""
        self._markets = await self._exchange.load_markets()
        self._markets_by_id = {
            market["id"]: market
            for market in self._markets.values()
            if market.get("spot", True) and market.get("id")
        }
        return self._markets

    async def _resolve_market(self, symbol: str) -> dict:
        if not self._markets:
            await self.load_markets()
        market = self._markets.get(symbol) or self._markets_by_id.get(symbol)
        if market is None:
            raise UnknownSymbolError(f"Symbol {symbol} not found in loaded markets")
        return market

    async def get_symbol_rules(self, symbol: str) -> SymbolRules:
        """Extract symbol constraints from cached market data.

        ccxt exposes precision as tick sizes for most exchanges; these are
        used directly as the quantity and price steps.
        """
        market = await self._resolve_market(symbol)

        limits = market.get("limits", {})
        precision = market.get("precision", {})
        amount_limits = limits.get("amount", {}) or {}
        cost_limits = limits.get("cost", {}) or {}

        quantity_step = _to_decimal(precision.get("amount"))
        price_step = _to_decimal(precision.get("price"))
        max_quantity = amount_limits.get("max")

        return SymbolRules(
            symbol=symbol,
            quantity_step=quantity_step,
            min_quantity=_to_decimal(amount_limits.get("min")),
            max_quantity=_to_decimal(max_quantity) if max_quantity else None,
            price_step=price_step,
            min_notional=_to_decimal(cost_limits.get("min")),
            price_precision=precision_from_step(price_step),
            quantity_precision=precision_from_step(quantity_step),
            base_asset=market.get("base") or "",
            quote_asset=market.get("quote") or "",
        )

    async def get_price(self, symbol: str) -> Decimal:
        """Fetch the last traded price for a single symbol."""
        market = await self._resolve_market(symbol)
        try:
            ticker = await self._exchange.fetch_ticker(market["symbol"])
        except ccxt_async.BaseError as exc:
            raise PriceUnavailableError(f"Price fetch failed for {symbol}: {exc}") from exc

        last = ticker.get("last") or ticker.get("close")
        if last is None:
            raise PriceUnavailableError(f"No last price in ticker for {symbol}")
        return _to_decimal(last)

    async def get_prices(self, symbols: list[str]) -> dict[str, Decimal]:
        """Fetch last prices for several symbols with a single tickers call."""
        if not symbols:
            return {}

        unified: dict[str, str] = {}
        for symbol in symbols:
            market = await self._resolve_market(symbol)
            unified[market["symbol"]] = symbol

        try:
            tickers = await self._exchange.fetch_tickers(list(unified))
        except ccxt_async.BaseError as exc:
            raise PriceUnavailableError(f"Batch price fetch failed: {exc}") from exc

        prices: dict[str, Decimal] = {}
        for unified_symbol, ticker in tickers.items():
            requested = unified.get(unified_symbol)
            last = ticker.get("last") or ticker.get("close")
            if requested is None or last is None:
                continue
            prices[requested] = _to_decimal(last)

        logger.debug("fetched_prices", requested=len(symbols), received=len(prices))
        return prices

    async def get_balance(self, asset: str, credentials: ExchangeAccount) -> Balance:
        """Fetch the free/locked balance of one asset."""
        client = self._account_client(credentials)
        try:
            balance = await client.fetch_balance()
        except ccxt_async.BaseError as exc:
            raise GatewayError(f"Balance fetch failed for {asset}: {exc}") from exc

        entry = balance.get(asset, {}) or {}
        return Balance(
            asset=asset,
            free=_to_decimal(entry.get("free")),
            locked=_to_decimal(entry.get("used")),
        )

    async def place_order(
        self, request: OrderRequest, credentials: ExchangeAccount
    ) -> OrderAck:
        """Place an order via ccxt and parse the acknowledgement."""
        market = await self._resolve_market(request.symbol)
        client = self._account_client(credentials)

        logger.info(
            "creating_order",
            symbol=request.symbol,
            order_type=request.order_type.value,
            side=request.side.value,
            quantity=str(request.quantity),
            price=str(request.price) if request.price is not None else None,
            exchange_account=credentials.id,
        )

        try:
            result = await client.create_order(
                market["symbol"],
                request.order_type.value.lower(),
                request.side.value.lower(),
                float(request.quantity),
                float(request.price) if request.price is not None else None,
            )
        except ccxt_async.BaseError as exc:
            raise GatewayError(
                f"Order rejected for {request.symbol}: {exc}"
            ) from exc

        amount = _to_decimal(result.get("amount"), request.quantity)
        filled = _to_decimal(result.get("filled"))
        average = result.get("average") or result.get("price")
        fill_percent = (filled / amount * 100) if amount > 0 else Decimal("0")
        timestamp = result.get("timestamp")

        ack = OrderAck(
            order_id=str(result.get("id", "")),
            symbol=request.symbol,
            side=request.side,
            status=parse_order_status(result.get("status"), filled),
            quantity=amount,
            filled_quantity=filled,
            average_price=_to_decimal(average) if average else None,
            fill_percent=fill_percent,
            timestamp=float(timestamp) / 1000.0 if timestamp else time.time(),
        )

        logger.info(
            "order_acknowledged",
            order_id=ack.order_id,
            symbol=request.symbol,
            status=ack.status.value,
            filled=str(ack.filled_quantity),
            average_price=str(ack.average_price),
        )
        return ack

    async def cancel_order(
        self, order_id: str, symbol: str, credentials: ExchangeAccount
    ) -> bool:
        """Cancel an open order via ccxt."""
        market = await self._resolve_market(symbol)
        client = self._account_client(credentials)
        try:
            await client.cancel_order(order_id, market["symbol"])
            logger.info("order_cancelled", order_id=order_id, symbol=symbol)
            return True
        except ccxt_async.BaseError:
            logger.warning(
                "order_cancel_failed",
                order_id=order_id,
                symbol=symbol,
                exc_info=True,
            )
            return False
