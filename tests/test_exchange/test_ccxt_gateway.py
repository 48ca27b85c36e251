"""Tests for CcxtGateway.

All tests use mocked ccxt exchange objects to avoid real API calls.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import ccxt.async_support as ccxt_async
import pytest
import pytest_asyncio

from autotrader.config import ExchangeSettings
from autotrader.exceptions import GatewayError, PriceUnavailableError, UnknownSymbolError
from autotrader.exchange.ccxt_gateway import CcxtGateway, parse_order_status
from autotrader.models import ExchangeAccount, OrderRequest, OrderSide, OrderStatus, OrderType


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

MOCK_MARKETS = {
    "BTC/USDT": {
        "id": "BTCUSDT",
        "symbol": "BTC/USDT",
        "base": "BTC",
        "quote": "USDT",
        "type": "spot",
        "spot": True,
        "limits": {
            "amount": {"min": 0.00001, "max": 9000},
            "cost": {"min": 10, "max": None},
        },
        "precision": {
            "amount": 0.00001,
            "price": 0.01,
        },
    },
    "ETH/USDT": {
        "id": "ETHUSDT",
        "symbol": "ETH/USDT",
        "base": "ETH",
        "quote": "USDT",
        "type": "spot",
        "spot": True,
        "limits": {
            "amount": {"min": 0.0001, "max": None},
            "cost": {"min": 5, "max": None},
        },
        "precision": {
            "amount": 0.0001,
            "price": 0.01,
        },
    },
}


@pytest.fixture
def exchange_settings() -> ExchangeSettings:
    """Exchange settings for testing."""
    return ExchangeSettings(
        exchange_id="binance",
        api_key="test-key",  # type: ignore[arg-type]
        api_secret="test-secret",  # type: ignore[arg-type]
    )


@pytest_asyncio.fixture
async def gateway(exchange_settings: ExchangeSettings) -> CcxtGateway:
    """CcxtGateway with mocked markets loaded."""
    gw = CcxtGateway(exchange_settings)
    gw.exchange.load_markets = AsyncMock(return_value=MOCK_MARKETS)
    await gw.load_markets()
    return gw


@pytest.fixture
def account_client(gateway: CcxtGateway, exchange_account: ExchangeAccount) -> MagicMock:
    """Pre-registered private ccxt client for exchange_account."""
    client = MagicMock()
    client.create_order = AsyncMock()
    client.cancel_order = AsyncMock()
    client.fetch_balance = AsyncMock()
    client.close = AsyncMock()
    gateway._account_clients[exchange_account.id] = client
    return client


# ---------------------------------------------------------------------------
# Order status mapping
# ---------------------------------------------------------------------------


class TestParseOrderStatus:
    @pytest.mark.parametrize(
        ("raw", "filled", "expected"),
        [
            ("closed", "1", OrderStatus.FILLED),
            ("canceled", "0", OrderStatus.CANCELLED),
            ("rejected", "0", OrderStatus.REJECTED),
            ("expired", "0", OrderStatus.CANCELLED),
            ("open", "0.5", OrderStatus.PARTIALLY_FILLED),
            ("open", "0", OrderStatus.NEW),
            (None, "0", OrderStatus.NEW),
        ],
    )
    def test_mapping(self, raw: str | None, filled: str, expected: OrderStatus) -> None:
        assert parse_order_status(raw, Decimal(filled)) is expected


# ---------------------------------------------------------------------------
# Market data
# ---------------------------------------------------------------------------


class TestSymbolRules:
    @pytest.mark.asyncio
    async def test_rules_from_unified_symbol(self, gateway: CcxtGateway) -> None:
        rules = await gateway.get_symbol_rules("BTC/USDT")
        assert rules.symbol == "BTC/USDT"
        assert rules.quantity_step == Decimal("0.00001")
        assert rules.min_quantity == Decimal("0.00001")
        assert rules.max_quantity == Decimal("9000")
        assert rules.price_step == Decimal("0.01")
        assert rules.min_notional == Decimal("10")
        assert rules.price_precision == 2
        assert rules.quantity_precision == 5
        assert (rules.base_asset, rules.quote_asset) == ("BTC", "USDT")

    @pytest.mark.asyncio
    async def test_rules_from_market_id(self, gateway: CcxtGateway) -> None:
        rules = await gateway.get_symbol_rules("ETHUSDT")
        assert rules.symbol == "ETHUSDT"
        assert rules.max_quantity is None
        assert rules.quantity_precision == 4

    @pytest.mark.asyncio
    async def test_unknown_symbol(self, gateway: CcxtGateway) -> None:
        with pytest.raises(UnknownSymbolError):
            await gateway.get_symbol_rules("DOGE/USDT")


class TestPrices:
    @pytest.mark.asyncio
    async def test_get_price(self, gateway: CcxtGateway) -> None:
        gateway.exchange.fetch_ticker = AsyncMock(return_value={"last": 65000.5})
        assert await gateway.get_price("BTCUSDT") == Decimal("65000.5")
        gateway.exchange.fetch_ticker.assert_awaited_once_with("BTC/USDT")

    @pytest.mark.asyncio
    async def test_get_price_wraps_ccxt_errors(self, gateway: CcxtGateway) -> None:
        gateway.exchange.fetch_ticker = AsyncMock(side_effect=ccxt_async.NetworkError("down"))
        with pytest.raises(PriceUnavailableError):
            await gateway.get_price("BTC/USDT")

    @pytest.mark.asyncio
    async def test_get_price_without_last(self, gateway: CcxtGateway) -> None:
        gateway.exchange.fetch_ticker = AsyncMock(return_value={"last": None, "close": None})
        with pytest.raises(PriceUnavailableError):
            await gateway.get_price("BTC/USDT")

    @pytest.mark.asyncio
    async def test_get_prices_keyed_by_requested_symbol(self, gateway: CcxtGateway) -> None:
        gateway.exchange.fetch_tickers = AsyncMock(
            return_value={
                "BTC/USDT": {"last": 65000},
                "ETH/USDT": {"last": None, "close": 3200.25},
            }
        )
        prices = await gateway.get_prices(["BTCUSDT", "ETH/USDT"])
        assert prices == {"BTCUSDT": Decimal("65000"), "ETH/USDT": Decimal("3200.25")}

    @pytest.mark.asyncio
    async def test_get_prices_empty(self, gateway: CcxtGateway) -> None:
        assert await gateway.get_prices([]) == {}


# ---------------------------------------------------------------------------
# Account calls
# ---------------------------------------------------------------------------


class TestPlaceOrder:
    @pytest.mark.asyncio
    async def test_filled_market_order(
        self,
        gateway: CcxtGateway,
        account_client: MagicMock,
        exchange_account: ExchangeAccount,
    ) -> None:
        account_client.create_order.return_value = {
            "id": "123",
            "status": "closed",
            "amount": 0.002,
            "filled": 0.002,
            "average": 65010.1,
            "timestamp": 1700000000000,
        }
        request = OrderRequest(
            symbol="BTCUSDT",
            side=OrderSide.BUY,
            order_type=OrderType.MARKET,
            quantity=Decimal("0.002"),
        )

        ack = await gateway.place_order(request, exchange_account)

        account_client.create_order.assert_awaited_once_with(
            "BTC/USDT", "market", "buy", 0.002, None
        )
        assert ack.order_id == "123"
        assert ack.status is OrderStatus.FILLED
        assert ack.filled_quantity == Decimal("0.002")
        assert ack.average_price == Decimal("65010.1")
        assert ack.fill_percent == Decimal("100")
        assert ack.timestamp == 1700000000.0
        assert ack.is_simulated is False

    @pytest.mark.asyncio
    async def test_exchange_rejection_raises_gateway_error(
        self,
        gateway: CcxtGateway,
        account_client: MagicMock,
        exchange_account: ExchangeAccount,
    ) -> None:
        account_client.create_order.side_effect = ccxt_async.InsufficientFunds("no funds")
        request = OrderRequest(
            symbol="BTC/USDT",
            side=OrderSide.SELL,
            order_type=OrderType.MARKET,
            quantity=Decimal("1"),
        )
        with pytest.raises(GatewayError, match="Order rejected for BTC/USDT"):
            await gateway.place_order(request, exchange_account)

    @pytest.mark.asyncio
    async def test_cancel_failure_returns_false(
        self,
        gateway: CcxtGateway,
        account_client: MagicMock,
        exchange_account: ExchangeAccount,
    ) -> None:
        account_client.cancel_order.side_effect = ccxt_async.OrderNotFound("gone")
        assert await gateway.cancel_order("123", "BTC/USDT", exchange_account) is False

    @pytest.mark.asyncio
    async def test_balance(
        self,
        gateway: CcxtGateway,
        account_client: MagicMock,
        exchange_account: ExchangeAccount,
    ) -> None:
        account_client.fetch_balance.return_value = {"USDT": {"free": 150.5, "used": 10}}
        balance = await gateway.get_balance("USDT", exchange_account)
        assert balance.free == Decimal("150.5")
        assert balance.locked == Decimal("10")
