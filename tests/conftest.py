"""Shared test fixtures for autotrader."""

from collections.abc import AsyncIterator
from decimal import Decimal

import pytest
import pytest_asyncio

from autotrader.config import AppSettings, ExchangeSettings, MonitorSettings, TradingSettings
from autotrader.exchange.types import SymbolRules
from autotrader.models import ExchangeAccount, Portfolio
from autotrader.store.database import TradingDatabase
from autotrader.store.position_store import PositionStore


@pytest.fixture
def mock_settings() -> AppSettings:
    """Return AppSettings with test defaults (paper mode, dummy API keys)."""
    return AppSettings(
        log_level="DEBUG",
        exchange=ExchangeSettings(
            api_key="test-api-key",  # type: ignore[arg-type]
            api_secret="test-api-secret",  # type: ignore[arg-type]
        ),
        trading=TradingSettings(mode="paper"),
        monitor=MonitorSettings(interval_seconds=30.0, deadline_seconds=25.0),
    )


@pytest.fixture
def btc_rules() -> SymbolRules:
    """BTCUSDT spot rules: 0.00001 lot step, 0.01 tick, 10 USDT minimum notional."""
    return SymbolRules(
        symbol="BTCUSDT",
        quantity_step=Decimal("0.00001"),
        min_quantity=Decimal("0.00001"),
        max_quantity=Decimal("9000"),
        price_step=Decimal("0.01"),
        min_notional=Decimal("10"),
        price_precision=2,
        quantity_precision=5,
        base_asset="BTC",
        quote_asset="USDT",
    )


@pytest.fixture
def eth_rules() -> SymbolRules:
    """ETHUSDT spot rules with a 0.001 lot step and no minimum notional."""
    return SymbolRules(
        symbol="ETHUSDT",
        quantity_step=Decimal("0.001"),
        min_quantity=Decimal("0.001"),
        max_quantity=Decimal("10000"),
        price_step=Decimal("0.01"),
        min_notional=Decimal("0"),
        price_precision=2,
        quantity_precision=3,
        base_asset="ETH",
        quote_asset="USDT",
    )


@pytest.fixture
def exchange_account() -> ExchangeAccount:
    return ExchangeAccount(
        id="ex-1",
        portfolio_id="pf-1",
        name="binance",
        api_key="key",
        api_secret="secret",
        created_at=1000.0,
    )


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncIterator[TradingDatabase]:
    """Connected TradingDatabase backed by a temp file."""
    db = TradingDatabase(str(tmp_path / "trading.db"))
    await db.connect()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def store(database: TradingDatabase) -> PositionStore:
    return PositionStore(database)


@pytest_asyncio.fixture
async def seeded_store(
    store: PositionStore, exchange_account: ExchangeAccount
) -> PositionStore:
    """Store with portfolio pf-1 (owned by user-1) and its exchange ex-1."""
    await store.add_portfolio(Portfolio(id="pf-1", user_id="user-1", created_at=1000.0))
    await store.add_exchange(exchange_account)
    return store
