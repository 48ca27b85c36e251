"""Entry point for the autotrader service.

Wires all components together, optionally embeds the FastAPI trigger
surface, and starts the monitor scheduler. When the API is enabled
(default), the scheduler and the HTTP server share a single asyncio event
loop via uvicorn's programmatic API and FastAPI's lifespan context manager.

Handles SIGINT/SIGTERM for graceful shutdown.

Component wiring order (in _build_components):
1. Market-data gateway (CcxtGateway), wrapped by PaperGateway in paper mode
2. SymbolRulesCache
3. TradingDatabase + PositionStore
4. OrderDispatcher
5. PositionMonitor
6. ForceCloseCoordinator
7. MonitorScheduler
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from autotrader.config import AppSettings
from autotrader.exchange.ccxt_gateway import CcxtGateway
from autotrader.exchange.gateway import ExchangeGateway
from autotrader.exchange.paper_gateway import PaperGateway
from autotrader.exchange.rules_cache import SymbolRulesCache
from autotrader.logging import get_logger, setup_logging
from autotrader.position.dispatcher import OrderDispatcher
from autotrader.position.force_close import ForceCloseCoordinator
from autotrader.position.monitor import PositionMonitor
from autotrader.scheduler import MonitorScheduler
from autotrader.store.database import TradingDatabase
from autotrader.store.position_store import PositionStore


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all components from settings.

    Note: Does NOT connect the gateway or open the database -- that happens
    in the lifespan (API mode) or run() (scheduler-only mode).

    Args:
        settings: Application-wide settings.

    Returns:
        Dict mapping component names to instances.
    """
    logger = get_logger("autotrader.main")

    market_data = CcxtGateway(settings.exchange)
    gateway: ExchangeGateway
    if settings.trading.mode == "paper":
        gateway = PaperGateway(
            market_data,
            slippage=settings.trading.paper_slippage,
            initial_balances=settings.trading.paper_balances,
        )
    else:
        gateway = market_data
    logger.info(
        "gateway_configured",
        mode=settings.trading.mode,
        exchange=settings.exchange.exchange_id,
    )

    rules_cache = SymbolRulesCache(
        gateway,
        ttl_seconds=settings.trading.rules_cache_ttl_seconds,
        timeout_seconds=settings.trading.rules_timeout_seconds,
    )

    database = TradingDatabase(settings.store.db_path)
    store = PositionStore(database)

    dispatcher = OrderDispatcher(gateway, store, rules_cache, settings.trading)

    monitor = PositionMonitor(
        store,
        gateway,
        dispatcher,
        settings.monitor,
        price_timeout_seconds=settings.trading.price_timeout_seconds,
    )

    force_close = ForceCloseCoordinator(
        store, dispatcher, max_retries=settings.trading.force_close_max_retries
    )

    scheduler = MonitorScheduler(monitor, interval_seconds=settings.monitor.interval_seconds)

    return {
        "gateway": gateway,
        "rules_cache": rules_cache,
        "database": database,
        "store": store,
        "dispatcher": dispatcher,
        "monitor": monitor,
        "force_close": force_close,
        "scheduler": scheduler,
    }


def _setup_signal_handlers(stop_event: asyncio.Event) -> None:
    """Register SIGINT/SIGTERM to set the stop event.

    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("autotrader.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


async def _start_components(settings: AppSettings, components: dict[str, Any]) -> None:
    await components["database"].connect()
    await components["gateway"].connect()
    if settings.monitor.enabled:
        await components["scheduler"].start()


async def _stop_components(components: dict[str, Any]) -> None:
    await components["scheduler"].stop()
    await components["gateway"].close()
    await components["database"].close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage component lifecycle within the FastAPI application.

    On startup: stores components on app.state, opens the database,
    connects the gateway, and starts the monitor scheduler.

    On shutdown: stops the scheduler (waiting for in-flight passes), closes
    the gateway, then the database.
    """
    logger = get_logger("autotrader.main")
    settings: AppSettings = app.state.settings
    components = app.state.components

    app.state.dispatcher = components["dispatcher"]
    app.state.monitor = components["monitor"]
    app.state.force_close = components["force_close"]
    app.state.rules_cache = components["rules_cache"]
    app.state.cron_secret = settings.api.cron_secret.get_secret_value()

    await _start_components(settings, components)
    logger.info("lifespan_started", mode=settings.trading.mode)

    yield

    await _stop_components(components)
    logger.info("autotrader_stopped")


async def run() -> None:
    """Run the autotrader service.

    When the API is enabled (API_ENABLED=true, the default):
    - Creates the FastAPI app with lifespan
    - Runs the scheduler and HTTP server in a single asyncio event loop
      via uvicorn, which handles SIGINT/SIGTERM itself

    When the API is disabled (API_ENABLED=false):
    - Runs the scheduler alone until SIGINT/SIGTERM
    """
    settings = AppSettings()

    setup_logging(settings.log_level, settings.log_format)
    logger = get_logger("autotrader.main")

    components = _build_components(settings)

    if settings.api.enabled:
        from autotrader.api.app import create_app

        app = create_app(lifespan=lifespan)
        app.state.settings = settings
        app.state.components = components

        logger.info(
            "starting_with_api",
            host=settings.api.host,
            port=settings.api.port,
            mode=settings.trading.mode,
        )

        config = uvicorn.Config(
            app,
            host=settings.api.host,
            port=settings.api.port,
            log_level="warning",  # Suppress uvicorn access logs
        )
        server = uvicorn.Server(config)
        await server.serve()
    else:
        stop_event = asyncio.Event()
        _setup_signal_handlers(stop_event)

        logger.info(
            "starting_without_api",
            mode=settings.trading.mode,
            interval=settings.monitor.interval_seconds,
        )

        try:
            await _start_components(settings, components)
            await stop_event.wait()
        finally:
            await _stop_components(components)
            logger.info("autotrader_stopped")


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
