"""Tests for structlog setup and the Decimal rendering processor."""

import logging
from decimal import Decimal

import structlog

from autotrader.logging import setup_logging, stringify_decimals


def test_stringify_decimals_keeps_precision() -> None:
    event = stringify_decimals(
        None, "info", {"event": "position_closed", "pnl": Decimal("-12.50"), "count": 2}
    )
    assert event == {"event": "position_closed", "pnl": "-12.50", "count": 2}


def test_stringify_decimals_avoids_exponent_notation() -> None:
    event = stringify_decimals(None, "info", {"event": "x", "step": Decimal("1E-8")})
    assert event["step"] == "0.00000001"


def test_setup_logging_sets_levels() -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        setup_logging("DEBUG", "json")
        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("ccxt").level == logging.WARNING
    finally:
        structlog.reset_defaults()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
        logging.getLogger("ccxt").setLevel(logging.NOTSET)
