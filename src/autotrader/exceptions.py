"""Custom exceptions for order dispatch and position supervision.

All gateway, dispatch and store exceptions live here to avoid circular
imports between modules. The trade validator never raises these for
business-rule violations; it returns a rejected AdjustmentResult instead.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from autotrader.validation.validator import AdjustmentResult


class TradingError(Exception):
    """Base exception for all trading errors."""


class ValidationRejection(TradingError):
    """Raised by the dispatcher when an intent cannot be made exchange-valid.

    Never retried automatically; the reason is surfaced to the caller verbatim.
    """

    def __init__(self, result: AdjustmentResult) -> None:
        super().__init__(result.rejection_reason or "order rejected")
        self.result = result


class GatewayError(TradingError):
    """Raised when an exchange call fails, is rejected, or times out."""


class PriceUnavailableError(GatewayError):
    """Raised when a price cannot be fetched for a symbol."""


class UnknownSymbolError(GatewayError):
    """Raised when the exchange has no trading rules for a symbol."""


class StateConflict(TradingError):
    """Raised when a status compare-and-swap loses to another actor."""


class CloseInProgressError(StateConflict):
    """Raised when another actor holds the position in CLOSING."""


class PositionNotFoundError(TradingError):
    """Raised when a position id does not exist in the store."""


class NoActiveExchangeError(TradingError):
    """Raised when a portfolio has no exchange credentials to trade with."""
