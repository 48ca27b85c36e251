"""Exchange-specific type definitions and rounding utilities.

All monetary values use Decimal. Never use float for prices, quantities, or fees.
"""

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_DOWN, ROUND_HALF_DOWN, Decimal


@dataclass(frozen=True)
class SymbolRules:
    """Trading constraints for one symbol (LOT_SIZE, PRICE_FILTER, MIN_NOTIONAL).

    Fetched from the exchange's market metadata and cached for a long TTL.
    ``max_quantity`` of None means the exchange publishes no upper bound.
    Empty asset codes mean the market metadata did not name them.
    A zero step falls back to the step implied by the matching precision.
    """

    symbol: str
    quantity_step: Decimal
    min_quantity: Decimal
    max_quantity: Decimal | None
    price_step: Decimal
    min_notional: Decimal
    price_precision: int
    quantity_precision: int
    base_asset: str = ""
    quote_asset: str = ""

    @property
    def effective_quantity_step(self) -> Decimal:
        if self.quantity_step > 0:
            return self.quantity_step
        return step_from_precision(self.quantity_precision)

    @property
    def effective_price_step(self) -> Decimal:
        if self.price_step > 0:
            return self.price_step
        return step_from_precision(self.price_precision)


def round_to_step(value: Decimal, step: Decimal) -> Decimal:
    """Round a value down to the nearest step increment.

    Uses integer division to ensure we always round DOWN (never up),
    which prevents over-spending or exceeding position limits.

    Args:
        value: The raw quantity to round.
        step: The minimum increment (e.g., 0.001 for BTC).

    Returns:
        The value rounded down to the nearest step.
    """
    return (value // step) * step


def ceil_to_step(value: Decimal, step: Decimal) -> Decimal:
    """Round a value up to the nearest step increment."""
    return (value / step).to_integral_value(rounding=ROUND_CEILING) * step


def round_nearest_to_step(value: Decimal, step: Decimal) -> Decimal:
    """Round a value to the nearest step increment, ties rounding down."""
    return (value / step).to_integral_value(rounding=ROUND_HALF_DOWN) * step


def truncate_to_precision(value: Decimal, places: int) -> Decimal:
    """Drop every decimal digit past ``places`` without rounding."""
    return value.quantize(step_from_precision(places), rounding=ROUND_DOWN)


def step_from_precision(places: int) -> Decimal:
    """Return the increment for ``places`` decimal digits (2 -> 0.01)."""
    return Decimal(1).scaleb(-places)


def precision_from_step(step: Decimal) -> int:
    """Return the number of decimal digits a step needs (0.001 -> 3)."""
    if step <= 0:
        return 0
    exponent = step.normalize().as_tuple().exponent
    return max(0, -int(exponent))
