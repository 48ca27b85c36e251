"""Unrealized and realized PnL for single-leg spot positions."""

from decimal import Decimal

from autotrader.models import PositionSide


def compute_pnl(
    side: PositionSide,
    entry_price: Decimal,
    price: Decimal,
    quantity: Decimal,
) -> tuple[Decimal, Decimal]:
    """Compute PnL in quote currency and as a percentage of the entry value.

    LONG earns when price rises: (price - entry) * qty.
    SHORT earns when price falls: (entry - price) * qty.

    Args:
        side: Position direction.
        entry_price: Average entry fill price.
        price: Current mark price, or the exit fill price when realized.
        quantity: Position size in base asset.

    Returns:
        Tuple of (pnl, pnl_percent). pnl_percent is 0 for a zero entry value.
    """
    if side is PositionSide.LONG:
        pnl = (price - entry_price) * quantity
    else:
        pnl = (entry_price - price) * quantity

    entry_value = entry_price * quantity
    if entry_value == 0:
        return pnl, Decimal("0")
    return pnl, pnl / entry_value * Decimal("100")
