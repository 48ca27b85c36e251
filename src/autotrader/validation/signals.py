"""Signal payload normalization and protective price helpers.

Webhook alerts arrive with free-form action strings ("buy", "enter-long",
"cover", ...). These are mapped onto a fixed SignalAction vocabulary and
then onto exchange order sides. Entry signals become OrderIntents, so signal
and manual requests reach the validator in the same shape; exit signals name
the side of the open position to close.
"""

from decimal import Decimal
from enum import Enum

from autotrader.models import (
    OrderIntent,
    OrderSide,
    OrderType,
    PositionSide,
    PositionSource,
)


class SignalAction(str, Enum):
    """Normalized signal actions."""

    ENTER_LONG = "ENTER_LONG"
    EXIT_LONG = "EXIT_LONG"
    ENTER_SHORT = "ENTER_SHORT"
    EXIT_SHORT = "EXIT_SHORT"

    @property
    def is_entry(self) -> bool:
        return self in (SignalAction.ENTER_LONG, SignalAction.ENTER_SHORT)


_ACTION_ALIASES: dict[str, SignalAction] = {
    "ENTER_LONG": SignalAction.ENTER_LONG,
    "ENTERLONG": SignalAction.ENTER_LONG,
    "LONG": SignalAction.ENTER_LONG,
    "BUY": SignalAction.ENTER_LONG,
    "EXIT_LONG": SignalAction.EXIT_LONG,
    "EXITLONG": SignalAction.EXIT_LONG,
    "CLOSE_LONG": SignalAction.EXIT_LONG,
    "CLOSELONG": SignalAction.EXIT_LONG,
    "SELL_LONG": SignalAction.EXIT_LONG,
    "SELL": SignalAction.EXIT_LONG,
    "ENTER_SHORT": SignalAction.ENTER_SHORT,
    "ENTERSHORT": SignalAction.ENTER_SHORT,
    "SHORT": SignalAction.ENTER_SHORT,
    "EXIT_SHORT": SignalAction.EXIT_SHORT,
    "EXITSHORT": SignalAction.EXIT_SHORT,
    "CLOSE_SHORT": SignalAction.EXIT_SHORT,
    "CLOSESHORT": SignalAction.EXIT_SHORT,
    "BUY_SHORT": SignalAction.EXIT_SHORT,
    "COVER": SignalAction.EXIT_SHORT,
}

_ACTION_SIDES: dict[SignalAction, OrderSide] = {
    SignalAction.ENTER_LONG: OrderSide.BUY,
    SignalAction.EXIT_LONG: OrderSide.SELL,
    SignalAction.ENTER_SHORT: OrderSide.SELL,  # short = sell first
    SignalAction.EXIT_SHORT: OrderSide.BUY,  # cover = buy back
}


def normalize_signal_action(raw: str) -> SignalAction:
    """Map a webhook action string onto a SignalAction.

    Matching is case-insensitive and treats "-" and " " like "_".

    Raises:
        ValueError: If the action is not recognised.
    """
    key = raw.strip().upper().replace("-", "_").replace(" ", "_")
    action = _ACTION_ALIASES.get(key)
    if action is None:
        raise ValueError(f"Invalid signal action: {raw}")
    return action


def side_for_action(action: SignalAction) -> OrderSide:
    """Return the order side that carries out a signal action."""
    return _ACTION_SIDES[action]


def position_side_for(side: OrderSide) -> PositionSide:
    """Position direction opened by an entry order (BUY opens LONG)."""
    return PositionSide.LONG if side is OrderSide.BUY else PositionSide.SHORT


def position_side_for_action(action: SignalAction) -> PositionSide:
    """Position direction a signal opens or closes."""
    if action in (SignalAction.ENTER_LONG, SignalAction.EXIT_LONG):
        return PositionSide.LONG
    return PositionSide.SHORT


def protective_prices(
    entry_price: Decimal,
    side: PositionSide,
    stop_loss_percent: Decimal | None = None,
    take_profit_percent: Decimal | None = None,
) -> tuple[Decimal | None, Decimal | None]:
    """Convert percentage thresholds into absolute prices around the entry.

    LONG: stop-loss below entry, take-profit above. SHORT: the reverse.

    Returns:
        Tuple of (stop_loss_price, take_profit_price); None where no
        percentage was given.
    """
    hundred = Decimal("100")
    direction = Decimal("1") if side is PositionSide.LONG else Decimal("-1")

    stop_loss = None
    if stop_loss_percent is not None:
        stop_loss = entry_price * (1 - direction * stop_loss_percent / hundred)

    take_profit = None
    if take_profit_percent is not None:
        take_profit = entry_price * (1 + direction * take_profit_percent / hundred)

    return stop_loss, take_profit


def intent_from_signal(
    symbol: str,
    action: str,
    quote_amount: Decimal,
    stop_loss_percent: Decimal | None = None,
    take_profit_percent: Decimal | None = None,
) -> OrderIntent:
    """Build a market OrderIntent from an entry signal.

    Signals always trade at market and size by the configured quote amount.
    Exit signals close an existing position and never become an intent.

    Raises:
        ValueError: If the action is unknown or is an exit.
    """
    signal_action = normalize_signal_action(action)
    if not signal_action.is_entry:
        raise ValueError(
            f"Signal action {action} is an exit; close the open position instead"
        )
    return OrderIntent(
        symbol=symbol.upper(),
        side=side_for_action(signal_action),
        order_type=OrderType.MARKET,
        quote_amount=quote_amount,
        stop_loss_percent=stop_loss_percent,
        take_profit_percent=take_profit_percent,
        source=PositionSource.SIGNAL,
    )
