"""Shared data models for order dispatch and position supervision.

CRITICAL: All monetary values use Decimal. Never use float for prices, quantities, or PnL.
Enum values are the upper-case strings persisted in the store.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


class OrderSide(str, Enum):
    """Order direction."""

    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderType(str, Enum):
    """Order type."""

    MARKET = "MARKET"
    LIMIT = "LIMIT"


class PositionSide(str, Enum):
    """Position direction."""

    LONG = "LONG"
    SHORT = "SHORT"


class PositionStatus(str, Enum):
    """Position lifecycle status.

    CLOSING is the compare-and-swap intermediate state held while the exit
    order is in flight.
    """

    OPEN = "OPEN"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


class PositionSource(str, Enum):
    """Where the opening intent came from."""

    SIGNAL = "SIGNAL"
    MANUAL = "MANUAL"


class OrderStatus(str, Enum):
    """Exchange order status."""

    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"


class OrderRole(str, Enum):
    """Whether an order opened or closed its position."""

    ENTRY = "ENTRY"
    EXIT = "EXIT"


class CloseReason(str, Enum):
    """Why a position was closed."""

    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_LOSS = "STOP_LOSS"
    MANUAL = "MANUAL"
    FORCE_CLOSE = "FORCE_CLOSE"
    SIGNAL = "SIGNAL"


@dataclass
class OrderIntent:
    """Caller-supplied trading intent, not persisted until validated.

    Either ``quantity`` (base asset) or ``quote_amount`` (spend N units of the
    quote asset) must be set. Protective thresholds may be absolute prices or
    percentages of the entry price; absolute prices win when both are given.
    """

    symbol: str
    side: OrderSide
    order_type: OrderType = OrderType.MARKET
    quantity: Decimal | None = None
    price: Decimal | None = None
    quote_amount: Decimal | None = None
    take_profit_price: Decimal | None = None
    stop_loss_price: Decimal | None = None
    take_profit_percent: Decimal | None = None
    stop_loss_percent: Decimal | None = None
    source: PositionSource = PositionSource.MANUAL


@dataclass
class OrderRequest:
    """Request to place an order on the exchange."""

    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    price: Decimal | None = None


@dataclass
class OrderAck:
    """Exchange acknowledgement of a placed order."""

    order_id: str
    symbol: str
    side: OrderSide
    status: OrderStatus
    quantity: Decimal
    filled_quantity: Decimal
    average_price: Decimal | None
    fill_percent: Decimal
    timestamp: float = field(default_factory=time.time)
    is_simulated: bool = False


@dataclass
class Balance:
    """Free and locked amounts of one asset."""

    asset: str
    free: Decimal
    locked: Decimal


@dataclass
class Portfolio:
    """A user's trading account aggregate."""

    id: str
    user_id: str
    name: str = ""
    created_at: float = field(default_factory=time.time)


@dataclass
class ExchangeAccount:
    """Exchange credentials owned by a portfolio."""

    id: str
    portfolio_id: str
    name: str
    api_key: str
    api_secret: str
    is_active: bool = True
    created_at: float = field(default_factory=time.time)


@dataclass
class Position:
    """A persisted position opened by one entry order."""

    id: str
    portfolio_id: str
    symbol: str
    side: PositionSide
    entry_price: Decimal
    quantity: Decimal
    status: PositionStatus = PositionStatus.OPEN
    source: PositionSource = PositionSource.MANUAL
    current_price: Decimal | None = None
    take_profit_price: Decimal | None = None
    stop_loss_price: Decimal | None = None
    pnl: Decimal = Decimal("0")
    pnl_percent: Decimal = Decimal("0")
    exit_price: Decimal | None = None
    close_reason: CloseReason | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    closed_at: float | None = None

    @property
    def exit_side(self) -> OrderSide:
        """Order side that flattens this position."""
        return OrderSide.SELL if self.side is PositionSide.LONG else OrderSide.BUY


@dataclass
class Order:
    """Persisted record of an exchange submission tied to a position."""

    id: str
    position_id: str
    portfolio_id: str
    exchange_order_id: str
    role: OrderRole
    symbol: str
    side: OrderSide
    order_type: OrderType
    price: Decimal
    quantity: Decimal
    status: OrderStatus
    fill_percent: Decimal = Decimal("0")
    pnl: Decimal | None = None
    created_at: float = field(default_factory=time.time)
