"""Trade validation and adjustment against exchange symbol rules.

Pure functions only: no I/O, no logging, no exceptions for business-rule
violations. A request that cannot be made exchange-valid comes back as a
rejected AdjustmentResult the caller must check.

Adjustment flow:
1. Resolve the base quantity (directly, or quote_amount / current_price)
2. Round down to the quantity step; reject if below the exchange minimum
3. Clamp to the exchange maximum
4. Round limit prices to the nearest tick (ties down), truncate to precision
5. Raise the quantity to clear min_notional, or reject if that breaks the max
Every deviation from the request is recorded as a human-readable message.
"""

from dataclasses import dataclass, field
from decimal import Decimal

from autotrader.exchange.types import (
    SymbolRules,
    ceil_to_step,
    round_nearest_to_step,
    round_to_step,
    truncate_to_precision,
)
from autotrader.models import OrderIntent, OrderType

# Absolute tolerance for "did this value change" and limit comparisons.
EPSILON = Decimal("1e-8")


@dataclass
class AdjustmentResult:
    """Outcome of validating an OrderIntent against SymbolRules.

    ``adjusted_price`` is the rounded limit price (None for market orders);
    ``effective_price`` is the price the notional was computed with.
    """

    adjusted_quantity: Decimal = Decimal("0")
    adjusted_price: Decimal | None = None
    effective_price: Decimal | None = None
    notional: Decimal = Decimal("0")
    adjustments: list[str] = field(default_factory=list)
    rejected: bool = False
    rejection_reason: str | None = None

    @property
    def has_adjustments(self) -> bool:
        return bool(self.adjustments)

    @classmethod
    def reject(
        cls, reason: str, adjustments: list[str] | None = None
    ) -> "AdjustmentResult":
        return cls(
            adjustments=list(adjustments or []),
            rejected=True,
            rejection_reason=reason,
        )


def _fmt(value: Decimal) -> str:
    """Render a Decimal without exponent notation or trailing zeros."""
    return format(value.normalize(), "f")


def _differs(a: Decimal, b: Decimal) -> bool:
    return abs(a - b) > EPSILON


def validate(
    intent: OrderIntent,
    rules: SymbolRules | None,
    current_price: Decimal | None = None,
) -> AdjustmentResult:
    """Adjust an intent's quantity and price to satisfy exchange rules.

    Args:
        intent: The requested order.
        rules: Symbol rules, or None when the exchange does not list the symbol.
        current_price: Reference market price. Required for quote-amount
            intents and for the notional check on market orders.

    Returns:
        AdjustmentResult, rejected when the intent cannot be made valid.
    """
    if rules is None:
        return AdjustmentResult.reject(f"unknown symbol: {intent.symbol}")

    adjustments: list[str] = []

    # 1. Resolve base quantity
    if intent.quantity is not None:
        if intent.quantity <= 0:
            return AdjustmentResult.reject("requested quantity must be positive")
        raw_quantity = intent.quantity
    elif intent.quote_amount is not None:
        if intent.quote_amount <= 0:
            return AdjustmentResult.reject("quote amount must be positive")
        if current_price is None or current_price <= 0:
            return AdjustmentResult.reject(
                "current price required to convert quote amount to quantity"
            )
        raw_quantity = intent.quote_amount / current_price
    else:
        return AdjustmentResult.reject("either quantity or quote amount is required")

    # 2. Step rounding (always down)
    step = rules.effective_quantity_step
    quantity = round_to_step(raw_quantity, step)
    if quantity <= 0 or quantity < rules.min_quantity - EPSILON:
        return AdjustmentResult.reject(
            f"quantity below exchange minimum: {_fmt(raw_quantity)} rounds to "
            f"{_fmt(quantity)} at step {_fmt(step)}, minimum quantity is "
            f"{_fmt(rules.min_quantity)}"
        )
    if _differs(quantity, raw_quantity):
        adjustments.append(
            f"Quantity rounded down from {_fmt(raw_quantity)} to {_fmt(quantity)} "
            f"to match step size {_fmt(step)}"
        )

    # 3. Maximum clamp
    max_quantity = rules.max_quantity
    if max_quantity is not None and quantity > max_quantity + EPSILON:
        clamped = round_to_step(max_quantity, step)
        if clamped <= 0 or clamped < rules.min_quantity - EPSILON:
            return AdjustmentResult.reject(
                f"quantity below exchange minimum: exchange maximum {_fmt(max_quantity)} "
                f"rounds to {_fmt(clamped)} at step {_fmt(step)}, minimum quantity is "
                f"{_fmt(rules.min_quantity)}",
                adjustments,
            )
        adjustments.append(
            f"Quantity clamped from {_fmt(quantity)} to exchange maximum {_fmt(clamped)}"
        )
        quantity = clamped

    # 4. Limit price
    adjusted_price: Decimal | None = None
    if intent.order_type is OrderType.LIMIT:
        if intent.price is None:
            return AdjustmentResult.reject("limit order requires a price", adjustments)
        if intent.price <= 0:
            return AdjustmentResult.reject("limit price must be positive", adjustments)

        tick = rules.effective_price_step
        adjusted_price = truncate_to_precision(
            round_nearest_to_step(intent.price, tick), rules.price_precision
        )
        if adjusted_price <= 0:
            return AdjustmentResult.reject(
                f"limit price {_fmt(intent.price)} rounds to zero at tick size {_fmt(tick)}",
                adjustments,
            )
        if _differs(adjusted_price, intent.price):
            adjustments.append(
                f"Price rounded from {_fmt(intent.price)} to {_fmt(adjusted_price)} "
                f"to match tick size {_fmt(tick)}"
            )
        effective_price: Decimal | None = adjusted_price
    else:
        effective_price = current_price

    # 5. Minimum notional
    if effective_price is None or effective_price <= 0:
        if rules.min_notional > 0:
            return AdjustmentResult.reject(
                "current price required to check minimum notional", adjustments
            )
        notional = Decimal("0")
    else:
        notional = quantity * effective_price
        if notional < rules.min_notional - EPSILON:
            required = ceil_to_step(rules.min_notional / effective_price, step)
            if max_quantity is not None and required > max_quantity + EPSILON:
                return AdjustmentResult.reject(
                    "cannot satisfy minimum notional within exchange limits: "
                    f"{_fmt(required)} needed at price {_fmt(effective_price)}, "
                    f"maximum quantity is {_fmt(max_quantity)}",
                    adjustments,
                )
            adjustments.append(
                f"Quantity raised from {_fmt(quantity)} to {_fmt(required)} to meet "
                f"minimum notional {_fmt(rules.min_notional)}"
            )
            quantity = required
            notional = quantity * effective_price

    return AdjustmentResult(
        adjusted_quantity=quantity,
        adjusted_price=adjusted_price,
        effective_price=effective_price,
        notional=notional,
        adjustments=adjustments,
    )
