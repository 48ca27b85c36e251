"""Trade validation -- exchange rule adjustment and signal normalization."""

from autotrader.validation.signals import (
    SignalAction,
    intent_from_signal,
    normalize_signal_action,
    protective_prices,
)
from autotrader.validation.validator import EPSILON, AdjustmentResult, validate

__all__ = [
    "EPSILON",
    "AdjustmentResult",
    "SignalAction",
    "intent_from_signal",
    "normalize_signal_action",
    "protective_prices",
    "validate",
]
