"""Tests for SymbolRules and the Decimal rounding helpers."""

from decimal import Decimal

from autotrader.exchange.types import (
    SymbolRules,
    ceil_to_step,
    precision_from_step,
    round_nearest_to_step,
    round_to_step,
    step_from_precision,
    truncate_to_precision,
)


class TestRoundToStep:
    """Tests for the round_to_step helper function."""

    def test_round_down_to_hundredths(self) -> None:
        assert round_to_step(Decimal("1.2345"), Decimal("0.01")) == Decimal("1.23")

    def test_exact_step_unchanged(self) -> None:
        assert round_to_step(Decimal("0.005"), Decimal("0.001")) == Decimal("0.005")

    def test_large_step(self) -> None:
        assert round_to_step(Decimal("17"), Decimal("5")) == Decimal("15")

    def test_value_less_than_step(self) -> None:
        assert round_to_step(Decimal("0.005"), Decimal("0.01")) == Decimal("0")


class TestOtherRounding:
    def test_ceil_to_step(self) -> None:
        assert ceil_to_step(Decimal("0.00023"), Decimal("0.0001")) == Decimal("0.0003")
        assert ceil_to_step(Decimal("0.0002"), Decimal("0.0001")) == Decimal("0.0002")

    def test_nearest_ties_down(self) -> None:
        assert round_nearest_to_step(Decimal("1.005"), Decimal("0.01")) == Decimal("1.00")
        assert round_nearest_to_step(Decimal("1.0051"), Decimal("0.01")) == Decimal("1.01")

    def test_truncate_never_rounds_up(self) -> None:
        assert truncate_to_precision(Decimal("1.239"), 2) == Decimal("1.23")

    def test_precision_step_conversion(self) -> None:
        assert step_from_precision(3) == Decimal("0.001")
        assert step_from_precision(0) == Decimal("1")
        assert precision_from_step(Decimal("0.001")) == 3
        assert precision_from_step(Decimal("0.010")) == 2
        assert precision_from_step(Decimal("5")) == 0
        assert precision_from_step(Decimal("0")) == 0


class TestSymbolRules:
    def test_effective_steps_fall_back_to_precision(self) -> None:
        rules = SymbolRules(
            symbol="XUSDT",
            quantity_step=Decimal("0"),
            min_quantity=Decimal("0"),
            max_quantity=None,
            price_step=Decimal("0"),
            min_notional=Decimal("0"),
            price_precision=4,
            quantity_precision=2,
        )
        assert rules.effective_quantity_step == Decimal("0.01")
        assert rules.effective_price_step == Decimal("0.0001")

    def test_effective_steps_prefer_explicit_step(self, btc_rules: SymbolRules) -> None:
        assert btc_rules.effective_quantity_step == Decimal("0.00001")
        assert btc_rules.effective_price_step == Decimal("0.01")
