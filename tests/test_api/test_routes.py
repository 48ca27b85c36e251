"""Tests for the HTTP trigger surface using FastAPI's TestClient."""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from autotrader.api.app import create_app
from autotrader.exceptions import (
    CloseInProgressError,
    GatewayError,
    PositionNotFoundError,
    UnknownSymbolError,
    ValidationRejection,
)
from autotrader.exchange.types import SymbolRules
from autotrader.models import (
    CloseReason,
    Order,
    OrderRole,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    PositionSide,
    PositionStatus,
)
from autotrader.position.dispatcher import DispatchResult
from autotrader.position.force_close import ForceCloseError, ForceCloseResult, ForceCloseSummary
from autotrader.position.monitor import MonitorReport
from autotrader.validation.validator import AdjustmentResult


def _position(status: PositionStatus = PositionStatus.CLOSED) -> Position:
    return Position(
        id="pos-1",
        portfolio_id="pf-1",
        symbol="BTCUSDT",
        side=PositionSide.LONG,
        entry_price=Decimal("100"),
        quantity=Decimal("2"),
        status=status,
        exit_price=Decimal("94") if status is PositionStatus.CLOSED else None,
        close_reason=CloseReason.MANUAL if status is PositionStatus.CLOSED else None,
    )


@pytest.fixture
def components(btc_rules: SymbolRules) -> dict[str, AsyncMock]:
    monitor = AsyncMock()
    monitor.monitor_positions = AsyncMock(
        return_value=MonitorReport(checked=2, refreshed=2, triggered=1, closed=1)
    )
    dispatcher = AsyncMock()
    dispatcher.close = AsyncMock(return_value=_position())
    dispatcher.fetch_price = AsyncMock(return_value=Decimal("50000"))
    force_close = AsyncMock()
    rules_cache = AsyncMock()
    rules_cache.get = AsyncMock(return_value=btc_rules)
    return {
        "monitor": monitor,
        "dispatcher": dispatcher,
        "force_close": force_close,
        "rules_cache": rules_cache,
    }


def _client(components: dict[str, AsyncMock], cron_secret: str = "") -> TestClient:
    app = create_app()
    app.state.monitor = components["monitor"]
    app.state.dispatcher = components["dispatcher"]
    app.state.force_close = components["force_close"]
    app.state.rules_cache = components["rules_cache"]
    app.state.cron_secret = cron_secret
    return TestClient(app)


class TestCronTrigger:
    @pytest.mark.parametrize("method", ["GET", "POST"])
    def test_runs_monitor_pass(self, components: dict[str, AsyncMock], method: str) -> None:
        response = _client(components).request(method, "/cron/monitor-positions")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["checked"] == 2
        assert body["closed"] == 1
        components["monitor"].monitor_positions.assert_awaited_once()

    def test_requires_bearer_secret_when_configured(
        self, components: dict[str, AsyncMock]
    ) -> None:
        client = _client(components, cron_secret="s3cret")

        assert client.get("/cron/monitor-positions").status_code == 401
        assert (
            client.get(
                "/cron/monitor-positions", headers={"Authorization": "Bearer wrong"}
            ).status_code
            == 401
        )
        ok = client.get("/cron/monitor-positions", headers={"Authorization": "Bearer s3cret"})
        assert ok.status_code == 200
        components["monitor"].monitor_positions.assert_awaited_once()


class TestClosePosition:
    def test_manual_close(self, components: dict[str, AsyncMock]) -> None:
        response = _client(components).post("/positions/pos-1/close")

        assert response.status_code == 200
        position = response.json()["position"]
        assert position["status"] == "CLOSED"
        assert position["exit_price"] == "94"
        components["dispatcher"].close.assert_awaited_once_with("pos-1", CloseReason.MANUAL)

    def test_close_with_reason(self, components: dict[str, AsyncMock]) -> None:
        response = _client(components).post(
            "/positions/pos-1/close", json={"reason": "SIGNAL"}
        )
        assert response.status_code == 200
        components["dispatcher"].close.assert_awaited_once_with("pos-1", CloseReason.SIGNAL)

    @pytest.mark.parametrize(
        ("error", "status_code"),
        [
            (PositionNotFoundError("Position pos-1 not found"), 404),
            (CloseInProgressError("busy"), 409),
            (GatewayError("exchange down"), 502),
        ],
    )
    def test_errors_map_to_status_codes(
        self, components: dict[str, AsyncMock], error: Exception, status_code: int
    ) -> None:
        components["dispatcher"].close.side_effect = error

        response = _client(components).post("/positions/pos-1/close")

        assert response.status_code == status_code
        body = response.json()
        assert body["success"] is False
        assert body["error"] == str(error)
        assert body["error_type"] == type(error).__name__


class TestForceClose:
    def test_summary(self, components: dict[str, AsyncMock]) -> None:
        components["force_close"].force_close_all = AsyncMock(
            return_value=ForceCloseSummary(
                user_id="user-1",
                closed_count=1,
                failed_count=1,
                errors=[ForceCloseError("pos-2", "ETHUSDT", "halted")],
                results=[
                    ForceCloseResult("pos-1", "BTCUSDT", True, 1, position=_position()),
                    ForceCloseResult("pos-2", "ETHUSDT", False, 1, error="halted"),
                ],
            )
        )

        response = _client(components).post("/admin/users/user-1/force-close")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert body["closed_count"] == 1
        assert body["failed_count"] == 1
        assert body["errors"] == [
            {"position_id": "pos-2", "symbol": "ETHUSDT", "message": "halted"}
        ]
        assert [r["success"] for r in body["results"]] == [True, False]
        components["force_close"].force_close_all.assert_awaited_once_with("user-1")


class TestOpenPosition:
    def _result(self) -> DispatchResult:
        position = _position(PositionStatus.OPEN)
        entry = Order(
            id="ord-1",
            position_id=position.id,
            portfolio_id="pf-1",
            exchange_order_id="exch-1",
            role=OrderRole.ENTRY,
            symbol="BTCUSDT",
            side=OrderSide.BUY,
            order_type=OrderType.MARKET,
            price=Decimal("100"),
            quantity=Decimal("2"),
            status=OrderStatus.FILLED,
        )
        return DispatchResult(position=position, entry_order=entry, adjustments=["rounded"])

    def test_manual_order(self, components: dict[str, AsyncMock]) -> None:
        components["dispatcher"].open = AsyncMock(return_value=self._result())

        response = _client(components).post(
            "/portfolios/pf-1/positions",
            json={"symbol": "btcusdt", "side": "BUY", "quantity": "2", "stop_loss_percent": "5"},
        )

        assert response.status_code == 201
        assert response.json()["adjustments"] == ["rounded"]
        portfolio_id, intent = components["dispatcher"].open.await_args.args
        assert portfolio_id == "pf-1"
        assert intent.symbol == "BTCUSDT"
        assert intent.quantity == Decimal("2")
        assert intent.stop_loss_percent == Decimal("5")

    def test_rejection_returns_422_with_reason(self, components: dict[str, AsyncMock]) -> None:
        rejection = AdjustmentResult.reject("quantity below exchange minimum: ...")
        components["dispatcher"].open = AsyncMock(side_effect=ValidationRejection(rejection))

        response = _client(components).post(
            "/portfolios/pf-1/positions",
            json={"symbol": "BTCUSDT", "side": "BUY", "quantity": "0.000001"},
        )

        assert response.status_code == 422
        assert response.json()["error"] == "quantity below exchange minimum: ..."

    def test_signal_webhook(self, components: dict[str, AsyncMock]) -> None:
        components["dispatcher"].open = AsyncMock(return_value=self._result())

        response = _client(components).post(
            "/portfolios/pf-1/signals",
            json={"symbol": "BTCUSDT", "action": "enter-long", "quote_amount": "50"},
        )

        assert response.status_code == 201
        _, intent = components["dispatcher"].open.await_args.args
        assert intent.side is OrderSide.BUY
        assert intent.quote_amount == Decimal("50")

    def test_signal_with_unknown_action(self, components: dict[str, AsyncMock]) -> None:
        response = _client(components).post(
            "/portfolios/pf-1/signals",
            json={"symbol": "BTCUSDT", "action": "hodl", "quote_amount": "50"},
        )
        assert response.status_code == 400

    def test_entry_signal_requires_quote_amount(
        self, components: dict[str, AsyncMock]
    ) -> None:
        components["dispatcher"].open = AsyncMock(return_value=self._result())

        response = _client(components).post(
            "/portfolios/pf-1/signals", json={"symbol": "BTCUSDT", "action": "buy"}
        )

        assert response.status_code == 400
        components["dispatcher"].open.assert_not_awaited()


class TestExitSignals:
    @pytest.mark.parametrize(
        ("action", "side"),
        [
            ("exit_long", PositionSide.LONG),
            ("close-long", PositionSide.LONG),
            ("EXIT_SHORT", PositionSide.SHORT),
            ("cover", PositionSide.SHORT),
        ],
    )
    def test_exit_closes_open_position(
        self, components: dict[str, AsyncMock], action: str, side: PositionSide
    ) -> None:
        components["dispatcher"].open = AsyncMock()
        components["dispatcher"].close_open = AsyncMock(return_value=_position())

        response = _client(components).post(
            "/portfolios/pf-1/signals", json={"symbol": "btcusdt", "action": action}
        )

        assert response.status_code == 200
        assert response.json()["position"]["status"] == "CLOSED"
        components["dispatcher"].close_open.assert_awaited_once_with(
            "pf-1", "BTCUSDT", side, CloseReason.SIGNAL
        )
        components["dispatcher"].open.assert_not_awaited()

    def test_exit_without_open_position_is_404(
        self, components: dict[str, AsyncMock]
    ) -> None:
        components["dispatcher"].close_open = AsyncMock(
            side_effect=PositionNotFoundError("No open LONG position for BTCUSDT in portfolio pf-1")
        )

        response = _client(components).post(
            "/portfolios/pf-1/signals",
            json={"symbol": "BTCUSDT", "action": "sell", "quote_amount": "50"},
        )

        assert response.status_code == 404
        assert "No open LONG position" in response.json()["error"]


class TestValidateTrade:
    def test_adjusted_result(self, components: dict[str, AsyncMock]) -> None:
        response = _client(components).post(
            "/trade/validate",
            json={
                "symbol": "BTCUSDT",
                "side": "BUY",
                "quantity": "0.0012345",
                "current_price": "65000",
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["rejected"] is False
        assert body["adjusted_quantity"] == "0.00123"
        assert body["has_adjustments"] is True
        components["dispatcher"].fetch_price.assert_not_awaited()

    def test_fetches_price_when_missing(self, components: dict[str, AsyncMock]) -> None:
        response = _client(components).post(
            "/trade/validate",
            json={"symbol": "BTCUSDT", "side": "BUY", "quote_amount": "100"},
        )

        assert response.status_code == 200
        assert response.json()["adjusted_quantity"] == "0.00200"
        components["dispatcher"].fetch_price.assert_awaited_once_with("BTCUSDT")

    def test_unknown_symbol_is_rejected(self, components: dict[str, AsyncMock]) -> None:
        components["rules_cache"].get.side_effect = UnknownSymbolError("nope")

        response = _client(components).post(
            "/trade/validate",
            json={"symbol": "XYZUSDT", "side": "BUY", "quantity": "1"},
        )

        assert response.status_code == 422
        assert response.json()["rejection_reason"] == "unknown symbol: XYZUSDT"
