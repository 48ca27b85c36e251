"""Typed SQLite read/write abstraction for portfolios, positions and orders.

Provides PositionStore with typed methods over TradingDatabase. All SQL is
isolated behind this interface.

CRITICAL: All monetary values stored as TEXT in SQLite, restored as Decimal on read.

Status changes go through compare_and_set_status(), a single conditional
UPDATE whose rowcount tells the caller whether it won. Multi-statement
writes share one asyncio.Lock so each runs as its own transaction on the
shared connection.
"""

import asyncio
import time
from decimal import Decimal

import aiosqlite

from autotrader.logging import get_logger
from autotrader.models import (
    CloseReason,
    ExchangeAccount,
    Order,
    OrderRole,
    OrderSide,
    OrderStatus,
    OrderType,
    Portfolio,
    Position,
    PositionSide,
    PositionSource,
    PositionStatus,
)
from autotrader.store.database import TradingDatabase

logger = get_logger(__name__)

_POSITION_COLUMNS = (
    "id, portfolio_id, symbol, side, entry_price, quantity, current_price, "
    "status, source, take_profit_price, stop_loss_price, pnl, pnl_percent, "
    "exit_price, close_reason, created_at, updated_at, closed_at"
)

_ORDER_COLUMNS = (
    "id, position_id, portfolio_id, exchange_order_id, role, symbol, side, "
    "order_type, price, quantity, status, fill_percent, pnl, created_at"
)


def _text(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


def _decimal(value: str | None) -> Decimal | None:
    return None if value is None else Decimal(value)


def _row_to_position(row: aiosqlite.Row) -> Position:
    return Position(
        id=row["id"],
        portfolio_id=row["portfolio_id"],
        symbol=row["symbol"],
        side=PositionSide(row["side"]),
        entry_price=Decimal(row["entry_price"]),
        quantity=Decimal(row["quantity"]),
        current_price=_decimal(row["current_price"]),
        status=PositionStatus(row["status"]),
        source=PositionSource(row["source"]),
        take_profit_price=_decimal(row["take_profit_price"]),
        stop_loss_price=_decimal(row["stop_loss_price"]),
        pnl=Decimal(row["pnl"]),
        pnl_percent=Decimal(row["pnl_percent"]),
        exit_price=_decimal(row["exit_price"]),
        close_reason=CloseReason(row["close_reason"]) if row["close_reason"] else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        closed_at=row["closed_at"],
    )


def _row_to_order(row: aiosqlite.Row) -> Order:
    return Order(
        id=row["id"],
        position_id=row["position_id"],
        portfolio_id=row["portfolio_id"],
        exchange_order_id=row["exchange_order_id"],
        role=OrderRole(row["role"]),
        symbol=row["symbol"],
        side=OrderSide(row["side"]),
        order_type=OrderType(row["order_type"]),
        price=Decimal(row["price"]),
        quantity=Decimal(row["quantity"]),
        status=OrderStatus(row["status"]),
        fill_percent=Decimal(row["fill_percent"]),
        pnl=_decimal(row["pnl"]),
        created_at=row["created_at"],
    )


class PositionStore:
    """Async SQLite store for trading state.

    Wraps TradingDatabase with typed read/write methods. All SQL access
    goes through self._database.db (the aiosqlite Connection).

    Usage:
        async with TradingDatabase("data/trading.db") as database:
            store = PositionStore(database)
            positions = await store.list_open_positions()
    """

    def __init__(self, database: TradingDatabase) -> None:
        self._database = database
        self._write_lock = asyncio.Lock()

    # ──────────────────────────────────────────────
    # Portfolios and exchange credentials
    # ──────────────────────────────────────────────

    async def add_portfolio(self, portfolio: Portfolio) -> None:
        """Insert a portfolio row."""
        async with self._write_lock:
            await self._database.db.execute(
                "INSERT INTO portfolios (id, user_id, name, created_at) "
                "VALUES (?, ?, ?, ?)",
                (portfolio.id, portfolio.user_id, portfolio.name, portfolio.created_at),
            )
            await self._database.db.commit()

    async def get_portfolio(self, portfolio_id: str) -> Portfolio | None:
        cursor = await self._database.db.execute(
            "SELECT id, user_id, name, created_at FROM portfolios WHERE id = ?",
            (portfolio_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return Portfolio(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            created_at=row["created_at"],
        )

    async def add_exchange(self, account: ExchangeAccount) -> None:
        """Insert exchange credentials for a portfolio."""
        async with self._write_lock:
            await self._database.db.execute(
                "INSERT INTO exchanges "
                "(id, portfolio_id, name, api_key, api_secret, is_active, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    account.id,
                    account.portfolio_id,
                    account.name,
                    account.api_key,
                    account.api_secret,
                    1 if account.is_active else 0,
                    account.created_at,
                ),
            )
            await self._database.db.commit()

    async def list_exchanges(self, portfolio_id: str) -> list[ExchangeAccount]:
        """Return a portfolio's exchange credentials in insertion order."""
        cursor = await self._database.db.execute(
            "SELECT id, portfolio_id, name, api_key, api_secret, is_active, created_at "
            "FROM exchanges WHERE portfolio_id = ? ORDER BY created_at ASC, rowid ASC",
            (portfolio_id,),
        )
        rows = await cursor.fetchall()
        return [
            ExchangeAccount(
                id=row["id"],
                portfolio_id=row["portfolio_id"],
                name=row["name"],
                api_key=row["api_key"],
                api_secret=row["api_secret"],
                is_active=bool(row["is_active"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # ──────────────────────────────────────────────
    # Position writes
    # ──────────────────────────────────────────────

    async def create_position(self, position: Position, entry_order: Order) -> None:
        """Insert a position and its entry order in one transaction.

        Raises:
            aiosqlite.Error: If either insert fails; nothing is persisted.
        """
        db = self._database.db
        async with self._write_lock:
            try:
                await db.execute(
                    f"INSERT INTO positions ({_POSITION_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        position.id,
                        position.portfolio_id,
                        position.symbol,
                        position.side.value,
                        str(position.entry_price),
                        str(position.quantity),
                        _text(position.current_price),
                        position.status.value,
                        position.source.value,
                        _text(position.take_profit_price),
                        _text(position.stop_loss_price),
                        str(position.pnl),
                        str(position.pnl_percent),
                        _text(position.exit_price),
                        position.close_reason.value if position.close_reason else None,
                        position.created_at,
                        position.updated_at,
                        position.closed_at,
                    ),
                )
                await self._insert_order(entry_order)
                await db.commit()
            except BaseException:
                await db.rollback()
                raise

        logger.debug(
            "position_inserted",
            position_id=position.id,
            symbol=position.symbol,
            order_id=entry_order.id,
        )

    async def compare_and_set_status(
        self,
        position_id: str,
        expected: PositionStatus,
        new: PositionStatus,
    ) -> bool:
        """Atomically move a position from ``expected`` to ``new`` status.

        Returns:
            True if this call performed the transition, False if the row was
            not in ``expected`` (or does not exist).
        """
        async with self._write_lock:
            cursor = await self._database.db.execute(
                "UPDATE positions SET status = ?, updated_at = ? "
                "WHERE id = ? AND status = ?",
                (new.value, time.time(), position_id, expected.value),
            )
            await self._database.db.commit()
        won = cursor.rowcount == 1
        logger.debug(
            "position_status_cas",
            position_id=position_id,
            expected=expected.value,
            new=new.value,
            won=won,
        )
        return won

    async def update_mark(
        self,
        position_id: str,
        current_price: Decimal,
        pnl: Decimal,
        pnl_percent: Decimal,
    ) -> bool:
        """Refresh mark price and unrealized PnL while the position is OPEN.

        Returns:
            False when the row has already left OPEN, so a late refresh never
            overwrites a close.
        """
        async with self._write_lock:
            cursor = await self._database.db.execute(
                "UPDATE positions SET current_price = ?, pnl = ?, pnl_percent = ?, "
                "updated_at = ? WHERE id = ? AND status = ?",
                (
                    str(current_price),
                    str(pnl),
                    str(pnl_percent),
                    time.time(),
                    position_id,
                    PositionStatus.OPEN.value,
                ),
            )
            await self._database.db.commit()
        return cursor.rowcount == 1

    async def finalize_close(
        self,
        position_id: str,
        exit_price: Decimal,
        pnl: Decimal,
        pnl_percent: Decimal,
        reason: CloseReason,
        exit_order: Order,
        closed_at: float | None = None,
    ) -> bool:
        """Record the exit order and move CLOSING -> CLOSED in one transaction.

        Returns:
            False (and rolls back) when the position is not CLOSING.
        """
        closed_at = closed_at if closed_at is not None else time.time()
        db = self._database.db
        async with self._write_lock:
            try:
                cursor = await db.execute(
                    "UPDATE positions SET status = ?, current_price = ?, exit_price = ?, "
                    "pnl = ?, pnl_percent = ?, close_reason = ?, closed_at = ?, "
                    "updated_at = ? WHERE id = ? AND status = ?",
                    (
                        PositionStatus.CLOSED.value,
                        str(exit_price),
                        str(exit_price),
                        str(pnl),
                        str(pnl_percent),
                        reason.value,
                        closed_at,
                        closed_at,
                        position_id,
                        PositionStatus.CLOSING.value,
                    ),
                )
                if cursor.rowcount != 1:
                    await db.rollback()
                    return False
                await self._insert_order(exit_order)
                await db.commit()
            except BaseException:
                await db.rollback()
                raise

        logger.debug(
            "position_close_recorded",
            position_id=position_id,
            exit_price=str(exit_price),
            pnl=str(pnl),
            reason=reason.value,
        )
        return True

    async def _insert_order(self, order: Order) -> None:
        """Insert an order row. Caller holds the write lock and commits."""
        await self._database.db.execute(
            f"INSERT INTO orders ({_ORDER_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                order.id,
                order.position_id,
                order.portfolio_id,
                order.exchange_order_id,
                order.role.value,
                order.symbol,
                order.side.value,
                order.order_type.value,
                str(order.price),
                str(order.quantity),
                order.status.value,
                str(order.fill_percent),
                _text(order.pnl),
                order.created_at,
            ),
        )

    # ──────────────────────────────────────────────
    # Position reads
    # ──────────────────────────────────────────────

    async def get_position(self, position_id: str) -> Position | None:
        cursor = await self._database.db.execute(
            f"SELECT {_POSITION_COLUMNS} FROM positions WHERE id = ?",
            (position_id,),
        )
        row = await cursor.fetchone()
        return _row_to_position(row) if row is not None else None

    async def list_open_positions(self) -> list[Position]:
        """Return every OPEN position ordered by portfolio then age."""
        cursor = await self._database.db.execute(
            f"SELECT {_POSITION_COLUMNS} FROM positions WHERE status = ? "
            "ORDER BY portfolio_id ASC, created_at ASC",
            (PositionStatus.OPEN.value,),
        )
        rows = await cursor.fetchall()
        return [_row_to_position(row) for row in rows]

    async def find_open_position(
        self, portfolio_id: str, symbol: str, side: PositionSide
    ) -> Position | None:
        """Return the oldest OPEN position of a side and symbol in a portfolio."""
        cursor = await self._database.db.execute(
            f"SELECT {_POSITION_COLUMNS} FROM positions "
            "WHERE portfolio_id = ? AND symbol = ? AND side = ? AND status = ? "
            "ORDER BY created_at ASC LIMIT 1",
            (portfolio_id, symbol, side.value, PositionStatus.OPEN.value),
        )
        row = await cursor.fetchone()
        return _row_to_position(row) if row is not None else None

    async def list_open_positions_for_user(self, user_id: str) -> list[Position]:
        """Return OPEN positions across all portfolios owned by a user."""
        cursor = await self._database.db.execute(
            f"SELECT {', '.join('p.' + c.strip() for c in _POSITION_COLUMNS.split(','))} "
            "FROM positions p JOIN portfolios pf ON pf.id = p.portfolio_id "
            "WHERE pf.user_id = ? AND p.status = ? "
            "ORDER BY p.portfolio_id ASC, p.created_at ASC",
            (user_id, PositionStatus.OPEN.value),
        )
        rows = await cursor.fetchall()
        return [_row_to_position(row) for row in rows]

    async def list_orders(self, position_id: str) -> list[Order]:
        """Return a position's orders oldest first."""
        cursor = await self._database.db.execute(
            f"SELECT {_ORDER_COLUMNS} FROM orders WHERE position_id = ? "
            "ORDER BY created_at ASC, rowid ASC",
            (position_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_order(row) for row in rows]
