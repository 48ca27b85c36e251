"""Persistence layer -- aiosqlite database and typed position store."""

from autotrader.store.database import TradingDatabase
from autotrader.store.position_store import PositionStore

__all__ = ["PositionStore", "TradingDatabase"]
