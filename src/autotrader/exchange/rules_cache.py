"""Shared in-memory symbol rules cache with time-to-live expiry.

Symbol rules change far less often than prices, so they are fetched with a
longer timeout and kept for a long TTL. Entries are immutable SymbolRules;
a refresh replaces the entry wholesale.
"""

import asyncio
import time

from autotrader.exchange.gateway import ExchangeGateway
from autotrader.exchange.types import SymbolRules
from autotrader.logging import get_logger

logger = get_logger(__name__)


class SymbolRulesCache:
    """TTL cache in front of ExchangeGateway.get_symbol_rules.

    Uses asyncio.Lock for safe concurrent reads/writes from multiple coroutines.
    Fetch errors propagate to the caller and are never cached.

    Args:
        gateway: Gateway used to fetch rules on a miss.
        ttl_seconds: How long a fetched entry stays valid.
        timeout_seconds: Timeout for a single rules fetch.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        ttl_seconds: float = 3600.0,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._gateway = gateway
        self._ttl = ttl_seconds
        self._timeout = timeout_seconds
        self._rules: dict[str, tuple[SymbolRules, float]] = {}
        self._lock = asyncio.Lock()

    async def get(self, symbol: str) -> SymbolRules:
        """Return cached rules for a symbol, fetching them if missing or expired."""
        async with self._lock:
            entry = self._rules.get(symbol)
            if entry is not None and time.time() - entry[1] <= self._ttl:
                return entry[0]

        rules = await asyncio.wait_for(
            self._gateway.get_symbol_rules(symbol), timeout=self._timeout
        )
        async with self._lock:
            self._rules[symbol] = (rules, time.time())
        logger.debug("symbol_rules_cached", symbol=symbol, ttl=self._ttl)
        return rules
