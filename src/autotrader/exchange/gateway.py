"""Abstract exchange gateway interface.

Defines the contract for all exchange implementations. Validation, dispatch
and monitoring code depends only on this interface, keeping ccxt-specific
details isolated in the concrete implementation.

Market data calls (rules, prices) are credential-free; account calls
(balance, orders) take the portfolio's ExchangeAccount.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from autotrader.exchange.types import SymbolRules
from autotrader.models import Balance, ExchangeAccount, OrderAck, OrderRequest


class ExchangeGateway(ABC):
    """Abstract base class for exchange gateways."""

    @abstractmethod
    async def connect(self) -> None:
        """Initialize connection and load markets."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release client resources."""
        ...

    @abstractmethod
    async def get_symbol_rules(self, symbol: str) -> SymbolRules:
        """Return trading constraints for a symbol.

        Raises:
            UnknownSymbolError: If the exchange does not list the symbol.
        """
        ...

    @abstractmethod
    async def get_price(self, symbol: str) -> Decimal:
        """Return the last traded price for a symbol.

        Raises:
            PriceUnavailableError: If no price could be obtained.
        """
        ...

    @abstractmethod
    async def get_prices(self, symbols: list[str]) -> dict[str, Decimal]:
        """Return last prices for several symbols in one request.

        Symbols without a price are omitted from the result.
        """
        ...

    @abstractmethod
    async def get_balance(self, asset: str, credentials: ExchangeAccount) -> Balance:
        """Return free/locked amounts of one asset."""
        ...

    @abstractmethod
    async def place_order(
        self, request: OrderRequest, credentials: ExchangeAccount
    ) -> OrderAck:
        """Submit an order and return the exchange acknowledgement.

        Raises:
            GatewayError: If the exchange rejects the order or the call fails.
        """
        ...

    @abstractmethod
    async def cancel_order(
        self, order_id: str, symbol: str, credentials: ExchangeAccount
    ) -> bool:
        """Attempt to cancel an open order. Returns True on success."""
        ...
