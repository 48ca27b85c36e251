"""Exchange gateway layer -- ccxt integration, paper fills, and symbol rules."""

from autotrader.exchange.ccxt_gateway import CcxtGateway
from autotrader.exchange.gateway import ExchangeGateway
from autotrader.exchange.paper_gateway import PaperGateway
from autotrader.exchange.rules_cache import SymbolRulesCache
from autotrader.exchange.selection import select_active_exchange
from autotrader.exchange.types import SymbolRules, round_to_step

__all__ = [
    "CcxtGateway",
    "ExchangeGateway",
    "PaperGateway",
    "SymbolRules",
    "SymbolRulesCache",
    "round_to_step",
    "select_active_exchange",
]
