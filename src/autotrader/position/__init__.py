"""Position lifecycle -- order dispatch, TP/SL monitoring and force-close."""

from autotrader.position.dispatcher import DispatchResult, OrderDispatcher
from autotrader.position.force_close import ForceCloseCoordinator, ForceCloseSummary
from autotrader.position.monitor import MonitorReport, PositionMonitor, evaluate_exit
from autotrader.position.pnl import compute_pnl

__all__ = [
    "DispatchResult",
    "ForceCloseCoordinator",
    "ForceCloseSummary",
    "MonitorReport",
    "OrderDispatcher",
    "PositionMonitor",
    "compute_pnl",
    "evaluate_exit",
]
