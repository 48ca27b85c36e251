"""Administrative force-close of every open position a user owns.

All of the user's OPEN positions are closed concurrently via asyncio.gather
through the dispatcher's idempotent close path with reason FORCE_CLOSE.
Failed closes are retried up to max_retries times with linear backoff.
An individual failure never raises; it is reported in the summary and
logged at CRITICAL so the position can be closed by hand.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from autotrader.logging import get_logger
from autotrader.models import CloseReason, Position

if TYPE_CHECKING:
    from autotrader.position.dispatcher import OrderDispatcher
    from autotrader.store.position_store import PositionStore

logger = get_logger(__name__)


@dataclass
class ForceCloseError:
    """A position that could not be closed."""

    position_id: str
    symbol: str
    message: str


@dataclass
class ForceCloseResult:
    """Outcome for one position."""

    position_id: str
    symbol: str
    success: bool
    attempts: int
    position: Position | None = None
    error: str | None = None


@dataclass
class ForceCloseSummary:
    """Aggregate outcome of a force-close request."""

    user_id: str
    closed_count: int = 0
    failed_count: int = 0
    errors: list[ForceCloseError] = field(default_factory=list)
    results: list[ForceCloseResult] = field(default_factory=list)


class ForceCloseCoordinator:
    """Closes all of a user's open positions with retry.

    Args:
        store: For loading the user's open positions.
        dispatcher: For the idempotent close.
        max_retries: Attempts per position (at least one).
        backoff_seconds: Base delay; attempt N waits N * backoff_seconds.
    """

    def __init__(
        self,
        store: PositionStore,
        dispatcher: OrderDispatcher,
        max_retries: int = 1,
        backoff_seconds: float = 1.0,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._max_retries = max(1, max_retries)
        self._backoff = backoff_seconds

    async def force_close_all(self, target_user_id: str) -> ForceCloseSummary:
        """Close every OPEN position owned by a user.

        Args:
            target_user_id: Owner whose positions are closed.

        Returns:
            ForceCloseSummary with per-position results. Never raises for an
            individual position.
        """
        summary = ForceCloseSummary(user_id=target_user_id)
        positions = await self._store.list_open_positions_for_user(target_user_id)

        if not positions:
            logger.info("force_close_no_positions", user_id=target_user_id)
            return summary

        logger.warning(
            "force_close_started", user_id=target_user_id, positions=len(positions)
        )

        results = await asyncio.gather(
            *(self._close_with_retry(position) for position in positions)
        )

        for result in results:
            summary.results.append(result)
            if result.success:
                summary.closed_count += 1
            else:
                summary.failed_count += 1
                summary.errors.append(
                    ForceCloseError(
                        position_id=result.position_id,
                        symbol=result.symbol,
                        message=result.error or "unknown error",
                    )
                )

        logger.info(
            "force_close_complete",
            user_id=target_user_id,
            closed=summary.closed_count,
            failed=summary.failed_count,
        )
        return summary

    async def _close_with_retry(self, position: Position) -> ForceCloseResult:
        """Close a single position, retrying with linear backoff.

        Returns:
            ForceCloseResult; success is False once all attempts fail.
        """
        last_error = ""

        for attempt in range(1, self._max_retries + 1):
            try:
                closed = await self._dispatcher.close(position.id, CloseReason.FORCE_CLOSE)
            except Exception as exc:
                last_error = str(exc) or type(exc).__name__
                logger.warning(
                    "force_close_retry",
                    position_id=position.id,
                    attempt=attempt,
                    max_retries=self._max_retries,
                    error=last_error,
                )
                if attempt < self._max_retries:
                    await asyncio.sleep(self._backoff * attempt)
                continue

            logger.info(
                "force_close_position_closed",
                position_id=position.id,
                attempt=attempt,
            )
            return ForceCloseResult(
                position_id=position.id,
                symbol=position.symbol,
                success=True,
                attempts=attempt,
                position=closed,
            )

        logger.critical(
            "force_close_failed_all_retries",
            position_id=position.id,
            symbol=position.symbol,
            quantity=str(position.quantity),
            error=last_error,
        )
        return ForceCloseResult(
            position_id=position.id,
            symbol=position.symbol,
            success=False,
            attempts=self._max_retries,
            error=last_error,
        )
