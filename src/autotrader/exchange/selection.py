"""Active exchange credential selection for a portfolio."""

from collections.abc import Sequence

from autotrader.models import ExchangeAccount


def select_active_exchange(
    exchanges: Sequence[ExchangeAccount],
) -> ExchangeAccount | None:
    """Pick the exchange credentials a portfolio trades with.

    Tie-break order: the first ``is_active`` entry by insertion order
    (``created_at``, then position in the sequence); if none is active, the
    first entry by insertion order; None for an empty sequence.
    """
    if not exchanges:
        return None

    ordered = sorted(
        enumerate(exchanges), key=lambda item: (item[1].created_at, item[0])
    )
    for _, exchange in ordered:
        if exchange.is_active:
            return exchange
    return ordered[0][1]
