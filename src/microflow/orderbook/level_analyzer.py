"""Per-level order-book analytics.

Compares each depth snapshot with the previous one, attributing recent
executions to the side they hit, to measure how much liquidity was really
added or pulled at every price and to flag:

* **Icebergs** -- a level that was hit but did not shrink (replenished).
* **Spoofs** -- significant liquidity withdrawn without any execution.
* **Absorption** -- executed volume large relative to what still rests.
"""

from __future__ import annotations

import logging

from microflow.core.enums import BookSide
from microflow.core.models import EnrichedLevel, OrderBookLevel, Trade

logger = logging.getLogger(__name__)

# Quote value that must vanish without execution to flag a pull.
SPOOF_PULL_THRESHOLD = 5000.0


def _executions_by_price(trades: list[Trade], side: BookSide) -> dict[float, float]:
    """Sum executed qty per price for trades that hit ``side``.

    Bids are hit by aggressive sellers (``is_buyer_maker``), asks by
    aggressive buyers.
    """
    executed: dict[float, float] = {}
    for t in trades:
        hits_bid = t.is_buyer_maker
        if (side is BookSide.BID and hits_bid) or (side is BookSide.ASK and not hits_bid):
            executed[t.price] = executed.get(t.price, 0.0) + t.qty
    return executed


def analyze_dom(
    new_levels: list[OrderBookLevel],
    prev_levels: dict[float, EnrichedLevel],
    recent_trades: list[Trade],
    side: BookSide,
) -> list[EnrichedLevel]:
    """Enrich one side of a depth snapshot against the previous snapshot.

    Args:
        new_levels: Levels ordered from the best price outward.
        prev_levels: Previous enriched levels of the same side, by price.
        recent_trades: Executions since roughly the previous snapshot.
        side: Which side ``new_levels`` belongs to.

    Returns:
        One EnrichedLevel per input level, in input order.
    """
    executed_at = _executions_by_price(recent_trades, side)
    cumulative = 0.0
    result: list[EnrichedLevel] = []

    for level in new_levels:
        prev = prev_levels.get(level.price)
        executed = executed_at.get(level.price, 0.0)
        cumulative += level.qty

        is_spoof = False
        if prev is not None:
            # Execution removes visible qty on its own, so add it back
            delta = (level.qty - prev.qty) + executed
            value_removed = (prev.qty - level.qty) * level.price
            if value_removed > SPOOF_PULL_THRESHOLD and executed == 0:
                is_spoof = True
        else:
            delta = level.qty

        is_iceberg = False
        iceberg_vol = prev.iceberg_vol if prev is not None else 0.0
        if executed > 0 and delta >= 0:
            is_iceberg = True
            iceberg_vol += executed

        absorption = executed / level.qty if executed > 0 and level.qty > 0 else 0.0

        result.append(EnrichedLevel(
            price=level.price,
            qty=level.qty,
            total=level.total,
            depth_ratio=level.depth_ratio,
            type=side,
            cumulative_qty=cumulative,
            delta_qty=delta,
            trade_vol=executed,
            absorption=absorption,
            is_iceberg=is_iceberg,
            iceberg_vol=iceberg_vol,
            is_spoof=is_spoof,
            age=prev.age + 1 if prev is not None else 0,
        ))

    return result


class LevelAnalyzer:
    """Owns the previous enriched snapshot for both sides of one book.

    Each call to :meth:`analyze` replaces the stored snapshots wholesale,
    so a price that disappears for one snapshot restarts at age 0.
    """

    def __init__(self) -> None:
        self._prev_bids: dict[float, EnrichedLevel] = {}
        self._prev_asks: dict[float, EnrichedLevel] = {}

    def analyze(
        self,
        bids: list[OrderBookLevel],
        asks: list[OrderBookLevel],
        recent_trades: list[Trade],
    ) -> tuple[list[EnrichedLevel], list[EnrichedLevel]]:
        enriched_bids = analyze_dom(bids, self._prev_bids, recent_trades, BookSide.BID)
        enriched_asks = analyze_dom(asks, self._prev_asks, recent_trades, BookSide.ASK)

        self._prev_bids = {lvl.price: lvl for lvl in enriched_bids}
        self._prev_asks = {lvl.price: lvl for lvl in enriched_asks}

        return (
            [lvl.model_copy() for lvl in enriched_bids],
            [lvl.model_copy() for lvl in enriched_asks],
        )
