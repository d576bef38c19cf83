"""Order block detection.

An order block is the last opposing candle before an impulsive move: a red
candle followed by an explosive rally (or a close above the recent highs)
marks bullish demand; a green candle followed by an explosive drop marks
bearish supply. Blocks are then walked forward: a touch marks them TESTED,
a close through them removes them.
"""

from __future__ import annotations

from microflow.core.enums import OrderBlockStatus, OrderBlockType
from microflow.core.models import Candle, OrderBlock

_MIN_CANDLES = 20
_LOOKBACK = 5
_TRAILING = 5  # Candles at the end that cannot seed a block yet
_EXPLOSIVE_MOVE = 0.005  # 0.5%
_STRENGTH_EXPLOSIVE = 80.0
_STRENGTH_STRUCTURE = 50.0
_MAX_BLOCKS = 10


def find_order_blocks(candles: list[Candle]) -> list[OrderBlock]:
    """Detect unbroken order blocks, returning at most the last ten."""
    if len(candles) < _MIN_CANDLES:
        return []

    blocks: list[OrderBlock] = []
    for i in range(_LOOKBACK, len(candles) - _TRAILING):
        current = candles[i]
        nxt = candles[i + 1]
        window = candles[i - _LOOKBACK:i]

        if current.close < current.open:
            move_up = (nxt.close - current.high) / current.high
            explosive = move_up > _EXPLOSIVE_MOVE
            breaks_structure = nxt.close > max(c.high for c in window)
            if explosive or breaks_structure:
                blocks.append(OrderBlock(
                    id=f"bull-{current.timestamp}",
                    type=OrderBlockType.BULLISH,
                    top=current.high,
                    bottom=current.low,
                    start=current.timestamp,
                    strength=_STRENGTH_EXPLOSIVE if explosive else _STRENGTH_STRUCTURE,
                ))

        if current.close > current.open:
            move_down = (current.low - nxt.close) / current.low
            explosive = move_down > _EXPLOSIVE_MOVE
            breaks_structure = nxt.close < min(c.low for c in window)
            if explosive or breaks_structure:
                blocks.append(OrderBlock(
                    id=f"bear-{current.timestamp}",
                    type=OrderBlockType.BEARISH,
                    top=current.high,
                    bottom=current.low,
                    start=current.timestamp,
                    strength=_STRENGTH_EXPLOSIVE if explosive else _STRENGTH_STRUCTURE,
                ))

    index_by_ts: dict[int, int] = {}
    for i, c in enumerate(candles):
        index_by_ts.setdefault(c.timestamp, i)
    surviving = [ob for ob in blocks if not _is_broken(ob, candles, index_by_ts[ob.start])]
    return surviving[-_MAX_BLOCKS:]


def _is_broken(block: OrderBlock, candles: list[Candle], origin: int) -> bool:
    """Walk candles after the block; mark touches, report a close-through."""
    for c in candles[origin + 1:]:
        if block.type is OrderBlockType.BULLISH:
            if c.low <= block.top and c.close >= block.bottom:
                block.status = OrderBlockStatus.TESTED
            if c.close < block.bottom:
                return True
        else:
            if c.high >= block.bottom and c.close <= block.top:
                block.status = OrderBlockStatus.TESTED
            if c.close > block.top:
                return True
    return False
