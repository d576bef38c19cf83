"""Volume profile: volume-by-price histogram, point of control, value area.

Each candle's volume is spread uniformly across every price tick its
[low, high] range touches. The point of control (POC) is the tick with the
most volume; the value area is grown outward from the POC, one tick at a
time toward the heavier neighbour, until it holds 70% of the session volume.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone

from microflow.core.errors import InvalidTickSize
from microflow.core.models import Candle, ProfileLevel, ProfileMetrics

logger = logging.getLogger(__name__)

# Fraction of total volume the value area must contain.
VALUE_AREA_FRACTION = 0.70


def calculate_profile(candles: list[Candle], tick_size: float) -> ProfileMetrics:
    """Build the volume profile for a candle set.

    Args:
        candles: Candles in chronological order (may be empty).
        tick_size: Profile granularity in price units. Must be positive.

    Returns:
        ProfileMetrics with ascending ``levels``. Zeroed metrics for an
        empty candle list.

    Raises:
        InvalidTickSize: If ``tick_size`` is zero or negative.
    """
    if tick_size <= 0:
        raise InvalidTickSize(tick_size)

    if not candles:
        return ProfileMetrics()

    volume_by_tick: dict[int, float] = {}
    session_high = -math.inf
    session_low = math.inf
    total_volume = 0.0

    for candle in candles:
        session_high = max(session_high, candle.high)
        session_low = min(session_low, candle.low)

        low_tick = math.floor(min(candle.low, candle.high) / tick_size)
        high_tick = math.floor(max(candle.low, candle.high) / tick_size)
        num_ticks = high_tick - low_tick + 1
        volume_per_tick = candle.volume / num_ticks

        for tick in range(low_tick, high_tick + 1):
            volume_by_tick[tick] = volume_by_tick.get(tick, 0.0) + volume_per_tick
        total_volume += candle.volume

    levels = [
        ProfileLevel(price=tick * tick_size, volume=vol)
        for tick, vol in sorted(volume_by_tick.items())
    ]

    # First strictly-greatest level wins ties
    poc_index = 0
    max_volume = -1.0
    for i, level in enumerate(levels):
        if level.volume > max_volume:
            max_volume = level.volume
            poc_index = i

    lower_index, upper_index = _expand_value_area(levels, poc_index, total_volume)

    return ProfileMetrics(
        levels=levels,
        poc=levels[poc_index].price,
        vah=levels[upper_index].price,
        val=levels[lower_index].price,
        total_volume=total_volume,
        session_high=session_high,
        session_low=session_low,
    )


def _expand_value_area(
    levels: list[ProfileLevel],
    poc_index: int,
    total_volume: float,
) -> tuple[int, int]:
    """Grow [lower, upper] outward from the POC until it holds the target volume.

    At each step the upper neighbour is taken only when its volume is
    strictly greater than the lower neighbour's; an exhausted side
    contributes nothing and the other side is taken.
    """
    target = total_volume * VALUE_AREA_FRACTION
    accumulated = levels[poc_index].volume
    last = len(levels) - 1
    upper = lower = poc_index

    while accumulated < target:
        can_up = upper < last
        can_down = lower > 0
        if not can_up and not can_down:
            break

        next_upper = levels[upper + 1].volume if can_up else 0.0
        next_lower = levels[lower - 1].volume if can_down else 0.0

        if can_up and (next_upper > next_lower or not can_down):
            upper += 1
            accumulated += levels[upper].volume
        else:
            lower -= 1
            accumulated += levels[lower].volume

    return lower, upper


# ---------------------------------------------------------------------------
# Session window
# ---------------------------------------------------------------------------

def _minutes_of_day(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def is_in_session(timestamp: int, start: str, end: str) -> bool:
    """Whether a millisecond timestamp falls inside a UTC HH:MM window.

    ``start`` is inclusive and ``end`` exclusive. A window whose start is
    after its end wraps past midnight (e.g. 22:00-02:00).
    """
    dt = datetime.fromtimestamp(timestamp / 1000.0, tz=timezone.utc)
    current = dt.hour * 60 + dt.minute
    start_min = _minutes_of_day(start)
    end_min = _minutes_of_day(end)

    if start_min <= end_min:
        return start_min <= current < end_min
    return current >= start_min or current < end_min


def filter_session_candles(candles: list[Candle], start: str, end: str) -> list[Candle]:
    """Keep only the candles that open inside the session window."""
    return [c for c in candles if is_in_session(c.timestamp, start, end)]
