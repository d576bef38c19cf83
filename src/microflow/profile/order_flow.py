"""Candle-level order-flow enrichment.

Adds delta, cumulative delta (CVD), VWAP with a volume-weighted standard
deviation band, and pivot-based delta divergence to a candle series. Also
derives session levels (initial balance), a coarse CVD regime and RSI.

All session accumulators reset at each UTC calendar-day boundary.
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, timezone

import numpy as np

from microflow.core.enums import CVDState, Divergence
from microflow.core.models import Candle, SessionLevels

logger = logging.getLogger(__name__)

# Divergence scan
_PIVOT_START_INDEX = 3
_PIVOT_LOOKBACK = 15

# Initial balance window
_IB_DURATION_MS = 60 * 60 * 1000

# CVD regime heuristic
_CVD_WINDOW = 10
_CVD_SLOPE_THRESHOLD = 1000.0
_CVD_RANGE_THRESHOLD = 2000.0

_RSI_NEUTRAL = 50.0


def _utc_date(timestamp: int) -> date:
    return datetime.fromtimestamp(timestamp / 1000.0, tz=timezone.utc).date()


def enrich_candles_with_context(candles: list[Candle]) -> list[Candle]:
    """Return copies of ``candles`` with delta, cvd, vwap, vwap_std, divergence.

    VWAP is cumulative(close * volume) / cumulative(volume), falling back
    to the close while no volume has traded. ``vwap_std`` is the square
    root of the running volume-weighted squared deviation of the typical
    price from VWAP.
    """
    cum_delta = 0.0
    cum_volume = 0.0
    cum_pv = 0.0
    sum_sq_dev = 0.0
    prev_day: date | None = None

    enriched: list[Candle] = []
    for candle in candles:
        day = _utc_date(candle.timestamp)
        if prev_day is not None and day != prev_day:
            cum_delta = 0.0
            cum_volume = 0.0
            cum_pv = 0.0
            sum_sq_dev = 0.0
        prev_day = day

        delta = candle.raw_delta
        cum_delta += delta
        cum_volume += candle.volume
        cum_pv += candle.close * candle.volume

        vwap = cum_pv / cum_volume if cum_volume > 0 else candle.close
        if cum_volume > 0:
            dev = candle.typical_price - vwap
            sum_sq_dev += dev * dev * candle.volume
        variance = sum_sq_dev / cum_volume if cum_volume > 0 else 0.0

        enriched.append(candle.model_copy(update={
            "delta": delta,
            "cvd": cum_delta,
            "vwap": vwap,
            "vwap_std": math.sqrt(variance),
            "divergence": None,
        }))

    _mark_divergences(enriched)
    return enriched


def _is_pivot_high(candles: list[Candle], i: int) -> bool:
    return candles[i].high > candles[i - 1].high and candles[i].high > candles[i + 1].high


def _is_pivot_low(candles: list[Candle], i: int) -> bool:
    return candles[i].low < candles[i - 1].low and candles[i].low < candles[i + 1].low


def _prior_pivot(candles: list[Candle], i: int, is_pivot) -> int | None:
    """Nearest earlier pivot of the same kind within the lookback, if any."""
    for j in range(i - 2, max(1, i - _PIVOT_LOOKBACK) - 1, -1):
        if is_pivot(candles, j):
            return j
    return None


def _mark_divergences(candles: list[Candle]) -> None:
    """Flag pivot candles whose delta disagrees with the price extreme.

    Only the current pivot and its nearest predecessor of the same kind
    are compared. A bullish flag wins when a candle is both pivots.
    """
    for i in range(_PIVOT_START_INDEX, len(candles) - 1):
        curr = candles[i]

        if _is_pivot_high(candles, i):
            j = _prior_pivot(candles, i, _is_pivot_high)
            if j is not None:
                prev = candles[j]
                if curr.high > prev.high and (curr.delta or 0.0) < (prev.delta or 0.0):
                    curr.divergence = Divergence.BEARISH

        if _is_pivot_low(candles, i):
            j = _prior_pivot(candles, i, _is_pivot_low)
            if j is not None:
                prev = candles[j]
                if curr.low < prev.low and (curr.delta or 0.0) > (prev.delta or 0.0):
                    curr.divergence = Divergence.BULLISH


def calculate_session_levels(candles: list[Candle]) -> SessionLevels:
    """Session extremes plus the first-hour initial balance.

    IB fields stay ``None`` until a candle beyond the first 60 minutes
    (relative to the first candle) has been seen.
    """
    if not candles:
        return SessionLevels()

    start = candles[0].timestamp
    session_high = -math.inf
    session_low = math.inf
    ib_high = -math.inf
    ib_low = math.inf
    ib_established = False

    for c in candles:
        session_high = max(session_high, c.high)
        session_low = min(session_low, c.low)
        if c.timestamp < start + _IB_DURATION_MS:
            ib_high = max(ib_high, c.high)
            ib_low = min(ib_low, c.low)
        else:
            ib_established = True

    return SessionLevels(
        ib_high=ib_high if ib_established else None,
        ib_low=ib_low if ib_established else None,
        vwap=candles[-1].vwap or None,
        session_high=session_high,
        session_low=session_low,
    )


def determine_cvd_state(candles: list[Candle]) -> CVDState:
    """Classify the CVD trajectory of the last ten enriched candles."""
    if len(candles) < _CVD_WINDOW:
        return CVDState.NEUTRAL

    recent = candles[-_CVD_WINDOW:]
    cvd = [c.cvd or 0.0 for c in recent]
    slope = cvd[-1] - cvd[0]

    if abs(slope) < _CVD_SLOPE_THRESHOLD:
        if max(cvd) - min(cvd) < _CVD_RANGE_THRESHOLD:
            return CVDState.NEUTRAL
        return CVDState.ABSORPTION

    price_change = recent[-1].close - recent[0].close
    if slope > 0:
        return CVDState.EXPANSION_UP if price_change > 0 else CVDState.ABSORPTION
    return CVDState.EXPANSION_DOWN if price_change < 0 else CVDState.DISTRIBUTION


def calculate_rsi(candles: list[Candle], period: int = 14) -> float:
    """Simple-average RSI over the last ``period`` close-to-close changes.

    Returns 50 when fewer than ``period + 1`` candles are available and
    100 when the window holds no losses.
    """
    if len(candles) < period + 1:
        return _RSI_NEUTRAL

    closes = np.array([c.close for c in candles[-(period + 1):]], dtype=float)
    diffs = np.diff(closes)
    avg_gain = float(diffs[diffs >= 0].sum()) / period
    avg_loss = float(-diffs[diffs < 0].sum()) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))
