"""Auction context classification.

Places the current price against the session value area and recent
candles to name the auction regime (balanced, rotational, initiative,
failed auction), scores how well delta and VWAP corroborate it, and maps
the regime to a scenario text and directional bias.

``AuctionContextTracker`` adds the temporal hysteresis consumers apply so
the regime does not flicker between ticks.
"""

from __future__ import annotations

import logging

from microflow.core.enums import AuctionMode, Bias
from microflow.core.models import AuctionContext, Candle, ProfileMetrics

logger = logging.getLogger(__name__)

_MIN_CANDLES = 5
_FAILED_AUCTION_LOOKBACK = 5
_ROTATIONAL_EDGE_FRACTION = 0.10

_BASE_CONFIDENCE = 50.0
_INITIATIVE_BONUS = 25.0
_FAILED_AUCTION_BONUS = 30.0
_BALANCED_BONUS = 20.0
_BALANCED_DELTA_FRACTION = 0.10

_SCENARIOS: dict[AuctionMode, tuple[str, Bias]] = {
    AuctionMode.INITIATIVE_BUY: (
        "Acceptance above VA. Buyers chasing price. Target extension.",
        Bias.BULLISH,
    ),
    AuctionMode.INITIATIVE_SELL: (
        "Weakness below VA. Sellers aggressive. Target lower liquidity.",
        Bias.BEARISH,
    ),
    AuctionMode.FAILED_AUCTION_HIGH: (
        "Trap at highs. Buyers exhausted. Return to POC likely.",
        Bias.BEARISH,
    ),
    AuctionMode.FAILED_AUCTION_LOW: (
        "Trap at lows. Demand found. Return to value expected.",
        Bias.BULLISH,
    ),
    AuctionMode.BALANCED: (
        "Market in balance. Await reaction at extremes.",
        Bias.NEUTRAL,
    ),
}

_ROTATIONAL_ABOVE_POC = ("Testing VAH supply. Break or rotate to POC.", Bias.BULLISH)
_ROTATIONAL_BELOW_POC = ("Testing VAL demand. Break or rotate to POC.", Bias.BEARISH)

GATHERING_DATA = AuctionContext(
    mode=AuctionMode.BALANCED,
    confidence=0.0,
    scenario="Gathering data...",
    bias=Bias.NEUTRAL,
)


def _classify_mode(
    last_price: float,
    profile: ProfileMetrics,
    recent: list[Candle],
) -> AuctionMode:
    last = recent[-1]
    window = recent[-_FAILED_AUCTION_LOOKBACK:]
    recent_high = max(c.high for c in window)
    recent_low = min(c.low for c in window)

    if recent_high > profile.vah and last_price < profile.vah and last.close < last.open:
        return AuctionMode.FAILED_AUCTION_HIGH
    if recent_low < profile.val and last_price > profile.val and last.close > last.open:
        return AuctionMode.FAILED_AUCTION_LOW
    if last_price > profile.vah:
        return AuctionMode.INITIATIVE_BUY
    if last_price < profile.val:
        return AuctionMode.INITIATIVE_SELL

    edge = (profile.vah - profile.val) * _ROTATIONAL_EDGE_FRACTION
    if abs(last_price - profile.vah) < edge or abs(last_price - profile.val) < edge:
        return AuctionMode.ROTATIONAL
    return AuctionMode.BALANCED


def _score_confidence(
    mode: AuctionMode,
    last_price: float,
    vwap: float,
    last: Candle,
) -> float:
    delta = last.delta if last.delta is not None else last.raw_delta
    confidence = _BASE_CONFIDENCE

    if mode is AuctionMode.INITIATIVE_BUY and delta > 0 and last_price > vwap:
        confidence += _INITIATIVE_BONUS
    elif mode is AuctionMode.INITIATIVE_SELL and delta < 0 and last_price < vwap:
        confidence += _INITIATIVE_BONUS
    elif mode is AuctionMode.FAILED_AUCTION_HIGH and delta < 0:
        confidence += _FAILED_AUCTION_BONUS
    elif mode is AuctionMode.FAILED_AUCTION_LOW and delta > 0:
        confidence += _FAILED_AUCTION_BONUS
    elif mode is AuctionMode.BALANCED and abs(delta) < last.volume * _BALANCED_DELTA_FRACTION:
        confidence += _BALANCED_BONUS

    return min(100.0, max(0.0, confidence))


def calculate_auction_context(
    last_price: float,
    profile: ProfileMetrics,
    vwap: float,
    recent_candles: list[Candle],
) -> AuctionContext:
    """Classify the current auction regime.

    Args:
        last_price: Latest traded price.
        profile: Session volume profile.
        vwap: Session VWAP (callers fall back to ``last_price``).
        recent_candles: Most recent enriched candles, oldest first.

    Returns:
        AuctionContext. With fewer than five candles, a zero-confidence
        balanced context whose scenario is "Gathering data...".
    """
    if len(recent_candles) < _MIN_CANDLES:
        return GATHERING_DATA.model_copy()

    mode = _classify_mode(last_price, profile, recent_candles)
    confidence = _score_confidence(mode, last_price, vwap, recent_candles[-1])

    if mode is AuctionMode.ROTATIONAL:
        scenario, bias = (
            _ROTATIONAL_ABOVE_POC if last_price > profile.poc else _ROTATIONAL_BELOW_POC
        )
    else:
        scenario, bias = _SCENARIOS[mode]

    return AuctionContext(mode=mode, confidence=confidence, scenario=scenario, bias=bias)


class AuctionContextTracker:
    """Applies the stability rule to a stream of instant auction contexts.

    A change of mode is accepted only when ``stability_ms`` have passed
    since the last accepted change or the new context is confident
    enough on its own. While the mode is unchanged, confidence and
    scenario always refresh.
    """

    def __init__(
        self,
        stability_ms: int = 2000,
        override_confidence: float = 80.0,
    ) -> None:
        self._stability_ms = stability_ms
        self._override_confidence = override_confidence
        self._stable = AuctionContext()
        self._last_change_ms = 0

    @property
    def current(self) -> AuctionContext:
        return self._stable.model_copy()

    def update(self, instant: AuctionContext, now_ms: int) -> AuctionContext:
        """Fold an instant context in and return the stable one."""
        if instant.mode != self._stable.mode:
            elapsed = now_ms - self._last_change_ms
            if elapsed >= self._stability_ms or instant.confidence > self._override_confidence:
                logger.debug(
                    "Auction mode %s -> %s (confidence=%.0f, elapsed=%dms)",
                    self._stable.mode.value,
                    instant.mode.value,
                    instant.confidence,
                    elapsed,
                )
                self._stable = instant.model_copy()
                self._last_change_ms = now_ms
        else:
            self._stable = instant.model_copy()
        return self._stable.model_copy()
