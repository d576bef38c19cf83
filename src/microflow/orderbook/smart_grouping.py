"""Volatility-adaptive liquidity zones.

The engine accumulates, per exact price, how much liquidity was added,
removed and executed over time (:class:`ZoneRaw`). Every grouping tick
those raw entries are bucketed into zones whose width widens with recent
price volatility, and each zone gets a noise score separating structural
liquidity from algorithmic churn. Only zones below the noise threshold of
the selected filter level are returned.
"""

from __future__ import annotations

import logging
import math
from collections import deque

import numpy as np

from microflow.core.clock import IClock, WallClock
from microflow.core.enums import NoiseFilterLevel
from microflow.core.errors import ConfigError, InvalidGroupSize
from microflow.core.models import OrderBookLevel, SmartZone, Trade, ZoneRaw

logger = logging.getLogger(__name__)

VOLATILITY_WINDOW = 20
VOLATILITY_MIN_SAMPLES = 5

# (volatility above, minimum group size), checked in order
ADAPTIVE_STEPS: tuple[tuple[float, float], ...] = (
    (50.0, 100.0),
    (20.0, 50.0),
    (5.0, 10.0),
)

VOLUME_PERCENTILE = 0.8
DEFAULT_VOLUME_THRESHOLD = 1000.0

NOISE_BASE = 50.0
SHORT_LIFETIME_MS = 5_000
LONG_LIFETIME_MS = 60_000

NOISE_THRESHOLDS: dict[NoiseFilterLevel, float] = {
    NoiseFilterLevel.LOW: 80.0,
    NoiseFilterLevel.MEDIUM: 60.0,
    NoiseFilterLevel.HIGH: 40.0,
}
AUTO_HIGH_VOLATILITY = 20.0
AUTO_THRESHOLD_VOLATILE = 30.0
AUTO_THRESHOLD_CALM = 60.0


def _validate_group_size(group_size: float) -> None:
    if group_size < 0 or math.isnan(group_size):
        raise InvalidGroupSize(group_size)


def _bucket_key(price: float, group_size: float) -> float:
    if group_size == 0:
        return price
    return math.floor(price / group_size) * group_size


def dynamic_volume_threshold(zones: list[SmartZone]) -> float:
    """80th-percentile zone volume, 1000 when there is nothing to rank."""
    if not zones:
        return DEFAULT_VOLUME_THRESHOLD
    volumes = sorted(z.added + z.removed + z.executed for z in zones)
    value = volumes[int(len(volumes) * VOLUME_PERCENTILE)]
    return value or DEFAULT_VOLUME_THRESHOLD


def score_noise(
    zone: SmartZone,
    volume_threshold: float,
    last_price: float,
    group_size: float,
) -> tuple[float, float]:
    """Return ``(noise_score, impact_score)`` for an aggregated zone."""
    noise = NOISE_BASE
    impact = 0.0
    total = zone.added + zone.removed + zone.executed

    if total > volume_threshold * 2:
        noise -= 30
    elif total < volume_threshold * 0.2:
        noise += 30

    # Short-lived liquidity is usually algo jitter; long-lived is structural
    if zone.avg_lifetime < SHORT_LIFETIME_MS:
        noise += 40
    if zone.avg_lifetime > LONG_LIFETIME_MS:
        noise -= 20

    in_zone = abs(last_price - zone.price_start) < group_size

    if total > volume_threshold and in_zone:
        # Heavy activity while price is stuck: absorption
        noise -= 30
        impact = 100.0
    elif total > volume_threshold and not in_zone and zone.executed > 0:
        # Heavy activity and price moved on: initiation
        noise -= 20
    elif total < volume_threshold and not in_zone:
        noise += 10

    return min(100.0, max(0.0, noise)), impact


class SmartGroupingEngine:
    """Raw liquidity accounting plus adaptive zone aggregation for one book."""

    def __init__(self, clock: IClock | None = None) -> None:
        self._clock = clock or WallClock()
        self._recent_prices: deque[float] = deque(maxlen=VOLATILITY_WINDOW)
        self._volatility = 0.0
        self._raw: dict[float, ZoneRaw] = {}

    # ------------------------------------------------------------------
    # Volatility
    # ------------------------------------------------------------------

    @property
    def volatility(self) -> float:
        return self._volatility

    def update_volatility(self, price: float) -> float:
        """Feed the latest traded price; returns the new volatility."""
        self._recent_prices.append(price)
        if len(self._recent_prices) < VOLATILITY_MIN_SAMPLES:
            self._volatility = 0.0
        else:
            self._volatility = float(np.std(np.fromiter(self._recent_prices, dtype=float)))
        return self._volatility

    def get_adaptive_group_size(self, base_group: float) -> float:
        """Widen ``base_group`` in steps as volatility rises. Never shrinks it."""
        _validate_group_size(base_group)
        for vol_above, minimum in ADAPTIVE_STEPS:
            if self._volatility > vol_above:
                return max(base_group, minimum)
        return base_group

    # ------------------------------------------------------------------
    # Raw accumulation
    # ------------------------------------------------------------------

    def record_book(self, levels: list[OrderBookLevel]) -> None:
        """Account qty changes at every price of a book snapshot."""
        now = self._clock.now_ms()
        for level in levels:
            entry = self._raw.get(level.price)
            if entry is None:
                self._raw[level.price] = ZoneRaw(
                    price=level.price,
                    added=level.qty,
                    net=level.qty,
                    last_qty=level.qty,
                    first_seen=now,
                    last_update=now,
                )
                continue

            diff = level.qty - entry.last_qty
            if diff > 0:
                entry.added += diff
            elif diff < 0:
                entry.removed += -diff
            entry.last_qty = level.qty
            entry.last_update = now
            entry.net = entry.added - entry.removed

    def record_trade(self, trade: Trade) -> None:
        """Attribute an execution to the raw entry at its exact price, if any."""
        entry = self._raw.get(trade.price)
        if entry is None:
            return
        entry.executed += trade.qty
        entry.last_update = self._clock.now_ms()

    def prune(self, time_window_ms: int) -> int:
        """Drop raw entries not updated within the window. Returns the count."""
        cutoff = self._clock.now_ms() - time_window_ms
        stale = [price for price, raw in self._raw.items() if raw.last_update < cutoff]
        for price in stale:
            del self._raw[price]
        if stale:
            logger.debug("Pruned %d stale raw levels", len(stale))
        return len(stale)

    def raw_snapshot(self) -> dict[float, ZoneRaw]:
        return {price: raw.model_copy() for price, raw in self._raw.items()}

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def aggregate_zones(
        self,
        raw_map: dict[float, ZoneRaw],
        group_size: float,
        time_window_ms: int,
        noise_level: NoiseFilterLevel,
        last_price: float,
    ) -> list[SmartZone]:
        """Bucket raw entries into zones and keep the significant ones.

        Args:
            raw_map: Raw accounting keyed by exact price (not mutated).
            group_size: Bucket width in price units; 0 keeps exact prices.
            time_window_ms: Entries not updated within this window are ignored.
            noise_level: Filter strictness.
            last_price: Latest traded price, used for the price-action overlay.

        Returns:
            Significant zones, highest ``price_start`` first.

        Raises:
            InvalidGroupSize: ``group_size`` is negative.
            ConfigError: ``time_window_ms`` is not positive.
        """
        _validate_group_size(group_size)
        if time_window_ms <= 0:
            raise ConfigError(f"time window must be positive, got {time_window_ms}")

        now = self._clock.now_ms()
        valid_start = now - time_window_ms
        zones: dict[float, SmartZone] = {}

        for raw in raw_map.values():
            if raw.last_update < valid_start:
                continue

            key = _bucket_key(raw.price, group_size)
            zone = zones.get(key)
            if zone is None:
                zone = SmartZone(
                    id=f"z-{key}",
                    price_start=key,
                    price_end=key + group_size,
                    volatility=self._volatility,
                )
                zones[key] = zone

            zone.added += raw.added
            zone.removed += raw.removed
            zone.executed += raw.executed
            zone.net += raw.net
            zone.density += 1
            zone.last_update = max(zone.last_update, raw.last_update)
            # Oldest constituent stands for the zone's age
            zone.avg_lifetime = max(zone.avg_lifetime, now - raw.first_seen)

        threshold = dynamic_volume_threshold(list(zones.values()))
        noise_cutoff = self.noise_threshold(noise_level)

        significant: list[SmartZone] = []
        for zone in zones.values():
            zone.noise_score, zone.impact_score = score_noise(
                zone, threshold, last_price, group_size,
            )
            if zone.noise_score < noise_cutoff:
                zone.is_significant = True
                significant.append(zone)

        significant.sort(key=lambda z: z.price_start, reverse=True)
        return significant

    def noise_threshold(self, noise_level: NoiseFilterLevel) -> float:
        if noise_level is NoiseFilterLevel.AUTO:
            if self._volatility > AUTO_HIGH_VOLATILITY:
                return AUTO_THRESHOLD_VOLATILE
            return AUTO_THRESHOLD_CALM
        return NOISE_THRESHOLDS[noise_level]
