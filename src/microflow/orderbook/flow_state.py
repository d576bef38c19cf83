"""Short-horizon flow state of the tape.

Counts trades, buy/sell volume and large prints between updates, smooths
them into a trade rate, a buy pressure and a toxicity score, reads the
top-of-book imbalance from the latest depth snapshot, and names the
current regime. The state's start time is kept so consumers can show how
long it has persisted.
"""

from __future__ import annotations

import logging

from microflow.core.clock import IClock, WallClock
from microflow.core.enums import FlowState
from microflow.core.models import FlowStateSnapshot, OrderBookLevel, Trade

logger = logging.getLogger(__name__)

# --- Smoothing (weight kept on the previous value) ---
TPS_SMOOTHING = 0.7
PRESSURE_DECAY = 0.8
TOXICITY_DECAY = 0.8

LARGE_ORDER_NOTIONAL = 10_000.0
TOXICITY_SCALE = 5.0  # A 20% share of large prints saturates toxicity
IMBALANCE_DEPTH = 5  # Levels per side
MIN_UPDATE_INTERVAL_MS = 100  # Shorter intervals keep accumulating

# --- Classification ---
TOXIC_THRESHOLD = 0.6
VACUUM_IMBALANCE = 0.65
VACUUM_MAX_TPS = 5.0
AGGRESSIVE_TPS = 25.0
AGGRESSIVE_PRESSURE = 0.4
BUILDING_TPS = 10.0


def classify_flow_state(
    toxicity: float,
    trades_per_second: float,
    buy_pressure: float,
    imbalance: float,
) -> FlowState:
    """Name the regime; the first matching rule wins."""
    if toxicity > TOXIC_THRESHOLD:
        return FlowState.TOXIC_FLOW
    if abs(imbalance) > VACUUM_IMBALANCE and trades_per_second < VACUUM_MAX_TPS:
        return FlowState.LIQUIDITY_VACUUM
    if trades_per_second > AGGRESSIVE_TPS:
        if abs(buy_pressure) > AGGRESSIVE_PRESSURE:
            return FlowState.AGGRESSIVE_INITIATION
        return FlowState.ABSORPTION
    if trades_per_second > BUILDING_TPS:
        return FlowState.FLOW_BUILDING
    return FlowState.QUIET


class FlowStateEngine:
    """Accumulates trades and depth between ``update`` calls."""

    def __init__(self, clock: IClock | None = None) -> None:
        self._clock = clock or WallClock()
        now = self._clock.now_ms()

        self._trade_count = 0
        self._large_count = 0
        self._buy_volume = 0.0
        self._sell_volume = 0.0

        self._tps = 0.0
        self._pressure = 0.0
        self._toxicity = 0.0
        self._imbalance = 0.0

        self._state = FlowState.QUIET
        self._state_since = now
        self._last_update = now

    @property
    def state(self) -> FlowState:
        return self._state

    def record_trade(self, trade: Trade) -> None:
        self._trade_count += 1
        if trade.price * trade.qty > LARGE_ORDER_NOTIONAL:
            self._large_count += 1
        # Buyer is maker: the aggressor sold
        if trade.is_buyer_maker:
            self._sell_volume += trade.qty
        else:
            self._buy_volume += trade.qty

    def record_depth(self, bids: list[OrderBookLevel], asks: list[OrderBookLevel]) -> None:
        bid_qty = sum(lvl.qty for lvl in bids[:IMBALANCE_DEPTH])
        ask_qty = sum(lvl.qty for lvl in asks[:IMBALANCE_DEPTH])
        total = bid_qty + ask_qty
        if total > 0:
            self._imbalance = (bid_qty - ask_qty) / total

    def update(self) -> FlowStateSnapshot:
        """Fold the counters accumulated since the last update and reclassify."""
        now = self._clock.now_ms()
        elapsed = now - self._last_update
        if elapsed < MIN_UPDATE_INTERVAL_MS:
            return self.snapshot()

        instant_tps = self._trade_count * 1000.0 / elapsed
        self._tps = self._tps * TPS_SMOOTHING + instant_tps * (1 - TPS_SMOOTHING)

        total_volume = self._buy_volume + self._sell_volume
        pressure = 0.0
        if total_volume > 0:
            pressure = (self._buy_volume - self._sell_volume) / total_volume
        self._pressure = self._pressure * PRESSURE_DECAY + pressure * (1 - PRESSURE_DECAY)

        toxicity = 0.0
        if self._trade_count > 0:
            toxicity = min(self._large_count / self._trade_count * TOXICITY_SCALE, 1.0)
        self._toxicity = self._toxicity * TOXICITY_DECAY + toxicity * (1 - TOXICITY_DECAY)

        self._trade_count = 0
        self._large_count = 0
        self._buy_volume = 0.0
        self._sell_volume = 0.0
        self._last_update = now

        # Toxicity reacts to the current interval, the rest to smoothed values
        state = classify_flow_state(toxicity, self._tps, self._pressure, self._imbalance)
        if state is not self._state:
            logger.debug(
                "Flow state %s -> %s after %dms",
                self._state.value,
                state.value,
                now - self._state_since,
            )
            self._state = state
            self._state_since = now

        return self.snapshot()

    def snapshot(self) -> FlowStateSnapshot:
        now = self._clock.now_ms()
        return FlowStateSnapshot(
            timestamp=now,
            state=self._state,
            state_since=self._state_since,
            state_duration_ms=now - self._state_since,
            trades_per_second=self._tps,
            buy_pressure=self._pressure,
            toxicity=self._toxicity,
            imbalance=self._imbalance,
        )
