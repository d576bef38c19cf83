"""Per-symbol sessions that own and drive the analytics engines.

``ProfileSession`` recomputes candle analytics (profile, session levels,
auction and session context, CVD state, RSI, order blocks) whenever the
candle set changes. ``OrderFlowSession`` consumes book snapshots and trades, and
exposes three periodic ticks: order flow (level analysis + persistent
events, ~100ms), smart grouping (~200ms) and tape flow state (~500ms).

Both sessions reset by building fresh engine instances; nothing holds a
reference to the discarded ones.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from typing import Awaitable, Callable

from microflow.core.clock import IClock, WallClock
from microflow.core.config import AuctionConfig, ProfileConfig, Settings
from microflow.core.enums import PersistenceWindow
from microflow.core.errors import MalformedPayload
from microflow.core.models import (
    Candle,
    FlowStateSnapshot,
    GroupingSnapshot,
    OrderBookLevel,
    OrderFlowSnapshot,
    PersistentEvent,
    ProfileSnapshot,
    Trade,
)
from microflow.data.normalizer import parse_stream_message
from microflow.observability.logger import bind_symbol
from microflow.orderbook.event_engine import EventEngine
from microflow.orderbook.flow_state import FlowStateEngine
from microflow.orderbook.level_analyzer import LevelAnalyzer
from microflow.orderbook.smart_grouping import SmartGroupingEngine
from microflow.profile.auction import AuctionContextTracker, calculate_auction_context
from microflow.profile.order_blocks import find_order_blocks
from microflow.profile.order_flow import (
    calculate_rsi,
    calculate_session_levels,
    determine_cvd_state,
    enrich_candles_with_context,
)
from microflow.profile.session_context import classify_session
from microflow.profile.volume_profile import calculate_profile, filter_session_candles

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Candle analytics
# ---------------------------------------------------------------------------

class ProfileSession:
    """Candle buffer plus the derived profile/context snapshot."""

    def __init__(
        self,
        profile_config: ProfileConfig | None = None,
        auction_config: AuctionConfig | None = None,
        clock: IClock | None = None,
        long_term: bool = False,
    ) -> None:
        self._profile_cfg = profile_config or ProfileConfig()
        self._auction_cfg = auction_config or AuctionConfig()
        self._clock = clock or WallClock()
        self._long_term = long_term
        self._candles: list[Candle] = []
        self._tracker = self._new_tracker()
        self._latest = ProfileSnapshot()

    def _new_tracker(self) -> AuctionContextTracker:
        return AuctionContextTracker(
            stability_ms=self._auction_cfg.stability_ms,
            override_confidence=self._auction_cfg.override_confidence,
        )

    @property
    def latest(self) -> ProfileSnapshot:
        return self._latest.model_copy(deep=True)

    @property
    def tick_size(self) -> float:
        if self._long_term:
            return self._profile_cfg.tick_size * self._profile_cfg.long_term_tick_multiplier
        return self._profile_cfg.tick_size

    def reset(self) -> None:
        self._candles = []
        self._tracker = self._new_tracker()
        self._latest = ProfileSnapshot()

    def on_candles(self, candles: list[Candle]) -> ProfileSnapshot:
        """Replace the candle set and recompute."""
        self._candles = list(candles)
        return self._recompute()

    def on_candle(self, candle: Candle) -> ProfileSnapshot:
        """Apply a live kline update: replaces the forming candle or appends."""
        if self._candles and self._candles[-1].timestamp == candle.timestamp:
            self._candles[-1] = candle
        else:
            self._candles.append(candle)
        return self._recompute()

    def _recompute(self) -> ProfileSnapshot:
        candles = self._candles
        if not candles:
            self._latest = ProfileSnapshot()
            return self.latest

        cfg = self._profile_cfg
        target = candles
        if cfg.session_only and not self._long_term:
            target = filter_session_candles(candles, cfg.session_start, cfg.session_end)

        profile = calculate_profile(target, self.tick_size)
        enriched = enrich_candles_with_context(candles)
        levels = calculate_session_levels(enriched)

        last_price = enriched[-1].close
        instant = calculate_auction_context(
            last_price,
            profile,
            levels.vwap or last_price,
            enriched[-self._auction_cfg.recent_candles:],
        )
        auction = self._tracker.update(instant, self._clock.now_ms())

        self._latest = ProfileSnapshot(
            candles=enriched,
            profile=profile,
            session_levels=levels,
            auction=auction,
            cvd_state=determine_cvd_state(enriched),
            rsi=calculate_rsi(enriched),
            order_blocks=find_order_blocks(candles),
            session_context=classify_session(enriched, profile),
        )
        return self.latest


# ---------------------------------------------------------------------------
# Order flow
# ---------------------------------------------------------------------------

SnapshotHandler = Callable[[OrderFlowSnapshot], Awaitable[None]]
GroupingHandler = Callable[[GroupingSnapshot], Awaitable[None]]
FlowHandler = Callable[[FlowStateSnapshot], Awaitable[None]]


class OrderFlowSession:
    """Order book + trade analytics for one symbol.

    Usage::

        session = OrderFlowSession(settings)
        session.on_message(raw_combined_stream_message)
        snapshot = session.tick()
        zones = session.grouping_tick()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        clock: IClock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._clock = clock or WallClock()
        self._rng = rng
        self._build()

    def _build(self) -> None:
        flow = self._settings.order_flow
        self._analyzer = LevelAnalyzer()
        self._events = EventEngine(
            window=flow.persistence_window, clock=self._clock, rng=self._rng,
        )
        self._grouping = SmartGroupingEngine(clock=self._clock)
        self._flow = FlowStateEngine(clock=self._clock)
        self._trades: deque[Trade] = deque(maxlen=flow.trade_buffer_size)
        self._bids: list[OrderBookLevel] = []
        self._asks: list[OrderBookLevel] = []
        self._last_trade_price = 0.0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def symbol(self) -> str:
        return self._settings.symbol

    @property
    def window(self) -> PersistenceWindow:
        return self._events.window

    @property
    def volatility(self) -> float:
        return self._grouping.volatility

    def events(self) -> list[PersistentEvent]:
        """Copies of every tracked event, BROKEN included."""
        return self._events.events()

    def cooldown_until(self, price: float) -> int | None:
        return self._events.cooldown_until(price)

    @property
    def trades(self) -> list[Trade]:
        return [t.model_copy() for t in self._trades]

    @property
    def last_price(self) -> float:
        """Best bid, the price events are judged against."""
        return self._bids[0].price if self._bids else 0.0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def reset(self, symbol: str | None = None) -> None:
        """Discard all engine state, optionally switching symbol."""
        if symbol is not None:
            self._settings = self._settings.model_copy(update={"symbol": symbol})
        logger.info("Resetting order flow session for %s", self.symbol)
        self._build()

    def set_window(self, window: PersistenceWindow) -> None:
        self._events.set_window(window)

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def on_trade(self, trade: Trade) -> None:
        self._trades.append(trade)
        self._grouping.record_trade(trade)
        self._flow.record_trade(trade)
        self._last_trade_price = trade.price

    def on_depth(self, bids: list[OrderBookLevel], asks: list[OrderBookLevel]) -> None:
        self._bids = list(bids)
        self._asks = list(asks)
        self._grouping.record_book(self._bids)
        self._grouping.record_book(self._asks)
        self._flow.record_depth(self._bids, self._asks)

        price = self._last_trade_price or self.last_price
        if price > 0:
            self._grouping.update_volatility(price)

    def on_message(self, message: dict) -> bool:
        """Feed a combined-stream message. Malformed payloads are logged and dropped.

        Returns:
            True if the message was applied.
        """
        try:
            item = parse_stream_message(message)
        except MalformedPayload as exc:
            logger.warning("Dropping malformed payload for %s: %s", self.symbol, exc)
            return False

        if item is None:
            return False
        if isinstance(item, Trade):
            self.on_trade(item)
        else:
            bids, asks = item
            self.on_depth(bids, asks)
        return True

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def tick(self) -> OrderFlowSnapshot:
        """Level analysis followed by event processing, in that order."""
        now = self._clock.now_ms()
        window = self._settings.order_flow.trade_window_ms
        recent = [t for t in self._trades if now - t.time <= window]

        bids, asks = self._analyzer.analyze(self._bids, self._asks, recent)
        last_price = bids[0].price if bids else 0.0
        events = self._events.process(bids, asks, last_price)

        return OrderFlowSnapshot(
            timestamp=now,
            last_price=last_price,
            bids=bids,
            asks=asks,
            events=events,
        )

    def effective_group_size(self) -> float:
        cfg = self._settings.grouping
        if cfg.custom_group is not None:
            return cfg.custom_group
        base = cfg.active_playbook.base_group
        if cfg.adaptive:
            return self._grouping.get_adaptive_group_size(base)
        return base

    def grouping_tick(self) -> GroupingSnapshot:
        cfg = self._settings.grouping
        playbook = cfg.active_playbook
        group_size = self.effective_group_size()
        price = self._last_trade_price or self.last_price

        zones = self._grouping.aggregate_zones(
            self._grouping.raw_snapshot(),
            group_size,
            playbook.time_window_ms,
            cfg.noise_filter,
            price,
        )
        self._grouping.prune(playbook.time_window_ms)

        return GroupingSnapshot(
            timestamp=self._clock.now_ms(),
            group_size=group_size,
            volatility=self._grouping.volatility,
            zones=zones,
        )

    def flow_tick(self) -> FlowStateSnapshot:
        """Fold trades and depth seen since the last call into the flow state."""
        return self._flow.update()

    # ------------------------------------------------------------------
    # Periodic driver
    # ------------------------------------------------------------------

    async def run(
        self,
        stop: asyncio.Event,
        on_snapshot: SnapshotHandler | None = None,
        on_zones: GroupingHandler | None = None,
        on_flow: FlowHandler | None = None,
    ) -> None:
        """Run the order-flow, grouping and flow-state ticks until ``stop`` is set."""
        flow_interval = self._settings.order_flow.tick_interval_ms / 1000
        grouping_interval = self._settings.grouping.tick_interval_ms / 1000
        state_interval = self._settings.order_flow.flow_state_interval_ms / 1000

        bind_symbol(self.symbol)
        logger.info(
            "Order flow session started for %s (flow=%.0fms, grouping=%.0fms, state=%.0fms)",
            self.symbol,
            flow_interval * 1000,
            grouping_interval * 1000,
            state_interval * 1000,
        )
        await asyncio.gather(
            self._loop(stop, flow_interval, self.tick, on_snapshot),
            self._loop(stop, grouping_interval, self.grouping_tick, on_zones),
            self._loop(stop, state_interval, self.flow_tick, on_flow),
        )
        logger.info("Order flow session stopped for %s", self.symbol)

    async def _loop(self, stop: asyncio.Event, interval: float, work, handler) -> None:
        while not stop.is_set():
            try:
                result = work()
                if handler is not None:
                    await handler(result)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s tick failed for %s", work.__name__, self.symbol)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
