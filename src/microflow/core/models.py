"""Core domain models shared by every engine.

These are the canonical shapes the engines consume and produce. Exchange
payloads are converted into them by ``microflow.data.normalizer``; nothing
exchange-specific leaks past that point. Timestamps are integer
milliseconds since the Unix epoch (UTC).
"""

from __future__ import annotations

from typing import NamedTuple

from pydantic import BaseModel, Field

from .enums import (
    AuctionMode,
    Bias,
    BookSide,
    CVDState,
    DeltaState,
    Divergence,
    EventState,
    EventType,
    FlowState,
    OrderBlockStatus,
    OrderBlockType,
    PocState,
    ProfileShape,
    ValueAcceptance,
    VolumeState,
)


# ---------------------------------------------------------------------------
# Candles & volume profile
# ---------------------------------------------------------------------------

class Candle(BaseModel):
    """OHLCV candle with taker-buy volume and optional order-flow enrichment."""

    timestamp: int  # Candle open time (ms)
    open: float
    high: float
    low: float
    close: float
    volume: float
    taker_buy_volume: float = 0.0
    is_closed: bool = True

    # Filled by enrich_candles_with_context()
    delta: float | None = None
    cvd: float | None = None
    vwap: float | None = None
    vwap_std: float | None = None
    divergence: Divergence | None = None

    @property
    def raw_delta(self) -> float:
        """Aggressive buy volume minus aggressive sell volume."""
        return self.taker_buy_volume - (self.volume - self.taker_buy_volume)

    @property
    def typical_price(self) -> float:
        return (self.high + self.low + self.close) / 3.0


class ProfileLevel(BaseModel):
    price: float
    volume: float


class ProfileMetrics(BaseModel):
    """Volume-by-price histogram with point of control and value area."""

    levels: list[ProfileLevel] = Field(default_factory=list)
    poc: float = 0.0
    vah: float = 0.0
    val: float = 0.0
    total_volume: float = 0.0
    session_high: float = 0.0
    session_low: float = 0.0


class SessionLevels(BaseModel):
    ib_high: float | None = None  # Initial balance high
    ib_low: float | None = None
    vwap: float | None = None
    session_high: float = 0.0
    session_low: float = 0.0


class AuctionContext(BaseModel):
    mode: AuctionMode = AuctionMode.BALANCED
    confidence: float = 0.0  # 0-100
    scenario: str = ""
    bias: Bias = Bias.NEUTRAL


class SessionContext(BaseModel):
    """Read of the whole session: profile shape, value acceptance, POC, delta, volume."""

    profile_shape: ProfileShape = ProfileShape.NORMAL_VARIATION
    value_acceptance: ValueAcceptance = ValueAcceptance.INSIDE_VALUE
    poc_state: PocState = PocState.ACCEPTED
    delta_state: DeltaState = DeltaState.NEUTRAL
    volume_state: VolumeState = VolumeState.NORMAL
    delta_ratio: float = 0.0  # Net delta / total volume
    close_location: float = 0.5  # 0 = session low, 1 = session high


class OrderBlock(BaseModel):
    id: str
    type: OrderBlockType
    top: float
    bottom: float
    start: int  # Timestamp of the originating candle
    mitigated: bool = False
    strength: float  # 0-100
    status: OrderBlockStatus = OrderBlockStatus.FRESH


# ---------------------------------------------------------------------------
# Trades & order book
# ---------------------------------------------------------------------------

class Trade(BaseModel):
    id: int = 0
    price: float
    qty: float
    time: int
    is_buyer_maker: bool  # True = aggressive seller
    is_large: bool = False


class OrderBookLevel(BaseModel):
    price: float
    qty: float
    total: float = 0.0  # Quote notional at this level
    depth_ratio: float = 0.0  # 0..1 relative to the largest level in the snapshot


class EnrichedLevel(OrderBookLevel):
    """Order-book level compared against the previous snapshot."""

    type: BookSide
    cumulative_qty: float = 0.0
    delta_qty: float = 0.0
    trade_vol: float = 0.0
    absorption: float = 0.0
    is_iceberg: bool = False
    iceberg_vol: float = 0.0
    is_spoof: bool = False
    age: int = 0  # Consecutive snapshots this price has persisted


# ---------------------------------------------------------------------------
# Persistent events
# ---------------------------------------------------------------------------

class EventKey(NamedTuple):
    """Identity of a persistent event: one per (side, price) bucket."""

    side: BookSide
    price: float


class PersistentEvent(BaseModel):
    """A zone of interest tracked across ticks by the EventEngine."""

    key: EventKey
    id: str  # Display label derived from key
    type: EventType
    price: float
    side: BookSide

    state: EventState = EventState.NEUTRAL

    first_detected: int
    last_confirmed: int
    fail_time: int | None = None

    volume: float = 0.0
    peak_volume: float = 0.0
    strength: float = 0.0  # 0-100, after decay
    reinforced_strength: float = 0.0  # 0-100, before decay
    confirmations: int = 0
    failed_pushes: int = 0

    fail_confidence: float = 0.0
    rem_drop_ratio: float | None = None

    is_active: bool = True
    is_retest: bool = False
    is_failed: bool = False


# ---------------------------------------------------------------------------
# Smart grouping
# ---------------------------------------------------------------------------

class ZoneRaw(BaseModel):
    """Per-price liquidity accounting accumulated from book snapshots."""

    price: float
    added: float = 0.0
    removed: float = 0.0
    executed: float = 0.0
    net: float = 0.0
    last_qty: float = 0.0
    first_seen: int
    last_update: int


class SmartZone(BaseModel):
    id: str
    price_start: float
    price_end: float
    added: float = 0.0
    removed: float = 0.0
    executed: float = 0.0
    net: float = 0.0
    density: int = 0  # Number of raw prices in the bucket
    avg_lifetime: int = 0  # Max (not mean) lifetime of constituents, ms
    last_update: int = 0
    noise_score: float = 0.0  # 0 = signal, 100 = noise
    impact_score: float = 0.0
    is_significant: bool = False
    volatility: float = 0.0


# ---------------------------------------------------------------------------
# Session snapshots
# ---------------------------------------------------------------------------

class ProfileSnapshot(BaseModel):
    """Everything derived from a candle set in one recomputation."""

    candles: list[Candle] = Field(default_factory=list)
    profile: ProfileMetrics = Field(default_factory=ProfileMetrics)
    session_levels: SessionLevels = Field(default_factory=SessionLevels)
    auction: AuctionContext = Field(default_factory=AuctionContext)
    cvd_state: CVDState = CVDState.NEUTRAL
    rsi: float = 50.0
    order_blocks: list[OrderBlock] = Field(default_factory=list)
    session_context: SessionContext | None = None


class OrderFlowSnapshot(BaseModel):
    timestamp: int
    last_price: float
    bids: list[EnrichedLevel] = Field(default_factory=list)
    asks: list[EnrichedLevel] = Field(default_factory=list)
    events: list[PersistentEvent] = Field(default_factory=list)


class GroupingSnapshot(BaseModel):
    timestamp: int
    group_size: float
    volatility: float
    zones: list[SmartZone] = Field(default_factory=list)


class FlowStateSnapshot(BaseModel):
    timestamp: int
    state: FlowState = FlowState.QUIET
    state_since: int = 0
    state_duration_ms: int = 0
    trades_per_second: float = 0.0  # Smoothed
    buy_pressure: float = 0.0  # -1 (sellers) to 1 (buyers), decayed
    toxicity: float = 0.0  # 0-1, decayed share of large prints
    imbalance: float = 0.0  # -1 (asks) to 1 (bids), top of book
