"""Enumerations used across the analytics engines."""

from enum import Enum


class BookSide(str, Enum):
    BID = "bid"
    ASK = "ask"


class Divergence(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"


class AuctionMode(str, Enum):
    BALANCED = "BALANCED"
    ROTATIONAL = "ROTATIONAL"
    INITIATIVE_BUY = "INITIATIVE_BUY"
    INITIATIVE_SELL = "INITIATIVE_SELL"
    FAILED_AUCTION_HIGH = "FAILED_AUCTION_HIGH"
    FAILED_AUCTION_LOW = "FAILED_AUCTION_LOW"


class Bias(str, Enum):
    NEUTRAL = "neutral"
    BULLISH = "bullish"
    BEARISH = "bearish"


class CVDState(str, Enum):
    NEUTRAL = "NEUTRAL"
    ACCUMULATION = "ACCUMULATION"  # Reserved, not produced by the heuristic
    DISTRIBUTION = "DISTRIBUTION"
    EXPANSION_UP = "EXPANSION_UP"
    EXPANSION_DOWN = "EXPANSION_DOWN"
    ABSORPTION = "ABSORPTION"


class EventType(str, Enum):
    ICE = "ICE"
    ABSORPTION = "ABSORPTION"
    STACK = "STACK"
    PULL = "PULL"
    FAIL = "FAIL"


class EventState(str, Enum):
    NEUTRAL = "NEUTRAL"
    STACK = "STACK"
    ABSORPTION = "ABSORPTION"
    HOLDING = "HOLDING"
    WEAKENING = "WEAKENING"
    FAIL = "FAIL"
    BROKEN = "BROKEN"


class PersistenceWindow(str, Enum):
    """How long a persistent event survives, measured from first detection."""

    M15 = "15"
    M30 = "30"
    M60 = "60"
    SESSION = "SESSION"

    @property
    def minutes(self) -> int:
        if self is PersistenceWindow.SESSION:
            return 480
        return int(self.value)


class NoiseFilterLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    AUTO = "AUTO"


class Playbook(str, Enum):
    SCALP = "SCALP"
    INTRADAY = "INTRADAY"
    SWING = "SWING"


class OrderBlockType(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"


class OrderBlockStatus(str, Enum):
    FRESH = "FRESH"
    TESTED = "TESTED"
    FAILING = "FAILING"


class ProfileShape(str, Enum):
    NORMAL_VARIATION = "NORMAL_VARIATION"
    TREND_BUY = "TREND_BUY"
    TREND_SELL = "TREND_SELL"
    BALANCED_COMPRESSED = "BALANCED_COMPRESSED"
    P_SHAPE = "P_SHAPE"  # Short covering
    B_SHAPE = "B_SHAPE"  # Long liquidation
    BALANCED_ROTATIONAL = "BALANCED_ROTATIONAL"


class ValueAcceptance(str, Enum):
    INSIDE_VALUE = "INSIDE_VALUE"
    ATTEMPTED_BREAK = "ATTEMPTED_BREAK"
    ACCEPTED_BREAK_UP = "ACCEPTED_BREAK_UP"
    ACCEPTED_BREAK_DOWN = "ACCEPTED_BREAK_DOWN"


class PocState(str, Enum):
    ACCEPTED = "ACCEPTED"
    MAGNET = "MAGNET"
    REJECTED = "REJECTED"


class DeltaState(str, Enum):
    BUYERS_DOMINANT = "BUYERS_DOMINANT"
    SELLERS_DOMINANT = "SELLERS_DOMINANT"
    ABSORBED_AT_ASK = "ABSORBED_AT_ASK"
    ABSORBED_AT_BID = "ABSORBED_AT_BID"
    NEUTRAL = "NEUTRAL"


class VolumeState(str, Enum):
    BELOW_AVERAGE = "BELOW_AVERAGE"
    NORMAL = "NORMAL"
    ELEVATED = "ELEVATED"
    EXTREME = "EXTREME"


class FlowState(str, Enum):
    """Short-horizon tape regime from trade rate, pressure and book imbalance."""

    QUIET = "QUIET"
    FLOW_BUILDING = "FLOW_BUILDING"
    AGGRESSIVE_INITIATION = "AGGRESSIVE_INITIATION"
    ABSORPTION = "ABSORPTION"
    TOXIC_FLOW = "TOXIC_FLOW"
    LIQUIDITY_VACUUM = "LIQUIDITY_VACUUM"
