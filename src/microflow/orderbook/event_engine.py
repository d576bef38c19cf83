"""Persistent order-book event state machine.

Turns per-snapshot level flags (iceberg, absorption, pull, large resting
stack) into zones of interest that persist across ticks, keyed by
(side, price). Each zone moves through a lifecycle::

    NEUTRAL -> STACK | ABSORPTION -> HOLDING -> WEAKENING -> FAIL | BROKEN

FAIL is the actionable signal: a mature, significant zone whose price was
breached with a high-confidence failure score. A breach that does not
qualify demotes the zone to BROKEN, which is never rendered. Repeated
FAILs in the same price area are suppressed by a per-bucket cooldown.

The thresholds below encode domain calibration; keep them named.
"""

from __future__ import annotations

import logging
import math
import random

from microflow.core.clock import IClock, WallClock
from microflow.core.enums import BookSide, EventState, EventType, PersistenceWindow
from microflow.core.models import EnrichedLevel, EventKey, PersistentEvent

logger = logging.getLogger(__name__)

# --- Detection ---
ABSORPTION_RATIO_THRESHOLD = 1.5
STACK_NOTIONAL_THRESHOLD = 150_000.0
STACK_MIN_AGE_SNAPSHOTS = 5
STRENGTH_ICE = 80.0
STRENGTH_ABSORPTION = 80.0
STRENGTH_PULL = 90.0
STRENGTH_STACK = 60.0
REINFORCE_STRENGTH_STEP = 2.0
MAX_STRENGTH = 100.0

# --- Failed pushes ---
FAILED_PUSH_MIN_AGE_MS = 60_000
FAILED_PUSH_GAP_MS = 10_000

# --- Lifecycle ---
ACTIVE_WINDOW_MS = 500
HOLDING_MIN_AGE_MS = 120_000
HOLDING_MIN_CONFIRMATIONS = 10
WEAKENING_VOLUME_FRACTION = 0.30
FAIL_FADE_MS = 120_000

# --- Failure detection ---
BREACH_TOLERANCE = 0.0003  # 0.03% of last price
FAIL_MIN_AGE_MS = 60_000
FAIL_CONFIDENCE_THRESHOLD = 70.0
FAIL_BUCKET_SIZE = 10.0  # Price units
FAIL_COOLDOWN_MS = 300_000
SIGNIFICANT_STATES = frozenset({
    EventState.STACK,
    EventState.ABSORPTION,
    EventState.HOLDING,
    EventState.WEAKENING,
})

# --- Retest ---
RETEST_MIN_AGE_MS = 60_000
RETEST_DISTANCE = 0.0005  # 0.05% of last price

# --- Decay & housekeeping ---
STRENGTH_FLOOR = 10.0
COOLDOWN_GC_PROBABILITY = 0.05

_MIN_DENOMINATOR = 0.0001


def calculate_fail_confidence(event: PersistentEvent, rem_drop: float, age_ms: int) -> float:
    """Score (0-100) how likely a breach is a genuine failed defence.

    Args:
        event: The breached event, in its pre-failure state.
        rem_drop: Fraction of peak resting volume gone before the breach.
        age_ms: Time since first detection.
    """
    score = 50.0

    if event.state is EventState.HOLDING:
        score += 20
    if event.type in (EventType.ABSORPTION, EventType.ICE):
        score += 15

    if age_ms > 300_000:
        score += 15
    elif age_ms < 120_000:
        score -= 10

    # A level pulled before the break failed; one chewed through was absorbed
    if rem_drop > 0.5:
        score += 25
    elif rem_drop < 0.1:
        score -= 20

    # First-touch breaks are usually momentum
    if event.failed_pushes > 2:
        score += 20
    elif event.failed_pushes == 0:
        score -= 15

    return min(100.0, max(0.0, score))


def _detect(level: EnrichedLevel) -> tuple[EventType, float] | None:
    """Classify a level into at most one event type, by priority."""
    if level.is_iceberg:
        return EventType.ICE, STRENGTH_ICE
    if level.absorption > ABSORPTION_RATIO_THRESHOLD:
        return EventType.ABSORPTION, STRENGTH_ABSORPTION
    if level.is_spoof:
        return EventType.PULL, STRENGTH_PULL
    if level.qty * level.price > STACK_NOTIONAL_THRESHOLD and level.age > STACK_MIN_AGE_SNAPSHOTS:
        return EventType.STACK, STRENGTH_STACK
    return None


class EventEngine:
    """Tracks persistent order-book events for one symbol.

    Usage::

        engine = EventEngine(window=PersistenceWindow.M30)
        events = engine.process(enriched_bids, enriched_asks, last_price)

    ``process`` is meant to run once per analytics tick (~100ms). To reset,
    build a new engine rather than clearing this one.
    """

    def __init__(
        self,
        window: PersistenceWindow = PersistenceWindow.M30,
        clock: IClock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._clock = clock or WallClock()
        self._rng = rng or random.Random()
        self._window = window
        self._events: dict[EventKey, PersistentEvent] = {}
        # Price bucket -> time (ms) until which FAILs are suppressed
        self._fail_cooldowns: dict[float, int] = {}

    # ------------------------------------------------------------------
    # Configuration & inspection
    # ------------------------------------------------------------------

    @property
    def window(self) -> PersistenceWindow:
        return self._window

    @property
    def window_ms(self) -> int:
        return self._window.minutes * 60_000

    def set_window(self, window: PersistenceWindow) -> None:
        self._window = window

    def events(self) -> list[PersistentEvent]:
        """Copies of every tracked event, BROKEN included."""
        return [e.model_copy() for e in self._events.values()]

    def cooldown_until(self, price: float) -> int | None:
        """When FAIL suppression ends for the bucket containing ``price``."""
        return self._fail_cooldowns.get(_fail_bucket(price))

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def process(
        self,
        bids: list[EnrichedLevel],
        asks: list[EnrichedLevel],
        last_price: float,
    ) -> list[PersistentEvent]:
        """Run one tick: detect, age, transition, decay.

        Returns:
            Copies of all tracked events except BROKEN ones.
        """
        now = self._clock.now_ms()
        window_ms = self.window_ms
        has_price = last_price > 0

        if has_price:
            self._process_levels(bids, BookSide.BID, now, last_price)
            self._process_levels(asks, BookSide.ASK, now, last_price)

        for key, event in list(self._events.items()):
            age = now - event.first_detected

            if self._is_expired(event, age, now, window_ms):
                logger.debug("Event %s expired in state %s", event.id, event.state.value)
                del self._events[key]
                continue

            event.is_active = (now - event.last_confirmed) < ACTIVE_WINDOW_MS
            self._advance_lifecycle(event, age)

            if has_price:
                self._check_failure(event, age, now, last_price)
                self._check_retest(event, age, last_price)

            if event.state is not EventState.FAIL:
                life_fraction = min(1.0, max(0.0, 1.0 - age / window_ms))
                event.strength = max(STRENGTH_FLOOR, event.reinforced_strength * life_fraction)

        if self._rng.random() < COOLDOWN_GC_PROBABILITY:
            self._purge_cooldowns(now)

        return [
            e.model_copy() for e in self._events.values()
            if e.state is not EventState.BROKEN
        ]

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def _process_levels(
        self,
        levels: list[EnrichedLevel],
        side: BookSide,
        now: int,
        last_price: float,
    ) -> None:
        for level in levels:
            detected = _detect(level)
            if detected is None:
                continue
            detected_type, strength = detected

            key = EventKey(side, level.price)
            existing = self._events.get(key)

            if existing is not None:
                self._reinforce(existing, detected_type, level, now)
                continue

            # Don't spawn zones the market has already traded through
            behind = last_price < level.price if side is BookSide.BID else last_price > level.price
            if behind:
                continue

            initial_state = (
                EventState.ABSORPTION
                if detected_type in (EventType.ABSORPTION, EventType.ICE)
                else EventState.STACK
            )
            self._events[key] = PersistentEvent(
                key=key,
                id=f"{side.value}-{level.price}",
                type=detected_type,
                price=level.price,
                side=side,
                state=initial_state,
                first_detected=now,
                last_confirmed=now,
                volume=level.qty,
                peak_volume=level.qty,
                strength=strength,
                reinforced_strength=strength,
                confirmations=1,
            )

    @staticmethod
    def _reinforce(
        event: PersistentEvent,
        detected_type: EventType,
        level: EnrichedLevel,
        now: int,
    ) -> None:
        if event.state in (EventState.FAIL, EventState.BROKEN):
            return

        # Revisiting an established level after a quiet spell
        if (
            now - event.first_detected > FAILED_PUSH_MIN_AGE_MS
            and now - event.last_confirmed > FAILED_PUSH_GAP_MS
        ):
            event.failed_pushes += 1

        event.last_confirmed = now
        event.confirmations += 1
        event.volume = level.qty
        event.peak_volume = max(event.peak_volume, level.qty)
        event.reinforced_strength = min(
            MAX_STRENGTH, event.reinforced_strength + REINFORCE_STRENGTH_STEP,
        )

        if detected_type is EventType.ICE and event.type is not EventType.ICE:
            event.type = EventType.ICE
            event.state = EventState.STACK

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @staticmethod
    def _is_expired(event: PersistentEvent, age: int, now: int, window_ms: int) -> bool:
        if event.state is EventState.FAIL:
            return now - (event.fail_time or 0) > FAIL_FADE_MS
        return age > window_ms

    @staticmethod
    def _advance_lifecycle(event: PersistentEvent, age: int) -> None:
        if (
            event.state in (EventState.STACK, EventState.ABSORPTION)
            and age > HOLDING_MIN_AGE_MS
            and event.confirmations > HOLDING_MIN_CONFIRMATIONS
        ):
            event.state = EventState.HOLDING

        if (
            event.is_active
            and event.state is EventState.HOLDING
            and event.volume < event.peak_volume * WEAKENING_VOLUME_FRACTION
        ):
            event.state = EventState.WEAKENING

    def _check_failure(
        self,
        event: PersistentEvent,
        age: int,
        now: int,
        last_price: float,
    ) -> None:
        if event.is_failed or event.state is EventState.BROKEN:
            return

        tolerance = last_price * BREACH_TOLERANCE
        if event.side is BookSide.BID:
            breached = last_price < event.price - tolerance
        else:
            breached = last_price > event.price + tolerance
        if not breached:
            return

        bucket = _fail_bucket(event.price)
        eligible = (
            event.state in SIGNIFICANT_STATES
            and age > FAIL_MIN_AGE_MS
            and now > self._fail_cooldowns.get(bucket, 0)
        )

        if eligible:
            rem_drop = 1.0 - event.volume / max(event.peak_volume, _MIN_DENOMINATOR)
            confidence = calculate_fail_confidence(event, rem_drop, age)
            if confidence >= FAIL_CONFIDENCE_THRESHOLD:
                event.state = EventState.FAIL
                event.type = EventType.FAIL
                event.is_failed = True
                event.fail_time = now
                event.fail_confidence = confidence
                event.rem_drop_ratio = rem_drop
                self._fail_cooldowns[bucket] = now + FAIL_COOLDOWN_MS
                logger.info(
                    "FAIL %s at %.2f (confidence=%.0f, rem_drop=%.2f, pushes=%d)",
                    event.id,
                    last_price,
                    confidence,
                    rem_drop,
                    event.failed_pushes,
                )
                return

        event.state = EventState.BROKEN
        event.is_failed = True
        logger.debug("Event %s broken at %.2f", event.id, last_price)

    @staticmethod
    def _check_retest(event: PersistentEvent, age: int, last_price: float) -> None:
        if event.is_active or event.is_failed or age <= RETEST_MIN_AGE_MS:
            return
        if abs(last_price - event.price) / last_price < RETEST_DISTANCE:
            event.is_retest = True

    def _purge_cooldowns(self, now: int) -> None:
        expired = [bucket for bucket, until in self._fail_cooldowns.items() if now > until]
        for bucket in expired:
            del self._fail_cooldowns[bucket]


def _fail_bucket(price: float) -> float:
    return math.floor(price / FAIL_BUCKET_SIZE) * FAIL_BUCKET_SIZE
