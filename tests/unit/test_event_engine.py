"""Test the persistent event state machine."""

import random

import pytest

from microflow.core.clock import SimClock
from microflow.core.enums import BookSide, EventState, EventType, PersistenceWindow
from microflow.core.models import EventKey, PersistentEvent
from microflow.orderbook.event_engine import (
    FAIL_COOLDOWN_MS,
    EventEngine,
    calculate_fail_confidence,
)

T0 = 1_704_067_200_000
SECOND = 1_000
MINUTE = 60 * SECOND

PRICE = 50_000.0
ABOVE = 50_100.0  # Last price that keeps a bid at PRICE defended
BREACH = 49_960.0  # More than 0.03% below PRICE
BELOW = 49_900.0  # Last price that keeps an ask at PRICE defended
ASK_BREACH = 50_040.0  # More than 0.03% above PRICE


class _AlwaysCollect(random.Random):
    def random(self) -> float:
        return 0.0


class _NeverCollect(random.Random):
    def random(self) -> float:
        return 0.99


@pytest.fixture
def clock() -> SimClock:
    return SimClock(start_ms=T0)


@pytest.fixture
def engine(clock) -> EventEngine:
    return EventEngine(window=PersistenceWindow.M30, clock=clock, rng=_NeverCollect())


def _stack(make_level, price=PRICE, qty=10.0, side=BookSide.BID):
    """A level large and old enough to register as a resting stack."""
    return make_level(price, qty, side=side, age=6)


def _build_holding(
    engine, clock, make_level, prices=(PRICE,), side=BookSide.BID, final_qty=4.0, **final_flags,
):
    """Drive levels at ``prices`` to HOLDING with four failed pushes.

    Ends 200s after first detection at volume ``final_qty`` against a peak
    of 10 (a 60% drop by default). Asks are defended from below.
    """
    defended = ABOVE if side is BookSide.BID else BELOW

    def feed(qty, **flags):
        levels = [make_level(p, qty, side=side, age=6, **flags) for p in prices]
        if side is BookSide.BID:
            engine.process(levels, [], defended)
        else:
            engine.process([], levels, defended)

    start = clock.now_ms()
    for t in range(0, 130, 5):
        clock.set_time(start + t * SECOND)
        feed(10.0)
    for t in (140, 160, 180):
        clock.set_time(start + t * SECOND)
        feed(10.0)
    clock.set_time(start + 200 * SECOND)
    feed(final_qty, **final_flags)


def _get(engine, price=PRICE, side=BookSide.BID) -> PersistentEvent:
    [event] = [e for e in engine.events() if e.key == EventKey(side, price)]
    return event


class TestDetection:
    def test_stack_requires_notional_and_age(self, engine, make_level):
        young = make_level(PRICE, 10.0, age=5)
        small = make_level(PRICE + 10, 1.0, age=10)
        assert engine.process([young, small], [], ABOVE) == []

    def test_stack_event_created(self, engine, make_level):
        [event] = engine.process([_stack(make_level)], [], ABOVE)
        assert event.type is EventType.STACK
        assert event.state is EventState.STACK
        assert event.key == EventKey(BookSide.BID, PRICE)
        assert event.id == f"bid-{PRICE}"
        assert event.strength == pytest.approx(60.0)
        assert event.confirmations == 1

    def test_detection_priority(self, engine, make_level):
        level = make_level(PRICE, 10.0, age=6, is_iceberg=True, absorption=3.0, is_spoof=True)
        [event] = engine.process([level], [], ABOVE)
        assert event.type is EventType.ICE
        assert event.state is EventState.ABSORPTION
        assert event.strength == pytest.approx(80.0)

    def test_absorption_ratio_threshold(self, engine, make_level):
        assert engine.process([make_level(PRICE, 1.0, absorption=1.5)], [], ABOVE) == []
        [event] = engine.process([make_level(PRICE, 1.0, absorption=1.6)], [], ABOVE)
        assert event.type is EventType.ABSORPTION

    def test_pull_event(self, engine, make_level):
        [event] = engine.process([], [make_level(50_200.0, 1.0, side=BookSide.ASK, is_spoof=True)], ABOVE)
        assert event.type is EventType.PULL
        assert event.state is EventState.STACK
        assert event.strength == pytest.approx(90.0)

    def test_no_event_behind_price(self, engine, make_level):
        bid_above_price = _stack(make_level, price=ABOVE + 50)
        ask_below_price = _stack(make_level, price=ABOVE - 50, side=BookSide.ASK)
        assert engine.process([bid_above_price], [ask_below_price], ABOVE) == []

    def test_no_detection_without_price(self, engine, make_level):
        assert engine.process([_stack(make_level)], [], 0.0) == []


class TestReinforcement:
    def test_scenario_stack_then_holding(self, engine, clock, make_level):
        for _ in range(3):
            events = engine.process([_stack(make_level)], [], ABOVE)
            clock.advance_ms(100)
        [event] = events
        assert event.state is EventState.STACK
        assert event.confirmations >= 3

        for _ in range(13):
            clock.advance_ms(10 * SECOND)
            [event] = engine.process([_stack(make_level)], [], ABOVE)
        assert event.confirmations > 10
        assert event.state is EventState.HOLDING

    def test_reinforce_tracks_volume_and_peak(self, engine, clock, make_level):
        engine.process([_stack(make_level, qty=10.0)], [], ABOVE)
        clock.advance_ms(100)
        [event] = engine.process([_stack(make_level, qty=4.0)], [], ABOVE)
        assert event.volume == 4.0
        assert event.peak_volume == 10.0
        assert event.reinforced_strength == pytest.approx(62.0)

    def test_strength_capped_at_100(self, engine, clock, make_level):
        for _ in range(30):
            engine.process([make_level(PRICE, 1.0, is_spoof=True)], [], ABOVE)
            clock.advance_ms(10)
        assert _get(engine).reinforced_strength == 100.0

    def test_ice_detection_promotes_type(self, engine, clock, make_level):
        engine.process([make_level(PRICE, 1.0, absorption=2.0)], [], ABOVE)
        clock.advance_ms(100)
        [event] = engine.process([make_level(PRICE, 1.0, is_iceberg=True)], [], ABOVE)
        assert event.type is EventType.ICE
        assert event.state is EventState.STACK

    def test_failed_push_counted_after_quiet_gap(self, engine, clock, make_level):
        engine.process([_stack(make_level)], [], ABOVE)
        clock.advance_ms(70 * SECOND)
        [event] = engine.process([_stack(make_level)], [], ABOVE)
        assert event.failed_pushes == 1

    def test_no_failed_push_when_continuously_confirmed(self, engine, clock, make_level):
        for _ in range(20):
            engine.process([_stack(make_level)], [], ABOVE)
            clock.advance_ms(5 * SECOND)
        assert _get(engine).failed_pushes == 0


class TestLifecycle:
    def test_active_flag(self, engine, clock, make_level):
        engine.process([_stack(make_level)], [], ABOVE)
        clock.advance_ms(600)
        [event] = engine.process([], [], ABOVE)
        assert event.is_active is False

    def test_weakening_when_volume_drops(self, engine, clock, make_level):
        for t in range(0, 130, 5):
            clock.set_time(T0 + t * SECOND)
            engine.process([_stack(make_level, qty=10.0)], [], ABOVE)
        assert _get(engine).state is EventState.HOLDING

        # Too small to be a stack any more, but still absorbing
        clock.advance_ms(100)
        [event] = engine.process([make_level(PRICE, 2.5, age=6, absorption=2.0)], [], ABOVE)
        assert event.volume == 2.5
        assert event.state is EventState.WEAKENING

    def test_expiry_after_window(self, clock, make_level):
        engine = EventEngine(window=PersistenceWindow.M15, clock=clock, rng=_NeverCollect())
        engine.process([_stack(make_level)], [], ABOVE)
        clock.advance_ms(15 * MINUTE)
        assert len(engine.process([], [], ABOVE)) == 1
        clock.advance_ms(1)
        assert engine.process([], [], ABOVE) == []
        assert engine.events() == []

    def test_set_window(self, engine):
        engine.set_window(PersistenceWindow.SESSION)
        assert engine.window_ms == 480 * MINUTE

    def test_decay_follows_remaining_life(self, engine, clock, make_level):
        engine.process([_stack(make_level)], [], ABOVE)
        clock.advance_ms(15 * MINUTE)
        [event] = engine.process([], [], ABOVE)
        assert event.strength == pytest.approx(30.0)

    def test_decay_floor(self, engine, clock, make_level):
        engine.process([_stack(make_level)], [], ABOVE)
        clock.advance_ms(29 * MINUTE)
        [event] = engine.process([], [], ABOVE)
        assert event.strength == pytest.approx(10.0)

    def test_retest_is_sticky(self, engine, clock, make_level):
        engine.process([_stack(make_level)], [], ABOVE)
        clock.advance_ms(61 * SECOND)
        [event] = engine.process([], [], PRICE + 10)
        assert event.is_retest
        clock.advance_ms(SECOND)
        [event] = engine.process([], [], PRICE + 500)
        assert event.is_retest

    def test_no_retest_when_young(self, engine, clock, make_level):
        engine.process([_stack(make_level)], [], ABOVE)
        clock.advance_ms(30 * SECOND)
        [event] = engine.process([], [], PRICE + 10)
        assert not event.is_retest


class TestFailure:
    def test_young_breach_becomes_broken(self, engine, clock, make_level):
        engine.process([_stack(make_level)], [], ABOVE)
        clock.advance_ms(30 * SECOND)
        assert engine.process([], [], BREACH) == []
        [event] = engine.events()
        assert event.state is EventState.BROKEN
        assert event.is_failed
        assert event.fail_time is None

    def test_breach_within_tolerance_is_ignored(self, engine, clock, make_level):
        engine.process([_stack(make_level)], [], ABOVE)
        clock.advance_ms(90 * SECOND)
        [event] = engine.process([], [], PRICE - 10)
        assert event.state is EventState.STACK

    def test_broken_is_immune_to_reinforcement(self, engine, clock, make_level):
        engine.process([_stack(make_level)], [], ABOVE)
        clock.advance_ms(SECOND)
        engine.process([], [], BREACH)
        clock.advance_ms(SECOND)
        assert engine.process([_stack(make_level)], [], ABOVE) == []
        assert _get(engine).confirmations == 1

    def test_scenario_holding_bid_fails(self, engine, clock, make_level):
        _build_holding(engine, clock, make_level)
        event = _get(engine)
        assert event.state is EventState.HOLDING
        assert event.failed_pushes > 2

        clock.set_time(T0 + 310 * SECOND)
        [failed] = engine.process([], [], BREACH)

        assert failed.state is EventState.FAIL
        assert failed.type is EventType.FAIL
        assert failed.is_failed
        assert failed.fail_time == T0 + 310 * SECOND
        assert failed.fail_confidence == 100.0
        assert failed.rem_drop_ratio == pytest.approx(0.6)
        assert engine.cooldown_until(PRICE) == T0 + 310 * SECOND + FAIL_COOLDOWN_MS

    def test_scenario_holding_ask_fails(self, engine, clock, make_level):
        _build_holding(engine, clock, make_level, side=BookSide.ASK)
        assert _get(engine, side=BookSide.ASK).state is EventState.HOLDING

        clock.set_time(T0 + 310 * SECOND)
        [failed] = engine.process([], [], ASK_BREACH)

        assert failed.side is BookSide.ASK
        assert failed.state is EventState.FAIL
        assert failed.fail_confidence == 100.0
        assert failed.rem_drop_ratio == pytest.approx(0.6)
        assert engine.cooldown_until(PRICE) == T0 + 310 * SECOND + FAIL_COOLDOWN_MS

    def test_ask_not_breached_below_price(self, engine, clock, make_level):
        _build_holding(engine, clock, make_level, side=BookSide.ASK)
        clock.set_time(T0 + 310 * SECOND)
        [event] = engine.process([], [], BREACH)
        assert event.state is EventState.HOLDING
        assert not event.is_failed

    def test_young_ask_breach_becomes_broken(self, engine, clock, make_level):
        engine.process([], [_stack(make_level, side=BookSide.ASK)], BELOW)
        clock.advance_ms(30 * SECOND)
        assert engine.process([], [], ASK_BREACH) == []
        event = _get(engine, side=BookSide.ASK)
        assert event.state is EventState.BROKEN
        assert event.fail_time is None

    def test_weakening_event_can_fail(self, engine, clock, make_level):
        _build_holding(engine, clock, make_level, final_qty=2.5, absorption=2.0)
        assert _get(engine).state is EventState.WEAKENING

        clock.set_time(T0 + 310 * SECOND)
        [failed] = engine.process([], [], BREACH)

        assert failed.state is EventState.FAIL
        assert failed.fail_confidence >= 70.0
        assert failed.rem_drop_ratio == pytest.approx(0.75)

    def test_fail_fades_after_two_minutes(self, engine, clock, make_level):
        _build_holding(engine, clock, make_level)
        clock.set_time(T0 + 310 * SECOND)
        engine.process([], [], BREACH)

        clock.advance_ms(120 * SECOND)
        assert len(engine.process([], [], BREACH)) == 1
        clock.advance_ms(1)
        assert engine.process([], [], BREACH) == []

    def test_fail_keeps_strength(self, engine, clock, make_level):
        _build_holding(engine, clock, make_level)
        clock.set_time(T0 + 310 * SECOND)
        [failed] = engine.process([], [], BREACH)
        clock.advance_ms(60 * SECOND)
        [later] = engine.process([], [], BREACH)
        assert later.strength == failed.strength

    def test_cooldown_blocks_second_fail_in_bucket(self, engine, clock, make_level):
        _build_holding(engine, clock, make_level, prices=(PRICE, PRICE + 5))
        clock.set_time(T0 + 310 * SECOND)
        events = engine.process([], [], BREACH)

        assert [e.state for e in events] == [EventState.FAIL]
        states = {e.price: e.state for e in engine.events()}
        assert states == {PRICE: EventState.FAIL, PRICE + 5: EventState.BROKEN}

    def test_other_bucket_can_fail(self, engine, clock, make_level):
        _build_holding(engine, clock, make_level, prices=(PRICE, PRICE + 20))
        clock.set_time(T0 + 310 * SECOND)
        events = engine.process([], [], BREACH)
        assert [e.state for e in events] == [EventState.FAIL, EventState.FAIL]

    def test_cooldowns_purged_when_collected(self, clock, make_level):
        engine = EventEngine(clock=clock, rng=_NeverCollect())
        _build_holding(engine, clock, make_level)
        clock.set_time(T0 + 310 * SECOND)
        engine.process([], [], BREACH)

        clock.advance_ms(FAIL_COOLDOWN_MS + 1)
        engine.process([], [], BREACH)
        assert engine.cooldown_until(PRICE) is not None

        engine._rng = _AlwaysCollect()
        engine.process([], [], BREACH)
        assert engine.cooldown_until(PRICE) is None


class TestFailConfidence:
    def _event(self, **kw) -> PersistentEvent:
        base = dict(
            key=EventKey(BookSide.BID, PRICE),
            id="bid-50000.0",
            type=EventType.STACK,
            price=PRICE,
            side=BookSide.BID,
            state=EventState.STACK,
            first_detected=T0,
            last_confirmed=T0,
        )
        base.update(kw)
        return PersistentEvent(**base)

    def test_base_case(self):
        # 50 - 15 (no pushes), mid-age, mid drop
        score = calculate_fail_confidence(self._event(), rem_drop=0.3, age_ms=3 * MINUTE)
        assert score == 35.0

    def test_best_case_clamped(self):
        event = self._event(state=EventState.HOLDING, type=EventType.ICE, failed_pushes=3)
        assert calculate_fail_confidence(event, rem_drop=0.9, age_ms=10 * MINUTE) == 100.0

    def test_worst_case_clamped(self):
        score = calculate_fail_confidence(self._event(), rem_drop=0.0, age_ms=MINUTE)
        assert score == 5.0

    def test_holding_bonus(self):
        holding = self._event(state=EventState.HOLDING, failed_pushes=1)
        stack = self._event(failed_pushes=1)
        diff = (
            calculate_fail_confidence(holding, 0.3, 3 * MINUTE)
            - calculate_fail_confidence(stack, 0.3, 3 * MINUTE)
        )
        assert diff == 20.0
