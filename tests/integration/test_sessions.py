"""Integration: sessions wiring normalizer, analyzers and engines together."""

import asyncio

import pytest

from microflow.core.config import ProfileConfig, Settings
from microflow.core.enums import (
    AuctionMode,
    EventType,
    FlowState,
    PersistenceWindow,
    ValueAcceptance,
)
from microflow.observability.logger import get_symbol
from microflow.session import OrderFlowSession, ProfileSession



def _depth(bids, asks):
    return {
        "stream": "btcusdt@depth20@100ms",
        "data": {
            "b": [[str(p), str(q)] for p, q in bids],
            "a": [[str(p), str(q)] for p, q in asks],
        },
    }


def _agg_trade(price, qty, time, seller=True, agg_id=1):
    return {
        "stream": "btcusdt@aggTrade",
        "data": {"a": agg_id, "p": str(price), "q": str(qty), "T": time, "m": seller},
    }


BOOK = _depth(
    bids=[(50_000.0, 5.0), (49_990.0, 1.0)],
    asks=[(50_010.0, 1.0), (50_020.0, 1.0)],
)


class TestOrderFlowSession:
    def test_stack_persists_across_ticks(self, sim_clock):
        session = OrderFlowSession(Settings(), clock=sim_clock)
        for _ in range(8):
            assert session.on_message(BOOK)
            snapshot = session.tick()
            sim_clock.advance_ms(100)

        assert snapshot.last_price == 50_000.0
        assert snapshot.bids[0].age == 7
        [event] = snapshot.events
        assert event.type is EventType.STACK
        assert event.price == 50_000.0
        assert event.confirmations == 2

    def test_iceberg_from_trades(self, sim_clock):
        session = OrderFlowSession(Settings(), clock=sim_clock)
        session.on_message(BOOK)
        session.tick()

        sim_clock.advance_ms(100)
        session.on_message(_agg_trade(49_990.0, 0.4, sim_clock.now_ms()))
        session.on_message(BOOK)
        snapshot = session.tick()

        level = next(b for b in snapshot.bids if b.price == 49_990.0)
        assert level.is_iceberg
        assert any(e.type is EventType.ICE and e.price == 49_990.0 for e in snapshot.events)

    def test_old_trades_not_attributed(self, sim_clock):
        session = OrderFlowSession(Settings(), clock=sim_clock)
        session.on_message(_agg_trade(49_990.0, 0.4, sim_clock.now_ms()))
        sim_clock.advance_ms(2_000)
        session.on_message(BOOK)
        snapshot = session.tick()
        level = next(b for b in snapshot.bids if b.price == 49_990.0)
        assert level.trade_vol == 0.0

    def test_malformed_payload_dropped(self, sim_clock, caplog):
        session = OrderFlowSession(Settings(), clock=sim_clock)
        assert session.on_message({"stream": "btcusdt@aggTrade", "data": {"p": "x"}}) is False
        assert session.on_message({"garbage": True}) is False
        assert "malformed" in caplog.text.lower()
        assert session.trades == []

    def test_grouping_tick(self, sim_clock):
        session = OrderFlowSession(Settings(grouping={"adaptive": False}), clock=sim_clock)
        session.on_message(BOOK)
        sim_clock.advance_ms(10_000)
        session.on_message(_depth([(50_000.0, 9.0)], [(50_010.0, 1.0)]))
        sim_clock.advance_ms(10_000)

        zones = session.grouping_tick()
        assert zones.group_size == 5
        assert zones.timestamp == sim_clock.now_ms()
        assert all(z.is_significant for z in zones.zones)
        prices = [z.price_start for z in zones.zones]
        assert prices == sorted(prices, reverse=True)

    def test_custom_group_overrides_playbook(self, sim_clock):
        session = OrderFlowSession(
            Settings(grouping={"custom_group": 0, "playbook": "SWING"}), clock=sim_clock,
        )
        assert session.effective_group_size() == 0

    def test_set_window(self, sim_clock):
        session = OrderFlowSession(Settings(), clock=sim_clock)
        session.set_window(PersistenceWindow.M60)
        assert session.window is PersistenceWindow.M60

    def test_events_are_copies(self, sim_clock):
        session = OrderFlowSession(Settings(), clock=sim_clock)
        for _ in range(8):
            session.on_message(BOOK)
            session.tick()
            sim_clock.advance_ms(100)

        [event] = session.events()
        event.confirmations = 99
        assert session.events()[0].confirmations == 2
        assert session.cooldown_until(event.price) is None

    def test_bad_aggregate_id_dropped(self, sim_clock):
        session = OrderFlowSession(Settings(), clock=sim_clock)
        message = _agg_trade(100.0, 1.0, sim_clock.now_ms(), agg_id="x1")
        assert session.on_message(message) is False
        assert session.trades == []

    def test_flow_tick_reads_trades_and_book(self, sim_clock):
        session = OrderFlowSession(Settings(), clock=sim_clock)
        session.on_message(BOOK)
        for i in range(10):
            trade = _agg_trade(50_000.0, 0.001, sim_clock.now_ms(), seller=False, agg_id=i)
            session.on_message(trade)
        sim_clock.advance_ms(500)

        state = session.flow_tick()
        assert state.trades_per_second == pytest.approx(6.0)
        assert state.buy_pressure == pytest.approx(0.2)
        # Bids 5 + 1 against asks 1 + 1
        assert state.imbalance == pytest.approx(0.5)
        assert state.state is FlowState.QUIET

    def test_reset_discards_state(self, sim_clock):
        session = OrderFlowSession(Settings(), clock=sim_clock)
        for _ in range(8):
            session.on_message(BOOK)
            session.tick()
            sim_clock.advance_ms(100)
        assert session.events()

        session.reset(symbol="ETHUSDT")

        assert session.symbol == "ETHUSDT"
        assert session.events() == []
        assert session.flow_tick().trades_per_second == 0.0
        assert session.last_price == 0.0
        snapshot = session.tick()
        assert snapshot.events == []
        assert snapshot.bids == []

    @pytest.mark.asyncio
    async def test_run_ticks_until_stopped(self):
        session = OrderFlowSession(Settings())
        session.on_message(BOOK)
        snapshots = []
        groupings = []
        states = []
        symbols = set()

        async def on_snapshot(snapshot):
            snapshots.append(snapshot)
            symbols.add(get_symbol())

        async def on_zones(grouping):
            groupings.append(grouping)

        async def on_flow(state):
            states.append(state)

        stop = asyncio.Event()
        task = asyncio.create_task(session.run(stop, on_snapshot, on_zones, on_flow))
        await asyncio.sleep(0.45)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert len(snapshots) >= 2
        assert len(groupings) >= 1
        assert len(snapshots) > len(groupings)
        assert len(states) >= 1
        assert symbols == {"BTCUSDT"}

    @pytest.mark.asyncio
    async def test_run_survives_handler_errors(self):
        session = OrderFlowSession(Settings())
        calls = 0

        async def failing(snapshot):
            nonlocal calls
            calls += 1
            raise RuntimeError("boom")

        stop = asyncio.Event()
        task = asyncio.create_task(session.run(stop, on_snapshot=failing))
        await asyncio.sleep(0.35)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)
        assert calls >= 2


class TestProfileSession:
    def test_snapshot_from_candles(self, uptrend_candles, sim_clock):
        session = ProfileSession(ProfileConfig(tick_size=1.0), clock=sim_clock)
        snapshot = session.on_candles(uptrend_candles)

        assert snapshot.profile.val <= snapshot.profile.poc <= snapshot.profile.vah
        assert len(snapshot.candles) == len(uptrend_candles)
        assert snapshot.candles[-1].cvd is not None
        assert snapshot.session_levels.vwap == pytest.approx(snapshot.candles[-1].vwap)
        assert snapshot.auction.mode is AuctionMode.INITIATIVE_BUY
        assert snapshot.rsi == 100.0
        assert snapshot.session_context.value_acceptance is ValueAcceptance.ATTEMPTED_BREAK

    def test_empty_candles(self):
        snapshot = ProfileSession().on_candles([])
        assert snapshot.profile.total_volume == 0.0
        assert snapshot.auction.confidence == 0.0
        assert snapshot.session_context is None

    def test_session_filter_limits_profile(self, uptrend_candles, sim_clock):
        cfg = ProfileConfig(tick_size=1.0, session_start="00:00", session_end="00:10")
        snapshot = ProfileSession(cfg, clock=sim_clock).on_candles(uptrend_candles)
        expected = sum(c.volume for c in uptrend_candles[:10])
        assert snapshot.profile.total_volume == pytest.approx(expected)

    def test_long_term_uses_coarser_ticks(self, uptrend_candles, sim_clock):
        session = ProfileSession(ProfileConfig(tick_size=1.0), clock=sim_clock, long_term=True)
        assert session.tick_size == 10.0
        snapshot = session.on_candles(uptrend_candles)
        assert all(lvl.price % 10 == 0 for lvl in snapshot.profile.levels)

    def test_live_candle_replaces_forming_bar(self, uptrend_candles, sim_clock):
        session = ProfileSession(ProfileConfig(tick_size=1.0), clock=sim_clock)
        session.on_candles(uptrend_candles)
        forming = uptrend_candles[-1].model_copy(update={"close": 200.0, "high": 201.0})
        snapshot = session.on_candle(forming)
        assert len(snapshot.candles) == len(uptrend_candles)
        assert snapshot.candles[-1].close == 200.0

    def test_reset(self, uptrend_candles):
        session = ProfileSession(ProfileConfig(tick_size=1.0))
        session.on_candles(uptrend_candles)
        session.reset()
        assert session.latest.candles == []
