"""Shared fixtures for the microflow test suite."""

from __future__ import annotations

import pytest

from microflow.core.clock import SimClock
from microflow.core.config import Settings
from microflow.core.enums import BookSide
from microflow.core.models import Candle, EnrichedLevel, OrderBookLevel, Trade

# 2024-01-01 00:00:00 UTC
T0 = 1_704_067_200_000
MINUTE = 60_000


# ---------------------------------------------------------------------------
# Clock & settings
# ---------------------------------------------------------------------------

@pytest.fixture
def sim_clock() -> SimClock:
    """Return a SimClock at 2024-01-01 00:00 UTC."""
    return SimClock(start_ms=T0)


@pytest.fixture
def settings() -> Settings:
    return Settings()


# ---------------------------------------------------------------------------
# Candles
# ---------------------------------------------------------------------------

def _candle(
    ts: int,
    open: float,
    high: float,
    low: float,
    close: float,
    volume: float = 100.0,
    taker_buy: float | None = None,
) -> Candle:
    return Candle(
        timestamp=ts,
        open=open,
        high=high,
        low=low,
        close=close,
        volume=volume,
        taker_buy_volume=volume / 2 if taker_buy is None else taker_buy,
    )


@pytest.fixture
def make_candle():
    """Factory: make_candle(ts, open, high, low, close, volume=100, taker_buy=vol/2)."""
    return _candle


@pytest.fixture
def uptrend_candles() -> list[Candle]:
    """Thirty one-minute candles drifting up with buyers in control."""
    candles = []
    price = 100.0
    for i in range(30):
        price += 0.5
        candles.append(_candle(
            T0 + i * MINUTE,
            open=price - 0.3,
            high=price + 0.4,
            low=price - 0.6,
            close=price,
            volume=100.0 + i,
            taker_buy=60.0 + i,
        ))
    return candles


# ---------------------------------------------------------------------------
# Order book
# ---------------------------------------------------------------------------

def _level(
    price: float,
    qty: float,
    side: BookSide = BookSide.BID,
    age: int = 0,
    **flags,
) -> EnrichedLevel:
    return EnrichedLevel(price=price, qty=qty, total=price * qty, type=side, age=age, **flags)


@pytest.fixture
def make_level():
    """Factory: make_level(price, qty, side=BID, age=0, **flags) -> EnrichedLevel."""
    return _level


@pytest.fixture
def make_book_level():
    def _book(price: float, qty: float) -> OrderBookLevel:
        return OrderBookLevel(price=price, qty=qty, total=price * qty)
    return _book


@pytest.fixture
def make_trade():
    def _trade(price: float, qty: float, time: int = T0, seller: bool = True) -> Trade:
        return Trade(price=price, qty=qty, time=time, is_buyer_maker=seller)
    return _trade
