"""Data normalization from Binance futures payloads to canonical models.

Converts REST kline arrays, websocket kline events, ``aggTrade`` and
``depth20`` stream messages into :mod:`microflow.core.models` objects.
Exchange quirks (string-encoded numbers, positional arrays, combined
stream envelopes) stop here; engines never see raw payloads.

Every function raises :class:`MalformedPayload` when the payload cannot be
converted.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Union

from microflow.core.errors import MalformedPayload
from microflow.core.models import Candle, OrderBookLevel, Trade

logger = logging.getLogger(__name__)

# Binance kline array: [open_time, o, h, l, c, v, close_time, quote_v,
#                       trades, taker_buy_base_v, taker_buy_quote_v, ignore]
_IDX_TS = 0
_IDX_OPEN = 1
_IDX_HIGH = 2
_IDX_LOW = 3
_IDX_CLOSE = 4
_IDX_VOLUME = 5
_IDX_TAKER_BUY = 9

LARGE_TRADE_NOTIONAL = 10_000.0
_MIN_DEPTH_QTY = 0.0001

DepthUpdate = tuple[list[OrderBookLevel], list[OrderBookLevel]]
StreamItem = Union[Trade, DepthUpdate]


def _num(value: Any, field: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise MalformedPayload(f"{field}: expected a number, got {value!r}") from exc
    if not math.isfinite(number):
        raise MalformedPayload(f"{field}: expected a finite number, got {value!r}")
    return number


def _int(value: Any, field: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError) as exc:
        raise MalformedPayload(f"{field}: expected an integer, got {value!r}") from exc


# ---------------------------------------------------------------------------
# Klines -> Candle
# ---------------------------------------------------------------------------

def normalize_kline(raw: list | tuple, *, is_closed: bool = True) -> Candle:
    """Convert a REST kline array to a ``Candle``."""
    if not isinstance(raw, (list, tuple)) or len(raw) <= _IDX_TAKER_BUY:
        raise MalformedPayload(f"kline array too short: {raw!r}")

    return Candle(
        timestamp=_int(_num(raw[_IDX_TS], "open_time"), "open_time"),
        open=_num(raw[_IDX_OPEN], "open"),
        high=_num(raw[_IDX_HIGH], "high"),
        low=_num(raw[_IDX_LOW], "low"),
        close=_num(raw[_IDX_CLOSE], "close"),
        volume=_num(raw[_IDX_VOLUME], "volume"),
        taker_buy_volume=_num(raw[_IDX_TAKER_BUY], "taker_buy_volume"),
        is_closed=is_closed,
    )


def normalize_kline_batch(raw_list: list[list]) -> list[Candle]:
    """Convert a REST kline response; the last candle may still be forming."""
    return [normalize_kline(raw) for raw in raw_list]


def normalize_kline_event(message: dict) -> Candle:
    """Convert a websocket ``kline`` event (``{"e": "kline", "k": {...}}``)."""
    if not isinstance(message, dict) or message.get("e") != "kline":
        raise MalformedPayload("not a kline event")
    k = message.get("k")
    if not isinstance(k, dict):
        raise MalformedPayload("kline event missing 'k'")

    if "t" not in k:
        raise MalformedPayload("kline event missing open time")
    timestamp = _int(k["t"], "t")

    return Candle(
        timestamp=timestamp,
        open=_num(k.get("o"), "o"),
        high=_num(k.get("h"), "h"),
        low=_num(k.get("l"), "l"),
        close=_num(k.get("c"), "c"),
        volume=_num(k.get("v"), "v"),
        taker_buy_volume=_num(k.get("V"), "V"),
        is_closed=bool(k.get("x", False)),
    )


# ---------------------------------------------------------------------------
# aggTrade -> Trade
# ---------------------------------------------------------------------------

def normalize_agg_trade(data: dict) -> Trade:
    """Convert an ``aggTrade`` payload.

    Binance fields used: ``a`` (aggregate id), ``p`` price, ``q`` qty,
    ``T`` trade time, ``m`` buyer-is-maker.
    """
    if not isinstance(data, dict):
        raise MalformedPayload("aggTrade payload must be an object")

    price = _num(data.get("p"), "p")
    qty = _num(data.get("q"), "q")
    if "T" not in data:
        raise MalformedPayload("aggTrade missing trade time 'T'")
    time_ms = _int(data["T"], "T")
    agg_id = _int(data.get("a", 0), "a")

    return Trade(
        id=agg_id,
        price=price,
        qty=qty,
        time=time_ms,
        is_buyer_maker=bool(data.get("m", False)),
        is_large=price * qty > LARGE_TRADE_NOTIONAL,
    )


# ---------------------------------------------------------------------------
# depth20 -> order book levels
# ---------------------------------------------------------------------------

def _levels(raw_side: Any, field: str) -> list[OrderBookLevel]:
    if not isinstance(raw_side, list):
        raise MalformedPayload(f"depth '{field}' must be a list")
    levels: list[OrderBookLevel] = []
    for item in raw_side:
        if not isinstance(item, (list, tuple)) or len(item) < 2:
            raise MalformedPayload(f"depth '{field}' entry malformed: {item!r}")
        price = _num(item[0], f"{field}.price")
        qty = _num(item[1], f"{field}.qty")
        levels.append(OrderBookLevel(price=price, qty=qty, total=price * qty))
    return levels


def normalize_depth(data: dict) -> DepthUpdate:
    """Convert a partial-depth payload (``b``/``a`` arrays of [price, qty]).

    ``depth_ratio`` is each level's qty relative to the largest level on
    either side.
    """
    if not isinstance(data, dict):
        raise MalformedPayload("depth payload must be an object")

    bids = _levels(data.get("b"), "b")
    asks = _levels(data.get("a"), "a")

    global_max = max([_MIN_DEPTH_QTY] + [lvl.qty for lvl in bids] + [lvl.qty for lvl in asks])
    for lvl in bids:
        lvl.depth_ratio = lvl.qty / global_max
    for lvl in asks:
        lvl.depth_ratio = lvl.qty / global_max

    return bids, asks


# ---------------------------------------------------------------------------
# Combined stream envelope
# ---------------------------------------------------------------------------

def parse_stream_message(message: dict) -> StreamItem | None:
    """Route a combined-stream message (``{"stream": ..., "data": ...}``).

    Returns:
        A ``Trade`` for ``@aggTrade`` streams, ``(bids, asks)`` for
        ``@depth20`` streams, ``None`` for streams this module ignores.
    """
    if not isinstance(message, dict):
        raise MalformedPayload("stream message must be an object")
    stream = message.get("stream")
    data = message.get("data")
    if not isinstance(stream, str) or data is None:
        raise MalformedPayload("combined stream message missing 'stream' or 'data'")

    if stream.endswith("@aggTrade"):
        return normalize_agg_trade(data)
    if "@depth20" in stream:
        return normalize_depth(data)

    logger.debug("Ignoring stream %s", stream)
    return None
