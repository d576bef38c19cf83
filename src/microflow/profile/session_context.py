"""Session read: what kind of day the profile describes.

Heuristics over the open, the close and the POC relative to the session
range, how many closes held outside value, and how much net aggression
the session carried. Complements the tick-level auction context with a
whole-session classification.
"""

from __future__ import annotations

from microflow.core.enums import (
    DeltaState,
    PocState,
    ProfileShape,
    ValueAcceptance,
    VolumeState,
)
from microflow.core.models import Candle, ProfileMetrics, SessionContext

# Profile shape, as fractions of the session range / last price
TREND_CLOSE_LOCATION = 0.9
TREND_MIN_RANGE = 0.01
COMPRESSED_MAX_RANGE = 0.005
P_SHAPE_POC_LOCATION = 0.65
B_SHAPE_POC_LOCATION = 0.35
ROTATIONAL_BAND = 0.15

# More closes than this beyond a value edge means the break was accepted
ACCEPTANCE_MIN_CLOSES = 8

POC_ACCEPTED_DISTANCE = 0.0005
POC_MAGNET_DISTANCE = 0.002

DOMINANT_DELTA_RATIO = 0.05

# Absolute session volume bands (base asset units)
EXTREME_VOLUME = 10_000_000
ELEVATED_VOLUME = 5_000_000
LOW_VOLUME = 1_000_000

_MIN_DENOMINATOR = 0.0001


def classify_session(candles: list[Candle], profile: ProfileMetrics) -> SessionContext | None:
    """Classify the session described by ``candles`` and their profile.

    ``candles`` should be enriched (``delta`` set); missing deltas count as
    zero. Returns None when there are no candles.
    """
    if not candles:
        return None

    session_open = candles[0].open
    last_price = candles[-1].close
    price_range = profile.session_high - profile.session_low

    if price_range > 0:
        close_loc = (last_price - profile.session_low) / price_range
        poc_loc = (profile.poc - profile.session_low) / price_range
    else:
        close_loc = poc_loc = 0.5

    net_delta = sum(c.delta or 0.0 for c in candles)
    total_volume = sum(c.volume for c in candles)
    delta_ratio = net_delta / total_volume if total_volume > 0 else 0.0

    return SessionContext(
        profile_shape=_profile_shape(close_loc, poc_loc, price_range, last_price, session_open),
        value_acceptance=_value_acceptance(candles, profile, last_price),
        poc_state=_poc_state(profile.poc, last_price),
        delta_state=_delta_state(delta_ratio, net_delta, last_price, session_open),
        volume_state=_volume_state(total_volume),
        delta_ratio=delta_ratio,
        close_location=close_loc,
    )


def _profile_shape(
    close_loc: float,
    poc_loc: float,
    price_range: float,
    last_price: float,
    session_open: float,
) -> ProfileShape:
    wide = price_range > last_price * TREND_MIN_RANGE
    if close_loc > TREND_CLOSE_LOCATION and last_price > session_open and wide:
        return ProfileShape.TREND_BUY
    if close_loc < 1 - TREND_CLOSE_LOCATION and last_price < session_open and wide:
        return ProfileShape.TREND_SELL
    if price_range < last_price * COMPRESSED_MAX_RANGE:
        return ProfileShape.BALANCED_COMPRESSED
    if poc_loc > P_SHAPE_POC_LOCATION and close_loc < 0.5:
        return ProfileShape.P_SHAPE
    if poc_loc < B_SHAPE_POC_LOCATION and close_loc > 0.5:
        return ProfileShape.B_SHAPE
    if abs(close_loc - 0.5) < ROTATIONAL_BAND:
        return ProfileShape.BALANCED_ROTATIONAL
    return ProfileShape.NORMAL_VARIATION


def _value_acceptance(
    candles: list[Candle], profile: ProfileMetrics, last_price: float,
) -> ValueAcceptance:
    if last_price > profile.vah:
        above = sum(1 for c in candles if c.close > profile.vah)
        if above > ACCEPTANCE_MIN_CLOSES:
            return ValueAcceptance.ACCEPTED_BREAK_UP
        return ValueAcceptance.ATTEMPTED_BREAK
    if last_price < profile.val:
        below = sum(1 for c in candles if c.close < profile.val)
        if below > ACCEPTANCE_MIN_CLOSES:
            return ValueAcceptance.ACCEPTED_BREAK_DOWN
        return ValueAcceptance.ATTEMPTED_BREAK
    return ValueAcceptance.INSIDE_VALUE


def _poc_state(poc: float, last_price: float) -> PocState:
    distance = abs(last_price - poc) / max(last_price, _MIN_DENOMINATOR)
    if distance < POC_ACCEPTED_DISTANCE:
        return PocState.ACCEPTED
    if distance < POC_MAGNET_DISTANCE:
        return PocState.MAGNET
    return PocState.REJECTED


def _delta_state(
    delta_ratio: float, net_delta: float, last_price: float, session_open: float,
) -> DeltaState:
    if delta_ratio > DOMINANT_DELTA_RATIO:
        return DeltaState.BUYERS_DOMINANT
    if delta_ratio < -DOMINANT_DELTA_RATIO:
        return DeltaState.SELLERS_DOMINANT
    # Net aggression that price did not follow
    if net_delta > 0 and last_price < session_open:
        return DeltaState.ABSORBED_AT_ASK
    if net_delta < 0 and last_price > session_open:
        return DeltaState.ABSORBED_AT_BID
    return DeltaState.NEUTRAL


def _volume_state(total_volume: float) -> VolumeState:
    if total_volume > EXTREME_VOLUME:
        return VolumeState.EXTREME
    if total_volume > ELEVATED_VOLUME:
        return VolumeState.ELEVATED
    if total_volume < LOW_VOLUME:
        return VolumeState.BELOW_AVERAGE
    return VolumeState.NORMAL
