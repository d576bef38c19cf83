"""Candle-driven analytics: volume profile, order flow, auction and session context."""

from microflow.profile.auction import AuctionContextTracker, calculate_auction_context
from microflow.profile.order_blocks import find_order_blocks
from microflow.profile.order_flow import (
    calculate_rsi,
    calculate_session_levels,
    determine_cvd_state,
    enrich_candles_with_context,
)
from microflow.profile.session_context import classify_session
from microflow.profile.volume_profile import (
    calculate_profile,
    filter_session_candles,
    is_in_session,
)

__all__ = [
    "AuctionContextTracker",
    "calculate_auction_context",
    "calculate_profile",
    "calculate_rsi",
    "calculate_session_levels",
    "classify_session",
    "determine_cvd_state",
    "enrich_candles_with_context",
    "filter_session_candles",
    "find_order_blocks",
    "is_in_session",
]
