"""Order-book analytics: level enrichment, persistent events, smart grouping, flow state."""

from microflow.orderbook.event_engine import EventEngine, calculate_fail_confidence
from microflow.orderbook.flow_state import FlowStateEngine, classify_flow_state
from microflow.orderbook.level_analyzer import LevelAnalyzer, analyze_dom
from microflow.orderbook.smart_grouping import SmartGroupingEngine

__all__ = [
    "EventEngine",
    "FlowStateEngine",
    "LevelAnalyzer",
    "SmartGroupingEngine",
    "analyze_dom",
    "calculate_fail_confidence",
    "classify_flow_state",
]
