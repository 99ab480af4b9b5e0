"""
Timeline: scenario scripts and the controller replaying them.
"""
from distrisim.timeline.controller import TimelineController
from distrisim.timeline.loader import get_scenario, load_scenario_file, load_scenarios, parse_scenarios
from distrisim.timeline.models import (
    HistoryEntry,
    Scenario,
    SimulationEvent,
    TimelineState,
    TimelineStatus,
)

__all__ = [
    "TimelineController",
    "get_scenario",
    "load_scenario_file",
    "load_scenarios",
    "parse_scenarios",
    "HistoryEntry",
    "Scenario",
    "SimulationEvent",
    "TimelineState",
    "TimelineStatus",
]
