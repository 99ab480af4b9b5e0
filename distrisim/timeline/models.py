"""
Timeline Data Models

Scenario scripts and playback state. Scenarios are loaded from JSON files
using the camelCase keys of the bundled scenario format.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class TimelineStatus(str, Enum):
    """Playback status of a timeline."""
    STOPPED = "stopped"
    PLAYING = "playing"
    PAUSED = "paused"
    COMPLETE = "complete"


class SimulationEvent(BaseModel):
    """One scripted action of a scenario."""
    id: int = Field(..., ge=0)
    timestamp: int = Field(..., ge=0, description="Logical time in milliseconds")
    type: str = Field(..., min_length=1)
    description: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)


class Scenario(BaseModel):
    """A named, ordered script of events for one protocol."""
    id: str
    name: str
    concept: str
    description: str = ""
    initial_state: Dict[str, Any] = Field(default_factory=dict, alias="initialState")
    events: List[SimulationEvent] = Field(default_factory=list)
    learning_objectives: List[str] = Field(default_factory=list, alias="learningObjectives")
    expected_outcome: str = Field(default="", alias="expectedOutcome")

    model_config = {"populate_by_name": True}

    @field_validator("events")
    @classmethod
    def events_must_be_ordered(cls, events: List[SimulationEvent]) -> List[SimulationEvent]:
        """Events must have unique, increasing ids and non-decreasing timestamps."""
        for previous, current in zip(events, events[1:]):
            if current.timestamp < previous.timestamp:
                raise ValueError(
                    f"event {current.id} at {current.timestamp}ms precedes event "
                    f"{previous.id} at {previous.timestamp}ms"
                )
            if current.id <= previous.id:
                raise ValueError(f"event ids must increase ({previous.id} -> {current.id})")
        return events

    @property
    def duration_ms(self) -> int:
        return self.events[-1].timestamp if self.events else 0

    def event_types(self) -> List[str]:
        return sorted({event.type for event in self.events})


@dataclass
class TimelineState:
    """Cursor, status and speed of a timeline."""
    cursor: int = 0
    status: TimelineStatus = TimelineStatus.STOPPED
    speed: float = 1.0
    total_events: int = 0
    history_size: int = 0

    @property
    def is_playing(self) -> bool:
        return self.status == TimelineStatus.PLAYING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cursor": self.cursor,
            "status": self.status.value,
            "speed": self.speed,
            "total_events": self.total_events,
            "history_size": self.history_size,
        }


@dataclass
class HistoryEntry:
    """State captured right before the event at ``cursor`` was applied."""
    cursor: int
    event_id: int
    snapshot: Optional[Any] = None
