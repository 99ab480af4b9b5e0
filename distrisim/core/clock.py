"""
Logical time and the per-protocol narration log.
"""
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

DEFAULT_TICK_MS = 100


class LogicalClock:
    """Simulated milliseconds, advanced only by ``tick``."""

    def __init__(self, tick_ms: int = DEFAULT_TICK_MS):
        self.tick_ms = tick_ms
        self.now = 0

    def advance(self, ms: int = None) -> int:
        self.now += self.tick_ms if ms is None else ms
        return self.now

    def __call__(self) -> int:
        return self.now

    def reset(self):
        self.now = 0


@dataclass
class ProtocolEvent:
    """Something a protocol did, kept for narration."""

    id: int
    timestamp: int
    type: str
    description: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "type": self.type,
            "description": self.description,
            "data": copy.deepcopy(self.data),
        }


class EventLog:
    """Append-only log of protocol events stamped with logical time."""

    def __init__(self, clock: LogicalClock, source: str = "protocol"):
        self._clock = clock
        self.source = source
        self._events: List[ProtocolEvent] = []

    def record(self, type: str, description: str, **data) -> ProtocolEvent:
        event = ProtocolEvent(
            id=len(self._events),
            timestamp=self._clock.now,
            type=type,
            description=description,
            data=data,
        )
        self._events.append(event)
        logger.debug(f"[{self.source}] {description}")
        return event

    def list(self) -> List[ProtocolEvent]:
        return [copy.deepcopy(e) for e in self._events]

    def last(self, count: int = 1) -> List[ProtocolEvent]:
        return [copy.deepcopy(e) for e in self._events[-count:]]

    def reset(self):
        self._events = []

    def snapshot(self) -> List[ProtocolEvent]:
        return copy.deepcopy(self._events)

    def restore(self, events: List[ProtocolEvent]):
        self._events = copy.deepcopy(events)

    def __len__(self) -> int:
        return len(self._events)
