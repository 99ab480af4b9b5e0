"""
Runtime pieces every protocol model is composed of.

A protocol owns exactly one ``SimulationContext``: a logical clock, a
narration log, a message pool and one or more participant registries.
"""
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from distrisim.core.clock import DEFAULT_TICK_MS, EventLog, LogicalClock, ProtocolEvent
from distrisim.core.message_pool import DeliveryHandler, DropPredicate, MessagePool, MessagePoolState
from distrisim.core.registry import ParticipantRegistry

logger = logging.getLogger(__name__)


@dataclass
class ProtocolSnapshot:
    """Full-value copy of a protocol's state at one point in time."""

    protocol: str
    clock_ms: int
    participants: Dict[str, Dict[str, Any]]
    messages: MessagePoolState
    events: List[ProtocolEvent]
    extra: Dict[str, Any] = field(default_factory=dict)


class SimulationContext:
    """Clock, log, pool and registries of one protocol instance."""

    def __init__(
        self,
        protocol: str,
        message_prefix: str = "msg",
        dispatch: Optional[DeliveryHandler] = None,
        should_drop: Optional[DropPredicate] = None,
        tick_ms: int = DEFAULT_TICK_MS,
    ):
        self.protocol = protocol
        self.clock = LogicalClock(tick_ms)
        self.log = EventLog(self.clock, protocol)
        self.messages = MessagePool(
            prefix=message_prefix,
            dispatch=dispatch,
            should_drop=should_drop,
            clock=self.clock,
        )
        self._registries: Dict[str, ParticipantRegistry] = {}

    def registry(self, name: str, factory: Callable[[], Iterable[Any]]) -> ParticipantRegistry:
        """Create a participant registry owned by this context."""
        registry = ParticipantRegistry(factory, name=f"{self.protocol}.{name}")
        self._registries[name] = registry
        return registry

    def send(self, from_id: str, to_id: str, type: str, payload: Optional[Dict[str, Any]] = None) -> str:
        return self.messages.send(from_id, to_id, type, payload)

    def record(self, type: str, description: str, **data) -> ProtocolEvent:
        return self.log.record(type, description, **data)

    def tick(self, ms: int = None) -> int:
        return self.clock.advance(ms)

    def reset(self):
        """Back to the state right after construction."""
        self.clock.reset()
        self.log.reset()
        self.messages.reset()
        for registry in self._registries.values():
            registry.reset()

    def snapshot(self, **extra) -> ProtocolSnapshot:
        return ProtocolSnapshot(
            protocol=self.protocol,
            clock_ms=self.clock.now,
            participants={name: r.snapshot() for name, r in self._registries.items()},
            messages=self.messages.snapshot(),
            events=self.log.snapshot(),
            extra=copy.deepcopy(extra),
        )

    def restore(self, snapshot: ProtocolSnapshot) -> Dict[str, Any]:
        """
        Re-apply a snapshot taken by ``snapshot``.

        Args:
            snapshot: Snapshot of this same protocol

        Returns:
            Deep copy of the protocol-specific extra state
        """
        if snapshot.protocol != self.protocol:
            logger.warning(
                f"Ignoring {snapshot.protocol} snapshot for {self.protocol} instance"
            )
            return {}
        self.clock.now = snapshot.clock_ms
        for name, state in snapshot.participants.items():
            registry = self._registries.get(name)
            if registry is not None:
                registry.restore(state)
        self.messages.restore(snapshot.messages)
        self.log.restore(snapshot.events)
        return copy.deepcopy(snapshot.extra)
