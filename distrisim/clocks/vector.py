"""
Vector clocks: causality tracking between processes.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from distrisim.core.context import ProtocolSnapshot, SimulationContext
from distrisim.core.layout import Position, row_layout
from distrisim.core.message_pool import Message, MessageStatus
from distrisim.core.participant import HealthStatus
from distrisim.core.stats import message_counts

logger = logging.getLogger(__name__)

VectorClock = Dict[str, int]


def happened_before(a: VectorClock, b: VectorClock) -> bool:
    """``a -> b``: every entry of a is <= b and at least one is smaller."""
    keys = set(a) | set(b)
    return all(a.get(k, 0) <= b.get(k, 0) for k in keys) and any(a.get(k, 0) < b.get(k, 0) for k in keys)


def concurrent(a: VectorClock, b: VectorClock) -> bool:
    return not happened_before(a, b) and not happened_before(b, a) and a != b


def format_clock(clock: VectorClock) -> str:
    return "[" + ", ".join(str(clock[k]) for k in sorted(clock)) + "]"


class CausalEventType(str, Enum):
    LOCAL = "local"
    SEND = "send"
    RECEIVE = "receive"


@dataclass
class CausalEvent:
    id: str
    process_id: str
    type: CausalEventType
    vector_clock: VectorClock
    description: str = ""
    related_event: Optional[str] = None


@dataclass
class VectorClockProcess:
    id: str
    position: Position
    status: HealthStatus = HealthStatus.HEALTHY
    vector_clock: VectorClock = field(default_factory=dict)
    events: List[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


class VectorClocksAlgorithm:
    """Processes ``P0..`` with one vector clock each."""

    name = "vector-clocks"

    def __init__(self, process_count: int = 3):
        self.process_count = process_count
        self.ctx = SimulationContext(
            self.name,
            message_prefix="vc",
            dispatch=self._dispatch,
            should_drop=self._is_undeliverable,
        )
        self.processes = self.ctx.registry("processes", self._initial_processes)
        self.events = self.ctx.registry("events", list)

    def _initial_processes(self) -> List[VectorClockProcess]:
        ids = [f"P{i}" for i in range(self.process_count)]
        positions = row_layout(self.process_count, y=300, start_x=150, spacing=250)
        return [
            VectorClockProcess(id=pid, position=positions[i], vector_clock={p: 0 for p in ids})
            for i, pid in enumerate(ids)
        ]

    def _new_event(self, process: VectorClockProcess, type: CausalEventType, description: str,
                   related_event: Optional[str] = None) -> CausalEvent:
        event = CausalEvent(
            id=f"event-{len(self.events)}",
            process_id=process.id,
            type=type,
            vector_clock=dict(process.vector_clock),
            description=description,
            related_event=related_event,
        )
        self.events.upsert(event)
        process.events.append(event.id)
        return event

    # Queries

    def get_processes(self) -> List[VectorClockProcess]:
        return self.processes.list()

    def get_all_events(self) -> List[CausalEvent]:
        return self.events.list()

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    # Events

    def local_event(self, process_id: str, description: str = "Local computation") -> Optional[CausalEvent]:
        process = self.processes.find(process_id)
        if process is None or not process.healthy:
            return None
        process.vector_clock[process_id] += 1
        event = self._new_event(process, CausalEventType.LOCAL, description)
        self.ctx.record(
            "local_event",
            f"{process_id}: {description} {format_clock(event.vector_clock)}",
            process_id=process_id,
            event_id=event.id,
            vector_clock=event.vector_clock,
        )
        return self.events.get(event.id)

    def send_message(self, from_id: str, to_id: str, message: str = "Message") -> Optional[CausalEvent]:
        """
        Record a send event on ``from_id`` and put the message in flight.

        Returns:
            The send event
        """
        sender = self.processes.find(from_id)
        recipient = self.processes.find(to_id)
        if sender is None or recipient is None or not sender.healthy or not recipient.healthy:
            return None

        sender.vector_clock[from_id] += 1
        event = self._new_event(sender, CausalEventType.SEND, message)
        self.ctx.send(from_id, to_id, "AppMessage", {
            "send_event_id": event.id,
            "vector_clock": event.vector_clock,
            "message": message,
        })
        self.ctx.record(
            "send_message",
            f"{from_id} -> {to_id}: {message} {format_clock(event.vector_clock)}",
            from_id=from_id,
            to_id=to_id,
            event_id=event.id,
            vector_clock=event.vector_clock,
        )
        return self.events.get(event.id)

    def receive_message(self, to_id: str, send_event_id: Optional[str] = None) -> Optional[CausalEvent]:
        """
        Deliver a message in flight to ``to_id``.

        Args:
            to_id: Receiving process
            send_event_id: Send event to receive; defaults to the most
                recent one addressed to ``to_id``
        """
        candidates = [
            m for m in self.ctx.messages.list_in_flight()
            if m.to_id == to_id and m.type == "AppMessage"
            and send_event_id in (None, m.payload["send_event_id"])
        ]
        if not candidates:
            return None
        message = candidates[-1]
        if self.ctx.messages.deliver(message.id) != MessageStatus.DELIVERED:
            return None
        send_event = self.events.find(message.payload["send_event_id"])
        return self.events.get(send_event.related_event)

    def _on_app_message(self, message: Message):
        process = self.processes.find(message.to_id)
        for pid, value in message.payload["vector_clock"].items():
            process.vector_clock[pid] = max(process.vector_clock.get(pid, 0), value)
        process.vector_clock[process.id] += 1

        send_event_id = message.payload["send_event_id"]
        event = self._new_event(process, CausalEventType.RECEIVE, message.payload["message"], related_event=send_event_id)
        send_event = self.events.find(send_event_id)
        if send_event is not None:
            send_event.related_event = event.id
        self.ctx.record(
            "receive_message",
            f"{process.id} <- received: {message.payload['message']} {format_clock(event.vector_clock)}",
            process_id=process.id,
            event_id=event.id,
            vector_clock=event.vector_clock,
            related_event=send_event_id,
        )

    # Causality

    def compare_events(self, event_a: str, event_b: str) -> str:
        """``before``, ``after``, ``concurrent`` or ``unknown``."""
        a = self.events.find(event_a)
        b = self.events.find(event_b)
        if a is None or b is None:
            return "unknown"
        if happened_before(a.vector_clock, b.vector_clock):
            return "before"
        if happened_before(b.vector_clock, a.vector_clock):
            return "after"
        return "concurrent"

    def causal_history(self, event_id: str) -> List[CausalEvent]:
        target = self.events.find(event_id)
        if target is None:
            return []
        return [self.events.get(e.id) for e in self.events if happened_before(e.vector_clock, target.vector_clock)]

    def concurrent_events(self, event_id: str) -> List[CausalEvent]:
        target = self.events.find(event_id)
        if target is None:
            return []
        return [
            self.events.get(e.id) for e in self.events
            if e.id != event_id and concurrent(e.vector_clock, target.vector_clock)
        ]

    # Faults

    def fail_process(self, process_id: str):
        process = self.processes.find(process_id)
        if process is None or not process.healthy:
            return
        process.status = HealthStatus.FAILED
        self.ctx.record("process_failed", f"{process_id} failed", process_id=process_id)

    def recover_process(self, process_id: str):
        process = self.processes.find(process_id)
        if process is None or process.healthy:
            return
        process.status = HealthStatus.HEALTHY
        self.ctx.record("process_recovered", f"{process_id} recovered", process_id=process_id)

    def _is_undeliverable(self, message: Message) -> bool:
        recipient = self.processes.find(message.to_id)
        return recipient is None or not recipient.healthy

    # Engine hooks

    def _dispatch(self, message: Message):
        if message.type == "AppMessage":
            self._on_app_message(message)

    def deliver(self, message_id: str) -> Optional[MessageStatus]:
        return self.ctx.messages.deliver(message_id)

    def deliver_all(self) -> int:
        return self.ctx.messages.deliver_all()

    def tick(self):
        self.ctx.tick()

    def reset(self):
        self.ctx.reset()

    def snapshot(self) -> ProtocolSnapshot:
        return self.ctx.snapshot()

    def restore(self, snapshot: ProtocolSnapshot):
        self.ctx.restore(snapshot)

    def get_stats(self) -> Dict[str, Any]:
        events = self.events.values()
        pairs = sum(
            1
            for i, a in enumerate(events)
            for b in events[i + 1:]
            if concurrent(a.vector_clock, b.vector_clock)
        )
        return {
            "total_events": len(events),
            "local_events": sum(1 for e in events if e.type == CausalEventType.LOCAL),
            "send_events": sum(1 for e in events if e.type == CausalEventType.SEND),
            "receive_events": sum(1 for e in events if e.type == CausalEventType.RECEIVE),
            "concurrent_pairs": pairs,
            "messages": message_counts(self.ctx.messages),
        }
