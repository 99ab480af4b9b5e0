"""
Lamport logical clocks and totally ordered broadcast.

Every broadcast is stamped with the sender's clock and kept in each
process's hold-back queue until every process has acknowledged it. The head
of the queue, ordered by (timestamp, sender), is then delivered, so all
processes deliver broadcasts in the same order (given FIFO channels).
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from distrisim.core.context import ProtocolSnapshot, SimulationContext
from distrisim.core.layout import Position, circle_position
from distrisim.core.message_pool import Message, MessageStatus
from distrisim.core.participant import HealthStatus
from distrisim.core.stats import message_counts

logger = logging.getLogger(__name__)


@dataclass
class HoldbackMessage:
    id: str
    from_id: str
    timestamp: int
    value: Any
    acks: List[str] = field(default_factory=list)

    @property
    def order_key(self):
        return (self.timestamp, self.from_id)


@dataclass
class LamportProcess:
    id: str
    position: Position
    status: HealthStatus = HealthStatus.HEALTHY
    clock: int = 0
    holdback: List[HoldbackMessage] = field(default_factory=list)
    delivered: List[HoldbackMessage] = field(default_factory=list)
    early_acks: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def find_holdback(self, broadcast_id: str) -> Optional[HoldbackMessage]:
        for entry in self.holdback:
            if entry.id == broadcast_id:
                return entry
        return None


class LamportClocksAlgorithm:
    """Processes ``P0..`` exchanging totally ordered broadcasts."""

    name = "lamport-clocks"

    def __init__(self, node_count: int = 3):
        self.node_count = node_count
        self.ctx = SimulationContext(
            self.name,
            message_prefix="lc",
            dispatch=self._dispatch,
            should_drop=self._is_undeliverable,
        )
        self.nodes = self.ctx.registry("nodes", self._initial_nodes)
        self.broadcast_counter = 0

    def _initial_nodes(self) -> List[LamportProcess]:
        return [
            LamportProcess(id=f"P{i}", position=circle_position(i, self.node_count, radius=190))
            for i in range(self.node_count)
        ]

    # Queries

    def get_nodes(self) -> List[LamportProcess]:
        return self.nodes.list()

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    def delivery_order(self, node_id: str) -> List[Any]:
        node = self.nodes.find(node_id)
        return [] if node is None else [m.value for m in node.delivered]

    # Events

    def local_event(self, node_id: str, description: str = "local event"):
        node = self.nodes.find(node_id)
        if node is None or not node.healthy:
            return
        node.clock += 1
        self.ctx.record(
            "local_event",
            f"{node_id} {description} (clock={node.clock})",
            node_id=node_id,
            clock=node.clock,
        )

    def broadcast(self, from_id: str, value: Any) -> Optional[str]:
        """
        Totally ordered broadcast of ``value``.

        Returns:
            The broadcast id (``b-N``)
        """
        node = self.nodes.find(from_id)
        if node is None or not node.healthy:
            return None

        node.clock += 1
        broadcast_id = f"b-{self.broadcast_counter}"
        self.broadcast_counter += 1
        entry = HoldbackMessage(id=broadcast_id, from_id=from_id, timestamp=node.clock, value=value, acks=[from_id])
        self._absorb_early_acks(node, entry)
        node.holdback.append(entry)
        self.ctx.record(
            "broadcast",
            f"{from_id} broadcasts {value!r} (t={entry.timestamp})",
            from_id=from_id,
            broadcast_id=broadcast_id,
            timestamp=entry.timestamp,
            value=value,
        )

        for peer in self.nodes:
            if peer.id != from_id and peer.healthy:
                self.ctx.send(from_id, peer.id, "Broadcast", {
                    "broadcast_id": broadcast_id,
                    "value": value,
                    "timestamp": entry.timestamp,
                })
        self._send_acks(node, broadcast_id)
        self._try_deliver(node)
        return broadcast_id

    def _send_acks(self, node: LamportProcess, broadcast_id: str):
        node.clock += 1
        for peer in self.nodes:
            if peer.id != node.id and peer.healthy:
                self.ctx.send(node.id, peer.id, "Ack", {"broadcast_id": broadcast_id, "timestamp": node.clock})

    @staticmethod
    def _absorb_early_acks(node: LamportProcess, entry: HoldbackMessage):
        for ack_from in node.early_acks.pop(entry.id, []):
            if ack_from not in entry.acks:
                entry.acks.append(ack_from)

    def _on_broadcast(self, message: Message):
        node = self.nodes.find(message.to_id)
        payload = message.payload
        node.clock = max(node.clock, payload["timestamp"]) + 1

        entry = node.find_holdback(payload["broadcast_id"])
        if entry is None:
            entry = HoldbackMessage(
                id=payload["broadcast_id"],
                from_id=message.from_id,
                timestamp=payload["timestamp"],
                value=payload["value"],
            )
            self._absorb_early_acks(node, entry)
            node.holdback.append(entry)
        for acker in (message.from_id, node.id):
            if acker not in entry.acks:
                entry.acks.append(acker)

        self.ctx.record(
            "broadcast_recv",
            f"{node.id} receives {payload['value']!r}",
            to_id=node.id,
            from_id=message.from_id,
            broadcast_id=entry.id,
        )
        self._send_acks(node, entry.id)
        self._try_deliver(node)

    def _on_ack(self, message: Message):
        node = self.nodes.find(message.to_id)
        broadcast_id = message.payload["broadcast_id"]
        node.clock = max(node.clock, message.payload["timestamp"]) + 1

        entry = node.find_holdback(broadcast_id)
        if entry is not None:
            if message.from_id not in entry.acks:
                entry.acks.append(message.from_id)
        elif broadcast_id not in [d.id for d in node.delivered]:
            pending = node.early_acks.setdefault(broadcast_id, [])
            if message.from_id not in pending:
                pending.append(message.from_id)

        self.ctx.record(
            "ack_recv",
            f"{node.id} receives ack for {broadcast_id} from {message.from_id}",
            to_id=node.id,
            from_id=message.from_id,
            broadcast_id=broadcast_id,
        )
        self._try_deliver(node)

    def _try_deliver(self, node: LamportProcess):
        total = len(self.nodes)
        while node.holdback:
            head = min(node.holdback, key=lambda m: m.order_key)
            if len(head.acks) < total:
                return
            node.holdback.remove(head)
            node.delivered.append(head)
            self.ctx.record(
                "deliver",
                f"{node.id} delivers {head.value!r}",
                node_id=node.id,
                broadcast_id=head.id,
            )

    # Faults

    def fail_node(self, node_id: str):
        node = self.nodes.find(node_id)
        if node is None or not node.healthy:
            return
        node.status = HealthStatus.FAILED
        self.ctx.record("node_failed", f"{node_id} failed", node_id=node_id)

    def recover_node(self, node_id: str):
        node = self.nodes.find(node_id)
        if node is None or node.healthy:
            return
        node.status = HealthStatus.HEALTHY
        self.ctx.record("node_recovered", f"{node_id} recovered", node_id=node_id)

    def _is_undeliverable(self, message: Message) -> bool:
        sender = self.nodes.find(message.from_id)
        recipient = self.nodes.find(message.to_id)
        return sender is None or recipient is None or not sender.healthy or not recipient.healthy

    # Engine hooks

    def _dispatch(self, message: Message):
        if message.type == "Broadcast":
            self._on_broadcast(message)
        elif message.type == "Ack":
            self._on_ack(message)

    def deliver(self, message_id: str) -> Optional[MessageStatus]:
        return self.ctx.messages.deliver(message_id)

    def deliver_all(self) -> int:
        return self.ctx.messages.deliver_all()

    def tick(self):
        self.ctx.tick()

    def reset(self):
        self.ctx.reset()
        self.broadcast_counter = 0

    def snapshot(self) -> ProtocolSnapshot:
        return self.ctx.snapshot(broadcast_counter=self.broadcast_counter)

    def restore(self, snapshot: ProtocolSnapshot):
        extra = self.ctx.restore(snapshot)
        self.broadcast_counter = extra.get("broadcast_counter", 0)

    def get_stats(self) -> Dict[str, Any]:
        nodes = self.nodes.values()
        return {
            "total_nodes": len(nodes),
            "total_broadcasts": self.broadcast_counter,
            "total_delivered": sum(len(n.delivered) for n in nodes),
            "pending_messages": sum(len(n.holdback) for n in nodes),
            "max_clock": max((n.clock for n in nodes), default=0),
            "messages": message_counts(self.ctx.messages),
        }
