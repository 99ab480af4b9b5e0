"""
Chandy-Lamport distributed snapshots.

The initiator records its local state and sends a marker on every outgoing
channel. A process receiving its first marker records its state, marks
that channel empty and relays markers; until a marker arrives on another
incoming channel, application messages on it are recorded as channel
state. Channels are assumed FIFO, which holds when messages are delivered
in send order.
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
class ChannelRecord:
    from_id: str
    value: Any


@dataclass
class SnapshotState:
    id: str
    local_state: int
    channels: Dict[str, List[ChannelRecord]]
    recording_from: List[str]

    @property
    def complete(self) -> bool:
        return not self.recording_from


@dataclass
class SnapshotNode:
    id: str
    position: Position
    status: HealthStatus = HealthStatus.HEALTHY
    local_state: int = 0
    snapshots: Dict[str, SnapshotState] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


class ChandyLamportAlgorithm:
    """
    Processes ``N0..`` on a complete graph. ``local_state`` counts the
    application messages a process has sent and received.
    """

    name = "chandy-lamport"

    def __init__(self, node_count: int = 5):
        self.node_count = node_count
        self.ctx = SimulationContext(
            self.name,
            message_prefix="snapshot-msg",
            dispatch=self._dispatch,
            should_drop=self._is_undeliverable,
        )
        self.nodes = self.ctx.registry("nodes", self._initial_nodes)
        self.snapshot_counter = 0

    def _initial_nodes(self) -> List[SnapshotNode]:
        return [
            SnapshotNode(id=f"N{i}", position=circle_position(i, self.node_count))
            for i in range(self.node_count)
        ]

    # Queries

    def get_nodes(self) -> List[SnapshotNode]:
        return self.nodes.list()

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    def global_snapshot(self, snapshot_id: str) -> Optional[Dict[str, Any]]:
        """
        Assemble a finished snapshot.

        Returns:
            ``{"local_states": {...}, "channels": {"A->B": [values]}}`` or
            None while some process is still recording
        """
        states = [n.snapshots.get(snapshot_id) for n in self.nodes]
        if any(s is None or not s.complete for s in states):
            return None
        channels = {}
        for node, state in zip(self.nodes, states):
            for from_id, records in state.channels.items():
                channels[f"{from_id}->{node.id}"] = [r.value for r in records]
        return {
            "local_states": {n.id: s.local_state for n, s in zip(self.nodes, states)},
            "channels": channels,
        }

    # Application traffic

    def send_message(self, from_id: str, to_id: str, value: Any) -> Optional[str]:
        sender = self.nodes.find(from_id)
        recipient = self.nodes.find(to_id)
        if sender is None or recipient is None or not sender.healthy or not recipient.healthy:
            self.ctx.record("send_failed", f"Send {from_id} -> {to_id} failed", from_id=from_id, to_id=to_id)
            return None
        sender.local_state += 1
        self.ctx.record("app_send", f"{from_id} -> {to_id}: {value!r}", from_id=from_id, to_id=to_id, value=value)
        return self.ctx.send(from_id, to_id, "App", {"value": value})

    def _on_app(self, message: Message):
        node = self.nodes.find(message.to_id)
        node.local_state += 1
        for state in node.snapshots.values():
            if message.from_id in state.recording_from:
                state.channels.setdefault(message.from_id, []).append(
                    ChannelRecord(from_id=message.from_id, value=message.payload["value"])
                )
        self.ctx.record(
            "app_deliver",
            f"{node.id} received {message.payload['value']!r}",
            to_id=node.id,
            from_id=message.from_id,
        )

    # Snapshot

    def start_snapshot(self, initiator_id: str) -> Optional[str]:
        """
        Start a new snapshot at ``initiator_id``.

        Returns:
            The snapshot id (``S0``, ``S1``, ...)
        """
        node = self.nodes.find(initiator_id)
        if node is None or not node.healthy:
            self.ctx.record("snapshot_failed", f"Snapshot start failed at {initiator_id}", initiator_id=initiator_id)
            return None

        snapshot_id = f"S{self.snapshot_counter}"
        self.snapshot_counter += 1
        self.ctx.record(
            "snapshot_start",
            f"Snapshot {snapshot_id} started at {initiator_id}",
            snapshot_id=snapshot_id,
            initiator_id=initiator_id,
        )
        self._record_state(node, snapshot_id, marker_from=None)
        return snapshot_id

    def _record_state(self, node: SnapshotNode, snapshot_id: str, marker_from: Optional[str]):
        peers = [n.id for n in self.nodes if n.id != node.id]
        node.snapshots[snapshot_id] = SnapshotState(
            id=snapshot_id,
            local_state=node.local_state,
            channels={peer: [] for peer in peers},
            recording_from=[p for p in peers if p != marker_from],
        )
        self.ctx.record("snapshot_record", f"{node.id} records local state", node_id=node.id, snapshot_id=snapshot_id)
        for peer in self.nodes:
            if peer.id != node.id and peer.healthy:
                self.ctx.send(node.id, peer.id, "Marker", {"snapshot_id": snapshot_id})
        self._check_complete(node, snapshot_id)

    def _on_marker(self, message: Message):
        node = self.nodes.find(message.to_id)
        snapshot_id = message.payload["snapshot_id"]
        state = node.snapshots.get(snapshot_id)
        if state is None:
            self._record_state(node, snapshot_id, marker_from=message.from_id)
            return
        if message.from_id in state.recording_from:
            state.recording_from.remove(message.from_id)
            self._check_complete(node, snapshot_id)

    def _check_complete(self, node: SnapshotNode, snapshot_id: str):
        if node.snapshots[snapshot_id].complete:
            self.ctx.record(
                "snapshot_complete",
                f"{node.id} completes snapshot {snapshot_id}",
                node_id=node.id,
                snapshot_id=snapshot_id,
            )
            if self.global_snapshot(snapshot_id) is not None:
                logger.info(f"ChandyLamport: snapshot {snapshot_id} complete on every process")

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
        recipient = self.nodes.find(message.to_id)
        return recipient is None or not recipient.healthy

    # Engine hooks

    def _dispatch(self, message: Message):
        if message.type == "App":
            self._on_app(message)
        elif message.type == "Marker":
            self._on_marker(message)

    def deliver(self, message_id: str) -> Optional[MessageStatus]:
        return self.ctx.messages.deliver(message_id)

    def deliver_all(self) -> int:
        return self.ctx.messages.deliver_all()

    def tick(self):
        self.ctx.tick()

    def reset(self):
        self.ctx.reset()
        self.snapshot_counter = 0

    def snapshot(self) -> ProtocolSnapshot:
        return self.ctx.snapshot(snapshot_counter=self.snapshot_counter)

    def restore(self, snapshot: ProtocolSnapshot):
        extra = self.ctx.restore(snapshot)
        self.snapshot_counter = extra.get("snapshot_counter", 0)

    def get_stats(self) -> Dict[str, Any]:
        nodes = self.nodes.values()
        states = [s for n in nodes for s in n.snapshots.values()]
        return {
            "total_nodes": len(nodes),
            "healthy_nodes": sum(1 for n in nodes if n.healthy),
            "snapshots_started": self.snapshot_counter,
            "snapshots_active": sum(1 for s in states if not s.complete),
            "snapshots_complete": sum(1 for s in states if s.complete),
            "recorded_channel_messages": sum(len(r) for s in states for r in s.channels.values()),
            "messages": message_counts(self.ctx.messages),
        }
