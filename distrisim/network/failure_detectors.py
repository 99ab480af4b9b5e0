"""
Failure detection: phi accrual heartbeats and SWIM-style probes.

Each node keeps the logical time a heartbeat from it was last received.
``tick`` turns the silence into a suspicion level phi (elapsed time over the
heartbeat interval): at half the threshold the node becomes suspect, at the
threshold it is declared failed.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from distrisim.core.context import ProtocolSnapshot, SimulationContext
from distrisim.core.layout import Position, circle_position
from distrisim.core.message_pool import Message, MessageStatus
from distrisim.core.stats import message_counts

logger = logging.getLogger(__name__)

PHI_THRESHOLD = 8.0
HEARTBEAT_INTERVAL_MS = 1000


class FDStatus(str, Enum):
    ALIVE = "alive"
    SUSPECT = "suspect"
    FAILED = "failed"


@dataclass
class FailureDetectorNode:
    id: str
    position: Position
    status: FDStatus = FDStatus.ALIVE
    crashed: bool = False
    last_heartbeat: int = 0
    phi: float = 0.0


class FailureDetectorsAlgorithm:
    """
    Nodes ``N0..`` observed by a shared detector.

    ``status`` is what the detector believes, ``crashed`` is the ground
    truth; a node that is suspected while not crashed is a false positive.
    """

    name = "failure-detectors"

    def __init__(
        self,
        node_count: int = 5,
        phi_threshold: float = PHI_THRESHOLD,
        heartbeat_interval_ms: int = HEARTBEAT_INTERVAL_MS,
    ):
        self.node_count = node_count
        self.phi_threshold = phi_threshold
        self.heartbeat_interval_ms = heartbeat_interval_ms
        self.ctx = SimulationContext(
            self.name,
            message_prefix="fd",
            dispatch=self._dispatch,
            should_drop=self._is_undeliverable,
        )
        self.nodes = self.ctx.registry("nodes", self._initial_nodes)

    def _initial_nodes(self) -> List[FailureDetectorNode]:
        return [
            FailureDetectorNode(id=f"N{i}", position=circle_position(i, self.node_count))
            for i in range(self.node_count)
        ]

    # Queries

    def get_nodes(self) -> List[FailureDetectorNode]:
        return self.nodes.list()

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    # Heartbeats and probes

    def send_heartbeat(self, from_id: str):
        """Broadcast a heartbeat from ``from_id`` to every live peer."""
        node = self.nodes.find(from_id)
        if node is None or node.crashed:
            return
        for peer in self.nodes:
            if peer.id != from_id and not peer.crashed:
                self.ctx.send(from_id, peer.id, "Heartbeat", {"source_id": from_id})
        self.ctx.record("heartbeat_send", f"{from_id} heartbeats", node_id=from_id)

    def probe(self, target_id: str, from_id: str):
        """SWIM direct probe: ``from_id`` pings ``target_id`` and waits for an ack."""
        node = self.nodes.find(from_id)
        if node is None or node.crashed or target_id not in self.nodes:
            return
        self.ctx.send(from_id, target_id, "Probe", {"target_id": target_id})
        self.ctx.record("probe", f"{from_id} probes {target_id}", from_id=from_id, target_id=target_id)

    def _on_heartbeat(self, message: Message):
        source = self.nodes.find(message.payload["source_id"])
        self._refresh(source)
        self.ctx.record(
            "heartbeat_recv",
            f"{message.to_id} received heartbeat from {source.id}",
            node_id=source.id,
            observer_id=message.to_id,
        )

    def _on_probe(self, message: Message):
        self.ctx.send(message.to_id, message.from_id, "Ack", {"target_id": message.to_id})
        self.ctx.record("ack_send", f"{message.to_id} ack to {message.from_id}", from_id=message.to_id)

    def _on_ack(self, message: Message):
        target = self.nodes.find(message.payload["target_id"])
        self._refresh(target)
        self.ctx.record(
            "ack_recv",
            f"{message.to_id} received ack from {target.id}",
            node_id=target.id,
            observer_id=message.to_id,
        )

    def _refresh(self, node: FailureDetectorNode):
        node.last_heartbeat = self.ctx.clock.now
        node.phi = 0.0
        if not node.crashed:
            node.status = FDStatus.ALIVE

    # Suspicion

    def tick(self, ms: Optional[int] = None):
        """
        Advance logical time and recompute phi for every node not yet
        declared failed.

        Args:
            ms: Elapsed milliseconds, defaults to the clock's tick size
        """
        now = self.ctx.tick(ms)
        for node in self.nodes:
            if node.status == FDStatus.FAILED:
                continue
            node.phi = (now - node.last_heartbeat) / self.heartbeat_interval_ms
            if node.phi >= self.phi_threshold:
                self._set_status(node, FDStatus.FAILED)
            elif node.phi >= self.phi_threshold / 2:
                self._set_status(node, FDStatus.SUSPECT)

    def suspect(self, node_id: str):
        node = self.nodes.find(node_id)
        if node is not None and node.status == FDStatus.ALIVE:
            self._set_status(node, FDStatus.SUSPECT)

    def confirm(self, node_id: str):
        node = self.nodes.find(node_id)
        if node is not None:
            self._set_status(node, FDStatus.FAILED)

    def _set_status(self, node: FailureDetectorNode, status: FDStatus):
        if node.status == status:
            return
        node.status = status
        if status == FDStatus.SUSPECT:
            self.ctx.record("suspect", f"{node.id} suspected (phi {node.phi:.1f})", node_id=node.id, phi=node.phi)
        else:
            logger.info(f"FailureDetector: {node.id} declared failed")
            self.ctx.record("confirm", f"{node.id} confirmed failed", node_id=node.id, phi=node.phi)

    # Faults

    def mark_failed(self, node_id: str):
        """Crash a node: it stops sending and answering."""
        node = self.nodes.find(node_id)
        if node is None or node.crashed:
            return
        node.crashed = True
        node.status = FDStatus.FAILED
        self.ctx.record("manual_fail", f"{node_id} failed", node_id=node_id)

    def recover(self, node_id: str):
        node = self.nodes.find(node_id)
        if node is None:
            return
        node.crashed = False
        self._refresh(node)
        self.ctx.record("recover", f"{node_id} recovered", node_id=node_id)

    def _is_undeliverable(self, message: Message) -> bool:
        sender = self.nodes.find(message.from_id)
        recipient = self.nodes.find(message.to_id)
        return sender is None or recipient is None or sender.crashed or recipient.crashed

    # Engine hooks

    def _dispatch(self, message: Message):
        handler = {
            "Heartbeat": self._on_heartbeat,
            "Probe": self._on_probe,
            "Ack": self._on_ack,
        }.get(message.type)
        if handler is not None:
            handler(message)

    def deliver(self, message_id: str) -> Optional[MessageStatus]:
        return self.ctx.messages.deliver(message_id)

    def deliver_all(self) -> int:
        return self.ctx.messages.deliver_all()

    def reset(self):
        self.ctx.reset()

    def snapshot(self) -> ProtocolSnapshot:
        return self.ctx.snapshot()

    def restore(self, snapshot: ProtocolSnapshot):
        self.ctx.restore(snapshot)

    def get_stats(self) -> Dict[str, Any]:
        nodes = self.nodes.values()
        return {
            "total_nodes": len(nodes),
            "alive": sum(1 for n in nodes if n.status == FDStatus.ALIVE),
            "suspect": sum(1 for n in nodes if n.status == FDStatus.SUSPECT),
            "failed": sum(1 for n in nodes if n.status == FDStatus.FAILED),
            "crashed": sum(1 for n in nodes if n.crashed),
            "false_positives": sum(1 for n in nodes if n.status != FDStatus.ALIVE and not n.crashed),
            "max_phi": max((n.phi for n in nodes), default=0.0),
            "messages": message_counts(self.ctx.messages),
        }
