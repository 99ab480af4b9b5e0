"""
Practical Byzantine Fault Tolerance (normal case and view change).

With n replicas the model tolerates f = (n - 1) // 3 faults and uses
quorums of 2f + 1. The primary of view v is replica ``v mod n``.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from distrisim.core.context import ProtocolSnapshot, SimulationContext
from distrisim.core.layout import Position, circle_position
from distrisim.core.message_pool import Message, MessageStatus
from distrisim.core.participant import HealthStatus
from distrisim.core.stats import message_counts

logger = logging.getLogger(__name__)

CLIENT_ID = "client"


class PBFTRole(str, Enum):
    PRIMARY = "primary"
    REPLICA = "replica"


class PBFTPhase(str, Enum):
    PRE_PREPARE = "pre-prepare"
    PREPARE = "prepare"
    COMMIT = "commit"
    EXECUTED = "executed"


@dataclass
class PBFTLogEntry:
    request_id: str
    view: int
    seq: int
    value: Any
    phase: PBFTPhase
    pre_prepared: bool = False
    prepares: List[str] = field(default_factory=list)
    commits: List[str] = field(default_factory=list)


@dataclass
class PBFTNode:
    id: str
    position: Position
    status: HealthStatus = HealthStatus.HEALTHY
    view: int = 0
    role: PBFTRole = PBFTRole.REPLICA
    log: Dict[str, PBFTLogEntry] = field(default_factory=dict)
    executed: List[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


class PBFTAlgorithm:
    """PBFT group of replicas ``N0..``; ``N0`` is the primary of view 0."""

    name = "pbft"

    def __init__(self, node_count: int = 4):
        self.node_count = node_count
        self.ctx = SimulationContext(
            self.name,
            message_prefix="pbft",
            dispatch=self._dispatch,
            should_drop=self._is_undeliverable,
        )
        self.nodes = self.ctx.registry("nodes", self._initial_nodes)
        self.seq_counter = 0
        self.request_counter = 0

    def _initial_nodes(self) -> List[PBFTNode]:
        return [
            PBFTNode(
                id=f"N{i}",
                position=circle_position(i, self.node_count, radius=210),
                role=PBFTRole.PRIMARY if i == 0 else PBFTRole.REPLICA,
            )
            for i in range(self.node_count)
        ]

    @property
    def fault_tolerance(self) -> int:
        return (self.node_count - 1) // 3

    @property
    def quorum_size(self) -> int:
        return 2 * self.fault_tolerance + 1

    @property
    def view(self) -> int:
        nodes = self.nodes.values()
        return nodes[0].view if nodes else 0

    def primary_of(self, view: int) -> str:
        return self.nodes.ids()[view % self.node_count]

    # Queries

    def get_nodes(self) -> List[PBFTNode]:
        return self.nodes.list()

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    def _live(self, node_id: str) -> Optional[PBFTNode]:
        node = self.nodes.find(node_id)
        return node if node is not None and node.healthy else None

    def _broadcast(self, sender: PBFTNode, type: str, entry: PBFTLogEntry):
        for node in self.nodes:
            if node.id != sender.id and node.healthy:
                self.ctx.send(sender.id, node.id, type, {
                    "request_id": entry.request_id,
                    "view": entry.view,
                    "seq": entry.seq,
                    "value": entry.value,
                })

    # Normal case

    def client_request(self, value: Any) -> Optional[str]:
        """
        Send a client request to the current primary.

        Returns:
            The request id, or None when the primary is down
        """
        primary = self.nodes.find(self.primary_of(self.view))
        if primary is None or not primary.healthy:
            self.ctx.record("request_failed", "No healthy primary available")
            return None

        request_id = f"req-{self.request_counter}"
        self.request_counter += 1
        self.ctx.send(CLIENT_ID, primary.id, "ClientRequest", {
            "request_id": request_id,
            "view": primary.view,
            "value": value,
        })
        self.ctx.record(
            "client_request",
            f"Client sends {value!r} to {primary.id}",
            request_id=request_id,
            primary=primary.id,
        )
        return request_id

    def _on_client_request(self, message: Message):
        primary = self._live(message.to_id)
        if primary is None or primary.role != PBFTRole.PRIMARY:
            return

        entry = PBFTLogEntry(
            request_id=message.payload["request_id"],
            view=primary.view,
            seq=self.seq_counter,
            value=message.payload["value"],
            phase=PBFTPhase.PRE_PREPARE,
            pre_prepared=True,
            prepares=[primary.id],
        )
        self.seq_counter += 1
        primary.log[entry.request_id] = entry
        self.ctx.record(
            "pre_prepare",
            f"{primary.id} pre-prepares {entry.request_id}",
            request_id=entry.request_id,
            seq=entry.seq,
        )
        self._broadcast(primary, "PrePrepare", entry)

    def _on_pre_prepare(self, message: Message):
        replica = self._live(message.to_id)
        if replica is None or message.payload["view"] != replica.view:
            return

        entry = self._entry_for(replica, message)
        entry.pre_prepared = True
        entry.phase = PBFTPhase.PREPARE
        for node_id in (message.from_id, replica.id):
            if node_id not in entry.prepares:
                entry.prepares.append(node_id)
        self.ctx.record("prepare", f"{replica.id} prepares {entry.request_id}", request_id=entry.request_id)
        self._broadcast(replica, "Prepare", entry)
        self._check_prepared(replica, entry)

    def _on_prepare(self, message: Message):
        node = self._live(message.to_id)
        if node is None or message.payload["view"] != node.view:
            return
        entry = self._entry_for(node, message)
        if message.from_id not in entry.prepares:
            entry.prepares.append(message.from_id)
        self._check_prepared(node, entry)

    def _check_prepared(self, node: PBFTNode, entry: PBFTLogEntry):
        if not entry.pre_prepared or entry.phase in (PBFTPhase.COMMIT, PBFTPhase.EXECUTED):
            return
        if len(entry.prepares) < self.quorum_size:
            return
        entry.phase = PBFTPhase.COMMIT
        if node.id not in entry.commits:
            entry.commits.append(node.id)
        self.ctx.record("commit", f"{node.id} commits {entry.request_id}", request_id=entry.request_id)
        self._broadcast(node, "Commit", entry)
        self._check_committed(node, entry)

    def _on_commit(self, message: Message):
        node = self._live(message.to_id)
        if node is None or message.payload["view"] != node.view:
            return
        entry = self._entry_for(node, message)
        if message.from_id not in entry.commits:
            entry.commits.append(message.from_id)
        self._check_committed(node, entry)

    def _check_committed(self, node: PBFTNode, entry: PBFTLogEntry):
        if entry.phase != PBFTPhase.COMMIT or len(entry.commits) < self.quorum_size:
            return
        entry.phase = PBFTPhase.EXECUTED
        node.executed.append(entry.request_id)
        self.ctx.record("execute", f"{node.id} executes {entry.request_id}", request_id=entry.request_id)

    def _entry_for(self, node: PBFTNode, message: Message) -> PBFTLogEntry:
        entry = node.log.get(message.payload["request_id"])
        if entry is None:
            entry = PBFTLogEntry(
                request_id=message.payload["request_id"],
                view=message.payload["view"],
                seq=message.payload.get("seq", 0),
                value=message.payload["value"],
                phase=PBFTPhase.PRE_PREPARE,
            )
            node.log[entry.request_id] = entry
        return entry

    # View change

    def trigger_view_change(self):
        """Move every replica to the next view, rotating the primary."""
        new_view = self.view + 1
        primary_id = self.primary_of(new_view)
        for node in self.nodes:
            node.view = new_view
            node.role = PBFTRole.PRIMARY if node.id == primary_id else PBFTRole.REPLICA
        logger.info(f"PBFT: view change to v{new_view}, primary {primary_id}")
        self.ctx.record("view_change", f"View change to v{new_view}", new_view=new_view, primary=primary_id)

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
        if self._live(message.to_id) is None:
            return True
        return message.from_id != CLIENT_ID and self._live(message.from_id) is None

    # Engine hooks

    def _dispatch(self, message: Message):
        handler = {
            "ClientRequest": self._on_client_request,
            "PrePrepare": self._on_pre_prepare,
            "Prepare": self._on_prepare,
            "Commit": self._on_commit,
        }.get(message.type)
        if handler is not None:
            handler(message)

    def deliver(self, message_id: str) -> Optional[MessageStatus]:
        return self.ctx.messages.deliver(message_id)

    def deliver_all(self) -> int:
        return self.ctx.messages.deliver_all()

    def tick(self):
        self.ctx.tick()

    def reset(self):
        self.ctx.reset()
        self.seq_counter = 0
        self.request_counter = 0

    def snapshot(self) -> ProtocolSnapshot:
        return self.ctx.snapshot(seq_counter=self.seq_counter, request_counter=self.request_counter)

    def restore(self, snapshot: ProtocolSnapshot):
        extra = self.ctx.restore(snapshot)
        self.seq_counter = extra.get("seq_counter", 0)
        self.request_counter = extra.get("request_counter", 0)

    def get_stats(self) -> Dict[str, Any]:
        nodes = self.nodes.values()
        return {
            "total_nodes": len(nodes),
            "healthy_nodes": sum(1 for n in nodes if n.healthy),
            "view": self.view,
            "primary": self.primary_of(self.view) if nodes else None,
            "fault_tolerance": self.fault_tolerance,
            "quorum": self.quorum_size,
            "executed": sum(len(n.executed) for n in nodes),
            "messages": message_counts(self.ctx.messages),
        }
