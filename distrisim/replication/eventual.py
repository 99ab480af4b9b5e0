"""
Eventual consistency with tunable consistency levels.

Every write is stamped with the coordinator's vector clock and replicated
to the rest of its replica set with explicit ``Replicate`` messages; the
consistency level only decides how many acknowledgements complete the
write (ONE: the coordinator, QUORUM: a majority, ALL: every replica).
Reads contact as many healthy replicas as the level demands and return the
causally newest value. Concurrent versions are resolved deterministically
(highest clock sum, then writer id) and counted as conflicts. Anti-entropy
pushes newer versions between random peer pairs.
"""
import copy
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from distrisim.clocks.vector import VectorClock, happened_before
from distrisim.core.context import ProtocolSnapshot, SimulationContext
from distrisim.core.layout import Position, circle_position
from distrisim.core.message_pool import Message, MessageStatus
from distrisim.core.participant import HealthStatus
from distrisim.core.stats import message_counts
from distrisim.replication.quorum import calculate_quorum

logger = logging.getLogger(__name__)


class ConsistencyLevel(str, Enum):
    ONE = "ONE"
    QUORUM = "QUORUM"
    ALL = "ALL"


@dataclass
class ClockedValue:
    value: Any
    vector_clock: VectorClock
    writer: str
    timestamp: int = 0


@dataclass
class ECNode:
    id: str
    position: Position
    status: HealthStatus = HealthStatus.HEALTHY
    data: Dict[str, ClockedValue] = field(default_factory=dict)
    vector_clock: VectorClock = field(default_factory=dict)
    version: int = 0

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


@dataclass
class PendingWrite:
    id: str
    key: str
    coordinator: str
    level: ConsistencyLevel
    required: int
    acks: Set[str] = field(default_factory=set)
    complete: bool = False


def compare_clocks(a: VectorClock, b: VectorClock) -> str:
    """``after`` (a dominates or equals b), ``before`` or ``concurrent``."""
    if happened_before(b, a) or a == b:
        return "after"
    if happened_before(a, b):
        return "before"
    return "concurrent"


def _resolution_key(value: ClockedValue):
    return (sum(value.vector_clock.values()), value.writer)


def newest(a: Optional[ClockedValue], b: Optional[ClockedValue]) -> Optional[ClockedValue]:
    """The causally newer value; concurrent values resolve by clock sum then writer."""
    if a is None or b is None:
        return a or b
    order = compare_clocks(a.vector_clock, b.vector_clock)
    if order == "after":
        return a
    if order == "before":
        return b
    return max(a, b, key=_resolution_key)


class EventualConsistencyAlgorithm:
    """Nodes ``N0..``; a key lives on the coordinator and the next RF-1 nodes."""

    name = "eventual-consistency"

    def __init__(self, node_count: int = 5, replication_factor: int = 3, seed: int = 42):
        self.node_count = node_count
        self.replication_factor = max(1, min(replication_factor, node_count))
        self.seed = seed
        self.rng = random.Random(seed)
        self.ctx = SimulationContext(
            self.name,
            message_prefix="ec",
            dispatch=self._dispatch,
            should_drop=self._is_undeliverable,
        )
        self.nodes = self.ctx.registry("nodes", self._initial_nodes)
        self.writes: Dict[str, PendingWrite] = {}
        self.conflicts = 0

    def _initial_nodes(self) -> List[ECNode]:
        ids = [f"N{i}" for i in range(self.node_count)]
        return [
            ECNode(
                id=node_id,
                position=circle_position(i, self.node_count),
                vector_clock={other: 0 for other in ids},
            )
            for i, node_id in enumerate(ids)
        ]

    # Queries

    def get_nodes(self) -> List[ECNode]:
        return self.nodes.list()

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    def get_write(self, write_id: str) -> Optional[PendingWrite]:
        record = self.writes.get(write_id)
        return copy.deepcopy(record) if record else None

    def replica_set(self, node_id: str) -> List[str]:
        """``node_id`` followed by the next RF-1 nodes around the ring."""
        ids = self.nodes.ids()
        start = ids.index(node_id)
        return [ids[(start + i) % len(ids)] for i in range(self.replication_factor)]

    def required_acks(self, level: ConsistencyLevel) -> int:
        if level == ConsistencyLevel.ONE:
            return 1
        if level == ConsistencyLevel.QUORUM:
            return calculate_quorum(self.replication_factor)
        return self.replication_factor

    def inconsistent_keys(self) -> List[str]:
        """Keys whose healthy holders disagree on the value."""
        healthy = [n for n in self.nodes if n.healthy]
        keys = sorted({k for n in healthy for k in n.data})
        return [
            key for key in keys
            if len({repr(n.data[key].value) for n in healthy if key in n.data}) > 1
        ]

    # Writes

    def write(self, key: str, value: Any, node_id: str,
              consistency_level: ConsistencyLevel = ConsistencyLevel.QUORUM) -> Optional[str]:
        """
        Write ``key=value`` through coordinator ``node_id``.

        Args:
            key: Key to write
            value: Opaque value
            node_id: Coordinator
            consistency_level: Acknowledgements needed to complete the write

        Returns:
            The write id, or None when the coordinator is down
        """
        level = ConsistencyLevel(consistency_level)
        node = self.nodes.find(node_id)
        if node is None or not node.healthy:
            self.ctx.record("write_failed", f"Write to {node_id} failed (node unhealthy)", key=key, node_id=node_id)
            return None

        node.vector_clock[node_id] = node.vector_clock.get(node_id, 0) + 1
        node.version += 1
        stored = ClockedValue(
            value=value,
            vector_clock=dict(node.vector_clock),
            writer=node_id,
            timestamp=self.ctx.clock.now,
        )
        node.data[key] = stored
        self.ctx.record("write_local", f"{node_id} writes {key}={value!r}", key=key, value=value, node_id=node_id)

        record = PendingWrite(
            id=f"w-{len(self.writes)}",
            key=key,
            coordinator=node_id,
            level=level,
            required=self.required_acks(level),
            acks={node_id},
        )
        self.writes[record.id] = record

        for target in self.replica_set(node_id)[1:]:
            self._send_replicate(node_id, target, key, stored, write_id=record.id)

        reachable = sum(1 for r in self.replica_set(node_id) if self.nodes.find(r).healthy)
        if reachable < record.required:
            self.ctx.record(
                "write_unavailable",
                f"Write {key} cannot reach {level.value} ({reachable}/{record.required} replicas up)",
                write_id=record.id,
                reachable=reachable,
            )
        self._check_write(record)
        return record.id

    def _send_replicate(self, from_id: str, to_id: str, key: str, stored: ClockedValue,
                        write_id: Optional[str] = None):
        self.ctx.send(from_id, to_id, "Replicate", {
            "write_id": write_id,
            "key": key,
            "value": stored.value,
            "vector_clock": dict(stored.vector_clock),
            "writer": stored.writer,
        })
        self.ctx.record("replicate_sent", f"{from_id} -> {to_id}: Replicate {key}", from_id=from_id, to_id=to_id, key=key)

    def _on_replicate(self, message: Message):
        node = self.nodes.find(message.to_id)
        payload = message.payload
        for pid, value in payload["vector_clock"].items():
            node.vector_clock[pid] = max(node.vector_clock.get(pid, 0), value)

        incoming = ClockedValue(
            value=payload["value"],
            vector_clock=dict(payload["vector_clock"]),
            writer=payload["writer"],
            timestamp=self.ctx.clock.now,
        )
        existing = node.data.get(payload["key"])
        if existing is not None and compare_clocks(incoming.vector_clock, existing.vector_clock) == "concurrent":
            self.conflicts += 1
            self.ctx.record(
                "conflict",
                f"{node.id} resolves concurrent writes to {payload['key']}",
                node_id=node.id,
                key=payload["key"],
            )
        winner = newest(existing, incoming)
        if winner is incoming and (existing is None or existing.vector_clock != incoming.vector_clock):
            node.data[payload["key"]] = incoming
            node.version += 1
            self.ctx.record(
                "replicate_received",
                f"{node.id} received {payload['key']}={payload['value']!r}",
                node_id=node.id,
                key=payload["key"],
                value=payload["value"],
            )

        if payload.get("write_id") is not None:
            self.ctx.send(node.id, message.from_id, "ReplicateAck", {"write_id": payload["write_id"]})

    def _on_replicate_ack(self, message: Message):
        record = self.writes.get(message.payload["write_id"])
        if record is None:
            return
        record.acks.add(message.from_id)
        self._check_write(record)

    def _check_write(self, record: PendingWrite):
        if record.complete or len(record.acks) < record.required:
            return
        record.complete = True
        self.ctx.record(
            "write_complete",
            f"Write {record.key} complete ({record.level.value}, {len(record.acks)} acks)",
            write_id=record.id,
            key=record.key,
            consistency_level=record.level.value,
            replicas=len(record.acks),
        )

    # Reads

    def read(self, key: str, node_id: str,
             consistency_level: ConsistencyLevel = ConsistencyLevel.ONE) -> Optional[Any]:
        """
        Read ``key`` through ``node_id``.

        ONE answers from the coordinator's local copy, so it can be stale;
        QUORUM and ALL also consult other healthy replicas of the key.

        Returns:
            The newest value seen, or None
        """
        level = ConsistencyLevel(consistency_level)
        node = self.nodes.find(node_id)
        if node is None or not node.healthy:
            self.ctx.record("read_failed", f"Read from {node_id} failed (node unhealthy)", key=key, node_id=node_id)
            return None

        needed = self.required_acks(level)
        others = [
            self.nodes.find(r) for r in self.replica_set(node_id)
            if r != node_id and self.nodes.find(r).healthy
        ]
        contacted = [node] + others[: needed - 1]
        result: Optional[ClockedValue] = None
        for replica in contacted:
            result = newest(result, replica.data.get(key))

        value = result.value if result is not None else None
        self.ctx.record(
            f"read_{level.value.lower()}" if level != ConsistencyLevel.ONE else "read_local",
            f"{node_id} reads {key}={value!r} ({level.value})",
            key=key,
            node_id=node_id,
            value=value,
            nodes_read=len(contacted),
            satisfied=len(contacted) >= needed,
        )
        return value

    # Anti-entropy

    def run_anti_entropy(self) -> int:
        """
        Each healthy node exchanges versions with one random healthy peer.

        Returns:
            Number of ``Replicate`` messages sent
        """
        healthy = [n for n in self.nodes if n.healthy]
        sent = 0
        for node in healthy:
            peers = [p for p in healthy if p.id != node.id]
            if not peers:
                continue
            sent += self._sync_pair(node, self.rng.choice(peers))
        self.ctx.record("anti_entropy", "Anti-entropy sync initiated", messages=sent)
        return sent

    def _sync_pair(self, node: ECNode, peer: ECNode) -> int:
        sent = 0
        for key in sorted(set(node.data) | set(peer.data)):
            mine = node.data.get(key)
            theirs = peer.data.get(key)
            if mine is not None and theirs is not None and mine.vector_clock == theirs.vector_clock:
                continue
            winner = newest(mine, theirs)
            if winner is mine:
                self._send_replicate(node.id, peer.id, key, mine)
            else:
                self._send_replicate(peer.id, node.id, key, theirs)
            sent += 1
        return sent

    # Faults

    def fail_node(self, node_id: str):
        node = self.nodes.find(node_id)
        if node is None or not node.healthy:
            return
        node.status = HealthStatus.FAILED
        self.ctx.record("node_failed", f"{node_id} failed", node_id=node_id)

    def recover_node(self, node_id: str):
        """Recover ``node_id`` and start catching it up from a random healthy peer."""
        node = self.nodes.find(node_id)
        if node is None or node.healthy:
            return
        node.status = HealthStatus.HEALTHY
        self.ctx.record("node_recovered", f"{node_id} recovered", node_id=node_id)
        peers = [p for p in self.nodes if p.healthy and p.id != node_id]
        if peers:
            self._sync_pair(node, self.rng.choice(peers))

    def _is_undeliverable(self, message: Message) -> bool:
        sender = self.nodes.find(message.from_id)
        recipient = self.nodes.find(message.to_id)
        return sender is None or recipient is None or not sender.healthy or not recipient.healthy

    # Engine hooks

    def _dispatch(self, message: Message):
        if message.type == "Replicate":
            self._on_replicate(message)
        elif message.type == "ReplicateAck":
            self._on_replicate_ack(message)

    def deliver(self, message_id: str) -> Optional[MessageStatus]:
        return self.ctx.messages.deliver(message_id)

    def deliver_all(self) -> int:
        return self.ctx.messages.deliver_all()

    def tick(self):
        self.ctx.tick()

    def reset(self):
        self.ctx.reset()
        self.writes = {}
        self.conflicts = 0
        self.rng = random.Random(self.seed)

    def snapshot(self) -> ProtocolSnapshot:
        return self.ctx.snapshot(writes=self.writes, conflicts=self.conflicts, rng_state=self.rng.getstate())

    def restore(self, snapshot: ProtocolSnapshot):
        extra = self.ctx.restore(snapshot)
        self.writes = extra.get("writes", {})
        self.conflicts = extra.get("conflicts", 0)
        if "rng_state" in extra:
            self.rng.setstate(extra["rng_state"])

    def get_stats(self) -> Dict[str, Any]:
        nodes = self.nodes.values()
        return {
            "total_nodes": len(nodes),
            "healthy_nodes": sum(1 for n in nodes if n.healthy),
            "failed_nodes": sum(1 for n in nodes if not n.healthy),
            "total_keys": len({k for n in nodes for k in n.data}),
            "inconsistent_keys": len(self.inconsistent_keys()),
            "replication_factor": self.replication_factor,
            "pending_writes": sum(1 for w in self.writes.values() if not w.complete),
            "conflicts": self.conflicts,
            "messages": message_counts(self.ctx.messages),
        }
