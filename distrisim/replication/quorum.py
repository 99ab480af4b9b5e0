"""
Leaderless quorum replication with read repair.

A coordinator applies a write locally and sends ``Write`` messages to the
other replicas of its replica set; the write is durable once W replicas
(coordinator included) acknowledged it. A read samples R healthy replicas,
returns the newest version and sends ``Repair`` messages to the sampled
replicas that lag behind.
"""
import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from distrisim.core.context import ProtocolSnapshot, SimulationContext
from distrisim.core.layout import Position, circle_position
from distrisim.core.message_pool import Message, MessageStatus
from distrisim.core.participant import HealthStatus
from distrisim.core.stats import message_counts

logger = logging.getLogger(__name__)

REPAIR_SENDER = "repair"


@dataclass
class QuorumConfig:
    """Quorum configuration for replication."""

    replication_factor: int = 3
    write_quorum: int = 2
    read_quorum: int = 2

    def __post_init__(self):
        if self.replication_factor < 1:
            raise ValueError("replication_factor must be >= 1")
        if self.write_quorum < 1 or self.read_quorum < 1:
            raise ValueError("write_quorum and read_quorum must be >= 1")

    @property
    def overlapping(self) -> bool:
        """W + R > N: every read quorum intersects every write quorum."""
        return is_strict_quorum(self.write_quorum, self.read_quorum, self.replication_factor)


def calculate_quorum(replication_factor: int) -> int:
    """
    Majority quorum for a replication factor.

    Args:
        replication_factor: Number of replicas (k)

    Returns:
        Quorum size (floor(k/2) + 1)
    """
    return (replication_factor // 2) + 1


def is_strict_quorum(write_quorum: int, read_quorum: int, replication_factor: int) -> bool:
    return write_quorum + read_quorum > replication_factor


class WriteStatus(str, Enum):
    PENDING = "pending"
    DURABLE = "durable"
    FAILED = "failed"


@dataclass
class VersionedValue:
    value: Any
    version: int
    timestamp: int = 0


@dataclass
class QuorumNode:
    id: str
    position: Position
    status: HealthStatus = HealthStatus.HEALTHY
    data: Dict[str, VersionedValue] = field(default_factory=dict)
    version: int = 0

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


@dataclass
class WriteRecord:
    """Progress of one client write."""
    id: str
    key: str
    version: int
    coordinator: str
    write_quorum: int
    replicas: List[str]
    acks: Set[str] = field(default_factory=set)
    status: WriteStatus = WriteStatus.PENDING


@dataclass
class ReadResult:
    key: str
    coordinator: str
    read_quorum: int
    success: bool
    value: Any = None
    version: Optional[int] = None
    contacted: List[str] = field(default_factory=list)
    observed: Dict[str, Optional[int]] = field(default_factory=dict)
    repaired: List[str] = field(default_factory=list)


class QuorumReplicationAlgorithm:
    """Replicated key-value store with tunable W/R quorums over nodes ``N0..``."""

    name = "quorum-replication"

    def __init__(self, node_count: int = 5, replication_factor: int = 3):
        self.node_count = node_count
        self.config = QuorumConfig(
            replication_factor=replication_factor,
            write_quorum=calculate_quorum(replication_factor),
            read_quorum=calculate_quorum(replication_factor),
        )
        self.ctx = SimulationContext(
            self.name,
            message_prefix="q",
            dispatch=self._dispatch,
            should_drop=self._is_undeliverable,
        )
        self.nodes = self.ctx.registry("nodes", self._initial_nodes)
        self.writes: Dict[str, WriteRecord] = {}
        self.reads: List[ReadResult] = []

    @property
    def replication_factor(self) -> int:
        return self.config.replication_factor

    def _initial_nodes(self) -> List[QuorumNode]:
        return [
            QuorumNode(id=f"N{i}", position=circle_position(i, self.node_count, radius=210))
            for i in range(self.node_count)
        ]

    # Queries

    def get_nodes(self) -> List[QuorumNode]:
        return self.nodes.list()

    def get_node(self, node_id: str) -> Optional[QuorumNode]:
        return self.nodes.get(node_id)

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    def get_write(self, write_id: str) -> Optional[WriteRecord]:
        record = self.writes.get(write_id)
        return copy.deepcopy(record) if record else None

    def replica_targets(self, node_id: str) -> List[str]:
        """The first RF-1 other nodes, in id order."""
        others = [n.id for n in self.nodes if n.id != node_id]
        return others[: max(self.replication_factor - 1, 0)]

    def replica_set(self, node_id: str) -> List[str]:
        return [node_id] + self.replica_targets(node_id)

    # Writes

    def write(self, node_id: str, key: str, value: Any, quorum_write: Optional[int] = None) -> Optional[str]:
        """
        Write ``key=value`` through coordinator ``node_id``.

        Args:
            node_id: Coordinator node
            key: Key to write
            value: Opaque value
            quorum_write: W, defaults to the configured write quorum

        Returns:
            Id of the write record, or None if the coordinator is unavailable
        """
        coordinator = self.nodes.find(node_id)
        if coordinator is None or not coordinator.healthy:
            self.ctx.record("write_failed", f"Write failed at {node_id}", node_id=node_id, key=key)
            return None

        w = self._clamp_quorum(quorum_write, self.config.write_quorum)
        coordinator.version += 1
        coordinator.data[key] = VersionedValue(value=value, version=coordinator.version, timestamp=self.ctx.clock.now)

        record = WriteRecord(
            id=f"w-{len(self.writes)}",
            key=key,
            version=coordinator.version,
            coordinator=node_id,
            write_quorum=w,
            replicas=self.replica_set(node_id),
            acks={node_id},
        )
        self.writes[record.id] = record
        self.ctx.record(
            "write_local",
            f"{node_id} writes {key}={value!r}",
            node_id=node_id,
            key=key,
            version=record.version,
            write_id=record.id,
        )

        for target in self.replica_targets(node_id):
            self.ctx.send(node_id, target, "Write", {
                "write_id": record.id,
                "key": key,
                "value": value,
                "version": record.version,
            })

        reachable = 1 + sum(1 for t in self.replica_targets(node_id) if self.nodes.find(t).healthy)
        if reachable < w:
            record.status = WriteStatus.FAILED
            self.ctx.record(
                "write_incomplete",
                f"{node_id} write missed W={w} ({reachable} replicas reachable)",
                write_id=record.id,
                reachable=reachable,
            )
        self._check_durable(record)
        return record.id

    def _on_write(self, message: Message):
        replica = self.nodes.find(message.to_id)
        self._apply(replica, message.payload)
        self.ctx.send(replica.id, message.from_id, "WriteAck", {
            "write_id": message.payload["write_id"],
            "key": message.payload["key"],
            "version": message.payload["version"],
        })

    def _on_write_ack(self, message: Message):
        record = self.writes.get(message.payload["write_id"])
        if record is None:
            return
        record.acks.add(message.from_id)
        self._check_durable(record)

    def _check_durable(self, record: WriteRecord):
        if record.status == WriteStatus.PENDING and len(record.acks) >= record.write_quorum:
            record.status = WriteStatus.DURABLE
            logger.info(f"Quorum: write {record.id} durable with {len(record.acks)} acks")
            self.ctx.record(
                "write_quorum",
                f"{record.coordinator} write reached W={record.write_quorum}",
                write_id=record.id,
                acks=sorted(record.acks),
            )

    def _apply(self, node: QuorumNode, payload: Dict[str, Any]) -> bool:
        existing = node.data.get(payload["key"])
        if existing is not None and existing.version >= payload["version"]:
            return False
        node.data[payload["key"]] = VersionedValue(
            value=payload["value"],
            version=payload["version"],
            timestamp=self.ctx.clock.now,
        )
        node.version = max(node.version, payload["version"])
        return True

    # Reads

    def read(self, node_id: str, key: str, quorum_read: Optional[int] = None) -> Optional[ReadResult]:
        """
        Read ``key`` from R healthy replicas of the coordinator's replica set.

        Sampled replicas holding an older version (or none) get a ``Repair``
        message carrying the newest version.

        Args:
            node_id: Coordinator node
            key: Key to read
            quorum_read: R, defaults to the configured read quorum

        Returns:
            The read result, or None if the coordinator is unavailable
        """
        coordinator = self.nodes.find(node_id)
        if coordinator is None or not coordinator.healthy:
            self.ctx.record("read_failed", f"Read failed at {node_id}", node_id=node_id, key=key)
            return None

        r = self._clamp_quorum(quorum_read, self.config.read_quorum)
        healthy = [self.nodes.find(i) for i in self.replica_set(node_id) if self.nodes.find(i).healthy]
        contacted = healthy[:r]

        result = ReadResult(
            key=key,
            coordinator=node_id,
            read_quorum=r,
            success=len(contacted) >= r,
            contacted=[n.id for n in contacted],
        )
        latest: Optional[VersionedValue] = None
        for replica in contacted:
            current = replica.data.get(key)
            result.observed[replica.id] = current.version if current else None
            if current is not None and (latest is None or current.version > latest.version):
                latest = current

        if latest is not None:
            result.value = latest.value
            result.version = latest.version
            for replica in contacted:
                current = replica.data.get(key)
                if current is None or current.version < latest.version:
                    self.ctx.send(REPAIR_SENDER, replica.id, "Repair", {
                        "key": key,
                        "value": latest.value,
                        "version": latest.version,
                    })
                    result.repaired.append(replica.id)

        self.reads.append(result)
        self.ctx.record(
            "read_quorum" if result.success else "read_incomplete",
            f"{node_id} reads {key} via R={r}",
            node_id=node_id,
            key=key,
            observed=dict(result.observed),
            latest=result.version,
        )
        if result.repaired:
            self.ctx.record(
                "read_repair",
                f"Read repair for {key} (v{latest.version})",
                key=key,
                repaired_nodes=list(result.repaired),
            )
        return result

    def _on_repair(self, message: Message):
        self._apply(self.nodes.find(message.to_id), message.payload)

    def _clamp_quorum(self, requested: Optional[int], default: int) -> int:
        value = default if requested is None else int(requested)
        return max(1, min(value, self.replication_factor))

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
        if recipient is None or not recipient.healthy:
            return True
        if message.from_id == REPAIR_SENDER:
            return False
        sender = self.nodes.find(message.from_id)
        return sender is None or not sender.healthy

    # Engine hooks

    def _dispatch(self, message: Message):
        handler = {
            "Write": self._on_write,
            "WriteAck": self._on_write_ack,
            "Repair": self._on_repair,
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
        self.writes = {}
        self.reads = []

    def snapshot(self) -> ProtocolSnapshot:
        return self.ctx.snapshot(writes=self.writes, reads=self.reads)

    def restore(self, snapshot: ProtocolSnapshot):
        extra = self.ctx.restore(snapshot)
        self.writes = extra.get("writes", {})
        self.reads = extra.get("reads", [])

    def get_stats(self) -> Dict[str, Any]:
        nodes = self.nodes.values()
        keys = set()
        for node in nodes:
            keys.update(node.data.keys())
        return {
            "total_nodes": len(nodes),
            "healthy_nodes": sum(1 for n in nodes if n.healthy),
            "total_keys": len(keys),
            "replication_factor": self.replication_factor,
            "durable_writes": sum(1 for w in self.writes.values() if w.status == WriteStatus.DURABLE),
            "pending_writes": sum(1 for w in self.writes.values() if w.status == WriteStatus.PENDING),
            "failed_writes": sum(1 for w in self.writes.values() if w.status == WriteStatus.FAILED),
            "read_repairs": sum(len(r.repaired) for r in self.reads),
            "messages": message_counts(self.ctx.messages),
        }
