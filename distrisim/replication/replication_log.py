"""
Leader-based log replication with an in-sync replica set (ISR).

The leader appends produced records and pushes ``Replicate`` messages to its
followers. The high watermark is the smallest log end offset across the ISR:
records at or below it are committed. Followers that fell out of the ISR
catch up with ``fetch`` and rejoin through ``mark_in_sync``.
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

PARTITION_ID = "P0"


class ReplicaRole(str, Enum):
    LEADER = "leader"
    FOLLOWER = "follower"


@dataclass
class LogRecord:
    offset: int
    value: Any


@dataclass
class LogReplica:
    id: str
    position: Position
    role: ReplicaRole = ReplicaRole.FOLLOWER
    status: HealthStatus = HealthStatus.HEALTHY
    log: List[LogRecord] = field(default_factory=list)
    high_watermark: int = -1
    lag: int = 0
    in_sync: bool = True

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    @property
    def log_end_offset(self) -> int:
        return self.log[-1].offset if self.log else -1


@dataclass
class LogPartition:
    id: str
    isr: List[str]
    leader_id: Optional[str]
    leader_epoch: int = 0
    next_offset: int = 0


class ReplicationLogAlgorithm:
    """One partition replicated on brokers ``B0..``; ``B0`` leads initially."""

    name = "replication-log"

    def __init__(self, replica_count: int = 3):
        self.replica_count = replica_count
        self.ctx = SimulationContext(
            self.name,
            message_prefix="log",
            dispatch=self._dispatch,
            should_drop=self._is_undeliverable,
        )
        self.replicas = self.ctx.registry("replicas", self._initial_replicas)
        self.partition = self._initial_partition()

    def _initial_replicas(self) -> List[LogReplica]:
        positions = row_layout(self.replica_count, y=300, start_x=180, spacing=220)
        return [
            LogReplica(
                id=f"B{i}",
                position=positions[i],
                role=ReplicaRole.LEADER if i == 0 else ReplicaRole.FOLLOWER,
            )
            for i in range(self.replica_count)
        ]

    def _initial_partition(self) -> LogPartition:
        ids = [f"B{i}" for i in range(self.replica_count)]
        return LogPartition(id=PARTITION_ID, isr=list(ids), leader_id=ids[0] if ids else None)

    # Queries

    def get_replicas(self) -> List[LogReplica]:
        return self.replicas.list()

    def get_partition(self) -> LogPartition:
        return LogPartition(**{**vars(self.partition), "isr": list(self.partition.isr)})

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    def get_leader(self) -> Optional[LogReplica]:
        return self.replicas.get(self.partition.leader_id) if self.partition.leader_id else None

    def _leader(self) -> Optional[LogReplica]:
        leader = self.replicas.find(self.partition.leader_id)
        return leader if leader is not None and leader.healthy else None

    # Produce / replicate

    def produce(self, value: Any) -> Optional[int]:
        """
        Append ``value`` to the leader's log and push it to the followers.

        Returns:
            Offset of the new record, or None without a healthy leader
        """
        leader = self._leader()
        if leader is None:
            self.ctx.record("produce_failed", "No leader available for produce", value=value)
            return None

        record = LogRecord(offset=self.partition.next_offset, value=value)
        self.partition.next_offset += 1
        leader.log.append(record)
        self.ctx.record(
            "produce",
            f"Leader appended {value} @{record.offset}",
            offset=record.offset,
            value=value,
        )

        for replica in self.replicas:
            if replica.id != leader.id:
                self.ctx.send(leader.id, replica.id, "Replicate", {
                    "partition_id": self.partition.id,
                    "offset": record.offset,
                    "value": value,
                    "leader_id": leader.id,
                    "leader_epoch": self.partition.leader_epoch,
                })
        self._update_lag()
        self._update_high_watermark()
        return record.offset

    def _on_replicate(self, message: Message):
        replica = self.replicas.find(message.to_id)
        if not replica.in_sync or message.payload["leader_epoch"] != self.partition.leader_epoch:
            return
        if message.payload["offset"] != replica.log_end_offset + 1:
            # Out of order or duplicate: the follower has to fetch
            return

        replica.log.append(LogRecord(offset=message.payload["offset"], value=message.payload["value"]))
        self.ctx.record(
            "replicated",
            f"{replica.id} replicated @{message.payload['offset']}",
            replica_id=replica.id,
            offset=message.payload["offset"],
        )
        self._update_lag()
        self._update_high_watermark()

    def fetch(self, replica_id: str):
        """Follower asks the leader for every record after its log end."""
        replica = self.replicas.find(replica_id)
        leader = self._leader()
        if replica is None or not replica.healthy or leader is None or replica.id == leader.id:
            return
        self.ctx.send(replica.id, leader.id, "Fetch", {
            "partition_id": self.partition.id,
            "from_offset": replica.log_end_offset + 1,
        })
        self.ctx.record(
            "fetch",
            f"{replica_id} fetches from offset {replica.log_end_offset + 1}",
            replica_id=replica_id,
        )

    def _on_fetch(self, message: Message):
        leader = self.replicas.find(message.to_id)
        if leader.id != self.partition.leader_id:
            return
        from_offset = message.payload["from_offset"]
        records = [vars(r).copy() for r in leader.log if r.offset >= from_offset]
        self.ctx.send(leader.id, message.from_id, "FetchResponse", {
            "partition_id": self.partition.id,
            "records": records,
            "high_watermark": leader.high_watermark,
        })

    def _on_fetch_response(self, message: Message):
        replica = self.replicas.find(message.to_id)
        for raw in message.payload["records"]:
            if raw["offset"] == replica.log_end_offset + 1:
                replica.log.append(LogRecord(**raw))
        replica.high_watermark = max(replica.high_watermark, message.payload["high_watermark"])
        self._update_lag()
        self._update_high_watermark()
        self.ctx.record(
            "fetched",
            f"{replica.id} caught up to offset {replica.log_end_offset}",
            replica_id=replica.id,
            log_end_offset=replica.log_end_offset,
        )

    # ISR management

    def mark_out_of_sync(self, replica_id: str):
        replica = self.replicas.find(replica_id)
        if replica is None or replica_id == self.partition.leader_id:
            return
        replica.in_sync = False
        if replica_id in self.partition.isr:
            self.partition.isr.remove(replica_id)
        self.ctx.record("isr_shrink", f"{replica_id} removed from ISR", replica_id=replica_id)
        self._update_high_watermark()

    def mark_in_sync(self, replica_id: str):
        replica = self.replicas.find(replica_id)
        if replica is None or not replica.healthy:
            return
        replica.in_sync = True
        if replica_id not in self.partition.isr:
            self.partition.isr.append(replica_id)
        self.ctx.record("isr_add", f"{replica_id} added to ISR", replica_id=replica_id)
        self._update_high_watermark()

    def _update_lag(self):
        leader = self.replicas.find(self.partition.leader_id)
        leader_end = leader.log_end_offset if leader else -1
        for replica in self.replicas:
            replica.lag = max(leader_end - replica.log_end_offset, 0)

    def _update_high_watermark(self):
        isr = [self.replicas.find(i) for i in self.partition.isr if i in self.replicas]
        if not isr:
            return
        watermark = min(r.log_end_offset for r in isr)
        for replica in isr:
            replica.high_watermark = max(replica.high_watermark, watermark)

    # Faults

    def fail_replica(self, replica_id: str):
        """
        Fail a broker. A failed leader is replaced by the first healthy ISR
        member; without one the partition goes offline.
        """
        replica = self.replicas.find(replica_id)
        if replica is None or not replica.healthy:
            return
        replica.status = HealthStatus.FAILED
        self.ctx.record("replica_failed", f"{replica_id} failed", replica_id=replica_id)

        if replica_id == self.partition.leader_id:
            self._elect_leader(exclude=replica_id)

    def recover_replica(self, replica_id: str):
        replica = self.replicas.find(replica_id)
        if replica is None or replica.healthy:
            return
        replica.status = HealthStatus.HEALTHY
        self.ctx.record("replica_recovered", f"{replica_id} recovered", replica_id=replica_id)
        if self.partition.leader_id is None and replica_id in self.partition.isr:
            self._elect_leader()

    def _elect_leader(self, exclude: Optional[str] = None):
        candidates = [
            self.replicas.find(i) for i in self.partition.isr
            if i != exclude and self.replicas.find(i).healthy
        ]
        old_leader = self.replicas.find(self.partition.leader_id)
        if old_leader is not None:
            old_leader.role = ReplicaRole.FOLLOWER

        if not candidates:
            self.partition.leader_id = None
            self.ctx.record("partition_offline", f"{self.partition.id} has no in-sync leader")
            return

        new_leader = candidates[0]
        new_leader.role = ReplicaRole.LEADER
        self.partition.leader_id = new_leader.id
        self.partition.leader_epoch += 1
        self.partition.next_offset = new_leader.log_end_offset + 1
        logger.info(f"ReplicationLog: {new_leader.id} leads epoch {self.partition.leader_epoch}")
        self.ctx.record(
            "leader_elected",
            f"{new_leader.id} became leader (epoch {self.partition.leader_epoch})",
            leader_id=new_leader.id,
            leader_epoch=self.partition.leader_epoch,
        )
        self._update_lag()

    def _is_undeliverable(self, message: Message) -> bool:
        sender = self.replicas.find(message.from_id)
        recipient = self.replicas.find(message.to_id)
        return sender is None or recipient is None or not sender.healthy or not recipient.healthy

    # Engine hooks

    def _dispatch(self, message: Message):
        handler = {
            "Replicate": self._on_replicate,
            "Fetch": self._on_fetch,
            "FetchResponse": self._on_fetch_response,
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
        self.partition = self._initial_partition()

    def snapshot(self) -> ProtocolSnapshot:
        return self.ctx.snapshot(partition=self.partition)

    def restore(self, snapshot: ProtocolSnapshot):
        extra = self.ctx.restore(snapshot)
        self.partition = extra.get("partition", self._initial_partition())

    def get_stats(self) -> Dict[str, Any]:
        leader = self.replicas.find(self.partition.leader_id)
        return {
            "replicas": len(self.replicas),
            "isr_size": len(self.partition.isr),
            "under_replicated": len(self.partition.isr) < len(self.replicas),
            "leader_id": self.partition.leader_id,
            "leader_epoch": self.partition.leader_epoch,
            "high_watermark": leader.high_watermark if leader else -1,
            "log_size": len(leader.log) if leader else 0,
            "max_lag": max((r.lag for r in self.replicas), default=0),
            "messages": message_counts(self.ctx.messages),
        }
