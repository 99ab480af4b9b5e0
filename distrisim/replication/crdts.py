"""
State-based CRDTs replicated on ``R0..``: a grow-only counter, an
observed-remove set and a replicated growable array (RGA).

Replicas update locally without coordination; ``sync`` ships a replica's
full state and the receiver merges it and answers with its own, so after a
delivered sync both sides hold the join of the two states.
"""
import copy
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from distrisim.core.context import ProtocolSnapshot, SimulationContext
from distrisim.core.layout import Position, circle_position
from distrisim.core.message_pool import Message, MessageStatus
from distrisim.core.stats import message_counts

logger = logging.getLogger(__name__)

HEAD_ID = "HEAD"


@dataclass
class GCounter:
    counts: Dict[str, int] = field(default_factory=dict)

    def increment(self, replica_id: str, times: int = 1):
        self.counts[replica_id] = self.counts.get(replica_id, 0) + times

    @property
    def value(self) -> int:
        return sum(self.counts.values())

    def merge(self, other: "GCounter"):
        for replica_id, count in other.counts.items():
            self.counts[replica_id] = max(self.counts.get(replica_id, 0), count)


@dataclass
class ORSet:
    adds: Dict[str, List[str]] = field(default_factory=dict)
    removes: List[str] = field(default_factory=list)

    def add(self, value: str, tag: str):
        self.adds.setdefault(value, []).append(tag)

    def remove(self, value: str) -> List[str]:
        """Tombstone every add tag observed for ``value``."""
        observed = [t for t in self.adds.get(value, []) if t not in self.removes]
        self.removes.extend(observed)
        return observed

    def values(self) -> List[str]:
        return sorted(v for v, tags in self.adds.items() if any(t not in self.removes for t in tags))

    def merge(self, other: "ORSet"):
        for value, tags in other.adds.items():
            mine = self.adds.setdefault(value, [])
            mine.extend(t for t in tags if t not in mine)
        self.removes.extend(t for t in other.removes if t not in self.removes)


@dataclass
class RGAElement:
    id: str
    value: Any
    prev_id: str
    seq: int
    replica: str
    tombstone: bool = False


@dataclass
class RGA:
    elements: Dict[str, RGAElement] = field(default_factory=dict)

    def sequence(self) -> List[RGAElement]:
        """
        Visible elements in document order.

        Children of the same anchor are ordered newest first, so a later
        insert after X lands directly behind X on every replica.
        """
        children: Dict[str, List[RGAElement]] = {}
        for element in self.elements.values():
            children.setdefault(element.prev_id, []).append(element)
        for siblings in children.values():
            siblings.sort(key=lambda e: (e.seq, e.replica), reverse=True)

        ordered = []
        stack = list(reversed(children.get(HEAD_ID, [])))
        while stack:
            element = stack.pop()
            if not element.tombstone:
                ordered.append(element)
            stack.extend(reversed(children.get(element.id, [])))
        return ordered

    def merge(self, other: "RGA"):
        for element_id, element in other.elements.items():
            existing = self.elements.get(element_id)
            if existing is None:
                self.elements[element_id] = copy.deepcopy(element)
            elif element.tombstone:
                existing.tombstone = True

    @property
    def max_seq(self) -> int:
        return max((e.seq for e in self.elements.values()), default=-1)


@dataclass
class CRDTReplica:
    id: str
    position: Position
    g_counter: GCounter = field(default_factory=GCounter)
    or_set: ORSet = field(default_factory=ORSet)
    rga: RGA = field(default_factory=RGA)
    local_counter: int = 0

    def next_tag(self) -> str:
        tag = f"{self.id}-{self.local_counter}"
        self.local_counter += 1
        return tag

    def merge(self, other: "CRDTReplica"):
        self.g_counter.merge(other.g_counter)
        self.or_set.merge(other.or_set)
        self.rga.merge(other.rga)
        self.local_counter = max(self.local_counter, other.local_counter, self.rga.max_seq + 1)


class CRDTAlgorithm:
    """Replicas ``R0..`` each holding the three CRDTs."""

    name = "crdts"

    def __init__(self, replica_count: int = 3):
        self.replica_count = replica_count
        self.ctx = SimulationContext(self.name, message_prefix="crdt", dispatch=self._dispatch)
        self.replicas = self.ctx.registry("replicas", self._initial_replicas)

    def _initial_replicas(self) -> List[CRDTReplica]:
        ids = [f"R{i}" for i in range(self.replica_count)]
        return [
            CRDTReplica(
                id=replica_id,
                position=circle_position(i, self.replica_count, radius=180),
                g_counter=GCounter({other: 0 for other in ids}),
            )
            for i, replica_id in enumerate(ids)
        ]

    # Queries

    def get_replicas(self) -> List[CRDTReplica]:
        return self.replicas.list()

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    def counter_value(self, replica_id: str) -> Optional[int]:
        replica = self.replicas.find(replica_id)
        return None if replica is None else replica.g_counter.value

    def set_values(self, replica_id: str) -> List[str]:
        replica = self.replicas.find(replica_id)
        return [] if replica is None else replica.or_set.values()

    def sequence(self, replica_id: str) -> List[Any]:
        replica = self.replicas.find(replica_id)
        if replica is None:
            return []
        return [e.value for e in replica.rga.sequence()]

    # G-Counter

    def increment(self, replica_id: str, times: int = 1):
        replica = self.replicas.find(replica_id)
        if replica is None or times < 1:
            return
        replica.g_counter.increment(replica_id, times)
        self.ctx.record("gcounter_inc", f"{replica_id} increments x{times}", replica_id=replica_id, times=times)

    # OR-Set

    def or_set_add(self, replica_id: str, value: str) -> Optional[str]:
        replica = self.replicas.find(replica_id)
        if replica is None:
            return None
        tag = replica.next_tag()
        replica.or_set.add(value, tag)
        self.ctx.record("orset_add", f"{replica_id} adds {value}", replica_id=replica_id, value=value, tag=tag)
        return tag

    def or_set_remove(self, replica_id: str, value: str):
        replica = self.replicas.find(replica_id)
        if replica is None:
            return
        removed = replica.or_set.remove(value)
        self.ctx.record("orset_remove", f"{replica_id} removes {value}", replica_id=replica_id, value=value, tags=removed)

    # RGA

    def rga_insert(self, replica_id: str, value: Any, after_id: Optional[str] = None) -> Optional[str]:
        """
        Insert ``value`` after ``after_id`` (default: the last visible element).

        Returns:
            Id of the new element
        """
        replica = self.replicas.find(replica_id)
        if replica is None:
            return None
        if after_id != HEAD_ID and after_id not in replica.rga.elements:
            visible = replica.rga.sequence()
            after_id = visible[-1].id if visible else HEAD_ID

        seq = replica.local_counter
        element_id = replica.next_tag()
        replica.rga.elements[element_id] = RGAElement(
            id=element_id, value=value, prev_id=after_id, seq=seq, replica=replica_id,
        )
        self.ctx.record(
            "rga_insert",
            f"{replica_id} inserts {value}",
            replica_id=replica_id,
            element_id=element_id,
            value=value,
        )
        return element_id

    def rga_remove(self, replica_id: str, element_id: str):
        replica = self.replicas.find(replica_id)
        element = replica.rga.elements.get(element_id) if replica else None
        if element is None:
            return
        element.tombstone = True
        self.ctx.record("rga_remove", f"{replica_id} removes {element_id}", replica_id=replica_id, element_id=element_id)

    # Replication

    def sync(self, from_id: str, to_id: str):
        source = self.replicas.find(from_id)
        if source is None or from_id == to_id or to_id not in self.replicas:
            return
        self.ctx.send(from_id, to_id, "Sync", {"state": asdict(source)})
        self.ctx.record("sync_send", f"Sync {from_id} -> {to_id}", from_id=from_id, to_id=to_id)

    def sync_all(self):
        ids = self.replicas.ids()
        for i, from_id in enumerate(ids):
            for to_id in ids[i + 1:]:
                self.sync(from_id, to_id)

    def _merge_into(self, target: CRDTReplica, state: Dict[str, Any]):
        rga = RGA({k: RGAElement(**e) for k, e in state["rga"]["elements"].items()})
        incoming = CRDTReplica(
            id=state["id"],
            position=target.position,
            g_counter=GCounter(**state["g_counter"]),
            or_set=ORSet(**state["or_set"]),
            rga=rga,
            local_counter=state["local_counter"],
        )
        target.merge(incoming)
        self.ctx.record("merge", f"{target.id} merged state of {incoming.id}", replica_id=target.id, from_id=incoming.id)

    def _dispatch(self, message: Message):
        target = self.replicas.find(message.to_id)
        if target is None:
            return
        self._merge_into(target, message.payload["state"])
        if message.type == "Sync":
            self.ctx.send(target.id, message.from_id, "SyncReply", {"state": asdict(target)})

    # Engine hooks

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
        replicas = self.replicas.values()
        if not replicas:
            return {"replica_count": 0, "divergent_gcounter": 0, "divergent_orset": 0, "divergent_rga": 0}
        base = replicas[0]
        base_seq = [e.value for e in base.rga.sequence()]
        others = replicas[1:]
        return {
            "replica_count": len(replicas),
            "divergent_gcounter": sum(1 for r in others if r.g_counter.value != base.g_counter.value),
            "divergent_orset": sum(1 for r in others if r.or_set.values() != base.or_set.values()),
            "divergent_rga": sum(1 for r in others if [e.value for e in r.rga.sequence()] != base_seq),
            "counter_value": base.g_counter.value,
            "messages": message_counts(self.ctx.messages),
        }
