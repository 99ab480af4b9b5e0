"""
Three consensus variants side by side.

* **Raft joint consensus**: during a membership change an entry commits
  only with a majority of the old configuration *and* of the new one.
* **Multi-Paxos**: a stable leader skips phase 1 and runs a single
  ``Accept`` round per log slot.
* **EPaxos**: any replica leads its own instance; with no interference the
  fast quorum commits after one round trip, otherwise an extra ``Accept``
  round to a classic majority is needed.

Each variant has its own cluster ``N0..``; messages carry the variant so
the same node id can exist in all three.
"""
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from distrisim.core.context import ProtocolSnapshot, SimulationContext
from distrisim.core.layout import Position, circle_position
from distrisim.core.message_pool import Message, MessageStatus
from distrisim.core.participant import HealthStatus
from distrisim.core.stats import message_counts

logger = logging.getLogger(__name__)


class ConsensusVariant(str, Enum):
    RAFT_JOINT = "raft-joint"
    MULTI_PAXOS = "multi-paxos"
    EPAXOS = "epaxos"


class VariantRole(str, Enum):
    FOLLOWER = "follower"
    LEADER = "leader"
    PROPOSER = "proposer"


class ConfigPhase(str, Enum):
    OLD = "old"
    JOINT = "joint"
    NEW = "new"


class EPaxosPath(str, Enum):
    FAST = "fast"
    SLOW = "slow"


class InstanceStatus(str, Enum):
    PRE_ACCEPTED = "pre-accepted"
    ACCEPTED = "accepted"
    COMMITTED = "committed"


@dataclass
class ConsensusEntry:
    id: str
    value: Any
    index: int
    committed: bool = False
    acks: List[str] = field(default_factory=list)


@dataclass
class EPaxosInstance:
    id: str
    leader_id: str
    command: Any
    path: EPaxosPath
    deps: List[str] = field(default_factory=list)
    status: InstanceStatus = InstanceStatus.PRE_ACCEPTED
    replies: List[str] = field(default_factory=list)
    conflict: bool = False
    accept_oks: List[str] = field(default_factory=list)


@dataclass
class ConsensusNode:
    id: str
    position: Position
    status: HealthStatus = HealthStatus.HEALTHY
    role: VariantRole = VariantRole.FOLLOWER
    term: int = 0
    log: List[ConsensusEntry] = field(default_factory=list)
    config_phase: ConfigPhase = ConfigPhase.OLD
    in_old_config: bool = True
    in_new_config: bool = False
    committed_index: int = -1
    instances: List[EPaxosInstance] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def find_entry(self, entry_id: str) -> Optional[ConsensusEntry]:
        for entry in self.log:
            if entry.id == entry_id:
                return entry
        return None

    def find_instance(self, instance_id: str) -> Optional[EPaxosInstance]:
        for instance in self.instances:
            if instance.id == instance_id:
                return instance
        return None


def majority(count: int) -> int:
    return count // 2 + 1


def fast_quorum_size(n: int) -> int:
    """EPaxos fast quorum, leader included: f + floor((f + 1) / 2)."""
    f = (n - 1) // 2
    return f + (f + 1) // 2


class ConsensusVariantsAlgorithm:
    """One cluster of ``node_count`` nodes per variant."""

    name = "consensus-variants"

    def __init__(self, node_count: int = 5, seed: int = 42):
        self.node_count = node_count
        self.seed = seed
        self.rng = random.Random(seed)
        self.ctx = SimulationContext(
            self.name,
            message_prefix="consensus",
            dispatch=self._dispatch,
            should_drop=self._is_undeliverable,
        )
        self.clusters = {
            variant: self.ctx.registry(variant.value, self._initial_nodes)
            for variant in ConsensusVariant
        }
        self.entry_counter = 0
        self.instance_counter = 0

    def _initial_nodes(self) -> List[ConsensusNode]:
        return [
            ConsensusNode(id=f"N{i}", position=circle_position(i, self.node_count))
            for i in range(self.node_count)
        ]

    def _cluster(self, variant):
        return self.clusters[ConsensusVariant(variant)]

    def _leader(self, variant) -> Optional[ConsensusNode]:
        for node in self._cluster(variant):
            if node.role == VariantRole.LEADER and node.healthy:
                return node
        return None

    # Queries

    def get_nodes(self, variant=ConsensusVariant.RAFT_JOINT) -> List[ConsensusNode]:
        return self._cluster(variant).list()

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    def committed_values(self, variant, node_id: str) -> List[Any]:
        node = self._cluster(variant).find(node_id)
        if node is None:
            return []
        return [e.value for e in node.log if e.committed]

    def _send(self, variant: ConsensusVariant, from_id: str, to_id: str, type: str, payload: Dict[str, Any]):
        self.ctx.send(from_id, to_id, type, dict(payload, variant=variant.value))

    # Leadership

    def elect_leader(self, variant, node_id: str):
        """Make ``node_id`` the leader of ``variant``'s cluster with a new term."""
        variant = ConsensusVariant(variant)
        cluster = self._cluster(variant)
        candidate = cluster.find(node_id)
        if candidate is None or not candidate.healthy:
            logger.debug(f"Variants: cannot elect {node_id} in {variant.value}")
            return
        term = max(n.term for n in cluster) + 1
        for node in cluster:
            node.role = VariantRole.LEADER if node.id == node_id else VariantRole.FOLLOWER
            node.term = term
        self.ctx.record("leader", f"{node_id} elected leader ({variant.value}, term {term})",
                        variant=variant.value, node_id=node_id, term=term)

    # Raft joint consensus

    def start_joint_consensus(self, new_config_ids: List[str]):
        """Enter C(old,new): entries now need both majorities."""
        cluster = self._cluster(ConsensusVariant.RAFT_JOINT)
        for node in cluster:
            node.config_phase = ConfigPhase.JOINT
            node.in_new_config = node.id in new_config_ids
        self.ctx.record("joint_start", "Joint consensus started", new_config_ids=list(new_config_ids))

    def finalize_joint_consensus(self):
        """Switch to C(new); nodes outside the new configuration retire."""
        cluster = self._cluster(ConsensusVariant.RAFT_JOINT)
        if not any(n.config_phase == ConfigPhase.JOINT for n in cluster):
            return
        for node in cluster:
            node.in_old_config = node.in_new_config
            node.config_phase = ConfigPhase.NEW if node.in_new_config else ConfigPhase.OLD
            if not node.in_new_config and node.role == VariantRole.LEADER:
                node.role = VariantRole.FOLLOWER
                self.ctx.record("leader_step_down", f"{node.id} leaves the configuration and steps down",
                                node_id=node.id)
        self.ctx.record("joint_end", "Joint consensus finalized",
                        members=[n.id for n in cluster if n.in_new_config])

    def _raft_members(self) -> List[ConsensusNode]:
        return [n for n in self._cluster(ConsensusVariant.RAFT_JOINT) if n.in_old_config or n.in_new_config]

    def _raft_committed(self, entry: ConsensusEntry) -> bool:
        members = self._raft_members()
        acks = set(entry.acks)
        old = [n.id for n in members if n.in_old_config]
        if not old:
            return False
        old_ok = len(acks.intersection(old)) >= majority(len(old))
        if members[0].config_phase != ConfigPhase.JOINT:
            return old_ok
        new = [n.id for n in members if n.in_new_config]
        return old_ok and len(acks.intersection(new)) >= majority(len(new))

    # Log replication (Raft joint and Multi-Paxos)

    def append_entry(self, variant, value: Any) -> Optional[str]:
        """
        Append ``value`` at the leader and replicate it.

        Returns:
            The entry id, or None without a healthy leader
        """
        variant = ConsensusVariant(variant)
        leader = self._leader(variant)
        if leader is None:
            self.ctx.record("append_failed", f"No leader for {value!r} ({variant.value})", variant=variant.value)
            return None

        entry = ConsensusEntry(id=f"e-{self.entry_counter}", value=value, index=len(leader.log), acks=[leader.id])
        self.entry_counter += 1
        leader.log.append(entry)
        self.ctx.record("append", f"{leader.id} appends {value!r}", variant=variant.value, entry_id=entry.id)

        targets = self._raft_members() if variant == ConsensusVariant.RAFT_JOINT else list(self._cluster(variant))
        message_type = "Append" if variant == ConsensusVariant.RAFT_JOINT else "Accept"
        for node in targets:
            if node.id != leader.id:
                self._send(variant, leader.id, node.id, message_type, {
                    "entry_id": entry.id,
                    "index": entry.index,
                    "value": value,
                    "term": leader.term,
                })
        self._check_commit(variant, leader, entry)
        return entry.id

    def propose_multi_paxos(self, value: Any) -> Optional[str]:
        """Phase 2 only: the leader's ballot is already promised."""
        return self.append_entry(ConsensusVariant.MULTI_PAXOS, value)

    def _on_append(self, variant: ConsensusVariant, message: Message):
        node = self._cluster(variant).find(message.to_id)
        payload = message.payload
        if payload["term"] < node.term:
            return
        node.term = payload["term"]
        if node.find_entry(payload["entry_id"]) is None:
            node.log.append(ConsensusEntry(id=payload["entry_id"], value=payload["value"], index=payload["index"]))
        reply = "AppendAck" if variant == ConsensusVariant.RAFT_JOINT else "Accepted"
        self._send(variant, node.id, message.from_id, reply, {"entry_id": payload["entry_id"]})

    def _on_append_ack(self, variant: ConsensusVariant, message: Message):
        leader = self._cluster(variant).find(message.to_id)
        entry = leader.find_entry(message.payload["entry_id"])
        if entry is None or entry.committed:
            return
        if message.from_id not in entry.acks:
            entry.acks.append(message.from_id)
        self._check_commit(variant, leader, entry)

    def _check_commit(self, variant: ConsensusVariant, leader: ConsensusNode, entry: ConsensusEntry):
        if variant == ConsensusVariant.RAFT_JOINT:
            committed = self._raft_committed(entry)
        else:
            committed = len(entry.acks) >= majority(len(self._cluster(variant)))
        if not committed:
            return
        entry.committed = True
        leader.committed_index = max(leader.committed_index, entry.index)
        self.ctx.record(
            "commit" if variant == ConsensusVariant.RAFT_JOINT else "chosen",
            f"{entry.value!r} committed at index {entry.index} ({variant.value})",
            variant=variant.value,
            entry_id=entry.id,
            acks=list(entry.acks),
        )
        for node in self._cluster(variant):
            if node.id != leader.id:
                self._send(variant, leader.id, node.id, "Commit", {"entry_id": entry.id})

    def _on_commit(self, variant: ConsensusVariant, message: Message):
        node = self._cluster(variant).find(message.to_id)
        entry = node.find_entry(message.payload["entry_id"])
        if entry is not None:
            entry.committed = True
            node.committed_index = max(node.committed_index, entry.index)

    # EPaxos

    def propose_epaxos(self, value: Any, path=EPaxosPath.FAST, proposer_id: Optional[str] = None) -> Optional[str]:
        """
        Start an EPaxos instance.

        Args:
            value: Command
            path: ``fast`` when the fast quorum agrees on dependencies,
                ``slow`` when replicas report interfering commands
            proposer_id: Command leader; a random healthy replica if omitted

        Returns:
            The instance id (``i-N``)
        """
        path = EPaxosPath(path)
        cluster = self._cluster(ConsensusVariant.EPAXOS)
        healthy = [n for n in cluster if n.healthy]
        if proposer_id is not None:
            healthy = [n for n in healthy if n.id == proposer_id]
        if not healthy:
            return None
        proposer = self.rng.choice(healthy) if proposer_id is None else healthy[0]
        proposer.role = VariantRole.PROPOSER

        instance = EPaxosInstance(
            id=f"i-{self.instance_counter}",
            leader_id=proposer.id,
            command=value,
            path=path,
            deps=[i.id for i in proposer.instances],
            replies=[proposer.id],
        )
        self.instance_counter += 1
        proposer.instances.append(instance)
        self.ctx.record("epaxos", f"{proposer.id} proposes {value!r} ({path.value})",
                        instance_id=instance.id, path=path.value, leader_id=proposer.id)

        quorum = [n for n in cluster if n.id != proposer.id][: fast_quorum_size(len(cluster)) - 1]
        for node in quorum:
            self._send(ConsensusVariant.EPAXOS, proposer.id, node.id, "PreAccept", {
                "instance_id": instance.id,
                "command": value,
                "deps": list(instance.deps),
                "interfering": path == EPaxosPath.SLOW,
            })
        return instance.id

    def _on_pre_accept(self, message: Message):
        node = self._cluster(ConsensusVariant.EPAXOS).find(message.to_id)
        payload = message.payload
        deps = list(payload["deps"])
        if payload["interfering"]:
            deps += [i.id for i in node.instances if i.id not in deps]
        if node.find_instance(payload["instance_id"]) is None:
            node.instances.append(EPaxosInstance(
                id=payload["instance_id"],
                leader_id=message.from_id,
                command=payload["command"],
                path=EPaxosPath.SLOW if payload["interfering"] else EPaxosPath.FAST,
                deps=deps,
            ))
        self._send(ConsensusVariant.EPAXOS, node.id, message.from_id, "PreAcceptOK", {
            "instance_id": payload["instance_id"],
            "deps": deps,
            "changed": payload["interfering"] or deps != payload["deps"],
        })

    def _on_pre_accept_ok(self, message: Message):
        cluster = self._cluster(ConsensusVariant.EPAXOS)
        leader = cluster.find(message.to_id)
        instance = leader.find_instance(message.payload["instance_id"])
        if instance is None or instance.status != InstanceStatus.PRE_ACCEPTED:
            return
        if message.from_id not in instance.replies:
            instance.replies.append(message.from_id)
        if message.payload["changed"]:
            instance.conflict = True
            instance.deps = sorted(set(instance.deps) | set(message.payload["deps"]))
        if len(instance.replies) < fast_quorum_size(len(cluster)):
            return

        if not instance.conflict:
            self._commit_instance(leader, instance, "fast")
            return
        instance.status = InstanceStatus.ACCEPTED
        instance.accept_oks = [leader.id]
        self.ctx.record("epaxos_accept", f"{leader.id} runs Accept for {instance.id} (slow path)",
                        instance_id=instance.id)
        others = [n for n in cluster if n.id != leader.id][: majority(len(cluster)) - 1]
        for node in others:
            self._send(ConsensusVariant.EPAXOS, leader.id, node.id, "EAccept", {
                "instance_id": instance.id,
                "deps": list(instance.deps),
            })

    def _on_epaxos_accept(self, message: Message):
        node = self._cluster(ConsensusVariant.EPAXOS).find(message.to_id)
        instance = node.find_instance(message.payload["instance_id"])
        if instance is not None:
            instance.deps = list(message.payload["deps"])
            instance.status = InstanceStatus.ACCEPTED
        self._send(ConsensusVariant.EPAXOS, node.id, message.from_id, "EAcceptOK",
                   {"instance_id": message.payload["instance_id"]})

    def _on_epaxos_accept_ok(self, message: Message):
        cluster = self._cluster(ConsensusVariant.EPAXOS)
        leader = cluster.find(message.to_id)
        instance = leader.find_instance(message.payload["instance_id"])
        if instance is None or instance.status != InstanceStatus.ACCEPTED:
            return
        if message.from_id not in instance.accept_oks:
            instance.accept_oks.append(message.from_id)
        if len(instance.accept_oks) >= majority(len(cluster)):
            self._commit_instance(leader, instance, "slow")

    def _commit_instance(self, leader: ConsensusNode, instance: EPaxosInstance, path: str):
        instance.status = InstanceStatus.COMMITTED
        self.ctx.record("epaxos_commit", f"{instance.id} ({instance.command!r}) committed on the {path} path",
                        instance_id=instance.id, path=path, deps=list(instance.deps))
        for node in self._cluster(ConsensusVariant.EPAXOS):
            if node.id != leader.id:
                self._send(ConsensusVariant.EPAXOS, leader.id, node.id, "ECommit", {
                    "instance_id": instance.id,
                    "command": instance.command,
                    "deps": list(instance.deps),
                })

    def _on_epaxos_commit(self, message: Message):
        node = self._cluster(ConsensusVariant.EPAXOS).find(message.to_id)
        payload = message.payload
        instance = node.find_instance(payload["instance_id"])
        if instance is None:
            instance = EPaxosInstance(
                id=payload["instance_id"],
                leader_id=message.from_id,
                command=payload["command"],
                path=EPaxosPath.FAST,
            )
            node.instances.append(instance)
        instance.deps = list(payload["deps"])
        instance.status = InstanceStatus.COMMITTED

    # Faults

    def fail_node(self, variant, node_id: str):
        node = self._cluster(variant).find(node_id)
        if node is None or not node.healthy:
            return
        node.status = HealthStatus.FAILED
        self.ctx.record("node_failed", f"{node_id} failed ({ConsensusVariant(variant).value})",
                        variant=ConsensusVariant(variant).value, node_id=node_id)

    def recover_node(self, variant, node_id: str):
        node = self._cluster(variant).find(node_id)
        if node is None or node.healthy:
            return
        node.status = HealthStatus.HEALTHY
        self.ctx.record("node_recovered", f"{node_id} recovered ({ConsensusVariant(variant).value})",
                        variant=ConsensusVariant(variant).value, node_id=node_id)

    def _is_undeliverable(self, message: Message) -> bool:
        cluster = self._cluster(message.payload["variant"])
        sender = cluster.find(message.from_id)
        recipient = cluster.find(message.to_id)
        return sender is None or recipient is None or not sender.healthy or not recipient.healthy

    # Engine hooks

    def _dispatch(self, message: Message):
        variant = ConsensusVariant(message.payload["variant"])
        if message.type in ("Append", "Accept"):
            self._on_append(variant, message)
        elif message.type in ("AppendAck", "Accepted"):
            self._on_append_ack(variant, message)
        elif message.type == "Commit":
            self._on_commit(variant, message)
        elif message.type == "PreAccept":
            self._on_pre_accept(message)
        elif message.type == "PreAcceptOK":
            self._on_pre_accept_ok(message)
        elif message.type == "EAccept":
            self._on_epaxos_accept(message)
        elif message.type == "EAcceptOK":
            self._on_epaxos_accept_ok(message)
        elif message.type == "ECommit":
            self._on_epaxos_commit(message)

    def deliver(self, message_id: str) -> Optional[MessageStatus]:
        return self.ctx.messages.deliver(message_id)

    def deliver_all(self) -> int:
        return self.ctx.messages.deliver_all()

    def tick(self):
        self.ctx.tick()

    def reset(self):
        self.ctx.reset()
        self.entry_counter = 0
        self.instance_counter = 0
        self.rng = random.Random(self.seed)

    def snapshot(self) -> ProtocolSnapshot:
        return self.ctx.snapshot(
            entry_counter=self.entry_counter,
            instance_counter=self.instance_counter,
            rng_state=self.rng.getstate(),
        )

    def restore(self, snapshot: ProtocolSnapshot):
        extra = self.ctx.restore(snapshot)
        self.entry_counter = extra.get("entry_counter", 0)
        self.instance_counter = extra.get("instance_counter", 0)
        if "rng_state" in extra:
            self.rng.setstate(extra["rng_state"])

    def _variant_stats(self, variant: ConsensusVariant) -> Dict[str, Any]:
        nodes = self._cluster(variant).values()
        leader = self._leader(variant)
        stats = {
            "nodes": len(nodes),
            "leader_id": leader.id if leader else None,
            "committed": sum(1 for n in nodes for e in n.log if e.committed),
        }
        if variant == ConsensusVariant.RAFT_JOINT:
            stats["config_phase"] = nodes[0].config_phase.value if nodes else None
            stats["new_config"] = [n.id for n in nodes if n.in_new_config]
        elif variant == ConsensusVariant.EPAXOS:
            instances = {i.id: i for n in nodes for i in n.instances if n.id == i.leader_id}
            stats["instances"] = len(instances)
            stats["committed"] = sum(1 for i in instances.values() if i.status == InstanceStatus.COMMITTED)
            stats["slow_path"] = sum(1 for i in instances.values() if i.conflict)
        return stats

    def get_stats(self, variant=None) -> Dict[str, Any]:
        """Stats of one variant, or of all three plus message counts."""
        if variant is not None:
            return self._variant_stats(ConsensusVariant(variant))
        stats: Dict[str, Any] = {v.value: self._variant_stats(v) for v in ConsensusVariant}
        stats["messages"] = message_counts(self.ctx.messages)
        return stats
