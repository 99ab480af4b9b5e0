"""
Merkle-tree anti-entropy between two replicas.

Both replicas hash the same ordered key space into a binary tree. A sync
starts by comparing the roots, descends only into subtrees whose hashes
differ and finally ships the differing leaves, newest version wins.
"""
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from distrisim.core.context import ProtocolSnapshot, SimulationContext
from distrisim.core.layout import Position, row_layout
from distrisim.core.message_pool import Message, MessageStatus
from distrisim.core.stats import message_counts

logger = logging.getLogger(__name__)

KEY_COUNT = 12

KeyRange = Tuple[str, str]


def digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:12]


@dataclass
class MerkleTreeNode:
    hash: str
    range: KeyRange
    left: Optional["MerkleTreeNode"] = None
    right: Optional["MerkleTreeNode"] = None

    @property
    def is_leaf(self) -> bool:
        return self.left is None or self.right is None

    def find(self, key_range: KeyRange) -> Optional["MerkleTreeNode"]:
        if tuple(self.range) == tuple(key_range):
            return self
        for child in (self.left, self.right):
            match = child.find(key_range) if child is not None else None
            if match is not None:
                return match
        return None


def build_tree(leaves: List[MerkleTreeNode]) -> Optional[MerkleTreeNode]:
    """
    Pair nodes level by level; an odd node is carried up unchanged.
    """
    if not leaves:
        return None
    level = leaves
    while len(level) > 1:
        parents = []
        for i in range(0, len(level), 2):
            if i + 1 == len(level):
                parents.append(level[i])
                continue
            left, right = level[i], level[i + 1]
            parents.append(MerkleTreeNode(
                hash=digest(left.hash + right.hash),
                range=(left.range[0], right.range[1]),
                left=left,
                right=right,
            ))
        level = parents
    return level[0]


@dataclass
class MerkleReplica:
    id: str
    position: Position
    data: Dict[str, str] = field(default_factory=dict)
    versions: Dict[str, int] = field(default_factory=dict)
    root: Optional[MerkleTreeNode] = None


class MerkleAntiEntropyAlgorithm:
    """Replicas ``R0`` and ``R1`` over keys ``k1..k12``."""

    name = "merkle-anti-entropy"

    def __init__(self, replica_count: int = 2, key_count: int = KEY_COUNT):
        self.replica_count = max(replica_count, 2)
        self.key_space = [f"k{i + 1}" for i in range(key_count)]
        self.ctx = SimulationContext(self.name, message_prefix="merkle", dispatch=self._dispatch)
        self.replicas = self.ctx.registry("replicas", self._initial_replicas)

    def _initial_replicas(self) -> List[MerkleReplica]:
        positions = row_layout(self.replica_count, y=320, start_x=220, spacing=400)
        replicas = []
        for i in range(self.replica_count):
            replica = MerkleReplica(id=f"R{i}", position=positions[i])
            for key in self.key_space:
                replica.data[key] = f"{key}-v1"
                replica.versions[key] = 1
            replicas.append(replica)

        # Initial divergence: R0 is ahead on k3 and k7, R1 on k9
        for replica_index, key in ((0, "k3"), (0, "k7"), (1, "k9")):
            if key in replicas[replica_index].data:
                replicas[replica_index].data[key] = f"{key}-v2"
                replicas[replica_index].versions[key] = 2

        for replica in replicas:
            self._rebuild(replica)
        return replicas

    def _rebuild(self, replica: MerkleReplica):
        leaves = [
            MerkleTreeNode(
                hash=digest(f"{key}:{replica.data.get(key, '')}:{replica.versions.get(key, 0)}"),
                range=(key, key),
            )
            for key in self.key_space
        ]
        replica.root = build_tree(leaves)

    @property
    def pair(self) -> Tuple[MerkleReplica, MerkleReplica]:
        replicas = self.replicas.values()
        return replicas[0], replicas[1]

    # Queries

    def get_replicas(self) -> List[MerkleReplica]:
        return self.replicas.list()

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    def mismatched_keys(self) -> List[str]:
        a, b = self.pair
        return [k for k in self.key_space if a.data.get(k) != b.data.get(k)]

    # Operations

    def mutate_replica(self, replica_id: str, key: str, value: str):
        """Local write on one replica; bumps the key's version."""
        replica = self.replicas.find(replica_id)
        if replica is None or key not in self.key_space:
            return
        replica.data[key] = value
        replica.versions[key] = replica.versions.get(key, 0) + 1
        self._rebuild(replica)
        self.ctx.record("mutate", f"{replica_id} updates {key}={value}", replica_id=replica_id, key=key, value=value)

    def compare_roots(self):
        """Start a sync round: ``R0`` sends its root hash to ``R1``."""
        a, b = self.pair
        self.ctx.send(a.id, b.id, "CompareRoot", {
            "range": list(a.root.range),
            "hash": a.root.hash,
        })
        self.ctx.record("compare_root", "Compare root hashes", root_hash=a.root.hash)

    def _on_compare(self, message: Message):
        a, b = self.pair
        key_range = tuple(message.payload["range"])
        node_a = a.root.find(key_range)
        node_b = b.root.find(key_range)
        if node_a is None or node_b is None:
            return

        if message.payload["hash"] == node_b.hash:
            if message.type == "CompareRoot":
                self.ctx.record("roots_match", "Roots match, no sync needed")
            else:
                self.ctx.record("node_match", f"Range {key_range[0]}-{key_range[1]} matches", range=list(key_range))
            return

        if node_a.is_leaf or node_b.is_leaf:
            self._sync_leaf(key_range[0])
            return

        self.ctx.record(
            "node_mismatch",
            f"Range {key_range[0]}-{key_range[1]} differs, descending",
            range=list(key_range),
        )
        for child in (node_a.left, node_a.right):
            self.ctx.send(a.id, b.id, "CompareNode", {"range": list(child.range), "hash": child.hash})

    def _sync_leaf(self, key: str):
        a, b = self.pair
        source, target = (a, b) if a.versions.get(key, 0) >= b.versions.get(key, 0) else (b, a)
        self.ctx.send(source.id, target.id, "SyncLeaf", {
            "range": [key, key],
            "key": key,
            "value": source.data.get(key),
            "version": source.versions.get(key, 0),
        })
        self.ctx.record("sync_leaf", f"Sync {key} {source.id} -> {target.id}", key=key, from_id=source.id)

    def _on_sync_leaf(self, message: Message):
        replica = self.replicas.find(message.to_id)
        key = message.payload["key"]
        if message.payload["version"] < replica.versions.get(key, 0):
            return
        replica.data[key] = message.payload["value"]
        replica.versions[key] = message.payload["version"]
        self._rebuild(replica)
        self.ctx.record("leaf_repaired", f"{replica.id} repaired {key}", replica_id=replica.id, key=key)

    # Engine hooks

    def _dispatch(self, message: Message):
        if message.type in ("CompareRoot", "CompareNode"):
            self._on_compare(message)
        elif message.type == "SyncLeaf":
            self._on_sync_leaf(message)

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
        a, b = self.pair
        mismatched = self.mismatched_keys()
        return {
            "replica_count": len(self.replicas),
            "key_count": len(self.key_space),
            "mismatched_keys": len(mismatched),
            "roots_match": a.root.hash == b.root.hash,
            "messages": message_counts(self.ctx.messages),
        }
