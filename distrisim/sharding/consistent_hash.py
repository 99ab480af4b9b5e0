"""
Consistent hashing on a 32-bit ring with virtual nodes.
"""
import bisect
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from distrisim.core.context import ProtocolSnapshot, SimulationContext
from distrisim.core.message_pool import Message
from distrisim.core.stats import load_summary, message_counts

logger = logging.getLogger(__name__)

RING_BITS = 32


def ring_hash(key: str) -> int:
    """
    Position of ``key`` on the ring.

    Args:
        key: Server, virtual node or data key

    Returns:
        Integer in ``0 .. 2**32 - 1``
    """
    hash_bytes = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(hash_bytes[:RING_BITS // 8], byteorder="big")


@dataclass
class VirtualNode:
    id: str
    hash_value: int
    physical_id: str
    keys: List[str] = field(default_factory=list)


@dataclass
class HashedKey:
    id: str
    hash_value: int
    node_id: Optional[str] = None


class ConsistentHashingAlgorithm:
    """
    Servers ``server-i`` each placed ``virtual_nodes`` times on the ring.

    A key belongs to the first virtual node clockwise from its hash.
    """

    name = "consistent-hashing"

    def __init__(self, server_count: int = 3, virtual_nodes: int = 3):
        self.server_count = server_count
        self.initial_virtual_nodes = virtual_nodes
        self.virtual_nodes = virtual_nodes
        self.next_server_index = server_count
        self.ctx = SimulationContext(self.name, message_prefix="ring")
        self.ring = self.ctx.registry("ring", self._initial_ring)
        self.keys = self.ctx.registry("keys", list)

    def _initial_ring(self) -> List[VirtualNode]:
        nodes = []
        for i in range(self.server_count):
            nodes.extend(self._virtual_nodes_for(f"server-{i}", self.initial_virtual_nodes))
        return nodes

    @staticmethod
    def _virtual_nodes_for(server_id: str, count: int) -> List[VirtualNode]:
        return [
            VirtualNode(id=f"{server_id}-v{i}", hash_value=ring_hash(f"{server_id}-v{i}"), physical_id=server_id)
            for i in range(count)
        ]

    def _sorted_ring(self) -> List[VirtualNode]:
        return sorted(self.ring.values(), key=lambda n: (n.hash_value, n.id))

    def _node_for(self, hash_value: int, ring: List[VirtualNode]) -> Optional[VirtualNode]:
        if not ring:
            return None
        index = bisect.bisect_left([n.hash_value for n in ring], hash_value)
        return ring[index % len(ring)]

    def _redistribute(self) -> int:
        """Reassign every key; returns how many changed physical server."""
        ring = self._sorted_ring()
        for node in ring:
            node.keys = []
        moved = 0
        for key in self.keys:
            before = self.ring.find(key.node_id) if key.node_id else None
            node = self._node_for(key.hash_value, ring)
            key.node_id = node.id if node else None
            if node is not None:
                node.keys.append(key.id)
            if before is None or node is None or before.physical_id != node.physical_id:
                moved += 1
        return moved

    # Queries

    def get_ring(self) -> List[VirtualNode]:
        return [VirtualNode(**{**vars(n), "keys": list(n.keys)}) for n in self._sorted_ring()]

    def get_keys(self) -> List[HashedKey]:
        return self.keys.list()

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    def get_physical_servers(self) -> List[str]:
        return sorted({n.physical_id for n in self.ring})

    def lookup(self, key: str) -> Optional[str]:
        """Physical server owning ``key``."""
        node = self._node_for(ring_hash(key), self._sorted_ring())
        return node.physical_id if node else None

    def load_distribution(self) -> Dict[str, int]:
        distribution = {server: 0 for server in self.get_physical_servers()}
        for node in self.ring:
            distribution[node.physical_id] += len(node.keys)
        return distribution

    # Membership

    def add_server(self, server_id: Optional[str] = None) -> Optional[str]:
        if server_id is None:
            server_id = f"server-{self.next_server_index}"
            self.next_server_index += 1
        if server_id in self.get_physical_servers():
            return None
        for node in self._virtual_nodes_for(server_id, self.virtual_nodes):
            self.ring.upsert(node)
        moved = self._redistribute()
        self.ctx.record(
            "server_added",
            f"Added server {server_id} with {self.virtual_nodes} virtual nodes",
            server_id=server_id,
            virtual_nodes=self.virtual_nodes,
            keys_moved=moved,
        )
        logger.info(f"ConsistentHash: {server_id} joined, {moved} keys moved")
        return server_id

    def remove_server(self, server_id: str) -> int:
        """
        Remove a server and hand its keys to the next virtual nodes clockwise.

        Returns:
            Number of keys that moved
        """
        vnodes = [n for n in self.ring if n.physical_id == server_id]
        if not vnodes:
            return 0
        affected = sum(len(n.keys) for n in vnodes)
        for node in vnodes:
            self.ring.remove(node.id)
        self._redistribute()
        self.ctx.record(
            "server_removed",
            f"Removed server {server_id}",
            server_id=server_id,
            keys_affected=affected,
        )
        return affected

    def set_virtual_nodes(self, count: int):
        """Rebuild the ring with ``count`` virtual nodes per server."""
        if count < 1:
            return
        servers = self.get_physical_servers()
        for node in list(self.ring):
            self.ring.remove(node.id)
        self.virtual_nodes = count
        for server_id in servers:
            for node in self._virtual_nodes_for(server_id, count):
                self.ring.upsert(node)
        moved = self._redistribute()
        self.ctx.record(
            "virtual_nodes_changed",
            f"Changed virtual nodes per server to {count}",
            count=count,
            keys_moved=moved,
        )

    # Keys

    def add_key(self, key: str) -> Optional[str]:
        """
        Place ``key`` on the ring.

        Returns:
            The owning physical server, or None on an empty ring
        """
        ring = self._sorted_ring()
        node = self._node_for(ring_hash(key), ring)
        if node is None:
            logger.warning("ConsistentHash: no servers available to store key")
            return None
        if key not in self.keys:
            self.keys.upsert(HashedKey(id=key, hash_value=ring_hash(key), node_id=node.id))
            node.keys.append(key)
        self.ctx.record(
            "key_added",
            f'Added key "{key}" to {node.physical_id}',
            key=key,
            node_id=node.physical_id,
        )
        return node.physical_id

    def add_keys(self, count: int, prefix: str = "key"):
        for i in range(count):
            self.add_key(f"{prefix}-{i}")

    # Engine hooks

    def deliver(self, message_id: str):
        return self.ctx.messages.deliver(message_id)

    def deliver_all(self) -> int:
        return self.ctx.messages.deliver_all()

    def tick(self):
        self.ctx.tick()

    def reset(self):
        self.ctx.reset()
        self.virtual_nodes = self.initial_virtual_nodes
        self.next_server_index = self.server_count

    def snapshot(self) -> ProtocolSnapshot:
        return self.ctx.snapshot(virtual_nodes=self.virtual_nodes, next_server_index=self.next_server_index)

    def restore(self, snapshot: ProtocolSnapshot):
        extra = self.ctx.restore(snapshot)
        self.virtual_nodes = extra.get("virtual_nodes", self.initial_virtual_nodes)
        self.next_server_index = extra.get("next_server_index", self.server_count)

    def get_stats(self) -> Dict[str, Any]:
        distribution = self.load_distribution()
        return {
            "total_nodes": len(self.ring),
            "physical_servers": len(distribution),
            "virtual_nodes_per_server": self.virtual_nodes,
            "total_keys": len(self.keys),
            "load_distribution": distribution,
            "load_stats": load_summary(list(distribution.values())),
            "messages": message_counts(self.ctx.messages),
        }
