"""
Shard assignment and rebalancing across a changing set of nodes.

The key space ``0..HASH_SPACE-1`` is cut into one contiguous range per
active node. With the ``range`` strategy a key is placed by its own value,
with ``hash`` by a hash of it. Every change of membership or strategy
recomputes the ranges and emits one ``MoveShard`` message per
(source, destination) pair; keys change hands when the message arrives.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from distrisim.core.context import ProtocolSnapshot, SimulationContext
from distrisim.core.layout import Position, circle_position
from distrisim.core.message_pool import Message, MessageStatus
from distrisim.core.stats import load_summary, message_counts

logger = logging.getLogger(__name__)

HASH_SPACE = 100
DEFAULT_KEY_COUNT = 60


class ShardingStrategy(str, Enum):
    RANGE = "range"
    HASH = "hash"


class ShardNodeStatus(str, Enum):
    ACTIVE = "active"
    DRAINING = "draining"


@dataclass
class ShardRange:
    start: int
    end: int

    def __contains__(self, point: int) -> bool:
        return self.start <= point <= self.end


@dataclass
class ShardNode:
    id: str
    position: Position
    status: ShardNodeStatus = ShardNodeStatus.ACTIVE
    shard: Optional[ShardRange] = None
    keys: List[int] = field(default_factory=list)

    @property
    def load(self) -> int:
        return len(self.keys)


def compute_ranges(count: int, space: int = HASH_SPACE) -> List[ShardRange]:
    """Split ``0..space-1`` into ``count`` contiguous ranges, the last one absorbing the rest."""
    if count <= 0:
        return []
    size = space // count
    return [
        ShardRange(i * size, space - 1 if i == count - 1 else (i + 1) * size - 1)
        for i in range(count)
    ]


class ShardingRebalancingAlgorithm:
    """Nodes ``N0..`` owning keys ``0..key_count-1``."""

    name = "sharding-rebalancing"

    def __init__(
        self,
        node_count: int = 3,
        strategy: ShardingStrategy = ShardingStrategy.RANGE,
        key_count: int = DEFAULT_KEY_COUNT,
    ):
        self.node_count = node_count
        self.initial_strategy = ShardingStrategy(strategy)
        self.strategy = self.initial_strategy
        self.key_count = key_count
        self.next_node_index = node_count
        self.ctx = SimulationContext(
            self.name,
            message_prefix="shard",
            dispatch=self._dispatch,
            should_drop=lambda m: m.to_id not in self.nodes,
        )
        self.nodes = self.ctx.registry("nodes", self._initial_nodes)

    def _initial_nodes(self) -> List[ShardNode]:
        nodes = [
            ShardNode(id=f"N{i}", position=circle_position(i, self.node_count))
            for i in range(self.node_count)
        ]
        ranges = compute_ranges(len(nodes))
        for node, shard in zip(nodes, ranges):
            node.shard = shard
        for key in range(self.key_count):
            owner = self._owner_among(nodes, key, self.initial_strategy)
            if owner is not None:
                owner.keys.append(key)
        return nodes

    def shard_key(self, key: int, strategy: Optional[ShardingStrategy] = None) -> int:
        if (strategy or self.strategy) == ShardingStrategy.HASH:
            return (key * 37) % HASH_SPACE
        return key

    def _owner_among(self, nodes: List[ShardNode], key: int, strategy: ShardingStrategy) -> Optional[ShardNode]:
        point = self.shard_key(key, strategy)
        for node in nodes:
            if node.shard is not None and point in node.shard:
                return node
        return None

    def _active(self) -> List[ShardNode]:
        return [n for n in self.nodes if n.status == ShardNodeStatus.ACTIVE]

    # Queries

    def get_nodes(self) -> List[ShardNode]:
        return self.nodes.list()

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    def owner_of(self, key: int) -> Optional[str]:
        """Node that should own ``key`` under the current assignment."""
        owner = self._owner_among(self._active(), key, self.strategy)
        return owner.id if owner else None

    def holder_of(self, key: int) -> Optional[str]:
        """Node that currently stores ``key``."""
        for node in self.nodes:
            if key in node.keys:
                return node.id
        return None

    # Membership

    def set_strategy(self, strategy: ShardingStrategy):
        self.strategy = ShardingStrategy(strategy)
        self.ctx.record("set_strategy", f"Strategy set to {self.strategy.value}", strategy=self.strategy.value)
        self.rebalance()

    def add_node(self) -> str:
        node_id = f"N{self.next_node_index}"
        self.next_node_index += 1
        self.nodes.upsert(ShardNode(id=node_id, position=Position(0, 0)))
        self._relayout()
        self.ctx.record("node_added", f"{node_id} joined", node_id=node_id)
        self.rebalance()
        return node_id

    def remove_node(self, node_id: str):
        """Decommission a node; it leaves once its keys have migrated."""
        node = self.nodes.find(node_id)
        if node is None or node.status == ShardNodeStatus.DRAINING:
            return
        node.status = ShardNodeStatus.DRAINING
        node.shard = None
        self.ctx.record("node_draining", f"{node_id} is draining", node_id=node_id)
        self.rebalance()
        self._retire_drained()

    def _relayout(self):
        nodes = self.nodes.values()
        for i, node in enumerate(nodes):
            node.position = circle_position(i, len(nodes))

    def _retire_drained(self):
        pending_sources = {m.from_id for m in self.ctx.messages.list_in_flight()}
        for node in self.nodes:
            if node.status == ShardNodeStatus.DRAINING and not node.keys and node.id not in pending_sources:
                self.nodes.remove(node.id)
                self.ctx.record("node_removed", f"{node.id} left the cluster", node_id=node.id)
                self._relayout()

    # Rebalancing

    def rebalance(self) -> int:
        """
        Recompute ranges for the active nodes and schedule key moves.

        Returns:
            Number of ``MoveShard`` messages sent
        """
        active = self._active()
        for node, shard in zip(active, compute_ranges(len(active))):
            node.shard = shard

        moves: Dict[Tuple[str, str], List[int]] = {}
        in_flight = {k for m in self.ctx.messages.list_in_flight() for k in m.payload["keys"]}
        for node in self.nodes:
            for key in node.keys:
                if key in in_flight:
                    continue
                owner = self._owner_among(active, key, self.strategy)
                if owner is not None and owner.id != node.id:
                    moves.setdefault((node.id, owner.id), []).append(key)

        for (source, target), keys in moves.items():
            shard = self.nodes.find(target).shard
            self.ctx.send(source, target, "MoveShard", {
                "range": [shard.start, shard.end],
                "keys": keys,
                "strategy": self.strategy.value,
            })
        self.ctx.record(
            "rebalance",
            f"Rebalanced using {self.strategy.value} sharding",
            strategy=self.strategy.value,
            migrations=len(moves),
        )
        logger.info(f"Sharding: {len(moves)} migrations across {len(active)} nodes")
        return len(moves)

    def _on_move_shard(self, message: Message):
        source = self.nodes.find(message.from_id)
        target = self.nodes.find(message.to_id)
        keys = message.payload["keys"]
        if source is not None:
            source.keys = [k for k in source.keys if k not in keys]
        target.keys = sorted(set(target.keys) | set(keys))
        self.ctx.record(
            "shard_moved",
            f"{len(keys)} keys moved {message.from_id} -> {message.to_id}",
            from_id=message.from_id,
            to_id=message.to_id,
            keys=keys,
        )
        self._retire_drained()

    # Engine hooks

    def _dispatch(self, message: Message):
        if message.type == "MoveShard":
            self._on_move_shard(message)

    def deliver(self, message_id: str) -> Optional[MessageStatus]:
        return self.ctx.messages.deliver(message_id)

    def deliver_all(self) -> int:
        return self.ctx.messages.deliver_all()

    def tick(self):
        self.ctx.tick()

    def reset(self):
        self.ctx.reset()
        self.strategy = self.initial_strategy
        self.next_node_index = self.node_count

    def snapshot(self) -> ProtocolSnapshot:
        return self.ctx.snapshot(strategy=self.strategy, next_node_index=self.next_node_index)

    def restore(self, snapshot: ProtocolSnapshot):
        extra = self.ctx.restore(snapshot)
        self.strategy = extra.get("strategy", self.initial_strategy)
        self.next_node_index = extra.get("next_node_index", self.node_count)

    def get_stats(self) -> Dict[str, Any]:
        active = self._active()
        migrating = sum(len(m.payload["keys"]) for m in self.ctx.messages.list_in_flight())
        return {
            "total_nodes": len(active),
            "draining_nodes": len(self.nodes) - len(active),
            "strategy": self.strategy.value,
            "total_keys": self.key_count,
            "avg_load": self.key_count / len(active) if active else 0,
            "migrating_keys": migrating,
            "load": load_summary([n.load for n in active]),
            "messages": message_counts(self.ctx.messages),
        }
