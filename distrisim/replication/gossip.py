"""
Gossip-based anti-entropy over a versioned key/value store.

Every round each healthy node picks ``fanout`` random peers and exchanges
state with them in push, pull or push-pull mode. Entries merge by version;
equal versions are ordered by origin id so replicas converge to the same
value.
"""
import logging
import random
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from distrisim.core.context import ProtocolSnapshot, SimulationContext
from distrisim.core.layout import Position, circle_position
from distrisim.core.message_pool import Message, MessageStatus
from distrisim.core.participant import HealthStatus
from distrisim.core.stats import message_counts

logger = logging.getLogger(__name__)


class GossipMode(str, Enum):
    PUSH = "push"
    PULL = "pull"
    PUSH_PULL = "push-pull"


@dataclass
class GossipValue:
    value: Any
    version: int
    origin: str
    timestamp: int = 0

    def newer_than(self, other: Optional["GossipValue"]) -> bool:
        if other is None:
            return True
        return (self.version, self.origin) > (other.version, other.origin)


@dataclass
class GossipNode:
    id: str
    position: Position
    status: HealthStatus = HealthStatus.HEALTHY
    data: Dict[str, GossipValue] = field(default_factory=dict)
    version: int = 0

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


class GossipAntiEntropyAlgorithm:
    """Gossip cluster ``N0..`` with a seeded peer selection."""

    name = "gossip-anti-entropy"

    def __init__(self, node_count: int = 6, seed: int = 42):
        self.node_count = node_count
        self.seed = seed
        self.rng = random.Random(seed)
        self.ctx = SimulationContext(
            self.name,
            message_prefix="gossip",
            dispatch=self._dispatch,
            should_drop=self._is_undeliverable,
        )
        self.nodes = self.ctx.registry("nodes", self._initial_nodes)

    def _initial_nodes(self) -> List[GossipNode]:
        return [
            GossipNode(id=f"N{i}", position=circle_position(i, self.node_count, radius=210))
            for i in range(self.node_count)
        ]

    # Queries

    def get_nodes(self) -> List[GossipNode]:
        return self.nodes.list()

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    # Writes

    def set_value(self, node_id: str, key: str, value: Any) -> bool:
        """
        Write ``key`` locally on ``node_id`` with the next version.

        Returns:
            False when the node is missing or failed
        """
        node = self.nodes.find(node_id)
        if node is None or not node.healthy:
            self.ctx.record("set_failed", f"Write to {node_id} failed (node unhealthy)", node_id=node_id, key=key)
            return False

        existing = node.data.get(key)
        node.data[key] = GossipValue(
            value=value,
            version=(existing.version if existing else 0) + 1,
            origin=node.id,
            timestamp=self.ctx.clock.now,
        )
        node.version += 1
        self.ctx.record("set_value", f"{node_id} sets {key}={value!r}", node_id=node_id, key=key, value=value)
        return True

    # Rounds

    def gossip_round(self, mode: GossipMode = GossipMode.PUSH_PULL, fanout: int = 1) -> int:
        """
        Start one gossip round.

        Args:
            mode: Exchange direction
            fanout: Peers contacted by each node

        Returns:
            Number of gossip messages sent
        """
        mode = GossipMode(mode)
        healthy = [n for n in self.nodes if n.healthy]
        if len(healthy) < 2:
            self.ctx.record("gossip_skip", "Not enough healthy nodes for gossip round")
            return 0

        sent = 0
        for node in healthy:
            peers = [p for p in healthy if p.id != node.id]
            for target in self.rng.sample(peers, min(fanout, len(peers))):
                entries = {} if mode == GossipMode.PULL else self._entries(node)
                self.ctx.send(node.id, target.id, "Gossip", {"mode": mode.value, "entries": entries})
                sent += 1
        self.ctx.record("gossip_round", f"Gossip round ({mode.value}) fanout={fanout}", mode=mode.value, fanout=fanout)
        return sent

    @staticmethod
    def _entries(node: GossipNode) -> Dict[str, Dict[str, Any]]:
        return {key: asdict(v) for key, v in node.data.items()}

    def _on_gossip(self, message: Message):
        receiver = self.nodes.find(message.to_id)
        mode = GossipMode(message.payload["mode"])
        if mode != GossipMode.PULL:
            self._merge(message.from_id, receiver, message.payload["entries"])
        if mode != GossipMode.PUSH:
            self.ctx.send(receiver.id, message.from_id, "GossipReply", {"entries": self._entries(receiver)})

    def _on_gossip_reply(self, message: Message):
        self._merge(message.from_id, self.nodes.find(message.to_id), message.payload["entries"])

    def _merge(self, source_id: str, target: GossipNode, entries: Dict[str, Dict[str, Any]]):
        updated = []
        for key, raw in entries.items():
            incoming = GossipValue(**raw)
            if incoming.newer_than(target.data.get(key)):
                target.data[key] = incoming
                updated.append(key)
        if updated:
            target.version += len(updated)
            self.ctx.record(
                "gossip_update",
                f"{source_id} synced {', '.join(updated)} to {target.id}",
                from_id=source_id,
                to_id=target.id,
                keys=updated,
            )

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
        sender = self.nodes.find(message.from_id)
        recipient = self.nodes.find(message.to_id)
        return sender is None or recipient is None or not sender.healthy or not recipient.healthy

    # Engine hooks

    def _dispatch(self, message: Message):
        if message.type == "Gossip":
            self._on_gossip(message)
        elif message.type == "GossipReply":
            self._on_gossip_reply(message)

    def deliver(self, message_id: str) -> Optional[MessageStatus]:
        return self.ctx.messages.deliver(message_id)

    def deliver_all(self) -> int:
        return self.ctx.messages.deliver_all()

    def tick(self):
        self.ctx.tick()

    def reset(self):
        self.ctx.reset()
        self.rng = random.Random(self.seed)

    def snapshot(self) -> ProtocolSnapshot:
        return self.ctx.snapshot(rng_state=self.rng.getstate())

    def restore(self, snapshot: ProtocolSnapshot):
        extra = self.ctx.restore(snapshot)
        if "rng_state" in extra:
            self.rng.setstate(extra["rng_state"])

    def divergent_nodes(self) -> List[str]:
        """Healthy nodes missing the newest version of some key."""
        latest: Dict[str, GossipValue] = {}
        for node in self.nodes:
            for key, value in node.data.items():
                if value.newer_than(latest.get(key)):
                    latest[key] = value
        return [
            node.id for node in self.nodes
            if node.healthy and any(node.data.get(k) != v for k, v in latest.items())
        ]

    def get_stats(self) -> Dict[str, Any]:
        nodes = self.nodes.values()
        divergent = self.divergent_nodes()
        return {
            "total_nodes": len(nodes),
            "healthy_nodes": sum(1 for n in nodes if n.healthy),
            "failed_nodes": sum(1 for n in nodes if not n.healthy),
            "total_keys": len({k for n in nodes for k in n.data}),
            "divergent_nodes": len(divergent),
            "converged": not divergent,
            "messages": message_counts(self.ctx.messages),
        }
