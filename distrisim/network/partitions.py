"""
Network partitions and per-partition leader election.

``split`` cuts every link between the two sides; messages crossing the cut
are dropped on delivery. Each side can elect its own leader with a majority
of its own members, which is how a split brain arises. After ``heal`` a new
election with a higher term demotes every stale leader.
"""
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from distrisim.core.context import ProtocolSnapshot, SimulationContext
from distrisim.core.layout import Position, circle_position
from distrisim.core.message_pool import Message, MessageStatus
from distrisim.core.participant import HealthStatus
from distrisim.core.stats import count_by, message_counts

logger = logging.getLogger(__name__)

DEFAULT_PARTITION = "A"


class PartitionRole(str, Enum):
    FOLLOWER = "follower"
    CANDIDATE = "candidate"
    LEADER = "leader"


class LinkStatus(str, Enum):
    UP = "up"
    DOWN = "down"


@dataclass
class PartitionNode:
    id: str
    position: Position
    status: HealthStatus = HealthStatus.HEALTHY
    role: PartitionRole = PartitionRole.FOLLOWER
    term: int = 0
    voted_for: Optional[str] = None
    votes: int = 0
    leader_id: Optional[str] = None
    partition_id: str = DEFAULT_PARTITION

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


@dataclass
class PartitionLink:
    from_id: str
    to_id: str
    status: LinkStatus


class NetworkPartitionsAlgorithm:
    """Nodes ``N0..``; all start in partition ``A`` with every link up."""

    name = "network-partitions"

    def __init__(self, node_count: int = 5, seed: int = 42):
        self.node_count = node_count
        self.seed = seed
        self.rng = random.Random(seed)
        self.ctx = SimulationContext(
            self.name,
            message_prefix="partition",
            dispatch=self._dispatch,
            should_drop=self._is_undeliverable,
        )
        self.nodes = self.ctx.registry("nodes", self._initial_nodes)
        self.current_term = 0

    def _initial_nodes(self) -> List[PartitionNode]:
        return [
            PartitionNode(id=f"N{i}", position=circle_position(i, self.node_count))
            for i in range(self.node_count)
        ]

    # Queries

    def get_nodes(self) -> List[PartitionNode]:
        return self.nodes.list()

    def get_links(self) -> List[PartitionLink]:
        """Directed links between every pair of nodes."""
        return [
            PartitionLink(from_id=a.id, to_id=b.id, status=self._link_status(a, b))
            for a in self.nodes
            for b in self.nodes
            if a.id != b.id
        ]

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    def leaders(self) -> List[str]:
        return [n.id for n in self.nodes if n.role == PartitionRole.LEADER and n.healthy]

    def members(self, partition_id: str) -> List[str]:
        return [n.id for n in self.nodes if n.partition_id == partition_id]

    @staticmethod
    def _link_status(a: PartitionNode, b: PartitionNode) -> LinkStatus:
        return LinkStatus.UP if a.partition_id == b.partition_id else LinkStatus.DOWN

    # Topology

    def split(self, partition_a: List[str], partition_b: List[str]):
        """Move nodes into partitions ``A`` and ``B``; unlisted nodes stay put."""
        for node in self.nodes:
            if node.id in partition_a:
                node.partition_id = "A"
            elif node.id in partition_b:
                node.partition_id = "B"
        self.ctx.record(
            "partition",
            f"Network partition created: {partition_a} | {partition_b}",
            partition_a=list(partition_a),
            partition_b=list(partition_b),
        )

    def heal(self):
        for node in self.nodes:
            node.partition_id = DEFAULT_PARTITION
        self.ctx.record("heal", "Network partition healed")

    # Election

    def start_election(self, partition_id: str, candidate_id: Optional[str] = None) -> Optional[str]:
        """
        Start an election inside one partition.

        Args:
            partition_id: Partition whose members take part
            candidate_id: Candidate; picked at random among the healthy
                members when omitted

        Returns:
            The candidate id, or None when the partition has no healthy member
        """
        members = [n for n in self.nodes if n.partition_id == partition_id and n.healthy]
        if candidate_id is not None:
            members = [n for n in members if n.id == candidate_id]
        if not members:
            logger.debug(f"Partitions: no candidate in partition {partition_id}")
            return None

        candidate = self.rng.choice(members) if candidate_id is None else members[0]
        self.current_term = max(self.current_term, candidate.term) + 1
        candidate.term = self.current_term
        candidate.role = PartitionRole.CANDIDATE
        candidate.voted_for = candidate.id
        candidate.votes = 1
        candidate.leader_id = None
        self.ctx.record(
            "election_start",
            f"{candidate.id} starts election in partition {partition_id} (term {candidate.term})",
            candidate_id=candidate.id,
            partition_id=partition_id,
            term=candidate.term,
        )

        for peer in self.nodes:
            if peer.id != candidate.id and peer.partition_id == partition_id and peer.healthy:
                self.ctx.send(candidate.id, peer.id, "VoteRequest", {
                    "term": candidate.term,
                    "partition_id": partition_id,
                })
        self._check_majority(candidate)
        return candidate.id

    def _on_vote_request(self, message: Message):
        node = self.nodes.find(message.to_id)
        term = message.payload["term"]
        if term > node.term:
            node.term = term
            node.role = PartitionRole.FOLLOWER
            node.voted_for = None
            node.votes = 0
        granted = term == node.term and node.voted_for in (None, message.from_id)
        if granted:
            node.voted_for = message.from_id
        self.ctx.send(node.id, message.from_id, "Vote" if granted else "Reject", {
            "term": node.term,
            "partition_id": node.partition_id,
        })

    def _on_vote(self, message: Message):
        candidate = self.nodes.find(message.to_id)
        if candidate.role != PartitionRole.CANDIDATE or message.payload["term"] != candidate.term:
            return
        candidate.votes += 1
        self._check_majority(candidate)

    def _on_reject(self, message: Message):
        node = self.nodes.find(message.to_id)
        if message.payload["term"] > node.term:
            node.term = message.payload["term"]
            node.role = PartitionRole.FOLLOWER
            node.voted_for = None
            node.votes = 0

    def _check_majority(self, candidate: PartitionNode):
        partition_size = len(self.members(candidate.partition_id))
        if candidate.votes <= partition_size // 2:
            return
        candidate.role = PartitionRole.LEADER
        candidate.leader_id = candidate.id
        candidate.votes = 0
        self.ctx.record(
            "leader_elected",
            f"{candidate.id} becomes leader of partition {candidate.partition_id} (term {candidate.term})",
            leader_id=candidate.id,
            partition_id=candidate.partition_id,
            term=candidate.term,
        )
        if len(self.leaders()) > 1:
            logger.info(f"Partitions: split brain, leaders {self.leaders()}")
        for peer in self.nodes:
            if peer.id != candidate.id and peer.partition_id == candidate.partition_id and peer.healthy:
                self.ctx.send(candidate.id, peer.id, "Heartbeat", {"term": candidate.term})

    def _on_heartbeat(self, message: Message):
        node = self.nodes.find(message.to_id)
        if message.payload["term"] < node.term:
            return
        node.term = message.payload["term"]
        node.role = PartitionRole.FOLLOWER
        node.votes = 0
        node.leader_id = message.from_id

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
        if sender is None or recipient is None or not sender.healthy or not recipient.healthy:
            return True
        return self._link_status(sender, recipient) == LinkStatus.DOWN

    # Engine hooks

    def _dispatch(self, message: Message):
        handlers = {
            "VoteRequest": self._on_vote_request,
            "Vote": self._on_vote,
            "Reject": self._on_reject,
            "Heartbeat": self._on_heartbeat,
        }
        handler = handlers.get(message.type)
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
        self.current_term = 0
        self.rng = random.Random(self.seed)

    def snapshot(self) -> ProtocolSnapshot:
        return self.ctx.snapshot(current_term=self.current_term, rng_state=self.rng.getstate())

    def restore(self, snapshot: ProtocolSnapshot):
        extra = self.ctx.restore(snapshot)
        self.current_term = extra.get("current_term", 0)
        if "rng_state" in extra:
            self.rng.setstate(extra["rng_state"])

    def get_stats(self) -> Dict[str, Any]:
        nodes = self.nodes.values()
        leaders = self.leaders()
        return {
            "total_nodes": len(nodes),
            "healthy_nodes": sum(1 for n in nodes if n.healthy),
            "leaders": len(leaders),
            "leader_ids": leaders,
            "partitions": len({n.partition_id for n in nodes}),
            "split_brain": len(leaders) > 1,
            "roles": count_by(nodes, "role"),
            "links_down": sum(1 for link in self.get_links() if link.status == LinkStatus.DOWN),
            "current_term": self.current_term,
            "messages": message_counts(self.ctx.messages),
        }
