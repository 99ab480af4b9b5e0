"""
Raft consensus model: leader election and log replication.

Elections are triggered explicitly (``start_election``); ``tick`` only
advances logical time. A failed node keeps its role, term and log for
display and simply stops taking part until it recovers.
"""
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from distrisim.core.context import ProtocolSnapshot, SimulationContext
from distrisim.core.layout import Position, circle_position
from distrisim.core.message_pool import Message, MessageStatus
from distrisim.core.participant import HealthStatus
from distrisim.core.stats import count_by, message_counts

logger = logging.getLogger(__name__)


class NodeState(str, Enum):
    """Raft roles."""
    FOLLOWER = "follower"
    CANDIDATE = "candidate"
    LEADER = "leader"


class RaftMessageType:
    REQUEST_VOTE = "RequestVote"
    REQUEST_VOTE_RESPONSE = "RequestVoteResponse"
    APPEND_ENTRIES = "AppendEntries"
    APPEND_ENTRIES_RESPONSE = "AppendEntriesResponse"


@dataclass
class LogEntry:
    """Entry of a Raft log."""
    term: int
    index: int
    command: str


@dataclass
class RaftNode:
    """State of one Raft server."""
    id: str
    position: Position
    status: HealthStatus = HealthStatus.HEALTHY
    state: NodeState = NodeState.FOLLOWER
    term: int = 0
    log: List[LogEntry] = field(default_factory=list)
    commit_index: int = 0
    voted_for: Optional[str] = None
    votes_received: int = 0
    leader_id: Optional[str] = None
    match_index: Dict[str, int] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    @property
    def last_log_index(self) -> int:
        return len(self.log) - 1

    @property
    def last_log_term(self) -> int:
        return self.log[-1].term if self.log else 0

    def become_follower(self, term: int, leader_id: Optional[str] = None):
        """Step down, adopting ``term``; the vote is cleared on a new term."""
        if term > self.term:
            self.voted_for = None
        self.term = term
        self.state = NodeState.FOLLOWER
        self.votes_received = 0
        self.leader_id = leader_id

    def become_candidate(self):
        self.term += 1
        self.state = NodeState.CANDIDATE
        self.voted_for = self.id
        self.votes_received = 1
        self.leader_id = None

    def become_leader(self, peers: List[str]):
        self.state = NodeState.LEADER
        self.leader_id = self.id
        self.match_index = {peer: -1 for peer in peers}


class RaftAlgorithm:
    """
    Raft cluster of ``node_count`` servers named ``node-0``, ``node-1``, ...

    All operations on unknown or failed nodes, and requests sent to
    non-leaders, are silently ignored.
    """

    name = "raft"

    def __init__(self, node_count: int = 5):
        self.node_count = node_count
        self.ctx = SimulationContext(
            self.name,
            dispatch=self._dispatch,
            should_drop=self._is_undeliverable,
        )
        self.nodes = self.ctx.registry("nodes", self._initial_nodes)
        self._handlers = {
            RaftMessageType.REQUEST_VOTE: self._on_request_vote,
            RaftMessageType.REQUEST_VOTE_RESPONSE: self._on_request_vote_response,
            RaftMessageType.APPEND_ENTRIES: self._on_append_entries,
            RaftMessageType.APPEND_ENTRIES_RESPONSE: self._on_append_entries_response,
        }

    def _initial_nodes(self) -> List[RaftNode]:
        return [
            RaftNode(id=f"node-{i}", position=circle_position(i, self.node_count))
            for i in range(self.node_count)
        ]

    # Queries

    def get_nodes(self) -> List[RaftNode]:
        return self.nodes.list()

    def get_node(self, node_id: str) -> Optional[RaftNode]:
        return self.nodes.get(node_id)

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    def get_leader(self) -> Optional[RaftNode]:
        """Healthy leader with the highest term, if any."""
        leaders = [n for n in self.nodes if n.healthy and n.state == NodeState.LEADER]
        if not leaders:
            return None
        return self.nodes.get(max(leaders, key=lambda n: n.term).id)

    def healthy_count(self) -> int:
        return sum(1 for n in self.nodes if n.healthy)

    def _healthy(self, node_id: Optional[str]) -> Optional[RaftNode]:
        node = self.nodes.find(node_id)
        if node is None or not node.healthy:
            return None
        return node

    def _has_majority(self, count: int) -> bool:
        return count > self.healthy_count() / 2

    # Elections

    def start_election(self, node_id: str):
        """
        Turn ``node_id`` into a candidate for a new term and request votes
        from every other healthy node.

        Args:
            node_id: Candidate node
        """
        node = self._healthy(node_id)
        if node is None:
            logger.debug(f"start_election ignored for {node_id}")
            return

        node.become_candidate()
        self.ctx.record(
            "election_started",
            f"{node_id} started election for term {node.term}",
            node_id=node_id,
            term=node.term,
        )

        for peer in self.nodes:
            if peer.id != node_id and peer.healthy:
                self.ctx.send(node_id, peer.id, RaftMessageType.REQUEST_VOTE, {
                    "term": node.term,
                    "candidate_id": node_id,
                    "last_log_index": node.last_log_index,
                    "last_log_term": node.last_log_term,
                })

        # A single-node cluster wins immediately
        if self._has_majority(node.votes_received):
            self._become_leader(node)

    def _on_request_vote(self, message: Message):
        voter = self._healthy(message.to_id)
        if voter is None:
            return
        term = message.payload["term"]
        candidate_id = message.payload["candidate_id"]

        if term > voter.term:
            voter.become_follower(term)

        granted = (
            term >= voter.term
            and voter.voted_for in (None, candidate_id)
        )
        if granted:
            voter.voted_for = candidate_id

        self.ctx.send(voter.id, candidate_id, RaftMessageType.REQUEST_VOTE_RESPONSE, {
            "term": voter.term,
            "vote_granted": granted,
        })
        self.ctx.record(
            "vote_response",
            f"{voter.id} -> {candidate_id}: {'granted' if granted else 'denied'}",
            voter_id=voter.id,
            candidate_id=candidate_id,
            vote_granted=granted,
        )

    def _on_request_vote_response(self, message: Message):
        candidate = self._healthy(message.to_id)
        if candidate is None:
            return
        term = message.payload["term"]

        if term > candidate.term:
            candidate.become_follower(term)
            return
        if not message.payload["vote_granted"] or term != candidate.term:
            return
        if candidate.state not in (NodeState.CANDIDATE, NodeState.LEADER):
            return

        # Late votes of the won term still count toward the displayed tally
        candidate.votes_received += 1
        self.ctx.record(
            "vote_received",
            f"{candidate.id} received vote from {message.from_id}",
            candidate_id=candidate.id,
            votes_received=candidate.votes_received,
        )
        if candidate.state == NodeState.CANDIDATE and self._has_majority(candidate.votes_received):
            self._become_leader(candidate)

    def _become_leader(self, node: RaftNode):
        peers = [n.id for n in self.nodes if n.id != node.id]
        node.become_leader(peers)
        # A failed node keeps its role for display, so a stale leader is demoted too
        for other in self.nodes:
            if (
                other.id != node.id
                and other.term <= node.term
                and (
                    other.state == NodeState.LEADER
                    or (other.healthy and other.state != NodeState.FOLLOWER)
                )
            ):
                other.become_follower(node.term, node.id)

        logger.info(f"Raft: {node.id} is leader for term {node.term}")
        self.ctx.record(
            "leader_elected",
            f"{node.id} became leader for term {node.term}",
            leader_id=node.id,
            term=node.term,
            votes=node.votes_received,
        )
        self._broadcast_append_entries(node, [])

    # Log replication

    def send_heartbeat(self, leader_id: str):
        """Send an empty AppendEntries from ``leader_id`` to its followers."""
        leader = self._healthy(leader_id)
        if leader is None or leader.state != NodeState.LEADER:
            return
        self._broadcast_append_entries(leader, [])
        self.ctx.record("heartbeat_sent", f"{leader_id} sent heartbeat", leader_id=leader_id)

    def add_client_request(self, leader_id: str, command: str):
        """
        Append ``command`` to the leader's log and replicate it.

        Args:
            leader_id: Node believed to be leader
            command: Client command, e.g. ``"SET x=1"``
        """
        leader = self._healthy(leader_id)
        if leader is None or leader.state != NodeState.LEADER:
            logger.debug(f"client request to non-leader {leader_id} ignored")
            return

        entry = LogEntry(term=leader.term, index=len(leader.log), command=command)
        leader.log.append(entry)
        self.ctx.record(
            "client_request",
            f"Client request added to {leader_id}: {command}",
            leader_id=leader_id,
            command=command,
            index=entry.index,
        )
        self._broadcast_append_entries(leader, [entry])

    def _broadcast_append_entries(self, leader: RaftNode, entries: List[LogEntry]):
        for follower in self.nodes:
            if follower.id != leader.id and follower.healthy:
                self.ctx.send(leader.id, follower.id, RaftMessageType.APPEND_ENTRIES, {
                    "term": leader.term,
                    "leader_id": leader.id,
                    "entries": [asdict(e) for e in entries],
                    "leader_commit": leader.commit_index,
                })

    def _on_append_entries(self, message: Message):
        follower = self._healthy(message.to_id)
        if follower is None:
            return
        term = message.payload["term"]
        if term < follower.term:
            # Stale leader: ignored, no negative acknowledgement
            return

        follower.become_follower(term, message.payload["leader_id"])
        for raw in message.payload["entries"]:
            entry = LogEntry(**raw)
            if entry.index > len(follower.log):
                # Gap: no catch-up in this model
                return
            if entry.index < len(follower.log):
                if follower.log[entry.index].term == entry.term:
                    continue
                del follower.log[entry.index:]
            follower.log.append(entry)

        follower.commit_index = max(
            follower.commit_index,
            min(message.payload["leader_commit"], len(follower.log)),
        )
        self.ctx.send(follower.id, message.from_id, RaftMessageType.APPEND_ENTRIES_RESPONSE, {
            "term": follower.term,
            "success": True,
            "match_index": follower.last_log_index,
        })

    def _on_append_entries_response(self, message: Message):
        leader = self._healthy(message.to_id)
        if leader is None:
            return
        term = message.payload["term"]
        if term > leader.term:
            leader.become_follower(term)
            return
        if leader.state != NodeState.LEADER or not message.payload["success"]:
            return

        match = message.payload["match_index"]
        leader.match_index[message.from_id] = max(leader.match_index.get(message.from_id, -1), match)

        for index in range(len(leader.log) - 1, leader.commit_index - 1, -1):
            replicated = 1 + sum(1 for m in leader.match_index.values() if m >= index)
            if leader.log[index].term == leader.term and self._has_majority(replicated):
                leader.commit_index = index + 1
                self.ctx.record(
                    "entry_committed",
                    f"{leader.id} committed entry {index}",
                    leader_id=leader.id,
                    index=index,
                )
                break

    # Faults

    def fail_node(self, node_id: str):
        node = self.nodes.find(node_id)
        if node is None or not node.healthy:
            return
        node.status = HealthStatus.FAILED
        logger.info(f"Raft: {node_id} failed")
        self.ctx.record("node_failed", f"{node_id} failed", node_id=node_id)

    def recover_node(self, node_id: str):
        node = self.nodes.find(node_id)
        if node is None or node.healthy:
            return
        node.status = HealthStatus.HEALTHY
        logger.info(f"Raft: {node_id} recovered")
        self.ctx.record("node_recovered", f"{node_id} recovered", node_id=node_id)

    def _is_undeliverable(self, message: Message) -> bool:
        return self._healthy(message.from_id) is None or self._healthy(message.to_id) is None

    # Engine hooks

    def _dispatch(self, message: Message):
        handler = self._handlers.get(message.type)
        if handler is not None:
            handler(message)

    def deliver(self, message_id: str) -> Optional[MessageStatus]:
        return self.ctx.messages.deliver(message_id)

    def deliver_all(self) -> int:
        return self.ctx.messages.deliver_all()

    def tick(self):
        """Advance logical time; elections are never timeout-driven here."""
        self.ctx.tick()

    def reset(self):
        self.ctx.reset()

    def snapshot(self) -> ProtocolSnapshot:
        return self.ctx.snapshot()

    def restore(self, snapshot: ProtocolSnapshot):
        self.ctx.restore(snapshot)

    def get_stats(self) -> Dict[str, Any]:
        nodes = self.nodes.values()
        healthy = [n for n in nodes if n.healthy]
        leader = self.get_leader()
        roles = count_by(healthy, "state")
        return {
            "total": len(nodes),
            "healthy": len(healthy),
            "failed": len(nodes) - len(healthy),
            "followers": roles.get(NodeState.FOLLOWER.value, 0),
            "candidates": roles.get(NodeState.CANDIDATE.value, 0),
            "leaders": roles.get(NodeState.LEADER.value, 0),
            "current_term": max((n.term for n in nodes), default=0),
            "leader_id": leader.id if leader else None,
            "log_length": len(leader.log) if leader else 0,
            "commit_index": leader.commit_index if leader else 0,
            "messages": message_counts(self.ctx.messages),
        }
