"""
Single-decree Paxos with proposers, acceptors and learners.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from distrisim.core.context import ProtocolSnapshot, SimulationContext
from distrisim.core.layout import Position
from distrisim.core.message_pool import Message, MessageStatus
from distrisim.core.participant import HealthStatus
from distrisim.core.stats import count_by, message_counts

logger = logging.getLogger(__name__)


class PaxosRole(str, Enum):
    PROPOSER = "proposer"
    ACCEPTOR = "acceptor"
    LEARNER = "learner"


@dataclass
class PaxosNode:
    id: str
    position: Position
    role: PaxosRole
    status: HealthStatus = HealthStatus.HEALTHY
    # Proposer
    proposal_number: int = 0
    proposed_value: Any = None
    promises: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    accept_sent: bool = False
    # Acceptor
    promised_proposal: int = 0
    accepted_proposal: int = 0
    accepted_value: Any = None
    # Learner
    accepted_by: Dict[int, List[str]] = field(default_factory=dict)
    learned_value: Any = None

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


class PaxosAlgorithm:
    """
    Proposers ``proposer-i``, acceptors ``acceptor-i`` and learners
    ``learner-i``. Proposal numbers are ``round * 10 + proposer index``.
    """

    name = "paxos"

    def __init__(self, proposer_count: int = 2, acceptor_count: int = 5, learner_count: int = 2):
        self.proposer_count = proposer_count
        self.acceptor_count = acceptor_count
        self.learner_count = learner_count
        self.ctx = SimulationContext(self.name, dispatch=self._dispatch, should_drop=self._is_undeliverable)
        self.nodes = self.ctx.registry("nodes", self._initial_nodes)
        self.next_round = 1
        self.decided_value: Any = None

    def _initial_nodes(self) -> List[PaxosNode]:
        nodes = []
        for i in range(self.proposer_count):
            nodes.append(PaxosNode(f"proposer-{i}", Position(150 + i * 300, 100), PaxosRole.PROPOSER))
        for i in range(self.acceptor_count):
            nodes.append(PaxosNode(f"acceptor-{i}", Position(100 + i * 150, 300), PaxosRole.ACCEPTOR))
        for i in range(self.learner_count):
            nodes.append(PaxosNode(f"learner-{i}", Position(200 + i * 300, 500), PaxosRole.LEARNER))
        return nodes

    @property
    def majority(self) -> int:
        return self.acceptor_count // 2 + 1

    def _by_role(self, role: PaxosRole) -> List[PaxosNode]:
        return [n for n in self.nodes if n.role == role]

    def _live(self, node_id: str, role: PaxosRole) -> Optional[PaxosNode]:
        node = self.nodes.find(node_id)
        if node is None or node.role != role or not node.healthy:
            return None
        return node

    # Queries

    def get_all_nodes(self) -> List[PaxosNode]:
        return self.nodes.list()

    def get_proposers(self) -> List[PaxosNode]:
        return [n for n in self.nodes.list() if n.role == PaxosRole.PROPOSER]

    def get_acceptors(self) -> List[PaxosNode]:
        return [n for n in self.nodes.list() if n.role == PaxosRole.ACCEPTOR]

    def get_learners(self) -> List[PaxosNode]:
        return [n for n in self.nodes.list() if n.role == PaxosRole.LEARNER]

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    def get_decided_value(self) -> Any:
        return self.decided_value

    # Phase 1

    def start_proposal(self, proposer_id: str, value: Any):
        """
        Phase 1a: send ``Prepare(n)`` to every healthy acceptor.

        Args:
            proposer_id: Proposer starting the round
            value: Value proposed if no acceptor reports an accepted one
        """
        proposer = self._live(proposer_id, PaxosRole.PROPOSER)
        if proposer is None:
            return

        index = int(proposer_id.rsplit("-", 1)[1])
        proposer.proposal_number = self.next_round * 10 + index
        self.next_round += 1
        proposer.proposed_value = value
        proposer.promises = {}
        proposer.accept_sent = False

        self.ctx.record(
            "prepare_start",
            f"{proposer_id} starts proposal {proposer.proposal_number} with value: {value}",
            proposer_id=proposer_id,
            proposal_number=proposer.proposal_number,
            value=value,
        )
        for acceptor in self._by_role(PaxosRole.ACCEPTOR):
            if acceptor.healthy:
                self.ctx.send(proposer_id, acceptor.id, "Prepare", {
                    "proposal_number": proposer.proposal_number,
                })

    def _on_prepare(self, message: Message):
        acceptor = self._live(message.to_id, PaxosRole.ACCEPTOR)
        if acceptor is None:
            return
        n = message.payload["proposal_number"]

        if n > acceptor.promised_proposal:
            acceptor.promised_proposal = n
            self.ctx.send(acceptor.id, message.from_id, "Promise", {
                "proposal_number": n,
                "accepted_proposal": acceptor.accepted_proposal,
                "accepted_value": acceptor.accepted_value,
            })
            self.ctx.record(
                "promise_sent",
                f"{acceptor.id} -> {message.from_id}: Promise({n})",
                acceptor_id=acceptor.id,
                proposal_number=n,
            )
        else:
            self.ctx.send(acceptor.id, message.from_id, "Nack", {
                "proposal_number": n,
                "promised_proposal": acceptor.promised_proposal,
            })
            self.ctx.record(
                "nack_sent",
                f"{acceptor.id} -> {message.from_id}: Nack (promised {acceptor.promised_proposal})",
                acceptor_id=acceptor.id,
                promised_proposal=acceptor.promised_proposal,
            )

    # Phase 2

    def _on_promise(self, message: Message):
        proposer = self._live(message.to_id, PaxosRole.PROPOSER)
        if proposer is None or message.payload["proposal_number"] != proposer.proposal_number:
            return

        proposer.promises[message.from_id] = {
            "accepted_proposal": message.payload["accepted_proposal"],
            "accepted_value": message.payload["accepted_value"],
        }
        if proposer.accept_sent or len(proposer.promises) < self.majority:
            return

        value = proposer.proposed_value
        highest = 0
        for promise in proposer.promises.values():
            if promise["accepted_proposal"] > highest:
                highest = promise["accepted_proposal"]
                value = promise["accepted_value"]
        proposer.proposed_value = value
        proposer.accept_sent = True

        self.ctx.record(
            "majority_promises",
            f"{proposer.id} received majority promises",
            proposer_id=proposer.id,
            proposal_number=proposer.proposal_number,
            promise_count=len(proposer.promises),
        )
        for acceptor in self._by_role(PaxosRole.ACCEPTOR):
            if acceptor.healthy:
                self.ctx.send(proposer.id, acceptor.id, "Accept", {
                    "proposal_number": proposer.proposal_number,
                    "value": value,
                })

    def _on_nack(self, message: Message):
        self.ctx.record(
            "nack_received",
            f"{message.to_id} rejected by {message.from_id}",
            proposer_id=message.to_id,
            promised_proposal=message.payload["promised_proposal"],
        )

    def _on_accept(self, message: Message):
        acceptor = self._live(message.to_id, PaxosRole.ACCEPTOR)
        if acceptor is None:
            return
        n = message.payload["proposal_number"]
        if n < acceptor.promised_proposal:
            return

        acceptor.promised_proposal = n
        acceptor.accepted_proposal = n
        acceptor.accepted_value = message.payload["value"]
        self.ctx.record(
            "accepted",
            f"{acceptor.id} accepted value: {acceptor.accepted_value}",
            acceptor_id=acceptor.id,
            proposal_number=n,
            value=acceptor.accepted_value,
        )
        for learner in self._by_role(PaxosRole.LEARNER):
            if learner.healthy:
                self.ctx.send(acceptor.id, learner.id, "Accepted", {
                    "proposal_number": n,
                    "value": acceptor.accepted_value,
                })
        self._check_for_decision()

    def _check_for_decision(self):
        if self.decided_value is not None:
            return
        counts: Dict[int, List[PaxosNode]] = {}
        for acceptor in self._by_role(PaxosRole.ACCEPTOR):
            if acceptor.accepted_proposal:
                counts.setdefault(acceptor.accepted_proposal, []).append(acceptor)
        for n, acceptors in counts.items():
            if len(acceptors) >= self.majority:
                self.decided_value = acceptors[0].accepted_value
                logger.info(f"Paxos: value {self.decided_value!r} chosen with proposal {n}")
                self.ctx.record(
                    "value_decided",
                    f"Consensus reached! Decided value: {self.decided_value}",
                    value=self.decided_value,
                    acceptor_count=len(acceptors),
                )
                return

    def _on_accepted(self, message: Message):
        learner = self._live(message.to_id, PaxosRole.LEARNER)
        if learner is None:
            return
        n = message.payload["proposal_number"]
        voters = learner.accepted_by.setdefault(n, [])
        if message.from_id not in voters:
            voters.append(message.from_id)
        if learner.learned_value is None and len(voters) >= self.majority:
            learner.learned_value = message.payload["value"]
            self.ctx.record(
                "value_learned",
                f"{learner.id} learned value: {learner.learned_value}",
                learner_id=learner.id,
                value=learner.learned_value,
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
        handler = {
            "Prepare": self._on_prepare,
            "Promise": self._on_promise,
            "Nack": self._on_nack,
            "Accept": self._on_accept,
            "Accepted": self._on_accepted,
        }.get(message.type)
        if handler is not None:
            handler(message)

    def deliver(self, message_id: str) -> Optional[MessageStatus]:
        return self.ctx.messages.deliver(message_id)

    def deliver_type(self, message_type: str) -> int:
        """Deliver every in-flight message of one phase (e.g. ``Prepare``)."""
        return self.ctx.messages.deliver_type(message_type)

    def deliver_all(self) -> int:
        return self.ctx.messages.deliver_all()

    def tick(self):
        self.ctx.tick()

    def reset(self):
        self.ctx.reset()
        self.next_round = 1
        self.decided_value = None

    def snapshot(self) -> ProtocolSnapshot:
        return self.ctx.snapshot(next_round=self.next_round, decided_value=self.decided_value)

    def restore(self, snapshot: ProtocolSnapshot):
        extra = self.ctx.restore(snapshot)
        self.next_round = extra.get("next_round", 1)
        self.decided_value = extra.get("decided_value")

    def get_stats(self) -> Dict[str, Any]:
        nodes = self.nodes.values()
        acceptors = self._by_role(PaxosRole.ACCEPTOR)
        return {
            "total": len(nodes),
            "healthy": sum(1 for n in nodes if n.healthy),
            "failed": sum(1 for n in nodes if not n.healthy),
            "roles": count_by(nodes, "role"),
            "accepted": sum(1 for a in acceptors if a.accepted_proposal),
            "majority": self.majority,
            "decided_value": self.decided_value,
            "learned": sum(1 for n in self._by_role(PaxosRole.LEARNER) if n.learned_value is not None),
            "messages": message_counts(self.ctx.messages),
        }
