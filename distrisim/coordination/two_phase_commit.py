"""
Two-phase commit with one coordinator and N participants.

The protocol is driven step by step: each explicit operation delivers the
messages it consumes (vote requests, votes, decisions, acks) so the message
pool shows the same flow a live run would.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from distrisim.core.context import ProtocolSnapshot, SimulationContext
from distrisim.core.layout import Position, circle_position
from distrisim.core.message_pool import Message, MessageStatus
from distrisim.core.participant import HealthStatus
from distrisim.core.stats import count_by, message_counts

logger = logging.getLogger(__name__)

COORDINATOR_ID = "coordinator"


class TPCState(str, Enum):
    INIT = "init"
    PREPARING = "preparing"
    PREPARED = "prepared"
    COMMITTING = "committing"
    ABORTING = "aborting"
    COMMITTED = "committed"
    ABORTED = "aborted"


class Vote(str, Enum):
    YES = "yes"
    NO = "no"


class Decision(str, Enum):
    COMMIT = "commit"
    ABORT = "abort"
    WAITING = "waiting"


FINAL_STATES = (TPCState.COMMITTED, TPCState.ABORTED)


@dataclass
class TPCNode:
    id: str
    position: Position
    role: str
    state: TPCState = TPCState.INIT
    status: HealthStatus = HealthStatus.HEALTHY
    transaction_id: Optional[str] = None
    vote: Optional[Vote] = None
    votes: Dict[str, Vote] = field(default_factory=dict)
    acks: List[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


class TwoPhaseCommitAlgorithm:
    """Coordinator ``coordinator`` and participants ``participant-i``."""

    name = "two-phase-commit"

    def __init__(self, participant_count: int = 3):
        self.participant_count = participant_count
        self.ctx = SimulationContext(self.name, dispatch=self._dispatch, should_drop=self._is_undeliverable)
        self.nodes = self.ctx.registry("nodes", self._initial_nodes)
        self.transaction_counter = 0

    def _initial_nodes(self) -> List[TPCNode]:
        nodes = [TPCNode(id=COORDINATOR_ID, position=Position(400, 100), role="coordinator")]
        for i in range(self.participant_count):
            nodes.append(TPCNode(
                id=f"participant-{i}",
                position=circle_position(i, self.participant_count, center=(400.0, 350.0)),
                role="participant",
            ))
        return nodes

    @property
    def coordinator(self) -> TPCNode:
        return self.nodes.find(COORDINATOR_ID)

    def _participants(self) -> List[TPCNode]:
        return [n for n in self.nodes if n.role == "participant"]

    # Queries

    def get_coordinator(self) -> TPCNode:
        return self.nodes.get(COORDINATOR_ID)

    def get_participants(self) -> List[TPCNode]:
        return [n for n in self.nodes.list() if n.role == "participant"]

    def get_all_nodes(self) -> List[TPCNode]:
        return self.nodes.list()

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    def _consume(self, to_id: str, types: tuple, from_id: Optional[str] = None) -> int:
        """Deliver the in-flight messages of ``types`` addressed to ``to_id``."""
        delivered = 0
        for message in self.ctx.messages.list_in_flight():
            if message.to_id == to_id and message.type in types and from_id in (None, message.from_id):
                self.ctx.messages.deliver(message.id)
                delivered += 1
        return delivered

    # Phase 1

    def start_transaction(self) -> Optional[str]:
        """
        Begin the prepare phase.

        Returns:
            The transaction id, or None if the coordinator is busy or down
        """
        coordinator = self.coordinator
        if not coordinator.healthy or coordinator.state not in (TPCState.INIT, *FINAL_STATES):
            logger.warning("TwoPhaseCommit: transaction already in progress")
            return None

        transaction_id = f"txn-{self.transaction_counter}"
        self.transaction_counter += 1
        coordinator.state = TPCState.PREPARING
        coordinator.transaction_id = transaction_id
        coordinator.votes = {}
        coordinator.acks = []
        for participant in self._participants():
            participant.transaction_id = transaction_id
            participant.state = TPCState.INIT
            participant.vote = None
            self.ctx.send(COORDINATOR_ID, participant.id, "VoteRequest", {"transaction_id": transaction_id})
            self.ctx.record(
                "vote_request",
                f"Coordinator sends VoteRequest to {participant.id}",
                participant_id=participant.id,
            )
        return transaction_id

    def participant_vote(self, participant_id: str, vote: Vote):
        participant = self.nodes.find(participant_id)
        if participant is None or participant.role != "participant":
            return
        if not participant.healthy:
            self.ctx.record("vote_skipped", f"{participant_id} is down and cannot vote", participant_id=participant_id)
            return

        vote = Vote(vote)
        self._consume(participant_id, ("VoteRequest",))
        participant.vote = vote
        participant.state = TPCState.PREPARED if vote == Vote.YES else TPCState.ABORTED
        self.ctx.send(participant_id, COORDINATOR_ID, "VoteYes" if vote == Vote.YES else "VoteNo", {
            "transaction_id": participant.transaction_id,
        })
        self.ctx.record(
            "participant_vote",
            f"{participant_id} votes {vote.value.upper()}",
            participant_id=participant_id,
            vote=vote.value,
        )

    def _on_vote(self, message: Message):
        coordinator = self.coordinator
        if coordinator.state != TPCState.PREPARING:
            return
        coordinator.votes[message.from_id] = Vote.YES if message.type == "VoteYes" else Vote.NO

    # Phase 2

    def coordinator_decide(self) -> Decision:
        """
        Collect the votes and decide.

        Any NO aborts; COMMIT needs a YES from every participant. Without
        all votes the coordinator keeps waiting (see ``handle_timeout``).
        """
        coordinator = self.coordinator
        if not coordinator.healthy or coordinator.state != TPCState.PREPARING:
            return Decision.WAITING
        self._consume(COORDINATOR_ID, ("VoteYes", "VoteNo"))

        if Vote.NO in coordinator.votes.values():
            self._decide(Decision.ABORT)
            return Decision.ABORT
        if len(coordinator.votes) < len(self._participants()):
            return Decision.WAITING
        self._decide(Decision.COMMIT)
        return Decision.COMMIT

    def _decide(self, decision: Decision):
        coordinator = self.coordinator
        coordinator.state = TPCState.COMMITTING if decision == Decision.COMMIT else TPCState.ABORTING
        for participant in self._participants():
            if decision == Decision.ABORT and participant.vote == Vote.NO:
                continue
            self.ctx.send(COORDINATOR_ID, participant.id, "Commit" if decision == Decision.COMMIT else "Abort", {
                "transaction_id": coordinator.transaction_id,
            })
        label = decision.value.upper()
        logger.info(f"TwoPhaseCommit: {coordinator.transaction_id} -> {label}")
        self.ctx.record(f"{decision.value}_decision", f"Coordinator decides to {label}", decision=decision.value)

    def _on_decision(self, message: Message):
        participant = self.nodes.find(message.to_id)
        self._finalize(participant, Decision.COMMIT if message.type == "Commit" else Decision.ABORT)

    def _finalize(self, participant: TPCNode, decision: Decision):
        participant.state = TPCState.COMMITTED if decision == Decision.COMMIT else TPCState.ABORTED
        self.ctx.send(participant.id, COORDINATOR_ID, "Ack", {"transaction_id": participant.transaction_id})
        self.ctx.record(
            "participant_finalize",
            f"{participant.id} {decision.value.upper()}s",
            participant_id=participant.id,
            decision=decision.value,
        )

    def participant_finalize(self, participant_id: str, decision: Decision):
        participant = self.nodes.find(participant_id)
        if participant is None or not participant.healthy:
            return
        if self._consume(participant_id, ("Commit", "Abort")) == 0 and participant.state not in FINAL_STATES:
            self._finalize(participant, Decision(decision))

    def all_participants_finalize(self, decision: Decision):
        for participant in self._participants():
            if participant.healthy:
                self.participant_finalize(participant.id, decision)

    def _on_ack(self, message: Message):
        if message.from_id not in self.coordinator.acks:
            self.coordinator.acks.append(message.from_id)

    def coordinator_complete(self) -> bool:
        """Finish once every healthy participant acknowledged the outcome."""
        coordinator = self.coordinator
        if not coordinator.healthy or coordinator.state not in (TPCState.COMMITTING, TPCState.ABORTING):
            return False
        self._consume(COORDINATOR_ID, ("Ack",))

        expected = [p.id for p in self._participants() if p.healthy and p.vote != Vote.NO]
        if any(p not in coordinator.acks for p in expected):
            return False
        committed = coordinator.state == TPCState.COMMITTING
        coordinator.state = TPCState.COMMITTED if committed else TPCState.ABORTED
        self.ctx.record(
            "transaction_complete",
            "Transaction COMMITTED successfully" if committed else "Transaction ABORTED",
            outcome=coordinator.state.value,
        )
        return True

    def handle_timeout(self):
        """Prepare-phase timeout: the coordinator aborts unilaterally."""
        coordinator = self.coordinator
        if coordinator.healthy and coordinator.state == TPCState.PREPARING:
            self.ctx.record("timeout", "Coordinator timeout during PREPARE phase -> ABORT")
            self._decide(Decision.ABORT)

    # Faults

    def fail_participant(self, participant_id: str):
        participant = self.nodes.find(participant_id)
        if participant is None or not participant.healthy:
            return
        participant.status = HealthStatus.FAILED
        self.ctx.record("participant_failed", f"{participant_id} failed", participant_id=participant_id)

    def recover_participant(self, participant_id: str):
        """A recovered in-doubt participant asks the coordinator for the outcome."""
        participant = self.nodes.find(participant_id)
        if participant is None or participant.healthy:
            return
        participant.status = HealthStatus.HEALTHY
        self.ctx.record("participant_recovered", f"{participant_id} recovered", participant_id=participant_id)
        if participant.state == TPCState.PREPARED:
            self.ctx.send(participant_id, COORDINATOR_ID, "DecisionQuery", {
                "transaction_id": participant.transaction_id,
            })

    def _on_decision_query(self, message: Message):
        coordinator = self.coordinator
        if coordinator.state in (TPCState.COMMITTING, TPCState.COMMITTED):
            self.ctx.send(COORDINATOR_ID, message.from_id, "Commit", {"transaction_id": coordinator.transaction_id})
        elif coordinator.state in (TPCState.ABORTING, TPCState.ABORTED):
            self.ctx.send(COORDINATOR_ID, message.from_id, "Abort", {"transaction_id": coordinator.transaction_id})

    def fail_coordinator(self):
        coordinator = self.coordinator
        if not coordinator.healthy:
            return
        coordinator.status = HealthStatus.FAILED
        blocked = self.blocked_participants()
        self.ctx.record(
            "coordinator_failed",
            f"Coordinator failed; {len(blocked)} participant(s) blocked",
            blocked=blocked,
        )

    def recover_coordinator(self):
        coordinator = self.coordinator
        if coordinator.healthy:
            return
        coordinator.status = HealthStatus.HEALTHY
        self.ctx.record("coordinator_recovered", "Coordinator recovered")

    def blocked_participants(self) -> List[str]:
        """Prepared participants that cannot learn the outcome."""
        if self.coordinator.healthy:
            return []
        return [p.id for p in self._participants() if p.state == TPCState.PREPARED]

    def _is_undeliverable(self, message: Message) -> bool:
        sender = self.nodes.find(message.from_id)
        recipient = self.nodes.find(message.to_id)
        return sender is None or recipient is None or not sender.healthy or not recipient.healthy

    # Engine hooks

    def _dispatch(self, message: Message):
        if message.type in ("VoteYes", "VoteNo"):
            self._on_vote(message)
        elif message.type in ("Commit", "Abort"):
            self._on_decision(message)
        elif message.type == "Ack":
            self._on_ack(message)
        elif message.type == "DecisionQuery":
            self._on_decision_query(message)

    def deliver(self, message_id: str) -> Optional[MessageStatus]:
        return self.ctx.messages.deliver(message_id)

    def deliver_all(self) -> int:
        return self.ctx.messages.deliver_all()

    def tick(self):
        self.ctx.tick()

    def reset(self):
        self.ctx.reset()
        self.transaction_counter = 0

    def snapshot(self) -> ProtocolSnapshot:
        return self.ctx.snapshot(transaction_counter=self.transaction_counter)

    def restore(self, snapshot: ProtocolSnapshot):
        extra = self.ctx.restore(snapshot)
        self.transaction_counter = extra.get("transaction_counter", 0)

    def get_stats(self) -> Dict[str, Any]:
        participants = self._participants()
        coordinator = self.coordinator
        yes_votes = sum(1 for p in participants if p.vote == Vote.YES)
        no_votes = sum(1 for p in participants if p.vote == Vote.NO)
        if coordinator.state in FINAL_STATES:
            outcome = coordinator.state.value
        else:
            outcome = "in-progress"
        return {
            "total_participants": len(participants),
            "healthy_participants": sum(1 for p in participants if p.healthy),
            "failed_participants": sum(1 for p in participants if not p.healthy),
            "yes_votes": yes_votes,
            "no_votes": no_votes,
            "pending_votes": len(participants) - yes_votes - no_votes,
            "participant_states": count_by(participants, "state"),
            "coordinator_state": coordinator.state.value,
            "transaction_outcome": outcome,
            "blocked": len(self.blocked_participants()),
            "messages": message_counts(self.ctx.messages),
        }
