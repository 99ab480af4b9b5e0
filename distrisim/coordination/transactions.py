"""
Distributed transactions: three-phase commit and sagas.

3PC inserts a PRE-COMMIT round between voting and committing so that a
participant that times out can decide on its own: in PRE-COMMIT it commits,
before that it aborts. A saga runs local steps in order and undoes the
completed ones with compensating actions in reverse order.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from distrisim.core.context import ProtocolSnapshot, SimulationContext
from distrisim.core.layout import Position, circle_position
from distrisim.core.message_pool import Message, MessageStatus
from distrisim.core.participant import HealthStatus
from distrisim.core.stats import count_by, message_counts

logger = logging.getLogger(__name__)

COORDINATOR_ID = "coordinator"
SAGA_ID = "saga"


class TransactionPhase(str, Enum):
    INIT = "init"
    PREPARE = "prepare"
    PRE_COMMIT = "pre-commit"
    COMMITTED = "committed"
    ABORTED = "aborted"


class SagaStepStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    COMPENSATED = "compensated"


@dataclass
class TransactionParticipant:
    id: str
    position: Position
    status: HealthStatus = HealthStatus.HEALTHY
    phase: TransactionPhase = TransactionPhase.INIT
    vote: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


@dataclass
class SagaStep:
    id: str
    name: str
    participant_id: str
    status: SagaStepStatus = SagaStepStatus.PENDING
    order: Optional[int] = None


class DistributedTransactionsAlgorithm:
    """Participants ``P0..``; saga step ``Si`` runs on ``Pi``."""

    name = "distributed-transactions"

    def __init__(self, participant_count: int = 3):
        self.participant_count = participant_count
        self.ctx = SimulationContext(
            self.name,
            message_prefix="txn",
            dispatch=self._dispatch,
            should_drop=self._is_undeliverable,
        )
        self.participants = self.ctx.registry("participants", self._initial_participants)
        self.steps = self.ctx.registry("saga_steps", self._initial_steps)
        self.coordinator_phase = TransactionPhase.INIT
        self.completed_order: List[str] = []

    def _initial_participants(self) -> List[TransactionParticipant]:
        return [
            TransactionParticipant(id=f"P{i}", position=circle_position(i, self.participant_count))
            for i in range(self.participant_count)
        ]

    def _initial_steps(self) -> List[SagaStep]:
        return [
            SagaStep(id=f"S{i}", name=f"Step {i + 1}", participant_id=f"P{i}")
            for i in range(self.participant_count)
        ]

    # Queries

    def get_participants(self) -> List[TransactionParticipant]:
        return self.participants.list()

    def get_saga_steps(self) -> List[SagaStep]:
        return self.steps.list()

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    def _broadcast(self, type: str):
        for participant in self.participants:
            self.ctx.send(COORDINATOR_ID, participant.id, type, {"participant_id": participant.id})

    def _consume(self, types: tuple):
        for message in self.ctx.messages.list_in_flight():
            if message.type in types:
                self.ctx.messages.deliver(message.id)

    # Three-phase commit

    def start_3pc(self):
        self.coordinator_phase = TransactionPhase.PREPARE
        for participant in self.participants:
            participant.phase = TransactionPhase.INIT
            participant.vote = None
        self._broadcast("Prepare")
        self.ctx.record("3pc_prepare", "Coordinator sends PREPARE")

    def receive_vote(self, participant_id: str, vote: str):
        participant = self.participants.find(participant_id)
        if participant is None or not participant.healthy:
            return
        self._consume(("Prepare",))
        participant.vote = vote
        participant.phase = TransactionPhase.PREPARE if vote == "yes" else TransactionPhase.ABORTED
        self.ctx.send(participant_id, COORDINATOR_ID, "Vote", {"participant_id": participant_id, "vote": vote})
        self.ctx.record("3pc_vote", f"{participant_id} votes {vote.upper()}", participant_id=participant_id, vote=vote)

    def vote(self, votes: Dict[str, str]):
        for participant_id, vote in votes.items():
            self.receive_vote(participant_id, vote)

    def decide_3pc(self) -> str:
        """
        Abort on any NO or missing vote, otherwise enter PRE-COMMIT.

        Returns:
            ``"pre-commit"`` or ``"abort"``
        """
        self._consume(("Vote",))
        if any(p.vote != "yes" for p in self.participants):
            self.coordinator_phase = TransactionPhase.ABORTED
            self._broadcast("Abort")
            self.ctx.record("3pc_abort", "Coordinator aborts")
            return "abort"
        self.coordinator_phase = TransactionPhase.PRE_COMMIT
        self._broadcast("PreCommit")
        self.ctx.record("3pc_precommit", "Coordinator sends PRE-COMMIT")
        return "pre-commit"

    def commit_3pc(self):
        if self.coordinator_phase != TransactionPhase.PRE_COMMIT:
            return
        self._consume(("PreCommit", "PreCommitAck"))
        self.coordinator_phase = TransactionPhase.COMMITTED
        self._broadcast("Commit")
        self.ctx.record("3pc_commit", "Coordinator commits")
        self._consume(("Commit",))

    def participant_timeout(self, participant_id: str):
        """
        The coordinator went silent: a PRE-COMMIT participant commits, one
        that only voted aborts.
        """
        participant = self.participants.find(participant_id)
        if participant is None or not participant.healthy:
            return
        if participant.phase == TransactionPhase.PRE_COMMIT:
            participant.phase = TransactionPhase.COMMITTED
        elif participant.phase in (TransactionPhase.INIT, TransactionPhase.PREPARE):
            participant.phase = TransactionPhase.ABORTED
        else:
            return
        self.ctx.record(
            "3pc_timeout",
            f"{participant_id} timed out and {participant.phase.value} on its own",
            participant_id=participant_id,
            phase=participant.phase.value,
        )

    def _on_participant_message(self, message: Message):
        participant = self.participants.find(message.to_id)
        if message.type == "PreCommit" and participant.phase == TransactionPhase.PREPARE:
            participant.phase = TransactionPhase.PRE_COMMIT
            self.ctx.send(participant.id, COORDINATOR_ID, "PreCommitAck", {"participant_id": participant.id})
        elif message.type == "Commit":
            participant.phase = TransactionPhase.COMMITTED
        elif message.type == "Abort":
            participant.phase = TransactionPhase.ABORTED

    # Saga

    def start_saga(self):
        for step in self.steps:
            step.status = SagaStepStatus.PENDING
            step.order = None
        self.completed_order = []
        self.ctx.record("saga_start", "Saga starts")

    def saga_step(self, step_id: str):
        step = self.steps.find(step_id)
        if step is None or step.status != SagaStepStatus.PENDING:
            return
        step.status = SagaStepStatus.COMPLETED
        step.order = len(self.completed_order)
        self.completed_order.append(step_id)
        self.ctx.send(SAGA_ID, step.participant_id, "Execute", {"step_id": step_id})
        self.ctx.record("saga_step", f"{step.name} completed", step_id=step_id)

    def saga_compensate(self, step_id: str):
        """Undo a completed step; compensations run newest first."""
        step = self.steps.find(step_id)
        if step is None or step.status != SagaStepStatus.COMPLETED:
            return
        if self.completed_order and self.completed_order[-1] != step_id:
            logger.warning(f"Saga: compensating {step_id} before {self.completed_order[-1]}")
        step.status = SagaStepStatus.COMPENSATED
        if step_id in self.completed_order:
            self.completed_order.remove(step_id)
        self.ctx.send(SAGA_ID, step.participant_id, "Compensate", {"step_id": step_id})
        self.ctx.record("saga_compensate", f"{step.name} compensated", step_id=step_id)

    def saga_status(self) -> str:
        statuses = [s.status for s in self.steps]
        if statuses and all(s == SagaStepStatus.COMPLETED for s in statuses):
            return "completed"
        if SagaStepStatus.COMPENSATED in statuses and SagaStepStatus.COMPLETED not in statuses:
            return "compensated"
        if all(s == SagaStepStatus.PENDING for s in statuses):
            return "idle"
        return "running"

    # Faults

    def fail_participant(self, participant_id: str):
        participant = self.participants.find(participant_id)
        if participant is None or not participant.healthy:
            return
        participant.status = HealthStatus.FAILED
        self.ctx.record("participant_fail", f"{participant_id} failed", participant_id=participant_id)

    def recover_participant(self, participant_id: str):
        participant = self.participants.find(participant_id)
        if participant is None or participant.healthy:
            return
        participant.status = HealthStatus.HEALTHY
        self.ctx.record("participant_recover", f"{participant_id} recovered", participant_id=participant_id)

    def _is_undeliverable(self, message: Message) -> bool:
        for node_id in (message.from_id, message.to_id):
            participant = self.participants.find(node_id)
            if participant is not None and not participant.healthy:
                return True
        return False

    # Engine hooks

    def _dispatch(self, message: Message):
        if message.to_id in self.participants and message.from_id == COORDINATOR_ID:
            self._on_participant_message(message)

    def deliver(self, message_id: str) -> Optional[MessageStatus]:
        return self.ctx.messages.deliver(message_id)

    def deliver_all(self) -> int:
        return self.ctx.messages.deliver_all()

    def tick(self):
        self.ctx.tick()

    def reset(self):
        self.ctx.reset()
        self.coordinator_phase = TransactionPhase.INIT
        self.completed_order = []

    def snapshot(self) -> ProtocolSnapshot:
        return self.ctx.snapshot(coordinator_phase=self.coordinator_phase, completed_order=self.completed_order)

    def restore(self, snapshot: ProtocolSnapshot):
        extra = self.ctx.restore(snapshot)
        self.coordinator_phase = extra.get("coordinator_phase", TransactionPhase.INIT)
        self.completed_order = extra.get("completed_order", [])

    def get_stats(self) -> Dict[str, Any]:
        participants = self.participants.values()
        steps = self.steps.values()
        return {
            "participants": len(participants),
            "coordinator_phase": self.coordinator_phase.value,
            "prepared": sum(1 for p in participants if p.phase in (TransactionPhase.PREPARE, TransactionPhase.PRE_COMMIT)),
            "committed": sum(1 for p in participants if p.phase == TransactionPhase.COMMITTED),
            "aborted": sum(1 for p in participants if p.phase == TransactionPhase.ABORTED),
            "saga_steps": count_by(steps, "status"),
            "saga_completed": sum(1 for s in steps if s.status == SagaStepStatus.COMPLETED),
            "saga_compensated": sum(1 for s in steps if s.status == SagaStepStatus.COMPENSATED),
            "saga_status": self.saga_status(),
            "messages": message_counts(self.ctx.messages),
        }
