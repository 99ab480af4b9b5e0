"""
Unit tests for coordination: lease locks, two-phase commit, three-phase
commit and sagas
"""
import pytest

from distrisim.coordination.lock import MANAGER_ID, DistributedLockAlgorithm
from distrisim.coordination.transactions import (
    DistributedTransactionsAlgorithm,
    SagaStepStatus,
    TransactionPhase,
)
from distrisim.coordination.two_phase_commit import (
    COORDINATOR_ID,
    Decision,
    TPCState,
    TwoPhaseCommitAlgorithm,
    Vote,
)


# ============================================================================
# Distributed Lock Tests
# ============================================================================

@pytest.fixture
def lock() -> DistributedLockAlgorithm:
    return DistributedLockAlgorithm(client_count=3, lease_ttl_ms=4000)


def node(lock: DistributedLockAlgorithm, node_id: str):
    return next(n for n in lock.get_nodes() if n.id == node_id)


@pytest.mark.unit
class TestDistributedLock:

    def test_first_request_is_granted(self, lock: DistributedLockAlgorithm):
        lock.request_lock("C0")
        lock.deliver_all()

        assert lock.get_lease().owner_id == "C0"
        assert lock.get_lease().expires_at == 4000
        assert node(lock, "C0").holding_lock
        assert node(lock, "C0").fencing_token == 1

    def test_second_client_is_queued(self, lock: DistributedLockAlgorithm):
        lock.request_lock("C0")
        lock.deliver_all()
        lock.request_lock("C1")
        lock.deliver_all()

        assert lock.get_queue() == ["C1"]
        deny = [m for m in lock.get_messages() if m.type == "Deny"][0]
        assert deny.to_id == "C1"
        assert deny.payload["queue_position"] == 1

    def test_release_grants_next_with_higher_token(self, lock: DistributedLockAlgorithm):
        lock.request_lock("C0")
        lock.deliver_all()
        lock.request_lock("C1")
        lock.deliver_all()

        lock.release_lock("C0")
        lock.deliver_all()

        assert lock.get_lease().owner_id == "C1"
        assert lock.get_lease().token == 2
        assert not node(lock, "C0").holding_lock
        assert node(lock, "C1").fencing_token == 2
        assert lock.get_queue() == []

    def test_heartbeat_extends_lease(self, lock: DistributedLockAlgorithm):
        lock.request_lock("C0")
        lock.deliver_all()
        lock.tick(3000)
        lock.send_heartbeat("C0")
        lock.deliver_all()
        lock.tick(2000)

        assert lock.get_lease().owner_id == "C0"
        assert lock.get_lease().expires_at == 7000

    def test_expired_lease_passes_to_queue(self, lock: DistributedLockAlgorithm):
        lock.request_lock("C0")
        lock.deliver_all()
        lock.request_lock("C1")
        lock.deliver_all()

        lock.tick(5000)
        lock.deliver_all()

        assert lock.get_event_log()[-2].type == "lease_timeout"
        assert lock.get_lease().owner_id == "C1"
        assert not node(lock, "C0").holding_lock
        assert node(lock, "C1").holding_lock

    def test_fencing_tokens_strictly_increase(self, lock: DistributedLockAlgorithm):
        tokens = []
        for client in ("C0", "C1", "C2"):
            lock.request_lock(client)
            lock.deliver_all()
            tokens.append(lock.get_lease().token)
            lock.release_lock(client)
            lock.deliver_all()
        assert tokens == [1, 2, 3]

    def test_failed_client_cannot_request(self, lock: DistributedLockAlgorithm):
        lock.fail_node("C2")
        lock.request_lock("C2")
        assert lock.list_in_flight() == []
        assert lock.get_event_log()[-1].type == "acquire_failed"

    def test_manager_cannot_request(self, lock: DistributedLockAlgorithm):
        lock.request_lock(MANAGER_ID)
        assert lock.list_in_flight() == []

    def test_stats(self, lock: DistributedLockAlgorithm):
        lock.request_lock("C0")
        lock.deliver_all()
        stats = lock.get_stats()
        assert stats["lease_owner"] == "C0"
        assert stats["fencing_token"] == 1
        assert stats["total_nodes"] == 4


# ============================================================================
# Two-Phase Commit Tests
# ============================================================================

@pytest.fixture
def tpc() -> TwoPhaseCommitAlgorithm:
    return TwoPhaseCommitAlgorithm(participant_count=3)


PARTICIPANTS = ["participant-0", "participant-1", "participant-2"]


def vote_all(tpc: TwoPhaseCommitAlgorithm, votes=None):
    votes = votes or {}
    for participant_id in PARTICIPANTS:
        tpc.participant_vote(participant_id, votes.get(participant_id, Vote.YES))


@pytest.mark.unit
class TestTwoPhaseCommit:

    def test_start_sends_vote_requests(self, tpc: TwoPhaseCommitAlgorithm):
        assert tpc.start_transaction() == "txn-0"
        assert tpc.get_coordinator().state == TPCState.PREPARING
        assert sorted(m.to_id for m in tpc.list_in_flight()) == PARTICIPANTS

    def test_cannot_start_while_in_progress(self, tpc: TwoPhaseCommitAlgorithm):
        tpc.start_transaction()
        assert tpc.start_transaction() is None

    def test_unanimous_yes_commits(self, tpc: TwoPhaseCommitAlgorithm):
        tpc.start_transaction()
        vote_all(tpc)

        assert tpc.coordinator_decide() == Decision.COMMIT
        tpc.all_participants_finalize(Decision.COMMIT)
        assert tpc.coordinator_complete() is True

        assert tpc.get_coordinator().state == TPCState.COMMITTED
        assert all(p.state == TPCState.COMMITTED for p in tpc.get_participants())
        assert tpc.get_stats()["transaction_outcome"] == "committed"

    def test_single_no_aborts_everyone(self, tpc: TwoPhaseCommitAlgorithm):
        tpc.start_transaction()
        vote_all(tpc, {"participant-1": Vote.NO})

        assert tpc.coordinator_decide() == Decision.ABORT
        abort_targets = sorted(m.to_id for m in tpc.list_in_flight() if m.type == "Abort")
        assert abort_targets == ["participant-0", "participant-2"]

        tpc.all_participants_finalize(Decision.ABORT)
        assert tpc.coordinator_complete() is True
        assert all(p.state == TPCState.ABORTED for p in tpc.get_participants())
        assert tpc.get_stats()["no_votes"] == 1

    def test_missing_vote_waits_then_times_out(self, tpc: TwoPhaseCommitAlgorithm):
        tpc.start_transaction()
        tpc.participant_vote("participant-0", Vote.YES)
        tpc.participant_vote("participant-1", Vote.YES)

        assert tpc.coordinator_decide() == Decision.WAITING
        tpc.handle_timeout()
        assert tpc.get_coordinator().state == TPCState.ABORTING

    def test_coordinator_failure_blocks_prepared_participants(self, tpc: TwoPhaseCommitAlgorithm):
        tpc.start_transaction()
        vote_all(tpc)
        tpc.fail_coordinator()

        assert tpc.blocked_participants() == PARTICIPANTS
        assert tpc.coordinator_decide() == Decision.WAITING
        assert tpc.get_stats()["blocked"] == 3

        tpc.recover_coordinator()
        assert tpc.blocked_participants() == []
        assert tpc.coordinator_decide() == Decision.COMMIT

    def test_failed_participant_cannot_vote(self, tpc: TwoPhaseCommitAlgorithm):
        tpc.start_transaction()
        tpc.fail_participant("participant-2")
        tpc.participant_vote("participant-2", Vote.YES)
        assert tpc.get_event_log()[-1].type == "vote_skipped"

    def test_recovered_participant_learns_outcome(self, tpc: TwoPhaseCommitAlgorithm):
        tpc.start_transaction()
        vote_all(tpc)
        tpc.coordinator_decide()
        tpc.fail_participant("participant-2")
        tpc.all_participants_finalize(Decision.COMMIT)
        assert tpc.coordinator_complete() is True

        tpc.recover_participant("participant-2")
        assert any(m.type == "DecisionQuery" for m in tpc.list_in_flight())
        tpc.deliver_all()

        assert tpc.get_participants()[2].state == TPCState.COMMITTED

    def test_next_transaction_after_completion(self, tpc: TwoPhaseCommitAlgorithm):
        tpc.start_transaction()
        vote_all(tpc)
        tpc.coordinator_decide()
        tpc.all_participants_finalize(Decision.COMMIT)
        tpc.coordinator_complete()
        assert tpc.start_transaction() == "txn-1"

    def test_coordinator_id(self, tpc: TwoPhaseCommitAlgorithm):
        assert tpc.get_coordinator().id == COORDINATOR_ID
        assert len(tpc.get_all_nodes()) == 4


# ============================================================================
# Three-Phase Commit and Saga Tests
# ============================================================================

@pytest.fixture
def txn() -> DistributedTransactionsAlgorithm:
    return DistributedTransactionsAlgorithm(participant_count=3)


@pytest.mark.unit
class TestThreePhaseCommit:

    def test_all_yes_commits(self, txn: DistributedTransactionsAlgorithm):
        txn.start_3pc()
        txn.vote({"P0": "yes", "P1": "yes", "P2": "yes"})

        assert txn.decide_3pc() == "pre-commit"
        txn.commit_3pc()

        assert txn.coordinator_phase == TransactionPhase.COMMITTED
        assert txn.get_stats()["committed"] == 3

    def test_no_vote_aborts(self, txn: DistributedTransactionsAlgorithm):
        txn.start_3pc()
        txn.vote({"P0": "yes", "P1": "no", "P2": "yes"})

        assert txn.decide_3pc() == "abort"
        txn.deliver_all()
        assert txn.get_stats()["aborted"] == 3

    def test_missing_vote_aborts(self, txn: DistributedTransactionsAlgorithm):
        txn.start_3pc()
        txn.vote({"P0": "yes", "P1": "yes"})
        assert txn.decide_3pc() == "abort"

    def test_commit_requires_pre_commit(self, txn: DistributedTransactionsAlgorithm):
        txn.start_3pc()
        txn.commit_3pc()
        assert txn.coordinator_phase == TransactionPhase.PREPARE

    def test_participant_timeout_depends_on_phase(self, txn: DistributedTransactionsAlgorithm):
        txn.start_3pc()
        txn.vote({"P0": "yes", "P1": "yes", "P2": "yes"})
        txn.decide_3pc()
        pre_commit_p0 = [m.id for m in txn.list_in_flight() if m.type == "PreCommit" and m.to_id == "P0"][0]
        txn.deliver(pre_commit_p0)

        txn.participant_timeout("P0")
        txn.participant_timeout("P1")

        phases = {p.id: p.phase for p in txn.get_participants()}
        assert phases["P0"] == TransactionPhase.COMMITTED
        assert phases["P1"] == TransactionPhase.ABORTED
        assert phases["P2"] == TransactionPhase.PREPARE

    def test_failed_participant_misses_messages(self, txn: DistributedTransactionsAlgorithm):
        txn.start_3pc()
        txn.fail_participant("P2")
        txn.receive_vote("P0", "yes")
        txn.receive_vote("P2", "yes")
        assert txn.get_participants()[2].vote is None
        assert txn.get_stats()["messages"]["dropped"] == 1


@pytest.mark.unit
class TestSaga:

    def test_all_steps_complete(self, txn: DistributedTransactionsAlgorithm):
        txn.start_saga()
        assert txn.saga_status() == "idle"
        for step_id in ("S0", "S1", "S2"):
            txn.saga_step(step_id)
        assert txn.saga_status() == "completed"
        assert [s.order for s in txn.get_saga_steps()] == [0, 1, 2]

    def test_compensation_in_reverse_order(self, txn: DistributedTransactionsAlgorithm):
        txn.start_saga()
        txn.saga_step("S0")
        txn.saga_step("S1")
        assert txn.saga_status() == "running"

        txn.saga_compensate("S1")
        txn.saga_compensate("S0")

        statuses = [s.status for s in txn.get_saga_steps()]
        assert statuses == [SagaStepStatus.COMPENSATED, SagaStepStatus.COMPENSATED, SagaStepStatus.PENDING]
        assert txn.saga_status() == "compensated"
        compensations = [m.payload["step_id"] for m in txn.get_messages() if m.type == "Compensate"]
        assert compensations == ["S1", "S0"]

    def test_pending_step_cannot_be_compensated(self, txn: DistributedTransactionsAlgorithm):
        txn.start_saga()
        txn.saga_compensate("S2")
        assert txn.get_saga_steps()[2].status == SagaStepStatus.PENDING

    def test_step_runs_once(self, txn: DistributedTransactionsAlgorithm):
        txn.start_saga()
        txn.saga_step("S0")
        txn.saga_step("S0")
        assert len([m for m in txn.get_messages() if m.type == "Execute"]) == 1
