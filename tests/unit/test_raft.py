"""
Unit tests for the Raft model
"""
import pytest

from distrisim.consensus.raft import NodeState, RaftAlgorithm


@pytest.fixture
def raft() -> RaftAlgorithm:
    return RaftAlgorithm(node_count=5)


def deliver_type(raft: RaftAlgorithm, message_type: str) -> int:
    pending = [m.id for m in raft.list_in_flight() if m.type == message_type]
    for message_id in pending:
        raft.deliver(message_id)
    return len(pending)


def elect(raft: RaftAlgorithm, node_id: str = "node-0"):
    raft.start_election(node_id)
    deliver_type(raft, "RequestVote")
    deliver_type(raft, "RequestVoteResponse")


def deliver_between(raft: RaftAlgorithm, message_type: str, from_id: str, to_id: str):
    for m in raft.list_in_flight():
        if m.type == message_type and m.from_id == from_id and m.to_id == to_id:
            return raft.deliver(m.id)
    raise AssertionError(f"no {message_type} from {from_id} to {to_id} in flight")


def leaders_by_term(raft: RaftAlgorithm) -> dict:
    """Leaders grouped by term, failed nodes included."""
    by_term = {}
    for node in raft.get_nodes():
        if node.state == NodeState.LEADER:
            by_term.setdefault(node.term, []).append(node.id)
    return by_term


# ============================================================================
# Election Tests
# ============================================================================

@pytest.mark.unit
class TestElection:

    def test_start_election_makes_candidate(self, raft: RaftAlgorithm):
        raft.start_election("node-0")

        node = raft.get_node("node-0")
        assert node.state == NodeState.CANDIDATE
        assert node.term == 1
        assert node.votes_received == 1
        assert node.voted_for == "node-0"
        assert [m.type for m in raft.list_in_flight()] == ["RequestVote"] * 4

    def test_majority_of_votes_elects_leader(self, raft: RaftAlgorithm):
        raft.start_election("node-0")
        assert deliver_type(raft, "RequestVote") == 4
        assert deliver_type(raft, "RequestVoteResponse") == 4

        leader = raft.get_leader()
        assert leader.id == "node-0"
        assert leader.votes_received == 5
        for node in raft.get_nodes()[1:]:
            assert node.state == NodeState.FOLLOWER
            assert node.term == 1

    def test_new_leader_sends_heartbeats(self, raft: RaftAlgorithm):
        elect(raft)
        heartbeats = [m for m in raft.list_in_flight() if m.type == "AppendEntries"]
        assert len(heartbeats) == 4
        assert all(m.payload["entries"] == [] for m in heartbeats)

    def test_one_vote_per_term(self, raft: RaftAlgorithm):
        raft.start_election("node-0")
        raft.start_election("node-1")
        deliver_type(raft, "RequestVote")
        deliver_type(raft, "RequestVoteResponse")

        leaders = [n for n in raft.get_nodes() if n.state == NodeState.LEADER]
        assert len(leaders) <= 1

    def test_election_safety_over_many_rounds(self, raft: RaftAlgorithm):
        steps = [
            ("elect", "node-0"),
            ("fail", "node-0"),
            ("elect", "node-1"),
            ("recover", "node-0"),
            ("elect", "node-2"),
            ("fail", "node-2"),
            ("elect", "node-0"),
            ("recover", "node-2"),
            ("elect", "node-1"),
            ("fail", "node-1"),
            ("fail", "node-3"),
            ("elect", "node-4"),
            ("recover", "node-1"),
            ("recover", "node-3"),
            ("elect", "node-3"),
        ]
        for action, node_id in steps:
            if action == "elect":
                raft.start_election(node_id)
            elif action == "fail":
                raft.fail_node(node_id)
            else:
                raft.recover_node(node_id)
            raft.deliver_all()
            assert all(len(ids) == 1 for ids in leaders_by_term(raft).values())

    def test_failed_leader_demoted_by_same_term_winner(self, raft: RaftAlgorithm):
        raft.start_election("node-0")
        raft.start_election("node-1")
        deliver_between(raft, "RequestVote", "node-0", "node-2")
        deliver_between(raft, "RequestVote", "node-0", "node-3")
        deliver_between(raft, "RequestVote", "node-1", "node-4")

        raft.fail_node("node-1")
        deliver_between(raft, "RequestVoteResponse", "node-2", "node-0")
        deliver_between(raft, "RequestVoteResponse", "node-3", "node-0")
        assert raft.get_leader().id == "node-0"

        raft.recover_node("node-1")
        for node_id in ["node-0", "node-2", "node-3"]:
            raft.fail_node(node_id)
        deliver_between(raft, "RequestVoteResponse", "node-4", "node-1")

        assert raft.get_leader().id == "node-1"
        assert leaders_by_term(raft) == {1: ["node-1"]}
        stale = raft.get_node("node-0")
        assert stale.state == NodeState.FOLLOWER
        assert stale.term == 1
        assert stale.leader_id == "node-1"

    def test_start_election_on_failed_node_is_noop(self, raft: RaftAlgorithm):
        raft.fail_node("node-0")
        raft.start_election("node-0")
        assert raft.get_node("node-0").term == 0
        assert raft.list_in_flight() == []

    def test_single_node_cluster_wins_immediately(self):
        raft = RaftAlgorithm(node_count=1)
        raft.start_election("node-0")
        assert raft.get_leader().id == "node-0"


# ============================================================================
# Log Replication Tests
# ============================================================================

@pytest.mark.unit
class TestReplication:

    def test_client_request_appends_and_replicates(self, raft: RaftAlgorithm):
        elect(raft)
        raft.add_client_request("node-0", "SET x=1")

        assert len(raft.get_node("node-0").log) == 1
        appends = [m for m in raft.list_in_flight() if m.type == "AppendEntries" and m.payload["entries"]]
        assert len(appends) == 4

    def test_entry_commits_after_majority_acks(self, raft: RaftAlgorithm):
        elect(raft)
        raft.add_client_request("node-0", "SET x=1")
        raft.deliver_all()

        leader = raft.get_leader()
        assert leader.commit_index == 1
        for node in raft.get_nodes():
            assert [e.command for e in node.log] == ["SET x=1"]

    def test_request_to_follower_is_ignored(self, raft: RaftAlgorithm):
        elect(raft)
        raft.add_client_request("node-1", "SET y=2")
        assert raft.get_node("node-1").log == []

    def test_heartbeat_only_from_leader(self, raft: RaftAlgorithm):
        raft.send_heartbeat("node-0")
        assert raft.list_in_flight() == []

    def test_stale_leader_steps_down(self, raft: RaftAlgorithm):
        elect(raft, "node-0")
        raft.deliver_all()
        raft.fail_node("node-0")
        elect(raft, "node-1")
        raft.recover_node("node-0")
        raft.send_heartbeat("node-1")
        raft.deliver_all()

        assert raft.get_node("node-0").state == NodeState.FOLLOWER
        assert raft.get_node("node-0").term == 2
        assert raft.get_leader().id == "node-1"


# ============================================================================
# Faults, Reset and Snapshots
# ============================================================================

@pytest.mark.unit
class TestLifecycle:

    def test_messages_to_failed_node_are_dropped(self, raft: RaftAlgorithm):
        raft.start_election("node-0")
        raft.fail_node("node-1")
        deliver_type(raft, "RequestVote")
        assert raft.get_stats()["messages"]["dropped"] == 1

    def test_fail_recover_keeps_term_and_log(self, raft: RaftAlgorithm):
        elect(raft)
        raft.add_client_request("node-0", "SET x=1")
        raft.deliver_all()
        raft.fail_node("node-2")
        raft.recover_node("node-2")

        node = raft.get_node("node-2")
        assert node.healthy
        assert node.term == 1
        assert len(node.log) == 1

    def test_deliver_twice_equals_once(self, raft: RaftAlgorithm):
        raft.start_election("node-0")
        message_id = raft.list_in_flight()[0].id
        raft.deliver(message_id)
        after_once = raft.snapshot()
        assert raft.deliver(message_id) is None
        assert raft.snapshot() == after_once

    def test_reset_equals_fresh_instance(self, raft: RaftAlgorithm):
        elect(raft)
        raft.add_client_request("node-0", "SET x=1")
        raft.tick()
        raft.reset()
        assert raft.snapshot() == RaftAlgorithm(node_count=5).snapshot()

    def test_snapshot_restore(self, raft: RaftAlgorithm):
        raft.start_election("node-0")
        snapshot = raft.snapshot()
        raft.deliver_all()
        raft.restore(snapshot)
        assert raft.get_node("node-0").state == NodeState.CANDIDATE
        assert len(raft.list_in_flight()) == 4

    def test_stats(self, raft: RaftAlgorithm):
        elect(raft)
        stats = raft.get_stats()
        assert stats["leader_id"] == "node-0"
        assert stats["leaders"] == 1
        assert stats["followers"] == 4
        assert stats["current_term"] == 1
