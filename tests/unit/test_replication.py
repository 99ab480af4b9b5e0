"""
Unit tests for the replication models: quorum, replicated log, gossip,
Merkle anti-entropy, CRDTs and eventual consistency.
"""
import pytest

from distrisim.replication.crdts import CRDTAlgorithm, HEAD_ID
from distrisim.replication.eventual import (
    ConsistencyLevel,
    EventualConsistencyAlgorithm,
    compare_clocks,
)
from distrisim.replication.gossip import GossipAntiEntropyAlgorithm, GossipMode
from distrisim.replication.merkle import MerkleAntiEntropyAlgorithm, build_tree, MerkleTreeNode
from distrisim.replication.quorum import (
    QuorumConfig,
    QuorumReplicationAlgorithm,
    WriteStatus,
    calculate_quorum,
    is_strict_quorum,
)
from distrisim.replication.replication_log import ReplicaRole, ReplicationLogAlgorithm


def deliver_type(protocol, message_type: str) -> int:
    pending = [m.id for m in protocol.list_in_flight() if m.type == message_type]
    for message_id in pending:
        protocol.deliver(message_id)
    return len(pending)


# ============================================================================
# Quorum Replication Tests
# ============================================================================

@pytest.mark.unit
class TestQuorumReplication:

    @pytest.fixture
    def quorum(self) -> QuorumReplicationAlgorithm:
        return QuorumReplicationAlgorithm(node_count=5, replication_factor=3)

    def test_quorum_helpers(self):
        assert calculate_quorum(3) == 2
        assert calculate_quorum(4) == 3
        assert is_strict_quorum(2, 2, 3)
        assert not is_strict_quorum(1, 1, 3)
        assert QuorumConfig().overlapping
        with pytest.raises(ValueError):
            QuorumConfig(replication_factor=0)

    def test_write_sends_to_replica_set(self, quorum: QuorumReplicationAlgorithm):
        write_id = quorum.write("N0", "x", 1)

        targets = sorted(m.to_id for m in quorum.list_in_flight())
        assert targets == ["N1", "N2"]
        assert quorum.get_write(write_id).status == WriteStatus.PENDING

    def test_write_durable_after_w_acks(self, quorum: QuorumReplicationAlgorithm):
        write_id = quorum.write("N0", "x", 1, quorum_write=2)
        deliver_type(quorum, "Write")

        first_ack = [m.id for m in quorum.list_in_flight() if m.type == "WriteAck"][0]
        quorum.deliver(first_ack)

        record = quorum.get_write(write_id)
        assert record.status == WriteStatus.DURABLE
        assert record.acks == {"N0", "N1"}

    def test_write_with_unreachable_quorum_fails(self, quorum: QuorumReplicationAlgorithm):
        quorum.fail_node("N1")
        quorum.fail_node("N2")
        write_id = quorum.write("N0", "x", 1, quorum_write=2)
        assert quorum.get_write(write_id).status == WriteStatus.FAILED

    def test_write_on_failed_coordinator(self, quorum: QuorumReplicationAlgorithm):
        quorum.fail_node("N0")
        assert quorum.write("N0", "x", 1) is None
        assert quorum.get_event_log()[-1].type == "write_failed"

    def test_read_repair_fixes_stale_replica(self, quorum: QuorumReplicationAlgorithm):
        quorum.write("N0", "x", "v1")
        stale_write = [m.id for m in quorum.list_in_flight() if m.to_id == "N2"][0]
        quorum.ctx.messages.drop(stale_write)
        quorum.deliver_all()

        result = quorum.read("N0", "x", quorum_read=3)

        assert result.success
        assert result.value == "v1"
        assert result.observed == {"N0": 1, "N1": 1, "N2": None}
        assert result.repaired == ["N2"]
        quorum.deliver_all()
        assert quorum.get_node("N2").data["x"].value == "v1"
        assert quorum.get_stats()["read_repairs"] == 1

    def test_read_returns_newest_version(self, quorum: QuorumReplicationAlgorithm):
        quorum.write("N0", "x", "old")
        quorum.deliver_all()
        quorum.write("N0", "x", "new")

        assert quorum.read("N0", "x", quorum_read=2).value == "new"

    def test_quorum_is_clamped_to_replication_factor(self, quorum: QuorumReplicationAlgorithm):
        write_id = quorum.write("N0", "x", 1, quorum_write=10)
        assert quorum.get_write(write_id).write_quorum == 3

    def test_stats(self, quorum: QuorumReplicationAlgorithm):
        quorum.write("N0", "x", 1)
        quorum.deliver_all()
        stats = quorum.get_stats()
        assert stats["durable_writes"] == 1
        assert stats["total_keys"] == 1
        assert stats["messages"]["in_flight"] == 0


# ============================================================================
# Replicated Log Tests
# ============================================================================

@pytest.mark.unit
class TestReplicationLog:

    @pytest.fixture
    def log(self) -> ReplicationLogAlgorithm:
        return ReplicationLogAlgorithm(replica_count=3)

    def test_initial_leader(self, log: ReplicationLogAlgorithm):
        assert log.get_leader().id == "B0"
        assert log.get_partition().isr == ["B0", "B1", "B2"]

    def test_high_watermark_follows_isr(self, log: ReplicationLogAlgorithm):
        assert log.produce("a") == 0
        assert log.get_leader().high_watermark == -1

        log.deliver_all()

        assert log.get_leader().high_watermark == 0
        assert all(len(r.log) == 1 for r in log.get_replicas())

    def test_out_of_sync_replica_does_not_hold_back_watermark(self, log: ReplicationLogAlgorithm):
        log.mark_out_of_sync("B2")
        log.produce("a")
        log.produce("b")
        log.deliver_all()

        assert log.get_leader().high_watermark == 1
        assert log.get_stats()["under_replicated"] is True
        assert log.get_replicas()[2].lag == 2

    def test_fetch_catches_up_follower(self, log: ReplicationLogAlgorithm):
        log.mark_out_of_sync("B2")
        log.produce("a")
        log.produce("b")
        log.deliver_all()

        log.fetch("B2")
        log.deliver_all()
        log.mark_in_sync("B2")

        follower = log.get_replicas()[2]
        assert [r.value for r in follower.log] == ["a", "b"]
        assert follower.lag == 0
        assert log.get_partition().isr == ["B0", "B1", "B2"]

    def test_leader_failover_to_isr(self, log: ReplicationLogAlgorithm):
        log.produce("a")
        log.deliver_all()
        log.fail_replica("B0")

        leader = log.get_leader()
        assert leader.id == "B1"
        assert leader.role == ReplicaRole.LEADER
        assert log.get_partition().leader_epoch == 1
        assert log.produce("b") == 1

    def test_partition_offline_without_isr(self, log: ReplicationLogAlgorithm):
        log.mark_out_of_sync("B1")
        log.mark_out_of_sync("B2")
        log.fail_replica("B0")

        assert log.get_partition().leader_id is None
        assert log.produce("x") is None

        log.recover_replica("B0")
        assert log.get_leader().id == "B0"

    def test_messages_from_failed_leader_are_dropped(self, log: ReplicationLogAlgorithm):
        log.produce("a")
        log.fail_replica("B0")
        log.deliver_all()
        assert log.get_replicas()[2].log == []


# ============================================================================
# Gossip Tests
# ============================================================================

@pytest.mark.unit
class TestGossip:

    @pytest.fixture
    def gossip(self) -> GossipAntiEntropyAlgorithm:
        return GossipAntiEntropyAlgorithm(node_count=4, seed=7)

    def test_full_fanout_push_pull_converges_in_one_round(self, gossip: GossipAntiEntropyAlgorithm):
        gossip.set_value("N0", "color", "red")
        assert not gossip.get_stats()["converged"]

        assert gossip.gossip_round(GossipMode.PUSH_PULL, fanout=3) == 12
        gossip.deliver_all()

        assert gossip.get_stats()["converged"]
        assert all(n.data["color"].value == "red" for n in gossip.get_nodes())

    def test_pull_sends_no_entries(self, gossip: GossipAntiEntropyAlgorithm):
        gossip.set_value("N0", "k", 1)
        gossip.gossip_round(GossipMode.PULL, fanout=1)
        assert all(m.payload["entries"] == {} for m in gossip.list_in_flight())

    def test_concurrent_versions_tie_break_by_origin(self, gossip: GossipAntiEntropyAlgorithm):
        gossip.set_value("N0", "k", "from-n0")
        gossip.set_value("N3", "k", "from-n3")
        gossip.gossip_round(GossipMode.PUSH_PULL, fanout=3)
        gossip.deliver_all()

        assert {n.data["k"].value for n in gossip.get_nodes()} == {"from-n3"}

    def test_failed_node_skipped(self, gossip: GossipAntiEntropyAlgorithm):
        gossip.fail_node("N3")
        assert gossip.set_value("N3", "k", 1) is False
        gossip.set_value("N0", "k", 1)
        gossip.gossip_round(fanout=2)
        gossip.deliver_all()

        assert "k" not in gossip.get_nodes()[3].data
        assert gossip.get_stats()["converged"]

    def test_round_needs_two_healthy_nodes(self, gossip: GossipAntiEntropyAlgorithm):
        for node_id in ("N1", "N2", "N3"):
            gossip.fail_node(node_id)
        assert gossip.gossip_round() == 0

    def test_seeded_rounds_are_reproducible(self):
        a = GossipAntiEntropyAlgorithm(node_count=6, seed=3)
        b = GossipAntiEntropyAlgorithm(node_count=6, seed=3)
        a.gossip_round()
        b.gossip_round()
        assert [(m.from_id, m.to_id) for m in a.get_messages()] == [(m.from_id, m.to_id) for m in b.get_messages()]

    def test_reset_restores_rng(self, gossip: GossipAntiEntropyAlgorithm):
        gossip.gossip_round()
        first = [(m.from_id, m.to_id) for m in gossip.get_messages()]
        gossip.reset()
        gossip.gossip_round()
        assert [(m.from_id, m.to_id) for m in gossip.get_messages()] == first


# ============================================================================
# Merkle Anti-Entropy Tests
# ============================================================================

@pytest.mark.unit
class TestMerkle:

    @pytest.fixture
    def merkle(self) -> MerkleAntiEntropyAlgorithm:
        return MerkleAntiEntropyAlgorithm()

    def test_build_tree_carries_odd_node(self):
        leaves = [MerkleTreeNode(hash=str(i), range=(f"k{i}", f"k{i}")) for i in range(3)]
        root = build_tree(leaves)
        assert root.range == ("k0", "k2")
        assert root.right is leaves[2]
        assert build_tree([]) is None

    def test_initial_divergence(self, merkle: MerkleAntiEntropyAlgorithm):
        assert merkle.mismatched_keys() == ["k3", "k7", "k9"]
        assert merkle.get_stats()["roots_match"] is False

    def test_sync_repairs_only_differing_leaves(self, merkle: MerkleAntiEntropyAlgorithm):
        merkle.compare_roots()
        merkle.deliver_all()

        assert merkle.mismatched_keys() == []
        assert merkle.get_stats()["roots_match"] is True
        synced = sorted(m.payload["key"] for m in merkle.get_messages() if m.type == "SyncLeaf")
        assert synced == ["k3", "k7", "k9"]

    def test_newest_version_wins_in_both_directions(self, merkle: MerkleAntiEntropyAlgorithm):
        merkle.compare_roots()
        merkle.deliver_all()
        r0, r1 = merkle.get_replicas()
        assert r1.data["k3"] == "k3-v2"
        assert r0.data["k9"] == "k9-v2"

    def test_matching_roots_send_nothing_more(self, merkle: MerkleAntiEntropyAlgorithm):
        merkle.compare_roots()
        merkle.deliver_all()
        merkle.compare_roots()
        merkle.deliver_all()
        assert merkle.get_event_log()[-1].type == "roots_match"

    def test_mutation_creates_new_divergence(self, merkle: MerkleAntiEntropyAlgorithm):
        merkle.compare_roots()
        merkle.deliver_all()
        merkle.mutate_replica("R1", "k5", "fresh")
        assert merkle.mismatched_keys() == ["k5"]


# ============================================================================
# CRDT Tests
# ============================================================================

@pytest.mark.unit
class TestCRDTs:

    @pytest.fixture
    def crdt(self) -> CRDTAlgorithm:
        return CRDTAlgorithm(replica_count=3)

    def test_gcounter_converges(self, crdt: CRDTAlgorithm):
        crdt.increment("R0", 2)
        crdt.increment("R1", 3)
        crdt.sync_all()
        crdt.deliver_all()

        assert [crdt.counter_value(r) for r in ("R0", "R1", "R2")] == [5, 5, 5]
        assert crdt.get_stats()["divergent_gcounter"] == 0

    def test_gcounter_merge_is_idempotent(self, crdt: CRDTAlgorithm):
        crdt.increment("R0")
        for _ in range(3):
            crdt.sync("R0", "R1")
            crdt.deliver_all()
        assert crdt.counter_value("R1") == 1

    def test_orset_add_wins_over_concurrent_remove(self, crdt: CRDTAlgorithm):
        crdt.or_set_add("R0", "x")
        crdt.sync_all()
        crdt.deliver_all()

        crdt.or_set_remove("R1", "x")
        crdt.or_set_add("R0", "x")
        crdt.sync_all()
        crdt.deliver_all()

        assert crdt.set_values("R0") == ["x"]
        assert crdt.set_values("R1") == ["x"]
        assert crdt.set_values("R2") == ["x"]

    def test_orset_remove_of_observed_value(self, crdt: CRDTAlgorithm):
        crdt.or_set_add("R0", "y")
        crdt.or_set_remove("R0", "y")
        assert crdt.set_values("R0") == []

    def test_rga_concurrent_inserts_same_order_everywhere(self, crdt: CRDTAlgorithm):
        crdt.rga_insert("R0", "a", after_id=HEAD_ID)
        crdt.rga_insert("R1", "b", after_id=HEAD_ID)
        crdt.sync_all()
        crdt.deliver_all()

        assert crdt.sequence("R0") == crdt.sequence("R1") == crdt.sequence("R2")
        assert sorted(crdt.sequence("R0")) == ["a", "b"]
        assert crdt.get_stats()["divergent_rga"] == 0

    def test_rga_appends_and_removes(self, crdt: CRDTAlgorithm):
        crdt.rga_insert("R0", "h")
        second = crdt.rga_insert("R0", "i")
        crdt.rga_insert("R0", "!")
        assert crdt.sequence("R0") == ["h", "i", "!"]

        crdt.rga_remove("R0", second)
        assert crdt.sequence("R0") == ["h", "!"]

    def test_rga_tombstone_replicates(self, crdt: CRDTAlgorithm):
        element = crdt.rga_insert("R0", "a")
        crdt.sync("R0", "R1")
        crdt.deliver_all()
        crdt.rga_remove("R1", element)
        crdt.sync("R1", "R0")
        crdt.deliver_all()
        assert crdt.sequence("R0") == []

    def test_queries_for_unknown_replica(self, crdt: CRDTAlgorithm):
        crdt.increment("R9")
        assert crdt.counter_value("R9") is None
        assert crdt.set_values("R9") == []
        assert crdt.sequence("R9") == []


# ============================================================================
# Eventual Consistency Tests
# ============================================================================

@pytest.mark.unit
class TestEventualConsistency:

    @pytest.fixture
    def ec(self) -> EventualConsistencyAlgorithm:
        return EventualConsistencyAlgorithm(node_count=5, replication_factor=3)

    def test_compare_clocks(self):
        assert compare_clocks({"a": 2, "b": 1}, {"a": 1, "b": 1}) == "after"
        assert compare_clocks({"a": 1}, {"a": 2}) == "before"
        assert compare_clocks({"a": 1, "b": 0}, {"a": 0, "b": 1}) == "concurrent"

    def test_replica_set_wraps_around_ring(self, ec: EventualConsistencyAlgorithm):
        assert ec.replica_set("N4") == ["N4", "N0", "N1"]

    def test_level_one_completes_locally(self, ec: EventualConsistencyAlgorithm):
        write_id = ec.write("x", 1, "N0", ConsistencyLevel.ONE)
        assert ec.get_write(write_id).complete

    def test_quorum_write_needs_one_ack(self, ec: EventualConsistencyAlgorithm):
        write_id = ec.write("x", 1, "N0", ConsistencyLevel.QUORUM)
        assert not ec.get_write(write_id).complete

        deliver_type(ec, "Replicate")
        first_ack = [m.id for m in ec.list_in_flight() if m.type == "ReplicateAck"][0]
        ec.deliver(first_ack)

        assert ec.get_write(write_id).complete

    def test_all_write_waits_for_every_replica(self, ec: EventualConsistencyAlgorithm):
        ec.fail_node("N2")
        write_id = ec.write("x", 1, "N0", ConsistencyLevel.ALL)
        ec.deliver_all()
        assert not ec.get_write(write_id).complete
        assert ec.get_stats()["pending_writes"] == 1

    def test_stale_read_at_level_one(self, ec: EventualConsistencyAlgorithm):
        ec.write("x", 1, "N0", ConsistencyLevel.ONE)
        assert ec.read("x", "N1", ConsistencyLevel.ONE) is None

        ec.deliver_all()
        assert ec.read("x", "N1", ConsistencyLevel.ONE) == 1

    def test_quorum_read_sees_latest(self, ec: EventualConsistencyAlgorithm):
        ec.write("x", 1, "N1", ConsistencyLevel.ONE)
        # N0's replica set is N0, N1, N2
        assert ec.read("x", "N0", ConsistencyLevel.QUORUM) == 1

    def test_concurrent_writes_resolve_deterministically(self):
        ec = EventualConsistencyAlgorithm(node_count=3, replication_factor=3)
        ec.write("x", "a", "N0", ConsistencyLevel.ONE)
        ec.write("x", "b", "N1", ConsistencyLevel.ONE)
        ec.deliver_all()

        assert {n.data["x"].value for n in ec.get_nodes()} == {"b"}
        assert ec.get_stats()["conflicts"] == 3
        assert ec.inconsistent_keys() == []

    def test_recovered_node_catches_up(self):
        ec = EventualConsistencyAlgorithm(node_count=3, replication_factor=3)
        ec.fail_node("N2")
        ec.write("x", 1, "N0", ConsistencyLevel.QUORUM)
        ec.deliver_all()

        ec.recover_node("N2")
        ec.deliver_all()

        assert ec.get_nodes()[2].data["x"].value == 1

    def test_failed_coordinator(self, ec: EventualConsistencyAlgorithm):
        ec.fail_node("N0")
        assert ec.write("x", 1, "N0") is None
        assert ec.read("x", "N0") is None

    def test_snapshot_restore(self, ec: EventualConsistencyAlgorithm):
        ec.write("x", 1, "N0")
        snapshot = ec.snapshot()
        ec.deliver_all()
        ec.run_anti_entropy()
        ec.restore(snapshot)
        assert ec.snapshot() == snapshot
