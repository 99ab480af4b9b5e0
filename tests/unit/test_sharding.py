"""
Unit tests for consistent hashing and shard rebalancing
"""
import pytest

from distrisim.sharding.consistent_hash import ConsistentHashingAlgorithm, ring_hash
from distrisim.sharding.rebalancing import (
    HASH_SPACE,
    ShardNodeStatus,
    ShardingRebalancingAlgorithm,
    ShardingStrategy,
    compute_ranges,
)


# ============================================================================
# Consistent Hashing Tests
# ============================================================================

@pytest.fixture
def ring() -> ConsistentHashingAlgorithm:
    ring = ConsistentHashingAlgorithm(server_count=3, virtual_nodes=3)
    ring.add_keys(40)
    return ring


def owners(ring: ConsistentHashingAlgorithm):
    return {f"key-{i}": ring.lookup(f"key-{i}") for i in range(40)}


@pytest.mark.unit
class TestConsistentHashing:

    def test_ring_hash_is_stable_32_bit(self):
        assert ring_hash("server-0-v0") == ring_hash("server-0-v0")
        assert 0 <= ring_hash("anything") < 2 ** 32

    def test_initial_ring(self):
        ring = ConsistentHashingAlgorithm(server_count=3, virtual_nodes=4)
        assert len(ring.get_ring()) == 12
        assert ring.get_physical_servers() == ["server-0", "server-1", "server-2"]
        hashes = [n.hash_value for n in ring.get_ring()]
        assert hashes == sorted(hashes)

    def test_every_key_is_placed_once(self, ring: ConsistentHashingAlgorithm):
        assert sum(ring.load_distribution().values()) == 40
        placed = [k for node in ring.get_ring() for k in node.keys]
        assert sorted(placed) == sorted(owners(ring))

    def test_key_goes_to_first_virtual_node_clockwise(self, ring: ConsistentHashingAlgorithm):
        nodes = ring.get_ring()
        for key in ring.get_keys():
            following = [n for n in nodes if n.hash_value >= key.hash_value]
            expected = following[0] if following else nodes[0]
            assert key.node_id == expected.id

    def test_add_server_only_moves_keys_to_new_server(self, ring: ConsistentHashingAlgorithm):
        before = owners(ring)
        assert ring.add_server() == "server-3"
        after = owners(ring)

        for key, owner in after.items():
            assert owner in (before[key], "server-3")
        assert sum(ring.load_distribution().values()) == 40

    def test_add_existing_server_is_rejected(self, ring: ConsistentHashingAlgorithm):
        assert ring.add_server("server-1") is None

    def test_remove_server_only_moves_its_keys(self, ring: ConsistentHashingAlgorithm):
        before = owners(ring)
        load = ring.load_distribution()["server-1"]

        assert ring.remove_server("server-1") == load
        after = owners(ring)

        for key, owner in before.items():
            if owner != "server-1":
                assert after[key] == owner
        assert "server-1" not in after.values()
        assert ring.remove_server("server-1") == 0

    def test_set_virtual_nodes_rebuilds_ring(self, ring: ConsistentHashingAlgorithm):
        ring.set_virtual_nodes(10)
        stats = ring.get_stats()
        assert stats["total_nodes"] == 30
        assert stats["virtual_nodes_per_server"] == 10
        assert sum(stats["load_distribution"].values()) == 40

    def test_add_key_on_empty_ring(self):
        ring = ConsistentHashingAlgorithm(server_count=0)
        assert ring.add_key("lonely") is None

    def test_reset(self, ring: ConsistentHashingAlgorithm):
        ring.add_server()
        ring.set_virtual_nodes(5)
        ring.reset()
        assert ring.snapshot() == ConsistentHashingAlgorithm(server_count=3, virtual_nodes=3).snapshot()
        assert ring.add_server() == "server-3"


# ============================================================================
# Rebalancing Tests
# ============================================================================

@pytest.fixture
def sharding() -> ShardingRebalancingAlgorithm:
    return ShardingRebalancingAlgorithm(node_count=3, key_count=60)


def assert_placement_settled(sharding: ShardingRebalancingAlgorithm):
    for key in range(sharding.key_count):
        assert sharding.holder_of(key) == sharding.owner_of(key)


@pytest.mark.unit
class TestRebalancing:

    def test_compute_ranges_cover_space(self):
        ranges = compute_ranges(3)
        assert [(r.start, r.end) for r in ranges] == [(0, 32), (33, 65), (66, 99)]
        assert compute_ranges(0) == []
        assert ranges[-1].end == HASH_SPACE - 1

    def test_initial_range_placement(self, sharding: ShardingRebalancingAlgorithm):
        loads = [n.load for n in sharding.get_nodes()]
        assert loads == [33, 27, 0]
        assert_placement_settled(sharding)

    def test_add_node_moves_keys_by_message(self, sharding: ShardingRebalancingAlgorithm):
        node_id = sharding.add_node()
        assert node_id == "N3"

        moves = sharding.list_in_flight()
        assert {(m.from_id, m.to_id) for m in moves} == {("N0", "N1"), ("N1", "N2")}
        assert sharding.get_stats()["migrating_keys"] == 18

        sharding.deliver_all()
        assert_placement_settled(sharding)
        assert sharding.get_stats()["migrating_keys"] == 0

    def test_remove_node_drains_before_leaving(self, sharding: ShardingRebalancingAlgorithm):
        sharding.remove_node("N1")
        assert sharding.get_nodes()[1].status == ShardNodeStatus.DRAINING
        assert sharding.get_stats()["draining_nodes"] == 1

        sharding.deliver_all()

        assert [n.id for n in sharding.get_nodes()] == ["N0", "N2"]
        assert sum(n.load for n in sharding.get_nodes()) == 60
        assert_placement_settled(sharding)

    def test_empty_node_leaves_immediately(self, sharding: ShardingRebalancingAlgorithm):
        sharding.remove_node("N2")
        assert "N2" not in [n.id for n in sharding.get_nodes()]

    def test_hash_strategy_spreads_keys(self, sharding: ShardingRebalancingAlgorithm):
        sharding.set_strategy(ShardingStrategy.HASH)
        sharding.deliver_all()

        assert_placement_settled(sharding)
        assert all(n.load > 0 for n in sharding.get_nodes())
        assert sharding.get_stats()["strategy"] == "hash"

    def test_rebalance_skips_keys_already_moving(self, sharding: ShardingRebalancingAlgorithm):
        sharding.add_node()
        assert sharding.rebalance() == 0

    def test_reset(self, sharding: ShardingRebalancingAlgorithm):
        sharding.set_strategy("hash")
        sharding.add_node()
        sharding.deliver_all()
        sharding.reset()
        assert sharding.snapshot() == ShardingRebalancingAlgorithm(node_count=3, key_count=60).snapshot()
