"""
Unit tests for logical time: Lamport clocks with totally ordered broadcast,
vector clocks and Chandy-Lamport snapshots
"""
import pytest

from distrisim.clocks.chandy_lamport import ChandyLamportAlgorithm
from distrisim.clocks.lamport import LamportClocksAlgorithm
from distrisim.clocks.vector import (
    CausalEventType,
    VectorClocksAlgorithm,
    concurrent,
    format_clock,
    happened_before,
)


# ============================================================================
# Lamport Clock Tests
# ============================================================================

@pytest.fixture
def lamport() -> LamportClocksAlgorithm:
    return LamportClocksAlgorithm(node_count=3)


def clock_of(protocol: LamportClocksAlgorithm, node_id: str) -> int:
    return next(n.clock for n in protocol.get_nodes() if n.id == node_id)


@pytest.mark.unit
class TestLamportClocks:

    def test_local_event_increments_clock(self, lamport: LamportClocksAlgorithm):
        lamport.local_event("P0")
        lamport.local_event("P0")
        assert clock_of(lamport, "P0") == 2

    def test_receive_moves_clock_past_timestamp(self, lamport: LamportClocksAlgorithm):
        lamport.local_event("P0")
        lamport.local_event("P0")
        lamport.broadcast("P0", "x")

        to_p1 = [m for m in lamport.list_in_flight() if m.type == "Broadcast" and m.to_id == "P1"][0]
        assert to_p1.payload["timestamp"] == 3
        lamport.deliver(to_p1.id)

        # max(0, 3) + 1 on receipt, +1 for the acks it sends
        assert clock_of(lamport, "P1") == 5

    def test_broadcast_waits_for_all_acks(self, lamport: LamportClocksAlgorithm):
        lamport.broadcast("P0", "x")
        assert lamport.delivery_order("P0") == []
        assert lamport.get_stats()["pending_messages"] == 1

        lamport.deliver_all()

        for node_id in ("P0", "P1", "P2"):
            assert lamport.delivery_order(node_id) == ["x"]
        assert lamport.get_stats()["pending_messages"] == 0

    def test_concurrent_broadcasts_deliver_in_same_order(self, lamport: LamportClocksAlgorithm):
        lamport.broadcast("P1", "b")
        lamport.broadcast("P0", "a")
        lamport.broadcast("P2", "c")
        lamport.deliver_all()

        orders = [lamport.delivery_order(n) for n in ("P0", "P1", "P2")]
        assert orders[0] == orders[1] == orders[2]
        # equal timestamps are ordered by sender id
        assert orders[0] == ["a", "b", "c"]

    def test_failed_process_cannot_broadcast(self, lamport: LamportClocksAlgorithm):
        lamport.fail_node("P2")
        assert lamport.broadcast("P2", "x") is None

    def test_broadcast_ids(self, lamport: LamportClocksAlgorithm):
        assert lamport.broadcast("P0", "x") == "b-0"
        assert lamport.broadcast("P1", "y") == "b-1"
        assert lamport.get_stats()["total_broadcasts"] == 2

    def test_reset(self, lamport: LamportClocksAlgorithm):
        lamport.broadcast("P0", "x")
        lamport.deliver_all()
        lamport.reset()
        assert lamport.snapshot() == LamportClocksAlgorithm(node_count=3).snapshot()

    def test_delivery_order_for_unknown_node(self, lamport: LamportClocksAlgorithm):
        lamport.broadcast("P0", "x")
        lamport.deliver_all()
        assert lamport.delivery_order("P7") == []


# ============================================================================
# Vector Clock Tests
# ============================================================================

@pytest.fixture
def vector() -> VectorClocksAlgorithm:
    return VectorClocksAlgorithm(process_count=3)


@pytest.mark.unit
class TestVectorClocks:

    def test_happened_before_and_concurrent(self):
        assert happened_before({"a": 1, "b": 0}, {"a": 1, "b": 1})
        assert not happened_before({"a": 1}, {"a": 1})
        assert concurrent({"a": 1, "b": 0}, {"a": 0, "b": 1})
        assert not concurrent({"a": 1}, {"a": 1})
        assert format_clock({"P1": 2, "P0": 1}) == "[1, 2]"

    def test_local_event_ticks_own_entry(self, vector: VectorClocksAlgorithm):
        event = vector.local_event("P1")
        assert event.vector_clock == {"P0": 0, "P1": 1, "P2": 0}
        assert event.type == CausalEventType.LOCAL

    def test_send_then_receive_is_causal(self, vector: VectorClocksAlgorithm):
        send = vector.send_message("P0", "P1", "hello")
        receive = vector.receive_message("P1")

        assert send.vector_clock == {"P0": 1, "P1": 0, "P2": 0}
        assert receive.vector_clock == {"P0": 1, "P1": 1, "P2": 0}
        assert receive.related_event == send.id
        assert vector.compare_events(send.id, receive.id) == "before"
        assert vector.compare_events(receive.id, send.id) == "after"

    def test_independent_events_are_concurrent(self, vector: VectorClocksAlgorithm):
        a = vector.local_event("P0")
        b = vector.local_event("P2")
        assert vector.compare_events(a.id, b.id) == "concurrent"
        assert [e.id for e in vector.concurrent_events(a.id)] == [b.id]
        assert vector.get_stats()["concurrent_pairs"] == 1

    def test_causal_history_follows_chain(self, vector: VectorClocksAlgorithm):
        vector.send_message("P0", "P1", "m1")
        vector.receive_message("P1")
        vector.send_message("P1", "P2", "m2")
        last = vector.receive_message("P2")
        vector.local_event("P0")

        history = vector.causal_history(last.id)
        assert [e.process_id for e in history] == ["P0", "P1", "P1"]

    def test_receive_specific_message(self, vector: VectorClocksAlgorithm):
        first = vector.send_message("P0", "P2", "first")
        vector.send_message("P1", "P2", "second")

        receive = vector.receive_message("P2", send_event_id=first.id)

        assert receive.description == "first"
        assert len(vector.list_in_flight()) == 1

    def test_receive_without_message(self, vector: VectorClocksAlgorithm):
        assert vector.receive_message("P0") is None

    def test_message_to_failed_process_is_dropped(self, vector: VectorClocksAlgorithm):
        vector.send_message("P0", "P1")
        vector.fail_process("P1")
        assert vector.receive_message("P1") is None
        assert vector.get_stats()["messages"]["dropped"] == 1

    def test_unknown_event_comparison(self, vector: VectorClocksAlgorithm):
        assert vector.compare_events("event-0", "event-9") == "unknown"


# ============================================================================
# Chandy-Lamport Snapshot Tests
# ============================================================================

@pytest.fixture
def chandy() -> ChandyLamportAlgorithm:
    return ChandyLamportAlgorithm(node_count=3)


@pytest.mark.unit
class TestChandyLamport:

    def test_snapshot_completes_on_every_node(self, chandy: ChandyLamportAlgorithm):
        snapshot_id = chandy.start_snapshot("N0")
        assert snapshot_id == "S0"
        assert chandy.global_snapshot(snapshot_id) is None

        chandy.deliver_all()

        result = chandy.global_snapshot(snapshot_id)
        assert result["local_states"] == {"N0": 0, "N1": 0, "N2": 0}
        assert all(values == [] for values in result["channels"].values())
        assert chandy.get_stats()["snapshots_complete"] == 3

    def test_in_transit_message_is_recorded_on_channel(self, chandy: ChandyLamportAlgorithm):
        chandy.send_message("N1", "N0", "$10")
        snapshot_id = chandy.start_snapshot("N0")
        chandy.deliver_all()

        result = chandy.global_snapshot(snapshot_id)
        assert result["local_states"] == {"N0": 0, "N1": 1, "N2": 0}
        assert result["channels"]["N1->N0"] == ["$10"]
        assert chandy.get_stats()["recorded_channel_messages"] == 1

    def test_message_after_marker_is_not_recorded(self, chandy: ChandyLamportAlgorithm):
        snapshot_id = chandy.start_snapshot("N0")
        chandy.deliver_all()
        chandy.send_message("N1", "N0", "late")
        chandy.deliver_all()

        assert chandy.global_snapshot(snapshot_id)["channels"]["N1->N0"] == []
        assert chandy.get_nodes()[0].local_state == 1

    def test_concurrent_snapshots_are_independent(self, chandy: ChandyLamportAlgorithm):
        first = chandy.start_snapshot("N0")
        second = chandy.start_snapshot("N2")
        chandy.deliver_all()

        assert chandy.global_snapshot(first) is not None
        assert chandy.global_snapshot(second) is not None

    def test_failed_node_blocks_completion(self, chandy: ChandyLamportAlgorithm):
        chandy.fail_node("N2")
        snapshot_id = chandy.start_snapshot("N0")
        chandy.deliver_all()

        assert chandy.global_snapshot(snapshot_id) is None
        assert chandy.get_stats()["snapshots_active"] == 2

    def test_send_to_failed_node(self, chandy: ChandyLamportAlgorithm):
        chandy.fail_node("N1")
        assert chandy.send_message("N0", "N1", "x") is None
        assert chandy.start_snapshot("N1") is None
