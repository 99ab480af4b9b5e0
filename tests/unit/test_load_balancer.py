"""
Unit tests for least-loaded request dispatch
"""
import pytest

from distrisim.balancer.load_balancer import LoadBalancingAlgorithm, LoadStatus, RequestStatus


@pytest.fixture
def balancer() -> LoadBalancingAlgorithm:
    return LoadBalancingAlgorithm(worker_count=4, capacity=3, max_queue=8)


def request(balancer: LoadBalancingAlgorithm, request_id: str):
    return next(r for r in balancer.get_requests() if r.id == request_id)


def worker(balancer: LoadBalancingAlgorithm, worker_id: str):
    return next(w for w in balancer.get_workers() if w.id == worker_id)


@pytest.mark.unit
class TestDispatch:

    def test_requests_spread_over_least_loaded(self, balancer: LoadBalancingAlgorithm):
        ids = balancer.burst(4)

        assert ids == ["req-0", "req-1", "req-2", "req-3"]
        assert [request(balancer, i).assigned_to for i in ids] == ["W0", "W1", "W2", "W3"]
        assert all(w.queue == 1 for w in balancer.get_workers())

    def test_delivery_starts_processing(self, balancer: LoadBalancingAlgorithm):
        balancer.enqueue_request()
        balancer.deliver_all()

        assert request(balancer, "req-0").status == RequestStatus.PROCESSING
        w0 = worker(balancer, "W0")
        assert w0.queue == 0
        assert w0.processing == 1

    def test_latency_counts_ticks(self, balancer: LoadBalancingAlgorithm):
        balancer.enqueue_request(latency=2)
        balancer.deliver_all()

        balancer.tick()
        assert request(balancer, "req-0").status == RequestStatus.PROCESSING
        balancer.tick()
        assert request(balancer, "req-0").status == RequestStatus.DONE

        balancer.deliver_all()
        assert balancer.get_event_log()[-1].type == "complete"
        assert balancer.get_stats()["completed"] == 1
        assert worker(balancer, "W0").processing == 0

    def test_full_queue_drops(self):
        balancer = LoadBalancingAlgorithm(worker_count=1, capacity=1, max_queue=2)
        balancer.burst(3)
        balancer.deliver_all()

        assert request(balancer, "req-0").status == RequestStatus.PROCESSING
        assert request(balancer, "req-1").status == RequestStatus.QUEUED
        assert request(balancer, "req-2").status == RequestStatus.DROPPED
        assert worker(balancer, "W0").load_status == LoadStatus.OVERLOADED
        assert any(m.type == "Drop" for m in balancer.get_messages())

    def test_waiting_request_starts_when_capacity_frees(self):
        balancer = LoadBalancingAlgorithm(worker_count=1, capacity=1, max_queue=4)
        balancer.burst(2)
        balancer.deliver_all()

        balancer.tick()

        assert request(balancer, "req-0").status == RequestStatus.DONE
        assert request(balancer, "req-1").status == RequestStatus.PROCESSING

    def test_no_healthy_worker_drops_silently(self):
        balancer = LoadBalancingAlgorithm(worker_count=1)
        balancer.fail_worker("W0")
        balancer.enqueue_request()

        assert request(balancer, "req-0").status == RequestStatus.DROPPED
        assert balancer.list_in_flight() == []


@pytest.mark.unit
class TestFailures:

    def test_failed_worker_requests_are_redispatched(self):
        balancer = LoadBalancingAlgorithm(worker_count=2)
        balancer.burst(2)
        balancer.deliver_all()

        balancer.fail_worker("W0")
        balancer.deliver_all()

        moved = request(balancer, "req-0")
        assert moved.assigned_to == "W1"
        assert moved.status == RequestStatus.PROCESSING
        assert worker(balancer, "W0").load_status == LoadStatus.FAILED
        assert worker(balancer, "W1").processing == 2

    def test_in_flight_dispatch_to_failed_worker_is_dropped(self, balancer: LoadBalancingAlgorithm):
        balancer.enqueue_request()
        balancer.fail_worker("W0")
        balancer.deliver_all()

        assert request(balancer, "req-0").assigned_to == "W1"
        assert balancer.get_stats()["messages"]["dropped"] == 1

    def test_recovered_worker_takes_new_requests(self, balancer: LoadBalancingAlgorithm):
        balancer.fail_worker("W0")
        balancer.burst(3)
        balancer.recover_worker("W0")

        assert balancer.enqueue_request() == "req-3"
        assert request(balancer, "req-3").assigned_to == "W0"

    def test_stats_and_reset(self, balancer: LoadBalancingAlgorithm):
        balancer.burst(8)
        stats = balancer.get_stats()
        assert stats["total_requests"] == 8
        assert stats["in_flight"] == 8
        assert stats["load"]["mean"] == pytest.approx(2.0)

        balancer.reset()
        assert balancer.snapshot() == LoadBalancingAlgorithm(worker_count=4, capacity=3, max_queue=8).snapshot()
