"""
Least-loaded request dispatch over a pool of workers.

The balancer sends every request to the healthy worker with the smallest
``queue + processing``. A worker runs up to ``capacity`` requests at once
and keeps the rest queued; each ``tick`` is one unit of request latency.
Requests are dropped when no worker is healthy or the chosen worker's
queue is full.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from distrisim.core.context import ProtocolSnapshot, SimulationContext
from distrisim.core.layout import Position, circle_position
from distrisim.core.message_pool import Message, MessageStatus
from distrisim.core.participant import HealthStatus
from distrisim.core.stats import count_by, load_summary, message_counts

logger = logging.getLogger(__name__)

BALANCER_ID = "balancer"
WORKER_CAPACITY = 3
MAX_QUEUE = 8


class LoadStatus(str, Enum):
    HEALTHY = "healthy"
    OVERLOADED = "overloaded"
    FAILED = "failed"


class RequestStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    DROPPED = "dropped"


@dataclass
class LoadWorker:
    id: str
    position: Position
    status: HealthStatus = HealthStatus.HEALTHY
    load_status: LoadStatus = LoadStatus.HEALTHY
    capacity: int = WORKER_CAPACITY
    queue: int = 0
    processing: int = 0

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    @property
    def load(self) -> int:
        return self.queue + self.processing


@dataclass
class LoadRequest:
    id: str
    latency: int
    remaining: int
    status: RequestStatus = RequestStatus.QUEUED
    assigned_to: Optional[str] = None
    started_at: Optional[int] = None


class LoadBalancingAlgorithm:
    """Workers ``W0..`` behind a single balancer."""

    name = "load-balancing"

    def __init__(self, worker_count: int = 4, capacity: int = WORKER_CAPACITY, max_queue: int = MAX_QUEUE):
        self.worker_count = worker_count
        self.capacity = capacity
        self.max_queue = max_queue
        self.ctx = SimulationContext(
            self.name,
            message_prefix="lb",
            dispatch=self._dispatch,
            should_drop=self._is_undeliverable,
        )
        self.workers = self.ctx.registry("workers", self._initial_workers)
        self.requests = self.ctx.registry("requests", list)
        self.request_counter = 0

    def _initial_workers(self) -> List[LoadWorker]:
        return [
            LoadWorker(id=f"W{i}", position=circle_position(i, self.worker_count), capacity=self.capacity)
            for i in range(self.worker_count)
        ]

    # Queries

    def get_workers(self) -> List[LoadWorker]:
        return self.workers.list()

    def get_requests(self) -> List[LoadRequest]:
        return self.requests.list()

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    # Requests

    def enqueue_request(self, latency: int = 1) -> str:
        """
        Accept a request and dispatch it.

        Args:
            latency: Ticks of processing the request needs

        Returns:
            The request id (``req-N``)
        """
        latency = max(1, int(latency))
        request = LoadRequest(id=f"req-{self.request_counter}", latency=latency, remaining=latency)
        self.request_counter += 1
        self.requests.upsert(request)
        self._dispatch_request(self.requests.find(request.id))
        return request.id

    def burst(self, count: int, latency: int = 1) -> List[str]:
        self.ctx.record("burst", f"Burst of {count} requests", count=count, latency=latency)
        return [self.enqueue_request(latency) for _ in range(count)]

    def _pick_worker(self) -> Optional[LoadWorker]:
        candidates = [w for w in self.workers if w.healthy]
        if not candidates:
            return None
        return min(candidates, key=lambda w: (w.load, w.id))

    def _dispatch_request(self, request: LoadRequest):
        target = self._pick_worker()
        if target is None or target.queue >= self.max_queue:
            request.status = RequestStatus.DROPPED
            request.assigned_to = None
            if target is not None:
                self.ctx.send(BALANCER_ID, target.id, "Drop", {"request_id": request.id, "worker_id": target.id})
            self.ctx.record("drop", f"{request.id} dropped", request_id=request.id)
            logger.debug(f"LoadBalancer: {request.id} dropped")
            return

        request.status = RequestStatus.QUEUED
        request.assigned_to = target.id
        target.queue += 1
        self.ctx.send(BALANCER_ID, target.id, "Dispatch", {"request_id": request.id, "worker_id": target.id})
        self.ctx.record(
            "dispatch",
            f"{request.id} dispatched to {target.id}",
            request_id=request.id,
            worker_id=target.id,
        )

    def _on_dispatch(self, message: Message):
        worker = self.workers.find(message.to_id)
        request = self.requests.find(message.payload["request_id"])
        if request is None or request.assigned_to != worker.id or request.status != RequestStatus.QUEUED:
            return
        if worker.processing < worker.capacity:
            self._start(worker, request)
        else:
            worker.load_status = LoadStatus.OVERLOADED
            logger.debug(f"LoadBalancer: {worker.id} at capacity, {request.id} waits")

    def _start(self, worker: LoadWorker, request: LoadRequest):
        worker.queue = max(0, worker.queue - 1)
        worker.processing += 1
        request.status = RequestStatus.PROCESSING
        request.started_at = self.ctx.clock.now

    def _start_waiting(self, worker: LoadWorker):
        """Start requests already delivered to ``worker`` while it was full."""
        delivered = {
            m.payload["request_id"]
            for m in self.ctx.messages.list()
            if m.type == "Dispatch" and m.to_id == worker.id and m.status == MessageStatus.DELIVERED
        }
        for request in self.requests:
            if worker.processing >= worker.capacity:
                return
            if request.assigned_to == worker.id and request.status == RequestStatus.QUEUED and request.id in delivered:
                self._start(worker, request)

    # Time

    def tick(self, ms: int = None):
        """Advance one unit of latency for every running request."""
        self.ctx.tick(ms)
        for request in self.requests:
            if request.status != RequestStatus.PROCESSING:
                continue
            request.remaining -= 1
            if request.remaining > 0:
                continue
            request.status = RequestStatus.DONE
            worker = self.workers.find(request.assigned_to)
            if worker is not None:
                worker.processing = max(0, worker.processing - 1)
            self.ctx.send(request.assigned_to, BALANCER_ID, "Complete", {
                "request_id": request.id,
                "worker_id": request.assigned_to,
            })

        for worker in self.workers:
            if not worker.healthy:
                continue
            self._start_waiting(worker)
            if worker.processing < worker.capacity and worker.queue < self.max_queue:
                worker.load_status = LoadStatus.HEALTHY

    def _on_complete(self, message: Message):
        self.ctx.record(
            "complete",
            f"{message.payload['request_id']} completed on {message.from_id}",
            request_id=message.payload["request_id"],
            worker_id=message.from_id,
        )

    # Faults

    def fail_worker(self, worker_id: str):
        """Fail a worker and re-dispatch everything assigned to it."""
        worker = self.workers.find(worker_id)
        if worker is None or not worker.healthy:
            return
        worker.status = HealthStatus.FAILED
        worker.load_status = LoadStatus.FAILED
        worker.queue = 0
        worker.processing = 0
        self.ctx.record("fail", f"{worker_id} failed", worker_id=worker_id)

        orphaned = [
            r for r in self.requests
            if r.assigned_to == worker_id and r.status in (RequestStatus.QUEUED, RequestStatus.PROCESSING)
        ]
        for request in orphaned:
            request.remaining = request.latency
            request.started_at = None
            self._dispatch_request(request)

    def recover_worker(self, worker_id: str):
        worker = self.workers.find(worker_id)
        if worker is None or worker.healthy:
            return
        worker.status = HealthStatus.HEALTHY
        worker.load_status = LoadStatus.HEALTHY
        self.ctx.record("recover", f"{worker_id} recovered", worker_id=worker_id)

    def _is_undeliverable(self, message: Message) -> bool:
        for participant_id in (message.from_id, message.to_id):
            worker = self.workers.find(participant_id)
            if worker is not None and not worker.healthy:
                return True
        return False

    # Engine hooks

    def _dispatch(self, message: Message):
        if message.type == "Dispatch":
            self._on_dispatch(message)
        elif message.type == "Complete":
            self._on_complete(message)

    def deliver(self, message_id: str) -> Optional[MessageStatus]:
        return self.ctx.messages.deliver(message_id)

    def deliver_all(self) -> int:
        return self.ctx.messages.deliver_all()

    def reset(self):
        self.ctx.reset()
        self.request_counter = 0

    def snapshot(self) -> ProtocolSnapshot:
        return self.ctx.snapshot(request_counter=self.request_counter)

    def restore(self, snapshot: ProtocolSnapshot):
        extra = self.ctx.restore(snapshot)
        self.request_counter = extra.get("request_counter", 0)

    def get_stats(self) -> Dict[str, Any]:
        workers = self.workers.values()
        requests = self.requests.values()
        return {
            "total_requests": len(requests),
            "dropped": sum(1 for r in requests if r.status == RequestStatus.DROPPED),
            "in_flight": sum(1 for r in requests if r.status in (RequestStatus.QUEUED, RequestStatus.PROCESSING)),
            "completed": sum(1 for r in requests if r.status == RequestStatus.DONE),
            "workers": count_by(workers, "load_status"),
            "load": load_summary([w.load for w in workers if w.healthy]),
            "messages": message_counts(self.ctx.messages),
        }
