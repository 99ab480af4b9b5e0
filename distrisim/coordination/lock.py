"""
Lease-based distributed lock with a FIFO wait queue.

A single manager ``L`` grants the lock to one client at a time for
``lease_ttl_ms`` of logical time. The owner keeps it alive with heartbeats;
a lease that is not renewed expires on ``tick`` and passes to the next
queued client. Every grant carries a monotonically increasing fencing token.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from distrisim.core.context import ProtocolSnapshot, SimulationContext
from distrisim.core.layout import DEFAULT_CENTER, Position, circle_position
from distrisim.core.message_pool import Message, MessageStatus
from distrisim.core.participant import HealthStatus
from distrisim.core.stats import message_counts

logger = logging.getLogger(__name__)

MANAGER_ID = "L"
LEASE_TTL_MS = 4000


class LockRole(str, Enum):
    MANAGER = "manager"
    CLIENT = "client"


@dataclass
class LockNode:
    id: str
    position: Position
    role: LockRole
    status: HealthStatus = HealthStatus.HEALTHY
    holding_lock: bool = False
    lease_expires_at: Optional[int] = None
    fencing_token: Optional[int] = None
    last_heartbeat: Optional[int] = None

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


@dataclass
class LockLease:
    owner_id: Optional[str] = None
    expires_at: Optional[int] = None
    token: int = 0


class DistributedLockAlgorithm:
    """Manager ``L`` and clients ``C0..``."""

    name = "distributed-locking"

    def __init__(self, client_count: int = 4, lease_ttl_ms: int = LEASE_TTL_MS):
        self.client_count = client_count
        self.lease_ttl_ms = lease_ttl_ms
        self.ctx = SimulationContext(
            self.name,
            message_prefix="lock",
            dispatch=self._dispatch,
            should_drop=self._is_undeliverable,
        )
        self.nodes = self.ctx.registry("nodes", self._initial_nodes)
        self.lease = LockLease()
        self.queue: List[str] = []

    def _initial_nodes(self) -> List[LockNode]:
        nodes = [LockNode(id=MANAGER_ID, position=Position(*DEFAULT_CENTER), role=LockRole.MANAGER)]
        for i in range(self.client_count):
            nodes.append(LockNode(
                id=f"C{i}",
                position=circle_position(i, self.client_count, radius=210),
                role=LockRole.CLIENT,
            ))
        return nodes

    # Queries

    def get_nodes(self) -> List[LockNode]:
        return self.nodes.list()

    def get_messages(self) -> List[Message]:
        return self.ctx.messages.list()

    def list_in_flight(self) -> List[Message]:
        return self.ctx.messages.list_in_flight()

    def get_event_log(self):
        return self.ctx.log.list()

    def get_lease(self) -> LockLease:
        return LockLease(**vars(self.lease))

    def get_queue(self) -> List[str]:
        return list(self.queue)

    def _lease_valid(self) -> bool:
        return self.lease.owner_id is not None and self.ctx.clock.now < self.lease.expires_at

    # Client requests

    def _client_send(self, client_id: str, type: str, event: str, description: str) -> bool:
        client = self.nodes.find(client_id)
        if client is None or client.role != LockRole.CLIENT or not client.healthy:
            return False
        self.ctx.send(client_id, MANAGER_ID, type)
        self.ctx.record(event, description, client_id=client_id)
        return True

    def request_lock(self, client_id: str):
        if not self._client_send(client_id, "Acquire", "acquire_request", f"{client_id} requests lock"):
            self.ctx.record("acquire_failed", f"Acquire failed at {client_id}", client_id=client_id)

    def release_lock(self, client_id: str):
        self._client_send(client_id, "Release", "release_request", f"{client_id} releases lock")

    def send_heartbeat(self, client_id: str):
        self._client_send(client_id, "Heartbeat", "heartbeat_send", f"{client_id} heartbeat")

    # Manager

    def _on_acquire(self, message: Message):
        client_id = message.from_id
        if not self._lease_valid() and not self.queue:
            self._grant(client_id)
            return
        if self.lease.owner_id == client_id and self._lease_valid():
            return
        if client_id not in self.queue:
            self.queue.append(client_id)
        position = self.queue.index(client_id) + 1
        self.ctx.send(MANAGER_ID, client_id, "Deny", {"reason": "queued", "queue_position": position})
        self.ctx.record("acquire_queued", f"{client_id} queued", client_id=client_id, position=position)

    def _on_heartbeat(self, message: Message):
        if self.lease.owner_id != message.from_id or not self._lease_valid():
            return
        self.lease.expires_at = self.ctx.clock.now + self.lease_ttl_ms
        self.ctx.send(MANAGER_ID, message.from_id, "Renewed", {"lease_expires_at": self.lease.expires_at})
        self.ctx.record("heartbeat_recv", f"{message.from_id} renewed lease", client_id=message.from_id)

    def _on_release(self, message: Message):
        client_id = message.from_id
        if self.lease.owner_id == client_id:
            self.lease.owner_id = None
            self.lease.expires_at = None
            self.ctx.record("release_ack", f"{client_id} released lock", client_id=client_id)
            self._grant_next()
        elif client_id in self.queue:
            self.queue.remove(client_id)
            self.ctx.record("dequeued", f"{client_id} left the queue", client_id=client_id)
        client = self.nodes.find(client_id)
        client.holding_lock = False
        client.lease_expires_at = None

    def _grant(self, client_id: str):
        if client_id in self.queue:
            self.queue.remove(client_id)
        self.lease.token += 1
        self.lease.owner_id = client_id
        self.lease.expires_at = self.ctx.clock.now + self.lease_ttl_ms
        self.ctx.send(MANAGER_ID, client_id, "Grant", {
            "lease_expires_at": self.lease.expires_at,
            "fencing_token": self.lease.token,
        })
        self.ctx.record(
            "grant",
            f"{client_id} granted lease (token {self.lease.token})",
            client_id=client_id,
            expires_at=self.lease.expires_at,
            fencing_token=self.lease.token,
        )

    def _grant_next(self):
        if self.queue:
            self._grant(self.queue[0])

    def check_timeouts(self):
        """Expire the current lease if it was not renewed in time."""
        if self.lease.owner_id is None or self._lease_valid():
            return
        owner_id = self.lease.owner_id
        logger.info(f"Lock: lease of {owner_id} expired at {self.lease.expires_at}")
        self.ctx.record("lease_timeout", f"Lease expired for {owner_id}", owner_id=owner_id)
        self.lease.owner_id = None
        self.lease.expires_at = None
        self.ctx.send(MANAGER_ID, owner_id, "Timeout")
        self._grant_next()

    # Client side

    def _on_grant(self, message: Message):
        client = self.nodes.find(message.to_id)
        client.holding_lock = True
        client.lease_expires_at = message.payload["lease_expires_at"]
        client.fencing_token = message.payload["fencing_token"]
        client.last_heartbeat = self.ctx.clock.now

    def _on_renewed(self, message: Message):
        client = self.nodes.find(message.to_id)
        client.lease_expires_at = message.payload["lease_expires_at"]
        client.last_heartbeat = self.ctx.clock.now

    def _on_timeout(self, message: Message):
        client = self.nodes.find(message.to_id)
        client.holding_lock = False
        client.lease_expires_at = None

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
        recipient = self.nodes.find(message.to_id)
        return recipient is None or not recipient.healthy

    # Engine hooks

    def _dispatch(self, message: Message):
        handler = {
            "Acquire": self._on_acquire,
            "Heartbeat": self._on_heartbeat,
            "Release": self._on_release,
            "Grant": self._on_grant,
            "Renewed": self._on_renewed,
            "Timeout": self._on_timeout,
        }.get(message.type)
        if handler is not None:
            handler(message)

    def deliver(self, message_id: str) -> Optional[MessageStatus]:
        return self.ctx.messages.deliver(message_id)

    def deliver_all(self) -> int:
        return self.ctx.messages.deliver_all()

    def tick(self, ms: Optional[int] = None):
        self.ctx.tick(ms)
        self.check_timeouts()

    def reset(self):
        self.ctx.reset()
        self.lease = LockLease()
        self.queue = []

    def snapshot(self) -> ProtocolSnapshot:
        return self.ctx.snapshot(lease=self.lease, queue=self.queue)

    def restore(self, snapshot: ProtocolSnapshot):
        extra = self.ctx.restore(snapshot)
        self.lease = extra.get("lease", LockLease())
        self.queue = extra.get("queue", [])

    def get_stats(self) -> Dict[str, Any]:
        nodes = self.nodes.values()
        return {
            "total_nodes": len(nodes),
            "healthy_nodes": sum(1 for n in nodes if n.healthy),
            "lease_owner": self.lease.owner_id,
            "fencing_token": self.lease.token,
            "queue_length": len(self.queue),
            "lease_ttl_ms": self.lease_ttl_ms,
            "messages": message_counts(self.ctx.messages),
        }
