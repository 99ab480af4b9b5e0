"""
In-flight message pool shared by every protocol model.

Messages are created with ``send`` and stay in flight until the host calls
``deliver``. Delivery is idempotent: a message leaves the in-flight state at
most once.
"""
import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class MessageStatus(str, Enum):
    """Lifecycle of a simulated message."""

    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    DROPPED = "dropped"


@dataclass
class Message:
    """Generic protocol message between two participants."""

    id: str
    from_id: str
    to_id: str
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    status: MessageStatus = MessageStatus.IN_FLIGHT
    timestamp: int = 0

    @property
    def in_flight(self) -> bool:
        return self.status == MessageStatus.IN_FLIGHT

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "from": self.from_id,
            "to": self.to_id,
            "type": self.type,
            "payload": copy.deepcopy(self.payload),
            "status": self.status.value,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            from_id=data["from"],
            to_id=data["to"],
            type=data["type"],
            payload=copy.deepcopy(data.get("payload", {})),
            status=MessageStatus(data.get("status", MessageStatus.IN_FLIGHT.value)),
            timestamp=data.get("timestamp", 0),
        )


DeliveryHandler = Callable[[Message], None]
DropPredicate = Callable[[Message], bool]


@dataclass
class MessagePoolState:
    """Full-value copy of a pool, used for timeline snapshots."""

    messages: List[Message]
    next_id: int


class MessagePool:
    """
    Owns the lifecycle of protocol messages (in flight -> delivered/dropped).

    The owning protocol supplies the per-type delivery callback through
    ``dispatch`` and decides with ``should_drop`` whether a message can no
    longer be delivered (e.g. its sender or recipient failed).
    """

    def __init__(
        self,
        prefix: str = "msg",
        dispatch: Optional[DeliveryHandler] = None,
        should_drop: Optional[DropPredicate] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        """
        Initialize an empty pool.

        Args:
            prefix: Prefix of generated message ids
            dispatch: Callback invoked with each delivered message
            should_drop: Predicate marking a message as undeliverable
            clock: Returns the current logical time in milliseconds
        """
        self.prefix = prefix
        self._dispatch = dispatch
        self._should_drop = should_drop
        self._clock = clock or (lambda: 0)
        self._messages: Dict[str, Message] = {}
        self._next_id = 0

    def send(
        self,
        from_id: str,
        to_id: str,
        type: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Create a message in flight.

        Args:
            from_id: Sender participant id
            to_id: Recipient participant id
            type: Protocol-specific type tag
            payload: Opaque payload, copied on send

        Returns:
            Id of the new message
        """
        message_id = f"{self.prefix}-{self._next_id}"
        self._next_id += 1

        self._messages[message_id] = Message(
            id=message_id,
            from_id=from_id,
            to_id=to_id,
            type=type,
            payload=copy.deepcopy(payload) if payload else {},
            timestamp=self._clock(),
        )
        logger.debug(f"{from_id} -> {to_id}: {type} ({message_id})")
        return message_id

    def deliver(self, message_id: str) -> Optional[MessageStatus]:
        """
        Deliver an in-flight message.

        Missing or already terminal ids are ignored.

        Args:
            message_id: Id returned by ``send``

        Returns:
            The terminal status reached, or None if nothing happened
        """
        message = self._messages.get(message_id)
        if message is None or not message.in_flight:
            return None

        if self._should_drop is not None and self._should_drop(message):
            message.status = MessageStatus.DROPPED
            logger.debug(f"{message.from_id} -> {message.to_id}: {message.type} dropped")
            return MessageStatus.DROPPED

        message.status = MessageStatus.DELIVERED
        if self._dispatch is not None:
            self._dispatch(copy.deepcopy(message))
        return MessageStatus.DELIVERED

    def deliver_all(self) -> int:
        """
        Deliver every message in flight, including the ones created while
        delivering, until the pool is quiet.

        Returns:
            Number of delivery attempts made
        """
        attempts = 0
        pending = self.in_flight_ids()
        while pending:
            for message_id in pending:
                self.deliver(message_id)
                attempts += 1
            pending = self.in_flight_ids()
        return attempts

    def deliver_where(self, predicate: DropPredicate) -> int:
        """
        Deliver the in-flight messages matching ``predicate`` (not the ones
        their delivery creates).

        Returns:
            Number of delivery attempts made
        """
        pending = [m.id for m in self._messages.values() if m.in_flight and predicate(m)]
        for message_id in pending:
            self.deliver(message_id)
        return len(pending)

    def deliver_type(self, type: str) -> int:
        """Deliver the messages of one type currently in flight."""
        return self.deliver_where(lambda m: m.type == type)

    def drop(self, message_id: str) -> bool:
        """Mark an in-flight message as dropped."""
        message = self._messages.get(message_id)
        if message is None or not message.in_flight:
            return False
        message.status = MessageStatus.DROPPED
        return True

    def drop_where(self, predicate: DropPredicate) -> int:
        """Drop every in-flight message matching ``predicate``."""
        dropped = 0
        for message in self._messages.values():
            if message.in_flight and predicate(message):
                message.status = MessageStatus.DROPPED
                dropped += 1
        return dropped

    def get(self, message_id: str) -> Optional[Message]:
        message = self._messages.get(message_id)
        return copy.deepcopy(message) if message else None

    def list(self) -> List[Message]:
        """All messages in creation order (copies)."""
        return [copy.deepcopy(m) for m in self._messages.values()]

    def list_in_flight(self) -> List[Message]:
        """In-flight messages in creation order (copies)."""
        return [copy.deepcopy(m) for m in self._messages.values() if m.in_flight]

    def in_flight_ids(self) -> List[str]:
        return [m.id for m in self._messages.values() if m.in_flight]

    def count(self, status: Optional[MessageStatus] = None) -> int:
        if status is None:
            return len(self._messages)
        return sum(1 for m in self._messages.values() if m.status == status)

    def reset(self):
        """Remove every message and restart the id counter."""
        self._messages.clear()
        self._next_id = 0

    def snapshot(self) -> MessagePoolState:
        return MessagePoolState(
            messages=[copy.deepcopy(m) for m in self._messages.values()],
            next_id=self._next_id,
        )

    def restore(self, state: MessagePoolState):
        self._messages = {m.id: copy.deepcopy(m) for m in state.messages}
        self._next_id = state.next_id

    def __len__(self) -> int:
        return len(self._messages)
