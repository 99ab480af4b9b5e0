"""
Delivery scheduler.

Protocol models never deliver their own messages. The scheduler plays the
network: every ``advance`` ages the messages in flight by one tick and
delivers those that have waited ``delay_ticks`` ticks. Messages created by a
delivery start aging on the next ``advance``.
"""
import logging
from typing import Dict, List

from distrisim.core.protocol import SimulationProtocol

logger = logging.getLogger(__name__)

DEFAULT_DELAY_TICKS = 1
MAX_SETTLE_ROUNDS = 10_000


class DeliveryScheduler:
    """Fixed-latency delivery of one protocol's in-flight messages."""

    def __init__(self, protocol: SimulationProtocol, delay_ticks: int = DEFAULT_DELAY_TICKS):
        """
        Initialize the scheduler.

        Args:
            protocol: Model whose messages are delivered
            delay_ticks: Ticks a message stays in flight; 0 delivers
                everything, including follow-up messages, on each advance
        """
        self.protocol = protocol
        self.delay_ticks = max(0, int(delay_ticks))
        self._ages: Dict[str, int] = {}

    def advance(self) -> List[str]:
        """
        Age the in-flight messages by one tick and deliver the due ones.

        Returns:
            Ids of the messages handed to ``deliver``, in send order
        """
        if self.delay_ticks == 0:
            return self.settle()

        in_flight = [message.id for message in self.protocol.list_in_flight()]
        self._ages = {message_id: self._ages.get(message_id, 0) + 1 for message_id in in_flight}

        due = [message_id for message_id in in_flight if self._ages[message_id] >= self.delay_ticks]
        for message_id in due:
            self.protocol.deliver(message_id)
            self._ages.pop(message_id, None)
        if due:
            logger.debug(f"Delivered {len(due)} message(s) of {self.protocol.name}")
        return due

    def settle(self, max_rounds: int = MAX_SETTLE_ROUNDS) -> List[str]:
        """
        Deliver until nothing is in flight.

        Args:
            max_rounds: Upper bound on delivery rounds for protocols that
                keep producing messages

        Returns:
            Ids of the delivered messages
        """
        delivered: List[str] = []
        for _ in range(max_rounds):
            in_flight = [message.id for message in self.protocol.list_in_flight()]
            if not in_flight:
                break
            for message_id in in_flight:
                self.protocol.deliver(message_id)
            delivered.extend(in_flight)
        else:
            logger.warning(f"{self.protocol.name} still has messages in flight after {max_rounds} rounds")
        self._ages.clear()
        return delivered

    def pending(self) -> Dict[str, int]:
        """Ticks waited so far by each in-flight message the scheduler has seen."""
        return dict(self._ages)

    def reset(self):
        self._ages.clear()

    def snapshot(self) -> Dict[str, int]:
        return dict(self._ages)

    def restore(self, ages: Dict[str, int]):
        self._ages = dict(ages)
