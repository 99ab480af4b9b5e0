"""
Registry of protocol participants (nodes, replicas, workers).
"""
import copy
import logging
from typing import Callable, Dict, Generic, Iterable, Iterator, List, Optional, TypeVar

logger = logging.getLogger(__name__)

P = TypeVar("P")


class ParticipantRegistry(Generic[P]):
    """
    Set of participants of one protocol instance, keyed by their ``id``.

    ``list`` and ``get`` hand out deep copies so callers can freely mutate
    what they receive. The owning protocol works on the live objects through
    ``find`` and iteration.
    """

    def __init__(self, factory: Callable[[], Iterable[P]], name: str = "participants"):
        """
        Build the registry from ``factory``.

        Args:
            factory: Produces the initial participants; called again on reset
            name: Label used in log messages
        """
        self._factory = factory
        self.name = name
        self._participants: Dict[str, P] = {}
        self._load(factory())

    def _load(self, participants: Iterable[P]):
        self._participants = {}
        for participant in participants:
            self._participants[participant.id] = participant

    # Public, copy-returning API

    def list(self) -> List[P]:
        return [copy.deepcopy(p) for p in self._participants.values()]

    def get(self, participant_id: str) -> Optional[P]:
        participant = self._participants.get(participant_id)
        return copy.deepcopy(participant) if participant is not None else None

    def upsert(self, participant: P):
        """Insert or replace a participant (stored as a copy)."""
        if participant.id not in self._participants:
            logger.debug(f"{self.name}: {participant.id} registered")
        self._participants[participant.id] = copy.deepcopy(participant)

    def remove(self, participant_id: str) -> bool:
        """
        Remove a participant.

        Args:
            participant_id: Id of the participant

        Returns:
            True if it was removed, False if it did not exist
        """
        if participant_id in self._participants:
            del self._participants[participant_id]
            logger.debug(f"{self.name}: {participant_id} removed")
            return True
        return False

    def reset(self):
        """Rebuild the initial participants."""
        self._load(self._factory())

    # Owner access

    def find(self, participant_id: Optional[str]) -> Optional[P]:
        """Live participant or None."""
        if participant_id is None:
            return None
        return self._participants.get(participant_id)

    def ids(self) -> List[str]:
        return list(self._participants.keys())

    def values(self) -> List[P]:
        return list(self._participants.values())

    def snapshot(self) -> Dict[str, P]:
        return copy.deepcopy(self._participants)

    def restore(self, state: Dict[str, P]):
        self._participants = copy.deepcopy(state)

    def __contains__(self, participant_id: object) -> bool:
        return participant_id in self._participants

    def __iter__(self) -> Iterator[P]:
        return iter(list(self._participants.values()))

    def __len__(self) -> int:
        return len(self._participants)
