"""
Timeline controller: replays a fixed event script with play/pause/step/jump
semantics.

The controller owns only the script, the cursor, the speed and the snapshot
history. It never touches protocol state itself: handlers registered with
``on`` call into the protocol, a ``capture`` callback provides the snapshot
taken before each step and a ``rewind`` callback resets the protocol before
a jump replays the script from the start.
"""
import dataclasses
import logging
import math
from typing import Any, Callable, Dict, Iterable, List, Optional

from distrisim.exceptions import TimelineError
from distrisim.timeline.models import HistoryEntry, SimulationEvent, TimelineState, TimelineStatus

logger = logging.getLogger(__name__)

EventHandler = Callable[[SimulationEvent], None]

BASE_INTERVAL_MS = 1000


class TimelineController:
    """
    Cursor over a scenario's events.

    Every applied event leaves one history entry holding the snapshot taken
    before it. Without a ``capture`` callback or a host-provided snapshot the
    entry holds nothing, and ``step_backward`` then returns ``{"cursor": n}``
    so the host still learns which event was undone.
    """

    def __init__(
        self,
        events: Optional[Iterable[SimulationEvent]] = None,
        capture: Optional[Callable[[], Any]] = None,
        rewind: Optional[Callable[[], None]] = None,
        speed: float = 1.0,
        base_interval_ms: int = BASE_INTERVAL_MS,
    ):
        """
        Initialize the controller.

        Args:
            events: Script, already sorted by timestamp
            capture: Returns the protocol state to store before each step
            rewind: Restores the protocol to its initial state
            speed: Playback speed multiplier (> 0)
            base_interval_ms: Interval between steps at speed 1
        """
        self._events: List[SimulationEvent] = []
        self._handlers: Dict[str, EventHandler] = {}
        self._history: List[HistoryEntry] = []
        self._capture = capture
        self._rewind = rewind
        self.base_interval_ms = base_interval_ms
        self._state = TimelineState()
        self.set_speed(speed)
        self.load(events or [])

    # Script

    def load(self, events: Iterable[SimulationEvent]):
        """Replace the script and start over."""
        self._events = [event.model_copy(deep=True) for event in events]
        self.reset()
        logger.debug(f"Timeline loaded with {len(self._events)} events")

    @property
    def events(self) -> List[SimulationEvent]:
        return [event.model_copy(deep=True) for event in self._events]

    def on(self, event_type: str, handler: EventHandler):
        """Register the handler for ``event_type``, replacing any previous one."""
        if event_type in self._handlers:
            logger.debug(f"Replacing handler for '{event_type}'")
        self._handlers[event_type] = handler

    def off(self, event_type: str) -> bool:
        return self._handlers.pop(event_type, None) is not None

    def handles(self, event_type: str) -> bool:
        return event_type in self._handlers

    # Playback

    def play(self) -> bool:
        """
        Start playing. The host clock then calls ``step_forward`` every
        ``interval_ms``.

        Returns:
            False if there is nothing left to play
        """
        if self.is_complete():
            return False
        self._state.status = TimelineStatus.PLAYING
        return True

    def pause(self):
        if self._state.status == TimelineStatus.PLAYING:
            self._state.status = TimelineStatus.PAUSED

    def step_forward(self, prior_snapshot: Any = None) -> bool:
        """
        Apply the event under the cursor.

        Args:
            prior_snapshot: State captured by the host before this step; when
                omitted the ``capture`` callback is used

        Returns:
            True if an event was applied, False if the timeline is complete
        """
        if self._state.cursor >= len(self._events):
            if self._events:
                self._state.status = TimelineStatus.COMPLETE
            return False

        event = self._events[self._state.cursor]
        snapshot = prior_snapshot
        if snapshot is None and self._capture is not None:
            snapshot = self._capture()

        handler = self._handlers.get(event.type)
        if handler is not None:
            handler(event.model_copy(deep=True))
        else:
            logger.debug(f"No handler for event {event.id} ('{event.type}')")

        # History only holds events whose handler returned
        self._history.append(HistoryEntry(cursor=self._state.cursor, event_id=event.id, snapshot=snapshot))

        self._state.cursor += 1
        if self._state.cursor >= len(self._events):
            self._state.status = TimelineStatus.COMPLETE
        elif self._state.status in (TimelineStatus.STOPPED, TimelineStatus.COMPLETE):
            self._state.status = TimelineStatus.PAUSED
        return True

    def step_backward(self) -> Optional[Any]:
        """
        Move the cursor back one event.

        Returns:
            The snapshot stored before that event, for the host to re-apply;
            ``{"cursor": n}`` when none was stored; None when there is no
            history
        """
        if not self._history:
            return None

        entry = self._history.pop()
        self._state.cursor = entry.cursor
        self._state.status = TimelineStatus.PAUSED
        if entry.snapshot is None:
            return {"cursor": entry.cursor}
        return entry.snapshot

    def jump_to_event(self, event_id: int, snapshot: Any = None) -> bool:
        """
        Replay the script from the start up to and including ``event_id``.

        Args:
            event_id: Id of the target event
            snapshot: Snapshot recorded for every replayed step when no
                ``capture`` callback is configured

        Returns:
            False if the event id is not part of the script
        """
        target = self.index_of(event_id)
        if target is None:
            logger.debug(f"jump_to_event: unknown event {event_id}")
            return False

        self.reset()
        if self._rewind is not None:
            self._rewind()
        while self._state.cursor <= target:
            if not self.step_forward(snapshot):
                break
        if self._state.status != TimelineStatus.COMPLETE:
            self._state.status = TimelineStatus.PAUSED
        return True

    def set_speed(self, multiplier: float):
        """Set the playback speed multiplier (must be > 0)."""
        if multiplier is None or not multiplier > 0 or math.isinf(multiplier):
            raise TimelineError(
                f"Speed multiplier must be a positive number, got {multiplier}",
                field="speed",
                value=multiplier,
            )
        self._state.speed = float(multiplier)

    @property
    def speed(self) -> float:
        return self._state.speed

    @property
    def interval_ms(self) -> float:
        """Host scheduling interval between two steps."""
        return self.base_interval_ms / self._state.speed

    def reset(self):
        """Cursor back to "not started", history cleared, stopped."""
        self._state.cursor = 0
        self._state.status = TimelineStatus.STOPPED
        self._history = []

    # Queries

    @property
    def cursor(self) -> int:
        return self._state.cursor

    @property
    def status(self) -> TimelineStatus:
        return self._state.status

    def index_of(self, event_id: int) -> Optional[int]:
        for index, event in enumerate(self._events):
            if event.id == event_id:
                return index
        return None

    def current_event(self) -> Optional[SimulationEvent]:
        """Next event to be applied, or None when complete."""
        if self._state.cursor >= len(self._events):
            return None
        return self._events[self._state.cursor].model_copy(deep=True)

    def is_complete(self) -> bool:
        return self._state.cursor >= len(self._events)

    def get_progress(self) -> float:
        if not self._events:
            return 0.0
        return self._state.cursor / len(self._events) * 100

    def get_state(self) -> TimelineState:
        return dataclasses.replace(
            self._state,
            total_events=len(self._events),
            history_size=len(self._history),
        )
