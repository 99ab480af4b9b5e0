"""
Simulation session: one protocol model driven by one scenario.

The session wires the protocol built by the catalog, the timeline controller
and the delivery scheduler together. Before each event the scheduler
delivers the messages that are due, then the event's handler runs. Stepping
backward re-applies the snapshot taken before the step.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from distrisim import catalog
from distrisim.config import Settings, get_settings
from distrisim.core.context import ProtocolSnapshot
from distrisim.host.delivery import DeliveryScheduler
from distrisim.metrics import SimulationMetrics
from distrisim.timeline.controller import TimelineController
from distrisim.timeline.models import Scenario

logger = logging.getLogger(__name__)


@dataclass
class SessionSnapshot:
    """Protocol state plus the scheduler's view of the messages in flight."""
    protocol: ProtocolSnapshot
    pending: Dict[str, int]


class SimulationSession:
    """Replays a scenario against a fresh protocol instance."""

    def __init__(
        self,
        scenario: Scenario,
        settings: Optional[Settings] = None,
        speed: Optional[float] = None,
        delay_ticks: Optional[int] = None,
        metrics: Optional[SimulationMetrics] = None,
    ):
        """
        Build the protocol and the playback machinery.

        Args:
            scenario: Script to replay
            settings: Defaults for speed, delivery delay and seed
            speed: Playback speed, overrides ``settings.default_speed``
            delay_ticks: Delivery delay, overrides ``settings.delivery_delay_ticks``
            metrics: Optional metrics updated after every step

        Raises:
            UnknownProtocolError: If no protocol simulates the scenario's concept
        """
        self.settings = settings or get_settings()
        self.scenario = scenario
        self.spec = catalog.get_protocol_spec(scenario.concept)
        self.protocol = self.spec.create(scenario.initial_state, seed=self.settings.random_seed)
        self.scheduler = DeliveryScheduler(
            self.protocol,
            self.settings.delivery_delay_ticks if delay_ticks is None else delay_ticks,
        )
        self.controller = TimelineController(
            scenario.events,
            capture=self.capture,
            rewind=self.rewind,
            speed=self.settings.default_speed if speed is None else speed,
            base_interval_ms=self.settings.base_interval_ms,
        )
        self.spec.binder(self.controller, self.protocol)
        self.metrics = metrics

        unbound = [t for t in scenario.event_types() if not self.controller.handles(t)]
        if unbound:
            logger.debug(f"Scenario {scenario.id}: no handler for {unbound}")
        logger.info(f"Session ready: {scenario.id} ({scenario.concept}, {len(scenario.events)} events)")

    @property
    def concept(self) -> str:
        return self.scenario.concept

    # Snapshot wiring

    def capture(self) -> SessionSnapshot:
        return SessionSnapshot(protocol=self.protocol.snapshot(), pending=self.scheduler.snapshot())

    def rewind(self):
        self.protocol.reset()
        self.scheduler.reset()

    def apply(self, snapshot: SessionSnapshot):
        self.protocol.restore(snapshot.protocol)
        self.scheduler.restore(snapshot.pending)

    # Stepping

    def step_forward(self) -> bool:
        """
        Deliver due messages, then apply the next event.

        Returns:
            False once the scenario is complete
        """
        if self.controller.is_complete():
            self.controller.step_forward()
            return False

        started = time.perf_counter()
        snapshot = self.capture()
        self.scheduler.advance()
        applied = self.controller.step_forward(snapshot)
        if applied and self.metrics is not None:
            self.metrics.record_step(self.concept, time.perf_counter() - started)
            self.metrics.observe(self.concept, self.protocol.get_stats(), self.controller.get_progress())
        return applied

    def step_backward(self) -> bool:
        """Undo the last step. Returns False when there is nothing to undo."""
        snapshot = self.controller.step_backward()
        if not isinstance(snapshot, SessionSnapshot):
            return False
        self.apply(snapshot)
        return True

    def jump_to(self, event_id: int) -> bool:
        """
        Replay from the start up to and including ``event_id``.

        Returns:
            False if the event is not part of the scenario
        """
        target = self.controller.index_of(event_id)
        if target is None:
            logger.debug(f"jump_to: unknown event {event_id}")
            return False
        self.controller.reset()
        self.rewind()
        while self.controller.cursor <= target and self.step_forward():
            pass
        return True

    def settle(self) -> int:
        """Deliver everything still in flight; returns the number delivered."""
        return len(self.scheduler.settle())

    def run_to_end(self, settle: bool = True) -> Dict[str, Any]:
        """
        Apply every remaining event.

        Args:
            settle: Deliver the messages still in flight afterwards

        Returns:
            Final protocol statistics
        """
        while self.step_forward():
            pass
        if settle:
            self.settle()
        stats = self.protocol.get_stats()
        if self.metrics is not None:
            self.metrics.observe(self.concept, stats, self.controller.get_progress())
        return stats

    def reset(self):
        """Back to before the first event."""
        self.controller.reset()
        self.rewind()

    def get_state(self) -> Dict[str, Any]:
        state = self.controller.get_state().to_dict()
        state.update({
            "scenario": self.scenario.id,
            "concept": self.concept,
            "progress": self.controller.get_progress(),
            "stats": self.protocol.get_stats(),
        })
        return state
