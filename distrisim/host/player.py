"""
Asyncio playback loop.

Steps a session every ``interval_ms`` while its timeline is playing. Speed
changes take effect on the next wait.
"""
import asyncio
import logging
from typing import Callable, Optional

from distrisim.host.session import SimulationSession
from distrisim.timeline.models import TimelineStatus

logger = logging.getLogger(__name__)

StepCallback = Callable[[SimulationSession], None]


class Player:
    """Drives ``session.step_forward`` on a wall-clock schedule."""

    def __init__(self, session: SimulationSession, on_step: Optional[StepCallback] = None):
        self.session = session
        self.on_step = on_step
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def play(self, settle: bool = True):
        """
        Play until the scenario completes or ``pause`` is called.

        Args:
            settle: Deliver the remaining messages when the scenario completes
        """
        controller = self.session.controller
        if not controller.play():
            logger.debug("Nothing left to play")
            return

        while controller.status == TimelineStatus.PLAYING:
            await asyncio.sleep(controller.interval_ms / 1000)
            if controller.status != TimelineStatus.PLAYING:
                break
            if not self.session.step_forward():
                break
            if self.on_step is not None:
                self.on_step(self.session)

        if controller.is_complete() and settle:
            self.session.settle()
        logger.info(f"Playback stopped at {controller.cursor}/{len(controller.events)} ({controller.status.value})")

    def start(self, settle: bool = True) -> asyncio.Task:
        """Run ``play`` in a background task of the running loop."""
        if self.running:
            return self._task
        self._task = asyncio.create_task(self.play(settle))
        return self._task

    def pause(self):
        self.session.controller.pause()

    async def stop(self):
        """Pause and wait for the background task to finish."""
        self.pause()
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            logger.debug("Playback task cancelled")
        self._task = None


async def play_session(session: SimulationSession, settle: bool = True, on_step: Optional[StepCallback] = None):
    """Play ``session`` to completion at its configured speed."""
    await Player(session, on_step=on_step).play(settle)
    return session.protocol.get_stats()
