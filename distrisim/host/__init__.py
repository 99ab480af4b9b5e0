"""
Host layer: delivers messages, replays scenarios and paces playback.
"""
from distrisim.host.delivery import DeliveryScheduler
from distrisim.host.player import Player, play_session
from distrisim.host.session import SessionSnapshot, SimulationSession

__all__ = [
    "DeliveryScheduler",
    "Player",
    "play_session",
    "SessionSnapshot",
    "SimulationSession",
]
