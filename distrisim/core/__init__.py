"""
Building blocks shared by every protocol model: message pool, participant
registry, logical clock and snapshots.
"""
from distrisim.core.clock import EventLog, LogicalClock, ProtocolEvent
from distrisim.core.context import ProtocolSnapshot, SimulationContext
from distrisim.core.layout import Position, circle_layout, circle_position, row_layout
from distrisim.core.message_pool import Message, MessagePool, MessageStatus
from distrisim.core.participant import HealthStatus
from distrisim.core.protocol import SimulationProtocol
from distrisim.core.registry import ParticipantRegistry

__all__ = [
    "EventLog",
    "LogicalClock",
    "ProtocolEvent",
    "ProtocolSnapshot",
    "SimulationContext",
    "Position",
    "circle_layout",
    "circle_position",
    "row_layout",
    "Message",
    "MessagePool",
    "MessageStatus",
    "HealthStatus",
    "SimulationProtocol",
    "ParticipantRegistry",
]
