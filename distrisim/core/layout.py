"""
Display positions for participants.

Positions are presentation metadata: protocols only store and copy them.
"""
import math
from dataclasses import dataclass
from typing import Dict, List, Tuple


@dataclass
class Position:
    x: float
    y: float

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y}


DEFAULT_CENTER: Tuple[float, float] = (420.0, 340.0)
DEFAULT_RADIUS = 200.0


def circle_position(
    index: int,
    total: int,
    center: Tuple[float, float] = DEFAULT_CENTER,
    radius: float = DEFAULT_RADIUS,
) -> Position:
    """
    Position of participant ``index`` on a circle, starting at the top.

    Args:
        index: Participant index
        total: Number of participants on the circle
        center: Circle center (x, y)
        radius: Circle radius

    Returns:
        Position of the participant
    """
    angle = (2 * math.pi * index) / max(total, 1) - math.pi / 2
    return Position(
        x=center[0] + radius * math.cos(angle),
        y=center[1] + radius * math.sin(angle),
    )


def circle_layout(
    count: int,
    center: Tuple[float, float] = DEFAULT_CENTER,
    radius: float = DEFAULT_RADIUS,
) -> List[Position]:
    return [circle_position(i, count, center, radius) for i in range(count)]


def row_layout(count: int, y: float, start_x: float = 140.0, spacing: float = 140.0) -> List[Position]:
    """Evenly spaced positions on a horizontal line."""
    return [Position(x=start_x + i * spacing, y=y) for i in range(count)]
