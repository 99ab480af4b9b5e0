"""
Status values shared by participant models.
"""
from enum import Enum


class HealthStatus(str, Enum):
    """Orthogonal health of a participant, independent of its protocol role."""
    HEALTHY = "healthy"
    FAILED = "failed"
