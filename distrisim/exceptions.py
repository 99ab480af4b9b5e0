"""
Custom Exceptions

Raised by the host-facing layer only (scenario loading, protocol catalog,
playback). Protocol models never raise; invalid input there is a no-op.
"""

from typing import Any, Dict, List, Optional


class DistriSimException(Exception):
    """
    Base exception for all distrisim errors.
    """

    def __init__(
        self,
        message: str,
        code: str = "DISTRISIM_ERROR",
        details: Optional[List[Dict[str, Any]]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or []
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary"""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details
        }


# Scenario Exceptions

class ScenarioError(DistriSimException):
    """Raised when a scenario file cannot be read or validated"""

    def __init__(self, message: str, source: Optional[str] = None, details: Optional[List[Dict[str, Any]]] = None):
        details = list(details or [])
        if source:
            details.insert(0, {"field": "source", "value": source})
        super().__init__(message=message, code="SCENARIO_INVALID", details=details)


class ScenarioNotFoundError(ScenarioError):
    """Raised when no scenario matches the requested id"""

    def __init__(self, scenario_id: str, concept: Optional[str] = None):
        message = f"Scenario not found: {scenario_id}"
        if concept:
            message += f" (concept {concept})"
        super().__init__(message=message)
        self.code = "SCENARIO_NOT_FOUND"
        self.details = [{"field": "scenario_id", "value": scenario_id}]


# Protocol Exceptions

class UnknownProtocolError(DistriSimException):
    """Raised when a concept has no registered protocol model"""

    def __init__(self, concept: str, available: Optional[List[str]] = None):
        super().__init__(
            message=f"Unknown protocol: {concept}",
            code="UNKNOWN_PROTOCOL",
            details=[{"field": "concept", "value": concept, "available": available or []}]
        )


# Timeline Exceptions

class TimelineError(DistriSimException, ValueError):
    """Raised on invalid playback parameters"""

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        details = []
        if field:
            details.append({"field": field, "value": value})
        super().__init__(message=message, code="TIMELINE_ERROR", details=details)
