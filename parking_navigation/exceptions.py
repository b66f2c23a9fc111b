"""
Navigation error hierarchy
"""
from typing import Optional, Dict, Any


class NavigationError(Exception):
    """Base exception for the navigation core"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InvalidRouteError(NavigationError):
    """Route failed structural validation"""
    def __init__(self, message: str, route_id: Optional[str] = None):
        super().__init__(
            f"Invalid route: {message}",
            {"route_id": route_id}
        )


class RoutingProviderError(NavigationError):
    """External routing provider call failed"""
    def __init__(self, service: str, message: str):
        super().__init__(
            f"Routing provider error ({service}): {message}",
            {"service": service}
        )


class LocationUnavailableError(NavigationError):
    """Geolocation denied, failed or went silent"""
    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(
            f"Location unavailable: {message}",
            {"code": code}
        )


class InvalidSettingError(NavigationError):
    """Settings update rejected"""
    def __init__(self, field: str, value: Any):
        super().__init__(
            f"Invalid value for setting {field}: {value!r}",
            {"field": field, "value": value}
        )


class RecalculationError(NavigationError):
    """Route recalculation failed and fell back to a local route"""
    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(
            f"Recalculation failed: {message}",
            {"session_id": session_id}
        )


class NavigationStateError(NavigationError):
    """Operation not allowed in the current navigation state"""
    def __init__(self, operation: str, phase: str):
        super().__init__(
            f"Cannot {operation} while {phase}",
            {"operation": operation, "phase": phase}
        )
