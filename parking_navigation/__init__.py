"""
Parking navigation core
Turn-by-turn navigation state for the parking finder app
"""
from .config import NavigationConfig, get_settings
from .exceptions import (
    InvalidRouteError, InvalidSettingError, LocationUnavailableError, NavigationError,
    NavigationStateError, RecalculationError, RoutingProviderError
)
from .health import NavigationHealthCheck, ReadinessReport
from .location import LocationTracker, PositionOptions, PositionSource, ReplayPositionSource
from .models import (
    Destination, GpsSignalStrength, LocationSample, ManeuverType, NavigationPhase, NavigationSettings,
    NavigationSnapshot, Route, RouteOptions, RouteStep, RouteType, validate_route
)
from .presenter import NavigationPresenter, NavigationView, format_distance, format_duration
from .routing import RoutingClient, generate_fallback_route
from .session import NavigationSession
from .settings_store import JsonFileBackend, MemoryBackend, RedisBackend, SettingsStore
from .voice import VoiceAnnouncement, VoiceGuide

__version__ = "1.0.0"
