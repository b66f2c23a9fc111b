"""
UI-facing projection of a navigation session
Formats distances, times and alerts and drives voice guidance
"""
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Set, Tuple

from .logging_config import get_logger
from .models import (
    GpsSignalStrength, Lane, ManeuverType, MapStyle, NavigationSettings, NavigationSnapshot,
    RoutePreference, Theme, Units, ViewMode
)
from .session import NavigationSession
from .settings_store import SettingsStore
from .voice import VoiceGuide

logger = get_logger(__name__)

METERS_PER_MILE = 1609.344
FEET_PER_METER = 3.28084

DAY_STARTS_AT = 6
NIGHT_STARTS_AT = 20

MANEUVER_ICONS = {
    ManeuverType.TURN_LEFT: "↰",
    ManeuverType.TURN_RIGHT: "↱",
    ManeuverType.STRAIGHT: "↑",
    ManeuverType.MERGE: "⤴",
    ManeuverType.ROUNDABOUT: "↻",
    ManeuverType.ARRIVE: "🏁",
    ManeuverType.U_TURN: "↶",
    ManeuverType.FORK_LEFT: "↖",
    ManeuverType.FORK_RIGHT: "↗",
}

VIEW_MODE_CYCLE = (ViewMode.THREE_D, ViewMode.BIRD_EYE, ViewMode.TWO_D, ViewMode.FOLLOW)
MAP_STYLE_CYCLE = tuple(MapStyle)
ROUTE_PREFERENCE_CYCLE = tuple(RoutePreference)

# Alert kinds, in display order
ALERT_MESSAGES = {
    "recalculating": "Recalculating route...",
    "off_route": "Off route - calculating new path",
    "gps_lost": "GPS signal lost - trying to reconnect",
    "gps_weak": "GPS signal weak - position may be inaccurate",
    "last_mile_walking": "Switch to walking directions - you're almost there!",
    "estimated_route": "Estimated route - turn guidance may be approximate",
}

# Alerts worth speaking when they first appear
SPOKEN_ALERTS = {"recalculating", "gps_lost", "last_mile_walking"}


def format_distance(meters: float, units: Units = Units.METRIC) -> str:
    """Human-readable distance in the chosen units"""
    if units == Units.IMPERIAL:
        miles = meters / METERS_PER_MILE
        if miles < 0.1:
            return f"{round(meters * FEET_PER_METER)} ft"
        return f"{miles:.1f} mi"

    if meters < 1000:
        return f"{round(meters)} m"
    return f"{meters / 1000:.1f} km"


def format_duration(seconds: float) -> str:
    """Human-readable duration, minutes resolution"""
    minutes = math.floor(seconds / 60)
    if minutes < 60:
        return f"{minutes} min"
    hours, remaining_minutes = divmod(minutes, 60)
    return f"{hours} h {remaining_minutes} min"


def _next_in_cycle(cycle: tuple, current):
    return cycle[(cycle.index(current) + 1) % len(cycle)]


@dataclass
class NavigationAlert:
    """A status banner for the navigation screen"""
    kind: str
    message: str


@dataclass
class NavigationView:
    """Everything the navigation screen needs to draw one frame"""
    is_active: bool
    instruction: Optional[str] = None
    street_name: Optional[str] = None
    maneuver_icon: Optional[str] = None
    distance_to_maneuver: Optional[str] = None
    next_instruction: Optional[str] = None
    remaining_distance: str = ""
    remaining_time: str = ""
    eta: str = "--:--"
    progress_percentage: float = 0.0
    can_confirm_arrival: bool = False
    is_day_mode: bool = True
    gps_signal_strength: GpsSignalStrength = GpsSignalStrength.STRONG
    speed_limit: Optional[float] = None
    lanes: Optional[Tuple[Lane, ...]] = None
    alerts: List[NavigationAlert] = field(default_factory=list)


class NavigationPresenter:
    """Reads session state and settings to render the navigation screen"""

    def __init__(
        self,
        session: NavigationSession,
        settings_store: SettingsStore,
        voice_guide: Optional[VoiceGuide] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.session = session
        self.settings_store = settings_store
        self.voice_guide = voice_guide
        self._clock = clock or datetime.now

        self._last_step_key: Optional[tuple] = None
        self._active_alerts: Set[str] = set()
        self._arrival_announced = False
        self._unsubscribe = session.subscribe(self._on_change)

    def close(self) -> None:
        """Stop listening to the session"""
        self._unsubscribe()

    @property
    def settings(self) -> NavigationSettings:
        return self.settings_store.get()

    def is_day_mode(self, now: Optional[datetime] = None) -> bool:
        theme = self.settings.theme
        if theme == Theme.AUTO:
            hour = (now or self._clock()).hour
            return DAY_STARTS_AT <= hour < NIGHT_STARTS_AT
        return theme == Theme.DAY

    def alerts(self, snapshot: NavigationSnapshot) -> List[NavigationAlert]:
        if not snapshot.is_active:
            return []

        kinds = []
        if snapshot.is_recalculating:
            kinds.append("recalculating")
        if snapshot.is_off_route and not snapshot.is_recalculating:
            kinds.append("off_route")
        if snapshot.gps_signal_strength == GpsSignalStrength.LOST:
            kinds.append("gps_lost")
        elif snapshot.gps_signal_strength == GpsSignalStrength.WEAK:
            kinds.append("gps_weak")
        if snapshot.last_mile_walking:
            kinds.append("last_mile_walking")
        if snapshot.route is not None and snapshot.route.is_fallback:
            kinds.append("estimated_route")

        return [NavigationAlert(kind=kind, message=ALERT_MESSAGES[kind]) for kind in kinds]

    def render(self, snapshot: Optional[NavigationSnapshot] = None) -> NavigationView:
        """Project a snapshot (the current one by default) onto the screen"""
        snapshot = snapshot or self.session.snapshot()
        settings = self.settings
        units = settings.units

        view = NavigationView(
            is_active=snapshot.is_active,
            is_day_mode=self.is_day_mode(),
            gps_signal_strength=snapshot.gps_signal_strength,
            alerts=self.alerts(snapshot),
        )
        if not snapshot.is_active or snapshot.route is None:
            return view

        step = snapshot.current_step
        steps_total = len(snapshot.route.steps)

        view.instruction = step.instruction
        view.street_name = step.street_name
        view.maneuver_icon = MANEUVER_ICONS.get(step.maneuver_type, "↑")
        view.distance_to_maneuver = format_distance(
            snapshot.distance_to_next_maneuver_meters
            if snapshot.distance_to_next_maneuver_meters is not None
            else step.distance_meters,
            units
        )
        view.next_instruction = snapshot.next_step.instruction if snapshot.next_step else None
        view.remaining_distance = format_distance(snapshot.remaining_distance_meters, units)
        view.remaining_time = format_duration(snapshot.remaining_time_seconds)
        view.eta = snapshot.eta.strftime("%H:%M") if snapshot.eta else "--:--"
        view.progress_percentage = snapshot.current_step_index / steps_total * 100
        view.can_confirm_arrival = snapshot.can_confirm_arrival

        if settings.show_speed_limits:
            view.speed_limit = step.speed_limit
        if settings.show_lane_guidance:
            view.lanes = step.lane_guidance

        return view

    # ------------------------------------------------------------------
    # Voice guidance
    # ------------------------------------------------------------------

    def _on_change(self, snapshot: NavigationSnapshot) -> None:
        if not snapshot.is_active:
            self._last_step_key = None
            self._active_alerts = set()
            self._arrival_announced = False
            return

        if self.voice_guide is None:
            return

        settings = self.settings
        enabled = settings.voice_guidance

        step_key = (snapshot.session_id, snapshot.route.id, snapshot.current_step_index)
        if step_key != self._last_step_key:
            self._last_step_key = step_key
            step = snapshot.current_step
            self.voice_guide.announce(
                self.voice_guide.step_announcement(step, format_distance(step.distance_meters, settings.units)),
                enabled
            )

        current_alerts = {alert.kind for alert in self.alerts(snapshot)}
        for kind in sorted((current_alerts - self._active_alerts) & SPOKEN_ALERTS):
            self.voice_guide.announce(self.voice_guide.alert_announcement(ALERT_MESSAGES[kind]), enabled)
        self._active_alerts = current_alerts

        if snapshot.can_confirm_arrival and not self._arrival_announced:
            self._arrival_announced = True
            self.voice_guide.announce(
                self.voice_guide.alert_announcement(f"You have arrived at {snapshot.destination.name}", priority=5),
                enabled
            )

    # ------------------------------------------------------------------
    # Quick setting toggles from the navigation screen
    # ------------------------------------------------------------------

    def toggle_voice(self) -> NavigationSettings:
        return self.settings_store.update(voice_guidance=not self.settings.voice_guidance)

    def cycle_view_mode(self) -> NavigationSettings:
        return self.settings_store.update(view_mode=_next_in_cycle(VIEW_MODE_CYCLE, self.settings.view_mode))

    def cycle_map_style(self) -> NavigationSettings:
        return self.settings_store.update(map_style=_next_in_cycle(MAP_STYLE_CYCLE, self.settings.map_style))

    def cycle_route_preference(self) -> NavigationSettings:
        return self.settings_store.update(
            route_preference=_next_in_cycle(ROUTE_PREFERENCE_CYCLE, self.settings.route_preference)
        )

    def toggle_theme(self) -> NavigationSettings:
        return self.settings_store.update(theme=Theme.NIGHT if self.is_day_mode() else Theme.DAY)
