"""
Navigation data models
Routes, location samples, settings and session snapshots
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, StrictBool, field_validator, model_validator

from .exceptions import InvalidRouteError

Coordinate = Tuple[float, float]  # (longitude, latitude)

ROUTE_TOTAL_TOLERANCE = 1.0


class ManeuverType(str, Enum):
    STRAIGHT = "straight"
    TURN_LEFT = "turn-left"
    TURN_RIGHT = "turn-right"
    MERGE = "merge"
    ROUNDABOUT = "roundabout"
    ARRIVE = "arrive"
    U_TURN = "u-turn"
    FORK_LEFT = "fork-left"
    FORK_RIGHT = "fork-right"


class LaneIndication(str, Enum):
    STRAIGHT = "straight"
    LEFT = "left"
    RIGHT = "right"


class Lane(BaseModel):
    """One lane of a lane-guidance hint"""
    model_config = ConfigDict(frozen=True)

    valid: bool
    indications: FrozenSet[LaneIndication] = frozenset()


class RouteStep(BaseModel):
    """One maneuver segment of a route"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    instruction: str
    distance_meters: float = Field(..., alias="distance")
    duration_seconds: float = Field(..., alias="duration")
    maneuver_type: ManeuverType = Field(..., alias="maneuverType")
    street_name: str = Field(default="", alias="streetName")
    coordinates: Coordinate
    speed_limit: Optional[float] = Field(default=None, ge=0, alias="speedLimit")
    lane_guidance: Optional[Tuple[Lane, ...]] = Field(default=None, alias="laneGuidance")

    @model_validator(mode="before")
    @classmethod
    def normalize_provider_shape(cls, data: Any) -> Any:
        """Accept the provider's nested `maneuver` and `laneGuidance` objects"""
        if not isinstance(data, dict):
            return data

        data = dict(data)
        maneuver = data.pop("maneuver", None)
        if isinstance(maneuver, dict) and "maneuverType" not in data and "maneuver_type" not in data:
            data["maneuverType"] = maneuver.get("type")

        for key in ("laneGuidance", "lane_guidance"):
            if isinstance(data.get(key), dict):
                data[key] = data[key].get("lanes")

        return data

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, v):
        return str(v)


class Route(BaseModel):
    """A computed route from origin to destination"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    distance_meters: float = Field(..., alias="distance")
    duration_seconds: float = Field(..., alias="duration")
    steps: Tuple[RouteStep, ...]
    geometry: Tuple[Coordinate, ...]
    traffic_delay_seconds: float = Field(default=0, ge=0, alias="trafficDelays")
    is_fallback: bool = Field(default=False, alias="isFallback")

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, v):
        return str(v)

    @classmethod
    def from_provider(cls, payload: Dict[str, Any]) -> "Route":
        """Parse a routing provider response body"""
        return cls.model_validate(payload)

    @property
    def destination(self) -> Coordinate:
        return self.steps[-1].coordinates


def validate_route(route: Route, tolerance: float = ROUTE_TOTAL_TOLERANCE) -> Route:
    """
    Check the structural invariants of a route
    Raises InvalidRouteError, returns the route unchanged otherwise
    """
    if not route.steps:
        raise InvalidRouteError("route has no steps", route.id)

    for step in route.steps:
        if step.distance_meters < 0 or step.duration_seconds < 0:
            raise InvalidRouteError(
                f"step {step.id} has negative distance or duration", route.id
            )

    if route.steps[-1].maneuver_type != ManeuverType.ARRIVE:
        raise InvalidRouteError("final step is not an arrive maneuver", route.id)

    step_distance = sum(step.distance_meters for step in route.steps)
    step_duration = sum(step.duration_seconds for step in route.steps)

    if abs(step_distance - route.distance_meters) > tolerance:
        raise InvalidRouteError(
            f"step distances sum to {step_distance}, route says {route.distance_meters}", route.id
        )
    if abs(step_duration - route.duration_seconds) > tolerance:
        raise InvalidRouteError(
            f"step durations sum to {step_duration}, route says {route.duration_seconds}", route.id
        )

    return route


class RouteType(str, Enum):
    FASTEST = "fastest"
    SHORTEST = "shortest"
    ECO = "eco"


class RouteOptions(BaseModel):
    """Options forwarded to the routing provider"""
    model_config = ConfigDict(frozen=True)

    avoid_traffic: bool = False
    route_type: RouteType = RouteType.FASTEST

    def to_payload(self) -> Dict[str, Any]:
        return {"avoidTraffic": self.avoid_traffic, "routeType": self.route_type.value}


class LocationSample(BaseModel):
    """A single position fix"""
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    heading_degrees: float = Field(default=0.0, ge=0, le=360)
    speed_meters_per_second: float = Field(default=0.0, ge=0)
    accuracy_meters: Optional[float] = Field(default=None, ge=0)
    timestamp: datetime = Field(default_factory=datetime.now)
    is_synthetic: bool = False

    @property
    def coordinate(self) -> Coordinate:
        return (self.longitude, self.latitude)


class Destination(BaseModel):
    """Where the driver is heading"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    name: str
    spot_id: Optional[str] = Field(default=None, alias="spotId")

    @property
    def coordinate(self) -> Coordinate:
        return (self.longitude, self.latitude)


# Presentation preferences

class MapStyle(str, Enum):
    NAVIGATION = "navigation"
    SATELLITE = "satellite"
    TERRAIN = "terrain"
    STREET = "street"
    HYBRID = "hybrid"


class ViewMode(str, Enum):
    TWO_D = "2d"
    THREE_D = "3d"
    BIRD_EYE = "bird-eye"
    FOLLOW = "follow"


class RoutePreference(str, Enum):
    FASTEST = "fastest"
    SHORTEST = "shortest"
    ECO = "eco"
    AVOID_HIGHWAYS = "avoid-highways"


class Units(str, Enum):
    METRIC = "metric"
    IMPERIAL = "imperial"


class Theme(str, Enum):
    AUTO = "auto"
    DAY = "day"
    NIGHT = "night"


class NavigationSettings(BaseModel):
    """User-adjustable navigation presentation preferences"""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    map_style: MapStyle = Field(default=MapStyle.NAVIGATION, alias="mapStyle")
    view_mode: ViewMode = Field(default=ViewMode.THREE_D, alias="viewMode")
    show_traffic: StrictBool = Field(default=True, alias="showTraffic")
    show_incidents: StrictBool = Field(default=True, alias="showIncidents")
    show_speed_limits: StrictBool = Field(default=True, alias="showSpeedLimits")
    show_lane_guidance: StrictBool = Field(default=True, alias="showLaneGuidance")
    voice_guidance: StrictBool = Field(default=True, alias="voiceGuidance")
    route_preference: RoutePreference = Field(default=RoutePreference.FASTEST, alias="routePreference")
    units: Units = Units.IMPERIAL
    theme: Theme = Theme.AUTO

    def route_options(self) -> RouteOptions:
        """Routing options implied by the route preference"""
        # The provider has no highway-avoidance route type
        if self.route_preference == RoutePreference.AVOID_HIGHWAYS:
            return RouteOptions(route_type=RouteType.FASTEST)
        return RouteOptions(route_type=RouteType(self.route_preference.value))


# Session state

class GpsSignalStrength(str, Enum):
    STRONG = "strong"
    WEAK = "weak"
    LOST = "lost"


class NavigationPhase(str, Enum):
    IDLE = "idle"
    ON_ROUTE = "on_route"
    OFF_ROUTE = "off_route"
    RECALCULATING = "recalculating"
    ARRIVING = "arriving"


class NavigationSnapshot(BaseModel):
    """Read-only view of a navigation session"""
    model_config = ConfigDict(frozen=True)

    session_id: Optional[str] = None
    phase: NavigationPhase = NavigationPhase.IDLE
    is_active: bool = False
    route: Optional[Route] = None
    current_step_index: int = 0
    current_step: Optional[RouteStep] = None
    next_step: Optional[RouteStep] = None
    destination: Optional[Destination] = None
    user_location: Optional[LocationSample] = None
    eta: Optional[datetime] = None
    remaining_distance_meters: float = 0.0
    remaining_time_seconds: float = 0.0
    distance_to_next_maneuver_meters: Optional[float] = None
    is_off_route: bool = False
    is_recalculating: bool = False
    gps_signal_strength: GpsSignalStrength = GpsSignalStrength.STRONG
    last_mile_walking: bool = False
    can_confirm_arrival: bool = False
