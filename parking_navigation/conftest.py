"""
Shared fixtures for navigation tests
"""
import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest

from parking_navigation.config import NavigationConfig
from parking_navigation.location import PositionSource
from parking_navigation.models import Destination, LocationSample, ManeuverType, Route, RouteStep
from parking_navigation.routing import generate_fallback_route
from parking_navigation.settings_store import MemoryBackend, SettingsStore

# San Francisco, heading due north in ~333 m legs
ORIGIN = (-122.4194, 37.7749)
LEG = 0.003

FIXED_NOW = datetime(2024, 1, 8, 14, 0)


def point(legs: float):
    """Coordinate `legs` legs north of ORIGIN"""
    return (ORIGIN[0], ORIGIN[1] + LEG * legs)


def make_sample(coordinate, **kwargs) -> LocationSample:
    return LocationSample(longitude=coordinate[0], latitude=coordinate[1], **kwargs)


def make_route(distances, durations=None, route_id="route_1") -> Route:
    """Straight route north, one leg per step, last step arrives"""
    durations = durations or [60] * len(distances)
    steps = []
    for index, (distance, duration) in enumerate(zip(distances, durations), start=1):
        last = index == len(distances)
        steps.append(RouteStep(
            id=f"step_{index}",
            instruction="Arrive at destination" if last else f"Continue on Main St ({index})",
            distance_meters=distance,
            duration_seconds=duration,
            maneuver_type=ManeuverType.ARRIVE if last else ManeuverType.STRAIGHT,
            street_name="Main St",
            coordinates=point(index),
            speed_limit=None if last else 30,
        ))

    return Route(
        id=route_id,
        distance_meters=sum(distances),
        duration_seconds=sum(durations),
        steps=tuple(steps),
        geometry=(ORIGIN,) + tuple(step.coordinates for step in steps),
        traffic_delay_seconds=0,
    )


class FakeRoutingClient:
    """Stands in for RoutingClient; optionally blocks until released"""

    def __init__(self, config, route: Optional[Route] = None, error: Optional[Exception] = None, block: bool = False):
        self.config = config
        self.route = route
        self.error = error
        self.release = asyncio.Event() if block else None
        self.calls: List[tuple] = []

    async def calculate_route(self, origin, destination, options=None):
        self.calls.append((origin, destination, options))
        if self.release is not None:
            await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.route or generate_fallback_route(origin, destination, options, self.config)


class FakePositionSource(PositionSource):
    """Position source driven by the test"""

    def __init__(self, available: bool = True, last_known: Optional[Dict[str, Any]] = None,
                 fail_with: Optional[Exception] = None):
        self.available = available
        self.last_known = last_known
        self.fail_with = fail_with
        self.watches: Dict[int, tuple] = {}
        self.cleared: List[int] = []
        self.options = None

    def watch(self, on_position, on_error, options):
        if self.fail_with is not None:
            raise self.fail_with
        self.options = options
        watch_id = len(self.watches) + len(self.cleared) + 1
        self.watches[watch_id] = (on_position, on_error)
        return watch_id

    def clear_watch(self, watch_id):
        self.watches.pop(watch_id, None)
        self.cleared.append(watch_id)

    def last_known_position(self):
        return self.last_known

    def is_available(self):
        return self.available

    def push(self, position: Dict[str, Any]) -> None:
        for on_position, _ in list(self.watches.values()):
            on_position(position)

    def fail(self, error: Exception) -> None:
        for _, on_error in list(self.watches.values()):
            on_error(error)


@pytest.fixture
def config(tmp_path):
    """Config isolated from the environment's storage and provider"""
    return NavigationConfig(
        routing_base_url="https://routing.test",
        routing_retry_attempts=3,
        routing_retry_wait_min=0,
        routing_retry_wait_max=0,
        routing_timeout=2.0,
        recalculation_timeout=2.0,
        settings_path=str(tmp_path / "settings.json"),
        redis_url=None,
    )


@pytest.fixture
def three_step_route():
    """Three legs of 334/333/333 m, 60 s each"""
    return make_route([334, 333, 333])


@pytest.fixture
def destination():
    return Destination(latitude=point(3)[1], longitude=point(3)[0], name="Mission St Garage", spot_id="spot_42")


@pytest.fixture
def settings_store(config):
    return SettingsStore(backend=MemoryBackend(), config=config)


@pytest.fixture
def clock():
    return lambda: FIXED_NOW
