"""
Tests for the navigation session state machine
"""
import asyncio
from datetime import timedelta

import pytest
from prometheus_client import REGISTRY

from parking_navigation.conftest import (
    FIXED_NOW, ORIGIN, FakePositionSource, FakeRoutingClient, make_route, make_sample, point
)
from parking_navigation.exceptions import (
    InvalidRouteError, LocationUnavailableError, NavigationStateError
)
from parking_navigation.location import LocationTracker
from parking_navigation.models import GpsSignalStrength, NavigationPhase, RouteOptions, RouteType
from parking_navigation.session import NavigationSession

# ~88 m east of the route at its start, nearest vertex ~190 m away
OFF_ROUTE = (ORIGIN[0] + 0.001, point(0.5)[1])


@pytest.fixture
def routing_client(config):
    return FakeRoutingClient(config)


@pytest.fixture
def session(routing_client, settings_store, config, clock):
    return NavigationSession(routing_client, settings_store, config=config, clock=clock)


def recalculations_with(outcome):
    return REGISTRY.get_sample_value("navigation_recalculations_total", {"outcome": outcome}) or 0


class TestStart:
    """Test starting and replacing navigation"""

    def test_initial_state(self, session, destination, three_step_route):
        snapshot = session.start(destination, three_step_route)

        assert snapshot.is_active is True
        assert snapshot.phase == NavigationPhase.ON_ROUTE
        assert snapshot.current_step_index == 0
        assert snapshot.current_step == three_step_route.steps[0]
        assert snapshot.next_step == three_step_route.steps[1]
        assert snapshot.remaining_distance_meters == 1000
        assert snapshot.remaining_time_seconds == 180
        assert snapshot.eta == FIXED_NOW + timedelta(seconds=180)
        assert snapshot.destination == destination
        assert snapshot.session_id is not None

    def test_idle_session(self, session):
        snapshot = session.snapshot()

        assert snapshot.is_active is False
        assert snapshot.phase == NavigationPhase.IDLE
        assert snapshot.route is None
        assert snapshot.can_confirm_arrival is False

    def test_invalid_route_rejected(self, session, destination, three_step_route):
        """A route that breaks invariants never becomes active"""
        broken = three_step_route.model_copy(update={"distance_meters": 5000})

        with pytest.raises(InvalidRouteError):
            session.start(destination, broken)

        assert session.is_active is False
        assert session.route is None

    def test_single_step_route_has_no_next_step(self, session, destination):
        session.start(destination, make_route([200]))

        assert session.next_step is None

    def test_start_replaces_active_navigation(self, session, destination, three_step_route):
        first = session.start(destination, three_step_route)
        second = session.start(destination, make_route([500, 500], route_id="route_2"))

        assert second.session_id != first.session_id
        assert session.route.id == "route_2"
        assert session.current_step_index == 0

    @pytest.mark.asyncio
    async def test_navigate_uses_route_preference(self, session, routing_client, settings_store, destination):
        settings_store.update(route_preference="eco")

        snapshot = await session.navigate(destination, origin=ORIGIN)

        origin, target, options = routing_client.calls[0]
        assert origin == ORIGIN
        assert target == destination.coordinate
        assert options == RouteOptions(route_type=RouteType.ECO)
        assert snapshot.is_active is True

    @pytest.mark.asyncio
    async def test_navigate_from_current_location(self, session, routing_client, destination):
        session.update_location(make_sample(point(0.2)))

        await session.navigate(destination)

        assert routing_client.calls[0][0] == point(0.2)

    @pytest.mark.asyncio
    async def test_navigate_without_origin(self, session, destination):
        with pytest.raises(LocationUnavailableError):
            await session.navigate(destination)

        assert session.is_active is False


class TestStepProgress:
    """Test step advance, remaining values and arrival"""

    def test_advance_at_next_maneuver(self, session, destination, three_step_route):
        """A sample at step[1]'s coordinate moves to step 1"""
        session.start(destination, three_step_route)
        steps = three_step_route.steps

        session.update_location(make_sample(steps[1].coordinates))

        assert session.current_step_index == 1
        assert session.remaining_distance_meters == steps[1].distance_meters + steps[2].distance_meters
        assert session.remaining_time_seconds == 120
        assert session.eta == FIXED_NOW + timedelta(seconds=120)
        assert session.next_step == steps[2]
        assert session.is_off_route is False

    def test_no_advance_away_from_maneuver(self, session, destination, three_step_route):
        session.start(destination, three_step_route)

        session.update_location(make_sample(point(1)))

        assert session.current_step_index == 0
        assert session.remaining_distance_meters == 1000

    def test_distance_to_next_maneuver(self, session, destination, three_step_route):
        session.start(destination, three_step_route)

        session.update_location(make_sample(point(1)))

        assert session.snapshot().distance_to_next_maneuver_meters == pytest.approx(333.6, abs=0.5)

    def test_arrival_gating(self, session, destination, three_step_route):
        """Confirmation needs the final step and less than 50 m to go"""
        session.start(destination, three_step_route)
        assert session.can_confirm_arrival is False

        session.update_location(make_sample(point(2)))
        assert session.current_step_index == 1
        assert session.can_confirm_arrival is False

        # ~10 m short of the destination
        session.update_location(make_sample(point(2.97)))

        assert session.current_step_index == 2
        assert session.remaining_distance_meters == pytest.approx(10, abs=0.5)
        assert session.can_confirm_arrival is True
        assert session.phase == NavigationPhase.ARRIVING

    def test_no_arrival_on_intermediate_step(self, session, destination):
        """Small remaining distance alone does not allow confirmation"""
        session.start(destination, make_route([30, 10, 5]))

        assert session.remaining_distance_meters < 50
        assert session.can_confirm_arrival is False

    def test_final_step_closes_in_on_destination(self, session, destination):
        """Remaining values shrink to the straight-line distance on the last step"""
        session.start(destination, make_route([200]))

        # ~40 m short of the only maneuver point
        session.update_location(make_sample(point(0.88)))

        assert session.current_step_index == 0
        assert session.remaining_distance_meters == pytest.approx(40.0, abs=0.5)
        assert session.remaining_time_seconds == pytest.approx(12.0, abs=0.2)
        assert session.eta == FIXED_NOW + timedelta(seconds=session.remaining_time_seconds)
        assert session.can_confirm_arrival is True

    def test_confirm_arrival(self, session, destination, three_step_route):
        session.start(destination, three_step_route)
        session.update_location(make_sample(point(2)))
        session.update_location(make_sample(point(3)))

        arrived = session.confirm_arrival()

        assert arrived == destination
        assert session.is_active is False
        assert session.route is None
        assert session.destination is None
        assert session.current_step_index == 0

    def test_confirm_arrival_too_early(self, session, destination, three_step_route):
        session.start(destination, three_step_route)

        with pytest.raises(NavigationStateError):
            session.confirm_arrival()

        assert session.is_active is True

    def test_confirm_arrival_when_idle(self, session):
        with pytest.raises(NavigationStateError):
            session.confirm_arrival()

    def test_last_mile_walking(self, session, destination):
        """Advisory flag while close to the destination but not yet arriving"""
        session.start(destination, make_route([40, 30, 20]))

        assert session.last_mile_walking is True

    def test_no_last_mile_walking_far_away(self, session, destination, three_step_route):
        session.start(destination, three_step_route)

        assert session.last_mile_walking is False

    def test_no_last_mile_walking_on_arrive_step(self, session, destination):
        session.start(destination, make_route([60]))

        assert session.remaining_distance_meters < 100
        assert session.last_mile_walking is False


class TestStop:
    """Test cancelling navigation"""

    def test_stop_clears_route_state(self, session, destination, three_step_route):
        session.start(destination, three_step_route)
        session.update_location(make_sample(point(1)))

        session.stop()

        snapshot = session.snapshot()
        assert snapshot.is_active is False
        assert snapshot.route is None
        assert snapshot.destination is None
        assert snapshot.eta is None
        # The device position survives the session
        assert snapshot.user_location.coordinate == point(1)

    def test_stop_is_idempotent(self, session):
        """Stopping an idle session does nothing"""
        calls = []
        session.subscribe(calls.append)

        session.stop()
        session.stop()

        assert session.is_active is False
        assert calls == []


class TestGpsSignal:
    """Test signal strength policy"""

    def test_accurate_fix_is_strong(self, session):
        session.update_location(make_sample(point(0), accuracy_meters=5))

        assert session.gps_signal_strength == GpsSignalStrength.STRONG

    def test_inaccurate_fix_is_weak(self, session):
        session.update_location(make_sample(point(0), accuracy_meters=45))

        assert session.gps_signal_strength == GpsSignalStrength.WEAK

    def test_location_error_loses_signal(self, session, destination, three_step_route):
        """Signal loss does not end navigation"""
        session.start(destination, three_step_route)

        session.on_location_error(LocationUnavailableError("denied", code="denied"))

        assert session.gps_signal_strength == GpsSignalStrength.LOST
        assert session.is_active is True

    def test_fix_restores_signal(self, session):
        session.on_location_error(LocationUnavailableError("tunnel", code="timeout"))

        session.update_location(make_sample(point(0)))

        assert session.gps_signal_strength == GpsSignalStrength.STRONG

    def test_synthetic_sample_keeps_signal(self, session):
        session.on_location_error(LocationUnavailableError("tunnel", code="timeout"))

        session.update_location(make_sample(point(0), is_synthetic=True))

        assert session.gps_signal_strength == GpsSignalStrength.LOST
        assert session.user_location.coordinate == point(0)

    def test_synthetic_sample_never_triggers_off_route(self, session, destination, three_step_route):
        session.start(destination, three_step_route)

        session.update_location(make_sample(OFF_ROUTE, is_synthetic=True))

        assert session.is_off_route is False
        assert session.current_step_index == 0

    def test_attach_unavailable_tracker(self, session, config):
        tracker = LocationTracker(FakePositionSource(available=False), config=config)

        assert session.attach_tracker(tracker) is False

        assert session.gps_signal_strength == GpsSignalStrength.LOST
        assert session.user_location is None

    def test_attach_tracker_feeds_session(self, session, config, destination, three_step_route):
        source = FakePositionSource()
        tracker = LocationTracker(source, config=config)
        session.start(destination, three_step_route)

        assert session.attach_tracker(tracker) is True
        assert session.user_location.is_synthetic is True

        source.push({"latitude": point(2)[1], "longitude": point(2)[0], "accuracy": 4})
        assert session.current_step_index == 1

        session.detach_tracker()
        assert tracker.is_tracking is False


class TestOffRoute:
    """Test off-route detection and recalculation"""

    @pytest.mark.asyncio
    async def test_off_route_then_recalculated(self, session, destination, three_step_route):
        """Going off route flags it, then a new route brings it back on route"""
        session.start(destination, three_step_route)

        session.update_location(make_sample(OFF_ROUTE))

        assert session.is_off_route is True
        assert session.phase == NavigationPhase.OFF_ROUTE

        await session.wait_for_recalculation()

        assert session.is_off_route is False
        assert session.is_recalculating is False
        assert session.phase == NavigationPhase.ON_ROUTE
        assert session.current_step_index == 0
        assert session.route.id != three_step_route.id
        assert session.route.geometry[0] == OFF_ROUTE

    @pytest.mark.asyncio
    async def test_recalculating_phase(self, config, settings_store, clock, destination, three_step_route):
        routing_client = FakeRoutingClient(config, block=True)
        session = NavigationSession(routing_client, settings_store, config=config, clock=clock)
        phases = []
        session.subscribe(lambda snapshot: phases.append(snapshot.phase))
        session.start(destination, three_step_route)

        session.update_location(make_sample(OFF_ROUTE))
        await asyncio.sleep(0.01)

        assert session.is_recalculating is True
        assert session.phase == NavigationPhase.RECALCULATING

        routing_client.release.set()
        await session.wait_for_recalculation()

        assert phases[-1] == NavigationPhase.ON_ROUTE
        assert NavigationPhase.OFF_ROUTE in phases
        assert NavigationPhase.RECALCULATING in phases

    @pytest.mark.asyncio
    async def test_recalculation_uses_session_options(self, session, routing_client, destination, three_step_route):
        options = RouteOptions(avoid_traffic=True, route_type=RouteType.SHORTEST)
        session.start(destination, three_step_route, options)

        session.update_location(make_sample(OFF_ROUTE))
        await session.wait_for_recalculation()

        origin, target, used = routing_client.calls[0]
        assert origin == OFF_ROUTE
        assert target == destination.coordinate
        assert used == options

    @pytest.mark.asyncio
    async def test_only_latest_buffered_sample_applied(
        self, config, settings_store, clock, destination, three_step_route
    ):
        routing_client = FakeRoutingClient(config, block=True)
        session = NavigationSession(routing_client, settings_store, config=config, clock=clock)
        session.start(destination, three_step_route)

        session.update_location(make_sample(OFF_ROUTE))
        await asyncio.sleep(0.01)
        session.update_location(make_sample(point(1)))
        session.update_location(make_sample(OFF_ROUTE, speed_meters_per_second=5))

        # Buffered samples wait for the new route
        assert session.user_location.speed_meters_per_second == 0

        routing_client.release.set()
        await session.wait_for_recalculation()

        assert session.user_location.speed_meters_per_second == 5
        assert session.is_off_route is False
        assert len(routing_client.calls) == 1

    @pytest.mark.asyncio
    async def test_failed_recalculation_uses_fallback(self, config, settings_store, clock, destination, three_step_route):
        routing_client = FakeRoutingClient(config, error=InvalidRouteError("steps out of order"))
        session = NavigationSession(routing_client, settings_store, config=config, clock=clock)
        session.start(destination, three_step_route)

        session.update_location(make_sample(OFF_ROUTE))
        await session.wait_for_recalculation()

        assert session.route.is_fallback is True
        assert session.phase == NavigationPhase.ON_ROUTE

    @pytest.mark.asyncio
    async def test_stalled_recalculation_times_out(self, config, settings_store, clock, destination, three_step_route):
        """A routing call that never returns is replaced by the fallback"""
        config = config.model_copy(update={"recalculation_timeout": 0.05})
        routing_client = FakeRoutingClient(config, block=True)
        session = NavigationSession(routing_client, settings_store, config=config, clock=clock)
        session.start(destination, three_step_route)

        session.update_location(make_sample(OFF_ROUTE))
        await session.wait_for_recalculation()

        assert session.route.is_fallback is True
        assert session.is_recalculating is False
        assert session.phase == NavigationPhase.ON_ROUTE

    @pytest.mark.asyncio
    async def test_stale_recalculation_discarded_after_stop(
        self, config, settings_store, clock, destination, three_step_route
    ):
        """A route arriving after stop() is not applied"""
        routing_client = FakeRoutingClient(config, block=True)
        session = NavigationSession(routing_client, settings_store, config=config, clock=clock)
        session.start(destination, three_step_route)
        discarded = recalculations_with("discarded")

        session.update_location(make_sample(OFF_ROUTE))
        await asyncio.sleep(0.01)
        assert session.is_recalculating is True

        session.stop()
        routing_client.release.set()
        await asyncio.sleep(0.05)

        assert session.is_active is False
        assert session.route is None
        assert session.is_recalculating is False
        assert recalculations_with("discarded") == discarded + 1

    @pytest.mark.asyncio
    async def test_stale_recalculation_discarded_after_restart(
        self, config, settings_store, clock, destination, three_step_route
    ):
        routing_client = FakeRoutingClient(config, block=True)
        session = NavigationSession(routing_client, settings_store, config=config, clock=clock)
        session.start(destination, three_step_route)

        session.update_location(make_sample(OFF_ROUTE))
        await asyncio.sleep(0.01)

        replacement = make_route([500, 500], route_id="route_2")
        session.start(destination, replacement)
        routing_client.release.set()
        await asyncio.sleep(0.05)

        assert session.route.id == "route_2"
        assert session.is_off_route is False
        assert session.is_recalculating is False

    @pytest.mark.asyncio
    async def test_manual_recalculate(self, session, routing_client, destination, three_step_route):
        session.start(destination, three_step_route)
        session.update_location(make_sample(point(1)))

        await session.recalculate()

        assert routing_client.calls[0][0] == point(1)
        assert session.route.is_fallback is True

    @pytest.mark.asyncio
    async def test_manual_recalculate_joins_scheduled_one(
        self, config, settings_store, clock, destination, three_step_route
    ):
        """Only one provider request runs when recalculate() overlaps an automatic one"""
        routing_client = FakeRoutingClient(config, block=True)
        session = NavigationSession(routing_client, settings_store, config=config, clock=clock)
        session.start(destination, three_step_route)

        session.update_location(make_sample(OFF_ROUTE))
        await asyncio.sleep(0.01)
        manual = asyncio.ensure_future(session.recalculate())
        await asyncio.sleep(0.01)

        assert len(routing_client.calls) == 1
        assert session.phase == NavigationPhase.RECALCULATING

        routing_client.release.set()
        await manual

        assert len(routing_client.calls) == 1
        assert session.phase == NavigationPhase.ON_ROUTE
        assert session.is_recalculating is False

    @pytest.mark.asyncio
    async def test_off_route_during_manual_recalculate(
        self, config, settings_store, clock, destination, three_step_route
    ):
        routing_client = FakeRoutingClient(config, block=True)
        session = NavigationSession(routing_client, settings_store, config=config, clock=clock)
        session.start(destination, three_step_route)

        manual = asyncio.ensure_future(session.recalculate())
        await asyncio.sleep(0.01)
        session.update_location(make_sample(OFF_ROUTE))
        routing_client.release.set()
        await manual
        await session.wait_for_recalculation()

        # The buffered sample is checked against the new route, not dropped
        assert session.user_location.coordinate == OFF_ROUTE
        assert session.route.geometry[0] == OFF_ROUTE
        assert session.phase == NavigationPhase.ON_ROUTE

    def test_off_route_without_event_loop(self, session, routing_client, destination, three_step_route):
        """Without a loop the session recalculates with the fallback at once"""
        session.start(destination, three_step_route)
        fallbacks = recalculations_with("fallback")

        session.update_location(make_sample(OFF_ROUTE))

        assert session.is_off_route is False
        assert session.phase == NavigationPhase.ON_ROUTE
        assert session.route.is_fallback is True
        assert session.route.geometry[0] == OFF_ROUTE
        assert routing_client.calls == []
        assert recalculations_with("fallback") == fallbacks + 1

        session.update_location(make_sample(OFF_ROUTE, speed_meters_per_second=5))

        assert session.user_location.speed_meters_per_second == 5

    @pytest.mark.asyncio
    async def test_recalculate_when_idle(self, session):
        with pytest.raises(NavigationStateError):
            await session.recalculate()

    def test_vertex_strategy_flags_segment_midpoint(self, session, destination, three_step_route):
        """Nearest-vertex distance treats a point between vertices as off route"""
        session.start(destination, three_step_route)

        session.update_location(make_sample(point(1.5)))

        assert session.is_off_route is True

    def test_segment_strategy_keeps_midpoint_on_route(
        self, config, settings_store, clock, destination, three_step_route
    ):
        config = config.model_copy(update={"off_route_strategy": "segment"})
        session = NavigationSession(FakeRoutingClient(config), settings_store, config=config, clock=clock)
        session.start(destination, three_step_route)

        session.update_location(make_sample(point(1.5)))

        assert session.is_off_route is False

        session.update_location(make_sample(OFF_ROUTE))

        assert session.is_off_route is True


class TestListeners:
    """Test change notification"""

    def test_listener_receives_snapshots(self, session, destination, three_step_route):
        snapshots = []
        unsubscribe = session.subscribe(snapshots.append)

        session.start(destination, three_step_route)
        session.update_location(make_sample(point(2)))

        assert [snapshot.current_step_index for snapshot in snapshots] == [0, 1]

        unsubscribe()
        session.stop()
        assert len(snapshots) == 2

    def test_failing_listener_does_not_break_session(self, session, destination, three_step_route):
        snapshots = []

        def broken(snapshot):
            raise RuntimeError("render failed")

        session.subscribe(broken)
        session.subscribe(snapshots.append)

        session.start(destination, three_step_route)

        assert session.is_active is True
        assert len(snapshots) == 1
