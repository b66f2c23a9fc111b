"""
Turn-by-turn navigation session
State machine tracking the active route, step progress, off-route
recalculation and GPS signal for one driver
"""
import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from .config import NavigationConfig, get_settings
from .exceptions import LocationUnavailableError, NavigationStateError, RecalculationError
from .geo import Coordinate, haversine_distance, nearest_segment_distance, nearest_vertex_distance
from .location import LocationTracker
from .logging_config import get_logger, log_context
from .models import (
    Destination, GpsSignalStrength, LocationSample, ManeuverType, NavigationPhase,
    NavigationSnapshot, Route, RouteOptions, RouteStep, validate_route
)
from .monitoring import gps_signal_changes, off_route_events, recalculations
from .routing import RoutingClient, generate_fallback_route
from .settings_store import SettingsStore

logger = get_logger(__name__)

Listener = Callable[[NavigationSnapshot], None]


class NavigationSession:
    """
    Active navigation state for a single consumer.

    All transitions must run on one event loop: start(), update_location(),
    stop(), confirm_arrival() and recalculation completion are never
    executed concurrently. LocationTracker marshals samples onto the loop
    it was started from.

    Usage:
        session = NavigationSession(routing_client, settings_store)
        await session.navigate(destination, origin)
        session.attach_tracker(tracker)
        ...
        session.confirm_arrival()
    """

    def __init__(
        self,
        routing_client: RoutingClient,
        settings_store: Optional[SettingsStore] = None,
        config: Optional[NavigationConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.routing_client = routing_client
        self.settings_store = settings_store
        self.config = config or get_settings()
        self._clock = clock or datetime.now

        self._listeners: List[Listener] = []
        self._tracker: Optional[LocationTracker] = None
        self._recalculation: Optional[asyncio.Task] = None
        self._generation = 0

        # Survive stop(): the device keeps its position and signal
        self._user_location: Optional[LocationSample] = None
        self._gps_signal_strength = GpsSignalStrength.STRONG

        self._reset_route_state()

    def _reset_route_state(self) -> None:
        self._session_id: Optional[str] = None
        self._active = False
        self._route: Optional[Route] = None
        self._options: Optional[RouteOptions] = None
        self._step_index = 0
        self._destination: Optional[Destination] = None
        self._eta: Optional[datetime] = None
        self._remaining_distance = 0.0
        self._remaining_time = 0.0
        self._distance_to_next: Optional[float] = None
        self._off_route = False
        self._recalculating = False
        self._last_mile_walking = False
        self._pending_sample: Optional[LocationSample] = None

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def route(self) -> Optional[Route]:
        return self._route

    @property
    def current_step_index(self) -> int:
        return self._step_index

    @property
    def current_step(self) -> Optional[RouteStep]:
        if self._route and 0 <= self._step_index < len(self._route.steps):
            return self._route.steps[self._step_index]
        return None

    @property
    def next_step(self) -> Optional[RouteStep]:
        if self._route and self._step_index + 1 < len(self._route.steps):
            return self._route.steps[self._step_index + 1]
        return None

    @property
    def destination(self) -> Optional[Destination]:
        return self._destination

    @property
    def user_location(self) -> Optional[LocationSample]:
        return self._user_location

    @property
    def eta(self) -> Optional[datetime]:
        return self._eta

    @property
    def remaining_distance_meters(self) -> float:
        return self._remaining_distance

    @property
    def remaining_time_seconds(self) -> float:
        return self._remaining_time

    @property
    def is_off_route(self) -> bool:
        return self._off_route

    @property
    def is_recalculating(self) -> bool:
        return self._recalculating

    @property
    def gps_signal_strength(self) -> GpsSignalStrength:
        return self._gps_signal_strength

    @property
    def last_mile_walking(self) -> bool:
        return self._last_mile_walking

    @property
    def can_confirm_arrival(self) -> bool:
        if not self._active or self._route is None:
            return False
        return (
            self._step_index == len(self._route.steps) - 1
            and self._remaining_distance < self.config.arrival_confirm_distance_m
        )

    @property
    def phase(self) -> NavigationPhase:
        if not self._active:
            return NavigationPhase.IDLE
        if self._recalculating:
            return NavigationPhase.RECALCULATING
        if self._off_route:
            return NavigationPhase.OFF_ROUTE
        if self.can_confirm_arrival:
            return NavigationPhase.ARRIVING
        return NavigationPhase.ON_ROUTE

    def snapshot(self) -> NavigationSnapshot:
        """Immutable copy of the current state"""
        return NavigationSnapshot(
            session_id=self._session_id,
            phase=self.phase,
            is_active=self._active,
            route=self._route,
            current_step_index=self._step_index,
            current_step=self.current_step,
            next_step=self.next_step,
            destination=self._destination,
            user_location=self._user_location,
            eta=self._eta,
            remaining_distance_meters=self._remaining_distance,
            remaining_time_seconds=self._remaining_time,
            distance_to_next_maneuver_meters=self._distance_to_next,
            is_off_route=self._off_route,
            is_recalculating=self._recalculating,
            gps_signal_strength=self._gps_signal_strength,
            last_mile_walking=self._last_mile_walking,
            can_confirm_arrival=self.can_confirm_arrival,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call listener with a snapshot after every transition"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Navigation listener failed", extra=self._log_context())

    def _log_context(self) -> dict:
        return log_context(self._session_id, self._route.id if self._route else None)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        destination: Destination,
        route: Route,
        options: Optional[RouteOptions] = None
    ) -> NavigationSnapshot:
        """Begin navigating along route; replaces any active navigation"""
        validate_route(route)

        if self._active:
            logger.info("Replacing active navigation", extra=self._log_context())

        self._generation += 1
        self._recalculation = None
        self._reset_route_state()
        self._session_id = uuid.uuid4().hex
        self._active = True
        self._destination = destination
        self._options = options
        self._apply_route(route)

        logger.info(
            f"Starting navigation to {destination.name}: "
            f"{route.distance_meters:.0f}m, {route.duration_seconds:.0f}s, {len(route.steps)} steps",
            extra=self._log_context()
        )
        self._notify()
        return self.snapshot()

    async def navigate(
        self,
        destination: Destination,
        origin: Optional[Coordinate] = None,
        options: Optional[RouteOptions] = None
    ) -> NavigationSnapshot:
        """Calculate a route to destination and start navigating it"""
        if origin is None:
            if self._user_location is None:
                raise LocationUnavailableError("no origin given and no current location", code="no_origin")
            origin = self._user_location.coordinate

        options = options or self._preferred_options()
        route = await self.routing_client.calculate_route(origin, destination.coordinate, options)
        return self.start(destination, route, options)

    def stop(self) -> None:
        """Cancel navigation; a no-op when already idle"""
        if not self._active:
            return

        context = self._log_context()
        # Invalidate any in-flight recalculation
        self._generation += 1
        self._recalculation = None
        self._reset_route_state()

        logger.info("Navigation stopped", extra=context)
        self._notify()

    def confirm_arrival(self) -> Destination:
        """End navigation at the destination and return it"""
        if not self.can_confirm_arrival:
            raise NavigationStateError("confirm arrival", self.phase.value)

        destination = self._destination
        context = self._log_context()
        self._generation += 1
        self._recalculation = None
        self._reset_route_state()

        logger.info(f"Arrival confirmed at {destination.name}", extra=context)
        self._notify()
        return destination

    def _apply_route(self, route: Route) -> None:
        self._route = route
        self._step_index = 0
        self._remaining_distance = route.distance_meters
        self._remaining_time = route.duration_seconds
        self._eta = self._clock() + timedelta(seconds=route.duration_seconds)
        self._distance_to_next = None
        self._off_route = False
        self._update_last_mile()

    def _preferred_options(self) -> RouteOptions:
        if self.settings_store is None:
            return RouteOptions()
        return self.settings_store.get().route_options()

    # ------------------------------------------------------------------
    # Location updates
    # ------------------------------------------------------------------

    def attach_tracker(self, tracker: LocationTracker) -> bool:
        """Feed samples and errors from tracker into this session"""
        self.detach_tracker()
        self._tracker = tracker

        started = tracker.start(self.update_location, self.on_location_error)
        if not started:
            self._set_signal(GpsSignalStrength.LOST)
            self._notify()
        return started

    def detach_tracker(self) -> None:
        if self._tracker is not None:
            self._tracker.stop()
            self._tracker = None

    def on_location_error(self, error: LocationUnavailableError) -> None:
        """Downgrade the signal; navigation carries on"""
        logger.warning(f"GPS problem: {error.message}", extra=self._log_context())
        self._set_signal(GpsSignalStrength.LOST)
        self._notify()

    def update_location(self, sample: LocationSample) -> None:
        """Process one location sample"""
        if not sample.is_synthetic:
            self._set_signal(self._classify_signal(sample))

        if sample.is_synthetic or not self._active:
            self._user_location = sample
            self._notify()
            return

        # Only the newest sample is kept while a new route is on its way
        if self._off_route or self._recalculating:
            self._pending_sample = sample
            self._notify()
            return

        self._user_location = sample
        self._process_sample(sample)
        self._notify()

    def _classify_signal(self, sample: LocationSample) -> GpsSignalStrength:
        if sample.accuracy_meters is not None and sample.accuracy_meters > self.config.weak_accuracy_threshold_m:
            return GpsSignalStrength.WEAK
        return GpsSignalStrength.STRONG

    def _set_signal(self, strength: GpsSignalStrength) -> None:
        if strength == self._gps_signal_strength:
            return

        gps_signal_changes.labels(strength=strength.value).inc()
        if strength == GpsSignalStrength.STRONG:
            logger.info("GPS signal restored", extra=self._log_context())
        else:
            logger.warning(f"GPS signal {strength.value}", extra=self._log_context())
        self._gps_signal_strength = strength

    def _process_sample(self, sample: LocationSample) -> None:
        route = self._route
        position = sample.coordinate

        off_route_distance = self._off_route_distance(position, route)
        if off_route_distance > self.config.off_route_threshold_m:
            self._off_route = True
            off_route_events.inc()
            logger.warning(
                f"Off route by {off_route_distance:.0f}m, recalculating",
                extra=self._log_context()
            )
            self._schedule_recalculation()
            return

        target = self.next_step
        if target is not None:
            self._distance_to_next = haversine_distance(position, target.coordinates)
            if self._distance_to_next < self.config.arrival_tolerance_m:
                self._advance_step()

        if self.next_step is None:
            self._track_final_step(position)

        self._update_last_mile()

    def _off_route_distance(self, position: Coordinate, route: Route) -> float:
        geometry: Tuple[Coordinate, ...] = route.geometry or tuple(step.coordinates for step in route.steps)
        if self.config.off_route_strategy == "segment":
            return nearest_segment_distance(position, geometry)
        return nearest_vertex_distance(position, geometry)

    def _advance_step(self) -> None:
        self._step_index += 1
        remaining_steps = self._route.steps[self._step_index:]
        self._remaining_distance = sum(step.distance_meters for step in remaining_steps)
        self._remaining_time = sum(step.duration_seconds for step in remaining_steps)
        self._eta = self._clock() + timedelta(seconds=self._remaining_time)

        step = self.current_step
        logger.info(
            f"Advanced to step {self._step_index + 1}/{len(self._route.steps)}: {step.instruction}",
            extra=self._log_context()
        )

    def _track_final_step(self, position: Coordinate) -> None:
        """On the last step, close in on the destination by straight-line distance"""
        final_step = self._route.steps[-1]
        distance_to_destination = haversine_distance(position, final_step.coordinates)
        self._distance_to_next = distance_to_destination

        if distance_to_destination < final_step.distance_meters:
            self._remaining_distance = distance_to_destination
            self._remaining_time = final_step.duration_seconds * distance_to_destination / final_step.distance_meters
            self._eta = self._clock() + timedelta(seconds=self._remaining_time)

        if distance_to_destination < self.config.arrival_tolerance_m:
            logger.info("Destination reached, waiting for arrival confirmation", extra=self._log_context())

    def _update_last_mile(self) -> None:
        step = self.current_step
        self._last_mile_walking = (
            step is not None
            and step.maneuver_type != ManeuverType.ARRIVE
            and self._remaining_distance < self.config.last_mile_walking_m
        )

    # ------------------------------------------------------------------
    # Recalculation
    # ------------------------------------------------------------------

    def _schedule_recalculation(self) -> None:
        if self._recalculation is not None and not self._recalculation.done():
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to await the provider on
            logger.warning("No running event loop, recalculating with fallback route", extra=self._log_context())
            origin, destination, options = self._recalculation_request()
            route = generate_fallback_route(origin, destination, options, self.config)
            self._install_recalculated_route(route, "fallback")
            return

        self._recalculation = loop.create_task(self._recalculate(self._generation))

    async def recalculate(self) -> None:
        """
        Request a new route from the current location right away.

        Joins the recalculation already in flight, if any, so only one
        provider request runs at a time.
        """
        if not self._active:
            raise NavigationStateError("recalculate", self.phase.value)

        task = self._recalculation
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._recalculate(self._generation))
            self._recalculation = task
        await task

    async def wait_for_recalculation(self) -> None:
        """Wait for a scheduled recalculation, if any, to finish"""
        task = self._recalculation
        if task is not None:
            await task

    async def _recalculate(self, generation: int) -> None:
        if generation != self._generation or not self._active:
            return

        self._recalculating = True
        self._notify()

        origin, destination, options = self._recalculation_request()
        session_id = self._session_id

        try:
            route = await asyncio.wait_for(
                self.routing_client.calculate_route(origin, destination, options),
                timeout=self.config.recalculation_timeout
            )
            validate_route(route)
            outcome = "fallback" if route.is_fallback else "provider"
        except asyncio.TimeoutError:
            error = RecalculationError(f"timed out after {self.config.recalculation_timeout}s", session_id)
            logger.warning(f"{error.message}; using fallback route", extra=self._log_context())
            route = generate_fallback_route(origin, destination, options, self.config)
            outcome = "fallback"
        except Exception as e:
            error = RecalculationError(str(e), session_id)
            logger.warning(f"{error.message}; using fallback route", exc_info=True, extra=self._log_context())
            route = generate_fallback_route(origin, destination, options, self.config)
            outcome = "fallback"
        finally:
            if generation == self._generation:
                self._recalculating = False

        if generation != self._generation:
            recalculations.labels(outcome="discarded").inc()
            logger.info(f"Discarding stale recalculation result {route.id}")
            return

        if self._recalculation is asyncio.current_task():
            self._recalculation = None
        self._install_recalculated_route(route, outcome)

    def _recalculation_request(self) -> Tuple[Coordinate, Coordinate, RouteOptions]:
        origin = self._user_location.coordinate if self._user_location else self.current_step.coordinates
        options = self._options or self._preferred_options()
        return origin, self._destination.coordinate, options

    def _install_recalculated_route(self, route: Route, outcome: str) -> None:
        recalculations.labels(outcome=outcome).inc()
        self._apply_route(route)
        logger.info(f"Route recalculated ({outcome})", extra=self._log_context())

        pending, self._pending_sample = self._pending_sample, None
        if pending is not None:
            self._user_location = pending
            self._process_sample(pending)

        self._notify()
