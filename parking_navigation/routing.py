"""
Routing provider client with resilience patterns
Falls back to a deterministic straight-line route when the provider is unavailable
"""
import asyncio
import math
import time
import uuid
from typing import Optional

import httpx
from circuitbreaker import CircuitBreaker, CircuitBreakerError
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import NavigationConfig, get_settings
from .exceptions import RoutingProviderError
from .geo import Coordinate, haversine_distance, interpolate
from .logging_config import get_logger, log_context
from .models import ManeuverType, Route, RouteOptions, RouteStep, validate_route
from .monitoring import route_requests, routing_provider_duration

logger = get_logger(__name__)

# Fallback step layout: (distance share, progress along the line, maneuver, instruction, street, speed limit)
FALLBACK_STEPS = (
    (0.4, 0.4, ManeuverType.STRAIGHT, "Head toward your destination", "Current Street", 35),
    (0.4, 0.8, ManeuverType.STRAIGHT, "Continue straight", "Main Route", 30),
    (0.2, 1.0, ManeuverType.ARRIVE, "Arrive at your destination", "Destination Street", None),
)

FALLBACK_TRAFFIC_SHARE = 0.1


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def generate_fallback_route(
    origin: Coordinate,
    destination: Coordinate,
    options: Optional[RouteOptions] = None,
    config: Optional[NavigationConfig] = None
) -> Route:
    """
    Synthesize a low-fidelity three-step route along the straight line
    between origin and destination. Same inputs always give the same route.
    """
    options = options or RouteOptions()
    config = config or get_settings()

    distance = haversine_distance(origin, destination)
    duration = distance / 1000 / config.fallback_speed_kmh * 3600

    # Keep the estimate within plausible local-trip bounds
    clamped_distance = _clamp(distance, config.fallback_min_distance_m, config.fallback_max_distance_m)
    clamped_duration = _clamp(duration, config.fallback_min_duration_s, config.fallback_max_duration_s)

    steps = []
    for index, (share, progress, maneuver, instruction, street, speed_limit) in enumerate(FALLBACK_STEPS, start=1):
        steps.append(RouteStep(
            id=str(index),
            instruction=instruction,
            distance_meters=_round_half_up(clamped_distance * share),
            duration_seconds=_round_half_up(clamped_duration * share),
            maneuver_type=maneuver,
            street_name=street,
            coordinates=destination if progress == 1.0 else interpolate(origin, destination, progress),
            speed_limit=speed_limit,
        ))

    # Totals are re-summed from the rounded steps
    total_distance = sum(step.distance_meters for step in steps)
    total_duration = sum(step.duration_seconds for step in steps)

    route_key = f"{origin}:{destination}:{options.avoid_traffic}:{options.route_type.value}"

    return Route(
        id=f"fallback_route_{uuid.uuid5(uuid.NAMESPACE_URL, route_key).hex[:12]}",
        distance_meters=total_distance,
        duration_seconds=total_duration,
        steps=tuple(steps),
        geometry=(
            origin,
            interpolate(origin, destination, 1 / 3),
            interpolate(origin, destination, 2 / 3),
            destination,
        ),
        traffic_delay_seconds=0 if options.avoid_traffic else _round_half_up(total_duration * FALLBACK_TRAFFIC_SHARE),
        is_fallback=True,
    )


class RoutingClient:
    """Routing provider client with retry, circuit breaker and local fallback"""

    service_name = "routing"

    def __init__(
        self,
        config: Optional[NavigationConfig] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.config = config or get_settings()
        self.base_url = base_url if base_url is not None else self.config.routing_base_url
        self.timeout = timeout if timeout is not None else self.config.routing_timeout
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

        # One breaker per client; the monitor registry keeps one entry per provider
        self._breaker = CircuitBreaker(
            failure_threshold=self.config.routing_circuit_failure_threshold,
            recovery_timeout=self.config.routing_circuit_recovery_timeout,
            expected_exception=RoutingProviderError,
            name=f"routing:{self.base_url}",
        )
        self._guarded_fetch = self._breaker.decorate(self._fetch_route)

    async def __aenter__(self):
        """Async context manager entry"""
        self._get_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.aclose()

    def _get_client(self) -> httpx.AsyncClient:
        if self.client is None:
            self.client = httpx.AsyncClient(
                base_url=self.base_url or "",
                timeout=self.timeout,
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
                transport=self.transport,
            )
        return self.client

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    async def calculate_route(
        self,
        origin: Coordinate,
        destination: Coordinate,
        options: Optional[RouteOptions] = None
    ) -> Route:
        """
        Get a route from the provider, or a local fallback route if the
        provider fails. Raises InvalidRouteError if the provider's route
        breaks route invariants.
        """
        options = options or RouteOptions()
        logger.info(
            f"Calculating route from {origin} to {destination}",
            extra={"options": options.to_payload()}
        )

        try:
            route = await self._request_provider_route(origin, destination, options)
        except RoutingProviderError as e:
            logger.warning(f"{e.message}; falling back to local route generation")
            route_requests.labels(source="fallback").inc()
            return validate_route(self.generate_fallback_route(origin, destination, options))

        route_requests.labels(source="provider").inc()
        logger.info(f"Route {route.id} calculated by provider", extra=log_context(route_id=route.id))
        return validate_route(route)

    def generate_fallback_route(
        self,
        origin: Coordinate,
        destination: Coordinate,
        options: Optional[RouteOptions] = None
    ) -> Route:
        return generate_fallback_route(origin, destination, options, self.config)

    async def _request_provider_route(
        self,
        origin: Coordinate,
        destination: Coordinate,
        options: RouteOptions
    ) -> Route:
        """Provider call bounded by the client timeout"""
        if not self.base_url:
            raise RoutingProviderError(self.service_name, "no routing provider configured")

        started = time.perf_counter()
        try:
            return await asyncio.wait_for(
                self._guarded_fetch(origin, destination, options),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            raise RoutingProviderError(self.service_name, f"timed out after {self.timeout}s")
        except CircuitBreakerError:
            raise RoutingProviderError(self.service_name, "circuit open, provider temporarily disabled")
        finally:
            routing_provider_duration.observe(time.perf_counter() - started)

    async def _fetch_route(
        self,
        origin: Coordinate,
        destination: Coordinate,
        options: RouteOptions
    ) -> Route:
        """Make the HTTP request with retry on transport errors"""
        client = self._get_client()
        payload = {
            "origin": list(origin),
            "destination": list(destination),
            "options": options.to_payload(),
        }

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.routing_retry_attempts),
                wait=wait_exponential(
                    multiplier=1,
                    min=self.config.routing_retry_wait_min,
                    max=self.config.routing_retry_wait_max
                ),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    response = await client.post(self.config.routing_path, json=payload)

            response.raise_for_status()
            return Route.from_provider(response.json())

        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error {e.response.status_code}: {e.response.text}")
            raise RoutingProviderError(self.service_name, f"HTTP {e.response.status_code}")
        except httpx.HTTPError as e:
            logger.error(f"Request error: {e!r}")
            raise RoutingProviderError(self.service_name, str(e) or e.__class__.__name__)
        except (ValueError, ValidationError) as e:
            logger.error(f"Malformed route payload: {e}")
            raise RoutingProviderError(self.service_name, "malformed route payload")

    async def check_status(self, timeout: float = 5.0) -> bool:
        """Probe the provider's status endpoint"""
        if not self.base_url:
            return False

        try:
            response = await self._get_client().get(self.config.routing_status_path, timeout=timeout)
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Routing provider status check failed: {e!r}")
            return False
