#!/usr/bin/env python3
"""
Parking Navigation - Simulated Trip Demo
Drives a scripted trip to a parking spot: readiness check, route,
step advance, a wrong turn with recalculation, GPS loss and arrival
"""

import asyncio

from parking_navigation import (
    Destination, LocationTracker, LocationUnavailableError, NavigationHealthCheck,
    NavigationPresenter, NavigationSession, ReplayPositionSource, RoutingClient,
    SettingsStore, VoiceGuide, get_settings
)
from parking_navigation.geo import interpolate
from parking_navigation.logging_config import setup_logging
from parking_navigation.settings_store import MemoryBackend

ORIGIN = (-122.4194, 37.7749)  # Market St, San Francisco
SPOT = Destination(latitude=37.7839, longitude=-122.4194, name="Mission St Garage", spot_id="spot_42")
WRONG_TURN = (-122.4172, 37.7790)


def print_header(text):
    """Print formatted header"""
    print("\n" + "=" * 60)
    print(f" {text}")
    print("=" * 60)


def fix(coordinate, accuracy=5.0, speed=8.0, heading=0.0):
    """Position fix as the platform reports it"""
    return {
        "latitude": coordinate[1],
        "longitude": coordinate[0],
        "accuracy": accuracy,
        "speed": speed,
        "heading": heading,
    }


def scripted_trip():
    """Fixes along the planned route, a wrong turn, a tunnel and the approach"""
    destination = SPOT.coordinate
    positions = [fix(interpolate(ORIGIN, destination, f)) for f in (0.1, 0.25, 0.4)]
    positions.append(fix(WRONG_TURN, heading=60.0))
    positions.append(LocationUnavailableError("no fix in tunnel", code="timeout"))
    positions.extend(
        fix(interpolate(WRONG_TURN, destination, f), accuracy=45.0 if f == 0.2 else 5.0)
        for f in (0.2, 0.4, 0.6, 0.8, 0.97)
    )
    return positions


def print_view(view):
    if not view.is_active:
        return
    print(f"\n   {view.maneuver_icon}  {view.instruction}")
    print(f"   ↳ {view.distance_to_maneuver} to maneuver, {view.remaining_distance} / "
          f"{view.remaining_time} left, ETA {view.eta} ({view.progress_percentage:.0f}%)")
    for alert in view.alerts:
        print(f"   ⚠️  {alert.message}")
    if view.can_confirm_arrival:
        print("   🅿️  Tap to confirm arrival")


async def demo_readiness(check):
    """Show what is available before starting"""
    print_header("STEP 1: Readiness Check")

    report = await check.check_readiness()
    print(f"\n{'✅ Ready' if report.is_ready else '⚠️  Running with reduced features'}")
    for issue, recommendation in zip(report.issues, report.recommendations):
        print(f"   • {issue} → {recommendation}")


async def demo_trip(session, presenter, tracker):
    """Navigate to the parking spot"""
    print_header("STEP 2: Navigate to Parking Spot")

    snapshot = await session.navigate(SPOT, origin=ORIGIN)
    route = snapshot.route
    print(f"\n🗺️  Route to {SPOT.name}: {len(route.steps)} steps, "
          f"{route.distance_meters:.0f} m{' (estimated)' if route.is_fallback else ''}")

    last_frame = {}

    def on_change(changed):
        view = presenter.render(changed)
        frame = (view.instruction, tuple(alert.kind for alert in view.alerts), view.can_confirm_arrival)
        if frame != last_frame.get("frame"):
            last_frame["frame"] = frame
            print_view(view)

    unsubscribe = session.subscribe(on_change)
    session.attach_tracker(tracker)

    for _ in range(100):
        if session.can_confirm_arrival:
            break
        await asyncio.sleep(0.1)

    session.detach_tracker()
    unsubscribe()
    return session.can_confirm_arrival


async def main():
    print("\n🚗 PARKING NAVIGATION - SIMULATED TRIP 🚗")
    print("Turn-by-turn guidance to your parking spot")

    config = get_settings().model_copy(update={"off_route_strategy": "segment"})
    setup_logging(log_level="WARNING", log_format="text")

    settings_store = SettingsStore(backend=MemoryBackend(), config=config)
    settings_store.update(units="metric")
    voice_guide = VoiceGuide(speaker=lambda text: print(f"   🔊 \"{text}\""), cooldown=config.voice_cooldown)
    source = ReplayPositionSource(scripted_trip(), interval=0.3)

    async with RoutingClient(config=config) as routing_client:
        check = NavigationHealthCheck(routing_client, source, settings_store, voice_guide)
        await demo_readiness(check)

        session = NavigationSession(routing_client, settings_store, config=config)
        presenter = NavigationPresenter(session, settings_store, voice_guide=voice_guide)
        tracker = LocationTracker(source, config=config)

        arrived = await demo_trip(session, presenter, tracker)

        print_header("STEP 3: Arrival")
        if arrived:
            destination = session.confirm_arrival()
            print(f"\n✅ Parked at {destination.name} ({destination.spot_id})")
        else:
            session.stop()
            print("\n⚠️  Trip ended before reaching the spot")
        presenter.close()


if __name__ == "__main__":
    asyncio.run(main())
