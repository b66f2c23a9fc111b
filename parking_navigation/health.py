"""
Pre-navigation readiness checks
"""
import asyncio
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .location import PositionOptions, PositionSource
from .logging_config import get_logger
from .routing import RoutingClient
from .settings_store import SettingsStore
from .voice import VoiceGuide

logger = get_logger(__name__)


class ReadinessReport(BaseModel):
    """Whether navigation can run at full fidelity"""
    is_ready: bool
    issues: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=datetime.now)


class LocationTestResult(BaseModel):
    """Outcome of a one-shot position fix"""
    success: bool
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    error: Optional[str] = None


class NavigationHealthCheck:
    """Checks the collaborators a navigation session depends on"""

    def __init__(
        self,
        routing_client: RoutingClient,
        position_source: PositionSource,
        settings_store: SettingsStore,
        voice_guide: Optional[VoiceGuide] = None
    ):
        self.routing_client = routing_client
        self.position_source = position_source
        self.settings_store = settings_store
        self.voice_guide = voice_guide

    async def check_readiness(self) -> ReadinessReport:
        issues: List[str] = []
        recommendations: List[str] = []

        if not self.position_source.is_available():
            issues.append("Geolocation not supported")
            recommendations.append("Use a device with location support")

        if not await self.routing_client.check_status(timeout=5.0):
            issues.append("Cannot connect to routing service")
            recommendations.append("Using offline navigation mode")

        if not self.settings_store.backend.ping():
            issues.append("Settings storage unavailable")
            recommendations.append("Settings changes will not persist between sessions")

        if self.voice_guide is None or not self.voice_guide.is_available:
            issues.append("Voice guidance unavailable")
            recommendations.append("Voice navigation will be disabled")

        report = ReadinessReport(is_ready=not issues, issues=issues, recommendations=recommendations)
        if issues:
            logger.warning(f"Navigation not fully ready: {', '.join(issues)}")
        return report

    async def perform_location_test(self, timeout: float = 10.0) -> LocationTestResult:
        """Wait for one real position fix"""
        if not self.position_source.is_available():
            return LocationTestResult(success=False, error="Geolocation not supported")

        loop = asyncio.get_running_loop()
        result: asyncio.Future = loop.create_future()

        def on_position(position):
            if not result.done():
                loop.call_soon_threadsafe(self._resolve, result, position, None)

        def on_error(error):
            if not result.done():
                loop.call_soon_threadsafe(self._resolve, result, None, error)

        # Platform timeout fires before ours so its error wins
        options = PositionOptions(enable_high_accuracy=True, timeout=max(timeout - 2, 1), maximum_age=60)
        try:
            watch_id = self.position_source.watch(on_position, on_error, options)
        except Exception as e:
            return LocationTestResult(success=False, error=f"Location error: {e}")

        try:
            position = await asyncio.wait_for(result, timeout=timeout)
        except asyncio.TimeoutError:
            return LocationTestResult(success=False, error="Location request timed out")
        except Exception as e:
            return LocationTestResult(success=False, error=f"Location error: {e}")
        finally:
            self.position_source.clear_watch(watch_id)

        return LocationTestResult(
            success=True,
            latitude=position["latitude"],
            longitude=position["longitude"],
        )

    @staticmethod
    def _resolve(future: asyncio.Future, position, error) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(position)
