"""
Location tracking on top of a push-based position source
"""
import asyncio
import math
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, Optional, Union

from pydantic import BaseModel, ValidationError

from .config import NavigationConfig, get_settings
from .exceptions import LocationUnavailableError
from .logging_config import get_logger
from .models import LocationSample

logger = get_logger(__name__)

Position = Dict[str, Any]
SampleCallback = Callable[[LocationSample], None]
ErrorCallback = Callable[[LocationUnavailableError], None]


class PositionOptions(BaseModel):
    """Options handed to the platform position watcher"""
    enable_high_accuracy: bool = True
    timeout: float = 10.0
    maximum_age: float = 1.0


class PositionSource(ABC):
    """Platform geolocation API"""

    @abstractmethod
    def watch(
        self,
        on_position: Callable[[Position], None],
        on_error: Callable[[Exception], None],
        options: PositionOptions
    ) -> Any:
        """Start delivering positions, return a watch handle"""
        pass

    @abstractmethod
    def clear_watch(self, watch_id: Any) -> None:
        """Stop the watch identified by watch_id"""
        pass

    def last_known_position(self) -> Optional[Position]:
        """Most recent fix the platform already has, if any"""
        return None

    def is_available(self) -> bool:
        """Whether the platform supports geolocation at all"""
        return True


def _number_or_zero(value: Optional[float]) -> float:
    if value is None or math.isnan(value):
        return 0.0
    return float(value)


class LocationTracker:
    """Wraps a position source and emits LocationSamples"""

    def __init__(
        self,
        source: PositionSource,
        config: Optional[NavigationConfig] = None,
        timeout: Optional[float] = None,
        maximum_age: Optional[float] = None,
        signal_lost_timeout: Optional[float] = None
    ):
        self.source = source
        self.config = config or get_settings()
        self.options = PositionOptions(
            enable_high_accuracy=True,
            timeout=timeout if timeout is not None else self.config.location_timeout,
            maximum_age=maximum_age if maximum_age is not None else self.config.location_maximum_age,
        )
        self.signal_lost_timeout = (
            signal_lost_timeout if signal_lost_timeout is not None else self.config.signal_lost_timeout
        )

        self._watch_id: Any = None
        self._tracking = False
        self._has_fix = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._watchdog: Optional[asyncio.TimerHandle] = None
        self._on_sample: Optional[SampleCallback] = None
        self._on_error: Optional[ErrorCallback] = None

    @property
    def is_tracking(self) -> bool:
        return self._tracking

    def start(self, on_sample: SampleCallback, on_error: ErrorCallback) -> bool:
        """
        Begin continuous position observation.

        Delivers one sample right away (the platform's last fix, or a
        synthetic startup sample) so consumers never start without a
        location. Returns False if the source could not be started; the
        reason goes to on_error.
        """
        if self._tracking:
            self.stop()

        self._on_sample = on_sample
        self._on_error = on_error

        if not self.source.is_available():
            logger.error("Geolocation not supported")
            self._report_error(LocationUnavailableError("geolocation not supported", code="unsupported"))
            return False

        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

        self._tracking = True
        self._has_fix = False

        try:
            self._watch_id = self.source.watch(self._handle_position, self._handle_error, self.options)
        except Exception as e:
            logger.error(f"Failed to start position watch: {e!r}")
            self._tracking = False
            self._report_error(self._as_location_error(e))
            return False

        # The source may have delivered a real fix synchronously
        if not self._has_fix:
            self._deliver(self._startup_sample())

        self._arm_watchdog()
        logger.info("Location tracking started", extra={"options": self.options.model_dump()})
        return True

    def stop(self) -> None:
        """Stop observation; safe to call repeatedly"""
        if self._watch_id is not None:
            try:
                self.source.clear_watch(self._watch_id)
            finally:
                self._watch_id = None
            logger.info("Location tracking stopped")

        self._cancel_watchdog()
        self._tracking = False

    def _startup_sample(self) -> LocationSample:
        last_known = self.source.last_known_position()
        if last_known is not None:
            try:
                return self._to_sample(last_known)
            except ValidationError as e:
                logger.warning(f"Ignoring invalid last known position: {e}")

        latitude, longitude = self.config.startup_location
        return LocationSample(latitude=latitude, longitude=longitude, is_synthetic=True)

    def _to_sample(self, position: Position) -> LocationSample:
        return LocationSample(
            latitude=position["latitude"],
            longitude=position["longitude"],
            heading_degrees=_number_or_zero(position.get("heading")),
            speed_meters_per_second=_number_or_zero(position.get("speed")),
            accuracy_meters=position.get("accuracy"),
        )

    def _in_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def _handle_position(self, position: Position) -> None:
        """Platform callback, may run on any thread"""
        if self._loop is not None and not self._in_loop_thread():
            self._loop.call_soon_threadsafe(self._process_position, position)
        else:
            self._process_position(position)

    def _handle_error(self, error: Exception) -> None:
        """Platform error callback, may run on any thread"""
        if self._loop is not None and not self._in_loop_thread():
            self._loop.call_soon_threadsafe(self._process_error, error)
        else:
            self._process_error(error)

    def _process_position(self, position: Position) -> None:
        if not self._tracking:
            return

        try:
            sample = self._to_sample(position)
        except (KeyError, TypeError, ValidationError) as e:
            logger.warning(f"Discarding invalid position fix: {e}")
            self._report_error(LocationUnavailableError("invalid position fix", code="invalid"))
            return

        self._has_fix = True
        self._arm_watchdog()
        self._deliver(sample)

    def _process_error(self, error: Exception) -> None:
        if not self._tracking:
            return
        logger.warning(f"Location error: {error!r}")
        self._report_error(self._as_location_error(error))

    def _as_location_error(self, error: Exception) -> LocationUnavailableError:
        if isinstance(error, LocationUnavailableError):
            return error
        return LocationUnavailableError(str(error) or error.__class__.__name__, code=getattr(error, "code", None))

    def _deliver(self, sample: LocationSample) -> None:
        if self._on_sample is None:
            return
        try:
            self._on_sample(sample)
        except Exception:
            logger.exception("Location sample handler failed")

    def _report_error(self, error: LocationUnavailableError) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(error)
        except Exception:
            logger.exception("Location error handler failed")

    def _arm_watchdog(self) -> None:
        """(Re)start the no-fix timer"""
        self._cancel_watchdog()
        if self._loop is not None and self.signal_lost_timeout > 0:
            self._watchdog = self._loop.call_later(self.signal_lost_timeout, self._signal_timeout)

    def _cancel_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    def _signal_timeout(self) -> None:
        self._watchdog = None
        if not self._tracking:
            return
        logger.warning(f"No position fix for {self.signal_lost_timeout}s")
        self._report_error(
            LocationUnavailableError(f"no position fix within {self.signal_lost_timeout}s", code="timeout")
        )


class ReplayPositionSource(PositionSource):
    """Replays scripted positions on the running event loop"""

    def __init__(
        self,
        positions: Iterable[Union[Position, Exception]],
        interval: float = 1.0,
        last_known: Optional[Position] = None
    ):
        self.positions = list(positions)
        self.interval = interval
        self.last_known = last_known
        self._tasks: Dict[int, asyncio.Task] = {}
        self._next_id = 0

    def watch(self, on_position, on_error, options):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            raise LocationUnavailableError("replay source needs a running event loop", code="unavailable")

        self._next_id += 1
        self._tasks[self._next_id] = loop.create_task(self._replay(on_position, on_error))
        return self._next_id

    def clear_watch(self, watch_id):
        task = self._tasks.pop(watch_id, None)
        if task is not None:
            task.cancel()

    def last_known_position(self) -> Optional[Position]:
        return self.last_known

    async def _replay(self, on_position, on_error) -> None:
        for item in self.positions:
            await asyncio.sleep(self.interval)
            if isinstance(item, Exception):
                on_error(item)
            else:
                self.last_known = item
                on_position(item)
