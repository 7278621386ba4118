import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from weather_core.errors import LocationPermissionDenied

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 10_000


@dataclass(frozen=True)
class LocationFix:
    latitude: float
    longitude: float
    source: str = "unknown"


class LocationProvider:
    """Platform location capability the resolver drives.

    ``request_updates`` registers ``callback`` for location updates and
    returns an opaque subscription handle; ``remove_updates`` takes that
    handle back. The callback may be invoked from any thread.
    """

    def has_permission(self) -> bool:
        raise NotImplementedError

    async def current_fix(self) -> Optional[LocationFix]:
        raise NotImplementedError

    async def last_known_fix(self) -> Optional[LocationFix]:
        raise NotImplementedError

    def request_updates(self, callback: Callable[[LocationFix], None]) -> Any:
        raise NotImplementedError

    def remove_updates(self, subscription: Any) -> None:
        raise NotImplementedError


class LocationResolver:
    """Finds the device position by trying progressively weaker strategies.

    ``get_best_location`` runs, in order and at most once each:

    1. a high-accuracy current fix, bounded by ``timeout_ms``;
    2. the provider's last known fix;
    3. a subscription for a single update, bounded by ``timeout_ms``.

    The first non-empty result wins. A strategy that fails or times out
    hands over to the next one, and the chain finally yields ``None``. Only a
    missing permission is raised, as ``LocationPermissionDenied``, so
    callers can tell "ask for permission" apart from "try again".
    """

    def __init__(self, provider: LocationProvider, timeout_ms: int = DEFAULT_TIMEOUT_MS):
        self.provider = provider
        self.timeout_ms = timeout_ms

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    def has_location_permission(self) -> bool:
        granted = bool(self.provider.has_permission())
        logger.debug("Location permission granted: %s", granted)
        return granted

    def _ensure_permission(self) -> None:
        if not self.has_location_permission():
            logger.warning("No location permission granted")
            raise LocationPermissionDenied("Location permission not granted")

    async def get_best_location(self) -> Optional[LocationFix]:
        self._ensure_permission()
        logger.debug("Getting best location...")

        fix = await self._with_timeout(self._current_fix(), "current location")
        if fix is not None:
            logger.debug("Got current location: %s, %s", fix.latitude, fix.longitude)
            return fix

        fix = await self._last_known_fix()
        if fix is not None:
            logger.debug("Got last known location: %s, %s", fix.latitude, fix.longitude)
            return fix

        logger.debug("Trying single location update...")
        fix = await self._with_timeout(self._single_update(), "location update")
        if fix is None:
            logger.info("Device location unavailable")
        return fix

    async def get_current_location(self) -> Optional[LocationFix]:
        self._ensure_permission()
        return await self._with_timeout(self._current_fix(), "current location")

    async def get_last_known_location(self) -> Optional[LocationFix]:
        self._ensure_permission()
        return await self._last_known_fix()

    async def _with_timeout(self, attempt: Awaitable[Optional[LocationFix]], what: str) -> Optional[LocationFix]:
        try:
            return await asyncio.wait_for(attempt, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.info("Timed out after %sms waiting for %s", self.timeout_ms, what)
            return None

    async def _current_fix(self) -> Optional[LocationFix]:
        try:
            return await self.provider.current_fix()
        except Exception as exc:
            logger.warning("Current location request failed: %s", exc)
            return None

    async def _last_known_fix(self) -> Optional[LocationFix]:
        try:
            return await self.provider.last_known_fix()
        except Exception as exc:
            logger.warning("Last known location request failed: %s", exc)
            return None

    async def _single_update(self) -> Optional[LocationFix]:
        loop = asyncio.get_running_loop()
        result: asyncio.Future = loop.create_future()

        def deliver(fix: LocationFix) -> None:
            if not result.done():
                result.set_result(fix)

        def on_update(fix: LocationFix) -> None:
            loop.call_soon_threadsafe(deliver, fix)

        try:
            subscription = self.provider.request_updates(on_update)
        except Exception as exc:
            logger.warning("Location update request failed: %s", exc)
            return None

        try:
            return await result
        finally:
            # Also reached when the wait is cancelled by a timeout or the caller.
            try:
                self.provider.remove_updates(subscription)
            except Exception as exc:
                logger.warning("Failed to remove location updates: %s", exc)
