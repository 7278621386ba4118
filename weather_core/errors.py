from typing import Optional


class WeatherCoreError(Exception):
    """Base class for weather-core errors."""


class LocationPermissionDenied(WeatherCoreError):
    """Neither coarse nor fine location permission is granted."""


class StorageUnreadable(WeatherCoreError):
    """The durable cache slot could not be read or written."""


class UpstreamError(WeatherCoreError):
    status_code: int = 502

    def __init__(self, detail: str, status_code: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code


class CityNotFound(UpstreamError):
    status_code = 404


class InvalidApiKey(UpstreamError):
    status_code = 401


class RateLimitExceeded(UpstreamError):
    status_code = 429


class ProviderUnavailable(UpstreamError):
    status_code = 503


def error_for_status(status_code: int, detail: str) -> UpstreamError:
    """Map an upstream HTTP status to the matching error type."""
    if status_code == 404:
        return CityNotFound(detail or "City not found", status_code)
    if status_code == 401:
        return InvalidApiKey(detail or "Invalid API key", status_code)
    if status_code == 429:
        return RateLimitExceeded(detail or "Too many requests", status_code)
    if status_code >= 500:
        return ProviderUnavailable(detail or "Weather provider error", status_code)
    return UpstreamError(detail or f"Unexpected upstream status {status_code}", status_code)
