from typing import Any, Dict

import httpx

from weather_core.errors import ProviderUnavailable, error_for_status


class OpenWeatherClient:
    """Fetches current weather; responses come back as raw JSON text."""

    def __init__(self, base_url: str, api_key: str, timeout_seconds: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout_seconds

    async def get_current_by_city(self, city: str, units: str) -> str:
        return await self._get("/weather", {"q": city, "units": units})

    async def get_current_by_coords(self, lat: float, lon: float, units: str) -> str:
        return await self._get("/weather", {"lat": lat, "lon": lon, "units": units})

    async def get_forecast_by_city(self, city: str, units: str) -> str:
        return await self._get("/forecast", {"q": city, "units": units})

    async def get_forecast_by_coords(self, lat: float, lon: float, units: str) -> str:
        return await self._get("/forecast", {"lat": lat, "lon": lon, "units": units})

    async def get_air_pollution(self, lat: float, lon: float) -> str:
        # the air pollution endpoint takes no units
        return await self._get("/air_pollution", {"lat": lat, "lon": lon})

    async def _get(self, path: str, params: Dict[str, Any]) -> str:
        url = f"{self.base_url}{path}"
        params = {**params, "appid": self.api_key}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                r = await client.get(url, params=params)
                r.raise_for_status()
                return r.text
        except httpx.HTTPStatusError as exc:
            raise error_for_status(exc.response.status_code, exc.response.text) from exc
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable("Request timed out") from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailable(f"No connection to weather provider: {exc}") from exc
