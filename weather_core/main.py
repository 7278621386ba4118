import logging

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse

from weather_core.config import settings
from weather_core.errors import CityNotFound, RateLimitExceeded, UpstreamError
from weather_core.models import (
    CacheInfo,
    CacheStatusResponse,
    CompleteWeatherResponse,
    CurrentWeatherResponse,
    Location,
)
from weather_core.services.cache import MAX_AGE_MINUTES, WeatherCache, build_slot_store
from weather_core.services.openweather import OpenWeatherClient
from weather_core.services.rate_limit import RateLimiter
from weather_core.services.repository import CompleteWeatherResult, WeatherRepository, WeatherResult

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name)


def build_repository() -> WeatherRepository:
    store = build_slot_store(
        settings.cache_backend,
        path=settings.cache_path,
        redis_url=settings.redis_url,
        key=settings.cache_key,
    )
    cache = WeatherCache(store, ttl_ms=settings.cache_ttl_ms)
    client = OpenWeatherClient(
        settings.openweather_base_url,
        settings.openweather_api_key,
        timeout_seconds=settings.openweather_timeout_seconds,
    )
    limiter = RateLimiter(settings.rate_limit_max_requests, settings.rate_limit_window_ms)
    return WeatherRepository(cache, client, limiter, coord_decimals=settings.cache_coord_round_decimals)


repository = build_repository()


def get_repository() -> WeatherRepository:
    return repository


@app.get("/health")
def health():
    return {"status": "ok", "service": settings.app_name}


@app.get("/")
def root():
    return JSONResponse({"service": settings.app_name, "docs": "/docs"})


# ── Weather endpoints ────────────────────────────────────────────────────────

@app.get("/weather", response_model=CurrentWeatherResponse)
async def weather_by_city(
    city: str = Query(..., min_length=1, description="City name, e.g. 'London'"),
    units: str = Query("metric", pattern="^(metric|imperial)$"),
    repo: WeatherRepository = Depends(get_repository),
):
    result = await _guarded(repo.get_weather_by_city(city, units))
    return _to_response(result, units)


@app.get("/v1/weather/current", response_model=CurrentWeatherResponse)
async def current_weather(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    units: str = Query("metric", pattern="^(metric|imperial)$"),
    repo: WeatherRepository = Depends(get_repository),
):
    result = await _guarded(repo.get_weather_by_coords(lat, lon, units))
    return _to_response(result, units, lat=lat, lon=lon)


@app.post("/v1/weather/refresh", response_model=CurrentWeatherResponse)
async def refresh_weather(
    city: str = Query(..., min_length=1),
    units: str = Query("metric", pattern="^(metric|imperial)$"),
    repo: WeatherRepository = Depends(get_repository),
):
    result = await _guarded(repo.force_refresh(city, units))
    return _to_response(result, units)


@app.get("/v1/weather/complete", response_model=CompleteWeatherResponse)
async def complete_weather(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    units: str = Query("metric", pattern="^(metric|imperial)$"),
    repo: WeatherRepository = Depends(get_repository),
):
    result = await _guarded(repo.get_complete_weather_by_coords(lat, lon, units))
    return _to_complete_response(result, units, lat=lat, lon=lon)


@app.get("/weather/complete", response_model=CompleteWeatherResponse)
async def complete_weather_by_city(
    city: str = Query(..., min_length=1, description="City name, e.g. 'London'"),
    units: str = Query("metric", pattern="^(metric|imperial)$"),
    repo: WeatherRepository = Depends(get_repository),
):
    result = await _guarded(repo.get_complete_weather_by_city(city, units))
    return _to_complete_response(result, units)


# ── Cache endpoints ──────────────────────────────────────────────────────────

@app.get("/v1/cache", response_model=CacheStatusResponse)
async def cache_status(repo: WeatherRepository = Depends(get_repository)):
    age = await repo.cache.age_minutes()
    return CacheStatusResponse(age_minutes=None if age == MAX_AGE_MINUTES else age)


@app.delete("/v1/cache", status_code=204)
async def clear_cache(repo: WeatherRepository = Depends(get_repository)):
    await repo.cache.clear()


# ── Shared helpers ───────────────────────────────────────────────────────────

async def _guarded(call):
    """Await a repository call, translating its errors to HTTP responses."""
    try:
        return await call
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except CityNotFound as exc:
        raise HTTPException(status_code=404, detail=exc.detail)
    except RateLimitExceeded as exc:
        raise HTTPException(status_code=429, detail=exc.detail)
    except UpstreamError as exc:
        logger.error("Weather provider error (%s): %s", exc.status_code, exc.detail)
        raise HTTPException(status_code=502, detail=exc.detail)


def _to_response(result: WeatherResult, units: str, *, lat=None, lon=None) -> CurrentWeatherResponse:
    payload = result.payload
    coord = payload.get("coord", {})
    return CurrentWeatherResponse(
        location=Location(
            lat=lat if lat is not None else coord.get("lat"),
            lon=lon if lon is not None else coord.get("lon"),
            name=payload.get("name"),
            country=payload.get("sys", {}).get("country"),
        ),
        units=units,  # type: ignore
        current=payload,
        provider={"name": "openweather", "data_timestamp": payload.get("dt")},
        cache=CacheInfo(
            hit=result.from_cache,
            fingerprint=result.fingerprint,
            age_seconds=result.age_seconds,
            stale=result.stale,
        ),
    )


def _to_complete_response(
    result: CompleteWeatherResult, units: str, *, lat=None, lon=None
) -> CompleteWeatherResponse:
    current = _to_response(result.current, units, lat=lat, lon=lon)
    return CompleteWeatherResponse(
        **current.model_dump(),
        forecast=result.forecast,
        air_pollution=result.air_pollution,
    )
