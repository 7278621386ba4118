from typing import Literal, Optional
from pydantic import BaseModel, Field


Units = Literal["metric", "imperial"]


class Location(BaseModel):
    lat: Optional[float] = None
    lon: Optional[float] = None
    name: Optional[str] = None
    country: Optional[str] = None


class CacheInfo(BaseModel):
    hit: bool
    fingerprint: str
    age_seconds: Optional[int] = None
    stale: bool = False


class ProviderInfo(BaseModel):
    name: str = "openweather"
    data_timestamp: Optional[int] = None


class CurrentWeatherResponse(BaseModel):
    location: Location
    units: Units
    current: dict = Field(default_factory=dict)
    provider: ProviderInfo = Field(default_factory=ProviderInfo)
    cache: CacheInfo


class CacheStatusResponse(BaseModel):
    # None when nothing is cached or the slot cannot be read
    age_minutes: Optional[int] = None


class CompleteWeatherResponse(CurrentWeatherResponse):
    # None when the provider could not supply that part
    forecast: Optional[dict] = None
    air_pollution: Optional[dict] = None
