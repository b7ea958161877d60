"""
OpenWeatherMap client with a database-backed cache.

Cache rows are keyed by coordinates rounded to 4 decimals and a type tag
(``current`` or ``forecast``) and stay fresh for 30 minutes.
"""

import logging
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select, desc

from agrisense import config
from agrisense.errors import UpstreamError
from agrisense.models import WeatherCache
from agrisense.schemas import WeatherInfo

logger = logging.getLogger(__name__)

CACHE_TTL = timedelta(minutes=30)
COORDINATE_PRECISION = 4


def round_coordinate(value: float) -> float:
    return round(float(value), COORDINATE_PRECISION)


# --- Cache ---

def get_cached_weather(
    db: Session,
    latitude: float,
    longitude: float,
    kind: str = "current",
    now: Optional[datetime] = None,
) -> Optional[Dict[str, Any]]:
    """Returns the newest payload younger than ``CACHE_TTL``, or None on a miss."""
    now = now or datetime.now(timezone.utc)
    entry = db.exec(
        select(WeatherCache)
        .where(WeatherCache.type == kind)
        .where(WeatherCache.latitude == round_coordinate(latitude))
        .where(WeatherCache.longitude == round_coordinate(longitude))
        .where(WeatherCache.created_at > now - CACHE_TTL)
        .order_by(desc(WeatherCache.created_at))
    ).first()
    return entry.data if entry else None


def store_weather(db: Session, latitude: float, longitude: float, kind: str, data: Dict[str, Any]) -> Optional[WeatherCache]:
    """Caches an upstream payload. A failed insert is logged and rolled back, returning None."""
    entry = WeatherCache(
        type=kind,
        latitude=round_coordinate(latitude),
        longitude=round_coordinate(longitude),
        data=data,
    )
    try:
        db.add(entry)
        db.commit()
        db.refresh(entry)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to cache %s weather for (%s, %s): %s", kind, latitude, longitude, e)
        return None
    return entry


# --- Upstream ---

async def _fetch(endpoint: str, latitude: float, longitude: float, client: Optional[httpx.AsyncClient]) -> Dict[str, Any]:
    if client is None:
        async with httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS) as client:
            return await _fetch(endpoint, latitude, longitude, client)

    if not config.WEATHER_API_KEY:
        raise UpstreamError("WEATHER_API_KEY is not configured")

    params = {
        "lat": latitude,
        "lon": longitude,
        "appid": config.WEATHER_API_KEY,
        "units": "metric",
    }
    try:
        response = await client.get(f"{config.WEATHER_API_URL}/{endpoint}", params=params)
        response.raise_for_status()
        return response.json()
    except httpx.RequestError as exc:
        raise UpstreamError(f"Error communicating with weather service: {exc}")
    except httpx.HTTPStatusError as exc:
        raise UpstreamError(f"Received an invalid response from weather service: {exc.response.text}")


async def fetch_current_weather(latitude: float, longitude: float, client: Optional[httpx.AsyncClient] = None) -> Dict[str, Any]:
    return await _fetch("weather", latitude, longitude, client)


async def fetch_forecast(latitude: float, longitude: float, client: Optional[httpx.AsyncClient] = None) -> Dict[str, Any]:
    return await _fetch("forecast", latitude, longitude, client)


# --- Normalization ---

def summarize_current(payload: Dict[str, Any]) -> WeatherInfo:
    main = payload.get("main") or {}
    rain = payload.get("rain") or {}
    conditions = payload.get("weather") or []

    rainfall = rain.get("1h")
    if rainfall is None:
        rainfall = rain.get("3h", 0)

    return WeatherInfo(
        temperature=main["temp"] if main.get("temp") is not None else 25,
        humidity=main["humidity"] if main.get("humidity") is not None else 60,
        rainfall=rainfall,
        forecast=conditions[0].get("description", "Based on current conditions") if conditions else "Based on current conditions",
    )


def summarize_forecast(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Collapses the 3-hourly forecast list into one entry per day."""
    days: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    for slot in payload.get("list", []):
        stamp = datetime.fromtimestamp(slot["dt"], tz=timezone.utc)
        key = stamp.date().isoformat()
        main = slot.get("main", {})
        conditions = slot.get("weather") or [{}]
        day = days.setdefault(key, {
            "date": key,
            "day": stamp.strftime("%A"),
            "temp_min": main.get("temp_min"),
            "temp_max": main.get("temp_max"),
            "humidity": [],
            "description": conditions[0].get("description"),
        })
        if main.get("temp_min") is not None:
            day["temp_min"] = min(v for v in (day["temp_min"], main["temp_min"]) if v is not None)
        if main.get("temp_max") is not None:
            day["temp_max"] = max(v for v in (day["temp_max"], main["temp_max"]) if v is not None)
        if main.get("humidity") is not None:
            day["humidity"].append(main["humidity"])

    summary = []
    for day in days.values():
        readings = day["humidity"]
        day["humidity"] = round(sum(readings) / len(readings)) if readings else None
        summary.append(day)
    return summary


# --- Cached lookups ---

async def get_current_weather(db: Session, latitude: Optional[float], longitude: Optional[float]) -> WeatherInfo:
    """Cache first, then upstream (stored back into the cache), then fixed defaults."""
    if latitude is None or longitude is None:
        logger.warning("Farmer has no coordinates, using default weather values")
        return WeatherInfo()

    cached = get_cached_weather(db, latitude, longitude, "current")
    if cached is not None:
        return summarize_current(cached)

    try:
        payload = await fetch_current_weather(latitude, longitude)
    except UpstreamError as e:
        logger.warning("Weather fetch failed for (%s, %s), using defaults: %s", latitude, longitude, e.message)
        return WeatherInfo()

    store_weather(db, latitude, longitude, "current", payload)
    return summarize_current(payload)


async def get_forecast(db: Session, latitude: Optional[float], longitude: Optional[float]) -> Optional[List[Dict[str, Any]]]:
    if latitude is None or longitude is None:
        return None

    cached = get_cached_weather(db, latitude, longitude, "forecast")
    if cached is not None:
        return summarize_forecast(cached)

    try:
        payload = await fetch_forecast(latitude, longitude)
    except UpstreamError as e:
        logger.warning("Forecast fetch failed for (%s, %s): %s", latitude, longitude, e.message)
        return None

    store_weather(db, latitude, longitude, "forecast", payload)
    return summarize_forecast(payload)
