import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from agrisense import config, weather
from agrisense.errors import UpstreamError
from agrisense.models import WeatherCache
from agrisense.weather import get_cached_weather, get_current_weather, store_weather, summarize_forecast

LAT, LON = 23.8103, 90.4125

CURRENT_PAYLOAD = {
    "main": {"temp": 31.2, "humidity": 78},
    "rain": {"1h": 2.5},
    "weather": [{"description": "light rain"}],
}


def test_fresh_cache_entry_is_a_hit(session):
    store_weather(session, LAT, LON, "current", CURRENT_PAYLOAD)
    assert get_cached_weather(session, 23.81031, 90.41249, "current") == CURRENT_PAYLOAD
    assert get_cached_weather(session, LAT, LON, "forecast") is None


def test_stale_entry_triggers_fresh_fetch(session, monkeypatch):
    session.add(WeatherCache(
        type="current", latitude=LAT, longitude=LON,
        data={"main": {"temp": 10, "humidity": 10}},
        created_at=datetime.now(timezone.utc) - timedelta(minutes=40),
    ))
    session.commit()
    fetched = []

    async def fake_fetch(latitude, longitude, client=None):
        fetched.append((latitude, longitude))
        return CURRENT_PAYLOAD

    monkeypatch.setattr(weather, "fetch_current_weather", fake_fetch)

    info = asyncio.run(get_current_weather(session, LAT, LON))

    assert fetched == [(LAT, LON)]
    assert info.temperature == 31.2
    assert info.rainfall == 2.5
    assert info.forecast == "light rain"
    # The fresh payload is cached, so a second lookup does not fetch again
    asyncio.run(get_current_weather(session, LAT, LON))
    assert len(fetched) == 1


def test_fetch_failure_falls_back_to_defaults(session, monkeypatch):
    async def failing_fetch(latitude, longitude, client=None):
        raise UpstreamError("weather down")

    monkeypatch.setattr(weather, "fetch_current_weather", failing_fetch)

    info = asyncio.run(get_current_weather(session, LAT, LON))

    assert (info.temperature, info.humidity, info.rainfall, info.forecast) == (25, 60, 0, "unavailable")


def test_cache_write_failure_still_returns_fresh_weather(session, monkeypatch):
    async def fake_fetch(latitude, longitude, client=None):
        return CURRENT_PAYLOAD

    def failing_commit():
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(weather, "fetch_current_weather", fake_fetch)
    monkeypatch.setattr(session, "commit", failing_commit)

    assert store_weather(session, LAT, LON, "current", CURRENT_PAYLOAD) is None

    info = asyncio.run(get_current_weather(session, LAT, LON))

    assert info.temperature == 31.2
    assert info.forecast == "light rain"
    monkeypatch.undo()
    assert session.exec(select(WeatherCache)).all() == []


def test_no_coordinates_uses_defaults(session):
    info = asyncio.run(get_current_weather(session, None, LON))
    assert info.temperature == 25


def test_fetch_without_api_key_raises(monkeypatch):
    monkeypatch.setattr(config, "WEATHER_API_KEY", None)

    def handler(request):
        raise AssertionError("weather service must not be called")

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await weather.fetch_current_weather(LAT, LON, client=client)

    with pytest.raises(UpstreamError):
        asyncio.run(run())


def test_fetch_sends_metric_query(monkeypatch):
    monkeypatch.setattr(config, "WEATHER_API_KEY", "owm-key")
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json=CURRENT_PAYLOAD)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await weather.fetch_current_weather(LAT, LON, client=client)

    assert asyncio.run(run()) == CURRENT_PAYLOAD
    assert seen["path"].endswith("/weather")
    assert seen["params"]["units"] == "metric"
    assert seen["params"]["appid"] == "owm-key"


def test_summarize_forecast_groups_by_day():
    day_one = int(datetime(2024, 6, 1, 3, tzinfo=timezone.utc).timestamp())
    day_two = int(datetime(2024, 6, 2, 3, tzinfo=timezone.utc).timestamp())
    payload = {"list": [
        {"dt": day_one, "main": {"temp_min": 26, "temp_max": 30, "humidity": 70}, "weather": [{"description": "clouds"}]},
        {"dt": day_one + 10800, "main": {"temp_min": 24, "temp_max": 33, "humidity": 80}, "weather": [{"description": "rain"}]},
        {"dt": day_two, "main": {"temp_min": 25, "temp_max": 29, "humidity": 90}, "weather": [{"description": "rain"}]},
    ]}

    summary = summarize_forecast(payload)

    assert [day["date"] for day in summary] == ["2024-06-01", "2024-06-02"]
    assert summary[0]["temp_min"] == 24
    assert summary[0]["temp_max"] == 33
    assert summary[0]["humidity"] == 75
    assert summary[0]["description"] == "clouds"
