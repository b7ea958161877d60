"""
Builds the farm context (profile, device, sensor snapshot, weather) for one farmer.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlmodel import Session, select, desc

from agrisense.errors import NotFoundError
from agrisense.models import Device, District, MarketPrice, SensorReading, User
from agrisense.schemas import (
    Coordinates, CropInfo, FarmContext, FarmerProfile, Nutrients, SensorSnapshot,
)
from agrisense.weather import get_current_weather

logger = logging.getLogger(__name__)

MARKET_PRICE_LIMIT = 10


def get_farmer(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


def get_active_device(db: Session, user_id: int) -> Optional[Device]:
    return db.exec(
        select(Device)
        .where(Device.user_id == user_id)
        .where(Device.is_active == True)  # noqa: E712
        .order_by(Device.id)
    ).first()


def sensor_snapshot(reading: SensorReading) -> SensorSnapshot:
    return SensorSnapshot(
        soil_moisture=reading.moisture_level,
        soil_ph=reading.ph_level,
        soil_temperature=reading.temperature,
        humidity=reading.humidity,
        light_intensity=reading.light_intensity,
        soil_conductivity=reading.soil_conductivity,
        nutrients=Nutrients(
            nitrogen=reading.nitrogen_level,
            phosphorus=reading.phosphorus_level,
            potassium=reading.potassium_level,
        ),
        last_updated=reading.last_updated,
    )


def farmer_profile(user: User) -> FarmerProfile:
    district = user.district.name if user.district else None
    return FarmerProfile(
        id=user.id,
        name=user.full_name,
        mobile=user.mobile_number,
        location=user.location_address or district or "Unknown",
        district=district,
        land_size=user.land_size_acres,
        coordinates=Coordinates(latitude=user.latitude, longitude=user.longitude),
    )


async def build_farm_context(db: Session, user_id: int, require_sensors: bool = True) -> FarmContext:
    """
    Assembles the farm context for ``user_id``.

    With ``require_sensors`` a missing active device or sensor row raises
    ``NotFoundError``; without it the context simply carries ``sensors=None``.
    May write a ``weather_cache`` row when the cached weather is stale.
    """
    user = get_farmer(db, user_id)

    device = get_active_device(db, user_id)
    if device is None and require_sensors:
        raise NotFoundError("No active device found for this user")

    reading = db.get(SensorReading, device.id) if device else None
    if reading is None and require_sensors:
        raise NotFoundError("No sensor data found for this device")

    weather = await get_current_weather(db, user.latitude, user.longitude)

    return FarmContext(
        farmer=farmer_profile(user),
        crop=CropInfo(type=user.crop_name or "Unknown"),
        device_id=device.id if device else None,
        sensors=sensor_snapshot(reading) if reading else None,
        weather=weather,
    )


def current_sensor_payload(db: Session, user_id: int) -> Optional[Dict[str, Any]]:
    """Raw readings of the farmer's active device, as handed to the voice agent."""
    device = get_active_device(db, user_id)
    if device is None:
        return None
    reading = db.get(SensorReading, device.id)
    if reading is None:
        return None
    return reading.model_dump(mode="json", exclude={"user_id"})


def load_market_prices(db: Session, district_id: Optional[int] = None) -> List[Dict[str, Any]]:
    """
    Latest market prices flattened to one dict per (crop, market) row,
    preferring the farmer's district when it has any.
    """
    statement = select(MarketPrice, District).join(District, isouter=True).order_by(desc(MarketPrice.recorded_at))
    rows = []
    if district_id is not None:
        rows = db.exec(statement.where(MarketPrice.district_id == district_id).limit(MARKET_PRICE_LIMIT)).all()
    if not rows:
        rows = db.exec(statement.limit(MARKET_PRICE_LIMIT)).all()

    return [
        {
            "crop": price.crop_name,
            "market": price.market_name,
            "district": district.name if district else None,
            "min_price": price.min_price,
            "max_price": price.max_price,
            "unit": price.unit,
            "date": price.recorded_at.date().isoformat(),
        }
        for price, district in rows
    ]
