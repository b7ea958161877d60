import logging
import random
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlmodel import Session, select, desc

from agrisense.database import get_db
from agrisense.models import Device, SensorReading, User
from agrisense.schemas import DeviceLink, SensorDataIn
from agrisense.security import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/devices", tags=["Devices"])

# The field device only measures moisture; the rest is synthesized within these ranges
SYNTHETIC_RANGES = {
    "ph_level": (6.0, 8.5),
    "temperature": (18, 35),
    "humidity": (40, 90),
    "light_intensity": (100, 1000),
    "soil_conductivity": (100, 500),
    "nitrogen_level": (20, 80),
    "phosphorus_level": (10, 50),
    "potassium_level": (20, 70),
}


def synthesize_readings(rng: Optional[random.Random] = None) -> Dict[str, float]:
    rng = rng or random
    return {field: round(rng.uniform(low, high), 2) for field, (low, high) in SYNTHETIC_RANGES.items()}


@router.post("/sensor-data")
def receive_sensor_data(payload: SensorDataIn, db: Session = Depends(get_db)):
    """
    Device endpoint: stores a moisture reading, overwriting the device's current snapshot.
    """
    device = db.exec(
        select(Device)
        .where(Device.device_api_key == payload.api_key)
        .where(Device.is_active == True)  # noqa: E712
    ).first()
    if not device:
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"error": "Invalid API key or inactive device"})
    if not device.user_id:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Device not linked to any user"})

    now = datetime.now(timezone.utc)
    reading = db.merge(SensorReading(
        device_id=device.id,
        user_id=device.user_id,
        moisture_level=payload.moisture_level,
        last_updated=now,
        **synthesize_readings(),
    ))
    device.last_seen = now
    db.add(device)
    db.commit()
    db.refresh(reading)

    return {
        "message": "Sensor data updated successfully",
        "deviceId": device.id,
        "lastUpdated": reading.last_updated,
    }


@router.post("/link")
def link_device(link: DeviceLink, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    device = db.exec(select(Device).where(Device.device_api_key == link.api_key)).first()
    if not device:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invalid API key. Device not found.")
    if device.user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Device is already linked to another account.")

    device.user_id = current_user.id
    device.device_name = link.device_name or device.device_name
    device.is_active = True
    device.updated_at = datetime.now(timezone.utc)
    db.add(device)
    db.commit()
    db.refresh(device)
    logger.info("Device %s linked to user %s", device.id, current_user.id)

    return {
        "message": "Device linked successfully",
        "device": {
            "id": device.id,
            "apiKey": device.device_api_key,
            "name": device.device_name,
            "status": "linked",
        },
    }


@router.get("/")
def get_user_devices(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    devices = db.exec(select(Device).where(Device.user_id == current_user.id).order_by(Device.id)).all()
    return {"devices": devices}


@router.delete("/{device_id}")
def unlink_device(device_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    device = db.get(Device, device_id)
    if not device or device.user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found or not owned by user")

    device.user_id = None
    device.is_active = False
    device.updated_at = datetime.now(timezone.utc)
    db.add(device)
    db.commit()
    return {"message": "Device unlinked successfully"}


@router.get("/readings")
def get_sensor_data(
    device_id: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    statement = (
        select(SensorReading)
        .where(SensorReading.user_id == current_user.id)
        .order_by(desc(SensorReading.last_updated))
    )
    if device_id is not None:
        statement = statement.where(SensorReading.device_id == device_id)
    return {"sensorData": db.exec(statement).all()}
