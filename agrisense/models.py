from sqlmodel import Field, Relationship, SQLModel, JSON
from sqlalchemy import Column
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- District Model ---
class District(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)

    users: List["User"] = Relationship(back_populates="district")


# --- User Model (farmers and admins) ---
class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    full_name: str
    # Stored in local 01XXXXXXXXX form
    mobile_number: str = Field(unique=True, index=True)
    email: Optional[str] = None
    hashed_password: str
    role: str = Field(default="farmer", index=True)
    crop_name: Optional[str] = None
    land_size_acres: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_address: Optional[str] = None
    district_id: Optional[int] = Field(default=None, foreign_key="district.id")
    created_at: datetime = Field(default_factory=utcnow)

    district: Optional[District] = Relationship(back_populates="users")
    devices: List["Device"] = Relationship(back_populates="owner")


# --- Device Model ---
class Device(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    device_name: Optional[str] = None
    device_api_key: str = Field(unique=True, index=True)
    is_active: bool = Field(default=False)
    last_seen: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    owner: Optional[User] = Relationship(back_populates="devices")


# --- Current sensor snapshot, one row per device ---
class SensorReading(SQLModel, table=True):
    __tablename__ = "current_sensor_data"

    device_id: int = Field(foreign_key="device.id", primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    moisture_level: Optional[float] = None
    ph_level: Optional[float] = None
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    light_intensity: Optional[float] = None
    soil_conductivity: Optional[float] = None
    nitrogen_level: Optional[float] = None
    phosphorus_level: Optional[float] = None
    potassium_level: Optional[float] = None
    last_updated: datetime = Field(default_factory=utcnow)


# --- Alert records ---
class FarmAlert(SQLModel, table=True):
    __tablename__ = "farm_alerts"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    device_id: Optional[int] = Field(default=None, foreign_key="device.id")
    alert_type: str
    severity: str = Field(default="high")
    message_bangla: Optional[str] = None
    message_english: Optional[str] = None
    sensor_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    is_sms_sent: bool = Field(default=False)
    sms_sent_at: Optional[datetime] = None
    sms_response: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    voice_call_initiated: bool = Field(default=False)
    voice_call_id: Optional[str] = None
    voice_call_status: Optional[str] = None
    voice_call_response: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=utcnow)


# --- Daily analysis log ---
class FarmAnalysis(SQLModel, table=True):
    __tablename__ = "farm_analyses"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    device_id: Optional[int] = Field(default=None, foreign_key="device.id")
    analysis_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    ai_analysis: Optional[str] = None
    action_required: bool = Field(default=False)
    sms_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# --- Weather cache, keyed by rounded coordinates and type ---
class WeatherCache(SQLModel, table=True):
    __tablename__ = "weather_cache"

    id: Optional[int] = Field(default=None, primary_key=True)
    type: str = Field(index=True)  # current | forecast
    latitude: float = Field(index=True)
    longitude: float = Field(index=True)
    data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, index=True)


# --- Market prices used by the chat assistant ---
class MarketPrice(SQLModel, table=True):
    __tablename__ = "market_prices"

    id: Optional[int] = Field(default=None, primary_key=True)
    crop_name: str = Field(index=True)
    market_name: str
    district_id: Optional[int] = Field(default=None, foreign_key="district.id")
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    unit: str = Field(default="kg")
    recorded_at: datetime = Field(default_factory=utcnow)
