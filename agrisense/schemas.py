from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel
from typing import Optional, Dict, Any
from datetime import datetime
from sqlmodel import SQLModel


class CamelModel(BaseModel):
    """Serialized with camelCase keys, which is what the dashboard reads."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- User Schemas ---

class UserBase(SQLModel):
    full_name: str
    mobile_number: str
    email: Optional[EmailStr] = None
    crop_name: Optional[str] = None
    land_size_acres: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_address: Optional[str] = None
    district_id: Optional[int] = None


class UserCreate(UserBase):
    password: str


class UserRead(UserBase):
    id: int
    role: str
    created_at: datetime

    class Config:
        from_attributes = True


class UserUpdate(SQLModel):
    # Only the fields sent in the request are applied
    full_name: Optional[str] = None
    email: Optional[EmailStr] = None
    crop_name: Optional[str] = None
    land_size_acres: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_address: Optional[str] = None
    district_id: Optional[int] = None


# --- Token Schemas ---

class Token(BaseModel):
    access_token: str
    token_type: str


# --- Farm context ---

class Coordinates(CamelModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class FarmerProfile(CamelModel):
    id: int
    name: str
    mobile: Optional[str] = None
    location: str = "Unknown"
    district: Optional[str] = None
    land_size: Optional[float] = None
    coordinates: Coordinates = Coordinates()


class CropInfo(CamelModel):
    type: str = "Unknown"
    planting_date: str = "Unknown"


class Nutrients(CamelModel):
    nitrogen: Optional[float] = None
    phosphorus: Optional[float] = None
    potassium: Optional[float] = None


class SensorSnapshot(CamelModel):
    soil_moisture: Optional[float] = None
    soil_ph: Optional[float] = Field(default=None, alias="soilPH")
    soil_temperature: Optional[float] = None
    humidity: Optional[float] = None
    light_intensity: Optional[float] = None
    soil_conductivity: Optional[float] = None
    nutrients: Nutrients = Nutrients()
    last_updated: Optional[datetime] = None


class WeatherInfo(CamelModel):
    temperature: float = 25
    humidity: float = 60
    rainfall: float = 0
    forecast: str = "unavailable"


class FarmContext(CamelModel):
    farmer: FarmerProfile
    crop: CropInfo = CropInfo()
    device_id: Optional[int] = None
    sensors: Optional[SensorSnapshot] = None
    weather: WeatherInfo = WeatherInfo()

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# --- Analysis ---

class AnalysisResult(CamelModel):
    analysis: str
    action_required: bool
    message: Optional[str] = None
    timestamp: datetime
    usage: Optional[Dict[str, Any]] = None
    processing_time: Optional[str] = None
    provider: str = "openai"
    user_id: Optional[Any] = None


# --- Request bodies ---

class ChatRequest(BaseModel):
    message: Optional[str] = None


class SensorDataIn(CamelModel):
    api_key: str
    moisture_level: float


class DeviceLink(CamelModel):
    api_key: str
    device_name: Optional[str] = None


class TestCallRequest(CamelModel):
    test_number: Optional[str] = None


# --- Admin listing ---

class DeviceSummary(CamelModel):
    id: int
    name: Optional[str] = None
    is_active: bool
    last_seen: Optional[datetime] = None
    api_key: Optional[str] = None
    readings: Optional[Dict[str, Any]] = None


class FarmerListItem(CamelModel):
    id: int
    full_name: str
    mobile_number: str
    crop_name: Optional[str] = None
    district: Optional[str] = None
    land_size_acres: Optional[float] = None
    location_address: Optional[str] = None
    created_at: datetime
    device: Optional[DeviceSummary] = None

