from fastapi import APIRouter, Depends
from sqlmodel import Session

from agrisense.database import get_db
from agrisense.errors import InputValidationError
from agrisense.models import User
from agrisense.security import get_current_user
from agrisense.weather import get_current_weather, get_forecast

router = APIRouter(prefix="/weather", tags=["Weather"])


def _require_coordinates(user: User):
    if user.latitude is None or user.longitude is None:
        raise InputValidationError("Farm location is not set. Update your profile with latitude and longitude.")


@router.get("/current")
async def current_weather(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    """
    Current conditions at the farmer's coordinates, served from the 30 minute cache when fresh.
    """
    _require_coordinates(current_user)
    weather = await get_current_weather(db, current_user.latitude, current_user.longitude)
    return {"success": True, "data": weather.model_dump()}


@router.get("/forecast")
async def weather_forecast(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    _require_coordinates(current_user)
    forecast = await get_forecast(db, current_user.latitude, current_user.longitude)
    return {"success": forecast is not None, "data": forecast or []}
