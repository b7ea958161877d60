import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, status
from fastapi.responses import JSONResponse
from sqlmodel import Session

from agrisense.aggregator import current_sensor_payload
from agrisense.database import get_db
from agrisense.errors import InputValidationError
from agrisense.models import User
from agrisense.schemas import CropInfo, FarmContext, FarmerProfile, Nutrients, SensorSnapshot, TestCallRequest, WeatherInfo
from agrisense.security import get_current_user
from agrisense.voice import create_critical_alert_call, find_farmer_by_phone, handle_conversation_webhook
from agrisense.weather import get_current_weather, get_forecast

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/voice", tags=["Voice"])

PHONE_KEYS = ("phone_number", "phoneNumber", "number", "from_number")


async def farmer_bundle(db: Session, farmer: User) -> Dict[str, Any]:
    """Sanitized farmer, current readings, weather and a slim forecast for the voice agent."""
    weather = await get_current_weather(db, farmer.latitude, farmer.longitude)
    forecast = await get_forecast(db, farmer.latitude, farmer.longitude)
    return {
        "success": True,
        "farmer": {
            "full_name": farmer.full_name,
            "mobile_number": farmer.mobile_number,
            "crop_name": farmer.crop_name,
            "land_size_acres": farmer.land_size_acres,
            "location_address": farmer.location_address,
        },
        "sensors": current_sensor_payload(db, farmer.id),
        "weather": weather.model_dump(),
        "forecast": forecast,
    }


@router.post("/retell-webhook")
async def retell_webhook(payload: Dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    logger.info("Retell webhook: interaction=%s", payload.get("interaction_type"))
    try:
        return await handle_conversation_webhook(db, payload)
    except Exception:
        logger.exception("Retell webhook error")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "response": "I'm experiencing technical difficulties, but I'm here to help with your farming questions.",
                "continue_conversation": True,
            },
        )


@router.post("/get-farmer-data")
async def get_farmer_data(payload: Dict[str, Any] = Body(default={}), db: Session = Depends(get_db)):
    """
    Voice agent function call: farmer, sensor and weather bundle by phone number.
    """
    phone_number = next((payload[key] for key in PHONE_KEYS if payload.get(key)), None)
    if not phone_number:
        return {"success": False, "message": "No phone number provided"}

    farmer = find_farmer_by_phone(db, phone_number)
    if not farmer:
        return {"success": False, "message": "Farmer not found in database"}

    try:
        return await farmer_bundle(db, farmer)
    except Exception:
        logger.exception("Get combined farm data error")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": "Error retrieving combined farm data"},
        )


@router.post("/get-farmer-data-jwt")
async def get_farmer_data_jwt(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    try:
        return await farmer_bundle(db, current_user)
    except Exception:
        logger.exception("Get combined farm data (JWT) error")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": "Error retrieving combined farm data"},
        )


@router.post("/test-call")
async def test_call(request: TestCallRequest, current_user: User = Depends(get_current_user)):
    """Places a voice call with mock critical-drought data, for development."""
    if not request.test_number:
        raise InputValidationError("Test number is required")

    mock_context = FarmContext(
        farmer=FarmerProfile(id=current_user.id, name="Test Farmer", mobile=request.test_number,
                             location="Dhaka", land_size=2.5),
        crop=CropInfo(type="Rice"),
        device_id=None,
        sensors=SensorSnapshot(
            soil_moisture=15, soil_ph=6.5, soil_temperature=25, humidity=60,
            light_intensity=400, soil_conductivity=300,
            nutrients=Nutrients(nitrogen=40, phosphorus=25, potassium=35),
        ),
        weather=WeatherInfo(temperature=28, humidity=70, rainfall=0),
    )
    result = await create_critical_alert_call(
        mock_context, request.test_number, "মাটিতে পানির অভাব। দ্রুত সেচ দিন।", "critical_drought",
    )
    return {"success": True, "message": "Test voice call initiated", "callResult": result.model_dump()}
