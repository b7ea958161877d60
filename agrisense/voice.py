"""
Retell AI voice integration: outbound critical-alert calls and the
conversation webhook the voice agent calls back during a call.
"""

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel
from sqlmodel import Session, select

from agrisense import config
from agrisense.aggregator import build_farm_context, load_market_prices
from agrisense.analysis import chat_response
from agrisense.models import User
from agrisense.schemas import FarmContext
from agrisense.sms import local_mobile_number

logger = logging.getLogger(__name__)

GREETING = (
    "আসসালামু আলাইকুম! আমি AgriSense AI। আপনার খামার, মাটি বা আবহাওয়া নিয়ে যেকোনো প্রশ্ন করুন।"
)
UNKNOWN_CALLER = (
    "I could not find your farm records. Please call from your registered mobile number."
)


class CallResult(BaseModel):
    success: bool
    call_id: Optional[str] = None
    status: Optional[str] = None
    response: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


def _text(value: Any) -> str:
    return "unknown" if value is None else str(value)


def call_variables(context: FarmContext, alert_message: str, alert_type: str) -> Dict[str, str]:
    """Dynamic variables for the voice agent prompt. Retell only accepts strings."""
    sensors = context.sensors
    return {
        "farmer_name": context.farmer.name,
        "location": context.farmer.location,
        "land_size": _text(context.farmer.land_size),
        "crop_type": context.crop.type,
        "soil_moisture": _text(sensors.soil_moisture if sensors else None),
        "soil_ph": _text(sensors.soil_ph if sensors else None),
        "soil_temperature": _text(sensors.soil_temperature if sensors else None),
        "humidity": _text(sensors.humidity if sensors else None),
        "nitrogen": _text(sensors.nutrients.nitrogen if sensors else None),
        "phosphorus": _text(sensors.nutrients.phosphorus if sensors else None),
        "potassium": _text(sensors.nutrients.potassium if sensors else None),
        "weather_temperature": _text(context.weather.temperature),
        "weather_humidity": _text(context.weather.humidity),
        "rainfall": _text(context.weather.rainfall),
        "alert_type": alert_type,
        "alert_message": alert_message,
        "device_id": _text(context.device_id),
    }


async def create_critical_alert_call(
    context: FarmContext,
    mobile_number: str,
    alert_message: str,
    alert_type: str = "critical_condition",
    client: Optional[httpx.AsyncClient] = None,
) -> CallResult:
    """Places an outbound call. Never raises; failures come back in ``CallResult``."""
    if client is None:
        async with httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS) as client:
            return await create_critical_alert_call(context, mobile_number, alert_message, alert_type, client)

    if not (config.RETELL_API_KEY and config.RETELL_FROM_NUMBER):
        logger.warning("Retell is not configured, voice call to %s skipped", mobile_number)
        return CallResult(success=False, error="Voice service is not configured")

    local = local_mobile_number(mobile_number)
    if local is None:
        return CallResult(success=False, error=f"Invalid mobile number: {mobile_number}")

    body: Dict[str, Any] = {
        "from_number": config.RETELL_FROM_NUMBER,
        "to_number": "+88" + local,
        "metadata": {
            "farmer_id": context.farmer.id,
            "farmer_mobile": local,
            "device_id": context.device_id,
            "alert_type": alert_type,
        },
        "retell_llm_dynamic_variables": call_variables(context, alert_message, alert_type),
    }
    if config.RETELL_AGENT_ID:
        body["override_agent_id"] = config.RETELL_AGENT_ID

    try:
        response = await client.post(
            f"{config.RETELL_API_URL}/v2/create-phone-call",
            json=body,
            headers={"Authorization": f"Bearer {config.RETELL_API_KEY}"},
        )
        response.raise_for_status()
        data = response.json()
    except httpx.HTTPStatusError as e:
        logger.error("Retell rejected call to %s: %s", local, e.response.text)
        return CallResult(success=False, error=e.response.text, status="failed")
    except (httpx.RequestError, ValueError) as e:
        logger.error("Retell call request to %s failed: %s", local, e)
        return CallResult(success=False, error=str(e), status="failed")

    return CallResult(
        success=True,
        call_id=data.get("call_id"),
        status=data.get("call_status", "registered"),
        response=data,
    )


# --- Conversation webhook ---

def find_farmer_by_phone(db: Session, phone_number: Optional[str]) -> Optional[User]:
    local = local_mobile_number(phone_number)
    if local is None:
        return None
    return db.exec(select(User).where(User.mobile_number == local)).first()


def _last_user_utterance(payload: Dict[str, Any]) -> Optional[str]:
    for turn in reversed(payload.get("transcript") or []):
        if isinstance(turn, dict) and turn.get("role") == "user" and (turn.get("content") or "").strip():
            return turn["content"].strip()
    question = payload.get("message") or payload.get("query")
    return question.strip() if isinstance(question, str) and question.strip() else None


def _caller_numbers(payload: Dict[str, Any]):
    call = payload.get("call") or {}
    metadata = call.get("metadata") or {}
    # Outbound alert calls carry the farmer in metadata / to_number, inbound calls in from_number
    yield metadata.get("farmer_mobile")
    yield call.get("to_number")
    yield call.get("from_number")
    yield payload.get("phone_number")


async def handle_conversation_webhook(db: Session, payload: Dict[str, Any]) -> Dict[str, Any]:
    if payload.get("interaction_type") == "update_only":
        return {"response": "", "continue_conversation": True}

    question = _last_user_utterance(payload)
    if not question:
        return {"response": GREETING, "continue_conversation": True}

    farmer = None
    for number in _caller_numbers(payload):
        farmer = find_farmer_by_phone(db, number)
        if farmer:
            break

    if farmer is None:
        logger.warning("Voice webhook: no farmer matches the call numbers")
        return {"response": UNKNOWN_CALLER, "continue_conversation": True}

    context = await build_farm_context(db, farmer.id, require_sensors=False)
    answer = await chat_response(context, question, load_market_prices(db, farmer.district_id))
    return {"response": answer, "continue_conversation": True}
