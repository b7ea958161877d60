"""
Alert dispatch: classify, persist, then SMS and (only after a delivered SMS) a voice call.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from agrisense.models import FarmAlert
from agrisense.schemas import AnalysisResult, FarmContext, SensorSnapshot
from agrisense.sms import SmsResult, format_mobile_number, is_valid_bangladeshi_mobile, send_sms
from agrisense.voice import CallResult, create_critical_alert_call

logger = logging.getLogger(__name__)

DROUGHT_MOISTURE = 20
WATERLOGGING_MOISTURE = 90
ACIDIC_PH = 5.5
ALKALINE_PH = 8.5
COLD_TEMPERATURE = 10
HOT_TEMPERATURE = 40

ALERT_TYPES = (
    "critical_drought",
    "critical_waterlogging",
    "ph_too_acidic",
    "ph_too_alkaline",
    "temperature_too_cold",
    "temperature_too_hot",
    "critical_condition",
)


def determine_alert_type(sensors: Optional[SensorSnapshot]) -> str:
    """Moisture, then pH, then temperature; the first rule that matches wins."""
    if sensors is None:
        return "critical_condition"

    moisture = sensors.soil_moisture
    ph = sensors.soil_ph
    temperature = sensors.soil_temperature

    if moisture is not None:
        if moisture < DROUGHT_MOISTURE:
            return "critical_drought"
        if moisture > WATERLOGGING_MOISTURE:
            return "critical_waterlogging"

    if ph is not None:
        if ph < ACIDIC_PH:
            return "ph_too_acidic"
        if ph > ALKALINE_PH:
            return "ph_too_alkaline"

    if temperature is not None:
        if temperature < COLD_TEMPERATURE:
            return "temperature_too_cold"
        if temperature > HOT_TEMPERATURE:
            return "temperature_too_hot"

    return "critical_condition"


def alert_sensor_data(sensors: Optional[SensorSnapshot]) -> Optional[dict]:
    if sensors is None:
        return None
    return {
        "moisture_level": sensors.soil_moisture,
        "ph_level": sensors.soil_ph,
        "temperature": sensors.soil_temperature,
        "humidity": sensors.humidity,
        "timestamp": sensors.last_updated.isoformat() if sensors.last_updated else None,
    }


def store_alert(db: Session, alert: FarmAlert) -> Optional[FarmAlert]:
    """Inserts the alert; on failure logs, rolls back and returns None."""
    try:
        db.add(alert)
        db.commit()
        db.refresh(alert)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to store alert for user %s: %s", alert.user_id, e)
        return None
    logger.info("Alert stored with ID %s (%s)", alert.id, alert.alert_type)
    return alert


def _update_alert(db: Session, alert: FarmAlert, **fields):
    try:
        for key, value in fields.items():
            setattr(alert, key, value)
        db.add(alert)
        db.commit()
        db.refresh(alert)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to update alert %s: %s", alert.id, e)


async def deliver_alert(
    db: Session,
    alert: Optional[FarmAlert],
    context: FarmContext,
    mobile_number: Optional[str],
    message: str,
    alert_type: str,
) -> Tuple[Optional[SmsResult], Optional[CallResult]]:
    """
    SMS first; the voice call is placed only when the SMS went through.
    Outcomes are written onto ``alert`` when there is one.
    """
    if not is_valid_bangladeshi_mobile(mobile_number):
        logger.warning("Invalid mobile number format: %s, skipping SMS and voice", mobile_number)
        return None, None

    number = format_mobile_number(mobile_number)
    logger.info("Sending SMS to %s", number)
    sms_result = await send_sms(number, message)
    if alert is not None:
        _update_alert(
            db, alert,
            is_sms_sent=sms_result.success,
            sms_sent_at=datetime.now(timezone.utc) if sms_result.success else None,
            sms_response=sms_result.model_dump(mode="json"),
        )

    if not sms_result.success:
        logger.error("SMS sending failed: %s", sms_result.error)
        return sms_result, None

    logger.info("SMS sent, initiating voice call for %s alert", alert_type)
    call_result = await create_critical_alert_call(context, number, message, alert_type)
    if alert is not None:
        _update_alert(
            db, alert,
            voice_call_initiated=call_result.success,
            voice_call_id=call_result.call_id,
            voice_call_status=call_result.status,
            voice_call_response=call_result.model_dump(mode="json"),
        )

    if call_result.success:
        logger.info("Voice call initiated, call id %s", call_result.call_id)
    else:
        logger.error("Voice call failed: %s", call_result.error)
    return sms_result, call_result


async def dispatch_alert(
    db: Session,
    context: FarmContext,
    result: AnalysisResult,
    mobile_number: Optional[str],
) -> Optional[FarmAlert]:
    """
    Handles an action-required analysis. Returns the stored alert, or None when
    nothing was required or the insert failed. Never raises.
    """
    if not result.action_required or not result.message:
        return None

    logger.warning("Critical alert for %s: %s", context.farmer.name, result.message)
    alert_type = determine_alert_type(context.sensors)

    alert = store_alert(db, FarmAlert(
        user_id=context.farmer.id,
        device_id=context.device_id,
        alert_type=alert_type,
        message_bangla=result.message,
        message_english=result.analysis,
        sensor_data=alert_sensor_data(context.sensors),
    ))
    if alert is None:
        # TODO: decide whether delivery should be skipped when the alert row could not be stored
        logger.warning("Delivering alert without a stored record, delivery status will not be persisted")

    try:
        await deliver_alert(db, alert, context, mobile_number, result.message, alert_type)
    except Exception:
        logger.exception("Error delivering alert to %s", context.farmer.name)
    return alert
