"""
SMS gateway client (BulkSMSBD style HTTP API) and Bangladeshi mobile number helpers.

``send_sms`` never raises: the outcome is reported through ``SmsResult`` so the
caller can persist it on the alert record.
"""

import logging
import re
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from agrisense import config

logger = logging.getLogger(__name__)

# Local form: 01 followed by an operator digit (3-9) and eight more digits
LOCAL_MOBILE_PATTERN = re.compile(r"^01[3-9]\d{8}$")
GATEWAY_SUCCESS_CODE = 202


class SmsResult(BaseModel):
    success: bool
    number: Optional[str] = None
    message_id: Optional[str] = None
    response: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


def local_mobile_number(number: Optional[str]) -> Optional[str]:
    """Normalizes ``+8801XXXXXXXXX``, ``8801XXXXXXXXX`` or ``01XXXXXXXXX`` to ``01XXXXXXXXX``."""
    if not number:
        return None
    digits = re.sub(r"\D", "", str(number))
    if digits.startswith("880") and len(digits) == 13:
        digits = digits[2:]
    if LOCAL_MOBILE_PATTERN.match(digits):
        return digits
    return None


def is_valid_bangladeshi_mobile(number: Optional[str]) -> bool:
    return local_mobile_number(number) is not None


def format_mobile_number(number: str) -> str:
    """Gateway format: ``8801XXXXXXXXX``."""
    local = local_mobile_number(number)
    if local is None:
        raise ValueError(f"Invalid Bangladeshi mobile number: {number}")
    return "88" + local


async def send_sms(number: str, message: str, client: Optional[httpx.AsyncClient] = None) -> SmsResult:
    if client is None:
        async with httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS) as client:
            return await send_sms(number, message, client)

    if not config.SMS_API_KEY:
        logger.warning("SMS_API_KEY is not configured, SMS to %s not sent", number)
        return SmsResult(success=False, number=number, error="SMS gateway is not configured")

    params = {
        "api_key": config.SMS_API_KEY,
        "type": "text",
        "number": number,
        "senderid": config.SMS_SENDER_ID or "",
        "message": message,
    }
    try:
        response = await client.post(config.SMS_API_URL, data=params)
        response.raise_for_status()
        body = response.json()
    except (httpx.RequestError, httpx.HTTPStatusError) as e:
        logger.error("SMS gateway request failed for %s: %s", number, e)
        return SmsResult(success=False, number=number, error=str(e))
    except ValueError as e:
        logger.error("SMS gateway returned a non-JSON body for %s: %s", number, e)
        return SmsResult(success=False, number=number, error="Invalid gateway response")

    success = body.get("response_code") == GATEWAY_SUCCESS_CODE
    if not success:
        logger.error("SMS gateway rejected message to %s: %s", number, body)
    return SmsResult(
        success=success,
        number=number,
        message_id=str(body["message_id"]) if body.get("message_id") is not None else None,
        response=body,
        error=None if success else (body.get("error_message") or "SMS gateway rejected the message"),
    )
