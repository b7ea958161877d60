import asyncio
import json
from urllib.parse import parse_qs

import httpx
import pytest

from agrisense import config
from agrisense.schemas import FarmContext, FarmerProfile, SensorSnapshot
from agrisense.sms import format_mobile_number, is_valid_bangladeshi_mobile, local_mobile_number, send_sms
from agrisense.voice import create_critical_alert_call


@pytest.mark.parametrize("number, expected", [
    ("01712345678", "01712345678"),
    ("8801712345678", "01712345678"),
    ("+880 1712-345678", "01712345678"),
    ("01212345678", None),
    ("0171234567", None),
    ("", None),
    (None, None),
])
def test_local_mobile_number(number, expected):
    assert local_mobile_number(number) == expected


def test_format_mobile_number():
    assert format_mobile_number("01812345678") == "8801812345678"
    assert is_valid_bangladeshi_mobile("+8801812345678")
    with pytest.raises(ValueError):
        format_mobile_number("12345")


def test_send_sms_success(monkeypatch):
    monkeypatch.setattr(config, "SMS_API_KEY", "sms-key")
    monkeypatch.setattr(config, "SMS_SENDER_ID", "AgriSense")
    seen = {}

    def handler(request):
        seen.update({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
        return httpx.Response(200, json={"response_code": 202, "message_id": 991})

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await send_sms("8801712345678", "hello", client=client)

    result = asyncio.run(run())

    assert result.success is True
    assert result.message_id == "991"
    assert seen["number"] == "8801712345678"
    assert seen["senderid"] == "AgriSense"
    assert seen["type"] == "text"


def test_send_sms_rejected_by_gateway(monkeypatch):
    monkeypatch.setattr(config, "SMS_API_KEY", "sms-key")

    def handler(request):
        return httpx.Response(200, json={"response_code": 1002, "error_message": "Sender Id not valid"})

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await send_sms("8801712345678", "hello", client=client)

    result = asyncio.run(run())

    assert result.success is False
    assert result.error == "Sender Id not valid"


def test_send_sms_without_key_does_not_call_gateway(monkeypatch):
    monkeypatch.setattr(config, "SMS_API_KEY", None)

    def handler(request):
        raise AssertionError("gateway must not be called")

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await send_sms("8801712345678", "hello", client=client)

    assert asyncio.run(run()).success is False


def test_send_sms_transport_error(monkeypatch):
    monkeypatch.setattr(config, "SMS_API_KEY", "sms-key")

    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await send_sms("8801712345678", "hello", client=client)

    result = asyncio.run(run())
    assert result.success is False
    assert "refused" in result.error


def voice_context():
    return FarmContext(
        farmer=FarmerProfile(id=7, name="Karim", mobile="01712345678", land_size=1.5),
        device_id=3,
        sensors=SensorSnapshot(soil_moisture=12.5, soil_ph=6.5),
    )


def test_voice_call_request(monkeypatch):
    monkeypatch.setattr(config, "RETELL_API_KEY", "retell-key")
    monkeypatch.setattr(config, "RETELL_FROM_NUMBER", "+14155550100")
    monkeypatch.setattr(config, "RETELL_AGENT_ID", "agent_1")
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"call_id": "call_abc", "call_status": "registered"})

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await create_critical_alert_call(
                voice_context(), "8801712345678", "সেচ দিন", "critical_drought", client=client)

    result = asyncio.run(run())

    assert result.success is True
    assert result.call_id == "call_abc"
    assert seen["url"].endswith("/v2/create-phone-call")
    assert seen["auth"] == "Bearer retell-key"
    assert seen["body"]["to_number"] == "+8801712345678"
    assert seen["body"]["override_agent_id"] == "agent_1"
    variables = seen["body"]["retell_llm_dynamic_variables"]
    assert variables["soil_moisture"] == "12.5"
    assert variables["humidity"] == "unknown"
    assert all(isinstance(value, str) for value in variables.values())


def test_voice_call_failure_is_reported(monkeypatch):
    monkeypatch.setattr(config, "RETELL_API_KEY", "retell-key")
    monkeypatch.setattr(config, "RETELL_FROM_NUMBER", "+14155550100")

    def handler(request):
        return httpx.Response(402, text="insufficient balance")

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await create_critical_alert_call(voice_context(), "01712345678", "msg", client=client)

    result = asyncio.run(run())
    assert result.success is False
    assert result.status == "failed"
    assert "insufficient balance" in result.error
