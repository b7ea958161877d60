from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import select

from agrisense import alerts
from agrisense.models import Device, FarmAlert, SensorReading
from agrisense.routers import ai as ai_router
from agrisense.routers import analytics
from agrisense.schemas import AnalysisResult
from agrisense.security import get_password_hash, verify_password
from agrisense.sms import SmsResult
from agrisense.voice import CallResult

from conftest import PASSWORD, auth_headers, make_user


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["message"] == "AgriSense backend is running"


# --- Auth ---

def test_register_and_login(client):
    response = client.post("/api/auth/register", json={
        "full_name": "Jamal Hossain",
        "mobile_number": "+8801712000111",
        "password": "secret123",
        "crop_name": "Jute",
    })
    assert response.status_code == 201
    assert response.json()["mobile_number"] == "01712000111"

    duplicate = client.post("/api/auth/register", json={
        "full_name": "Someone Else", "mobile_number": "01712000111", "password": "x"})
    assert duplicate.status_code == 409

    login = client.post("/api/auth/login", data={"username": "01712000111", "password": "secret123"})
    assert login.status_code == 200
    token = login.json()["access_token"]

    me = client.get("/api/users/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["full_name"] == "Jamal Hossain"


def test_register_rejects_foreign_number(client):
    response = client.post("/api/auth/register", json={
        "full_name": "X", "mobile_number": "+14155550100", "password": "secret123"})
    assert response.status_code == 400


def test_login_wrong_password(client, farmer):
    response = client.post("/api/auth/login", data={"username": farmer.mobile_number, "password": "nope"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Incorrect mobile number or password"

    ok = client.post("/api/auth/login", data={"username": farmer.mobile_number, "password": PASSWORD})
    assert ok.status_code == 200


def test_long_bangla_password_is_cut_by_bytes():
    password = "আমার" * 30
    hashed = get_password_hash(password)

    assert verify_password(password, hashed)
    # Only the first 72 UTF-8 bytes (24 Bangla characters) count
    assert verify_password(password[:24] + "x", hashed)
    assert not verify_password(password[:23], hashed)


# --- Analytics ---

@pytest.fixture
def delivered(monkeypatch):
    sent = {"sms": [], "voice": []}

    async def fake_send_sms(number, message, client=None):
        sent["sms"].append(number)
        return SmsResult(success=True, number=number, message_id="1")

    async def fake_call(context, mobile_number, message, alert_type="critical_condition", client=None):
        sent["voice"].append(alert_type)
        return CallResult(success=True, call_id="call_9", status="registered")

    monkeypatch.setattr(alerts, "send_sms", fake_send_sms)
    monkeypatch.setattr(alerts, "create_critical_alert_call", fake_call)
    return sent


def stub_analysis(monkeypatch, action_required, message="মাটি শুকনো, সেচ দিন।"):
    async def fake_analyze(context, user_id):
        return AnalysisResult(
            analysis="Moisture is critically low.",
            action_required=action_required,
            message=message if action_required else None,
            timestamp=datetime.now(timezone.utc),
            user_id=user_id,
        )

    monkeypatch.setattr(analytics, "analyze_data", fake_analyze)


def test_analyze_creates_alert_and_calls(client, session, farmer, reading, delivered, monkeypatch):
    stub_analysis(monkeypatch, action_required=True)

    response = client.get("/api/analytics/analyze", headers=auth_headers(farmer))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["analysis"]["actionRequired"] is True
    assert body["data"]["alert"]["alert_type"] == "critical_drought"
    assert delivered["sms"] == ["8801712345678"]
    assert delivered["voice"] == ["critical_drought"]

    stored = session.exec(select(FarmAlert)).one()
    assert stored.is_sms_sent is True
    assert stored.voice_call_id == "call_9"


def test_analyze_without_action_sends_nothing(client, session, farmer, reading, delivered, monkeypatch):
    stub_analysis(monkeypatch, action_required=False)

    response = client.get("/api/analytics/analyze", headers=auth_headers(farmer))

    assert response.status_code == 200
    assert response.json()["data"]["alert"] is None
    assert delivered == {"sms": [], "voice": []}
    assert session.exec(select(FarmAlert)).all() == []


def test_analyze_without_active_device(client, session, farmer, delivered, monkeypatch):
    stub_analysis(monkeypatch, action_required=True)

    response = client.get("/api/analytics/analyze", headers=auth_headers(farmer))

    assert response.status_code == 404
    assert response.json() == {"error": "No active device found for this user"}
    assert session.exec(select(FarmAlert)).all() == []
    assert delivered["sms"] == []


def test_analyze_without_sensor_row(client, farmer, device, monkeypatch):
    stub_analysis(monkeypatch, action_required=True)

    response = client.get("/api/analytics/analyze", headers=auth_headers(farmer))

    assert response.status_code == 404
    assert response.json()["error"] == "No sensor data found for this device"


def test_analyze_unexpected_error_is_500(client, farmer, reading, monkeypatch):
    async def broken(context, user_id):
        raise RuntimeError("model exploded")

    monkeypatch.setattr(analytics, "analyze_data", broken)

    response = client.get("/api/analytics/analyze", headers=auth_headers(farmer))

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to analyze farm data", "message": "model exploded"}


def test_analyze_requires_login(client):
    assert client.get("/api/analytics/analyze").status_code == 401


@pytest.mark.parametrize("payload", [{}, {"message": ""}, {"message": "   "}])
def test_blank_chat_rejected_before_aggregation(client, farmer, monkeypatch, payload):
    async def must_not_run(*args, **kwargs):
        raise AssertionError("aggregation must not run for a blank message")

    monkeypatch.setattr(analytics, "build_farm_context", must_not_run)

    response = client.post("/api/analytics/chat", json=payload, headers=auth_headers(farmer))

    assert response.status_code == 400
    assert response.json() == {"error": "Message is required"}


def test_chat_answers_without_device(client, farmer, monkeypatch):
    seen = {}

    async def fake_chat(context, message, market_prices=None, client=None):
        seen["sensors"] = context.sensors
        return "ধান ক্ষেতে আজ সেচ লাগবে না।"

    monkeypatch.setattr(analytics, "chat_response", fake_chat)

    response = client.post("/api/analytics/chat", json={"message": "সেচ লাগবে?"}, headers=auth_headers(farmer))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["response"] == "ধান ক্ষেতে আজ সেচ লাগবে না।"
    assert data["farmContext"]["farmer"]["name"] == "Rahim Uddin"
    assert seen["sensors"] is None


# --- Devices ---

def test_sensor_data_upserts_snapshot(client, session, farmer, device):
    first = client.post("/api/devices/sensor-data", json={"apiKey": "dev-key-1", "moistureLevel": 42.5})
    second = client.post("/api/devices/sensor-data", json={"apiKey": "dev-key-1", "moistureLevel": 12})

    assert first.status_code == 200
    assert second.json()["deviceId"] == device.id
    rows = session.exec(select(SensorReading)).all()
    assert len(rows) == 1
    assert rows[0].moisture_level == 12
    assert 6.0 <= rows[0].ph_level <= 8.5
    assert 18 <= rows[0].temperature <= 35
    session.refresh(device)
    assert device.last_seen is not None


def test_sensor_data_rejects_unknown_key(client):
    response = client.post("/api/devices/sensor-data", json={"apiKey": "nope", "moistureLevel": 30})
    assert response.status_code == 401
    assert response.json() == {"error": "Invalid API key or inactive device"}


def test_sensor_data_rejects_unlinked_device(client, session):
    session.add(Device(device_api_key="orphan", is_active=True))
    session.commit()

    response = client.post("/api/devices/sensor-data", json={"apiKey": "orphan", "moistureLevel": 30})

    assert response.status_code == 400


def test_link_and_unlink_device(client, session, farmer):
    session.add(Device(device_api_key="fresh-key"))
    session.commit()

    linked = client.post("/api/devices/link", json={"apiKey": "fresh-key", "deviceName": "North field"},
                         headers=auth_headers(farmer))
    assert linked.status_code == 200
    device_id = linked.json()["device"]["id"]

    again = client.post("/api/devices/link", json={"apiKey": "fresh-key"}, headers=auth_headers(farmer))
    assert again.status_code == 400

    listed = client.get("/api/devices/", headers=auth_headers(farmer)).json()["devices"]
    assert [d["device_name"] for d in listed] == ["North field"]

    removed = client.delete(f"/api/devices/{device_id}", headers=auth_headers(farmer))
    assert removed.status_code == 200
    assert client.get("/api/devices/", headers=auth_headers(farmer)).json()["devices"] == []


def test_link_unknown_key(client, farmer):
    response = client.post("/api/devices/link", json={"apiKey": "missing"}, headers=auth_headers(farmer))
    assert response.status_code == 404


# --- Admin ---

def test_admin_farmers_pagination_and_filters(client, session, admin, district):
    base = datetime.now(timezone.utc)
    for i in range(14):
        user = make_user(
            session,
            mobile_number=f"0171100{i:04d}",
            full_name=f"Farmer {i:02d}",
            crop_name="Rice" if i % 2 else "Wheat",
            district_id=district.id if i < 3 else None,
            created_at=base + timedelta(seconds=i),
        )
        if i == 13:
            session.add(Device(user_id=user.id, device_api_key="k13", is_active=True))
            session.commit()

    first = client.get("/api/admin/farmers", headers=auth_headers(admin)).json()["data"]
    assert first["pagination"] == {"page": 1, "limit": 12, "total": 14, "pages": 2}
    assert first["items"][0]["fullName"] == "Farmer 13"
    assert first["items"][0]["device"]["apiKey"] == "k13"
    assert first["items"][1]["device"] is None

    second = client.get("/api/admin/farmers?page=2", headers=auth_headers(admin)).json()["data"]
    assert [item["fullName"] for item in second["items"]] == ["Farmer 01", "Farmer 00"]

    wheat = client.get("/api/admin/farmers?crop=whe", headers=auth_headers(admin)).json()["data"]
    assert wheat["pagination"]["total"] == 7

    dhaka = client.get("/api/admin/farmers?district=dha", headers=auth_headers(admin)).json()["data"]
    assert dhaka["pagination"]["total"] == 3
    assert {item["district"] for item in dhaka["items"]} == {"Dhaka"}


def test_admin_farmers_forbidden_for_farmers(client, farmer):
    assert client.get("/api/admin/farmers", headers=auth_headers(farmer)).status_code == 403


# --- AI callbacks ---

def test_analysis_callback_accepts_wrapped_shape(client, monkeypatch):
    monkeypatch.setattr(ai_router, "last_callbacks", {"analysis": None, "chatbot": None})

    response = client.post("/api/ai/callback/analysis", json={
        "id": "run", "name": "analysis",
        "result": {"Output": {"analysis": "dry", "actionRequired": True, "message": "সেচ দিন", "userId": 3}},
    })

    assert response.status_code == 200
    assert response.json()["data"]["actionRequired"] is True
    last = client.get("/api/ai/callbacks/last").json()["data"]
    assert last["analysis"]["payload"]["id"] == "run"


def test_analysis_callback_rejects_bad_payload(client):
    response = client.post("/api/ai/callback/analysis", json={"analysis": "missing flag"})
    assert response.status_code == 400


def test_chatbot_callback_requires_response_text(client):
    assert client.post("/api/ai/callback/chatbot", json={"response": ""}).status_code == 400
    assert client.post("/api/ai/callback/chatbot", json={"response": "ঠিক আছে"}).status_code == 200


def test_last_callbacks_guarded_by_internal_token(client, monkeypatch):
    from agrisense import config

    monkeypatch.setattr(config, "INTERNAL_API_TOKEN", "internal")
    assert client.get("/api/ai/callbacks/last").status_code == 401
    assert client.get("/api/ai/callbacks/last", headers={"x-internal-token": "internal"}).status_code == 200


# --- Voice ---

def test_get_farmer_data_by_phone(client, farmer, reading):
    response = client.post("/api/voice/get-farmer-data", json={"phoneNumber": "+8801712345678"})

    body = response.json()
    assert body["success"] is True
    assert body["farmer"]["full_name"] == "Rahim Uddin"
    assert "hashed_password" not in body["farmer"]
    assert body["sensors"]["moisture_level"] == 10
    assert body["weather"]["temperature"] == 25
    assert body["forecast"] is None


def test_get_farmer_data_unknown_phone(client):
    response = client.post("/api/voice/get-farmer-data", json={"phone_number": "01899999999"})
    assert response.json() == {"success": False, "message": "Farmer not found in database"}

    missing = client.post("/api/voice/get-farmer-data", json={})
    assert missing.json()["success"] is False


def test_retell_webhook_unknown_caller(client):
    response = client.post("/api/voice/retell-webhook", json={
        "interaction_type": "response_required",
        "transcript": [{"role": "user", "content": "আমার ধানে কী সমস্যা?"}],
        "call": {"from_number": "+8801899999999"},
    })
    assert response.status_code == 200
    assert response.json()["continue_conversation"] is True
