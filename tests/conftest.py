import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool

from agrisense import models
from agrisense.database import get_db
from agrisense.main import app
from agrisense.security import create_access_token, get_password_hash

PASSWORD = "secret123"
PASSWORD_HASH = get_password_hash(PASSWORD)


@pytest.fixture(name="engine")
def engine_fixture():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="session")
def session_fixture(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture(name="client")
def client_fixture(session):
    def get_db_override():
        return session

    app.dependency_overrides[get_db] = get_db_override
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture(name="district")
def district_fixture(session):
    district = models.District(name="Dhaka")
    session.add(district)
    session.commit()
    session.refresh(district)
    return district


def make_user(session, mobile_number="01712345678", role="farmer", **fields):
    user = models.User(
        full_name=fields.pop("full_name", "Rahim Uddin"),
        mobile_number=mobile_number,
        hashed_password=PASSWORD_HASH,
        role=role,
        **fields,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture(name="farmer")
def farmer_fixture(session, district):
    return make_user(session, crop_name="Rice", land_size_acres=2.5, district_id=district.id)


@pytest.fixture(name="admin")
def admin_fixture(session):
    return make_user(session, mobile_number="01998765432", role="admin", full_name="Admin")


@pytest.fixture(name="device")
def device_fixture(session, farmer):
    device = models.Device(user_id=farmer.id, device_name="Field 1", device_api_key="dev-key-1", is_active=True)
    session.add(device)
    session.commit()
    session.refresh(device)
    return device


@pytest.fixture(name="reading")
def reading_fixture(session, device, farmer):
    reading = models.SensorReading(
        device_id=device.id,
        user_id=farmer.id,
        moisture_level=10,
        ph_level=9,
        temperature=28,
        humidity=65,
        nitrogen_level=40,
        phosphorus_level=25,
        potassium_level=35,
    )
    session.add(reading)
    session.commit()
    session.refresh(reading)
    return reading


def auth_headers(user):
    token = create_access_token(data={"sub": user.mobile_number})
    return {"Authorization": f"Bearer {token}"}
