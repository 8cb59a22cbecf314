import pytest
from fastapi.testclient import TestClient

from tests.utils import JWT_SECRET, PAYSTACK_SECRET, TestingSessionLocal, engine
from grochain_payments.database import Base
from grochain_payments.main import app as fastapi_app


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def settings_env(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", JWT_SECRET)
    monkeypatch.setenv("PAYSTACK_SECRET_KEY", PAYSTACK_SECRET)
    monkeypatch.delenv("PAYSTACK_WEBHOOK_SECRET", raising=False)
    monkeypatch.delenv("PAYSTACK_BASE_URL", raising=False)
    monkeypatch.setenv("PLATFORM_FEE_RATE", "0.03")
    monkeypatch.setattr("grochain_payments.database.SessionLocal", TestingSessionLocal)


@pytest.fixture
def client():
    with TestClient(fastapi_app) as c:
        yield c


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()
