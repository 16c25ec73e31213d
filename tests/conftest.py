import os
import tempfile
from pathlib import Path

import pytest

os.environ.setdefault(
    "DATABASE_URL", f"sqlite:///{Path(tempfile.gettempdir()) / 'petcare_test_app.db'}"
)
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")

from fastapi.testclient import TestClient  # noqa: E402
from jose import jwt  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from petcare.database import Base  # noqa: E402
from petcare.idempotency import PaymentLocks  # noqa: E402
from petcare.stripe_service import GatewayPayment  # noqa: E402


@pytest.fixture
def engine(tmp_path):
    # file database so that several threads can share it
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def TestingSessionLocal(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(TestingSessionLocal):
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def locks(monkeypatch):
    locks = PaymentLocks(wait_seconds=0.05)
    monkeypatch.setattr("petcare.idempotency.payment_locks", locks)
    return locks


@pytest.fixture
def client(monkeypatch, TestingSessionLocal, locks):
    from petcare.main import app as fastapi_app

    monkeypatch.setattr("petcare.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("petcare.main.SessionLocal", TestingSessionLocal)
    with TestClient(fastapi_app) as c:
        yield c


def make_token(**claims):
    return jwt.encode(claims, os.environ["JWT_SECRET"], algorithm="HS256")


@pytest.fixture
def doctor_headers():
    token = make_token(sub="doc-1", email="vet@example.com", role="doctor")
    return {"Authorization": f"Bearer {token}"}


def booking_metadata(**overrides):
    metadata = {
        "type": "appointment",
        "doctorId": "1",
        "doctorName": "Dr. Paws",
        "doctorEmail": "vet@example.com",
        "appointmentDate": "2024-06-03",
        "appointmentTime": "2:00 PM",
        "userId": "user-1",
        "userEmail": "owner@example.com",
        "feeBDT": "3000",
        "feeUSD": "25.0",
    }
    metadata.update(overrides)
    return metadata


def paid_intent(reference="pi_123", status="succeeded", amount=2500, metadata=None):
    return GatewayPayment(
        reference=reference,
        status=status,
        amount_minor=amount,
        metadata=booking_metadata() if metadata is None else metadata,
    )
