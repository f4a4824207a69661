import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CLAIM_STORE_MODE"] = "memory"
os.environ["MESSAGING_MODE"] = "mock"

import re
from datetime import date, datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from clinic_claims.api.deps import get_claiming_service
from clinic_claims.core.settings import get_settings
from clinic_claims.crud import patient as patient_crud
from clinic_claims.db import Base
from clinic_claims.main import app
from clinic_claims.schemas.patient import PatientCreate
from clinic_claims.services.auth import JwtSessionIssuer
from clinic_claims.services.claim_store import InMemoryClaimStore
from clinic_claims.services.patient_claiming import PatientClaimingService
from clinic_claims.services.telnyx_client import MessageDeliveryError

JANE = {
    "full_name": "Jane Dela Cruz",
    "date_of_birth": date(1990, 5, 1),
    "phone": "09171234567",
}


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSender:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []
        self.fail = False

    def send(self, phone: str, message: str) -> None:
        if self.fail:
            raise MessageDeliveryError("provider down")
        self.messages.append((phone, message))

    @property
    def last_code(self) -> str:
        return re.search(r"\b(\d{6})\b", self.messages[-1][1]).group(1)


class CodeSequence:
    """Hands out predictable OTP codes: 123456, 234567, ..."""

    def __init__(self) -> None:
        self.issued: list[str] = []

    def __call__(self) -> str:
        code = f"{(123456 + 111111 * len(self.issued)) % 1000000:06d}"
        self.issued.append(code)
        return code


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    yield session
    session.close()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock):
    return InMemoryClaimStore(clock=clock)


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def codes():
    return CodeSequence()


@pytest.fixture
def service(db, store, sender, settings, clock, codes):
    return PatientClaimingService(
        db,
        store,
        sender,
        JwtSessionIssuer(),
        settings=settings,
        clock=clock,
        code_factory=codes,
    )


@pytest.fixture
def make_patient(db):
    def _make(**overrides):
        fields = {**JANE, "email": "jane@example.com", "last_visit": date(2026, 3, 14)}
        fields.update(overrides)
        return patient_crud.create_patient(db, PatientCreate(**fields))

    return _make


@pytest.fixture
def verified_session(service, make_patient):
    """A claim on a fresh Jane record that has already passed OTP verification."""

    def _verified(patient=None):
        patient = patient or make_patient()
        token = service.matcher.open_session(patient.id)
        service.send_otp(token)
        service.verify_otp(token, service.issuer.code_factory.issued[-1])
        return token

    return _verified


@pytest.fixture
def client(service):
    app.dependency_overrides[get_claiming_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
