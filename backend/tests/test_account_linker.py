import threading
from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from clinic_claims.crud import patient as patient_crud
from clinic_claims.crud import user_account as user_crud
from clinic_claims.db import Base
from clinic_claims.db.models import Patient, UserAccount
from clinic_claims.schemas.patient import PatientCreate
from clinic_claims.services.account_linker import AccountLinker
from clinic_claims.services.auth import JwtSessionIssuer, decode_jwt_token, hash_password, verify_password
from clinic_claims.services.claim_errors import (
    AlreadyLinked,
    ClaimError,
    InvalidSessionState,
    SessionExpired,
    UsernameTaken,
    WeakPassword,
)
from clinic_claims.services.claim_store import ClaimState
from clinic_claims.services.patient_claiming import PatientClaimingService


def test_link_creates_account_and_sets_record_link(service, db, store, make_patient, verified_session):
    patient = make_patient()
    token = verified_session(patient)

    result = service.link_account(token, "janedc", "secret123")

    db.refresh(patient)
    assert patient.user_id == result.account.id
    assert result.account.patient_id == patient.id
    assert result.account.username == "janedc"
    assert result.account.full_name == "Jane Dela Cruz"
    assert result.account.email == "jane@example.com"
    assert result.account.role == "patient"
    assert verify_password("secret123", result.account.password_hash)
    assert store.load_session(token) is None

    claims = decode_jwt_token(result.auth.token)
    assert claims["sub"] == str(result.account.id)
    assert claims["patient_id"] == str(patient.id)


def test_link_uses_supplied_email(service, verified_session):
    result = service.link_account(verified_session(), "janedc", "secret123", email="jane.new@example.com")

    assert result.account.email == "jane.new@example.com"


def test_link_requires_verified_session(service, make_patient):
    token = service.matcher.open_session(make_patient().id)

    with pytest.raises(InvalidSessionState):
        service.link_account(token, "janedc", "secret123")


def test_weak_password_keeps_session_verified(service, store, verified_session):
    token = verified_session()

    with pytest.raises(WeakPassword):
        service.link_account(token, "janedc", "12345")

    assert store.load_session(token).state == ClaimState.VERIFIED
    service.link_account(token, "janedc", "123456")


def test_username_is_case_insensitive(service, db, store, make_patient, verified_session):
    db.add(
        UserAccount(
            username="JaneDC",
            username_normalized="janedc",
            password_hash=hash_password("other-password"),
            role="patient",
        )
    )
    db.commit()
    patient = make_patient()
    token = verified_session(patient)

    with pytest.raises(UsernameTaken):
        service.link_account(token, "janedc", "secret123")

    db.refresh(patient)
    assert patient.user_id is None
    assert store.load_session(token).state == ClaimState.VERIFIED
    service.link_account(token, "jane.dc", "secret123")


def test_unlinked_account_is_reused_with_its_password(service, db, make_patient, verified_session):
    existing = UserAccount(
        username="janedc",
        username_normalized="janedc",
        password_hash=hash_password("secret123"),
        role="patient",
    )
    db.add(existing)
    db.commit()

    result = service.link_account(verified_session(), "JaneDC", "secret123")

    assert result.account.id == existing.id
    assert db.query(UserAccount).count() == 1


def test_account_linked_elsewhere_is_not_reused(service, verified_session, make_patient):
    service.link_account(verified_session(make_patient()), "janedc", "secret123")
    other = make_patient(full_name="Maria Dela Cruz")

    with pytest.raises(UsernameTaken):
        service.link_account(verified_session(other), "janedc", "secret123")


def test_competing_claims_link_only_once(service, db, make_patient, verified_session):
    patient = make_patient()
    first = verified_session(patient)
    second = verified_session(patient)

    service.link_account(first, "janedc", "secret123")
    with pytest.raises(AlreadyLinked):
        service.link_account(second, "janedc2", "secret456")

    assert db.query(UserAccount).count() == 1
    assert db.query(UserAccount).filter(UserAccount.username_normalized == "janedc2").first() is None
    assert db.query(Patient).filter(Patient.user_id.isnot(None)).count() == 1


def test_linked_session_cannot_be_reused(service, verified_session):
    token = verified_session()
    service.link_account(token, "janedc", "secret123")

    with pytest.raises(SessionExpired):
        service.link_account(token, "janedc-again", "secret123")


def test_staff_account_is_not_reused_as_patient_login(service, db, verified_session):
    db.add(
        UserAccount(
            username="drsmith",
            username_normalized="drsmith",
            password_hash=hash_password("secret123"),
            role="dentist",
        )
    )
    db.commit()
    token = verified_session()

    with pytest.raises(UsernameTaken):
        service.link_account(token, "drsmith", "secret123")

    staff = db.query(UserAccount).filter(UserAccount.username_normalized == "drsmith").one()
    assert staff.patient_id is None
    assert db.query(Patient).filter(Patient.user_id.isnot(None)).count() == 0


def test_reused_account_taken_by_another_record_reports_username_taken(
    service, db, store, make_patient, verified_session
):
    account = UserAccount(
        username="janedc",
        username_normalized="janedc",
        password_hash=hash_password("secret123"),
        role="patient",
    )
    db.add(account)
    db.commit()
    # The other claim's record write has landed but this read of the account predates it.
    first = make_patient(full_name="Maria Dela Cruz")
    first.user_id = account.id
    db.commit()
    patient = make_patient()
    token = verified_session(patient)

    with pytest.raises(UsernameTaken):
        service.link_account(token, "janedc", "secret123")

    db.refresh(patient)
    assert patient.user_id is None
    assert store.load_session(token).state == ClaimState.VERIFIED


def test_username_collision_on_record_linked_meanwhile_reports_already_linked(
    service, db, make_patient, verified_session, monkeypatch
):
    patient = make_patient()
    token = verified_session(patient)
    winner = UserAccount(
        username="janedc",
        username_normalized="janedc",
        password_hash=hash_password("secret123"),
        role="patient",
    )
    db.add(winner)
    db.commit()

    def _insert_after_other_claim_committed(session, username, **fields):
        session.query(Patient).filter(Patient.id == patient.id).update({"user_id": winner.id})
        session.commit()
        raise IntegrityError("INSERT INTO user_accounts", {}, Exception("UNIQUE constraint failed"))

    monkeypatch.setattr(user_crud, "add_user_account", _insert_after_other_claim_committed)

    with pytest.raises(AlreadyLinked):
        service.link_account(token, "jane.dc", "secret123")


def test_concurrent_links_on_separate_connections_link_once(tmp_path, store, sender, settings, clock, codes):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'claims.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    with SessionLocal() as setup:
        patient = patient_crud.create_patient(
            setup,
            PatientCreate(full_name="Jane Dela Cruz", date_of_birth=date(1990, 5, 1), phone="09171234567"),
        )
        patient_id = patient.id
        claims = PatientClaimingService(
            setup, store, sender, JwtSessionIssuer(), settings=settings, clock=clock, code_factory=codes
        )
        tokens = []
        for _ in range(2):
            token = claims.matcher.open_session(patient_id)
            claims.send_otp(token)
            claims.verify_otp(token, codes.issued[-1])
            tokens.append(token)

    barrier = threading.Barrier(2)
    outcomes = {}

    def _link(token, username):
        with SessionLocal() as db:
            linker = AccountLinker(db, store, JwtSessionIssuer(), settings=settings, clock=clock)
            barrier.wait()
            try:
                outcomes[username] = linker.link_account(token, username, "secret123").account.id
            except ClaimError as exc:
                outcomes[username] = exc.code

    threads = [
        threading.Thread(target=_link, args=(token, username))
        for token, username in zip(tokens, ["janedc", "jane.dc"])
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    with SessionLocal() as check:
        linked = check.get(Patient, patient_id)
        accounts = check.query(UserAccount).all()
    engine.dispose()

    assert list(outcomes.values()).count("ALREADY_LINKED") == 1
    winner = next(value for value in outcomes.values() if value != "ALREADY_LINKED")
    assert linked.user_id == winner
    assert [account.id for account in accounts] == [winner]
