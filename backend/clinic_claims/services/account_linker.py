from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinic_claims.core.settings import Settings, get_settings
from clinic_claims.crud import patient as patient_crud
from clinic_claims.crud import user_account as user_crud
from clinic_claims.db.models import Patient, UserAccount
from clinic_claims.services.auth import JwtSession, hash_password, verify_password
from clinic_claims.services.claim_errors import (
    AlreadyLinked,
    ClaimServiceUnavailable,
    InvalidSessionState,
    SessionExpired,
    UsernameTaken,
    WeakPassword,
)
from clinic_claims.services.claim_store import (
    ClaimSession,
    ClaimState,
    ClaimStore,
    Clock,
    require_live_session,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinkResult:
    account: UserAccount
    auth: JwtSession


class AccountLinker:
    def __init__(
        self,
        db: Session,
        store: ClaimStore,
        auth_issuer,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.db = db
        self.store = store
        self.auth_issuer = auth_issuer
        self.settings = settings or get_settings()
        self.clock = clock or utcnow

    def link_account(
        self,
        token: str,
        username: str,
        password: str,
        email: str | None = None,
    ) -> LinkResult:
        ttl = self.settings.claim_session_ttl_seconds
        now = self.clock()
        session = require_live_session(self.store.load_session(token), now, ttl)
        if session.state != ClaimState.VERIFIED:
            raise InvalidSessionState()

        if len(password) < self.settings.password_min_length:
            raise WeakPassword(
                f"Password must be at least {self.settings.password_min_length} characters."
            )

        patient = patient_crud.get_patient(self.db, session.patient_id)
        if patient is None:
            self.store.delete_session(token)
            raise SessionExpired()

        try:
            account = self._stage_account(patient, username, password, email)
            # Compare-and-set on the record; a concurrent claim that committed first leaves zero rows.
            if not patient_crud.link_patient_account(self.db, patient.id, account.id):
                raise AlreadyLinked()
            account.patient_id = patient.id
            self.db.commit()
        except IntegrityError as exc:
            # Either the username index or patients.user_id (a reused account was linked
            # to another record meanwhile). Re-read the record to tell them apart.
            self.db.rollback()
            linked_to = self.db.query(Patient.user_id).filter(Patient.id == patient.id).scalar()
            if linked_to is not None:
                raise AlreadyLinked() from exc
            raise UsernameTaken() from exc
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(account)
        logger.info("Patient %s linked to account %s", session.patient_id, account.id)

        def _mark_linked(current: ClaimSession | None):
            if current is not None and current.state == ClaimState.VERIFIED:
                current.advance(ClaimState.LINKED)
                current.last_activity_at = now
            return current, None

        self.store.update_session(token, _mark_linked, ttl)
        try:
            auth = self.auth_issuer.issue_session(account)
        except Exception as exc:
            logger.exception("Session issuance failed for account %s", account.id)
            raise ClaimServiceUnavailable() from exc
        finally:
            self.store.delete_session(token)
        return LinkResult(account=account, auth=auth)

    def _stage_account(
        self,
        patient: Patient,
        username: str,
        password: str,
        email: str | None,
    ) -> UserAccount:
        existing = user_crud.get_user_account_by_username(self.db, username)
        if existing is not None:
            # Only an unlinked patient account is reused, and only by someone who knows its password.
            if (
                existing.role != "patient"
                or existing.patient_id is not None
                or not verify_password(password, existing.password_hash)
            ):
                raise UsernameTaken()
            if email and not existing.email:
                existing.email = email
            return existing

        return user_crud.add_user_account(
            self.db,
            username=username,
            password_hash=hash_password(password),
            full_name=patient.full_name,
            email=email or patient.email,
            phone=patient.phone,
            role="patient",
        )
