"""Entry point for the patient record claiming flow.

search -> [select_candidate] -> send_otp / resend_otp -> verify_otp -> link_account

Every call after ``search`` carries the opaque session token returned by the
previous step; the session record in the claim store is the only place the
flow's progress lives.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from clinic_claims.core.settings import Settings, get_settings
from clinic_claims.services.account_linker import AccountLinker, LinkResult
from clinic_claims.services.claim_store import ClaimStore, Clock, require_live_session, utcnow
from clinic_claims.services.otp import OtpDispatch, OtpIssuer, OtpVerifier
from clinic_claims.services.record_matcher import RecordMatcher, SearchResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimStatus:
    state: str
    session_expires_at: datetime
    masked_phone: str | None = None
    otp_expires_at: datetime | None = None
    resend_available_at: datetime | None = None
    attempts_remaining: int | None = None
    resends_remaining: int | None = None


class PatientClaimingService:
    def __init__(
        self,
        db: Session,
        store: ClaimStore,
        sender,
        auth_issuer,
        settings: Settings | None = None,
        clock: Clock | None = None,
        code_factory: Callable[[], str] | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        self.matcher = RecordMatcher(db, store, self.settings, self.clock)
        self.issuer = OtpIssuer(db, store, sender, self.settings, self.clock, code_factory)
        self.verifier = OtpVerifier(store, self.settings, self.clock)
        self.linker = AccountLinker(db, store, auth_issuer, self.settings, self.clock)

    def search(self, full_name: str, date_of_birth: date, phone: str) -> SearchResult:
        return self.matcher.search(full_name, date_of_birth, phone)

    def select_candidate(self, candidate_id: UUID, query_token: str, last_visit: date | None = None) -> str:
        return self.matcher.select_candidate(candidate_id, query_token, last_visit)

    def send_otp(self, token: str) -> OtpDispatch:
        return self.issuer.send_otp(token)

    def resend_otp(self, token: str) -> OtpDispatch:
        return self.issuer.send_otp(token, resend=True)

    def verify_otp(self, token: str, code: str) -> None:
        self.verifier.verify_otp(token, code)

    def link_account(self, token: str, username: str, password: str, email: str | None = None) -> LinkResult:
        return self.linker.link_account(token, username, password, email)

    def cancel(self, token: str) -> None:
        self.store.delete_session(token)
        logger.info("Claim session %s… cancelled", token[:8])

    def status(self, token: str) -> ClaimStatus:
        ttl = self.settings.claim_session_ttl_seconds
        session = require_live_session(self.store.load_session(token), self.clock(), ttl)
        challenge = session.challenge
        if challenge is None:
            return ClaimStatus(state=session.state.value, session_expires_at=session.expires_at(ttl))
        return ClaimStatus(
            state=session.state.value,
            session_expires_at=session.expires_at(ttl),
            masked_phone=challenge.masked_phone,
            otp_expires_at=challenge.expires_at,
            resend_available_at=challenge.resend_available_at,
            attempts_remaining=challenge.attempts_remaining,
            resends_remaining=challenge.resends_remaining,
        )
