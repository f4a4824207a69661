from __future__ import annotations

import hashlib
import hmac
import logging
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from clinic_claims.core.settings import Settings, get_settings
from clinic_claims.crud import patient as patient_crud
from clinic_claims.services.auth import mask_phone, phone_digits
from clinic_claims.services.claim_errors import (
    AlreadyLinked,
    ClaimServiceUnavailable,
    InvalidSessionState,
    NoPhoneOnRecord,
    OtpAttemptsExceeded,
    OtpExpired,
    OtpInvalidCode,
    ResendCooldown,
    ResendLimitExceeded,
    SessionExpired,
)
from clinic_claims.services.claim_store import (
    ClaimSession,
    ClaimState,
    ClaimStore,
    Clock,
    OtpChallenge,
    require_live_session,
    utcnow,
)
from clinic_claims.services.telnyx_client import MessageDeliveryError

logger = logging.getLogger(__name__)

_SEND_STATES = frozenset({ClaimState.MATCHED, ClaimState.OTP_SENT})
_RESEND_STATES = frozenset({ClaimState.OTP_SENT})


def generate_otp_code(length: int) -> str:
    if length <= 0:
        raise ValueError("Invalid OTP length.")
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def hash_otp_code(code: str, salt: str) -> str:
    return hmac.new(bytes.fromhex(salt), code.encode("utf-8"), hashlib.sha256).hexdigest()


def dispatch_key(patient_id) -> str:
    return f"patient:{patient_id}"


@dataclass(frozen=True)
class OtpDispatch:
    masked_phone: str
    expires_at: datetime
    resend_available_at: datetime
    resends_remaining: int


class OtpIssuer:
    def __init__(
        self,
        db: Session,
        store: ClaimStore,
        sender,
        settings: Settings | None = None,
        clock: Clock | None = None,
        code_factory: Callable[[], str] | None = None,
    ) -> None:
        self.db = db
        self.store = store
        self.sender = sender
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        self.code_factory = code_factory or (lambda: generate_otp_code(self.settings.otp_length))

    def send_otp(self, token: str, resend: bool = False) -> OtpDispatch:
        settings = self.settings
        ttl = settings.claim_session_ttl_seconds
        allowed = _RESEND_STATES if resend else _SEND_STATES
        now = self.clock()

        session = require_live_session(self.store.load_session(token), now, ttl)
        self._check_sendable(session, allowed, now)

        patient = patient_crud.get_patient(self.db, session.patient_id)
        if patient is None:
            self.store.delete_session(token)
            raise SessionExpired()
        if patient.user_id is not None:
            raise AlreadyLinked()
        if not phone_digits(patient.phone):
            raise NoPhoneOnRecord()

        remaining = self.store.reserve_dispatch(
            dispatch_key(patient.id),
            settings.otp_resend_limit + 1,
            settings.otp_resend_window_seconds,
            now,
        )
        if remaining is None:
            logger.info("OTP send budget exhausted for patient %s", patient.id)
            raise ResendLimitExceeded()

        code = self.code_factory()
        salt = secrets.token_hex(16)
        challenge = OtpChallenge(
            code_hash=hash_otp_code(code, salt),
            salt=salt,
            issued_at=now,
            expires_at=now + timedelta(seconds=settings.otp_ttl_seconds),
            attempts_remaining=settings.otp_max_attempts,
            resends_remaining=remaining,
            resend_available_at=now + timedelta(seconds=settings.otp_resend_cooldown_seconds),
            masked_phone=mask_phone(patient.phone),
        )

        def _issue(current: ClaimSession | None):
            current = require_live_session(current, now, ttl)
            self._check_sendable(current, allowed, now)
            current.advance(ClaimState.OTP_SENT)
            current.challenge = challenge
            current.last_activity_at = now
            return current, None

        self.store.update_session(token, _issue, ttl)

        minutes = max(1, settings.otp_ttl_seconds // 60)
        message = (
            f"{settings.clinic_display_name}: Your verification code is {code}. "
            f"It expires in {minutes} minutes."
        )
        try:
            self.sender.send(patient.phone, message)
        except MessageDeliveryError as exc:
            logger.exception("OTP delivery failed for patient %s", patient.id)
            raise ClaimServiceUnavailable() from exc

        logger.info("OTP sent for patient %s (session %s…)", patient.id, token[:8])
        return OtpDispatch(
            masked_phone=challenge.masked_phone,
            expires_at=challenge.expires_at,
            resend_available_at=challenge.resend_available_at,
            resends_remaining=challenge.resends_remaining,
        )

    @staticmethod
    def _check_sendable(session: ClaimSession, allowed: frozenset, now: datetime) -> None:
        if session.state not in allowed:
            raise InvalidSessionState()
        challenge = session.challenge
        if challenge is not None and now < challenge.resend_available_at:
            wait = math.ceil((challenge.resend_available_at - now).total_seconds())
            raise ResendCooldown(retry_after_seconds=max(1, wait))


class OtpVerifier:
    def __init__(
        self,
        store: ClaimStore,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock or utcnow

    def verify_otp(self, token: str, code: str) -> None:
        ttl = self.settings.claim_session_ttl_seconds
        submitted = "".join(ch for ch in code if ch.isdigit())
        now = self.clock()

        def _verify(current: ClaimSession | None):
            current = require_live_session(current, now, ttl)
            challenge = current.challenge
            if current.state != ClaimState.OTP_SENT or challenge is None or challenge.code_hash is None:
                raise InvalidSessionState()

            current.last_activity_at = now
            if now >= challenge.expires_at:
                challenge.code_hash = None
                current.advance(ClaimState.EXPIRED)
                return current, OtpExpired()

            expected = challenge.code_hash
            if not hmac.compare_digest(hash_otp_code(submitted, challenge.salt), expected):
                challenge.attempts_remaining = max(0, challenge.attempts_remaining - 1)
                if challenge.attempts_remaining == 0:
                    challenge.code_hash = None
                    current.advance(ClaimState.EXPIRED)
                    return current, OtpAttemptsExceeded()
                return current, OtpInvalidCode(attempts_remaining=challenge.attempts_remaining)

            challenge.code_hash = None
            current.advance(ClaimState.VERIFIED)
            return current, None

        error = self.store.update_session(token, _verify, ttl)
        if error is not None:
            logger.info("OTP verification failed for session %s…: %s", token[:8], error.code)
            raise error
        logger.info("OTP verified for session %s…", token[:8])
