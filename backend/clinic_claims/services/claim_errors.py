"""Caller-facing failures of the record claiming flow.

Every error carries a stable ``code`` for clients, the HTTP status the API
layer answers with, and whether it ``terminal``-ly ends the claim session.
Messages never name the identity attribute that failed a match.
"""

from __future__ import annotations

from typing import Any


class ClaimError(Exception):
    code = "CLAIM_ERROR"
    status_code = 400
    terminal = False
    default_message = "Unable to complete the request."

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "terminal": self.terminal,
        }
        detail.update(self.extra)
        return detail


class RecordNotFound(ClaimError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "No existing record found. You can proceed with new registration."


class InvalidSelection(ClaimError):
    code = "INVALID_SELECTION"
    default_message = "The selected record is not available. Please search again."


class NoPhoneOnRecord(ClaimError):
    code = "NO_PHONE_ON_RECORD"
    default_message = "No phone number on record. Please contact clinic staff."


class ResendCooldown(ClaimError):
    code = "RESEND_COOLDOWN"
    status_code = 429
    default_message = "Please wait before requesting another code."

    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(retry_after_seconds=retry_after_seconds)
        self.retry_after_seconds = retry_after_seconds


class ResendLimitExceeded(ClaimError):
    code = "RESEND_LIMIT_EXCEEDED"
    status_code = 429
    default_message = "Too many verification codes requested. Please try again later."


class OtpExpired(ClaimError):
    code = "OTP_EXPIRED"
    status_code = 410
    terminal = True
    default_message = "The verification code has expired. Please start again."


class OtpInvalidCode(ClaimError):
    code = "OTP_INVALID_CODE"
    default_message = "Incorrect verification code."

    def __init__(self, attempts_remaining: int) -> None:
        super().__init__(attempts_remaining=attempts_remaining)
        self.attempts_remaining = attempts_remaining


class OtpAttemptsExceeded(ClaimError):
    code = "OTP_ATTEMPTS_EXCEEDED"
    status_code = 403
    terminal = True
    default_message = "Too many incorrect codes. Please start again."


class SessionExpired(ClaimError):
    code = "SESSION_EXPIRED"
    status_code = 410
    terminal = True
    default_message = "This claim session has expired. Please start again."


class InvalidSessionState(ClaimError):
    code = "INVALID_SESSION_STATE"
    status_code = 409
    default_message = "This step is not available for the current claim session."


class UsernameTaken(ClaimError):
    code = "USERNAME_TAKEN"
    status_code = 409
    default_message = "Username already exists."


class WeakPassword(ClaimError):
    code = "WEAK_PASSWORD"
    default_message = "Password is too short."


class AlreadyLinked(ClaimError):
    code = "ALREADY_LINKED"
    status_code = 409
    default_message = "This patient record is already linked to an account."


class ClaimServiceUnavailable(ClaimError):
    code = "SERVICE_UNAVAILABLE"
    status_code = 503
    default_message = "The service is temporarily unavailable. Please try again."
