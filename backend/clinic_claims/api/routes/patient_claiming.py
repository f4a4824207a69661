from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from clinic_claims.api.deps import get_claiming_service
from clinic_claims.core.settings import get_settings
from clinic_claims.schemas.claiming import (
    CandidateSelectRequest,
    ClaimCancelResponse,
    ClaimCandidateOut,
    ClaimOtpVerifyRequest,
    ClaimOtpVerifyResponse,
    ClaimSearchRequest,
    ClaimSearchResponse,
    ClaimSessionRequest,
    ClaimSessionTokenResponse,
    ClaimStatusResponse,
    LinkAccountRequest,
    LinkAccountResponse,
    OtpSendResponse,
)
from clinic_claims.schemas.user_account import UserAccountOut
from clinic_claims.services.claim_errors import (
    ClaimError,
    ClaimServiceUnavailable,
    RecordNotFound,
    ResendCooldown,
)
from clinic_claims.services.otp import OtpDispatch
from clinic_claims.services.patient_claiming import PatientClaimingService

logger = logging.getLogger(__name__)

router = APIRouter()


def _http_error(exc: ClaimError) -> HTTPException:
    headers = None
    if isinstance(exc, ResendCooldown):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail(), headers=headers)


@contextmanager
def _claim_errors(step: str):
    try:
        yield
    except ClaimError as exc:
        raise _http_error(exc) from exc
    except (SQLAlchemyError, RedisError) as exc:
        logger.exception("Patient claiming step %s failed", step)
        raise _http_error(ClaimServiceUnavailable()) from exc


def _set_session_cookie(response: JSONResponse, token: str, expires_at: datetime) -> None:
    settings = get_settings()
    max_age = int((expires_at - datetime.now(timezone.utc)).total_seconds())
    response.set_cookie(
        key=settings.jwt_cookie_name,
        value=token,
        httponly=True,
        secure=settings.jwt_cookie_secure,
        samesite="lax",
        max_age=max_age,
    )


def _dispatch_out(dispatch: OtpDispatch) -> OtpSendResponse:
    return OtpSendResponse(
        masked_phone=dispatch.masked_phone,
        expires_at=dispatch.expires_at,
        resend_available_at=dispatch.resend_available_at,
        resends_remaining=dispatch.resends_remaining,
    )


@router.post("/search", response_model=ClaimSearchResponse)
def search_records(
    payload: ClaimSearchRequest,
    service: PatientClaimingService = Depends(get_claiming_service),
) -> ClaimSearchResponse:
    with _claim_errors("search"):
        try:
            result = service.search(payload.full_name, payload.date_of_birth, payload.phone)
        except RecordNotFound as exc:
            return ClaimSearchResponse(found=False, matches=0, message=exc.message)

    if result.session_token:
        return ClaimSearchResponse(found=True, matches=1, session_token=result.session_token)
    return ClaimSearchResponse(
        found=True,
        matches="many",
        query_token=result.query_token,
        candidates=[
            ClaimCandidateOut(id=c.id, name=c.name, last_visit=c.last_visit)
            for c in result.candidates
        ],
        message="Multiple records found. Please select yours.",
    )


@router.post("/select", response_model=ClaimSessionTokenResponse)
def select_candidate(
    payload: CandidateSelectRequest,
    service: PatientClaimingService = Depends(get_claiming_service),
) -> ClaimSessionTokenResponse:
    with _claim_errors("select"):
        token = service.select_candidate(payload.candidate_id, payload.query_token, payload.last_visit)
    return ClaimSessionTokenResponse(session_token=token)


@router.post("/send-otp", response_model=OtpSendResponse)
def send_otp(
    payload: ClaimSessionRequest,
    service: PatientClaimingService = Depends(get_claiming_service),
) -> OtpSendResponse:
    with _claim_errors("send-otp"):
        dispatch = service.send_otp(payload.session_token)
    return _dispatch_out(dispatch)


@router.post("/resend-otp", response_model=OtpSendResponse)
def resend_otp(
    payload: ClaimSessionRequest,
    service: PatientClaimingService = Depends(get_claiming_service),
) -> OtpSendResponse:
    with _claim_errors("resend-otp"):
        dispatch = service.resend_otp(payload.session_token)
    return _dispatch_out(dispatch)


@router.post("/verify-otp", response_model=ClaimOtpVerifyResponse)
def verify_otp(
    payload: ClaimOtpVerifyRequest,
    service: PatientClaimingService = Depends(get_claiming_service),
) -> ClaimOtpVerifyResponse:
    with _claim_errors("verify-otp"):
        service.verify_otp(payload.session_token, payload.code)
    return ClaimOtpVerifyResponse(verified=True)


@router.post("/link-account", response_model=LinkAccountResponse, status_code=status.HTTP_201_CREATED)
def link_account(
    payload: LinkAccountRequest,
    service: PatientClaimingService = Depends(get_claiming_service),
) -> JSONResponse:
    with _claim_errors("link-account"):
        result = service.link_account(
            payload.session_token,
            payload.username,
            payload.password,
            payload.email,
        )

    payload_out = LinkAccountResponse(
        account=UserAccountOut.model_validate(result.account),
        auth_token=result.auth.token,
        expires_at=result.auth.expires_at,
    )
    response = JSONResponse(payload_out.model_dump(mode="json"), status_code=status.HTTP_201_CREATED)
    _set_session_cookie(response, result.auth.token, result.auth.expires_at)
    return response


@router.post("/cancel", response_model=ClaimCancelResponse)
def cancel_claim(
    payload: ClaimSessionRequest,
    service: PatientClaimingService = Depends(get_claiming_service),
) -> ClaimCancelResponse:
    with _claim_errors("cancel"):
        service.cancel(payload.session_token)
    return ClaimCancelResponse(status="cancelled")


@router.post("/status", response_model=ClaimStatusResponse)
def claim_status(
    payload: ClaimSessionRequest,
    service: PatientClaimingService = Depends(get_claiming_service),
) -> ClaimStatusResponse:
    with _claim_errors("status"):
        current = service.status(payload.session_token)
    return ClaimStatusResponse(
        state=current.state,
        masked_phone=current.masked_phone,
        otp_expires_at=current.otp_expires_at,
        resend_available_at=current.resend_available_at,
        attempts_remaining=current.attempts_remaining,
        resends_remaining=current.resends_remaining,
        session_expires_at=current.session_expires_at,
    )
