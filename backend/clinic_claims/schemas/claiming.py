from datetime import date, datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

from clinic_claims.schemas.user_account import UserAccountOut


class ClaimSearchRequest(BaseModel):
    full_name: str = Field(min_length=1, max_length=200)
    date_of_birth: date
    phone: str = Field(min_length=1, max_length=40)


class ClaimCandidateOut(BaseModel):
    id: UUID
    name: str
    last_visit: date | None = None


class ClaimSearchResponse(BaseModel):
    found: bool
    matches: int | Literal["many"]
    session_token: str | None = None
    query_token: str | None = None
    candidates: list[ClaimCandidateOut] | None = None
    message: str | None = None


class CandidateSelectRequest(BaseModel):
    candidate_id: UUID
    query_token: str
    last_visit: date | None = None


class ClaimSessionRequest(BaseModel):
    session_token: str


class ClaimSessionTokenResponse(BaseModel):
    session_token: str


class OtpSendResponse(BaseModel):
    masked_phone: str
    expires_at: datetime
    resend_available_at: datetime
    resends_remaining: int


class ClaimOtpVerifyRequest(ClaimSessionRequest):
    code: str = Field(min_length=1, max_length=12)


class ClaimOtpVerifyResponse(BaseModel):
    verified: bool


class LinkAccountRequest(ClaimSessionRequest):
    username: str = Field(min_length=3, max_length=150)
    password: str = Field(min_length=1, max_length=256)
    email: str | None = Field(default=None, max_length=255)


class LinkAccountResponse(BaseModel):
    account: UserAccountOut
    auth_token: str
    expires_at: datetime


class ClaimStatusResponse(BaseModel):
    state: str
    masked_phone: str | None = None
    otp_expires_at: datetime | None = None
    resend_available_at: datetime | None = None
    attempts_remaining: int | None = None
    resends_remaining: int | None = None
    session_expires_at: datetime


class ClaimCancelResponse(BaseModel):
    status: str
