from __future__ import annotations

import json
import secrets
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import lru_cache
from typing import Callable, TypeVar
from uuid import UUID

from pydantic import BaseModel

from clinic_claims.core.settings import get_settings
from clinic_claims.services.claim_errors import InvalidSessionState, SessionExpired

T = TypeVar("T")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_token() -> str:
    return secrets.token_urlsafe(32)


class ClaimState(str, Enum):
    MATCHED = "matched"
    OTP_SENT = "otp_sent"
    VERIFIED = "verified"
    LINKED = "linked"
    EXPIRED = "expired"


_TRANSITIONS: dict[ClaimState, frozenset[ClaimState]] = {
    ClaimState.MATCHED: frozenset({ClaimState.OTP_SENT, ClaimState.EXPIRED}),
    # otp_sent -> otp_sent is a resend.
    ClaimState.OTP_SENT: frozenset({ClaimState.OTP_SENT, ClaimState.VERIFIED, ClaimState.EXPIRED}),
    ClaimState.VERIFIED: frozenset({ClaimState.LINKED, ClaimState.EXPIRED}),
    ClaimState.LINKED: frozenset(),
    ClaimState.EXPIRED: frozenset(),
}


class OtpChallenge(BaseModel):
    code_hash: str | None
    salt: str
    issued_at: datetime
    expires_at: datetime
    attempts_remaining: int
    resends_remaining: int
    resend_available_at: datetime
    masked_phone: str


class ClaimSession(BaseModel):
    token: str
    patient_id: UUID
    state: ClaimState
    created_at: datetime
    last_activity_at: datetime
    challenge: OtpChallenge | None = None

    def advance(self, state: ClaimState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise InvalidSessionState()
        self.state = state

    def expires_at(self, ttl_seconds: int) -> datetime:
        return self.last_activity_at + timedelta(seconds=ttl_seconds)

    def is_stale(self, now: datetime, ttl_seconds: int) -> bool:
        return now >= self.expires_at(ttl_seconds)


class QueryContext(BaseModel):
    """Candidate set handed out by a multi-match search, kept until a selection consumes it."""

    token: str
    candidate_ids: list[UUID]
    query_digest: str
    created_at: datetime


def require_live_session(session: ClaimSession | None, now: datetime, ttl_seconds: int) -> ClaimSession:
    if session is None or session.state == ClaimState.EXPIRED or session.is_stale(now, ttl_seconds):
        raise SessionExpired()
    return session


SessionMutator = Callable[[ClaimSession | None], tuple[ClaimSession | None, T]]


class ClaimStore:
    """Holds claim sessions, query contexts and per-record dispatch windows.

    ``update_session`` is the only way to change a stored session: the mutator
    sees the current value (or ``None``) and returns the value to store
    (``None`` deletes it) plus a result handed back to the caller. Calls for
    the same token never interleave.
    """

    def save_session(self, session: ClaimSession, ttl_seconds: int) -> None:
        raise NotImplementedError

    def load_session(self, token: str) -> ClaimSession | None:
        raise NotImplementedError

    def update_session(self, token: str, mutator: SessionMutator, ttl_seconds: int):
        raise NotImplementedError

    def delete_session(self, token: str) -> None:
        raise NotImplementedError

    def save_context(self, context: QueryContext, ttl_seconds: int) -> None:
        raise NotImplementedError

    def pop_context(self, token: str) -> QueryContext | None:
        raise NotImplementedError

    def reserve_dispatch(self, key: str, limit: int, window_seconds: int, now: datetime) -> int | None:
        """Record one dispatch for ``key`` if fewer than ``limit`` happened in the window.

        Returns the dispatches left after this one, or ``None`` when the window is full.
        """
        raise NotImplementedError


class InMemoryClaimStore(ClaimStore):
    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or utcnow
        self._lock = threading.RLock()
        self._sessions: dict[str, tuple[datetime, str]] = {}
        self._contexts: dict[str, tuple[datetime, str]] = {}
        self._dispatches: dict[str, list[datetime]] = {}

    def _live(self, bucket: dict[str, tuple[datetime, str]], token: str) -> str | None:
        entry = bucket.get(token)
        if entry is None:
            return None
        expires_at, raw = entry
        if self._clock() >= expires_at:
            del bucket[token]
            return None
        return raw

    def _purge_expired(self, now: datetime) -> None:
        # Abandoned claims are never read again, so writes sweep them out. Caller holds the lock.
        for bucket in (self._sessions, self._contexts):
            for token in [token for token, (expires_at, _) in bucket.items() if now >= expires_at]:
                del bucket[token]

    def save_session(self, session: ClaimSession, ttl_seconds: int) -> None:
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl_seconds)
        with self._lock:
            self._purge_expired(now)
            self._sessions[session.token] = (expires_at, session.model_dump_json())

    def load_session(self, token: str) -> ClaimSession | None:
        with self._lock:
            raw = self._live(self._sessions, token)
        return ClaimSession.model_validate_json(raw) if raw else None

    def update_session(self, token: str, mutator: SessionMutator, ttl_seconds: int):
        with self._lock:
            raw = self._live(self._sessions, token)
            current = ClaimSession.model_validate_json(raw) if raw else None
            updated, result = mutator(current)
            if updated is None:
                self._sessions.pop(token, None)
            else:
                expires_at = self._clock() + timedelta(seconds=ttl_seconds)
                self._sessions[token] = (expires_at, updated.model_dump_json())
            return result

    def delete_session(self, token: str) -> None:
        with self._lock:
            self._sessions.pop(token, None)

    def save_context(self, context: QueryContext, ttl_seconds: int) -> None:
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl_seconds)
        with self._lock:
            self._purge_expired(now)
            self._contexts[context.token] = (expires_at, context.model_dump_json())

    def pop_context(self, token: str) -> QueryContext | None:
        with self._lock:
            raw = self._live(self._contexts, token)
            self._contexts.pop(token, None)
        return QueryContext.model_validate_json(raw) if raw else None

    def reserve_dispatch(self, key: str, limit: int, window_seconds: int, now: datetime) -> int | None:
        cutoff = now - timedelta(seconds=window_seconds)
        with self._lock:
            idle = [other for other, sent in self._dispatches.items() if not sent or sent[-1] <= cutoff]
            for other in idle:
                del self._dispatches[other]
            recent = [sent for sent in self._dispatches.get(key, []) if sent > cutoff]
            if len(recent) >= limit:
                self._dispatches[key] = recent
                return None
            recent.append(now)
            self._dispatches[key] = recent
            return limit - len(recent)


class RedisClaimStore(ClaimStore):
    def __init__(self, redis_client) -> None:
        self.redis = redis_client

    @staticmethod
    def _session_key(token: str) -> str:
        return f"claim_session:{token}"

    @staticmethod
    def _context_key(token: str) -> str:
        return f"claim_query:{token}"

    @staticmethod
    def _dispatch_key(key: str) -> str:
        return f"claim_dispatch:{key}"

    def save_session(self, session: ClaimSession, ttl_seconds: int) -> None:
        self.redis.setex(self._session_key(session.token), ttl_seconds, session.model_dump_json())

    def load_session(self, token: str) -> ClaimSession | None:
        raw = self.redis.get(self._session_key(token))
        return ClaimSession.model_validate_json(raw) if raw else None

    def update_session(self, token: str, mutator: SessionMutator, ttl_seconds: int):
        key = self._session_key(token)

        # Runs under WATCH; redis-py retries the whole callable if the key changes before EXEC.
        def _apply(pipe):
            raw = pipe.get(key)
            current = ClaimSession.model_validate_json(raw) if raw else None
            updated, result = mutator(current)
            pipe.multi()
            if updated is None:
                pipe.delete(key)
            else:
                pipe.setex(key, ttl_seconds, updated.model_dump_json())
            return result

        return self.redis.transaction(_apply, key, value_from_callable=True)

    def delete_session(self, token: str) -> None:
        self.redis.delete(self._session_key(token))

    def save_context(self, context: QueryContext, ttl_seconds: int) -> None:
        self.redis.setex(self._context_key(context.token), ttl_seconds, context.model_dump_json())

    def pop_context(self, token: str) -> QueryContext | None:
        key = self._context_key(token)
        pipe = self.redis.pipeline()
        pipe.get(key)
        pipe.delete(key)
        raw, _ = pipe.execute()
        return QueryContext.model_validate_json(raw) if raw else None

    def reserve_dispatch(self, key: str, limit: int, window_seconds: int, now: datetime) -> int | None:
        zkey = self._dispatch_key(key)
        stamp = now.timestamp()
        cutoff = stamp - window_seconds

        def _apply(pipe):
            used = pipe.zcount(zkey, f"({cutoff}", "+inf")
            if used >= limit:
                return None
            pipe.multi()
            pipe.zremrangebyscore(zkey, "-inf", cutoff)
            pipe.zadd(zkey, {json.dumps([stamp, secrets.token_hex(4)]): stamp})
            pipe.expire(zkey, window_seconds)
            return limit - used - 1

        return self.redis.transaction(_apply, zkey, value_from_callable=True)


@lru_cache
def get_claim_store() -> ClaimStore:
    settings = get_settings()
    if settings.claim_store_mode == "redis":
        from clinic_claims.services.redis_client import get_redis

        return RedisClaimStore(get_redis())
    return InMemoryClaimStore()
