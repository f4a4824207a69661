"""Find the clinic record a first-time user is claiming.

A record matches only when the case-folded, whitespace-collapsed name, the
date of birth and the phone digits are all exactly equal. Several exact
matches are returned as candidates for the caller to choose from; the choice
is checked against the candidate set handed out with the search.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import date
from typing import Literal
from uuid import UUID

from sqlalchemy.orm import Session

from clinic_claims.core.settings import Settings, get_settings
from clinic_claims.crud import patient as patient_crud
from clinic_claims.services.auth import phone_digits
from clinic_claims.services.claim_errors import InvalidSelection, RecordNotFound
from clinic_claims.services.claim_store import (
    ClaimSession,
    ClaimState,
    ClaimStore,
    Clock,
    QueryContext,
    new_token,
    utcnow,
)

logger = logging.getLogger(__name__)


def normalize_name(name: str) -> str:
    return " ".join(name.casefold().split())


@dataclass(frozen=True)
class ClaimQuery:
    full_name: str
    date_of_birth: date
    phone: str

    @classmethod
    def build(cls, full_name: str, date_of_birth: date, phone: str) -> "ClaimQuery":
        return cls(
            full_name=normalize_name(full_name),
            date_of_birth=date_of_birth,
            phone=phone_digits(phone),
        )

    @classmethod
    def from_record(cls, patient) -> "ClaimQuery":
        return cls.build(patient.full_name, patient.date_of_birth, patient.phone or "")

    def is_complete(self) -> bool:
        return bool(self.full_name and self.phone)


@dataclass(frozen=True)
class ClaimCandidate:
    id: UUID
    name: str
    last_visit: date | None


@dataclass(frozen=True)
class SearchResult:
    session_token: str | None = None
    query_token: str | None = None
    candidates: tuple[ClaimCandidate, ...] = ()

    @property
    def matches(self) -> int | Literal["many"]:
        return 1 if self.session_token else "many"


class RecordMatcher:
    def __init__(
        self,
        db: Session,
        store: ClaimStore,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.db = db
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock or utcnow

    def search(self, full_name: str, date_of_birth: date, phone: str) -> SearchResult:
        query = ClaimQuery.build(full_name, date_of_birth, phone)
        if not query.is_complete():
            raise RecordNotFound()

        matches = [
            patient
            for patient in patient_crud.list_claimable_patients(self.db, query.date_of_birth)
            if ClaimQuery.from_record(patient) == query
        ]
        if not matches:
            logger.info("Claim search found no record")
            raise RecordNotFound()

        if len(matches) == 1:
            token = self.open_session(matches[0].id)
            logger.info("Claim search matched patient %s (session %s…)", matches[0].id, token[:8])
            return SearchResult(session_token=token)

        context = QueryContext(
            token=new_token(),
            candidate_ids=[patient.id for patient in matches],
            query_digest=self.query_digest(query),
            created_at=self.clock(),
        )
        self.store.save_context(context, self.settings.claim_session_ttl_seconds)
        logger.info("Claim search matched %d records; awaiting selection", len(matches))
        return SearchResult(
            query_token=context.token,
            candidates=tuple(
                ClaimCandidate(id=patient.id, name=patient.full_name, last_visit=patient.last_visit)
                for patient in matches
            ),
        )

    def select_candidate(
        self,
        candidate_id: UUID,
        query_token: str,
        last_visit: date | None = None,
    ) -> str:
        context = self.store.pop_context(query_token)
        if context is None or candidate_id not in context.candidate_ids:
            raise InvalidSelection()

        patient = patient_crud.get_patient(self.db, candidate_id)
        if patient is None or patient.user_id is not None:
            raise InvalidSelection()
        # The record must still satisfy the query that produced the candidate list.
        if not hmac.compare_digest(self.query_digest(ClaimQuery.from_record(patient)), context.query_digest):
            raise InvalidSelection()
        if last_visit and patient.last_visit and last_visit != patient.last_visit:
            raise InvalidSelection()

        token = self.open_session(patient.id)
        logger.info("Claim candidate %s selected (session %s…)", patient.id, token[:8])
        return token

    def open_session(self, patient_id: UUID) -> str:
        now = self.clock()
        session = ClaimSession(
            token=new_token(),
            patient_id=patient_id,
            state=ClaimState.MATCHED,
            created_at=now,
            last_activity_at=now,
        )
        self.store.save_session(session, self.settings.claim_session_ttl_seconds)
        return session.token

    def query_digest(self, query: ClaimQuery) -> str:
        message = f"{query.full_name}|{query.date_of_birth.isoformat()}|{query.phone}"
        return hmac.new(
            self.settings.claim_query_secret.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
