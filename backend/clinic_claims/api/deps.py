from fastapi import Depends
from sqlalchemy.orm import Session

from clinic_claims.core.settings import get_settings
from clinic_claims.db.session import get_db
from clinic_claims.services.auth import JwtSessionIssuer
from clinic_claims.services.claim_store import ClaimStore, get_claim_store
from clinic_claims.services.patient_claiming import PatientClaimingService
from clinic_claims.services.telnyx_client import TelnyxClient


def get_store() -> ClaimStore:
    return get_claim_store()


def get_message_sender() -> TelnyxClient:
    return TelnyxClient()


def get_auth_issuer() -> JwtSessionIssuer:
    return JwtSessionIssuer()


def get_claiming_service(
    db: Session = Depends(get_db),
    store: ClaimStore = Depends(get_store),
    sender=Depends(get_message_sender),
    auth_issuer=Depends(get_auth_issuer),
) -> PatientClaimingService:
    return PatientClaimingService(db, store, sender, auth_issuer, settings=get_settings())
