from datetime import date

from sqlalchemy import update
from sqlalchemy.orm import Session

from clinic_claims.db.models import Patient
from clinic_claims.schemas.patient import PatientCreate


def create_patient(db: Session, payload: PatientCreate) -> Patient:
    patient = Patient(**payload.model_dump(exclude_unset=True))
    db.add(patient)
    db.commit()
    db.refresh(patient)
    return patient


def get_patient(db: Session, patient_id) -> Patient | None:
    return db.query(Patient).filter(Patient.id == patient_id).first()


def list_claimable_patients(db: Session, date_of_birth: date) -> list[Patient]:
    """Unlinked patients born on ``date_of_birth``; name and phone are compared by the caller."""
    return (
        db.query(Patient)
        .filter(Patient.date_of_birth == date_of_birth, Patient.user_id.is_(None))
        .order_by(Patient.created_at.asc())
        .all()
    )


def link_patient_account(db: Session, patient_id, user_id) -> bool:
    """Set ``user_id`` only while it is still empty. Does not commit."""
    result = db.execute(
        update(Patient)
        .where(Patient.id == patient_id, Patient.user_id.is_(None))
        .values(user_id=user_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
