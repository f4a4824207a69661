"""Database setup and models."""

from clinic_claims.db.base import Base
from clinic_claims.db.models import Patient, UserAccount

__all__ = [
    "Base",
    "Patient",
    "UserAccount",
]
