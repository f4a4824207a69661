import uuid

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    String,
    Uuid,
)
from sqlalchemy.sql import func, text

from clinic_claims.db.base import Base


class UserAccount(Base):
    __tablename__ = "user_accounts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    username = Column(String(150), nullable=False)
    # Lower-cased copy of username; the unique index makes usernames case-insensitive.
    username_normalized = Column(String(150), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(200))
    email = Column(String(255))
    phone = Column(String(30))
    role = Column(String(20), nullable=False, server_default=text("'patient'"))
    patient_id = Column(Uuid(as_uuid=True), index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Patient(Base):
    __tablename__ = "patients"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    mrn = Column(String(50))
    full_name = Column(String(200), nullable=False)
    date_of_birth = Column(Date, nullable=False, index=True)
    phone = Column(String(30))
    email = Column(String(255))
    last_visit = Column(Date)
    # Set once by the claiming flow; never rewritten outside an administrative unlink.
    user_id = Column(Uuid(as_uuid=True), ForeignKey("user_accounts.id"), unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
