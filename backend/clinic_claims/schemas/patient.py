from datetime import date

from pydantic import BaseModel


class PatientBase(BaseModel):
    mrn: str | None = None
    full_name: str
    date_of_birth: date
    phone: str | None = None
    email: str | None = None
    last_visit: date | None = None


class PatientCreate(PatientBase):
    pass

