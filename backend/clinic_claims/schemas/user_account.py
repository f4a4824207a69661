from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class UserAccountOut(BaseModel):
    id: UUID
    username: str
    full_name: str | None = None
    email: str | None = None
    role: str
    patient_id: UUID | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)
