from enum import Enum
from pydantic import BaseModel
from typing import Optional
from uuid import UUID


class UserRole(str, Enum):
    ADMIN = "admin"
    PROVIDER = "provider"
    STAFF = "staff"
    PATIENT = "patient"


class AuthContext(BaseModel):
    user_id: UUID
    clinic_id: Optional[UUID] = None
    user_role: Optional[UserRole] = None
