"""
Lookups for clinics and patients.
"""
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Clinic, Patient


async def get_clinic(db: AsyncSession, clinic_id: UUID) -> Optional[Clinic]:
    """Obtener una clínica por ID."""
    return await db.get(Clinic, clinic_id)


async def get_patient(db: AsyncSession, patient_id: UUID, clinic_id: Optional[UUID] = None) -> Optional[Patient]:
    """Obtener un paciente, opcionalmente restringido a una clínica."""
    query = select(Patient).where(Patient.id == patient_id)
    if clinic_id is not None:
        query = query.where(Patient.clinic_id == clinic_id)
    result = await db.execute(query)
    return result.scalar_one_or_none()
