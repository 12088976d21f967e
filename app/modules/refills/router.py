"""
API Router for the refill queue: admin queue, checkpoints and the cron sweep.

Checkpoint errors (ValidationError, NotFoundError, RemoteGatewayError) are
turned into HTTP responses by the exception handler registered in app.main.
"""
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from uuid import UUID

from app.dependencies.serviceDependencies import get_refill_service, verify_cron_secret
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext, UserRole

from . import schemas
from .models import RefillStatus
from .service import RefillQueueService

router = APIRouter(
    prefix="/refills",
    tags=["Refills"],
    responses={404: {"description": "Not found"}}
)

require_queue_viewer = AuthDependencies.require_role([UserRole.ADMIN, UserRole.STAFF, UserRole.PROVIDER])


# ===== CRON =====

@router.post(
    "/cron/process-due",
    response_model=schemas.SweepResponse,
    dependencies=[Depends(verify_cron_secret)]
)
async def process_due_refills(
    clinic_id: Optional[UUID] = Query(None, description="Limitar a una clínica"),
    service: RefillQueueService = Depends(get_refill_service)
):
    """
    Barrido de resurtidos vencidos: los toma, cobra el método de pago guardado y
    los avanza al siguiente checkpoint. Si otra instancia ya está corriendo
    responde `skipped: true`.
    """
    return await service.run_due_refills_job(clinic_id)


# ===== QUEUE =====

@router.get("/queue", response_model=List[schemas.RefillOut])
async def get_refill_queue(
    refill_status: Optional[List[RefillStatus]] = Query(None, alias="status", description="Filtrar por estados"),
    patient_id: Optional[UUID] = Query(None),
    due_before: Optional[datetime] = Query(None),
    due_after: Optional[datetime] = Query(None),
    auth_context: AuthContext = Depends(require_queue_viewer),
    service: RefillQueueService = Depends(get_refill_service)
):
    """Cola administrativa ordenada por estado y fecha de resurtido."""
    filters = schemas.RefillQueueFilters(
        clinic_id=auth_context.clinic_id,
        patient_id=patient_id,
        status=refill_status,
        due_before=due_before,
        due_after=due_after
    )
    return await service.get_admin_refill_queue(filters)


@router.get("/stats", response_model=schemas.RefillQueueStats)
async def get_refill_stats(
    auth_context: AuthContext = Depends(require_queue_viewer),
    service: RefillQueueService = Depends(get_refill_service)
):
    return await service.get_refill_queue_stats(auth_context.clinic_id)


@router.get("/patients/{patient_id}/history", response_model=List[schemas.RefillOut])
async def get_patient_history(
    patient_id: UUID,
    limit: int = Query(20, ge=1, le=100),
    auth_context: AuthContext = Depends(require_queue_viewer),
    service: RefillQueueService = Depends(get_refill_service)
):
    return await service.get_patient_refill_history(patient_id, auth_context.clinic_id, limit)


@router.post("/early-request", response_model=schemas.RefillOut, status_code=status.HTTP_201_CREATED)
async def request_early_refill(
    data: schemas.EarlyRefillRequest,
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role()),
    service: RefillQueueService = Depends(get_refill_service)
):
    """
    Solicitud de resurtido anticipado. Un paciente solo puede pedirlo para sí mismo.
    """
    if auth_context.user_role == UserRole.PATIENT and auth_context.user_id != data.patient_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Solo puedes solicitar resurtidos propios"
        )
    return await service.request_early_refill(
        patient_id=data.patient_id,
        clinic_id=auth_context.clinic_id,
        subscription_id=data.subscription_id,
        notes=data.notes
    )


# ===== SINGLE REFILL =====

@router.get("/{refill_id}", response_model=schemas.RefillOut)
async def get_refill(
    refill_id: UUID,
    auth_context: AuthContext = Depends(require_queue_viewer),
    service: RefillQueueService = Depends(get_refill_service)
):
    refill = await service.get_refill(refill_id, auth_context.clinic_id)
    if not refill:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Resurtido no encontrado"
        )
    return refill


@router.patch("/{refill_id}", response_model=schemas.RefillOut)
async def update_refill(
    refill_id: UUID,
    data: schemas.RefillUpdate,
    auth_context: AuthContext = Depends(AuthDependencies.require_staff()),
    service: RefillQueueService = Depends(get_refill_service)
):
    """Editar fecha o datos del medicamento de un resurtido no terminal."""
    return await service.update_refill(refill_id, data, clinic_id=auth_context.clinic_id)


@router.post("/{refill_id}/verify-payment", response_model=schemas.RefillOut)
async def verify_payment(
    refill_id: UUID,
    data: schemas.PaymentVerificationRequest,
    auth_context: AuthContext = Depends(AuthDependencies.require_staff()),
    service: RefillQueueService = Depends(get_refill_service)
):
    """Verificación manual del pago de un resurtido en PENDING_PAYMENT."""
    return await service.verify_payment(
        refill_id,
        method=data.method,
        verified_by=auth_context.user_id,
        payment_reference=data.payment_reference,
        clinic_id=auth_context.clinic_id
    )


@router.post("/{refill_id}/approve", response_model=schemas.RefillOut)
async def approve_refill(
    refill_id: UUID,
    data: schemas.AdminDecisionRequest,
    auth_context: AuthContext = Depends(AuthDependencies.require_staff()),
    service: RefillQueueService = Depends(get_refill_service)
):
    return await service.approve_refill(
        refill_id, admin_id=auth_context.user_id, notes=data.notes, clinic_id=auth_context.clinic_id
    )


@router.post("/{refill_id}/reject", response_model=schemas.RefillOut)
async def reject_refill(
    refill_id: UUID,
    data: schemas.RejectRequest,
    auth_context: AuthContext = Depends(AuthDependencies.require_staff()),
    service: RefillQueueService = Depends(get_refill_service)
):
    return await service.reject_refill(
        refill_id, admin_id=auth_context.user_id, reason=data.reason, clinic_id=auth_context.clinic_id
    )


@router.post("/{refill_id}/queue-for-provider", response_model=schemas.RefillOut)
async def queue_for_provider(
    refill_id: UUID,
    auth_context: AuthContext = Depends(AuthDependencies.require_staff()),
    service: RefillQueueService = Depends(get_refill_service)
):
    return await service.queue_for_provider(refill_id, clinic_id=auth_context.clinic_id)


@router.post("/{refill_id}/submit", response_model=schemas.DispenseResponse)
async def submit_to_pharmacy(
    refill_id: UUID,
    auth_context: AuthContext = Depends(AuthDependencies.require_clinical()),
    service: RefillQueueService = Depends(get_refill_service)
):
    """
    Enviar la prescripción a farmacia. Solo una vez por resurtido; si la
    suscripción sigue activa se programa el siguiente ciclo.
    """
    current, next_refill = await service.submit_to_pharmacy(
        refill_id, provider_id=auth_context.user_id, clinic_id=auth_context.clinic_id
    )
    return schemas.DispenseResponse(
        current=schemas.RefillOut.model_validate(current),
        next=schemas.RefillOut.model_validate(next_refill) if next_refill else None
    )


@router.post("/{refill_id}/hold", response_model=schemas.RefillOut)
async def hold_refill(
    refill_id: UUID,
    data: schemas.ReasonRequest,
    auth_context: AuthContext = Depends(AuthDependencies.require_staff()),
    service: RefillQueueService = Depends(get_refill_service)
):
    return await service.hold_refill(refill_id, reason=data.reason, clinic_id=auth_context.clinic_id)


@router.post("/{refill_id}/resume", response_model=schemas.RefillOut)
async def resume_refill(
    refill_id: UUID,
    auth_context: AuthContext = Depends(AuthDependencies.require_staff()),
    service: RefillQueueService = Depends(get_refill_service)
):
    return await service.resume_refill(refill_id, clinic_id=auth_context.clinic_id)


@router.post("/{refill_id}/cancel", response_model=schemas.RefillOut)
async def cancel_refill(
    refill_id: UUID,
    data: schemas.ReasonRequest,
    auth_context: AuthContext = Depends(AuthDependencies.require_staff()),
    service: RefillQueueService = Depends(get_refill_service)
):
    return await service.cancel_refill(refill_id, reason=data.reason, clinic_id=auth_context.clinic_id)
