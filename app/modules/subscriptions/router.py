"""
API Router for patient subscription lifecycle.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.ext.asyncio import AsyncSession
from uuid import UUID

from app.common.exceptions import NotFoundError, RemoteGatewayError, ValidationError
from app.database.database import get_async_db
from app.dependencies.serviceDependencies import get_lifecycle_service, verify_cron_secret
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext

from . import crud, schemas
from .models import SubscriptionStatus
from .service import LifecycleResult, SubscriptionLifecycleService

router = APIRouter(
    prefix="/subscriptions",
    tags=["Subscriptions"],
    responses={404: {"description": "Not found"}}
)

_ERROR_STATUS = {
    ValidationError.code: status.HTTP_400_BAD_REQUEST,
    NotFoundError.code: status.HTTP_404_NOT_FOUND,
    RemoteGatewayError.code: status.HTTP_502_BAD_GATEWAY,
}


def _to_response(result: LifecycleResult) -> schemas.LifecycleResponse:
    if not result.success and result.subscription is None:
        raise HTTPException(
            status_code=_ERROR_STATUS.get(result.error_code, status.HTTP_400_BAD_REQUEST),
            detail=result.error
        )
    return schemas.LifecycleResponse(
        success=result.success,
        subscription=schemas.SubscriptionOut.model_validate(result.subscription) if result.subscription else None,
        error=result.error
    )


async def _ensure_in_clinic(db: AsyncSession, subscription_id: UUID, clinic_id: UUID) -> None:
    if not await crud.get_subscription(db, subscription_id, clinic_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Suscripción no encontrada"
        )


# ===== CRON =====

@router.post(
    "/cron/reconcile-billing",
    response_model=schemas.ReconcileResponse,
    dependencies=[Depends(verify_cron_secret)]
)
async def reconcile_billing(
    clinic_id: Optional[UUID] = Query(None, description="Limitar a una clínica"),
    service: SubscriptionLifecycleService = Depends(get_lifecycle_service)
):
    """
    Reintenta crear en el proveedor las suscripciones que quedaron sin confirmar.
    Si otra instancia ya está corriendo responde `skipped: true`.
    """
    return await service.reconcile_unsynced(clinic_id)


# ===== SUBSCRIPTION ENDPOINTS =====

@router.post("", response_model=schemas.LifecycleResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    data: schemas.SubscriptionCreateRequest,
    auth_context: AuthContext = Depends(AuthDependencies.require_staff()),
    service: SubscriptionLifecycleService = Depends(get_lifecycle_service)
):
    """
    Iniciar la suscripción de un paciente.

    La fila local se crea siempre; si el proveedor de cobros falla queda con
    `billing_sync_status = FAILED` y se reintenta en la reconciliación.
    """
    result = await service.create_subscription(
        schemas.CreateSubscriptionInput(clinic_id=auth_context.clinic_id, **data.model_dump())
    )
    return _to_response(result)


@router.get("", response_model=List[schemas.SubscriptionOut])
async def list_subscriptions(
    patient_id: Optional[UUID] = Query(None, description="Filtrar por paciente"),
    subscription_status: Optional[SubscriptionStatus] = Query(None, alias="status", description="Filtrar por estado"),
    skip: int = Query(0, ge=0, description="Número de registros a omitir"),
    limit: int = Query(20, ge=1, le=100, description="Número máximo de registros"),
    auth_context: AuthContext = Depends(AuthDependencies.require_staff()),
    service: SubscriptionLifecycleService = Depends(get_lifecycle_service)
):
    return await service.list_subscriptions(
        auth_context.clinic_id,
        patient_id=patient_id,
        status=subscription_status,
        skip=skip,
        limit=limit
    )


@router.get("/patients/{patient_id}/active", response_model=schemas.SubscriptionOut)
async def get_active_subscription(
    patient_id: UUID,
    auth_context: AuthContext = Depends(AuthDependencies.require_staff()),
    service: SubscriptionLifecycleService = Depends(get_lifecycle_service)
):
    """Suscripción vigente del paciente (activa, pausada o en mora)."""
    subscription = await service.get_active_subscription_for_patient(patient_id)
    if not subscription or subscription.clinic_id != auth_context.clinic_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="El paciente no tiene una suscripción vigente"
        )
    return subscription


@router.get("/{subscription_id}", response_model=schemas.SubscriptionDetail)
async def get_subscription(
    subscription_id: UUID,
    actions_limit: int = Query(10, ge=1, le=100),
    auth_context: AuthContext = Depends(AuthDependencies.require_staff()),
    service: SubscriptionLifecycleService = Depends(get_lifecycle_service)
):
    """Suscripción con sus acciones más recientes."""
    details = await service.get_subscription_with_details(
        subscription_id, auth_context.clinic_id, actions_limit=actions_limit
    )
    if not details:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Suscripción no encontrada"
        )
    subscription, actions = details
    base = schemas.SubscriptionOut.model_validate(subscription)
    return schemas.SubscriptionDetail(
        **base.model_dump(),
        actions=[schemas.SubscriptionActionOut.model_validate(a) for a in actions]
    )


@router.post("/{subscription_id}/pause", response_model=schemas.LifecycleResponse)
async def pause_subscription(
    subscription_id: UUID,
    data: schemas.PauseRequest,
    auth_context: AuthContext = Depends(AuthDependencies.require_staff()),
    db: AsyncSession = Depends(get_async_db),
    service: SubscriptionLifecycleService = Depends(get_lifecycle_service)
):
    """Pausar cobro y resurtidos. Solo suscripciones activas."""
    await _ensure_in_clinic(db, subscription_id, auth_context.clinic_id)
    result = await service.pause_subscription(
        schemas.PauseSubscriptionInput(
            subscription_id=subscription_id,
            reason=data.reason,
            resume_at=data.resume_at,
            paused_by=auth_context.user_id
        )
    )
    return _to_response(result)


@router.post("/{subscription_id}/resume", response_model=schemas.LifecycleResponse)
async def resume_subscription(
    subscription_id: UUID,
    auth_context: AuthContext = Depends(AuthDependencies.require_staff()),
    db: AsyncSession = Depends(get_async_db),
    service: SubscriptionLifecycleService = Depends(get_lifecycle_service)
):
    """Reanudar una suscripción pausada; el período se recalcula desde hoy."""
    await _ensure_in_clinic(db, subscription_id, auth_context.clinic_id)
    result = await service.resume_subscription(
        schemas.ResumeSubscriptionInput(subscription_id=subscription_id, resumed_by=auth_context.user_id)
    )
    return _to_response(result)


@router.post("/{subscription_id}/cancel", response_model=schemas.LifecycleResponse)
async def cancel_subscription(
    subscription_id: UUID,
    data: schemas.CancelRequest,
    auth_context: AuthContext = Depends(AuthDependencies.require_staff()),
    db: AsyncSession = Depends(get_async_db),
    service: SubscriptionLifecycleService = Depends(get_lifecycle_service)
):
    """
    Cancelar la suscripción.

    - `cancel_at_period_end = true` (por defecto): sigue activa hasta el fin del período.
    - `cancel_at_period_end = false`: cancelación inmediata y resurtidos cancelados.
    """
    await _ensure_in_clinic(db, subscription_id, auth_context.clinic_id)
    result = await service.cancel_subscription(
        schemas.CancelSubscriptionInput(
            subscription_id=subscription_id,
            reason=data.reason,
            cancel_at_period_end=data.cancel_at_period_end,
            canceled_by=auth_context.user_id
        )
    )
    return _to_response(result)


@router.post("/{subscription_id}/retry-billing", response_model=schemas.LifecycleResponse)
async def retry_billing(
    subscription_id: UUID,
    auth_context: AuthContext = Depends(AuthDependencies.require_staff()),
    db: AsyncSession = Depends(get_async_db),
    service: SubscriptionLifecycleService = Depends(get_lifecycle_service)
):
    """Reintentar la creación remota de una suscripción sin confirmar."""
    await _ensure_in_clinic(db, subscription_id, auth_context.clinic_id)
    return _to_response(await service.retry_billing_sync(subscription_id))
