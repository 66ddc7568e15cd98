"""
API Router para paquetes, suscripciones, consumo, créditos y alertas de
facturación electrónica.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from uuid import UUID

from app.dependencies.dbDependecies import async_db_dependency
from app.modules.internal_admin.dependencies import (
    require_any_internal,
    require_superadmin,
    require_support,
    require_billing,
)
from app.modules.internal_admin.models import InternalUser

from . import crud, schemas, service
from .models import AlertType

router = APIRouter(
    tags=["Internal Admin - E-Billing"],
    responses={404: {"description": "Not found"}},
)


# ===== PACKAGE ENDPOINTS =====

@router.get("/ebilling/packages", response_model=List[schemas.PackageOut])
async def get_packages(
    db: async_db_dependency,
    active_only: bool = Query(False, description="Solo paquetes activos"),
    _: InternalUser = Depends(require_any_internal),
):
    return await crud.list_packages(db, active_only=active_only)


@router.post("/ebilling/packages", response_model=schemas.PackageOut, status_code=status.HTTP_201_CREATED)
async def create_package(
    package_data: schemas.PackageCreate,
    db: async_db_dependency,
    _: InternalUser = Depends(require_superadmin),
):
    return await crud.create_package(db, package_data)


@router.patch("/ebilling/packages/{package_id}", response_model=schemas.PackageOut)
async def update_package(
    package_id: UUID,
    package_data: schemas.PackageUpdate,
    db: async_db_dependency,
    _: InternalUser = Depends(require_superadmin),
):
    """
    Actualizar paquete.

    Los cambios no alteran suscripciones vigentes: cada una conserva el
    snapshot de documentos incluidos del momento de la asignación.
    """
    package = await crud.update_package(db, package_id, package_data)
    if not package:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Paquete no encontrado"
        )
    return package


# ===== SUBSCRIPTION ENDPOINTS =====

@router.get("/tenants/{tenant_id}/ebilling/subscription", response_model=schemas.SubscriptionOut)
async def get_subscription(
    tenant_id: UUID,
    db: async_db_dependency,
    _: InternalUser = Depends(require_any_internal),
):
    subscription = await service.get_tenant_subscription(db, tenant_id)
    if not subscription:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="El tenant no tiene suscripción de facturación electrónica"
        )
    return subscription


@router.get("/tenants/{tenant_id}/ebilling/usage", response_model=schemas.UsageSummary)
async def get_usage(
    tenant_id: UUID,
    db: async_db_dependency,
    _: InternalUser = Depends(require_any_internal),
):
    return await service.get_tenant_usage(db, tenant_id)


@router.post("/tenants/{tenant_id}/ebilling/subscription/assign", response_model=schemas.SubscriptionOut)
async def assign_package(
    tenant_id: UUID,
    data: schemas.AssignPackageRequest,
    db: async_db_dependency,
    user: InternalUser = Depends(require_billing),
):
    """
    Asignar o cambiar el paquete del tenant.

    Abre un nuevo periodo de consumo con la cuota completa del paquete.
    """
    return await service.assign_package_to_tenant(db, tenant_id, data, actor_id=user.id)


@router.post(
    "/tenants/{tenant_id}/ebilling/credits",
    response_model=schemas.CreditOut,
    status_code=status.HTTP_201_CREATED,
)
async def create_credit(
    tenant_id: UUID,
    data: schemas.CreditCreate,
    db: async_db_dependency,
    user: InternalUser = Depends(require_billing),
):
    return await service.apply_credit(db, tenant_id, data, actor_id=user.id)


# ===== ALERT ENDPOINTS =====

@router.get("/ebilling/alerts", response_model=schemas.AlertList)
async def get_alerts(
    db: async_db_dependency,
    tenant_id: Optional[UUID] = Query(None),
    type: Optional[AlertType] = Query(None, description="Filtrar por tipo de alerta"),
    is_acknowledged: Optional[bool] = Query(None),
    limit: int = Query(100, ge=1, le=200),
    offset: int = Query(0, ge=0),
    _: InternalUser = Depends(require_any_internal),
):
    alerts, total = await service.list_alerts(
        db,
        tenant_id=tenant_id,
        alert_type=type,
        is_acknowledged=is_acknowledged,
        limit=limit,
        offset=offset,
    )
    return schemas.AlertList(alerts=[schemas.AlertOut.model_validate(a) for a in alerts], total=total)


@router.post("/ebilling/alerts/{alert_id}/ack", response_model=schemas.AlertOut)
async def acknowledge_alert(
    alert_id: UUID,
    db: async_db_dependency,
    user: InternalUser = Depends(require_support),
):
    return await service.acknowledge_alert(db, alert_id, actor_id=user.id)
