"""
API Router de la consola interna: autenticación de operadores, configuración
MATIAS (plataforma y tenant) y bitácora de auditoría.
"""
from typing import List, Optional
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.dependencies.dbDependecies import async_db_dependency
from app.modules.matias.schemas import ConnectionTestResult, MatiasConfigOut, MatiasConfigUpdate
from app.modules.matias.service import to_masked_config

from . import service
from .audit import list_audit_logs
from .dependencies import require_any_internal, require_superadmin, require_support, require_billing
from .models import AuditAction, InternalUser
from .schemas import (
    AuditLogList,
    AuditLogOut,
    IntegrationIssue,
    IntegrationStatus,
    InternalLoginRequest,
    InternalTokenResponse,
    PlatformMatiasConfig,
    PlatformMatiasConfigUpdate,
)

router = APIRouter(
    tags=["Internal Admin"],
    responses={404: {"description": "Not found"}},
)


# ===== AUTH =====

@router.post("/auth/login", response_model=InternalTokenResponse)
async def login(data: InternalLoginRequest, db: async_db_dependency):
    """Login de operadores internos. Devuelve un JWT de tipo `internal`."""
    return await service.login_internal_user(db, data.email, data.password)


# ===== CONFIGURACIÓN MATIAS DE PLATAFORMA =====

@router.get("/matias/config", response_model=PlatformMatiasConfig)
async def get_platform_config(
    db: async_db_dependency,
    _: InternalUser = Depends(require_superadmin),
):
    return await service.get_platform_matias_config(db)


@router.post("/matias/config", response_model=PlatformMatiasConfig)
async def save_platform_config(
    data: PlatformMatiasConfigUpdate,
    db: async_db_dependency,
    user: InternalUser = Depends(require_superadmin),
):
    return await service.save_platform_matias_config(db, data, actor_id=user.id)


@router.post("/matias/test-connection", response_model=ConnectionTestResult)
async def test_platform_connection(
    db: async_db_dependency,
    _: InternalUser = Depends(require_superadmin),
):
    return await service.test_platform_connection(db)


# ===== INTEGRACIÓN POR TENANT =====

@router.get("/tenants/{tenant_id}/ebilling/integration", response_model=IntegrationStatus)
async def get_integration(
    tenant_id: UUID,
    db: async_db_dependency,
    _: InternalUser = Depends(require_any_internal),
):
    return await service.get_integration_status(db, tenant_id)


@router.post("/tenants/{tenant_id}/ebilling/integration/test", response_model=ConnectionTestResult)
async def test_integration(
    tenant_id: UUID,
    db: async_db_dependency,
    user: InternalUser = Depends(require_support),
):
    """
    Prueba de autenticación real contra el proveedor.

    Si falla se crea una alerta AUTH_FAIL (una sola abierta por tenant).
    """
    return await service.test_connection(db, tenant_id, actor_id=user.id)


@router.post("/tenants/{tenant_id}/ebilling/integration/update", response_model=MatiasConfigOut)
async def update_integration(
    tenant_id: UUID,
    data: MatiasConfigUpdate,
    db: async_db_dependency,
    user: InternalUser = Depends(require_superadmin),
):
    config = await service.update_integration_config(db, tenant_id, data, actor_id=user.id)
    return to_masked_config(config)


@router.get("/ebilling/integration/issues", response_model=List[IntegrationIssue])
async def get_integration_issues(
    db: async_db_dependency,
    _: InternalUser = Depends(require_any_internal),
):
    return await service.get_tenants_with_integration_issues(db)


# ===== AUDITORÍA =====

@router.get("/audit", response_model=AuditLogList)
async def get_audit_logs(
    db: async_db_dependency,
    tenant_id: Optional[UUID] = Query(None),
    action_type: Optional[AuditAction] = Query(None),
    actor_id: Optional[UUID] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    _: InternalUser = Depends(require_billing),
):
    if date_from and date_to and date_from > date_to:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="date_from debe ser anterior a date_to",
        )

    logs, total = await list_audit_logs(
        db,
        tenant_id=tenant_id,
        action_type=action_type.value if action_type else None,
        actor_id=actor_id,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    return AuditLogList(
        logs=[AuditLogOut.model_validate(log) for log in logs],
        total=total,
        limit=limit,
        offset=offset,
    )
