"""
Servicio de administración de la integración de facturación electrónica.

Toda operación que modifica configuración queda en la bitácora de auditoría
con actor, acción, entidad y metadata (sin secretos).
"""
import logging
from typing import Dict, List, Optional
from uuid import UUID

import httpx
from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.common.encryption import CredentialDecryptionError, get_credential_vault
from app.common.time_utils import utcnow, as_utc
from app.modules.ebilling.models import AlertType, AlertSeverity
from app.modules.ebilling.service import create_alert
from app.modules.matias.client import MatiasClient, fetch_access_token
from app.modules.matias.models import TenantIntegrationConfig
from app.modules.matias.schemas import ConnectionTestResult, MatiasConfigUpdate
from app.modules.matias.service import get_integration_config, save_matias_config, to_masked_config
from .audit import record_audit
from .models import AuditAction, InternalUser, PlatformConfig
from .schemas import (
    IntegrationIssue,
    IntegrationStatus,
    InternalTokenResponse,
    InternalUserOut,
    PlatformMatiasConfig,
    PlatformMatiasConfigUpdate,
)
from .utils import create_internal_token, verify_password

logger = logging.getLogger(__name__)

PLATFORM_BASE_URL = "matias_base_url"
PLATFORM_EMAIL = "matias_email"
PLATFORM_PASSWORD = "matias_password"
PLATFORM_ENABLED = "matias_enabled"
PLATFORM_SKIP_SSL = "matias_skip_ssl"
PLATFORM_KEYS = (PLATFORM_BASE_URL, PLATFORM_EMAIL, PLATFORM_PASSWORD, PLATFORM_ENABLED, PLATFORM_SKIP_SSL)


# ===== AUTH =====

async def login_internal_user(db: AsyncSession, email: str, password: str) -> InternalTokenResponse:
    result = await db.execute(select(InternalUser).where(InternalUser.email == email.lower()))
    user = result.scalar_one_or_none()

    if not user or not verify_password(password, user.password_hash):
        logger.info(f"[Auth] Failed internal login for {email}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Credenciales inválidas",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operador inactivo")

    user.last_login_at = utcnow()
    await db.commit()

    token = create_internal_token(str(user.id), user.email, user.role)
    return InternalTokenResponse(access_token=token, user=InternalUserOut.model_validate(user))


# ===== INTEGRACIÓN POR TENANT =====

async def get_integration_status(db: AsyncSession, tenant_id: UUID) -> IntegrationStatus:
    config = await get_integration_config(db, tenant_id)
    if not config:
        return IntegrationStatus(tenant_id=tenant_id, is_configured=False, status="not_configured")

    masked = to_masked_config(config)
    return IntegrationStatus(
        tenant_id=tenant_id,
        is_configured=True,
        status="configured" if config.is_enabled else "disabled",
        base_url=masked.base_url,
        email=masked.email,
        has_password=masked.has_password,
        has_token=masked.has_token,
        token_expires_at=masked.token_expires_at,
        default_resolution_number=masked.default_resolution_number,
        default_prefix=masked.default_prefix,
        starting_number=masked.starting_number,
        ending_number=masked.ending_number,
        credit_note_resolution_number=masked.credit_note_resolution_number,
        credit_note_prefix=masked.credit_note_prefix,
        credit_note_starting_number=masked.credit_note_starting_number,
        credit_note_ending_number=masked.credit_note_ending_number,
        support_doc_resolution_number=masked.support_doc_resolution_number,
        support_doc_prefix=masked.support_doc_prefix,
    )


async def test_connection(
    db: AsyncSession,
    tenant_id: UUID,
    actor_id: Optional[UUID],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ConnectionTestResult:
    """
    Autenticación real contra el proveedor, sin enviar documentos.
    Una falla crea (o reutiliza) la alerta AUTH_FAIL del tenant.
    """
    logger.info(f"[MATIAS] Testing connection for tenant {tenant_id}")
    client = MatiasClient(
        db,
        tenant_id,
        transport=transport,
        timeout=settings.MATIAS_CONNECTION_TEST_TIMEOUT_SECONDS,
    )
    result = await client.test_connection()

    await record_audit(
        db,
        actor_id,
        AuditAction.INTEGRATION_TEST.value,
        tenant_id=tenant_id,
        entity_type="integration",
        entity_id=tenant_id,
        metadata={"success": result.success, "message": result.message},
    )

    if not result.success:
        await create_alert(
            db,
            tenant_id,
            AlertType.AUTH_FAIL,
            AlertSeverity.CRITICAL,
            result.message or "Authentication test failed",
        )
    return result


async def update_integration_config(
    db: AsyncSession,
    tenant_id: UUID,
    data: MatiasConfigUpdate,
    actor_id: Optional[UUID],
) -> TenantIntegrationConfig:
    config = await save_matias_config(db, tenant_id, data)

    updated_fields = sorted(data.model_dump(exclude_unset=True, exclude={"password"}).keys())
    await record_audit(
        db,
        actor_id,
        AuditAction.TENANT_UPDATE.value,
        tenant_id=tenant_id,
        entity_type="integration",
        entity_id=tenant_id,
        metadata={"updated_fields": updated_fields, "password_changed": bool(data.password)},
    )
    return config


async def get_tenants_with_integration_issues(db: AsyncSession) -> List[IntegrationIssue]:
    """Integraciones habilitadas sin token cacheado o con token vencido."""
    result = await db.execute(
        select(TenantIntegrationConfig)
        .where(TenantIntegrationConfig.is_enabled == True)
        .execution_options(populate_existing=True)
    )
    now = utcnow()
    issues = []
    for config in result.scalars().all():
        expires_at = as_utc(config.token_expires_at)
        if not config.access_token_encrypted:
            issues.append(IntegrationIssue(
                tenant_id=config.tenant_id,
                issue="no_token",
                message="No authentication token cached",
            ))
        elif expires_at and expires_at < now:
            issues.append(IntegrationIssue(
                tenant_id=config.tenant_id,
                issue="token_expired",
                message="Authentication token has expired",
            ))
    return issues


# ===== CONFIGURACIÓN DE PLATAFORMA =====

async def _get_platform_entries(db: AsyncSession) -> Dict[str, PlatformConfig]:
    result = await db.execute(select(PlatformConfig).where(PlatformConfig.key.in_(PLATFORM_KEYS)))
    return {entry.key: entry for entry in result.scalars().all()}


async def get_platform_matias_config(db: AsyncSession) -> PlatformMatiasConfig:
    entries = await _get_platform_entries(db)

    def value(key: str) -> str:
        entry = entries.get(key)
        return (entry.value or "") if entry else ""

    password = entries.get(PLATFORM_PASSWORD)
    return PlatformMatiasConfig(
        base_url=value(PLATFORM_BASE_URL) or settings.MATIAS_AUTH_URL,
        email=value(PLATFORM_EMAIL),
        has_password=bool(password and password.encrypted_value),
        is_enabled=value(PLATFORM_ENABLED) == "true",
        skip_ssl=value(PLATFORM_SKIP_SSL) == "true",
    )


async def save_platform_matias_config(
    db: AsyncSession,
    data: PlatformMatiasConfigUpdate,
    actor_id: Optional[UUID],
) -> PlatformMatiasConfig:
    """Upsert de las llaves de plataforma. La contraseña solo se guarda cifrada."""
    vault = get_credential_vault()
    entries = await _get_platform_entries(db)

    plain_values = {
        PLATFORM_BASE_URL: data.base_url or settings.MATIAS_AUTH_URL,
        PLATFORM_EMAIL: data.email or "",
        PLATFORM_ENABLED: "true" if data.is_enabled else "false",
        PLATFORM_SKIP_SSL: "true" if data.skip_ssl else "false",
    }

    def upsert(key: str) -> PlatformConfig:
        entry = entries.get(key)
        if entry is None:
            entry = PlatformConfig(key=key)
            db.add(entry)
            entries[key] = entry
        entry.updated_by = actor_id
        return entry

    for key, plain in plain_values.items():
        entry = upsert(key)
        entry.value = plain
        entry.encrypted_value = None

    if data.password:
        entry = upsert(PLATFORM_PASSWORD)
        entry.value = None
        entry.encrypted_value = vault.encrypt(data.password)

    await db.flush()
    await record_audit(
        db,
        actor_id,
        AuditAction.PLATFORM_CONFIG_UPDATE.value,
        entity_type="platform_config",
        entity_id="matias",
        metadata={
            "base_url": plain_values[PLATFORM_BASE_URL],
            "is_enabled": data.is_enabled,
            "skip_ssl": data.skip_ssl,
            "password_changed": bool(data.password),
        },
        commit=False,
    )
    await db.commit()
    logger.info("[MATIAS] Platform configuration saved")
    return await get_platform_matias_config(db)


async def test_platform_connection(
    db: AsyncSession,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ConnectionTestResult:
    """Prueba de conectividad con las credenciales de plataforma (timeout corto)."""
    entries = await _get_platform_entries(db)
    email_entry = entries.get(PLATFORM_EMAIL)
    password_entry = entries.get(PLATFORM_PASSWORD)
    email = email_entry.value if email_entry else None

    password = None
    if password_entry and password_entry.encrypted_value:
        try:
            password = get_credential_vault().decrypt(password_entry.encrypted_value)
        except CredentialDecryptionError:
            logger.error("[MATIAS] Platform password could not be decrypted")

    if not email or not password:
        return ConnectionTestResult(
            success=False,
            message="Email and Password are required to test connection.",
        )

    skip_ssl_entry = entries.get(PLATFORM_SKIP_SSL)
    verify = not (skip_ssl_entry and skip_ssl_entry.value == "true")

    token, _, error = await fetch_access_token(
        settings.MATIAS_AUTH_URL,
        email,
        password,
        settings.MATIAS_CONNECTION_TEST_TIMEOUT_SECONDS,
        transport=transport,
        verify=verify,
    )
    if token:
        return ConnectionTestResult(success=True, message="Connection successful")
    return ConnectionTestResult(success=False, message=f"Failed to authenticate with MATIAS API: {error}")
