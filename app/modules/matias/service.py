"""
Servicio de configuración MATIAS por tenant.
"""
import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.common.encryption import CredentialVault, get_credential_vault
from app.modules.matias.models import TenantIntegrationConfig
from app.modules.matias.schemas import MatiasConfigUpdate, MatiasConfigOut, MatiasConfigBase

logger = logging.getLogger(__name__)


async def get_integration_config(db: AsyncSession, tenant_id: UUID) -> Optional[TenantIntegrationConfig]:
    result = await db.execute(
        select(TenantIntegrationConfig)
        .where(TenantIntegrationConfig.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def to_masked_config(config: TenantIntegrationConfig) -> MatiasConfigOut:
    """Construir la vista enmascarada sin pasar por los validadores de entrada."""
    values = {field: getattr(config, field) for field in MatiasConfigBase.model_fields}
    return MatiasConfigOut.model_construct(
        **values,
        id=config.id,
        tenant_id=config.tenant_id,
        has_password=bool(config.password_encrypted),
        has_token=bool(config.access_token_encrypted),
        token_expires_at=config.token_expires_at,
        created_at=config.created_at,
        updated_at=config.updated_at,
    )


async def save_matias_config(
    db: AsyncSession,
    tenant_id: UUID,
    data: MatiasConfigUpdate,
    vault: Optional[CredentialVault] = None,
) -> TenantIntegrationConfig:
    """
    Crear o actualizar la configuración del tenant.

    - La contraseña se cifra antes de persistirse (solo si se envía).
    - Cualquier guardado invalida el token cacheado: las credenciales o la URL
      pudieron cambiar.
    - Un registro nuevo queda habilitado salvo que se indique lo contrario.
    """
    vault = vault or get_credential_vault()
    config = await get_integration_config(db, tenant_id)
    is_new = config is None

    if is_new:
        config = TenantIntegrationConfig(tenant_id=tenant_id, is_enabled=True, auto_submit_sales=True)
        db.add(config)

    update_data = data.model_dump(exclude_unset=True, exclude={"password"})
    for field, value in update_data.items():
        if field in ("is_enabled", "auto_submit_sales") and value is None:
            continue
        setattr(config, field, value)

    if data.password:
        config.password_encrypted = vault.encrypt(data.password)

    config.access_token_encrypted = None
    config.token_expires_at = None

    await db.commit()
    await db.refresh(config)
    logger.info(f"[MATIAS] Configuration {'created' if is_new else 'updated'} for tenant {tenant_id}")
    return config


async def get_matias_config(db: AsyncSession, tenant_id: UUID) -> Optional[MatiasConfigOut]:
    config = await get_integration_config(db, tenant_id)
    if not config:
        return None
    return to_masked_config(config)
