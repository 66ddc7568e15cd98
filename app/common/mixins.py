"""
Mixins de modelos.

Los tenants viven en otro servicio: aquí solo se guarda su UUID.
"""
from sqlalchemy import Column, DateTime
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func


class TenantMixin:
    """Fila perteneciente a un tenant (referencia por UUID, sin llave foránea)."""

    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)


class TimestampMixin:
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
