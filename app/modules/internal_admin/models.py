"""
Modelos de la consola interna: operadores, auditoría y configuración de plataforma.
"""
from sqlalchemy import Column, String, Boolean, DateTime, Text, JSON, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from uuid import uuid4
from enum import Enum

from app.database.database import Base
from app.common.mixins import TimestampMixin


class InternalRole(str, Enum):
    """Roles de operadores internos."""
    SUPERADMIN = "superadmin"
    SUPPORT_AGENT = "supportagent"
    BILLING_OPS = "billingops"


ALL_INTERNAL_ROLES = [r.value for r in InternalRole]


class AuditAction(str, Enum):
    """Acciones auditadas de la consola interna."""
    TENANT_UPDATE = "TENANT_UPDATE"
    INTEGRATION_TEST = "INTEGRATION_TEST"
    DOC_RETRY = "DOC_RETRY"
    PACKAGE_ASSIGN = "PACKAGE_ASSIGN"
    PACKAGE_CHANGE = "PACKAGE_CHANGE"
    CREDIT_ADJUST = "CREDIT_ADJUST"
    ALERT_ACK = "ALERT_ACK"
    PLATFORM_CONFIG_UPDATE = "PLATFORM_CONFIG_UPDATE"


class InternalUser(Base, TimestampMixin):
    __tablename__ = "internal_users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default=InternalRole.SUPPORT_AGENT.value)
    password_hash = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    last_login_at = Column(DateTime(timezone=True), nullable=True)


class InternalAuditLog(Base):
    """
    Bitácora de acciones administrativas.
    Única fuente de verdad de quién cambió qué configuración de integración y cuándo.
    """
    __tablename__ = "internal_audit_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    actor_internal_user_id = Column(UUID(as_uuid=True), ForeignKey("internal_users.id"), nullable=True, index=True)
    action_type = Column(String(40), nullable=False, index=True)
    tenant_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    entity_type = Column(String(50), nullable=True)
    entity_id = Column(String(64), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)


class PlatformConfig(Base, TimestampMixin):
    """Configuración global clave/valor; los secretos solo en encrypted_value."""
    __tablename__ = "platform_config"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    key = Column(String(100), unique=True, nullable=False)
    value = Column(Text, nullable=True)
    encrypted_value = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    updated_by = Column(UUID(as_uuid=True), nullable=True)
