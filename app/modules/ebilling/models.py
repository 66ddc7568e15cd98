"""
Models for e-billing packages, tenant subscriptions and usage metering.
"""
from sqlalchemy import Column, String, Boolean, DateTime, Text, Integer, ForeignKey, Index, UniqueConstraint, text
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from app.database.database import Base
from app.common.mixins import TenantMixin
import uuid
from enum import Enum


class BillingCycle(str, Enum):
    """Ciclos de facturación de paquetes."""
    MONTHLY = "monthly"
    ANNUAL = "annual"


class OveragePolicy(str, Enum):
    """Qué hacer cuando se agota la cuota incluida."""
    BLOCK = "block"
    ALLOW_AND_CHARGE = "allow_and_charge"
    ALLOW_AND_MARK_OVERAGE = "allow_and_mark_overage"


class SubscriptionStatus(str, Enum):
    """Estados de suscripción."""
    TRIAL = "trial"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELED = "canceled"


class AlertType(str, Enum):
    THRESHOLD_70 = "THRESHOLD_70"
    THRESHOLD_90 = "THRESHOLD_90"
    LIMIT_REACHED = "LIMIT_REACHED"
    AUTH_FAIL = "AUTH_FAIL"
    HIGH_REJECT_RATE = "HIGH_REJECT_RATE"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class EbillingPackage(Base):
    """
    Catálogo de paquetes de documentos electrónicos.
    Editar un paquete no afecta a tenants ya asignados (se guarda un snapshot).
    """
    __tablename__ = "ebilling_packages"

    id = Column(UUID(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    billing_cycle = Column(String(20), nullable=False, default=BillingCycle.MONTHLY.value)
    included_documents = Column(Integer, nullable=False, default=0)

    # Tipos de documento cubiertos
    includes_pos = Column(Boolean, default=True, nullable=False)
    includes_invoice = Column(Boolean, default=True, nullable=False)
    includes_notes = Column(Boolean, default=True, nullable=False)
    includes_support_docs = Column(Boolean, default=True, nullable=False)

    price_usd_cents = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    subscriptions = relationship("TenantEbillingSubscription", back_populates="package")


class TenantEbillingSubscription(Base, TenantMixin):
    """
    Suscripción de un tenant a un paquete. Una por tenant (upsert al asignar).
    """
    __tablename__ = "tenant_ebilling_subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    package_id = Column(UUID(as_uuid=True), ForeignKey("ebilling_packages.id"), nullable=False)
    status = Column(String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value)

    # Ciclo
    cycle_start = Column(DateTime(timezone=True), nullable=False)
    cycle_end = Column(DateTime(timezone=True), nullable=False)
    auto_renew = Column(Boolean, default=True, nullable=False)

    # Excedentes
    overage_policy = Column(String(30), nullable=False, default=OveragePolicy.BLOCK.value)
    overage_price_per_doc_usd_cents = Column(Integer, nullable=True)

    documents_included_snapshot = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    package = relationship("EbillingPackage", back_populates="subscriptions", lazy="joined")

    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_ebilling_subscription_tenant"),
    )


class UsagePeriod(Base, TenantMixin):
    """
    Contadores de consumo por tenant y ciclo.
    remaining_total nunca baja de cero; el consumo por encima de la cuota
    se registra en overage_documents.
    """
    __tablename__ = "tenant_ebilling_usage"

    id = Column(UUID(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    subscription_id = Column(UUID(as_uuid=True), ForeignKey("tenant_ebilling_subscriptions.id"), nullable=False)
    period_start = Column(DateTime(timezone=True), nullable=False, index=True)
    period_end = Column(DateTime(timezone=True), nullable=False)

    used_pos = Column(Integer, nullable=False, default=0)
    used_invoice = Column(Integer, nullable=False, default=0)
    used_notes = Column(Integer, nullable=False, default=0)
    used_support_docs = Column(Integer, nullable=False, default=0)
    used_total = Column(Integer, nullable=False, default=0)
    remaining_total = Column(Integer, nullable=False, default=0)
    overage_documents = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class EbillingCredit(Base, TenantMixin):
    """Ajuste manual de cuota (positivo o negativo). Solo inserción."""
    __tablename__ = "tenant_ebilling_credits"

    id = Column(UUID(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    subscription_id = Column(UUID(as_uuid=True), ForeignKey("tenant_ebilling_subscriptions.id"), nullable=False)
    usage_period_id = Column(UUID(as_uuid=True), ForeignKey("tenant_ebilling_usage.id"), nullable=True)
    delta_documents = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)
    created_by_internal_user_id = Column(UUID(as_uuid=True), ForeignKey("internal_users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class EbillingAlert(Base, TenantMixin):
    """
    Alerta de consumo o de integración.
    A lo sumo una alerta sin reconocer por (tenant, tipo).
    """
    __tablename__ = "ebilling_alerts"

    id = Column(UUID(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    type = Column(String(30), nullable=False)
    severity = Column(String(20), nullable=False, default=AlertSeverity.INFO.value)
    message = Column(Text, nullable=False)
    is_acknowledged = Column(Boolean, default=False, nullable=False)
    acknowledged_by_internal_user_id = Column(UUID(as_uuid=True), ForeignKey("internal_users.id"), nullable=True)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    __table_args__ = (
        Index(
            "uq_ebilling_alert_open",
            "tenant_id",
            "type",
            unique=True,
            postgresql_where=text("is_acknowledged = false"),
            sqlite_where=text("is_acknowledged = 0"),
        ),
    )
