"""
Pydantic schemas for e-billing packages, subscriptions, usage and alerts.
"""
from typing import List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from uuid import UUID

from .models import BillingCycle, OveragePolicy, AlertType, AlertSeverity


# ===== PACKAGE SCHEMAS =====

class PackageBase(BaseModel):
    """Schema base para paquetes."""
    name: str = Field(..., min_length=1, max_length=100, description="Nombre del paquete")
    description: Optional[str] = Field(None, description="Descripción del paquete")
    billing_cycle: BillingCycle = Field(default=BillingCycle.MONTHLY, description="Ciclo de facturación")
    included_documents: int = Field(..., ge=0, description="Documentos incluidos por ciclo")
    includes_pos: bool = Field(default=True)
    includes_invoice: bool = Field(default=True)
    includes_notes: bool = Field(default=True)
    includes_support_docs: bool = Field(default=True)
    price_usd_cents: int = Field(default=0, ge=0, description="Precio en centavos de USD")


class PackageCreate(PackageBase):
    """Schema para crear paquete."""
    is_active: bool = Field(default=True)


class PackageUpdate(BaseModel):
    """Schema para actualizar paquete."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    billing_cycle: Optional[BillingCycle] = None
    included_documents: Optional[int] = Field(None, ge=0)
    includes_pos: Optional[bool] = None
    includes_invoice: Optional[bool] = None
    includes_notes: Optional[bool] = None
    includes_support_docs: Optional[bool] = None
    price_usd_cents: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None


class PackageOut(PackageBase):
    """Schema de salida para paquetes."""
    id: UUID
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ===== SUBSCRIPTION SCHEMAS =====

class AssignPackageRequest(BaseModel):
    """Asignar o cambiar el paquete de un tenant."""
    package_id: UUID = Field(..., description="ID del paquete")
    overage_policy: OveragePolicy = Field(default=OveragePolicy.BLOCK, description="Política de excedentes")
    overage_price_per_doc_usd_cents: Optional[int] = Field(None, ge=0, description="Precio por documento excedente")
    auto_renew: bool = Field(default=True)


class SubscriptionOut(BaseModel):
    """Schema de salida para suscripciones."""
    id: UUID
    tenant_id: UUID
    package_id: UUID
    status: str
    cycle_start: datetime
    cycle_end: datetime
    auto_renew: bool
    overage_policy: str
    overage_price_per_doc_usd_cents: Optional[int] = None
    documents_included_snapshot: int
    package: Optional[PackageOut] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ===== USAGE SCHEMAS =====

class UsagePeriodOut(BaseModel):
    id: UUID
    tenant_id: UUID
    subscription_id: UUID
    period_start: datetime
    period_end: datetime
    used_pos: int
    used_invoice: int
    used_notes: int
    used_support_docs: int
    used_total: int
    remaining_total: int
    overage_documents: int = 0

    class Config:
        from_attributes = True


class UsageSummary(BaseModel):
    """Consumo del ciclo actual con el porcentaje sobre lo incluido."""
    subscription: Optional[SubscriptionOut] = None
    usage: Optional[UsagePeriodOut] = None
    included_documents: int = 0
    percent_used: float = 0.0


class UsageIncrement(BaseModel):
    """Resultado del incremento atómico de consumo."""
    used_total: int
    remaining_total: int
    is_overage: bool = False
    alert_type: Optional[AlertType] = None


class QuotaCheck(BaseModel):
    """Decisión de cuota antes de encolar un documento."""
    allowed: bool
    reason: Optional[str] = None
    remaining: Optional[int] = None
    limit: Optional[int] = None
    used: Optional[int] = None
    overage_policy: Optional[OveragePolicy] = None
    is_overage: bool = False


# ===== CREDIT SCHEMAS =====

class CreditCreate(BaseModel):
    delta_documents: int = Field(..., description="Documentos a sumar (positivo) o restar (negativo)")
    reason: str = Field(..., min_length=1, max_length=500, description="Motivo del ajuste")


class CreditOut(BaseModel):
    id: UUID
    tenant_id: UUID
    subscription_id: UUID
    usage_period_id: Optional[UUID] = None
    delta_documents: int
    reason: str
    created_by_internal_user_id: Optional[UUID] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ===== ALERT SCHEMAS =====

class AlertOut(BaseModel):
    id: UUID
    tenant_id: UUID
    type: AlertType
    severity: AlertSeverity
    message: str
    is_acknowledged: bool
    acknowledged_by_internal_user_id: Optional[UUID] = None
    acknowledged_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AlertList(BaseModel):
    alerts: List[AlertOut]
    total: int
