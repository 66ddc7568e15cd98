"""
Ledger de consumo de documentos electrónicos.

- assign_package_to_tenant: upsert de suscripción + nuevo periodo de consumo.
- increment_usage: un único UPDATE ... RETURNING por documento, luego
  verificación de umbrales sobre el valor devuelto.
- apply_credit: único camino, además del consumo, que modifica remaining_total.
- check_quota: decisión de política de excedentes, una capa arriba del conteo.
"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy import select, update, and_, desc, func, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from dateutil.relativedelta import relativedelta

from app.core.config import settings
from app.common.time_utils import utcnow, as_utc
from app.modules.internal_admin.audit import record_audit
from app.modules.internal_admin.models import AuditAction
from . import crud
from .models import (
    EbillingAlert,
    EbillingCredit,
    TenantEbillingSubscription,
    UsagePeriod,
    BillingCycle,
    OveragePolicy,
    SubscriptionStatus,
    AlertType,
    AlertSeverity,
)
from .schemas import (
    AssignPackageRequest,
    CreditCreate,
    QuotaCheck,
    UsageIncrement,
    UsageSummary,
    SubscriptionOut,
    UsagePeriodOut,
)

logger = logging.getLogger(__name__)

# Columna de consumo por tipo de documento
USAGE_COLUMNS = {
    "POS": "used_pos",
    "INVOICE": "used_invoice",
    "POS_CREDIT_NOTE": "used_notes",
    "POS_DEBIT_NOTE": "used_notes",
    "SUPPORT_DOC": "used_support_docs",
    "SUPPORT_ADJUSTMENT": "used_support_docs",
}

ACTIVE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIAL.value)


def compute_cycle_end(cycle_start: datetime, billing_cycle: str) -> datetime:
    """monthly: +1 mes calendario; annual: +1 año."""
    if billing_cycle == BillingCycle.ANNUAL.value:
        return cycle_start + relativedelta(years=1)
    return cycle_start + relativedelta(months=1)


def percent_used(used_total: int, included: int) -> float:
    if included <= 0:
        return 100.0
    return used_total / included * 100


def threshold_alert(used_total: int, included: int) -> Optional[Tuple[AlertType, AlertSeverity, str]]:
    """Tipo de alerta que corresponde al consumo actual, si alguna."""
    percent = percent_used(used_total, included)
    if percent >= 100:
        return AlertType.LIMIT_REACHED, AlertSeverity.CRITICAL, "Document limit reached"
    if percent >= 90:
        return AlertType.THRESHOLD_90, AlertSeverity.WARNING, f"Usage at {percent:.0f}% of included documents"
    if percent >= 70:
        return AlertType.THRESHOLD_70, AlertSeverity.WARNING, f"Usage at {percent:.0f}% of included documents"
    return None


# ===== SUSCRIPCIONES =====

async def get_tenant_subscription(db: AsyncSession, tenant_id: UUID) -> Optional[TenantEbillingSubscription]:
    result = await db.execute(
        select(TenantEbillingSubscription)
        .where(TenantEbillingSubscription.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_current_usage_period(db: AsyncSession, tenant_id: UUID) -> Optional[UsagePeriod]:
    """Periodo de consumo más reciente del tenant."""
    result = await db.execute(
        select(UsagePeriod)
        .where(UsagePeriod.tenant_id == tenant_id)
        .order_by(desc(UsagePeriod.period_start))
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def assign_package_to_tenant(
    db: AsyncSession,
    tenant_id: UUID,
    data: AssignPackageRequest,
    actor_id: Optional[UUID],
    now: Optional[datetime] = None,
) -> TenantEbillingSubscription:
    """
    Asignar (o cambiar) el paquete de un tenant.

    Snapshot de documentos incluidos en la suscripción y nuevo UsagePeriod con
    la cuota completa. Audita PACKAGE_ASSIGN o PACKAGE_CHANGE.
    """
    package = await crud.get_package(db, data.package_id)
    if not package:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Paquete no encontrado")
    if not package.is_active:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="El paquete está inactivo")

    cycle_start = now or utcnow()
    cycle_end = compute_cycle_end(cycle_start, package.billing_cycle)

    subscription = await get_tenant_subscription(db, tenant_id)
    previous_package_id = subscription.package_id if subscription else None

    if subscription is None:
        subscription = TenantEbillingSubscription(tenant_id=tenant_id)
        db.add(subscription)

    subscription.package_id = package.id
    subscription.status = SubscriptionStatus.ACTIVE.value
    subscription.cycle_start = cycle_start
    subscription.cycle_end = cycle_end
    subscription.auto_renew = data.auto_renew
    subscription.overage_policy = data.overage_policy.value
    subscription.overage_price_per_doc_usd_cents = data.overage_price_per_doc_usd_cents
    subscription.documents_included_snapshot = package.included_documents
    await db.flush()

    db.add(UsagePeriod(
        tenant_id=tenant_id,
        subscription_id=subscription.id,
        period_start=cycle_start,
        period_end=cycle_end,
        remaining_total=package.included_documents,
    ))

    if previous_package_id is None:
        action, metadata = AuditAction.PACKAGE_ASSIGN, {"package_id": package.id}
    else:
        action = AuditAction.PACKAGE_CHANGE
        metadata = {"old_package_id": previous_package_id, "new_package_id": package.id}
    metadata["included_documents"] = package.included_documents
    metadata["overage_policy"] = data.overage_policy.value

    await record_audit(
        db,
        actor_id,
        action.value,
        tenant_id=tenant_id,
        entity_type="subscription",
        entity_id=subscription.id,
        metadata=metadata,
        commit=False,
    )
    await db.commit()
    subscription = await get_tenant_subscription(db, tenant_id)

    logger.info(
        f"[Metering] Package {package.name} assigned to tenant {tenant_id} "
        f"({package.included_documents} docs until {cycle_end.isoformat()})"
    )
    return subscription


async def renew_subscription_cycles(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """
    Avanzar el ciclo de suscripciones con auto_renew vencidas y abrir un nuevo
    periodo de consumo con el snapshot vigente. Devuelve cuántas se renovaron.
    """
    now = now or utcnow()
    result = await db.execute(
        select(TenantEbillingSubscription).where(
            and_(
                TenantEbillingSubscription.auto_renew == True,
                TenantEbillingSubscription.status.in_(ACTIVE_STATUSES),
                TenantEbillingSubscription.cycle_end <= now,
            )
        )
    )
    subscriptions = result.scalars().all()

    for subscription in subscriptions:
        cycle_start = as_utc(subscription.cycle_end)
        billing_cycle = subscription.package.billing_cycle if subscription.package else BillingCycle.MONTHLY.value
        cycle_end = compute_cycle_end(cycle_start, billing_cycle)
        while cycle_end <= now:
            cycle_start, cycle_end = cycle_end, compute_cycle_end(cycle_end, billing_cycle)

        subscription.cycle_start = cycle_start
        subscription.cycle_end = cycle_end
        db.add(UsagePeriod(
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            period_start=cycle_start,
            period_end=cycle_end,
            remaining_total=subscription.documents_included_snapshot,
        ))
        logger.info(f"[Metering] Renewed cycle for tenant {subscription.tenant_id} until {cycle_end.isoformat()}")

    await db.commit()
    return len(subscriptions)


async def get_tenant_usage(db: AsyncSession, tenant_id: UUID) -> UsageSummary:
    subscription = await get_tenant_subscription(db, tenant_id)
    usage = await get_current_usage_period(db, tenant_id)
    included = subscription.documents_included_snapshot if subscription else 0
    used = usage.used_total if usage else 0

    return UsageSummary(
        subscription=SubscriptionOut.model_validate(subscription) if subscription else None,
        usage=UsagePeriodOut.model_validate(usage) if usage else None,
        included_documents=included,
        percent_used=round(percent_used(used, included), 2) if subscription else 0.0,
    )


# ===== CRÉDITOS =====

async def apply_credit(
    db: AsyncSession,
    tenant_id: UUID,
    data: CreditCreate,
    actor_id: Optional[UUID],
) -> EbillingCredit:
    """
    Registrar un crédito inmutable y ajustar remaining_total del periodo actual
    por el delta (con piso en cero).
    """
    subscription = await get_tenant_subscription(db, tenant_id)
    if not subscription:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="El tenant no tiene suscripción de facturación electrónica",
        )

    usage = await get_current_usage_period(db, tenant_id)

    credit = EbillingCredit(
        tenant_id=tenant_id,
        subscription_id=subscription.id,
        usage_period_id=usage.id if usage else None,
        delta_documents=data.delta_documents,
        reason=data.reason,
        created_by_internal_user_id=actor_id,
    )
    db.add(credit)

    if usage:
        adjusted = UsagePeriod.remaining_total + data.delta_documents
        await db.execute(
            update(UsagePeriod)
            .where(UsagePeriod.id == usage.id)
            .values(remaining_total=case((adjusted < 0, 0), else_=adjusted))
        )

    await db.flush()
    await record_audit(
        db,
        actor_id,
        AuditAction.CREDIT_ADJUST.value,
        tenant_id=tenant_id,
        entity_type="credit",
        entity_id=credit.id,
        metadata={"delta_documents": data.delta_documents, "reason": data.reason},
        commit=False,
    )
    await db.commit()
    await db.refresh(credit)

    logger.info(f"[Metering] Credit {data.delta_documents:+d} applied to tenant {tenant_id}: {data.reason}")
    return credit


# ===== CONSUMO =====

async def increment_usage(db: AsyncSession, tenant_id: UUID, kind: str) -> Optional[UsageIncrement]:
    """
    Contar un documento aceptado.

    Contador por tipo, used_total y remaining_total (piso en cero) se
    actualizan en una sola sentencia; el umbral se evalúa sobre el used_total
    devuelto, de modo que dos envíos concurrentes nunca ven el mismo valor.
    Confirma la transacción actual.
    """
    usage = await get_current_usage_period(db, tenant_id)
    if not usage:
        logger.info(f"[Metering] No usage period for tenant {tenant_id}, skipping usage tracking")
        await db.commit()
        return None

    column_name = USAGE_COLUMNS.get(kind, "used_pos")
    column = getattr(UsagePeriod, column_name)
    has_quota = UsagePeriod.remaining_total > 0

    result = await db.execute(
        update(UsagePeriod)
        .where(UsagePeriod.id == usage.id)
        .values({
            column_name: column + 1,
            "used_total": UsagePeriod.used_total + 1,
            "remaining_total": case((has_quota, UsagePeriod.remaining_total - 1), else_=0),
            "overage_documents": UsagePeriod.overage_documents + case((has_quota, 0), else_=1),
        })
        .returning(UsagePeriod.used_total, UsagePeriod.remaining_total, UsagePeriod.overage_documents)
        .execution_options(synchronize_session=False)
    )
    used_total, remaining_total, overage_documents = result.one()
    await db.commit()

    logger.info(f"[Metering] Incremented {column_name} for tenant {tenant_id} (used={used_total}, remaining={remaining_total})")

    subscription = await get_tenant_subscription(db, tenant_id)
    alert_type = None
    if subscription:
        crossing = threshold_alert(used_total, subscription.documents_included_snapshot)
        if crossing:
            alert_type, severity, message = crossing
            await create_alert(db, tenant_id, alert_type, severity, message)

    return UsageIncrement(
        used_total=used_total,
        remaining_total=remaining_total,
        is_overage=overage_documents > usage.overage_documents,
        alert_type=alert_type,
    )


async def check_quota(db: AsyncSession, tenant_id: UUID) -> QuotaCheck:
    """
    ¿Se permite emitir otro documento?
    Sin suscripción activa vigente se permite (facturación no obligatoria).
    """
    subscription = await get_tenant_subscription(db, tenant_id)
    now = utcnow()

    if (
        not subscription
        or subscription.status not in ACTIVE_STATUSES
        or not (as_utc(subscription.cycle_start) <= now <= as_utc(subscription.cycle_end))
    ):
        logger.debug(f"[Quota] No active e-billing subscription for tenant {tenant_id}, allowing")
        return QuotaCheck(allowed=True, reason="no_subscription_required")

    limit = subscription.documents_included_snapshot
    usage = await get_current_usage_period(db, tenant_id)
    used = usage.used_total if usage else 0
    remaining = usage.remaining_total if usage else limit
    policy = OveragePolicy(subscription.overage_policy)

    if remaining > 0:
        return QuotaCheck(allowed=True, remaining=remaining, limit=limit, used=used, overage_policy=policy)

    if policy == OveragePolicy.ALLOW_AND_CHARGE and subscription.overage_price_per_doc_usd_cents:
        logger.info(f"[Quota] Quota exceeded but overage charging allowed for tenant {tenant_id}")
        return QuotaCheck(
            allowed=True, reason="overage_charged", remaining=0, limit=limit,
            used=used, overage_policy=policy, is_overage=True,
        )

    if policy == OveragePolicy.ALLOW_AND_MARK_OVERAGE:
        logger.info(f"[Quota] Quota exceeded, marking overage for tenant {tenant_id}")
        return QuotaCheck(
            allowed=True, reason="overage_marked", remaining=0, limit=limit,
            used=used, overage_policy=policy, is_overage=True,
        )

    logger.info(f"[Quota] Document quota exceeded for tenant {tenant_id}: {used}/{limit}")
    return QuotaCheck(
        allowed=False, reason="quota_exceeded", remaining=0, limit=limit,
        used=used, overage_policy=policy,
    )


# ===== ALERTAS =====

async def get_open_alert(db: AsyncSession, tenant_id: UUID, alert_type: AlertType) -> Optional[EbillingAlert]:
    result = await db.execute(
        select(EbillingAlert).where(
            and_(
                EbillingAlert.tenant_id == tenant_id,
                EbillingAlert.type == alert_type.value,
                EbillingAlert.is_acknowledged == False,
            )
        )
    )
    return result.scalar_one_or_none()


async def create_alert(
    db: AsyncSession,
    tenant_id: UUID,
    alert_type: AlertType,
    severity: AlertSeverity,
    message: str,
) -> Tuple[EbillingAlert, bool]:
    """
    Crear alerta si no existe otra sin reconocer del mismo tipo.

    El índice único parcial (tenant_id, type) WHERE NOT is_acknowledged cubre
    la carrera entre dos procesos: quien pierde obtiene la alerta existente.
    Debe llamarse sin cambios pendientes en la sesión.

    Returns:
        (alerta, creada)
    """
    existing = await get_open_alert(db, tenant_id, alert_type)
    if existing:
        return existing, False

    alert = EbillingAlert(
        tenant_id=tenant_id,
        type=alert_type.value,
        severity=severity.value,
        message=message,
    )
    db.add(alert)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await get_open_alert(db, tenant_id, alert_type)
        if existing is None:
            raise
        return existing, False

    await db.refresh(alert)
    logger.warning(f"[Metering] Alert {alert_type.value} created for tenant {tenant_id}: {message}")
    _dispatch_alert_email(alert)
    return alert, True


def _dispatch_alert_email(alert: EbillingAlert) -> None:
    """Notificación por correo en segundo plano; nunca bloquea el ledger."""
    recipients = settings.alert_recipients
    if not recipients:
        return

    from app.modules.email.tasks import send_ebilling_alert_email_task

    try:
        send_ebilling_alert_email_task.delay(
            recipients=recipients,
            tenant_id=str(alert.tenant_id),
            alert_type=alert.type,
            severity=alert.severity,
            message=alert.message,
        )
    except Exception as e:
        logger.error(f"[Metering] Could not enqueue alert email for {alert.id}: {e}")


async def list_alerts(
    db: AsyncSession,
    tenant_id: Optional[UUID] = None,
    alert_type: Optional[AlertType] = None,
    is_acknowledged: Optional[bool] = None,
    limit: int = 100,
    offset: int = 0,
) -> Tuple[List[EbillingAlert], int]:
    conditions = []
    if tenant_id:
        conditions.append(EbillingAlert.tenant_id == tenant_id)
    if alert_type:
        conditions.append(EbillingAlert.type == alert_type.value)
    if is_acknowledged is not None:
        conditions.append(EbillingAlert.is_acknowledged == is_acknowledged)

    query = select(EbillingAlert)
    count_query = select(func.count(EbillingAlert.id))
    if conditions:
        query = query.where(and_(*conditions))
        count_query = count_query.where(and_(*conditions))

    total = (await db.execute(count_query)).scalar_one()
    result = await db.execute(
        query.order_by(desc(EbillingAlert.created_at)).offset(offset).limit(limit)
    )
    return list(result.scalars().all()), total


async def acknowledge_alert(db: AsyncSession, alert_id: UUID, actor_id: Optional[UUID]) -> EbillingAlert:
    """Reconocer una alerta. Solo una vez: un segundo reconocimiento falla."""
    result = await db.execute(
        update(EbillingAlert)
        .where(and_(EbillingAlert.id == alert_id, EbillingAlert.is_acknowledged == False))
        .values(
            is_acknowledged=True,
            acknowledged_by_internal_user_id=actor_id,
            acknowledged_at=utcnow(),
        )
        .returning(EbillingAlert.id, EbillingAlert.tenant_id, EbillingAlert.type)
        .execution_options(synchronize_session=False)
    )
    row = result.first()

    if row is None:
        exists = (await db.execute(select(EbillingAlert.id).where(EbillingAlert.id == alert_id))).scalar_one_or_none()
        await db.rollback()
        if exists is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alerta no encontrada")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="La alerta ya fue reconocida")

    await record_audit(
        db,
        actor_id,
        AuditAction.ALERT_ACK.value,
        tenant_id=row.tenant_id,
        entity_type="alert",
        entity_id=alert_id,
        metadata={"type": row.type},
        commit=False,
    )
    await db.commit()

    alert = (await db.execute(
        select(EbillingAlert).where(EbillingAlert.id == alert_id).execution_options(populate_existing=True)
    )).scalar_one()
    return alert
