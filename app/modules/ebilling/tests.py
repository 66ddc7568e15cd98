"""
Tests para el ledger de facturación electrónica

Cubren:
- Asignación y cambio de paquete (snapshot, nuevo periodo, auditoría)
- Cálculo de ciclos y renovación automática
- Incremento atómico de consumo, piso en cero y excedentes
- Política de cuota (block / allow_and_charge / allow_and_mark_overage)
- Créditos manuales
- Alertas de umbral deduplicadas y reconocimiento único
- Endpoints y permisos por rol
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from fastapi import HTTPException
from sqlalchemy import select, func

from app.core.config import settings
from app.common.time_utils import utcnow
from app.modules.ebilling import crud, service
from app.modules.ebilling.models import (
    AlertSeverity,
    AlertType,
    BillingCycle,
    EbillingAlert,
    EbillingCredit,
    OveragePolicy,
    UsagePeriod,
)
from app.modules.ebilling.schemas import AssignPackageRequest, CreditCreate, PackageCreate, PackageUpdate
from app.modules.ebilling.seed_packages import PACKAGES_DATA, seed_packages
from app.modules.internal_admin.models import AuditAction, InternalAuditLog


# ===== FIXTURES =====

async def make_package(db, included: int = 10, billing_cycle: BillingCycle = BillingCycle.MONTHLY, name: str = "Pyme"):
    return await crud.create_package(
        db,
        PackageCreate(name=name, included_documents=included, billing_cycle=billing_cycle, price_usd_cents=2900),
    )


async def subscribe(db, tenant_id, package, policy: OveragePolicy = OveragePolicy.BLOCK, price=None, actor_id=None):
    return await service.assign_package_to_tenant(
        db,
        tenant_id,
        AssignPackageRequest(
            package_id=package.id,
            overage_policy=policy,
            overage_price_per_doc_usd_cents=price,
        ),
        actor_id=actor_id,
    )


async def count_open_alerts(db, tenant_id, alert_type: AlertType) -> int:
    result = await db.execute(
        select(func.count(EbillingAlert.id)).where(
            EbillingAlert.tenant_id == tenant_id,
            EbillingAlert.type == alert_type.value,
            EbillingAlert.is_acknowledged == False,
        )
    )
    return result.scalar_one()


# ===== CICLOS =====

class TestCycles:
    def test_monthly_cycle_clamps_day(self):
        start = datetime(2024, 1, 31, tzinfo=timezone.utc)
        assert service.compute_cycle_end(start, BillingCycle.MONTHLY.value) == datetime(2024, 2, 29, tzinfo=timezone.utc)

    def test_annual_cycle(self):
        start = datetime(2025, 3, 15, tzinfo=timezone.utc)
        assert service.compute_cycle_end(start, BillingCycle.ANNUAL.value) == datetime(2026, 3, 15, tzinfo=timezone.utc)

    def test_annual_cycle_from_leap_day(self):
        start = datetime(2024, 2, 29, 10, 30, tzinfo=timezone.utc)
        assert service.compute_cycle_end(start, BillingCycle.ANNUAL.value) == datetime(2025, 2, 28, 10, 30, tzinfo=timezone.utc)

    def test_monthly_cycle_crosses_year(self):
        start = datetime(2024, 12, 15, tzinfo=timezone.utc)
        assert service.compute_cycle_end(start, BillingCycle.MONTHLY.value) == datetime(2025, 1, 15, tzinfo=timezone.utc)

    def test_threshold_boundaries(self):
        assert service.threshold_alert(6, 10) is None
        assert service.threshold_alert(7, 10)[0] == AlertType.THRESHOLD_70
        assert service.threshold_alert(9, 10)[0] == AlertType.THRESHOLD_90
        assert service.threshold_alert(10, 10)[0] == AlertType.LIMIT_REACHED
        assert service.threshold_alert(0, 0)[0] == AlertType.LIMIT_REACHED


# ===== ASIGNACIÓN =====

class TestAssignPackage:
    async def test_assign_creates_subscription_and_period(self, db, tenant_id, superadmin):
        package = await make_package(db, included=100)
        subscription = await subscribe(db, tenant_id, package, actor_id=superadmin.id)

        assert subscription.documents_included_snapshot == 100
        assert subscription.package_id == package.id
        usage = await service.get_current_usage_period(db, tenant_id)
        assert usage.remaining_total == 100
        assert usage.used_total == 0

        logs = (await db.execute(select(InternalAuditLog))).scalars().all()
        assert [log.action_type for log in logs] == [AuditAction.PACKAGE_ASSIGN.value]
        assert logs[0].actor_internal_user_id == superadmin.id

    async def test_change_package_is_audited_and_opens_new_period(self, db, tenant_id, superadmin):
        small = await make_package(db, included=10, name="Emprendedor")
        large = await make_package(db, included=500, name="Empresarial")
        await subscribe(db, tenant_id, small, actor_id=superadmin.id)
        await service.increment_usage(db, tenant_id, "POS")

        subscription = await service.assign_package_to_tenant(
            db,
            tenant_id,
            AssignPackageRequest(package_id=large.id),
            actor_id=superadmin.id,
            now=utcnow() + timedelta(seconds=1),
        )

        assert subscription.documents_included_snapshot == 500
        usage = await service.get_current_usage_period(db, tenant_id)
        assert usage.remaining_total == 500
        assert usage.used_total == 0

        actions = (await db.execute(select(InternalAuditLog.action_type))).scalars().all()
        assert AuditAction.PACKAGE_CHANGE.value in actions

    async def test_snapshot_survives_package_edit(self, db, tenant_id):
        package = await make_package(db, included=50)
        await subscribe(db, tenant_id, package)
        await crud.update_package(db, package.id, PackageUpdate(included_documents=999))

        subscription = await service.get_tenant_subscription(db, tenant_id)
        assert subscription.documents_included_snapshot == 50

    async def test_monthly_period_from_mid_january(self, db, tenant_id):
        package = await make_package(db, included=100)
        await service.assign_package_to_tenant(
            db,
            tenant_id,
            AssignPackageRequest(package_id=package.id),
            actor_id=None,
            now=datetime(2024, 1, 15, tzinfo=timezone.utc),
        )

        usage = await service.get_current_usage_period(db, tenant_id)
        assert usage.period_end.replace(tzinfo=None) == datetime(2024, 2, 15)
        assert usage.remaining_total == 100

    async def test_inactive_package_rejected(self, db, tenant_id):
        package = await make_package(db)
        await crud.update_package(db, package.id, PackageUpdate(is_active=False))
        with pytest.raises(HTTPException) as exc:
            await subscribe(db, tenant_id, package)
        assert exc.value.status_code == 400

    async def test_unknown_package_rejected(self, db, tenant_id):
        with pytest.raises(HTTPException) as exc:
            await service.assign_package_to_tenant(
                db, tenant_id, AssignPackageRequest(package_id=uuid4()), actor_id=None
            )
        assert exc.value.status_code == 404


# ===== CONSUMO =====

class TestUsage:
    async def test_increment_updates_kind_counter(self, db, tenant_id):
        await subscribe(db, tenant_id, await make_package(db, included=100))

        await service.increment_usage(db, tenant_id, "POS")
        await service.increment_usage(db, tenant_id, "POS_CREDIT_NOTE")
        result = await service.increment_usage(db, tenant_id, "SUPPORT_DOC")

        usage = await service.get_current_usage_period(db, tenant_id)
        assert (usage.used_pos, usage.used_notes, usage.used_support_docs) == (1, 1, 1)
        assert usage.used_total == 3
        assert usage.remaining_total == 97
        assert result.used_total == 3
        assert result.is_overage is False

    async def test_without_period_is_noop(self, db, tenant_id):
        assert await service.increment_usage(db, tenant_id, "POS") is None

    async def test_remaining_floors_at_zero_and_counts_overage(self, db, tenant_id):
        await subscribe(db, tenant_id, await make_package(db, included=1), policy=OveragePolicy.ALLOW_AND_MARK_OVERAGE)

        await service.increment_usage(db, tenant_id, "POS")
        result = await service.increment_usage(db, tenant_id, "POS")

        assert result.remaining_total == 0
        assert result.is_overage is True
        usage = await service.get_current_usage_period(db, tenant_id)
        assert usage.overage_documents == 1
        assert usage.used_total == 2

    async def test_threshold_alerts_created_once(self, db, tenant_id):
        await subscribe(db, tenant_id, await make_package(db, included=10), policy=OveragePolicy.ALLOW_AND_MARK_OVERAGE)

        for _ in range(12):
            await service.increment_usage(db, tenant_id, "INVOICE")

        assert await count_open_alerts(db, tenant_id, AlertType.THRESHOLD_70) == 1
        assert await count_open_alerts(db, tenant_id, AlertType.THRESHOLD_90) == 1
        assert await count_open_alerts(db, tenant_id, AlertType.LIMIT_REACHED) == 1

    async def test_seventieth_document_alerts_once(self, db, tenant_id):
        await subscribe(db, tenant_id, await make_package(db, included=100))

        for _ in range(69):
            await service.increment_usage(db, tenant_id, "POS")
        assert await count_open_alerts(db, tenant_id, AlertType.THRESHOLD_70) == 0

        result = await service.increment_usage(db, tenant_id, "POS")
        assert result.used_total == 70
        assert result.alert_type == AlertType.THRESHOLD_70
        assert await count_open_alerts(db, tenant_id, AlertType.THRESHOLD_70) == 1

        await service.increment_usage(db, tenant_id, "POS")
        assert await count_open_alerts(db, tenant_id, AlertType.THRESHOLD_70) == 1

    async def test_usage_summary(self, db, tenant_id):
        await subscribe(db, tenant_id, await make_package(db, included=4))
        await service.increment_usage(db, tenant_id, "POS")

        summary = await service.get_tenant_usage(db, tenant_id)
        assert summary.included_documents == 4
        assert summary.percent_used == 25.0
        assert summary.usage.used_total == 1


# ===== CUOTA =====

class TestQuota:
    async def test_no_subscription_allows(self, db, tenant_id):
        quota = await service.check_quota(db, tenant_id)
        assert quota.allowed is True
        assert quota.reason == "no_subscription_required"

    async def test_expired_cycle_allows(self, db, tenant_id):
        package = await make_package(db, included=0)
        await service.assign_package_to_tenant(
            db, tenant_id, AssignPackageRequest(package_id=package.id),
            actor_id=None, now=utcnow() - timedelta(days=90),
        )
        assert (await service.check_quota(db, tenant_id)).allowed is True

    async def test_block_policy_denies_when_exhausted(self, db, tenant_id):
        await subscribe(db, tenant_id, await make_package(db, included=1))
        assert (await service.check_quota(db, tenant_id)).allowed is True

        await service.increment_usage(db, tenant_id, "POS")
        quota = await service.check_quota(db, tenant_id)
        assert quota.allowed is False
        assert quota.reason == "quota_exceeded"
        assert (quota.used, quota.limit) == (1, 1)

    async def test_allow_and_charge_requires_price(self, db, tenant_id):
        await subscribe(db, tenant_id, await make_package(db, included=0), policy=OveragePolicy.ALLOW_AND_CHARGE, price=15)
        quota = await service.check_quota(db, tenant_id)
        assert quota.allowed is True
        assert quota.reason == "overage_charged"
        assert quota.is_overage is True

    async def test_allow_and_charge_without_price_blocks(self, db, tenant_id):
        await subscribe(db, tenant_id, await make_package(db, included=0), policy=OveragePolicy.ALLOW_AND_CHARGE)
        assert (await service.check_quota(db, tenant_id)).allowed is False

    async def test_allow_and_mark_overage(self, db, tenant_id):
        await subscribe(db, tenant_id, await make_package(db, included=0), policy=OveragePolicy.ALLOW_AND_MARK_OVERAGE)
        quota = await service.check_quota(db, tenant_id)
        assert quota.allowed is True
        assert quota.reason == "overage_marked"


# ===== CRÉDITOS =====

class TestCredits:
    async def test_positive_credit_adds_quota(self, db, tenant_id, billing_ops):
        await subscribe(db, tenant_id, await make_package(db, included=5))
        credit = await service.apply_credit(
            db, tenant_id, CreditCreate(delta_documents=20, reason="Compensación"), actor_id=billing_ops.id
        )

        usage = await service.get_current_usage_period(db, tenant_id)
        assert usage.remaining_total == 25
        assert credit.usage_period_id == usage.id
        actions = (await db.execute(select(InternalAuditLog.action_type))).scalars().all()
        assert AuditAction.CREDIT_ADJUST.value in actions

    async def test_chargeback_reduces_remaining(self, db, tenant_id):
        await subscribe(db, tenant_id, await make_package(db, included=30))
        await service.apply_credit(db, tenant_id, CreditCreate(delta_documents=-10, reason="chargeback"), actor_id=None)

        usage = await service.get_current_usage_period(db, tenant_id)
        assert usage.remaining_total == 20
        credits = (await db.execute(select(EbillingCredit))).scalars().all()
        assert [c.delta_documents for c in credits] == [-10]

    async def test_negative_credit_floors_at_zero(self, db, tenant_id):
        await subscribe(db, tenant_id, await make_package(db, included=5))
        await service.apply_credit(db, tenant_id, CreditCreate(delta_documents=-50, reason="Corrección"), actor_id=None)

        usage = await service.get_current_usage_period(db, tenant_id)
        assert usage.remaining_total == 0
        credits = (await db.execute(select(EbillingCredit))).scalars().all()
        assert credits[0].delta_documents == -50

    async def test_credit_without_subscription_fails(self, db, tenant_id):
        with pytest.raises(HTTPException) as exc:
            await service.apply_credit(db, tenant_id, CreditCreate(delta_documents=1, reason="x"), actor_id=None)
        assert exc.value.status_code == 400


# ===== RENOVACIÓN =====

class TestRenewal:
    async def test_expired_auto_renew_cycle_advances(self, db, tenant_id):
        package = await make_package(db, included=30)
        start = utcnow() - timedelta(days=70)
        await service.assign_package_to_tenant(
            db, tenant_id, AssignPackageRequest(package_id=package.id), actor_id=None, now=start
        )
        await service.increment_usage(db, tenant_id, "POS")

        renewed = await service.renew_subscription_cycles(db)
        assert renewed == 1

        subscription = await service.get_tenant_subscription(db, tenant_id)
        now = utcnow()
        assert subscription.cycle_start.replace(tzinfo=timezone.utc) <= now
        assert subscription.cycle_end.replace(tzinfo=timezone.utc) > now

        usage = await service.get_current_usage_period(db, tenant_id)
        assert usage.used_total == 0
        assert usage.remaining_total == 30
        assert (await db.execute(select(func.count(UsagePeriod.id)))).scalar_one() == 2

    async def test_current_cycle_not_renewed(self, db, tenant_id):
        await subscribe(db, tenant_id, await make_package(db))
        assert await service.renew_subscription_cycles(db) == 0


# ===== ALERTAS =====

class TestAlerts:
    async def test_create_alert_deduplicates(self, db, tenant_id):
        first, created = await service.create_alert(db, tenant_id, AlertType.AUTH_FAIL, AlertSeverity.CRITICAL, "fail")
        second, created_again = await service.create_alert(db, tenant_id, AlertType.AUTH_FAIL, AlertSeverity.CRITICAL, "fail")

        assert created is True
        assert created_again is False
        assert first.id == second.id

    async def test_acknowledge_once(self, db, tenant_id, support_agent):
        alert, _ = await service.create_alert(db, tenant_id, AlertType.AUTH_FAIL, AlertSeverity.CRITICAL, "fail")

        acknowledged = await service.acknowledge_alert(db, alert.id, actor_id=support_agent.id)
        assert acknowledged.is_acknowledged is True
        assert acknowledged.acknowledged_by_internal_user_id == support_agent.id

        with pytest.raises(HTTPException) as exc:
            await service.acknowledge_alert(db, alert.id, actor_id=support_agent.id)
        assert exc.value.status_code == 400

        actions = (await db.execute(select(InternalAuditLog.action_type))).scalars().all()
        assert actions.count(AuditAction.ALERT_ACK.value) == 1

    async def test_acknowledge_unknown_alert(self, db):
        with pytest.raises(HTTPException) as exc:
            await service.acknowledge_alert(db, uuid4(), actor_id=None)
        assert exc.value.status_code == 404

    async def test_new_alert_after_acknowledge(self, db, tenant_id):
        alert, _ = await service.create_alert(db, tenant_id, AlertType.AUTH_FAIL, AlertSeverity.CRITICAL, "fail")
        await service.acknowledge_alert(db, alert.id, actor_id=None)

        new_alert, created = await service.create_alert(db, tenant_id, AlertType.AUTH_FAIL, AlertSeverity.CRITICAL, "again")
        assert created is True
        assert new_alert.id != alert.id

    async def test_list_alerts_filters(self, db, tenant_id):
        await service.create_alert(db, tenant_id, AlertType.AUTH_FAIL, AlertSeverity.CRITICAL, "fail")
        await service.create_alert(db, tenant_id, AlertType.THRESHOLD_70, AlertSeverity.WARNING, "70%")
        await service.create_alert(db, uuid4(), AlertType.AUTH_FAIL, AlertSeverity.CRITICAL, "other")

        alerts, total = await service.list_alerts(db, tenant_id=tenant_id)
        assert total == 2
        alerts, total = await service.list_alerts(db, alert_type=AlertType.AUTH_FAIL)
        assert total == 2

    async def test_new_alert_is_emailed(self, db, tenant_id, monkeypatch):
        from app.modules.email import tasks as email_tasks

        delay = MagicMock()
        monkeypatch.setattr(settings, "EBILLING_ALERT_EMAILS", "ops@ops.test, billing@ops.test")
        monkeypatch.setattr(email_tasks.send_ebilling_alert_email_task, "delay", delay)

        await service.create_alert(db, tenant_id, AlertType.LIMIT_REACHED, AlertSeverity.CRITICAL, "limit")
        await service.create_alert(db, tenant_id, AlertType.LIMIT_REACHED, AlertSeverity.CRITICAL, "limit")

        delay.assert_called_once()
        kwargs = delay.call_args.kwargs
        assert kwargs["recipients"] == ["ops@ops.test", "billing@ops.test"]
        assert kwargs["alert_type"] == AlertType.LIMIT_REACHED.value


# ===== SEED =====

class TestSeedPackages:
    async def test_seed_is_idempotent(self, db):
        assert await seed_packages(db) == len(PACKAGES_DATA)
        assert await seed_packages(db) == 0
        assert len(await crud.list_packages(db)) == len(PACKAGES_DATA)


# ===== ENDPOINTS =====

BASE = "/api/internal-admin"


class TestEbillingEndpoints:
    async def test_requires_token(self, client):
        response = await client.get(f"{BASE}/ebilling/packages")
        assert response.status_code == 401

    async def test_package_crud_roles(self, client, superadmin, support_agent, auth_headers):
        body = {"name": "Pyme", "included_documents": 300, "price_usd_cents": 2900}

        response = await client.post(f"{BASE}/ebilling/packages", json=body, headers=auth_headers(support_agent))
        assert response.status_code == 403

        response = await client.post(f"{BASE}/ebilling/packages", json=body, headers=auth_headers(superadmin))
        assert response.status_code == 201
        package_id = response.json()["id"]

        response = await client.patch(
            f"{BASE}/ebilling/packages/{package_id}",
            json={"price_usd_cents": 3500},
            headers=auth_headers(superadmin),
        )
        assert response.status_code == 200
        assert response.json()["price_usd_cents"] == 3500

        response = await client.get(f"{BASE}/ebilling/packages", headers=auth_headers(support_agent))
        assert response.status_code == 200
        assert len(response.json()) == 1

    async def test_assign_usage_and_credit(self, client, db, tenant_id, billing_ops, support_agent, auth_headers):
        package = await make_package(db, included=10)

        response = await client.post(
            f"{BASE}/tenants/{tenant_id}/ebilling/subscription/assign",
            json={"package_id": str(package.id), "overage_policy": "allow_and_mark_overage"},
            headers=auth_headers(support_agent),
        )
        assert response.status_code == 403

        response = await client.post(
            f"{BASE}/tenants/{tenant_id}/ebilling/subscription/assign",
            json={"package_id": str(package.id), "overage_policy": "allow_and_mark_overage"},
            headers=auth_headers(billing_ops),
        )
        assert response.status_code == 200
        assert response.json()["documents_included_snapshot"] == 10

        response = await client.post(
            f"{BASE}/tenants/{tenant_id}/ebilling/credits",
            json={"delta_documents": 5, "reason": "Bono"},
            headers=auth_headers(billing_ops),
        )
        assert response.status_code == 201

        response = await client.get(f"{BASE}/tenants/{tenant_id}/ebilling/usage", headers=auth_headers(support_agent))
        assert response.status_code == 200
        assert response.json()["usage"]["remaining_total"] == 15

    async def test_subscription_not_found(self, client, superadmin, auth_headers):
        response = await client.get(f"{BASE}/tenants/{uuid4()}/ebilling/subscription", headers=auth_headers(superadmin))
        assert response.status_code == 404

    async def test_acknowledge_endpoint(self, client, db, tenant_id, support_agent, billing_ops, auth_headers):
        alert, _ = await service.create_alert(db, tenant_id, AlertType.AUTH_FAIL, AlertSeverity.CRITICAL, "fail")

        response = await client.post(f"{BASE}/ebilling/alerts/{alert.id}/ack", headers=auth_headers(billing_ops))
        assert response.status_code == 403

        response = await client.post(f"{BASE}/ebilling/alerts/{alert.id}/ack", headers=auth_headers(support_agent))
        assert response.status_code == 200
        assert response.json()["is_acknowledged"] is True

        response = await client.post(f"{BASE}/ebilling/alerts/{alert.id}/ack", headers=auth_headers(support_agent))
        assert response.status_code == 400

        response = await client.get(
            f"{BASE}/ebilling/alerts", params={"is_acknowledged": "true"}, headers=auth_headers(billing_ops)
        )
        assert response.json()["total"] == 1
