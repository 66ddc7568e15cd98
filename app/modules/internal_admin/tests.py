"""
Tests para la consola interna

Cubren:
- Login de operadores y control de acceso por rol
- Prueba de conexión por tenant (auditoría + alerta AUTH_FAIL)
- Actualización de integración auditada sin secretos
- Tenants con problemas de token
- Configuración MATIAS de plataforma
- Bitácora de auditoría y sus filtros
"""
from datetime import timedelta
from uuid import uuid4

import httpx
from sqlalchemy import select, update

from app.common.encryption import get_credential_vault
from app.common.time_utils import utcnow
from app.modules.ebilling.models import AlertType, EbillingAlert
from app.modules.matias.client import get_matias_client
from app.modules.matias.models import TenantIntegrationConfig
from app.modules.matias.schemas import MatiasConfigUpdate
from app.modules.internal_admin import service
from app.modules.internal_admin.audit import list_audit_logs, record_audit
from app.modules.internal_admin.models import AuditAction, InternalAuditLog, PlatformConfig
from app.modules.internal_admin.schemas import PlatformMatiasConfigUpdate
from app.modules.internal_admin.utils import hash_password, verify_password


BASE = "/api/internal-admin"


async def audit_entries(db, action: AuditAction):
    result = await db.execute(select(InternalAuditLog).where(InternalAuditLog.action_type == action.value))
    return result.scalars().all()


# ===== AUTH =====

class TestAuth:
    def test_password_hashing(self):
        hashed = hash_password("Secreta123!")
        assert hashed != "Secreta123!"
        assert verify_password("Secreta123!", hashed)
        assert not verify_password("otra", hashed)

    async def test_login_returns_token(self, client, superadmin):
        response = await client.post(f"{BASE}/auth/login", json={"email": "super@ops.test", "password": "Secreta123!"})
        assert response.status_code == 200
        body = response.json()
        assert body["token_type"] == "bearer"
        assert body["user"]["role"] == "superadmin"

        me = await client.get(
            f"{BASE}/ebilling/integration/issues",
            headers={"Authorization": f"Bearer {body['access_token']}"},
        )
        assert me.status_code == 200

    async def test_wrong_password(self, client, superadmin):
        response = await client.post(f"{BASE}/auth/login", json={"email": "super@ops.test", "password": "mala"})
        assert response.status_code == 401

    async def test_inactive_operator(self, client, db, support_agent):
        support_agent.is_active = False
        await db.commit()
        response = await client.post(f"{BASE}/auth/login", json={"email": "support@ops.test", "password": "Secreta123!"})
        assert response.status_code == 403

    async def test_invalid_token(self, client):
        response = await client.get(
            f"{BASE}/ebilling/integration/issues", headers={"Authorization": "Bearer no-es-un-jwt"}
        )
        assert response.status_code == 401

    async def test_role_enforced(self, client, support_agent, auth_headers):
        response = await client.get(f"{BASE}/matias/config", headers=auth_headers(support_agent))
        assert response.status_code == 403


# ===== INTEGRACIÓN POR TENANT =====

class TestTenantIntegration:
    async def test_status_not_configured(self, db, tenant_id):
        integration = await service.get_integration_status(db, tenant_id)
        assert integration.is_configured is False
        assert integration.status == "not_configured"

    async def test_status_is_masked(self, client, configured_tenant, billing_ops, auth_headers):
        response = await client.get(
            f"{BASE}/tenants/{configured_tenant}/ebilling/integration", headers=auth_headers(billing_ops)
        )
        body = response.json()
        assert body["status"] == "configured"
        assert body["has_password"] is True
        assert "password" not in body
        assert "api-secret" not in response.text

    async def test_connection_success_is_audited(self, db, configured_tenant, fake, support_agent):
        result = await service.test_connection(db, configured_tenant, support_agent.id, transport=fake.transport)

        assert result.success is True
        entries = await audit_entries(db, AuditAction.INTEGRATION_TEST)
        assert len(entries) == 1
        assert entries[0].metadata_json["success"] is True
        assert (await db.execute(select(EbillingAlert))).scalars().all() == []

    async def test_connection_failure_raises_single_alert(self, db, configured_tenant, fake, support_agent):
        fake.login_status = 401

        first = await service.test_connection(db, configured_tenant, support_agent.id, transport=fake.transport)
        await service.test_connection(db, configured_tenant, support_agent.id, transport=fake.transport)

        assert first.success is False
        alerts = (await db.execute(select(EbillingAlert))).scalars().all()
        assert [a.type for a in alerts] == [AlertType.AUTH_FAIL.value]
        assert len(await audit_entries(db, AuditAction.INTEGRATION_TEST)) == 2

    async def test_connection_not_configured(self, db, tenant_id, fake):
        result = await service.test_connection(db, tenant_id, None, transport=fake.transport)
        assert result.success is False
        assert "not configured" in result.message
        assert fake.logins == 0

    async def test_update_audits_without_password(self, client, db, configured_tenant, superadmin, support_agent, auth_headers):
        body = {"email": "nuevo@tenant.test", "password": "otra-clave", "default_prefix": "fe"}

        response = await client.post(
            f"{BASE}/tenants/{configured_tenant}/ebilling/integration/update",
            json=body,
            headers=auth_headers(support_agent),
        )
        assert response.status_code == 403

        response = await client.post(
            f"{BASE}/tenants/{configured_tenant}/ebilling/integration/update",
            json=body,
            headers=auth_headers(superadmin),
        )
        assert response.status_code == 200
        assert response.json()["default_prefix"] == "FE"
        assert "otra-clave" not in response.text

        entries = await audit_entries(db, AuditAction.TENANT_UPDATE)
        assert len(entries) == 1
        metadata = entries[0].metadata_json
        assert metadata["password_changed"] is True
        assert metadata["updated_fields"] == ["default_prefix", "email"]
        assert "password" not in metadata

        config = (await db.execute(
            select(TenantIntegrationConfig)
            .where(TenantIntegrationConfig.tenant_id == configured_tenant)
            .execution_options(populate_existing=True)
        )).scalar_one()
        assert get_credential_vault().decrypt(config.password_encrypted) == "otra-clave"

    async def test_integration_issues(self, db, configured_tenant, fake):
        issues = await service.get_tenants_with_integration_issues(db)
        assert [(i.tenant_id, i.issue) for i in issues] == [(configured_tenant, "no_token")]

        await get_matias_client(db, configured_tenant, transport=fake.transport)
        assert await service.get_tenants_with_integration_issues(db) == []

        await db.execute(
            update(TenantIntegrationConfig)
            .where(TenantIntegrationConfig.tenant_id == configured_tenant)
            .values(token_expires_at=utcnow() - timedelta(hours=1))
        )
        await db.commit()
        issues = await service.get_tenants_with_integration_issues(db)
        assert [i.issue for i in issues] == ["token_expired"]


# ===== PLATAFORMA =====

class TestPlatformConfig:
    async def test_defaults(self, db):
        config = await service.get_platform_matias_config(db)
        assert config.is_enabled is False
        assert config.has_password is False
        assert config.base_url

    async def test_save_encrypts_password(self, db, superadmin):
        saved = await service.save_platform_matias_config(
            db,
            PlatformMatiasConfigUpdate(email="plataforma@ops.test", password="clave-plataforma", is_enabled=True, skip_ssl=True),
            actor_id=superadmin.id,
        )
        assert saved.has_password is True
        assert saved.is_enabled is True
        assert saved.skip_ssl is True

        entry = (await db.execute(
            select(PlatformConfig).where(PlatformConfig.key == service.PLATFORM_PASSWORD)
        )).scalar_one()
        assert entry.value is None
        assert get_credential_vault().decrypt(entry.encrypted_value) == "clave-plataforma"

        entries = await audit_entries(db, AuditAction.PLATFORM_CONFIG_UPDATE)
        assert entries[0].metadata_json["password_changed"] is True

    async def test_save_without_password_keeps_it(self, db, superadmin):
        await service.save_platform_matias_config(
            db, PlatformMatiasConfigUpdate(email="a@ops.test", password="clave"), actor_id=superadmin.id
        )
        saved = await service.save_platform_matias_config(
            db, PlatformMatiasConfigUpdate(email="b@ops.test"), actor_id=superadmin.id
        )
        assert saved.email == "b@ops.test"
        assert saved.has_password is True

    async def test_connection_requires_credentials(self, db, fake):
        result = await service.test_platform_connection(db, transport=fake.transport)
        assert result.success is False
        assert fake.logins == 0

    async def test_connection_with_saved_credentials(self, db, superadmin, fake):
        await service.save_platform_matias_config(
            db, PlatformMatiasConfigUpdate(email="a@ops.test", password="clave"), actor_id=superadmin.id
        )
        assert (await service.test_platform_connection(db, transport=fake.transport)).success is True

        fake.login_status = 401
        result = await service.test_platform_connection(db, transport=fake.transport)
        assert result.success is False
        assert "401" in result.message

    async def test_endpoints_superadmin_only(self, client, superadmin, billing_ops, auth_headers):
        body = {"email": "a@ops.test", "password": "clave", "is_enabled": True}

        response = await client.post(f"{BASE}/matias/config", json=body, headers=auth_headers(billing_ops))
        assert response.status_code == 403

        response = await client.post(f"{BASE}/matias/config", json=body, headers=auth_headers(superadmin))
        assert response.status_code == 200
        assert response.json()["has_password"] is True
        assert "clave" not in response.text


# ===== AUDITORÍA =====

class TestAuditLog:
    async def test_secrets_scrubbed(self, db, superadmin):
        entry = await record_audit(
            db,
            superadmin.id,
            AuditAction.TENANT_UPDATE.value,
            metadata={"password": "x", "nested": {"access_token": "y", "ok": 1}, "id": uuid4()},
        )
        assert "password" not in entry.metadata_json
        assert entry.metadata_json["nested"] == {"ok": 1}
        assert isinstance(entry.metadata_json["id"], str)

    async def test_filters(self, db, superadmin, support_agent, tenant_id):
        await record_audit(db, superadmin.id, AuditAction.TENANT_UPDATE.value, tenant_id=tenant_id)
        await record_audit(db, support_agent.id, AuditAction.DOC_RETRY.value, tenant_id=tenant_id)
        await record_audit(db, support_agent.id, AuditAction.DOC_RETRY.value, tenant_id=uuid4())

        _, total = await list_audit_logs(db, tenant_id=tenant_id)
        assert total == 2
        logs, total = await list_audit_logs(db, action_type=AuditAction.DOC_RETRY.value)
        assert total == 2
        logs, total = await list_audit_logs(db, actor_id=superadmin.id)
        assert [log.action_type for log in logs] == [AuditAction.TENANT_UPDATE.value]

        _, total = await list_audit_logs(db, date_from=utcnow() + timedelta(days=1))
        assert total == 0

    async def test_endpoint(self, client, db, superadmin, billing_ops, support_agent, auth_headers):
        await record_audit(db, superadmin.id, AuditAction.ALERT_ACK.value, metadata={"type": "AUTH_FAIL"})

        response = await client.get(f"{BASE}/audit", headers=auth_headers(support_agent))
        assert response.status_code == 403

        response = await client.get(f"{BASE}/audit", params={"action_type": "ALERT_ACK"}, headers=auth_headers(billing_ops))
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["logs"][0]["metadata"] == {"type": "AUTH_FAIL"}

    async def test_invalid_date_range(self, client, billing_ops, auth_headers):
        response = await client.get(
            f"{BASE}/audit",
            params={"date_from": "2025-02-01T00:00:00Z", "date_to": "2025-01-01T00:00:00Z"},
            headers=auth_headers(billing_ops),
        )
        assert response.status_code == 400
