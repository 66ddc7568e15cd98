"""
Tests para la integración MATIAS

Cubren:
- Bóveda de credenciales (cifrado autenticado, llave faltante)
- Ciclo de vida del token (caché, vencimiento, single-flight)
- Re-autenticación única ante 401
- Clasificación de fallas del proveedor (HTML, JSON inválido, timeout, red)
- Interpretación de respuestas de envío
"""
import asyncio
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select, update

from app.core.config import settings
from app.common.encryption import (
    CredentialVault,
    CredentialDecryptionError,
    EncryptionKeyMissingError,
    get_credential_vault,
)
from app.common.time_utils import utcnow
from app.modules.matias.client import MatiasClient, get_matias_client, parse_token_expiry
from app.modules.matias.models import TenantIntegrationConfig
from app.modules.matias.schemas import ErrorKind, MatiasConfigUpdate, ProviderResponse
from app.modules.matias.service import save_matias_config, get_matias_config


# ===== BÓVEDA =====

class TestCredentialVault:
    def test_roundtrip(self):
        vault = get_credential_vault()
        stored = vault.encrypt("super-secret")
        assert stored != "super-secret"
        assert vault.decrypt(stored) == "super-secret"

    def test_same_plaintext_never_collides(self):
        vault = get_credential_vault()
        assert vault.encrypt("same") != vault.encrypt("same")

    def test_tampered_ciphertext_fails(self):
        vault = get_credential_vault()
        nonce, payload = vault.encrypt("secret").split(":")
        tampered = f"{nonce}:{'0' if payload[0] != '0' else '1'}{payload[1:]}"
        with pytest.raises(CredentialDecryptionError):
            vault.decrypt(tampered)

    def test_other_key_cannot_decrypt(self):
        stored = CredentialVault("key-one").encrypt("secret")
        with pytest.raises(CredentialDecryptionError):
            CredentialVault("key-two").decrypt(stored)

    def test_missing_master_secret_is_fatal(self):
        with pytest.raises(EncryptionKeyMissingError):
            CredentialVault(None)


# ===== CONFIGURACIÓN =====

class TestMatiasConfig:
    async def test_password_stored_encrypted(self, db, configured_tenant):
        result = await db.execute(
            select(TenantIntegrationConfig).where(TenantIntegrationConfig.tenant_id == configured_tenant)
        )
        config = result.scalar_one()
        assert config.password_encrypted != "api-secret"
        assert get_credential_vault().decrypt(config.password_encrypted) == "api-secret"
        assert config.is_enabled is True
        assert config.default_prefix == "SETP"

    async def test_masked_view_has_no_secrets(self, db, configured_tenant):
        masked = await get_matias_config(db, configured_tenant)
        dumped = masked.model_dump()
        assert masked.has_password is True
        assert masked.has_token is False
        assert "password" not in dumped
        assert "password_encrypted" not in dumped

    async def test_save_invalidates_cached_token(self, db, configured_tenant, fake):
        assert await get_matias_client(db, configured_tenant, transport=fake.transport) is not None
        masked = await get_matias_config(db, configured_tenant)
        assert masked.has_token is True

        await save_matias_config(db, configured_tenant, MatiasConfigUpdate(email="otro@tenant.test"))
        masked = await get_matias_config(db, configured_tenant)
        assert masked.has_token is False
        assert masked.has_password is True

    def test_invalid_prefix_rejected(self):
        with pytest.raises(ValueError):
            MatiasConfigUpdate(default_prefix="TOOLONG")


# ===== TOKEN =====

class TestTokenLifecycle:
    def test_parse_expiry_prefers_expires_at(self):
        expires = parse_token_expiry({"expires_at": "2030-01-01T00:00:00Z", "expires_in": 10})
        assert expires.year == 2030

    def test_parse_expiry_from_expires_in(self):
        before = utcnow()
        expires = parse_token_expiry({"expires_in": 3600})
        assert timedelta(seconds=3590) < expires - before < timedelta(seconds=3610)

    def test_parse_expiry_default_ttl(self):
        expires = parse_token_expiry({})
        assert expires - utcnow() > timedelta(seconds=settings.MATIAS_TOKEN_DEFAULT_TTL_SECONDS - 60)

    async def test_cached_token_reused(self, db, configured_tenant, fake):
        first = await get_matias_client(db, configured_tenant, transport=fake.transport)
        second = await get_matias_client(db, configured_tenant, transport=fake.transport)
        assert first is not None and second is not None
        assert fake.logins == 1
        assert second.is_authenticated

    async def test_expired_token_triggers_login(self, db, configured_tenant, fake):
        await get_matias_client(db, configured_tenant, transport=fake.transport)
        await db.execute(
            update(TenantIntegrationConfig)
            .where(TenantIntegrationConfig.tenant_id == configured_tenant)
            .values(token_expires_at=utcnow() - timedelta(minutes=1))
        )
        await db.commit()

        client = await get_matias_client(db, configured_tenant, transport=fake.transport)
        assert client is not None
        assert fake.logins == 2

    async def test_concurrent_authentication_single_login(self, db, configured_tenant, fake):
        fake.login_delay = 0.05
        clients = [MatiasClient(db, configured_tenant, transport=fake.transport) for _ in range(5)]
        for client in clients:
            assert await client.load_config()

        results = await asyncio.gather(*(client.authenticate() for client in clients))

        assert all(results)
        assert fake.logins == 1
        assert len({client._access_token for client in clients}) == 1

    async def test_failed_login_returns_none(self, db, configured_tenant, fake):
        fake.login_status = 401
        client = await get_matias_client(db, configured_tenant, transport=fake.transport)
        assert client is None


# ===== LLAMADAS =====

class TestRequest:
    async def test_not_configured_makes_no_http_call(self, db, tenant_id, fake):
        client = await get_matias_client(db, tenant_id, transport=fake.transport)
        assert client is None
        assert fake.logins == 0
        assert fake.calls == []

    async def test_uninitialized_client_not_configured(self, db, tenant_id, fake):
        client = MatiasClient(db, tenant_id, transport=fake.transport)
        result = await client.request("GET", "/documents")
        assert result.success is False
        assert result.error_kind == ErrorKind.NOT_CONFIGURED
        assert fake.calls == []

    async def test_single_reauth_on_401(self, db, configured_tenant, fake):
        attempts = {"count": 0}

        def documents(request):
            attempts["count"] += 1
            if attempts["count"] == 1:
                return httpx.Response(401, json={"message": "Unauthenticated"})
            return httpx.Response(200, json={"data": []})

        fake.routes[("GET", "/documents")] = documents
        client = await get_matias_client(db, configured_tenant, transport=fake.transport)
        result = await client.search_documents()

        assert result.success is True
        assert fake.logins == 2
        assert attempts["count"] == 2

    async def test_second_401_is_terminal(self, db, configured_tenant, fake):
        fake.routes[("GET", "/documents")] = httpx.Response(401, json={"message": "Unauthenticated"})
        client = await get_matias_client(db, configured_tenant, transport=fake.transport)
        result = await client.search_documents()

        assert result.success is False
        assert result.status_code == 401
        assert result.error_kind == ErrorKind.AUTHENTICATION
        assert fake.logins == 2
        assert fake.calls == [("GET", "/documents"), ("GET", "/documents")]

    async def test_html_is_unexpected_format(self, db, configured_tenant, fake):
        fake.routes[("GET", "/documents")] = httpx.Response(
            502, content=b"<!DOCTYPE html><html><body>Bad gateway</body></html>",
            headers={"content-type": "text/html"},
        )
        client = await get_matias_client(db, configured_tenant, transport=fake.transport)
        result = await client.search_documents()
        assert result.error_kind == ErrorKind.UNEXPECTED_FORMAT

    async def test_invalid_json(self, db, configured_tenant, fake):
        fake.routes[("GET", "/documents")] = httpx.Response(
            200, content=b"{not json", headers={"content-type": "application/json"}
        )
        client = await get_matias_client(db, configured_tenant, transport=fake.transport)
        result = await client.search_documents()
        assert result.error_kind == ErrorKind.INVALID_JSON

    async def test_http_error_keeps_message(self, db, configured_tenant, fake):
        fake.routes[("GET", "/documents")] = httpx.Response(422, json={"message": "Resolución inválida"})
        client = await get_matias_client(db, configured_tenant, transport=fake.transport)
        result = await client.search_documents()
        assert result.error_kind == ErrorKind.HTTP
        assert result.status_code == 422
        assert "Resolución inválida" in result.error

    async def test_timeout_and_network_errors(self, db, configured_tenant, fake):
        def timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        def refused(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = await get_matias_client(db, configured_tenant, transport=fake.transport)

        fake.routes[("GET", "/documents")] = timeout
        assert (await client.search_documents()).error_kind == ErrorKind.TIMEOUT

        fake.routes[("GET", "/documents")] = refused
        assert (await client.search_documents()).error_kind == ErrorKind.NETWORK


# ===== RESPUESTAS DE ENVÍO =====

class TestDocumentResponses:
    def _client(self, db, tenant_id):
        return MatiasClient(db, tenant_id)

    async def test_cufe_derives_qr_and_accepts(self, db, tenant_id):
        response = self._client(db, tenant_id)._to_document_response(ProviderResponse(
            success=True,
            status_code=200,
            data={"success": True, "data": {"cufe": "abc123", "track_id": "T-1", "is_valid": 1}},
        ))
        assert response.accepted
        assert response.qr_code.endswith("abc123")
        assert response.track_id == "T-1"

    async def test_already_validated_is_accepted(self, db, tenant_id):
        response = self._client(db, tenant_id)._to_document_response(ProviderResponse(
            success=False,
            status_code=422,
            data={"message": "El documento ya se encuentra validado"},
            error="El documento ya se encuentra validado",
            error_kind=ErrorKind.HTTP,
        ))
        assert response.already_validated is True
        assert response.accepted is True

    async def test_rejection_is_not_accepted(self, db, tenant_id):
        response = self._client(db, tenant_id)._to_document_response(ProviderResponse(
            success=False,
            status_code=422,
            data={"message": "Regla FAD06 rechazada", "errors": ["FAD06"]},
            error="Regla FAD06 rechazada",
            error_kind=ErrorKind.HTTP,
        ))
        assert response.accepted is False
        assert response.errors == ["FAD06"]

    async def test_last_document_number(self, db, configured_tenant, fake):
        fake.routes[("GET", "/documents/last")] = httpx.Response(200, json={"data": {"number": 41}})
        client = await get_matias_client(db, configured_tenant, transport=fake.transport)
        assert await client.get_last_document("18760000001", "SETP") == 41
