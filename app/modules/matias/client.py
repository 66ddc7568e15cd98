"""
Cliente HTTP por tenant para el API de documentos electrónicos MATIAS (UBL 2.1 / DIAN).

Ciclo de vida del token:
- initialize(): carga la configuración del tenant y usa el token cacheado si
  sigue vigente; en otro caso autentica.
- authenticate(): login contra el proveedor, cifra y persiste el token. Las
  llamadas concurrentes del mismo tenant comparten un único login en curso.
- request(): ante un 401 re-autentica una sola vez y reintenta una sola vez.

Las fallas esperadas del proveedor (red, timeout, HTML, JSON inválido, HTTP no
2xx) nunca lanzan excepción: se devuelven como respuestas con success=False.
Solo la falta de MATIAS_ENCRYPTION_KEY lanza, al construir el cliente.
"""
import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple
from uuid import UUID

import httpx
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.common.encryption import CredentialVault, CredentialDecryptionError, get_credential_vault
from app.common.time_utils import utcnow, as_utc, parse_provider_datetime
from app.modules.matias.models import TenantIntegrationConfig
from app.modules.matias.service import get_integration_config
from app.modules.matias.schemas import (
    ErrorKind,
    ProviderResponse,
    DocumentResponse,
    StatusResponse,
    ConnectionTestResult,
)

logger = logging.getLogger(__name__)

ALREADY_VALIDATED_MARKERS = ("ya se encuentra validado", "Solicitud procesada por la DIAN")
BODY_METHODS = ("POST", "PUT", "PATCH")


def looks_like_html(response: httpx.Response) -> bool:
    """Páginas de error de balanceadores/proxies en lugar de JSON."""
    content_type = response.headers.get("content-type", "").lower()
    if "text/html" in content_type:
        return True
    head = response.content[:64].lstrip().lower()
    return head.startswith(b"<!doctype") or head.startswith(b"<html")


def parse_token_expiry(data: Dict[str, Any]) -> datetime:
    """
    expires_at (fecha) tiene prioridad, luego expires_in (segundos) y por
    último el TTL por defecto (en la práctica, hasta rotación manual).
    """
    expires_at = data.get("expires_at")
    if expires_at:
        parsed = parse_provider_datetime(str(expires_at))
        if parsed:
            return parsed

    expires_in = data.get("expires_in")
    if expires_in not in (None, ""):
        try:
            return utcnow() + timedelta(seconds=float(expires_in))
        except (TypeError, ValueError):
            logger.warning(f"[MATIAS] Ignoring invalid expires_in value: {expires_in!r}")

    return utcnow() + timedelta(seconds=settings.MATIAS_TOKEN_DEFAULT_TTL_SECONDS)


def _error_text(data: Any, status_code: int) -> str:
    if isinstance(data, dict):
        if data.get("message"):
            return str(data["message"])
        if data.get("errors"):
            return json.dumps(data["errors"], ensure_ascii=False)
    return f"HTTP {status_code}"


def _truthy_flag(value: Any) -> bool:
    return value in (1, True, "1", "true")


def dian_qr_url(cufe: str) -> str:
    return f"{settings.MATIAS_DIAN_QR_URL}{cufe}"


async def fetch_access_token(
    auth_url: str,
    email: str,
    password: str,
    timeout: float,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    verify: bool = True,
) -> Tuple[Optional[str], Optional[datetime], Optional[str]]:
    """
    Login contra el proveedor.

    Returns:
        (token, expires_at, error). En caso de falla token es None y error describe la causa.
    """
    endpoint = f"{auth_url.rstrip('/')}/auth/login"
    logger.info(f"[MATIAS] Authenticating with {endpoint}")
    payload = {"email": email, "password": password, "remember_me": 0}

    try:
        async with httpx.AsyncClient(transport=transport, timeout=timeout, verify=verify) as http:
            response = await http.post(endpoint, json=payload, headers={"Accept": "application/json"})
    except httpx.TimeoutException:
        logger.error(f"[MATIAS] Auth timed out after {timeout}s")
        return None, None, f"Timeout after {timeout}s"
    except httpx.HTTPError as e:
        logger.error(f"[MATIAS] Auth network error: {type(e).__name__}")
        return None, None, f"Network error: {type(e).__name__}"

    logger.info(f"[MATIAS] Auth response status: {response.status_code}")

    if looks_like_html(response):
        logger.error("[MATIAS] Auth returned HTML instead of JSON. Check the API URL.")
        return None, None, "Unexpected HTML response from provider"

    if not response.is_success:
        return None, None, f"Authentication rejected (HTTP {response.status_code})"

    try:
        data = response.json()
    except ValueError:
        logger.error("[MATIAS] Failed to parse auth response")
        return None, None, "Invalid JSON in auth response"

    token = data.get("access_token") if isinstance(data, dict) else None
    if not token:
        return None, None, "Auth response without access_token"

    return token, parse_token_expiry(data), None


class MatiasClient:
    """
    Cliente autenticado de un tenant.

    Usage:
        client = MatiasClient(db, tenant_id)
        if await client.initialize():
            response = await client.submit_pos(payload)
    """

    # Logins en curso por tenant (single-flight)
    _inflight_logins: Dict[UUID, "asyncio.Task"] = {}

    def __init__(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        vault: Optional[CredentialVault] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        self.db = db
        self.tenant_id = tenant_id
        self.vault = vault or get_credential_vault()
        self.transport = transport
        self.timeout = timeout or settings.MATIAS_REQUEST_TIMEOUT_SECONDS
        self.auth_url = settings.MATIAS_AUTH_URL
        self.api_url = settings.MATIAS_API_URL
        self.config: Optional[TenantIntegrationConfig] = None
        self.email: Optional[str] = None
        self._password: Optional[str] = None
        self._access_token: Optional[str] = None
        self.token_expires_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self._access_token) and self.token_expires_at is not None and self.token_expires_at > utcnow()

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=self.timeout)

    # ===== CICLO DE VIDA =====

    async def load_config(self) -> bool:
        """Cargar configuración y credenciales del tenant sin autenticar."""
        config = await get_integration_config(self.db, self.tenant_id)

        if not config:
            self.last_error = "No configuration found"
        elif not config.is_enabled:
            self.last_error = "Integration disabled"
        elif not config.email:
            self.last_error = "Email not configured"
        elif not config.password_encrypted:
            self.last_error = "Password not configured"
        else:
            self.last_error = None

        if self.last_error:
            logger.info(f"[MATIAS] Tenant {self.tenant_id} not ready: {self.last_error}")
            return False

        try:
            self._password = self.vault.decrypt(config.password_encrypted)
        except CredentialDecryptionError:
            logger.error(f"[MATIAS] Failed to decrypt password for tenant {self.tenant_id}")
            self.last_error = "Stored password could not be decrypted"
            return False

        self.config = config
        self.email = config.email
        if config.base_url:
            self.api_url = config.base_url.rstrip("/")
        return True

    async def initialize(self) -> bool:
        if not await self.load_config():
            return False

        config = self.config
        expires_at = as_utc(config.token_expires_at)
        if config.access_token_encrypted and expires_at and expires_at > utcnow():
            try:
                self._access_token = self.vault.decrypt(config.access_token_encrypted)
                self.token_expires_at = expires_at
                logger.debug(f"[MATIAS] Using cached token for tenant {self.tenant_id}")
                return True
            except CredentialDecryptionError:
                logger.warning(f"[MATIAS] Cached token unreadable for tenant {self.tenant_id}, re-authenticating")

        return await self.authenticate()

    async def authenticate(self) -> bool:
        """
        Login con las credenciales del tenant. Si ya hay un login en curso para
        el mismo tenant se espera su resultado en lugar de emitir otro.
        """
        if not self.email or not self._password:
            self.last_error = self.last_error or "Credentials not loaded"
            return False

        inflight = MatiasClient._inflight_logins.get(self.tenant_id)
        if inflight is not None and not inflight.done():
            logger.info(f"[MATIAS] Joining in-flight authentication for tenant {self.tenant_id}")
            token, expires_at, error = await asyncio.shield(inflight)
            return self._adopt_token(token, expires_at, error)

        task = asyncio.ensure_future(
            fetch_access_token(self.auth_url, self.email, self._password, self.timeout, self.transport)
        )
        MatiasClient._inflight_logins[self.tenant_id] = task
        try:
            token, expires_at, error = await task
        finally:
            if MatiasClient._inflight_logins.get(self.tenant_id) is task:
                del MatiasClient._inflight_logins[self.tenant_id]

        if not self._adopt_token(token, expires_at, error):
            return False

        await self.db.execute(
            update(TenantIntegrationConfig)
            .where(TenantIntegrationConfig.tenant_id == self.tenant_id)
            .values(
                access_token_encrypted=self.vault.encrypt(token),
                token_expires_at=expires_at,
            )
        )
        await self.db.commit()
        logger.info(f"[MATIAS] Authentication successful for tenant {self.tenant_id}, token cached")
        return True

    def _adopt_token(self, token: Optional[str], expires_at: Optional[datetime], error: Optional[str]) -> bool:
        if not token:
            self.last_error = error or "Authentication failed"
            self._access_token = None
            self.token_expires_at = None
            logger.warning(f"[MATIAS] Authentication failed for tenant {self.tenant_id}: {self.last_error}")
            return False
        self._access_token = token
        self.token_expires_at = expires_at
        self.last_error = None
        return True

    # ===== LLAMADA GENÉRICA =====

    async def request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        retry_on_401: bool = True,
    ) -> ProviderResponse:
        if not self._access_token:
            return ProviderResponse(
                success=False,
                error="Client not initialized",
                error_kind=ErrorKind.NOT_CONFIGURED,
            )

        method = method.upper()
        url = f"{self.api_url}{path}"
        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/json",
        }

        try:
            async with self._http() as http:
                response = await http.request(
                    method,
                    url,
                    json=body if method in BODY_METHODS and body is not None else None,
                    params=params,
                    headers=headers,
                )
        except httpx.TimeoutException:
            logger.error(f"[MATIAS] {method} {path} timed out after {self.timeout}s")
            return ProviderResponse(
                success=False,
                error=f"Timeout after {self.timeout}s",
                error_kind=ErrorKind.TIMEOUT,
            )
        except httpx.HTTPError as e:
            logger.error(f"[MATIAS] {method} {path} network error: {e}")
            return ProviderResponse(
                success=False,
                error=str(e) or type(e).__name__,
                error_kind=ErrorKind.NETWORK,
            )

        if response.status_code == 401:
            if retry_on_401:
                logger.info(f"[MATIAS] 401 on {path}, re-authenticating tenant {self.tenant_id}")
                if await self.authenticate():
                    return await self.request(method, path, body, params, retry_on_401=False)
            return ProviderResponse(
                success=False,
                status_code=401,
                error="Authentication failed",
                error_kind=ErrorKind.AUTHENTICATION,
            )

        if looks_like_html(response):
            logger.error(f"[MATIAS] {method} {path} returned HTML (status {response.status_code}). Check the API URL.")
            return ProviderResponse(
                success=False,
                status_code=response.status_code,
                error="Unexpected HTML response from provider",
                error_kind=ErrorKind.UNEXPECTED_FORMAT,
            )

        try:
            data = response.json() if response.content else None
        except ValueError:
            return ProviderResponse(
                success=False,
                status_code=response.status_code,
                error="Invalid JSON in provider response",
                error_kind=ErrorKind.INVALID_JSON,
            )

        if not response.is_success:
            return ProviderResponse(
                success=False,
                status_code=response.status_code,
                data=data,
                error=_error_text(data, response.status_code),
                error_kind=ErrorKind.HTTP,
            )

        return ProviderResponse(success=True, status_code=response.status_code, data=data)

    # ===== DOCUMENTOS =====

    async def submit_invoice(self, payload: Dict[str, Any]) -> DocumentResponse:
        return await self._submit("/invoice", payload)

    async def submit_pos(self, payload: Dict[str, Any]) -> DocumentResponse:
        # POS electrónico comparte endpoint con factura
        return await self._submit("/invoice", payload)

    async def submit_credit_note(self, payload: Dict[str, Any]) -> DocumentResponse:
        return await self._submit("/notes/credit", payload)

    async def submit_debit_note(self, payload: Dict[str, Any]) -> DocumentResponse:
        return await self._submit("/notes/debit", payload)

    async def submit_support_document(self, payload: Dict[str, Any]) -> DocumentResponse:
        return await self._submit("/ds/document", payload)

    async def submit_support_adjustment_note(self, payload: Dict[str, Any]) -> DocumentResponse:
        return await self._submit("/ds/adjustment-note", payload)

    async def _submit(self, path: str, payload: Dict[str, Any]) -> DocumentResponse:
        result = await self.request("POST", path, payload)
        return self._to_document_response(result)

    def _to_document_response(self, result: ProviderResponse) -> DocumentResponse:
        body = result.data if isinstance(result.data, dict) else {}
        inner = body.get("data") if isinstance(body.get("data"), dict) else {}
        json_data = inner.get("jsonData") if isinstance(inner.get("jsonData"), dict) else {}

        message = body.get("message") or result.error
        success = result.success and body.get("success", True) is not False
        is_valid = _truthy_flag(inner.get("is_valid")) or _truthy_flag(body.get("is_valid"))
        already_validated = not success and (
            is_valid or any(marker in (message or "") for marker in ALREADY_VALIDATED_MARKERS)
        )

        cufe = (
            inner.get("cufe")
            or inner.get("cude")
            or json_data.get("cufe")
            or inner.get("uuid")
            or inner.get("XmlDocumentKey")
        )
        qr_code = inner.get("qr_code") or json_data.get("qr") or json_data.get("qrDian")
        if cufe and not qr_code:
            qr_code = dian_qr_url(cufe)

        number = inner.get("number") or inner.get("document_number")
        track_id = inner.get("track_id") or inner.get("trackId") or body.get("track_id")

        return DocumentResponse(
            success=success,
            message=message,
            track_id=str(track_id) if track_id else None,
            document_number=str(number) if number else None,
            cufe=cufe,
            qr_code=qr_code,
            is_valid=is_valid,
            already_validated=already_validated,
            errors=body.get("errors"),
            error_kind=result.error_kind if not result.success else (None if success else ErrorKind.HTTP),
            status_code=result.status_code,
            raw=body or None,
        )

    # ===== CONSULTAS =====

    async def search_documents(self, **filters) -> ProviderResponse:
        params = {k: v for k, v in filters.items() if v is not None}
        return await self.request("GET", "/documents", params=params)

    async def get_last_document(self, resolution: str, prefix: str) -> Optional[int]:
        """Último consecutivo emitido en la serie; None si no se pudo consultar."""
        result = await self.request(
            "GET", "/documents/last", params={"resolution": resolution, "prefix": prefix}
        )
        if not result.success or not isinstance(result.data, dict):
            return None
        nested = result.data.get("data") if isinstance(result.data.get("data"), dict) else {}
        number = result.data.get("number") or nested.get("number") or 0
        try:
            return int(number)
        except (TypeError, ValueError):
            logger.warning(f"[MATIAS] Unexpected last document number: {number!r}")
            return None

    async def get_status(
        self,
        order_number: Optional[str] = None,
        resolution: Optional[str] = None,
        number: Optional[str] = None,
        prefix: Optional[str] = None,
    ) -> StatusResponse:
        params = {
            "order_number": order_number,
            "resolution": resolution,
            "number": number,
            "prefix": prefix,
        }
        result = await self.request("GET", "/status", params={k: v for k, v in params.items() if v is not None})
        return self._to_status_response(result)

    async def get_status_by_track_id(self, track_id: str) -> StatusResponse:
        result = await self.request("GET", f"/status/document/{track_id}")
        return self._to_status_response(result)

    def _to_status_response(self, result: ProviderResponse) -> StatusResponse:
        if not result.success:
            return StatusResponse(success=False, error=result.error, error_kind=result.error_kind)

        body = result.data if isinstance(result.data, dict) else {}
        inner = body.get("data") if isinstance(body.get("data"), dict) else body
        cufe = inner.get("cufe") or inner.get("cude") or inner.get("document_key")
        qr_code = inner.get("qr_code")
        if cufe and not qr_code:
            qr_code = dian_qr_url(cufe)
        is_valid = inner.get("is_valid")

        return StatusResponse(
            success=body.get("success", True) is not False,
            status=inner.get("status"),
            status_message=inner.get("status_message") or body.get("message"),
            document_key=inner.get("document_key"),
            cufe=cufe,
            qr_code=qr_code,
            is_valid=_truthy_flag(is_valid) if is_valid is not None else None,
            raw=body or None,
        )

    # ===== DESCARGAS =====

    async def download_pdf(self, track_id: str, regenerate: bool = False) -> Optional[bytes]:
        return await self._download("GET", f"/documents/pdf/{track_id}", "application/pdf", regenerate)

    async def download_attached(self, track_id: str, regenerate: bool = False) -> Optional[bytes]:
        return await self._download("POST", f"/documents/attached/{track_id}", "application/zip", regenerate)

    async def _download(
        self,
        method: str,
        path: str,
        accept: str,
        regenerate: bool,
        retry_on_401: bool = True,
    ) -> Optional[bytes]:
        """Descarga binaria; None ante cualquier falla."""
        if not self._access_token:
            return None

        params = {"regenerate": 1} if regenerate else None
        headers = {"Authorization": f"Bearer {self._access_token}", "Accept": accept}
        try:
            async with self._http() as http:
                response = await http.request(method, f"{self.api_url}{path}", params=params, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"[MATIAS] Error downloading {path}: {type(e).__name__}")
            return None

        if response.status_code == 401 and retry_on_401:
            if await self.authenticate():
                return await self._download(method, path, accept, regenerate, retry_on_401=False)
            return None

        if not response.is_success or looks_like_html(response) or not response.content:
            logger.warning(f"[MATIAS] Download {path} failed with status {response.status_code}")
            return None

        return response.content

    # ===== DIAGNÓSTICO =====

    async def test_connection(self) -> ConnectionTestResult:
        """Ida y vuelta real de autenticación, sin enviar documentos."""
        if not await self.load_config():
            return ConnectionTestResult(
                success=False,
                message=f"MATIAS integration not configured or disabled ({self.last_error})",
            )

        if await self.authenticate():
            return ConnectionTestResult(success=True, message="Connection successful")

        return ConnectionTestResult(
            success=False,
            message=f"Failed to authenticate with MATIAS API: {self.last_error}",
        )


async def get_matias_client(
    db: AsyncSession,
    tenant_id: UUID,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[MatiasClient]:
    """Cliente listo para usar o None si la integración no está disponible."""
    client = MatiasClient(db, tenant_id, transport=transport)
    if not await client.initialize():
        return None
    return client
