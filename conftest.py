"""
Fixtures compartidas de pruebas.

Base de datos SQLite (aiosqlite) recreada por prueba, cliente HTTP sobre la app
ASGI, operadores internos por rol y proveedor MATIAS simulado.
"""
import asyncio
import os
import tempfile

# Debe configurarse antes de importar app.*
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("MATIAS_ENCRYPTION_KEY", "test-master-secret-for-credential-vault")
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), f'ebilling_test_{os.getpid()}.db')}",
)
os.environ.setdefault("EBILLING_ALERT_EMAILS", "")

from uuid import uuid4

import httpx
import pytest

from app.database.database import AsyncSessionLocal, Base, async_engine
from app.main import app
from app.modules.internal_admin.models import InternalUser, InternalRole
from app.modules.internal_admin.utils import create_internal_token, hash_password
from app.modules.matias.client import MatiasClient
from app.modules.matias.schemas import MatiasConfigUpdate
from app.modules.matias.service import save_matias_config


@pytest.fixture
async def db():
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as session:
        yield session

    MatiasClient._inflight_logins.clear()
    await async_engine.dispose()


@pytest.fixture
async def client(db):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


@pytest.fixture
def tenant_id():
    return uuid4()


async def _create_operator(db, role: InternalRole, email: str) -> InternalUser:
    user = InternalUser(
        email=email,
        name=f"Operador {role.value}",
        role=role.value,
        password_hash=hash_password("Secreta123!"),
        is_active=True,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest.fixture
async def superadmin(db):
    return await _create_operator(db, InternalRole.SUPERADMIN, "super@ops.test")


@pytest.fixture
async def support_agent(db):
    return await _create_operator(db, InternalRole.SUPPORT_AGENT, "support@ops.test")


@pytest.fixture
async def billing_ops(db):
    return await _create_operator(db, InternalRole.BILLING_OPS, "billing@ops.test")


@pytest.fixture
def auth_headers():
    """Encabezado Bearer para un operador."""
    def build(user: InternalUser) -> dict:
        token = create_internal_token(str(user.id), user.email, user.role)
        return {"Authorization": f"Bearer {token}"}
    return build


# ===== PROVEEDOR SIMULADO =====

MATIAS_API_URL = "https://matias.test/api/ubl2.1"


class FakeMatias:
    """Proveedor simulado sobre httpx.MockTransport."""

    def __init__(self, login_delay: float = 0):
        self.logins = 0
        self.calls = []
        self.routes = {}
        self.login_delay = login_delay
        self.login_status = 200

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/auth/login"):
            self.logins += 1
            if self.login_delay:
                await asyncio.sleep(self.login_delay)
            if self.login_status != 200:
                return httpx.Response(self.login_status, json={"message": "Invalid credentials"})
            return httpx.Response(200, json={"access_token": f"token-{self.logins}", "expires_in": 3600})

        relative = path.split("/api/ubl2.1", 1)[-1]
        self.calls.append((request.method, relative))
        route = self.routes.get((request.method, relative))
        if route is None:
            return httpx.Response(404, json={"message": "Not found"})
        response = route(request) if callable(route) else route
        if asyncio.iscoroutine(response):
            response = await response
        return response

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake():
    return FakeMatias()


@pytest.fixture
async def configured_tenant(db, tenant_id):
    await save_matias_config(
        db,
        tenant_id,
        MatiasConfigUpdate(
            base_url=MATIAS_API_URL,
            email="api@tenant.test",
            password="api-secret",
            default_resolution_number="18760000001",
            default_prefix="setp",
        ),
    )
    return tenant_id
