from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
import logging

# Import database components
from app.database.database import create_tables

# Import middleware
from app.common.middleware import SecurityHeadersMiddleware, RequestTimingMiddleware
from app.common.encryption import get_credential_vault

# Import routers
from app.modules.internal_admin.router import router as internal_admin_router
from app.modules.ebilling.router import router as ebilling_router
from app.modules.documents.router import router as documents_router

# Import models for table creation
import app.modules.internal_admin.models
import app.modules.matias.models
import app.modules.ebilling.models
import app.modules.documents.models

from app.core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.ENVIRONMENT == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

INTERNAL_ADMIN_PREFIX = "/api/internal-admin"

# FastAPI app
app = FastAPI(
    title="E-Billing Ops API",
    description="Electronic invoicing submission, reconciliation and usage metering for a multi-tenant POS",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None
)

# Add middleware (order matters!)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestTimingMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(internal_admin_router, prefix=INTERNAL_ADMIN_PREFIX)
app.include_router(ebilling_router, prefix=INTERNAL_ADMIN_PREFIX)
app.include_router(documents_router, prefix=INTERNAL_ADMIN_PREFIX)


@app.get("/")
async def read_root():
    return {
        "message": "E-Billing Ops API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": settings.ENVIRONMENT}


@app.on_event("startup")
async def startup_event():
    logger.info("E-Billing Ops API starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    # Sin secreto maestro no se pueden guardar ni leer credenciales
    get_credential_vault()

    # Create database tables (only for development - use migrations in production)
    if settings.ENVIRONMENT == "development":
        await create_tables()


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("E-Billing Ops API shutting down...")
