from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool
from app.core.config import settings
import logging

logger = logging.getLogger(__name__)

# Async engine for application use (API y tareas Celery)
if settings.ENVIRONMENT == "test":
    async_engine = create_async_engine(
        settings.async_database_url,
        echo=False,
        poolclass=NullPool
    )
else:
    async_engine = create_async_engine(
        settings.async_database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        echo=settings.DEBUG
    )

# Async session for application
AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False
)

Base = declarative_base()


# Async dependency for application endpoints
async def get_async_db() -> AsyncSession:
    """Genera una sesión de base de datos asíncrona para endpoints."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception as e:
            logger.error(f"Database error: {e}")
            await session.rollback()
            raise
        finally:
            await session.close()


async def create_tables():
    """Crear tablas directamente (solo desarrollo, en producción usar migraciones)."""
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
