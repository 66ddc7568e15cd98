"""
Tareas periódicas de la cola de documentos electrónicos.
"""
import asyncio
import logging

from app.core.celery import celery_app
from app.database.database import AsyncSessionLocal, async_engine
from app.modules.documents import service
from app.modules.ebilling.service import renew_subscription_cycles

logger = logging.getLogger(__name__)


async def _run_with_session(operation):
    """Ejecuta la operación con una sesión propia y libera el pool al terminar."""
    try:
        async with AsyncSessionLocal() as db:
            try:
                return await operation(db)
            except Exception:
                await db.rollback()
                raise
    finally:
        # Cada asyncio.run abre un event loop nuevo; las conexiones no se reutilizan entre loops
        await async_engine.dispose()


@celery_app.task
def process_pending_documents_task():
    """Enviar documentos PENDING y RETRY al proveedor."""
    try:
        summary = asyncio.run(_run_with_session(service.process_pending_documents))
        return summary.model_dump()
    except Exception as e:
        logger.error(f"[MATIAS] Document processing task failed: {str(e)}")
        raise


@celery_app.task
def reconcile_sent_documents_task():
    """Consultar el estado DIAN de los documentos SENT."""
    try:
        summary = asyncio.run(_run_with_session(service.reconcile_sent_documents))
        return summary.model_dump()
    except Exception as e:
        logger.error(f"[MATIAS] Reconciliation task failed: {str(e)}")
        raise


@celery_app.task
def renew_subscription_cycles_task():
    try:
        renewed = asyncio.run(_run_with_session(renew_subscription_cycles))
        if renewed:
            logger.info(f"[Metering] Renewed {renewed} subscription cycles")
        return {"status": "completed", "renewed": renewed}
    except Exception as e:
        logger.error(f"[Metering] Cycle renewal task failed: {str(e)}")
        raise
