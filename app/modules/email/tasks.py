"""
Tareas Celery de notificación por correo.
"""
import logging
from typing import List

from app.core.celery import celery_app
from app.modules.email.service import email_service

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3)
def send_ebilling_alert_email_task(
    self,
    recipients: List[str],
    tenant_id: str,
    alert_type: str,
    severity: str,
    message: str,
):
    """
    Notificar una alerta de facturación electrónica recién creada.
    Reintenta con espera exponencial (30s, 60s, 120s) si el SMTP falla.
    """
    delivered = email_service.send_alert_email(
        recipients=recipients,
        tenant_id=tenant_id,
        alert_type=alert_type,
        severity=severity,
        message=message,
    )
    if delivered:
        return {"status": "success", "alert_type": alert_type, "recipients": recipients}

    if self.request.retries < self.max_retries:
        raise self.retry(countdown=30 * (2 ** self.request.retries))

    logger.error(f"[Email] Giving up on alert {alert_type} for tenant {tenant_id}")
    return {"status": "failed", "alert_type": alert_type, "recipients": recipients}
