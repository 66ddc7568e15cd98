"""
Notificaciones por correo al equipo de operaciones.

SMTP (STARTTLS o SSL implícito) con cuerpos HTML renderizados con Jinja2.
"""
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Dict, List, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from app.core.config import settings

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"

SEVERITY_COLORS = {
    "info": "#2563eb",
    "warning": "#d97706",
    "critical": "#dc2626",
}


class EmailService:
    def __init__(self):
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=select_autoescape(["html", "xml"]),
        )

    @property
    def sender(self) -> str:
        return f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>"

    def _open_smtp(self) -> smtplib.SMTP:
        if settings.EMAIL_USE_TLS:
            server = smtplib.SMTP(settings.EMAIL_SMTP_SERVER, settings.EMAIL_SMTP_PORT)
            server.starttls(context=ssl.create_default_context())
        else:
            server = smtplib.SMTP_SSL(settings.EMAIL_SMTP_SERVER, settings.EMAIL_SMTP_PORT)

        if settings.EMAIL_USERNAME:
            server.login(settings.EMAIL_USERNAME, settings.EMAIL_PASSWORD)
        return server

    def send_email(
        self,
        to_emails: List[str],
        subject: str,
        html_content: Optional[str] = None,
        text_content: Optional[str] = None,
    ) -> bool:
        """
        Enviar un correo multipart (texto + HTML).

        Returns:
            True si el servidor SMTP aceptó el mensaje. Las fallas se registran
            y se devuelven como False; reintentar es decisión del llamador.
        """
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = self.sender
        message["To"] = ", ".join(to_emails)
        if text_content:
            message.attach(MIMEText(text_content, "plain", "utf-8"))
        if html_content:
            message.attach(MIMEText(html_content, "html", "utf-8"))

        try:
            with self._open_smtp() as server:
                server.sendmail(settings.EMAIL_FROM, to_emails, message.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"[Email] Could not deliver '{subject}': {e}")
            return False

        logger.info(f"[Email] '{subject}' delivered to {len(to_emails)} recipient(s)")
        return True

    def build_alert_email(self, tenant_id: str, alert_type: str, severity: str, message: str) -> Dict[str, str]:
        """Asunto, HTML y texto plano de una alerta de facturación electrónica."""
        context = {
            "tenant_id": tenant_id,
            "alert_type": alert_type,
            "severity": severity,
            "severity_color": SEVERITY_COLORS.get(severity, SEVERITY_COLORS["info"]),
            "message": message,
        }
        return {
            "subject": f"[E-Billing][{severity.upper()}] {alert_type} - tenant {tenant_id}",
            "html": self.jinja_env.get_template("ebilling_alert.html").render(**context),
            "text": f"Alert {alert_type} ({severity}) for tenant {tenant_id}: {message}",
        }

    def send_alert_email(
        self,
        recipients: List[str],
        tenant_id: str,
        alert_type: str,
        severity: str,
        message: str,
    ) -> bool:
        content = self.build_alert_email(tenant_id, alert_type, severity, message)
        return self.send_email(
            to_emails=recipients,
            subject=content["subject"],
            html_content=content["html"],
            text_content=content["text"],
        )


email_service = EmailService()
