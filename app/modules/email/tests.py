"""
Tests para las notificaciones por correo de alertas.
"""
import smtplib
from unittest.mock import MagicMock

from app.modules.email import service as email_module
from app.modules.email.service import email_service
from app.modules.email.tasks import send_ebilling_alert_email_task


class TestAlertEmail:
    def test_alert_content(self):
        content = email_service.build_alert_email("t-1", "LIMIT_REACHED", "critical", "Document limit reached")

        assert content["subject"] == "[E-Billing][CRITICAL] LIMIT_REACHED - tenant t-1"
        assert "Document limit reached" in content["html"]
        assert "#dc2626" in content["html"]
        assert content["text"].startswith("Alert LIMIT_REACHED (critical)")

    def test_message_is_escaped(self):
        content = email_service.build_alert_email("t-1", "AUTH_FAIL", "critical", "<script>x</script>")
        assert "<script>" not in content["html"]

    def test_send_uses_smtp(self, monkeypatch):
        server = MagicMock()
        smtp = MagicMock(return_value=server)
        server.__enter__.return_value = server
        monkeypatch.setattr(email_module.smtplib, "SMTP", smtp)
        monkeypatch.setattr(email_module.settings, "EMAIL_USE_TLS", True)
        monkeypatch.setattr(email_module.settings, "EMAIL_USERNAME", "")

        assert email_service.send_alert_email(["ops@ops.test"], "t-1", "THRESHOLD_70", "warning", "70%") is True
        server.starttls.assert_called_once()
        server.sendmail.assert_called_once()
        assert server.sendmail.call_args.args[1] == ["ops@ops.test"]

    def test_smtp_failure_returns_false(self, monkeypatch):
        monkeypatch.setattr(email_module.settings, "EMAIL_USE_TLS", True)
        monkeypatch.setattr(
            email_module.smtplib, "SMTP", MagicMock(side_effect=smtplib.SMTPConnectError(421, "down"))
        )
        assert email_service.send_email(["ops@ops.test"], "asunto", text_content="x") is False

    def test_task_reports_success(self, monkeypatch):
        monkeypatch.setattr(email_service, "send_alert_email", MagicMock(return_value=True))

        result = send_ebilling_alert_email_task.apply(kwargs={
            "recipients": ["ops@ops.test"],
            "tenant_id": "t-1",
            "alert_type": "AUTH_FAIL",
            "severity": "critical",
            "message": "fail",
        })
        assert result.get()["status"] == "success"
