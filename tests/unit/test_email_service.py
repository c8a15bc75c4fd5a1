"""
Unit tests for EmailService.
"""

from smtplib import SMTPException

import pytest

from medreports.services import email_service
from medreports.services.email_service import EmailService, SmtpConfig


class FakeSMTP:
    """Records what would have been sent."""

    sent: list = []
    fail_with: Exception | None = None

    def __init__(self, host, port):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None

    def __enter__(self):
        return self

    def __exit__(self, *args):
        return False

    def starttls(self):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def send_message(self, msg, to_addrs):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        FakeSMTP.sent.append((self, msg, to_addrs))


@pytest.fixture
def smtp(monkeypatch):
    FakeSMTP.sent = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(email_service.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


@pytest.fixture
def service() -> EmailService:
    return EmailService(
        SmtpConfig(
            host="smtp.example",
            port=2525,
            user="mailer",
            password="secret",
            from_email="reports@example.com",
            from_name="Reports",
        )
    )


class TestEmailService:
    """Tests for SMTP delivery."""

    def test_unconfigured(self):
        service = EmailService(SmtpConfig())

        assert not service.is_configured()
        with pytest.raises(ValueError):
            service.send_email("a@example.com", "Hi", "Body")

    def test_requires_recipients(self, service: EmailService, smtp):
        with pytest.raises(ValueError):
            service.send_email([], "Hi", "Body")

    def test_export_email_attaches_file(self, service: EmailService, smtp):
        result = service.send_export_email(
            to=["a@example.com", "a@example.com", "b@example.com"],
            file_name="audit_logs.csv",
            content=b'"id"\n',
            content_type="text/csv",
            record_count=1,
            entity_type="audit_logs",
        )

        assert result.success
        assert result.recipients_count == 2
        server, msg, to_addrs = smtp.sent[0]
        assert (server.host, server.port) == ("smtp.example", 2525)
        assert server.started_tls
        assert server.logged_in == ("mailer", "secret")
        assert to_addrs == ["a@example.com", "b@example.com"]
        assert msg["Subject"] == "Audit Logs export ready: audit_logs.csv"
        assert msg["From"] == "Reports <reports@example.com>"
        attachment = next(msg.iter_attachments())
        assert attachment.get_filename() == "audit_logs.csv"
        assert attachment.get_content_type() == "text/csv"

    def test_schedule_run_email(self, service: EmailService, smtp):
        service.send_schedule_run_email(
            ["a@example.com"], "Weekly bookings", True, "/api/v1/reports/r1/download"
        )
        service.send_schedule_run_email(["a@example.com"], "Weekly bookings", False)

        ready, failed = (msg for _, msg, _ in smtp.sent)
        assert ready["Subject"] == "Scheduled report ready: Weekly bookings"
        assert "Download: /api/v1/reports/r1/download" in ready.get_content()
        assert failed["Subject"] == "Scheduled report failed: Weekly bookings"

    def test_smtp_failure_is_reported(self, service: EmailService, smtp):
        smtp.fail_with = SMTPException("mailbox unavailable")

        result = service.send_email("a@example.com", "Hi", "Body")

        assert not result.success
        assert result.error == "mailbox unavailable"
        assert result.recipients_count == 0

    def test_report_export_email(self, service: EmailService, smtp):
        service.send_report_export_email(
            to=["a@example.com"],
            report_titles=["January summary"],
            file_name="January_summary.pdf",
            content=b"%PDF-1.4",
            content_type="application/pdf",
        )
        service.send_report_export_email(
            to=["a@example.com"],
            report_titles=["Weekly", "Monthly"],
            file_name="Bulk_Reports.zip",
            content=b"PK",
            content_type="application/zip",
            requested_by="Alex Agent",
        )

        single, bundle = (msg for _, msg, _ in smtp.sent)
        assert single["Subject"] == "Report export: January summary"
        assert next(single.iter_attachments()).get_filename() == "January_summary.pdf"
        assert bundle["Subject"] == "Bulk report export: 2 reports"
        body = bundle.get_body(preferencelist=("plain",)).get_content()
        assert "- Weekly\n- Monthly" in body
        assert "Requested by: Alex Agent" in body
