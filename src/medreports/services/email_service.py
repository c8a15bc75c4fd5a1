"""
Email delivery for finished exports and scheduled report runs.

Sending is best-effort: SMTP failures are logged and reported in the
returned result, never raised to the caller.
"""

import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from smtplib import SMTPException
from typing import Optional

from medreports.core.config import settings
from medreports.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Attachment:
    file_name: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass
class DeliveryResult:
    success: bool
    recipients_count: int = 0
    error: Optional[str] = None


@dataclass
class SmtpConfig:
    host: Optional[str] = None
    port: int = 587
    user: Optional[str] = None
    password: Optional[str] = None
    from_email: str = ""
    from_name: str = ""
    tls: bool = True

    @classmethod
    def from_settings(cls) -> "SmtpConfig":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            from_email=settings.smtp_from_email,
            from_name=settings.smtp_from_name,
            tls=settings.smtp_tls,
        )


# =============================================================================
# Email Service
# =============================================================================


class EmailService:
    """SMTP sender for report and export notifications."""

    def __init__(self, config: Optional[SmtpConfig] = None) -> None:
        self.config = config or SmtpConfig.from_settings()

    def is_configured(self) -> bool:
        return bool(self.config.host and self.config.user)

    def _build_message(
        self,
        to_list: list[str],
        subject: str,
        body: str,
        attachments: list[Attachment],
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.config.from_name} <{self.config.from_email}>"
        msg["To"] = ", ".join(to_list)
        msg.set_content(body)

        for attachment in attachments:
            maintype, _, subtype = attachment.content_type.partition("/")
            msg.add_attachment(
                attachment.content,
                maintype=maintype or "application",
                subtype=subtype or "octet-stream",
                filename=attachment.file_name,
            )
        return msg

    def send_email(
        self,
        to: list[str] | str,
        subject: str,
        body: str,
        attachments: Optional[list[Attachment]] = None,
    ) -> DeliveryResult:
        """
        Send a plain-text email.

        Raises:
            ValueError: If SMTP is not configured or there are no recipients
        """
        if not self.is_configured():
            raise ValueError("SMTP configuration not available")

        to_list = [to] if isinstance(to, str) else list(dict.fromkeys(to))
        if not to_list:
            raise ValueError("At least one recipient is required")

        msg = self._build_message(to_list, subject, body, attachments or [])

        try:
            logger.info(f"Sending email to {len(to_list)} recipients: {subject[:50]}")
            with smtplib.SMTP(self.config.host, self.config.port) as server:
                if self.config.tls:
                    server.starttls()
                if self.config.password:
                    server.login(self.config.user, self.config.password)
                server.send_message(msg, to_addrs=to_list)
        except (SMTPException, OSError) as e:
            logger.error(f"SMTP error sending email: {e}")
            return DeliveryResult(success=False, error=str(e))

        return DeliveryResult(success=True, recipients_count=len(to_list))

    def send_export_email(
        self,
        to: list[str],
        file_name: str,
        content: bytes,
        content_type: str,
        record_count: int,
        entity_type: str,
    ) -> DeliveryResult:
        """Send a finished export as an attachment."""
        label = entity_type.replace("_", " ")
        body = (
            f"Your {label} export has finished.\n\n"
            f"File: {file_name}\n"
            f"Records: {record_count}\n\n"
            f"-- {self.config.from_name}"
        )
        return self.send_email(
            to=to,
            subject=f"{label.title()} export ready: {file_name}",
            body=body,
            attachments=[Attachment(file_name, content, content_type)],
        )

    def send_report_export_email(
        self,
        to: list[str],
        report_titles: list[str],
        file_name: str,
        content: bytes,
        content_type: str,
        requested_by: Optional[str] = None,
    ) -> DeliveryResult:
        """Send exported reports as one attachment."""
        if len(report_titles) == 1:
            subject = f"Report export: {report_titles[0]}"
            listing = f'"{report_titles[0]}"'
        else:
            subject = f"Bulk report export: {len(report_titles)} reports"
            listing = "\n".join(f"- {title}" for title in report_titles)
        body = f"The following report export is attached:\n\n{listing}\n\nFile: {file_name}"
        if requested_by:
            body += f"\nRequested by: {requested_by}"
        return self.send_email(
            to=to,
            subject=subject,
            body=f"{body}\n\n-- {self.config.from_name}",
            attachments=[Attachment(file_name, content, content_type)],
        )

    def send_schedule_run_email(
        self,
        to: list[str],
        report_title: str,
        succeeded: bool,
        download_path: Optional[str] = None,
    ) -> DeliveryResult:
        """Tell schedule recipients how a run went."""
        if succeeded:
            subject = f"Scheduled report ready: {report_title}"
            body = f'"{report_title}" has been generated.'
            if download_path:
                body += f"\n\nDownload: {download_path}"
        else:
            subject = f"Scheduled report failed: {report_title}"
            body = f'"{report_title}" could not be generated this time.'
        return self.send_email(to=to, subject=subject, body=f"{body}\n\n-- {self.config.from_name}")
