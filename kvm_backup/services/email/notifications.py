"""
Notification service for backup run events.

Every notification is written to the application log. When mail is enabled
it is also sent to the configured recipients. Failing to send mail never
interrupts the backup run.
"""

import logging
import smtplib
import socket
from email.mime.text import MIMEText
from typing import Optional, List, Dict, Any

from kvm_backup.core.config import Settings
from kvm_backup.models import Severity

logger = logging.getLogger(__name__)

ERROR_SUBJECT = "[KVM] Backup Errors Found"


class NotificationService:
    """Service for sending backup notifications."""

    def __init__(self, settings: Settings, mail_enabled: Optional[bool] = None):
        """
        Initialize notification service.

        Args:
            settings: Application settings with SMTP configuration
            mail_enabled: Override ``settings.MAIL_ENABLED``
        """
        self.script_name = settings.SCRIPT_NAME
        self.smtp_host = settings.SMTP_HOST
        self.smtp_port = settings.SMTP_PORT
        self.smtp_user = settings.SMTP_USER
        self.smtp_password = settings.SMTP_PASSWORD
        self.smtp_tls = settings.SMTP_TLS
        self.smtp_from = settings.SMTP_FROM_EMAIL or f"{settings.SCRIPT_NAME}@{socket.gethostname()}"
        self.recipients: List[str] = settings.mail_recipients
        self.mail_enabled = settings.MAIL_ENABLED if mail_enabled is None else mail_enabled

    def notify(
        self,
        message: str,
        severity: Severity = Severity.INFO,
        subject: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log a notification and mail it.

        Args:
            message: Human-readable message
            severity: Severity of the event
            subject: Mail subject; defaults by severity
            details: Optional structured metadata for the log line
        """
        log_method = getattr(logger, severity.value.lower(), logger.info)
        log_method(message, extra={"details": details or {}})

        if subject is None:
            subject = self.script_name if severity == Severity.INFO else ERROR_SUBJECT

        self.send_mail(subject, message)

    def send_mail(self, subject: str, body: str) -> bool:
        """
        Send a plain-text mail to the configured recipients.

        Returns:
            True if the mail was handed to the SMTP server
        """
        if not self.mail_enabled:
            return False

        if not self.smtp_host or not self.recipients:
            logger.warning("SMTP not configured - skipping notification mail")
            return False

        msg = MIMEText(body, 'plain')
        msg['Subject'] = subject
        msg['From'] = self.smtp_from
        msg['To'] = ', '.join(self.recipients)

        try:
            self._send_email(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"Failed to send notification mail: {e}")
            return False

        logger.debug(f"Notification mail '{subject}' sent to {len(self.recipients)} recipient(s)")
        return True

    def _send_email(self, msg: MIMEText) -> None:
        """Send email via SMTP."""
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
            if self.smtp_tls:
                server.starttls()

            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)

            server.send_message(msg, to_addrs=self.recipients)
