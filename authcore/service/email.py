from __future__ import annotations

import smtplib
import ssl
from datetime import timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import quote

from authcore.logging import get_logger

logger = get_logger(__name__)


def format_lifetime(delta: timedelta) -> str:
    """Render a link lifetime as 'N days', 'N hours' or 'N minutes'."""
    seconds = max(int(delta.total_seconds()), 60)
    if seconds % 86400 == 0:
        count, unit = seconds // 86400, "day"
    elif seconds % 3600 == 0:
        count, unit = seconds // 3600, "hour"
    else:
        count, unit = seconds // 60, "minute"
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">
    <h1>{heading}</h1>
    <p>{intro}</p>
    <p><a href="{link}">{link}</a></p>
    <p>This link expires in {lifetime}.</p>
    <p style="font-size: 12px; color: #5b6470;">{sender}</p>
</body>
</html>
"""

_TEXT_TEMPLATE = """{heading}

{intro}

{link}

This link expires in {lifetime}.

---
{sender}
"""


class EmailService:
    """Notifier for activation and password-reset mail.

    Sends through SMTP (STARTTLS or implicit TLS). When no SMTP host is
    configured the message is logged instead and counts as delivered, which
    keeps local development usable. Delivery failures are reported as
    ``False``; callers decide what that means for the flow.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Authcore",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def activation_link(self, token: str) -> str:
        return f"{self.base_url}/v1/auth/activate?token={quote(token)}"

    def reset_link(self, token: str) -> str:
        return f"{self.base_url}/reset-password?token={quote(token)}"

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info("email_dev_mode", to=self._redact_email(to_email), subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=self._redact_email(to_email))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            # OSError covers connection refused, DNS failure and socket timeouts
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def _render(self, heading: str, intro: str, link: str, lifetime: str) -> tuple[str, str]:
        values = {
            "heading": heading,
            "intro": intro,
            "link": link,
            "lifetime": lifetime,
            "sender": self.from_name,
        }
        return _HTML_TEMPLATE.format(**values), _TEXT_TEMPLATE.format(**values)

    def send_activation(
        self, to_email: str, token: str, *, expires_in: timedelta = timedelta(hours=24)
    ) -> bool:
        """Send the account activation link."""
        html_body, text_body = self._render(
            "Activate your account",
            "Thanks for signing up. Open the link below to activate your account:",
            self.activation_link(token),
            format_lifetime(expires_in),
        )
        return self._send_email(to_email, f"Activate your {self.from_name} account", html_body, text_body)

    def send_password_reset(
        self, to_email: str, token: str, *, expires_in: timedelta = timedelta(hours=1)
    ) -> bool:
        """Send the password reset link."""
        html_body, text_body = self._render(
            "Reset your password",
            "We received a request to reset your password. If it was you, open the link below:",
            self.reset_link(token),
            format_lifetime(expires_in),
        )
        return self._send_email(to_email, f"Reset your {self.from_name} password", html_body, text_body)
