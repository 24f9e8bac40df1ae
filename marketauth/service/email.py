from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from marketauth.logging import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    """Delivery channel for one-time codes."""

    def send_otp_email(self, email: str, code: str, display_name: str) -> bool: ...

    def send_password_reset_email(
        self, email: str, code: str, display_name: str
    ) -> bool: ...


_BASE_STYLE = """
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; letter-spacing: 8px; font-weight: 700; background: #f3f4f6; padding: 16px 24px; border-radius: 8px; display: inline-block; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
"""


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Verification code emails
    - Password reset code emails
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "Marketplace",
        code_ttl_minutes: int = 5,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.code_ttl_minutes = code_ttl_minutes

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: the body carries a live code, so only the subject is logged
            logger.info(
                "email_dev_mode",
                recipient=self._redact_email(to_email),
                subject=subject,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                recipient=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info(
            "email_sent", recipient=self._redact_email(to_email), subject=subject
        )
        return True

    def _code_email(self, heading: str, intro: str, code: str, display_name: str) -> tuple[str, str]:
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_BASE_STYLE.format()}</style>
</head>
<body>
    <div class="container">
        <h1>{html.escape(heading)}</h1>
        <p>Hi {html.escape(display_name)},</p>
        <p>{html.escape(intro)}</p>
        <p style="margin: 30px 0;"><span class="code">{html.escape(code)}</span></p>
        <p>This code will expire in {self.code_ttl_minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <div class="footer">
            <p>{html.escape(self.from_name)}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""{heading}

Hi {display_name},

{intro}

    {code}

This code will expire in {self.code_ttl_minutes} minutes.

If you didn't request this, you can safely ignore this email.

---
{self.from_name}
"""
        return html_body, text_body

    def send_otp_email(self, email: str, code: str, display_name: str) -> bool:
        """Send the email-verification code."""
        html_body, text_body = self._code_email(
            "Verify your email",
            "Use the code below to confirm your email address:",
            code,
            display_name,
        )
        subject = f"Your verification code - {self.from_name}"
        return self._send_email(email, subject, html_body, text_body)

    def send_password_reset_email(
        self, email: str, code: str, display_name: str
    ) -> bool:
        """Send the password-reset code."""
        html_body, text_body = self._code_email(
            "Reset your password",
            "We received a request to reset your password. Enter this code to choose a new one:",
            code,
            display_name,
        )
        subject = f"Reset your password - {self.from_name}"
        return self._send_email(email, subject, html_body, text_body)
