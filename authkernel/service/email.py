from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from authkernel.config import Settings
from authkernel.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{lead} <b class="code">{code}</b></p>
        <p>This code will expire in {ttl_minutes} minutes.</p>
        <p>{footnote}</p>
        <div class="footer">
            <p>{app_name}</p>
        </div>
    </div>
</body>
</html>
"""


@dataclass
class MailMessage:
    subject: str
    html: str
    text: str


class Mailer(Protocol):
    def send(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str] = None
    ) -> bool: ...


def _code_message(
    *, app_name: str, heading: str, lead: str, code: str, ttl_minutes: int, footnote: str
) -> MailMessage:
    html = _HTML_TEMPLATE.format(
        heading=heading,
        lead=lead,
        code=code,
        ttl_minutes=ttl_minutes,
        footnote=footnote,
        app_name=app_name,
    )
    text = f"""{heading}

{lead} {code}

This code will expire in {ttl_minutes} minutes.

{footnote}

---
{app_name}
"""
    return MailMessage(subject=f"{heading} - {app_name}", html=html, text=text)


def verification_code_message(app_name: str, code: str, ttl_minutes: int) -> MailMessage:
    return _code_message(
        app_name=app_name,
        heading="Verify your email",
        lead="Your verification code is:",
        code=code,
        ttl_minutes=ttl_minutes,
        footnote="If you didn't create an account, you can safely ignore this email.",
    )


def password_reset_code_message(app_name: str, code: str, ttl_minutes: int) -> MailMessage:
    return _code_message(
        app_name=app_name,
        heading="Reset your password",
        lead="Your password reset code is:",
        code=code,
        ttl_minutes=ttl_minutes,
        footnote="If you didn't request this, you can safely ignore this email.",
    )


class EmailService:
    """SMTP mailer for transactional email.

    Falls back to logging the message when no SMTP host is configured, which
    is how local development and tests run.
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
        from_name: str = "authkernel",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str]
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send one message. Returns False when delivery failed."""
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            logger.info("email_dev_mode", recipient=recipient, subject=subject)
            return True

        msg = self._build_message(to_email, subject, html_body, text_body)
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=recipient,
                host=self.smtp_host,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", recipient=recipient, error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=recipient,
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except OSError as e:
            # covers refused connections, TLS failures and timeouts
            logger.error(
                "email_transport_error",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", recipient=recipient, subject=subject)
        return True
