from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional, Protocol, Set

from keyward.logging import get_logger

logger = get_logger(__name__)

WELCOME = "welcome"
VERIFICATION = "verification"
PASSWORD_RESET = "password_reset"

_HTML_SHELL = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2f6fed; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{lead}</p>
        {action}
        <p>{note}</p>
        <div class="footer"><p>{app_name}</p>{footer}</div>
    </div>
</body>
</html>
"""

# kind -> subject, heading, lead, note (formatted with the template params)
TEMPLATES: Dict[str, Dict[str, str]] = {
    WELCOME: {
        "subject": "Welcome to {app_name}",
        "heading": "Welcome aboard",
        "lead": "Your {app_name} account is ready to use.",
        "note": "If you didn't create this account, please contact support.",
    },
    VERIFICATION: {
        "subject": "Verify your {app_name} email",
        "heading": "Verify your email",
        "lead": "Thanks for signing up! Please confirm your email address.",
        "note": "This link will expire in {expires_in}.",
    },
    PASSWORD_RESET: {
        "subject": "Reset your {app_name} password",
        "heading": "Reset your password",
        "lead": "We received a request to reset your password.",
        "note": "This link will expire in {expires_in}. If you didn't request this, you can ignore this email.",
    },
}


class EmailSender(Protocol):
    def send(self, to_email: str, kind: str, params: Dict[str, Any]) -> bool: ...


class EmailService:
    """Transactional email over SMTP.

    Falls back to logging the message when SMTP is not configured (dev mode).
    Delivery problems are logged and reported as ``False``, never raised.
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
        from_name: str = "Keyward",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def render(self, kind: str, params: Dict[str, Any]) -> tuple[str, str, str]:
        """Return (subject, html_body, text_body) for a template kind."""
        template = TEMPLATES.get(kind)
        if template is None:
            raise ValueError(f"unknown email template: {kind}")
        values = {"app_name": params.get("project_name") or self.from_name, "expires_in": ""}
        values.update({k: v for k, v in params.items() if v is not None})
        subject, heading, lead, note = (
            template[part].format(**values) for part in ("subject", "heading", "lead", "note")
        )
        link = self._link(kind, params.get("token"))
        action = footer = ""
        if link:
            action = f'<p style="margin: 30px 0;"><a href="{link}" class="button">{heading}</a></p>'
            footer = f"<p>If the button doesn't work, copy and paste this URL: {link}</p>"
        html_body = _HTML_SHELL.format(
            heading=heading,
            lead=lead,
            action=action,
            note=note,
            app_name=values["app_name"],
            footer=footer,
        )
        text_body = "\n\n".join(
            part for part in (heading, lead, link, note, f"---\n{values['app_name']}") if part
        )
        return subject, html_body, text_body

    def _link(self, kind: str, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        if kind == VERIFICATION:
            return f"{self.base_url}/verify-email?token={token}"
        if kind == PASSWORD_RESET:
            return f"{self.base_url}/reset-password?token={token}"
        return None

    def send(self, to_email: str, kind: str, params: Dict[str, Any]) -> bool:
        subject, html_body, text_body = self.render(kind, params)
        return self._send_email(to_email, subject, html_body, text_body)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
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

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False


class EmailDispatcher:
    """Fire-and-forget delivery on a worker thread.

    ``notify`` returns immediately; failures are logged and never reach the
    operation that triggered the email.
    """

    def __init__(self, sender: EmailSender) -> None:
        self.sender = sender
        self._pending: Set[asyncio.Task] = set()

    def notify(self, to_email: str, kind: str, params: Dict[str, Any]) -> None:
        task = asyncio.get_running_loop().create_task(self._deliver(to_email, kind, params))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, to_email: str, kind: str, params: Dict[str, Any]) -> None:
        try:
            delivered = await asyncio.to_thread(self.sender.send, to_email, kind, params)
        except Exception as exc:
            logger.error("email_dispatch_failed", kind=kind, error_type=type(exc).__name__, error=str(exc))
            return
        if not delivered:
            logger.warning("email_not_delivered", kind=kind)

    async def drain(self) -> None:
        """Wait for in-flight deliveries; used at shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
