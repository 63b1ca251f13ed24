from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Sequence, Tuple

from tasktrack.logging import get_logger

logger = get_logger(__name__)


def _hours(count: int) -> str:
    return "1 hour" if count == 1 else f"{count} hours"


class EmailService:
    """Transactional mail over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Verification and password reset codes
    - Password-changed, account-locked and welcome notices
    - Logging instead of sending when SMTP is not configured (dev mode)

    Every ``send_*`` method returns True on success and False on failure;
    callers decide whether a failure matters.
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
        from_name: str = "Task Tracker",
        base_url: Optional[str] = None,
        verification_ttl_hours: int = 24,
        reset_ttl_hours: int = 1,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"
        self.verification_ttl_hours = verification_ttl_hours
        self.reset_ttl_hours = reset_ttl_hours

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(self, heading: str, paragraphs: Sequence[str]) -> Tuple[str, str]:
        """Build (html, text) bodies from plain paragraphs."""
        text_body = "\n\n".join([heading, *paragraphs, f"---\n{self.from_name}\n{self.base_url}"])
        html_paragraphs = "\n".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
        html_body = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">
<div style="max-width: 600px; margin: 0 auto; padding: 32px 20px;">
<h1>{html.escape(heading)}</h1>
{html_paragraphs}
<p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{html.escape(self.from_name)}</p>
</div>
</body>
</html>
"""
        return html_body, text_body

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
            # covers refused connections and timeouts
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except Exception as e:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_email_verification(self, to_email: str, code: str, first_name: str) -> bool:
        html_body, text_body = self._render(
            "Verify your email",
            [
                f"Hi {first_name}, thanks for signing up.",
                f"Your verification code is {code}.",
                f"The code expires in {_hours(self.verification_ttl_hours)}. Enter it in the app to activate your account.",
            ],
        )
        return self._send_email(to_email, "Verify your email address", html_body, text_body)

    def send_password_reset(self, to_email: str, code: str, first_name: str) -> bool:
        html_body, text_body = self._render(
            "Reset your password",
            [
                f"Hi {first_name}, we received a request to reset your password.",
                f"Your reset code is {code}.",
                f"The code expires in {_hours(self.reset_ttl_hours)}. If you didn't request this, you can ignore this email.",
            ],
        )
        return self._send_email(to_email, "Your password reset code", html_body, text_body)

    def send_password_changed(self, to_email: str, first_name: str) -> bool:
        html_body, text_body = self._render(
            "Your password was changed",
            [
                f"Hi {first_name}, the password on your account was just changed.",
                "If this wasn't you, reset your password immediately.",
            ],
        )
        return self._send_email(to_email, "Your password was changed", html_body, text_body)

    def send_account_locked(
        self, to_email: str, first_name: str, lockout_minutes: int
    ) -> bool:
        html_body, text_body = self._render(
            "Account temporarily locked",
            [
                f"Hi {first_name}, your account was locked after several failed sign-in attempts.",
                f"You can try again in {lockout_minutes} minutes.",
                "If these attempts weren't you, consider resetting your password.",
            ],
        )
        return self._send_email(to_email, "Your account has been locked", html_body, text_body)

    def send_welcome(self, to_email: str, first_name: str) -> bool:
        html_body, text_body = self._render(
            "Welcome aboard",
            [
                f"Hi {first_name}, your email is verified and your account is ready.",
                "Sign in any time to start tracking your tasks.",
            ],
        )
        return self._send_email(to_email, "Welcome to Task Tracker", html_body, text_body)
