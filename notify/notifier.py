"""
notify/notifier.py -- Templated email delivery.

Templates live in notify/templates/ as <name>.html and <name>.txt pairs and
are rendered with Jinja2 (autoescape on for the HTML half). Each message goes
out as multipart/alternative over smtplib when SMTP_HOST is configured.

Console mode: without SMTP the message is logged instead of sent. The body
(which carries the code) is only logged when DEBUG=true; in production the
log line names the recipient and subject only.

Failure policy: send errors propagate. Callers decide whether to swallow
them (the reset flow does, to keep account existence hidden).

Layer rule: imports only core/.
"""

from __future__ import annotations

import logging
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from core.config import Settings

logger = logging.getLogger("authgate.notify")

_TEMPLATE_DIR = Path(__file__).parent / "templates"

SUBJECTS = {
    "password_reset": "Password Reset Verification Code",
    "email_verification": "Email Verification Code",
}


def _expiration_text(minutes: int) -> str:
    return f"{minutes} minute{'s' if minutes != 1 else ''}"


class Notifier:
    """Render and send account emails.

    Usage:
        notifier = Notifier.from_settings(get_settings())
        notifier.send_password_reset_email("a@x.io", "123456", 15)
    """

    def __init__(
        self,
        app_name: str,
        from_email: str,
        from_name: str,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_username: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        debug: bool = False,
    ) -> None:
        self.app_name = app_name
        self.from_email = from_email
        self.from_name = from_name
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.debug = debug
        self._env = Environment(
            loader=FileSystemLoader(str(_TEMPLATE_DIR)),
            autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=False),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Notifier":
        return cls(
            app_name=settings.app_name,
            from_email=settings.from_email,
            from_name=settings.from_name,
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_username=settings.smtp_username,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            debug=settings.debug,
        )

    @property
    def smtp_enabled(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def send_password_reset_email(self, email: str, code: str, ttl_minutes: int) -> None:
        self._send_template("password_reset", email, code, ttl_minutes)

    def send_verification_email(self, email: str, code: str, ttl_minutes: int) -> None:
        self._send_template("email_verification", email, code, ttl_minutes)

    # ------------------------------------------------------------------
    # Rendering and transport
    # ------------------------------------------------------------------

    def render(self, name: str, context: dict) -> tuple[str, str]:
        """Return (html, text) for the named template pair."""
        html = self._env.get_template(f"{name}.html").render(**context)
        text = self._env.get_template(f"{name}.txt").render(**context)
        return html, text

    def _send_template(self, name: str, email: str, code: str, ttl_minutes: int) -> None:
        context = {
            "verification_code": code,
            "expiration_time": _expiration_text(ttl_minutes),
            "app_name": self.app_name,
            "current_year": datetime.now(timezone.utc).year,
        }
        html, text = self.render(name, context)
        self._deliver(email, SUBJECTS[name], html, text)

    def _deliver(self, to_email: str, subject: str, html: str, text: str) -> None:
        if not self.smtp_enabled:
            if self.debug:
                logger.info("[DEV] Would send email to %s\n  Subject: %s\n%s", to_email, subject, text)
            else:
                logger.warning("SMTP not configured; email to %s (%s) not sent", to_email, subject)
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = formataddr((self.from_name, self.from_email))
        msg["To"] = to_email
        msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=10) as server:
            if self.smtp_use_tls:
                server.starttls()
            if self.smtp_username and self.smtp_password:
                server.login(self.smtp_username, self.smtp_password)
            server.send_message(msg)
        logger.info("Email sent to %s (%s)", to_email, subject)
