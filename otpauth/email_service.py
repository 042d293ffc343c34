from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr

from .errors import DeliveryError

logger = logging.getLogger(__name__)

_SUBJECTS = {
    "registration": "confirm your email",
    "login": "your sign-in code",
}


def render_otp_email(code: str, purpose: str, *, app_name: str, expiry_minutes: int) -> tuple[str, str, str]:
    subject = f"{app_name} - {_SUBJECTS.get(purpose, 'your verification code')}"
    text = (
        f"Your verification code is: {code}\n"
        f"It expires in {expiry_minutes} minutes. Do not share this code with anyone.\n"
        "If you did not request it, you can ignore this email."
    )
    html = (
        "<!DOCTYPE html><html><body style=\"font-family: Arial, sans-serif; color: #333;\">"
        f"<h2>{app_name}</h2>"
        "<p>Your verification code is:</p>"
        f"<p style=\"font-size: 28px; font-weight: bold; letter-spacing: 4px;\">{code}</p>"
        f"<p>It expires in {expiry_minutes} minutes. Do not share this code with anyone.</p>"
        "<p style=\"font-size: 12px; color: #666;\">If you did not request it, you can ignore this email.</p>"
        "</body></html>"
    )
    return subject, text, html


class EmailSender:
    def __init__(self, *, app_name: str = "OTP Auth", expiry_minutes: int = 15) -> None:
        self._app_name = app_name
        self._expiry_minutes = expiry_minutes

    def _render(self, code: str, purpose: str) -> tuple[str, str, str]:
        return render_otp_email(code, purpose, app_name=self._app_name, expiry_minutes=self._expiry_minutes)

    def send_otp_email(self, to_email: str, code: str, purpose: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class ConsoleEmailSender(EmailSender):
    """Development backend: the message goes to stdout, never to the log."""

    def send_otp_email(self, to_email: str, code: str, purpose: str) -> None:
        subject, body, _ = self._render(code, purpose)
        print(f"[Email:{purpose}] To={to_email} Subject={subject}\n{body}")


class InMemoryEmailSender(EmailSender):
    def __init__(self, outbox: list[dict], **kwargs) -> None:
        super().__init__(**kwargs)
        self._outbox = outbox

    def send_otp_email(self, to_email: str, code: str, purpose: str) -> None:
        subject, _, _ = self._render(code, purpose)
        self._outbox.append(
            {
                "to": to_email,
                "subject": subject,
                "code": code,
                "purpose": purpose,
            }
        )


class SmtpEmailSender(EmailSender):
    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        from_addr: str,
        *,
        from_name: str = "",
        timeout: float = 10,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._from = formataddr((from_name, from_addr)) if from_name else from_addr
        self._timeout = timeout

    def _connect(self) -> smtplib.SMTP:
        if self._port == 465:
            return smtplib.SMTP_SSL(self._host, self._port, timeout=self._timeout)
        server = smtplib.SMTP(self._host, self._port, timeout=self._timeout)
        server.starttls()
        return server

    def send_otp_email(self, to_email: str, code: str, purpose: str) -> None:
        subject, text, html = self._render(code, purpose)
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self._from
        msg["To"] = to_email
        msg.set_content(text)
        msg.add_alternative(html, subtype="html")

        try:
            with self._connect() as server:
                if self._username:
                    server.login(self._username, self._password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send OTP email recipient=%s purpose=%s error=%s", to_email, purpose, type(exc).__name__)
            raise DeliveryError() from exc

        logger.info("OTP email sent recipient=%s purpose=%s", to_email, purpose)


def build_email_sender(config, outbox: list[dict] | None = None) -> EmailSender:
    backend = config.get("EMAIL_BACKEND", "smtp")
    common = {
        "app_name": config.get("APP_NAME", "OTP Auth"),
        "expiry_minutes": int(config.get("OTP_EXPIRY_MINUTES", 15)),
    }
    if backend == "memory":
        return InMemoryEmailSender(outbox if outbox is not None else [], **common)
    if backend == "console":
        return ConsoleEmailSender(**common)
    if backend != "smtp":
        raise RuntimeError(f"Unknown EMAIL_BACKEND: {backend}")

    host = config.get("SMTP_HOST", "")
    port = int(config.get("SMTP_PORT", 587))
    username = config.get("SMTP_USERNAME", "")
    password = config.get("SMTP_PASSWORD", "")
    from_addr = config.get("SMTP_FROM") or username

    if not host or not username or not password:
        raise RuntimeError("SMTP configuration missing. Set SMTP_HOST/SMTP_USERNAME/SMTP_PASSWORD.")

    return SmtpEmailSender(
        host,
        port,
        username,
        password,
        from_addr,
        from_name=config.get("SMTP_FROM_NAME", ""),
        timeout=float(config.get("SMTP_TIMEOUT_SECONDS", 10)),
        **common,
    )


def init_email(app) -> EmailSender:
    outbox = None
    if app.config.get("EMAIL_BACKEND") == "memory":
        outbox = app.extensions.setdefault("email_outbox", [])
    sender = build_email_sender(app.config, outbox)
    app.extensions["email_sender"] = sender
    return sender
