import asyncio
import random
import smtplib
import uuid
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Callable, Literal, Protocol

from meatshop.core.config import settings

EmailDeliveryStatus = Literal["sent", "not_configured", "failed"]


@dataclass(frozen=True)
class EmailSendRequest:
    recipient: str
    subject: str
    body: str


@dataclass(frozen=True)
class EmailDeliveryResult:
    provider: str
    status: EmailDeliveryStatus
    message_id: str | None = None
    detail: str | None = None


class EmailProvider(Protocol):
    name: str

    async def send_email(self, request: EmailSendRequest) -> EmailDeliveryResult:
        ...


class SimulatedEmailProvider:
    name = "simulated_email"

    def __init__(self, *, success_rate: float, delay_ms: int, rng: Callable[[], float] = random.random):
        self.success_rate = success_rate
        self.delay_ms = delay_ms
        self._rng = rng

    async def send_email(self, request: EmailSendRequest) -> EmailDeliveryResult:
        await asyncio.sleep(self.delay_ms / 1000)
        if self._rng() < self.success_rate:
            return EmailDeliveryResult(
                provider=self.name,
                status="sent",
                message_id=f"email_{uuid.uuid4().hex[:14]}",
            )
        return EmailDeliveryResult(provider=self.name, status="failed", detail="Email service unavailable")


def _smtp_configured() -> bool:
    return bool(settings.smtp_host and settings.smtp_sender_email)


class SmtpEmailProvider:
    name = "smtp"

    def _build_message(self, request: EmailSendRequest) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = request.subject
        message["From"] = settings.smtp_sender_email
        message["To"] = request.recipient
        if settings.smtp_reply_to_email:
            message["Reply-To"] = settings.smtp_reply_to_email
        message["Message-ID"] = make_msgid(domain=settings.smtp_sender_email.rpartition("@")[2] or None)
        message.set_content(request.body)
        return message

    def _send_blocking(self, message: EmailMessage) -> None:
        client_cls = smtplib.SMTP_SSL if settings.smtp_use_ssl else smtplib.SMTP
        with client_cls(settings.smtp_host, settings.smtp_port, timeout=20) as server:
            if settings.smtp_use_starttls and not settings.smtp_use_ssl:
                server.starttls()
            if settings.smtp_username:
                server.login(settings.smtp_username, settings.smtp_password or "")
            server.send_message(message)

    async def send_email(self, request: EmailSendRequest) -> EmailDeliveryResult:
        if not _smtp_configured():
            return EmailDeliveryResult(
                provider=self.name,
                status="not_configured",
                detail="SMTP not configured",
            )

        message = self._build_message(request)
        try:
            await asyncio.to_thread(self._send_blocking, message)
        except (smtplib.SMTPException, OSError) as exc:
            return EmailDeliveryResult(provider=self.name, status="failed", detail=str(exc))

        return EmailDeliveryResult(provider=self.name, status="sent", message_id=message["Message-ID"])


_EMAIL_PROVIDERS: dict[str, EmailProvider] = {
    "simulated_email": SimulatedEmailProvider(
        success_rate=settings.email_success_rate,
        delay_ms=settings.notification_gateway_delay_ms,
    ),
    "smtp": SmtpEmailProvider(),
}


def get_email_provider(name: str) -> EmailProvider:
    normalized = (name or "").strip().lower()
    provider = _EMAIL_PROVIDERS.get(normalized)
    if not provider:
        available = ", ".join(sorted(_EMAIL_PROVIDERS))
        raise ValueError(f"Unknown email provider '{name}'. Available: {available}")
    return provider
