import asyncio
import random
import uuid
from dataclasses import dataclass
from typing import Callable, Protocol

from meatshop.core.config import settings


@dataclass(frozen=True)
class MessageSendRequest:
    recipient: str
    content: str


@dataclass(frozen=True)
class MessageSendResult:
    provider: str
    status: str  # sent, failed
    message_id: str | None = None
    error: str | None = None


class MessagingProvider(Protocol):
    name: str

    async def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        ...


class SimulatedSmsProvider:
    name = "simulated_sms"

    def __init__(self, *, success_rate: float, delay_ms: int, rng: Callable[[], float] = random.random):
        self.success_rate = success_rate
        self.delay_ms = delay_ms
        self._rng = rng

    async def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        await asyncio.sleep(self.delay_ms / 1000)
        if self._rng() < self.success_rate:
            return MessageSendResult(
                provider=self.name,
                status="sent",
                message_id=f"sms_{uuid.uuid4().hex[:14]}",
            )
        return MessageSendResult(
            provider=self.name,
            status="failed",
            error="SMS gateway temporarily unavailable",
        )


_MESSAGING_PROVIDERS: dict[str, MessagingProvider] = {
    "simulated_sms": SimulatedSmsProvider(
        success_rate=settings.sms_success_rate,
        delay_ms=settings.notification_gateway_delay_ms,
    ),
}


def get_messaging_provider(name: str) -> MessagingProvider:
    normalized = (name or "").strip().lower()
    provider = _MESSAGING_PROVIDERS.get(normalized)
    if not provider:
        available = ", ".join(sorted(_MESSAGING_PROVIDERS))
        raise ValueError(f"Unknown messaging provider '{name}'. Available: {available}")
    return provider
