import asyncio
import random
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Protocol

from meatshop.core.config import settings


@dataclass(frozen=True)
class GatewayResult:
    success: bool
    transaction_id: str | None = None
    error: str | None = None


class PaymentGateway(Protocol):
    name: str

    async def authorize(self, amount: Decimal, method: str, card_token: str | None) -> GatewayResult:
        ...

    async def refund(self, transaction_id: str, amount: Decimal) -> GatewayResult:
        ...


class SimulatedPaymentGateway:
    """Card gateway stand-in: fixed latency and a random decline rate."""

    name = "simulated"

    def __init__(
        self,
        *,
        success_rate: float,
        refund_success_rate: float,
        delay_ms: int,
        rng: Callable[[], float] = random.random,
    ):
        self.success_rate = success_rate
        self.refund_success_rate = refund_success_rate
        self.delay_ms = delay_ms
        self._rng = rng

    async def authorize(self, amount: Decimal, method: str, card_token: str | None) -> GatewayResult:
        await asyncio.sleep(self.delay_ms / 1000)
        if self._rng() < self.success_rate:
            return GatewayResult(success=True, transaction_id=f"txn_{uuid.uuid4().hex[:20]}")
        return GatewayResult(success=False, error="Payment declined. Please try another card.")

    async def refund(self, transaction_id: str, amount: Decimal) -> GatewayResult:
        await asyncio.sleep(self.delay_ms / 1000)
        if self._rng() < self.refund_success_rate:
            return GatewayResult(success=True, transaction_id=f"ref_{uuid.uuid4().hex[:20]}")
        return GatewayResult(success=False, error="Refund failed. Please try again later.")


_PAYMENT_PROVIDERS: dict[str, PaymentGateway] = {
    "simulated": SimulatedPaymentGateway(
        success_rate=settings.payment_success_rate,
        refund_success_rate=settings.refund_success_rate,
        delay_ms=settings.payment_gateway_delay_ms,
    ),
}


def get_payment_provider(name: str) -> PaymentGateway:
    normalized = (name or "").strip().lower()
    provider = _PAYMENT_PROVIDERS.get(normalized)
    if not provider:
        available = ", ".join(sorted(_PAYMENT_PROVIDERS.keys()))
        raise ValueError(f"Unknown payment provider '{name}'. Available: {available}")
    return provider
