from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import ConfigDict, Field

from meatshop.schemas.common import CamelModel
from meatshop.schemas.order import PaymentMethod


class PaymentProcessIn(CamelModel):
    order_id: str
    amount: Decimal = Field(gt=0)
    method: PaymentMethod
    card_token: Optional[str] = None
    save_card: bool = False

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "orderId": "order_x1y2z3",
                "amount": 120.0,
                "method": "card",
                "cardToken": "tok_visa",
                "saveCard": False,
            }
        }
    )


class RefundIn(CamelModel):
    amount: Decimal = Field(gt=0)
    reason: str = Field(min_length=1, max_length=255)


class PaymentRefundOut(CamelModel):
    id: str
    amount: float
    reason: str
    status: str
    gateway_refund_id: str | None = None
    processed_by: str
    created_at: datetime


class PaymentOut(CamelModel):
    id: str
    order_id: str
    order_number: str
    amount: float
    currency: str
    method: str
    status: str
    card_brand: str | None = None
    card_last4: str | None = None
    card_expiry_month: int | None = None
    card_expiry_year: int | None = None
    gateway_transaction_id: str | None = None
    refunded_amount: float
    refunds: list[PaymentRefundOut]
    created_at: datetime
    updated_at: datetime


class PaymentMethodCounts(CamelModel):
    card: int
    cod: int
    bank_transfer: int


class PaymentStatusCounts(CamelModel):
    pending: int
    authorized: int
    captured: int
    failed: int
    refunded: int
    partially_refunded: int


class PaymentStatsOut(CamelModel):
    total_payments: int
    total_amount: float
    captured_amount: float
    refunded_amount: float
    pending_amount: float
    failed_payments: int
    by_method: PaymentMethodCounts
    by_status: PaymentStatusCounts
