from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from meatshop.core.time_utils import utcnow
from meatshop.db.base import Base


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), index=True)
    order_number: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="AED")
    method: Mapped[str] = mapped_column(String(20), nullable=False)  # card, cod, bank_transfer
    # pending, authorized, captured, failed, refunded, partially_refunded
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", server_default="pending")

    card_brand: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    card_last4: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    card_expiry_month: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    card_expiry_year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    gateway_provider: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    gateway_transaction_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    refunded_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )

    __table_args__ = (
        Index("ix_payments_status_created_at", "status", "created_at"),
    )


class PaymentRefund(Base):
    __tablename__ = "payment_refunds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    payment_id: Mapped[str] = mapped_column(String(36), ForeignKey("payments.id"), index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="completed")
    gateway_refund_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    processed_by: Mapped[str] = mapped_column(String(36), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
