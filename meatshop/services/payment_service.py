import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from threading import Lock
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from meatshop.core.config import settings
from meatshop.core.errors import (
    BusinessRuleViolation,
    ExceedsRefundable,
    GatewayDeclined,
    NotFound,
    ValidationFailed,
)
from meatshop.core.id_utils import generate_id
from meatshop.core.money import ZERO_MONEY, to_money
from meatshop.core.observability import log_event
from meatshop.core.time_utils import utcnow
from meatshop.models.order import Order
from meatshop.models.payment import Payment, PaymentRefund
from meatshop.services.order_service import TERMINAL_STATUSES, add_status_history
from meatshop.services.payment_provider import PaymentGateway
from meatshop.services.stock_service import get_order_items, release_stock_for_order, stock_locks

logger = logging.getLogger("meatshop.payments")

PAYMENT_STATUSES = ("pending", "authorized", "captured", "failed", "refunded", "partially_refunded")
PAYMENT_METHODS = ("card", "cod", "bank_transfer")
REFUNDABLE_STATUSES = frozenset({"captured", "partially_refunded"})
SETTLED_STATUSES = frozenset({"captured", "partially_refunded", "refunded"})

_CARD_BRANDS = {
    "visa": "Visa",
    "mastercard": "Mastercard",
    "amex": "Amex",
}

_flow_locks: dict[str, tuple[asyncio.Lock, list[int]]] = {}
_flow_locks_guard = Lock()


@asynccontextmanager
async def _order_flow(order_id: str):
    """Serialise payment, refund and capture flows of one order.

    Entries are reference counted and dropped once no flow holds or awaits them.
    """
    with _flow_locks_guard:
        lock, users = _flow_locks.setdefault(order_id, (asyncio.Lock(), [0]))
        users[0] += 1
    try:
        async with lock:
            yield
    finally:
        with _flow_locks_guard:
            users[0] -= 1
            if users[0] == 0:
                _flow_locks.pop(order_id, None)


@dataclass(frozen=True)
class PaymentOutcome:
    payment: Payment
    order: Order
    notification_type: str | None
    notification_options: dict[str, Any] | None = None


def _card_details(card_token: str | None) -> dict[str, Any]:
    token = (card_token or "").strip().lower()
    brand = next((label for key, label in _CARD_BRANDS.items() if key in token), "Visa")
    digits = "".join(char for char in token if char.isdigit())
    expiry = utcnow() + timedelta(days=365 * 3)
    return {
        "card_brand": brand,
        "card_last4": digits[-4:] if len(digits) >= 4 else "4242",
        "card_expiry_month": 12,
        "card_expiry_year": expiry.year,
    }


def _latest_payment_for_order(db: Session, order_id: str) -> Payment | None:
    return db.execute(
        select(Payment).where(Payment.order_id == order_id).order_by(Payment.created_at.desc()).limit(1)
    ).scalar_one_or_none()


async def process_payment(
    db: Session,
    gateway: PaymentGateway,
    *,
    order_id: str,
    amount: Decimal,
    method: str,
    card_token: str | None = None,
    save_card: bool = False,
) -> PaymentOutcome:
    """
    Charge an order.

    Card payments go through the gateway and are captured immediately. Cash on delivery
    and bank transfers are recorded as pending until they are captured.
    """
    async with _order_flow(order_id):
        order = db.get(Order, order_id)
        if not order:
            raise NotFound("Order not found")
        db.refresh(order)

        existing = _latest_payment_for_order(db, order_id)
        if existing and (existing.status in SETTLED_STATUSES or to_money(existing.refunded_amount) > ZERO_MONEY):
            raise BusinessRuleViolation("Payment already processed for this order")
        if order.status in {"cancelled", "refunded"}:
            raise BusinessRuleViolation(f"Cannot take payment for a {order.status} order")

        amount = to_money(amount)
        if amount != to_money(order.total):
            raise ValidationFailed(f"Payment amount {amount} does not match order total {to_money(order.total)}")

        transaction_id: str | None = None
        if method == "card":
            result = await gateway.authorize(amount, method, card_token)
            if not result.success:
                order.payment_status = "failed"
                order.updated_at = utcnow()
                db.commit()
                log_event(
                    logger,
                    "payment.declined",
                    level=logging.WARNING,
                    order_id=order.id,
                    order_number=order.order_number,
                    amount=str(amount),
                    error=result.error,
                )
                raise GatewayDeclined(result.error or "Payment failed")
            transaction_id = result.transaction_id

        payment = existing or Payment(
            id=generate_id("pay"),
            order_id=order.id,
            order_number=order.order_number,
            currency=settings.currency,
            refunded_amount=ZERO_MONEY,
            created_at=utcnow(),
        )
        payment.amount = amount
        payment.method = method
        payment.status = "captured" if method == "card" else "pending"
        payment.updated_at = utcnow()
        if method == "card":
            payment.gateway_provider = gateway.name
            payment.gateway_transaction_id = transaction_id
            for field, value in _card_details(card_token).items():
                setattr(payment, field, value)
        if existing is None:
            db.add(payment)

        order.payment_status = payment.status
        order.payment_method = method
        order.updated_at = utcnow()
        db.commit()
        db.refresh(payment)
        db.refresh(order)

    if save_card and card_token and method == "card":
        # Card vaulting is delegated to the gateway; only the reference is logged here.
        log_event(logger, "payment.card_saved", user_id=order.user_id, card_last4=payment.card_last4)

    log_event(
        logger,
        "payment.processed",
        payment_id=payment.id,
        order_id=order.id,
        method=method,
        status=payment.status,
        amount=str(payment.amount),
    )
    return PaymentOutcome(
        payment=payment,
        order=order,
        notification_type="payment_received" if payment.status == "captured" else None,
    )


def _apply_full_refund_to_order(db: Session, order: Order, *, processed_by: str, reason: str) -> None:
    product_ids = [item.product_id for item in get_order_items(db, order.id)]
    with stock_locks.hold(product_ids):
        if order.status in TERMINAL_STATUSES:
            return
        order.status = "refunded"
        add_status_history(db, order=order, status="refunded", changed_by=processed_by, notes=f"Full refund: {reason}")
        release_stock_for_order(db, order, performed_by=processed_by)
        db.commit()


async def refund_payment(
    db: Session,
    gateway: PaymentGateway,
    *,
    payment_id: str,
    amount: Decimal,
    reason: str,
    processed_by: str,
) -> PaymentOutcome:
    payment = get_payment(db, payment_id)
    async with _order_flow(payment.order_id):
        db.refresh(payment)

        amount = to_money(amount)
        refundable = to_money(payment.amount - payment.refunded_amount)
        if amount > refundable:
            raise ExceedsRefundable(f"Maximum refundable amount is {payment.currency} {refundable}")
        if payment.status not in REFUNDABLE_STATUSES:
            raise BusinessRuleViolation(f"Cannot refund payment with status: {payment.status}")

        gateway_refund_id: str | None = None
        if payment.method == "card" and payment.gateway_transaction_id:
            result = await gateway.refund(payment.gateway_transaction_id, amount)
            if not result.success:
                log_event(
                    logger,
                    "payment.refund_declined",
                    level=logging.WARNING,
                    payment_id=payment.id,
                    amount=str(amount),
                    error=result.error,
                )
                raise GatewayDeclined(result.error or "Refund failed")
            gateway_refund_id = result.transaction_id

        now = utcnow()
        db.add(
            PaymentRefund(
                id=generate_id("ref"),
                payment_id=payment.id,
                amount=amount,
                reason=reason,
                status="completed",
                gateway_refund_id=gateway_refund_id,
                processed_by=processed_by,
                created_at=now,
            )
        )
        payment.refunded_amount = to_money(payment.refunded_amount + amount)
        payment.status = "refunded" if payment.refunded_amount >= payment.amount else "partially_refunded"
        payment.updated_at = now

        order = db.get(Order, payment.order_id)
        if not order:
            raise NotFound("Order not found")
        order.payment_status = payment.status
        order.updated_at = now
        db.commit()

        if payment.status == "refunded":
            _apply_full_refund_to_order(db, order, processed_by=processed_by, reason=reason)

        db.refresh(payment)
        db.refresh(order)

    log_event(
        logger,
        "payment.refunded",
        payment_id=payment.id,
        order_id=order.id,
        amount=str(amount),
        refunded_amount=str(payment.refunded_amount),
        status=payment.status,
        processed_by=processed_by,
    )
    return PaymentOutcome(
        payment=payment,
        order=order,
        notification_type="refund_processed",
        notification_options={"amount": str(amount)},
    )


async def capture_payment(db: Session, *, payment_id: str) -> PaymentOutcome:
    payment = get_payment(db, payment_id)
    async with _order_flow(payment.order_id):
        db.refresh(payment)
        if payment.status not in {"pending", "authorized"}:
            raise BusinessRuleViolation(f"Cannot capture payment with status: {payment.status}")

        now = utcnow()
        payment.status = "captured"
        payment.updated_at = now
        order = db.get(Order, payment.order_id)
        if not order:
            raise NotFound("Order not found")
        order.payment_status = "captured"
        order.updated_at = now
        db.commit()
        db.refresh(payment)
        db.refresh(order)

    log_event(logger, "payment.captured", payment_id=payment.id, order_id=order.id, amount=str(payment.amount))
    return PaymentOutcome(payment=payment, order=order, notification_type="payment_received")


def get_payment(db: Session, payment_id: str) -> Payment:
    payment = db.get(Payment, payment_id)
    if not payment:
        raise NotFound("Payment not found")
    return payment


def get_payment_for_order(db: Session, order_id: str) -> Payment:
    payment = _latest_payment_for_order(db, order_id)
    if not payment:
        raise NotFound("Payment not found for this order")
    return payment


def get_refunds(db: Session, payment_id: str) -> list[PaymentRefund]:
    return list(
        db.execute(
            select(PaymentRefund)
            .where(PaymentRefund.payment_id == payment_id)
            .order_by(PaymentRefund.created_at.asc(), PaymentRefund.id.asc())
        ).scalars().all()
    )


def _date_conditions(start_date: date | None, end_date: date | None) -> list:
    conditions = []
    if start_date:
        conditions.append(Payment.created_at >= datetime.combine(start_date, time.min, tzinfo=timezone.utc))
    if end_date:
        next_day = datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=timezone.utc)
        conditions.append(Payment.created_at < next_day)
    return conditions


def list_payments(
    db: Session,
    *,
    user_id: str | None = None,
    order_id: str | None = None,
    status: str | None = None,
    method: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Payment], int]:
    if start_date and end_date and end_date < start_date:
        raise ValidationFailed("endDate cannot be before startDate")

    conditions = _date_conditions(start_date, end_date)
    if user_id:
        conditions.append(Payment.order_id.in_(select(Order.id).where(Order.user_id == user_id)))
    if order_id:
        conditions.append(Payment.order_id == order_id)
    if status:
        conditions.append(Payment.status == status)
    if method:
        conditions.append(Payment.method == method)

    total = int(db.execute(select(func.count(Payment.id)).where(*conditions)).scalar_one())
    rows = db.execute(
        select(Payment)
        .where(*conditions)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return list(rows), total


def payment_stats(db: Session, *, start_date: date | None = None, end_date: date | None = None) -> dict[str, Any]:
    payments = db.execute(select(Payment).where(*_date_conditions(start_date, end_date))).scalars().all()

    by_method = {method: 0 for method in PAYMENT_METHODS}
    by_status = {status: 0 for status in PAYMENT_STATUSES}
    total_amount = captured_amount = refunded_amount = pending_amount = ZERO_MONEY
    for payment in payments:
        by_method[payment.method] = by_method.get(payment.method, 0) + 1
        by_status[payment.status] = by_status.get(payment.status, 0) + 1
        total_amount += payment.amount
        refunded_amount += payment.refunded_amount
        if payment.status == "captured":
            captured_amount += payment.amount
        elif payment.status == "pending":
            pending_amount += payment.amount

    return {
        "total_payments": len(payments),
        "total_amount": to_money(total_amount),
        "captured_amount": to_money(captured_amount),
        "refunded_amount": to_money(refunded_amount),
        "pending_amount": to_money(pending_amount),
        "failed_payments": by_status["failed"],
        "by_method": by_method,
        "by_status": by_status,
    }
