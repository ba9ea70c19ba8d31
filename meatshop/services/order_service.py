import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from meatshop.core.config import settings
from meatshop.core.errors import (
    DiscountNotApplicable,
    InvalidStateTransition,
    NotFound,
    ProductUnavailable,
    ValidationFailed,
)
from meatshop.core.id_utils import OrderNumberSequence, generate_id
from meatshop.core.money import ZERO_MONEY, to_money, to_quantity
from meatshop.core.observability import log_event
from meatshop.core.time_utils import as_utc, utcnow
from meatshop.models.delivery import DeliveryZone
from meatshop.models.discount import DiscountCode
from meatshop.models.order import Order, OrderItem, OrderStatusHistory
from meatshop.models.payment import Payment
from meatshop.models.product import Product
from meatshop.models.user import Address, User
from meatshop.schemas.order import DeliveryAddressIn, OrderCreate
from meatshop.services.stock_service import (
    commit_stock_for_order,
    get_order_items,
    release_stock_for_order,
    reserve_stock_for_order,
    stock_locks,
)

logger = logging.getLogger("meatshop.orders")

ORDER_STATUSES = (
    "pending",
    "confirmed",
    "processing",
    "ready_for_pickup",
    "out_for_delivery",
    "delivered",
    "cancelled",
    "refunded",
)
TERMINAL_STATUSES = frozenset({"delivered", "cancelled", "refunded"})

ALLOWED_ORDER_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"confirmed", "cancelled", "refunded"},
    "confirmed": {"processing", "cancelled", "refunded"},
    "processing": {"ready_for_pickup", "cancelled", "refunded"},
    "ready_for_pickup": {"out_for_delivery", "cancelled", "refunded"},
    "out_for_delivery": {"delivered", "cancelled", "refunded"},
    "delivered": set(),
    "cancelled": set(),
    "refunded": set(),
}

STATUS_NOTIFICATIONS: dict[str, str] = {
    "confirmed": "order_confirmed",
    "processing": "order_processing",
    "ready_for_pickup": "order_ready",
    "out_for_delivery": "order_shipped",
    "delivered": "order_delivered",
    "cancelled": "order_cancelled",
}

order_numbers = OrderNumberSequence(prefix=settings.order_number_prefix, start=settings.order_number_start)


@dataclass(frozen=True)
class StatusChange:
    order: Order
    previous_status: str
    notification_type: str | None


def ensure_transition_allowed(current_status: str, next_status: str) -> None:
    allowed_next = ALLOWED_ORDER_TRANSITIONS.get(current_status, set())
    if next_status not in allowed_next:
        raise InvalidStateTransition(f"Cannot transition order from '{current_status}' to '{next_status}'")


def sync_order_numbers(db: Session) -> None:
    """Continue numbering after the highest order number already stored."""
    latest = db.execute(
        select(Order.order_number).order_by(Order.order_number.desc()).limit(1)
    ).scalar_one_or_none()
    order_numbers.advance_past(latest)


def add_status_history(db: Session, *, order: Order, status: str, changed_by: str, notes: str | None = None) -> None:
    db.add(
        OrderStatusHistory(
            order_id=order.id,
            status=status,
            changed_by=changed_by,
            notes=notes,
            changed_at=utcnow(),
        )
    )


def _resolve_user(db: Session, payload: OrderCreate) -> User:
    user = db.get(User, payload.user_id)
    if user:
        return user
    inline = payload.delivery_address
    if not inline:
        raise NotFound("User not found")

    user = User(
        id=payload.user_id,
        username=inline.label or "Customer",
        email=f"user-{payload.user_id}@temp.local",
        mobile=inline.phone,
        role="customer",
        is_active=True,
        emirate=inline.emirate or "Dubai",
    )
    db.add(user)
    log_event(logger, "order.guest_user_created", user_id=user.id)
    return user


def _resolve_address(db: Session, payload: OrderCreate, user: User) -> Address:
    address = db.get(Address, payload.address_id)
    if address and address.user_id == user.id:
        return address
    inline = payload.delivery_address
    if not inline:
        raise NotFound("Address not found")

    address = Address(
        id=generate_id("addr") if address else (payload.address_id or generate_id("addr")),
        user_id=user.id,
        label=inline.label,
        full_name=inline.full_name,
        mobile=inline.phone,
        emirate=inline.emirate or "Dubai",
        area=inline.area,
        street=inline.street,
        building=inline.building,
        apartment=inline.apartment,
        is_default=True if inline.is_default is None else inline.is_default,
    )
    db.add(address)
    return address


def _address_snapshot(address: Address, inline: DeliveryAddressIn | None) -> dict[str, Any]:
    snapshot: dict[str, Any] = {
        "id": address.id,
        "label": address.label,
        "fullName": address.full_name,
        "mobile": address.mobile,
        "emirate": address.emirate,
        "area": address.area,
        "street": address.street,
        "building": address.building,
        "floor": address.floor,
        "apartment": address.apartment,
    }
    if inline:
        snapshot["city"] = inline.city
        snapshot["country"] = inline.country or "UAE"
        snapshot["postalCode"] = inline.postal_code
        if inline.location:
            snapshot["location"] = {"lat": inline.location.lat, "lng": inline.location.lng}
    return snapshot


def _build_items(db: Session, payload: OrderCreate, order_id: str) -> tuple[list[OrderItem], Decimal]:
    items: list[OrderItem] = []
    subtotal = ZERO_MONEY
    for position, line in enumerate(payload.items):
        product = db.get(Product, line.product_id)
        if not product:
            raise NotFound(f"Product {line.product_id} not found")
        if not product.is_active:
            raise ProductUnavailable(f"Product {product.name} is not available")

        quantity = to_quantity(line.quantity)
        if product.min_order_quantity is not None and quantity < product.min_order_quantity:
            raise ValidationFailed(
                f"Minimum order quantity for {product.name} is {to_quantity(product.min_order_quantity)}"
            )
        if product.max_order_quantity is not None and quantity > product.max_order_quantity:
            raise ValidationFailed(
                f"Maximum order quantity for {product.name} is {to_quantity(product.max_order_quantity)}"
            )

        unit_price = to_money(product.price)
        total_price = to_money(unit_price * quantity)
        subtotal += total_price
        items.append(
            OrderItem(
                id=generate_id("item"),
                order_id=order_id,
                position=position,
                product_id=product.id,
                product_name=product.name,
                product_name_ar=product.name_ar,
                sku=product.sku,
                quantity=quantity,
                unit_price=unit_price,
                total_price=total_price,
                notes=line.notes,
            )
        )
    return items, to_money(subtotal)


def _find_discount_code(db: Session, code: str) -> DiscountCode | None:
    return db.execute(
        select(DiscountCode).where(func.upper(DiscountCode.code) == code.strip().upper())
    ).scalar_one_or_none()


def calculate_discount(db: Session, *, code: str, subtotal: Decimal) -> tuple[DiscountCode, Decimal]:
    discount_code = _find_discount_code(db, code)
    if not discount_code or not discount_code.is_active:
        raise DiscountNotApplicable(f"Discount code {code} is not valid")

    now = utcnow()
    if discount_code.valid_from and as_utc(discount_code.valid_from) > now:
        raise DiscountNotApplicable(f"Discount code {code} is not active yet")
    if discount_code.valid_to and as_utc(discount_code.valid_to) < now:
        raise DiscountNotApplicable(f"Discount code {code} has expired")
    if discount_code.usage_limit is not None and discount_code.usage_count >= discount_code.usage_limit:
        raise DiscountNotApplicable(f"Discount code {code} has reached its usage limit")
    if subtotal < discount_code.minimum_order:
        raise DiscountNotApplicable(
            f"Discount code {code} requires a minimum order of {to_money(discount_code.minimum_order)}"
        )

    if discount_code.type == "percentage":
        discount = subtotal * discount_code.value / Decimal("100")
        if discount_code.maximum_discount is not None:
            discount = min(discount, discount_code.maximum_discount)
    else:
        discount = discount_code.value
    return discount_code, to_money(min(discount, subtotal))


def _claim_discount_usage(db: Session, discount_code: DiscountCode) -> None:
    stmt = update(DiscountCode).where(DiscountCode.id == discount_code.id)
    if discount_code.usage_limit is not None:
        stmt = stmt.where(DiscountCode.usage_count < DiscountCode.usage_limit)
    result = db.execute(
        stmt.values(usage_count=DiscountCode.usage_count + 1).execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise DiscountNotApplicable(f"Discount code {discount_code.code} has reached its usage limit")


def _delivery_zone(db: Session, emirate: str) -> DeliveryZone | None:
    return db.execute(
        select(DeliveryZone)
        .where(DeliveryZone.emirate == emirate, DeliveryZone.is_active.is_(True))
        .order_by(DeliveryZone.delivery_fee.asc())
        .limit(1)
    ).scalar_one_or_none()


def calculate_totals(
    *,
    subtotal: Decimal,
    discount: Decimal,
    delivery_fee: Decimal,
    vat_rate: Decimal,
) -> tuple[Decimal, Decimal]:
    """Return ``(vat_amount, total)``; VAT applies to the discounted subtotal, not the delivery fee."""
    taxable = to_money(subtotal) - to_money(discount)
    vat_amount = to_money(taxable * vat_rate)
    total = to_money(taxable + vat_amount + to_money(delivery_fee))
    return vat_amount, total


def create_order(db: Session, payload: OrderCreate) -> Order:
    user = _resolve_user(db, payload)
    address = _resolve_address(db, payload, user)

    order_id = generate_id("order")
    items, subtotal = _build_items(db, payload, order_id)

    discount_code: DiscountCode | None = None
    discount = ZERO_MONEY
    if payload.discount_code and payload.discount_code.strip():
        discount_code, discount = calculate_discount(db, code=payload.discount_code, subtotal=subtotal)

    zone = _delivery_zone(db, address.emirate)
    delivery_fee = to_money(zone.delivery_fee if zone else settings.default_delivery_fee)
    vat_rate = Decimal(str(settings.vat_rate))
    vat_amount, total = calculate_totals(
        subtotal=subtotal,
        discount=discount,
        delivery_fee=delivery_fee,
        vat_rate=vat_rate,
    )

    now = utcnow()
    estimated_minutes = zone.estimated_minutes if zone else settings.default_delivery_minutes
    order = Order(
        id=order_id,
        order_number=order_numbers.next(),
        user_id=user.id,
        customer_name=user.display_name,
        customer_email=user.email,
        customer_mobile=user.mobile,
        subtotal=subtotal,
        discount=discount,
        discount_code=discount_code.code if discount_code else None,
        delivery_fee=delivery_fee,
        vat_amount=vat_amount,
        vat_rate=vat_rate,
        total=total,
        status="pending",
        payment_status="pending",
        payment_method=payload.payment_method,
        address_id=address.id,
        delivery_address=_address_snapshot(address, payload.delivery_address),
        delivery_notes=payload.delivery_notes,
        delivery_zone_id=zone.id if zone else None,
        estimated_delivery_at=now + timedelta(minutes=estimated_minutes),
        stock_released=False,
        source="web",
        created_at=now,
        updated_at=now,
    )

    with stock_locks.hold(item.product_id for item in items):
        try:
            reserve_stock_for_order(db, order, items)
            if discount_code:
                _claim_discount_usage(db, discount_code)
            db.add(order)
            db.add_all(items)
            add_status_history(db, order=order, status="pending", changed_by="system")
            db.commit()
        except Exception:
            db.rollback()
            raise

    db.refresh(order)
    log_event(
        logger,
        "order.created",
        order_id=order.id,
        order_number=order.order_number,
        user_id=order.user_id,
        total=str(order.total),
        items=len(items),
    )
    return order


def get_order(db: Session, order_id: str) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise NotFound("Order not found")
    return order


def get_order_by_number(db: Session, order_number: str) -> Order:
    order = db.execute(select(Order).where(Order.order_number == order_number)).scalar_one_or_none()
    if not order:
        raise NotFound("Order not found")
    return order


def get_status_history(db: Session, order_id: str) -> list[OrderStatusHistory]:
    return list(
        db.execute(
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.id.asc())
        ).scalars().all()
    )


def _capture_pending_payment(db: Session, order: Order) -> None:
    payment = db.execute(
        select(Payment)
        .where(Payment.order_id == order.id, Payment.status.in_(("pending", "authorized")))
        .order_by(Payment.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()
    if payment:
        payment.status = "captured"
        payment.updated_at = utcnow()


def update_order_status(
    db: Session,
    *,
    order_id: str,
    new_status: str,
    notes: str | None,
    changed_by: str,
) -> StatusChange:
    order = get_order(db, order_id)
    product_ids = [item.product_id for item in get_order_items(db, order.id)]

    with stock_locks.hold(product_ids):
        db.refresh(order)
        previous_status = order.status
        ensure_transition_allowed(previous_status, new_status)

        now = utcnow()
        try:
            order.status = new_status
            order.updated_at = now
            add_status_history(db, order=order, status=new_status, changed_by=changed_by, notes=notes)

            if new_status == "delivered":
                order.actual_delivery_at = now
                order.payment_status = "captured"
                _capture_pending_payment(db, order)
                commit_stock_for_order(db, order, performed_by=changed_by)
            elif new_status in {"cancelled", "refunded"}:
                release_stock_for_order(db, order, performed_by=changed_by)

            db.commit()
        except Exception:
            db.rollback()
            raise

    db.refresh(order)
    log_event(
        logger,
        "order.status_changed",
        order_id=order.id,
        order_number=order.order_number,
        from_status=previous_status,
        to_status=new_status,
        changed_by=changed_by,
    )
    return StatusChange(
        order=order,
        previous_status=previous_status,
        notification_type=STATUS_NOTIFICATIONS.get(new_status),
    )


def cancel_order(db: Session, *, order_id: str, reason: str | None, changed_by: str) -> StatusChange:
    order = get_order(db, order_id)
    if order.status in TERMINAL_STATUSES:
        raise InvalidStateTransition(f"Cannot cancel order with status: {order.status}")
    return update_order_status(
        db,
        order_id=order_id,
        new_status="cancelled",
        notes=reason or "Cancelled by user",
        changed_by=changed_by,
    )


def _day_start(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def list_orders(
    db: Session,
    *,
    user_id: str | None = None,
    status: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Order], int]:
    if start_date and end_date and end_date < start_date:
        raise ValidationFailed("endDate cannot be before startDate")

    conditions = []
    if user_id:
        conditions.append(Order.user_id == user_id)
    if status:
        conditions.append(Order.status == status)
    if start_date:
        conditions.append(Order.created_at >= _day_start(start_date))
    if end_date:
        conditions.append(Order.created_at < _day_start(end_date + timedelta(days=1)))

    total = int(db.execute(select(func.count(Order.id)).where(*conditions)).scalar_one())
    rows = db.execute(
        select(Order)
        .where(*conditions)
        .order_by(Order.created_at.desc(), Order.order_number.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return list(rows), total


def order_stats(db: Session) -> dict[str, Any]:
    orders = db.execute(select(Order.status, Order.total, Order.created_at)).all()
    now = utcnow()
    today = datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
    week_ago = today - timedelta(days=7)
    month_ago = today - timedelta(days=30)

    counts = {status: 0 for status in ORDER_STATUSES}
    stats: dict[str, Any] = {
        "today_orders": 0,
        "week_orders": 0,
        "month_orders": 0,
        "today_sales": ZERO_MONEY,
        "week_sales": ZERO_MONEY,
        "month_sales": ZERO_MONEY,
    }
    grand_total = ZERO_MONEY
    for status, total, created_at in orders:
        counts[status] = counts.get(status, 0) + 1
        grand_total += total
        created = as_utc(created_at)
        counts_as_sale = status not in {"cancelled", "refunded"}
        for window, since in (("today", today), ("week", week_ago), ("month", month_ago)):
            if created >= since:
                stats[f"{window}_orders"] += 1
                if counts_as_sale:
                    stats[f"{window}_sales"] += total

    average = to_money(grand_total / len(orders)) if orders else ZERO_MONEY
    return {
        "total": len(orders),
        **counts,
        **stats,
        "average_order_value": average,
    }
