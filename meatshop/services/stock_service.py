import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from threading import Lock
from typing import Iterable, Iterator, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from meatshop.core.errors import BusinessRuleViolation, InsufficientStock, NotFound
from meatshop.core.id_utils import generate_id
from meatshop.core.money import ZERO_QUANTITY, to_quantity
from meatshop.core.observability import log_event
from meatshop.core.time_utils import utcnow
from meatshop.models.inventory import StockItem, StockMovement
from meatshop.models.order import Order, OrderItem
from meatshop.models.product import Product

logger = logging.getLogger("meatshop.stock")


class ProductLockRegistry:
    """Per-product mutexes so two requests never reserve the same stock concurrently."""

    def __init__(self):
        self._locks: dict[str, Lock] = {}
        self._guard = Lock()

    def _lock_for(self, product_id: str) -> Lock:
        with self._guard:
            lock = self._locks.get(product_id)
            if lock is None:
                lock = Lock()
                self._locks[product_id] = lock
            return lock

    @contextmanager
    def hold(self, product_ids: Iterable[str]) -> Iterator[None]:
        # Sorted acquisition order keeps multi-product orders deadlock free.
        locks = [self._lock_for(product_id) for product_id in sorted(set(product_ids))]
        acquired: list[Lock] = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


stock_locks = ProductLockRegistry()


@dataclass(frozen=True)
class LowStockSignal:
    product_id: str
    product_name: str
    quantity: Decimal
    threshold: Decimal


def _recompute_available(stock: StockItem) -> None:
    stock.available_quantity = to_quantity(stock.quantity - stock.reserved_quantity)
    stock.updated_at = utcnow()


def _record_movement(
    db: Session,
    *,
    product_id: str,
    movement_type: str,
    quantity: Decimal,
    previous_quantity: Decimal,
    new_quantity: Decimal,
    reason: str,
    performed_by: str,
    reference_type: str | None = None,
    reference_id: str | None = None,
) -> StockMovement:
    movement = StockMovement(
        product_id=product_id,
        type=movement_type,
        quantity=to_quantity(abs(quantity)),
        previous_quantity=to_quantity(previous_quantity),
        new_quantity=to_quantity(new_quantity),
        reason=reason[:255],
        reference_type=reference_type,
        reference_id=reference_id,
        performed_by=performed_by,
        created_at=utcnow(),
    )
    db.add(movement)
    return movement


def get_stock_item(db: Session, product_id: str, *, for_update: bool = False) -> StockItem | None:
    stmt = select(StockItem).where(StockItem.product_id == product_id)
    if for_update:
        # Re-read the row even if this session already holds it, so values reflect the latest commit.
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return db.execute(stmt).scalar_one_or_none()


def _require_stock_item(db: Session, product_id: str) -> StockItem:
    stock = get_stock_item(db, product_id, for_update=True)
    if not stock:
        raise NotFound(f"Stock item not found for product {product_id}")
    return stock


def quantity_by_product(items: Sequence[OrderItem]) -> dict[str, Decimal]:
    totals: dict[str, Decimal] = {}
    for item in items:
        totals[item.product_id] = totals.get(item.product_id, ZERO_QUANTITY) + to_quantity(item.quantity)
    return totals


def get_order_items(db: Session, order_id: str) -> list[OrderItem]:
    return list(
        db.execute(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.position.asc())
        ).scalars().all()
    )


def reserve_stock_for_order(
    db: Session,
    order: Order,
    items: Sequence[OrderItem],
    *,
    performed_by: str = "system",
) -> list[StockMovement]:
    """
    Reserve every line of the order or nothing at all.

    All products are checked before any row is touched; the reservation is flushed
    immediately so a concurrent writer that bumped a row's version is detected here.
    """
    requested = quantity_by_product(items)
    names = {item.product_id: item.product_name for item in items}

    stock_by_product: dict[str, StockItem] = {}
    for product_id, quantity in requested.items():
        stock = get_stock_item(db, product_id, for_update=True)
        if not stock:
            raise InsufficientStock(f"Stock not found for product: {names[product_id]}")
        if stock.available_quantity < quantity:
            raise InsufficientStock(
                f"Insufficient stock for {names[product_id]}. "
                f"Available: {to_quantity(stock.available_quantity)}, Requested: {quantity}"
            )
        stock_by_product[product_id] = stock

    movements: list[StockMovement] = []
    for product_id, quantity in requested.items():
        stock = stock_by_product[product_id]
        stock.reserved_quantity = to_quantity(stock.reserved_quantity + quantity)
        _recompute_available(stock)
        movements.append(
            _record_movement(
                db,
                product_id=product_id,
                movement_type="reserved",
                quantity=quantity,
                previous_quantity=stock.quantity,
                new_quantity=stock.quantity,
                reason=f"Reserved for order {order.order_number}",
                performed_by=performed_by,
                reference_type="order",
                reference_id=order.id,
            )
        )

    try:
        db.flush()
    except StaleDataError as exc:
        db.rollback()
        raise InsufficientStock("Stock changed while reserving the order, please retry") from exc

    log_event(
        logger,
        "stock.reserved",
        order_id=order.id,
        order_number=order.order_number,
        products={product_id: str(quantity) for product_id, quantity in requested.items()},
    )
    return movements


def release_stock_for_order(db: Session, order: Order, *, performed_by: str = "system") -> list[StockMovement]:
    """Return the order's reservation to available stock. A second call is a no-op."""
    if order.stock_released:
        return []

    movements: list[StockMovement] = []
    for product_id, quantity in quantity_by_product(get_order_items(db, order.id)).items():
        stock = get_stock_item(db, product_id, for_update=True)
        if not stock:
            continue
        stock.reserved_quantity = max(ZERO_QUANTITY, to_quantity(stock.reserved_quantity - quantity))
        _recompute_available(stock)
        movements.append(
            _record_movement(
                db,
                product_id=product_id,
                movement_type="released",
                quantity=quantity,
                previous_quantity=stock.quantity,
                new_quantity=stock.quantity,
                reason=f"Released from {order.status} order {order.order_number}",
                performed_by=performed_by,
                reference_type="order",
                reference_id=order.id,
            )
        )

    order.stock_released = True
    log_event(logger, "stock.released", order_id=order.id, order_number=order.order_number, items=len(movements))
    return movements


def commit_stock_for_order(db: Session, order: Order, *, performed_by: str = "system") -> list[StockMovement]:
    """Turn a delivered order's reservation into an outbound movement."""
    if order.stock_released:
        return []

    movements: list[StockMovement] = []
    for product_id, quantity in quantity_by_product(get_order_items(db, order.id)).items():
        stock = get_stock_item(db, product_id, for_update=True)
        if not stock:
            continue
        previous_quantity = stock.quantity
        stock.reserved_quantity = max(ZERO_QUANTITY, to_quantity(stock.reserved_quantity - quantity))
        stock.quantity = max(ZERO_QUANTITY, to_quantity(stock.quantity - quantity))
        _recompute_available(stock)
        movements.append(
            _record_movement(
                db,
                product_id=product_id,
                movement_type="out",
                quantity=quantity,
                previous_quantity=previous_quantity,
                new_quantity=stock.quantity,
                reason=f"Sold via order {order.order_number}",
                performed_by=performed_by,
                reference_type="order",
                reference_id=order.id,
            )
        )

    order.stock_released = True
    return movements


def _apply_adjustment(
    db: Session,
    *,
    product_id: str,
    quantity: Decimal,
    movement_type: str,
    reason: str,
    performed_by: str,
    reference_type: str | None = "manual",
) -> StockItem:
    stock = _require_stock_item(db, product_id)
    quantity = to_quantity(quantity)
    previous_quantity = to_quantity(stock.quantity)

    if movement_type == "in":
        stock.quantity = to_quantity(stock.quantity + quantity)
        moved = quantity
    elif movement_type == "out":
        if stock.available_quantity < quantity:
            raise InsufficientStock(
                f"Insufficient stock for product {product_id}. "
                f"Available: {to_quantity(stock.available_quantity)}, Requested: {quantity}"
            )
        stock.quantity = to_quantity(stock.quantity - quantity)
        moved = quantity
    elif movement_type == "adjustment":
        # Adjustments set the counted on-hand quantity.
        if quantity < stock.reserved_quantity:
            raise BusinessRuleViolation(
                f"Adjusted quantity {quantity} is below the reserved quantity "
                f"{to_quantity(stock.reserved_quantity)} for product {product_id}"
            )
        stock.quantity = quantity
        moved = quantity - previous_quantity
    else:
        raise BusinessRuleViolation(f"Unsupported stock movement type: {movement_type}")

    _recompute_available(stock)
    _record_movement(
        db,
        product_id=product_id,
        movement_type=movement_type,
        quantity=moved,
        previous_quantity=previous_quantity,
        new_quantity=stock.quantity,
        reason=reason,
        performed_by=performed_by,
        reference_type=reference_type,
    )
    return stock


def adjust_stock(
    db: Session,
    *,
    product_id: str,
    quantity: Decimal,
    movement_type: str,
    reason: str,
    performed_by: str,
) -> StockItem:
    with stock_locks.hold([product_id]):
        stock = _apply_adjustment(
            db,
            product_id=product_id,
            quantity=quantity,
            movement_type=movement_type,
            reason=reason,
            performed_by=performed_by,
        )
        db.commit()
    db.refresh(stock)
    log_event(
        logger,
        "stock.adjusted",
        product_id=product_id,
        type=movement_type,
        quantity=str(to_quantity(quantity)),
        available=str(stock.available_quantity),
        performed_by=performed_by,
    )
    return stock


def bulk_adjust_stock(
    db: Session,
    *,
    updates: Sequence[tuple[str, Decimal, str, str]],
    performed_by: str,
) -> list[tuple[str, bool, str | None]]:
    """Apply ``(product_id, quantity, type, reason)`` updates one by one; failures do not stop the batch."""
    results: list[tuple[str, bool, str | None]] = []
    for product_id, quantity, movement_type, reason in updates:
        try:
            adjust_stock(
                db,
                product_id=product_id,
                quantity=quantity,
                movement_type=movement_type,
                reason=reason,
                performed_by=performed_by,
            )
        except (NotFound, BusinessRuleViolation) as exc:
            db.rollback()
            results.append((product_id, False, exc.message))
        else:
            results.append((product_id, True, None))
    return results


def restock_product(
    db: Session,
    *,
    product_id: str,
    quantity: Decimal,
    batch_number: str | None,
    expiry_date: date | None,
    performed_by: str,
) -> StockItem:
    with stock_locks.hold([product_id]):
        stock = _apply_adjustment(
            db,
            product_id=product_id,
            quantity=quantity,
            movement_type="in",
            reason=f"Restock - Batch: {batch_number or 'N/A'}",
            performed_by=performed_by,
        )
        stock.last_restocked_at = utcnow()
        if batch_number:
            stock.batch_number = batch_number
        if expiry_date:
            stock.expiry_date = expiry_date
        db.commit()
    db.refresh(stock)
    log_event(logger, "stock.restocked", product_id=product_id, quantity=str(to_quantity(quantity)))
    return stock


def update_thresholds(
    db: Session,
    *,
    product_id: str,
    low_stock_threshold: Decimal | None,
    reorder_point: Decimal | None,
    reorder_quantity: Decimal | None,
) -> StockItem:
    with stock_locks.hold([product_id]):
        stock = _require_stock_item(db, product_id)
        if low_stock_threshold is not None:
            stock.low_stock_threshold = to_quantity(low_stock_threshold)
        if reorder_point is not None:
            stock.reorder_point = to_quantity(reorder_point)
        if reorder_quantity is not None:
            stock.reorder_quantity = to_quantity(reorder_quantity)
        stock.updated_at = utcnow()
        db.commit()
    db.refresh(stock)
    return stock


def create_stock_item(
    db: Session,
    *,
    product_id: str,
    quantity: Decimal,
    low_stock_threshold: Decimal,
    performed_by: str,
) -> StockItem:
    quantity = to_quantity(quantity)
    stock = StockItem(
        id=generate_id("stock"),
        product_id=product_id,
        quantity=quantity,
        reserved_quantity=ZERO_QUANTITY,
        available_quantity=quantity,
        low_stock_threshold=to_quantity(low_stock_threshold),
    )
    db.add(stock)
    if quantity > 0:
        _record_movement(
            db,
            product_id=product_id,
            movement_type="in",
            quantity=quantity,
            previous_quantity=ZERO_QUANTITY,
            new_quantity=quantity,
            reason="Opening stock",
            performed_by=performed_by,
            reference_type="manual",
        )
    return stock


def is_low_stock(stock: StockItem) -> bool:
    return stock.available_quantity <= stock.low_stock_threshold


def low_stock_signals(db: Session, product_ids: Iterable[str]) -> list[LowStockSignal]:
    ids = sorted(set(product_ids))
    if not ids:
        return []
    rows = db.execute(
        select(StockItem, Product.name)
        .join(Product, Product.id == StockItem.product_id)
        .where(StockItem.product_id.in_(ids))
    ).all()
    return [
        LowStockSignal(
            product_id=stock.product_id,
            product_name=product_name,
            quantity=to_quantity(stock.available_quantity),
            threshold=to_quantity(stock.low_stock_threshold),
        )
        for stock, product_name in rows
        if is_low_stock(stock)
    ]


def low_stock_alerts(db: Session) -> list[tuple[StockItem, Product]]:
    """Stock at or below its threshold, most urgent (lowest available) first."""
    rows = db.execute(select(StockItem, Product).join(Product, Product.id == StockItem.product_id)).all()
    alerts = [(stock, product) for stock, product in rows if is_low_stock(stock)]
    alerts.sort(key=lambda row: (row[0].available_quantity, row[1].name))
    return alerts


def list_stock(
    db: Session,
    *,
    product_id: str | None = None,
    low_stock_only: bool = False,
) -> list[tuple[StockItem, Product]]:
    stmt = select(StockItem, Product).join(Product, Product.id == StockItem.product_id)
    if product_id:
        stmt = stmt.where(StockItem.product_id == product_id)
    rows = db.execute(stmt.order_by(Product.name.asc())).all()
    if low_stock_only:
        return [(stock, product) for stock, product in rows if is_low_stock(stock)]
    return [(stock, product) for stock, product in rows]


def get_stock_for_product(db: Session, product_id: str) -> tuple[StockItem, Product | None]:
    stock = get_stock_item(db, product_id)
    if not stock:
        raise NotFound("Stock item not found")
    return stock, db.get(Product, product_id)


def list_movements(
    db: Session,
    *,
    product_id: str | None = None,
    movement_type: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 100,
) -> list[tuple[StockMovement, str | None]]:
    stmt = select(StockMovement, Product.name).outerjoin(Product, Product.id == StockMovement.product_id)
    if product_id:
        stmt = stmt.where(StockMovement.product_id == product_id)
    if movement_type:
        stmt = stmt.where(StockMovement.type == movement_type)
    if start:
        stmt = stmt.where(StockMovement.created_at >= start)
    if end:
        stmt = stmt.where(StockMovement.created_at < end)
    rows = db.execute(stmt.order_by(StockMovement.id.desc()).limit(limit)).all()
    return [(movement, product_name) for movement, product_name in rows]
