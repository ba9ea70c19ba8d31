from datetime import date
from decimal import Decimal

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Query
from sqlalchemy.orm import Session

from meatshop.core.api_docs import error_responses
from meatshop.core.deps import get_actor_id, get_db, get_notification_dispatcher
from meatshop.models.order import Order
from meatshop.schemas.common import ApiResponse, PaginatedResponse, pagination_meta
from meatshop.schemas.order import (
    OrderCancelIn,
    OrderCreate,
    OrderItemOut,
    OrderOut,
    OrderStatsOut,
    OrderStatus,
    OrderStatusUpdateIn,
    StatusHistoryOut,
)
from meatshop.services.notification_service import NotificationDispatcher
from meatshop.services.order_service import (
    cancel_order,
    create_order,
    get_order,
    get_order_by_number,
    get_status_history,
    list_orders,
    order_stats,
    update_order_status,
)
from meatshop.services.stock_service import get_order_items, low_stock_signals

router = APIRouter(prefix="/api/orders", tags=["orders"])


def _order_out(db: Session, order: Order) -> OrderOut:
    return OrderOut(
        id=order.id,
        order_number=order.order_number,
        user_id=order.user_id,
        customer_name=order.customer_name,
        customer_email=order.customer_email,
        customer_mobile=order.customer_mobile,
        items=[
            OrderItemOut(
                id=item.id,
                product_id=item.product_id,
                product_name=item.product_name,
                product_name_ar=item.product_name_ar,
                sku=item.sku,
                quantity=float(item.quantity),
                unit_price=float(item.unit_price),
                total_price=float(item.total_price),
                notes=item.notes,
            )
            for item in get_order_items(db, order.id)
        ],
        subtotal=float(order.subtotal),
        discount=float(order.discount),
        discount_code=order.discount_code,
        delivery_fee=float(order.delivery_fee),
        vat_amount=float(order.vat_amount),
        vat_rate=float(order.vat_rate),
        total=float(order.total),
        status=order.status,
        payment_status=order.payment_status,
        payment_method=order.payment_method,
        address_id=order.address_id,
        delivery_address=order.delivery_address,
        delivery_notes=order.delivery_notes,
        delivery_zone_id=order.delivery_zone_id,
        estimated_delivery_at=order.estimated_delivery_at,
        actual_delivery_at=order.actual_delivery_at,
        status_history=[
            StatusHistoryOut(
                status=entry.status,
                changed_by=entry.changed_by,
                changed_at=entry.changed_at,
                notes=entry.notes,
            )
            for entry in get_status_history(db, order.id)
        ],
        source=order.source,
        created_at=order.created_at,
        updated_at=order.updated_at,
    )


def _schedule_low_stock_alerts(
    db: Session,
    background_tasks: BackgroundTasks,
    dispatcher: NotificationDispatcher,
    order: Order,
) -> None:
    for signal in low_stock_signals(db, [item.product_id for item in get_order_items(db, order.id)]):
        background_tasks.add_task(
            dispatcher.send_low_stock_notifications,
            signal.product_name,
            signal.quantity,
            signal.threshold,
        )


@router.get(
    "",
    response_model=PaginatedResponse[OrderOut],
    summary="List orders",
    responses=error_responses(400, 500),
)
def list_orders_endpoint(
    user_id: str | None = Query(default=None, alias="userId"),
    status: OrderStatus | None = Query(default=None),
    start_date: date | None = Query(default=None, alias="startDate"),
    end_date: date | None = Query(default=None, alias="endDate"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
    db: Session = Depends(get_db),
):
    orders, total = list_orders(
        db,
        user_id=user_id,
        status=status,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return PaginatedResponse[OrderOut](
        data=[_order_out(db, order) for order in orders],
        pagination=pagination_meta(page=page, limit=limit, total=total),
    )


@router.get(
    "/stats",
    response_model=ApiResponse[OrderStatsOut],
    summary="Order statistics",
    responses=error_responses(500),
)
def order_stats_endpoint(db: Session = Depends(get_db)):
    stats = {key: float(value) if isinstance(value, Decimal) else value for key, value in order_stats(db).items()}
    return ApiResponse[OrderStatsOut](data=OrderStatsOut(**stats))


@router.get(
    "/number/{order_number}",
    response_model=ApiResponse[OrderOut],
    summary="Get order by order number",
    responses=error_responses(404, 500),
)
def get_order_by_number_endpoint(order_number: str, db: Session = Depends(get_db)):
    return ApiResponse[OrderOut](data=_order_out(db, get_order_by_number(db, order_number)))


@router.get(
    "/{order_id}",
    response_model=ApiResponse[OrderOut],
    summary="Get order",
    responses=error_responses(404, 500),
)
def get_order_endpoint(order_id: str, db: Session = Depends(get_db)):
    return ApiResponse[OrderOut](data=_order_out(db, get_order(db, order_id)))


@router.post(
    "",
    status_code=201,
    response_model=ApiResponse[OrderOut],
    summary="Place order",
    responses=error_responses(400, 404, 500),
)
def create_order_endpoint(
    payload: OrderCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    order = create_order(db, payload)
    background_tasks.add_task(dispatcher.send_order_notification, order.id, "order_placed")
    _schedule_low_stock_alerts(db, background_tasks, dispatcher, order)
    return ApiResponse[OrderOut](data=_order_out(db, order), message="Order created successfully")


@router.patch(
    "/{order_id}/status",
    response_model=ApiResponse[OrderOut],
    summary="Update order status",
    responses=error_responses(400, 404, 500),
)
def update_order_status_endpoint(
    order_id: str,
    payload: OrderStatusUpdateIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    change = update_order_status(
        db,
        order_id=order_id,
        new_status=payload.status,
        notes=payload.notes,
        changed_by=actor_id,
    )
    if change.notification_type:
        background_tasks.add_task(dispatcher.send_order_notification, change.order.id, change.notification_type)
    return ApiResponse[OrderOut](
        data=_order_out(db, change.order),
        message=f"Order status updated to {payload.status}",
    )


@router.delete(
    "/{order_id}",
    response_model=ApiResponse[OrderOut],
    summary="Cancel order",
    responses=error_responses(400, 404, 500),
)
def cancel_order_endpoint(
    order_id: str,
    background_tasks: BackgroundTasks,
    payload: OrderCancelIn | None = Body(default=None),
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    change = cancel_order(
        db,
        order_id=order_id,
        reason=payload.reason if payload else None,
        changed_by=actor_id,
    )
    background_tasks.add_task(dispatcher.send_order_notification, change.order.id, "order_cancelled")
    return ApiResponse[OrderOut](data=_order_out(db, change.order), message="Order cancelled successfully")
