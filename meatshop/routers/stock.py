from datetime import date, datetime, time, timedelta, timezone

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from meatshop.core.api_docs import error_responses
from meatshop.core.deps import get_actor_id, get_db, get_notification_dispatcher
from meatshop.models.inventory import StockItem
from meatshop.models.product import Product
from meatshop.schemas.common import ApiResponse
from meatshop.schemas.stock import (
    BulkStockUpdateIn,
    BulkUpdateResultOut,
    LowStockAlertOut,
    RestockIn,
    StockItemOut,
    StockMovementOut,
    StockUpdateIn,
    ThresholdsIn,
)
from meatshop.services.notification_service import NotificationDispatcher
from meatshop.services.stock_service import (
    adjust_stock,
    bulk_adjust_stock,
    get_stock_for_product,
    list_movements,
    list_stock,
    low_stock_alerts,
    low_stock_signals,
    restock_product,
    update_thresholds,
)

router = APIRouter(prefix="/api/stock", tags=["stock"])


def _stock_out(stock: StockItem, product: Product | None) -> StockItemOut:
    return StockItemOut(
        id=stock.id,
        product_id=stock.product_id,
        product_name=product.name if product else None,
        product_name_ar=product.name_ar if product else None,
        product_sku=product.sku if product else None,
        product_price=float(product.price) if product else None,
        quantity=float(stock.quantity),
        reserved_quantity=float(stock.reserved_quantity),
        available_quantity=float(stock.available_quantity),
        low_stock_threshold=float(stock.low_stock_threshold),
        reorder_point=float(stock.reorder_point),
        reorder_quantity=float(stock.reorder_quantity),
        batch_number=stock.batch_number,
        expiry_date=stock.expiry_date,
        last_restocked_at=stock.last_restocked_at,
        updated_at=stock.updated_at,
    )


def _schedule_low_stock_alerts(
    db: Session,
    background_tasks: BackgroundTasks,
    dispatcher: NotificationDispatcher,
    product_ids: list[str],
) -> None:
    for signal in low_stock_signals(db, product_ids):
        background_tasks.add_task(
            dispatcher.send_low_stock_notifications,
            signal.product_name,
            signal.quantity,
            signal.threshold,
        )


@router.get(
    "",
    response_model=ApiResponse[list[StockItemOut]],
    summary="List stock levels",
    responses=error_responses(500),
)
def list_stock_endpoint(
    product_id: str | None = Query(default=None, alias="productId"),
    low_stock: bool = Query(default=False, alias="lowStock"),
    db: Session = Depends(get_db),
):
    rows = list_stock(db, product_id=product_id, low_stock_only=low_stock)
    return ApiResponse[list[StockItemOut]](data=[_stock_out(stock, product) for stock, product in rows])


@router.get(
    "/alerts",
    response_model=ApiResponse[list[LowStockAlertOut]],
    summary="Low stock alerts, most urgent first",
    responses=error_responses(500),
)
def low_stock_alerts_endpoint(db: Session = Depends(get_db)):
    return ApiResponse[list[LowStockAlertOut]](
        data=[
            LowStockAlertOut(
                product_id=stock.product_id,
                product_name=product.name,
                current_quantity=float(stock.available_quantity),
                threshold=float(stock.low_stock_threshold),
                reorder_point=float(stock.reorder_point),
                suggested_reorder_quantity=float(stock.reorder_quantity),
            )
            for stock, product in low_stock_alerts(db)
        ]
    )


@router.get(
    "/movements",
    response_model=ApiResponse[list[StockMovementOut]],
    summary="Stock movement history",
    responses=error_responses(400, 500),
)
def list_movements_endpoint(
    product_id: str | None = Query(default=None, alias="productId"),
    movement_type: str | None = Query(default=None, alias="type"),
    start_date: date | None = Query(default=None, alias="startDate"),
    end_date: date | None = Query(default=None, alias="endDate"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    rows = list_movements(
        db,
        product_id=product_id,
        movement_type=movement_type,
        start=datetime.combine(start_date, time.min, tzinfo=timezone.utc) if start_date else None,
        end=datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=timezone.utc) if end_date else None,
        limit=limit,
    )
    return ApiResponse[list[StockMovementOut]](
        data=[
            StockMovementOut(
                id=movement.id,
                product_id=movement.product_id,
                product_name=product_name,
                type=movement.type,
                quantity=float(movement.quantity),
                previous_quantity=float(movement.previous_quantity),
                new_quantity=float(movement.new_quantity),
                reason=movement.reason,
                reference_type=movement.reference_type,
                reference_id=movement.reference_id,
                performed_by=movement.performed_by,
                created_at=movement.created_at,
            )
            for movement, product_name in rows
        ]
    )


@router.get(
    "/{product_id}",
    response_model=ApiResponse[StockItemOut],
    summary="Stock level for a product",
    responses=error_responses(404, 500),
)
def get_stock_endpoint(product_id: str, db: Session = Depends(get_db)):
    stock, product = get_stock_for_product(db, product_id)
    return ApiResponse[StockItemOut](data=_stock_out(stock, product))


@router.post(
    "/update",
    response_model=ApiResponse[StockItemOut],
    summary="Record a stock movement",
    responses=error_responses(400, 404, 500),
)
def update_stock_endpoint(
    payload: StockUpdateIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    stock = adjust_stock(
        db,
        product_id=payload.product_id,
        quantity=payload.quantity,
        movement_type=payload.type,
        reason=payload.reason,
        performed_by=actor_id,
    )
    _schedule_low_stock_alerts(db, background_tasks, dispatcher, [payload.product_id])
    return ApiResponse[StockItemOut](
        data=_stock_out(stock, db.get(Product, stock.product_id)),
        message="Stock updated successfully",
    )


@router.post(
    "/bulk-update",
    response_model=ApiResponse[list[BulkUpdateResultOut]],
    summary="Record several stock movements",
    responses=error_responses(400, 500),
)
def bulk_update_stock_endpoint(
    payload: BulkStockUpdateIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    results = bulk_adjust_stock(
        db,
        updates=[(item.product_id, item.quantity, item.type, item.reason) for item in payload.updates],
        performed_by=actor_id,
    )
    _schedule_low_stock_alerts(
        db,
        background_tasks,
        dispatcher,
        [product_id for product_id, success, _ in results if success],
    )
    succeeded = sum(1 for _, success, _ in results if success)
    return ApiResponse[list[BulkUpdateResultOut]](
        data=[
            BulkUpdateResultOut(product_id=product_id, success=success, error=error)
            for product_id, success, error in results
        ],
        message=f"{succeeded} of {len(results)} updates applied",
    )


@router.post(
    "/restock/{product_id}",
    response_model=ApiResponse[StockItemOut],
    summary="Receive a restock batch",
    responses=error_responses(400, 404, 500),
)
def restock_endpoint(
    product_id: str,
    payload: RestockIn,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
):
    stock = restock_product(
        db,
        product_id=product_id,
        quantity=payload.quantity,
        batch_number=payload.batch_number,
        expiry_date=payload.expiry_date,
        performed_by=actor_id,
    )
    return ApiResponse[StockItemOut](
        data=_stock_out(stock, db.get(Product, product_id)),
        message="Product restocked successfully",
    )


@router.patch(
    "/{product_id}/thresholds",
    response_model=ApiResponse[StockItemOut],
    summary="Update low stock and reorder thresholds",
    responses=error_responses(400, 404, 500),
)
def update_thresholds_endpoint(
    product_id: str,
    payload: ThresholdsIn,
    db: Session = Depends(get_db),
):
    stock = update_thresholds(
        db,
        product_id=product_id,
        low_stock_threshold=payload.low_stock_threshold,
        reorder_point=payload.reorder_point,
        reorder_quantity=payload.reorder_quantity,
    )
    return ApiResponse[StockItemOut](
        data=_stock_out(stock, db.get(Product, product_id)),
        message="Thresholds updated successfully",
    )
