from datetime import date

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.orm import Session

from meatshop.core.api_docs import error_responses
from meatshop.core.deps import get_actor_id, get_db, get_notification_dispatcher, get_payment_gateway
from meatshop.core.errors import GatewayDeclined
from meatshop.core.money import to_money
from meatshop.core.observability import domain_error_response
from meatshop.models.payment import Payment
from meatshop.schemas.common import ApiResponse, PaginatedResponse, pagination_meta
from meatshop.schemas.order import PaymentMethod
from meatshop.schemas.payment import (
    PaymentMethodCounts,
    PaymentOut,
    PaymentProcessIn,
    PaymentRefundOut,
    PaymentStatsOut,
    PaymentStatusCounts,
    RefundIn,
)
from meatshop.services.notification_service import NotificationDispatcher
from meatshop.services.payment_provider import PaymentGateway
from meatshop.services.payment_service import (
    PaymentOutcome,
    capture_payment,
    get_payment,
    get_payment_for_order,
    get_refunds,
    list_payments,
    payment_stats,
    process_payment,
    refund_payment,
)

router = APIRouter(prefix="/api/payments", tags=["payments"])


def _payment_out(db: Session, payment: Payment) -> PaymentOut:
    return PaymentOut(
        id=payment.id,
        order_id=payment.order_id,
        order_number=payment.order_number,
        amount=float(payment.amount),
        currency=payment.currency,
        method=payment.method,
        status=payment.status,
        card_brand=payment.card_brand,
        card_last4=payment.card_last4,
        card_expiry_month=payment.card_expiry_month,
        card_expiry_year=payment.card_expiry_year,
        gateway_transaction_id=payment.gateway_transaction_id,
        refunded_amount=float(payment.refunded_amount),
        refunds=[
            PaymentRefundOut(
                id=refund.id,
                amount=float(refund.amount),
                reason=refund.reason,
                status=refund.status,
                gateway_refund_id=refund.gateway_refund_id,
                processed_by=refund.processed_by,
                created_at=refund.created_at,
            )
            for refund in get_refunds(db, payment.id)
        ],
        created_at=payment.created_at,
        updated_at=payment.updated_at,
    )


def _schedule(background_tasks: BackgroundTasks, dispatcher: NotificationDispatcher, outcome: PaymentOutcome) -> None:
    if outcome.notification_type:
        background_tasks.add_task(
            dispatcher.send_order_notification,
            outcome.order.id,
            outcome.notification_type,
            outcome.notification_options,
        )


@router.get(
    "",
    response_model=PaginatedResponse[PaymentOut],
    summary="List payments",
    responses=error_responses(400, 500),
)
def list_payments_endpoint(
    user_id: str | None = Query(default=None, alias="userId"),
    order_id: str | None = Query(default=None, alias="orderId"),
    status: str | None = Query(default=None),
    method: PaymentMethod | None = Query(default=None),
    start_date: date | None = Query(default=None, alias="startDate"),
    end_date: date | None = Query(default=None, alias="endDate"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
    db: Session = Depends(get_db),
):
    payments, total = list_payments(
        db,
        user_id=user_id,
        order_id=order_id,
        status=status,
        method=method,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return PaginatedResponse[PaymentOut](
        data=[_payment_out(db, payment) for payment in payments],
        pagination=pagination_meta(page=page, limit=limit, total=total),
    )


@router.get(
    "/stats",
    response_model=ApiResponse[PaymentStatsOut],
    summary="Payment statistics",
    responses=error_responses(500),
)
def payment_stats_endpoint(
    start_date: date | None = Query(default=None, alias="startDate"),
    end_date: date | None = Query(default=None, alias="endDate"),
    db: Session = Depends(get_db),
):
    stats = payment_stats(db, start_date=start_date, end_date=end_date)
    return ApiResponse[PaymentStatsOut](
        data=PaymentStatsOut(
            total_payments=stats["total_payments"],
            total_amount=float(stats["total_amount"]),
            captured_amount=float(stats["captured_amount"]),
            refunded_amount=float(stats["refunded_amount"]),
            pending_amount=float(stats["pending_amount"]),
            failed_payments=stats["failed_payments"],
            by_method=PaymentMethodCounts(**stats["by_method"]),
            by_status=PaymentStatusCounts(**stats["by_status"]),
        )
    )


@router.get(
    "/order/{order_id}",
    response_model=ApiResponse[PaymentOut],
    summary="Get payment for an order",
    responses=error_responses(404, 500),
)
def get_payment_for_order_endpoint(order_id: str, db: Session = Depends(get_db)):
    return ApiResponse[PaymentOut](data=_payment_out(db, get_payment_for_order(db, order_id)))


@router.get(
    "/{payment_id}",
    response_model=ApiResponse[PaymentOut],
    summary="Get payment",
    responses=error_responses(404, 500),
)
def get_payment_endpoint(payment_id: str, db: Session = Depends(get_db)):
    return ApiResponse[PaymentOut](data=_payment_out(db, get_payment(db, payment_id)))


@router.post(
    "/process",
    response_model=ApiResponse[PaymentOut],
    summary="Pay for an order",
    responses=error_responses(400, 404, 500),
)
async def process_payment_endpoint(
    request: Request,
    payload: PaymentProcessIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    try:
        outcome = await process_payment(
            db,
            gateway,
            order_id=payload.order_id,
            amount=payload.amount,
            method=payload.method,
            card_token=payload.card_token,
            save_card=payload.save_card,
        )
    except GatewayDeclined as exc:
        # The decline is still an error response, but the customer hears about it.
        background_tasks.add_task(
            dispatcher.send_order_notification,
            payload.order_id,
            "payment_failed",
            {"reason": exc.message},
        )
        return domain_error_response(request, exc, background=background_tasks)

    _schedule(background_tasks, dispatcher, outcome)
    message = "Payment successful" if outcome.payment.status == "captured" else "Order confirmed. Pay on delivery."
    if payload.method == "bank_transfer":
        message = "Order confirmed. Awaiting bank transfer."
    return ApiResponse[PaymentOut](data=_payment_out(db, outcome.payment), message=message)


@router.post(
    "/{payment_id}/refund",
    response_model=ApiResponse[PaymentOut],
    summary="Refund a payment",
    responses=error_responses(400, 404, 500),
)
async def refund_payment_endpoint(
    payment_id: str,
    payload: RefundIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    outcome = await refund_payment(
        db,
        gateway,
        payment_id=payment_id,
        amount=payload.amount,
        reason=payload.reason,
        processed_by=actor_id,
    )
    _schedule(background_tasks, dispatcher, outcome)
    return ApiResponse[PaymentOut](
        data=_payment_out(db, outcome.payment),
        message=f"Refund of {outcome.payment.currency} {to_money(payload.amount)} processed successfully",
    )


@router.post(
    "/{payment_id}/capture",
    response_model=ApiResponse[PaymentOut],
    summary="Capture a pending payment",
    responses=error_responses(400, 404, 500),
)
async def capture_payment_endpoint(
    payment_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    outcome = await capture_payment(db, payment_id=payment_id)
    _schedule(background_tasks, dispatcher, outcome)
    return ApiResponse[PaymentOut](data=_payment_out(db, outcome.payment), message="Payment captured successfully")
