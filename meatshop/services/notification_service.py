import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from meatshop.core.config import settings
from meatshop.core.id_utils import generate_id
from meatshop.core.money import to_money, to_quantity
from meatshop.core.observability import log_event
from meatshop.core.time_utils import as_utc, utcnow
from meatshop.models.notification import Notification
from meatshop.models.order import Order, OrderItem
from meatshop.models.user import User
from meatshop.services.email_service import EmailProvider, EmailSendRequest
from meatshop.services.messaging_provider import MessageSendRequest, MessagingProvider
from meatshop.services.notification_templates import render_email, render_sms

logger = logging.getLogger("meatshop.notifications")


@dataclass(frozen=True)
class Recipient:
    user_id: str
    language: str
    mobile: str | None
    email: str | None
    sms_enabled: bool
    email_enabled: bool


@dataclass
class DeliveryRecord:
    user_id: str | None
    order_id: str | None
    notification_type: str
    channel: str
    recipient: str | None
    title: str
    message: str
    status: str = "failed"
    provider: str | None = None
    provider_message_id: str | None = None
    failure_reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def _format_amount(value: Any) -> str:
    return f"{to_money(value):.2f}"


def _address_line(address: dict[str, Any] | None) -> str:
    if not address:
        return ""
    parts = [address.get(key) for key in ("apartment", "building", "street", "area", "emirate")]
    return ", ".join(str(part) for part in parts if part)


def _items_summary(items: list[OrderItem]) -> str:
    return "\n".join(
        f"{to_quantity(item.quantity)} x {item.product_name} = {_format_amount(item.total_price)}" for item in items
    )


class NotificationDispatcher:
    """
    Fans customer and admin notifications out to the SMS and email providers.

    Meant to run after the response is sent: lookups happen in short-lived sessions of
    their own and every outcome, success or failure, is stored as a Notification row.
    Nothing is raised back to the caller.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        sms_provider: MessagingProvider,
        email_provider: EmailProvider,
    ):
        self._session_factory = session_factory
        self.sms_provider = sms_provider
        self.email_provider = email_provider

    def _load_order_context(self, order_id: str) -> tuple[Recipient, dict[str, Any]] | None:
        with self._session_factory() as db:
            order = db.get(Order, order_id)
            if not order:
                return None
            user = db.get(User, order.user_id)
            if not user:
                return None
            items = db.execute(
                select(OrderItem).where(OrderItem.order_id == order.id).order_by(OrderItem.position.asc())
            ).scalars().all()

            recipient = Recipient(
                user_id=user.id,
                language=user.language,
                mobile=user.mobile or order.customer_mobile,
                email=user.email or order.customer_email,
                sms_enabled=user.sms_notifications,
                email_enabled=user.email_notifications,
            )
            estimated = (
                as_utc(order.estimated_delivery_at).strftime("%Y-%m-%d %H:%M UTC")
                if order.estimated_delivery_at
                else "soon"
            )
            context = {
                "orderId": order.id,
                "orderNumber": order.order_number,
                "customerName": order.customer_name or user.display_name,
                "currency": settings.currency,
                "subtotal": _format_amount(order.subtotal),
                "discount": _format_amount(order.discount),
                "vat": _format_amount(order.vat_amount),
                "deliveryFee": _format_amount(order.delivery_fee),
                "total": _format_amount(order.total),
                "amount": _format_amount(order.total),
                "estimatedTime": estimated,
                "trackingUrl": f"{settings.tracking_base_url.rstrip('/')}/{order.order_number}",
                "deliveryAddress": _address_line(order.delivery_address),
                "itemsSummary": _items_summary(list(items)),
            }
        return recipient, context

    def _load_admins(self) -> list[Recipient]:
        with self._session_factory() as db:
            admins = db.execute(
                select(User).where(User.role == "admin", User.is_active.is_(True)).order_by(User.id.asc())
            ).scalars().all()
            return [
                Recipient(
                    user_id=admin.id,
                    language=admin.language,
                    mobile=admin.mobile,
                    email=admin.email,
                    sms_enabled=admin.sms_notifications,
                    email_enabled=admin.email_notifications,
                )
                for admin in admins
            ]

    def _plan(
        self,
        *,
        recipient: Recipient,
        notification_type: str,
        context: dict[str, Any],
        order_id: str | None,
    ) -> list[DeliveryRecord]:
        planned: list[DeliveryRecord] = []
        if recipient.sms_enabled and recipient.mobile:
            text = render_sms(notification_type, recipient.language, context)
            if text:
                planned.append(
                    DeliveryRecord(
                        user_id=recipient.user_id,
                        order_id=order_id,
                        notification_type=notification_type,
                        channel="sms",
                        recipient=recipient.mobile,
                        title=notification_type.replace("_", " ").title(),
                        message=text,
                        metadata=dict(context),
                    )
                )
        if recipient.email_enabled and recipient.email:
            email = render_email(notification_type, recipient.language, context)
            if email:
                planned.append(
                    DeliveryRecord(
                        user_id=recipient.user_id,
                        order_id=order_id,
                        notification_type=notification_type,
                        channel="email",
                        recipient=recipient.email,
                        title=email.subject,
                        message=email.body,
                        metadata=dict(context),
                    )
                )
        return planned

    async def _deliver(self, record: DeliveryRecord) -> DeliveryRecord:
        if record.channel == "sms":
            result = await self.sms_provider.send_message(
                MessageSendRequest(recipient=record.recipient or "", content=record.message)
            )
            record.provider = result.provider
            record.provider_message_id = result.message_id
            record.status = "sent" if result.status == "sent" else "failed"
            record.failure_reason = None if record.status == "sent" else (result.error or "SMS not sent")
        else:
            result = await self.email_provider.send_email(
                EmailSendRequest(recipient=record.recipient or "", subject=record.title, body=record.message)
            )
            record.provider = result.provider
            record.provider_message_id = result.message_id
            record.status = "sent" if result.status == "sent" else "failed"
            record.failure_reason = None if record.status == "sent" else (result.detail or result.status)
        return record

    async def _deliver_all(self, planned: list[DeliveryRecord]) -> list[DeliveryRecord]:
        outcomes = await asyncio.gather(*(self._deliver(record) for record in planned), return_exceptions=True)
        delivered: list[DeliveryRecord] = []
        for record, outcome in zip(planned, outcomes):
            if isinstance(outcome, Exception):
                record.status = "failed"
                record.failure_reason = str(outcome)[:500] or outcome.__class__.__name__
            delivered.append(record)
        return delivered

    def _persist(self, records: list[DeliveryRecord]) -> None:
        if not records:
            return
        now = utcnow()
        try:
            with self._session_factory() as db:
                for record in records:
                    db.add(
                        Notification(
                            id=generate_id("notif"),
                            user_id=record.user_id,
                            order_id=record.order_id,
                            type=record.notification_type,
                            channel=record.channel,
                            recipient=record.recipient,
                            title=record.title[:255],
                            message=record.message,
                            status=record.status,
                            provider=record.provider,
                            provider_message_id=record.provider_message_id,
                            failure_reason=record.failure_reason[:500] if record.failure_reason else None,
                            metadata_json=record.metadata,
                            sent_at=now if record.status == "sent" else None,
                            created_at=now,
                        )
                    )
                db.commit()
        except SQLAlchemyError as exc:
            log_event(
                logger,
                "notification.persist_failed",
                level=logging.ERROR,
                error=str(exc),
                records=len(records),
            )

    async def send_order_notification(
        self,
        order_id: str,
        notification_type: str,
        options: dict[str, Any] | None = None,
    ) -> list[DeliveryRecord]:
        try:
            loaded = self._load_order_context(order_id)
        except SQLAlchemyError as exc:
            log_event(
                logger,
                "notification.lookup_failed",
                level=logging.ERROR,
                order_id=order_id,
                type=notification_type,
                error=str(exc),
            )
            return []
        if loaded is None:
            log_event(
                logger,
                "notification.skipped",
                level=logging.WARNING,
                order_id=order_id,
                type=notification_type,
                reason="order or user not found",
            )
            return []

        recipient, context = loaded
        for key, value in (options or {}).items():
            context[key] = _format_amount(value) if key == "amount" else value

        records = await self._deliver_all(
            self._plan(recipient=recipient, notification_type=notification_type, context=context, order_id=order_id)
        )
        self._persist(records)
        log_event(
            logger,
            "notification.order_sent",
            order_id=order_id,
            order_number=context["orderNumber"],
            type=notification_type,
            channels={record.channel: record.status for record in records},
        )
        return records

    async def send_low_stock_notifications(
        self,
        product_name: str,
        quantity: Decimal,
        threshold: Decimal,
    ) -> list[DeliveryRecord]:
        try:
            admins = self._load_admins()
        except SQLAlchemyError as exc:
            log_event(logger, "notification.lookup_failed", level=logging.ERROR, type="low_stock", error=str(exc))
            return []

        context = {
            "productName": product_name,
            "quantity": str(to_quantity(quantity)),
            "threshold": str(to_quantity(threshold)),
        }
        planned: list[DeliveryRecord] = []
        for admin in admins:
            planned.extend(self._plan(recipient=admin, notification_type="low_stock", context=context, order_id=None))

        records = await self._deliver_all(planned)
        self._persist(records)
        log_event(
            logger,
            "notification.low_stock_sent",
            product_name=product_name,
            quantity=context["quantity"],
            admins=len(admins),
            sent=sum(1 for record in records if record.status == "sent"),
        )
        return records


def list_notifications(
    db: Session,
    *,
    user_id: str | None = None,
    order_id: str | None = None,
    limit: int = 100,
) -> list[Notification]:
    stmt = select(Notification)
    if user_id:
        stmt = stmt.where(Notification.user_id == user_id)
    if order_id:
        stmt = stmt.where(Notification.order_id == order_id)
    return list(
        db.execute(stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)).scalars().all()
    )


def notification_stats(db: Session) -> dict[str, Any]:
    by_status = dict(db.execute(select(Notification.status, func.count(Notification.id)).group_by(Notification.status)).all())
    by_type = dict(db.execute(select(Notification.type, func.count(Notification.id)).group_by(Notification.type)).all())
    by_channel = dict(
        db.execute(select(Notification.channel, func.count(Notification.id)).group_by(Notification.channel)).all()
    )
    return {
        "total": sum(by_status.values()),
        "sent": by_status.get("sent", 0),
        "failed": by_status.get("failed", 0),
        "by_type": by_type,
        "by_channel": by_channel,
    }
