from typing import Iterator

from fastapi import Header
from sqlalchemy.orm import Session

from meatshop.core.config import settings
from meatshop.db.session import SessionLocal
from meatshop.services.email_service import get_email_provider
from meatshop.services.messaging_provider import get_messaging_provider
from meatshop.services.notification_service import NotificationDispatcher
from meatshop.services.payment_provider import PaymentGateway, get_payment_provider


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_actor_id(x_user_id: str | None = Header(default=None)) -> str:
    if x_user_id and x_user_id.strip():
        return x_user_id.strip()
    return "admin"


def get_payment_gateway() -> PaymentGateway:
    return get_payment_provider(settings.payment_provider_default)


def get_notification_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher(
        SessionLocal,
        sms_provider=get_messaging_provider(settings.sms_provider_default),
        email_provider=get_email_provider(settings.email_provider_default),
    )
