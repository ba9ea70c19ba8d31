import asyncio

from sqlalchemy import select

from meatshop.core.deps import get_notification_dispatcher
from meatshop.main import app
from meatshop.models.notification import Notification
from meatshop.models.user import User
from meatshop.services.email_service import SimulatedEmailProvider
from meatshop.services.messaging_provider import SimulatedSmsProvider
from meatshop.services.notification_service import NotificationDispatcher
from meatshop.services.notification_templates import render_email, render_sms, render_template


def _place_order(client, *, user_id: str = "user_1", address_id: str = "addr_1") -> str:
    res = client.post(
        "/api/orders",
        json={
            "userId": user_id,
            "addressId": address_id,
            "paymentMethod": "cod",
            "items": [{"productId": "prod_3", "quantity": 2}],
        },
    )
    assert res.status_code == 201, res.text
    return res.json()["data"]["id"]


def _notifications(session_local, order_id: str) -> list[Notification]:
    db = session_local()
    try:
        return list(
            db.execute(
                select(Notification)
                .where(Notification.order_id == order_id)
                .order_by(Notification.type.asc(), Notification.channel.asc())
            ).scalars().all()
        )
    finally:
        db.close()


def _update_user(session_local, user_id: str, **fields) -> None:
    db = session_local()
    try:
        user = db.get(User, user_id)
        for field, value in fields.items():
            setattr(user, field, value)
        db.commit()
    finally:
        db.close()


def test_order_placed_notifies_by_sms_and_email(test_context):
    client, session_local = test_context
    order_id = _place_order(client)

    rows = _notifications(session_local, order_id)
    assert [(row.type, row.channel, row.status) for row in rows] == [
        ("order_placed", "email", "sent"),
        ("order_placed", "sms", "sent"),
    ]
    email, sms = rows
    assert email.recipient == "ahmed@example.com"
    assert sms.recipient == "+971501111111"
    assert email.user_id == "user_1"
    assert email.sent_at is not None
    assert email.metadata_json["orderId"] == order_id
    assert email.metadata_json["trackingUrl"].endswith(email.metadata_json["orderNumber"])
    assert email.metadata_json["orderNumber"] in sms.message
    assert "Chicken Breast" in email.message


def test_channel_preferences_are_respected(test_context):
    client, session_local = test_context
    _update_user(session_local, "user_2", sms_notifications=False)

    order_id = _place_order(client, user_id="user_2", address_id="addr_3")
    assert [(row.type, row.channel) for row in _notifications(session_local, order_id)] == [
        ("order_placed", "email"),
    ]

    _update_user(session_local, "user_2", email_notifications=False)
    assert client.delete(f"/api/orders/{order_id}").status_code == 200
    types = [row.type for row in _notifications(session_local, order_id)]
    assert "order_cancelled" not in types


def test_arabic_customers_get_arabic_messages(test_context):
    client, session_local = test_context
    _update_user(session_local, "user_1", language="ar")

    order_id = _place_order(client)
    sms = [row for row in _notifications(session_local, order_id) if row.channel == "sms"][0]
    assert sms.message.startswith("تم استلام الطلب")


def test_failed_sends_are_recorded(test_context):
    client, session_local = test_context
    dispatcher = NotificationDispatcher(
        session_local,
        sms_provider=SimulatedSmsProvider(success_rate=0.0, delay_ms=0),
        email_provider=SimulatedEmailProvider(success_rate=1.0, delay_ms=0),
    )
    app.dependency_overrides[get_notification_dispatcher] = lambda: dispatcher

    order_id = _place_order(client)
    email, sms = _notifications(session_local, order_id)
    assert email.status == "sent"
    assert sms.status == "failed"
    assert sms.failure_reason == "SMS gateway temporarily unavailable"
    assert sms.sent_at is None


def test_status_without_email_template_sends_sms_only(test_context):
    client, session_local = test_context
    order_id = _place_order(client)
    assert client.patch(f"/api/orders/{order_id}/status", json={"status": "confirmed"}).status_code == 200
    assert client.patch(f"/api/orders/{order_id}/status", json={"status": "processing"}).status_code == 200

    sent = [(row.type, row.channel) for row in _notifications(session_local, order_id)]
    assert ("order_confirmed", "email") in sent
    assert ("order_confirmed", "sms") in sent
    assert ("order_processing", "sms") in sent
    assert ("order_processing", "email") not in sent


def test_dispatcher_skips_unknown_order(test_context):
    _, session_local = test_context
    dispatcher = NotificationDispatcher(
        session_local,
        sms_provider=SimulatedSmsProvider(success_rate=1.0, delay_ms=0),
        email_provider=SimulatedEmailProvider(success_rate=1.0, delay_ms=0),
    )

    assert asyncio.run(dispatcher.send_order_notification("order_missing", "order_placed")) == []


def test_dispatcher_formats_amount_option(test_context):
    client, session_local = test_context
    order_id = _place_order(client)
    dispatcher = NotificationDispatcher(
        session_local,
        sms_provider=SimulatedSmsProvider(success_rate=1.0, delay_ms=0),
        email_provider=SimulatedEmailProvider(success_rate=1.0, delay_ms=0),
    )

    records = asyncio.run(dispatcher.send_order_notification(order_id, "refund_processed", {"amount": "12.5"}))
    sms = [record for record in records if record.channel == "sms"][0]
    assert "AED 12.50" in sms.message


def test_notification_history_and_stats_endpoints(test_context):
    client, _ = test_context
    order_id = _place_order(client)

    listed = client.get("/api/notifications", params={"orderId": order_id})
    assert listed.status_code == 200, listed.text
    rows = listed.json()["data"]
    assert {row["channel"] for row in rows} == {"sms", "email"}
    assert all(row["orderId"] == order_id for row in rows)
    assert rows[0]["metadata"]["currency"] == "AED"

    stats = client.get("/api/notifications/stats")
    assert stats.status_code == 200, stats.text
    data = stats.json()["data"]
    assert data["total"] == 2
    assert data["sent"] == 2
    assert data["failed"] == 0
    assert data["byType"] == {"order_placed": 2}
    assert data["byChannel"] == {"email": 1, "sms": 1}


def test_template_rendering():
    assert render_template("Hi { name }, order #{orderNumber}", {"name": "Sara"}) == "Hi Sara, order #"

    sms = render_sms("order_delivered", "en", {"orderNumber": "ORD-001001"})
    assert sms == "Your order #ORD-001001 has been delivered. Enjoy your meal!"

    fallback = render_sms("order_delivered", "fr", {"orderNumber": "ORD-001001"})
    assert fallback == sms

    assert render_sms("unknown_type", "en", {}) is None
    assert render_email("order_ready", "en", {}) is None

    email = render_email("order_cancelled", "ar", {"orderNumber": "ORD-001002"})
    assert email is not None
    assert "ORD-001002" in email.subject
