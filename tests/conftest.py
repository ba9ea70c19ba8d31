import pytest
import os
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SEED_DEMO_DATA", "false")

import meatshop.models  # noqa: F401
from meatshop.core.deps import get_db, get_notification_dispatcher, get_payment_gateway
from meatshop.db.base import Base
from meatshop.db.seed import seed_demo_data
from meatshop.main import app
from meatshop.services.email_service import SimulatedEmailProvider
from meatshop.services.messaging_provider import SimulatedSmsProvider
from meatshop.services.notification_service import NotificationDispatcher
from meatshop.services.payment_provider import SimulatedPaymentGateway


def make_gateway(*, success_rate: float = 1.0, refund_success_rate: float = 1.0) -> SimulatedPaymentGateway:
    return SimulatedPaymentGateway(
        success_rate=success_rate,
        refund_success_rate=refund_success_rate,
        delay_ms=0,
    )


def make_dispatcher(session_local, *, sms_success_rate: float = 1.0, email_success_rate: float = 1.0):
    return NotificationDispatcher(
        session_local,
        sms_provider=SimulatedSmsProvider(success_rate=sms_success_rate, delay_ms=0),
        email_provider=SimulatedEmailProvider(success_rate=email_success_rate, delay_ms=0),
    )


@pytest.fixture()
def test_context():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    db = session_local()
    try:
        seed_demo_data(db)
    finally:
        db.close()

    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    gateway = make_gateway()
    dispatcher = make_dispatcher(session_local)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_notification_dispatcher] = lambda: dispatcher

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)
