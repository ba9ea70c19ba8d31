from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

import meatshop.models  # noqa: F401
from meatshop.core.errors import InsufficientStock
from meatshop.db.base import Base
from meatshop.db.seed import seed_demo_data
from meatshop.models.inventory import StockItem
from meatshop.models.order import Order
from meatshop.schemas.order import OrderCreate
from meatshop.services.order_service import create_order
from meatshop.services.stock_service import adjust_stock


def test_last_unit_is_sold_exactly_once(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    db = session_local()
    try:
        seed_demo_data(db)
        adjust_stock(
            db,
            product_id="prod_6",
            quantity=Decimal("1"),
            movement_type="adjustment",
            reason="Last leg on the hook",
            performed_by="admin_1",
        )
    finally:
        db.close()

    payload = OrderCreate(
        user_id="user_1",
        address_id="addr_1",
        payment_method="cod",
        items=[{"product_id": "prod_6", "quantity": 1}],
    )

    def attempt(_: int) -> str:
        session = session_local()
        try:
            create_order(session, payload)
            return "ok"
        except InsufficientStock:
            return "sold_out"
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(attempt, range(8)))

    assert outcomes.count("ok") == 1
    assert outcomes.count("sold_out") == 7

    db = session_local()
    try:
        stock = db.execute(select(StockItem).where(StockItem.product_id == "prod_6")).scalar_one()
        assert float(stock.quantity) == 1.0
        assert float(stock.reserved_quantity) == 1.0
        assert float(stock.available_quantity) == 0.0
        assert db.execute(select(func.count(Order.id))).scalar_one() == 1
    finally:
        db.close()
    engine.dispose()
