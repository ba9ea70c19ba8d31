import logging
from datetime import timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from meatshop.core.observability import log_event
from meatshop.core.time_utils import utcnow
from meatshop.models.delivery import DeliveryZone
from meatshop.models.discount import DiscountCode
from meatshop.models.inventory import StockItem
from meatshop.models.product import Product
from meatshop.models.user import Address, User

logger = logging.getLogger("meatshop.seed")

# (id, name, name_ar, sku, price, category, unit, min qty, max qty, active, opening stock)
_PRODUCTS = [
    ("prod_1", "Premium Beef Steak", "ستيك لحم بقري ممتاز", "BEEF-STEAK-001", "89.99", "Beef", "kg", "0.25", "10", True, "40"),
    ("prod_2", "Lamb Chops", "ريش لحم ضأن", "LAMB-CHOPS-001", "74.50", "Lamb", "kg", "0.25", "10", True, "35"),
    ("prod_3", "Chicken Breast", "صدر دجاج", "CHKN-BRST-001", "34.99", "Chicken", "kg", "0.25", "20", True, "60"),
    ("prod_4", "Ground Beef", "لحم بقري مفروم", "BEEF-GRND-001", "45.00", "Beef", "kg", "0.50", "10", True, "25"),
    ("prod_5", "Beef Brisket", "صدر لحم بقري", "BEEF-BRSK-001", "95.00", "Beef", "kg", "1", "5", True, "18"),
    ("prod_6", "Sheep Leg", "فخذ خروف", "SHEP-LEG-001", "125.00", "Sheep", "piece", "1", "3", True, "12"),
    ("prod_7", "Lamb Leg", "فخذ ضأن", "LAMB-LEG-001", "125.00", "Lamb", "piece", "1", "3", False, "0"),
    ("prod_8", "Sheep Ribs", "ريش خروف", "SHEP-RIBS-001", "85.00", "Sheep", "kg", "0.50", "5", True, "30"),
]

_USERS = [
    ("admin_1", "admin", "admin@butcher.ae", "+971501234567", "Admin", "User", "admin", "Dubai", False),
    ("user_1", "ahmed", "ahmed@example.com", "+971501111111", "Ahmed", "Al Maktoum", "customer", "Dubai", True),
    ("user_2", "fatima", "fatima@example.com", "+971502222222", "Fatima", "Al Nahyan", "customer", "Abu Dhabi", True),
    ("user_3", "mohamed", "mohamed@example.com", "+971503333333", "Mohamed", "Al Sharqi", "customer", "Sharjah", True),
    ("driver_1", "driver", "driver@butcher.ae", "+971504444444", "Hassan", "Driver", "delivery", "Dubai", False),
]


def seed_demo_data(db: Session) -> bool:
    """Load the demo catalogue, users, zones and discount codes into an empty database."""
    if db.get(Product, "prod_1"):
        return False

    now = utcnow()
    for product_id, name, name_ar, sku, price, category, unit, min_qty, max_qty, active, stock in _PRODUCTS:
        db.add(
            Product(
                id=product_id,
                name=name,
                name_ar=name_ar,
                sku=sku,
                price=Decimal(price),
                category=category,
                unit=unit,
                min_order_quantity=Decimal(min_qty),
                max_order_quantity=Decimal(max_qty),
                is_active=active,
                is_featured=product_id in {"prod_1", "prod_2"},
            )
        )
        db.add(
            StockItem(
                id=f"stock_{product_id}",
                product_id=product_id,
                quantity=Decimal(stock),
                reserved_quantity=Decimal("0"),
                available_quantity=Decimal(stock),
                low_stock_threshold=Decimal("5"),
                reorder_point=Decimal("10"),
                reorder_quantity=Decimal("20"),
                last_restocked_at=now,
            )
        )

    for user_id, username, email, mobile, first_name, family_name, role, emirate, marketing in _USERS:
        db.add(
            User(
                id=user_id,
                username=username,
                email=email,
                mobile=mobile,
                first_name=first_name,
                family_name=family_name,
                role=role,
                is_active=True,
                emirate=emirate,
                language="en",
                sms_notifications=True,
                email_notifications=True,
                marketing_emails=marketing,
            )
        )

    db.add_all(
        [
            Address(
                id="addr_1",
                user_id="user_1",
                label="Home",
                full_name="Ahmed Al Maktoum",
                mobile="+971501111111",
                emirate="Dubai",
                area="Downtown Dubai",
                street="Sheikh Mohammed bin Rashid Boulevard",
                building="Burj Khalifa Tower",
                floor="45",
                apartment="4502",
                is_default=True,
            ),
            Address(
                id="addr_2",
                user_id="user_1",
                label="Office",
                full_name="Ahmed Al Maktoum",
                mobile="+971501111111",
                emirate="Dubai",
                area="DIFC",
                street="Gate Avenue",
                building="Emirates Towers",
                floor="22",
                apartment="2205",
            ),
            Address(
                id="addr_3",
                user_id="user_2",
                label="Home",
                full_name="Fatima Al Nahyan",
                mobile="+971502222222",
                emirate="Abu Dhabi",
                area="Al Reem Island",
                street="Marina Walk",
                building="Sky Tower",
                floor="32",
                apartment="3201",
                is_default=True,
            ),
        ]
    )

    db.add_all(
        [
            DeliveryZone(id="zone_dubai_downtown", name="Dubai Downtown", name_ar="وسط دبي", emirate="Dubai",
                         delivery_fee=Decimal("15"), minimum_order=Decimal("50"), estimated_minutes=45),
            DeliveryZone(id="zone_dubai_marina", name="Dubai Marina", name_ar="مرسى دبي", emirate="Dubai",
                         delivery_fee=Decimal("20"), minimum_order=Decimal("75"), estimated_minutes=60),
            DeliveryZone(id="zone_abu_dhabi", name="Abu Dhabi City", name_ar="مدينة أبوظبي", emirate="Abu Dhabi",
                         delivery_fee=Decimal("25"), minimum_order=Decimal("100"), estimated_minutes=90),
            DeliveryZone(id="zone_sharjah", name="Sharjah City", name_ar="مدينة الشارقة", emirate="Sharjah",
                         delivery_fee=Decimal("20"), minimum_order=Decimal("75"), estimated_minutes=75),
        ]
    )

    db.add_all(
        [
            DiscountCode(id="disc_1", code="WELCOME10", type="percentage", value=Decimal("10"),
                         minimum_order=Decimal("50"), maximum_discount=Decimal("50"), usage_limit=1000,
                         usage_count=150, valid_from=now, valid_to=now + timedelta(days=90)),
            DiscountCode(id="disc_2", code="MEAT20", type="percentage", value=Decimal("20"),
                         minimum_order=Decimal("150"), maximum_discount=Decimal("100"), usage_limit=500,
                         usage_count=45, valid_from=now, valid_to=now + timedelta(days=30)),
            DiscountCode(id="disc_3", code="FLAT50", type="fixed", value=Decimal("50"),
                         minimum_order=Decimal("200"), usage_limit=200, usage_count=20,
                         valid_from=now, valid_to=now + timedelta(days=60)),
        ]
    )

    db.commit()
    log_event(logger, "seed.completed", products=len(_PRODUCTS), users=len(_USERS))
    return True
