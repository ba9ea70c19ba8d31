from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import ConfigDict, Field

from meatshop.schemas.common import CamelModel

OrderStatus = Literal[
    "pending",
    "confirmed",
    "processing",
    "ready_for_pickup",
    "out_for_delivery",
    "delivered",
    "cancelled",
    "refunded",
]
PaymentMethod = Literal["card", "cod", "bank_transfer"]


class OrderItemIn(CamelModel):
    product_id: str
    quantity: Decimal = Field(gt=0, decimal_places=2)
    notes: Optional[str] = Field(default=None, max_length=255)


class GeoPoint(CamelModel):
    lat: float
    lng: float


class DeliveryAddressIn(CamelModel):
    id: Optional[str] = None
    user_id: Optional[str] = None
    label: str
    full_name: Optional[str] = None
    street: str
    building: Optional[str] = None
    apartment: Optional[str] = None
    area: Optional[str] = None
    city: Optional[str] = None
    emirate: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None
    phone: str
    is_default: Optional[bool] = None
    location: Optional[GeoPoint] = None


class OrderCreate(CamelModel):
    user_id: str = Field(min_length=1)
    items: list[OrderItemIn] = Field(min_length=1)
    address_id: str
    payment_method: PaymentMethod
    delivery_notes: Optional[str] = Field(default=None, max_length=500)
    discount_code: Optional[str] = None
    # Used when the user or address is not known to this service yet.
    delivery_address: Optional[DeliveryAddressIn] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "userId": "user_1",
                "items": [
                    {"productId": "prod_1", "quantity": 1.5, "notes": "Thick cut"},
                    {"productId": "prod_3", "quantity": 2},
                ],
                "addressId": "addr_1",
                "paymentMethod": "card",
                "discountCode": "WELCOME10",
            }
        }
    )


class OrderStatusUpdateIn(CamelModel):
    status: OrderStatus
    notes: Optional[str] = Field(default=None, max_length=500)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "confirmed",
                "notes": "Butcher assigned",
            }
        }
    )


class OrderCancelIn(CamelModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class OrderItemOut(CamelModel):
    id: str
    product_id: str
    product_name: str
    product_name_ar: str | None = None
    sku: str
    quantity: float
    unit_price: float
    total_price: float
    notes: str | None = None


class StatusHistoryOut(CamelModel):
    status: str
    changed_by: str
    changed_at: datetime
    notes: str | None = None


class OrderOut(CamelModel):
    id: str
    order_number: str
    user_id: str
    customer_name: str | None = None
    customer_email: str | None = None
    customer_mobile: str | None = None
    items: list[OrderItemOut]
    subtotal: float
    discount: float
    discount_code: str | None = None
    delivery_fee: float
    vat_amount: float
    vat_rate: float
    total: float
    status: str
    payment_status: str
    payment_method: str
    address_id: str
    delivery_address: dict[str, Any]
    delivery_notes: str | None = None
    delivery_zone_id: str | None = None
    estimated_delivery_at: datetime | None = None
    actual_delivery_at: datetime | None = None
    status_history: list[StatusHistoryOut]
    source: str
    created_at: datetime
    updated_at: datetime


class OrderStatsOut(CamelModel):
    total: int
    pending: int
    confirmed: int
    processing: int
    ready_for_pickup: int
    out_for_delivery: int
    delivered: int
    cancelled: int
    refunded: int
    today_orders: int
    week_orders: int
    month_orders: int
    today_sales: float
    week_sales: float
    month_sales: float
    average_order_value: float
