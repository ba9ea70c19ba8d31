from datetime import date, datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import ConfigDict, Field, model_validator

from meatshop.schemas.common import CamelModel

StockUpdateType = Literal["in", "out", "adjustment"]


class StockUpdateIn(CamelModel):
    product_id: str
    quantity: Decimal = Field(
        ...,
        ge=0,
        description="Units to add/remove, or the absolute on-hand quantity for adjustments.",
    )
    type: StockUpdateType
    reason: str = Field(min_length=1, max_length=255)

    @model_validator(mode="after")
    def validate_non_zero_movement(self) -> "StockUpdateIn":
        if self.type != "adjustment" and self.quantity == 0:
            raise ValueError("quantity must be greater than 0 for in/out updates")
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "productId": "prod_2",
                "quantity": 4.5,
                "type": "in",
                "reason": "Morning delivery from supplier",
            }
        }
    )


class RestockIn(CamelModel):
    quantity: Decimal = Field(gt=0)
    batch_number: Optional[str] = Field(default=None, max_length=100)
    expiry_date: Optional[date] = None


class ThresholdsIn(CamelModel):
    low_stock_threshold: Optional[Decimal] = Field(default=None, ge=0)
    reorder_point: Optional[Decimal] = Field(default=None, ge=0)
    reorder_quantity: Optional[Decimal] = Field(default=None, ge=0)


class StockItemOut(CamelModel):
    id: str
    product_id: str
    product_name: str | None = None
    product_name_ar: str | None = None
    product_sku: str | None = None
    product_price: float | None = None
    quantity: float
    reserved_quantity: float
    available_quantity: float
    low_stock_threshold: float
    reorder_point: float
    reorder_quantity: float
    batch_number: str | None = None
    expiry_date: date | None = None
    last_restocked_at: datetime | None = None
    updated_at: datetime


class StockMovementOut(CamelModel):
    id: int
    product_id: str
    product_name: str | None = None
    type: str
    quantity: float
    previous_quantity: float
    new_quantity: float
    reason: str
    reference_type: str | None = None
    reference_id: str | None = None
    performed_by: str
    created_at: datetime


class LowStockAlertOut(CamelModel):
    product_id: str
    product_name: str
    current_quantity: float
    threshold: float
    reorder_point: float
    suggested_reorder_quantity: float


class BulkUpdateResultOut(CamelModel):
    product_id: str
    success: bool
    error: str | None = None


class BulkStockUpdateIn(CamelModel):
    updates: list[StockUpdateIn] = Field(min_length=1, max_length=200)
