from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import ConfigDict, Field

from meatshop.schemas.common import CamelModel


class ProductCreate(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    name_ar: Optional[str] = Field(default=None, max_length=255)
    sku: str = Field(min_length=1, max_length=100)
    price: Decimal = Field(gt=0)
    cost_price: Optional[Decimal] = Field(default=None, ge=0)
    category: Optional[str] = Field(default=None, max_length=100)
    unit: str = Field(default="kg", max_length=20)
    min_order_quantity: Optional[Decimal] = Field(default=None, gt=0)
    max_order_quantity: Optional[Decimal] = Field(default=None, gt=0)
    is_active: bool = True
    is_featured: bool = False
    initial_quantity: Decimal = Field(default=Decimal("0"), ge=0)
    low_stock_threshold: Optional[Decimal] = Field(default=None, ge=0)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Wagyu Striploin",
                "nameAr": "ستريب لوين واغيو",
                "sku": "BEEF-WAGY-001",
                "price": 249.0,
                "costPrice": 170.0,
                "category": "Beef",
                "unit": "kg",
                "minOrderQuantity": 0.5,
                "maxOrderQuantity": 5,
                "initialQuantity": 12,
            }
        }
    )


class ProductUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    name_ar: Optional[str] = Field(default=None, max_length=255)
    price: Optional[Decimal] = Field(default=None, gt=0)
    cost_price: Optional[Decimal] = Field(default=None, ge=0)
    category: Optional[str] = Field(default=None, max_length=100)
    unit: Optional[str] = Field(default=None, max_length=20)
    min_order_quantity: Optional[Decimal] = Field(default=None, gt=0)
    max_order_quantity: Optional[Decimal] = Field(default=None, gt=0)
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None


class ProductOut(CamelModel):
    id: str
    name: str
    name_ar: str | None = None
    sku: str
    price: float
    cost_price: float | None = None
    category: str | None = None
    unit: str
    min_order_quantity: float | None = None
    max_order_quantity: float | None = None
    is_active: bool
    is_featured: bool
    created_at: datetime
    updated_at: datetime
