from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from meatshop.core.time_utils import utcnow
from meatshop.db.base import Base


class StockItem(Base):
    """
    On-hand stock for one product. available_quantity = quantity - reserved_quantity.
    """
    __tablename__ = "stock_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("products.id"), unique=True, index=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    reserved_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    available_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    low_stock_threshold: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("5.00"))
    reorder_point: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("10.00"))
    reorder_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("20.00"))
    batch_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    expiry_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    last_restocked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # Optimistic concurrency: a flush against a row another writer already bumped raises StaleDataError.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )

    __mapper_args__ = {"version_id_col": version}


class StockMovement(Base):
    """
    Append-only audit log. One row per stock change.
    """
    __tablename__ = "stock_movements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("products.id"), index=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # in, out, adjustment, reserved, released
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    previous_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    new_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    reference_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # order, manual, return, waste
    reference_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    performed_by: Mapped[str] = mapped_column(String(36), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    __table_args__ = (
        Index("ix_stock_movements_product_created_at", "product_id", "created_at"),
        Index("ix_stock_movements_reference", "reference_type", "reference_id"),
    )
