from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from meatshop.core.api_docs import error_responses
from meatshop.core.config import settings
from meatshop.core.deps import get_actor_id, get_db
from meatshop.core.errors import NotFound, ValidationFailed
from meatshop.core.id_utils import generate_id
from meatshop.core.money import to_money, to_quantity
from meatshop.models.product import Product
from meatshop.schemas.common import ApiResponse, PaginatedResponse, pagination_meta
from meatshop.schemas.product import ProductCreate, ProductOut, ProductUpdate
from meatshop.services.stock_service import create_stock_item

router = APIRouter(prefix="/api/products", tags=["products"])


def _product_out(product: Product) -> ProductOut:
    return ProductOut(
        id=product.id,
        name=product.name,
        name_ar=product.name_ar,
        sku=product.sku,
        price=float(product.price),
        cost_price=float(product.cost_price) if product.cost_price is not None else None,
        category=product.category,
        unit=product.unit,
        min_order_quantity=float(product.min_order_quantity) if product.min_order_quantity is not None else None,
        max_order_quantity=float(product.max_order_quantity) if product.max_order_quantity is not None else None,
        is_active=product.is_active,
        is_featured=product.is_featured,
        created_at=product.created_at,
        updated_at=product.updated_at,
    )


def _get_product_or_404(db: Session, product_id: str) -> Product:
    product = db.get(Product, product_id)
    if not product:
        raise NotFound("Product not found")
    return product


def _ensure_quantity_bounds(min_quantity: Decimal | None, max_quantity: Decimal | None) -> None:
    if min_quantity is not None and max_quantity is not None and min_quantity > max_quantity:
        raise ValidationFailed("minOrderQuantity cannot exceed maxOrderQuantity")


def _ensure_unique_sku(db: Session, sku: str, *, exclude_id: str | None = None) -> None:
    stmt = select(Product.id).where(func.lower(Product.sku) == sku.strip().lower())
    if exclude_id:
        stmt = stmt.where(Product.id != exclude_id)
    if db.execute(stmt).scalar_one_or_none():
        raise ValidationFailed(f"SKU {sku} already exists")


@router.get(
    "",
    response_model=PaginatedResponse[ProductOut],
    summary="List products",
    responses=error_responses(500),
)
def list_products(
    q: str | None = Query(default=None),
    category: str | None = Query(default=None),
    include_inactive: bool = Query(default=False, alias="includeInactive"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    conditions = []
    if not include_inactive:
        conditions.append(Product.is_active.is_(True))
    if category:
        conditions.append(func.lower(Product.category) == category.strip().lower())
    if q and q.strip():
        pattern = f"%{q.strip()}%"
        conditions.append(or_(Product.name.ilike(pattern), Product.sku.ilike(pattern)))

    total = int(db.execute(select(func.count(Product.id)).where(*conditions)).scalar_one())
    rows = db.execute(
        select(Product).where(*conditions).order_by(Product.name.asc()).offset((page - 1) * limit).limit(limit)
    ).scalars().all()
    return PaginatedResponse[ProductOut](
        data=[_product_out(product) for product in rows],
        pagination=pagination_meta(page=page, limit=limit, total=total),
    )


@router.get(
    "/{product_id}",
    response_model=ApiResponse[ProductOut],
    summary="Get product",
    responses=error_responses(404, 500),
)
def get_product(product_id: str, db: Session = Depends(get_db)):
    return ApiResponse[ProductOut](data=_product_out(_get_product_or_404(db, product_id)))


@router.post(
    "",
    status_code=201,
    response_model=ApiResponse[ProductOut],
    summary="Create product with its stock record",
    responses=error_responses(400, 500),
)
def create_product(
    payload: ProductCreate,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
):
    _ensure_quantity_bounds(payload.min_order_quantity, payload.max_order_quantity)
    _ensure_unique_sku(db, payload.sku)

    product = Product(
        id=generate_id("prod"),
        name=payload.name.strip(),
        name_ar=payload.name_ar,
        sku=payload.sku.strip(),
        price=to_money(payload.price),
        cost_price=to_money(payload.cost_price) if payload.cost_price is not None else None,
        category=payload.category,
        unit=payload.unit,
        min_order_quantity=to_quantity(payload.min_order_quantity) if payload.min_order_quantity else None,
        max_order_quantity=to_quantity(payload.max_order_quantity) if payload.max_order_quantity else None,
        is_active=payload.is_active,
        is_featured=payload.is_featured,
    )
    db.add(product)
    create_stock_item(
        db,
        product_id=product.id,
        quantity=payload.initial_quantity,
        low_stock_threshold=(
            payload.low_stock_threshold
            if payload.low_stock_threshold is not None
            else Decimal(settings.low_stock_default_threshold)
        ),
        performed_by=actor_id,
    )
    db.commit()
    db.refresh(product)
    return ApiResponse[ProductOut](data=_product_out(product), message="Product created successfully")


@router.patch(
    "/{product_id}",
    response_model=ApiResponse[ProductOut],
    summary="Update product",
    responses=error_responses(400, 404, 500),
)
def update_product(product_id: str, payload: ProductUpdate, db: Session = Depends(get_db)):
    product = _get_product_or_404(db, product_id)
    updates = payload.model_dump(exclude_unset=True)
    if not updates:
        raise ValidationFailed("No fields to update")

    _ensure_quantity_bounds(
        updates.get("min_order_quantity", product.min_order_quantity),
        updates.get("max_order_quantity", product.max_order_quantity),
    )
    for field in ("price", "cost_price"):
        if updates.get(field) is not None:
            updates[field] = to_money(updates[field])
    for field in ("min_order_quantity", "max_order_quantity"):
        if updates.get(field) is not None:
            updates[field] = to_quantity(updates[field])
    if updates.get("name") is not None:
        updates["name"] = updates["name"].strip()
    for field in ("name", "price", "unit", "is_active", "is_featured"):
        if field in updates and updates[field] is None:
            raise ValidationFailed(f"{field} cannot be null")

    for field, value in updates.items():
        setattr(product, field, value)
    db.commit()
    db.refresh(product)
    return ApiResponse[ProductOut](data=_product_out(product), message="Product updated successfully")
