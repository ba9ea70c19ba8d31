from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

import meatshop.models  # noqa: F401
from meatshop.core.config import settings
from meatshop.core.errors import DomainError
from meatshop.core.observability import (
    domain_exception_handler,
    http_exception_handler,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from meatshop.db.base import Base
from meatshop.db.seed import seed_demo_data
from meatshop.db.session import SessionLocal, engine
from meatshop.routers import notifications, orders, payments, products, stock
from meatshop.services.order_service import sync_order_numbers


@asynccontextmanager
async def lifespan(_: FastAPI):
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        if settings.seed_demo_data:
            seed_demo_data(db)
        sync_order_numbers(db)
    yield


app = FastAPI(
    title=settings.app_name,
    version="0.3.0",
    description=(
        "Order, stock and payment API for the meat-delivery storefront.\n\n"
        "Swagger quick test flow:\n"
        "1. `GET /api/products` to pick products (demo data is seeded on start).\n"
        "2. `POST /api/orders` with `userId=user_1`, `addressId=addr_1`.\n"
        "3. `POST /api/payments/process` with the order id and its total.\n"
        "4. Move the order along with `PATCH /api/orders/{id}/status`."
    ),
    lifespan=lifespan,
    swagger_ui_parameters={
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "orders", "description": "Order placement, status lifecycle and statistics."},
        {"name": "payments", "description": "Charges, captures and refunds."},
        {"name": "stock", "description": "Stock levels, movements, restocks and low stock alerts."},
        {"name": "products", "description": "Product catalogue."},
        {"name": "notifications", "description": "SMS and email notification history."},
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(DomainError, domain_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)


def _cors_options() -> dict:
    origins = settings.cors_origins or ["http://localhost:8080"]
    allow_all = "*" in origins
    origin_regex = settings.cors_origin_regex
    if not origin_regex and settings.env.lower().strip() in {"dev", "development", "staging", "stage"}:
        # storefront and admin dev servers run on changing localhost ports
        origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"
    return {
        "allow_origins": ["*"] if allow_all else origins,
        "allow_origin_regex": origin_regex,
        "allow_credentials": not allow_all,
    }


app.add_middleware(CORSMiddleware, allow_methods=["*"], allow_headers=["*"], **_cors_options())

app.include_router(products.router)
app.include_router(orders.router)
app.include_router(payments.router)
app.include_router(stock.router)
app.include_router(notifications.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "redoc": "/redoc",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        return {"ok": False}
    return {"ok": True}
