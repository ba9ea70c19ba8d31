from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class CamelModel(BaseModel):
    """Wire format is camelCase; snake_case field names are accepted too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaginationMeta(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "page": 1,
                "limit": 20,
                "total": 42,
                "totalPages": 3,
            }
        }
    )


class ApiResponse(CamelModel, Generic[T]):
    success: bool = True
    data: T | None = None
    message: str | None = None


class PaginatedResponse(CamelModel, Generic[T]):
    success: bool = True
    data: list[T]
    pagination: PaginationMeta


class ValidationIssueOut(BaseModel):
    field: str
    message: str
    type: str | None = None


class ErrorOut(BaseModel):
    success: bool = False
    error: str
    code: str
    request_id: str
    path: str
    details: list[ValidationIssueOut] | None = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "success": False,
                "error": "Insufficient stock for Lamb Chops. Available: 1.00, Requested: 2.00",
                "code": "insufficient_stock",
                "request_id": "8d8f2b00-6c79-4a45-8ff4-b0a5f2bc4bc2",
                "path": "/api/orders",
                "details": None,
            }
        }
    )


def pagination_meta(*, page: int, limit: int, total: int) -> PaginationMeta:
    total_pages = (total + limit - 1) // limit if limit else 0
    return PaginationMeta(page=page, limit=limit, total=total, total_pages=total_pages)
