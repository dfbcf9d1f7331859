# app/schemas/common.py
from typing import Any, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ErrorDetail(BaseModel):
    code: str
    field: Optional[str] = None
    detail: Optional[str] = None
    retryable: Optional[bool] = None


class ApiResponse(BaseModel, Generic[T]):
    """Uniform envelope returned by every endpoint."""

    success: bool = True
    message: str = ""
    data: Optional[T] = None
    errors: Optional[List[ErrorDetail]] = None


class Pagination(BaseModel):
    total: int
    page: int
    size: int
    total_pages: int


class PaginatedData(BaseModel, Generic[T]):
    items: List[T] = Field(default_factory=list)
    pagination: Pagination


def ok(data: Any = None, message: str = "") -> dict:
    return {"success": True, "message": message, "data": data}


def fail(message: str, errors: Optional[List[dict]] = None, data: Any = None) -> dict:
    body = {"success": False, "message": message, "errors": errors or []}
    if data is not None:
        body["data"] = data
    return body
