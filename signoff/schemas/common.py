"""Envelopes shared by every router: paginated lists and the error body."""

from typing import Any, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class PaginationMeta(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class PaginatedResponse(BaseModel, Generic[T]):
    data: List[T] = Field(default_factory=list)  # type: ignore[assignment]
    pagination: PaginationMeta

    @classmethod
    def page_of(cls, items: List[T], page: int, limit: int, total: int) -> "PaginatedResponse[T]":
        return cls(data=items, pagination=build_pagination(page, limit, total))


def build_pagination(page: int, limit: int, total: int) -> PaginationMeta:
    # an empty result is still one (empty) page
    total_pages = max(1, -(-total // limit))
    return PaginationMeta(
        page=page,
        limit=limit,
        total=total,
        total_pages=total_pages,
        has_next=page < total_pages,
        has_prev=page > 1,
    )


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None


class ErrorResponse(BaseModel):
    error: ErrorBody


def error_content(code: str, message: str, details: Any = None) -> dict:
    return ErrorResponse(
        error=ErrorBody(code=code, message=message, details=details)
    ).model_dump(exclude_none=True)


# OpenAPI ``responses=`` for routes that can fail with the workflow taxonomy
ERROR_RESPONSES = {
    403: {"model": ErrorResponse, "description": "Actor lacks the required relationship or role"},
    404: {"model": ErrorResponse, "description": "Not visible under the caller's scope"},
    409: {"model": ErrorResponse, "description": "Illegal for the current status, lifecycle or version"},
    422: {"model": ErrorResponse, "description": "Malformed input"},
}
