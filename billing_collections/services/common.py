"""Common helper functions for the service layer.

This module provides reusable utilities for:
- UUID handling
- Enum validation
- Entity retrieval with 404 handling
- Monetary rounding and formatting
- Timezone-safe timestamps
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, TypeVar

from fastapi import HTTPException

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

T = TypeVar("T")

MONEY_QUANT = Decimal("0.01")


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def validate_enum(value, enum_cls, label: str):
    """Validate and convert a value to an enum member.

    Args:
        value: Value to validate (can be None)
        enum_cls: Enum class to validate against
        label: Human-readable label for error messages

    Returns:
        Enum member or None if value is None

    Raises:
        HTTPException: 400 if value is not a valid enum member
    """
    if value is None:
        return None
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {label}") from exc


def get_or_404(db: Session, model: type[T], id, detail: str | None = None) -> T:
    """Get entity by ID or raise 404."""
    try:
        key = coerce_uuid(id)
    except ValueError as exc:
        raise HTTPException(
            status_code=404, detail=detail or f"{model.__name__} not found"
        ) from exc
    entity = db.get(model, key)
    if not entity:
        raise HTTPException(
            status_code=404,
            detail=detail or f"{model.__name__} not found",
        )
    return entity


def get_for_update_or_404(db: Session, model: type[T], id, detail: str | None = None) -> T:
    """Like get_or_404 but takes a row lock for check-then-act sections."""
    try:
        key = coerce_uuid(id)
    except ValueError as exc:
        raise HTTPException(
            status_code=404, detail=detail or f"{model.__name__} not found"
        ) from exc
    entity = db.query(model).filter(model.id == key).with_for_update().first()
    if not entity:
        raise HTTPException(
            status_code=404,
            detail=detail or f"{model.__name__} not found",
        )
    return entity


def round_money(value: Decimal | int | float | str | None) -> Decimal:
    """Round a monetary value half-up to 2 decimal places."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def format_amount(value: Decimal | int | float | str | None) -> str:
    """Render an amount with exactly two decimals and a dot separator."""
    return f"{round_money(value):.2f}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def list_response(items: list, limit: int, offset: int) -> dict:
    return {"items": items, "count": len(items), "limit": limit, "offset": offset}
