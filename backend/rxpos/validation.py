from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from rxpos.time_utils import parse_iso_datetime, parse_iso_date


class ValidationError(ValueError):
    """400-level input problem."""


def coerce_int(name: str, value: Any, *, minimum: int | None = None) -> int:
    """
    Strict integer parsing for JSON bodies and query strings.

    Rejects bools, floats, decimals ("12.5") and scientific notation ("1e3").
    """
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{name} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{name} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{name} must be an integer (no decimals)")
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{name} must be an integer")
    elif isinstance(value, float):
        raise ValidationError(f"{name} must be an integer, not a decimal")
    else:
        raise ValidationError(f"{name} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{name} must be >= {minimum}")
    return result


def require_int(data: dict, name: str, *, minimum: int | None = None) -> int:
    if data.get(name) is None:
        raise ValidationError(f"{name} required")
    return coerce_int(name, data[name], minimum=minimum)


def optional_int(data: dict, name: str, *, minimum: int | None = None) -> int | None:
    value = data.get(name)
    if value is None or value == "":
        return None
    return coerce_int(name, value, minimum=minimum)


def require_decimal(data: dict, name: str) -> Decimal:
    value = data.get(name)
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{name} required")
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{name} must be a decimal number")
    if not result.is_finite():
        raise ValidationError(f"{name} must be a finite number")
    return result


def optional_datetime(data: dict, name: str):
    value = data.get(name)
    if value in (None, ""):
        return None
    try:
        return parse_iso_datetime(str(value))
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 datetime")


def optional_date(data: dict, name: str):
    value = data.get(name)
    if value in (None, ""):
        return None
    try:
        return parse_iso_date(str(value))
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 date (YYYY-MM-DD)")


def parse_cart(raw_items: Any) -> list[dict]:
    """Normalize the checkout 'items' array; every entry needs product_id and quantity."""
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("items must be a non-empty list")

    items = []
    for index, raw in enumerate(raw_items, start=1):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        try:
            items.append({
                "product_id": require_int(raw, "product_id", minimum=1),
                "quantity": require_int(raw, "quantity", minimum=1),
                "batch_id": optional_int(raw, "batch_id", minimum=1),
                "prescription_item_id": optional_int(raw, "prescription_item_id", minimum=1),
            })
        except ValidationError as exc:
            raise ValidationError(f"items[{index}]: {exc}")
    return items
