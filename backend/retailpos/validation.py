from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy import Boolean, Date, DateTime, Integer, String, Text

from .errors import ValidationError
from .time_utils import parse_iso_datetime


# Largest accepted price: 999,999,999 cents. Keeps totals well inside a
# 32-bit signed column even for multi-unit lines.
MAX_PRICE_CENTS = 999_999_999

PRICE_FIELDS = ("retail_price_cents", "wholesale_price_cents", "cost_cents")


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Which model columns a caller may set.

    - writable_fields: allowlist; anything else is rejected
    - required_on_create: must be present when partial=False
    - protected_fields: rejected with a pointer to the owning operation
      (e.g. stock quantities, which only change through movements)
    """
    writable_fields: frozenset
    required_on_create: frozenset = frozenset()
    protected_fields: dict = field(default_factory=dict)


def _as_int(key: str, value: Any) -> int:
    # bool is an int subclass; True is not a quantity or a price
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        raise ValidationError(f"{key} must be an integer, not a decimal")
    if isinstance(value, str):
        text = value.strip()
        if "e" in text.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)")
        if "." in text:
            raise ValidationError(f"{key} must be an integer (no decimals)")
        try:
            return int(text)
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
    raise ValidationError(f"{key} must be an integer")


def _as_datetime(key: str, value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            parsed = parse_iso_datetime(value)
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed
    raise ValidationError(f"{key} must be an ISO-8601 datetime")


def _as_date(key: str, value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            pass
    raise ValidationError(f"{key} must be a date (YYYY-MM-DD)")


def _check_column(col, value: Any) -> Any:
    """Coerce one non-null value to the column's type and enforce its limits."""
    coltype = col.type

    if isinstance(coltype, Integer):
        return _as_int(col.key, value)

    if isinstance(coltype, Boolean):
        if not isinstance(value, bool):
            raise ValidationError(f"{col.key} must be true or false")
        return value

    if isinstance(coltype, DateTime):
        return _as_datetime(col.key, value)

    if isinstance(coltype, Date):
        return _as_date(col.key, value)

    if isinstance(coltype, (String, Text)):
        text = str(value).strip()
        if not text and not col.nullable:
            raise ValidationError(f"{col.key} cannot be blank")
        if isinstance(coltype, String) and coltype.length and len(text) > coltype.length:
            raise ValidationError(f"{col.key} exceeds max length {coltype.length}")
        return text

    return value


def validate_payload(
    *,
    model,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Clean a caller-supplied dict against the model's column metadata and
    the policy. Returns a patch holding only writable, coerced fields.

    partial=False: create semantics (required_on_create enforced)
    partial=True: patch semantics (only the given keys are checked)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("payload must be a mapping")

    for key in payload:
        if key in policy.protected_fields:
            raise ValidationError(f"{key} cannot be set here; {policy.protected_fields[key]}")
        if key not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {key}")

    if not partial:
        missing = sorted(set(policy.required_on_create) - set(payload))
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    columns = {c.key: c for c in model.__mapper__.columns}
    patch: dict = {}
    for key, raw in payload.items():
        col = columns.get(key)
        if col is None:
            raise ValidationError(f"Unknown field: {key}")
        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{key} cannot be null")
            patch[key] = None
        else:
            patch[key] = _check_column(col, raw)
    return patch


def enforce_rules_product(patch: dict) -> None:
    """Price bounds that column metadata cannot express."""
    for name in PRICE_FIELDS:
        price = patch.get(name)
        if price is None:
            continue
        if price < 0:
            raise ValidationError(f"{name} must be >= 0")
        if price > MAX_PRICE_CENTS:
            raise ValidationError(f"{name} cannot exceed {MAX_PRICE_CENTS} (${MAX_PRICE_CENTS / 100:,.2f})")


def enforce_rules_stock_thresholds(min_stock: int | None, max_stock: int | None) -> None:
    if min_stock is not None and min_stock < 0:
        raise ValidationError("min_stock must be >= 0")
    if max_stock is not None and max_stock < 0:
        raise ValidationError("max_stock must be >= 0")
    if min_stock is not None and max_stock is not None and max_stock < min_stock:
        raise ValidationError("max_stock must be >= min_stock")
