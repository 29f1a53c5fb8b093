# Overview: Per-location, per-day sale number allocation (YYYYMMDD-NNNN).

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Location, Sale, SaleNumberSequence
from ..time_utils import business_date_prefix
from .concurrency import RETRYABLE_ERRORS, begin_immediate, lock_for_update, run_with_retry

SEQUENCE_PAD = 4


def format_sale_number(prefix: str, sequence: int) -> str:
    return f"{prefix}-{sequence:0{SEQUENCE_PAD}d}"


def parse_sale_sequence(sale_number: str) -> int:
    """Trailing digits of a sale number as an int."""
    try:
        return int(sale_number.rsplit("-", 1)[1])
    except (IndexError, ValueError):
        raise ValidationError(f"malformed sale number: {sale_number!r}")


def _last_issued_sequence(location_id: int, prefix: str) -> int:
    """
    Sequence of the lexicographically greatest sale number for the day,
    0 when the location has no sales on that day.
    """
    last = db.session.query(func.max(Sale.sale_number)).filter(
        Sale.location_id == location_id,
        Sale.sale_number.like(f"{prefix}-%"),
    ).scalar()
    return parse_sale_sequence(last) if last else 0


def _reserve_sale_number(location_id: int, prefix: str) -> str:
    """Core allocation without transaction start, retry or commit.

    The number handed out is max(counter, last existing + 1), so numbers
    written by other paths are skipped over rather than reused.
    """
    seq = lock_for_update(
        db.session.query(SaleNumberSequence).filter_by(location_id=location_id, business_date=prefix)
    ).first()
    candidate = _last_issued_sequence(location_id, prefix) + 1

    if seq is None:
        seq = SaleNumberSequence(location_id=location_id, business_date=prefix, next_number=candidate + 1)
        db.session.add(seq)
        number = candidate
    else:
        number = max(seq.next_number, candidate)
        seq.next_number = number + 1

    db.session.flush()
    return format_sale_number(prefix, number)


def next_sale_number(location_id: int, *, now: datetime | None = None, commit: bool = True) -> str:
    """
    Allocate the next sale number for a location on the business date of
    `now` (UTC, defaults to the current time).

    With commit=True the reservation is committed on its own and the
    returned number will never be handed out again. With commit=False the
    reservation joins the caller's transaction (sales_service uses this so a
    failed sale does not burn a number); the caller owns retry in that case.
    """
    if not location_id:
        raise ValidationError("location_id is required")

    prefix = business_date_prefix(now)

    def _op() -> str:
        begin_immediate()
        if db.session.query(Location.id).filter_by(id=location_id).first() is None:
            raise NotFoundError("location", location_id)
        number = _reserve_sale_number(location_id, prefix)
        db.session.commit()
        current_app.logger.debug("Allocated sale number %s for location %s", number, location_id)
        return number

    if not commit:
        return _reserve_sale_number(location_id, prefix)

    return run_with_retry(
        _op,
        attempts=current_app.config.get("SALE_NUMBER_MAX_ATTEMPTS", 5),
        retry_on=RETRYABLE_ERRORS + (IntegrityError,),
        label="next_sale_number",
    )
