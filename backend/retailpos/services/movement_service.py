# Overview: Stock ledger; the only writer of per-location inventory quantities.

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..errors import (
    ConflictError,
    InsufficientStockError,
    IntegrityViolation,
    NotFoundError,
    ValidationError,
)
from ..extensions import db
from ..models import InventoryLevel, InventoryMovement, Location, MovementReference, Product
from ..models.inventory import MOVEMENT_KINDS, REFERENCE_KINDS, SUBTRACTING_KINDS
from ..time_utils import normalize_datetime, utcnow
from .concurrency import RETRYABLE_ERRORS, begin_immediate, lock_for_update, run_with_retry, storage_errors
"""
Stock ledger invariants (authoritative)

- InventoryMovement rows are append-only.
- For every (product, location): InventoryLevel.quantity == SUM(InventoryMovement.quantity).
- Each movement satisfies new_stock = previous_stock + quantity and new_stock >= 0.
- sale/damage/transfer subtract |magnitude|; purchase/return/adjustment add it.
- A subtracting movement that would take stock below zero is rejected
  (InsufficientStockError); the ledger never goes negative.
- Movement row and snapshot update are written in one DB transaction.
  Writers for the same (product, location) are serialized by the snapshot
  row lock (BEGIN IMMEDIATE on SQLite) and the snapshot's version check.
- Retrying is safe only with a dedup_key: a key already recorded for the
  business returns the original movement without re-applying the delta.
"""


def signed_quantity(kind: str, magnitude: int) -> int:
    """Stored quantity for a movement kind: negative when it takes stock out."""
    return -abs(magnitude) if kind in SUBTRACTING_KINDS else abs(magnitude)


def _validate_movement(kind: str, magnitude, reference: MovementReference) -> None:
    if kind not in MOVEMENT_KINDS:
        raise ValidationError(
            f"unknown movement kind: {kind!r}",
            details={"allowed": sorted(MOVEMENT_KINDS)},
        )
    if isinstance(magnitude, bool) or not isinstance(magnitude, int):
        raise ValidationError("magnitude must be an integer")
    if magnitude <= 0:
        raise ValidationError("magnitude must be > 0")
    if not isinstance(reference, MovementReference):
        raise ValidationError("reference must be a MovementReference")
    if reference.kind not in REFERENCE_KINDS:
        raise ValidationError(
            f"unknown reference kind: {reference.kind!r}",
            details={"allowed": sorted(REFERENCE_KINDS)},
        )
    if reference.kind != "manual" and not reference.id:
        raise ValidationError(f"reference id is required for {reference.kind} references")


def _ensure_product_in_business(product_id: int, business_id: int) -> Product:
    product = db.session.query(Product).filter_by(id=product_id).first()
    if product is None or product.business_id != business_id:
        raise NotFoundError("product", product_id)
    return product


def _ensure_location_in_business(location_id: int, business_id: int) -> Location:
    location = db.session.query(Location).filter_by(id=location_id).first()
    if location is None or location.business_id != business_id:
        raise NotFoundError("location", location_id)
    return location


def _existing_for_dedup_key(
    *,
    business_id: int,
    dedup_key: str,
    product_id: int,
    location_id: int,
    kind: str,
    magnitude: int,
    reference: MovementReference,
) -> InventoryMovement | None:
    existing = db.session.query(InventoryMovement).filter_by(
        business_id=business_id,
        dedup_key=dedup_key,
    ).first()
    if existing is None:
        return None
    recorded = (
        existing.product_id,
        existing.location_id,
        existing.kind,
        abs(existing.quantity),
        existing.reference_kind,
        existing.reference_id,
    )
    reference_id = str(reference.id) if reference.id is not None else None
    if recorded != (product_id, location_id, kind, magnitude, reference.kind, reference_id):
        raise ConflictError(
            "dedup_key already used for a different movement",
            details={"dedup_key": dedup_key, "movement_id": existing.id},
        )
    return existing


def _record_movement_inner(
    *,
    product_id: int,
    location_id: int,
    business_id: int,
    kind: str,
    magnitude: int,
    reference: MovementReference,
    user_id: int,
    note: str | None = None,
    dedup_key: str | None = None,
    occurred_at: datetime | None = None,
) -> InventoryMovement:
    """Core movement logic without transaction start, retry or commit.

    Called by record_movement() and by sales_service inside its own
    transaction. Raises before any write when the product or location is
    unknown.
    """
    _validate_movement(kind, magnitude, reference)

    if dedup_key:
        existing = _existing_for_dedup_key(
            business_id=business_id,
            dedup_key=dedup_key,
            product_id=product_id,
            location_id=location_id,
            kind=kind,
            magnitude=magnitude,
            reference=reference,
        )
        if existing is not None:
            current_app.logger.info(
                "Movement %s already recorded for dedup_key=%s; not re-applied",
                existing.id, dedup_key,
            )
            return existing

    _ensure_product_in_business(product_id, business_id)
    _ensure_location_in_business(location_id, business_id)

    level = lock_for_update(
        db.session.query(InventoryLevel).filter_by(product_id=product_id, location_id=location_id)
    ).first()
    current = level.quantity if level is not None else 0

    quantity = signed_quantity(kind, magnitude)
    new_stock = current + quantity
    if new_stock < 0:
        raise InsufficientStockError(product_id, location_id, on_hand=current, requested=magnitude)

    movement = InventoryMovement(
        product_id=product_id,
        location_id=location_id,
        business_id=business_id,
        kind=kind,
        quantity=quantity,
        previous_stock=current,
        new_stock=new_stock,
        reference_kind=reference.kind,
        reference_id=reference.id,
        user_id=user_id,
        note=note,
        dedup_key=dedup_key,
        created_at=normalize_datetime(occurred_at) or utcnow(),
    )
    db.session.add(movement)

    if level is None:
        level = InventoryLevel(product_id=product_id, location_id=location_id, quantity=new_stock)
        db.session.add(level)
    else:
        level.quantity = new_stock

    db.session.flush()
    return movement


def record_movement(
    *,
    product_id: int,
    location_id: int,
    business_id: int,
    kind: str,
    magnitude: int,
    reference: MovementReference,
    user_id: int,
    note: str | None = None,
    dedup_key: str | None = None,
    occurred_at=None,
) -> InventoryMovement:
    """
    Record one stock movement and update the (product, location) snapshot.

    The movement row and the snapshot update commit together. Lock and
    version conflicts (and a concurrent first insert of the snapshot row)
    are retried; exhausting the retries raises StorageUnavailable.

    Raises NotFoundError, ValidationError, ConflictError (dedup_key reused
    for another movement) or InsufficientStockError.
    """
    def _op():
        begin_immediate()
        movement = _record_movement_inner(
            product_id=product_id,
            location_id=location_id,
            business_id=business_id,
            kind=kind,
            magnitude=magnitude,
            reference=reference,
            user_id=user_id,
            note=note,
            dedup_key=dedup_key,
            occurred_at=occurred_at,
        )
        db.session.commit()
        current_app.logger.info(
            "Recorded %s movement id=%s product=%s location=%s qty=%s stock %s->%s",
            movement.kind, movement.id, product_id, location_id,
            movement.quantity, movement.previous_stock, movement.new_stock,
        )
        return movement

    return run_with_retry(
        _op,
        retry_on=RETRYABLE_ERRORS + (IntegrityError,),
        label="record_movement",
    )


@storage_errors("get_stock")
def get_stock(product_id: int, location_id: int) -> int:
    """Snapshot quantity; 0 when no snapshot exists yet."""
    level = db.session.query(InventoryLevel).filter_by(
        product_id=product_id,
        location_id=location_id,
    ).first()
    return level.quantity if level is not None else 0


def get_ledger_quantity(product_id: int, location_id: int, as_of: datetime | None = None) -> int:
    """SUM of signed movement quantities, optionally as-of (inclusive)."""
    q = db.session.query(func.coalesce(func.sum(InventoryMovement.quantity), 0)).filter(
        InventoryMovement.product_id == product_id,
        InventoryMovement.location_id == location_id,
    )
    if as_of is not None:
        q = q.filter(InventoryMovement.created_at <= normalize_datetime(as_of))
    return int(q.scalar() or 0)


@storage_errors("list_movements")
def list_movements(
    *,
    business_id: int,
    product_id: int | None = None,
    location_id: int | None = None,
    kind: str | None = None,
    start=None,
    end=None,
    limit: int = 200,
) -> list[InventoryMovement]:
    q = db.session.query(InventoryMovement).filter(InventoryMovement.business_id == business_id)
    if product_id is not None:
        q = q.filter(InventoryMovement.product_id == product_id)
    if location_id is not None:
        q = q.filter(InventoryMovement.location_id == location_id)
    if kind is not None:
        q = q.filter(InventoryMovement.kind == kind)
    start_dt = normalize_datetime(start)
    end_dt = normalize_datetime(end)
    if start_dt:
        q = q.filter(InventoryMovement.created_at >= start_dt)
    if end_dt:
        q = q.filter(InventoryMovement.created_at <= end_dt)

    return q.order_by(
        InventoryMovement.created_at.desc(),
        InventoryMovement.id.desc(),
    ).limit(limit).all()


@storage_errors("movement_summary")
def movement_summary(*, product_id: int, location_id: int, start=None, end=None) -> list[dict]:
    """Net quantity and movement count per kind for one (product, location)."""
    q = db.session.query(
        InventoryMovement.kind.label("kind"),
        func.coalesce(func.sum(InventoryMovement.quantity), 0).label("total_quantity"),
        func.count(InventoryMovement.id).label("count"),
    ).filter(
        InventoryMovement.product_id == product_id,
        InventoryMovement.location_id == location_id,
    )
    start_dt = normalize_datetime(start)
    end_dt = normalize_datetime(end)
    if start_dt and end_dt:
        q = q.filter(InventoryMovement.created_at >= start_dt, InventoryMovement.created_at <= end_dt)

    rows = q.group_by(InventoryMovement.kind).order_by(InventoryMovement.kind).all()
    return [
        {
            "kind": row.kind,
            "total_quantity": int(row.total_quantity or 0),
            "count": int(row.count or 0),
        }
        for row in rows
    ]


def rebuild_snapshot(*, product_id: int, location_id: int) -> InventoryLevel:
    """
    Replay the ledger into the (product, location) snapshot.

    Thresholds (min/max stock) are kept; only quantity is recomputed.
    """
    def _op():
        begin_immediate()
        level = lock_for_update(
            db.session.query(InventoryLevel).filter_by(product_id=product_id, location_id=location_id)
        ).first()
        ledger_qty = get_ledger_quantity(product_id, location_id)
        if ledger_qty < 0:
            raise IntegrityViolation(
                "ledger sums to a negative quantity",
                details={"product_id": product_id, "location_id": location_id, "ledger_quantity": ledger_qty},
            )

        if level is None:
            if db.session.query(Product).filter_by(id=product_id).first() is None:
                raise NotFoundError("product", product_id)
            level = InventoryLevel(product_id=product_id, location_id=location_id, quantity=ledger_qty)
            db.session.add(level)
        elif level.quantity != ledger_qty:
            current_app.logger.warning(
                "Snapshot drift product=%s location=%s snapshot=%s ledger=%s; rebuilding",
                product_id, location_id, level.quantity, ledger_qty,
            )
            level.quantity = ledger_qty

        db.session.commit()
        return level

    return run_with_retry(
        _op,
        retry_on=RETRYABLE_ERRORS + (IntegrityError,),
        label="rebuild_snapshot",
    )


@storage_errors("verify_snapshots")
def verify_snapshots(*, business_id: int, location_id: int | None = None) -> list[dict]:
    """
    Compare every snapshot against its ledger sum.

    Returns one row per mismatching (product, location), including ledger
    entries with no snapshot row. An empty list means the ledger and the
    snapshots agree.
    """
    ledger_q = db.session.query(
        InventoryMovement.product_id.label("product_id"),
        InventoryMovement.location_id.label("location_id"),
        func.sum(InventoryMovement.quantity).label("ledger_quantity"),
    ).filter(InventoryMovement.business_id == business_id)
    if location_id is not None:
        ledger_q = ledger_q.filter(InventoryMovement.location_id == location_id)
    ledger = {
        (row.product_id, row.location_id): int(row.ledger_quantity or 0)
        for row in ledger_q.group_by(InventoryMovement.product_id, InventoryMovement.location_id).all()
    }

    levels_q = db.session.query(InventoryLevel).join(
        Product, InventoryLevel.product_id == Product.id
    ).filter(Product.business_id == business_id)
    if location_id is not None:
        levels_q = levels_q.filter(InventoryLevel.location_id == location_id)
    snapshots = {(level.product_id, level.location_id): level.quantity for level in levels_q.all()}

    mismatches = []
    for key in sorted(set(ledger) | set(snapshots)):
        snapshot_qty = snapshots.get(key)
        ledger_qty = ledger.get(key, 0)
        if snapshot_qty is None or snapshot_qty != ledger_qty:
            mismatches.append(
                {
                    "product_id": key[0],
                    "location_id": key[1],
                    "snapshot_quantity": snapshot_qty,
                    "ledger_quantity": ledger_qty,
                }
            )
    return mismatches
