"""
Sales Service: one-step sale completion, refunds and voids.

A completed sale, its sale number and the `sale` movements for every line
are written in one transaction, so stock only leaves a location for a sale
that exists. A sale whose phone matches an active customer also updates
that customer's totals and loyalty points in the same transaction.
Refunds and voids put stock back with `return` movements.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Location, MovementReference, Product, Sale, SaleLine, User
from ..models.sales import PAYMENT_METHODS, REVENUE_STATUSES, SALE_STATUSES
from ..time_utils import normalize_datetime, utcnow
from .concurrency import RETRYABLE_ERRORS, begin_immediate, lock_for_update, run_with_retry, storage_errors
from .customer_service import _record_purchase_inner
from .movement_service import _record_movement_inner
from .numbering_service import next_sale_number


def _compute_tax_cents(subtotal_cents: int, tax_rate_bps: int) -> int:
    """Tax rounded half up to the cent (rate in basis points)."""
    return (subtotal_cents * tax_rate_bps + 5000) // 10000


def _validate_items(items) -> list[tuple[int, int, int | None]]:
    if not items:
        raise ValidationError("a sale needs at least one item")

    cleaned = []
    for i, item in enumerate(items, start=1):
        product_id = item.get("product_id")
        quantity = item.get("quantity")
        unit_price = item.get("unit_price_cents")
        if not product_id:
            raise ValidationError(f"item {i}: product_id is required")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(f"item {i}: quantity must be a positive integer")
        if unit_price is not None and (isinstance(unit_price, bool) or not isinstance(unit_price, int) or unit_price < 0):
            raise ValidationError(f"item {i}: unit_price_cents must be a non-negative integer")
        cleaned.append((product_id, quantity, unit_price))
    return cleaned


def _payment_status(payment_method: str, paid_cents: int, total_cents: int) -> str:
    if paid_cents >= total_cents:
        return "paid"
    if payment_method != "credit":
        raise ValidationError(
            "paid amount is less than the sale total",
            details={"paid_amount_cents": paid_cents, "total_cents": total_cents},
        )
    return "partial" if paid_cents > 0 else "pending"


def get_sale(sale_id: int, business_id: int) -> Sale:
    sale = db.session.query(Sale).filter_by(id=sale_id).first()
    if sale is None or sale.business_id != business_id:
        raise NotFoundError("sale", sale_id)
    return sale


def complete_sale(
    *,
    business_id: int,
    location_id: int,
    cashier_user_id: int,
    items: list[dict],
    payment_method: str,
    paid_amount_cents: int | None = None,
    discount_cents: int = 0,
    tax_cents: int | None = None,
    customer: dict | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> Sale:
    """
    Complete a sale in one step.

    items: [{"product_id": int, "quantity": int, "unit_price_cents": int?}].
    The unit price defaults to the product's retail price. Tax defaults to
    the location's rate applied to the subtotal; total = subtotal + tax -
    discount. Only `credit` sales may be underpaid.

    A uniqueness collision on the sale number rolls the whole sale back and
    retries it with a fresh number. Raises InsufficientStockError when any
    line would take its location below zero; nothing is written then.
    """
    lines_in = _validate_items(items)
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            f"unknown payment method: {payment_method!r}",
            details={"allowed": list(PAYMENT_METHODS)},
        )
    if discount_cents < 0:
        raise ValidationError("discount_cents must be >= 0")
    if tax_cents is not None and tax_cents < 0:
        raise ValidationError("tax_cents must be >= 0")
    customer = customer or {}
    sold_at = normalize_datetime(now) or utcnow()

    def _op():
        begin_immediate()
        location = db.session.query(Location).filter_by(id=location_id).first()
        if location is None or location.business_id != business_id:
            raise NotFoundError("location", location_id)
        cashier = db.session.query(User).filter_by(id=cashier_user_id).first()
        if cashier is None or cashier.business_id != business_id:
            raise NotFoundError("user", cashier_user_id)

        priced = []
        for product_id, quantity, unit_price in lines_in:
            product = db.session.query(Product).filter_by(id=product_id).first()
            if product is None or product.business_id != business_id:
                raise NotFoundError("product", product_id)
            if not product.is_active:
                raise ConflictError(f"product {product.sku} is inactive", details={"product_id": product_id})
            price = product.retail_price_cents if unit_price is None else unit_price
            priced.append((product, quantity, price))

        subtotal = sum(quantity * price for _, quantity, price in priced)
        tax = _compute_tax_cents(subtotal, location.tax_rate_bps or 0) if tax_cents is None else tax_cents
        if discount_cents > subtotal + tax:
            raise ValidationError("discount cannot exceed subtotal plus tax")
        total = subtotal + tax - discount_cents
        paid = total if paid_amount_cents is None else paid_amount_cents
        status = _payment_status(payment_method, paid, total)

        sale_number = next_sale_number(location_id, now=sold_at, commit=False)
        sale = Sale(
            sale_number=sale_number,
            business_id=business_id,
            location_id=location_id,
            cashier_user_id=cashier_user_id,
            customer_name=customer.get("name"),
            customer_phone=(customer.get("phone") or "").strip() or None,
            customer_email=customer.get("email"),
            subtotal_cents=subtotal,
            tax_cents=tax,
            discount_cents=discount_cents,
            total_cents=total,
            payment_method=payment_method,
            payment_status=status,
            paid_amount_cents=paid,
            change_amount_cents=max(paid - total, 0),
            status="completed",
            notes=notes,
            created_at=sold_at,
            updated_at=sold_at,
        )
        db.session.add(sale)
        db.session.flush()

        for line_number, (product, quantity, price) in enumerate(priced, start=1):
            movement = _record_movement_inner(
                product_id=product.id,
                location_id=location_id,
                business_id=business_id,
                kind="sale",
                magnitude=quantity,
                reference=MovementReference.sale(sale_number),
                user_id=cashier_user_id,
                note=f"Sale {sale_number}",
                dedup_key=f"sale:{location_id}:{sale_number}:{line_number}",
                occurred_at=sold_at,
            )
            db.session.add(
                SaleLine(
                    sale_id=sale.id,
                    line_number=line_number,
                    product_id=product.id,
                    product_name=product.name,
                    sku=product.sku,
                    quantity=quantity,
                    unit_price_cents=price,
                    total_price_cents=quantity * price,
                    movement_id=movement.id,
                )
            )

        loyal = _record_purchase_inner(sale)

        db.session.commit()
        current_app.logger.info(
            "Completed sale %s location=%s total_cents=%s lines=%s customer=%s",
            sale_number, location_id, total, len(priced), loyal.id if loyal else None,
        )
        return sale

    return run_with_retry(
        _op,
        attempts=current_app.config.get("SALE_NUMBER_MAX_ATTEMPTS", 5),
        retry_on=RETRYABLE_ERRORS + (IntegrityError,),
        label="complete_sale",
    )


def _restock_lines(sale: Sale, quantities: dict[int, int], *, user_id: int, prefix: str, note: str) -> int:
    """Return stock for the given {line_number: quantity}; returns the refunded amount in cents."""
    by_number = {line.line_number: line for line in sale.lines}
    amount = 0
    for line_number, quantity in sorted(quantities.items()):
        line = by_number.get(line_number)
        if line is None:
            raise ValidationError(f"sale {sale.sale_number} has no line {line_number}")
        remaining = line.quantity - line.refunded_quantity
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(f"line {line_number}: quantity must be a positive integer")
        if quantity > remaining:
            raise ValidationError(
                f"line {line_number}: cannot return {quantity}, only {remaining} left",
                details={"line_number": line_number, "remaining": remaining},
            )

        _record_movement_inner(
            product_id=line.product_id,
            location_id=sale.location_id,
            business_id=sale.business_id,
            kind="return",
            magnitude=quantity,
            reference=MovementReference.sale_return(sale.sale_number),
            user_id=user_id,
            note=note,
            dedup_key=f"{prefix}:{sale.location_id}:{sale.sale_number}:{line_number}:{line.refunded_quantity}",
        )
        line.refunded_quantity += quantity
        amount += quantity * line.unit_price_cents
    return amount


def refund_sale(
    *,
    sale_id: int,
    business_id: int,
    user_id: int,
    reason: str | None = None,
    quantities: dict[int, int] | None = None,
) -> Sale:
    """
    Refund a sale and return its stock.

    quantities maps line_number -> quantity to return; omitted means every
    line in full. The sale becomes `refunded` once nothing is left to
    return, `partial_refund` otherwise.
    """
    def _op():
        begin_immediate()
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if sale is None or sale.business_id != business_id:
            raise NotFoundError("sale", sale_id)
        if sale.status not in REVENUE_STATUSES:
            raise ConflictError(f"cannot refund a {sale.status} sale", details={"status": sale.status})

        wanted = quantities
        if wanted is None:
            wanted = {
                line.line_number: line.quantity - line.refunded_quantity
                for line in sale.lines
                if line.quantity > line.refunded_quantity
            }
        if not wanted:
            raise ValidationError("nothing to refund")

        amount = _restock_lines(sale, wanted, user_id=user_id, prefix="refund", note=f"Refund {sale.sale_number}")

        fully_returned = all(line.refunded_quantity == line.quantity for line in sale.lines)
        now = utcnow()
        sale.status = "refunded" if fully_returned else "partial_refund"
        sale.refunded_amount_cents = min(sale.refunded_amount_cents + amount, sale.total_cents)
        sale.refunded_at = now
        sale.refund_reason = reason
        sale.updated_at = now

        db.session.commit()
        current_app.logger.info("Refunded sale %s status=%s amount_cents=%s", sale.sale_number, sale.status, amount)
        return sale

    return run_with_retry(_op, retry_on=RETRYABLE_ERRORS + (IntegrityError,), label="refund_sale")


def void_sale(*, sale_id: int, business_id: int, user_id: int, reason: str) -> Sale:
    """Void a completed sale; all sold stock goes back on the shelf."""
    if not reason or not reason.strip():
        raise ValidationError("a void reason is required")

    def _op():
        begin_immediate()
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if sale is None or sale.business_id != business_id:
            raise NotFoundError("sale", sale_id)
        if sale.status == "voided":
            raise ConflictError("sale already voided")
        if sale.status != "completed":
            raise ConflictError("only completed sales can be voided", details={"status": sale.status})

        _restock_lines(
            sale,
            {line.line_number: line.quantity for line in sale.lines},
            user_id=user_id,
            prefix="void",
            note=f"Void sale {sale.sale_number}",
        )

        now = utcnow()
        sale.status = "voided"
        sale.voided_by_user_id = user_id
        sale.voided_at = now
        sale.void_reason = reason.strip()
        sale.updated_at = now

        db.session.commit()
        current_app.logger.info("Voided sale %s by user=%s", sale.sale_number, user_id)
        return sale

    return run_with_retry(_op, retry_on=RETRYABLE_ERRORS + (IntegrityError,), label="void_sale")


def calculate_profit(sale: Sale) -> int:
    """Sale total minus cost of goods at current product cost (cents)."""
    cost = 0
    for line in sale.lines:
        product = db.session.get(Product, line.product_id)
        if product is not None and product.cost_cents:
            cost += product.cost_cents * line.quantity
    return sale.total_cents - cost


@storage_errors("list_sales")
def list_sales(
    *,
    business_id: int,
    location_id: int | None = None,
    status: str | None = None,
    cashier_user_id: int | None = None,
    customer_phone: str | None = None,
    start=None,
    end=None,
    limit: int = 100,
) -> list[Sale]:
    if status is not None and status not in SALE_STATUSES:
        raise ValidationError(f"unknown sale status: {status!r}")

    q = db.session.query(Sale).filter(Sale.business_id == business_id)
    if location_id is not None:
        q = q.filter(Sale.location_id == location_id)
    if status is not None:
        q = q.filter(Sale.status == status)
    if cashier_user_id is not None:
        q = q.filter(Sale.cashier_user_id == cashier_user_id)
    if customer_phone:
        q = q.filter(Sale.customer_phone == customer_phone.strip())
    start_dt = normalize_datetime(start)
    end_dt = normalize_datetime(end)
    if start_dt:
        q = q.filter(Sale.created_at >= start_dt)
    if end_dt:
        q = q.filter(Sale.created_at <= end_dt)

    return q.order_by(Sale.created_at.desc(), Sale.id.desc()).limit(limit).all()


@storage_errors("get_daily_sales")
def get_daily_sales(*, location_id: int, day: date | None = None) -> list[Sale]:
    """Revenue-bearing sales of one UTC day at a location, oldest first."""
    day = day or utcnow().date()
    start = datetime(day.year, day.month, day.day)
    return db.session.query(Sale).filter(
        Sale.location_id == location_id,
        Sale.status.in_(REVENUE_STATUSES),
        Sale.created_at >= start,
        Sale.created_at < start + timedelta(days=1),
    ).order_by(Sale.created_at.asc(), Sale.id.asc()).all()
