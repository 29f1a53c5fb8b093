"""
Customer Service: customer records, loyalty points and purchase history.

Customers are found at the till by phone number. When a sale completes
with a phone that belongs to an active customer, the customer's totals and
loyalty balance are updated in the same transaction as the sale (see
_record_purchase_inner). Every loyalty change is also written to the
append-only LoyaltyTransaction ledger.

LOYALTY: one point per whole currency unit of the sale total (cents // 100).
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, IntegrityViolation, NotFoundError, ValidationError
from ..extensions import db
from ..models import Customer, LoyaltyTransaction, Sale
from ..models.sales import REVENUE_STATUSES
from ..time_utils import normalize_datetime, utcnow
from ..validation import ModelValidationPolicy, validate_payload
from .catalog_service import get_business
from .concurrency import begin_immediate, lock_for_update, run_with_retry, storage_errors

CUSTOMER_POLICY = ModelValidationPolicy(
    writable_fields={
        "first_name",
        "last_name",
        "phone",
        "email",
        "date_of_birth",
        "street",
        "city",
        "state",
        "zip_code",
        "country",
        "notes",
        "is_active",
    },
    required_on_create={"first_name", "phone"},
    protected_fields={
        "loyalty_points": "use add_loyalty_points or redeem_loyalty_points",
        "total_spent_cents": "maintained from completed sales",
        "total_visits": "maintained from completed sales",
        "last_visit_at": "maintained from completed sales",
        "version_id": "managed by the database",
    },
)


def points_for_total(total_cents: int) -> int:
    return max(total_cents, 0) // 100


def get_customer(customer_id: int, business_id: int) -> Customer:
    customer = db.session.query(Customer).filter_by(id=customer_id).first()
    if customer is None or customer.business_id != business_id:
        raise NotFoundError("customer", customer_id)
    return customer


def find_by_phone(*, business_id: int, phone: str) -> Customer | None:
    """Active customer with this phone, or None."""
    phone = (phone or "").strip()
    if not phone:
        return None
    return db.session.query(Customer).filter_by(business_id=business_id, phone=phone, is_active=True).first()


def create_customer(*, business_id: int, payload: dict) -> Customer:
    get_business(business_id)
    patch = validate_payload(model=Customer, payload=payload, policy=CUSTOMER_POLICY, partial=False)

    customer = Customer(business_id=business_id, **patch)
    db.session.add(customer)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(f"a customer with phone {patch['phone']!r} already exists")
    current_app.logger.info("Created customer id=%s business=%s", customer.id, business_id)
    return customer


def update_customer(*, customer_id: int, business_id: int, payload: dict) -> Customer:
    """Patch contact fields. Loyalty and purchase totals are not writable here."""
    patch = validate_payload(model=Customer, payload=payload, policy=CUSTOMER_POLICY, partial=True)

    def _op():
        customer = get_customer(customer_id, business_id)
        for key, value in patch.items():
            setattr(customer, key, value)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError(f"a customer with phone {patch.get('phone')!r} already exists")
        return customer

    return run_with_retry(_op, label="update_customer")


def deactivate_customer(*, customer_id: int, business_id: int) -> Customer:
    """Soft delete: history and loyalty ledger rows are kept."""
    return update_customer(customer_id=customer_id, business_id=business_id, payload={"is_active": False})


@storage_errors("list_customers")
def list_customers(
    *,
    business_id: int,
    search: str | None = None,
    include_inactive: bool = False,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    """Customers ordered by last then first name, with pagination info."""
    if page < 1 or per_page < 1:
        raise ValidationError("page and per_page must be >= 1")

    q = db.session.query(Customer).filter(Customer.business_id == business_id)
    if not include_inactive:
        q = q.filter(Customer.is_active.is_(True))
    term = (search or "").strip()
    if term:
        q = q.filter(_matches(term))

    total = q.count()
    customers = q.order_by(
        Customer.last_name.asc(), Customer.first_name.asc(), Customer.id.asc()
    ).offset((page - 1) * per_page).limit(per_page).all()
    return {
        "customers": customers,
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "pages": (total + per_page - 1) // per_page,
        },
    }


def _matches(term: str):
    pattern = f"%{term}%"
    return or_(
        Customer.first_name.ilike(pattern),
        Customer.last_name.ilike(pattern),
        Customer.email.ilike(pattern),
        Customer.phone.ilike(pattern),
    )


@storage_errors("search_customers")
def search_customers(*, business_id: int, term: str, limit: int = 10) -> list[Customer]:
    term = (term or "").strip()
    if not term:
        return []
    return db.session.query(Customer).filter(
        Customer.business_id == business_id,
        Customer.is_active.is_(True),
        _matches(term),
    ).order_by(Customer.last_name.asc(), Customer.first_name.asc()).limit(limit).all()


# =============================================================================
# Loyalty
# =============================================================================

def _apply_points(
    customer: Customer,
    *,
    transaction_type: str,
    points: int,
    user_id: int | None = None,
    sale_id: int | None = None,
    reason: str | None = None,
    occurred_at: datetime | None = None,
) -> LoyaltyTransaction:
    """Move the balance and append the ledger row. Caller owns the transaction."""
    balance = customer.loyalty_points + points
    if balance < 0:
        raise IntegrityViolation(
            "insufficient loyalty points",
            details={"customer_id": customer.id, "balance": customer.loyalty_points, "requested": -points},
        )
    customer.loyalty_points = balance
    entry = LoyaltyTransaction(
        business_id=customer.business_id,
        customer_id=customer.id,
        transaction_type=transaction_type,
        points=points,
        balance_after=balance,
        sale_id=sale_id,
        reason=reason,
        user_id=user_id,
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(entry)
    return entry


def _change_points(*, customer_id: int, business_id: int, points: int, transaction_type: str, user_id, reason) -> Customer:
    def _op():
        begin_immediate()
        customer = lock_for_update(db.session.query(Customer).filter_by(id=customer_id)).first()
        if customer is None or customer.business_id != business_id:
            raise NotFoundError("customer", customer_id)
        if not customer.is_active:
            raise ConflictError("customer is inactive", details={"customer_id": customer_id})
        _apply_points(customer, transaction_type=transaction_type, points=points, user_id=user_id, reason=reason)
        db.session.commit()
        current_app.logger.info(
            "Loyalty %s customer=%s points=%s balance=%s",
            transaction_type, customer.id, points, customer.loyalty_points,
        )
        return customer

    return run_with_retry(_op, label="loyalty_points")


def _positive_points(points) -> int:
    if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
        raise ValidationError("points must be a positive integer")
    return points


def add_loyalty_points(*, customer_id: int, business_id: int, points: int, user_id: int | None = None, reason: str | None = None) -> Customer:
    points = _positive_points(points)
    return _change_points(
        customer_id=customer_id, business_id=business_id, points=points,
        transaction_type="ADJUST", user_id=user_id, reason=reason,
    )


def redeem_loyalty_points(*, customer_id: int, business_id: int, points: int, user_id: int | None = None, reason: str | None = None) -> Customer:
    """Raises IntegrityViolation when the balance would go below zero."""
    points = _positive_points(points)
    return _change_points(
        customer_id=customer_id, business_id=business_id, points=-points,
        transaction_type="REDEEM", user_id=user_id, reason=reason,
    )


def loyalty_history(*, customer_id: int, business_id: int) -> list[LoyaltyTransaction]:
    get_customer(customer_id, business_id)
    return db.session.query(LoyaltyTransaction).filter_by(customer_id=customer_id).order_by(
        LoyaltyTransaction.occurred_at.asc(), LoyaltyTransaction.id.asc()
    ).all()


def _record_purchase_inner(sale: Sale) -> Customer | None:
    """
    Credit a completed sale to the active customer with the sale's phone.

    Runs inside the caller's transaction (complete_sale) and does not
    commit. Sales without a phone, or with an unknown phone, are left alone.
    """
    if not sale.customer_phone:
        return None
    customer = lock_for_update(
        db.session.query(Customer).filter_by(
            business_id=sale.business_id,
            phone=sale.customer_phone,
            is_active=True,
        )
    ).first()
    if customer is None:
        return None

    customer.total_spent_cents += sale.total_cents
    customer.total_visits += 1
    customer.last_visit_at = sale.created_at
    points = points_for_total(sale.total_cents)
    if points:
        _apply_points(
            customer,
            transaction_type="EARN",
            points=points,
            user_id=sale.cashier_user_id,
            sale_id=sale.id,
            reason=f"Sale {sale.sale_number}",
            occurred_at=sale.created_at,
        )
    return customer


# =============================================================================
# History and analytics
# =============================================================================

@storage_errors("purchase_history")
def purchase_history(*, customer_id: int, business_id: int, page: int = 1, per_page: int = 10) -> dict:
    """
    Revenue-bearing sales whose phone matches the customer, newest first,
    with order count, total spent and average order value over all of them.
    """
    customer = get_customer(customer_id, business_id)
    filters = (
        Sale.business_id == business_id,
        Sale.customer_phone == customer.phone,
        Sale.status.in_(REVENUE_STATUSES),
    )
    total_orders, total_spent = db.session.query(
        func.count(Sale.id),
        func.coalesce(func.sum(Sale.total_cents), 0),
    ).filter(*filters).one()
    total_orders = int(total_orders or 0)
    total_spent = int(total_spent or 0)

    sales = db.session.query(Sale).filter(*filters).order_by(
        Sale.created_at.desc(), Sale.id.desc()
    ).offset((page - 1) * per_page).limit(per_page).all()

    return {
        "customer": customer.to_dict(),
        "sales": [sale.to_dict() for sale in sales],
        "summary": {
            "total_orders": total_orders,
            "total_spent_cents": total_spent,
            "average_order_cents": round(total_spent / total_orders) if total_orders else 0,
        },
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total_orders,
            "pages": (total_orders + per_page - 1) // per_page,
        },
    }


@storage_errors("top_customers")
def top_customers(*, business_id: int, limit: int = 10) -> list[Customer]:
    return db.session.query(Customer).filter(
        Customer.business_id == business_id,
        Customer.is_active.is_(True),
    ).order_by(Customer.total_spent_cents.desc(), Customer.id.asc()).limit(limit).all()


def customer_averages(business_id: int) -> dict:
    row = db.session.query(
        func.count(Customer.id),
        func.avg(Customer.loyalty_points),
        func.coalesce(func.sum(Customer.loyalty_points), 0),
        func.avg(Customer.total_spent_cents),
        func.coalesce(func.sum(Customer.total_spent_cents), 0),
    ).filter(
        Customer.business_id == business_id,
        Customer.is_active.is_(True),
    ).one()
    count, avg_points, total_points, avg_spent, total_spent = row
    return {
        "total_customers": int(count or 0),
        "average_loyalty_points": round(float(avg_points or 0), 2),
        "total_loyalty_points": int(total_points or 0),
        "average_spent_cents": round(float(avg_spent or 0)),
        "total_spent_cents": int(total_spent or 0),
    }


@storage_errors("customer_analytics")
def customer_analytics(*, business_id: int, now: datetime | None = None) -> dict:
    """Dashboard numbers: totals, new customers this UTC month, top five by spend."""
    now = normalize_datetime(now) or utcnow()
    month_start = datetime(now.year, now.month, 1)
    new_this_month = db.session.query(func.count(Customer.id)).filter(
        Customer.business_id == business_id,
        Customer.is_active.is_(True),
        Customer.created_at >= month_start,
    ).scalar()

    return {
        **customer_averages(business_id),
        "new_customers_this_month": int(new_this_month or 0),
        "top_customers": [c.to_dict() for c in top_customers(business_id=business_id, limit=5)],
    }
