"""
Expense Service: operating expenses, approval flow and recurring bills.

STATUS FLOW:
    pending -> approved -> paid
    pending -> paid
    pending | approved -> rejected
Only owners and managers approve, reject or pay a pending expense. Paid and
rejected are final.

RECURRING: a recurring expense is a template. generate_recurring writes one
pending copy per due date up to the given day and moves the template's
next_due forward. Monthly and yearly schedules keep the template's day of
month, clamped to short months (Jan 31 -> Feb 28 -> Mar 31).

Summaries count approved and paid expenses only.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Expense, User
from ..models.expenses import (
    EXPENSE_CATEGORIES,
    EXPENSE_FREQUENCIES,
    EXPENSE_PAYMENT_METHODS,
    EXPENSE_STATUSES,
    SPENT_STATUSES,
)
from ..time_utils import utcnow
from ..validation import ModelValidationPolicy, validate_payload
from .catalog_service import get_business, get_location
from .concurrency import RETRYABLE_ERRORS, begin_immediate, lock_for_update, run_with_retry, storage_errors

EXPENSE_POLICY = ModelValidationPolicy(
    writable_fields={
        "location_id",
        "category",
        "description",
        "amount_cents",
        "payment_method",
        "receipt_number",
        "vendor_name",
        "vendor_contact",
        "expense_date",
        "is_recurring",
        "frequency",
        "end_date",
        "status",
        "notes",
    },
    required_on_create={"category", "description", "amount_cents"},
    protected_fields={
        "next_due": "computed from expense_date and frequency",
        "parent_expense_id": "set by generate_recurring",
        "approved_by_user_id": "set by update_expense_status",
        "version_id": "managed by the database",
    },
)

STATUS_TRANSITIONS = {
    "pending": ("approved", "rejected", "paid"),
    "approved": ("paid", "rejected"),
    "rejected": (),
    "paid": (),
}
APPROVER_ROLES = ("owner", "manager")


def next_due_date(current: date, frequency: str, anchor_day: int | None = None) -> date:
    """The due date after `current` for the given frequency."""
    if frequency == "daily":
        return current + timedelta(days=1)
    if frequency == "weekly":
        return current + timedelta(days=7)

    day = anchor_day or current.day
    if frequency == "monthly":
        year, month = (current.year + 1, 1) if current.month == 12 else (current.year, current.month + 1)
    elif frequency == "yearly":
        year, month = current.year + 1, current.month
    else:
        raise ValidationError(f"unknown frequency: {frequency!r}", details={"allowed": list(EXPENSE_FREQUENCIES)})
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def _enforce_rules_expense(patch: dict, *, creating: bool) -> None:
    if "category" in patch and patch["category"] not in EXPENSE_CATEGORIES:
        raise ValidationError(f"unknown category: {patch['category']!r}", details={"allowed": list(EXPENSE_CATEGORIES)})
    if "payment_method" in patch and patch["payment_method"] not in EXPENSE_PAYMENT_METHODS:
        raise ValidationError(
            f"unknown payment method: {patch['payment_method']!r}",
            details={"allowed": list(EXPENSE_PAYMENT_METHODS)},
        )
    if "amount_cents" in patch and patch["amount_cents"] <= 0:
        raise ValidationError("amount_cents must be > 0")
    if creating and patch.get("status", "paid") not in EXPENSE_STATUSES:
        raise ValidationError(f"unknown status: {patch['status']!r}", details={"allowed": list(EXPENSE_STATUSES)})
    if patch.get("frequency") is not None and patch["frequency"] not in EXPENSE_FREQUENCIES:
        raise ValidationError(
            f"unknown frequency: {patch['frequency']!r}",
            details={"allowed": list(EXPENSE_FREQUENCIES)},
        )


def get_expense(expense_id: int, business_id: int) -> Expense:
    expense = db.session.query(Expense).filter_by(id=expense_id).first()
    if expense is None or expense.business_id != business_id:
        raise NotFoundError("expense", expense_id)
    return expense


def _get_user(user_id: int, business_id: int) -> User:
    user = db.session.query(User).filter_by(id=user_id).first()
    if user is None or user.business_id != business_id:
        raise NotFoundError("user", user_id)
    return user


def record_expense(*, business_id: int, recorded_by_user_id: int, payload: dict) -> Expense:
    """
    Record an expense. expense_date defaults to today (UTC) and status to
    `paid`. A recurring expense needs a frequency; its next_due is the
    first date after expense_date.
    """
    get_business(business_id)
    _get_user(recorded_by_user_id, business_id)
    patch = validate_payload(model=Expense, payload=payload, policy=EXPENSE_POLICY, partial=False)
    _enforce_rules_expense(patch, creating=True)
    if patch.get("location_id") is not None:
        get_location(patch["location_id"], business_id)

    patch.setdefault("expense_date", utcnow().date())
    if patch.get("is_recurring"):
        if not patch.get("frequency"):
            raise ValidationError("a recurring expense needs a frequency")
        if patch.get("end_date") is not None and patch["end_date"] < patch["expense_date"]:
            raise ValidationError("end_date must be on or after expense_date")
        patch["next_due"] = next_due_date(patch["expense_date"], patch["frequency"])
    else:
        patch["frequency"] = None
        patch["end_date"] = None

    expense = Expense(business_id=business_id, recorded_by_user_id=recorded_by_user_id, **patch)
    db.session.add(expense)
    db.session.commit()
    current_app.logger.info(
        "Recorded expense id=%s business=%s category=%s amount_cents=%s",
        expense.id, business_id, expense.category, expense.amount_cents,
    )
    return expense


def update_expense_status(*, expense_id: int, business_id: int, status: str, user_id: int, note: str | None = None) -> Expense:
    if status not in EXPENSE_STATUSES:
        raise ValidationError(f"unknown status: {status!r}", details={"allowed": list(EXPENSE_STATUSES)})

    def _op():
        expense = lock_for_update(db.session.query(Expense).filter_by(id=expense_id)).first()
        if expense is None or expense.business_id != business_id:
            raise NotFoundError("expense", expense_id)
        if status not in STATUS_TRANSITIONS[expense.status]:
            raise ConflictError(
                f"cannot move expense from {expense.status} to {status}",
                details={"from": expense.status, "to": status},
            )
        user = _get_user(user_id, business_id)
        if user.role not in APPROVER_ROLES:
            raise ConflictError("only owners and managers can change expense status", details={"role": user.role})

        if expense.status == "pending" and status in ("approved", "paid"):
            expense.approved_by_user_id = user.id
        expense.status = status
        if note:
            expense.notes = f"{expense.notes}\n{note}" if expense.notes else note
        db.session.commit()
        current_app.logger.info("Expense id=%s status=%s by user=%s", expense.id, status, user.id)
        return expense

    return run_with_retry(_op, label="update_expense_status")


@storage_errors("list_expenses")
def list_expenses(
    *,
    business_id: int,
    location_id: int | None = None,
    category: str | None = None,
    status: str | None = None,
    start: date | None = None,
    end: date | None = None,
) -> list[Expense]:
    """Expenses newest first; start and end are inclusive dates."""
    q = db.session.query(Expense).filter(Expense.business_id == business_id)
    if location_id is not None:
        q = q.filter(Expense.location_id == location_id)
    if category is not None:
        q = q.filter(Expense.category == category)
    if status is not None:
        q = q.filter(Expense.status == status)
    if start is not None:
        q = q.filter(Expense.expense_date >= start)
    if end is not None:
        q = q.filter(Expense.expense_date <= end)
    return q.order_by(Expense.expense_date.desc(), Expense.id.desc()).all()


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip())


def _date_range(start, end) -> tuple[date, date]:
    try:
        start_d = _as_date(start)
        end_d = _as_date(end)
    except ValueError:
        raise ValidationError("start and end must be dates (YYYY-MM-DD)")
    if start_d > end_d:
        raise ValidationError("start must be on or before end")
    return start_d, end_d


@storage_errors("expense_summary")
def expense_summary(*, business_id: int, start, end, location_id: int | None = None) -> dict:
    """
    Approved and paid expenses in [start, end] grouped by category, largest
    total first.
    """
    start_d, end_d = _date_range(start, end)
    total_expr = func.coalesce(func.sum(Expense.amount_cents), 0)
    q = db.session.query(
        Expense.category.label("category"),
        total_expr.label("total_cents"),
        func.count(Expense.id).label("count"),
    ).filter(
        Expense.business_id == business_id,
        Expense.status.in_(SPENT_STATUSES),
        Expense.expense_date >= start_d,
        Expense.expense_date <= end_d,
    )
    if location_id is not None:
        q = q.filter(Expense.location_id == location_id)
    rows = q.group_by(Expense.category).order_by(total_expr.desc(), Expense.category.asc()).all()

    by_category = [
        {
            "category": row.category,
            "total_cents": int(row.total_cents or 0),
            "count": int(row.count or 0),
            "average_cents": round(int(row.total_cents or 0) / row.count) if row.count else 0,
        }
        for row in rows
    ]
    return {
        "start": start_d.isoformat(),
        "end": end_d.isoformat(),
        "by_category": by_category,
        "total_cents": sum(row["total_cents"] for row in by_category),
        "count": sum(row["count"] for row in by_category),
    }


@storage_errors("monthly_expenses")
def monthly_expenses(*, business_id: int, year: int) -> list[dict]:
    """Approved and paid totals for each month of the year (12 rows)."""
    rows = db.session.query(Expense.expense_date, Expense.amount_cents).filter(
        Expense.business_id == business_id,
        Expense.status.in_(SPENT_STATUSES),
        Expense.expense_date >= date(year, 1, 1),
        Expense.expense_date <= date(year, 12, 31),
    ).all()

    months = [{"month": m, "total_cents": 0, "count": 0} for m in range(1, 13)]
    for expense_date, amount in rows:
        bucket = months[expense_date.month - 1]
        bucket["total_cents"] += amount
        bucket["count"] += 1
    return months


def generate_recurring(*, business_id: int, as_of: date | None = None) -> list[Expense]:
    """
    Write a pending copy of every recurring template for each due date on or
    before as_of (default today), skipping dates past the template's
    end_date. Safe to run repeatedly: each (template, date) is generated once.
    """
    as_of = as_of or utcnow().date()

    def _op():
        begin_immediate()
        templates = db.session.query(Expense).filter(
            Expense.business_id == business_id,
            Expense.is_recurring.is_(True),
            Expense.next_due.isnot(None),
            Expense.next_due <= as_of,
        ).order_by(Expense.id.asc()).all()

        created = []
        for template in templates:
            anchor_day = template.expense_date.day
            while template.next_due is not None and template.next_due <= as_of:
                due = template.next_due
                if template.end_date is not None and due > template.end_date:
                    template.next_due = None
                    break
                copy = Expense(
                    business_id=template.business_id,
                    location_id=template.location_id,
                    category=template.category,
                    description=template.description,
                    amount_cents=template.amount_cents,
                    payment_method=template.payment_method,
                    vendor_name=template.vendor_name,
                    vendor_contact=template.vendor_contact,
                    expense_date=due,
                    is_recurring=False,
                    parent_expense_id=template.id,
                    status="pending",
                    recorded_by_user_id=template.recorded_by_user_id,
                    notes=f"Recurring expense from #{template.id}",
                )
                db.session.add(copy)
                created.append(copy)
                template.next_due = next_due_date(due, template.frequency, anchor_day)

        db.session.commit()
        current_app.logger.info(
            "Generated %s recurring expenses business=%s as_of=%s",
            len(created), business_id, as_of.isoformat(),
        )
        return created

    return run_with_retry(_op, retry_on=RETRYABLE_ERRORS + (IntegrityError,), label="generate_recurring")
