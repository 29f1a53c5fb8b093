from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow

EXPENSE_CATEGORIES = (
    "rent",
    "utilities",
    "salaries",
    "supplies",
    "maintenance",
    "marketing",
    "transportation",
    "insurance",
    "taxes",
    "other",
)
EXPENSE_PAYMENT_METHODS = ("cash", "bank_transfer", "card", "check", "other")
EXPENSE_FREQUENCIES = ("daily", "weekly", "monthly", "yearly")
EXPENSE_STATUSES = ("pending", "approved", "rejected", "paid")
# Statuses that count as money spent in summaries
SPENT_STATUSES = ("approved", "paid")


class Expense(db.Model):
    """
    Operating expense recorded against a business (optionally one location).

    A recurring expense is a template: generate_recurring writes a pending
    copy for every due date and advances next_due. Copies point back at
    their template, and (parent_expense_id, expense_date) is unique so a
    due date is generated at most once.
    """
    __tablename__ = "expenses"
    __table_args__ = (
        db.Index("ix_expenses_business_date", "business_id", "expense_date"),
        db.Index("ix_expenses_business_category", "business_id", "category"),
        db.UniqueConstraint("parent_expense_id", "expense_date", name="uq_expenses_parent_date"),
        db.CheckConstraint("amount_cents > 0", name="ck_expenses_amount"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True, index=True)

    category = db.Column(db.String(32), nullable=False)
    description = db.Column(db.String(255), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(16), nullable=False, default="cash")
    receipt_number = db.Column(db.String(64), nullable=True)

    vendor_name = db.Column(db.String(255), nullable=True)
    vendor_contact = db.Column(db.String(255), nullable=True)

    expense_date = db.Column(db.Date, nullable=False)

    # Recurrence (templates only)
    is_recurring = db.Column(db.Boolean, nullable=False, default=False)
    frequency = db.Column(db.String(16), nullable=True)
    next_due = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    parent_expense_id = db.Column(db.Integer, db.ForeignKey("expenses.id"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default="paid", index=True)
    recorded_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    approved_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    parent = db.relationship("Expense", remote_side=[id], backref=db.backref("occurrences", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Expense id={self.id} category={self.category} amount_cents={self.amount_cents}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "location_id": self.location_id,
            "category": self.category,
            "description": self.description,
            "amount_cents": self.amount_cents,
            "payment_method": self.payment_method,
            "receipt_number": self.receipt_number,
            "vendor": {"name": self.vendor_name, "contact": self.vendor_contact},
            "expense_date": self.expense_date.isoformat(),
            "is_recurring": self.is_recurring,
            "frequency": self.frequency,
            "next_due": self.next_due.isoformat() if self.next_due else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "parent_expense_id": self.parent_expense_id,
            "status": self.status,
            "recorded_by_user_id": self.recorded_by_user_id,
            "approved_by_user_id": self.approved_by_user_id,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
