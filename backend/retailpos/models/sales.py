from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow

SALE_STATUSES = ("completed", "refunded", "voided", "partial_refund")
# Statuses that count as revenue in reports
REVENUE_STATUSES = ("completed", "partial_refund")
PAYMENT_METHODS = ("cash", "card", "credit", "mobile")
PAYMENT_STATUSES = ("paid", "pending", "partial")


class Sale(db.Model):
    """
    Completed (or later refunded/voided) sale transaction.

    sale_number is YYYYMMDD-NNNN, unique per location. Lines carry a
    denormalized product snapshot so catalog edits never change receipts.
    Totals are computed by sales_service: total = subtotal + tax - discount.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("location_id", "sale_number", name="uq_sales_location_number"),
        db.Index("ix_sales_business_created", "business_id", "created_at"),
        db.Index("ix_sales_location_created", "location_id", "created_at"),
        db.Index("ix_sales_cashier_created", "cashier_user_id", "created_at"),
        db.Index("ix_sales_customer_phone", "customer_phone"),
        db.CheckConstraint(
            "subtotal_cents >= 0 AND tax_cents >= 0 AND discount_cents >= 0 AND total_cents >= 0",
            name="ck_sales_totals",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_number = db.Column(db.String(32), nullable=False)

    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    cashier_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(64), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)

    # Totals (all amounts in cents)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)
    refunded_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    payment_method = db.Column(db.String(16), nullable=False)
    payment_status = db.Column(db.String(16), nullable=False, default="paid")
    paid_amount_cents = db.Column(db.Integer, nullable=False)
    change_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default="completed", index=True)
    receipt_printed = db.Column(db.Boolean, nullable=False, default=False)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    # Refund / void audit trail
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refund_reason = db.Column(db.String(255), nullable=True)
    voided_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    void_reason = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    location = db.relationship("Location", backref=db.backref("sales", lazy=True))
    cashier = db.relationship("User", foreign_keys=[cashier_user_id])
    lines = db.relationship("SaleLine", back_populates="sale", order_by="SaleLine.line_number", lazy=True)
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Sale id={self.id} number={self.sale_number!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_number": self.sale_number,
            "business_id": self.business_id,
            "location_id": self.location_id,
            "cashier_user_id": self.cashier_user_id,
            "customer": {
                "name": self.customer_name,
                "phone": self.customer_phone,
                "email": self.customer_email,
            },
            "items": [line.to_dict() for line in self.lines],
            "totals": {
                "subtotal_cents": self.subtotal_cents,
                "tax_cents": self.tax_cents,
                "discount_cents": self.discount_cents,
                "total_cents": self.total_cents,
                "refunded_amount_cents": self.refunded_amount_cents,
            },
            "payment": {
                "method": self.payment_method,
                "status": self.payment_status,
                "paid_amount_cents": self.paid_amount_cents,
                "change_amount_cents": self.change_amount_cents,
            },
            "status": self.status,
            "receipt_printed": self.receipt_printed,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "refunded_at": to_utc_z(self.refunded_at) if self.refunded_at else None,
            "refund_reason": self.refund_reason,
            "voided_by_user_id": self.voided_by_user_id,
            "voided_at": to_utc_z(self.voided_at) if self.voided_at else None,
            "void_reason": self.void_reason,
            "version_id": self.version_id,
        }

class SaleLine(db.Model):
    __tablename__ = "sale_lines"
    __table_args__ = (
        db.UniqueConstraint("sale_id", "line_number", name="uq_sale_lines_sale_line"),
        db.CheckConstraint("quantity >= 1", name="ck_sale_lines_quantity"),
        db.CheckConstraint(
            "refunded_quantity >= 0 AND refunded_quantity <= quantity",
            name="ck_sale_lines_refunded",
        ),
        db.CheckConstraint("unit_price_cents >= 0 AND total_price_cents >= 0", name="ck_sale_lines_prices"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    # Snapshot at sale time
    product_name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    total_price_cents = db.Column(db.Integer, nullable=False)
    refunded_quantity = db.Column(db.Integer, nullable=False, default=0)

    movement_id = db.Column(db.Integer, db.ForeignKey("inventory_movements.id"), nullable=True)

    sale = db.relationship("Sale", back_populates="lines")

    def to_dict(self) -> dict:
        return {
            "line_number": self.line_number,
            "product_id": self.product_id,
            "name": self.product_name,
            "sku": self.sku,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "total_price_cents": self.total_price_cents,
            "refunded_quantity": self.refunded_quantity,
            "movement_id": self.movement_id,
        }

class SaleNumberSequence(db.Model):
    """
    Reservation counter for sale numbers per (location, business date).

    next_number is the lowest number not yet handed out. It is advanced
    under a row lock, and the version check turns lost updates into
    StaleDataError.
    """
    __tablename__ = "sale_number_sequences"
    __table_args__ = (
        db.UniqueConstraint("location_id", "business_date", name="uq_sale_seq_location_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    business_date = db.Column(db.String(8), nullable=False)  # YYYYMMDD
    next_number = db.Column(db.Integer, nullable=False, default=1)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}
