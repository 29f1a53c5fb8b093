from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow

REPORT_TYPES = ("sales", "inventory", "staff_performance", "customers")


class Report(db.Model):
    """
    Cached report snapshot.

    Derived data only: every row can be regenerated from sales, products and
    movements. Regenerating replaces the cached row for the same parameters.
    """
    __tablename__ = "reports"
    __table_args__ = (
        db.Index("ix_reports_business_type_created", "business_id", "type", "generated_at"),
        db.Index("ix_reports_location_type_created", "location_id", "type", "generated_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True)
    type = db.Column(db.String(32), nullable=False)

    range_start = db.Column(db.DateTime(timezone=True), nullable=True)
    range_end = db.Column(db.DateTime(timezone=True), nullable=True)

    data = db.Column(db.JSON, nullable=False)
    summary = db.Column(db.JSON, nullable=True)

    generated_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    generated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "location_id": self.location_id,
            "type": self.type,
            "range_start": to_utc_z(self.range_start) if self.range_start else None,
            "range_end": to_utc_z(self.range_end) if self.range_end else None,
            "data": self.data,
            "summary": self.summary,
            "generated_by_user_id": self.generated_by_user_id,
            "generated_at": to_utc_z(self.generated_at),
        }
