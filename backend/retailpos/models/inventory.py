from __future__ import annotations

from dataclasses import dataclass

from ..extensions import db
from ..time_utils import to_utc_z, utcnow

# Kinds that take stock out of a location; the stored quantity is negative.
SUBTRACTING_KINDS = frozenset({"sale", "damage", "transfer"})
# Kinds that put stock into a location; the stored quantity is positive.
ADDING_KINDS = frozenset({"purchase", "return", "adjustment"})
MOVEMENT_KINDS = SUBTRACTING_KINDS | ADDING_KINDS

REFERENCE_KINDS = frozenset({"sale", "purchase_order", "manual", "transfer", "return"})


@dataclass(frozen=True)
class MovementReference:
    """
    What caused a movement, keyed by reference kind.

    `manual` references carry no id; every other kind points at the
    causing document (sale number, purchase order number, ...).
    """
    kind: str
    id: str | None = None

    @classmethod
    def manual(cls) -> "MovementReference":
        return cls("manual")

    @classmethod
    def sale(cls, sale_id) -> "MovementReference":
        return cls("sale", str(sale_id))

    @classmethod
    def purchase_order(cls, po_id) -> "MovementReference":
        return cls("purchase_order", str(po_id))

    @classmethod
    def transfer(cls, transfer_id) -> "MovementReference":
        return cls("transfer", str(transfer_id))

    @classmethod
    def sale_return(cls, return_id) -> "MovementReference":
        return cls("return", str(return_id))

    def to_dict(self) -> dict:
        return {"kind": self.kind, "id": self.id}


class InventoryMovement(db.Model):
    """
    Append-only stock ledger row.

    INVARIANTS:
    - new_stock = previous_stock + quantity
    - new_stock >= 0
    - quantity < 0 for sale/damage/transfer, > 0 for purchase/return/adjustment
    - rows are never updated or deleted

    dedup_key lets callers retry a movement without double-applying it;
    it is unique per business when present.
    """
    __tablename__ = "inventory_movements"
    __table_args__ = (
        db.Index("ix_movements_product_created", "product_id", "created_at"),
        db.Index("ix_movements_location_created", "location_id", "created_at"),
        db.Index("ix_movements_business_kind_created", "business_id", "kind", "created_at"),
        db.UniqueConstraint("business_id", "dedup_key", name="uq_movements_business_dedup"),
        db.CheckConstraint("new_stock = previous_stock + quantity", name="ck_movements_balance"),
        db.CheckConstraint("new_stock >= 0", name="ck_movements_new_stock"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    kind = db.Column(db.String(16), nullable=False, index=True)

    # Signed: negative for subtracting kinds
    quantity = db.Column(db.Integer, nullable=False)
    previous_stock = db.Column(db.Integer, nullable=False)
    new_stock = db.Column(db.Integer, nullable=False)

    reference_kind = db.Column(db.String(16), nullable=False)
    reference_id = db.Column(db.String(64), nullable=True, index=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    note = db.Column(db.String(255), nullable=True)

    dedup_key = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    product = db.relationship("Product")
    location = db.relationship("Location")
    user = db.relationship("User")

    def __repr__(self) -> str:
        return (
            f"<InventoryMovement id={self.id} kind={self.kind} qty={self.quantity} "
            f"{self.previous_stock}->{self.new_stock}>"
        )

    @property
    def reference(self) -> MovementReference:
        return MovementReference(self.reference_kind, self.reference_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "location_id": self.location_id,
            "business_id": self.business_id,
            "kind": self.kind,
            "quantity": self.quantity,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "reference": self.reference.to_dict(),
            "user_id": self.user_id,
            "note": self.note,
            "dedup_key": self.dedup_key,
            "created_at": to_utc_z(self.created_at),
        }
