from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

class Category(db.Model):
    """
    Product category, optionally nested under a parent category.

    Categories are business-scoped; location_id narrows a category to a
    single shop when set.
    """
    __tablename__ = "categories"
    __table_args__ = (
        db.Index("ix_categories_business_name", "business_id", "name"),
        db.Index("ix_categories_business_active", "business_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True)
    parent_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)

    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    parent = db.relationship("Category", remote_side=[id], backref=db.backref("children", lazy=True))

    def __repr__(self) -> str:
        return f"<Category id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "location_id": self.location_id,
            "parent_id": self.parent_id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }

class Product(db.Model):
    """
    Product master data.

    SKUs are unique within a business. Pricing is stored in cents and is
    never negative.

    INVENTORY: per-location quantities live in InventoryLevel rows
    (Product.inventory). They are a cache of the movement ledger and are
    written only by movement_service.record_movement.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("business_id", "sku", name="uq_products_business_sku"),
        db.Index("ix_products_business_category", "business_id", "category_id"),
        db.Index("ix_products_business_active", "business_id", "is_active"),
        db.CheckConstraint("retail_price_cents >= 0", name="ck_products_retail_price"),
        db.CheckConstraint("wholesale_price_cents IS NULL OR wholesale_price_cents >= 0", name="ck_products_wholesale_price"),
        db.CheckConstraint("cost_cents IS NULL OR cost_cents >= 0", name="ck_products_cost"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=False)
    barcode = db.Column(db.String(128), nullable=True, index=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    retail_price_cents = db.Column(db.Integer, nullable=False)
    wholesale_price_cents = db.Column(db.Integer, nullable=True)
    cost_cents = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    category = db.relationship("Category", backref=db.backref("products", lazy=True))
    inventory = db.relationship(
        "InventoryLevel",
        back_populates="product",
        lazy=True,
        order_by="InventoryLevel.location_id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r} business_id={self.business_id}>"

    @property
    def total_inventory(self) -> int:
        return sum(level.quantity for level in self.inventory)

    def level_for(self, location_id: int) -> "InventoryLevel | None":
        for level in self.inventory:
            if level.location_id == location_id:
                return level
        return None

    def to_dict(self, include_inventory: bool = True) -> dict:
        data = {
            "id": self.id,
            "business_id": self.business_id,
            "category_id": self.category_id,
            "sku": self.sku,
            "barcode": self.barcode,
            "name": self.name,
            "description": self.description,
            "retail_price_cents": self.retail_price_cents,
            "wholesale_price_cents": self.wholesale_price_cents,
            "cost_cents": self.cost_cents,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_inventory:
            data["inventory"] = [level.to_dict() for level in self.inventory]
            data["total_inventory"] = self.total_inventory
        return data

class InventoryLevel(db.Model):
    """
    Per-location stock snapshot for a product.

    CACHE, NOT SOURCE OF TRUTH: quantity always equals the sum of
    InventoryMovement.quantity for the same (product, location). It is
    rebuilt from the ledger by movement_service.rebuild_snapshot.

    version_id is the compare-and-swap guard: concurrent writers that read
    the same version cannot both commit (StaleDataError -> retry).
    """
    __tablename__ = "inventory_levels"
    __table_args__ = (
        db.UniqueConstraint("product_id", "location_id", name="uq_inventory_levels_product_location"),
        db.CheckConstraint("quantity >= 0", name="ck_inventory_levels_quantity"),
        db.CheckConstraint("min_stock >= 0", name="ck_inventory_levels_min_stock"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    min_stock = db.Column(db.Integer, nullable=False, default=0)
    max_stock = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", back_populates="inventory")
    location = db.relationship("Location")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_low_stock(self) -> bool:
        return self.quantity <= self.min_stock

    def to_dict(self) -> dict:
        return {
            "location_id": self.location_id,
            "quantity": self.quantity,
            "min_stock": self.min_stock,
            "max_stock": self.max_stock,
            "is_low_stock": self.is_low_stock,
        }
