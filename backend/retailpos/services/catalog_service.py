# backend/retailpos/services/catalog_service.py
"""
Catalog Service: businesses, locations, staff, categories and products.

INVENTORY BOUNDARY: nothing here writes InventoryLevel.quantity. Product
payloads are validated against PRODUCT_POLICY, which has no inventory
field, and opening stock is written as ledger movements in the same
transaction as the product.
Only stock thresholds (min/max) are editable on a snapshot row.
"""
from __future__ import annotations

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Business, Category, InventoryLevel, Location, MovementReference, Product, User
from ..models.auth import USER_ROLES
from ..validation import (
    ModelValidationPolicy,
    enforce_rules_product,
    enforce_rules_stock_thresholds,
    validate_payload,
)
from .concurrency import RETRYABLE_ERRORS, begin_immediate, lock_for_update, run_with_retry, storage_errors
from .movement_service import _record_movement_inner

PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={
        "sku",
        "barcode",
        "name",
        "description",
        "category_id",
        "retail_price_cents",
        "wholesale_price_cents",
        "cost_cents",
        "is_active",
    },
    required_on_create={"sku", "name", "category_id", "retail_price_cents"},
    protected_fields={
        "quantity": "stock changes are recorded as inventory movements",
        "version_id": "managed by the database",
    },
)


# =============================================================================
# Tenancy
# =============================================================================

def create_business(*, name: str, email: str | None = None, phone: str | None = None, currency: str = "USD") -> Business:
    if not name or not name.strip():
        raise ValidationError("name is required")
    business = Business(name=name.strip(), email=email, phone=phone, currency=currency)
    db.session.add(business)
    db.session.commit()
    return business


def get_business(business_id: int) -> Business:
    business = db.session.query(Business).filter_by(id=business_id).first()
    if business is None:
        raise NotFoundError("business", business_id)
    return business


def create_location(
    *,
    business_id: int,
    name: str,
    code: str | None = None,
    phone: str | None = None,
    address: str | None = None,
    tax_rate_bps: int = 0,
) -> Location:
    get_business(business_id)
    if not name or not name.strip():
        raise ValidationError("name is required")
    if tax_rate_bps < 0:
        raise ValidationError("tax_rate_bps must be >= 0")

    location = Location(
        business_id=business_id,
        name=name.strip(),
        code=code,
        phone=phone,
        address=address,
        tax_rate_bps=tax_rate_bps,
    )
    db.session.add(location)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("location name or code already exists in this business")
    return location


def get_location(location_id: int, business_id: int | None = None) -> Location:
    location = db.session.query(Location).filter_by(id=location_id).first()
    if location is None or (business_id is not None and location.business_id != business_id):
        raise NotFoundError("location", location_id)
    return location


def create_user(
    *,
    business_id: int,
    username: str,
    role: str = "cashier",
    location_id: int | None = None,
    full_name: str | None = None,
    email: str | None = None,
) -> User:
    get_business(business_id)
    if role not in USER_ROLES:
        raise ValidationError(f"role must be one of {', '.join(USER_ROLES)}")
    if location_id is not None:
        get_location(location_id, business_id)

    user = User(
        business_id=business_id,
        location_id=location_id,
        username=username,
        role=role,
        full_name=full_name,
        email=email,
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(f"username {username!r} already exists")
    return user


# =============================================================================
# Categories
# =============================================================================

def create_category(
    *,
    business_id: int,
    name: str,
    parent_id: int | None = None,
    description: str | None = None,
    location_id: int | None = None,
) -> Category:
    get_business(business_id)
    if not name or not name.strip():
        raise ValidationError("name is required")
    if parent_id is not None:
        get_category(parent_id, business_id)
    if location_id is not None:
        get_location(location_id, business_id)

    category = Category(
        business_id=business_id,
        name=name.strip(),
        parent_id=parent_id,
        description=description,
        location_id=location_id,
    )
    db.session.add(category)
    db.session.commit()
    return category


def get_category(category_id: int, business_id: int | None = None) -> Category:
    category = db.session.query(Category).filter_by(id=category_id).first()
    if category is None or (business_id is not None and category.business_id != business_id):
        raise NotFoundError("category", category_id)
    return category


def category_path(category_id: int) -> str:
    """Full path from the root category, e.g. "Drinks > Hot > Coffee"."""
    category = get_category(category_id)
    names = [category.name]
    seen = {category.id}
    while category.parent_id is not None and category.parent_id not in seen:
        category = db.session.query(Category).filter_by(id=category.parent_id).first()
        if category is None:
            break
        seen.add(category.id)
        names.insert(0, category.name)
    return " > ".join(names)


def category_tree(business_id: int) -> list[dict]:
    """Active categories as nested dicts; each node has a `children` list."""
    categories = db.session.query(Category).filter_by(
        business_id=business_id,
        is_active=True,
    ).order_by(Category.name.asc(), Category.id.asc()).all()

    by_parent: dict[int | None, list[Category]] = {}
    for category in categories:
        by_parent.setdefault(category.parent_id, []).append(category)

    def build(parent_id):
        return [
            {**category.to_dict(), "children": build(category.id)}
            for category in by_parent.get(parent_id, [])
        ]

    return build(None)


# =============================================================================
# Products
# =============================================================================

def get_product(product_id: int, business_id: int) -> Product:
    product = db.session.query(Product).filter_by(id=product_id).first()
    if product is None or product.business_id != business_id:
        raise NotFoundError("product", product_id)
    return product


def _ensure_unique_sku(business_id: int, sku: str, exclude_product_id: int | None = None) -> None:
    q = db.session.query(Product.id).filter_by(business_id=business_id, sku=sku)
    if exclude_product_id is not None:
        q = q.filter(Product.id != exclude_product_id)
    if q.first() is not None:
        raise ConflictError(f"sku {sku!r} already exists")


def create_product(
    *,
    business_id: int,
    payload: dict,
    user_id: int | None = None,
    opening_stock: dict[int, int] | None = None,
) -> Product:
    """
    Create a product from a validated payload.

    opening_stock maps location_id -> quantity. Each non-zero entry is
    recorded as an `adjustment` movement with a manual reference, so the
    snapshot starts out backed by the ledger. user_id is required when
    opening_stock is given.

    The product and its opening movements commit together: if any
    location or quantity is rejected, nothing is written.
    """
    get_business(business_id)
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
    enforce_rules_product(patch)
    get_category(patch["category_id"], business_id)

    opening = []
    for location_id, quantity in (opening_stock or {}).items():
        get_location(location_id, business_id)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
            raise ValidationError(
                "opening stock must be a non-negative integer",
                details={"location_id": location_id, "quantity": quantity},
            )
        if quantity:
            opening.append((location_id, quantity))
    if opening and user_id is None:
        raise ValidationError("user_id is required to record opening stock")

    def _op():
        begin_immediate()
        _ensure_unique_sku(business_id, patch["sku"])
        product = Product(business_id=business_id, **patch)
        db.session.add(product)
        db.session.flush()

        for location_id, quantity in opening:
            _record_movement_inner(
                product_id=product.id,
                location_id=location_id,
                business_id=business_id,
                kind="adjustment",
                magnitude=quantity,
                reference=MovementReference.manual(),
                user_id=user_id,
                note="Opening stock",
                dedup_key=f"opening:{product.id}:{location_id}",
            )

        db.session.commit()
        current_app.logger.info(
            "Created product id=%s sku=%s business=%s opening_locations=%s",
            product.id, product.sku, business_id, len(opening),
        )
        return product

    return run_with_retry(_op, retry_on=RETRYABLE_ERRORS + (IntegrityError,), label="create_product")


def update_product(*, product_id: int, business_id: int, payload: dict) -> Product:
    """Patch catalog fields. Inventory quantities are not writable here."""
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)
    enforce_rules_product(patch)

    def _op():
        product = get_product(product_id, business_id)
        if "category_id" in patch:
            get_category(patch["category_id"], business_id)
        if "sku" in patch:
            _ensure_unique_sku(business_id, patch["sku"], exclude_product_id=product.id)
        for key, value in patch.items():
            setattr(product, key, value)
        db.session.commit()
        return product

    return run_with_retry(_op, label="update_product")


def deactivate_product(*, product_id: int, business_id: int) -> Product:
    return update_product(product_id=product_id, business_id=business_id, payload={"is_active": False})


@storage_errors("list_products")
def list_products(*, business_id: int, category_id: int | None = None, include_inactive: bool = False) -> list[Product]:
    q = db.session.query(Product).filter(Product.business_id == business_id)
    if not include_inactive:
        q = q.filter(Product.is_active.is_(True))
    if category_id is not None:
        q = q.filter(Product.category_id == category_id)
    return q.order_by(Product.name.asc(), Product.id.asc()).all()


@storage_errors("search_products")
def search_products(*, business_id: int, term: str, limit: int = 50) -> list[Product]:
    """Case-insensitive match on name, sku or barcode (active products only)."""
    term = (term or "").strip()
    if not term:
        return []
    pattern = f"%{term}%"
    return db.session.query(Product).filter(
        Product.business_id == business_id,
        Product.is_active.is_(True),
        or_(
            Product.name.ilike(pattern),
            Product.sku.ilike(pattern),
            Product.barcode.ilike(pattern),
        ),
    ).order_by(Product.name.asc()).limit(limit).all()


def find_by_barcode(*, business_id: int, barcode: str) -> Product:
    product = db.session.query(Product).filter_by(
        business_id=business_id,
        barcode=(barcode or "").strip(),
        is_active=True,
    ).first()
    if product is None:
        raise NotFoundError("product", barcode)
    return product


def set_stock_thresholds(
    *,
    product_id: int,
    location_id: int,
    business_id: int,
    min_stock: int | None = None,
    max_stock: int | None = None,
) -> InventoryLevel:
    """
    Set min/max stock for a (product, location). Creates an empty snapshot
    (quantity 0, matching an empty ledger) when none exists yet.
    """
    enforce_rules_stock_thresholds(min_stock, max_stock)

    def _op():
        get_product(product_id, business_id)
        get_location(location_id, business_id)
        level = lock_for_update(
            db.session.query(InventoryLevel).filter_by(product_id=product_id, location_id=location_id)
        ).first()
        if level is None:
            level = InventoryLevel(product_id=product_id, location_id=location_id, quantity=0)
            db.session.add(level)
        if min_stock is not None:
            level.min_stock = min_stock
        if max_stock is not None:
            level.max_stock = max_stock
        db.session.commit()
        return level

    return run_with_retry(_op, label="set_stock_thresholds")


@storage_errors("low_stock_products")
def low_stock_products(*, business_id: int, location_id: int | None = None) -> list[dict]:
    """Active products with a snapshot at or below its minimum (inclusive)."""
    q = db.session.query(Product, InventoryLevel).join(
        InventoryLevel, InventoryLevel.product_id == Product.id
    ).filter(
        Product.business_id == business_id,
        Product.is_active.is_(True),
        InventoryLevel.quantity <= InventoryLevel.min_stock,
    )
    if location_id is not None:
        q = q.filter(InventoryLevel.location_id == location_id)

    rows = q.order_by(Product.name.asc(), InventoryLevel.location_id.asc()).all()
    return [
        {
            "product_id": product.id,
            "sku": product.sku,
            "name": product.name,
            "location_id": level.location_id,
            "quantity": level.quantity,
            "min_stock": level.min_stock,
            "out_of_stock": level.quantity == 0,
        }
        for product, level in rows
    ]
