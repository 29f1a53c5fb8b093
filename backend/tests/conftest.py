"""
Pytest fixtures for RetailPOS backend tests.

Provides the test database, a two-business tenant setup and catalog fixtures.
"""

import pytest

from retailpos import create_app
from retailpos.extensions import db
from retailpos.models import Business, Category, Location, MovementReference, Product, User
from retailpos.services import movement_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'DB_RETRY_BACKOFF': 0.001,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def business(db_session):
    """Business A (first tenant)."""
    business = Business(name="Acme Corner Shop", email="owner@acme.test", currency="USD")
    db_session.add(business)
    db_session.commit()
    return business


@pytest.fixture(scope='function')
def other_business(db_session):
    """Business B (second tenant)."""
    business = Business(name="Beta Traders", currency="USD")
    db_session.add(business)
    db_session.commit()
    return business


@pytest.fixture(scope='function')
def location(db_session, business):
    location = Location(business_id=business.id, name="Main Street", code="MAIN", tax_rate_bps=0)
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def second_location(db_session, business):
    location = Location(business_id=business.id, name="Harbour", code="HARB", tax_rate_bps=0)
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def other_location(db_session, other_business):
    location = Location(business_id=other_business.id, name="Beta Main", code="B1")
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def cashier(db_session, business, location):
    user = User(
        business_id=business.id,
        location_id=location.id,
        username="cashier",
        full_name="Casey Cashier",
        role="cashier",
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def manager(db_session, business, location):
    user = User(business_id=business.id, location_id=location.id, username="manager", role="manager")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def category(db_session, business):
    category = Category(business_id=business.id, name="Beverages")
    db_session.add(category)
    db_session.commit()
    return category


@pytest.fixture(scope='function')
def product(db_session, business, category):
    """Product in Business A with no stock yet."""
    product = Product(
        business_id=business.id,
        category_id=category.id,
        sku="COF-001",
        barcode="1234567890123",
        name="Cold Brew",
        retail_price_cents=450,
        cost_cents=200,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def second_product(db_session, business, category):
    product = Product(
        business_id=business.id,
        category_id=category.id,
        sku="TEA-001",
        name="Green Tea",
        retail_price_cents=300,
        cost_cents=100,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def stocked(db_session, product, second_product, location, cashier):
    """10 Cold Brew and 5 Green Tea at the main location, bought in through the ledger."""
    for p, qty in ((product, 10), (second_product, 5)):
        movement_service.record_movement(
            product_id=p.id,
            location_id=location.id,
            business_id=p.business_id,
            kind="purchase",
            magnitude=qty,
            reference=MovementReference.purchase_order("PO-1"),
            user_id=cashier.id,
        )
    return product, second_product


@pytest.fixture(scope='function')
def file_app(tmp_path):
    """
    App bound to a file-backed SQLite database so threads contend on real
    locks. Yields (app, ids) with the seeded business, location, user and
    product ids.
    """
    db_path = tmp_path / "threaded.sqlite3"
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{db_path}",
        'DB_RETRY_ATTEMPTS': 25,
        'DB_RETRY_BACKOFF': 0.01,
        'SALE_NUMBER_MAX_ATTEMPTS': 25,
    })

    with app.app_context():
        db.create_all()
        business = Business(name="Threaded Shop")
        db.session.add(business)
        db.session.flush()
        location = Location(business_id=business.id, name="Main")
        category = Category(business_id=business.id, name="General")
        db.session.add_all([location, category])
        db.session.flush()
        user = User(business_id=business.id, location_id=location.id, username="till")
        product = Product(
            business_id=business.id,
            category_id=category.id,
            sku="THR-001",
            name="Threaded Widget",
            retail_price_cents=100,
        )
        db.session.add_all([user, product])
        db.session.commit()
        ids = {
            "business_id": business.id,
            "location_id": location.id,
            "user_id": user.id,
            "product_id": product.id,
        }
        db.session.remove()

    yield app, ids

    with app.app_context():
        db.drop_all()
        db.session.remove()
        db.engine.dispose()
