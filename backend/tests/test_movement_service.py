# Overview: Pytest coverage for the stock ledger (movement recording, snapshots, rebuilds).

"""
Stock Ledger Tests

INVARIANTS COVERED:
1. Snapshot quantity == SUM(movement.quantity) after any sequence of movements
2. Sign convention: sale/damage/transfer subtract, purchase/return/adjustment add
3. new_stock = previous_stock + quantity on every movement row
4. Rejected movements (unknown product, bad magnitude, insufficient stock)
   leave neither a movement nor a snapshot change behind
5. A repeated dedup_key does not re-apply the delta
6. Concurrent writers on one (product, location) never lose an update
"""

import threading
from datetime import datetime

import pytest

from retailpos.errors import (
    ConflictError,
    InsufficientStockError,
    IntegrityViolation,
    NotFoundError,
    ValidationError,
)
from retailpos.extensions import db
from retailpos.models import InventoryLevel, InventoryMovement, MovementReference
from retailpos.services import movement_service


def _record(product, location, cashier, kind, magnitude, **kwargs):
    kwargs.setdefault("reference", MovementReference.manual())
    return movement_service.record_movement(
        product_id=product.id,
        location_id=location.id,
        business_id=product.business_id,
        kind=kind,
        magnitude=magnitude,
        user_id=cashier.id,
        **kwargs,
    )


class TestRecordMovement:
    def test_purchase_on_fresh_pair(self, db_session, product, location, cashier):
        """First purchase creates the snapshot from zero."""
        movement = _record(product, location, cashier, "purchase", 10, reference=MovementReference.purchase_order("PO-1"))

        assert movement.quantity == 10
        assert movement.previous_stock == 0
        assert movement.new_stock == 10
        assert movement.reference == MovementReference("purchase_order", "PO-1")
        assert movement_service.get_stock(product.id, location.id) == 10

    def test_sale_after_purchase(self, db_session, product, location, cashier):
        _record(product, location, cashier, "purchase", 10)
        movement = _record(product, location, cashier, "sale", 3, reference=MovementReference.sale("20240501-0001"))

        assert movement.quantity == -3
        assert movement.previous_stock == 10
        assert movement.new_stock == 7
        assert movement_service.get_stock(product.id, location.id) == 7

    @pytest.mark.parametrize(
        "kind, expected",
        [
            ("purchase", 4),
            ("return", 4),
            ("adjustment", 4),
            ("sale", -4),
            ("damage", -4),
            ("transfer", -4),
        ],
    )
    def test_sign_convention(self, db_session, product, location, cashier, kind, expected):
        _record(product, location, cashier, "purchase", 20)
        reference = MovementReference.manual()
        if kind == "transfer":
            reference = MovementReference.transfer("TR-9")

        movement = _record(product, location, cashier, kind, 4, reference=reference)

        assert movement.quantity == expected
        assert movement.new_stock == 20 + expected

    def test_snapshot_matches_ledger_after_sequence(self, db_session, product, location, cashier):
        for kind, magnitude in [
            ("purchase", 50),
            ("sale", 7),
            ("damage", 2),
            ("return", 1),
            ("adjustment", 5),
            ("sale", 12),
            ("transfer", 10),
        ]:
            _record(product, location, cashier, kind, magnitude)

        assert movement_service.get_stock(product.id, location.id) == 25
        assert movement_service.get_ledger_quantity(product.id, location.id) == 25
        assert movement_service.verify_snapshots(business_id=product.business_id) == []

        rows = db_session.query(InventoryMovement).order_by(InventoryMovement.id).all()
        for row in rows:
            assert row.new_stock == row.previous_stock + row.quantity
        for earlier, later in zip(rows, rows[1:]):
            assert later.previous_stock == earlier.new_stock

    def test_locations_are_independent(self, db_session, product, location, second_location, cashier):
        _record(product, location, cashier, "purchase", 8)
        _record(product, second_location, cashier, "purchase", 3)
        _record(product, second_location, cashier, "sale", 1)

        assert movement_service.get_stock(product.id, location.id) == 8
        assert movement_service.get_stock(product.id, second_location.id) == 2
        assert product.total_inventory == 10

    def test_insufficient_stock_rejected_without_writes(self, db_session, product, location, cashier):
        _record(product, location, cashier, "purchase", 2)

        with pytest.raises(InsufficientStockError) as exc_info:
            _record(product, location, cashier, "sale", 3)

        assert isinstance(exc_info.value, IntegrityViolation)
        assert exc_info.value.details["on_hand"] == 2
        assert movement_service.get_stock(product.id, location.id) == 2
        assert db_session.query(InventoryMovement).count() == 1

    def test_sale_on_empty_pair_rejected(self, db_session, product, location, cashier):
        with pytest.raises(InsufficientStockError):
            _record(product, location, cashier, "sale", 1)

        assert db_session.query(InventoryLevel).count() == 0


class TestMovementValidation:
    @pytest.mark.parametrize("magnitude", [0, -3, 1.5, "2", True, None])
    def test_bad_magnitude(self, db_session, product, location, cashier, magnitude):
        with pytest.raises(ValidationError):
            _record(product, location, cashier, "purchase", magnitude)
        assert db_session.query(InventoryMovement).count() == 0

    def test_unknown_kind(self, db_session, product, location, cashier):
        with pytest.raises(ValidationError):
            _record(product, location, cashier, "theft", 1)

    def test_reference_without_id(self, db_session, product, location, cashier):
        with pytest.raises(ValidationError):
            _record(product, location, cashier, "purchase", 1, reference=MovementReference("purchase_order"))

    def test_unknown_reference_kind(self, db_session, product, location, cashier):
        with pytest.raises(ValidationError):
            _record(product, location, cashier, "purchase", 1, reference=MovementReference("invoice", "INV-1"))

    def test_unknown_product(self, db_session, business, location, cashier):
        with pytest.raises(NotFoundError) as exc_info:
            movement_service.record_movement(
                product_id=99999,
                location_id=location.id,
                business_id=business.id,
                kind="purchase",
                magnitude=1,
                reference=MovementReference.manual(),
                user_id=cashier.id,
            )
        assert exc_info.value.entity_type == "product"
        assert db_session.query(InventoryMovement).count() == 0
        assert db_session.query(InventoryLevel).count() == 0

    def test_location_of_other_business(self, db_session, product, other_location, cashier):
        with pytest.raises(NotFoundError) as exc_info:
            _record(product, other_location, cashier, "purchase", 1)
        assert exc_info.value.entity_type == "location"

    def test_product_of_other_business(self, db_session, product, other_business, other_location, cashier):
        with pytest.raises(NotFoundError):
            movement_service.record_movement(
                product_id=product.id,
                location_id=other_location.id,
                business_id=other_business.id,
                kind="purchase",
                magnitude=1,
                reference=MovementReference.manual(),
                user_id=cashier.id,
            )


class TestDedupKey:
    def test_repeat_is_not_reapplied(self, db_session, product, location, cashier):
        first = _record(product, location, cashier, "purchase", 5, dedup_key="po-77-line-1")
        second = _record(product, location, cashier, "purchase", 5, dedup_key="po-77-line-1")

        assert first.id == second.id
        assert movement_service.get_stock(product.id, location.id) == 5
        assert db_session.query(InventoryMovement).count() == 1

    def test_key_reused_for_other_movement(self, db_session, product, second_product, location, cashier):
        _record(product, location, cashier, "purchase", 5, dedup_key="k-1")

        with pytest.raises(ConflictError):
            _record(second_product, location, cashier, "purchase", 5, dedup_key="k-1")
        assert movement_service.get_stock(second_product.id, location.id) == 0

    def test_key_reused_with_other_magnitude(self, db_session, product, location, cashier):
        _record(product, location, cashier, "purchase", 5, dedup_key="k-2")

        with pytest.raises(ConflictError):
            _record(product, location, cashier, "purchase", 7, dedup_key="k-2")
        assert movement_service.get_stock(product.id, location.id) == 5

    def test_key_reused_with_other_reference(self, db_session, product, location, cashier):
        _record(product, location, cashier, "purchase", 5, reference=MovementReference.purchase_order("PO-1"), dedup_key="k-3")

        with pytest.raises(ConflictError):
            _record(product, location, cashier, "purchase", 5, reference=MovementReference.purchase_order("PO-2"), dedup_key="k-3")
        replay = _record(product, location, cashier, "purchase", 5, reference=MovementReference.purchase_order("PO-1"), dedup_key="k-3")
        assert replay.reference_id == "PO-1"
        assert movement_service.get_stock(product.id, location.id) == 5


class TestLedgerQueries:
    def test_ledger_quantity_as_of(self, db_session, product, location, cashier):
        _record(product, location, cashier, "purchase", 10, occurred_at=datetime(2024, 5, 1, 9, 0))
        _record(product, location, cashier, "sale", 4, occurred_at=datetime(2024, 5, 2, 9, 0))

        assert movement_service.get_ledger_quantity(product.id, location.id, as_of=datetime(2024, 5, 1, 23, 0)) == 10
        assert movement_service.get_ledger_quantity(product.id, location.id) == 6

    def test_list_movements_newest_first(self, db_session, product, location, cashier):
        _record(product, location, cashier, "purchase", 10, occurred_at=datetime(2024, 5, 1, 9, 0))
        _record(product, location, cashier, "sale", 1, occurred_at=datetime(2024, 5, 3, 9, 0))
        _record(product, location, cashier, "damage", 1, occurred_at=datetime(2024, 5, 2, 9, 0))

        rows = movement_service.list_movements(business_id=product.business_id, product_id=product.id)
        assert [row.kind for row in rows] == ["sale", "damage", "purchase"]

        sales = movement_service.list_movements(business_id=product.business_id, kind="sale")
        assert len(sales) == 1

        window = movement_service.list_movements(
            business_id=product.business_id,
            start="2024-05-02T00:00:00Z",
            end="2024-05-02T23:59:59Z",
        )
        assert [row.kind for row in window] == ["damage"]

    def test_movement_summary(self, db_session, product, location, cashier):
        _record(product, location, cashier, "purchase", 10)
        _record(product, location, cashier, "sale", 3)
        _record(product, location, cashier, "sale", 2)

        summary = movement_service.movement_summary(product_id=product.id, location_id=location.id)

        assert summary == [
            {"kind": "purchase", "total_quantity": 10, "count": 1},
            {"kind": "sale", "total_quantity": -5, "count": 2},
        ]


class TestSnapshotRebuild:
    def test_verify_and_rebuild_after_drift(self, db_session, product, location, cashier):
        _record(product, location, cashier, "purchase", 9)
        db_session.query(InventoryLevel).filter_by(product_id=product.id, location_id=location.id).update(
            {"quantity": 4}, synchronize_session=False
        )
        db_session.commit()

        mismatches = movement_service.verify_snapshots(business_id=product.business_id)
        assert mismatches == [
            {
                "product_id": product.id,
                "location_id": location.id,
                "snapshot_quantity": 4,
                "ledger_quantity": 9,
            }
        ]

        level = movement_service.rebuild_snapshot(product_id=product.id, location_id=location.id)
        assert level.quantity == 9
        assert movement_service.verify_snapshots(business_id=product.business_id) == []

    def test_rebuild_keeps_thresholds(self, db_session, product, location, cashier):
        _record(product, location, cashier, "purchase", 3)
        level = db_session.query(InventoryLevel).filter_by(product_id=product.id).one()
        level.min_stock = 5
        db_session.commit()

        rebuilt = movement_service.rebuild_snapshot(product_id=product.id, location_id=location.id)
        assert rebuilt.min_stock == 5
        assert rebuilt.quantity == 3

    def test_rebuild_creates_missing_snapshot(self, db_session, product, location):
        level = movement_service.rebuild_snapshot(product_id=product.id, location_id=location.id)
        assert level.quantity == 0

    def test_rebuild_unknown_product(self, db_session, location):
        with pytest.raises(NotFoundError):
            movement_service.rebuild_snapshot(product_id=424242, location_id=location.id)


class TestConcurrentMovements:
    def test_parallel_writers_keep_snapshot_equal_to_ledger(self, file_app):
        app, ids = file_app
        threads_count = 8
        per_thread = 5

        errors: list[Exception] = []
        lock = threading.Lock()
        start = threading.Barrier(threads_count)

        def worker(n):
            with app.app_context():
                try:
                    start.wait()
                    for i in range(per_thread):
                        movement_service.record_movement(
                            product_id=ids["product_id"],
                            location_id=ids["location_id"],
                            business_id=ids["business_id"],
                            kind="purchase",
                            magnitude=1,
                            reference=MovementReference.purchase_order(f"PO-{n}"),
                            user_id=ids["user_id"],
                            dedup_key=f"po-{n}-{i}",
                        )
                except Exception as exc:  # collected and asserted below
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(threads_count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        expected = threads_count * per_thread
        with app.app_context():
            stock = movement_service.get_stock(ids["product_id"], ids["location_id"])
            ledger = movement_service.get_ledger_quantity(ids["product_id"], ids["location_id"])
            movements = db.session.query(InventoryMovement).order_by(InventoryMovement.id).all()

            assert stock == ledger == expected
            assert len(movements) == expected
            # Serialized writers: each row continues from the one before it.
            assert [m.previous_stock for m in movements] == list(range(expected))
            assert movement_service.verify_snapshots(business_id=ids["business_id"]) == []
            db.session.remove()
