# Overview: Pytest coverage for per-location daily sale numbering, including concurrent allocation.

import threading
from datetime import datetime

import pytest

from retailpos.errors import NotFoundError, ValidationError
from retailpos.extensions import db
from retailpos.models import Sale, SaleNumberSequence
from retailpos.services.numbering_service import format_sale_number, next_sale_number, parse_sale_sequence

MAY_1 = datetime(2024, 5, 1, 10, 30)
MAY_2 = datetime(2024, 5, 2, 0, 5)


class TestSaleNumberFormat:
    def test_format_pads_to_four_digits(self):
        assert format_sale_number("20240501", 1) == "20240501-0001"
        assert format_sale_number("20240501", 123) == "20240501-0123"

    def test_format_widens_past_9999(self):
        assert format_sale_number("20240501", 10000) == "20240501-10000"

    def test_parse_sequence(self):
        assert parse_sale_sequence("20240501-0042") == 42

    @pytest.mark.parametrize("value", ["20240501", "20240501-", "20240501-abc"])
    def test_parse_malformed(self, value):
        with pytest.raises(ValidationError):
            parse_sale_sequence(value)


class TestNextSaleNumber:
    def test_first_numbers_of_the_day(self, db_session, location):
        assert next_sale_number(location.id, now=MAY_1) == "20240501-0001"
        assert next_sale_number(location.id, now=MAY_1) == "20240501-0002"

    def test_strictly_increasing(self, db_session, location):
        numbers = [next_sale_number(location.id, now=MAY_1) for _ in range(12)]
        sequences = [parse_sale_sequence(n) for n in numbers]
        assert sequences == list(range(1, 13))

    def test_resets_on_new_day(self, db_session, location):
        next_sale_number(location.id, now=MAY_1)
        next_sale_number(location.id, now=MAY_1)

        assert next_sale_number(location.id, now=MAY_2) == "20240502-0001"

    def test_locations_have_their_own_sequence(self, db_session, location, second_location):
        assert next_sale_number(location.id, now=MAY_1) == "20240501-0001"
        assert next_sale_number(second_location.id, now=MAY_1) == "20240501-0001"
        assert next_sale_number(location.id, now=MAY_1) == "20240501-0002"

    def test_skips_past_existing_sales(self, db_session, business, location, cashier):
        """Numbers already used by stored sales are never handed out again."""
        db_session.add(
            Sale(
                sale_number="20240501-0007",
                business_id=business.id,
                location_id=location.id,
                cashier_user_id=cashier.id,
                subtotal_cents=100,
                total_cents=100,
                payment_method="cash",
                paid_amount_cents=100,
                created_at=MAY_1,
                updated_at=MAY_1,
            )
        )
        db_session.commit()

        assert next_sale_number(location.id, now=MAY_1) == "20240501-0008"
        assert next_sale_number(location.id, now=MAY_1) == "20240501-0009"

    def test_counter_row_tracks_next_number(self, db_session, location):
        next_sale_number(location.id, now=MAY_1)
        next_sale_number(location.id, now=MAY_1)

        seq = db_session.query(SaleNumberSequence).filter_by(location_id=location.id, business_date="20240501").one()
        assert seq.next_number == 3

    def test_unknown_location(self, db_session):
        with pytest.raises(NotFoundError):
            next_sale_number(99999, now=MAY_1)
        assert db_session.query(SaleNumberSequence).count() == 0

    def test_missing_location(self, db_session):
        with pytest.raises(ValidationError):
            next_sale_number(None, now=MAY_1)


class TestConcurrentNumbering:
    def test_concurrent_callers_never_share_a_number(self, file_app):
        app, ids = file_app
        location_id = ids["location_id"]
        threads_count = 6
        per_thread = 5

        numbers: list[str] = []
        errors: list[Exception] = []
        lock = threading.Lock()
        start = threading.Barrier(threads_count)

        def worker():
            with app.app_context():
                try:
                    start.wait()
                    for _ in range(per_thread):
                        number = next_sale_number(location_id, now=MAY_1)
                        with lock:
                            numbers.append(number)
                except Exception as exc:  # collected and asserted below
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker) for _ in range(threads_count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        total = threads_count * per_thread
        assert len(numbers) == total
        assert len(set(numbers)) == total
        assert {parse_sale_sequence(n) for n in numbers} == set(range(1, total + 1))
