# Overview: Pytest coverage for expenses, approval flow, summaries and recurring generation.

from datetime import date

import pytest

from retailpos.errors import ConflictError, NotFoundError, ValidationError
from retailpos.models import Expense
from retailpos.services import expense_service


def _expense(business, user, **overrides):
    payload = {
        "category": "utilities",
        "description": "Electricity",
        "amount_cents": 12_000,
        "expense_date": "2024-05-03",
    }
    payload.update(overrides)
    return expense_service.record_expense(business_id=business.id, recorded_by_user_id=user.id, payload=payload)


class TestRecordExpense:
    def test_defaults(self, db_session, business, cashier):
        expense = _expense(business, cashier)

        assert expense.status == "paid"
        assert expense.payment_method == "cash"
        assert expense.expense_date == date(2024, 5, 3)
        assert expense.is_recurring is False
        assert expense.next_due is None

    @pytest.mark.parametrize(
        "overrides",
        [
            {"category": "snacks"},
            {"payment_method": "barter"},
            {"amount_cents": 0},
            {"amount_cents": 10.5},
            {"status": "lost"},
            {"expense_date": "03/05/2024"},
            {"next_due": "2024-06-01"},
            {"is_recurring": True},
            {"is_recurring": True, "frequency": "hourly"},
        ],
    )
    def test_rejected_payloads(self, db_session, business, cashier, overrides):
        with pytest.raises(ValidationError):
            _expense(business, cashier, **overrides)
        assert db_session.query(Expense).count() == 0

    def test_location_must_belong_to_business(self, db_session, business, cashier, other_location):
        with pytest.raises(NotFoundError):
            _expense(business, cashier, location_id=other_location.id)

    def test_recurring_sets_first_due_date(self, db_session, business, cashier):
        expense = _expense(business, cashier, category="rent", is_recurring=True, frequency="monthly", expense_date="2024-01-31")
        assert expense.next_due == date(2024, 2, 29)


class TestStatusFlow:
    def test_pending_to_approved_to_paid(self, db_session, business, cashier, manager):
        expense = _expense(business, cashier, status="pending")

        expense_service.update_expense_status(expense_id=expense.id, business_id=business.id, status="approved", user_id=manager.id)
        expense_service.update_expense_status(expense_id=expense.id, business_id=business.id, status="paid", user_id=manager.id)

        db_session.expire(expense)
        assert expense.status == "paid"
        assert expense.approved_by_user_id == manager.id

    def test_cashier_cannot_approve(self, db_session, business, cashier):
        expense = _expense(business, cashier, status="pending")
        with pytest.raises(ConflictError):
            expense_service.update_expense_status(expense_id=expense.id, business_id=business.id, status="approved", user_id=cashier.id)

    def test_final_statuses(self, db_session, business, cashier, manager):
        expense = _expense(business, cashier)
        with pytest.raises(ConflictError):
            expense_service.update_expense_status(expense_id=expense.id, business_id=business.id, status="rejected", user_id=manager.id)

    def test_other_business(self, db_session, business, other_business, cashier, manager):
        expense = _expense(business, cashier, status="pending")
        with pytest.raises(NotFoundError):
            expense_service.update_expense_status(
                expense_id=expense.id, business_id=other_business.id, status="approved", user_id=manager.id
            )


class TestSummaries:
    def test_summary_groups_spent_expenses_by_category(self, db_session, business, cashier):
        _expense(business, cashier, category="rent", amount_cents=100_000, expense_date="2024-05-01")
        _expense(business, cashier, amount_cents=10_000, expense_date="2024-05-10")
        _expense(business, cashier, amount_cents=20_001, expense_date="2024-05-20", status="approved")
        _expense(business, cashier, amount_cents=99_999, expense_date="2024-05-21", status="pending")
        _expense(business, cashier, amount_cents=5_000, expense_date="2024-06-01")

        summary = expense_service.expense_summary(business_id=business.id, start="2024-05-01", end="2024-05-31")

        assert summary["by_category"] == [
            {"category": "rent", "total_cents": 100_000, "count": 1, "average_cents": 100_000},
            {"category": "utilities", "total_cents": 30_001, "count": 2, "average_cents": 15_000},
        ]
        assert summary["total_cents"] == 130_001
        assert summary["count"] == 3

    def test_summary_bad_range(self, db_session, business):
        with pytest.raises(ValidationError):
            expense_service.expense_summary(business_id=business.id, start="2024-06-01", end="2024-05-01")
        with pytest.raises(ValidationError):
            expense_service.expense_summary(business_id=business.id, start="", end="2024-05-01")

    def test_monthly_totals(self, db_session, business, cashier):
        _expense(business, cashier, amount_cents=1_000, expense_date="2024-01-15")
        _expense(business, cashier, amount_cents=2_000, expense_date="2024-01-20")
        _expense(business, cashier, amount_cents=4_000, expense_date="2024-12-31")
        _expense(business, cashier, amount_cents=8_000, expense_date="2025-01-01")

        months = expense_service.monthly_expenses(business_id=business.id, year=2024)

        assert len(months) == 12
        assert months[0] == {"month": 1, "total_cents": 3_000, "count": 2}
        assert months[11] == {"month": 12, "total_cents": 4_000, "count": 1}
        assert sum(m["total_cents"] for m in months) == 7_000


class TestRecurring:
    def test_monthly_catch_up_keeps_day_of_month(self, db_session, business, cashier):
        template = _expense(business, cashier, category="rent", is_recurring=True, frequency="monthly", expense_date="2024-01-31")

        created = expense_service.generate_recurring(business_id=business.id, as_of=date(2024, 4, 30))

        assert [e.expense_date for e in created] == [date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)]
        assert all(e.status == "pending" and e.parent_expense_id == template.id for e in created)
        assert all(e.is_recurring is False for e in created)
        db_session.expire(template)
        assert template.next_due == date(2024, 5, 31)

    def test_rerun_generates_nothing_new(self, db_session, business, cashier):
        _expense(business, cashier, is_recurring=True, frequency="weekly", expense_date="2024-05-01")

        first = expense_service.generate_recurring(business_id=business.id, as_of=date(2024, 5, 15))
        second = expense_service.generate_recurring(business_id=business.id, as_of=date(2024, 5, 15))

        assert [e.expense_date for e in first] == [date(2024, 5, 8), date(2024, 5, 15)]
        assert second == []
        assert db_session.query(Expense).count() == 3

    def test_end_date_stops_schedule(self, db_session, business, cashier):
        template = _expense(
            business, cashier, is_recurring=True, frequency="daily",
            expense_date="2024-05-01", end_date="2024-05-03",
        )

        created = expense_service.generate_recurring(business_id=business.id, as_of=date(2024, 5, 10))

        assert [e.expense_date for e in created] == [date(2024, 5, 2), date(2024, 5, 3)]
        db_session.expire(template)
        assert template.next_due is None

    def test_generated_copies_stay_out_of_summary_until_approved(self, db_session, business, cashier, manager):
        _expense(business, cashier, is_recurring=True, frequency="yearly", expense_date="2023-05-01")
        (copy,) = expense_service.generate_recurring(business_id=business.id, as_of=date(2024, 5, 1))

        summary = expense_service.expense_summary(business_id=business.id, start="2024-01-01", end="2024-12-31")
        assert summary["total_cents"] == 0

        expense_service.update_expense_status(expense_id=copy.id, business_id=business.id, status="approved", user_id=manager.id)
        summary = expense_service.expense_summary(business_id=business.id, start="2024-01-01", end="2024-12-31")
        assert summary["total_cents"] == 12_000

    @pytest.mark.parametrize(
        "current, frequency, expected",
        [
            (date(2024, 12, 31), "monthly", date(2025, 1, 31)),
            (date(2024, 2, 29), "yearly", date(2025, 2, 28)),
            (date(2024, 5, 1), "weekly", date(2024, 5, 8)),
        ],
    )
    def test_next_due_date(self, current, frequency, expected):
        assert expense_service.next_due_date(current, frequency) == expected
