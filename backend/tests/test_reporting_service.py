# Overview: Pytest coverage for sales/inventory report aggregation and report caching.

import csv
import io
from datetime import date, datetime

import pytest
from sqlalchemy import func

from retailpos.errors import NotFoundError, ValidationError
from retailpos.models import Category, Product, Report, Sale
from retailpos.models.sales import REVENUE_STATUSES
from retailpos.services import catalog_service, reporting_service, sales_service


def _sell(business, location, cashier, items, when, phone=None, method="cash"):
    return sales_service.complete_sale(
        business_id=business.id,
        location_id=location.id,
        cashier_user_id=cashier.id,
        items=items,
        payment_method=method,
        customer={"phone": phone} if phone else None,
        now=when,
    )


@pytest.fixture
def sales_history(db_session, business, location, cashier, stocked):
    """
    May 1: 900 (555-1, cash), 750 (555-1, card)
    May 2: 600 (no phone, later partially refunded), 450 (555-2, voided)
    May 5: 450 (outside the May 1-3 range)
    """
    product, tea = stocked
    _sell(business, location, cashier, [{"product_id": product.id, "quantity": 2}], datetime(2024, 5, 1, 9, 15), "555-1")
    _sell(
        business, location, cashier,
        [{"product_id": tea.id, "quantity": 1}, {"product_id": product.id, "quantity": 1}],
        datetime(2024, 5, 1, 15, 40), "555-1", method="card",
    )
    partial = _sell(business, location, cashier, [{"product_id": tea.id, "quantity": 2}], datetime(2024, 5, 2, 10, 0))
    voided = _sell(business, location, cashier, [{"product_id": product.id, "quantity": 1}], datetime(2024, 5, 2, 11, 0), "555-2")
    _sell(business, location, cashier, [{"product_id": product.id, "quantity": 1}], datetime(2024, 5, 5, 12, 0), "555-3")

    sales_service.refund_sale(sale_id=partial.id, business_id=business.id, user_id=cashier.id, quantities={1: 1})
    sales_service.void_sale(sale_id=voided.id, business_id=business.id, user_id=cashier.id, reason="test")
    return product, tea


class TestSalesReport:
    def test_daily_series(self, db_session, business, sales_history):
        report = reporting_service.generate_sales_report(business_id=business.id, start="2024-05-01", end="2024-05-03")

        assert report["daily_series"] == [
            {
                "date": "2024-05-01",
                "revenue_cents": 1650,
                "transactions": 2,
                "item_count": 3,
                "average_transaction_cents": 825,
            },
            {
                "date": "2024-05-02",
                "revenue_cents": 600,
                "transactions": 1,
                "item_count": 1,
                "average_transaction_cents": 600,
            },
        ]

    def test_summary_counts_only_revenue_sales(self, db_session, business, sales_history):
        report = reporting_service.generate_sales_report(business_id=business.id, start="2024-05-01", end="2024-05-03")

        assert report["summary"] == {
            "total_revenue_cents": 2250,
            "total_transactions": 3,
            "average_transaction_cents": 750,
            "total_customers": 1,
        }

        expected = db_session.query(func.sum(Sale.total_cents)).filter(
            Sale.business_id == business.id,
            Sale.status.in_(REVENUE_STATUSES),
            Sale.created_at >= datetime(2024, 5, 1),
            Sale.created_at < datetime(2024, 5, 4),
        ).scalar()
        assert report["summary"]["total_revenue_cents"] == expected

    def test_top_products(self, db_session, business, sales_history):
        product, tea = sales_history
        report = reporting_service.generate_sales_report(business_id=business.id, start="2024-05-01", end="2024-05-03")

        assert report["top_products"] == [
            {"product_id": product.id, "name": "Cold Brew", "quantity": 3, "revenue_cents": 1350},
            {"product_id": tea.id, "name": "Green Tea", "quantity": 3, "revenue_cents": 900},
        ]

        limited = reporting_service.generate_sales_report(
            business_id=business.id, start="2024-05-01", end="2024-05-03", top_limit=1
        )
        assert [row["product_id"] for row in limited["top_products"]] == [product.id]

    def test_empty_range(self, db_session, business, sales_history):
        report = reporting_service.generate_sales_report(business_id=business.id, start="2024-06-01", end="2024-06-30")

        assert report["daily_series"] == []
        assert report["top_products"] == []
        assert report["summary"] == {
            "total_revenue_cents": 0,
            "total_transactions": 0,
            "average_transaction_cents": 0,
            "total_customers": 0,
        }

    def test_location_filter(self, db_session, business, second_location, sales_history):
        report = reporting_service.generate_sales_report(
            business_id=business.id, location_id=second_location.id, start="2024-05-01", end="2024-05-31"
        )
        assert report["summary"]["total_transactions"] == 0

    def test_bad_ranges(self, db_session, business):
        with pytest.raises(ValidationError):
            reporting_service.generate_sales_report(business_id=business.id, start="2024-05-03", end="2024-05-01")
        with pytest.raises(ValidationError):
            reporting_service.generate_sales_report(business_id=business.id, start=None, end="2024-05-01")
        with pytest.raises(ValidationError):
            reporting_service.generate_sales_report(business_id=business.id, start="yesterday", end="2024-05-01")
        with pytest.raises(ValidationError):
            reporting_service.generate_sales_report(business_id=business.id, start="", end="2024-05-01")
        with pytest.raises(ValidationError):
            reporting_service.generate_sales_report(business_id=business.id, start="2024-05-01", end="   ")
        with pytest.raises(ValidationError):
            reporting_service.staff_performance(business_id=business.id, start="", end="")

    def test_unknown_business(self, db_session):
        with pytest.raises(NotFoundError):
            reporting_service.generate_sales_report(business_id=4242, start="2024-05-01", end="2024-05-02")


class TestInventoryReport:
    def test_grouped_by_category(self, db_session, business, location, category, stocked):
        product, tea = stocked
        snacks = Category(business_id=business.id, name="Snacks")
        db_session.add(snacks)
        db_session.flush()
        db_session.add(Product(business_id=business.id, category_id=snacks.id, sku="CHP-1", name="Chips", retail_price_cents=150))
        db_session.add(
            Product(business_id=business.id, category_id=snacks.id, sku="OLD-1", name="Retired", retail_price_cents=1, is_active=False)
        )
        db_session.commit()
        # Low stock is inclusive: 5 on hand with a minimum of 5 counts.
        catalog_service.set_stock_thresholds(
            product_id=tea.id, location_id=location.id, business_id=business.id, min_stock=5
        )

        report = reporting_service.generate_inventory_report(business_id=business.id)

        assert report["by_category"] == [
            {
                "category_id": category.id,
                "category_name": "Beverages",
                "product_count": 2,
                "snapshot_count": 2,
                "quantity": 15,
                "value_cents": 10 * 450 + 5 * 300,
                "low_stock_count": 1,
            },
            {
                "category_id": snacks.id,
                "category_name": "Snacks",
                "product_count": 1,
                "snapshot_count": 0,
                "quantity": 0,
                "value_cents": 0,
                "low_stock_count": 0,
            },
        ]
        assert report["summary"]["total_quantity"] == 15
        assert report["summary"]["low_stock_count"] == 1

    def test_location_filter(self, db_session, business, second_location, stocked):
        report = reporting_service.generate_inventory_report(business_id=business.id, location_id=second_location.id)

        assert report["by_category"][0]["snapshot_count"] == 0
        assert report["by_category"][0]["quantity"] == 0


class TestBreakdowns:
    def test_payment_methods(self, db_session, business, sales_history):
        rows = reporting_service.sales_by_payment_method(business_id=business.id, start="2024-05-01", end="2024-05-03")
        assert rows == [
            {"payment_method": "card", "transactions": 1, "revenue_cents": 750},
            {"payment_method": "cash", "transactions": 2, "revenue_cents": 1500},
        ]

    def test_hourly(self, db_session, business, sales_history):
        series = reporting_service.hourly_sales(business_id=business.id, day=date(2024, 5, 1))

        assert len(series) == 24
        assert series[9] == {"hour": 9, "transactions": 1, "revenue_cents": 900}
        assert series[15] == {"hour": 15, "transactions": 1, "revenue_cents": 750}
        assert sum(row["transactions"] for row in series) == 2

    def test_staff_performance(self, db_session, business, cashier, sales_history):
        rows = reporting_service.staff_performance(business_id=business.id, start="2024-05-01", end="2024-05-03")
        assert rows == [
            {
                "user_id": cashier.id,
                "name": "Casey Cashier",
                "transactions": 3,
                "revenue_cents": 2250,
                "average_transaction_cents": 750,
            }
        ]

    def test_dashboard(self, db_session, business, sales_history):
        stats = reporting_service.dashboard_stats(business_id=business.id, now=datetime(2024, 5, 2, 23, 0))

        assert stats["today"] == {"revenue_cents": 600, "transactions": 1}
        assert stats["month_to_date"] == {"revenue_cents": 2250, "transactions": 3}
        assert stats["active_products"] == 2

    def test_export_csv(self, db_session, business, sales_history):
        text = reporting_service.export_sales_csv(business_id=business.id, start="2024-05-01", end="2024-05-03")
        rows = list(csv.reader(io.StringIO(text)))

        assert rows[0] == list(reporting_service.EXPORT_COLUMNS)
        assert [row[0] for row in rows[1:]] == [
            "20240501-0001",
            "20240501-0002",
            "20240502-0001",
            "20240502-0002",
        ]
        assert rows[4][6] == "voided"


class TestReportCache:
    def test_cached_until_regenerated(self, db_session, business, location, cashier, sales_history):
        product, _ = sales_history
        first = reporting_service.get_or_generate_report(
            report_type="sales", business_id=business.id, user_id=cashier.id, start="2024-05-01", end="2024-05-03"
        )
        assert first.summary["total_revenue_cents"] == 2250

        _sell(business, location, cashier, [{"product_id": product.id, "quantity": 1}], datetime(2024, 5, 3, 8, 0))

        cached = reporting_service.get_or_generate_report(
            report_type="sales", business_id=business.id, user_id=cashier.id, start="2024-05-01", end="2024-05-03"
        )
        assert cached.id == first.id
        assert cached.summary["total_revenue_cents"] == 2250

        fresh = reporting_service.get_or_generate_report(
            report_type="sales",
            business_id=business.id,
            user_id=cashier.id,
            start="2024-05-01",
            end="2024-05-03",
            regenerate=True,
        )
        assert fresh.id == first.id
        assert fresh.summary["total_revenue_cents"] == 2700
        assert db_session.query(Report).count() == 1

    def test_different_parameters_are_separate(self, db_session, business, cashier, sales_history):
        reporting_service.get_or_generate_report(
            report_type="sales", business_id=business.id, user_id=cashier.id, start="2024-05-01", end="2024-05-03"
        )
        reporting_service.get_or_generate_report(
            report_type="sales", business_id=business.id, user_id=cashier.id, start="2024-05-01", end="2024-05-31"
        )
        inventory = reporting_service.get_or_generate_report(
            report_type="inventory", business_id=business.id, user_id=cashier.id
        )

        assert inventory.range_start is None
        assert "by_category" in inventory.data
        assert db_session.query(Report).count() == 3

    def test_staff_report(self, db_session, business, cashier, sales_history):
        report = reporting_service.get_or_generate_report(
            report_type="staff_performance",
            business_id=business.id,
            user_id=cashier.id,
            start="2024-05-01",
            end="2024-05-03",
        )
        assert report.summary == {"staff_count": 1}

    def test_unknown_type(self, db_session, business, cashier):
        with pytest.raises(ValidationError):
            reporting_service.get_or_generate_report(report_type="weather", business_id=business.id, user_id=cashier.id)
