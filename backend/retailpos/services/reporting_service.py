# Overview: Read-only aggregations over sales, products and snapshots, plus cached Report rows.

from __future__ import annotations

import csv
import io
from datetime import date, datetime, time, timedelta

from flask import current_app
from sqlalchemy import and_, case, func

from ..errors import ValidationError
from ..extensions import db
from ..models import Category, Customer, InventoryLevel, Product, Report, Sale, SaleLine, User
from ..models.reports import REPORT_TYPES
from ..models.sales import REVENUE_STATUSES
from ..time_utils import normalize_datetime, to_utc_z, utcnow
from .catalog_service import get_business, get_location
from .concurrency import storage_errors
from .customer_service import customer_averages, top_customers


def _period_expr(column, fmt: str):
    """
    Group-by expression for a datetime column. fmt is a strftime pattern
    limited to %Y, %m, %d and %H.
    """
    dialect = db.engine.dialect.name
    if dialect == "postgresql":
        pg = fmt.replace("%Y", "YYYY").replace("%m", "MM").replace("%d", "DD").replace("%H", "HH24")
        return func.to_char(column, pg)
    if dialect in ("mysql", "mariadb"):
        return func.date_format(column, fmt)
    return func.strftime(fmt, column)


def _is_date_only(value) -> bool:
    if isinstance(value, datetime):
        return False
    if isinstance(value, date):
        return True
    return isinstance(value, str) and len(value.strip()) == 10


def _parse_range(start, end) -> tuple[datetime, datetime]:
    """
    Inclusive [start, end] as UTC-naive datetimes. A date-only end covers
    that whole day.
    """
    try:
        start_dt = normalize_datetime(start)
        end_dt = normalize_datetime(end)
    except ValueError:
        raise ValidationError("start and end must be ISO-8601 dates or datetimes")
    # None and blank strings both normalize to None
    if start_dt is None or end_dt is None:
        raise ValidationError("start and end are required")
    if _is_date_only(end):
        end_dt = datetime.combine(end_dt.date(), time.max)
    if start_dt > end_dt:
        raise ValidationError("start must be on or before end")
    return start_dt, end_dt


def _revenue_filters(business_id: int, location_id: int | None, start_dt: datetime, end_dt: datetime) -> list:
    filters = [
        Sale.business_id == business_id,
        Sale.status.in_(REVENUE_STATUSES),
        Sale.created_at >= start_dt,
        Sale.created_at <= end_dt,
    ]
    if location_id is not None:
        filters.append(Sale.location_id == location_id)
    return filters


def _average(total: int, count: int) -> int:
    return round(total / count) if count else 0


@storage_errors("generate_sales_report")
def generate_sales_report(
    *,
    business_id: int,
    start,
    end,
    location_id: int | None = None,
    top_limit: int | None = None,
) -> dict:
    """
    Sales over an inclusive range, counting only completed and
    partially refunded sales.

    daily_series: one row per UTC day with sales (revenue, transactions,
        line item count, average transaction value).
    top_products: best sellers by revenue.
    summary: totals plus distinct customers by phone number. Sales without
        a phone number do not count as customers.
    """
    get_business(business_id)
    if location_id is not None:
        get_location(location_id, business_id)
    start_dt, end_dt = _parse_range(start, end)
    filters = _revenue_filters(business_id, location_id, start_dt, end_dt)
    if top_limit is None:
        top_limit = current_app.config.get("TOP_PRODUCTS_LIMIT", 10)

    day = _period_expr(Sale.created_at, "%Y-%m-%d")
    daily_rows = db.session.query(
        day.label("day"),
        func.coalesce(func.sum(Sale.total_cents), 0).label("revenue_cents"),
        func.count(Sale.id).label("transactions"),
    ).filter(*filters).group_by(day).order_by(day).all()

    item_rows = db.session.query(
        day.label("day"),
        func.count(SaleLine.id).label("item_count"),
    ).select_from(Sale).join(SaleLine, SaleLine.sale_id == Sale.id).filter(*filters).group_by(day).all()
    items_by_day = {row.day: int(row.item_count or 0) for row in item_rows}

    daily_series = []
    for row in daily_rows:
        revenue = int(row.revenue_cents or 0)
        transactions = int(row.transactions or 0)
        daily_series.append(
            {
                "date": row.day,
                "revenue_cents": revenue,
                "transactions": transactions,
                "item_count": items_by_day.get(row.day, 0),
                "average_transaction_cents": _average(revenue, transactions),
            }
        )

    revenue_expr = func.coalesce(func.sum(SaleLine.total_price_cents), 0)
    top_rows = db.session.query(
        SaleLine.product_id.label("product_id"),
        func.max(SaleLine.product_name).label("name"),
        func.coalesce(func.sum(SaleLine.quantity), 0).label("quantity"),
        revenue_expr.label("revenue_cents"),
    ).select_from(SaleLine).join(Sale, SaleLine.sale_id == Sale.id).filter(*filters).group_by(
        SaleLine.product_id
    ).order_by(revenue_expr.desc(), SaleLine.product_id.asc()).limit(top_limit).all()

    top_products = [
        {
            "product_id": row.product_id,
            "name": row.name,
            "quantity": int(row.quantity or 0),
            "revenue_cents": int(row.revenue_cents or 0),
        }
        for row in top_rows
    ]

    totals = db.session.query(
        func.coalesce(func.sum(Sale.total_cents), 0).label("revenue_cents"),
        func.count(Sale.id).label("transactions"),
    ).filter(*filters).one()

    customers = db.session.query(func.count(func.distinct(Sale.customer_phone))).filter(
        *filters,
        Sale.customer_phone.isnot(None),
        Sale.customer_phone != "",
    ).scalar()

    total_revenue = int(totals.revenue_cents or 0)
    total_transactions = int(totals.transactions or 0)
    return {
        "business_id": business_id,
        "location_id": location_id,
        "start": to_utc_z(start_dt),
        "end": to_utc_z(end_dt),
        "daily_series": daily_series,
        "top_products": top_products,
        "summary": {
            "total_revenue_cents": total_revenue,
            "total_transactions": total_transactions,
            "average_transaction_cents": _average(total_revenue, total_transactions),
            "total_customers": int(customers or 0),
        },
    }


@storage_errors("generate_inventory_report")
def generate_inventory_report(*, business_id: int, location_id: int | None = None) -> dict:
    """
    Active products grouped by category: snapshot count, quantity on hand,
    retail valuation and how many snapshots are at or below their minimum.
    """
    get_business(business_id)
    if location_id is not None:
        get_location(location_id, business_id)

    join_on = InventoryLevel.product_id == Product.id
    if location_id is not None:
        join_on = and_(join_on, InventoryLevel.location_id == location_id)

    rows = db.session.query(
        Product.category_id.label("category_id"),
        Category.name.label("category_name"),
        func.count(func.distinct(Product.id)).label("product_count"),
        func.count(InventoryLevel.id).label("snapshot_count"),
        func.coalesce(func.sum(InventoryLevel.quantity), 0).label("quantity"),
        func.coalesce(func.sum(InventoryLevel.quantity * Product.retail_price_cents), 0).label("value_cents"),
        func.coalesce(
            func.sum(case((InventoryLevel.quantity <= InventoryLevel.min_stock, 1), else_=0)),
            0,
        ).label("low_stock_count"),
    ).select_from(Product).outerjoin(
        InventoryLevel, join_on
    ).outerjoin(
        Category, Category.id == Product.category_id
    ).filter(
        Product.business_id == business_id,
        Product.is_active.is_(True),
    ).group_by(Product.category_id, Category.name).order_by(Category.name.asc()).all()

    by_category = [
        {
            "category_id": row.category_id,
            "category_name": row.category_name,
            "product_count": int(row.product_count or 0),
            "snapshot_count": int(row.snapshot_count or 0),
            "quantity": int(row.quantity or 0),
            "value_cents": int(row.value_cents or 0),
            "low_stock_count": int(row.low_stock_count or 0),
        }
        for row in rows
    ]

    return {
        "business_id": business_id,
        "location_id": location_id,
        "by_category": by_category,
        "summary": {
            "total_products": sum(r["product_count"] for r in by_category),
            "total_quantity": sum(r["quantity"] for r in by_category),
            "total_value_cents": sum(r["value_cents"] for r in by_category),
            "low_stock_count": sum(r["low_stock_count"] for r in by_category),
        },
    }


@storage_errors("sales_by_payment_method")
def sales_by_payment_method(*, business_id: int, start, end, location_id: int | None = None) -> list[dict]:
    start_dt, end_dt = _parse_range(start, end)
    rows = db.session.query(
        Sale.payment_method.label("payment_method"),
        func.count(Sale.id).label("transactions"),
        func.coalesce(func.sum(Sale.total_cents), 0).label("revenue_cents"),
    ).filter(
        *_revenue_filters(business_id, location_id, start_dt, end_dt)
    ).group_by(Sale.payment_method).order_by(Sale.payment_method).all()
    return [
        {
            "payment_method": row.payment_method,
            "transactions": int(row.transactions or 0),
            "revenue_cents": int(row.revenue_cents or 0),
        }
        for row in rows
    ]


@storage_errors("hourly_sales")
def hourly_sales(*, business_id: int, day: date | None = None, location_id: int | None = None) -> list[dict]:
    """Revenue per UTC hour of one day; all 24 hours are returned."""
    day = day or utcnow().date()
    start_dt = datetime(day.year, day.month, day.day)
    end_dt = datetime.combine(day, time.max)

    hour = _period_expr(Sale.created_at, "%H")
    rows = db.session.query(
        hour.label("hour"),
        func.count(Sale.id).label("transactions"),
        func.coalesce(func.sum(Sale.total_cents), 0).label("revenue_cents"),
    ).filter(
        *_revenue_filters(business_id, location_id, start_dt, end_dt)
    ).group_by(hour).all()
    by_hour = {int(row.hour): row for row in rows}

    series = []
    for h in range(24):
        row = by_hour.get(h)
        series.append(
            {
                "hour": h,
                "transactions": int(row.transactions or 0) if row else 0,
                "revenue_cents": int(row.revenue_cents or 0) if row else 0,
            }
        )
    return series


@storage_errors("staff_performance")
def staff_performance(*, business_id: int, start, end, location_id: int | None = None) -> list[dict]:
    """Per-cashier transactions and revenue, highest revenue first."""
    start_dt, end_dt = _parse_range(start, end)
    revenue_expr = func.coalesce(func.sum(Sale.total_cents), 0)
    rows = db.session.query(
        Sale.cashier_user_id.label("user_id"),
        User.username.label("username"),
        User.full_name.label("full_name"),
        func.count(Sale.id).label("transactions"),
        revenue_expr.label("revenue_cents"),
    ).select_from(Sale).join(
        User, User.id == Sale.cashier_user_id
    ).filter(
        *_revenue_filters(business_id, location_id, start_dt, end_dt)
    ).group_by(
        Sale.cashier_user_id, User.username, User.full_name
    ).order_by(revenue_expr.desc(), Sale.cashier_user_id.asc()).all()

    return [
        {
            "user_id": row.user_id,
            "name": row.full_name or row.username,
            "transactions": int(row.transactions or 0),
            "revenue_cents": int(row.revenue_cents or 0),
            "average_transaction_cents": _average(int(row.revenue_cents or 0), int(row.transactions or 0)),
        }
        for row in rows
    ]


@storage_errors("dashboard_stats")
def dashboard_stats(*, business_id: int, location_id: int | None = None, now: datetime | None = None) -> dict:
    now = normalize_datetime(now) or utcnow()
    day_start = datetime(now.year, now.month, now.day)
    month_start = datetime(now.year, now.month, 1)

    def _window(start_dt):
        row = db.session.query(
            func.coalesce(func.sum(Sale.total_cents), 0).label("revenue_cents"),
            func.count(Sale.id).label("transactions"),
        ).filter(*_revenue_filters(business_id, location_id, start_dt, now)).one()
        return {"revenue_cents": int(row.revenue_cents or 0), "transactions": int(row.transactions or 0)}

    low_stock_q = db.session.query(func.count(InventoryLevel.id)).select_from(InventoryLevel).join(
        Product, InventoryLevel.product_id == Product.id
    ).filter(
        Product.business_id == business_id,
        Product.is_active.is_(True),
        InventoryLevel.quantity <= InventoryLevel.min_stock,
    )
    if location_id is not None:
        low_stock_q = low_stock_q.filter(InventoryLevel.location_id == location_id)

    active_products = db.session.query(func.count(Product.id)).filter(
        Product.business_id == business_id,
        Product.is_active.is_(True),
    ).scalar()

    return {
        "as_of": to_utc_z(now),
        "today": _window(day_start),
        "month_to_date": _window(month_start),
        "low_stock_count": int(low_stock_q.scalar() or 0),
        "active_products": int(active_products or 0),
    }


@storage_errors("generate_customer_report")
def generate_customer_report(*, business_id: int, start, end, top_limit: int = 10) -> dict:
    """
    Active customers: totals and averages, customers created in the range,
    top spenders, and sign-ups per month for the 12 months up to `end`.
    """
    get_business(business_id)
    start_dt, end_dt = _parse_range(start, end)
    active = (Customer.business_id == business_id, Customer.is_active.is_(True))

    new_customers = db.session.query(func.count(Customer.id)).filter(
        *active,
        Customer.created_at >= start_dt,
        Customer.created_at <= end_dt,
    ).scalar()

    year, month = end_dt.year, end_dt.month - 11
    if month < 1:
        year, month = year - 1, month + 12
    month_key = _period_expr(Customer.created_at, "%Y-%m")
    growth_rows = db.session.query(
        month_key.label("month"),
        func.count(Customer.id).label("count"),
    ).filter(
        *active,
        Customer.created_at >= datetime(year, month, 1),
        Customer.created_at <= end_dt,
    ).group_by(month_key).order_by(month_key).all()

    return {
        "start": to_utc_z(start_dt),
        "end": to_utc_z(end_dt),
        "summary": {
            **customer_averages(business_id),
            "new_customers": int(new_customers or 0),
        },
        "top_customers": [
            {
                "customer_id": c.id,
                "name": c.full_name,
                "phone": c.phone,
                "total_spent_cents": c.total_spent_cents,
                "total_visits": c.total_visits,
                "loyalty_points": c.loyalty_points,
            }
            for c in top_customers(business_id=business_id, limit=top_limit)
        ],
        "growth": [{"month": row.month, "count": int(row.count or 0)} for row in growth_rows],
    }


EXPORT_COLUMNS = (
    "sale_number",
    "created_at",
    "location_id",
    "cashier_user_id",
    "customer_phone",
    "payment_method",
    "status",
    "subtotal_cents",
    "tax_cents",
    "discount_cents",
    "total_cents",
)


@storage_errors("export_sales_csv")
def export_sales_csv(*, business_id: int, start, end, location_id: int | None = None) -> str:
    """All sales in range (any status) as CSV text, oldest first."""
    start_dt, end_dt = _parse_range(start, end)
    q = db.session.query(Sale).filter(
        Sale.business_id == business_id,
        Sale.created_at >= start_dt,
        Sale.created_at <= end_dt,
    )
    if location_id is not None:
        q = q.filter(Sale.location_id == location_id)

    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(EXPORT_COLUMNS)
    for sale in q.order_by(Sale.created_at.asc(), Sale.id.asc()).all():
        writer.writerow(
            [
                sale.sale_number,
                to_utc_z(sale.created_at),
                sale.location_id,
                sale.cashier_user_id,
                sale.customer_phone or "",
                sale.payment_method,
                sale.status,
                sale.subtotal_cents,
                sale.tax_cents,
                sale.discount_cents,
                sale.total_cents,
            ]
        )
    return buf.getvalue()


def _build_report(report_type: str, business_id: int, location_id: int | None, start, end) -> tuple[dict, dict | None]:
    if report_type == "sales":
        report = generate_sales_report(business_id=business_id, location_id=location_id, start=start, end=end)
        return report, report["summary"]
    if report_type == "inventory":
        report = generate_inventory_report(business_id=business_id, location_id=location_id)
        return report, report["summary"]
    if report_type == "customers":
        report = generate_customer_report(business_id=business_id, start=start, end=end)
        return report, report["summary"]
    rows = staff_performance(business_id=business_id, location_id=location_id, start=start, end=end)
    return {"staff": rows}, {"staff_count": len(rows)}


def get_or_generate_report(
    *,
    report_type: str,
    business_id: int,
    user_id: int,
    location_id: int | None = None,
    start=None,
    end=None,
    regenerate: bool = False,
) -> Report:
    """
    Cached report for the given parameters.

    The stored row is returned as-is until regenerate=True, which recomputes
    the data and overwrites that row. Inventory reports ignore the range and
    customer reports ignore the location.
    """
    if report_type not in REPORT_TYPES:
        raise ValidationError(f"unknown report type: {report_type!r}", details={"allowed": list(REPORT_TYPES)})
    get_business(business_id)

    range_start = range_end = None
    if report_type != "inventory":
        range_start, range_end = _parse_range(start, end)

    cached = db.session.query(Report).filter(
        Report.business_id == business_id,
        Report.type == report_type,
        Report.location_id.is_(None) if location_id is None else Report.location_id == location_id,
        Report.range_start.is_(None) if range_start is None else Report.range_start == range_start,
        Report.range_end.is_(None) if range_end is None else Report.range_end == range_end,
    ).order_by(Report.generated_at.desc(), Report.id.desc()).first()

    if cached is not None and not regenerate:
        return cached

    data, summary = _build_report(report_type, business_id, location_id, range_start, range_end)
    if cached is None:
        cached = Report(
            business_id=business_id,
            location_id=location_id,
            type=report_type,
            range_start=range_start,
            range_end=range_end,
        )
        db.session.add(cached)
    cached.data = data
    cached.summary = summary
    cached.generated_by_user_id = user_id
    cached.generated_at = utcnow()
    db.session.commit()

    current_app.logger.info(
        "Generated %s report id=%s business=%s location=%s",
        report_type, cached.id, business_id, location_id,
    )
    return cached


def report_window(days: int, *, now: datetime | None = None) -> tuple[datetime, datetime]:
    """[now - days, now] helper used by the CLI."""
    now = normalize_datetime(now) or utcnow()
    return now - timedelta(days=days), now
