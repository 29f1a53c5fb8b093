"""
Receipt Service: printable text receipts for recorded sales.

Receipts are rendered from the sale's stored line snapshots, so later
catalog edits never change a reprint. Templates:
- default: header, lines with unit prices, totals, payment and customer
- compact: one line per item and the total
- detailed: numbered lines with SKU, payment status, customer contact and
  any refund or void on the sale
"""

from __future__ import annotations

from flask import current_app

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Business, Location, Sale, User
from ..time_utils import to_utc_z
from .concurrency import lock_for_update, run_with_retry
from .sales_service import get_sale

RECEIPT_TEMPLATES = ("default", "compact", "detailed")
CURRENCY_SYMBOLS = {"USD": "$", "CAD": "$", "AUD": "$", "EUR": "€", "GBP": "£"}


def format_money(cents: int, currency: str = "USD") -> str:
    sign = "-" if cents < 0 else ""
    cents = abs(cents)
    symbol = CURRENCY_SYMBOLS.get(currency, f"{currency} ")
    return f"{sign}{symbol}{cents // 100:,}.{cents % 100:02d}"


def receipt_data(*, sale_id: int, business_id: int) -> dict:
    """Everything a receipt shows, as plain data."""
    sale = get_sale(sale_id, business_id)
    business = db.session.get(Business, sale.business_id)
    location = db.session.get(Location, sale.location_id)
    cashier = db.session.get(User, sale.cashier_user_id)

    return {
        "business": {
            "name": business.name,
            "phone": business.phone,
            "email": business.email,
            "currency": business.currency,
        },
        "location": {
            "name": location.name,
            "address": location.address,
            "phone": location.phone,
        },
        "sale_number": sale.sale_number,
        "date": to_utc_z(sale.created_at),
        "cashier": cashier.display_name if cashier else None,
        "items": [line.to_dict() for line in sale.lines],
        "totals": {
            "subtotal_cents": sale.subtotal_cents,
            "discount_cents": sale.discount_cents,
            "tax_cents": sale.tax_cents,
            "total_cents": sale.total_cents,
            "refunded_amount_cents": sale.refunded_amount_cents,
        },
        "payment": {
            "method": sale.payment_method,
            "status": sale.payment_status,
            "paid_amount_cents": sale.paid_amount_cents,
            "change_amount_cents": sale.change_amount_cents,
        },
        "customer": {
            "name": sale.customer_name,
            "phone": sale.customer_phone,
            "email": sale.customer_email,
        },
        "status": sale.status,
        "void_reason": sale.void_reason,
        "refund_reason": sale.refund_reason,
        "receipt_printed": sale.receipt_printed,
    }


class _Lines:
    """Fixed-width line builder."""

    def __init__(self, width: int, currency: str):
        self.width = width
        self.currency = currency
        self.out: list[str] = []

    def text(self, value: str = "") -> None:
        self.out.append(value)

    def center(self, value: str) -> None:
        self.out.append(value.center(self.width).rstrip())

    def rule(self, char: str = "-") -> None:
        self.out.append(char * self.width)

    def amount(self, label: str, cents: int) -> None:
        money = format_money(cents, self.currency)
        gap = max(self.width - len(label) - len(money), 1)
        self.out.append(f"{label}{' ' * gap}{money}")

    def render(self) -> str:
        return "\n".join(self.out) + "\n"


def _header(out: _Lines, data: dict) -> None:
    out.rule("=")
    out.center(data["business"]["name"].upper())
    out.rule("=")
    location = data["location"]
    out.center(location["name"])
    if location["address"]:
        out.center(location["address"])
    phone = location["phone"] or data["business"]["phone"]
    if phone:
        out.center(phone)
    out.rule()
    out.text(f"Receipt #: {data['sale_number']}")
    out.text(f"Date: {data['date']}")
    if data["cashier"]:
        out.text(f"Cashier: {data['cashier']}")
    out.rule()


def _totals(out: _Lines, data: dict, *, detailed: bool) -> None:
    totals = data["totals"]
    out.rule()
    if detailed:
        out.text(f"Items: {len(data['items'])}")
    out.amount("Subtotal:", totals["subtotal_cents"])
    if totals["discount_cents"]:
        out.amount("Discount:", -totals["discount_cents"])
    out.amount("Tax:", totals["tax_cents"])
    out.amount("TOTAL:", totals["total_cents"])
    out.rule()

    payment = data["payment"]
    out.text(f"Payment: {payment['method'].upper()}")
    out.amount("Paid:", payment["paid_amount_cents"])
    if payment["change_amount_cents"]:
        out.amount("Change:", payment["change_amount_cents"])
    if detailed:
        out.text(f"Payment status: {payment['status'].upper()}")


def _render_default(data: dict, width: int) -> str:
    out = _Lines(width, data["business"]["currency"])
    _header(out, data)
    for item in data["items"]:
        out.text(item["name"])
        out.amount(
            f"  {item['quantity']} x {format_money(item['unit_price_cents'], out.currency)}",
            item["total_price_cents"],
        )
    _totals(out, data, detailed=False)

    customer = data["customer"]
    if customer["name"]:
        out.text()
        out.text(f"Customer: {customer['name']}")
        if customer["phone"]:
            out.text(f"Phone: {customer['phone']}")

    out.text()
    out.rule("=")
    out.center("Thank you for your business!")
    out.rule("=")
    return out.render()


def _render_compact(data: dict, width: int) -> str:
    out = _Lines(width, data["business"]["currency"])
    out.text(data["business"]["name"])
    out.text(f"Receipt #: {data['sale_number']}")
    out.text(data["date"][:10])
    out.text()
    for item in data["items"]:
        out.amount(f"{item['quantity']}x {item['name']}", item["total_price_cents"])
    out.text()
    out.amount("Total:", data["totals"]["total_cents"])
    out.text(f"Payment: {data['payment']['method']}")
    if data["payment"]["change_amount_cents"]:
        out.amount("Change:", data["payment"]["change_amount_cents"])
    out.text()
    out.text("Thank you!")
    return out.render()


def _render_detailed(data: dict, width: int) -> str:
    out = _Lines(width, data["business"]["currency"])
    _header(out, data)
    out.text("ITEMIZED PURCHASE:")
    for number, item in enumerate(data["items"], start=1):
        out.text(f"{number}. {item['name']}")
        out.text(f"   SKU: {item['sku']}")
        out.text(f"   Qty: {item['quantity']} @ {format_money(item['unit_price_cents'], out.currency)} each")
        out.amount("   Line total:", item["total_price_cents"])
        if item["refunded_quantity"]:
            out.text(f"   Returned: {item['refunded_quantity']}")
    _totals(out, data, detailed=True)

    customer = data["customer"]
    if customer["name"] or customer["phone"]:
        out.rule()
        out.text("CUSTOMER:")
        for label, key in (("Name", "name"), ("Phone", "phone"), ("Email", "email")):
            if customer[key]:
                out.text(f"{label}: {customer[key]}")

    if data["status"] == "voided":
        out.rule()
        out.text(f"VOIDED: {data['void_reason']}")
    elif data["totals"]["refunded_amount_cents"]:
        out.rule()
        out.amount("Refunded:", data["totals"]["refunded_amount_cents"])
        if data["refund_reason"]:
            out.text(f"Reason: {data['refund_reason']}")

    out.text()
    out.rule("=")
    out.center("THANK YOU FOR YOUR BUSINESS!")
    contact = data["business"]["phone"] or data["business"]["email"]
    if contact:
        out.center(f"Questions? {contact}")
    out.rule("=")
    return out.render()


_RENDERERS = {
    "default": _render_default,
    "compact": _render_compact,
    "detailed": _render_detailed,
}


def render_receipt(*, sale_id: int, business_id: int, template: str = "default", width: int | None = None) -> str:
    if template not in RECEIPT_TEMPLATES:
        raise ValidationError(f"unknown receipt template: {template!r}", details={"allowed": list(RECEIPT_TEMPLATES)})
    if width is None:
        width = current_app.config.get("RECEIPT_WIDTH", 40)
    if width < 24:
        raise ValidationError("receipt width must be at least 24 characters")
    return _RENDERERS[template](receipt_data(sale_id=sale_id, business_id=business_id), width)


def mark_receipt_printed(*, sale_id: int, business_id: int) -> Sale:
    """Flag the sale's receipt as printed. Reprints leave the flag set."""
    def _op():
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if sale is None or sale.business_id != business_id:
            raise NotFoundError("sale", sale_id)
        if not sale.receipt_printed:
            sale.receipt_printed = True
            db.session.commit()
            current_app.logger.info("Receipt printed for sale %s", sale.sale_number)
        return sale

    return run_with_retry(_op, label="mark_receipt_printed")
