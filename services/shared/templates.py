"""
Email bodies.

Each builder returns (subject, text). The HTML rendition is the same text,
escaped and wrapped in paragraphs: no branded templating.
"""
from __future__ import annotations

import html

from shared.events import CartLine, CheckoutDetails, OrderTotals, ShippingAddress


def render_html(text: str) -> str:
    paragraphs = [p for p in text.strip().split("\n\n") if p.strip()]
    body = "".join(
        f"<p>{html.escape(p).replace(chr(10), '<br/>')}</p>" for p in paragraphs
    )
    return f'<div style="font-family:Arial,sans-serif;line-height:1.45">{body}</div>'


def format_address(street: str, postal: str, city: str, state: str, country: str) -> str:
    tail = " ".join(p for p in (postal, city, state, country) if p)
    return "\n".join(p for p in (street, tail) if p)


def _greeting(name: str, fallback: str = "") -> str:
    name = name or fallback
    return f"Hello {name}," if name else "Hello,"


def order_confirmed(
    store_name: str,
    store_url: str,
    details: CheckoutDetails,
    lines: list[CartLine],
    totals: OrderTotals,
) -> tuple[str, str]:
    items = "\n".join(f"- {line.resource_id} x {line.quantity}" for line in lines) or "-"
    address = _address_of(details.shipping) or "-"
    text = (
        f"{_greeting(details.customer_name)}\n\n"
        f"Your order is confirmed.\n\n"
        f"Order ID: {details.session_id or '-'}\n"
        f"Payment: {details.payment_intent_id or '-'}\n\n"
        f"Items:\n{items}\n\n"
        f"Total: {totals.amount_total:.2f} {totals.currency}\n\n"
        f"Shipping address:\n{address}\n\n"
        f"If you have any questions, just reply to this email.\n\n"
        f"{store_url or store_name}"
    )
    return f"{store_name}: Order confirmed", text


def payment_received(store_name: str, customer_name: str, order_label: str, amount_line: str) -> tuple[str, str]:
    text = (
        f"{_greeting(customer_name, 'friend')}\n\n"
        f"Thank you for your order {order_label}!\n"
        f"We've received your payment and your order is now in processing.\n\n"
        + (f"{amount_line}\n\n" if amount_line else "")
        + "We'll email you again as soon as your order is shipped.\n\n"
        "If you have any questions, just reply to this email."
    )
    return f"{store_name}: Thanks for your order", text


def order_shipped(
    store_name: str,
    store_url: str,
    customer_name: str,
    order_label: str,
    tracking_number: str,
    address: str,
) -> tuple[str, str]:
    text = (
        f"{_greeting(customer_name)}\n\n"
        f"Good news: your order {order_label} has been shipped.\n\n"
        f"Tracking number: {tracking_number}\n\n"
        f"Shipping address:\n{address or '-'}\n\n"
        f"If you have any questions, just reply to this email.\n\n"
        f"{store_url or store_name}"
    )
    return f"{store_name}: Your order has been shipped", text


def _address_of(shipping: ShippingAddress | None) -> str:
    if shipping is None:
        return ""
    return format_address(shipping.street, shipping.postal_code, shipping.city, shipping.state, shipping.country)
