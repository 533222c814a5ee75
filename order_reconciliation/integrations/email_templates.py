"""
Notification email templates.

Each template renders an order context into subject, plain-text and HTML
bodies. Context keys: order_number, customer_name, customer_email,
line_items (product_id, name, quantity, unit_price), total_display,
currency_symbol, shipping_address, payment_reference.
"""
from html import escape
from typing import Any, Dict, List, Mapping

BANK_DETAILS = (
    "Account name: Vortex PCs Ltd\n"
    "Sort code: 04-00-04\n"
    "Account number: 12345678"
)


def _item_lines(context: Mapping[str, Any]) -> List[str]:
    symbol = context.get("currency_symbol", "")
    lines = []
    for item in context.get("line_items", []):
        lines.append(
            f"{item['quantity']} x {item['name']} @ {symbol}{float(item['unit_price']):.2f}"
        )
    return lines


def _address_lines(context: Mapping[str, Any]) -> List[str]:
    address = context.get("shipping_address") or {}
    fields = ("name", "line1", "line2", "city", "county", "postcode", "country")
    return [str(address[field]) for field in fields if address.get(field)]


def _html(paragraphs: List[str], items: List[str]) -> str:
    body = "".join(f"<p>{escape(p)}</p>" for p in paragraphs)
    if items:
        body += "<ul>" + "".join(f"<li>{escape(i)}</li>" for i in items) + "</ul>"
    return f"<html><body>{body}</body></html>"


class CustomerConfirmationTemplate:
    template = "customer_confirmation"
    recipient_role = "customer"

    @staticmethod
    def render(context: Mapping[str, Any]) -> Dict[str, str]:
        name = context.get("customer_name") or "there"
        items = _item_lines(context)
        paragraphs = [
            f"Hi {name},",
            f"Thank you for your order {context['order_number']}. "
            "Your payment has been received and your build is now in the queue.",
            f"Order total: {context['total_display']}",
        ]
        address = _address_lines(context)
        if address:
            paragraphs.append("Shipping to: " + ", ".join(address))
        return {
            "subject": f"Order Confirmation - {context['order_number']}",
            "text": "\n\n".join(paragraphs) + "\n\n" + "\n".join(items),
            "html": _html(paragraphs, items),
        }


class CustomerAwaitingTransferTemplate:
    template = "customer_awaiting_transfer"
    recipient_role = "customer"

    @staticmethod
    def render(context: Mapping[str, Any]) -> Dict[str, str]:
        name = context.get("customer_name") or "there"
        reference = context.get("payment_reference") or context["order_number"]
        items = _item_lines(context)
        paragraphs = [
            f"Hi {name},",
            f"We have reserved order {context['order_number']} for you. "
            f"Please transfer {context['total_display']} using the reference {reference}.",
            BANK_DETAILS,
            "We will start your build as soon as the payment arrives.",
        ]
        return {
            "subject": f"Order Confirmation - {context['order_number']} (awaiting bank transfer)",
            "text": "\n\n".join(paragraphs) + "\n\n" + "\n".join(items),
            "html": _html(paragraphs, items),
        }


class CustomerPaymentProcessingTemplate:
    template = "customer_payment_processing"
    recipient_role = "customer"

    @staticmethod
    def render(context: Mapping[str, Any]) -> Dict[str, str]:
        name = context.get("customer_name") or "there"
        items = _item_lines(context)
        paragraphs = [
            f"Hi {name},",
            f"Thank you for your order {context['order_number']}. "
            "Your payment provider is still processing the payment; "
            "you do not need to do anything.",
            f"Order total: {context['total_display']}",
            "We will start your build once the payment clears.",
        ]
        return {
            "subject": f"Order Received - {context['order_number']} (payment processing)",
            "text": "\n\n".join(paragraphs) + "\n\n" + "\n".join(items),
            "html": _html(paragraphs, items),
        }


class BusinessNewOrderTemplate:
    template = "business_new_order"
    recipient_role = "business"

    @staticmethod
    def render(context: Mapping[str, Any]) -> Dict[str, str]:
        items = _item_lines(context)
        paragraphs = [
            f"New paid order {context['order_number']}.",
            f"Customer: {context.get('customer_name') or '-'} "
            f"<{context.get('customer_email') or 'no email'}>",
            f"Total: {context['total_display']}",
            "Ship to: " + (", ".join(_address_lines(context)) or "-"),
        ]
        return {
            "subject": f"New Order: {context['order_number']} - {context['total_display']}",
            "text": "\n".join(paragraphs) + "\n\n" + "\n".join(items),
            "html": _html(paragraphs, items),
        }


class BusinessAwaitingTransferTemplate:
    template = "business_awaiting_transfer"
    recipient_role = "business"

    @staticmethod
    def render(context: Mapping[str, Any]) -> Dict[str, str]:
        items = _item_lines(context)
        paragraphs = [
            f"Order {context['order_number']} is awaiting a bank transfer.",
            f"Reference: {context.get('payment_reference') or '-'}",
            f"Customer: {context.get('customer_name') or '-'} "
            f"<{context.get('customer_email') or 'no email'}>",
            f"Expected amount: {context['total_display']}",
        ]
        return {
            "subject": (
                f"New Order: {context['order_number']} - {context['total_display']} "
                "(bank transfer pending)"
            ),
            "text": "\n".join(paragraphs) + "\n\n" + "\n".join(items),
            "html": _html(paragraphs, items),
        }


class BusinessPaymentPendingTemplate:
    template = "business_payment_pending"
    recipient_role = "business"

    @staticmethod
    def render(context: Mapping[str, Any]) -> Dict[str, str]:
        items = _item_lines(context)
        paragraphs = [
            f"Order {context['order_number']} was placed but the payment is still pending "
            "at the provider. Hold the build until it clears.",
            f"Payment reference: {context.get('payment_reference') or '-'}",
            f"Customer: {context.get('customer_name') or '-'} "
            f"<{context.get('customer_email') or 'no email'}>",
            f"Total: {context['total_display']}",
        ]
        return {
            "subject": (
                f"New Order: {context['order_number']} - {context['total_display']} "
                "(payment pending)"
            ),
            "text": "\n".join(paragraphs) + "\n\n" + "\n".join(items),
            "html": _html(paragraphs, items),
        }


TEMPLATE_REGISTRY: Dict[str, type] = {
    CustomerConfirmationTemplate.template: CustomerConfirmationTemplate,
    CustomerAwaitingTransferTemplate.template: CustomerAwaitingTransferTemplate,
    BusinessNewOrderTemplate.template: BusinessNewOrderTemplate,
    CustomerPaymentProcessingTemplate.template: CustomerPaymentProcessingTemplate,
    BusinessAwaitingTransferTemplate.template: BusinessAwaitingTransferTemplate,
    BusinessPaymentPendingTemplate.template: BusinessPaymentPendingTemplate,
}


def get_template(name: str) -> type:
    """Look up a template class by name."""
    template_cls = TEMPLATE_REGISTRY.get(name)
    if template_cls is None:
        raise ValueError(f"No template registered under name: {name}")
    return template_cls
