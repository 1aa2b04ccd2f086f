"""
services/notification/templates.py
Message templates keyed by template id.

Customer/staff templates receive the full booking view; the
professional-attribution templates only ever see the limited view
(first name + last initial, address, estimate).
"""

from shared.models.models import RecipientClass, TriggerType

PROFESSIONAL_ATTRIBUTION_TEMPLATE = "professional-attribution"
PROFESSIONAL_ATTRIBUTION_WHATSAPP_TEMPLATE = "professional-attribution-whatsapp"

TEMPLATES = {
    # ── Customer ─────────────────────────────────────────────
    "booking-confirmation": {
        "email_subject": "Booking confirmed – {reference}",
        "email_body": (
            "Hello {client_name},\n\nYour booking {reference} for {service_type} on "
            "{service_date} at {address} is confirmed. Your documents are attached."
        ),
        "sms": "Booking {reference} confirmed for {service_date}. Details sent to your email.",
    },
    "payment-confirmation": {
        "email_subject": "Payment received – {reference}",
        "email_body": (
            "Hello {client_name},\n\nWe received your payment of {total_amount} {currency} "
            "for booking {reference}. Your invoice is attached."
        ),
        "sms": "Payment of {total_amount} {currency} received for booking {reference}. Thank you!",
    },
    "booking-cancellation": {
        "email_subject": "Booking cancelled – {reference}",
        "email_body": (
            "Hello {client_name},\n\nYour booking {reference} scheduled for {service_date} "
            "has been cancelled."
        ),
        "sms": "Booking {reference} has been cancelled.",
    },
    "service-started": {
        "email_subject": "Your service has started – {reference}",
        "email_body": "Hello {client_name},\n\nYour {service_type} service ({reference}) has started.",
        "sms": "Your service for booking {reference} has started.",
    },

    # ── Internal staff ───────────────────────────────────────
    "internal-booking-confirmed": {
        "email_subject": "[Booking] {reference} confirmed – {client_name}",
        "email_body": (
            "Booking {reference} confirmed.\nClient: {client_name} <{client_email}> {client_phone}\n"
            "Service: {service_type} on {service_date}\nAddress: {address}\nTotal: {total_amount} {currency}"
        ),
    },
    "internal-payment-completed": {
        "email_subject": "[Accounting] Payment {reference} – {total_amount} {currency}",
        "email_body": (
            "Payment completed for booking {reference}.\nClient: {client_name} <{client_email}>\n"
            "Total: {total_amount} {currency}\nInvoice and receipt attached."
        ),
    },
    "internal-booking-cancelled": {
        "email_subject": "[Booking] {reference} cancelled",
        "email_body": "Booking {reference} ({client_name}, {service_date}) was cancelled.",
    },
    "internal-service-started": {
        "email_subject": "[Operations] Service started – {reference}",
        "email_body": "Service for booking {reference} started. Address: {address}",
    },

    # ── Professionals ────────────────────────────────────────
    PROFESSIONAL_ATTRIBUTION_TEMPLATE: {
        "email_subject": "New mission available – {service_type} in {city}",
        "email_body": (
            "Hello {professional_name},\n\nA {service_type} mission is available "
            "{distance_km} km from you.\nClient: {client_display_name}\nAddress: {address}\n"
            "Date: {service_date}\nEstimated payout: {estimated_amount} {currency}\n\n"
            "Accept: {accept_url}\nDecline: {decline_url}"
        ),
    },
    PROFESSIONAL_ATTRIBUTION_WHATSAPP_TEMPLATE: {
        "whatsapp": (
            "New {service_type} mission in {city} on {service_date} "
            "({distance_km} km, ~{estimated_amount} {currency}). Accept: {accept_url}"
        ),
    },
}

CUSTOMER_TEMPLATE_BY_TRIGGER = {
    TriggerType.BOOKING_CONFIRMED: "booking-confirmation",
    TriggerType.PAYMENT_COMPLETED: "payment-confirmation",
    TriggerType.BOOKING_CANCELLED: "booking-cancellation",
    TriggerType.SERVICE_STARTED: "service-started",
}

STAFF_TEMPLATE_BY_TRIGGER = {
    TriggerType.BOOKING_CONFIRMED: "internal-booking-confirmed",
    TriggerType.PAYMENT_COMPLETED: "internal-payment-completed",
    TriggerType.BOOKING_CANCELLED: "internal-booking-cancelled",
    TriggerType.SERVICE_STARTED: "internal-service-started",
}


def template_for(trigger: TriggerType, recipient_class: RecipientClass) -> str:
    if recipient_class == RecipientClass.CUSTOMER:
        return CUSTOMER_TEMPLATE_BY_TRIGGER[trigger]
    if recipient_class == RecipientClass.STAFF:
        return STAFF_TEMPLATE_BY_TRIGGER[trigger]
    return PROFESSIONAL_ATTRIBUTION_TEMPLATE


def _render(template: str, **kwargs) -> str:
    """Simple string template renderer; unknown placeholders are left as-is."""
    for key, value in kwargs.items():
        template = template.replace(f"{{{key}}}", "" if value is None else str(value))
    return template


def render(template_id: str, part: str, variables: dict) -> str:
    template = TEMPLATES.get(template_id, {}).get(part)
    if template is None:
        raise KeyError(f"Template '{template_id}' has no '{part}' part")
    return _render(template, **variables)
