"""Webhook envelope parsing and normalization.

Turns the processor's native event envelope into a NormalizedEvent with
one of the canonical event types below. Nothing here touches the
database, so normalization can be tested in isolation.

Stripe type                                   -> canonical type
    checkout.session.completed                -> CheckoutCompleted
    customer.subscription.created             -> SubscriptionActivated
    customer.subscription.updated (active)    -> SubscriptionActivated
    customer.subscription.updated (past_due)  -> SubscriptionPastDue
    customer.subscription.updated (canceled)  -> SubscriptionCanceled
    customer.subscription.deleted             -> SubscriptionCanceled
    invoice.paid / invoice.payment_succeeded  -> SubscriptionRenewed
    invoice.payment_failed                    -> PaymentFailed
    anything else                             -> Unknown
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from patronage.clock import from_timestamp, to_millis
from patronage.errors import MalformedPayload

CHECKOUT_COMPLETED = "CheckoutCompleted"
SUBSCRIPTION_ACTIVATED = "SubscriptionActivated"
SUBSCRIPTION_RENEWED = "SubscriptionRenewed"
SUBSCRIPTION_PAST_DUE = "SubscriptionPastDue"
SUBSCRIPTION_CANCELED = "SubscriptionCanceled"
PAYMENT_FAILED = "PaymentFailed"
UNKNOWN = "Unknown"

CANONICAL_TYPES = (
    CHECKOUT_COMPLETED,
    SUBSCRIPTION_ACTIVATED,
    SUBSCRIPTION_RENEWED,
    SUBSCRIPTION_PAST_DUE,
    SUBSCRIPTION_CANCELED,
    PAYMENT_FAILED,
)

_SUBSCRIPTION_STATUS_TYPES = {
    "active": SUBSCRIPTION_ACTIVATED,
    "trialing": SUBSCRIPTION_ACTIVATED,
    "past_due": SUBSCRIPTION_PAST_DUE,
    "unpaid": SUBSCRIPTION_PAST_DUE,
    "canceled": SUBSCRIPTION_CANCELED,
}


@dataclass(frozen=True)
class NormalizedEvent:
    event_id: str
    event_type: str
    raw_type: str
    sequence: int  # processor timestamp in ms
    occurred_at: datetime
    subscription_id: Optional[str] = None  # local row id from metadata
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    tier_id: Optional[str] = None
    price_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    amount_cents: Optional[int] = None
    cancel_at_period_end: Optional[bool] = None

    @property
    def is_known(self):
        return self.event_type in CANONICAL_TYPES


def parse_envelope(payload):
    """Decode the raw body and check the envelope shape.

    Raises MalformedPayload if the body is not a JSON object with a string
    id, a string type, a numeric created timestamp and a data.object.
    """
    try:
        envelope = json.loads(payload)
    except (TypeError, ValueError) as e:
        raise MalformedPayload("Body is not valid JSON") from e

    if not isinstance(envelope, dict):
        raise MalformedPayload("Envelope must be a JSON object")

    event_id = envelope.get("id")
    event_type = envelope.get("type")
    created = envelope.get("created")
    if not isinstance(event_id, str) or not event_id:
        raise MalformedPayload("Missing event id")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedPayload("Missing event type")
    if isinstance(created, bool) or not isinstance(created, (int, float)):
        raise MalformedPayload("Missing event timestamp")

    data = envelope.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise MalformedPayload("Missing data.object")

    return envelope


def _ref_id(value):
    """Stripe references are either an ID string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _metadata(obj):
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def _price_ref(item):
    """Return (price_id, tier_id) for a subscription item.

    The tier comes from the price's own metadata; subscription metadata
    keeps the tier chosen at checkout and is not rewritten by the
    billing portal on a plan change.
    """
    if not isinstance(item, dict):
        return None, None
    price = item.get("price")
    if isinstance(price, dict):
        return price.get("id"), _metadata(price).get("tier_id")
    return price, None


def _subscription_period(obj):
    start = obj.get("current_period_start")
    end = obj.get("current_period_end")
    if not end:
        items = (obj.get("items") or {}).get("data") or []
        if items:
            start = start or items[0].get("current_period_start")
            end = items[0].get("current_period_end")
    return from_timestamp(start), from_timestamp(end)


def _invoice_subscription_details(obj):
    """Invoice subscription details live at the top level on older API
    versions and under parent.subscription_details on newer ones."""
    details = obj.get("subscription_details")
    if not isinstance(details, dict):
        parent = obj.get("parent") or {}
        details = parent.get("subscription_details") if isinstance(parent, dict) else None
    return details if isinstance(details, dict) else {}


def _invoice_period(obj):
    """Billing period of the first non-proration line."""
    lines = (obj.get("lines") or {}).get("data") or []
    regular = [line for line in lines if isinstance(line, dict) and not line.get("proration")]
    if regular:
        period = regular[0].get("period") or {}
        return from_timestamp(period.get("start")), from_timestamp(period.get("end"))
    return None, None


def _from_checkout_session(obj):
    metadata = _metadata(obj)
    return {
        "subscription_id": metadata.get("subscription_id") or obj.get("client_reference_id"),
        "external_subscription_id": _ref_id(obj.get("subscription")),
        "external_customer_id": _ref_id(obj.get("customer")),
        "tier_id": metadata.get("tier_id"),
        "amount_cents": obj.get("amount_total"),
    }


def _from_subscription(obj):
    metadata = _metadata(obj)
    period_start, period_end = _subscription_period(obj)
    items = (obj.get("items") or {}).get("data") or []
    price_id, price_tier_id = _price_ref(items[0] if items else None)
    cancel_at_period_end = obj.get("cancel_at_period_end")
    return {
        "subscription_id": metadata.get("subscription_id"),
        "external_subscription_id": obj.get("id"),
        "external_customer_id": _ref_id(obj.get("customer")),
        "tier_id": price_tier_id,
        "price_id": price_id,
        "period_start": period_start,
        "period_end": period_end,
        "cancel_at_period_end": cancel_at_period_end if isinstance(cancel_at_period_end, bool) else None,
    }


def _from_invoice(obj, amount_field):
    details = _invoice_subscription_details(obj)
    metadata = details.get("metadata") if isinstance(details.get("metadata"), dict) else {}
    period_start, period_end = _invoice_period(obj)
    return {
        "subscription_id": metadata.get("subscription_id"),
        "external_subscription_id": _ref_id(obj.get("subscription") or details.get("subscription")),
        "external_customer_id": _ref_id(obj.get("customer")),
        "period_start": period_start,
        "period_end": period_end,
        "amount_cents": obj.get(amount_field),
    }


def _classify(raw_type, obj):
    """Return (canonical_type, fields) for a processor event."""
    if raw_type == "checkout.session.completed":
        return CHECKOUT_COMPLETED, _from_checkout_session(obj)
    if raw_type == "customer.subscription.created":
        return SUBSCRIPTION_ACTIVATED, _from_subscription(obj)
    if raw_type == "customer.subscription.updated":
        canonical = _SUBSCRIPTION_STATUS_TYPES.get(obj.get("status"), UNKNOWN)
        return canonical, _from_subscription(obj)
    if raw_type == "customer.subscription.deleted":
        return SUBSCRIPTION_CANCELED, _from_subscription(obj)
    if raw_type in ("invoice.paid", "invoice.payment_succeeded"):
        return SUBSCRIPTION_RENEWED, _from_invoice(obj, "amount_paid")
    if raw_type == "invoice.payment_failed":
        return PAYMENT_FAILED, _from_invoice(obj, "amount_due")
    return UNKNOWN, {}


def normalize(envelope):
    """Build a NormalizedEvent from a parsed envelope."""
    raw_type = envelope["type"]
    obj = envelope["data"]["object"]
    canonical, fields = _classify(raw_type, obj)

    return NormalizedEvent(
        event_id=envelope["id"],
        event_type=canonical,
        raw_type=raw_type,
        sequence=to_millis(envelope["created"]),
        occurred_at=from_timestamp(envelope["created"]),
        **fields,
    )
