"""Stripe service: every call to the payment processor goes through here.

Responsible for:
- Creating Stripe Customers (idempotent per platform user)
- Creating one persistent Product / Price per tier
- Creating hosted Checkout Sessions and Customer Portal Sessions
- Verifying webhook signatures
- Scheduling cancellation at period end
- Retrieving / expiring / canceling processor objects for reconciliation

Stripe SDK exceptions never leave this module: they are translated into
ProcessorUnavailable (retryable) or ProcessorError (not retryable).
"""

import logging
from contextlib import contextmanager
from datetime import timedelta

import stripe
from flask import current_app

from patronage.clock import from_timestamp, utcnow
from patronage.errors import ProcessorError, ProcessorUnavailable, SignatureInvalid
from patronage.models.tier import YEARLY

logger = logging.getLogger(__name__)

# Stripe caps hosted checkout sessions at 24h.
MAX_CHECKOUT_SESSION_HOURS = 24


def _configure():
    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]


@contextmanager
def _processor_call(action):
    """Translate Stripe SDK failures into billing errors."""
    try:
        yield
    except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
        logger.warning(f"Stripe unavailable during {action}: {e}")
        raise ProcessorUnavailable() from e
    except stripe.StripeError as e:
        logger.error(f"Stripe rejected {action}: {e}")
        raise ProcessorError(getattr(e, "user_message", None) or str(e)) from e


def _field(obj, name, default=None):
    """Read a field from a Stripe object or a plain dict."""
    try:
        value = obj[name]
    except KeyError:
        return default
    except TypeError:
        return getattr(obj, name, default)
    return default if value is None else value


def _extract_period(sub_data):
    """Extract (current_period_start, current_period_end) from a Stripe subscription.

    In newer Stripe API versions the period moved from the subscription top
    level to items.data[0]. This helper checks both locations.

    Returns timezone-aware datetimes (or None).
    """
    start = _field(sub_data, "current_period_start")
    end = _field(sub_data, "current_period_end")

    if not end:
        items = _field(sub_data, "items")
        data = _field(items, "data") if items else None
        if data:
            start = start or _field(data[0], "current_period_start")
            end = _field(data[0], "current_period_end")

    return from_timestamp(start), from_timestamp(end)


# ──────────────────────────────────────────────
# Customers
# ──────────────────────────────────────────────

def create_customer(user_id, email=None, name=None):
    """Create a Stripe Customer for a platform user.

    The idempotency key is derived from the user ID, so two concurrent
    first-time checkouts for the same user resolve to the same Stripe
    customer instead of creating a duplicate.

    Returns the Stripe customer ID.
    """
    _configure()
    params = {"metadata": {"user_id": str(user_id)}}
    if email:
        params["email"] = email
    if name:
        params["name"] = name

    with _processor_call("customer.create"):
        customer = stripe.Customer.create(
            idempotency_key=f"customer-{user_id}",
            **params,
        )

    logger.info(f"Created Stripe customer {customer.id} for user {user_id}")
    return customer.id


# ──────────────────────────────────────────────
# Checkout & Portal Sessions
# ──────────────────────────────────────────────

def _checkout_urls():
    app_base_url = current_app.config["APP_BASE_URL"]
    success_url = current_app.config.get("CHECKOUT_SUCCESS_URL") or (
        f"{app_base_url}/subscriptions/success?session_id={{CHECKOUT_SESSION_ID}}"
    )
    cancel_url = current_app.config.get("CHECKOUT_CANCEL_URL") or (
        f"{app_base_url}/subscriptions/cancel"
    )
    return success_url, cancel_url


def ensure_tier_price(tier):
    """Return the tier's Stripe Price ID, creating Product and Price on first use.

    One persistent Product per tier and one Price per (amount, interval),
    both tagged with the tier ID, so the billing portal can switch a
    subscription between tiers and every later subscription event names
    the tier through its price. Idempotency keys make a retry after a
    rolled-back checkout resolve to the same processor objects.

    Sets stripe_product_id / stripe_price_id on the tier; the caller commits.
    """
    if tier.stripe_price_id:
        return tier.stripe_price_id

    _configure()
    metadata = {"tier_id": tier.id, "creator_id": tier.creator_id}

    if not tier.stripe_product_id:
        with _processor_call("product.create"):
            product = stripe.Product.create(
                idempotency_key=f"product-{tier.id}",
                name=tier.name,
                metadata=metadata,
            )
        tier.stripe_product_id = product.id
        logger.info(f"Created Stripe product {product.id} for tier {tier.id}")

    interval = "year" if tier.interval == YEARLY else "month"
    with _processor_call("price.create"):
        price = stripe.Price.create(
            idempotency_key=f"price-{tier.id}-{tier.price_cents}-{interval}",
            product=tier.stripe_product_id,
            currency=current_app.config["BILLING_CURRENCY"],
            unit_amount=tier.price_cents,
            recurring={"interval": interval},
            metadata=metadata,
        )
    tier.stripe_price_id = price.id
    logger.info(f"Created Stripe price {price.id} for tier {tier.id}")
    return price.id


def create_checkout_session(subscription, tier, customer_id):
    """Create a Stripe Checkout Session for one (subscriber, tier) pair.

    The local subscription ID travels in both the session metadata and the
    subscription metadata, so every later webhook can be matched back to
    the PENDING row even before the Stripe subscription ID is known.

    Returns (session_id, session_url).
    """
    _configure()
    success_url, cancel_url = _checkout_urls()
    ttl_hours = min(
        current_app.config["PENDING_CHECKOUT_TTL_HOURS"], MAX_CHECKOUT_SESSION_HOURS
    )
    price_id = ensure_tier_price(tier)

    metadata = {
        "subscription_id": subscription.id,
        "subscriber_id": subscription.subscriber_id,
        "creator_id": subscription.creator_id,
        "tier_id": tier.id,
    }

    with _processor_call("checkout.session.create"):
        session = stripe.checkout.Session.create(
            mode="subscription",
            customer=customer_id,
            client_reference_id=subscription.id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            expires_at=int((utcnow() + timedelta(hours=ttl_hours)).timestamp()),
            metadata=metadata,
            subscription_data={"metadata": metadata},
        )

    return session.id, session.url


def create_portal_session(customer_id, external_subscription_id=None):
    """Create a Stripe Customer Portal Session.

    When the processor subscription is known, the portal opens straight
    on its plan-update flow.

    Returns the portal session URL.
    """
    _configure()
    app_base_url = current_app.config["APP_BASE_URL"]
    return_url = current_app.config.get("BILLING_PORTAL_RETURN_URL") or (
        f"{app_base_url}/subscriptions"
    )

    params = {"customer": customer_id, "return_url": return_url}
    if external_subscription_id:
        params["flow_data"] = {
            "type": "subscription_update",
            "subscription_update": {"subscription": external_subscription_id},
        }

    with _processor_call("billing_portal.session.create"):
        session = stripe.billing_portal.Session.create(**params)

    return session.url


def retrieve_checkout_session(session_id):
    """Return {"status", "subscription"} for a hosted checkout session."""
    _configure()
    with _processor_call("checkout.session.retrieve"):
        session = stripe.checkout.Session.retrieve(session_id)

    subscription = _field(session, "subscription")
    if subscription is not None and not isinstance(subscription, str):
        subscription = _field(subscription, "id")
    return {
        "status": _field(session, "status"),
        "subscription": subscription,
    }


def expire_checkout_session(session_id):
    """Expire an open checkout session so it can no longer be paid."""
    _configure()
    with _processor_call("checkout.session.expire"):
        stripe.checkout.Session.expire(session_id)
    logger.info(f"Expired Stripe checkout session {session_id}")


# ──────────────────────────────────────────────
# Subscriptions
# ──────────────────────────────────────────────

def _first_item_price_id(sub_data):
    items = _field(sub_data, "items")
    data = _field(items, "data") if items else None
    if not data:
        return None
    price = _field(data[0], "price")
    if price is not None and not isinstance(price, str):
        price = _field(price, "id")
    return price


def retrieve_subscription(external_subscription_id):
    """Return {"status", "current_period_start", "current_period_end", "price_id"}."""
    _configure()
    with _processor_call("subscription.retrieve"):
        sub = stripe.Subscription.retrieve(external_subscription_id)

    period_start, period_end = _extract_period(sub)
    return {
        "status": _field(sub, "status"),
        "current_period_start": period_start,
        "current_period_end": period_end,
        "price_id": _first_item_price_id(sub),
    }


def schedule_cancellation(external_subscription_id):
    """Stop renewal; the subscription stays paid up to its period end."""
    _configure()
    with _processor_call("subscription.modify"):
        stripe.Subscription.modify(external_subscription_id, cancel_at_period_end=True)
    logger.info(f"Scheduled cancellation of Stripe subscription {external_subscription_id}")


def cancel_subscription(external_subscription_id):
    """Cancel a processor subscription immediately."""
    _configure()
    with _processor_call("subscription.cancel"):
        stripe.Subscription.cancel(external_subscription_id)
    logger.info(f"Canceled Stripe subscription {external_subscription_id}")


# ──────────────────────────────────────────────
# Webhooks
# ──────────────────────────────────────────────

def verify_webhook_signature(payload, sig_header):
    """Verify the X-Signature header against the raw request body.

    The header uses Stripe's "t=<timestamp>,v1=<hmac>" scheme: an
    HMAC-SHA256 of "<timestamp>.<body>" keyed with the shared secret,
    rejected when older than WEBHOOK_TOLERANCE_SECONDS.

    Raises SignatureInvalid on any mismatch.
    """
    if not sig_header:
        raise SignatureInvalid("Missing signature")

    secret = current_app.config["WEBHOOK_SIGNING_SECRET"]
    tolerance = current_app.config["WEBHOOK_TOLERANCE_SECONDS"]
    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise SignatureInvalid("Invalid signature") from e
