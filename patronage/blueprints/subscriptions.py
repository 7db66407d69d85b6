"""Subscriptions blueprint: checkout and entitlement endpoints.

Routes:
- POST /subscriptions/checkout     - start a hosted checkout (or plan change)
- GET  /subscriptions/<id>         - current state of one subscription
- POST /subscriptions/<id>/cancel  - cancel at period end
- GET  /subscribers/<id>/subscriptions - a subscriber's subscriptions
- GET  /creators/<id>/subscribers  - a creator's subscribers plus stats
- GET  /entitlements               - hasAccess(subscriberId, contentId)
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from patronage.errors import (
    BillingError,
    CheckoutRejected,
    NotFound,
    ProcessorError,
    SubscriptionNotFound,
)
from patronage.extensions import limiter
from patronage.services.checkout_service import create_checkout
from patronage.services.entitlement_service import has_access_to_content
from patronage.services.subscription_service import (
    cancel_subscription,
    creator_subscribers,
    get_subscription,
    list_subscriber_subscriptions,
)

logger = logging.getLogger(__name__)

subscriptions_bp = Blueprint("subscriptions", __name__)

CHECKOUT_FAILED_MESSAGE = "Something went wrong starting checkout. Please try again."


def _bad_request(message):
    return jsonify({"error": "invalid_request", "message": message}), 400


def _json_object():
    """The request body as a dict, or None if it is valid JSON of another shape."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    return data if isinstance(data, dict) else None


def _with_tier(sub):
    data = sub.to_dict()
    tier = sub.tier
    data["tier"] = {
        "id": tier.id,
        "name": tier.name,
        "priceCents": tier.price_cents,
        "interval": tier.interval,
        "perks": list(tier.perks or []),
    }
    return data


# ──────────────────────────────────────────────
# POST /subscriptions/checkout
# ──────────────────────────────────────────────

@subscriptions_bp.route("/subscriptions/checkout", methods=["POST"])
@limiter.limit(lambda: current_app.config["CHECKOUT_RATE_LIMIT"])
def checkout():
    """Create a checkout session and return the processor redirect URL.

    Body: {"subscriberId": ..., "tierId": ..., "email": optional}
    """
    data = _json_object()
    if data is None:
        return _bad_request("Request body must be a JSON object")
    subscriber_id = data.get("subscriberId")
    tier_id = data.get("tierId")

    if not subscriber_id or not tier_id:
        return _bad_request("subscriberId and tierId are required")

    try:
        result = create_checkout(subscriber_id, tier_id, email=data.get("email"))
    except (NotFound, CheckoutRejected) as e:
        return jsonify(e.to_dict()), e.status_code
    except ProcessorError as e:
        logger.error(f"Checkout error for subscriber {subscriber_id}: {e}", exc_info=True)
        return jsonify({
            "error": e.code,
            "message": CHECKOUT_FAILED_MESSAGE,
            "retryable": e.retryable,
        }), e.status_code

    return jsonify(result.to_dict()), 200


# ──────────────────────────────────────────────
# GET /subscriptions/<id>
# ──────────────────────────────────────────────

@subscriptions_bp.route("/subscriptions/<subscription_id>")
def subscription_detail(subscription_id):
    sub = get_subscription(subscription_id)
    if sub is None:
        err = SubscriptionNotFound()
        return jsonify(err.to_dict()), err.status_code
    return jsonify(sub.to_dict()), 200



# ──────────────────────────────────────────────
# POST /subscriptions/<id>/cancel
# ──────────────────────────────────────────────

@subscriptions_bp.route("/subscriptions/<subscription_id>/cancel", methods=["POST"])
def cancel(subscription_id):
    """Cancel at period end; access continues until currentPeriodEnd.

    Body: {"subscriberId": ...}
    """
    data = _json_object()
    if data is None:
        return _bad_request("Request body must be a JSON object")
    subscriber_id = data.get("subscriberId")
    if not subscriber_id:
        return _bad_request("subscriberId is required")

    try:
        sub = cancel_subscription(subscription_id, subscriber_id)
    except ProcessorError as e:
        logger.error(f"Cancel error for subscription {subscription_id}: {e}", exc_info=True)
        return jsonify({**e.to_dict(), "retryable": e.retryable}), e.status_code
    except BillingError as e:
        return jsonify(e.to_dict()), e.status_code

    return jsonify(sub.to_dict()), 200


# ──────────────────────────────────────────────
# Listings
# ──────────────────────────────────────────────

@subscriptions_bp.route("/subscribers/<subscriber_id>/subscriptions")
def subscriber_subscriptions(subscriber_id):
    subs = list_subscriber_subscriptions(subscriber_id)
    return jsonify({"subscriptions": [_with_tier(s) for s in subs]}), 200


@subscriptions_bp.route("/creators/<creator_id>/subscribers")
def creator_subscriber_list(creator_id):
    """A creator's ACTIVE and PAST_DUE subscribers with headline stats."""
    subs, stats = creator_subscribers(creator_id)
    return jsonify({
        "subscriptions": [_with_tier(s) for s in subs],
        "stats": stats,
    }), 200


# ──────────────────────────────────────────────
# GET /entitlements?subscriberId=...&contentId=...
# ──────────────────────────────────────────────

@subscriptions_bp.route("/entitlements")
def entitlement():
    """Synchronous access check for the content-serving collaborator."""
    subscriber_id = request.args.get("subscriberId")
    content_id = request.args.get("contentId")
    if not content_id:
        return _bad_request("contentId is required")

    try:
        allowed = has_access_to_content(subscriber_id, content_id)
    except NotFound as e:
        return jsonify(e.to_dict()), e.status_code

    return jsonify({"hasAccess": allowed}), 200
