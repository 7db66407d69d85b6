"""Checkout service: issues hosted checkout sessions for (subscriber, tier).

Preconditions checked here are advisory where concurrency is involved:
the subscriber cap is re-checked atomically when the confirming webhook
arrives, and the partial unique index on subscriptions is what finally
guarantees one open subscription per (subscriber, creator).

Outcomes:
- fresh checkout: a PENDING row is committed together with the processor
  checkout session ID, then the caller redirects to the hosted page
- plan change: the subscriber already holds another tier of this creator,
  so they are sent to the billing portal instead
"""

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError

from patronage.errors import (
    AlreadySubscribed,
    CapReached,
    ProcessorError,
    ProcessorUnavailable,
    TierInactive,
)
from patronage.extensions import db
from patronage.models.subscription import (
    ENTITLED_STATUSES,
    OPEN_STATUSES,
    PENDING,
    Subscription,
)
from patronage.services import stripe_service
from patronage.services.billing_service import has_capacity, log_billing_audit
from patronage.services.customer_service import ensure_customer
from patronage.services.tier_service import get_tier

logger = logging.getLogger(__name__)

CHECKOUT = "checkout"
PLAN_CHANGE = "plan_change"


@dataclass(frozen=True)
class CheckoutResult:
    redirect_url: str
    kind: str
    subscription_id: str

    def to_dict(self):
        return {
            "redirectUrl": self.redirect_url,
            "kind": self.kind,
            "subscriptionId": self.subscription_id,
        }


def find_open_subscription(subscriber_id, creator_id):
    """The (at most one) PENDING / ACTIVE / PAST_DUE row for the pair."""
    return Subscription.query.filter(
        Subscription.subscriber_id == subscriber_id,
        Subscription.creator_id == creator_id,
        Subscription.status.in_(OPEN_STATUSES),
    ).first()


def create_checkout(subscriber_id, tier_id, email=None):
    """Start a checkout (or plan change) for a subscriber.

    Raises TierNotFound, TierInactive, AlreadySubscribed, CapReached, or
    ProcessorUnavailable / ProcessorError. On any processor failure the
    transaction is rolled back: no PENDING row is left behind.
    """
    tier = get_tier(tier_id)
    if not tier.is_active:
        raise TierInactive()

    existing = find_open_subscription(subscriber_id, tier.creator_id)
    if existing is not None and existing.status in ENTITLED_STATUSES:
        if existing.tier_id == tier.id:
            raise AlreadySubscribed()
        return _start_plan_change(existing, tier, email)

    # Advisory only; the authoritative check runs on confirmation.
    if not has_capacity(tier):
        raise CapReached()

    customer_id = ensure_customer(subscriber_id, email=email)

    sub = existing or _claim_pending_row(subscriber_id, tier)
    if sub.status != PENDING:
        # Lost a race to a confirmation for this pair.
        db.session.rollback()
        raise AlreadySubscribed()

    previous_session_id = sub.checkout_session_id
    sub.tier_id = tier.id

    try:
        if previous_session_id:
            _expire_previous_session(previous_session_id)
        session_id, url = stripe_service.create_checkout_session(sub, tier, customer_id)
    except ProcessorError:
        db.session.rollback()
        raise

    sub.checkout_session_id = session_id
    log_billing_audit(sub.id, "checkout.issued", {
        "checkout_session_id": session_id,
        "reissued": previous_session_id is not None,
    }, tier_id=tier.id)
    db.session.commit()

    logger.info(f"Checkout {session_id} issued for subscriber {subscriber_id} on tier {tier.id}")
    return CheckoutResult(redirect_url=url, kind=CHECKOUT, subscription_id=sub.id)


def _claim_pending_row(subscriber_id, tier):
    """Insert the PENDING row; on a unique-index race, re-read the winner's row."""
    sub = Subscription(
        subscriber_id=subscriber_id,
        creator_id=tier.creator_id,
        tier_id=tier.id,
        status=PENDING,
    )
    db.session.add(sub)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        winner = find_open_subscription(subscriber_id, tier.creator_id)
        if winner is None:
            raise
        logger.info(
            f"Concurrent checkout for subscriber {subscriber_id} / creator {tier.creator_id}; "
            f"reusing subscription {winner.id}"
        )
        return winner
    return sub


def _expire_previous_session(session_id):
    """Expire the earlier hosted session so only one can still be paid.

    A session that is already complete or expired makes Stripe reject the
    call; that is fine. An unreachable processor is not.
    """
    try:
        stripe_service.expire_checkout_session(session_id)
    except ProcessorUnavailable:
        raise
    except ProcessorError as e:
        logger.info(f"Previous checkout session {session_id} not expired: {e}")


def _start_plan_change(existing, tier, email):
    """Send an entitled subscriber to the billing portal to switch tiers."""
    if not has_capacity(tier):
        raise CapReached()

    customer_id = ensure_customer(existing.subscriber_id, email=email)
    try:
        # The portal can only switch to a tier that has a Stripe price.
        stripe_service.ensure_tier_price(tier)
        url = stripe_service.create_portal_session(
            customer_id, existing.external_subscription_id
        )
    except ProcessorError:
        db.session.rollback()
        raise

    log_billing_audit(existing.id, "plan_change.requested", {
        "from_tier": existing.tier_id,
        "to_tier": tier.id,
    }, tier_id=tier.id)
    db.session.commit()

    logger.info(f"Plan change for subscription {existing.id}: {existing.tier_id} -> {tier.id}")
    return CheckoutResult(redirect_url=url, kind=PLAN_CHANGE, subscription_id=existing.id)
