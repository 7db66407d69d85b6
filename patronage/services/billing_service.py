"""Billing service: shared DB helpers for the subscription engine.

Responsible for:
- Counting and recomputing a tier's derived subscriber count
- Locking tier rows for the atomic cap check
- Emitting refund intents for the billing collaborator
- Writing billing audit events
"""

import logging

from patronage.extensions import db
from patronage.models.audit import AuditEvent
from patronage.models.refund_intent import RefundIntent
from patronage.models.subscription import ENTITLED_STATUSES, Subscription
from patronage.models.tier import Tier

logger = logging.getLogger(__name__)


def count_entitled(tier_id, exclude_subscription_id=None):
    """Count ACTIVE + PAST_DUE subscriptions on a tier."""
    query = Subscription.query.filter(
        Subscription.tier_id == tier_id,
        Subscription.status.in_(ENTITLED_STATUSES),
    )
    if exclude_subscription_id:
        query = query.filter(Subscription.id != exclude_subscription_id)
    return query.count()


def lock_tier(tier_id):
    """Load a tier under a row lock (SELECT ... FOR UPDATE)."""
    return Tier.query.filter_by(id=tier_id).with_for_update().first()


def has_capacity(tier, exclude_subscription_id=None):
    """True if one more subscriber fits under the tier's cap."""
    if tier.max_subscribers is None:
        return True
    taken = count_entitled(tier.id, exclude_subscription_id=exclude_subscription_id)
    return taken < tier.max_subscribers


def recount_tier(tier):
    """Recompute tier.current_subscribers from subscription rows.

    Must be called inside the transaction that changed them, with the
    tier row locked.
    """
    db.session.flush()
    tier.current_subscribers = count_entitled(tier.id)
    return tier.current_subscribers


def emit_refund_intent(subscription, reason, amount_cents=None, source_event_id=None,
                       external_subscription_id=None):
    """Record a refund intent, at most once per (subscription, reason).

    Uses flush() so the caller controls the commit boundary.
    Returns the new RefundIntent, or None if one already existed.
    """
    existing = RefundIntent.query.filter_by(
        subscription_id=subscription.id, reason=reason
    ).first()
    if existing:
        return None

    intent = RefundIntent(
        subscription_id=subscription.id,
        external_subscription_id=external_subscription_id or subscription.external_subscription_id,
        reason=reason,
        amount_cents=amount_cents,
        source_event_id=source_event_id,
    )
    db.session.add(intent)
    db.session.flush()
    logger.warning(
        f"Refund intent emitted for subscription {subscription.id} ({reason})"
    )
    return intent


def log_billing_audit(subscription_id, action, metadata=None, tier_id=None):
    """Log a billing-related audit event.

    Uses flush() so the audit row commits or rolls back with the change.
    """
    event = AuditEvent(
        subscription_id=subscription_id,
        tier_id=tier_id,
        action=action,
        metadata_=metadata or {},
    )
    db.session.add(event)
    db.session.flush()
