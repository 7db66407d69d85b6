"""Subscription service: applies verified events to subscription rows.

apply_to_subscription runs inside the webhook ingestor's transaction and
never commits itself. The subscription row is the unit of mutual
exclusion: it is loaded with SELECT ... FOR UPDATE before the pure state
machine runs, and the tier row is locked (always after the subscription
row) whenever the subscriber cap has to be re-checked. Events for
different subscriptions never wait on each other.

cancel_subscription and cancel_unhonored_subscriptions commit their own
transactions.
"""

import logging
from dataclasses import replace

from patronage.clock import utcnow
from patronage.errors import (
    NotSubscriptionOwner,
    ProcessorError,
    SubscriptionNotCancelable,
    SubscriptionNotFound,
)
from patronage.extensions import db
from patronage.models import processed_event as outcomes
from patronage.models import refund_intent as refund_reasons
from patronage.models.refund_intent import RefundIntent
from patronage.models.subscription import CANCELED, ENTITLED_STATUSES, Subscription
from patronage.models.tier import MONTHLY, Tier
from patronage.services import stripe_service
from patronage.services.billing_service import (
    emit_refund_intent,
    has_capacity,
    lock_tier,
    log_billing_audit,
    recount_tier,
)
from patronage.services.events import CHECKOUT_COMPLETED, SUBSCRIPTION_RENEWED
from patronage.services.state_machine import STALE, Discarded, SubscriptionState, apply_event

logger = logging.getLogger(__name__)

_STATUS_ACTIONS = {
    "ACTIVE": "subscription.activated",
    "PAST_DUE": "subscription.past_due",
    "CANCELED": "subscription.canceled",
}

# Refund reasons whose processor subscription must stop billing.
_CANCEL_ON_REFUND = (
    refund_reasons.CAP_EXCEEDED,
    refund_reasons.CONFIRMED_AFTER_TERMINAL,
    refund_reasons.DUPLICATE_CONFIRMATION,
)


def get_subscription(subscription_id):
    return db.session.get(Subscription, subscription_id)


def lock_subscription_for(event):
    """Find and lock the subscription an event refers to.

    Matches on the local ID carried in metadata first, then on the
    processor subscription ID. Returns None if nothing matches.
    """
    sub = None
    if event.subscription_id:
        sub = (
            Subscription.query
            .filter_by(id=event.subscription_id)
            .with_for_update()
            .first()
        )
    if sub is None and event.external_subscription_id:
        sub = (
            Subscription.query
            .filter_by(external_subscription_id=event.external_subscription_id)
            .with_for_update()
            .first()
        )
    return sub


def resolve_event_tier(event):
    """Name the tier through the event's Stripe price when we know that price.

    Falls back to the tier ID carried in the price's metadata, which
    also covers prices that were retired when a tier was re-priced.
    """
    if event.price_id:
        tier = Tier.query.filter_by(stripe_price_id=event.price_id).first()
        if tier is not None and tier.id != event.tier_id:
            return replace(event, tier_id=tier.id)
    return event


def apply_to_subscription(event):
    """Apply a canonical event to its subscription row.

    Returns (outcome, subscription_or_None). The outcome is one of the
    ProcessedEvent outcome constants.
    """
    event = resolve_event_tier(event)
    sub = lock_subscription_for(event)
    if sub is None:
        logger.warning(
            f"{event.event_type} ({event.event_id}): no subscription for "
            f"local={event.subscription_id} external={event.external_subscription_id}"
        )
        return outcomes.UNMATCHED, None

    result = apply_event(SubscriptionState.from_record(sub), event, sub.tier.interval)

    if isinstance(result, Discarded):
        _handle_discarded(sub, event, result)
        if result.reason == STALE:
            return outcomes.DISCARDED_STALE, sub
        return outcomes.DISCARDED_ILLEGAL, sub

    if result.confirms:
        tier = lock_tier(result.tier_change or sub.tier_id)
        if tier is None or tier.creator_id != sub.creator_id:
            tier = lock_tier(sub.tier_id)
        if not has_capacity(tier, exclude_subscription_id=sub.id):
            _reject_over_cap(sub, tier, event)
            return outcomes.CAP_REJECTED, sub
        sub.tier_id = tier.id
    elif result.tier_change:
        _change_tier(sub, result.tier_change, event)

    _write_state(sub, result.state)
    if result.state.status not in ENTITLED_STATUSES:
        sub.ended_at = event.occurred_at
    elif event.cancel_at_period_end is not None:
        sub.cancel_at_period_end = event.cancel_at_period_end

    if result.confirms or result.status_changed:
        recount_tier(lock_tier(sub.tier_id))

    action = _STATUS_ACTIONS.get(result.state.status)
    if event.event_type == SUBSCRIPTION_RENEWED:
        action = "subscription.renewed"
    log_billing_audit(sub.id, action or "subscription.updated", {
        "event_id": event.event_id,
        "event_type": event.event_type,
        "from": result.previous.status,
        "to": result.state.status,
    }, tier_id=sub.tier_id)

    logger.info(
        f"Subscription {sub.id}: {result.previous.status} -> {result.state.status} "
        f"via {event.event_type} ({event.event_id})"
    )
    return outcomes.APPLIED, sub


def _write_state(sub, state):
    sub.status = state.status
    sub.current_period_start = state.current_period_start
    sub.current_period_end = state.current_period_end
    sub.past_due_since = state.past_due_since
    sub.last_event_seq = state.last_event_seq
    if state.external_subscription_id:
        sub.external_subscription_id = state.external_subscription_id


def _handle_discarded(sub, event, result):
    """Log a discarded event; emit a refund intent if money was taken for nothing.

    A checkout confirmation for a subscription that is already terminal,
    or for a second processor subscription on the same row, means the
    subscriber paid for a claim that will never be honored.
    """
    if result.reason == STALE:
        logger.info(f"Stale {event.event_type} ({event.event_id}) for {sub.id}: {result.detail}")
    else:
        logger.warning(f"Illegal {event.event_type} ({event.event_id}) for {sub.id}: {result.detail}")

    if event.event_type != CHECKOUT_COMPLETED:
        return
    # Same processor subscription as the one already on the row: same payment.
    if event.external_subscription_id and event.external_subscription_id == sub.external_subscription_id:
        return

    reason = None
    if sub.is_terminal:
        reason = refund_reasons.CONFIRMED_AFTER_TERMINAL
    elif sub.external_subscription_id and event.external_subscription_id:
        reason = refund_reasons.DUPLICATE_CONFIRMATION

    if reason:
        emit_refund_intent(
            sub,
            reason,
            amount_cents=event.amount_cents,
            source_event_id=event.event_id,
            external_subscription_id=event.external_subscription_id,
        )
        log_billing_audit(sub.id, "subscription.refund_requested", {
            "event_id": event.event_id,
            "reason": reason,
            "external_subscription_id": event.external_subscription_id,
        }, tier_id=sub.tier_id)


def _reject_over_cap(sub, tier, event):
    """The confirmation lost the cap race: cancel the new claim, never an existing one."""
    sub.status = CANCELED
    sub.ended_at = event.occurred_at or utcnow()
    sub.last_event_seq = event.sequence
    if event.external_subscription_id and not sub.external_subscription_id:
        sub.external_subscription_id = event.external_subscription_id
    db.session.flush()

    emit_refund_intent(
        sub,
        refund_reasons.CAP_EXCEEDED,
        amount_cents=event.amount_cents or tier.price_cents,
        source_event_id=event.event_id,
        external_subscription_id=event.external_subscription_id,
    )
    log_billing_audit(sub.id, "subscription.cap_rejected", {
        "event_id": event.event_id,
        "max_subscribers": tier.max_subscribers,
    }, tier_id=tier.id)

    logger.warning(
        f"Tier {tier.id} cap ({tier.max_subscribers}) reached: "
        f"subscription {sub.id} canceled on confirmation ({event.event_id})"
    )


def _change_tier(sub, new_tier_id, event):
    """Move an entitled subscription to another tier of the same creator."""
    # Lock both tiers in id order so concurrent opposite changes cannot deadlock.
    locked = {tier_id: lock_tier(tier_id) for tier_id in sorted({sub.tier_id, new_tier_id})}
    old_tier = locked[sub.tier_id]
    new_tier = locked[new_tier_id]

    if new_tier is None or new_tier.creator_id != sub.creator_id:
        logger.warning(
            f"Ignoring tier change for {sub.id} to {new_tier_id}: not a tier of creator {sub.creator_id}"
        )
        return

    if not has_capacity(new_tier, exclude_subscription_id=sub.id):
        emit_refund_intent(
            sub,
            refund_reasons.PLAN_CHANGE_CAP_EXCEEDED,
            amount_cents=event.amount_cents,
            source_event_id=event.event_id,
        )
        logger.warning(
            f"Plan change for {sub.id} to tier {new_tier.id} exceeds its cap; keeping tier {sub.tier_id}"
        )
        return

    sub.tier_id = new_tier.id
    recount_tier(new_tier)
    recount_tier(old_tier)
    log_billing_audit(sub.id, "subscription.tier_changed", {
        "event_id": event.event_id,
        "from_tier": old_tier.id,
        "to_tier": new_tier.id,
    }, tier_id=new_tier.id)


def cancel_unhonored_subscriptions(source_event_id=None):
    """Stop billing for processor subscriptions behind unhonored refund intents.

    Called after the webhook transaction commits, with the event that
    produced the intents, and by the lapsed-subscription sweep with no
    event to retry earlier failures. A processor failure leaves
    processor_canceled_at unset.

    Returns the number of processor subscriptions canceled.
    """
    query = RefundIntent.query.filter(
        RefundIntent.reason.in_(_CANCEL_ON_REFUND),
        RefundIntent.processor_canceled_at.is_(None),
        RefundIntent.external_subscription_id.isnot(None),
    )
    if source_event_id:
        query = query.filter(RefundIntent.source_event_id == source_event_id)

    canceled = 0
    for intent in query.all():
        try:
            stripe_service.cancel_subscription(intent.external_subscription_id)
        except ProcessorError as e:
            logger.warning(
                f"Could not cancel Stripe subscription {intent.external_subscription_id} "
                f"for refund intent {intent.id}: {e}"
            )
            continue
        intent.processor_canceled_at = utcnow()
        db.session.commit()
        canceled += 1
    return canceled


# ──────────────────────────────────────────────
# Subscriber actions
# ──────────────────────────────────────────────

def cancel_subscription(subscription_id, subscriber_id):
    """Cancel at period end: renewal stops, access runs until the period ends.

    The status does not change here. The processor ends the subscription
    at period end and its customer.subscription.deleted webhook makes the
    row CANCELED.

    Raises SubscriptionNotFound, NotSubscriptionOwner,
    SubscriptionNotCancelable, or ProcessorUnavailable / ProcessorError.
    """
    sub = (
        Subscription.query
        .filter_by(id=subscription_id)
        .with_for_update()
        .first()
    )
    if sub is None:
        raise SubscriptionNotFound()
    if sub.subscriber_id != subscriber_id:
        db.session.rollback()
        raise NotSubscriptionOwner()
    if sub.status not in ENTITLED_STATUSES:
        db.session.rollback()
        raise SubscriptionNotCancelable()
    if sub.cancel_at_period_end:
        db.session.rollback()
        return sub

    if sub.external_subscription_id:
        try:
            stripe_service.schedule_cancellation(sub.external_subscription_id)
        except ProcessorError:
            db.session.rollback()
            raise

    sub.cancel_at_period_end = True
    sub.cancel_requested_at = utcnow()
    log_billing_audit(sub.id, "subscription.cancel_requested", {
        "current_period_end": sub.current_period_end.isoformat() if sub.current_period_end else None,
    }, tier_id=sub.tier_id)
    db.session.commit()

    logger.info(f"Subscription {sub.id} set to cancel at period end by {subscriber_id}")
    return sub


def list_subscriber_subscriptions(subscriber_id):
    """All of a subscriber's subscriptions, newest first, any status."""
    return (
        Subscription.query
        .filter_by(subscriber_id=subscriber_id)
        .order_by(Subscription.created_at.desc())
        .all()
    )


def _monthly_cents(tier):
    if tier.interval == MONTHLY:
        return tier.price_cents
    return tier.price_cents / 12


def creator_subscribers(creator_id):
    """A creator's entitled subscriptions plus headline stats.

    Returns (subscriptions, stats) where stats holds totalSubscribers and
    monthlyRevenueCents (yearly tiers spread over twelve months).
    """
    subscriptions = (
        Subscription.query
        .filter(
            Subscription.creator_id == creator_id,
            Subscription.status.in_(ENTITLED_STATUSES),
        )
        .order_by(Subscription.created_at.desc())
        .all()
    )
    revenue = sum(_monthly_cents(sub.tier) for sub in subscriptions)
    stats = {
        "totalSubscribers": len(subscriptions),
        "monthlyRevenueCents": int(round(revenue)),
    }
    return subscriptions, stats
