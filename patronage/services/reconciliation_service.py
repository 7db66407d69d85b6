"""Reconciliation service: the background sweep.

The only code allowed to change subscription state without an inbound
webhook. Before expiring anything it re-verifies with the processor, so a
confirmation that is merely delayed is never mistaken for one that was
lost. Each row is reconciled in its own transaction under a row lock; a
processor outage skips the row until the next pass.

- sweep_abandoned_checkouts: PENDING rows older than the checkout TTL;
  a paid checkout whose webhook is still missing after twice the TTL is
  confirmed from the processor's copy of the subscription
- sweep_lapsed_subscriptions: ACTIVE / PAST_DUE rows past their period
  end, and PAST_DUE rows past the grace window; also retries canceling
  processor subscriptions behind unhonored refund intents
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from flask import current_app
from sqlalchemy import and_, or_

from patronage.clock import as_utc, to_millis, utcnow
from patronage.errors import ProcessorError
from patronage.extensions import db
from patronage.models import processed_event as outcomes
from patronage.models.subscription import (
    ACTIVE,
    ENTITLED_STATUSES,
    EXPIRED,
    PAST_DUE,
    PENDING,
    Subscription,
)
from patronage.services import stripe_service
from patronage.services.billing_service import lock_tier, log_billing_audit, recount_tier
from patronage.services.entitlement_service import grace_period, within_grace
from patronage.services.events import SUBSCRIPTION_ACTIVATED, NormalizedEvent
from patronage.services.subscription_service import (
    apply_to_subscription,
    cancel_unhonored_subscriptions,
)

logger = logging.getLogger(__name__)

# Processor statuses that mean the subscription is still being paid for.
LIVE_PROCESSOR_STATUSES = ("active", "trialing")
# Processor statuses that need no cancel call.
ENDED_PROCESSOR_STATUSES = ("canceled", "incomplete_expired")


@dataclass
class SweepReport:
    examined: int = 0
    expired: list = field(default_factory=list)
    confirmed: list = field(default_factory=list)
    rejected: list = field(default_factory=list)
    extended: list = field(default_factory=list)
    deferred: list = field(default_factory=list)
    skipped: list = field(default_factory=list)

    def summary(self):
        return (
            f"examined={self.examined} expired={len(self.expired)} "
            f"confirmed={len(self.confirmed)} rejected={len(self.rejected)} "
            f"extended={len(self.extended)} deferred={len(self.deferred)} "
            f"skipped={len(self.skipped)}"
        )


def _lock(subscription_id):
    return (
        Subscription.query
        .filter_by(id=subscription_id)
        .with_for_update()
        .first()
    )


def _expire(sub, now, reason):
    sub.status = EXPIRED
    sub.ended_at = now
    db.session.flush()
    recount_tier(lock_tier(sub.tier_id))
    log_billing_audit(sub.id, "subscription.expired", {"reason": reason}, tier_id=sub.tier_id)


# ──────────────────────────────────────────────
# Abandoned checkouts
# ──────────────────────────────────────────────

def find_abandoned_checkouts(now=None):
    now = now or utcnow()
    cutoff = now - timedelta(hours=current_app.config["PENDING_CHECKOUT_TTL_HOURS"])
    return (
        Subscription.query
        .filter(Subscription.status == PENDING, Subscription.created_at < cutoff)
        .order_by(Subscription.created_at.asc())
        .all()
    )


def _confirm_from_processor(sub, external_subscription_id, now):
    """Confirm a paid checkout whose webhook never arrived.

    The processor's subscription is replayed through the state machine as
    a SubscriptionActivated event, so the cap re-check and tier counts
    behave exactly as for a delivered webhook.
    Returns "confirmed", "rejected", "expired" or "deferred".
    """
    remote = stripe_service.retrieve_subscription(external_subscription_id)
    if remote["status"] in ENDED_PROCESSOR_STATUSES:
        _expire(sub, now, "checkout_subscription_ended")
        db.session.commit()
        return "expired"
    if remote["status"] not in LIVE_PROCESSOR_STATUSES:
        db.session.rollback()
        return "deferred"

    event = NormalizedEvent(
        event_id=f"reconcile-{sub.id}",
        event_type=SUBSCRIPTION_ACTIVATED,
        raw_type="reconciliation.checkout_confirmed",
        sequence=to_millis(now.timestamp()),
        occurred_at=now,
        subscription_id=sub.id,
        external_subscription_id=external_subscription_id,
        price_id=remote["price_id"],
        period_start=remote["current_period_start"],
        period_end=remote["current_period_end"],
    )
    outcome, _ = apply_to_subscription(event)
    if outcome == outcomes.APPLIED:
        db.session.commit()
        logger.info(f"Confirmed {sub.id} from processor subscription {external_subscription_id}")
        return "confirmed"
    if outcome == outcomes.CAP_REJECTED:
        db.session.commit()
        cancel_unhonored_subscriptions(event.event_id)
        return "rejected"
    db.session.rollback()
    return "deferred"


def _reconcile_pending(subscription_id, now):
    """Returns "expired", "confirmed", "rejected", "deferred" or "skipped"."""
    sub = _lock(subscription_id)
    if sub is None or sub.status != PENDING:
        db.session.rollback()
        return "skipped"

    if sub.checkout_session_id:
        session = stripe_service.retrieve_checkout_session(sub.checkout_session_id)
        if session["status"] == "complete":
            confirm_after = timedelta(hours=2 * current_app.config["PENDING_CHECKOUT_TTL_HOURS"])
            if session["subscription"] and as_utc(sub.created_at) < now - confirm_after:
                return _confirm_from_processor(sub, session["subscription"], now)
            # Paid; the confirming webhook is late, not lost.
            db.session.rollback()
            logger.info(
                f"Checkout {sub.checkout_session_id} for {sub.id} is complete; awaiting webhook"
            )
            return "deferred"
        if session["status"] == "open":
            stripe_service.expire_checkout_session(sub.checkout_session_id)

    _expire(sub, now, "checkout_abandoned")
    db.session.commit()
    return "expired"


def sweep_abandoned_checkouts(now=None, dry_run=False):
    """Expire PENDING subscriptions whose checkout was never completed."""
    now = now or utcnow()
    report = SweepReport()
    candidate_ids = [sub.id for sub in find_abandoned_checkouts(now)]
    report.examined = len(candidate_ids)
    if dry_run:
        report.skipped = candidate_ids
        return report

    for subscription_id in candidate_ids:
        try:
            result = _reconcile_pending(subscription_id, now)
        except ProcessorError as e:
            db.session.rollback()
            logger.warning(f"Skipping abandoned checkout {subscription_id}: {e}")
            result = "skipped"
        getattr(report, result).append(subscription_id)

    logger.info(f"Abandoned checkout sweep: {report.summary()}")
    return report


# ──────────────────────────────────────────────
# Lapsed subscriptions
# ──────────────────────────────────────────────

def find_lapsed_subscriptions(now=None):
    now = now or utcnow()
    grace_cutoff = now - grace_period()
    return (
        Subscription.query
        .filter(
            or_(
                and_(
                    Subscription.status.in_(ENTITLED_STATUSES),
                    Subscription.current_period_end < now,
                ),
                and_(
                    Subscription.status == PAST_DUE,
                    Subscription.past_due_since < grace_cutoff,
                ),
            )
        )
        .order_by(Subscription.current_period_end.asc())
        .all()
    )


def _is_lapsed(sub, now):
    period_end = as_utc(sub.current_period_end)
    if period_end is not None and period_end < now:
        return True
    return sub.status == PAST_DUE and not within_grace(sub.past_due_since, now)


def _reconcile_lapsed(subscription_id, now):
    """Returns "expired", "extended" or "skipped"."""
    sub = _lock(subscription_id)
    if sub is None or sub.status not in ENTITLED_STATUSES or not _is_lapsed(sub, now):
        db.session.rollback()
        return "skipped"

    if sub.external_subscription_id:
        remote = stripe_service.retrieve_subscription(sub.external_subscription_id)
        remote_end = remote["current_period_end"]

        if remote["status"] in LIVE_PROCESSOR_STATUSES and remote_end and remote_end > now:
            # Renewal happened; its webhook has not arrived yet.
            previous = sub.status
            sub.status = ACTIVE
            sub.current_period_start = remote["current_period_start"] or sub.current_period_start
            sub.current_period_end = remote_end
            sub.past_due_since = None
            sub.last_event_seq = max(sub.last_event_seq or 0, to_millis(now.timestamp()))
            if previous != ACTIVE:
                recount_tier(lock_tier(sub.tier_id))
            log_billing_audit(sub.id, "subscription.reconciled", {
                "from": previous,
                "current_period_end": remote_end.isoformat(),
            }, tier_id=sub.tier_id)
            db.session.commit()
            return "extended"

        if remote["status"] not in ENDED_PROCESSOR_STATUSES:
            stripe_service.cancel_subscription(sub.external_subscription_id)

    period_end = as_utc(sub.current_period_end)
    reason = "period_ended" if period_end is not None and period_end < now else "grace_elapsed"
    _expire(sub, now, reason)
    db.session.commit()
    return "expired"


def sweep_lapsed_subscriptions(now=None, dry_run=False):
    """Expire subscriptions whose period (or grace window) ran out without renewal."""
    now = now or utcnow()
    report = SweepReport()
    candidate_ids = [sub.id for sub in find_lapsed_subscriptions(now)]
    report.examined = len(candidate_ids)
    if dry_run:
        report.skipped = candidate_ids
        return report

    for subscription_id in candidate_ids:
        try:
            result = _reconcile_lapsed(subscription_id, now)
        except ProcessorError as e:
            db.session.rollback()
            logger.warning(f"Skipping lapsed subscription {subscription_id}: {e}")
            result = "skipped"
        getattr(report, result).append(subscription_id)

    logger.info(f"Lapsed subscription sweep: {report.summary()}")
    cancel_unhonored_subscriptions()
    return report
