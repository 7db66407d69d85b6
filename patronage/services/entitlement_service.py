"""Entitlement service: can a subscriber read a piece of gated content?

Runs on every gated-content read, so it is a single read-only query: no
writes, no row locks, last-committed state only. A payment that fails
while a read is in flight may grant that one read; that is accepted.

Access rules:
- content without a minimum tier is public
- otherwise the subscriber needs an ACTIVE subscription to the content's
  creator, or a PAST_DUE one still inside the grace window, whose tier
  rank is >= the rank of the content's minimum tier
"""

from datetime import timedelta

from flask import current_app

from patronage.clock import as_utc, utcnow
from patronage.errors import ContentNotFound
from patronage.extensions import db
from patronage.models.content import GatedContent
from patronage.models.subscription import ENTITLED_STATUSES, PAST_DUE, Subscription
from patronage.models.tier import Tier


def grace_period():
    return timedelta(days=current_app.config["PAST_DUE_GRACE_DAYS"])


def within_grace(past_due_since, now=None):
    """True while a PAST_DUE subscription still keeps access."""
    if past_due_since is None:
        return True
    now = now or utcnow()
    return now < as_utc(past_due_since) + grace_period()


def has_access(subscriber_id, content, now=None):
    """Evaluate access for any object exposing creator_id and minimum_tier_id."""
    if content.minimum_tier_id is None:
        return True
    if not subscriber_id:
        return False

    required_rank = (
        db.session.query(Tier.rank)
        .filter(Tier.id == content.minimum_tier_id)
        .scalar()
    )
    if required_rank is None:
        return False

    row = (
        db.session.query(Subscription.status, Subscription.past_due_since, Tier.rank)
        .join(Tier, Subscription.tier_id == Tier.id)
        .filter(
            Subscription.subscriber_id == subscriber_id,
            Subscription.creator_id == content.creator_id,
            Subscription.status.in_(ENTITLED_STATUSES),
        )
        .first()
    )
    if row is None:
        return False

    status, past_due_since, rank = row
    if status == PAST_DUE and not within_grace(past_due_since, now):
        return False
    return rank >= required_rank


def has_access_to_content(subscriber_id, content_id, now=None):
    """Look up content by ID and evaluate access. Raises ContentNotFound."""
    content = db.session.get(GatedContent, content_id) if content_id else None
    if content is None:
        raise ContentNotFound()
    return has_access(subscriber_id, content, now=now)
