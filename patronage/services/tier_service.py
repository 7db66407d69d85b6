"""Tier service: creator-managed membership tier definitions.

Handles:
- create: validate tier data and persist it for a creator
- update: edit presentation fields; price/interval lock once referenced
- deactivate: soft-remove a tier (blocks new checkouts only)
- get / list: lookups for checkout and the creator dashboard
"""

import logging

from patronage.errors import InvalidTierSpec, TierLocked, TierNotFound
from patronage.extensions import db
from patronage.models.subscription import Subscription
from patronage.models.tier import INTERVALS, MONTHLY, Tier
from patronage.services.billing_service import count_entitled, log_billing_audit

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "name",
    "description",
    "price_cents",
    "interval",
    "perks",
    "rank",
    "max_subscribers",
)
LOCKED_FIELDS = ("price_cents", "interval")


def _is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)


def _validate(data, partial=False):
    """Validate tier fields, returning a cleaned dict.

    With partial=True only the keys present in data are checked.
    Raises InvalidTierSpec naming the first offending field.
    """
    cleaned = {}

    def present(key):
        return key in data or not partial

    if present("name"):
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise InvalidTierSpec("name is required")
        cleaned["name"] = name.strip()

    if "description" in data:
        description = data.get("description")
        if description is not None and not isinstance(description, str):
            raise InvalidTierSpec("description must be a string")
        cleaned["description"] = description

    if present("price_cents"):
        price = data.get("price_cents")
        if not _is_int(price) or price <= 0:
            raise InvalidTierSpec("price_cents must be a positive integer")
        cleaned["price_cents"] = price

    if present("interval"):
        interval = data.get("interval", MONTHLY if not partial else None)
        if interval not in INTERVALS:
            raise InvalidTierSpec(f"interval must be one of {', '.join(INTERVALS)}")
        cleaned["interval"] = interval

    if "perks" in data:
        perks = data.get("perks") or []
        if not isinstance(perks, list) or not all(isinstance(p, str) for p in perks):
            raise InvalidTierSpec("perks must be a list of strings")
        cleaned["perks"] = perks

    if "rank" in data:
        rank = data.get("rank")
        if not _is_int(rank) or rank < 0:
            raise InvalidTierSpec("rank must be a non-negative integer")
        cleaned["rank"] = rank

    if "max_subscribers" in data:
        cap = data.get("max_subscribers")
        if cap is not None and (not _is_int(cap) or cap < 1):
            raise InvalidTierSpec("max_subscribers must be a positive integer or null")
        cleaned["max_subscribers"] = cap

    return cleaned


def create_tier(creator_id, data):
    """Create a tier for a creator.

    Args:
        creator_id: platform user ID of the creator
        data: dict with name, price_cents, interval and optional
              description, perks, rank, max_subscribers

    Returns:
        Tier: the committed tier
    """
    if not creator_id:
        raise InvalidTierSpec("creator_id is required")

    fields = _validate(data)
    fields.setdefault("perks", [])
    fields.setdefault("rank", 0)

    tier = Tier(creator_id=creator_id, **fields)
    db.session.add(tier)
    db.session.flush()

    log_billing_audit(None, "tier.created", {
        "creator_id": creator_id,
        "price_cents": tier.price_cents,
        "interval": tier.interval,
        "rank": tier.rank,
    }, tier_id=tier.id)
    db.session.commit()

    logger.info(f"Created tier {tier.id} ({tier.name}) for creator {creator_id}")
    return tier


def get_tier(tier_id):
    """Return the tier or raise TierNotFound."""
    tier = db.session.get(Tier, tier_id) if tier_id else None
    if tier is None:
        raise TierNotFound()
    return tier


def list_tiers(creator_id, include_inactive=False):
    """A creator's tiers ordered by rank."""
    query = Tier.query.filter_by(creator_id=creator_id)
    if not include_inactive:
        query = query.filter_by(is_active=True)
    return query.order_by(Tier.rank.asc(), Tier.created_at.asc()).all()


def is_referenced(tier_id):
    """True once any subscription row (in any status) points at the tier."""
    return (
        db.session.query(Subscription.id)
        .filter(Subscription.tier_id == tier_id)
        .first()
        is not None
    )


def update_tier(tier_id, changes):
    """Edit a tier.

    Price and interval are immutable once a subscription references the
    tier; changing price means creating a new tier. The cap cannot drop
    below the number of subscribers currently holding the tier.
    """
    tier = get_tier(tier_id)
    fields = _validate({k: v for k, v in changes.items() if k in EDITABLE_FIELDS}, partial=True)

    locked = [
        name for name in LOCKED_FIELDS
        if name in fields and fields[name] != getattr(tier, name)
    ]
    if locked and is_referenced(tier.id):
        raise TierLocked()

    cap = fields.get("max_subscribers")
    if cap is not None and cap < count_entitled(tier.id):
        raise InvalidTierSpec("max_subscribers cannot be below the current subscriber count")

    for name, value in fields.items():
        setattr(tier, name, value)
    if locked:
        # Stripe prices are immutable; the next checkout creates a new one.
        tier.stripe_price_id = None

    log_billing_audit(None, "tier.updated", {"fields": sorted(fields)}, tier_id=tier.id)
    db.session.commit()
    return tier


def deactivate_tier(tier_id):
    """Soft-deactivate a tier.

    Allowed even with active subscribers: it only blocks new checkouts,
    existing subscriptions ride out their period.
    """
    tier = get_tier(tier_id)
    if not tier.is_active:
        return tier

    tier.is_active = False
    riding_out = count_entitled(tier.id)
    log_billing_audit(None, "tier.deactivated", {
        "active_subscribers": riding_out,
    }, tier_id=tier.id)
    db.session.commit()

    logger.info(f"Deactivated tier {tier.id}; {riding_out} subscription(s) ride out their period")
    return tier
