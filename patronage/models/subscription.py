"""Subscription model.

The central entity. Rows are created PENDING when a checkout session is
issued and are mutated only by the state machine (webhooks) or the
reconciliation sweep. Rows are never deleted; terminal rows stay for
audit and entitlement history.

A partial unique index guarantees at most one non-terminal row per
(subscriber, creator) pair.
"""

import uuid

from patronage.clock import utcnow
from patronage.extensions import db

PENDING = "PENDING"
ACTIVE = "ACTIVE"
PAST_DUE = "PAST_DUE"
CANCELED = "CANCELED"
EXPIRED = "EXPIRED"

STATUSES = (PENDING, ACTIVE, PAST_DUE, CANCELED, EXPIRED)
OPEN_STATUSES = (PENDING, ACTIVE, PAST_DUE)
ENTITLED_STATUSES = (ACTIVE, PAST_DUE)  # also what a tier's subscriber cap counts
TERMINAL_STATUSES = (CANCELED, EXPIRED)

_OPEN_PREDICATE = db.text("status IN ('PENDING', 'ACTIVE', 'PAST_DUE')")


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    subscriber_id = db.Column(db.String(36), nullable=False, index=True)
    creator_id = db.Column(db.String(36), nullable=False, index=True)
    tier_id = db.Column(
        db.String(36), db.ForeignKey("tiers.id"), nullable=False, index=True
    )
    status = db.Column(db.String(20), nullable=False, default=PENDING, index=True)

    # --- Processor references ---
    external_subscription_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # null until the first confirming webhook
    checkout_session_id = db.Column(db.String(255), nullable=True)

    # --- Billing period ---
    current_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    past_due_since = db.Column(db.DateTime(timezone=True), nullable=True)
    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # --- Scheduled cancellation (access runs to period end) ---
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)
    cancel_requested_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Processor timestamp (ms) of the newest applied event.
    last_event_seq = db.Column(db.BigInteger, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        db.Index(
            "uq_subscriptions_open_per_creator",
            "subscriber_id",
            "creator_id",
            unique=True,
            postgresql_where=_OPEN_PREDICATE,
            sqlite_where=_OPEN_PREDICATE,
        ),
    )

    # --- Relationships ---
    tier = db.relationship("Tier", back_populates="subscriptions")

    @property
    def is_open(self):
        return self.status in OPEN_STATUSES

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def to_dict(self):
        def _iso(value):
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "subscriberId": self.subscriber_id,
            "creatorId": self.creator_id,
            "tierId": self.tier_id,
            "status": self.status,
            "externalSubscriptionId": self.external_subscription_id,
            "currentPeriodStart": _iso(self.current_period_start),
            "currentPeriodEnd": _iso(self.current_period_end),
            "pastDueSince": _iso(self.past_due_since),
            "cancelAtPeriodEnd": bool(self.cancel_at_period_end),
        }

    def __repr__(self):
        return f"<Subscription {self.subscriber_id}->{self.creator_id} ({self.status})>"
