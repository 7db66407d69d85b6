"""Refund intent model (outbox for the billing collaborator).

Written when a confirmed payment cannot be honored: the confirmation lost
a subscriber-cap race, arrived for a subscription that is already terminal,
or a plan change would overflow the target tier. This core never issues
refunds itself; it only records the intent for a downstream consumer.
For every reason except a plan-change overflow the processor subscription
is also canceled, and processor_canceled_at records when that succeeded.
"""

import uuid

from patronage.clock import utcnow
from patronage.extensions import db

# -- Reasons --
CAP_EXCEEDED = "cap_exceeded"
CONFIRMED_AFTER_TERMINAL = "confirmed_after_terminal"
PLAN_CHANGE_CAP_EXCEEDED = "plan_change_cap_exceeded"
DUPLICATE_CONFIRMATION = "duplicate_confirmation"


class RefundIntent(db.Model):
    __tablename__ = "refund_intents"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    subscription_id = db.Column(
        db.String(36), db.ForeignKey("subscriptions.id"), nullable=False
    )
    external_subscription_id = db.Column(db.String(255), nullable=True)
    reason = db.Column(db.String(64), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=True)
    source_event_id = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="pending")
    # Set once the unhonored processor subscription has been canceled.
    processor_canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        db.UniqueConstraint(
            "subscription_id", "reason", name="uq_refund_intent_subscription_reason"
        ),
    )

    def __repr__(self):
        return f"<RefundIntent sub={self.subscription_id} ({self.reason})>"
