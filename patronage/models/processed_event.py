"""Processed event model (idempotency table).

Every verified webhook event is recorded by its processor event ID in the
same transaction as the state change it caused. Before processing any
event, the ingestor checks this table. If the event_id already exists,
it returns 200 immediately - replays are no-ops regardless of payload.
"""

import uuid

from patronage.clock import utcnow
from patronage.extensions import db

# -- Outcomes --
APPLIED = "applied"
DISCARDED_STALE = "discarded_stale"
DISCARDED_ILLEGAL = "discarded_illegal"
CAP_REJECTED = "cap_rejected"
UNMATCHED = "unmatched"
IGNORED = "ignored"  # unknown event type, forward-compatible no-op


class ProcessedEvent(db.Model):
    __tablename__ = "processed_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    external_event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "evt_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # processor type, e.g. "invoice.payment_failed"
    canonical_type = db.Column(db.String(64), nullable=True)
    subscription_id = db.Column(db.String(36), nullable=True, index=True)
    outcome = db.Column(db.String(32), nullable=False)
    received_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self):
        return f"<ProcessedEvent {self.external_event_id} ({self.outcome})>"
