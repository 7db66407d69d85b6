"""Audit event model.

Logs every subscription state change and tier administration action,
written in the same transaction as the change itself.
"""

import uuid

from patronage.extensions import db


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    subscription_id = db.Column(db.String(36), nullable=True, index=True)
    tier_id = db.Column(db.String(36), nullable=True)
    action = db.Column(db.String(255), nullable=False)  # e.g. "subscription.activated"
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid clashing with Model.metadata
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<AuditEvent {self.action}>"
