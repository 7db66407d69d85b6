"""Gated content model.

Any content item (post, download, ...) with an optional minimum tier.
Owned by the content-serving collaborator; this core only reads it when
evaluating entitlements.
"""

import uuid

from patronage.extensions import db


class GatedContent(db.Model):
    __tablename__ = "gated_content"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    creator_id = db.Column(db.String(36), nullable=False, index=True)
    minimum_tier_id = db.Column(
        db.String(36), db.ForeignKey("tiers.id"), nullable=True
    )  # null = public
    title = db.Column(db.String(500), nullable=True)
    kind = db.Column(db.String(50), nullable=True)  # post | download | ...
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<GatedContent {self.id} min_tier={self.minimum_tier_id}>"
