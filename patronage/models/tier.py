"""Membership tier model.

A tier belongs to exactly one creator. `rank` is the creator-configured
ordinal used by entitlement checks; it is never inferred from price.
`current_subscribers` is derived: it is recomputed from subscription rows
inside the row-locked transaction that changes them, never hand-edited.
"""

import uuid

from patronage.extensions import db

MONTHLY = "MONTHLY"
YEARLY = "YEARLY"
INTERVALS = (MONTHLY, YEARLY)


class Tier(db.Model):
    __tablename__ = "tiers"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    creator_id = db.Column(db.String(36), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    price_cents = db.Column(db.Integer, nullable=False)  # minor currency units
    interval = db.Column(db.String(20), nullable=False, default=MONTHLY)
    perks = db.Column(db.JSON, default=list)
    rank = db.Column(db.Integer, nullable=False, default=0)
    max_subscribers = db.Column(db.Integer, nullable=True)  # null = uncapped
    current_subscribers = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    # --- Processor catalog (created on first checkout) ---
    stripe_product_id = db.Column(db.String(255), nullable=True)
    stripe_price_id = db.Column(db.String(255), unique=True, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.CheckConstraint("price_cents > 0", name="ck_tiers_price_positive"),
        db.CheckConstraint(
            "max_subscribers IS NULL OR max_subscribers >= 1", name="ck_tiers_cap_positive"
        ),
    )

    # --- Relationships ---
    subscriptions = db.relationship(
        "Subscription", back_populates="tier", lazy="dynamic"
    )

    @property
    def has_cap(self):
        return self.max_subscribers is not None

    def to_dict(self):
        return {
            "id": self.id,
            "creatorId": self.creator_id,
            "name": self.name,
            "description": self.description,
            "priceCents": self.price_cents,
            "interval": self.interval,
            "perks": list(self.perks or []),
            "rank": self.rank,
            "maxSubscribers": self.max_subscribers,
            "currentSubscribers": self.current_subscribers,
            "isActive": self.is_active,
        }

    def __repr__(self):
        return f"<Tier {self.name} rank={self.rank} ({self.price_cents}/{self.interval})>"
