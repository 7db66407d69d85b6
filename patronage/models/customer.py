"""External customer model.

Links a platform user to the payment processor's customer ID. At most one
row per user; rows are never deleted and are reused across tiers and
creators.
"""

import uuid

from patronage.extensions import db


class ExternalCustomer(db.Model):
    __tablename__ = "external_customers"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(db.String(36), unique=True, nullable=False)
    processor_customer_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "cus_1Abc..."
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<ExternalCustomer user={self.user_id} processor={self.processor_customer_id}>"
