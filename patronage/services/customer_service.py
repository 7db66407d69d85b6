"""Customer service: platform user -> processor customer mapping.

ensure_customer() is idempotent and safe under concurrent first-time
calls: the external_customers.user_id unique constraint decides the race,
and the loser re-reads the winner's row.
"""

import logging

from sqlalchemy.exc import IntegrityError

from patronage.extensions import db
from patronage.models.customer import ExternalCustomer
from patronage.services import stripe_service

logger = logging.getLogger(__name__)


def find_customer(user_id):
    return ExternalCustomer.query.filter_by(user_id=user_id).first()


def ensure_customer(user_id, email=None, name=None):
    """Return the processor customer ID for a user, creating it on first use.

    The mapping row is committed only after the processor has confirmed
    the customer. Raises ProcessorUnavailable / ProcessorError if the
    processor call fails; nothing is written in that case.
    """
    existing = find_customer(user_id)
    if existing:
        return existing.processor_customer_id

    processor_customer_id = stripe_service.create_customer(user_id, email=email, name=name)

    db.session.add(ExternalCustomer(
        user_id=user_id,
        processor_customer_id=processor_customer_id,
    ))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        winner = find_customer(user_id)
        if winner is None:
            raise
        logger.info(f"Concurrent customer creation for user {user_id}; using existing mapping")
        return winner.processor_customer_id

    return processor_customer_id
