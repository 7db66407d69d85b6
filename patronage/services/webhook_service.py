"""Webhook service: verified, deduplicated ingestion of processor events.

Order of operations for every delivery:

1. Verify the X-Signature header. Failure -> SignatureInvalid, nothing logged.
2. Parse the envelope. Failure -> MalformedPayload, nothing logged.
3. Look the event ID up in processed_events. Present -> accepted, no-op.
4. Claim the event ID (insert + flush), normalize, and hand the event to
   the subscription state machine.
5. Record the outcome and commit once, so the processed_events row and
   the state change land together or not at all.
6. After the commit, cancel any processor subscription the event left
   behind a refund intent, so it stops billing.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from patronage.extensions import db
from patronage.models import processed_event as outcomes
from patronage.models.processed_event import ProcessedEvent
from patronage.services.events import normalize, parse_envelope
from patronage.services.stripe_service import verify_webhook_signature
from patronage.services.subscription_service import (
    apply_to_subscription,
    cancel_unhonored_subscriptions,
)

logger = logging.getLogger(__name__)

_RECEIVED = "received"  # placeholder outcome, never committed


@dataclass(frozen=True)
class IngestResult:
    event_id: str
    outcome: str
    duplicate: bool = False
    subscription_id: Optional[str] = None


def _already_processed(event_id):
    existing = ProcessedEvent.query.filter_by(external_event_id=event_id).first()
    if existing is None:
        return None
    return IngestResult(
        event_id=event_id,
        outcome=existing.outcome,
        duplicate=True,
        subscription_id=existing.subscription_id,
    )


def ingest(payload, sig_header):
    """Verify, deduplicate and apply one webhook delivery.

    Returns an IngestResult for every accepted delivery (processed,
    discarded or duplicate). Raises SignatureInvalid / MalformedPayload
    for deliveries rejected at the boundary.
    """
    verify_webhook_signature(payload, sig_header)
    event = normalize(parse_envelope(payload))

    # --- Idempotency check ---
    duplicate = _already_processed(event.event_id)
    if duplicate:
        logger.info(f"Duplicate webhook event {event.event_id}, skipping")
        return duplicate

    # --- Claim the event id; a concurrent delivery of the same id fails here ---
    record = ProcessedEvent(
        external_event_id=event.event_id,
        event_type=event.raw_type,
        canonical_type=event.event_type,
        outcome=_RECEIVED,
    )
    db.session.add(record)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        logger.info(f"Webhook event {event.event_id} claimed by a concurrent delivery")
        duplicate = _already_processed(event.event_id)
        return duplicate or IngestResult(event.event_id, _RECEIVED, duplicate=True)

    try:
        subscription = None
        if event.is_known:
            outcome, subscription = apply_to_subscription(event)
        else:
            outcome = outcomes.IGNORED
            logger.info(f"Unhandled webhook event type {event.raw_type} ({event.event_id})")

        record.outcome = outcome
        record.subscription_id = subscription.id if subscription else None
        db.session.commit()
    except Exception as e:
        logger.error(f"Error handling {event.raw_type} ({event.event_id}): {e}", exc_info=True)
        db.session.rollback()
        raise

    if outcome in (outcomes.CAP_REJECTED, outcomes.DISCARDED_ILLEGAL, outcomes.DISCARDED_STALE):
        cancel_unhonored_subscriptions(event.event_id)

    return IngestResult(
        event_id=event.event_id,
        outcome=outcome,
        subscription_id=record.subscription_id,
    )
