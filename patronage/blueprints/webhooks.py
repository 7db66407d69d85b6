"""Webhooks blueprint: /webhooks/payments

Receives payment processor events. Raw body is required for signature
verification.

Response codes tell the processor whether to retry:
    200 - processed, discarded, or duplicate (do not retry)
    400 - malformed payload
    401 - signature mismatch (retried)
    500 - unexpected failure, nothing committed (retried)
"""

import logging

from flask import Blueprint, jsonify, request

from patronage.errors import MalformedPayload, SignatureInvalid
from patronage.extensions import limiter
from patronage.services.webhook_service import ingest

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")

SIGNATURE_HEADER = "X-Signature"


@webhooks_bp.route("/payments", methods=["POST"])
@limiter.exempt
def payment_webhook():
    """Receive and process a payment processor webhook event.

    1. Get raw body (required for signature verification)
    2. Hand it to ingest() with the X-Signature header
    3. Return 200 for anything accepted, including duplicates
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get(SIGNATURE_HEADER)

    try:
        result = ingest(payload, sig_header)
    except SignatureInvalid as e:
        logger.warning(f"Webhook signature verification failed: {e.message}")
        return jsonify(e.to_dict()), 401
    except MalformedPayload as e:
        logger.warning(f"Malformed webhook payload: {e.message}")
        return jsonify(e.to_dict()), 400

    return jsonify({
        "status": "accepted",
        "eventId": result.event_id,
        "outcome": result.outcome,
        "duplicate": result.duplicate,
    }), 200
