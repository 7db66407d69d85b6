"""Tiers blueprint: tier management for the creator dashboard.

Routes:
- POST /creators/<creator_id>/tiers   - create a tier
- GET  /creators/<creator_id>/tiers   - list a creator's tiers (by rank)
- GET  /tiers/<tier_id>               - one tier
- PATCH /tiers/<tier_id>              - edit a tier
- POST /tiers/<tier_id>/deactivate    - soft-deactivate a tier

Request bodies use camelCase keys (priceCents, maxSubscribers).
"""

from flask import Blueprint, jsonify, request

from patronage.errors import BillingError, InvalidTierSpec
from patronage.services.tier_service import (
    create_tier,
    deactivate_tier,
    get_tier,
    list_tiers,
    update_tier,
)

tiers_bp = Blueprint("tiers", __name__)

_FIELD_NAMES = {
    "name": "name",
    "description": "description",
    "priceCents": "price_cents",
    "interval": "interval",
    "perks": "perks",
    "rank": "rank",
    "maxSubscribers": "max_subscribers",
}


def _tier_fields(data):
    if not isinstance(data, dict):
        raise InvalidTierSpec("Request body must be a JSON object")
    return {_FIELD_NAMES[k]: v for k, v in data.items() if k in _FIELD_NAMES}


def _error(e):
    return jsonify(e.to_dict()), e.status_code


@tiers_bp.route("/creators/<creator_id>/tiers", methods=["POST"])
def create(creator_id):
    data = request.get_json(silent=True) or {}
    try:
        tier = create_tier(creator_id, _tier_fields(data))
    except BillingError as e:
        return _error(e)
    return jsonify(tier.to_dict()), 201


@tiers_bp.route("/creators/<creator_id>/tiers")
def index(creator_id):
    include_inactive = request.args.get("includeInactive", "").lower() in ("1", "true", "yes")
    tiers = list_tiers(creator_id, include_inactive=include_inactive)
    return jsonify({"tiers": [t.to_dict() for t in tiers]}), 200


@tiers_bp.route("/tiers/<tier_id>")
def detail(tier_id):
    try:
        tier = get_tier(tier_id)
    except BillingError as e:
        return _error(e)
    return jsonify(tier.to_dict()), 200


@tiers_bp.route("/tiers/<tier_id>", methods=["PATCH"])
def update(tier_id):
    data = request.get_json(silent=True) or {}
    try:
        tier = update_tier(tier_id, _tier_fields(data))
    except BillingError as e:
        return _error(e)
    return jsonify(tier.to_dict()), 200


@tiers_bp.route("/tiers/<tier_id>/deactivate", methods=["POST"])
def deactivate(tier_id):
    try:
        tier = deactivate_tier(tier_id)
    except BillingError as e:
        return _error(e)
    return jsonify(tier.to_dict()), 200
