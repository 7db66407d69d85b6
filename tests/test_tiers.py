"""Tests for the tier registry (service + tiers blueprint).

Covers:
- Tier creation and field validation
- Price / interval lock once a subscription references the tier
- Cap cannot drop below the current subscriber count
- Soft deactivation (allowed with active subscribers)
- Listing by rank
"""

import json

import pytest

from patronage.errors import InvalidTierSpec, TierLocked, TierNotFound
from patronage.models.audit import AuditEvent
from patronage.models.subscription import ACTIVE, CANCELED
from patronage.models.tier import MONTHLY, YEARLY
from patronage.services.tier_service import (
    create_tier,
    deactivate_tier,
    get_tier,
    list_tiers,
    update_tier,
)


class TestCreateTier:

    def test_creates_tier_with_defaults(self, creator_id):
        tier = create_tier(creator_id, {"name": "  Silver ", "price_cents": 500, "interval": MONTHLY})

        assert tier.id is not None
        assert tier.name == "Silver"
        assert tier.perks == []
        assert tier.rank == 0
        assert tier.max_subscribers is None
        assert tier.current_subscribers == 0
        assert tier.is_active is True
        assert AuditEvent.query.filter_by(action="tier.created", tier_id=tier.id).count() == 1

    def test_interval_defaults_to_monthly(self, creator_id):
        tier = create_tier(creator_id, {"name": "Silver", "price_cents": 500})
        assert tier.interval == MONTHLY

    @pytest.mark.parametrize("spec", [
        {"price_cents": 500},
        {"name": "", "price_cents": 500},
        {"name": "Silver", "price_cents": 0},
        {"name": "Silver", "price_cents": -1},
        {"name": "Silver", "price_cents": "500"},
        {"name": "Silver", "price_cents": 500, "interval": "WEEKLY"},
        {"name": "Silver", "price_cents": 500, "max_subscribers": 0},
        {"name": "Silver", "price_cents": 500, "rank": -1},
        {"name": "Silver", "price_cents": 500, "perks": "free stuff"},
    ])
    def test_invalid_spec_rejected(self, creator_id, spec):
        with pytest.raises(InvalidTierSpec):
            create_tier(creator_id, spec)

    def test_missing_creator_rejected(self):
        with pytest.raises(InvalidTierSpec):
            create_tier(None, {"name": "Silver", "price_cents": 500})


class TestUpdateTier:

    def test_free_fields_editable_with_subscribers(self, tiers, make_subscription):
        gold = tiers["gold"]
        make_subscription(gold, status=ACTIVE)

        tier = update_tier(gold.id, {"name": "Gold+", "perks": ["Livestreams"], "rank": 4})

        assert tier.name == "Gold+"
        assert tier.perks == ["Livestreams"]
        assert tier.rank == 4

    @pytest.mark.parametrize("changes", [{"price_cents": 1299}, {"interval": YEARLY}])
    def test_price_and_interval_locked_once_referenced(self, tiers, make_subscription, changes):
        gold = tiers["gold"]
        # Any status counts as a reference, including terminal ones.
        make_subscription(gold, status=CANCELED)

        with pytest.raises(TierLocked):
            update_tier(gold.id, changes)

    def test_price_editable_while_unreferenced(self, tiers):
        tier = update_tier(tiers["gold"].id, {"price_cents": 1299})
        assert tier.price_cents == 1299
        # Stripe prices are immutable: the next checkout creates a new one.
        assert tier.stripe_price_id is None
        assert tier.stripe_product_id == "prod_gold"

    def test_resubmitting_same_price_is_not_a_change(self, tiers, make_subscription):
        gold = tiers["gold"]
        make_subscription(gold, status=ACTIVE)
        tier = update_tier(gold.id, {"price_cents": 999, "name": "Gold"})
        assert tier.price_cents == 999
        assert tier.stripe_price_id == "price_gold"

    def test_cap_cannot_drop_below_current_count(self, tiers, make_subscription):
        gold = tiers["gold"]
        make_subscription(gold, status=ACTIVE)
        make_subscription(gold, status=ACTIVE)

        with pytest.raises(InvalidTierSpec):
            update_tier(gold.id, {"max_subscribers": 1})

        assert update_tier(gold.id, {"max_subscribers": 2}).max_subscribers == 2

    def test_unknown_tier(self):
        with pytest.raises(TierNotFound):
            update_tier("missing", {"name": "x"})


class TestDeactivateTier:

    def test_deactivate_with_active_subscribers(self, tiers, make_subscription):
        gold = tiers["gold"]
        sub = make_subscription(gold, status=ACTIVE)

        tier = deactivate_tier(gold.id)

        assert tier.is_active is False
        assert sub.status == ACTIVE
        audit = AuditEvent.query.filter_by(action="tier.deactivated").first()
        assert audit.metadata_["active_subscribers"] == 1

    def test_deactivate_is_idempotent(self, tiers):
        deactivate_tier(tiers["bronze"].id)
        assert deactivate_tier(tiers["bronze"].id).is_active is False
        assert AuditEvent.query.filter_by(action="tier.deactivated").count() == 1

    def test_get_unknown_tier(self):
        with pytest.raises(TierNotFound):
            get_tier("missing")


class TestListTiers:

    def test_ordered_by_rank_excluding_inactive(self, creator_id, tiers):
        deactivate_tier(tiers["platinum"].id)

        names = [t.name for t in list_tiers(creator_id)]

        assert names[0] == "Bronze"
        assert "Platinum" not in names
        assert len(list_tiers(creator_id, include_inactive=True)) == 4


class TestTierEndpoints:

    def test_create_via_api(self, client, creator_id):
        resp = client.post(
            f"/creators/{creator_id}/tiers",
            data=json.dumps({
                "name": "Supporter",
                "priceCents": 700,
                "interval": "YEARLY",
                "rank": 1,
                "maxSubscribers": 50,
                "perks": ["Name in credits"],
            }),
            content_type="application/json",
        )
        assert resp.status_code == 201
        data = json.loads(resp.data)
        assert data["priceCents"] == 700
        assert data["interval"] == "YEARLY"
        assert data["maxSubscribers"] == 50
        assert data["currentSubscribers"] == 0

    def test_create_invalid_returns_422(self, client, creator_id):
        resp = client.post(
            f"/creators/{creator_id}/tiers",
            data=json.dumps({"name": "Supporter"}),
            content_type="application/json",
        )
        assert resp.status_code == 422
        assert json.loads(resp.data)["error"] == "invalid_tier_spec"

    @pytest.mark.parametrize("body", ["[1]", "[\"x\"]", "42"])
    def test_non_object_body_returns_422(self, client, creator_id, tiers, body):
        created = client.post(f"/creators/{creator_id}/tiers", data=body, content_type="application/json")
        patched = client.patch(f"/tiers/{tiers['gold'].id}", data=body, content_type="application/json")

        for resp in (created, patched):
            assert resp.status_code == 422
            assert json.loads(resp.data)["error"] == "invalid_tier_spec"

    def test_list_via_api(self, client, creator_id, tiers):
        resp = client.get(f"/creators/{creator_id}/tiers")
        assert resp.status_code == 200
        ranks = [t["rank"] for t in json.loads(resp.data)["tiers"]]
        assert ranks == sorted(ranks)

    def test_locked_edit_returns_409(self, client, tiers, make_subscription):
        make_subscription(tiers["gold"], status=ACTIVE)
        resp = client.patch(
            f"/tiers/{tiers['gold'].id}",
            data=json.dumps({"priceCents": 1999}),
            content_type="application/json",
        )
        assert resp.status_code == 409
        assert json.loads(resp.data)["error"] == "tier_locked"

    def test_deactivate_via_api(self, client, tiers):
        resp = client.post(f"/tiers/{tiers['bronze'].id}/deactivate")
        assert resp.status_code == 200
        assert json.loads(resp.data)["isActive"] is False

    def test_unknown_tier_returns_404(self, client):
        resp = client.get("/tiers/does-not-exist")
        assert resp.status_code == 404
        assert json.loads(resp.data)["error"] == "tier_not_found"
