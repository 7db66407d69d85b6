"""Tests for subscriber-side operations.

Covers:
- Cancel at period end: renewal stopped at the processor, access kept
- Ownership and status checks on cancel
- The processor's deletion webhook finishes the cancellation
- GET /subscribers/<id>/subscriptions and GET /creators/<id>/subscribers
"""

import json
import time
from datetime import timedelta
from unittest.mock import patch

import stripe

from patronage.clock import utcnow
from patronage.extensions import db
from patronage.models.audit import AuditEvent
from patronage.models.subscription import ACTIVE, CANCELED, EXPIRED, PAST_DUE, PENDING, Subscription
from patronage.models.tier import YEARLY, Tier
from patronage.services.entitlement_service import has_access


def _cancel(client, subscription_id, subscriber_id):
    return client.post(
        f"/subscriptions/{subscription_id}/cancel",
        data=json.dumps({"subscriberId": subscriber_id}),
        content_type="application/json",
    )


def _reload(sub):
    db.session.expire_all()
    return db.session.get(Subscription, sub.id)


class TestCancelAtPeriodEnd:

    @patch("patronage.services.stripe_service.stripe.Subscription.modify")
    def test_cancel_keeps_access_until_period_end(self, mock_modify, client, tiers, content, make_subscription):
        period_end = utcnow() + timedelta(days=12)
        sub = make_subscription(
            tiers["gold"], subscriber_id="fan-1", status=ACTIVE,
            external_subscription_id="sub_ext_1", current_period_end=period_end,
        )

        resp = _cancel(client, sub.id, "fan-1")

        assert resp.status_code == 200
        data = json.loads(resp.data)
        assert data["status"] == ACTIVE
        assert data["cancelAtPeriodEnd"] is True
        mock_modify.assert_called_once_with("sub_ext_1", cancel_at_period_end=True)

        sub = _reload(sub)
        assert sub.cancel_requested_at is not None
        assert has_access("fan-1", content["gold"]) is True
        assert AuditEvent.query.filter_by(action="subscription.cancel_requested").count() == 1

    @patch("patronage.services.stripe_service.stripe.Subscription.modify")
    def test_second_cancel_is_a_no_op(self, mock_modify, client, tiers, make_subscription):
        sub = make_subscription(
            tiers["gold"], subscriber_id="fan-1", status=ACTIVE, external_subscription_id="sub_ext_1",
        )

        _cancel(client, sub.id, "fan-1")
        resp = _cancel(client, sub.id, "fan-1")

        assert resp.status_code == 200
        mock_modify.assert_called_once()

    @patch("patronage.services.stripe_service.stripe.Subscription.modify")
    def test_past_due_subscription_can_cancel(self, mock_modify, client, tiers, make_subscription):
        sub = make_subscription(
            tiers["gold"], subscriber_id="fan-1", status=PAST_DUE,
            external_subscription_id="sub_ext_1", past_due_since=utcnow(),
        )
        assert _cancel(client, sub.id, "fan-1").status_code == 200

    @patch("patronage.services.stripe_service.stripe.Subscription.modify")
    def test_other_subscriber_is_forbidden(self, mock_modify, client, tiers, make_subscription):
        sub = make_subscription(tiers["gold"], subscriber_id="fan-1", status=ACTIVE)

        resp = _cancel(client, sub.id, "fan-2")

        assert resp.status_code == 403
        assert json.loads(resp.data)["error"] == "not_subscription_owner"
        mock_modify.assert_not_called()
        assert _reload(sub).cancel_at_period_end is False

    def test_pending_or_terminal_cannot_cancel(self, client, tiers, make_subscription):
        pending = make_subscription(tiers["gold"], subscriber_id="fan-1", status=PENDING)
        ended = make_subscription(tiers["bronze"], subscriber_id="fan-2", status=EXPIRED)

        for sub, subscriber_id in ((pending, "fan-1"), (ended, "fan-2")):
            resp = _cancel(client, sub.id, subscriber_id)
            assert resp.status_code == 409
            assert json.loads(resp.data)["error"] == "subscription_not_cancelable"

    def test_unknown_subscription_returns_404(self, client):
        resp = _cancel(client, "missing", "fan-1")
        assert resp.status_code == 404

    def test_missing_subscriber_returns_400(self, client, tiers, make_subscription):
        sub = make_subscription(tiers["gold"], subscriber_id="fan-1", status=ACTIVE)
        resp = _cancel(client, sub.id, None)
        assert resp.status_code == 400

    @patch("patronage.services.stripe_service.stripe.Subscription.modify")
    def test_processor_outage_changes_nothing(self, mock_modify, client, tiers, make_subscription):
        sub = make_subscription(
            tiers["gold"], subscriber_id="fan-1", status=ACTIVE, external_subscription_id="sub_ext_1",
        )
        mock_modify.side_effect = stripe.APIConnectionError("network down")

        resp = _cancel(client, sub.id, "fan-1")

        assert resp.status_code == 503
        assert json.loads(resp.data)["retryable"] is True
        assert _reload(sub).cancel_at_period_end is False

    @patch("patronage.services.stripe_service.stripe.Subscription.modify")
    def test_deletion_webhook_completes_cancellation(
        self, mock_modify, client, tiers, make_subscription, events, send_event
    ):
        now = int(time.time())
        sub = make_subscription(
            tiers["gold"], subscriber_id="fan-1", status=ACTIVE,
            external_subscription_id="sub_ext_1", last_event_seq=(now - 100) * 1000,
        )
        _cancel(client, sub.id, "fan-1")

        send_event(events.subscription_deleted("sub_ext_1", now, sub=sub))

        sub = _reload(sub)
        assert sub.status == CANCELED
        assert db.session.get(Tier, tiers["gold"].id).current_subscribers == 0


class TestSubscriberListing:

    def test_lists_all_statuses_newest_first(self, client, tiers, make_subscription):
        old = make_subscription(
            tiers["gold"], subscriber_id="fan-1", status=CANCELED,
            created_at=utcnow() - timedelta(days=40),
        )
        current = make_subscription(tiers["platinum"], subscriber_id="fan-1", status=ACTIVE)
        make_subscription(tiers["bronze"], subscriber_id="fan-2", status=ACTIVE)

        resp = client.get("/subscribers/fan-1/subscriptions")

        assert resp.status_code == 200
        subs = json.loads(resp.data)["subscriptions"]
        assert [s["id"] for s in subs] == [current.id, old.id]
        assert subs[0]["tier"]["name"] == "Platinum"
        assert subs[0]["tier"]["priceCents"] == 2500

    def test_unknown_subscriber_gets_empty_list(self, client):
        resp = client.get("/subscribers/nobody/subscriptions")
        assert json.loads(resp.data) == {"subscriptions": []}


class TestCreatorSubscribers:

    def test_entitled_subscribers_and_stats(self, client, creator_id, tiers, make_subscription):
        yearly = Tier(creator_id=creator_id, name="Annual", price_cents=12000, interval=YEARLY, rank=2)
        db.session.add(yearly)
        db.session.commit()
        make_subscription(tiers["gold"], status=ACTIVE)
        make_subscription(tiers["bronze"], status=PAST_DUE, past_due_since=utcnow())
        make_subscription(yearly, status=ACTIVE)
        make_subscription(tiers["platinum"], status=PENDING)
        make_subscription(tiers["platinum"], status=CANCELED)
        other_tier = Tier(creator_id="other-creator", name="Other", price_cents=100, rank=1)
        db.session.add(other_tier)
        db.session.commit()
        make_subscription(other_tier, status=ACTIVE)

        resp = client.get(f"/creators/{creator_id}/subscribers")

        assert resp.status_code == 200
        data = json.loads(resp.data)
        assert {s["status"] for s in data["subscriptions"]} == {ACTIVE, PAST_DUE}
        assert data["stats"] == {
            "totalSubscribers": 3,
            # 999 + 300 + 12000 / 12
            "monthlyRevenueCents": 2299,
        }

    def test_creator_without_subscribers(self, client, creator_id):
        resp = client.get(f"/creators/{creator_id}/subscribers")
        assert json.loads(resp.data)["stats"] == {"totalSubscribers": 0, "monthlyRevenueCents": 0}
