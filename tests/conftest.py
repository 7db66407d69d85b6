"""Shared test fixtures for the Patronage test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, rate limits off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- creator_id / tiers / content: a creator with four tiers and gated posts
- make_subscription: insert a subscription row in any state
- events / send_event / sign: build, sign and deliver processor webhooks
"""

import hashlib
import hmac
import itertools
import json
import time
import uuid

import pytest

from patronage import create_app
from patronage.extensions import db as _db
from patronage.models.content import GatedContent
from patronage.models.subscription import PENDING, Subscription
from patronage.models.tier import MONTHLY, Tier

WEBHOOK_SECRET = "whsec_test_fake"


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


# ──────────────────────────────────────────────
# Seed data
# ──────────────────────────────────────────────

@pytest.fixture
def creator_id():
    return str(uuid.uuid4())


@pytest.fixture
def tiers(db_session, creator_id):
    """Bronze (rank 1), Gold ($9.99, rank 2), Platinum (rank 3), Limited (cap 1).

    Each tier already has its Stripe Product / Price, as after a first checkout.
    """
    specs = {
        "bronze": dict(name="Bronze", price_cents=300, rank=1),
        "gold": dict(name="Gold", price_cents=999, rank=2, perks=["Early access"]),
        "platinum": dict(name="Platinum", price_cents=2500, rank=3),
        "limited": dict(name="Limited", price_cents=5000, rank=2, max_subscribers=1),
    }
    created = {}
    for key, spec in specs.items():
        tier = Tier(
            creator_id=creator_id,
            interval=MONTHLY,
            stripe_product_id=f"prod_{key}",
            stripe_price_id=f"price_{key}",
            **spec,
        )
        _db.session.add(tier)
        created[key] = tier
    _db.session.commit()
    return created


@pytest.fixture
def content(db_session, creator_id, tiers):
    """One post per required tier, plus a public one."""
    items = {
        "public": GatedContent(creator_id=creator_id, minimum_tier_id=None, title="Hello"),
        "bronze": GatedContent(creator_id=creator_id, minimum_tier_id=tiers["bronze"].id, title="Sketches"),
        "gold": GatedContent(creator_id=creator_id, minimum_tier_id=tiers["gold"].id, title="Process video"),
        "platinum": GatedContent(creator_id=creator_id, minimum_tier_id=tiers["platinum"].id, title="Source files"),
    }
    _db.session.add_all(items.values())
    _db.session.commit()
    return items


@pytest.fixture
def make_subscription(db_session):
    """Insert a subscription row directly, bypassing checkout."""

    def _make(tier, subscriber_id=None, status=PENDING, **fields):
        sub = Subscription(
            subscriber_id=subscriber_id or str(uuid.uuid4()),
            creator_id=tier.creator_id,
            tier_id=tier.id,
            status=status,
            **fields,
        )
        _db.session.add(sub)
        _db.session.commit()
        return sub

    return _make


# ──────────────────────────────────────────────
# Webhooks
# ──────────────────────────────────────────────

def sign_payload(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """Build an X-Signature header value: t=<ts>,v1=<hmac-sha256("<ts>.<body>")>."""
    timestamp = int(timestamp if timestamp is not None else time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


class EventFactory:
    """Stripe-shaped webhook envelopes."""

    def __init__(self):
        self._ids = itertools.count(1)

    def envelope(self, event_type, obj, created, event_id=None):
        return {
            "id": event_id or f"evt_test_{next(self._ids):06d}",
            "object": "event",
            "type": event_type,
            "created": int(created),
            "data": {"object": obj},
        }

    @staticmethod
    def _metadata(sub):
        if sub is None:
            return {}
        return {
            "subscription_id": sub.id,
            "subscriber_id": sub.subscriber_id,
            "creator_id": sub.creator_id,
            "tier_id": sub.tier_id,
        }

    def checkout_completed(self, sub, created, external_subscription_id="sub_ext_1",
                           customer="cus_test_1", amount_total=999, **kwargs):
        return self.envelope("checkout.session.completed", {
            "id": f"cs_test_{sub.id[:8]}",
            "object": "checkout.session",
            "client_reference_id": sub.id,
            "subscription": external_subscription_id,
            "customer": customer,
            "amount_total": amount_total,
            "metadata": self._metadata(sub),
        }, created, **kwargs)

    def invoice_paid(self, external_subscription_id, created, period_start=None,
                     period_end=None, amount_paid=999, **kwargs):
        lines = []
        if period_start and period_end:
            lines.append({"period": {"start": int(period_start), "end": int(period_end)}})
        return self.envelope("invoice.paid", {
            "id": f"in_test_{int(created)}",
            "object": "invoice",
            "subscription": external_subscription_id,
            "customer": "cus_test_1",
            "amount_paid": amount_paid,
            "lines": {"data": lines},
        }, created, **kwargs)

    def payment_failed(self, external_subscription_id, created, **kwargs):
        return self.envelope("invoice.payment_failed", {
            "id": f"in_test_failed_{int(created)}",
            "object": "invoice",
            "subscription": external_subscription_id,
            "customer": "cus_test_1",
            "amount_due": 999,
        }, created, **kwargs)

    @staticmethod
    def _items(tier):
        if tier is None:
            return {"object": "list", "data": []}
        return {"object": "list", "data": [{
            "id": f"si_{tier.id[:8]}",
            "object": "subscription_item",
            "price": {
                "id": tier.stripe_price_id,
                "object": "price",
                "product": tier.stripe_product_id,
                "metadata": {"tier_id": tier.id},
            },
            "quantity": 1,
        }]}

    def subscription_updated(self, external_subscription_id, status, created, sub=None,
                             tier=None, period_end=None, cancel_at_period_end=False, **kwargs):
        """Metadata keeps the checkout-time tier; the item price names the current one."""
        obj = {
            "id": external_subscription_id,
            "object": "subscription",
            "status": status,
            "customer": "cus_test_1",
            "cancel_at_period_end": cancel_at_period_end,
            "items": self._items(tier),
            "metadata": self._metadata(sub),
        }
        if period_end:
            obj["current_period_start"] = int(created)
            obj["current_period_end"] = int(period_end)
        return self.envelope("customer.subscription.updated", obj, created, **kwargs)

    def subscription_deleted(self, external_subscription_id, created, sub=None, **kwargs):
        return self.envelope("customer.subscription.deleted", {
            "id": external_subscription_id,
            "object": "subscription",
            "status": "canceled",
            "customer": "cus_test_1",
            "metadata": self._metadata(sub),
        }, created, **kwargs)


@pytest.fixture
def events():
    return EventFactory()


@pytest.fixture
def sign():
    return sign_payload


@pytest.fixture
def send_event(client):
    """POST a signed envelope to the webhook endpoint."""

    def _send(envelope, secret=WEBHOOK_SECRET):
        payload = json.dumps(envelope)
        return client.post(
            "/webhooks/payments",
            data=payload,
            content_type="application/json",
            headers={"X-Signature": sign_payload(payload, secret)},
        )

    return _send
