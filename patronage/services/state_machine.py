"""Subscription state machine: pure transition logic.

apply_event(state, event, interval) decides what a verified event does to
a subscription, without touching the database:

    PENDING  --CheckoutCompleted / SubscriptionActivated--> ACTIVE
    ACTIVE   --SubscriptionActivated / SubscriptionRenewed--> ACTIVE
    ACTIVE   --PaymentFailed / SubscriptionPastDue--> PAST_DUE
    PAST_DUE --SubscriptionRenewed / SubscriptionActivated--> ACTIVE
    ACTIVE   --SubscriptionCanceled--> CANCELED   (terminal)
    PAST_DUE --SubscriptionCanceled--> CANCELED   (terminal)

EXPIRED is reached only through the reconciliation sweep.

An event is applied only if its processor timestamp is strictly newer than
the subscription's last-processed marker; older events are stale replays.
Any other (status, event) pair is an illegal transition. Both come back as
Discarded, never as an error: out-of-order delivery is expected traffic.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

from patronage.clock import as_utc
from patronage.models.subscription import ACTIVE, CANCELED, PAST_DUE, PENDING
from patronage.models.tier import MONTHLY, YEARLY
from patronage.services.events import (
    CHECKOUT_COMPLETED,
    PAYMENT_FAILED,
    SUBSCRIPTION_ACTIVATED,
    SUBSCRIPTION_CANCELED,
    SUBSCRIPTION_PAST_DUE,
    SUBSCRIPTION_RENEWED,
)

STALE = "stale"
ILLEGAL = "illegal"

PERIOD_LENGTHS = {
    MONTHLY: timedelta(days=30),
    YEARLY: timedelta(days=365),
}

TRANSITIONS = {
    (PENDING, CHECKOUT_COMPLETED): ACTIVE,
    (PENDING, SUBSCRIPTION_ACTIVATED): ACTIVE,
    (ACTIVE, SUBSCRIPTION_ACTIVATED): ACTIVE,
    (ACTIVE, SUBSCRIPTION_RENEWED): ACTIVE,
    (ACTIVE, PAYMENT_FAILED): PAST_DUE,
    (ACTIVE, SUBSCRIPTION_PAST_DUE): PAST_DUE,
    (ACTIVE, SUBSCRIPTION_CANCELED): CANCELED,
    (PAST_DUE, SUBSCRIPTION_RENEWED): ACTIVE,
    (PAST_DUE, SUBSCRIPTION_ACTIVATED): ACTIVE,
    (PAST_DUE, SUBSCRIPTION_CANCELED): CANCELED,
}


@dataclass(frozen=True)
class SubscriptionState:
    status: str
    tier_id: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    past_due_since: Optional[datetime] = None
    last_event_seq: Optional[int] = None
    external_subscription_id: Optional[str] = None

    @classmethod
    def from_record(cls, subscription):
        return cls(
            status=subscription.status,
            tier_id=subscription.tier_id,
            current_period_start=as_utc(subscription.current_period_start),
            current_period_end=as_utc(subscription.current_period_end),
            past_due_since=as_utc(subscription.past_due_since),
            last_event_seq=subscription.last_event_seq,
            external_subscription_id=subscription.external_subscription_id,
        )


@dataclass(frozen=True)
class Transition:
    previous: SubscriptionState
    state: SubscriptionState
    # PENDING -> ACTIVE: the subscriber cap must be re-checked atomically.
    confirms: bool = False
    # Tier the processor says the subscription is now on, if different.
    tier_change: Optional[str] = None

    @property
    def status_changed(self):
        return self.previous.status != self.state.status


@dataclass(frozen=True)
class Discarded:
    reason: str  # STALE | ILLEGAL
    detail: str


def _next_period(state, event, interval, renewing):
    length = PERIOD_LENGTHS.get(interval, PERIOD_LENGTHS[MONTHLY])
    if renewing:
        start = event.period_start or state.current_period_end or event.occurred_at
    else:
        start = event.period_start or event.occurred_at
    end = event.period_end or (start + length)
    return start, end


def apply_event(state, event, interval=MONTHLY):
    """Apply a normalized event to a subscription state.

    Returns a Transition carrying the new state, or Discarded.
    """
    if state.last_event_seq is not None and event.sequence <= state.last_event_seq:
        return Discarded(
            STALE,
            f"{event.event_type} at {event.sequence} is not newer than {state.last_event_seq}",
        )

    target = TRANSITIONS.get((state.status, event.event_type))
    if target is None:
        return Discarded(ILLEGAL, f"{event.event_type} is not valid from {state.status}")

    changes = {"status": target, "last_event_seq": event.sequence}
    if event.external_subscription_id and not state.external_subscription_id:
        changes["external_subscription_id"] = event.external_subscription_id

    confirms = state.status == PENDING and target == ACTIVE

    if confirms:
        start, end = _next_period(state, event, interval, renewing=False)
        changes.update(current_period_start=start, current_period_end=end)
    elif event.event_type == SUBSCRIPTION_RENEWED:
        start, end = _next_period(state, event, interval, renewing=True)
        changes.update(current_period_start=start, current_period_end=end)
    elif event.event_type == SUBSCRIPTION_ACTIVATED and event.period_end:
        changes.update(
            current_period_start=event.period_start or state.current_period_start,
            current_period_end=event.period_end,
        )

    if target == ACTIVE:
        changes["past_due_since"] = None
    elif target == PAST_DUE:
        changes["past_due_since"] = state.past_due_since or event.occurred_at

    tier_change = None
    if target == ACTIVE and event.tier_id and event.tier_id != state.tier_id:
        tier_change = event.tier_id

    return Transition(
        previous=state,
        state=replace(state, **changes),
        confirms=confirms,
        tier_change=tier_change,
    )
