"""Billing error taxonomy.

Every error the engine raises to a caller derives from BillingError and
carries an HTTP status plus a stable machine-readable code, so blueprints
and the app-level error handler can render them uniformly.

- NotFound:           unknown tier / subscription / content
- InvalidTierSpec:    creator-supplied tier fields failed validation
- TierLocked:         price/interval edit on a tier with subscriptions
- CheckoutRejected:   precondition failures at checkout time
- NotSubscriptionOwner / SubscriptionNotCancelable: subscriber cancel requests
- ProcessorError:     the payment processor refused or is unreachable
- WebhookRejected:    rejected at the boundary, never logged as processed
"""


class BillingError(Exception):
    status_code = 400
    code = "billing_error"

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or self.__class__.__doc__ or self.code

    def to_dict(self):
        return {"error": self.code, "message": self.message}


# ──────────────────────────────────────────────
# Lookups
# ──────────────────────────────────────────────

class NotFound(BillingError):
    status_code = 404
    code = "not_found"


class TierNotFound(NotFound):
    """Membership tier not found."""

    code = "tier_not_found"


class SubscriptionNotFound(NotFound):
    """Subscription not found."""

    code = "subscription_not_found"


class ContentNotFound(NotFound):
    """Content not found."""

    code = "content_not_found"


# ──────────────────────────────────────────────
# Tier registry
# ──────────────────────────────────────────────

class InvalidTierSpec(BillingError):
    """Invalid tier definition."""

    status_code = 422
    code = "invalid_tier_spec"


class TierLocked(BillingError):
    """Price and interval cannot change once a subscription references the tier."""

    status_code = 409
    code = "tier_locked"


# ──────────────────────────────────────────────
# Checkout
# ──────────────────────────────────────────────

class CheckoutRejected(BillingError):
    status_code = 409
    code = "checkout_rejected"


class TierInactive(CheckoutRejected):
    """This tier is no longer available."""

    status_code = 410
    code = "tier_inactive"


class AlreadySubscribed(CheckoutRejected):
    """You already have an active subscription to this tier."""

    code = "already_subscribed"


class CapReached(CheckoutRejected):
    """This tier has reached its subscriber limit."""

    code = "cap_reached"


# ──────────────────────────────────────────────
# Subscriber actions
# ──────────────────────────────────────────────

class NotSubscriptionOwner(BillingError):
    """This subscription belongs to another subscriber."""

    status_code = 403
    code = "not_subscription_owner"


class SubscriptionNotCancelable(BillingError):
    """Only an active or past-due subscription can be canceled."""

    status_code = 409
    code = "subscription_not_cancelable"


# ──────────────────────────────────────────────
# Payment processor
# ──────────────────────────────────────────────

class ProcessorError(BillingError):
    """The payment processor rejected the request."""

    status_code = 502
    code = "processor_error"
    retryable = False


class ProcessorUnavailable(ProcessorError):
    """The payment processor is temporarily unavailable."""

    status_code = 503
    code = "processor_unavailable"
    retryable = True


# ──────────────────────────────────────────────
# Webhook boundary
# ──────────────────────────────────────────────

class WebhookRejected(BillingError):
    code = "webhook_rejected"


class SignatureInvalid(WebhookRejected):
    """Invalid signature."""

    status_code = 401
    code = "signature_invalid"


class MalformedPayload(WebhookRejected):
    """Malformed payload."""

    status_code = 400
    code = "malformed_payload"
