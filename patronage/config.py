import os


def _env_flag(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    WEBHOOK_SIGNING_SECRET = os.environ.get("WEBHOOK_SIGNING_SECRET")
    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5000")

    # --- Checkout redirects (derived from APP_BASE_URL when unset) ---
    CHECKOUT_SUCCESS_URL = os.environ.get("CHECKOUT_SUCCESS_URL")
    CHECKOUT_CANCEL_URL = os.environ.get("CHECKOUT_CANCEL_URL")
    BILLING_PORTAL_RETURN_URL = os.environ.get("BILLING_PORTAL_RETURN_URL")

    # --- Billing policy ---
    BILLING_CURRENCY = os.environ.get("BILLING_CURRENCY", "usd")
    WEBHOOK_TOLERANCE_SECONDS = int(os.environ.get("WEBHOOK_TOLERANCE_SECONDS", 300))
    PENDING_CHECKOUT_TTL_HOURS = int(os.environ.get("PENDING_CHECKOUT_TTL_HOURS", 24))
    # PAST_DUE keeps access for at most this many days, then the sweep expires it.
    PAST_DUE_GRACE_DAYS = int(os.environ.get("PAST_DUE_GRACE_DAYS", 7))

    # --- Rate limits ---
    CHECKOUT_RATE_LIMIT = os.environ.get("CHECKOUT_RATE_LIMIT", "20 per minute")
    RATELIMIT_ENABLED = not _env_flag("RATELIMIT_DISABLED")

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_SECRET_KEY",
            "WEBHOOK_SIGNING_SECRET",
            "APP_BASE_URL",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True


class TestConfig(Config):
    """Testing - in-memory SQLite, fake processor keys."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_SECRET_KEY = "sk_test_fake"
    WEBHOOK_SIGNING_SECRET = "whsec_test_fake"
    APP_BASE_URL = "http://localhost:5000"
    BILLING_CURRENCY = "usd"
    WEBHOOK_TOLERANCE_SECONDS = 300
    PENDING_CHECKOUT_TTL_HOURS = 24
    PAST_DUE_GRACE_DAYS = 7
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
