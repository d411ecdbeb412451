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

    # --- Stripe ---
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    STRIPE_PUBLISHABLE_KEY = os.environ.get("STRIPE_PUBLISHABLE_KEY")

    # One recurring price per plan tier and billing period.
    STRIPE_PRICE_BASIC_MONTHLY = os.environ.get("STRIPE_PRICE_BASIC_MONTHLY")
    STRIPE_PRICE_BASIC_ANNUAL = os.environ.get("STRIPE_PRICE_BASIC_ANNUAL")
    STRIPE_PRICE_STANDARD_MONTHLY = os.environ.get("STRIPE_PRICE_STANDARD_MONTHLY")
    STRIPE_PRICE_STANDARD_ANNUAL = os.environ.get("STRIPE_PRICE_STANDARD_ANNUAL")
    STRIPE_PRICE_PREMIUM_MONTHLY = os.environ.get("STRIPE_PRICE_PREMIUM_MONTHLY")
    STRIPE_PRICE_PREMIUM_ANNUAL = os.environ.get("STRIPE_PRICE_PREMIUM_ANNUAL")

    TRIAL_PERIOD_DAYS = int(os.environ.get("TRIAL_PERIOD_DAYS", 1))

    # Fernet key used to encrypt the signup password while it rides in
    # Stripe metadata. Generate one with `flask generate-signup-key`.
    SIGNUP_ENCRYPTION_KEY = os.environ.get("SIGNUP_ENCRYPTION_KEY")

    # Frontend origin used for default checkout success/cancel URLs.
    SITE_URL = os.environ.get("SITE_URL", "http://localhost:5173")

    # --- Provisioning ---
    # The parents row is created by a database trigger right after the
    # users insert; the webhook polls for it before creating it itself.
    PROVISION_POLL_ATTEMPTS = int(os.environ.get("PROVISION_POLL_ATTEMPTS", 5))
    PROVISION_POLL_INTERVAL = float(os.environ.get("PROVISION_POLL_INTERVAL", 1.0))
    PROVISION_FINAL_WAIT = float(os.environ.get("PROVISION_FINAL_WAIT", 3.0))

    # --- Email (SMTP) ---
    MAIL_SMTP_HOST = os.environ.get("MAIL_SMTP_HOST", "smtp.gmail.com")
    MAIL_SMTP_PORT = int(os.environ.get("MAIL_SMTP_PORT", 587))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "MyCEO")
    MAIL_FROM_ADDRESS = os.environ.get("MAIL_FROM_ADDRESS")  # defaults to MAIL_USERNAME
    MAIL_ENABLED = not _env_flag("MAIL_DISABLED")

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Session / cookies ---
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    REMEMBER_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_SAMESITE = "Lax"

    # --- WTF / CSRF ---
    WTF_CSRF_ENABLED = True

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
            "STRIPE_PRICE_BASIC_MONTHLY",
            "STRIPE_PRICE_BASIC_ANNUAL",
            "STRIPE_PRICE_STANDARD_MONTHLY",
            "STRIPE_PRICE_STANDARD_ANNUAL",
            "STRIPE_PRICE_PREMIUM_MONTHLY",
            "STRIPE_PRICE_PREMIUM_ANNUAL",
            "SIGNUP_ENCRYPTION_KEY",
            "SITE_URL",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False


class TestConfig(Config):
    """Testing — in-memory SQLite, CSRF disabled, no provisioning sleeps."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    STRIPE_PUBLISHABLE_KEY = "pk_test_fake"
    STRIPE_PRICE_BASIC_MONTHLY = "price_basic_monthly_test"
    STRIPE_PRICE_BASIC_ANNUAL = "price_basic_annual_test"
    STRIPE_PRICE_STANDARD_MONTHLY = "price_standard_monthly_test"
    STRIPE_PRICE_STANDARD_ANNUAL = "price_standard_annual_test"
    STRIPE_PRICE_PREMIUM_MONTHLY = "price_premium_monthly_test"
    STRIPE_PRICE_PREMIUM_ANNUAL = "price_premium_annual_test"
    SIGNUP_ENCRYPTION_KEY = "yFq3n0n9mW0M2kG7r0bq3v7mJ1oY2y9n8kFf0jv4wXc="
    SITE_URL = "http://localhost:5173"
    TRIAL_PERIOD_DAYS = 1
    PROVISION_POLL_ATTEMPTS = 5
    PROVISION_POLL_INTERVAL = 0
    PROVISION_FINAL_WAIT = 0
    MAIL_ENABLED = False
    WTF_CSRF_ENABLED = False  # disable CSRF for test requests
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
