import os


class Config:
    """Base configuration. Shared across all environments."""

    APP_ENV = os.environ.get("APP_ENV", "development")

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")
    JWT_SECRET = os.environ.get("JWT_SECRET")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    FRONTEND_URL = os.environ.get("FRONTEND_URL")

    # --- Supabase (identity provider) ---
    SUPABASE_URL = os.environ.get("SUPABASE_URL")                # e.g. https://xyz.supabase.co
    SUPABASE_SERVICE_KEY = os.environ.get("SUPABASE_SERVICE_KEY") # service_role key, admin auth calls
    SUPABASE_ANON_KEY = os.environ.get("SUPABASE_ANON_KEY")       # falls back to the service key

    # --- Email (SMTP relay, SendGrid by default) ---
    MAIL_SMTP_HOST = os.environ.get("MAIL_SMTP_HOST", "smtp.sendgrid.net")
    MAIL_SMTP_PORT = int(os.environ.get("MAIL_SMTP_PORT", 587))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME", "apikey")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")          # SendGrid API key
    MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "The Monetary Catalyst")
    MAIL_FROM_ADDRESS = os.environ.get("MAIL_FROM_ADDRESS")
    MAIL_CONTACT_TO = os.environ.get(
        "MAIL_CONTACT_TO", "support@themonetarycatalyst.com"
    )
    # When True, messages are kept in EmailQueue.outbox instead of sent.
    MAIL_SUPPRESS_SEND = False

    # --- Email event webhook ---
    SENDGRID_WEBHOOK_SIGNING_KEY = os.environ.get("SENDGRID_WEBHOOK_SIGNING_KEY")
    NEWSLETTER_UNSUBSCRIBE_GROUP_ID = int(
        os.environ.get("NEWSLETTER_UNSUBSCRIBE_GROUP_ID", 26010)
    )

    # --- Contact form ---
    RECAPTCHA_SECRET_KEY = os.environ.get("RECAPTCHA_SECRET_KEY")
    RECAPTCHA_MIN_SCORE = 0.5

    # --- Ledger retry policy (recurring-payment webhooks) ---
    LEDGER_RETRY_ATTEMPTS = 3
    LEDGER_RETRY_BASE_DELAY = 1.0
    LEDGER_RETRY_MULTIPLIER = 2.0

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Rate limiting ---
    API_RATE_LIMIT = "100 per 15 minutes"

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
            "SUPABASE_URL",
            "SUPABASE_SERVICE_KEY",
            "JWT_SECRET",
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
    """Testing - in-memory SQLite, no outbound email, no retry delays."""

    APP_ENV = "test"
    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    JWT_SECRET = "test-jwt-secret-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    FRONTEND_URL = "http://localhost:3000"
    SUPABASE_URL = "https://project.supabase.test"
    SUPABASE_SERVICE_KEY = "service_key_test"
    SENDGRID_WEBHOOK_SIGNING_KEY = "sendgrid_signing_key_test"
    RECAPTCHA_SECRET_KEY = "recaptcha_secret_test"
    MAIL_FROM_ADDRESS = "research@themonetarycatalyst.test"
    MAIL_SUPPRESS_SEND = True
    LEDGER_RETRY_BASE_DELAY = 0
    RATELIMIT_ENABLED = False  # disable rate limiting in tests

    @staticmethod
    def validate():
        """Skip validation in test mode - everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    APP_ENV = "production"
    DEBUG = False


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
