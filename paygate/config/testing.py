from .base import BaseConfig


class TestingConfig(BaseConfig):
    """
    Test configuration: in-memory database, no background threads, no broker.
    """

    TESTING = True
    ENVIRONMENT = "testing"
    SECRET_KEY = "test-secret-key"

    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    REDIS_URL = None
    SENTRY_DSN = None
    METRICS_ENABLED = False

    RETRY_QUEUE_AUTOSTART = False
    NOTIFICATIONS_DISPATCH_ENABLED = False
    RETRY_BACKOFF_BASE_SECONDS = 1
    RETRY_MAX_ATTEMPTS = 3
