import os


class ConfigurationError(Exception):
    """
    Raised when an invalid or unsupported configuration is requested.
    """
    pass


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class BaseConfig:
    """
    Base configuration shared by all environments.

    Everything the payment engine tunes at runtime lives here so that fraud
    weights, retry policy and expiry windows change without code changes.
    """

    # Flask
    DEBUG = False
    TESTING = False
    SECRET_KEY = os.getenv("SECRET_KEY")
    ENVIRONMENT = "base"

    # Application
    APP_NAME = "PayGate Payment Engine"
    APP_VERSION = os.getenv("APP_VERSION", "1.0.0")

    # Database
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///paygate.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Infrastructure
    TRUSTED_PROXY_HOPS = int(os.getenv("TRUSTED_PROXY_HOPS", 0))
    REDIS_URL = os.getenv("REDIS_URL")
    SENTRY_DSN = os.getenv("SENTRY_DSN")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    METRICS_ENABLED = _env_bool("METRICS_ENABLED")

    # Card rail (Stripe)
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_WEBHOOK_TOLERANCE = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", 300))

    # Wallet approval rail (PayPal)
    PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET")
    PAYPAL_WEBHOOK_SECRET = os.getenv("PAYPAL_WEBHOOK_SECRET")
    PAYPAL_API_BASE = os.getenv("PAYPAL_API_BASE", "https://api-m.sandbox.paypal.com")

    # Hosted charge rail (Coinbase Commerce)
    COINBASE_COMMERCE_API_KEY = os.getenv("COINBASE_COMMERCE_API_KEY")
    COINBASE_COMMERCE_WEBHOOK_SECRET = os.getenv("COINBASE_COMMERCE_WEBHOOK_SECRET")
    COINBASE_COMMERCE_API_VERSION = os.getenv("COINBASE_COMMERCE_API_VERSION", "2018-03-22")

    # Crypto address rail (NOWPayments)
    NOWPAYMENTS_API_KEY = os.getenv("NOWPAYMENTS_API_KEY")
    NOWPAYMENTS_IPN_SECRET = os.getenv("NOWPAYMENTS_IPN_SECRET")
    NOWPAYMENTS_PAY_CURRENCY = os.getenv("NOWPAYMENTS_PAY_CURRENCY", "usdttrc20")
    NOWPAYMENTS_IPN_CALLBACK_URL = os.getenv("NOWPAYMENTS_IPN_CALLBACK_URL")

    # Redirects handed to wallet / hosted page providers
    PAYMENT_RETURN_URL = os.getenv("PAYMENT_RETURN_URL", "http://localhost:5000/payment/success")
    PAYMENT_CANCEL_URL = os.getenv("PAYMENT_CANCEL_URL", "http://localhost:5000/payment/cancel")

    # Outbound provider calls
    PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", 20))

    # Fraud gate
    FRAUD_THRESHOLD = float(os.getenv("FRAUD_THRESHOLD", 0.7))
    FRAUD_VELOCITY_WINDOW_MINUTES = int(os.getenv("FRAUD_VELOCITY_WINDOW_MINUTES", 5))
    FRAUD_VELOCITY_COUNT = int(os.getenv("FRAUD_VELOCITY_COUNT", 4))
    FRAUD_VELOCITY_WEIGHT = float(os.getenv("FRAUD_VELOCITY_WEIGHT", 0.4))
    FRAUD_AMOUNT_MULTIPLIER = float(os.getenv("FRAUD_AMOUNT_MULTIPLIER", 5))
    FRAUD_AMOUNT_WEIGHT = float(os.getenv("FRAUD_AMOUNT_WEIGHT", 0.3))
    FRAUD_IP_WEIGHT = float(os.getenv("FRAUD_IP_WEIGHT", 0.5))

    # Transaction lifecycle
    TRANSACTION_EXPIRY_MINUTES = int(os.getenv("TRANSACTION_EXPIRY_MINUTES", 30))
    REFUND_REVOKES_IMMEDIATELY = _env_bool("REFUND_REVOKES_IMMEDIATELY")

    # Retry queue
    RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", 5))
    RETRY_BACKOFF_BASE_SECONDS = float(os.getenv("RETRY_BACKOFF_BASE_SECONDS", 2))
    RETRY_BACKOFF_MAX_SECONDS = float(os.getenv("RETRY_BACKOFF_MAX_SECONDS", 300))
    RETRY_QUEUE_MAXSIZE = int(os.getenv("RETRY_QUEUE_MAXSIZE", 1000))
    RETRY_TICK_SECONDS = float(os.getenv("RETRY_TICK_SECONDS", 1))
    EXPIRY_SWEEP_INTERVAL_SECONDS = float(os.getenv("EXPIRY_SWEEP_INTERVAL_SECONDS", 60))
    RETRY_QUEUE_AUTOSTART = _env_bool("RETRY_QUEUE_AUTOSTART", True)

    # Notifications
    NOTIFICATIONS_DISPATCH_ENABLED = _env_bool("NOTIFICATIONS_DISPATCH_ENABLED", True)
    NOTIFICATIONS_TASK_NAME = os.getenv("NOTIFICATIONS_TASK_NAME", "notifications.deliver")
