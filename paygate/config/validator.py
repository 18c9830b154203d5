import logging

logger = logging.getLogger(__name__)

PROVIDER_SETTINGS = {
    "card": ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET"),
    "wallet_approval": ("PAYPAL_CLIENT_ID", "PAYPAL_CLIENT_SECRET", "PAYPAL_WEBHOOK_SECRET"),
    "hosted_charge": ("COINBASE_COMMERCE_API_KEY", "COINBASE_COMMERCE_WEBHOOK_SECRET"),
    "crypto_address": ("NOWPAYMENTS_API_KEY", "NOWPAYMENTS_IPN_SECRET"),
}


def configured_providers(config) -> list:
    """Names of provider rails whose credentials are all present."""
    return [
        name for name, keys in PROVIDER_SETTINGS.items()
        if all(config.get(key) for key in keys)
    ]


def validate_configuration(app) -> bool:
    """
    Check the settings the payment engine cannot run without.

    Returns False (and logs every problem) instead of raising so the caller
    decides how strict to be per environment.
    """
    config = app.config
    issues = []

    if not config.get("SECRET_KEY"):
        issues.append("SECRET_KEY is not set")

    for name, keys in PROVIDER_SETTINGS.items():
        present = [key for key in keys if config.get(key)]
        if present and len(present) != len(keys):
            missing = sorted(set(keys) - set(present))
            issues.append(f"{name} provider partially configured, missing {', '.join(missing)}")

    if config.get("ENVIRONMENT") == "production" and not configured_providers(config):
        issues.append("no payment provider is configured")

    if not 0 < config.get("FRAUD_THRESHOLD", 0) <= 1:
        issues.append("FRAUD_THRESHOLD must be in (0, 1]")

    if config.get("RETRY_MAX_ATTEMPTS", 0) < 1:
        issues.append("RETRY_MAX_ATTEMPTS must be at least 1")

    for issue in issues:
        logger.error("Configuration problem: %s", issue, extra={"config_issue": issue})

    return not issues
