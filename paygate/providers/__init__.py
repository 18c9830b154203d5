import logging

from paygate.config.validator import configured_providers
from paygate.models import PaymentProvider
from paygate.providers.base import (
    InitiateResult,
    PaymentRequest,
    ProviderAdapter,
    RefundResult,
    WebhookEvent,
)
from paygate.providers.card import CardAdapter
from paygate.providers.crypto_address import CryptoAddressAdapter
from paygate.providers.hosted_charge import HostedChargeAdapter
from paygate.providers.wallet import WalletAdapter

logger = logging.getLogger(__name__)


def build_adapters(config) -> dict:
    """Instantiate an adapter for every rail whose credentials are configured."""
    timeout = config.get("PROVIDER_TIMEOUT_SECONDS", 20)
    enabled = set(configured_providers(config))
    adapters = {}

    if PaymentProvider.CARD.value in enabled:
        adapters[PaymentProvider.CARD] = CardAdapter(
            api_key=config["STRIPE_SECRET_KEY"],
            webhook_secret=config["STRIPE_WEBHOOK_SECRET"],
            tolerance=config.get("STRIPE_WEBHOOK_TOLERANCE", 300),
            timeout=timeout,
        )

    if PaymentProvider.WALLET_APPROVAL.value in enabled:
        adapters[PaymentProvider.WALLET_APPROVAL] = WalletAdapter(
            client_id=config["PAYPAL_CLIENT_ID"],
            client_secret=config["PAYPAL_CLIENT_SECRET"],
            webhook_secret=config["PAYPAL_WEBHOOK_SECRET"],
            api_base=config.get("PAYPAL_API_BASE", "https://api-m.sandbox.paypal.com"),
            return_url=config.get("PAYMENT_RETURN_URL"),
            cancel_url=config.get("PAYMENT_CANCEL_URL"),
            timeout=timeout,
        )

    if PaymentProvider.HOSTED_CHARGE.value in enabled:
        adapters[PaymentProvider.HOSTED_CHARGE] = HostedChargeAdapter(
            api_key=config["COINBASE_COMMERCE_API_KEY"],
            webhook_secret=config["COINBASE_COMMERCE_WEBHOOK_SECRET"],
            api_version=config.get("COINBASE_COMMERCE_API_VERSION", "2018-03-22"),
            return_url=config.get("PAYMENT_RETURN_URL"),
            cancel_url=config.get("PAYMENT_CANCEL_URL"),
            timeout=timeout,
        )

    if PaymentProvider.CRYPTO_ADDRESS.value in enabled:
        adapters[PaymentProvider.CRYPTO_ADDRESS] = CryptoAddressAdapter(
            api_key=config["NOWPAYMENTS_API_KEY"],
            ipn_secret=config["NOWPAYMENTS_IPN_SECRET"],
            pay_currency=config.get("NOWPAYMENTS_PAY_CURRENCY", "usdttrc20"),
            ipn_callback_url=config.get("NOWPAYMENTS_IPN_CALLBACK_URL"),
            timeout=timeout,
        )

    logger.info(
        "Payment providers configured",
        extra={"providers": sorted(provider.value for provider in adapters)},
    )
    return adapters


__all__ = [
    "CardAdapter",
    "CryptoAddressAdapter",
    "HostedChargeAdapter",
    "InitiateResult",
    "PaymentRequest",
    "ProviderAdapter",
    "RefundResult",
    "WalletAdapter",
    "WebhookEvent",
    "build_adapters",
]
