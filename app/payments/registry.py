from core.settings import settings
from models.enums import ProviderName
from payments.base import PaymentProvider
from payments.flutterwave import FlutterwaveProvider
from payments.nowpayments import NowPaymentsProvider
from payments.stripe_provider import StripeProvider
from services.exceptions import InvalidRequest


def get_provider(name: str) -> PaymentProvider:
    if name == ProviderName.STRIPE.value:
        return StripeProvider(settings.stripe_secret_key, timeout=settings.provider_timeout_sec)
    if name == ProviderName.FLUTTERWAVE.value:
        return FlutterwaveProvider(
            settings.flutterwave_secret_key,
            settings.flutterwave_base_url,
            timeout=settings.provider_timeout_sec,
            redirect_url=f"{settings.app_url}/billing/complete",
        )
    if name == ProviderName.NOWPAYMENTS.value:
        return NowPaymentsProvider(
            settings.nowpayments_api_key,
            settings.nowpayments_base_url,
            timeout=settings.provider_timeout_sec,
            ipn_callback_url=f"{settings.app_url}/api/webhooks/nowpayments",
        )
    raise InvalidRequest(f"Unknown payment provider '{name}'")
