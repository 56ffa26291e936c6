from typing import Optional

from core.settings import settings
from webhooks.base import WebhookReceiver
from webhooks.flutterwave import FlutterwaveWebhookReceiver
from webhooks.nowpayments import NowPaymentsWebhookReceiver
from webhooks.stripe_receiver import StripeWebhookReceiver


def get_receiver(provider: str) -> Optional[WebhookReceiver]:
    if provider == StripeWebhookReceiver.provider:
        return StripeWebhookReceiver(settings.stripe_webhook_secret)
    if provider == FlutterwaveWebhookReceiver.provider:
        return FlutterwaveWebhookReceiver(settings.flutterwave_webhook_secret)
    if provider == NowPaymentsWebhookReceiver.provider:
        return NowPaymentsWebhookReceiver(settings.nowpayments_ipn_secret)
    return None
