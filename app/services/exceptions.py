"""Error taxonomy for billing, subscriptions and payment providers."""


class BillingError(Exception):
    """Base exception for all billing errors."""

    pass


class NotFound(BillingError):
    """A referenced entity does not exist."""

    pass


class SubscriptionNotFound(NotFound):
    pass


class PlanNotFound(NotFound):
    pass


class PaymentMethodNotFound(NotFound):
    pass


class PendingSignupNotFound(NotFound):
    pass


class TransactionNotFound(NotFound):
    pass


class InvalidTransition(BillingError):
    """The requested status change is not legal from the current status."""

    def __init__(self, current: str, target: str, message: str | None = None):
        self.current = current
        self.target = target
        super().__init__(message or f"Cannot move subscription from '{current}' to '{target}'")


class AlreadyProcessed(BillingError):
    """A history row with the same transaction id already exists."""

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} already processed")


class ConcurrentUpdate(BillingError):
    """The subscription kept changing underneath a transition; retry later."""

    pass


class SignatureInvalid(BillingError):
    """Webhook signature missing or not matching the shared secret."""

    pass


class InvalidWebhookPayload(BillingError):
    """Webhook body passed signature checks but could not be parsed."""

    pass


class PaymentProviderError(BillingError):
    """Base class for errors reported by payment provider adapters."""

    def __init__(self, message: str, provider: str | None = None):
        self.provider = provider
        super().__init__(message)


class ProviderUnavailable(PaymentProviderError):
    """Network failure, timeout or 5xx from the provider. Retryable by the caller."""

    pass


class InvalidRequest(PaymentProviderError):
    """The provider rejected the request as malformed or unsupported."""

    pass


class PaymentDeclined(PaymentProviderError):
    """The provider declined the charge."""

    pass
