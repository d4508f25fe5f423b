"""Error taxonomy for payment reconciliation and the refund ledger."""


class StorefrontError(Exception):
    """Base class for every domain error raised by the storefront core."""


class ConfigurationError(StorefrontError):
    """A required setting (webhook secret, operator address...) is missing."""


class AuthenticationError(StorefrontError):
    """Missing or invalid webhook signature."""


class ValidationError(StorefrontError):
    """Malformed event envelope or operator input."""


class InvalidAmount(ValidationError):
    """Refund amount is not positive or exceeds what is still refundable."""


class OrderNotFound(StorefrontError):
    def __init__(self, order_id):
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class RefundNotFound(StorefrontError):
    def __init__(self, refund_id):
        super().__init__(f"Refund not found: {refund_id}")
        self.refund_id = refund_id


class AlreadyProcessed(StorefrontError):
    def __init__(self, provider_event_id):
        super().__init__(f"Event already processed: {provider_event_id}")
        self.provider_event_id = provider_event_id


class InvalidTransition(StorefrontError):
    def __init__(self, current, target):
        super().__init__(f"Cannot move order from {current} to {target}")
        self.current = current
        self.target = target


class InvariantViolation(StorefrontError):
    """Refund allocation would exceed the order total."""


class NotificationFailure(StorefrontError):
    """A single notification could not be delivered. Never fatal."""


class PersistenceFailure(StorefrontError):
    """Unexpected database failure; the provider should retry."""


class ProviderError(StorefrontError):
    """The payment provider rejected or failed a refund execution."""
