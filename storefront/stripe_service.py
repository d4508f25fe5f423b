import stripe

from storefront.config import settings
from storefront.errors import ProviderError
from storefront.logging_config import get_logger

logger = get_logger(__name__)

stripe.api_key = settings.stripe_secret_key


def create_payment(order):
    """Create a PaymentIntent carrying the order id in its metadata.

    The order id doubles as the idempotency key, so a retried checkout
    returns the same intent.
    """
    return stripe.PaymentIntent.create(
        amount=order.total_amount,
        currency=order.currency.lower(),
        automatic_payment_methods={"enabled": True},
        metadata={"order_id": order.id},
        idempotency_key=f"order-{order.id}",
    )


def refund_payment(payment_intent_id: str, amount: int, idempotency_key: str):
    try:
        return stripe.Refund.create(
            payment_intent=payment_intent_id,
            amount=amount,
            idempotency_key=idempotency_key,
        )
    except stripe.StripeError as exc:
        logger.error("provider_refund_failed", payment_intent=payment_intent_id, error=type(exc).__name__)
        raise ProviderError(f"Provider refund failed: {exc.user_message or type(exc).__name__}") from exc
