"""Payment provider webhook ingress.

Verifies the provider signature over the raw body, maps the provider
event type onto a closed set of event kinds, and drives the idempotency
guard and order state machine inside one transaction.
"""
import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import stripe
from sqlalchemy.exc import SQLAlchemyError

from storefront import idempotency
from storefront.errors import (
    AlreadyProcessed,
    AuthenticationError,
    ConfigurationError,
    InvalidTransition,
    PersistenceFailure,
    ValidationError,
)
from storefront.idempotency import GuardDecision
from storefront.logging_config import get_logger
from storefront.models import EventKind
from storefront.notifications import OrderSnapshot
from storefront.orders import set_status
from storefront.state_machine import apply_payment_failed, apply_payment_succeeded

logger = get_logger(__name__)

PROVIDER_EVENT_TYPES = {
    "checkout.session.completed": EventKind.SESSION_COMPLETED,
    "payment_intent.succeeded": EventKind.INTENT_SUCCEEDED,
    "payment_intent.payment_failed": EventKind.INTENT_FAILED,
}


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    NO_CHANGE = "no_change"
    PAYMENT_FAILED = "payment_failed_logged"
    ALREADY_PROCESSED = "already_processed"
    ORDER_NOT_FOUND = "order_not_found"
    INVALID_TRANSITION = "invalid_transition"
    IGNORED = "ignored"


@dataclass
class InboundEvent:
    id: str
    type: str
    kind: Optional[EventKind] = None
    order_id: Optional[str] = None
    payment_reference: Optional[str] = None


@dataclass
class WebhookResult:
    outcome: WebhookOutcome
    order_id: Optional[str] = None
    notify: Optional[OrderSnapshot] = None


def _signature_timestamp(signature: str) -> Optional[str]:
    for part in signature.split(","):
        key, _, value = part.partition("=")
        if key.strip() == "t":
            return value.strip()
    return None


def verify_signature(payload: bytes, signature: Optional[str], secret: Optional[str], tolerance: int = 300) -> None:
    """Check the provider signature header against the raw body.

    Only the body size and digest are logged on failure; neither the body
    nor the secret is ever written out.
    """
    if not secret:
        logger.error("webhook_secret_missing")
        raise ConfigurationError("Webhook secret is not configured")
    if not signature:
        logger.warning("webhook_signature_missing", payload_bytes=len(payload))
        raise AuthenticationError("Missing signature")

    try:
        stripe.WebhookSignature.verify_header(payload.decode("utf-8"), signature, secret, tolerance)
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
        logger.warning(
            "webhook_signature_invalid",
            payload_bytes=len(payload),
            payload_sha256=hashlib.sha256(payload).hexdigest(),
            signature_timestamp=_signature_timestamp(signature),
            reason=type(exc).__name__,
        )
        raise AuthenticationError("Invalid signature") from exc


def parse_event(payload: bytes) -> InboundEvent:
    try:
        envelope = json.loads(payload)
    except ValueError:
        raise ValidationError("Invalid payload")

    if not isinstance(envelope, dict):
        raise ValidationError("Invalid payload")
    event_id, event_type = envelope.get("id"), envelope.get("type")
    data = envelope.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(event_id, str) or not isinstance(event_type, str) or not isinstance(obj, dict):
        raise ValidationError("Event envelope must carry id, type and data.object")

    event = InboundEvent(id=event_id, type=event_type, kind=PROVIDER_EVENT_TYPES.get(event_type))
    if event.kind is None:
        return event

    metadata = obj.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValidationError(f"Metadata of {event_type} must be an object")
    order_id = metadata.get("order_id") or metadata.get("orderId")
    if not order_id or not isinstance(order_id, (str, int)):
        raise ValidationError(f"No order id in {event_type} metadata")
    event.order_id = str(order_id)

    if event.kind == EventKind.SESSION_COMPLETED:
        reference = obj.get("payment_intent")
        # Expanded sessions carry the whole PaymentIntent object.
        if isinstance(reference, dict):
            reference = reference.get("id")
    else:
        reference = obj.get("id")
    if reference is not None and not isinstance(reference, str):
        raise ValidationError(f"Payment reference of {event_type} must be a string")
    event.payment_reference = reference
    return event


def _payment_succeeded(db, event: InboundEvent, order) -> WebhookResult:
    new_status = apply_payment_succeeded(order.status)
    if event.payment_reference and not order.payment_reference:
        order.payment_reference = event.payment_reference

    changed = set_status(order, new_status, f"Payment confirmed by {event.type} ({event.id})")
    if not changed:
        logger.info("order_already_paid", order_id=order.id, provider_event_id=event.id)
        return WebhookResult(WebhookOutcome.NO_CHANGE, order.id)

    logger.info("order_paid", order_id=order.id, provider_event_id=event.id, kind=event.kind.value)
    return WebhookResult(WebhookOutcome.PROCESSED, order.id, OrderSnapshot.from_order(order))


def _payment_failed(db, event: InboundEvent, order) -> WebhookResult:
    status = apply_payment_failed(order.status)
    logger.warning("payment_failed", order_id=order.id, provider_event_id=event.id, status=status.value)
    return WebhookResult(WebhookOutcome.PAYMENT_FAILED, order.id)


HANDLERS = {
    EventKind.SESSION_COMPLETED: _payment_succeeded,
    EventKind.INTENT_SUCCEEDED: _payment_succeeded,
    EventKind.INTENT_FAILED: _payment_failed,
}

_unhandled = set(EventKind) - set(HANDLERS)
if _unhandled:
    raise RuntimeError(f"No webhook handler for event kinds: {sorted(k.value for k in _unhandled)}")


def handle_event(db, event: InboundEvent) -> WebhookResult:
    """Apply one verified event. Commits on success, rolls back otherwise.

    Raises PersistenceFailure on unexpected database errors so the provider
    retries; every other outcome is an acknowledgement.
    """
    if event.kind is None:
        logger.info("webhook_event_ignored", provider_event_id=event.id, event_type=event.type)
        return WebhookResult(WebhookOutcome.IGNORED)

    handler = HANDLERS[event.kind]
    try:
        guard = idempotency.check(db, event.id, event.order_id)
        if guard.decision == GuardDecision.ALREADY_PROCESSED:
            db.rollback()
            return WebhookResult(WebhookOutcome.ALREADY_PROCESSED, event.order_id)
        if guard.decision == GuardDecision.ORDER_NOT_FOUND:
            db.rollback()
            return WebhookResult(WebhookOutcome.ORDER_NOT_FOUND, event.order_id)

        idempotency.record(db, event.id, event.order_id, event.kind.value)
        # Re-read under the write gate; another event may have moved the order.
        db.refresh(guard.order)
        result = handler(db, event, guard.order)
        db.commit()
        return result
    except AlreadyProcessed:
        return WebhookResult(WebhookOutcome.ALREADY_PROCESSED, event.order_id)
    except InvalidTransition as exc:
        db.rollback()
        logger.error(
            "webhook_invalid_transition",
            provider_event_id=event.id, order_id=event.order_id,
            current=exc.current, target=exc.target,
        )
        return WebhookResult(WebhookOutcome.INVALID_TRANSITION, event.order_id)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("webhook_persistence_failure", provider_event_id=event.id, order_id=event.order_id)
        raise PersistenceFailure("Could not persist payment event") from exc
