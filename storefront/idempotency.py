"""Idempotency guard for provider events.

The unique constraint on ``payment_events.provider_event_id`` is the real
gate: ``check`` is a cheap early exit, ``record`` is the insert that only
one concurrent delivery can win. Both run inside the caller's transaction,
before the order transition is applied, so a losing delivery rolls back
without touching the order.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from storefront.errors import AlreadyProcessed
from storefront.logging_config import get_logger
from storefront.models import Order, PaymentEvent
from storefront.orders import lock_order

logger = get_logger(__name__)


class GuardDecision(str, Enum):
    PROCEED = "proceed"
    ALREADY_PROCESSED = "already_processed"
    ORDER_NOT_FOUND = "order_not_found"


@dataclass
class GuardResult:
    decision: GuardDecision
    order: Optional[Order] = None


def find_event(db, provider_event_id: str) -> Optional[PaymentEvent]:
    return db.execute(
        select(PaymentEvent).where(PaymentEvent.provider_event_id == provider_event_id)
    ).scalar_one_or_none()


def check(db, provider_event_id: str, order_id: str) -> GuardResult:
    """Decide whether an event may proceed; locks the order row when it can."""
    if find_event(db, provider_event_id) is not None:
        logger.info("payment_event_already_processed", provider_event_id=provider_event_id, order_id=order_id)
        return GuardResult(GuardDecision.ALREADY_PROCESSED)

    order = lock_order(db, order_id)
    if order is None:
        logger.warning("payment_event_order_not_found", provider_event_id=provider_event_id, order_id=order_id)
        return GuardResult(GuardDecision.ORDER_NOT_FOUND)

    return GuardResult(GuardDecision.PROCEED, order)


def record(db, provider_event_id: str, order_id: str, kind: str) -> PaymentEvent:
    """Insert the event row. Raises AlreadyProcessed if another delivery won.

    On conflict the whole transaction is rolled back.
    """
    event = PaymentEvent(provider_event_id=provider_event_id, order_id=order_id, kind=kind)
    db.add(event)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.info("payment_event_concurrent_duplicate", provider_event_id=provider_event_id, order_id=order_id)
        raise AlreadyProcessed(provider_event_id)
    return event
