"""Refund ledger.

Refunds move pending -> approved|declined and approved -> processed.
Every mutating operation locks the parent order row first and re-checks
that approved plus processed refunds never exceed the order total.
Callers own the transaction and commit after a successful call.
"""
from sqlalchemy import func, select

from storefront.errors import (
    InvalidAmount,
    InvalidTransition,
    InvariantViolation,
    OrderNotFound,
    RefundNotFound,
    ValidationError,
)
from storefront.logging_config import get_logger
from storefront.models import (
    Order,
    OrderRefundState,
    OrderStatus,
    Refund,
    RefundMethod,
    RefundStatus,
)
from storefront.orders import append_note, get_order, lock_order, set_status
from storefront.state_machine import apply_cancellation
from storefront.stripe_service import refund_payment

logger = get_logger(__name__)

COUNTED = (RefundStatus.APPROVED.value, RefundStatus.PROCESSED.value)
NOT_REFUNDABLE = (OrderStatus.PENDING_PAYMENT.value, OrderStatus.CANCELLED.value)


def _sum(db, order_id, statuses, exclude_id=None) -> int:
    query = select(func.coalesce(func.sum(Refund.amount), 0)).where(
        Refund.order_id == order_id,
        Refund.status.in_(statuses),
    )
    if exclude_id is not None:
        query = query.where(Refund.id != exclude_id)
    return int(db.execute(query).scalar_one())


def total_refunded(db, order_id: str) -> int:
    """Sum of approved and processed refunds for an order."""
    return _sum(db, order_id, COUNTED)


def refundable_amount(db, order_id: str) -> int:
    order = get_order(db, order_id)
    return order.total_amount - total_refunded(db, order_id)


def list_refunds(db, order_id: str) -> list:
    get_order(db, order_id)
    return list(db.execute(
        select(Refund).where(Refund.order_id == order_id).order_by(Refund.created_at)
    ).scalars())


def _lock_for_refund(db, refund_id):
    refund = db.get(Refund, refund_id)
    if refund is None:
        raise RefundNotFound(refund_id)
    order = lock_order(db, refund.order_id)
    # Re-read under the order lock so a concurrent decision is visible.
    db.refresh(refund)
    return refund, order


def _require(refund: Refund, expected: RefundStatus, target: RefundStatus):
    if refund.status != expected.value:
        raise InvalidTransition(refund.status, target.value)


def _refresh_refund_state(db, order: Order):
    counted = total_refunded(db, order.id)
    if counted == 0:
        state = OrderRefundState.NONE
    elif counted >= order.total_amount:
        state = OrderRefundState.FULL
    else:
        state = OrderRefundState.PARTIAL
    order.refund_status = state.value


def create_refund(db, order_id: str, amount: int, reason: str, method: str) -> Refund:
    if not reason or not reason.strip():
        raise ValidationError("A refund reason is required")
    try:
        method = RefundMethod(method)
    except ValueError:
        raise ValidationError(f"Unknown refund method: {method!r}")

    order = lock_order(db, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    if order.status in NOT_REFUNDABLE:
        raise ValidationError(f"Cannot refund an order in status {order.status}")

    available = order.total_amount - total_refunded(db, order_id)
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount("Refund amount must be a positive integer in minor units")
    if amount > available:
        raise InvalidAmount(f"Refund amount {amount} exceeds refundable amount {available}")

    refund = Refund(
        order_id=order_id,
        amount=amount,
        reason=reason.strip(),
        method=method.value,
        status=RefundStatus.PENDING.value,
    )
    db.add(refund)
    db.flush()
    append_note(order, f"Refund {refund.id} requested: {amount} {order.currency} ({method.value})")
    logger.info("refund_created", refund_id=refund.id, order_id=order_id, amount=amount, method=method.value)
    return refund


def approve_refund(db, refund_id: str) -> Refund:
    refund, order = _lock_for_refund(db, refund_id)
    _require(refund, RefundStatus.PENDING, RefundStatus.APPROVED)

    committed = total_refunded(db, order.id)
    if committed + refund.amount > order.total_amount:
        logger.warning(
            "refund_over_allocation",
            refund_id=refund_id, order_id=order.id,
            committed=committed, amount=refund.amount, total=order.total_amount,
        )
        raise InvariantViolation(
            f"Approving {refund.amount} would refund {committed + refund.amount} "
            f"of an order totalling {order.total_amount}"
        )

    refund.status = RefundStatus.APPROVED.value
    db.flush()
    _refresh_refund_state(db, order)
    append_note(order, f"Refund {refund.id} approved")
    logger.info("refund_approved", refund_id=refund_id, order_id=order.id, amount=refund.amount)
    return refund


def decline_refund(db, refund_id: str) -> Refund:
    refund, order = _lock_for_refund(db, refund_id)
    _require(refund, RefundStatus.PENDING, RefundStatus.DECLINED)
    refund.status = RefundStatus.DECLINED.value
    append_note(order, f"Refund {refund.id} declined")
    logger.info("refund_declined", refund_id=refund_id, order_id=order.id)
    return refund


def process_refund(db, refund_id: str) -> Refund:
    """Execute an approved refund.

    ``original`` refunds go back through the payment provider; ``manual``
    and ``cash`` refunds are only recorded. When the processed total
    reaches the order total on a paid order, the order is cancelled.
    """
    refund, order = _lock_for_refund(db, refund_id)
    _require(refund, RefundStatus.APPROVED, RefundStatus.PROCESSED)

    others = _sum(db, order.id, COUNTED, exclude_id=refund.id)
    if others + refund.amount > order.total_amount:
        logger.warning(
            "refund_over_allocation",
            refund_id=refund_id, order_id=order.id,
            committed=others, amount=refund.amount, total=order.total_amount,
        )
        raise InvariantViolation(
            f"Processing {refund.amount} would refund {others + refund.amount} "
            f"of an order totalling {order.total_amount}"
        )

    if refund.method == RefundMethod.ORIGINAL.value:
        if not order.payment_reference:
            raise ValidationError("Order has no provider payment to refund against")
        # Money moves before the ledger commits. If the commit fails, the
        # refund stays approved and processing it again replays the same
        # idempotency key, so the provider returns the refund it already made.
        idempotency_key = f"refund-{refund.id}"
        result = refund_payment(order.payment_reference, refund.amount, idempotency_key=idempotency_key)
        refund.provider_refund_id = result.id
        logger.info(
            "provider_refund_executed",
            refund_id=refund_id, provider_refund_id=result.id, idempotency_key=idempotency_key,
        )

    refund.status = RefundStatus.PROCESSED.value
    db.flush()
    _refresh_refund_state(db, order)
    append_note(order, f"Refund {refund.id} processed")
    logger.info("refund_processed", refund_id=refund_id, order_id=order.id, amount=refund.amount, method=refund.method)

    processed = _sum(db, order.id, (RefundStatus.PROCESSED.value,))
    if processed >= order.total_amount and order.status == OrderStatus.PAID.value:
        new_status = apply_cancellation(order.status, "fully refunded")
        set_status(order, new_status, "Cancelled after full refund")
        logger.info("order_cancelled_after_refund", order_id=order.id)

    return refund
