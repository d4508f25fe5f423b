"""Order status transitions.

Every function here is a pure mapping of (current status, event) to the
next status. Nothing is persisted; callers write the result in the same
transaction that records the triggering event.
"""
from storefront.errors import InvalidTransition, ValidationError
from storefront.models import OrderStatus

ALLOWED = {
    OrderStatus.PENDING_PAYMENT: {OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.PREPARING, OrderStatus.CANCELLED},
    OrderStatus.PREPARING: {OrderStatus.SHIPPED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

FULFILMENT = (OrderStatus.PREPARING, OrderStatus.SHIPPED, OrderStatus.DELIVERED)


def _status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown order status: {value!r}")


def can_transition(current, target) -> bool:
    return _status(target) in ALLOWED[_status(current)]


def apply_payment_succeeded(current) -> OrderStatus:
    """pending_payment -> paid. A repeated success on a paid order is a no-op."""
    current = _status(current)
    if current == OrderStatus.PAID:
        return current
    if current != OrderStatus.PENDING_PAYMENT:
        raise InvalidTransition(current.value, OrderStatus.PAID.value)
    return OrderStatus.PAID


def apply_payment_failed(current) -> OrderStatus:
    # Informational only: cancelling an unpaid order is a human decision.
    return _status(current)


def apply_cancellation(current, reason: str) -> OrderStatus:
    if not reason or not reason.strip():
        raise ValidationError("A cancellation reason is required")
    current = _status(current)
    if OrderStatus.CANCELLED not in ALLOWED[current]:
        raise InvalidTransition(current.value, OrderStatus.CANCELLED.value)
    return OrderStatus.CANCELLED


def apply_fulfilment(current, target) -> OrderStatus:
    """Advance along paid -> preparing -> shipped -> delivered, one step at a time."""
    current, target = _status(current), _status(target)
    if target not in FULFILMENT:
        raise ValidationError(f"{target.value} is not a fulfilment status")
    if target not in ALLOWED[current]:
        raise InvalidTransition(current.value, target.value)
    return target
