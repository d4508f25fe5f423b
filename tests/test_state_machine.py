import pytest

from storefront.errors import InvalidTransition, ValidationError
from storefront.models import OrderStatus
from storefront.state_machine import (
    apply_cancellation,
    apply_fulfilment,
    apply_payment_failed,
    apply_payment_succeeded,
    can_transition,
)


def test_payment_succeeded_moves_pending_to_paid():
    assert apply_payment_succeeded("pending_payment") == OrderStatus.PAID


def test_payment_succeeded_on_paid_is_noop():
    assert apply_payment_succeeded(OrderStatus.PAID) == OrderStatus.PAID


@pytest.mark.parametrize("status", ["preparing", "shipped", "delivered", "cancelled"])
def test_payment_succeeded_rejected_after_payment_stage(status):
    with pytest.raises(InvalidTransition) as excinfo:
        apply_payment_succeeded(status)
    assert excinfo.value.current == status
    assert excinfo.value.target == "paid"


def test_payment_failed_never_changes_status():
    assert apply_payment_failed("pending_payment") == OrderStatus.PENDING_PAYMENT
    assert apply_payment_failed("paid") == OrderStatus.PAID


@pytest.mark.parametrize("status", ["pending_payment", "paid"])
def test_cancellation_allowed_before_fulfilment(status):
    assert apply_cancellation(status, "customer request") == OrderStatus.CANCELLED


@pytest.mark.parametrize("status", ["preparing", "shipped", "delivered", "cancelled"])
def test_cancellation_rejected_once_fulfilment_started(status):
    with pytest.raises(InvalidTransition):
        apply_cancellation(status, "too late")


def test_cancellation_requires_reason():
    with pytest.raises(ValidationError):
        apply_cancellation("paid", "  ")


def test_fulfilment_steps_forward_one_at_a_time():
    assert apply_fulfilment("paid", "preparing") == OrderStatus.PREPARING
    assert apply_fulfilment("preparing", "shipped") == OrderStatus.SHIPPED
    assert apply_fulfilment("shipped", "delivered") == OrderStatus.DELIVERED

    with pytest.raises(InvalidTransition):
        apply_fulfilment("paid", "shipped")
    with pytest.raises(InvalidTransition):
        apply_fulfilment("pending_payment", "preparing")


def test_fulfilment_rejects_non_fulfilment_targets():
    with pytest.raises(ValidationError):
        apply_fulfilment("paid", "cancelled")
    with pytest.raises(ValidationError):
        apply_fulfilment("paid", "lost")


def test_can_transition_table():
    assert can_transition("pending_payment", "paid")
    assert can_transition("paid", "cancelled")
    assert not can_transition("delivered", "cancelled")
    assert not can_transition("shipped", "paid")
