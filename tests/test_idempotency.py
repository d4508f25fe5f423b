import threading
import time

import pytest
from sqlalchemy import func, select

from storefront import idempotency
from storefront.errors import AlreadyProcessed
from storefront.idempotency import GuardDecision
from storefront.models import EventKind, Order, PaymentEvent
from storefront.webhooks import InboundEvent, WebhookOutcome, handle_event


def _count_events(session):
    return session.execute(select(func.count(PaymentEvent.id))).scalar_one()


def test_check_proceeds_and_locks_existing_order(db, make_order):
    make_order("ord_1")
    result = idempotency.check(db, "evt_a", "ord_1")
    assert result.decision == GuardDecision.PROCEED
    assert result.order.id == "ord_1"


def test_check_reports_missing_order(db):
    result = idempotency.check(db, "evt_a", "ord_elsewhere")
    assert result.decision == GuardDecision.ORDER_NOT_FOUND
    assert result.order is None


def test_check_reports_recorded_event(db, make_order):
    make_order("ord_1")
    idempotency.record(db, "evt_a", "ord_1", "session_completed")
    db.commit()

    assert idempotency.check(db, "evt_a", "ord_1").decision == GuardDecision.ALREADY_PROCESSED


def test_unique_insert_is_the_gate(session_factory, make_order):
    make_order("ord_1")
    first, second = session_factory(), session_factory()
    try:
        idempotency.record(first, "evt_a", "ord_1", "session_completed")
        first.commit()

        # A delivery that got past the early check still cannot insert twice.
        with pytest.raises(AlreadyProcessed):
            idempotency.record(second, "evt_a", "ord_1", "session_completed")
        assert _count_events(second) == 1
    finally:
        first.close()
        second.close()


def test_distinct_events_racing_on_one_order_pay_it_once(session_factory, make_order, mocker):
    """session_completed and intent_succeeded delivered concurrently."""
    make_order("ord_1")
    session_event = InboundEvent("evt_session", "checkout.session.completed",
                                 EventKind.SESSION_COMPLETED, "ord_1", "pi_123")
    intent_event = InboundEvent("evt_intent", "payment_intent.succeeded",
                                EventKind.INTENT_SUCCEEDED, "ord_1", "pi_123")

    real_record = idempotency.record
    session_inside = threading.Event()
    results, errors = {}, []

    def slow_record(db, provider_event_id, order_id, kind):
        row = real_record(db, provider_event_id, order_id, kind)
        if provider_event_id == "evt_session":
            # Hold the transaction open while the rival delivery arrives.
            session_inside.set()
            time.sleep(0.3)
        return row

    mocker.patch("storefront.idempotency.record", side_effect=slow_record)

    def deliver(name, event, wait_for=None):
        if wait_for is not None:
            wait_for.wait(5)
        db = session_factory()
        try:
            results[name] = handle_event(db, event)
        except Exception as exc:
            errors.append(exc)
        finally:
            db.close()

    threads = [
        threading.Thread(target=deliver, args=("session", session_event)),
        threading.Thread(target=deliver, args=("intent", intent_event, session_inside)),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    assert errors == []
    assert results["session"].outcome == WebhookOutcome.PROCESSED
    assert results["session"].notify is not None
    assert results["intent"].outcome == WebhookOutcome.NO_CHANGE
    assert results["intent"].notify is None

    check = session_factory()
    assert check.get(Order, "ord_1").status == "paid"
    assert _count_events(check) == 2
    check.close()
