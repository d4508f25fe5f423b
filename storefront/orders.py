"""Order store: creation, row-locked reads and audit notes."""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select

from storefront.errors import AuthenticationError, OrderNotFound, ValidationError
from storefront.logging_config import get_logger
from storefront.models import Order, OrderItem, OrderStatus, PaymentMethod

logger = get_logger(__name__)


def create_order(
    db,
    customer_email: str,
    items: list,
    currency: str = "EUR",
    payment_method: str = PaymentMethod.CARD.value,
    customer_name: str = "",
    expected_total: Optional[int] = None,
    order_id: Optional[str] = None,
) -> Order:
    """Create an order in ``pending_payment`` from its item lines.

    ``items`` is a sequence of mappings with ``product_id``, ``unit_price``
    (minor units), ``quantity`` and an optional ``name``. The order total is
    the sum of the line subtotals; when ``expected_total`` is given it must
    match. The caller commits.
    """
    if not customer_email or "@" not in customer_email:
        raise ValidationError("A valid customer email is required")
    if not items:
        raise ValidationError("An order needs at least one item")
    if not currency or len(currency) != 3:
        raise ValidationError(f"Invalid currency code: {currency!r}")
    try:
        method = PaymentMethod(payment_method)
    except ValueError:
        raise ValidationError(f"Unknown payment method: {payment_method!r}")

    lines = []
    for position, item in enumerate(items):
        unit_price = int(item["unit_price"])
        quantity = int(item["quantity"])
        if unit_price < 0:
            raise ValidationError(f"Line {position}: unit price cannot be negative")
        if quantity <= 0:
            raise ValidationError(f"Line {position}: quantity must be positive")
        lines.append(OrderItem(
            position=position,
            product_id=str(item["product_id"]),
            product_name=item.get("name", ""),
            unit_price=unit_price,
            quantity=quantity,
            subtotal=unit_price * quantity,
        ))

    total = sum(line.subtotal for line in lines)
    if expected_total is not None and expected_total != total:
        raise ValidationError(
            f"Order total {expected_total} does not match item subtotals {total}"
        )

    order = Order(
        customer_email=customer_email,
        customer_name=customer_name,
        status=OrderStatus.PENDING_PAYMENT.value,
        total_amount=total,
        currency=currency.upper(),
        payment_method=method.value,
        items=lines,
    )
    if order_id:
        order.id = order_id
    db.add(order)
    db.flush()
    logger.info("order_created", order_id=order.id, total_amount=total, payment_method=method.value)
    return order


def get_order(db, order_id: str) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order


def lock_order(db, order_id: str) -> Optional[Order]:
    """Load an order holding a row lock until the transaction ends.

    Pending changes are flushed first; the row is then re-read so the
    caller never acts on a stale copy from the identity map.
    """
    db.flush()
    return db.execute(
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def append_note(order: Order, line: str) -> None:
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    entry = f"[{stamp}] {line}"
    order.notes = f"{order.notes}\n{entry}" if order.notes else entry


def set_status(order: Order, status: OrderStatus, note: str = None) -> bool:
    """Write a status produced by the state machine. Returns True if it changed."""
    if order.status == status.value:
        return False
    previous = order.status
    order.status = status.value
    append_note(order, note or f"Status {previous} -> {status.value}")
    return True


def find_for_customer(db, order_id: str, email: str) -> Order:
    """Return the order only if ``email`` matches the one stored on it."""
    order = get_order(db, order_id)
    if (order.customer_email or "").strip().lower() != (email or "").strip().lower():
        logger.info("order_lookup_email_mismatch", order_id=order_id)
        raise AuthenticationError("Email does not match this order")
    return order
