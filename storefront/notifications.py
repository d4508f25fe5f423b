"""Best-effort customer and operator notifications.

Dispatch happens after the order transaction has committed, from a
background task, using a snapshot of the order rather than a live ORM
object. Each message is sent independently: a failed send is logged as
a NotificationFailure and never propagates.
"""
from dataclasses import dataclass, field
from typing import List

import httpx

from storefront.config import settings
from storefront.errors import NotificationFailure
from storefront.logging_config import get_logger

logger = get_logger(__name__)


def format_amount(amount: int, currency: str) -> str:
    return f"{amount / 100:.2f} {currency}"


@dataclass(frozen=True)
class OrderSnapshot:
    id: str
    customer_email: str
    customer_name: str
    status: str
    total_amount: int
    currency: str
    payment_method: str
    items: List[tuple] = field(default_factory=list)

    @classmethod
    def from_order(cls, order):
        return cls(
            id=order.id,
            customer_email=order.customer_email,
            customer_name=order.customer_name or "",
            status=order.status,
            total_amount=order.total_amount,
            currency=order.currency,
            payment_method=order.payment_method,
            items=[(i.product_name or i.product_id, i.quantity, i.subtotal) for i in order.items],
        )


@dataclass(frozen=True)
class Message:
    to: str
    subject: str
    text: str


def _item_lines(snapshot):
    return "\n".join(
        f"- {name} x {quantity}: {format_amount(subtotal, snapshot.currency)}"
        for name, quantity, subtotal in snapshot.items
    )


def render_payment_confirmed(snapshot: OrderSnapshot) -> Message:
    greeting = f"Hello {snapshot.customer_name}," if snapshot.customer_name else "Hello,"
    return Message(
        to=snapshot.customer_email,
        subject=f"Payment confirmed for order {snapshot.id}",
        text=(
            f"{greeting}\n\n"
            f"We have received your payment for order {snapshot.id}.\n\n"
            f"{_item_lines(snapshot)}\n\n"
            f"Total: {format_amount(snapshot.total_amount, snapshot.currency)}\n"
        ),
    )


def render_payment_received(snapshot: OrderSnapshot, inbox: str) -> Message:
    return Message(
        to=inbox,
        subject=f"New paid order {snapshot.id}",
        text=(
            f"Order {snapshot.id} has been paid ({snapshot.payment_method}).\n"
            f"Customer: {snapshot.customer_name} <{snapshot.customer_email}>\n\n"
            f"{_item_lines(snapshot)}\n\n"
            f"Total: {format_amount(snapshot.total_amount, snapshot.currency)}\n"
        ),
    )


def render_status_update(snapshot: OrderSnapshot) -> Message:
    label = snapshot.status.replace("_", " ")
    return Message(
        to=snapshot.customer_email,
        subject=f"Order {snapshot.id} is now {label}",
        text=f"Your order {snapshot.id} is now {label}.\n",
    )


def render_refund_decision(snapshot: OrderSnapshot, amount: int, decision: str) -> Message:
    return Message(
        to=snapshot.customer_email,
        subject=f"Refund {decision} for order {snapshot.id}",
        text=(
            f"Your refund of {format_amount(amount, snapshot.currency)} "
            f"for order {snapshot.id} has been {decision}.\n"
        ),
    )


class EmailTransport:
    """Sends plain-text mail through an HTTPS email API."""

    def __init__(self, api_url: str, api_key: str, sender: str, timeout: float):
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout

    def send(self, message: Message) -> bool:
        if not self.api_url:
            logger.info("email_skipped", to=message.to, subject=message.subject)
            return False

        payload = {
            "from": self.sender,
            "to": [message.to],
            "subject": message.subject,
            "text": message.text,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.api_url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NotificationFailure(f"{type(exc).__name__} sending '{message.subject}'") from exc
        return True


class NotificationDispatcher:
    def __init__(self, transport: EmailTransport, admin_email: str):
        self.transport = transport
        self.admin_email = admin_email

    def _deliver(self, kind: str, order_id: str, message: Message) -> bool:
        try:
            sent = self.transport.send(message)
        except NotificationFailure as exc:
            logger.error("notification_failed", kind=kind, order_id=order_id, error=str(exc))
            return False
        if sent:
            logger.info("notification_sent", kind=kind, order_id=order_id)
        return sent

    def payment_confirmed(self, snapshot: OrderSnapshot) -> dict:
        return {
            "customer": self._deliver("payment_confirmed", snapshot.id, render_payment_confirmed(snapshot)),
            "admin": self._deliver(
                "payment_received", snapshot.id, render_payment_received(snapshot, self.admin_email)
            ),
        }

    def status_changed(self, snapshot: OrderSnapshot) -> dict:
        return {"customer": self._deliver("status_update", snapshot.id, render_status_update(snapshot))}

    def refund_decided(self, snapshot: OrderSnapshot, amount: int, decision: str) -> dict:
        return {
            "customer": self._deliver(
                "refund_decision", snapshot.id, render_refund_decision(snapshot, amount, decision)
            ),
        }


def get_dispatcher() -> NotificationDispatcher:
    transport = EmailTransport(
        api_url=settings.email_api_url,
        api_key=settings.email_api_key,
        sender=settings.email_from,
        timeout=settings.notification_timeout,
    )
    return NotificationDispatcher(transport, settings.admin_email)
