from typing import List, Optional

import stripe
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from storefront.auth import verify_token
from storefront.database import SessionLocal
from storefront.errors import (
    AuthenticationError,
    ConfigurationError,
    InvalidTransition,
    InvariantViolation,
    OrderNotFound,
    PersistenceFailure,
    ProviderError,
    RefundNotFound,
    StorefrontError,
    ValidationError,
)
from storefront.logging_config import get_logger
from storefront.models import OrderStatus, PaymentMethod
from storefront.notifications import OrderSnapshot, get_dispatcher
from storefront.orders import create_order, find_for_customer, get_order, lock_order, set_status
from storefront.refunds import (
    approve_refund,
    create_refund,
    decline_refund,
    list_refunds,
    process_refund,
    refundable_amount,
    total_refunded,
)
from storefront.state_machine import apply_cancellation, apply_fulfilment, apply_payment_succeeded
from storefront.stripe_service import create_payment

logger = get_logger(__name__)

router = APIRouter()

STATUS_CODES = [
    (AuthenticationError, 400),
    (ValidationError, 400),
    (OrderNotFound, 404),
    (RefundNotFound, 404),
    (InvalidTransition, 409),
    (InvariantViolation, 409),
    (ProviderError, 502),
    (ConfigurationError, 500),
    (PersistenceFailure, 500),
]


def raise_http(exc: StorefrontError):
    for error_type, status_code in STATUS_CODES:
        if isinstance(exc, error_type):
            raise HTTPException(status_code=status_code, detail=str(exc))
    raise HTTPException(status_code=500, detail="Internal error")


class ItemRequest(BaseModel):
    product_id: str
    unit_price: int
    quantity: int
    name: str = ""


class OrderRequest(BaseModel):
    customer_email: str
    customer_name: str = ""
    items: List[ItemRequest]
    currency: str = "EUR"
    payment_method: str = PaymentMethod.CARD.value
    total_amount: Optional[int] = None


class RefundRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId")
    amount: int
    reason: str
    method: str = "original"


class TrackRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId")
    email: str


class StatusUpdate(BaseModel):
    status: str
    reason: str = ""


def order_view(order, include_notes=False):
    view = {
        "id": order.id,
        "status": order.status,
        "total_amount": order.total_amount,
        "currency": order.currency,
        "payment_method": order.payment_method,
        "refund_status": order.refund_status,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "items": [
            {
                "product_id": item.product_id,
                "name": item.product_name,
                "unit_price": item.unit_price,
                "quantity": item.quantity,
                "subtotal": item.subtotal,
            }
            for item in order.items
        ],
    }
    if include_notes:
        view["payment_reference"] = order.payment_reference
        view["notes"] = order.notes
    return view


def refund_view(refund):
    return {
        "id": refund.id,
        "order_id": refund.order_id,
        "amount": refund.amount,
        "reason": refund.reason,
        "method": refund.method,
        "status": refund.status,
        "created_at": refund.created_at.isoformat() if refund.created_at else None,
    }


@router.post("/orders")
def create_order_api(request: OrderRequest, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        order = create_order(
            db,
            customer_email=request.customer_email,
            items=[item.model_dump() for item in request.items],
            currency=request.currency,
            payment_method=request.payment_method,
            customer_name=request.customer_name,
            expected_total=request.total_amount,
        )
        client_secret = None
        if order.payment_method == PaymentMethod.CARD.value:
            try:
                intent = create_payment(order)
            except stripe.StripeError as exc:
                logger.error("payment_intent_failed", order_id=order.id, error=type(exc).__name__)
                raise ProviderError("Could not start the card payment") from exc
            client_secret = intent.client_secret
        db.commit()
        return {"order": order_view(order), "client_secret": client_secret}
    except StorefrontError as exc:
        db.rollback()
        raise_http(exc)
    finally:
        db.close()


@router.post("/orders/track")
def track_order(request: TrackRequest):
    db = SessionLocal()
    try:
        order = find_for_customer(db, request.order_id, request.email)
        return {"order": order_view(order)}
    except AuthenticationError as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    except StorefrontError as exc:
        raise_http(exc)
    finally:
        db.close()


@router.patch("/admin/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    request: StatusUpdate,
    background_tasks: BackgroundTasks,
    auth=Depends(verify_token),
):
    db = SessionLocal()
    try:
        order = lock_order(db, order_id)
        if order is None:
            raise OrderNotFound(order_id)

        if request.status == OrderStatus.PAID.value:
            new_status = apply_payment_succeeded(order.status)
            note = f"Payment confirmed by {auth}"
        elif request.status == OrderStatus.CANCELLED.value:
            new_status = apply_cancellation(order.status, request.reason)
            note = f"Cancelled by {auth}: {request.reason.strip()}"
        else:
            new_status = apply_fulfilment(order.status, request.status)
            note = None

        changed = set_status(order, new_status, note)
        snapshot = OrderSnapshot.from_order(order)
        db.commit()
        logger.info("order_status_updated", order_id=order_id, status=new_status.value, operator=auth)
    except StorefrontError as exc:
        db.rollback()
        raise_http(exc)
    finally:
        db.close()

    if changed:
        dispatcher = get_dispatcher()
        if new_status == OrderStatus.PAID:
            background_tasks.add_task(dispatcher.payment_confirmed, snapshot)
        else:
            background_tasks.add_task(dispatcher.status_changed, snapshot)
    return {"order_id": order_id, "status": new_status.value, "changed": changed}


@router.get("/admin/orders/{order_id}")
def get_order_api(order_id: str, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        return {"order": order_view(get_order(db, order_id), include_notes=True)}
    except StorefrontError as exc:
        raise_http(exc)
    finally:
        db.close()


@router.post("/refunds")
def create_refund_api(request: RefundRequest, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        refund = create_refund(db, request.order_id, request.amount, request.reason, request.method)
        db.commit()
        return {"refund": refund_view(refund)}
    except StorefrontError as exc:
        db.rollback()
        raise_http(exc)
    finally:
        db.close()


def _decide(refund_id, operation, decision, background_tasks):
    db = SessionLocal()
    try:
        refund = operation(db, refund_id)
        snapshot = OrderSnapshot.from_order(refund.order)
        view = refund_view(refund)
        db.commit()
    except StorefrontError as exc:
        db.rollback()
        raise_http(exc)
    finally:
        db.close()

    background_tasks.add_task(get_dispatcher().refund_decided, snapshot, view["amount"], decision)
    return {"refund": view}


@router.post("/refunds/{refund_id}/approve")
def approve_refund_api(refund_id: str, background_tasks: BackgroundTasks, auth=Depends(verify_token)):
    return _decide(refund_id, approve_refund, "approved", background_tasks)


@router.post("/refunds/{refund_id}/decline")
def decline_refund_api(refund_id: str, background_tasks: BackgroundTasks, auth=Depends(verify_token)):
    return _decide(refund_id, decline_refund, "declined", background_tasks)


@router.post("/refunds/{refund_id}/process")
def process_refund_api(refund_id: str, background_tasks: BackgroundTasks, auth=Depends(verify_token)):
    return _decide(refund_id, process_refund, "processed", background_tasks)


@router.get("/orders/{order_id}/refunds")
def list_refunds_api(order_id: str, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        refunds = list_refunds(db, order_id)
        return {
            "refunds": [refund_view(refund) for refund in refunds],
            "total_refunded": total_refunded(db, order_id),
            "refundable_amount": refundable_amount(db, order_id),
        }
    except StorefrontError as exc:
        raise_http(exc)
    finally:
        db.close()
