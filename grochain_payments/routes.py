import json
import logging
import os
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from grochain_payments import paystack_service, reconciliation
from grochain_payments.auth import CurrentUser, require_privileged, verify_token
from grochain_payments.database import get_db
from grochain_payments.models import (
    Order,
    OrderItem,
    PaymentStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])
orders_router = APIRouter(prefix="/api/orders", tags=["orders"])

SUPPORTED_CHANNELS = ["card", "bank", "ussd", "qr", "mobile_money", "bank_transfer"]


class InitializePaymentRequest(BaseModel):
    order_id: str
    email: str
    callback_url: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = None


class OrderItemIn(BaseModel):
    listing_id: str
    quantity: int = Field(gt=0)
    price: int = Field(gt=0)
    unit: str = "kg"


class ShippingAddress(BaseModel):
    street: str
    city: str
    state: str
    postal_code: str
    country: str = "Nigeria"


class CheckoutRequest(BaseModel):
    items: List[OrderItemIn] = Field(min_length=1)
    shipping_address: ShippingAddress


def _load_order(db: Session, order_id: str, user: CurrentUser) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    if not user.is_privileged and order.buyer_id != user.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return order


@router.get("/config")
def payment_config():
    return {
        "status": "success",
        "data": {
            "public_key": os.getenv("PAYSTACK_PUBLIC_KEY"),
            "currency": "NGN",
            "supported_channels": SUPPORTED_CHANNELS,
            "platform_fee_rate": reconciliation.platform_fee_rate(),
        },
    }


@router.post("/initialize")
def initialize_order_payment(
    request: InitializePaymentRequest,
    user: CurrentUser = Depends(verify_token),
    db: Session = Depends(get_db),
):
    order = _load_order(db, request.order_id, user)

    if order.buyer_email.strip().lower() != request.email.strip().lower():
        logger.info("Email mismatch initialising payment for order %s", order.id)
        raise HTTPException(
            status_code=400,
            detail="Email mismatch: the email provided does not match the buyer's registered email",
        )
    if order.payment_status == PaymentStatus.PAID:
        raise HTTPException(status_code=409, detail="Order is already paid")
    if (order.payment_status not in reconciliation.PAYABLE_STATES
            or order.status in reconciliation.CLOSED_ORDER_STATES):
        raise HTTPException(status_code=409, detail="Order cannot be paid in its current state")

    reference = reconciliation.new_reference()
    callback_url = request.callback_url or f"{os.getenv('FRONTEND_URL', 'http://localhost:3000')}/payment/verify"

    # Nothing is stored when Paystack refuses or cannot be reached
    payment = paystack_service.initialize_transaction(
        request.email.strip(),
        order.total,
        reference,
        callback_url=callback_url,
        metadata={"order_id": order.id},
    )

    db.add(Transaction(
        type=TransactionType.PAYMENT,
        status=TransactionStatus.PENDING,
        amount=order.total,
        currency=order.currency,
        reference=reference,
        description=f"Payment for order {order.id}",
        order_id=order.id,
        user_id=order.buyer_id,
        payment_provider="paystack",
        meta={"order_id": order.id, "callback_url": callback_url},
    ))
    db.commit()
    logger.info("Initialised payment %s for order %s", reference, order.id)

    return {
        "status": "success",
        "data": {
            "authorization_url": payment.get("authorization_url"),
            "access_code": payment.get("access_code"),
            "reference": reference,
        },
    }


@router.post("/verify")
async def verify_payment_webhook(
    request: Request,
    x_paystack_signature: str = Header(None),
    db: Session = Depends(get_db),
):
    payload = await request.body()

    if not paystack_service.verify_signature(payload, x_paystack_signature):
        logger.warning("Rejected webhook with missing or invalid signature")
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    try:
        body = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")

    event = body.get("event") if isinstance(body, dict) else None
    data = body.get("data") if isinstance(body, dict) else None
    if not event or not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")

    logger.info("Paystack webhook %s for %s", event, data.get("reference") or data.get("transaction_reference"))

    # Paystack and database calls block, keep them off the event loop
    return await run_in_threadpool(handle_webhook_event, db, event, data)


def handle_webhook_event(db: Session, event: str, data: dict):
    if event == "charge.success":
        reference = data.get("reference")
        if not reference:
            raise HTTPException(status_code=400, detail="Invalid payload")

        tx = db.query(Transaction).filter_by(reference=reference, type=TransactionType.PAYMENT).first()
        if tx is None:
            logger.warning("Webhook for unknown reference %s acknowledged", reference)
            return {"status": "success", "message": "Unknown reference", "outcome": reconciliation.UNKNOWN}
        if tx.status == TransactionStatus.COMPLETED:
            return {"status": "success", "message": "Already processed"}

        # The webhook body is only a hint, Paystack's verify endpoint is authoritative
        verification = paystack_service.verify_transaction(reference)
        outcome = reconciliation.complete_payment(db, reference, verification, source="webhook")
        return {"status": "success", "message": "Webhook processed", "outcome": outcome}

    if event == "refund.processed":
        outcome = reconciliation.complete_refund(db, data.get("transaction_reference"))
        return {"status": "success", "message": "Webhook processed", "outcome": outcome}

    if event == "refund.failed":
        outcome = reconciliation.fail_refund(
            db, data.get("transaction_reference"), data.get("merchant_note") or data.get("status"),
        )
        return {"status": "success", "message": "Webhook processed", "outcome": outcome}

    return {"status": "success", "message": f"Ignored event {event}"}


@router.get("/verify/{reference}")
def verify_payment(
    reference: str,
    user: CurrentUser = Depends(verify_token),
    db: Session = Depends(get_db),
):
    tx = db.query(Transaction).filter_by(reference=reference, type=TransactionType.PAYMENT).first()
    if tx is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    if not user.is_privileged and tx.user_id != user.id:
        raise HTTPException(status_code=403, detail="Forbidden")

    tx, outcome = reconciliation.verify_reference(db, reference)
    return {"status": "success", "data": {"transaction": tx.to_dict(), "outcome": outcome}}


@router.post("/orders/{order_id}/refund")
def refund_order(
    order_id: str,
    request: RefundRequest,
    user: CurrentUser = Depends(verify_token),
    db: Session = Depends(get_db),
):
    require_privileged(user)
    refund = reconciliation.refund_order(db, order_id, amount=request.amount, reason=request.reason)
    return {"status": "success", "data": {"refund": refund.to_dict(), "message": "Refund initiated"}}


@router.get("/transactions")
def transaction_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    type: Optional[str] = None,
    status: Optional[str] = None,
    user: CurrentUser = Depends(verify_token),
    db: Session = Depends(get_db),
):
    query = db.query(Transaction).filter(Transaction.user_id == user.id)
    if type:
        query = query.filter(Transaction.type == type)
    if status:
        query = query.filter(Transaction.status == status)

    total = query.count()
    transactions = (
        query.order_by(Transaction.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "status": "success",
        "data": {
            "transactions": [tx.to_dict() for tx in transactions],
            "pagination": {
                "current_page": page,
                "total_pages": (total + limit - 1) // limit,
                "total_items": total,
                "items_per_page": limit,
            },
        },
    }


@router.post("/orders/{order_id}/sync")
def sync_order_status(
    order_id: str,
    user: CurrentUser = Depends(verify_token),
    db: Session = Depends(get_db),
):
    _load_order(db, order_id, user)
    order, changed = reconciliation.sync_order(db, order_id)
    message = "Order status synchronised" if changed else "Order status already synchronised"
    return {"status": "success", "message": message, "data": {"order": order.to_dict(), "changed": changed}}


@router.post("/sync")
def bulk_sync_orders(
    limit: int = Query(100, ge=1, le=500),
    user: CurrentUser = Depends(verify_token),
    db: Session = Depends(get_db),
):
    require_privileged(user)
    summary = reconciliation.bulk_sync(db, limit=limit)
    return {"status": "success", "message": "Bulk synchronisation completed", "data": summary}


@orders_router.post("", status_code=201)
def create_order(
    request: CheckoutRequest,
    user: CurrentUser = Depends(verify_token),
    db: Session = Depends(get_db),
):
    if not user.email:
        raise HTTPException(status_code=400, detail="Buyer email is required")

    order = Order(
        buyer_id=user.id,
        buyer_email=user.email,
        shipping_address=request.shipping_address.model_dump(),
        total=sum(item.price * item.quantity for item in request.items),
        items=[OrderItem(**item.model_dump()) for item in request.items],
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    logger.info("Order %s created for buyer %s", order.id, user.id)
    return {"status": "success", "data": {"order": order.to_dict()}}


@orders_router.get("/{order_id}")
def get_order(
    order_id: str,
    user: CurrentUser = Depends(verify_token),
    db: Session = Depends(get_db),
):
    order = _load_order(db, order_id, user)
    return {"status": "success", "data": {"order": order.to_dict()}}
