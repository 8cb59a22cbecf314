"""
Order/Transaction reconciliation against Paystack.

Every write that touches both an Order and its Transactions goes through this
module and is committed as one unit, so an interrupted request can no longer
leave a completed payment next to an unpaid order.
"""
import logging
import os
import uuid

from sqlalchemy import case

from grochain_payments import paystack_service
from grochain_payments.models import (
    Order,
    OrderStatus,
    PaymentStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    utcnow,
)

logger = logging.getLogger(__name__)

# Paystack verification states that end a payment attempt without money moving
FAILED_STATES = {"failed", "abandoned", "reversed"}

# A failed attempt can still turn into a success on Paystack's side
COMPLETABLE_STATES = (TransactionStatus.PENDING, TransactionStatus.FAILED)

# Orders in these payment states may take a new payment
PAYABLE_STATES = (PaymentStatus.PENDING, PaymentStatus.FAILED)
CLOSED_ORDER_STATES = (OrderStatus.CANCELLED, OrderStatus.REFUNDED)

VERIFICATION_FIELDS = ("status", "amount", "currency", "paid_at", "channel", "gateway_response")

COMPLETED = "completed"
ALREADY_PROCESSED = "already_processed"
UNKNOWN = "unknown"
FAILED = "failed"
PENDING = "pending"
MISMATCH = "mismatch"
DUPLICATE = "duplicate"


class ReconciliationError(Exception):
    pass


class OrderNotFound(ReconciliationError):
    pass


class TransactionNotFound(ReconciliationError):
    pass


class InvalidOrderState(ReconciliationError):
    pass


def new_reference(prefix="GROCHAIN"):
    return f"{prefix}_{uuid.uuid4().hex}"


def platform_fee_rate():
    return float(os.getenv("PLATFORM_FEE_RATE", "0.03"))


def _summary(verification: dict) -> dict:
    return {k: verification.get(k) for k in VERIFICATION_FIELDS if k in verification}


def _with_meta(tx: Transaction, **extra) -> dict:
    return {**(tx.meta or {}), **extra}


def completed_payment_for(db, order_id, exclude_id=None):
    query = db.query(Transaction).filter(
        Transaction.order_id == order_id,
        Transaction.type == TransactionType.PAYMENT,
        Transaction.status == TransactionStatus.COMPLETED,
    )
    if exclude_id is not None:
        query = query.filter(Transaction.id != exclude_id)
    return query.first()


def _record_platform_fee(db, order: Order, reference: str):
    fee_reference = f"PLATFORM_FEE_{reference}"
    if db.query(Transaction).filter_by(reference=fee_reference).first():
        return None

    rate = platform_fee_rate()
    amount = round(order.total * rate)
    if amount <= 0:
        return None

    fee = Transaction(
        type=TransactionType.PLATFORM_FEE,
        status=TransactionStatus.COMPLETED,
        amount=amount,
        currency=order.currency,
        reference=fee_reference,
        description=f"Platform fee for order {order.id}",
        order_id=order.id,
        user_id=order.buyer_id,
        payment_provider="system",
        payment_provider_reference=reference,
        processed_at=utcnow(),
        meta={"original_reference": reference, "rate": rate},
    )
    db.add(fee)
    return fee


def _apply_verification(db, reference: str, verification: dict, source: str) -> str:
    tx = db.query(Transaction).filter_by(reference=reference, type=TransactionType.PAYMENT).first()
    if tx is None:
        logger.warning("No payment transaction for reference %s (%s)", reference, source)
        return UNKNOWN

    if tx.status not in COMPLETABLE_STATES:
        return ALREADY_PROCESSED

    status = verification.get("status")
    if status != "success":
        if status in FAILED_STATES:
            tx.status = TransactionStatus.FAILED
            tx.meta = _with_meta(tx, verification=_summary(verification), source=source)
            logger.info("Payment %s ended as %s", reference, status)
            return FAILED
        return PENDING

    amount = verification.get("amount")
    currency = (verification.get("currency") or tx.currency).upper()
    if amount != tx.amount or currency != tx.currency:
        tx.status = TransactionStatus.FAILED
        tx.meta = _with_meta(
            tx,
            verification=_summary(verification),
            mismatch={"expected": [tx.amount, tx.currency], "received": [amount, currency]},
            source=source,
        )
        logger.error(
            "Payment %s does not match its transaction: expected %s %s, got %s %s",
            reference, tx.amount, tx.currency, amount, currency,
        )
        return MISMATCH

    order = None
    if tx.order_id:
        # Row lock serialises payments racing for the same order
        order = (
            db.query(Order)
            .filter(Order.id == tx.order_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )

    if order is not None:
        other = completed_payment_for(db, order.id, exclude_id=tx.id)
        if other is not None:
            return _cancel_duplicate(tx, order, verification, other.reference)

    # Guarded update: a concurrent delivery of the same event completes nothing
    updated = (
        db.query(Transaction)
        .filter(Transaction.id == tx.id, Transaction.status.in_(COMPLETABLE_STATES))
        .update(
            {
                Transaction.status: TransactionStatus.COMPLETED,
                Transaction.processed_at: utcnow(),
                Transaction.payment_provider_reference: verification.get("reference") or reference,
                Transaction.meta: _with_meta(tx, verification=_summary(verification), source=source),
            },
            synchronize_session="fetch",
        )
    )
    if not updated:
        return ALREADY_PROCESSED

    if order is None:
        logger.warning("Payment %s completed without an order", reference)
        return COMPLETED

    previous_status = order.status
    # Only one payment can move the order out of a payable state
    claimed = (
        db.query(Order)
        .filter(
            Order.id == order.id,
            Order.payment_status.in_(PAYABLE_STATES),
            Order.status.notin_(CLOSED_ORDER_STATES),
        )
        .update(
            {
                Order.payment_status: PaymentStatus.PAID,
                Order.payment_reference: reference,
                Order.status: case(
                    (Order.status == OrderStatus.PENDING, OrderStatus.PAID),
                    else_=Order.status,
                ),
                Order.updated_at: utcnow(),
            },
            synchronize_session="fetch",
        )
    )
    if not claimed:
        db.refresh(order)
        return _cancel_duplicate(tx, order, verification, order.payment_reference)

    if previous_status != OrderStatus.PENDING:
        logger.warning("Order %s paid while %s", order.id, previous_status)
    _record_platform_fee(db, order, reference)
    return COMPLETED


def _cancel_duplicate(tx: Transaction, order: Order, verification: dict, paid_by: str) -> str:
    tx.status = TransactionStatus.CANCELLED
    tx.processed_at = None
    tx.meta = _with_meta(tx, verification=_summary(verification), duplicate_of=paid_by)
    logger.error(
        "Order %s is not payable (paid by %s, %s); payment %s needs a manual refund",
        order.id, paid_by, order.status, tx.reference,
    )
    return DUPLICATE


def complete_payment(db, reference: str, verification: dict, source: str = "webhook") -> str:
    """
    Apply a Paystack verification result to the payment transaction behind
    ``reference`` and to its order.

    Safe to call any number of times for the same reference. Returns one of
    the outcome constants of this module.
    """
    try:
        outcome = _apply_verification(db, reference, verification, source)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Reconciled %s via %s: %s", reference, source, outcome)
    return outcome


def verify_reference(db, reference: str, source: str = "manual"):
    """Ask Paystack about ``reference`` and reconcile. Returns (transaction, outcome)."""
    tx = db.query(Transaction).filter_by(reference=reference, type=TransactionType.PAYMENT).first()
    if tx is None:
        raise TransactionNotFound(reference)
    if tx.status == TransactionStatus.COMPLETED:
        return tx, ALREADY_PROCESSED

    verification = paystack_service.verify_transaction(reference)
    outcome = complete_payment(db, reference, verification, source=source)
    db.refresh(tx)
    return tx, outcome


def sync_order(db, order_id: str):
    """Mark an order paid when a completed payment exists for it. Returns (order, changed)."""
    order = db.get(Order, order_id)
    if order is None:
        raise OrderNotFound(order_id)

    tx = completed_payment_for(db, order.id)
    if tx is None or order.payment_status not in PAYABLE_STATES or order.status in CLOSED_ORDER_STATES:
        return order, False

    try:
        order.mark_paid(tx.reference)
        _record_platform_fee(db, order, tx.reference)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Order %s synchronised from %s", order.id, tx.reference)
    return order, True


def bulk_sync(db, limit: int = 100) -> dict:
    orders = (
        db.query(Order)
        .filter(
            (Order.status == OrderStatus.PENDING) | (Order.payment_status == PaymentStatus.PENDING)
        )
        .order_by(Order.created_at)
        .limit(limit)
        .all()
    )
    logger.info("Checking %d pending orders", len(orders))

    fixed = already_synced = 0
    results = []
    for order in orders:
        try:
            _, changed = sync_order(db, order.id)
        except Exception as exc:
            logger.exception("Could not sync order %s", order.id)
            results.append({"order_id": order.id, "error": str(exc)})
            continue
        if changed:
            fixed += 1
            results.append({"order_id": order.id, "fixed": True})
        elif order.payment_status == PaymentStatus.PAID:
            already_synced += 1

    return {
        "total_checked": len(orders),
        "fixed": fixed,
        "already_synced": already_synced,
        "errors": sum(1 for r in results if "error" in r),
        "results": results[:10],
    }


def refund_order(db, order_id: str, amount: int = None, reason: str = None) -> Transaction:
    order = db.get(Order, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    if order.payment_status != PaymentStatus.PAID:
        raise InvalidOrderState("Order is not paid")

    amount = order.total if amount is None else amount
    if amount <= 0 or amount > order.total:
        raise InvalidOrderState("Refund amount must be between 1 and the order total")

    refund = Transaction(
        type=TransactionType.REFUND,
        status=TransactionStatus.PENDING,
        amount=amount,
        currency=order.currency,
        reference=new_reference("REFUND"),
        description=f"Refund for order {order.id}" + (f": {reason}" if reason else ""),
        order_id=order.id,
        user_id=order.buyer_id,
        payment_provider="paystack",
        payment_provider_reference=order.payment_reference,
        meta={"reason": reason, "previous_order_status": order.status},
    )
    db.add(refund)
    db.flush()

    try:
        provider_refund = paystack_service.create_refund(order.payment_reference, amount)
    except paystack_service.PaystackError as exc:
        refund.status = TransactionStatus.FAILED
        refund.meta = _with_meta(refund, error=str(exc))
        db.commit()
        raise

    try:
        refund.meta = _with_meta(refund, provider_status=provider_refund.get("status"))
        order.status = OrderStatus.REFUNDED
        order.payment_status = PaymentStatus.REFUNDED
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Refund %s of %s initiated for order %s", refund.reference, amount, order.id)
    return refund


def _pending_refund(db, transaction_reference: str):
    return (
        db.query(Transaction)
        .filter_by(
            type=TransactionType.REFUND,
            status=TransactionStatus.PENDING,
            payment_provider_reference=transaction_reference,
        )
        .first()
    )


def complete_refund(db, transaction_reference: str) -> str:
    """Settle the pending refund for a paid reference once Paystack reports it processed."""
    refund = _pending_refund(db, transaction_reference)
    if refund is None:
        return UNKNOWN
    try:
        refund.status = TransactionStatus.COMPLETED
        refund.processed_at = utcnow()
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Refund %s processed", refund.reference)
    return COMPLETED


def fail_refund(db, transaction_reference: str, message: str = None) -> str:
    """Record a refund Paystack could not process; the order is paid again."""
    refund = _pending_refund(db, transaction_reference)
    if refund is None:
        return UNKNOWN
    try:
        refund.status = TransactionStatus.FAILED
        refund.meta = _with_meta(refund, error=message or "refund failed")
        order = db.get(Order, refund.order_id) if refund.order_id else None
        if order is not None and order.payment_status == PaymentStatus.REFUNDED:
            order.payment_status = PaymentStatus.PAID
            order.status = (refund.meta or {}).get("previous_order_status") or OrderStatus.PAID
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.error("Refund %s failed for %s: %s", refund.reference, transaction_reference, message)
    return FAILED
