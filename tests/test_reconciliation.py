import pytest

from grochain_payments import paystack_service, reconciliation
from grochain_payments.models import Order, Transaction
from tests.utils import make_order, make_transaction, verification


def test_complete_payment_marks_order_paid(db):
    order_id = make_order()
    make_transaction(order_id, "GROCHAIN_1")

    outcome = reconciliation.complete_payment(db, "GROCHAIN_1", verification("GROCHAIN_1"))

    assert outcome == reconciliation.COMPLETED
    order = db.get(Order, order_id)
    assert order.status == "paid"
    assert order.payment_reference == "GROCHAIN_1"
    tx = db.query(Transaction).filter_by(reference="GROCHAIN_1").one()
    assert tx.status == "completed"
    assert tx.meta["verification"]["channel"] == "card"
    assert tx.meta["source"] == "webhook"


def test_complete_payment_is_idempotent(db):
    order_id = make_order()
    make_transaction(order_id, "GROCHAIN_1")

    reconciliation.complete_payment(db, "GROCHAIN_1", verification("GROCHAIN_1"))
    outcome = reconciliation.complete_payment(db, "GROCHAIN_1", verification("GROCHAIN_1"))

    assert outcome == reconciliation.ALREADY_PROCESSED
    assert db.query(Transaction).filter_by(type="platform_fee").count() == 1


def test_complete_payment_unknown_reference(db):
    assert reconciliation.complete_payment(db, "GROCHAIN_x", verification("GROCHAIN_x")) == reconciliation.UNKNOWN


@pytest.mark.parametrize("status", ["failed", "abandoned", "reversed"])
def test_complete_payment_failed_attempt(db, status):
    order_id = make_order()
    make_transaction(order_id, "GROCHAIN_1")

    outcome = reconciliation.complete_payment(db, "GROCHAIN_1", verification("GROCHAIN_1", status=status))

    assert outcome == reconciliation.FAILED
    assert db.query(Transaction).filter_by(reference="GROCHAIN_1").one().status == "failed"
    assert db.get(Order, order_id).status == "pending"


def test_complete_payment_still_ongoing(db):
    order_id = make_order()
    make_transaction(order_id, "GROCHAIN_1")

    outcome = reconciliation.complete_payment(db, "GROCHAIN_1", verification("GROCHAIN_1", status="ongoing"))

    assert outcome == reconciliation.PENDING
    assert db.query(Transaction).filter_by(reference="GROCHAIN_1").one().status == "pending"


def test_failed_attempt_can_still_complete(db):
    order_id = make_order()
    make_transaction(order_id, "GROCHAIN_1", status="failed")

    outcome = reconciliation.complete_payment(db, "GROCHAIN_1", verification("GROCHAIN_1"))

    assert outcome == reconciliation.COMPLETED
    assert db.get(Order, order_id).payment_status == "paid"


def test_complete_payment_currency_mismatch(db):
    order_id = make_order()
    make_transaction(order_id, "GROCHAIN_1")

    outcome = reconciliation.complete_payment(db, "GROCHAIN_1", verification("GROCHAIN_1", currency="usd"))

    assert outcome == reconciliation.MISMATCH
    assert db.get(Order, order_id).payment_status == "pending"


def test_paid_order_in_fulfilment_keeps_its_status(db):
    order_id = make_order(status="shipped")
    make_transaction(order_id, "GROCHAIN_1")

    reconciliation.complete_payment(db, "GROCHAIN_1", verification("GROCHAIN_1"))

    order = db.get(Order, order_id)
    assert order.status == "shipped"
    assert order.payment_status == "paid"


def test_stale_duplicate_check_cannot_pay_order_twice(db, mocker):
    order_id = make_order(status="paid", payment_status="paid", payment_reference="GROCHAIN_first")
    make_transaction(order_id, "GROCHAIN_first", status="completed")
    make_transaction(order_id, "GROCHAIN_second")
    # The other payment committed after this request looked for it
    mocker.patch("grochain_payments.reconciliation.completed_payment_for", return_value=None)

    outcome = reconciliation.complete_payment(db, "GROCHAIN_second", verification("GROCHAIN_second"))

    assert outcome == reconciliation.DUPLICATE
    completed = db.query(Transaction).filter_by(order_id=order_id, type="payment", status="completed").all()
    assert [tx.reference for tx in completed] == ["GROCHAIN_first"]
    second = db.query(Transaction).filter_by(reference="GROCHAIN_second").one()
    assert second.status == "cancelled"
    assert second.processed_at is None
    assert second.meta["duplicate_of"] == "GROCHAIN_first"
    assert db.get(Order, order_id).payment_reference == "GROCHAIN_first"
    assert db.query(Transaction).filter_by(type="platform_fee").count() == 0


@pytest.mark.parametrize("status,payment_status", [("refunded", "refunded"), ("cancelled", "pending")])
def test_payment_for_closed_order_is_not_applied(db, status, payment_status):
    order_id = make_order(status=status, payment_status=payment_status)
    make_transaction(order_id, "GROCHAIN_late")

    outcome = reconciliation.complete_payment(db, "GROCHAIN_late", verification("GROCHAIN_late"))

    assert outcome == reconciliation.DUPLICATE
    order = db.get(Order, order_id)
    assert order.status == status
    assert order.payment_status == payment_status
    assert db.query(Transaction).filter_by(reference="GROCHAIN_late").one().status == "cancelled"
    assert db.query(Transaction).filter_by(type="platform_fee").count() == 0


def test_platform_fee_rate_is_configurable(db, monkeypatch):
    monkeypatch.setenv("PLATFORM_FEE_RATE", "0.05")
    order_id = make_order(total=200000)
    make_transaction(order_id, "GROCHAIN_1", amount=200000)

    reconciliation.complete_payment(db, "GROCHAIN_1", verification("GROCHAIN_1", amount=200000))

    fee = db.query(Transaction).filter_by(type="platform_fee").one()
    assert fee.amount == 10000
    assert fee.meta == {"original_reference": "GROCHAIN_1", "rate": 0.05}


def test_zero_platform_fee_is_not_recorded(db, monkeypatch):
    monkeypatch.setenv("PLATFORM_FEE_RATE", "0")
    order_id = make_order()
    make_transaction(order_id, "GROCHAIN_1")

    reconciliation.complete_payment(db, "GROCHAIN_1", verification("GROCHAIN_1"))

    assert db.query(Transaction).filter_by(type="platform_fee").count() == 0


def test_complete_payment_rolls_back_on_error(db, mocker):
    order_id = make_order()
    make_transaction(order_id, "GROCHAIN_1")
    mocker.patch(
        "grochain_payments.reconciliation._record_platform_fee",
        side_effect=RuntimeError("disk full"),
    )

    with pytest.raises(RuntimeError):
        reconciliation.complete_payment(db, "GROCHAIN_1", verification("GROCHAIN_1"))

    assert db.query(Transaction).filter_by(reference="GROCHAIN_1").one().status == "pending"
    assert db.get(Order, order_id).status == "pending"


def test_verify_reference_calls_paystack(db, mocker):
    order_id = make_order()
    make_transaction(order_id, "GROCHAIN_1")
    verify = mocker.patch(
        "grochain_payments.paystack_service.verify_transaction",
        return_value=verification("GROCHAIN_1"),
    )

    tx, outcome = reconciliation.verify_reference(db, "GROCHAIN_1")

    verify.assert_called_once_with("GROCHAIN_1")
    assert outcome == reconciliation.COMPLETED
    assert tx.status == "completed"
    assert tx.meta["source"] == "manual"


def test_verify_reference_unknown(db):
    with pytest.raises(reconciliation.TransactionNotFound):
        reconciliation.verify_reference(db, "GROCHAIN_missing")


def test_sync_order_missing(db):
    with pytest.raises(reconciliation.OrderNotFound):
        reconciliation.sync_order(db, "missing")


def test_sync_order_without_payment(db):
    order_id = make_order()

    order, changed = reconciliation.sync_order(db, order_id)

    assert changed is False
    assert order.status == "pending"


def test_sync_order_does_not_undo_refund(db):
    order_id = make_order(status="refunded", payment_status="refunded", payment_reference="GROCHAIN_1")
    make_transaction(order_id, "GROCHAIN_1", status="completed")

    order, changed = reconciliation.sync_order(db, order_id)

    assert changed is False
    assert order.payment_status == "refunded"


def test_bulk_sync_counts_already_synced(db):
    # paid on the payment side but fulfilment still pending
    order_id = make_order(payment_status="paid", payment_reference="GROCHAIN_1")
    make_transaction(order_id, "GROCHAIN_1", status="completed")

    summary = reconciliation.bulk_sync(db)

    assert summary["total_checked"] == 1
    assert summary["fixed"] == 0
    assert summary["already_synced"] == 1


def test_bulk_sync_reports_errors(db, mocker):
    make_order()
    mocker.patch(
        "grochain_payments.reconciliation.sync_order",
        side_effect=RuntimeError("boom"),
    )

    summary = reconciliation.bulk_sync(db)

    assert summary["errors"] == 1
    assert summary["results"][0]["error"] == "boom"


def test_refund_amount_above_total(db):
    order_id = make_order(status="paid", payment_status="paid", payment_reference="GROCHAIN_1")

    with pytest.raises(reconciliation.InvalidOrderState):
        reconciliation.refund_order(db, order_id, amount=900000)


def test_refund_provider_failure_records_failed_refund(db, mocker):
    order_id = make_order(status="paid", payment_status="paid", payment_reference="GROCHAIN_1")
    mocker.patch(
        "grochain_payments.paystack_service.create_refund",
        side_effect=paystack_service.PaystackRejected("Transaction has been fully reversed"),
    )

    with pytest.raises(paystack_service.PaystackRejected):
        reconciliation.refund_order(db, order_id, reason="duplicate")

    refund = db.query(Transaction).filter_by(type="refund").one()
    assert refund.status == "failed"
    assert refund.meta["error"] == "Transaction has been fully reversed"
    assert db.get(Order, order_id).status == "paid"


def test_complete_refund_unknown(db):
    assert reconciliation.complete_refund(db, "GROCHAIN_none") == reconciliation.UNKNOWN


def test_fail_refund_unknown(db):
    assert reconciliation.fail_refund(db, "GROCHAIN_none", "declined") == reconciliation.UNKNOWN


def test_fail_refund_leaves_paid_order_alone(db):
    order_id = make_order(status="paid", payment_status="paid", payment_reference="GROCHAIN_1")
    make_transaction(order_id, "GROCHAIN_1", type="refund", amount=100000)
    make_transaction(order_id, "REFUND_2", type="refund", amount=100000, status="completed")

    outcome = reconciliation.fail_refund(db, "GROCHAIN_1")

    assert outcome == reconciliation.FAILED
    refund = db.query(Transaction).filter_by(reference="GROCHAIN_1").one()
    assert refund.status == "failed"
    assert refund.meta == {"error": "refund failed"}
    assert db.get(Order, order_id).status == "paid"
