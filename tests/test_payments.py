from datetime import datetime

import pytest
from bson.objectid import ObjectId

import ledger
import payments
from database import CUSTOMERS, PAYMENTS
from errors import ConflictError, NotFound
from schemas import PaymentIn, PaymentUpdateIn

NOW = datetime(2026, 3, 10, 9, 30, 0)


def pay(db, customer, amount, method="cash", **details):
    if method == "cash":
        details.setdefault("cashReceivedBy", "Office")
    payload = PaymentIn(customerId=str(customer["_id"]), amount=amount, method=method, **details)
    return payments.register_payment(db, payload, now=NOW)


def balance_of(db, customer):
    return db[CUSTOMERS].find_one({"_id": customer["_id"]})["balance"]


class TestTransactionDetails:

    @pytest.mark.parametrize("method, missing", [
        ("bank", ["transactionId", "bankName"]),
        ("bkash", ["transactionId", "bkashNumber"]),
        ("nagad", ["transactionId", "nagadNumber"]),
        ("cash", ["cashReceivedBy"]),
    ])
    def test_required_per_method(self, db, make_customer, method, missing):
        c = make_customer()
        payload = PaymentIn(customerId=str(c["_id"]), amount=10, method=method)
        result = payments.register_payment(db, payload, now=NOW)
        assert result.kind == "validation_error"
        assert [f["name"] for f in result.error.fields] == missing
        assert db[PAYMENTS].count_documents({}) == 0

    def test_only_method_fields_are_kept(self):
        payload = PaymentIn(
            customerId=str(ObjectId()), amount=10, method="bkash",
            transactionId="TX1", bkashNumber="01712345678", bankName="ignored",
        )
        details = payments.transaction_details(payload)
        assert details.model_dump(exclude_none=True) == {"transactionId": "TX1", "bkashNumber": "01712345678"}


class TestPaymentLedger:

    def test_register_reduces_balance(self, db, make_customer):
        c = make_customer()
        ledger.apply_order_delta(db, c["_id"], 300, NOW)
        result = pay(db, c, 100, method="bank", transactionId="TX9", bankName="City Bank")

        assert result.ok, result.error
        assert result.data["transactionDetails"] == {"transactionId": "TX9", "bankName": "City Bank"}
        assert balance_of(db, c) == 200
        assert db[CUSTOMERS].find_one({"_id": c["_id"]})["paymentStatus"] == ledger.PARTIALLY_PAID

    def test_unknown_customer(self, db):
        result = pay(db, {"_id": ObjectId()}, 100)
        assert isinstance(result.error, NotFound)
        assert db[PAYMENTS].count_documents({}) == 0

    def test_update_applies_only_the_difference(self, db, make_customer):
        c = make_customer()
        ledger.apply_order_delta(db, c["_id"], 100, NOW)
        payment = pay(db, c, 100).data
        assert balance_of(db, c) == 0

        result = payments.update_payment(db, str(payment["_id"]), PaymentUpdateIn(amount=60), now=NOW)
        assert result.data["amount"] == 60
        assert balance_of(db, c) == 40

    def test_note_only_update(self, db, make_customer):
        c = make_customer()
        payment = pay(db, c, 100).data
        result = payments.update_payment(db, str(payment["_id"]), PaymentUpdateIn(note="late"), now=NOW)
        assert result.data["note"] == "late"
        assert balance_of(db, c) == -100

    def test_delete_restores_balance(self, db, make_customer):
        c = make_customer()
        ledger.apply_order_delta(db, c["_id"], 100, NOW)
        payment = pay(db, c, 100).data
        assert payments.delete_payment(db, str(payment["_id"]), now=NOW).ok
        assert balance_of(db, c) == 100
        assert db[PAYMENTS].count_documents({}) == 0

    def test_missing_customer_is_tolerated_on_delete(self, db, make_customer):
        c = make_customer()
        payment = pay(db, c, 100).data
        db[CUSTOMERS].delete_one({"_id": c["_id"]})
        assert payments.delete_payment(db, str(payment["_id"]), now=NOW).ok
        assert db[PAYMENTS].count_documents({}) == 0

    def test_balance_matches_history_after_mixed_operations(self, db, make_customer):
        c = make_customer()
        ledger.apply_order_delta(db, c["_id"], 120, NOW)
        first = pay(db, c, 50).data
        second = pay(db, c, 30).data
        payments.update_payment(db, str(first["_id"]), PaymentUpdateIn(amount=70), now=NOW)
        payments.delete_payment(db, str(second["_id"]), now=NOW)

        assert balance_of(db, c) == 50
        assert ledger.paid_total(db, c["_id"]) == 70


    def test_stale_update_is_a_conflict(self, db, make_customer, stale_read):
        c = make_customer()
        ledger.apply_order_delta(db, c["_id"], 100, NOW)
        payment = pay(db, c, 100).data
        before = db[PAYMENTS].find_one({"_id": payment["_id"]})
        assert payments.update_payment(db, str(payment["_id"]), PaymentUpdateIn(amount=60), now=NOW).ok

        stale_read(payments, "_find", before)
        result = payments.update_payment(db, str(payment["_id"]), PaymentUpdateIn(amount=80), now=NOW)

        assert isinstance(result.error, ConflictError)
        assert db[PAYMENTS].find_one({"_id": payment["_id"]})["amount"] == 60
        assert balance_of(db, c) == 40
        assert ledger.audit_balance(db, c["_id"])["consistent"]

    def test_stale_delete_is_rolled_back(self, db, make_customer, stale_read):
        c = make_customer()
        ledger.apply_order_delta(db, c["_id"], 100, NOW)
        payment = pay(db, c, 100).data
        before = db[PAYMENTS].find_one({"_id": payment["_id"]})
        payments.update_payment(db, str(payment["_id"]), PaymentUpdateIn(amount=60), now=NOW)

        stale_read(payments, "_find", before)
        result = payments.delete_payment(db, str(payment["_id"]), now=NOW)

        assert isinstance(result.error, ConflictError)
        assert db[PAYMENTS].count_documents({}) == 1
        assert balance_of(db, c) == 40

class TestListPayments:

    def test_by_customer(self, db, make_customer):
        a = make_customer()
        b = make_customer()
        pay(db, a, 10)
        pay(db, a, 20)
        pay(db, b, 30)

        result = payments.list_payments(db, customer=str(a["_id"]), sort_by="amount", sort_type="asc").data
        assert [p["amount"] for p in result["data"]] == [10, 20]
        assert result["pagination"]["total"] == 2
