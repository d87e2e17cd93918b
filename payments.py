"""
Payments

A payment pays down the customer's whole balance, not a particular order.
Updates and deletions apply the change in amount, never the absolute amount,
so a payment is counted exactly once however often it is edited.
"""
import logging
from datetime import datetime
from functools import partial
from typing import Any, Dict, Optional

import ledger
from customers import find_customer
from database import PAYMENTS, create_document, now_utc, oid
from errors import ConflictError, NotFound, ValidationError, service
from pagination import paginate, page_params
from saga import Compensations
from schemas import Payment, PaymentIn, PaymentUpdateIn, TransactionDetails

logger = logging.getLogger(__name__)

SORT_FIELDS = ("createdAt", "updatedAt", "amount")

# method -> (field, message) pairs that must be present
REQUIRED_DETAILS = {
    "bank": [
        ("transactionId", "Transaction ID is required for bank payment"),
        ("bankName", "Bank name is required for bank payment"),
    ],
    "bkash": [
        ("transactionId", "Transaction ID is required for bkash payment"),
        ("bkashNumber", "Bkash number is required"),
    ],
    "nagad": [
        ("transactionId", "Transaction ID is required for nagad payment"),
        ("nagadNumber", "Nagad number is required"),
    ],
    "cash": [
        ("cashReceivedBy", "Cash received by is required"),
    ],
}


def transaction_details(payload: PaymentIn) -> TransactionDetails:
    """Validate and keep only the details that belong to the payment method."""
    required = REQUIRED_DETAILS[payload.method]
    missing = [{"name": name, "message": message} for name, message in required if not getattr(payload, name)]
    if missing:
        raise ValidationError("Invalid request body", fields=missing)
    return TransactionDetails(**{name: getattr(payload, name) for name, _ in required})


def _find(db, payment_id) -> Dict[str, Any]:
    payment = db[PAYMENTS].find_one({"_id": oid(payment_id, "paymentId")})
    if payment is None:
        raise NotFound("Payment not found with provided ID")
    return payment


def _observed(payment: Dict[str, Any]) -> Dict[str, Any]:
    """Filter matching the payment only while it is as we read it."""
    return {"_id": payment["_id"], "amount": payment["amount"], "updatedAt": payment["updatedAt"]}


def _changed(db, payment: Dict[str, Any]) -> Exception:
    if db[PAYMENTS].count_documents({"_id": payment["_id"]}) == 0:
        return NotFound("Payment not found with provided ID")
    return ConflictError("Payment was changed by another request, try again")


def _credit(db, payment: Dict[str, Any], delta: float, saga: Compensations, now: datetime) -> None:
    if not delta:
        return
    if ledger.apply_payment_delta(db, payment["customer"], delta, now) is None:
        logger.warning("Customer %s of payment %s not found, balance not adjusted", payment["customer"], payment["_id"])
        return
    saga.add("balance", partial(ledger.apply_payment_delta, db, payment["customer"], -delta, now))


@service
def register_payment(db, payload: PaymentIn, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or now_utc()
    details = transaction_details(payload)
    customer = find_customer(db, payload.customerId)
    doc = Payment(
        customer=str(customer["_id"]),
        amount=payload.amount,
        method=payload.method,
        transactionDetails=details,
        note=payload.note,
    ).model_dump(exclude_none=True)
    doc.update(customer=customer["_id"], createdAt=now, updatedAt=now)

    with Compensations("Payment registration") as saga:
        payment = create_document(db, PAYMENTS, doc)
        saga.add("payment", lambda: db[PAYMENTS].delete_one({"_id": payment["_id"]}))
        if ledger.apply_payment_delta(db, customer["_id"], payment["amount"], now) is None:
            raise NotFound("Customer not found with the provided ID")
    logger.info("Registered %s payment %s of %.2f for customer %s", payload.method, payment["_id"], payment["amount"], customer["_id"])
    return payment


@service
def get_payment(db, payment_id) -> Dict[str, Any]:
    return _find(db, payment_id)


@service
def update_payment(db, payment_id, payload: PaymentUpdateIn, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or now_utc()
    payment = _find(db, payment_id)
    update = payload.model_dump(exclude_none=True)
    if not update:
        return payment
    update["updatedAt"] = now
    delta = round(update.get("amount", payment["amount"]) - payment["amount"], 2)
    previous = {k: payment.get(k) for k in update}

    with Compensations("Payment update") as saga:
        res = db[PAYMENTS].update_one(_observed(payment), {"$set": update})
        if res.matched_count == 0:
            raise _changed(db, payment)
        saga.add("payment", lambda: db[PAYMENTS].update_one({"_id": payment["_id"]}, {"$set": previous}))
        _credit(db, payment, delta, saga, now)
    return _find(db, payment["_id"])


@service
def delete_payment(db, payment_id, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or now_utc()
    payment = _find(db, payment_id)
    with Compensations("Payment deletion") as saga:
        _credit(db, payment, -payment["amount"], saga, now)
        if db[PAYMENTS].delete_one(_observed(payment)).deleted_count == 0:
            raise _changed(db, payment)
    logger.info("Deleted payment %s", payment["_id"])
    return {"id": payment["_id"]}


@service
def list_payments(db, page=None, limit=None, sort_by: str = "createdAt", sort_type: str = "desc",
                  customer: Optional[str] = None) -> Dict[str, Any]:
    page, limit = page_params(page, limit)
    query: Dict[str, Any] = {}
    if customer:
        query["customer"] = oid(customer, "customer")
    sort_field = sort_by if sort_by in SORT_FIELDS else "createdAt"
    direction = 1 if (sort_type or "").lower() == "asc" else -1
    total = db[PAYMENTS].count_documents(query)
    cur = db[PAYMENTS].find(query).sort(sort_field, direction).skip((page - 1) * limit).limit(limit)
    return {"data": list(cur), "pagination": paginate(page, limit, total)}
