"""
Customer balance ledger

``balance`` is the amount a customer owes: orders add to it, payments take
from it. Every change goes through ``apply_order_delta`` or
``apply_payment_delta`` as an atomic ``$inc``; ``paymentStatus`` is then
re-derived from the new balance.

The running balance is a snapshot kept up to date by deltas, so
``audit_balance`` recomputes it from the order and payment history to catch
drift.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

from database import CUSTOMERS, MEAL_ORDERS, ORDERS, PAYMENTS, now_utc

logger = logging.getLogger(__name__)

PAID = "paid"
PARTIALLY_PAID = "partially_paid"
# balance below zero: the customer paid more than was billed
PENDING = "pending"


def payment_status_for(balance: float) -> str:
    balance = round(balance or 0.0, 2)
    if balance == 0:
        return PAID
    if balance < 0:
        return PENDING
    return PARTIALLY_PAID


def _apply(db, customer_id, change: float, now: Optional[datetime]) -> Optional[Dict[str, Any]]:
    customer = db[CUSTOMERS].find_one_and_update(
        {"_id": customer_id},
        {"$inc": {"balance": change}, "$set": {"updatedAt": now or now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if customer is None:
        return None
    status = payment_status_for(customer["balance"])
    if customer.get("paymentStatus") != status:
        # keyed on the balance we saw; a later writer syncs its own
        db[CUSTOMERS].update_one(
            {"_id": customer_id, "balance": customer["balance"]},
            {"$set": {"paymentStatus": status}},
        )
        customer["paymentStatus"] = status
    logger.debug("Customer %s balance %+.2f -> %.2f", customer_id, change, customer["balance"])
    return customer


def apply_order_delta(db, customer_id, amount: float, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Add an order amount (or a negative correction) to the balance."""
    return _apply(db, customer_id, amount, now)


def apply_payment_delta(db, customer_id, delta: float, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Take a payment delta off the balance.

    ``delta`` is the full amount for a new payment, ``new - old`` for an
    update and ``-amount`` for a deletion.
    """
    return _apply(db, customer_id, -delta, now)


def _sum(db, collection: str, match: Dict[str, Any], field: str) -> float:
    pipeline = [
        {"$match": match},
        {"$group": {"_id": None, "sum": {"$sum": f"${field}"}}},
    ]
    res = list(db[collection].aggregate(pipeline))
    return float(res[0]["sum"]) if res else 0.0


def billed_total(db, customer_id) -> float:
    billed = _sum(db, ORDERS, {"customer": customer_id, "status": {"$ne": "cancelled"}}, "amount")
    billed += _sum(db, MEAL_ORDERS, {"customer": customer_id}, "total")
    return round(billed, 2)


def paid_total(db, customer_id) -> float:
    return round(_sum(db, PAYMENTS, {"customer": customer_id}, "amount"), 2)


def expected_balance(db, customer_id) -> float:
    return round(billed_total(db, customer_id) - paid_total(db, customer_id), 2)


def audit_balance(db, customer_id) -> Optional[Dict[str, Any]]:
    customer = db[CUSTOMERS].find_one({"_id": customer_id}, {"balance": 1, "paymentStatus": 1})
    if customer is None:
        return None
    recorded = round(customer.get("balance", 0.0), 2)
    expected = expected_balance(db, customer_id)
    drift = round(recorded - expected, 2)
    return {
        "customer": customer_id,
        "recorded": recorded,
        "expected": expected,
        "drift": drift,
        "consistent": drift == 0 and customer.get("paymentStatus") == payment_status_for(recorded),
    }


def reconcile_balance(db, customer_id, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Correct a drifted balance through the ledger and return the audit."""
    report = audit_balance(db, customer_id)
    if report is None:
        return None
    if report["drift"]:
        logger.warning("Correcting balance drift of %.2f for customer %s", report["drift"], customer_id)
        apply_order_delta(db, customer_id, -report["drift"], now)
    elif not report["consistent"]:
        apply_order_delta(db, customer_id, 0.0, now)
    return audit_balance(db, customer_id)


def find_drift(db) -> List[Dict[str, Any]]:
    drifted = []
    for customer in db[CUSTOMERS].find({}, {"_id": 1}):
        report = audit_balance(db, customer["_id"])
        if report and not report["consistent"]:
            drifted.append(report)
    return drifted
