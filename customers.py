import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import access_keys
import config
import ledger
import notifications
from database import CUSTOMERS, MEAL_ORDERS, ORDERS, PAYMENTS, as_utc, create_document, now_utc, oid
from errors import ConflictError, NotFound, service
from pagination import paginate, page_params
from schemas import Customer, CustomerIn, CustomerUpdateIn

logger = logging.getLogger(__name__)

PRIVATE_FIELDS = ("accessKey", "accessKeyExpiresAt")
SORT_FIELDS = ("createdAt", "updatedAt")


def public_customer(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in doc.items() if k not in PRIVATE_FIELDS}


def _phone_conflict(phone: str) -> ConflictError:
    return ConflictError("Customer already exists", fields=[{"name": "phone", "message": "Phone number must be unique"}])


def _new_customer_doc(data: Dict[str, Any]) -> Dict[str, Any]:
    doc = Customer(**data).model_dump(exclude_none=True)
    doc["balance"] = 0.0
    doc["paymentStatus"] = ledger.payment_status_for(0.0)
    return doc


def find_customer(db, customer_id) -> Dict[str, Any]:
    customer = db[CUSTOMERS].find_one({"_id": oid(customer_id, "customerId")})
    if customer is None:
        raise NotFound("Customer not found with the provided ID")
    return customer


def resolve_customer(db, name: str, phone: str, address: str,
                     now: Optional[datetime] = None) -> Tuple[Dict[str, Any], bool]:
    """Find the customer by phone, creating one when absent.

    Returns the customer and whether it was created by this call.
    """
    existing = db[CUSTOMERS].find_one({"phone": phone})
    if existing:
        return existing, False
    doc = _new_customer_doc({"name": name, "phone": phone, "address": address})
    now = now or now_utc()
    doc.update(createdAt=now, updatedAt=now)
    try:
        return create_document(db, CUSTOMERS, doc), True
    except DuplicateKeyError:
        # created by a concurrent request
        return db[CUSTOMERS].find_one({"phone": phone}), False


@service
def register_customer(db, payload: CustomerIn, now: Optional[datetime] = None) -> Dict[str, Any]:
    if db[CUSTOMERS].find_one({"phone": payload.phone}, {"_id": 1}):
        raise _phone_conflict(payload.phone)
    now = now or now_utc()
    doc = _new_customer_doc(payload.model_dump())
    token, key_fields = access_keys.new_access_key(now=now)
    doc.update(key_fields, createdAt=now, updatedAt=now)
    try:
        customer = create_document(db, CUSTOMERS, doc)
    except DuplicateKeyError:
        raise _phone_conflict(payload.phone)
    logger.info("Registered customer %s", customer["_id"])
    notifications.emit(
        notifications.ACCOUNT_CREATED, customer["phone"],
        name=customer["name"], accessKey=token, link=f"{config.ACCESS_LINK_BASE_URL}?key={token}",
    )
    return {"customer": public_customer(customer), "accessKey": token}


@service
def get_customer(db, customer_id) -> Dict[str, Any]:
    return public_customer(find_customer(db, customer_id))


@service
def update_customer(db, customer_id, payload: CustomerUpdateIn, now: Optional[datetime] = None) -> Dict[str, Any]:
    _id = oid(customer_id, "customerId")
    update = payload.model_dump(exclude_none=True)
    if not update:
        return public_customer(find_customer(db, _id))
    if "phone" in update and db[CUSTOMERS].find_one({"phone": update["phone"], "_id": {"$ne": _id}}, {"_id": 1}):
        raise _phone_conflict(update["phone"])
    update["updatedAt"] = now or now_utc()
    try:
        customer = db[CUSTOMERS].find_one_and_update({"_id": _id}, {"$set": update}, return_document=ReturnDocument.AFTER)
    except DuplicateKeyError:
        raise _phone_conflict(update["phone"])
    if customer is None:
        raise NotFound("Customer not found with the provided ID")
    return public_customer(customer)


@service
def delete_customer(db, customer_id) -> Dict[str, Any]:
    customer = find_customer(db, customer_id)
    refs = {
        "orders": db[ORDERS].count_documents({"customer": customer["_id"]}),
        "mealOrders": db[MEAL_ORDERS].count_documents({"customer": customer["_id"]}),
        "payments": db[PAYMENTS].count_documents({"customer": customer["_id"]}),
    }
    in_use = [name for name, count in refs.items() if count]
    if in_use:
        raise ConflictError(
            "Customer still has orders or payments",
            fields=[{"name": name, "message": f"{refs[name]} record(s) reference this customer"} for name in in_use],
        )
    db[CUSTOMERS].delete_one({"_id": customer["_id"]})
    logger.info("Deleted customer %s", customer["_id"])
    return {"id": customer["_id"]}


@service
def regenerate_access_key(db, customer_id, now: Optional[datetime] = None) -> Dict[str, Any]:
    token = access_keys.issue_access_key(db, oid(customer_id, "customerId"), now=now)
    return {"accessKey": token}


@service
def customer_access(db, key: Optional[str], o_page=None, p_page=None, limit=None,
                    sort_by: str = "updatedAt", sort_type: str = "desc",
                    from_date: Optional[datetime] = None, to_date: Optional[datetime] = None,
                    now: Optional[datetime] = None) -> Dict[str, Any]:
    """Self-service view: the customer behind an access key with their history."""
    customer = access_keys.authenticate(db, key, now)
    o_page, limit = page_params(o_page, limit)
    p_page, _ = page_params(p_page, limit)
    sort_field = sort_by if sort_by in SORT_FIELDS else "updatedAt"
    direction = 1 if (sort_type or "").lower() == "asc" else -1

    query: Dict[str, Any] = {"customer": customer["_id"]}
    if from_date and to_date:
        query["createdAt"] = {"$gte": as_utc(from_date), "$lte": as_utc(to_date)}

    def page_of(collection: str, page: int) -> Dict[str, Any]:
        total = db[collection].count_documents(query)
        cur = db[collection].find(query).sort(sort_field, direction).skip((page - 1) * limit).limit(limit)
        return {"data": list(cur), "pagination": paginate(page, limit, total)}

    return {
        "self": public_customer(customer),
        "orders": page_of(ORDERS, o_page),
        "mealOrders": page_of(MEAL_ORDERS, o_page),
        "payments": page_of(PAYMENTS, p_page),
    }


@service
def send_payment_reminder(db, customer_id, now: Optional[datetime] = None) -> Dict[str, Any]:
    customer = find_customer(db, customer_id)
    _id = customer["_id"]
    orders = (
        db[ORDERS].count_documents({"customer": _id, "status": {"$ne": "cancelled"}})
        + db[MEAL_ORDERS].count_documents({"customer": _id})
    )
    # the stored key is only a hash, so the link needs a fresh one
    token = access_keys.issue_access_key(db, _id, now=now)
    notification = notifications.emit(
        notifications.PAYMENT_REMINDER, customer["phone"],
        name=customer["name"],
        orders=orders,
        billed=ledger.billed_total(db, _id),
        paid=ledger.paid_total(db, _id),
        outstanding=round(customer.get("balance", 0.0), 2),
        link=f"{config.ACCESS_LINK_BASE_URL}?key={token}",
    )
    return notification.to_dict()


@service
def audit_customer(db, customer_id, repair: bool = False, now: Optional[datetime] = None) -> Dict[str, Any]:
    _id = oid(customer_id, "customerId")
    report = ledger.reconcile_balance(db, _id, now) if repair else ledger.audit_balance(db, _id)
    if report is None:
        raise NotFound("Customer not found with the provided ID")
    return report


@service
def balance_drift(db) -> List[Dict[str, Any]]:
    """Audit reports for every customer whose balance disagrees with history."""
    return ledger.find_drift(db)
