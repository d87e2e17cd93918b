"""
Meal orders

Day-by-day lunch/dinner orders for subscription customers. Price, quantity
and item fall back to the customer's defaults, and a customer can hold only
one meal order per date and item. Each order's ``total`` is billed to the
customer's balance.
"""
import logging
import re
from datetime import datetime
from functools import partial
from typing import Any, Dict, Optional

import ledger
from customers import find_customer
from database import MEAL_ORDERS, create_document, now_utc, oid
from errors import ConflictError, NotFound, ValidationError, service
from pagination import paginate, page_params
from saga import Compensations
from schemas import MealOrder, MealOrderIn, MealOrderUpdateIn

logger = logging.getLogger(__name__)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
SORT_FIELDS = ("createdAt", "updatedAt", "date")


def parse_day(value: str, field: str = "date") -> datetime:
    """``yyyy-MM-dd`` to UTC midnight, rejecting impossible dates."""
    invalid = ValidationError("Invalid request body", fields=[{"name": field, "message": "Invalid date or incorrect format (yyyy-MM-dd)"}])
    if not isinstance(value, str) or not _DATE_RE.match(value):
        raise invalid
    try:
        return datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        raise invalid


def _find(db, meal_order_id) -> Dict[str, Any]:
    meal_order = db[MEAL_ORDERS].find_one({"_id": oid(meal_order_id, "mealOrderId")})
    if meal_order is None:
        raise NotFound("Order not found with provided ID")
    return meal_order


def _observed(meal_order: Dict[str, Any]) -> Dict[str, Any]:
    return {"_id": meal_order["_id"], "total": meal_order["total"], "updatedAt": meal_order["updatedAt"]}


def _changed(db, meal_order: Dict[str, Any]) -> Exception:
    if db[MEAL_ORDERS].count_documents({"_id": meal_order["_id"]}) == 0:
        return NotFound("Order not found with provided ID")
    return ConflictError("Meal order was changed by another request, try again")


def _bill(db, meal_order: Dict[str, Any], amount: float, saga: Compensations, now: datetime) -> None:
    if not amount:
        return
    if ledger.apply_order_delta(db, meal_order["customer"], amount, now) is None:
        logger.warning("Customer %s of meal order %s not found, balance not adjusted", meal_order["customer"], meal_order["_id"])
        return
    saga.add("balance", partial(ledger.apply_order_delta, db, meal_order["customer"], -amount, now))


@service
def register_meal_order(db, payload: MealOrderIn, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or now_utc()
    day = parse_day(payload.date)
    customer = find_customer(db, payload.customerId)
    item = payload.item or customer.get("defaultItem")
    price = payload.price if payload.price is not None else customer.get("defaultPrice")
    quantity = payload.quantity if payload.quantity is not None else customer.get("defaultQuantity")
    missing = [
        {"name": name, "message": f"{name} is required when the customer has no default"}
        for name, value in (("item", item), ("price", price), ("quantity", quantity)) if value is None
    ]
    if missing:
        raise ValidationError("Invalid request body", fields=missing)

    if db[MEAL_ORDERS].find_one({"customer": customer["_id"], "date": day, "item": item}, {"_id": 1}):
        raise ConflictError(
            "Order already exists for this customer on this date and item",
            fields=[{"name": "date", "message": f"Order already exists for this date {payload.date}"}],
        )

    doc = MealOrder(
        customer=str(customer["_id"]),
        customerName=customer["name"],
        customerPhone=customer["phone"],
        item=item,
        price=price,
        quantity=quantity,
        total=round(price * quantity, 2),
        date=day,
        note=payload.note,
    ).model_dump(exclude_none=True)
    doc.update(customer=customer["_id"], createdAt=now, updatedAt=now)

    with Compensations("Meal order creation") as saga:
        meal_order = create_document(db, MEAL_ORDERS, doc)
        saga.add("mealOrder", lambda: db[MEAL_ORDERS].delete_one({"_id": meal_order["_id"]}))
        _bill(db, meal_order, meal_order["total"], saga, now)
    logger.info("Created meal order %s for customer %s on %s", meal_order["_id"], customer["_id"], payload.date)
    return meal_order


@service
def get_meal_order(db, meal_order_id) -> Dict[str, Any]:
    return _find(db, meal_order_id)


@service
def update_meal_order(db, meal_order_id, payload: MealOrderUpdateIn, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or now_utc()
    meal_order = _find(db, meal_order_id)
    update = payload.model_dump(exclude_none=True)
    if not update:
        return meal_order
    price = update.get("price", meal_order["price"])
    quantity = update.get("quantity", meal_order["quantity"])
    update["total"] = round(price * quantity, 2)
    update["updatedAt"] = now
    delta = round(update["total"] - meal_order["total"], 2)
    previous = {k: meal_order.get(k) for k in update}

    with Compensations("Meal order update") as saga:
        res = db[MEAL_ORDERS].update_one(_observed(meal_order), {"$set": update})
        if res.matched_count == 0:
            raise _changed(db, meal_order)
        saga.add("mealOrder", lambda: db[MEAL_ORDERS].update_one({"_id": meal_order["_id"]}, {"$set": previous}))
        _bill(db, meal_order, delta, saga, now)
    return _find(db, meal_order["_id"])


@service
def delete_meal_order(db, meal_order_id, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or now_utc()
    meal_order = _find(db, meal_order_id)
    with Compensations("Meal order deletion") as saga:
        _bill(db, meal_order, -meal_order["total"], saga, now)
        if db[MEAL_ORDERS].delete_one(_observed(meal_order)).deleted_count == 0:
            raise _changed(db, meal_order)
    logger.info("Deleted meal order %s", meal_order["_id"])
    return {"id": meal_order["_id"]}


@service
def list_meal_orders(db, page=None, limit=None, sort_by: str = "date", sort_type: str = "desc",
                     search: str = "", date: Optional[str] = None, from_date: Optional[str] = None,
                     to_date: Optional[str] = None, customer: Optional[str] = None) -> Dict[str, Any]:
    page, limit = page_params(page, limit)
    query: Dict[str, Any] = {}
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"customerName": {"$regex": pattern, "$options": "i"}},
            {"customerPhone": {"$regex": pattern, "$options": "i"}},
        ]
    if from_date and to_date:
        query["date"] = {"$gte": parse_day(from_date, "fromDate"), "$lte": parse_day(to_date, "toDate")}
    if date:
        query["date"] = parse_day(date)
    if customer:
        query["customer"] = oid(customer, "customer")

    sort_field = sort_by if sort_by in SORT_FIELDS else "date"
    direction = 1 if (sort_type or "").lower() == "asc" else -1
    total = db[MEAL_ORDERS].count_documents(query)
    cur = db[MEAL_ORDERS].find(query).sort(sort_field, direction).skip((page - 1) * limit).limit(limit)
    return {"data": list(cur), "pagination": paginate(page, limit, total)}
