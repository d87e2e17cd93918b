"""
Order lifecycle

Placing an order touches up to three collections: it may create the
customer, it reserves stock on every line and it bills the customer's
balance. None of that runs in a transaction. Each write registers an undo
step, and any failure rolls the finished steps back before the error is
returned, so the caller sees either the whole order or no change at all.

Order items are price snapshots: name, unit price and line total are copied
at placement time and never re-priced.
"""
import logging
import re
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Dict, List, Optional

import config
import customers
import inventory
import ledger
from database import CUSTOMERS, ORDERS, PRODUCTS, as_utc, create_document, is_oid, now_utc, oid
from errors import (
    ConflictError, DomainError, InsufficientStock, NotFound, OutOfStock, ValidationError, service,
)
from pagination import paginate, page_params
from pricing import final_price
from saga import Compensations
from schemas import Order, OrderIn, OrderUpdateIn

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"

STATUS_TRANSITIONS = {
    "pending": {"processing", "cancelled"},
    "processing": {"shipped"},
    "shipped": {"delivered"},
    "delivered": set(),
    "cancelled": set(),
}

SORT_FIELDS = ("createdAt", "updatedAt", "amount")


def order_amount(items: List[Dict[str, Any]], delivery_cost: float) -> float:
    return round(sum(item["total"] for item in items) + (delivery_cost or 0), 2)


def price_line(product: Dict[str, Any], quantity: int, now: datetime) -> Dict[str, Any]:
    price = final_price(product["unit"]["originalPrice"], product.get("discount"), now)
    return {
        "product": product["_id"],
        "name": product["name"],
        "quantity": quantity,
        "price": price,
        "total": round(price * quantity, 2),
    }


def find_order(db, order_id) -> Dict[str, Any]:
    order = db[ORDERS].find_one({"_id": oid(order_id, "orderId")})
    if order is None:
        raise NotFound("Order not found with provided ID")
    return order


def _release_stock(db, order: Dict[str, Any], saga: Compensations, now: datetime) -> None:
    for index, item in enumerate(order["items"]):
        if inventory.release(db, item["product"], item["quantity"], now) is not None:
            saga.add(f"items.{index}.stock", partial(inventory.reserve, db, item["product"], item["quantity"], now))


def _release_enabled(release_stock: Optional[bool]) -> bool:
    return config.RELEASE_STOCK_ON_DELETE if release_stock is None else release_stock


def _bill(db, order: Dict[str, Any], amount: float, saga: Compensations, now: datetime) -> None:
    if not amount:
        return
    if ledger.apply_order_delta(db, order["customer"], amount, now) is None:
        logger.warning("Customer %s of order %s not found, balance not adjusted", order["customer"], order["_id"])
        return
    saga.add("balance", partial(ledger.apply_order_delta, db, order["customer"], -amount, now))


def _observed(order: Dict[str, Any]) -> Dict[str, Any]:
    """Filter matching the order only while it is as we read it."""
    return {
        "_id": order["_id"],
        "status": order["status"],
        "amount": order["amount"],
        "updatedAt": order["updatedAt"],
    }


def _changed(db, order: Dict[str, Any]) -> Exception:
    if db[ORDERS].count_documents({"_id": order["_id"]}) == 0:
        return NotFound("Order not found with provided ID")
    return ConflictError("Order was changed by another request, try again")


def _guarded_set(db, order: Dict[str, Any], fields: Dict[str, Any], saga: Compensations) -> None:
    """Write ``fields`` only if nobody changed the order since we read it."""
    res = db[ORDERS].update_one(_observed(order), {"$set": fields})
    if res.matched_count == 0:
        raise _changed(db, order)
    previous = {k: order.get(k) for k in fields}
    saga.add("order", lambda: db[ORDERS].update_one({"_id": order["_id"]}, {"$set": previous}))


@service
def create_order(db, payload: OrderIn, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or now_utc()
    if not payload.items:
        raise ValidationError("Invalid request body", fields=[{"name": "items", "message": "Order must contain at least one item"}])
    product_ids = [oid(item.product, f"items.{i}.product") for i, item in enumerate(payload.items)]
    found = {p["_id"]: p for p in db[PRODUCTS].find({"_id": {"$in": list(set(product_ids))}})}
    missing = [
        {"name": f"items.{i}.product", "message": "Product not found"}
        for i, product_id in enumerate(product_ids) if product_id not in found
    ]
    if missing:
        raise NotFound("Product not found", fields=missing)

    with Compensations("Order creation") as saga:
        customer, created = customers.resolve_customer(db, payload.name, payload.phone, payload.address, now)
        customer_id = customer["_id"]
        if created:
            saga.add("customer", lambda: db[CUSTOMERS].delete_one({"_id": customer_id}))

        items, failures = [], []
        for index, (item, product_id) in enumerate(zip(payload.items, product_ids)):
            try:
                inventory.reserve(db, product_id, item.quantity, now)
            except OutOfStock as e:
                failures.append((index, e))
                continue
            saga.add(f"items.{index}.stock", partial(inventory.release, db, product_id, item.quantity, now))
            items.append(price_line(found[product_id], item.quantity, now))
        if failures:
            error_cls = InsufficientStock if any(isinstance(e, InsufficientStock) for _, e in failures) else OutOfStock
            raise error_cls(
                "Some items are not available",
                fields=[{"name": f"items.{index}.quantity", "message": e.message} for index, e in failures],
            )

        amount = order_amount(items, payload.deliveryCost)
        doc = Order(
            customer=str(customer_id),
            customerName=customer["name"],
            customerPhone=customer["phone"],
            items=[dict(line, product=str(line["product"])) for line in items],
            deliveryCost=payload.deliveryCost,
            amount=amount,
            address=payload.address,
        ).model_dump()
        doc.update(customer=customer_id, items=items, createdAt=now, updatedAt=now)
        order = create_document(db, ORDERS, doc)
        order_id = order["_id"]
        saga.add("order", lambda: db[ORDERS].delete_one({"_id": order_id}))

        customer = ledger.apply_order_delta(db, customer_id, amount, now)
        if customer is None:
            raise NotFound("Customer not found", fields=[{"name": "phone", "message": "Customer was removed while ordering"}])

    logger.info("Created order %s for customer %s, amount %.2f", order_id, customer_id, amount)
    return {"order": order, "customer": customers.public_customer(customer)}


@service
def get_order(db, order_id) -> Dict[str, Any]:
    return find_order(db, order_id)


@service
def list_orders(db, page=None, limit=None, sort_by: str = "createdAt", sort_type: str = "desc",
                search: str = "", status: Optional[str] = None, payment_status: Optional[str] = None,
                min_amount: Optional[float] = None, max_amount: Optional[float] = None,
                from_date: Optional[datetime] = None, to_date: Optional[datetime] = None,
                customer: Optional[str] = None, product: Optional[str] = None) -> Dict[str, Any]:
    page, limit = page_params(page, limit)
    query: Dict[str, Any] = {}
    if search:
        if is_oid(search):
            query["_id"] = oid(search)
        else:
            pattern = re.escape(search)
            query["$or"] = [
                {"customerName": {"$regex": pattern, "$options": "i"}},
                {"customerPhone": {"$regex": pattern, "$options": "i"}},
            ]
    if status:
        query["status"] = status
    if payment_status:
        query["paymentStatus"] = payment_status
    if min_amount is not None or max_amount is not None:
        rng: Dict[str, Any] = {}
        if min_amount is not None:
            rng["$gte"] = min_amount
        if max_amount is not None:
            rng["$lte"] = max_amount
        query["amount"] = rng
    if from_date or to_date:
        rng = {}
        if from_date:
            rng["$gte"] = as_utc(from_date)
        if to_date:
            rng["$lte"] = as_utc(to_date)
        query["createdAt"] = rng
    if customer:
        query["customer"] = oid(customer, "customer")
    if product:
        query["items.product"] = oid(product, "product")

    sort_field = sort_by if sort_by in SORT_FIELDS else "createdAt"
    direction = 1 if (sort_type or "").lower() == "asc" else -1
    total = db[ORDERS].count_documents(query)
    cur = db[ORDERS].find(query).sort(sort_field, direction).skip((page - 1) * limit).limit(limit)
    return {"data": list(cur), "pagination": paginate(page, limit, total)}


@service
def update_order(db, order_id, payload: OrderUpdateIn, release_stock: Optional[bool] = None,
                 now: Optional[datetime] = None) -> Dict[str, Any]:
    """Change status, payment status, address or amount.

    Moving to ``cancelled`` takes the order off the customer's balance. A new
    ``amount`` bills the difference.
    """
    now = now or now_utc()
    order = find_order(db, order_id)
    update = payload.model_dump(exclude_none=True)
    if update.get("status") == order["status"]:
        del update["status"]
    if not update:
        return order
    if order["status"] == CANCELLED:
        raise DomainError("Cancelled orders cannot be changed")
    new_status = update.get("status")
    if new_status and new_status not in STATUS_TRANSITIONS[order["status"]]:
        raise DomainError(
            "Invalid status transition",
            fields=[{"name": "status", "message": f"Cannot move from {order['status']} to {new_status}"}],
        )

    cancelling = new_status == CANCELLED
    delta = 0.0
    if "amount" in update:
        delta = round(update["amount"] - order["amount"], 2)
    if cancelling:
        delta = -order["amount"]
    release = cancelling and _release_enabled(release_stock) and not order.get("stockReleased")
    if release:
        update["stockReleased"] = True
    update["updatedAt"] = now

    with Compensations("Order update") as saga:
        _guarded_set(db, order, update, saga)
        _bill(db, order, delta, saga, now)
        if release:
            _release_stock(db, order, saga, now)
    logger.info("Updated order %s: %s", order["_id"], ", ".join(sorted(k for k in update if k != "updatedAt")))
    return find_order(db, order["_id"])


def _change_items(db, order_id, change: Callable[[List[Dict[str, Any]]], None],
                  now: Optional[datetime]) -> Dict[str, Any]:
    now = now or now_utc()
    order = find_order(db, order_id)
    if order["status"] == CANCELLED:
        raise DomainError("Cancelled orders cannot be changed")
    items = [dict(item) for item in order["items"]]
    change(items)
    amount = order_amount(items, order.get("deliveryCost", 0))
    delta = round(amount - order["amount"], 2)

    with Compensations("Order item update") as saga:
        _guarded_set(db, order, {"items": items, "amount": amount, "updatedAt": now}, saga)
        _bill(db, order, delta, saga, now)
    return find_order(db, order["_id"])


def _check_index(items: List[Dict[str, Any]], index: int) -> None:
    if not 0 <= index < len(items):
        raise ValidationError("Invalid item index", fields=[{"name": "index", "message": f"Order has {len(items)} item(s)"}])


@service
def update_item_quantity(db, order_id, index: int, quantity: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Change one line's quantity at its captured price. Stock is not adjusted."""
    if quantity < 1:
        raise ValidationError("Invalid quantity", fields=[{"name": "quantity", "message": "Quantity must be at least 1"}])

    def change(items):
        _check_index(items, index)
        item = items[index]
        item["quantity"] = quantity
        item["total"] = round(item["price"] * quantity, 2)

    return _change_items(db, order_id, change, now)


@service
def remove_item(db, order_id, index: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    def change(items):
        _check_index(items, index)
        if len(items) == 1:
            raise ValidationError(
                "An order needs at least one item",
                fields=[{"name": "index", "message": "Delete the order instead of its last item"}],
            )
        items.pop(index)

    return _change_items(db, order_id, change, now)


@service
def add_item(db, order_id, product_id, quantity: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Append a line priced at ``now``. Stock is not reserved for it."""
    now = now or now_utc()
    if quantity < 1:
        raise ValidationError("Invalid quantity", fields=[{"name": "quantity", "message": "Quantity must be at least 1"}])
    product = db[PRODUCTS].find_one({"_id": oid(product_id, "product")})
    if product is None:
        raise NotFound("Product not found", fields=[{"name": "product", "message": "Product not found"}])
    line = price_line(product, quantity, now)
    return _change_items(db, order_id, lambda items: items.append(line), now)


@service
def delete_order(db, order_id, release_stock: Optional[bool] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or now_utc()
    order = find_order(db, order_id)
    with Compensations("Order deletion") as saga:
        if order["status"] != CANCELLED:
            _bill(db, order, -order["amount"], saga, now)
        if _release_enabled(release_stock) and not order.get("stockReleased"):
            _release_stock(db, order, saga, now)
        if db[ORDERS].delete_one(_observed(order)).deleted_count == 0:
            raise _changed(db, order)
    logger.info("Deleted order %s", order["_id"])
    return {"id": order["_id"]}


def percentage_change(current: int, previous: int) -> str:
    if previous == 0:
        return "100.00" if current > 0 else "0.00"
    return f"{(current - previous) / previous * 100:.2f}"


@service
def order_stats(db, customer_id: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    if customer_id:
        return {"totalOrders": db[ORDERS].count_documents({"customer": oid(customer_id, "customerId")})}

    now = as_utc(now or now_utc())
    today = datetime(now.year, now.month, now.day)
    month = datetime(now.year, now.month, 1)
    prev_month = (month - timedelta(days=1)).replace(day=1)
    next_month = (month + timedelta(days=32)).replace(day=1)
    year = datetime(now.year, 1, 1)

    def count_between(start: datetime, end: datetime) -> int:
        return db[ORDERS].count_documents({"createdAt": {"$gte": start, "$lt": end}})

    today_orders = count_between(today, today + timedelta(days=1))
    yesterday_orders = count_between(today - timedelta(days=1), today)
    month_orders = count_between(month, next_month)
    prev_month_orders = count_between(prev_month, month)
    year_orders = count_between(year, datetime(now.year + 1, 1, 1))
    prev_year_orders = count_between(datetime(now.year - 1, 1, 1), year)

    return {
        "dailyChange": f"{percentage_change(today_orders, yesterday_orders)}%",
        "monthlyChange": f"{percentage_change(month_orders, prev_month_orders)}%",
        "yearlyChange": f"{percentage_change(year_orders, prev_year_orders)}%",
        "todayOrders": today_orders,
        "yesterdayOrders": yesterday_orders,
        "currentMonthOrders": month_orders,
        "prevMonthOrders": prev_month_orders,
        "currentYearOrders": year_orders,
        "prevYearOrders": prev_year_orders,
        "totalOrders": db[ORDERS].count_documents({}),
    }
