import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from bson.objectid import ObjectId
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

import config
import customers
import meal_orders
import orders
import payments
import products
from database import db, ensure_indexes
from errors import Result
from schemas import (
    CustomerIn, CustomerUpdateIn, Discount, MealOrderIn, MealOrderUpdateIn, OrderIn, OrderItemIn,
    OrderItemQuantityIn, OrderUpdateIn, PaymentIn, PaymentUpdateIn, ProductIn, StockUpdateIn,
)

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
    yield


app = FastAPI(title="Catering Back-Office API", version="0.3.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ------------------ Utilities ------------------

def serialize(value: Any):
    if isinstance(value, dict):
        d = {}
        for k, v in value.items():
            d["id" if k == "_id" else k] = serialize(v)
        return d
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        # stored naive datetimes are UTC
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, float):
        return round(value, 2)
    return value


def database():
    if db is None:
        raise HTTPException(503, "Database not available")
    return db


def respond(result: Result):
    if result.ok:
        return serialize(result.data)
    error = result.error
    if result.kind in ("internal_error", "consistency_error"):
        logger.error("%s: %s", result.kind, error.message)
    raise HTTPException(status_code=error.status_code, detail={"kind": result.kind, **serialize(error.to_dict())})


# ------------------ Health/Test ------------------
@app.get("/")
def read_root():
    return {"message": "Catering Back-Office API is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "Running",
        "database": "Not Available",
        "database_url": "Set" if config.DATABASE_URL else "Not Set",
        "database_name": "Set" if config.DATABASE_NAME else "Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()
    except Exception as e:
        response["database"] = f"Error: {str(e)[:120]}"
    return response


# ------------------ Customers ------------------
@app.post("/api/customers", status_code=201)
def register_customer(payload: CustomerIn):
    return respond(customers.register_customer(database(), payload))


@app.get("/api/customers/access")
def customer_access(
    key: str,
    oPage: Optional[int] = None,
    pPage: Optional[int] = None,
    limit: Optional[int] = None,
    sortBy: str = "updatedAt",
    sortType: str = "desc",
    fromDate: Optional[datetime] = Query(None),
    toDate: Optional[datetime] = Query(None),
):
    return respond(customers.customer_access(
        database(), key, o_page=oPage, p_page=pPage, limit=limit,
        sort_by=sortBy, sort_type=sortType, from_date=fromDate, to_date=toDate,
    ))


@app.get("/api/customers/drift")
def balance_drift():
    return respond(customers.balance_drift(database()))


@app.get("/api/customers/{customer_id}")
def get_customer(customer_id: str):
    return respond(customers.get_customer(database(), customer_id))


@app.patch("/api/customers/{customer_id}")
def update_customer(customer_id: str, payload: CustomerUpdateIn):
    return respond(customers.update_customer(database(), customer_id, payload))


@app.delete("/api/customers/{customer_id}")
def delete_customer(customer_id: str):
    return respond(customers.delete_customer(database(), customer_id))


@app.post("/api/customers/{customer_id}/access-key", status_code=201)
def regenerate_access_key(customer_id: str):
    return respond(customers.regenerate_access_key(database(), customer_id))


@app.post("/api/customers/{customer_id}/reminder")
def send_payment_reminder(customer_id: str):
    return respond(customers.send_payment_reminder(database(), customer_id))


@app.get("/api/customers/{customer_id}/audit")
def audit_customer(customer_id: str, repair: bool = False):
    return respond(customers.audit_customer(database(), customer_id, repair=repair))


# ------------------ Products / Stock ------------------
@app.post("/api/products", status_code=201)
def create_product(payload: ProductIn):
    return respond(products.create_product(database(), payload))


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    return respond(products.get_product(database(), product_id))


@app.patch("/api/products/{product_id}/stock")
def update_stock(product_id: str, payload: StockUpdateIn):
    return respond(products.update_stock(database(), product_id, payload))


@app.post("/api/products/{product_id}/restock")
def restock(product_id: str, quantity: int = Query(..., ge=1, le=config.MAX_STOCK_QUANTITY)):
    return respond(products.restock(database(), product_id, quantity))


@app.put("/api/products/{product_id}/discount")
def set_discount(product_id: str, payload: Discount):
    return respond(products.set_discount(database(), product_id, payload))


@app.delete("/api/products/{product_id}/discount")
def clear_discount(product_id: str):
    return respond(products.set_discount(database(), product_id, None))


# ------------------ Orders ------------------
@app.get("/api/orders")
def list_orders(
    page: Optional[int] = None,
    limit: Optional[int] = None,
    sortBy: str = "createdAt",
    sortType: str = "desc",
    search: str = "",
    status: Optional[str] = None,
    paymentStatus: Optional[str] = None,
    minAmount: Optional[float] = None,
    maxAmount: Optional[float] = None,
    fromDate: Optional[datetime] = Query(None),
    toDate: Optional[datetime] = Query(None),
    customer: Optional[str] = None,
    product: Optional[str] = None,
):
    return respond(orders.list_orders(
        database(), page=page, limit=limit, sort_by=sortBy, sort_type=sortType, search=search,
        status=status, payment_status=paymentStatus, min_amount=minAmount, max_amount=maxAmount,
        from_date=fromDate, to_date=toDate, customer=customer, product=product,
    ))


@app.post("/api/orders", status_code=201)
def create_order(payload: OrderIn):
    return respond(orders.create_order(database(), payload))


@app.get("/api/orders/stats")
def order_stats(customer: Optional[str] = None):
    return respond(orders.order_stats(database(), customer))


@app.get("/api/orders/{order_id}")
def get_order(order_id: str):
    return respond(orders.get_order(database(), order_id))


@app.patch("/api/orders/{order_id}")
def update_order(order_id: str, payload: OrderUpdateIn):
    return respond(orders.update_order(database(), order_id, payload))


@app.post("/api/orders/{order_id}/items")
def add_order_item(order_id: str, payload: OrderItemIn):
    return respond(orders.add_item(database(), order_id, payload.product, payload.quantity))


@app.patch("/api/orders/{order_id}/items/{index}")
def update_order_item(order_id: str, index: int, payload: OrderItemQuantityIn):
    return respond(orders.update_item_quantity(database(), order_id, index, payload.quantity))


@app.delete("/api/orders/{order_id}/items/{index}")
def remove_order_item(order_id: str, index: int):
    return respond(orders.remove_item(database(), order_id, index))


@app.delete("/api/orders/{order_id}")
def delete_order(order_id: str):
    return respond(orders.delete_order(database(), order_id))


# ------------------ Meal orders ------------------
@app.get("/api/meal-orders")
def list_meal_orders(
    page: Optional[int] = None,
    limit: Optional[int] = None,
    sortBy: str = "date",
    sortType: str = "desc",
    search: str = "",
    date: Optional[str] = None,
    fromDate: Optional[str] = None,
    toDate: Optional[str] = None,
    customer: Optional[str] = None,
):
    return respond(meal_orders.list_meal_orders(
        database(), page=page, limit=limit, sort_by=sortBy, sort_type=sortType, search=search,
        date=date, from_date=fromDate, to_date=toDate, customer=customer,
    ))


@app.post("/api/meal-orders", status_code=201)
def register_meal_order(payload: MealOrderIn):
    return respond(meal_orders.register_meal_order(database(), payload))


@app.get("/api/meal-orders/{meal_order_id}")
def get_meal_order(meal_order_id: str):
    return respond(meal_orders.get_meal_order(database(), meal_order_id))


@app.patch("/api/meal-orders/{meal_order_id}")
def update_meal_order(meal_order_id: str, payload: MealOrderUpdateIn):
    return respond(meal_orders.update_meal_order(database(), meal_order_id, payload))


@app.delete("/api/meal-orders/{meal_order_id}")
def delete_meal_order(meal_order_id: str):
    return respond(meal_orders.delete_meal_order(database(), meal_order_id))


# ------------------ Payments ------------------
@app.get("/api/payments")
def list_payments(
    page: Optional[int] = None,
    limit: Optional[int] = None,
    sortBy: str = "createdAt",
    sortType: str = "desc",
    customer: Optional[str] = None,
):
    return respond(payments.list_payments(
        database(), page=page, limit=limit, sort_by=sortBy, sort_type=sortType, customer=customer,
    ))


@app.post("/api/payments", status_code=201)
def register_payment(payload: PaymentIn):
    return respond(payments.register_payment(database(), payload))


@app.get("/api/payments/{payment_id}")
def get_payment(payment_id: str):
    return respond(payments.get_payment(database(), payment_id))


@app.patch("/api/payments/{payment_id}")
def update_payment(payment_id: str, payload: PaymentUpdateIn):
    return respond(payments.update_payment(database(), payment_id, payload))


@app.delete("/api/payments/{payment_id}")
def delete_payment(payment_id: str):
    return respond(payments.delete_payment(database(), payment_id))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
