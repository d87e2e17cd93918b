import logging
from datetime import datetime
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import config
import inventory
from database import PRODUCTS, as_utc, create_document, now_utc, oid
from errors import ConflictError, NotFound, ValidationError, service
from pricing import final_price
from schemas import Discount, Product, ProductIn, StockUpdateIn

logger = logging.getLogger(__name__)


def with_final_price(product: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    d = dict(product)
    d["finalPrice"] = final_price(d["unit"]["originalPrice"], d.get("discount"), now)
    return d


def _slug_conflict() -> ConflictError:
    return ConflictError("Product already exists", fields=[{"name": "slug", "message": "Slug must be unique"}])


@service
def create_product(db, payload: ProductIn, now: Optional[datetime] = None) -> Dict[str, Any]:
    if db[PRODUCTS].find_one({"slug": payload.slug}, {"_id": 1}):
        raise _slug_conflict()
    data = payload.model_dump(exclude_none=True)
    if payload.lowStockThreshold is None:
        data["lowStockThreshold"] = config.DEFAULT_LOW_STOCK_THRESHOLD
    data["status"] = inventory.stock_status(data["stockQuantity"], data["lowStockThreshold"])
    doc = Product(**data).model_dump(exclude_none=True)
    if "discount" in doc:
        doc["discount"]["expiresAt"] = as_utc(doc["discount"]["expiresAt"])
    now = now or now_utc()
    doc.update(createdAt=now, updatedAt=now)
    try:
        product = create_document(db, PRODUCTS, doc)
    except DuplicateKeyError:
        raise _slug_conflict()
    logger.info("Created product %s (%s)", product["_id"], product["slug"])
    return with_final_price(product, now)


@service
def get_product(db, product_id, now: Optional[datetime] = None) -> Dict[str, Any]:
    product = db[PRODUCTS].find_one({"_id": oid(product_id, "productId")})
    if product is None:
        raise NotFound("Product not found with provided ID")
    return with_final_price(product, now or now_utc())


@service
def update_stock(db, product_id, payload: StockUpdateIn, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or now_utc()
    product = inventory.set_stock(
        db, oid(product_id, "productId"),
        stock_quantity=payload.stockQuantity,
        low_stock_threshold=payload.lowStockThreshold,
        now=now,
    )
    return with_final_price(product, now)


@service
def restock(db, product_id, quantity: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or now_utc()
    if not 1 <= quantity <= config.MAX_STOCK_QUANTITY:
        raise ValidationError(
            "Invalid quantity",
            fields=[{"name": "quantity", "message": f"Quantity must be between 1 and {config.MAX_STOCK_QUANTITY}"}],
        )
    if inventory.release(db, oid(product_id, "productId"), quantity, now) is None:
        raise NotFound("Product not found with provided ID")
    return with_final_price(db[PRODUCTS].find_one({"_id": oid(product_id)}), now)


@service
def set_discount(db, product_id, discount: Optional[Discount], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Replace the product's discount; ``None`` removes it.

    Prices already captured on orders are unaffected.
    """
    now = now or now_utc()
    if discount is None:
        update = {"$unset": {"discount": ""}, "$set": {"updatedAt": now}}
    else:
        value = discount.model_dump()
        value["expiresAt"] = as_utc(value["expiresAt"])
        update = {"$set": {"discount": value, "updatedAt": now}}
    product = db[PRODUCTS].find_one_and_update(
        {"_id": oid(product_id, "productId")}, update, return_document=ReturnDocument.AFTER,
    )
    if product is None:
        raise NotFound("Product not found with provided ID")
    return with_final_price(product, now)
