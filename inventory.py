"""
Inventory stock tracking

Stock moves only through atomic conditional updates, so two concurrent
reservations can never take the quantity below zero. ``status`` is derived
from ``stockQuantity`` and ``lowStockThreshold`` by ``stock_status`` and
re-synced after every change.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from pymongo import ReturnDocument

from database import PRODUCTS, now_utc
from errors import InsufficientStock, NotFound, OutOfStock, ValidationError

logger = logging.getLogger(__name__)

IN_STOCK = "inStock"
LOW_STOCK = "lowStock"
OUT_OF_STOCK = "outOfStock"


def stock_status(stock_quantity: int, low_stock_threshold: int) -> str:
    if stock_quantity <= 0:
        return OUT_OF_STOCK
    if stock_quantity <= low_stock_threshold:
        return LOW_STOCK
    return IN_STOCK


def sync_status(db, product: Dict[str, Any]) -> Dict[str, Any]:
    """Store the derived status for the quantity/threshold we observed.

    The write only matches while both values are unchanged; a concurrent
    writer that moved them syncs the status for its own observation.
    """
    qty = product.get("stockQuantity", 0)
    threshold = product.get("lowStockThreshold", 0)
    status = stock_status(qty, threshold)
    if product.get("status") != status:
        res = db[PRODUCTS].update_one(
            {"_id": product["_id"], "stockQuantity": qty, "lowStockThreshold": threshold},
            {"$set": {"status": status}},
        )
        if res.matched_count == 0:
            logger.debug("Product %s changed before status sync", product["_id"])
        product["status"] = status
    return product


def reserve(db, product_id, quantity: int, now: Optional[datetime] = None) -> int:
    """Take ``quantity`` units out of stock and return the new stock level."""
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1", fields=[{"name": "quantity", "message": "Quantity must be at least 1"}])
    product = db[PRODUCTS].find_one_and_update(
        {"_id": product_id, "stockQuantity": {"$gte": quantity, "$gt": 0}},
        {"$inc": {"stockQuantity": -quantity}, "$set": {"updatedAt": now or now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if product is None:
        current = db[PRODUCTS].find_one({"_id": product_id}, {"name": 1, "stockQuantity": 1})
        if current is None:
            raise NotFound("Product not found")
        available = current.get("stockQuantity", 0)
        if available <= 0:
            raise OutOfStock(f"{current.get('name', 'Product')} is out of stock")
        raise InsufficientStock(f"Only {available} of {current.get('name', 'product')} left in stock")
    sync_status(db, product)
    return product["stockQuantity"]


def release(db, product_id, quantity: int, now: Optional[datetime] = None) -> Optional[int]:
    """Put ``quantity`` units back. Returns ``None`` if the product is gone."""
    product = db[PRODUCTS].find_one_and_update(
        {"_id": product_id},
        {"$inc": {"stockQuantity": quantity}, "$set": {"updatedAt": now or now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if product is None:
        logger.warning("Cannot release %s units, product %s no longer exists", quantity, product_id)
        return None
    sync_status(db, product)
    return product["stockQuantity"]


def set_stock(db, product_id, stock_quantity: Optional[int] = None,
              low_stock_threshold: Optional[int] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    update: Dict[str, Any] = {"updatedAt": now or now_utc()}
    if stock_quantity is not None:
        if stock_quantity < 0:
            raise ValidationError("Invalid stock", fields=[{"name": "stockQuantity", "message": "Stock quantity must be a non-negative number."}])
        update["stockQuantity"] = stock_quantity
    if low_stock_threshold is not None:
        if low_stock_threshold < 0:
            raise ValidationError("Invalid threshold", fields=[{"name": "lowStockThreshold", "message": "Threshold must be a non-negative number."}])
        update["lowStockThreshold"] = low_stock_threshold
    product = db[PRODUCTS].find_one_and_update(
        {"_id": product_id}, {"$set": update}, return_document=ReturnDocument.AFTER,
    )
    if product is None:
        raise NotFound("Product not found with provided ID")
    return sync_status(db, product)
