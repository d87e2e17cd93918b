from datetime import datetime
from typing import Any, Dict, Optional

from database import as_utc


def discount_value(discount: Optional[Dict[str, Any]], now: datetime) -> float:
    if not discount:
        return 0.0
    expires_at = discount.get("expiresAt")
    if expires_at is None or as_utc(expires_at) <= as_utc(now):
        return 0.0
    return float(discount.get("value") or 0)


def final_price(original_price: float, discount: Optional[Dict[str, Any]], now: datetime) -> float:
    """Effective unit price at ``now``.

    A percentage discount takes ``value`` percent off, a flat one subtracts
    ``value``. Expired discounts count as zero and the result never goes
    below zero. Use the same ``now`` for every line of an order.
    """
    price = float(original_price)
    value = discount_value(discount, now)
    if value and discount.get("type") == "percentage":
        price = price - price * value / 100
    elif value:
        price = price - value
    return round(max(price, 0.0), 2)
