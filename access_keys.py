import hashlib
import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

import config
from database import CUSTOMERS, now_utc
from errors import AuthenticationError, NotFound

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"^[0-9a-f]{64}$")


def hash_key(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def new_access_key(ttl_minutes: Optional[int] = None, now: Optional[datetime] = None) -> Tuple[str, Dict[str, Any]]:
    """Return a plaintext key and the fields to store for it."""
    now = now or now_utc()
    ttl = config.ACCESS_KEY_TTL_MINUTES if ttl_minutes is None else ttl_minutes
    token = secrets.token_hex(32)
    return token, {
        "accessKey": hash_key(token),
        "accessKeyExpiresAt": now + timedelta(minutes=ttl),
    }


def issue_access_key(db, customer_id, ttl_minutes: Optional[int] = None, now: Optional[datetime] = None) -> str:
    """Give the customer a new read-only access key.

    Only the sha256 of the key is stored, so the plaintext returned here is
    the one chance to hand it out. Any previous key stops working.
    """
    now = now or now_utc()
    token, fields = new_access_key(ttl_minutes, now)
    res = db[CUSTOMERS].update_one({"_id": customer_id}, {"$set": dict(fields, updatedAt=now)})
    if res.matched_count == 0:
        raise NotFound("Customer not found with the provided ID")
    logger.info("Issued access key for customer %s until %s", customer_id, fields["accessKeyExpiresAt"])
    return token


def authenticate(db, token: Optional[str], now: Optional[datetime] = None) -> Dict[str, Any]:
    if not token or not _TOKEN_RE.match(token):
        raise AuthenticationError("Invalid access key format", fields=[{"name": "key", "message": "Invalid access key format"}])
    customer = db[CUSTOMERS].find_one({
        "accessKey": hash_key(token),
        "accessKeyExpiresAt": {"$gt": now or now_utc()},
    })
    if customer is None:
        raise AuthenticationError("Access key is not valid. Please request for a new key.")
    return customer
