import os


def _flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
PORT = _int("PORT", 8000)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

ACCESS_KEY_TTL_MINUTES = _int("ACCESS_KEY_TTL_MINUTES", 60)
ACCESS_LINK_BASE_URL = os.getenv("ACCESS_LINK_BASE_URL", "http://localhost:8000/api/customers/access")

DEFAULT_LOW_STOCK_THRESHOLD = _int("DEFAULT_LOW_STOCK_THRESHOLD", 20)
MAX_STOCK_QUANTITY = _int("MAX_STOCK_QUANTITY", 1_000_000)
# Deleting (or cancelling) an order keeps its stock reserved unless enabled.
RELEASE_STOCK_ON_DELETE = _flag("RELEASE_STOCK_ON_DELETE", False)

DEFAULT_PAGE = _int("DEFAULT_PAGE", 1)
DEFAULT_LIMIT = _int("DEFAULT_LIMIT", 10)
