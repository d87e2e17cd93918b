"""
Error taxonomy and service results

Service code raises ``ServiceError`` subclasses. Public operations are
wrapped with ``@service`` so callers always receive a ``Result`` tagged as
success, validation_error, domain_error, internal_error or
consistency_error, never an exception.
"""
import logging
from dataclasses import dataclass
from functools import wraps
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as SchemaError
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)

Fields = List[Dict[str, str]]


class ServiceError(Exception):
    kind = "domain_error"
    status_code = 400

    def __init__(self, message: str, fields: Optional[Fields] = None):
        super().__init__(message)
        self.message = message
        self.fields = fields or []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.status_code,
            "fields": self.fields or None,
        }


class ValidationError(ServiceError):
    kind = "validation_error"


class DomainError(ServiceError):
    pass


class NotFound(ServiceError):
    status_code = 404


class OutOfStock(ServiceError):
    status_code = 409


class InsufficientStock(OutOfStock):
    pass


class ConflictError(ServiceError):
    status_code = 409


class AuthenticationError(ServiceError):
    status_code = 401


class InternalError(ServiceError):
    kind = "internal_error"
    status_code = 500


class ConsistencyError(InternalError):
    """Compensation after a failure did not complete; records may disagree."""
    kind = "consistency_error"


@dataclass
class Result:
    data: Any = None
    error: Optional[ServiceError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> str:
        return "success" if self.error is None else self.error.kind

    @classmethod
    def success(cls, data: Any = None) -> "Result":
        return cls(data=data)

    @classmethod
    def failure(cls, error: ServiceError) -> "Result":
        return cls(error=error)


def schema_validation_error(error: SchemaError, msg: str = "Invalid data") -> ValidationError:
    fields = [
        {"name": ".".join(str(part) for part in issue["loc"]), "message": issue["msg"]}
        for issue in error.errors()
    ]
    return ValidationError(msg, fields=fields)


def service(fn):
    """Run a service operation and fold every failure into a ``Result``."""

    @wraps(fn)
    def wrapper(*args, **kwargs) -> Result:
        try:
            return Result.success(fn(*args, **kwargs))
        except ServiceError as e:
            return Result.failure(e)
        except SchemaError as e:
            return Result.failure(schema_validation_error(e))
        except PyMongoError as e:
            logger.exception("Storage failure in %s", fn.__name__)
            return Result.failure(InternalError(str(e)))
        except Exception as e:
            logger.exception("Unexpected failure in %s", fn.__name__)
            return Result.failure(InternalError(str(e) or type(e).__name__))

    return wrapper
