"""
Exception Handler Module
Provides the typed settlement errors and the decorator that maps storage
failures onto them
"""

import logging
import functools
from typing import Any, Callable, Optional

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

logger = logging.getLogger(__name__)


class SettlementError(Exception):
    """Base class for all errors surfaced by settlement operations"""

    error_type = "settlement_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"type": self.error_type, "message": self.message}


class ValidationError(SettlementError):
    """Caller-correctable input failure; never retried"""

    error_type = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["field"] = self.field
        return data


class NotFoundError(SettlementError):
    """Referenced order, escrow, seller entry or product does not exist"""

    error_type = "not_found"

    def __init__(self, resource: str, resource_id: Any, message: Optional[str] = None):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(message or f"{resource} {resource_id} not found")

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({"resource": self.resource, "resource_id": self.resource_id})
        return data


class InvalidStateError(SettlementError):
    """Requested transition is illegal from the current status"""

    error_type = "invalid_state"

    def __init__(self, message: str, current_status: Optional[str] = None):
        self.current_status = current_status
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["current_status"] = self.current_status
        return data


class InfrastructureError(SettlementError):
    """Storage unavailable or failed mid-transaction; the transaction was rolled back"""

    error_type = "infrastructure_error"


def translate_storage_errors(func: Callable) -> Callable:
    """
    Decorator for service entry points.
    Re-raises SQLAlchemy failures as typed settlement errors so callers only
    ever see SettlementError subclasses.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> Any:
        try:
            return func(*args, **kwargs)
        except SettlementError:
            raise
        except StaleDataError as e:
            logger.warning(f"CONCURRENT_UPDATE: {func.__name__} lost an optimistic lock race: {e}")
            raise InvalidStateError(
                "Record was modified concurrently, reload and retry",
                current_status="stale",
            ) from e
        except (OperationalError, DBAPIError) as e:
            logger.error(f"STORAGE_FAILURE in {func.__name__}: {type(e).__name__}: {e}")
            raise InfrastructureError(f"Storage failure during {func.__name__}") from e

    return wrapper
