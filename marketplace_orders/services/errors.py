"""
Service-level exceptions

Not-found is signalled by returning None, as elsewhere in the services.
"""
from contextlib import contextmanager

from sqlalchemy.exc import InterfaceError, OperationalError


class InvalidTransitionError(ValueError):
    """Requested status change is not allowed from the current status"""


class OrderOwnershipError(PermissionError):
    """Actor does not own the order it tried to change"""


class AggregationError(RuntimeError):
    """Parent status could not be derived in the same unit of work"""


class StoreUnavailableError(RuntimeError):
    """The database could not be reached; distinct from an empty result"""


@contextmanager
def store_errors(operation: str):
    """Re-raise driver/connection failures as StoreUnavailableError"""
    try:
        yield
    except (OperationalError, InterfaceError) as e:
        raise StoreUnavailableError(f"{operation} failed: {e.__class__.__name__}") from e
