"""Domain errors raised by the inventory services.

Each error carries the HTTP status the API layer should answer with;
``main.py`` registers a single handler for the base class.
"""


class InventoryError(Exception):
    """Base class for business-rule failures."""

    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(InventoryError):
    status_code = 404


class BusinessRuleError(InventoryError):
    status_code = 400


class ConcurrencyError(InventoryError):
    """Raised when a guarded update loses a race with another request."""

    status_code = 409


class PermissionDeniedError(InventoryError):
    status_code = 403


class InsufficientStockError(BusinessRuleError):
    """Raised when available stock cannot cover a requested quantity."""

    def __init__(self, message: str, product_id: int, requested, allocated):
        self.product_id = product_id
        self.requested = requested
        self.allocated = allocated
        super().__init__(message)
