from __future__ import annotations


class PurchasingError(Exception):
    """Base class for errors raised by purchase order operations."""


class ValidationError(PurchasingError):
    """Raised before any write when order or item fields are missing or out of range."""

    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = errors
        super().__init__("Validation failed: " + ", ".join(errors))


class InvalidStateError(PurchasingError):
    """Raised when the order's current status forbids the requested operation."""


class InvalidStateTransitionError(PurchasingError):
    def __init__(self, old_status: str, new_status: str):
        self.old_status = old_status
        self.new_status = new_status
        super().__init__(f"Cannot transition from {old_status} to {new_status}")


class NotFoundError(PurchasingError):
    def __init__(self, resource: str, identifier: object | None = None):
        self.resource = resource
        self.identifier = identifier
        if identifier is None:
            super().__init__(f"{resource} not found")
        else:
            super().__init__(f"{resource} not found: {identifier}")


class StoreError(PurchasingError):
    """Wraps a failed persistence call with the operation and item it belonged to."""

    def __init__(self, message: str, operation: str | None = None, item_id: int | None = None):
        self.operation = operation
        self.item_id = item_id
        super().__init__(message)
