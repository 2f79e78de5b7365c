"""
Inventory error taxonomy.

Every error carries a stable ``code`` (used in structured results and HTTP payloads)
and a ``hint`` telling the operator what to do about it.
"""

from typing import Optional


class InventoryError(Exception):
    code = "inventory_error"
    hint: Optional[str] = None
    retryable = False

    def __init__(self, message: str, *, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if hint is not None:
            self.hint = hint

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "hint": self.hint}


class MappingNotFound(InventoryError):
    """No active conversion mapping for (store, ingredient name, ingredient unit)."""

    code = "mapping_not_found"
    hint = "missing inventory mapping, deploy product"

    def __init__(self, store_id, ingredient_name: str, ingredient_unit: str):
        self.store_id = store_id
        self.ingredient_name = ingredient_name
        self.ingredient_unit = ingredient_unit
        super().__init__(
            f"No inventory mapping for '{ingredient_name}' ({ingredient_unit}) in store {store_id}"
        )


class InsufficientStock(InventoryError):
    code = "insufficient_stock"
    hint = "restock the item or remove it from the order"

    def __init__(self, item_name: str, available: float, required: float, unit: str = ""):
        self.item_name = item_name
        self.available = available
        self.required = required
        self.unit = unit
        super().__init__(
            f"Insufficient stock for '{item_name}': need {required:g} {unit}, have {available:g} {unit}".strip()
        )


class VersionConflict(InventoryError):
    """The stock row changed between read and conditional write."""

    code = "version_conflict"
    hint = "stock was modified concurrently, retry the sale"
    retryable = True

    def __init__(self, inventory_stock_id, expected_version: int):
        self.inventory_stock_id = inventory_stock_id
        self.expected_version = expected_version
        super().__init__(
            f"Version conflict on stock {inventory_stock_id}: expected version {expected_version}"
        )


class RemoteIOError(InventoryError):
    code = "remote_io_error"
    hint = "inventory store unreachable, check the connection and retry"
    retryable = True


class ValidationSystemError(InventoryError):
    code = "validation_system_error"
    hint = "unexpected data from the inventory store, contact support"


class MappingConflict(InventoryError):
    code = "mapping_conflict"
    hint = "deactivate the existing mapping before creating a new one"


class NotFound(InventoryError):
    code = "not_found"


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, InventoryError) and exc.retryable
