"""Inventory error taxonomy.

``InsufficientStock`` is the only error a shopper can act on. ``StateConflict``
and ``AlreadyResolved`` are terminal outcomes reached by a concurrent actor.
``InconsistentLedger`` and ``DuplicateId`` are always defects.
"""

from typing import Any, Dict, Optional


class InventoryError(Exception):
    code = "inventory_error"

    def to_detail(self) -> Dict[str, Any]:
        return {"error": self.code, "message": str(self)}


class InvalidLine(InventoryError, ValueError):
    code = "invalid_line"

    def __init__(self, message: str, line_index: Optional[int] = None):
        super().__init__(message)
        self.line_index = line_index

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        if self.line_index is not None:
            detail["line_index"] = self.line_index
        return detail


class InvalidTransfer(InventoryError, ValueError):
    code = "invalid_transfer"


class InvalidExpiry(InventoryError, ValueError):
    code = "invalid_expiry"


class UnknownStockKey(InventoryError, LookupError):
    code = "unknown_stock_key"

    def __init__(self, warehouse_id: str, product_id: str, line_index: Optional[int] = None):
        super().__init__(f"no stock record for warehouse={warehouse_id} product={product_id}")
        self.warehouse_id = warehouse_id
        self.product_id = product_id
        self.line_index = line_index

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail.update(warehouse_id=self.warehouse_id, product_id=self.product_id)
        if self.line_index is not None:
            detail["line_index"] = self.line_index
        return detail


class UnknownWarehouse(InventoryError, LookupError):
    code = "unknown_warehouse"

    def __init__(self, warehouse_id: str):
        super().__init__(f"warehouse {warehouse_id} does not exist or is inactive")
        self.warehouse_id = warehouse_id


class InsufficientStock(InventoryError):
    code = "insufficient_stock"

    def __init__(
        self,
        warehouse_id: str,
        product_id: str,
        available: int,
        requested: int,
        line_index: Optional[int] = None,
    ):
        super().__init__(
            f"insufficient stock for warehouse={warehouse_id} product={product_id}: "
            f"{available} available, {requested} requested"
        )
        self.warehouse_id = warehouse_id
        self.product_id = product_id
        self.available = available
        self.requested = requested
        self.line_index = line_index

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail.update(
            warehouse_id=self.warehouse_id,
            product_id=self.product_id,
            available=self.available,
            requested=self.requested,
        )
        if self.line_index is not None:
            detail["line_index"] = self.line_index
        return detail


class InconsistentLedger(InventoryError):
    code = "inconsistent_ledger"


class NotFound(InventoryError, LookupError):
    code = "not_found"


class DuplicateId(InventoryError):
    code = "duplicate_id"


class StateConflict(InventoryError):
    code = "state_conflict"

    def __init__(self, target_id: str, expected: str, actual: Optional[str]):
        super().__init__(f"{target_id} is {actual}, expected {expected}")
        self.target_id = target_id
        self.expected = expected
        self.actual = actual

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail.update(target_id=self.target_id, state=self.actual)
        return detail


class AlreadyResolved(StateConflict):
    """The target already reached a terminal state; do not retry."""

    code = "already_resolved"
