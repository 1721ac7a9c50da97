"""
Ledger error taxonomy.

Every error raised by the ledger core derives from LedgerError and carries a
stable ``code`` so that handlers (HTTP, sale sync, back-fill jobs) can decide
whether to retry, skip, or escalate without parsing messages.
"""
from decimal import Decimal
from typing import Optional
from uuid import UUID


class LedgerError(Exception):
    """Base class for all ledger errors."""
    code = "ledger_error"


class InvalidQuantity(LedgerError):
    """Raised when a non-positive (or otherwise invalid) quantity is supplied."""
    code = "invalid_quantity"

    def __init__(self, quantity, message: Optional[str] = None):
        self.quantity = quantity
        super().__init__(message or f"Quantity must be positive (got {quantity})")


class InvalidCost(LedgerError):
    """Raised when a negative unit cost is supplied."""
    code = "invalid_cost"

    def __init__(self, unit_cost):
        self.unit_cost = unit_cost
        super().__init__(f"Unit cost cannot be negative (got {unit_cost})")


class InsufficientStock(LedgerError):
    """Raised when a mutation would drive stock negative under the reject policy."""
    code = "insufficient_stock"

    def __init__(self, ingredient_id: UUID, location_id: UUID, available: Decimal, requested: Decimal):
        self.ingredient_id = ingredient_id
        self.location_id = location_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for ingredient {ingredient_id} at location {location_id}: "
            f"requested {requested}, available {available}"
        )


class SameLocation(LedgerError):
    """Raised when a transfer names the same location at both ends."""
    code = "same_location"

    def __init__(self, location_id: UUID):
        self.location_id = location_id
        super().__init__(f"Transfer source and destination are both {location_id}")


class RecipeNotFound(LedgerError):
    """Raised when a sold product has no bill of materials."""
    code = "recipe_not_found"

    def __init__(self, product_ref):
        self.product_ref = product_ref
        super().__init__(f"No recipe found for product {product_ref}")


class UnitConversionError(LedgerError):
    """Raised when converting between unknown or incompatible units."""
    code = "unit_conversion_error"

    def __init__(self, from_unit: str, to_unit: str, ingredient_id: Optional[UUID] = None):
        self.from_unit = from_unit
        self.to_unit = to_unit
        self.ingredient_id = ingredient_id
        suffix = f" for ingredient {ingredient_id}" if ingredient_id else ""
        super().__init__(f"Cannot convert '{from_unit}' to '{to_unit}'{suffix}")


class Contention(LedgerError):
    """Raised when a lock or transaction could not be obtained in time."""
    code = "contention"

    def __init__(self, keys=None, message: Optional[str] = None):
        self.keys = keys or []
        super().__init__(message or f"Timed out waiting for stock lock on {len(self.keys)} key(s)")


class NotFound(LedgerError):
    """Raised when a referenced ingredient, location or product does not exist or is inactive."""
    code = "not_found"

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")
