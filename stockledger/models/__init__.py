"""
SQLAlchemy models for the stock ledger.
"""
# Catalog
from stockledger.models.location import Location
from stockledger.models.ingredient import Ingredient

# Recipes
from stockledger.models.recipe import Product, BomLine

# Ledger
from stockledger.models.inventory import Batch, StockLevel, Movement, ConsumptionEvent

# Reconciliation
from stockledger.models.reconciliation import ReconciliationReport, ReconciliationLine

# Escalations
from stockledger.models.review import ManualReviewItem


__all__ = [
    # Catalog
    "Location",
    "Ingredient",
    # Recipes
    "Product",
    "BomLine",
    # Ledger
    "Batch",
    "StockLevel",
    "Movement",
    "ConsumptionEvent",
    # Reconciliation
    "ReconciliationReport",
    "ReconciliationLine",
    # Escalations
    "ManualReviewItem",
]
