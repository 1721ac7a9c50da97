"""
Ingredient catalog model.
"""
import uuid
from sqlalchemy import Column, String, Boolean, Numeric, DateTime, Uuid, func
from sqlalchemy.orm import relationship

from stockledger.db.base import Base


class Ingredient(Base):
    """
    A raw material tracked by the ledger.

    Weighted-average cost is not stored here: it is kept per location on
    StockLevel and derived from received batches. Ingredients are never
    deleted because movements reference them permanently; they are
    deactivated instead.
    """
    __tablename__ = "ingredients"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    base_unit = Column(String(20), nullable=False)  # g, ml, pcs, kg, l ...
    reorder_threshold = Column(Numeric(18, 4), nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    stock_levels = relationship("StockLevel", back_populates="ingredient")
    batches = relationship("Batch", back_populates="ingredient")
