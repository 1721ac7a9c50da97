"""
Products and their bills of materials.

A BOM line is a tagged variant:

- base: always consumed when the product is sold
- modifier_add: consumed in addition when ``modifier_id`` is selected
- modifier_override: replaces the base per-unit quantity of its ingredient
  when ``modifier_id`` is selected (quantity 0 removes the ingredient)

Recipes are written by the recipe sync process and are read-only for the
ledger itself.
"""
import uuid
from sqlalchemy import (
    Column, String, Integer, Boolean, Numeric, DateTime, ForeignKey, Uuid,
    CheckConstraint, Index, func,
)
from sqlalchemy.orm import relationship

from stockledger.db.base import Base


BASE_LINE = "base"
MODIFIER_ADD = "modifier_add"
MODIFIER_OVERRIDE = "modifier_override"

LINE_TYPES = (BASE_LINE, MODIFIER_ADD, MODIFIER_OVERRIDE)


class Product(Base):
    """A finished product sold at the point of sale."""
    __tablename__ = "products"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    external_ref = Column(String(100), unique=True)  # POS product id
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    bom_lines = relationship(
        "BomLine",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="BomLine.position",
    )


class BomLine(Base):
    """One ingredient requirement per unit of product sold."""
    __tablename__ = "bom_lines"
    __table_args__ = (
        CheckConstraint(
            "line_type IN ('base', 'modifier_add', 'modifier_override')",
            name="ck_bom_lines_type",
        ),
        CheckConstraint(
            "line_type = 'base' OR modifier_id IS NOT NULL",
            name="ck_bom_lines_modifier_required",
        ),
        Index("idx_bom_lines_product", "product_id"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id = Column(Uuid, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    ingredient_id = Column(Uuid, ForeignKey("ingredients.id"), nullable=False)
    line_type = Column(String(20), nullable=False, default=BASE_LINE)
    modifier_id = Column(String(100))  # POS modification id
    quantity = Column(Numeric(18, 4), nullable=False)  # per unit sold
    unit = Column(String(20), nullable=False)
    position = Column(Integer, nullable=False, default=0)

    product = relationship("Product", back_populates="bom_lines")
    ingredient = relationship("Ingredient")
