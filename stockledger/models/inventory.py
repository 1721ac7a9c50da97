"""
Inventory ledger models.

Movement is the append-only system of record. Batch.quantity_remaining and
StockLevel are materialized views over it and can be rebuilt by replay.
"""
import uuid
from sqlalchemy import (
    Column, String, Text, Integer, Numeric, DateTime, ForeignKey, Uuid, JSON,
    CheckConstraint, UniqueConstraint, Index, event, func,
)
from sqlalchemy.orm import relationship

from stockledger.core.business_day import utcnow
from stockledger.db.base import Base


RECEIPT = "receipt"
CONSUMPTION = "consumption"
TRANSFER_OUT = "transfer_out"
TRANSFER_IN = "transfer_in"
WASTAGE = "wastage"
ADJUSTMENT = "adjustment"

MOVEMENT_TYPES = (RECEIPT, CONSUMPTION, TRANSFER_OUT, TRANSFER_IN, WASTAGE, ADJUSTMENT)


class Batch(Base):
    """A quantity of an ingredient received at a specific cost."""
    __tablename__ = "batches"
    __table_args__ = (
        CheckConstraint("quantity_remaining >= 0", name="ck_batches_remaining_non_negative"),
        CheckConstraint("quantity_remaining <= quantity_received", name="ck_batches_remaining_le_received"),
        Index("idx_batches_ingredient_location", "ingredient_id", "location_id"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    ingredient_id = Column(Uuid, ForeignKey("ingredients.id"), nullable=False)
    location_id = Column(Uuid, ForeignKey("locations.id"), nullable=False)
    quantity_received = Column(Numeric(18, 4), nullable=False)  # base unit
    unit_cost = Column(Numeric(20, 8), nullable=False)
    quantity_remaining = Column(Numeric(18, 4), nullable=False)
    received_at = Column(DateTime, nullable=False, default=utcnow)
    source_ref = Column(String(100))  # purchase line, "transfer:<corr>", "adjustment:<reason>"

    ingredient = relationship("Ingredient", back_populates="batches")
    location = relationship("Location")


class StockLevel(Base):
    """Current quantity and weighted-average cost per (ingredient, location)."""
    __tablename__ = "stock_levels"
    __table_args__ = (
        UniqueConstraint("ingredient_id", "location_id", name="uq_stock_levels_ingredient_location"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    ingredient_id = Column(Uuid, ForeignKey("ingredients.id"), nullable=False)
    location_id = Column(Uuid, ForeignKey("locations.id"), nullable=False)
    quantity = Column(Numeric(18, 4), nullable=False, default=0)
    unit_cost = Column(Numeric(20, 8), nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    ingredient = relationship("Ingredient", back_populates="stock_levels")
    location = relationship("Location")


class Movement(Base):
    """Immutable, signed quantity change with a cause, time and cost."""
    __tablename__ = "movements"
    __table_args__ = (
        CheckConstraint(
            "movement_type IN ('receipt', 'consumption', 'transfer_out', 'transfer_in', 'wastage', 'adjustment')",
            name="ck_movements_type",
        ),
        Index("idx_movements_key_time", "ingredient_id", "location_id", "occurred_at"),
        Index("idx_movements_location_time", "location_id", "occurred_at"),
        Index("idx_movements_correlation", "correlation_id"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    ingredient_id = Column(Uuid, ForeignKey("ingredients.id"), nullable=False)
    location_id = Column(Uuid, ForeignKey("locations.id"), nullable=False)
    movement_type = Column(String(20), nullable=False)
    quantity = Column(Numeric(18, 4), nullable=False)  # Positive for in, negative for out
    unit_cost = Column(Numeric(20, 8), nullable=False)
    occurred_at = Column(DateTime, nullable=False, default=utcnow)
    recorded_at = Column(DateTime, nullable=False, default=utcnow)
    correlation_id = Column(String(100))  # sale, transfer pair, or purchase reference
    batch_id = Column(Uuid, ForeignKey("batches.id"))  # batch created by an in-flow
    consumption_event_id = Column(Uuid, ForeignKey("consumption_events.id"))
    reason = Column(Text)

    batch = relationship("Batch")
    consumption_event = relationship("ConsumptionEvent", back_populates="movements")


@event.listens_for(Movement, "before_update")
def _reject_movement_update(mapper, connection, target):
    raise ValueError("Movements are append-only and cannot be updated")


@event.listens_for(Movement, "before_delete")
def _reject_movement_delete(mapper, connection, target):
    raise ValueError("Movements are append-only and cannot be deleted")


class ConsumptionEvent(Base):
    """
    One sold product line and the consumption movements it caused.

    Keyed by (sale_correlation_id, line_number) so that replaying a sale is
    detected instead of double-counted.
    """
    __tablename__ = "consumption_events"
    __table_args__ = (
        UniqueConstraint("sale_correlation_id", "line_number", name="uq_consumption_events_sale_line"),
        Index("idx_consumption_events_product_time", "product_id", "occurred_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    sale_correlation_id = Column(String(100), nullable=False)
    line_number = Column(Integer, nullable=False, default=0)
    product_id = Column(Uuid, ForeignKey("products.id"))  # None when the product is unknown
    product_ref = Column(String(100), nullable=False)
    location_id = Column(Uuid, ForeignKey("locations.id"), nullable=False)
    quantity_sold = Column(Numeric(18, 4), nullable=False)
    modifier_ids = Column(JSON, default=list)
    occurred_at = Column(DateTime, nullable=False, default=utcnow)
    status = Column(String(20), nullable=False)  # applied, no_recipe, unit_error
    total_cost = Column(Numeric(18, 4), nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())

    movements = relationship("Movement", back_populates="consumption_event")
