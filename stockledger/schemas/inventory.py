"""
Stock movement Pydantic schemas for API request/response models.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class MovementResponse(BaseModel):
    """A single ledger movement."""
    id: UUID
    ingredient_id: UUID
    location_id: UUID
    movement_type: str
    quantity: Decimal
    unit_cost: Decimal
    occurred_at: datetime
    recorded_at: datetime
    correlation_id: Optional[str] = None
    batch_id: Optional[UUID] = None
    consumption_event_id: Optional[UUID] = None
    reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class BatchResponse(BaseModel):
    id: UUID
    ingredient_id: UUID
    location_id: UUID
    quantity_received: Decimal
    quantity_remaining: Decimal
    unit_cost: Decimal
    received_at: datetime
    source_ref: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PurchaseCreate(BaseModel):
    """Request model for receiving a purchase line."""
    ingredient_id: UUID
    location_id: UUID
    quantity: Decimal
    unit_cost: Decimal
    purchase_ref: Optional[str] = Field(default=None, max_length=100)
    unit: Optional[str] = None  # defaults to the ingredient base unit
    occurred_at: Optional[datetime] = None


class PurchaseResponse(BaseModel):
    movement: MovementResponse
    batch: BatchResponse


class TransferCreate(BaseModel):
    """Request model for moving stock between locations."""
    ingredient_id: UUID
    from_location_id: UUID
    to_location_id: UUID
    quantity: Decimal
    reason: Optional[str] = None
    occurred_at: Optional[datetime] = None


class TransferResponse(BaseModel):
    correlation_id: str
    transfer_out: MovementResponse
    transfer_in: MovementResponse


class AdjustmentCreate(BaseModel):
    """Request model for wastage (negative delta) or a stock correction."""
    ingredient_id: UUID
    location_id: UUID
    delta: Decimal
    reason: str = Field(min_length=1)
    kind: Literal["wastage", "adjustment"] = "adjustment"
    unit_cost: Optional[Decimal] = None  # positive adjustments only
    occurred_at: Optional[datetime] = None


class StockLevelResponse(BaseModel):
    ingredient_id: UUID
    ingredient_name: str
    location_id: UUID
    location_name: str
    quantity: Decimal
    unit: str
    unit_cost: Decimal
    stock_value: Decimal
    reorder_threshold: Decimal
    below_reorder_threshold: bool

    model_config = ConfigDict(from_attributes=True)


class StockLevelListResponse(BaseModel):
    levels: List[StockLevelResponse]
    total: int
    below_threshold_count: int


class LedgerDiscrepancyResponse(BaseModel):
    ingredient_id: UUID
    location_id: UUID
    cached_quantity: Decimal
    batch_quantity: Decimal
    replayed_quantity: Decimal
    cached_unit_cost: Decimal
    replayed_unit_cost: Decimal

    model_config = ConfigDict(from_attributes=True)


class LedgerVerifyResponse(BaseModel):
    consistent: bool
    discrepancies: List[LedgerDiscrepancyResponse]


class LedgerRebuildRequest(BaseModel):
    ingredient_id: UUID
    location_id: UUID


class RebuiltStockLevelResponse(BaseModel):
    ingredient_id: UUID
    location_id: UUID
    quantity: Decimal
    unit_cost: Decimal

    model_config = ConfigDict(from_attributes=True)


class ReplenishmentLineResponse(BaseModel):
    ingredient_id: UUID
    ingredient_name: str
    location_id: UUID
    quantity: Decimal
    unit: str
    average_daily_usage: Decimal
    days_of_cover: Optional[Decimal] = None
    suggested_order: Decimal
    below_reorder_threshold: bool

    model_config = ConfigDict(from_attributes=True)


class DailyConsumptionResponse(BaseModel):
    business_date: date
    ingredient_id: UUID
    ingredient_name: str
    location_id: UUID
    location_name: str
    unit: str
    quantity: Decimal
    cost: Decimal
    transaction_count: int

    model_config = ConfigDict(from_attributes=True)
