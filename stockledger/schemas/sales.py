"""
Sale event schemas.

A sale arrives either with explicit ``lines`` or, for single-product POS
payloads, with ``product_id`` / ``quantity_sold`` / ``modifier_ids`` at the
top level.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from stockledger.services.sales_sync import Sale, SaleLine


class SaleLineIn(BaseModel):
    product_id: str = Field(min_length=1)  # product UUID or POS external reference
    quantity_sold: Decimal
    modifier_ids: List[str] = []


class SaleEvent(BaseModel):
    """Request model for one POS sale."""
    sale_correlation_id: str = Field(min_length=1, max_length=100)
    location_id: UUID
    occurred_at: Optional[datetime] = None
    lines: Optional[List[SaleLineIn]] = None

    # single-line shorthand
    product_id: Optional[str] = None
    quantity_sold: Optional[Decimal] = None
    modifier_ids: List[str] = []

    @model_validator(mode="after")
    def check_lines(self) -> "SaleEvent":
        if self.lines:
            if self.product_id is not None:
                raise ValueError("Provide either lines or product_id, not both")
            return self
        if self.product_id is None or self.quantity_sold is None:
            raise ValueError("A sale needs lines or product_id and quantity_sold")
        return self

    def to_sale(self) -> Sale:
        lines = self.lines or [
            SaleLineIn(product_id=self.product_id, quantity_sold=self.quantity_sold, modifier_ids=self.modifier_ids)
        ]
        return Sale(
            sale_correlation_id=self.sale_correlation_id,
            location_id=self.location_id,
            occurred_at=self.occurred_at,
            lines=[SaleLine(line.product_id, line.quantity_sold, list(line.modifier_ids)) for line in lines],
        )


class LineOutcomeResponse(BaseModel):
    line_number: int
    product_ref: str
    status: str
    total_cost: Decimal
    message: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class SaleResultResponse(BaseModel):
    sale_correlation_id: str
    status: str
    lines: List[LineOutcomeResponse] = []
    movements_written: int = 0
    review_item_id: Optional[UUID] = None
    error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class BackfillRequest(BaseModel):
    sales: List[SaleEvent] = Field(min_length=1)


class BackfillResponse(BaseModel):
    processed: int
    applied: int
    duplicates: int
    escalated: int
    failed: int
    results: List[SaleResultResponse]

    model_config = ConfigDict(from_attributes=True)


class ReviewItemResponse(BaseModel):
    id: UUID
    source: str
    correlation_id: Optional[str] = None
    payload: Dict[str, Any]
    error_kind: str
    message: Optional[str] = None
    attempts: int
    created_at: datetime
    resolved_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
