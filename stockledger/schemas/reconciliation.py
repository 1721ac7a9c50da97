"""
Stock count and reconciliation report schemas.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CountEntry(BaseModel):
    ingredient_id: UUID
    actual: Decimal  # base unit


class CountSubmission(BaseModel):
    """Request model for an end-of-day stock count."""
    location_id: UUID
    date: date
    counts: List[CountEntry] = Field(min_length=1)
    apply_adjustments: Optional[bool] = None  # None = AUTO_ADJUST_ON_COUNT
    submitted_by: Optional[str] = Field(default=None, max_length=100)

    @field_validator("counts")
    @classmethod
    def unique_ingredients(cls, v: List[CountEntry]) -> List[CountEntry]:
        seen = set()
        for entry in v:
            if entry.ingredient_id in seen:
                raise ValueError(f"Ingredient {entry.ingredient_id} counted more than once")
            seen.add(entry.ingredient_id)
        return v


class ReconciliationLineResponse(BaseModel):
    ingredient_id: UUID
    opening: Decimal
    inflow: Decimal
    outflow: Decimal
    expected: Decimal
    actual: Decimal
    variance: Decimal
    variance_percentage: Optional[Decimal] = None
    percentage_undefined: bool
    classification: str
    unit_cost: Decimal
    variance_value: Decimal

    model_config = ConfigDict(from_attributes=True)


class ReconciliationReportResponse(BaseModel):
    id: UUID
    location_id: UUID
    business_date: date
    period_start: datetime
    period_end: datetime
    generated_at: datetime
    over_count: int
    under_count: int
    ok_count: int
    total_variance_value: Decimal
    adjustments_applied: bool
    submitted_by: Optional[str] = None
    status: str
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    lines: List[ReconciliationLineResponse]

    model_config = ConfigDict(from_attributes=True)


class ReconciliationSummaryResponse(BaseModel):
    """A report in force, without its lines."""
    id: UUID
    location_id: UUID
    business_date: date
    generated_at: datetime
    over_count: int
    under_count: int
    ok_count: int
    total_variance_value: Decimal
    adjustments_applied: bool
    status: str
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AcknowledgeRequest(BaseModel):
    acknowledged_by: str = Field(min_length=1, max_length=100)

    @field_validator("acknowledged_by")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("acknowledged_by cannot be blank")
        return v.strip()
