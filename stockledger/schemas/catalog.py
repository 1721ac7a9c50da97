"""
Location, ingredient and recipe schemas.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional
from uuid import UUID

import pytz
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stockledger.core.units import is_known_unit, normalize_unit


class LocationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    kind: Literal["store", "kiosk", "shop"] = "store"
    timezone: Optional[str] = None

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: Optional[str]) -> Optional[str]:
        if v and v not in pytz.all_timezones_set:
            raise ValueError(f"Unknown timezone {v!r}")
        return v


class LocationResponse(BaseModel):
    id: UUID
    name: str
    kind: str
    timezone: Optional[str] = None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class IngredientCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    base_unit: str
    reorder_threshold: Decimal = Field(default=Decimal("0"), ge=0)

    @field_validator("base_unit")
    @classmethod
    def validate_unit(cls, v: str) -> str:
        if not is_known_unit(v):
            raise ValueError(f"Unknown unit {v!r}")
        return normalize_unit(v)


class IngredientResponse(BaseModel):
    id: UUID
    name: str
    base_unit: str
    reorder_threshold: Decimal
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class BomLineIn(BaseModel):
    ingredient_id: UUID
    line_type: Literal["base", "modifier_add", "modifier_override"] = "base"
    modifier_id: Optional[str] = None
    quantity: Decimal = Field(ge=0)
    unit: str

    @field_validator("unit")
    @classmethod
    def validate_unit(cls, v: str) -> str:
        if not is_known_unit(v):
            raise ValueError(f"Unknown unit {v!r}")
        return normalize_unit(v)

    @model_validator(mode="after")
    def modifier_required(self) -> "BomLineIn":
        if self.line_type != "base" and not self.modifier_id:
            raise ValueError(f"{self.line_type} lines need a modifier_id")
        return self


class RecipeSync(BaseModel):
    """Full replacement of a product's bill of materials."""
    name: str = Field(min_length=1, max_length=255)
    is_active: bool = True
    lines: List[BomLineIn] = Field(min_length=1)


class BomLineResponse(BaseModel):
    ingredient_id: UUID
    line_type: str
    modifier_id: Optional[str] = None
    quantity: Decimal
    unit: str
    position: int

    model_config = ConfigDict(from_attributes=True)


class ProductResponse(BaseModel):
    id: UUID
    name: str
    external_ref: Optional[str] = None
    is_active: bool
    updated_at: Optional[datetime] = None
    bom_lines: List[BomLineResponse]

    model_config = ConfigDict(from_attributes=True)
