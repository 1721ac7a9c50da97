"""
Recipe Explosion Service.

Converts a sold product line into the ingredient quantities it consumes,
expressed in each ingredient's base unit.

Mathematical Model:
    consumption_j = quantity_sold × Σ_l qty_lj × factor(unit_l → base_unit_j)

Where the lines l contributing to ingredient j are:
- base lines of the product
- modifier_add lines whose modifier was selected
- a modifier_override line of a selected modifier, which replaces the base
  per-unit quantity of its ingredient (the highest position wins when
  several selected modifiers override the same ingredient)
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from stockledger.core.errors import InvalidQuantity, RecipeNotFound
from stockledger.core.units import convert
from stockledger.models.recipe import BASE_LINE, MODIFIER_ADD, MODIFIER_OVERRIDE, BomLine, Product
from stockledger.services.costing import ZERO, quantize_quantity, to_decimal

logger = logging.getLogger(__name__)


@dataclass
class ConsumptionLine:
    """Quantity of one ingredient consumed by a sale line, in its base unit."""
    ingredient_id: UUID
    quantity: Decimal
    unit: str


class RecipeExplosionService:
    """
    Explodes sold products into ingredient consumption.

    Recipes are read-only here; they are maintained by the recipe sync
    endpoint.
    """

    def __init__(self, db: Session):
        self.db = db

    def resolve_product(self, product_ref: Union[UUID, str]) -> Optional[Product]:
        """Find a product by id or by its POS external reference."""
        stmt = select(Product).options(selectinload(Product.bom_lines).selectinload(BomLine.ingredient))

        product_id = product_ref if isinstance(product_ref, UUID) else _as_uuid(product_ref)
        if product_id is not None:
            product = self.db.execute(stmt.where(Product.id == product_id)).scalar_one_or_none()
            if product:
                return product

        return self.db.execute(
            stmt.where(Product.external_ref == str(product_ref))
        ).scalar_one_or_none()

    def explode_sale(
        self,
        product_ref: Union[UUID, str],
        quantity_sold: Decimal,
        modifier_ids: Optional[Iterable[str]] = None,
    ) -> List[ConsumptionLine]:
        """
        Compute the ingredient consumption of one sold product line.

        Args:
            product_ref: Product id or POS external reference
            quantity_sold: Units sold (> 0, may be fractional)
            modifier_ids: POS modifier ids selected on the line

        Returns:
            One ConsumptionLine per ingredient, in order of first appearance
            in the recipe, zero quantities dropped

        Raises:
            InvalidQuantity: quantity_sold <= 0
            RecipeNotFound: unknown product or empty bill of materials
            UnitConversionError: a BOM line unit cannot convert to the
                ingredient base unit
        """
        quantity_sold = to_decimal(quantity_sold)
        if quantity_sold <= ZERO:
            raise InvalidQuantity(quantity_sold, f"Quantity sold must be positive (got {quantity_sold})")

        product = self.resolve_product(product_ref)
        if product is None:
            raise RecipeNotFound(product_ref)
        return self.explode_product(product, quantity_sold, modifier_ids)

    def explode_product(
        self,
        product: Product,
        quantity_sold: Decimal,
        modifier_ids: Optional[Iterable[str]] = None,
    ) -> List[ConsumptionLine]:
        """Same as explode_sale for an already resolved product."""
        quantity_sold = to_decimal(quantity_sold)
        if quantity_sold <= ZERO:
            raise InvalidQuantity(quantity_sold, f"Quantity sold must be positive (got {quantity_sold})")
        if not product.bom_lines:
            raise RecipeNotFound(product.external_ref or product.id)

        per_unit = self._effective_lines(product.bom_lines, set(modifier_ids or []))

        totals: Dict[UUID, Decimal] = {}
        units: Dict[UUID, str] = {}
        for line, quantity in per_unit:
            ingredient = line.ingredient
            in_base = convert(quantity, line.unit, ingredient.base_unit, ingredient.id)
            totals[ingredient.id] = totals.get(ingredient.id, ZERO) + in_base * quantity_sold
            units[ingredient.id] = ingredient.base_unit

        lines = [
            ConsumptionLine(ingredient_id=ingredient_id, quantity=quantize_quantity(total), unit=units[ingredient_id])
            for ingredient_id, total in totals.items()
        ]
        return [line for line in lines if line.quantity != ZERO]

    @staticmethod
    def _effective_lines(bom_lines: List[BomLine], selected: set) -> List[Tuple[BomLine, Decimal]]:
        """Resolve base, add and override lines into (line, per-unit quantity) pairs."""
        ordered = sorted(bom_lines, key=lambda l: l.position)

        overrides: Dict[UUID, BomLine] = {}
        for line in ordered:
            if line.line_type == MODIFIER_OVERRIDE and line.modifier_id in selected:
                overrides[line.ingredient_id] = line  # later position wins

        effective: List[Tuple[BomLine, Decimal]] = []
        applied_overrides = set()
        for line in ordered:
            if line.line_type == BASE_LINE:
                override = overrides.get(line.ingredient_id)
                if override is None:
                    effective.append((line, line.quantity))
                elif line.ingredient_id not in applied_overrides:
                    effective.append((override, override.quantity))
                    applied_overrides.add(line.ingredient_id)
            elif line.line_type == MODIFIER_ADD and line.modifier_id in selected:
                effective.append((line, line.quantity))

        # an override of an ingredient the base recipe lacks behaves as an addition
        for ingredient_id, override in overrides.items():
            if ingredient_id not in applied_overrides:
                effective.append((override, override.quantity))

        return effective


def _as_uuid(value) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except ValueError:
        return None
