"""
Catalog router: locations, ingredients and recipe sync.

Recipes are owned by the POS side; ``PUT /products/{external_ref}/recipe``
replaces a product's whole bill of materials.
"""
import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from stockledger.core.errors import UnitConversionError
from stockledger.core.units import are_compatible
from stockledger.db.session import get_db
from stockledger.models.ingredient import Ingredient
from stockledger.models.location import Location
from stockledger.models.recipe import BomLine, Product
from stockledger.schemas.catalog import (
    IngredientCreate,
    IngredientResponse,
    LocationCreate,
    LocationResponse,
    ProductResponse,
    RecipeSync,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["catalog"])


# ============ Locations ============

@router.post("/locations", response_model=LocationResponse, status_code=status.HTTP_201_CREATED)
def create_location(location: LocationCreate, db: Session = Depends(get_db)):
    existing = db.execute(select(Location).where(Location.name == location.name)).scalar_one_or_none()
    if existing:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Location name already exists")

    db_location = Location(name=location.name, kind=location.kind, timezone=location.timezone)
    db.add(db_location)
    db.commit()
    db.refresh(db_location)
    logger.info(f"Created location {db_location.name} ({db_location.kind})")
    return db_location


@router.get("/locations", response_model=List[LocationResponse])
def list_locations(db: Session = Depends(get_db)):
    return db.execute(select(Location).order_by(Location.name)).scalars().all()


# ============ Ingredients ============

@router.post("/ingredients", response_model=IngredientResponse, status_code=status.HTTP_201_CREATED)
def create_ingredient(ingredient: IngredientCreate, db: Session = Depends(get_db)):
    db_ingredient = Ingredient(
        name=ingredient.name,
        base_unit=ingredient.base_unit,
        reorder_threshold=ingredient.reorder_threshold,
    )
    db.add(db_ingredient)
    db.commit()
    db.refresh(db_ingredient)
    logger.info(f"Created ingredient {db_ingredient.name} [{db_ingredient.base_unit}]")
    return db_ingredient


@router.get("/ingredients", response_model=List[IngredientResponse])
def list_ingredients(include_inactive: bool = False, db: Session = Depends(get_db)):
    stmt = select(Ingredient).order_by(Ingredient.name)
    if not include_inactive:
        stmt = stmt.where(Ingredient.is_active.is_(True))
    return db.execute(stmt).scalars().all()


@router.post("/ingredients/{ingredient_id}/deactivate", response_model=IngredientResponse)
def deactivate_ingredient(ingredient_id: UUID, db: Session = Depends(get_db)):
    """
    Deactivate an ingredient.

    Ingredients are never deleted because movements reference them; an
    inactive ingredient rejects new receipts but existing stock can still
    be consumed, transferred and counted.
    """
    ingredient = _get_ingredient(db, ingredient_id)
    ingredient.is_active = False
    db.commit()
    db.refresh(ingredient)
    logger.info(f"Deactivated ingredient {ingredient.name}")
    return ingredient


def _get_ingredient(db: Session, ingredient_id: UUID) -> Ingredient:
    ingredient = db.get(Ingredient, ingredient_id)
    if not ingredient:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ingredient not found")
    return ingredient


# ============ Recipes ============

@router.put("/products/{external_ref}/recipe", response_model=ProductResponse)
def sync_recipe(external_ref: str, recipe: RecipeSync, db: Session = Depends(get_db)):
    """
    Create or replace the bill of materials of a POS product.

    Every line unit must convert to its ingredient's base unit.
    """
    product = db.execute(select(Product).where(Product.external_ref == external_ref)).scalar_one_or_none()
    if not product:
        product = Product(external_ref=external_ref, name=recipe.name)
        db.add(product)

    lines = []
    for position, line in enumerate(recipe.lines):
        ingredient = _get_ingredient(db, line.ingredient_id)
        if not are_compatible(line.unit, ingredient.base_unit):
            raise UnitConversionError(line.unit, ingredient.base_unit, ingredient.id)
        lines.append(BomLine(
            ingredient_id=ingredient.id,
            line_type=line.line_type,
            modifier_id=line.modifier_id,
            quantity=line.quantity,
            unit=line.unit,
            position=position,
        ))

    product.name = recipe.name
    product.is_active = recipe.is_active
    product.bom_lines = lines
    db.commit()
    db.refresh(product)
    logger.info(f"Synced recipe for product {external_ref}: {len(lines)} line(s)")
    return product


@router.get("/products/{external_ref}", response_model=ProductResponse)
def get_product(external_ref: str, db: Session = Depends(get_db)):
    product = db.execute(select(Product).where(Product.external_ref == external_ref)).scalar_one_or_none()
    if not product:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
    return product
