"""
Inventory router: purchases, transfers, adjustments and stock queries.

All stock-affecting calls go through the Stock Mutation Service; ledger
errors are translated to HTTP responses by the application error handler.
"""
from datetime import date, datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from stockledger.core.config import get_settings
from stockledger.db.session import get_db
from stockledger.models.ingredient import Ingredient
from stockledger.schemas.inventory import (
    AdjustmentCreate,
    DailyConsumptionResponse,
    MovementResponse,
    PurchaseCreate,
    PurchaseResponse,
    ReplenishmentLineResponse,
    StockLevelListResponse,
    TransferCreate,
    TransferResponse,
)
from stockledger.services.ledger import LedgerStore
from stockledger.services.locking import retry_on_contention
from stockledger.services.recipe_explosion import RecipeExplosionService
from stockledger.services.replenishment import ReplenishmentService
from stockledger.services.stock_mutation import StockMutationService


router = APIRouter(tags=["inventory"])


def _with_retry(operation):
    settings = get_settings()
    return retry_on_contention(
        operation,
        max_retries=settings.CONTENTION_MAX_RETRIES,
        backoff_seconds=settings.CONTENTION_BACKOFF_SECONDS,
    )


@router.post("/purchases", response_model=PurchaseResponse, status_code=status.HTTP_201_CREATED)
def receive_purchase(purchase: PurchaseCreate, db: Session = Depends(get_db)):
    """
    Receive a purchase line into stock.

    Creates a batch at the purchase cost and re-averages the location's
    unit cost. When ``unit`` differs from the ingredient base unit the
    quantity and cost are converted.
    """
    service = StockMutationService(db)
    movement = _with_retry(lambda: service.receive_batch(
        ingredient_id=purchase.ingredient_id,
        location_id=purchase.location_id,
        quantity=purchase.quantity,
        unit_cost=purchase.unit_cost,
        source_ref=purchase.purchase_ref,
        unit=purchase.unit,
        occurred_at=purchase.occurred_at,
    ))
    return {"movement": movement, "batch": movement.batch}


@router.post("/transfers", response_model=TransferResponse, status_code=status.HTTP_201_CREATED)
def create_transfer(transfer: TransferCreate, db: Session = Depends(get_db)):
    """Move stock between two locations at the source's average cost."""
    service = StockMutationService(db)
    transfer_out, transfer_in = _with_retry(lambda: service.transfer(
        ingredient_id=transfer.ingredient_id,
        from_location_id=transfer.from_location_id,
        to_location_id=transfer.to_location_id,
        quantity=transfer.quantity,
        reason=transfer.reason,
        occurred_at=transfer.occurred_at,
    ))
    return {
        "correlation_id": transfer_out.correlation_id,
        "transfer_out": transfer_out,
        "transfer_in": transfer_in,
    }


@router.post("/adjustments", response_model=MovementResponse, status_code=status.HTTP_201_CREATED)
def create_adjustment(adjustment: AdjustmentCreate, db: Session = Depends(get_db)):
    """Record wastage (negative delta) or a manual stock correction."""
    service = StockMutationService(db)
    return _with_retry(lambda: service.adjust(
        ingredient_id=adjustment.ingredient_id,
        location_id=adjustment.location_id,
        delta=adjustment.delta,
        reason=adjustment.reason,
        kind=adjustment.kind,
        unit_cost=adjustment.unit_cost,
        occurred_at=adjustment.occurred_at,
    ))


@router.get("/stock", response_model=StockLevelListResponse)
def list_stock(
    ingredient_id: Optional[UUID] = None,
    location_id: Optional[UUID] = None,
    db: Session = Depends(get_db),
):
    """Current stock levels with weighted-average cost and reorder flags."""
    levels = LedgerStore(db).list_stock_levels(ingredient_id=ingredient_id, location_id=location_id)
    return {
        "levels": levels,
        "total": len(levels),
        "below_threshold_count": sum(1 for level in levels if level.below_reorder_threshold),
    }


@router.get("/ingredients/{ingredient_id}/movements", response_model=List[MovementResponse])
def ingredient_movements(
    ingredient_id: UUID,
    location_id: Optional[UUID] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: Optional[int] = Query(default=None, ge=1, le=10000),
    db: Session = Depends(get_db),
):
    """Movement history of an ingredient, oldest first."""
    if not db.get(Ingredient, ingredient_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ingredient not found")
    return LedgerStore(db).movement_history(ingredient_id, location_id, start, end, limit)


@router.get("/consumption", response_model=List[MovementResponse])
def consumption(
    product_id: Optional[str] = None,
    location_id: Optional[UUID] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    """
    Consumption movements in [start, end), optionally for one product.

    ``product_id`` accepts the product UUID or its POS reference.
    """
    resolved_id = None
    if product_id:
        product = RecipeExplosionService(db).resolve_product(product_id)
        if not product:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
        resolved_id = product.id
    return LedgerStore(db).consumption_movements(resolved_id, start, end, location_id)


@router.get("/consumption/daily", response_model=List[DailyConsumptionResponse])
def daily_consumption(
    start: date,
    end: date,
    location_id: Optional[UUID] = None,
    db: Session = Depends(get_db),
):
    """Consumed quantity, cost and sale count per business date and ingredient, newest first."""
    if end < start:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="end must not be before start")
    return LedgerStore(db).daily_consumption(start, end, location_id)


@router.get("/replenishment", response_model=List[ReplenishmentLineResponse])
def replenishment(
    location_id: UUID,
    lookback_days: Optional[int] = Query(default=None, ge=1, le=365),
    cover_days: Optional[int] = Query(default=None, ge=1, le=90),
    db: Session = Depends(get_db),
):
    """Days of cover and suggested order quantities from recent consumption."""
    return ReplenishmentService(db).project(
        location_id, lookback_days=lookback_days, cover_days=cover_days
    )
