"""
Ledger audit router: cache verification and rebuild.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from stockledger.db.session import get_db
from stockledger.schemas.inventory import (
    LedgerRebuildRequest,
    LedgerVerifyResponse,
    RebuiltStockLevelResponse,
)
from stockledger.services.ledger import LedgerStore


router = APIRouter(prefix="/ledger", tags=["ledger"])


@router.get("/verify", response_model=LedgerVerifyResponse)
def verify_ledger(db: Session = Depends(get_db)):
    """Compare every StockLevel with its batches and with a replay of the movement log."""
    discrepancies = LedgerStore(db).verify()
    return {"consistent": not discrepancies, "discrepancies": discrepancies}


@router.post("/rebuild", response_model=RebuiltStockLevelResponse)
def rebuild_ledger(request: LedgerRebuildRequest, db: Session = Depends(get_db)):
    """Recompute one StockLevel and its batch remaining from the movement log."""
    return LedgerStore(db).rebuild(request.ingredient_id, request.location_id)
