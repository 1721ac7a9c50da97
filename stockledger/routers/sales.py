"""
Sales router: POS sale ingestion, back-fill and the manual review queue.
"""
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from stockledger.db.session import get_db
from stockledger.schemas.sales import (
    BackfillRequest,
    BackfillResponse,
    ReviewItemResponse,
    SaleEvent,
    SaleResultResponse,
)
from stockledger.services.sales_sync import ESCALATED, SalesSyncService


router = APIRouter(tags=["sales"])


def _sale_response(result) -> JSONResponse:
    body = SaleResultResponse.model_validate(result).model_dump(mode="json")
    if result.status == ESCALATED:
        # locks were not obtained; the sale waits on the review queue
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
    return JSONResponse(status_code=status.HTTP_200_OK, content=body)


@router.post("/sales", response_model=SaleResultResponse)
def record_sale(event: SaleEvent, db: Session = Depends(get_db)):
    """
    Apply a POS sale.

    All lines are consumed together or not at all. Replaying a sale with a
    known ``sale_correlation_id`` returns ``status: duplicate`` and changes
    nothing.
    """
    result = SalesSyncService(db).process_sale(event.to_sale())
    return _sale_response(result)


@router.post("/sales/backfill", response_model=BackfillResponse)
def backfill_sales(request: BackfillRequest, db: Session = Depends(get_db)):
    """Apply historical sales in order; already recorded sales are skipped."""
    return SalesSyncService(db).backfill([event.to_sale() for event in request.sales])


@router.get("/reviews", response_model=List[ReviewItemResponse])
def list_reviews(db: Session = Depends(get_db)):
    """Open manual review items, oldest first."""
    return SalesSyncService(db).open_reviews()


@router.post("/reviews/{item_id}/retry", response_model=SaleResultResponse)
def retry_review(item_id: UUID, db: Session = Depends(get_db)):
    """Re-run an escalated sale."""
    result = SalesSyncService(db).retry_review(item_id)
    return _sale_response(result)
