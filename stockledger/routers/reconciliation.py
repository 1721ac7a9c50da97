"""
Reconciliation router: stock count submission, report retrieval and sign-off.
"""
from datetime import date
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from stockledger.db.session import get_db
from stockledger.schemas.reconciliation import (
    AcknowledgeRequest,
    CountSubmission,
    ReconciliationLineResponse,
    ReconciliationReportResponse,
    ReconciliationSummaryResponse,
)
from stockledger.services.reconciliation import ReconciliationEngine


router = APIRouter(tags=["reconciliation"])


@router.post("/counts", response_model=ReconciliationReportResponse, status_code=status.HTTP_201_CREATED)
def submit_count(submission: CountSubmission, db: Session = Depends(get_db)):
    """
    Submit an end-of-day count and get the reconciliation report.

    A second submission for the same location and date creates a newer
    report that supersedes the first.
    """
    engine = ReconciliationEngine(db)
    return engine.reconcile_day(
        submission.location_id,
        submission.date,
        {entry.ingredient_id: entry.actual for entry in submission.counts},
        apply_adjustments=submission.apply_adjustments,
        submitted_by=submission.submitted_by,
    )


@router.get("/reconciliation", response_model=ReconciliationReportResponse)
def get_reconciliation(location_id: UUID, date: date, db: Session = Depends(get_db)):
    """Latest report for a location and business date."""
    report = ReconciliationEngine(db).latest_report(location_id, date)
    if not report:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No reconciliation for this date")
    return report


@router.get("/reconciliation/history", response_model=List[ReconciliationReportResponse])
def reconciliation_history(location_id: UUID, date: date, db: Session = Depends(get_db)):
    """All reports for a location and business date, newest first."""
    return ReconciliationEngine(db).history(location_id, date)


@router.get("/reconciliation/summary", response_model=List[ReconciliationSummaryResponse])
def reconciliation_summary(location_id: UUID, start: date, end: date, db: Session = Depends(get_db)):
    """Report in force for each counted business date in [start, end], newest first."""
    if end < start:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="end must not be before start")
    return ReconciliationEngine(db).summary(location_id, start, end)


@router.get("/reconciliation/{report_id}/variance", response_model=List[ReconciliationLineResponse])
def reconciliation_variance(report_id: UUID, db: Session = Depends(get_db)):
    """Over and under lines of a report, largest loss first."""
    return ReconciliationEngine(db).variance_lines(report_id)


@router.post("/reconciliation/{report_id}/acknowledge", response_model=ReconciliationReportResponse)
def acknowledge_reconciliation(report_id: UUID, request: AcknowledgeRequest, db: Session = Depends(get_db)):
    """Sign off a report's variances as reviewed."""
    return ReconciliationEngine(db).acknowledge(report_id, request.acknowledged_by)
