"""
Reconciliation reports.

The counted figures of a report are immutable once generated. A later count
for the same (location, business_date) produces a new report that supersedes
the previous one; history is kept for audit. Only the review status moves,
from pending to acknowledged when a manager signs the variances off.
"""
import uuid
from sqlalchemy import (
    Column, String, Integer, Boolean, Numeric, Date, DateTime, ForeignKey, Uuid, Index,
)
from sqlalchemy.orm import relationship

from stockledger.core.business_day import utcnow
from stockledger.db.base import Base


OVER = "over"
UNDER = "under"
OK = "ok"

PENDING = "pending"
ACKNOWLEDGED = "acknowledged"


class ReconciliationReport(Base):
    """Expected-versus-counted comparison for one location and business date."""
    __tablename__ = "reconciliation_reports"
    __table_args__ = (
        Index("idx_reconciliation_location_date", "location_id", "business_date", "generated_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    location_id = Column(Uuid, ForeignKey("locations.id"), nullable=False)
    business_date = Column(Date, nullable=False)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    generated_at = Column(DateTime, nullable=False, default=utcnow)
    over_count = Column(Integer, nullable=False, default=0)
    under_count = Column(Integer, nullable=False, default=0)
    ok_count = Column(Integer, nullable=False, default=0)
    total_variance_value = Column(Numeric(18, 4), nullable=False, default=0)
    adjustments_applied = Column(Boolean, nullable=False, default=False)
    submitted_by = Column(String(100))
    status = Column(String(20), nullable=False, default=PENDING)
    acknowledged_by = Column(String(100))
    acknowledged_at = Column(DateTime)

    location = relationship("Location")
    lines = relationship(
        "ReconciliationLine",
        back_populates="report",
        cascade="all, delete-orphan",
        order_by="ReconciliationLine.position",
    )


class ReconciliationLine(Base):
    """Per-ingredient variance within a report."""
    __tablename__ = "reconciliation_lines"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    report_id = Column(Uuid, ForeignKey("reconciliation_reports.id", ondelete="CASCADE"), nullable=False)
    ingredient_id = Column(Uuid, ForeignKey("ingredients.id"), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    opening = Column(Numeric(18, 4), nullable=False)
    inflow = Column(Numeric(18, 4), nullable=False)
    outflow = Column(Numeric(18, 4), nullable=False)
    expected = Column(Numeric(18, 4), nullable=False)
    actual = Column(Numeric(18, 4), nullable=False)
    variance = Column(Numeric(18, 4), nullable=False)  # actual - expected
    variance_percentage = Column(Numeric(18, 2))  # None when expected == 0
    percentage_undefined = Column(Boolean, nullable=False, default=False)
    classification = Column(String(10), nullable=False)  # over, under, ok
    unit_cost = Column(Numeric(20, 8), nullable=False, default=0)
    variance_value = Column(Numeric(18, 4), nullable=False, default=0)

    report = relationship("ReconciliationReport", back_populates="lines")
    ingredient = relationship("Ingredient")
