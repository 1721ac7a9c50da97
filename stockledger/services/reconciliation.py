"""
Reconciliation Engine: expected versus counted stock.

For one location and a closed period [start, end):

    expected = opening + inflow - outflow
    variance = actual - expected

Where:
- opening = signed sum of all movements before start (replayed from the log,
  not read from the StockLevel cache)
- inflow  = sum of positive movements in the period
- outflow = sum of |negative movements| in the period

variance > 0 is "over" (more on the shelf than the ledger explains),
variance < 0 is "under" (shrinkage, waste or unrecorded sales).

Report figures are immutable; counting the same location and business date
again produces a newer report that supersedes the previous one. A manager
acknowledges a report once its variances have been reviewed.
"""
import logging
import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import List, Mapping, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from stockledger.core.business_day import business_day_window, get_business_date, utcnow
from stockledger.core.config import Settings, get_settings
from stockledger.core.errors import InvalidQuantity, NotFound
from stockledger.models.ingredient import Ingredient
from stockledger.models.inventory import ADJUSTMENT, StockLevel
from stockledger.models.location import Location
from stockledger.models.reconciliation import (
    ACKNOWLEDGED,
    OK,
    OVER,
    UNDER,
    ReconciliationLine,
    ReconciliationReport,
)
from stockledger.services.costing import (
    ZERO,
    movement_value,
    quantize_percent,
    quantize_quantity,
    to_decimal,
)
from stockledger.services.ledger import LedgerStore, PeriodFlow
from stockledger.services.locking import retry_on_contention
from stockledger.services.stock_mutation import Adjust, StockMutationService

logger = logging.getLogger(__name__)

# Count adjustments land on the last instant of the counted period, so a
# recount of the same period sees them and the next period opens with them.
ADJUSTMENT_OFFSET = timedelta(microseconds=1)


def snapshot_isolation(dialect_name: str, settings: Settings) -> Optional[str]:
    """Isolation level the reconciliation read runs at on a given backend."""
    if dialect_name == "postgresql":
        return settings.RECONCILIATION_ISOLATION
    if dialect_name == "sqlite":
        return "SERIALIZABLE"
    return None


def classify(variance: Decimal, tolerance: Decimal = ZERO) -> str:
    """over / under / ok; a variance within the tolerance (inclusive) is ok."""
    if abs(variance) <= tolerance:
        return OK
    return OVER if variance > ZERO else UNDER


def variance_percentage(variance: Decimal, expected: Decimal) -> Optional[Decimal]:
    """variance / expected × 100 to 2 dp, or None when expected is zero."""
    if expected == ZERO:
        return None
    return quantize_percent(variance / expected * 100)


class ReconciliationEngine:
    """
    Builds and stores reconciliation reports.

    The computation only reads the movement log. Aligning the StockLevel
    to the count is a separate, opt-in step that goes through the Stock
    Mutation Service as ``adjustment`` movements.
    """

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.ledger = LedgerStore(db, self.settings)

    def reconcile(
        self,
        location_id: UUID,
        period_start: datetime,
        period_end: datetime,
        counts: Mapping[UUID, Decimal],
        business_date: Optional[date] = None,
        apply_adjustments: Optional[bool] = None,
        submitted_by: Optional[str] = None,
    ) -> ReconciliationReport:
        """
        Compare counted quantities with the ledger for a closed period.

        Args:
            location_id: Location that was counted
            period_start: Inclusive start (naive UTC)
            period_end: Exclusive end (naive UTC)
            counts: ingredient_id -> actual counted quantity (base unit, >= 0)
            business_date: Business date the period represents
            apply_adjustments: Post an adjustment movement per non-zero
                variance; None uses AUTO_ADJUST_ON_COUNT
            submitted_by: Free-form reference of who submitted the count

        Returns:
            The stored report with its lines

        Raises:
            NotFound: unknown location or ingredient
            InvalidQuantity: negative count or empty submission
        """
        self._begin_snapshot()

        location = self.db.get(Location, location_id)
        if location is None:
            raise NotFound("Location", location_id)
        if not counts:
            raise InvalidQuantity(0, "A count submission needs at least one ingredient")
        if period_end <= period_start:
            raise ValueError("period_end must be after period_start")

        ingredient_ids = list(counts.keys())
        for ingredient_id in ingredient_ids:
            if self.db.get(Ingredient, ingredient_id) is None:
                raise NotFound("Ingredient", ingredient_id)
            if to_decimal(counts[ingredient_id]) < ZERO:
                raise InvalidQuantity(counts[ingredient_id], "Counted quantity cannot be negative")

        openings = self.ledger.opening_balances(location_id, period_start, ingredient_ids)
        flows = self.ledger.period_flows(location_id, period_start, period_end, ingredient_ids)
        costs = dict(self.db.execute(
            select(StockLevel.ingredient_id, StockLevel.unit_cost).where(
                StockLevel.location_id == location_id,
                StockLevel.ingredient_id.in_(ingredient_ids),
            )
        ).all())

        report = ReconciliationReport(
            id=uuid.uuid4(),
            location_id=location_id,
            business_date=business_date or get_business_date(
                period_start,
                location.timezone or self.settings.BUSINESS_TIMEZONE,
                self.settings.BUSINESS_DAY_START_HOUR,
            ),
            period_start=period_start,
            period_end=period_end,
            generated_at=utcnow(),
            submitted_by=submitted_by,
        )

        total_value = ZERO
        tally = {OVER: 0, UNDER: 0, OK: 0}
        for position, ingredient_id in enumerate(ingredient_ids):
            flow = flows.get(ingredient_id, PeriodFlow())
            opening = openings.get(ingredient_id, ZERO)
            expected = quantize_quantity(opening + flow.inflow - flow.outflow)
            actual = quantize_quantity(counts[ingredient_id])
            variance = actual - expected
            unit_cost = costs.get(ingredient_id, ZERO)
            percentage = variance_percentage(variance, expected)
            classification = classify(variance, self.settings.VARIANCE_TOLERANCE)
            value = movement_value(variance, unit_cost)

            tally[classification] += 1
            total_value += value
            report.lines.append(ReconciliationLine(
                ingredient_id=ingredient_id,
                position=position,
                opening=opening,
                inflow=flow.inflow,
                outflow=flow.outflow,
                expected=expected,
                actual=actual,
                variance=variance,
                variance_percentage=percentage,
                percentage_undefined=percentage is None,
                classification=classification,
                unit_cost=unit_cost,
                variance_value=value,
            ))

        report.over_count = tally[OVER]
        report.under_count = tally[UNDER]
        report.ok_count = tally[OK]
        report.total_variance_value = total_value

        if apply_adjustments is None:
            apply_adjustments = self.settings.AUTO_ADJUST_ON_COUNT
        proposals = [
            Adjust(
                ingredient_id=line.ingredient_id,
                location_id=location_id,
                delta=line.variance,
                reason=f"Stock count {report.business_date.isoformat()}",
                kind=ADJUSTMENT,
                correlation_id=f"count:{report.id}",
                occurred_at=period_end - ADJUSTMENT_OFFSET,
            )
            for line in report.lines
            if line.variance != ZERO
        ] if apply_adjustments else []

        if proposals:
            report.adjustments_applied = True
            mutations = StockMutationService(self.db, self.settings)
            retry_on_contention(
                lambda: mutations.apply(proposals, extra_rows=[report]),
                max_retries=self.settings.CONTENTION_MAX_RETRIES,
                backoff_seconds=self.settings.CONTENTION_BACKOFF_SECONDS,
            )
        else:
            self.db.add(report)
            self.db.commit()

        logger.info(
            f"Reconciliation {report.id} for location {location.name} on {report.business_date}: "
            f"{report.over_count} over, {report.under_count} under, {report.ok_count} ok, "
            f"variance value {report.total_variance_value}"
            + (f", {len(proposals)} adjustments posted" if proposals else "")
        )
        return report

    def reconcile_day(
        self,
        location_id: UUID,
        business_date: date,
        counts: Mapping[UUID, Decimal],
        apply_adjustments: Optional[bool] = None,
        submitted_by: Optional[str] = None,
    ) -> ReconciliationReport:
        """Reconcile a whole business day, using the location's timezone."""
        self._begin_snapshot()

        location = self.db.get(Location, location_id)
        if location is None:
            raise NotFound("Location", location_id)

        start, end = business_day_window(
            business_date,
            location.timezone or self.settings.BUSINESS_TIMEZONE,
            self.settings.BUSINESS_DAY_START_HOUR,
        )
        return self.reconcile(
            location_id, start, end, counts,
            business_date=business_date,
            apply_adjustments=apply_adjustments,
            submitted_by=submitted_by,
        )

    def latest_report(self, location_id: UUID, business_date: date) -> Optional[ReconciliationReport]:
        """The report currently in force for a location and business date."""
        return self.db.execute(
            select(ReconciliationReport)
            .where(
                ReconciliationReport.location_id == location_id,
                ReconciliationReport.business_date == business_date,
            )
            .order_by(ReconciliationReport.generated_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    def history(self, location_id: UUID, business_date: date) -> List[ReconciliationReport]:
        """Every report for a location and business date, newest first."""
        return self.db.execute(
            select(ReconciliationReport)
            .where(
                ReconciliationReport.location_id == location_id,
                ReconciliationReport.business_date == business_date,
            )
            .order_by(ReconciliationReport.generated_at.desc())
        ).scalars().all()

    def summary(
        self,
        location_id: UUID,
        start_date: date,
        end_date: date,
    ) -> List[ReconciliationReport]:
        """
        The report in force for each counted business date in
        [start_date, end_date], newest date first.

        Superseded reports are left out; use ``history`` for those.
        """
        if end_date < start_date:
            raise ValueError("end_date must not be before start_date")
        if self.db.get(Location, location_id) is None:
            raise NotFound("Location", location_id)

        reports = self.db.execute(
            select(ReconciliationReport)
            .where(
                ReconciliationReport.location_id == location_id,
                ReconciliationReport.business_date >= start_date,
                ReconciliationReport.business_date <= end_date,
            )
            .order_by(ReconciliationReport.business_date.desc(), ReconciliationReport.generated_at.desc())
        ).scalars().all()

        in_force = []
        seen = set()
        for report in reports:
            if report.business_date not in seen:
                seen.add(report.business_date)
                in_force.append(report)
        return in_force

    def variance_lines(self, report_id: UUID) -> List[ReconciliationLine]:
        """Lines of a report that are not ok, largest loss first."""
        report = self.db.get(ReconciliationReport, report_id)
        if report is None:
            raise NotFound("Reconciliation report", report_id)
        return self.db.execute(
            select(ReconciliationLine)
            .where(ReconciliationLine.report_id == report_id, ReconciliationLine.classification != OK)
            .order_by(ReconciliationLine.variance_value, ReconciliationLine.position)
        ).scalars().all()

    def acknowledge(self, report_id: UUID, acknowledged_by: str) -> ReconciliationReport:
        """
        Mark a report's variances as reviewed.

        Only the review status changes; the counted figures stay as
        generated. Acknowledging again records the latest reviewer.
        """
        if not acknowledged_by or not acknowledged_by.strip():
            raise ValueError("acknowledged_by is required")
        report = self.db.get(ReconciliationReport, report_id)
        if report is None:
            raise NotFound("Reconciliation report", report_id)

        report.status = ACKNOWLEDGED
        report.acknowledged_by = acknowledged_by.strip()
        report.acknowledged_at = utcnow()
        self.db.commit()
        self.db.refresh(report)

        logger.info(f"Reconciliation {report.id} acknowledged by {report.acknowledged_by}")
        return report

    def _begin_snapshot(self) -> None:
        """
        Start the transaction every reconciliation read runs in at the
        snapshot isolation level.

        The isolation level can only be set when the connection is first
        procured, so a read-only transaction the session autobegan (loading
        a fixture or the caller's own lookups) is ended first. A transaction
        holding pending writes is left alone.
        """
        level = snapshot_isolation(self.db.get_bind().dialect.name, self.settings)
        if level is None:
            return
        if self.db.in_transaction():
            current = self.db.connection().get_execution_options().get("isolation_level")
            if current == level:
                return
            if self.db.new or self.db.dirty or self.db.deleted:
                logger.warning("Reconciliation running at default isolation: session has pending changes")
                return
            self.db.rollback()
        self.db.connection(execution_options={"isolation_level": level})
