"""
Sale sync: turns POS sale events into consumption.

Each sale is applied all-or-nothing: every line is exploded through its
recipe and all resulting consumption is written in one Stock Mutation
call, together with one ConsumptionEvent per line. Sales are idempotent on
their correlation id, so back-fills can be re-run safely.

Line outcomes:
- applied: recipe found, stock consumed
- no_recipe: product unknown or without BOM; recorded, nothing consumed
- unit_error: BOM unit incompatible with the ingredient; recorded, nothing
  consumed for that line

Contention is retried with backoff; a sale that still cannot get its locks
goes to the manual review queue.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stockledger.core.business_day import to_naive_utc, utcnow
from stockledger.core.config import Settings, get_settings
from stockledger.core.errors import (
    Contention,
    InvalidQuantity,
    LedgerError,
    NotFound,
    RecipeNotFound,
    UnitConversionError,
)
from stockledger.models.inventory import ConsumptionEvent
from stockledger.models.location import Location
from stockledger.models.review import ManualReviewItem
from stockledger.services.costing import ZERO, to_decimal
from stockledger.services.locking import retry_on_contention
from stockledger.services.recipe_explosion import RecipeExplosionService
from stockledger.services.stock_mutation import Consume, StockMutationService

logger = logging.getLogger(__name__)

APPLIED = "applied"
NO_RECIPE = "no_recipe"
UNIT_ERROR = "unit_error"

# Sale-level outcomes
DUPLICATE = "duplicate"
ESCALATED = "escalated"
FAILED = "failed"


@dataclass
class SaleLine:
    product_ref: str  # product id or POS external reference
    quantity_sold: Decimal
    modifier_ids: List[str] = field(default_factory=list)


@dataclass
class Sale:
    """A POS sale: one or more sold product lines at a location."""
    sale_correlation_id: str
    location_id: UUID
    lines: List[SaleLine]
    occurred_at: Optional[datetime] = None

    def to_payload(self) -> dict:
        """JSON-safe form, stored on the manual review queue."""
        return {
            "sale_correlation_id": self.sale_correlation_id,
            "location_id": str(self.location_id),
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
            "lines": [
                {
                    "product_ref": str(line.product_ref),
                    "quantity_sold": str(line.quantity_sold),
                    "modifier_ids": list(line.modifier_ids),
                }
                for line in self.lines
            ],
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "Sale":
        occurred_at = payload.get("occurred_at")
        return cls(
            sale_correlation_id=payload["sale_correlation_id"],
            location_id=UUID(payload["location_id"]),
            occurred_at=datetime.fromisoformat(occurred_at) if occurred_at else None,
            lines=[
                SaleLine(
                    product_ref=line["product_ref"],
                    quantity_sold=Decimal(line["quantity_sold"]),
                    modifier_ids=line.get("modifier_ids") or [],
                )
                for line in payload["lines"]
            ],
        )


@dataclass
class LineOutcome:
    line_number: int
    product_ref: str
    status: str
    total_cost: Decimal = ZERO
    message: Optional[str] = None


@dataclass
class SaleResult:
    sale_correlation_id: str
    status: str  # applied, duplicate, escalated, failed
    lines: List[LineOutcome] = field(default_factory=list)
    movements_written: int = 0
    review_item_id: Optional[UUID] = None
    error: Optional[str] = None


@dataclass
class BackfillSummary:
    processed: int = 0
    applied: int = 0
    duplicates: int = 0
    escalated: int = 0
    failed: int = 0
    results: List[SaleResult] = field(default_factory=list)


class SalesSyncService:
    """
    Applies POS sales to the ledger.

    Args:
        db: SQLAlchemy session
        settings: Retry and stock policy settings
    """

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.explosion = RecipeExplosionService(db)
        self.mutations = StockMutationService(db, self.settings)

    def is_recorded(self, sale_correlation_id: str) -> bool:
        return self.db.execute(
            select(ConsumptionEvent.id)
            .where(ConsumptionEvent.sale_correlation_id == sale_correlation_id)
            .limit(1)
        ).first() is not None

    def process_sale(self, sale: Sale) -> SaleResult:
        """
        Apply one sale.

        Returns:
            SaleResult; ``status`` is ``duplicate`` when the sale was already
            recorded and ``escalated`` when it was queued for manual review

        Raises:
            NotFound: unknown or inactive location
            InvalidQuantity: a line with quantity_sold <= 0
            InsufficientStock: consumption would drive stock negative under
                the reject policy (nothing of the sale is written)
        """
        if not sale.lines:
            raise ValueError(f"Sale {sale.sale_correlation_id} has no lines")

        if self.is_recorded(sale.sale_correlation_id):
            logger.info(f"Sale {sale.sale_correlation_id} already recorded, skipping")
            return SaleResult(sale.sale_correlation_id, DUPLICATE)

        location = self.db.get(Location, sale.location_id)
        if location is None or not location.is_active:
            raise NotFound("Location", sale.location_id)

        occurred_at = to_naive_utc(sale.occurred_at) if sale.occurred_at else utcnow()
        attempts = 0

        def attempt() -> SaleResult:
            nonlocal attempts
            attempts += 1
            events, outcomes, proposals = self._plan(sale, occurred_at)
            if proposals:
                written = self.mutations.apply(proposals, extra_rows=events)
                count = len(written.movements)
            else:
                self.db.add_all(events)
                self.db.commit()
                count = 0
            for outcome, event in zip(outcomes, events):
                outcome.total_cost = event.total_cost or ZERO
            return SaleResult(sale.sale_correlation_id, APPLIED, outcomes, count)

        try:
            result = retry_on_contention(
                attempt,
                max_retries=self.settings.CONTENTION_MAX_RETRIES,
                backoff_seconds=self.settings.CONTENTION_BACKOFF_SECONDS,
            )
        except IntegrityError:
            # another worker recorded the same sale between our check and commit
            self.db.rollback()
            logger.info(f"Sale {sale.sale_correlation_id} recorded concurrently, skipping")
            return SaleResult(sale.sale_correlation_id, DUPLICATE)
        except Contention as e:
            item = self._escalate(sale, e, attempts)
            return SaleResult(
                sale.sale_correlation_id, ESCALATED, review_item_id=item.id, error=str(e)
            )

        logger.info(
            f"Sale {sale.sale_correlation_id} at {location.name}: "
            f"{len(result.lines)} line(s), {result.movements_written} movement(s)"
        )
        return result

    def _plan(self, sale: Sale, occurred_at: datetime) -> Tuple[List[ConsumptionEvent], List[LineOutcome], List[Consume]]:
        """Explode every line into ConsumptionEvent rows and Consume proposals."""
        events: List[ConsumptionEvent] = []
        outcomes: List[LineOutcome] = []
        proposals: List[Consume] = []

        for line_number, line in enumerate(sale.lines):
            quantity_sold = to_decimal(line.quantity_sold)
            if quantity_sold <= ZERO:
                raise InvalidQuantity(quantity_sold, f"Quantity sold must be positive (got {quantity_sold})")
            product = self.explosion.resolve_product(line.product_ref)
            status, message, consumption = APPLIED, None, []

            try:
                if product is None:
                    raise RecipeNotFound(line.product_ref)
                consumption = self.explosion.explode_product(product, quantity_sold, line.modifier_ids)
            except RecipeNotFound as e:
                status, message = NO_RECIPE, str(e)
                logger.warning(f"Sale {sale.sale_correlation_id} line {line_number}: {e}; recorded without consumption")
            except UnitConversionError as e:
                status, message = UNIT_ERROR, str(e)
                logger.warning(f"Sale {sale.sale_correlation_id} line {line_number}: {e}; line skipped")

            event = ConsumptionEvent(
                id=uuid.uuid4(),
                sale_correlation_id=sale.sale_correlation_id,
                line_number=line_number,
                product_id=product.id if product else None,
                product_ref=str(line.product_ref),
                location_id=sale.location_id,
                quantity_sold=quantity_sold,
                modifier_ids=list(line.modifier_ids),
                occurred_at=occurred_at,
                status=status,
                total_cost=ZERO,
            )
            events.append(event)
            outcomes.append(LineOutcome(line_number, str(line.product_ref), status, message=message))

            for item in consumption:
                proposals.append(Consume(
                    ingredient_id=item.ingredient_id,
                    location_id=sale.location_id,
                    quantity=item.quantity,
                    correlation_id=sale.sale_correlation_id,
                    occurred_at=occurred_at,
                    consumption_event=event,
                ))

        return events, outcomes, proposals

    def _escalate(self, sale: Sale, error: LedgerError, attempts: int) -> ManualReviewItem:
        item = ManualReviewItem(
            id=uuid.uuid4(),
            source="sale",
            correlation_id=sale.sale_correlation_id,
            payload=sale.to_payload(),
            error_kind=error.code,
            message=str(error),
            attempts=attempts,
            created_at=utcnow(),
        )
        self.db.add(item)
        self.db.commit()
        logger.error(
            f"Sale {sale.sale_correlation_id} escalated to manual review after {attempts} attempt(s): {error}"
        )
        return item

    def backfill(self, sales: List[Sale]) -> BackfillSummary:
        """
        Apply many sales in order, skipping those already recorded.

        A sale that fails with a ledger error is reported and the back-fill
        continues; re-running the same input afterwards only applies what is
        still missing.
        """
        summary = BackfillSummary()
        for sale in sales:
            summary.processed += 1
            try:
                result = self.process_sale(sale)
            except LedgerError as e:
                logger.error(f"Back-fill: sale {sale.sale_correlation_id} failed: {e}")
                result = SaleResult(sale.sale_correlation_id, FAILED, error=str(e))

            if result.status == APPLIED:
                summary.applied += 1
            elif result.status == DUPLICATE:
                summary.duplicates += 1
            elif result.status == ESCALATED:
                summary.escalated += 1
            else:
                summary.failed += 1
            summary.results.append(result)

        logger.info(
            f"Back-fill complete: {summary.applied} applied, {summary.duplicates} duplicates, "
            f"{summary.escalated} escalated, {summary.failed} failed"
        )
        return summary

    # ============ Manual review queue ============

    def open_reviews(self) -> List[ManualReviewItem]:
        return self.db.execute(
            select(ManualReviewItem)
            .where(ManualReviewItem.resolved_at.is_(None))
            .order_by(ManualReviewItem.created_at)
        ).scalars().all()

    def retry_review(self, item_id: UUID) -> SaleResult:
        """Re-run an escalated sale; the item is resolved once the sale is recorded."""
        item = self.db.get(ManualReviewItem, item_id)
        if item is None or item.source != "sale":
            raise NotFound("Review item", item_id)
        if item.resolved_at is not None:
            return SaleResult(item.correlation_id, DUPLICATE)

        result = self.process_sale(Sale.from_payload(item.payload))
        if result.status in (APPLIED, DUPLICATE):
            item.resolved_at = utcnow()
            self.db.commit()
            logger.info(f"Review item {item.id} resolved ({result.status})")
        elif result.status == ESCALATED and result.review_item_id:
            # the new escalation replaces this one
            item.resolved_at = utcnow()
            self.db.commit()
        return result
