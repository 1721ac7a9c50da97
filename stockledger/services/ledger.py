"""
Ledger Store read side.

Queries over the movement log and the materialized caches (StockLevel,
Batch.quantity_remaining), plus replay-based repair and verification of
those caches.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set, Tuple
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stockledger.core.business_day import get_business_date, utcnow
from stockledger.core.config import Settings, get_settings
from stockledger.core.errors import NotFound
from stockledger.models.ingredient import Ingredient
from stockledger.models.inventory import CONSUMPTION, Batch, ConsumptionEvent, Movement, StockLevel
from stockledger.models.location import Location
from stockledger.services.costing import (
    ZERO,
    CostedPosition,
    cover_deficit,
    draw_down,
    quantize_quantity,
    quantize_value,
    replay_position,
    to_decimal,
)
from stockledger.services.locking import KeyedLockManager, StockKey, default_lock_manager

logger = logging.getLogger(__name__)


@dataclass
class StockLevelView:
    """Current stock of one ingredient at one location."""
    ingredient_id: UUID
    ingredient_name: str
    location_id: UUID
    location_name: str
    quantity: Decimal
    unit: str
    unit_cost: Decimal
    stock_value: Decimal
    reorder_threshold: Decimal
    below_reorder_threshold: bool


@dataclass
class DailyConsumption:
    """What one ingredient consumed at one location on one business date."""
    business_date: date
    ingredient_id: UUID
    ingredient_name: str
    location_id: UUID
    location_name: str
    unit: str
    quantity: Decimal
    cost: Decimal
    transaction_count: int


@dataclass
class PeriodFlow:
    """Gross in- and out-flow of one ingredient over a period (both >= 0)."""
    inflow: Decimal = ZERO
    outflow: Decimal = ZERO


@dataclass
class LedgerDiscrepancy:
    """A key whose caches disagree with the movement log."""
    ingredient_id: UUID
    location_id: UUID
    cached_quantity: Decimal
    batch_quantity: Decimal
    replayed_quantity: Decimal
    cached_unit_cost: Decimal
    replayed_unit_cost: Decimal


class LedgerStore:
    """Read access to the ledger and cache maintenance."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        locks: Optional[KeyedLockManager] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.locks = locks or default_lock_manager

    # ============ Stock levels ============

    def list_stock_levels(
        self,
        ingredient_id: Optional[UUID] = None,
        location_id: Optional[UUID] = None,
    ) -> List[StockLevelView]:
        """
        Current stock levels, optionally filtered.

        An ingredient is below its reorder threshold when quantity is at or
        under the threshold.
        """
        stmt = (
            select(StockLevel, Ingredient, Location)
            .join(Ingredient, StockLevel.ingredient_id == Ingredient.id)
            .join(Location, StockLevel.location_id == Location.id)
            .order_by(Location.name, Ingredient.name)
        )
        if ingredient_id:
            stmt = stmt.where(StockLevel.ingredient_id == ingredient_id)
        if location_id:
            stmt = stmt.where(StockLevel.location_id == location_id)

        views = []
        for level, ingredient, location in self.db.execute(stmt).all():
            threshold = ingredient.reorder_threshold or ZERO
            views.append(StockLevelView(
                ingredient_id=ingredient.id,
                ingredient_name=ingredient.name,
                location_id=location.id,
                location_name=location.name,
                quantity=level.quantity,
                unit=ingredient.base_unit,
                unit_cost=level.unit_cost,
                stock_value=quantize_value(level.quantity * level.unit_cost),
                reorder_threshold=threshold,
                below_reorder_threshold=level.quantity <= threshold,
            ))
        return views

    # ============ Movement queries ============

    def movement_history(
        self,
        ingredient_id: UUID,
        location_id: Optional[UUID] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Movement]:
        """Movements of an ingredient in occurrence order, within [start, end)."""
        stmt = select(Movement).where(Movement.ingredient_id == ingredient_id)
        if location_id:
            stmt = stmt.where(Movement.location_id == location_id)
        if start:
            stmt = stmt.where(Movement.occurred_at >= start)
        if end:
            stmt = stmt.where(Movement.occurred_at < end)
        stmt = stmt.order_by(Movement.occurred_at, Movement.recorded_at)
        if limit:
            stmt = stmt.limit(limit)
        return self.db.execute(stmt).scalars().all()

    def movements_by_correlation(self, correlation_id: str) -> List[Movement]:
        return self.db.execute(
            select(Movement)
            .where(Movement.correlation_id == correlation_id)
            .order_by(Movement.recorded_at)
        ).scalars().all()

    def opening_balance(self, ingredient_id: UUID, location_id: UUID, before: datetime) -> Decimal:
        """Signed sum of every movement that occurred before ``before``."""
        total = self.db.execute(
            select(func.sum(Movement.quantity)).where(
                Movement.ingredient_id == ingredient_id,
                Movement.location_id == location_id,
                Movement.occurred_at < before,
            )
        ).scalar()
        return quantize_quantity(to_decimal(total or 0))

    def opening_balances(
        self, location_id: UUID, before: datetime, ingredient_ids: Optional[Iterable[UUID]] = None
    ) -> Dict[UUID, Decimal]:
        """Opening balance per ingredient at a location."""
        stmt = (
            select(Movement.ingredient_id, func.sum(Movement.quantity))
            .where(Movement.location_id == location_id, Movement.occurred_at < before)
            .group_by(Movement.ingredient_id)
        )
        if ingredient_ids is not None:
            stmt = stmt.where(Movement.ingredient_id.in_(list(ingredient_ids)))
        return {
            ingredient_id: quantize_quantity(to_decimal(total or 0))
            for ingredient_id, total in self.db.execute(stmt).all()
        }

    def period_flows(
        self,
        location_id: UUID,
        start: datetime,
        end: datetime,
        ingredient_ids: Optional[Iterable[UUID]] = None,
    ) -> Dict[UUID, PeriodFlow]:
        """Gross inflow and outflow per ingredient for movements in [start, end)."""
        ids = list(ingredient_ids) if ingredient_ids is not None else None
        flows: Dict[UUID, PeriodFlow] = {}

        for positive in (True, False):
            stmt = (
                select(Movement.ingredient_id, func.sum(Movement.quantity))
                .where(
                    Movement.location_id == location_id,
                    Movement.occurred_at >= start,
                    Movement.occurred_at < end,
                    Movement.quantity > 0 if positive else Movement.quantity < 0,
                )
                .group_by(Movement.ingredient_id)
            )
            if ids is not None:
                stmt = stmt.where(Movement.ingredient_id.in_(ids))

            for ingredient_id, total in self.db.execute(stmt).all():
                flow = flows.setdefault(ingredient_id, PeriodFlow())
                amount = quantize_quantity(to_decimal(total or 0))
                if positive:
                    flow.inflow = amount
                else:
                    flow.outflow = -amount
        return flows

    def consumption_movements(
        self,
        product_id: Optional[UUID] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        location_id: Optional[UUID] = None,
    ) -> List[Movement]:
        """Consumption movements, optionally limited to the sales of one product."""
        stmt = select(Movement).where(Movement.movement_type == CONSUMPTION)
        if product_id:
            stmt = stmt.join(
                ConsumptionEvent, Movement.consumption_event_id == ConsumptionEvent.id
            ).where(ConsumptionEvent.product_id == product_id)
        if location_id:
            stmt = stmt.where(Movement.location_id == location_id)
        if start:
            stmt = stmt.where(Movement.occurred_at >= start)
        if end:
            stmt = stmt.where(Movement.occurred_at < end)
        return self.db.execute(stmt.order_by(Movement.occurred_at, Movement.recorded_at)).scalars().all()

    def daily_consumption(
        self,
        start_date: date,
        end_date: date,
        location_id: Optional[UUID] = None,
    ) -> List[DailyConsumption]:
        """
        Consumption per business date and ingredient for business dates in
        [start_date, end_date].

        Each movement is dated by the business day it falls in at its own
        location. Quantity and cost are positive amounts; a transaction is
        one sale (one correlation id), however many lines it consumed.
        Rows are ordered newest date first, then by location and ingredient
        name.
        """
        if end_date < start_date:
            raise ValueError("end_date must not be before start_date")

        # a business day lies within two days of its calendar date in any timezone
        stmt = (
            select(Movement, Ingredient, Location)
            .join(Ingredient, Movement.ingredient_id == Ingredient.id)
            .join(Location, Movement.location_id == Location.id)
            .where(
                Movement.movement_type == CONSUMPTION,
                Movement.occurred_at >= datetime.combine(start_date - timedelta(days=2), time.min),
                Movement.occurred_at < datetime.combine(end_date + timedelta(days=3), time.min),
            )
        )
        if location_id:
            stmt = stmt.where(Movement.location_id == location_id)

        rows: Dict[Tuple[date, UUID, UUID], DailyConsumption] = {}
        transactions: Dict[Tuple[date, UUID, UUID], Set[str]] = {}
        for movement, ingredient, location in self.db.execute(stmt).all():
            business_date = get_business_date(
                movement.occurred_at,
                location.timezone or self.settings.BUSINESS_TIMEZONE,
                self.settings.BUSINESS_DAY_START_HOUR,
            )
            if not start_date <= business_date <= end_date:
                continue

            key = (business_date, location.id, ingredient.id)
            row = rows.get(key)
            if row is None:
                row = rows[key] = DailyConsumption(
                    business_date=business_date,
                    ingredient_id=ingredient.id,
                    ingredient_name=ingredient.name,
                    location_id=location.id,
                    location_name=location.name,
                    unit=ingredient.base_unit,
                    quantity=ZERO,
                    cost=ZERO,
                    transaction_count=0,
                )
                transactions[key] = set()
            row.quantity = quantize_quantity(row.quantity - movement.quantity)
            row.cost = quantize_value(row.cost - movement.quantity * movement.unit_cost)
            transactions[key].add(movement.correlation_id or str(movement.id))

        for key, row in rows.items():
            row.transaction_count = len(transactions[key])
        return sorted(
            rows.values(),
            key=lambda r: (-r.business_date.toordinal(), r.location_name, r.ingredient_name),
        )

    # ============ Replay ============

    def _ordered_movements(self, ingredient_id: UUID, location_id: UUID) -> List[Movement]:
        # recorded order is the order the costing engine saw them in
        return self.db.execute(
            select(Movement)
            .where(Movement.ingredient_id == ingredient_id, Movement.location_id == location_id)
            .order_by(Movement.recorded_at, Movement.occurred_at)
        ).scalars().all()

    def replay(self, ingredient_id: UUID, location_id: UUID) -> CostedPosition:
        """Quantity and weighted-average cost recomputed from the movement log."""
        return replay_position(self._ordered_movements(ingredient_id, location_id))

    def rebuild(self, ingredient_id: UUID, location_id: UUID) -> StockLevel:
        """
        Recompute StockLevel and batch remaining for one key from the log.

        Runs under the key's lock and commits the repaired caches.

        Raises:
            NotFound: unknown ingredient or location
            Contention: the key stayed locked past the lock timeout
        """
        if self.db.get(Ingredient, ingredient_id) is None:
            raise NotFound("Ingredient", ingredient_id)
        if self.db.get(Location, location_id) is None:
            raise NotFound("Location", location_id)

        key: StockKey = (ingredient_id, location_id)
        with self.locks.hold([key], self.settings.LOCK_TIMEOUT_SECONDS):
            try:
                level = self.db.execute(
                    select(StockLevel)
                    .where(StockLevel.ingredient_id == ingredient_id, StockLevel.location_id == location_id)
                    .with_for_update()
                ).scalar_one_or_none()
                if level is None:
                    level = StockLevel(ingredient_id=ingredient_id, location_id=location_id)
                    self.db.add(level)

                position = CostedPosition()
                open_batches: List[Batch] = []
                for movement in self._ordered_movements(ingredient_id, location_id):
                    if movement.quantity > ZERO:
                        batch = movement.batch
                        if batch is not None:
                            batch.quantity_remaining = cover_deficit(position.quantity, movement.quantity)
                            open_batches.append(batch)
                        position.receive(movement.quantity, movement.unit_cost)
                    else:
                        draw_down(open_batches, -movement.quantity)
                        position.release(-movement.quantity)

                before = (level.quantity, level.unit_cost)
                level.quantity = position.quantity
                level.unit_cost = position.unit_cost
                level.updated_at = utcnow()
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        logger.info(
            f"Rebuilt stock level for ingredient {ingredient_id} at {location_id}: "
            f"{before[0]} @ {before[1]} -> {position.quantity} @ {position.unit_cost}"
        )
        return level

    def verify(self) -> List[LedgerDiscrepancy]:
        """Every key whose StockLevel disagrees with its batches or with a log replay."""
        keys: Set[Tuple[UUID, UUID]] = set(
            self.db.execute(select(StockLevel.ingredient_id, StockLevel.location_id)).all()
        )
        keys.update(self.db.execute(
            select(Movement.ingredient_id, Movement.location_id).distinct()
        ).all())

        discrepancies = []
        for ingredient_id, location_id in sorted(keys, key=lambda k: (str(k[1]), str(k[0]))):
            level = self.db.execute(
                select(StockLevel).where(
                    StockLevel.ingredient_id == ingredient_id,
                    StockLevel.location_id == location_id,
                )
            ).scalar_one_or_none()
            cached_quantity = level.quantity if level else ZERO
            cached_cost = level.unit_cost if level else ZERO

            batch_total = self.db.execute(
                select(func.sum(Batch.quantity_remaining)).where(
                    Batch.ingredient_id == ingredient_id,
                    Batch.location_id == location_id,
                )
            ).scalar()
            batch_quantity = quantize_quantity(to_decimal(batch_total or 0))
            replayed = self.replay(ingredient_id, location_id)

            consistent = (
                batch_quantity == max(cached_quantity, ZERO)
                and replayed.quantity == cached_quantity
                and replayed.unit_cost == cached_cost
            )
            if not consistent:
                logger.warning(
                    f"Ledger mismatch for ingredient {ingredient_id} at {location_id}: "
                    f"cache={cached_quantity} batches={batch_quantity} replay={replayed.quantity}"
                )
                discrepancies.append(LedgerDiscrepancy(
                    ingredient_id=ingredient_id,
                    location_id=location_id,
                    cached_quantity=cached_quantity,
                    batch_quantity=batch_quantity,
                    replayed_quantity=replayed.quantity,
                    cached_unit_cost=cached_cost,
                    replayed_unit_cost=replayed.unit_cost,
                ))
        return discrepancies
