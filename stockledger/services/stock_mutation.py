"""
Stock Mutation Service.

The single choke-point for every stock-affecting operation. A call to
``apply`` takes one or more proposed mutations and executes them as one
atomic unit:

1. validate every proposal (quantities, endpoints)
2. acquire the in-process lock of every (ingredient, location) key touched,
   in global order, with a bounded wait
3. lock the StockLevel rows (SELECT ... FOR UPDATE), creating missing ones
4. apply each proposal: append movements, create/draw down batches, update
   StockLevel quantity and weighted-average cost
5. commit, or roll back everything on the first error

Invariants enforced here:
- StockLevel.quantity >= 0 and Batch.quantity_remaining >= 0 under the
  reject-negative policy
- StockLevel.quantity == sum of Batch.quantity_remaining at the key
  (== max(quantity, 0) when the allow-negative policy let it go below zero)
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from stockledger.core.business_day import utcnow, to_naive_utc
from stockledger.core.config import Settings, get_settings
from stockledger.core.errors import (
    Contention,
    InsufficientStock,
    InvalidCost,
    InvalidQuantity,
    NotFound,
    SameLocation,
)
from stockledger.core.units import conversion_factor, normalize_unit
from stockledger.models.ingredient import Ingredient
from stockledger.models.inventory import (
    ADJUSTMENT,
    CONSUMPTION,
    RECEIPT,
    TRANSFER_IN,
    TRANSFER_OUT,
    WASTAGE,
    Batch,
    ConsumptionEvent,
    Movement,
    StockLevel,
)
from stockledger.models.location import Location
from stockledger.services.costing import (
    ZERO,
    cover_deficit,
    draw_down,
    quantize_cost,
    quantize_quantity,
    quantize_value,
    to_decimal,
    weighted_average,
)
from stockledger.services.locking import KeyedLockManager, StockKey, default_lock_manager, lock_order

logger = logging.getLogger(__name__)


# ============ Proposals ============

@dataclass
class ReceiveBatch:
    """Receive a purchase line into a new cost-bearing batch."""
    ingredient_id: UUID
    location_id: UUID
    quantity: Decimal
    unit_cost: Decimal
    source_ref: Optional[str] = None
    unit: Optional[str] = None  # purchase unit, converted to the ingredient base unit
    occurred_at: Optional[datetime] = None

    def validate(self) -> None:
        if to_decimal(self.quantity) <= ZERO or quantize_quantity(self.quantity) == ZERO:
            raise InvalidQuantity(self.quantity)
        if to_decimal(self.unit_cost) < ZERO:
            raise InvalidCost(self.unit_cost)

    def keys(self) -> List[StockKey]:
        return [(self.ingredient_id, self.location_id)]


@dataclass
class Consume:
    """Consume stock, typically one exploded recipe line of a sale."""
    ingredient_id: UUID
    location_id: UUID
    quantity: Decimal
    correlation_id: Optional[str] = None
    occurred_at: Optional[datetime] = None
    consumption_event: Optional[ConsumptionEvent] = None
    allow_negative: Optional[bool] = None  # None = use ALLOW_NEGATIVE_STOCK

    def validate(self) -> None:
        if to_decimal(self.quantity) <= ZERO or quantize_quantity(self.quantity) == ZERO:
            raise InvalidQuantity(self.quantity)

    def keys(self) -> List[StockKey]:
        return [(self.ingredient_id, self.location_id)]


@dataclass
class Transfer:
    """Move stock between two locations, carrying the source average cost."""
    ingredient_id: UUID
    from_location_id: UUID
    to_location_id: UUID
    quantity: Decimal
    correlation_id: Optional[str] = None
    reason: Optional[str] = None
    occurred_at: Optional[datetime] = None

    def validate(self) -> None:
        if self.from_location_id == self.to_location_id:
            raise SameLocation(self.from_location_id)
        if to_decimal(self.quantity) <= ZERO or quantize_quantity(self.quantity) == ZERO:
            raise InvalidQuantity(self.quantity)

    def keys(self) -> List[StockKey]:
        return [(self.ingredient_id, self.from_location_id), (self.ingredient_id, self.to_location_id)]


@dataclass
class Adjust:
    """Signed correction: wastage (negative only) or stock-take adjustment."""
    ingredient_id: UUID
    location_id: UUID
    delta: Decimal
    reason: Optional[str] = None
    kind: str = ADJUSTMENT
    correlation_id: Optional[str] = None
    unit_cost: Optional[Decimal] = None  # cost for positive deltas; default current average
    occurred_at: Optional[datetime] = None

    def validate(self) -> None:
        if self.kind not in (WASTAGE, ADJUSTMENT):
            raise InvalidQuantity(self.delta, f"Unsupported adjustment kind {self.kind!r}")
        delta = quantize_quantity(self.delta)
        if delta == ZERO:
            raise InvalidQuantity(self.delta, "Adjustment delta cannot be zero")
        if self.kind == WASTAGE and delta > ZERO:
            raise InvalidQuantity(self.delta, "Wastage must reduce stock (negative delta)")
        if self.unit_cost is not None and to_decimal(self.unit_cost) < ZERO:
            raise InvalidCost(self.unit_cost)

    def keys(self) -> List[StockKey]:
        return [(self.ingredient_id, self.location_id)]


@dataclass
class MutationResult:
    """Rows written by one atomic ``apply`` call."""
    movements: List[Movement] = field(default_factory=list)
    batches: List[Batch] = field(default_factory=list)


# ============ Service ============

class StockMutationService:
    """
    Atomic, validated stock mutations.

    Args:
        db: SQLAlchemy session; the service commits or rolls it back
        settings: Policy settings (negative stock, lock timeout)
        locks: Lock registry; defaults to the process-wide one
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        locks: Optional[KeyedLockManager] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.locks = locks or default_lock_manager

    # ---- single-operation helpers ----

    def receive_batch(
        self,
        ingredient_id: UUID,
        location_id: UUID,
        quantity: Decimal,
        unit_cost: Decimal,
        source_ref: Optional[str] = None,
        unit: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> Movement:
        """Receive a purchase line. Returns the receipt movement (its ``batch`` is the new batch)."""
        result = self.apply([
            ReceiveBatch(ingredient_id, location_id, quantity, unit_cost, source_ref, unit, occurred_at)
        ])
        return result.movements[0]

    def consume(
        self,
        ingredient_id: UUID,
        location_id: UUID,
        quantity: Decimal,
        correlation_id: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        allow_negative: Optional[bool] = None,
    ) -> Movement:
        """Consume stock. Returns the consumption movement."""
        result = self.apply([
            Consume(ingredient_id, location_id, quantity, correlation_id, occurred_at, allow_negative=allow_negative)
        ])
        return result.movements[0]

    def transfer(
        self,
        ingredient_id: UUID,
        from_location_id: UUID,
        to_location_id: UUID,
        quantity: Decimal,
        reason: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> Tuple[Movement, Movement]:
        """Transfer stock. Returns the (transfer_out, transfer_in) movement pair."""
        result = self.apply([
            Transfer(ingredient_id, from_location_id, to_location_id, quantity, reason=reason, occurred_at=occurred_at)
        ])
        return result.movements[0], result.movements[1]

    def adjust(
        self,
        ingredient_id: UUID,
        location_id: UUID,
        delta: Decimal,
        reason: Optional[str] = None,
        kind: str = ADJUSTMENT,
        unit_cost: Optional[Decimal] = None,
        occurred_at: Optional[datetime] = None,
    ) -> Movement:
        """Apply a wastage or adjustment. Returns the movement."""
        result = self.apply([
            Adjust(ingredient_id, location_id, delta, reason, kind, unit_cost=unit_cost, occurred_at=occurred_at)
        ])
        return result.movements[0]

    # ---- atomic batch ----

    def apply(self, proposals: List, extra_rows: Optional[List] = None) -> MutationResult:
        """
        Execute proposals as one atomic unit.

        Args:
            proposals: ReceiveBatch / Consume / Transfer / Adjust instances
            extra_rows: Additional ORM objects committed in the same
                transaction (e.g. ConsumptionEvent rows of a sale)

        Returns:
            MutationResult with the movements and batches written, in order

        Raises:
            InvalidQuantity, InvalidCost, SameLocation, InsufficientStock,
            UnitConversionError, NotFound, Contention
        """
        if not proposals:
            raise ValueError("apply() needs at least one proposal")

        for proposal in proposals:
            proposal.validate()

        keys = sorted({key for proposal in proposals for key in proposal.keys()}, key=lock_order)

        with self.locks.hold(keys, self.settings.LOCK_TIMEOUT_SECONDS):
            try:
                self._check_references(proposals)
                self._set_lock_timeout()
                levels = self._lock_stock_levels(keys)

                result = MutationResult()
                for proposal in proposals:
                    if isinstance(proposal, ReceiveBatch):
                        self._receive(proposal, levels, result)
                    elif isinstance(proposal, Consume):
                        self._consume(proposal, levels, result)
                    elif isinstance(proposal, Transfer):
                        self._transfer(proposal, levels, result)
                    elif isinstance(proposal, Adjust):
                        self._adjust(proposal, levels, result)
                    else:
                        raise TypeError(f"Unknown proposal type {type(proposal).__name__}")
                    self.db.flush()

                if extra_rows:
                    self.db.add_all(extra_rows)
                    self.db.flush()

                self.db.commit()
            except OperationalError as e:
                self.db.rollback()
                if self._is_lock_error(e):
                    raise Contention(keys, f"Database lock timeout: {e.orig}") from e
                raise
            except Exception:
                self.db.rollback()
                raise

        for movement in result.movements:
            logger.info(
                f"Ledger: {movement.movement_type} {movement.quantity} of ingredient "
                f"{movement.ingredient_id} at {movement.location_id} @ {movement.unit_cost}"
            )
        return result

    # ---- internals ----

    def _check_references(self, proposals: List) -> None:
        """Ensure every ingredient and location exists and is usable."""
        for proposal in proposals:
            ingredient = self._require(Ingredient, "Ingredient", proposal.ingredient_id)
            if isinstance(proposal, ReceiveBatch) and not ingredient.is_active:
                raise NotFound("Active ingredient", proposal.ingredient_id)
            location_ids = (
                [proposal.from_location_id, proposal.to_location_id]
                if isinstance(proposal, Transfer)
                else [proposal.location_id]
            )
            for location_id in location_ids:
                location = self._require(Location, "Location", location_id)
                if not location.is_active:
                    raise NotFound("Active location", location_id)

    def _require(self, model, label: str, entity_id: UUID):
        instance = self.db.get(model, entity_id)
        if instance is None:
            raise NotFound(label, entity_id)
        return instance

    def _set_lock_timeout(self) -> None:
        if self.db.get_bind().dialect.name == "postgresql":
            timeout_ms = int(self.settings.LOCK_TIMEOUT_SECONDS * 1000)
            self.db.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))

    @staticmethod
    def _is_lock_error(error: OperationalError) -> bool:
        # lock_not_available, serialization_failure, deadlock_detected
        if getattr(error.orig, "pgcode", None) in ("55P03", "40001", "40P01"):
            return True
        message = str(error.orig).lower()
        return "database is locked" in message or "lock timeout" in message

    def _select_stock_level(self, ingredient_id: UUID, location_id: UUID) -> Optional[StockLevel]:
        return self.db.execute(
            select(StockLevel)
            .where(
                StockLevel.ingredient_id == ingredient_id,
                StockLevel.location_id == location_id,
            )
            .with_for_update()
        ).scalar_one_or_none()

    def _lock_stock_levels(self, keys: List[StockKey]) -> Dict[StockKey, StockLevel]:
        levels: Dict[StockKey, StockLevel] = {}
        for ingredient_id, location_id in keys:
            level = self._select_stock_level(ingredient_id, location_id)

            if level is None:
                level = StockLevel(
                    ingredient_id=ingredient_id,
                    location_id=location_id,
                    quantity=ZERO,
                    unit_cost=ZERO,
                )
                self.db.add(level)
                try:
                    self.db.flush()
                except IntegrityError as e:
                    # another writer created the row first; retrying finds and locks it
                    raise Contention(
                        [(ingredient_id, location_id)],
                        f"Stock level for ingredient {ingredient_id} at {location_id} created concurrently",
                    ) from e

            levels[(ingredient_id, location_id)] = level
        return levels

    def _open_batches(self, ingredient_id: UUID, location_id: UUID) -> List[Batch]:
        return self.db.execute(
            select(Batch).where(
                Batch.ingredient_id == ingredient_id,
                Batch.location_id == location_id,
                Batch.quantity_remaining > 0,
            )
        ).scalars().all()

    def _take(
        self,
        level: StockLevel,
        ingredient_id: UUID,
        location_id: UUID,
        quantity: Decimal,
        allow_negative: bool,
    ) -> None:
        """Remove quantity from a key, enforcing the non-negative policy."""
        if quantity > level.quantity and not allow_negative:
            raise InsufficientStock(ingredient_id, location_id, level.quantity, quantity)
        draw_down(self._open_batches(ingredient_id, location_id), quantity)
        level.quantity = quantize_quantity(level.quantity - quantity)
        level.updated_at = utcnow()

    def _put(
        self,
        level: StockLevel,
        ingredient_id: UUID,
        location_id: UUID,
        quantity: Decimal,
        unit_cost: Decimal,
        source_ref: Optional[str],
        occurred_at: datetime,
    ) -> Batch:
        """Add quantity to a key as a new batch and re-average the cost."""
        batch = Batch(
            id=uuid.uuid4(),
            ingredient_id=ingredient_id,
            location_id=location_id,
            quantity_received=quantity,
            quantity_remaining=cover_deficit(level.quantity, quantity),
            unit_cost=unit_cost,
            received_at=occurred_at,
            source_ref=source_ref,
        )
        self.db.add(batch)
        level.unit_cost = weighted_average(level.quantity, level.unit_cost, quantity, unit_cost)
        level.quantity = quantize_quantity(level.quantity + quantity)
        level.updated_at = utcnow()
        return batch

    def _append(self, result: MutationResult, **values) -> Movement:
        movement = Movement(id=uuid.uuid4(), recorded_at=utcnow(), **values)
        self.db.add(movement)
        result.movements.append(movement)
        return movement

    def _allow_negative(self, override: Optional[bool]) -> bool:
        return self.settings.ALLOW_NEGATIVE_STOCK if override is None else override

    @staticmethod
    def _when(occurred_at: Optional[datetime]) -> datetime:
        return to_naive_utc(occurred_at) if occurred_at else utcnow()

    def _receive(self, p: ReceiveBatch, levels: Dict[StockKey, StockLevel], result: MutationResult) -> None:
        ingredient = self.db.get(Ingredient, p.ingredient_id)
        quantity = to_decimal(p.quantity)
        unit_cost = to_decimal(p.unit_cost)

        if p.unit and normalize_unit(p.unit) != normalize_unit(ingredient.base_unit):
            factor = conversion_factor(p.unit, ingredient.base_unit, ingredient.id)
            quantity = quantity * factor
            unit_cost = unit_cost / factor

        quantity = quantize_quantity(quantity)
        unit_cost = quantize_cost(unit_cost)
        if quantity <= ZERO:
            raise InvalidQuantity(p.quantity)

        occurred_at = self._when(p.occurred_at)
        level = levels[(p.ingredient_id, p.location_id)]
        batch = self._put(level, p.ingredient_id, p.location_id, quantity, unit_cost, p.source_ref, occurred_at)
        result.batches.append(batch)

        self._append(
            result,
            ingredient_id=p.ingredient_id,
            location_id=p.location_id,
            movement_type=RECEIPT,
            quantity=quantity,
            unit_cost=unit_cost,
            occurred_at=occurred_at,
            correlation_id=p.source_ref,
            batch=batch,
        )

    def _consume(self, p: Consume, levels: Dict[StockKey, StockLevel], result: MutationResult) -> None:
        quantity = quantize_quantity(p.quantity)
        level = levels[(p.ingredient_id, p.location_id)]
        self._take(level, p.ingredient_id, p.location_id, quantity, self._allow_negative(p.allow_negative))

        event = p.consumption_event
        if event is not None:
            event.total_cost = quantize_value((event.total_cost or ZERO) + quantity * level.unit_cost)

        self._append(
            result,
            ingredient_id=p.ingredient_id,
            location_id=p.location_id,
            movement_type=CONSUMPTION,
            quantity=-quantity,
            unit_cost=level.unit_cost,
            occurred_at=self._when(p.occurred_at),
            correlation_id=p.correlation_id,
            consumption_event=p.consumption_event,
        )

    def _transfer(self, p: Transfer, levels: Dict[StockKey, StockLevel], result: MutationResult) -> None:
        quantity = quantize_quantity(p.quantity)
        source = levels[(p.ingredient_id, p.from_location_id)]
        destination = levels[(p.ingredient_id, p.to_location_id)]
        correlation_id = p.correlation_id or f"transfer:{uuid.uuid4()}"
        occurred_at = self._when(p.occurred_at)

        # transfers never drive the source negative, whatever the sale policy
        unit_cost = source.unit_cost
        self._take(source, p.ingredient_id, p.from_location_id, quantity, allow_negative=False)
        self._append(
            result,
            ingredient_id=p.ingredient_id,
            location_id=p.from_location_id,
            movement_type=TRANSFER_OUT,
            quantity=-quantity,
            unit_cost=unit_cost,
            occurred_at=occurred_at,
            correlation_id=correlation_id,
            reason=p.reason,
        )

        batch = self._put(
            destination, p.ingredient_id, p.to_location_id, quantity, unit_cost, correlation_id, occurred_at
        )
        result.batches.append(batch)
        self._append(
            result,
            ingredient_id=p.ingredient_id,
            location_id=p.to_location_id,
            movement_type=TRANSFER_IN,
            quantity=quantity,
            unit_cost=unit_cost,
            occurred_at=occurred_at,
            correlation_id=correlation_id,
            batch=batch,
            reason=p.reason,
        )

    def _adjust(self, p: Adjust, levels: Dict[StockKey, StockLevel], result: MutationResult) -> None:
        delta = quantize_quantity(p.delta)
        level = levels[(p.ingredient_id, p.location_id)]
        occurred_at = self._when(p.occurred_at)
        batch = None

        if delta < ZERO:
            unit_cost = level.unit_cost
            self._take(level, p.ingredient_id, p.location_id, -delta, self._allow_negative(None))
        else:
            unit_cost = quantize_cost(p.unit_cost) if p.unit_cost is not None else level.unit_cost
            batch = self._put(
                level, p.ingredient_id, p.location_id, delta, unit_cost,
                f"{p.kind}:{p.reason or 'correction'}"[:100], occurred_at,
            )
            result.batches.append(batch)

        self._append(
            result,
            ingredient_id=p.ingredient_id,
            location_id=p.location_id,
            movement_type=p.kind,
            quantity=delta,
            unit_cost=unit_cost,
            occurred_at=occurred_at,
            correlation_id=p.correlation_id,
            batch=batch,
            reason=p.reason,
        )
