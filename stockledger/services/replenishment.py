"""
Replenishment projection.

Simple linear projection from recent consumption; no forecasting model.

    average_daily_usage = consumed over the lookback window / lookback days
    days_of_cover       = on_hand / average_daily_usage
    suggested_order     = max(0, average_daily_usage × cover_days - on_hand)
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stockledger.core.business_day import to_naive_utc, utcnow
from stockledger.core.config import Settings, get_settings
from stockledger.core.errors import NotFound
from stockledger.models.inventory import CONSUMPTION, Movement
from stockledger.models.location import Location
from stockledger.services.costing import ZERO, quantize_quantity, to_decimal
from stockledger.services.ledger import LedgerStore


@dataclass
class ReplenishmentLine:
    ingredient_id: UUID
    ingredient_name: str
    location_id: UUID
    quantity: Decimal
    unit: str
    average_daily_usage: Decimal
    days_of_cover: Optional[Decimal]  # None when nothing was consumed
    suggested_order: Decimal
    below_reorder_threshold: bool


class ReplenishmentService:
    """Projects days of cover and order quantities per location."""

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def project(
        self,
        location_id: UUID,
        as_of: Optional[datetime] = None,
        lookback_days: Optional[int] = None,
        cover_days: Optional[int] = None,
    ) -> List[ReplenishmentLine]:
        """
        Project every stocked ingredient at a location.

        Args:
            location_id: Location to project
            as_of: End of the lookback window (default now)
            lookback_days: Days of history to average (default from settings)
            cover_days: Days of stock to order for (default from settings)

        Returns:
            Lines sorted by days of cover, most urgent first
        """
        if self.db.get(Location, location_id) is None:
            raise NotFound("Location", location_id)

        end = to_naive_utc(as_of) if as_of else utcnow()
        lookback = lookback_days or self.settings.REPLENISHMENT_LOOKBACK_DAYS
        cover = Decimal(cover_days or self.settings.REPLENISHMENT_COVER_DAYS)
        start = end - timedelta(days=lookback)

        usage = dict(self.db.execute(
            select(Movement.ingredient_id, func.sum(Movement.quantity))
            .where(
                Movement.location_id == location_id,
                Movement.movement_type == CONSUMPTION,
                Movement.occurred_at >= start,
                Movement.occurred_at < end,
            )
            .group_by(Movement.ingredient_id)
        ).all())

        lines = []
        for level in LedgerStore(self.db, self.settings).list_stock_levels(location_id=location_id):
            consumed = -to_decimal(usage.get(level.ingredient_id) or 0)
            average = quantize_quantity(consumed / lookback)
            on_hand = level.quantity

            if average > ZERO:
                days_of_cover = quantize_quantity(max(on_hand, ZERO) / average)
                suggested = quantize_quantity(max(ZERO, average * cover - on_hand))
            else:
                days_of_cover = None
                suggested = ZERO

            lines.append(ReplenishmentLine(
                ingredient_id=level.ingredient_id,
                ingredient_name=level.ingredient_name,
                location_id=location_id,
                quantity=on_hand,
                unit=level.unit,
                average_daily_usage=average,
                days_of_cover=days_of_cover,
                suggested_order=suggested,
                below_reorder_threshold=level.below_reorder_threshold,
            ))

        lines.sort(key=lambda l: (l.days_of_cover is None, l.days_of_cover or ZERO, l.ingredient_name))
        return lines
