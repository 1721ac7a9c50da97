"""
Tests for sale sync: all-or-nothing sales, idempotent back-fill,
absorbed recipe errors and escalation of contention.
"""
from datetime import datetime
from decimal import Decimal
from uuid import uuid4
import pytest
from sqlalchemy import func, select

from stockledger.core.config import Settings
from stockledger.core.errors import InsufficientStock, InvalidQuantity, NotFound
from stockledger.models.inventory import ConsumptionEvent, Movement, StockLevel
from stockledger.models.review import ManualReviewItem
from stockledger.services.locking import default_lock_manager
from stockledger.services.sales_sync import Sale, SaleLine, SalesSyncService


def quantity_at(db, ingredient, location):
    return db.execute(
        select(StockLevel.quantity).where(
            StockLevel.ingredient_id == ingredient.id,
            StockLevel.location_id == location.id,
        )
    ).scalar()


def count(db, model):
    return db.execute(select(func.count()).select_from(model)).scalar()


@pytest.fixture
def stocked(db, mutations, coffee, milk, store, make_product):
    """Store holding 1000 g coffee @ 0.02 and 5000 ml milk @ 0.001; a latte recipe."""
    mutations.receive_batch(coffee.id, store.id, Decimal("1000"), Decimal("0.02"), "PO-C")
    mutations.receive_batch(milk.id, store.id, Decimal("5000"), Decimal("0.001"), "PO-M")
    make_product("POS-LATTE", [(coffee, "18", "g"), (milk, "250", "ml")])
    return store


def latte_sale(store, correlation_id="SALE-1", quantity="2", lines=None):
    return Sale(
        sale_correlation_id=correlation_id,
        location_id=store.id,
        occurred_at=datetime(2024, 5, 1, 12, 0),
        lines=lines or [SaleLine("POS-LATTE", Decimal(quantity))],
    )


class TestProcessSale:

    def test_sale_consumes_recipe(self, db, settings, stocked, coffee, milk):
        result = SalesSyncService(db, settings).process_sale(latte_sale(stocked))

        assert result.status == "applied"
        assert result.movements_written == 2
        assert quantity_at(db, coffee, stocked) == Decimal("964")
        assert quantity_at(db, milk, stocked) == Decimal("4500")

        # 36 g × 0.02 + 500 ml × 0.001
        assert result.lines[0].total_cost == Decimal("1.22")

        movements = db.execute(select(Movement).where(Movement.correlation_id == "SALE-1")).scalars().all()
        assert {m.movement_type for m in movements} == {"consumption"}
        assert all(m.consumption_event_id is not None for m in movements)
        assert all(m.occurred_at == datetime(2024, 5, 1, 12, 0) for m in movements)

    def test_replay_is_a_no_op(self, db, settings, stocked, coffee):
        service = SalesSyncService(db, settings)
        service.process_sale(latte_sale(stocked))
        movements_before = count(db, Movement)

        result = service.process_sale(latte_sale(stocked))

        assert result.status == "duplicate"
        assert count(db, Movement) == movements_before
        assert quantity_at(db, coffee, stocked) == Decimal("964")

    def test_unknown_product_recorded_without_consumption(self, db, settings, stocked, coffee):
        sale = latte_sale(stocked, lines=[SaleLine("POS-MYSTERY", Decimal("1"))])

        result = SalesSyncService(db, settings).process_sale(sale)

        assert result.status == "applied"
        assert result.lines[0].status == "no_recipe"
        assert result.movements_written == 0
        assert quantity_at(db, coffee, stocked) == Decimal("1000")

        event = db.execute(select(ConsumptionEvent)).scalar_one()
        assert event.status == "no_recipe"
        assert event.product_id is None

    def test_mixed_lines(self, db, settings, stocked, coffee):
        sale = latte_sale(stocked, lines=[
            SaleLine("POS-LATTE", Decimal("1")),
            SaleLine("POS-MYSTERY", Decimal("1")),
        ])

        result = SalesSyncService(db, settings).process_sale(sale)

        assert [line.status for line in result.lines] == ["applied", "no_recipe"]
        assert quantity_at(db, coffee, stocked) == Decimal("982")
        assert count(db, ConsumptionEvent) == 2

    def test_unit_error_line_skipped(self, db, settings, stocked, coffee, make_product):
        make_product("POS-BROKEN", [(coffee, "1", "ml")])
        sale = latte_sale(stocked, lines=[
            SaleLine("POS-BROKEN", Decimal("1")),
            SaleLine("POS-LATTE", Decimal("1")),
        ])

        result = SalesSyncService(db, settings).process_sale(sale)

        assert result.lines[0].status == "unit_error"
        assert "ml" in result.lines[0].message
        assert result.lines[1].status == "applied"
        assert quantity_at(db, coffee, stocked) == Decimal("982")

    def test_insufficient_stock_rejects_whole_sale(self, db, settings, stocked, coffee, milk):
        sale = latte_sale(stocked, quantity="21")  # needs 5250 ml milk

        with pytest.raises(InsufficientStock):
            SalesSyncService(db, settings).process_sale(sale)

        assert quantity_at(db, coffee, stocked) == Decimal("1000")
        assert count(db, ConsumptionEvent) == 0

    def test_allow_negative_lets_sale_through(self, db, stocked, milk):
        service = SalesSyncService(db, Settings(ALLOW_NEGATIVE_STOCK=True))
        result = service.process_sale(latte_sale(stocked, quantity="21"))

        assert result.status == "applied"
        assert quantity_at(db, milk, stocked) == Decimal("-250")

    def test_non_positive_quantity_rejected(self, db, settings, stocked):
        sale = latte_sale(stocked, lines=[SaleLine("POS-MYSTERY", Decimal("0"))])
        with pytest.raises(InvalidQuantity):
            SalesSyncService(db, settings).process_sale(sale)
        assert count(db, ConsumptionEvent) == 0

    def test_unknown_location(self, db, settings, stocked):
        sale = Sale("SALE-X", uuid4(), [SaleLine("POS-LATTE", Decimal("1"))])
        with pytest.raises(NotFound):
            SalesSyncService(db, settings).process_sale(sale)


class TestEscalation:

    def test_contention_goes_to_review_queue(self, db, stocked, coffee):
        settings = Settings(LOCK_TIMEOUT_SECONDS=0.02, CONTENTION_MAX_RETRIES=1, CONTENTION_BACKOFF_SECONDS=0.01)
        service = SalesSyncService(db, settings)

        with default_lock_manager.hold([(coffee.id, stocked.id)], timeout=1):
            result = service.process_sale(latte_sale(stocked))

        assert result.status == "escalated"
        assert result.review_item_id is not None
        item = db.get(ManualReviewItem, result.review_item_id)
        assert item.error_kind == "contention"
        assert item.attempts == 2
        assert item.payload["sale_correlation_id"] == "SALE-1"
        assert quantity_at(db, coffee, stocked) == Decimal("1000")

        # once the lock is free the review can be retried
        retried = service.retry_review(item.id)
        assert retried.status == "applied"
        db.refresh(item)
        assert item.resolved_at is not None
        assert quantity_at(db, coffee, stocked) == Decimal("964")
        assert service.open_reviews() == []


class TestBackfill:

    def test_backfill_is_idempotent(self, db, settings, stocked, coffee):
        sales = [latte_sale(stocked, f"SALE-{n}", quantity="1") for n in range(5)]
        service = SalesSyncService(db, settings)

        first = service.backfill(sales[:3])
        assert first.applied == 3

        # re-run the whole batch after a "partial failure"
        second = service.backfill(sales)
        assert second.applied == 2
        assert second.duplicates == 3
        assert quantity_at(db, coffee, stocked) == Decimal("1000") - 5 * Decimal("18")

    def test_backfill_continues_past_failures(self, db, settings, stocked, coffee):
        sales = [
            latte_sale(stocked, "SALE-OK-1", quantity="1"),
            latte_sale(stocked, "SALE-TOO-BIG", quantity="100"),
            latte_sale(stocked, "SALE-OK-2", quantity="1"),
        ]

        summary = SalesSyncService(db, settings).backfill(sales)

        assert summary.processed == 3
        assert summary.applied == 2
        assert summary.failed == 1
        assert summary.results[1].status == "failed"
        assert "Insufficient stock" in summary.results[1].error
