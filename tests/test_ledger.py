"""
Tests for the ledger store read side: stock levels, movement queries,
verification and cache rebuild.
"""
from datetime import date, datetime
from decimal import Decimal
from uuid import uuid4
import pytest
from sqlalchemy import select

from stockledger.core.errors import NotFound
from stockledger.models.inventory import Batch, StockLevel
from stockledger.services.ledger import LedgerStore
from stockledger.services.locking import KeyedLockManager
from stockledger.services.sales_sync import Sale, SaleLine, SalesSyncService


def level_of(db, ingredient, location):
    return db.execute(
        select(StockLevel).where(
            StockLevel.ingredient_id == ingredient.id,
            StockLevel.location_id == location.id,
        )
    ).scalar_one()


@pytest.fixture
def ledger(db, settings):
    return LedgerStore(db, settings, locks=KeyedLockManager())


class TestStockLevels:

    def test_lists_levels_with_value(self, ledger, mutations, coffee, milk, store):
        mutations.receive_batch(coffee.id, store.id, Decimal("400"), Decimal("0.02"))
        mutations.receive_batch(milk.id, store.id, Decimal("2000"), Decimal("0.001"))

        views = {v.ingredient_name: v for v in ledger.list_stock_levels(location_id=store.id)}

        assert views["Coffee beans"].quantity == Decimal("400")
        assert views["Coffee beans"].stock_value == Decimal("8")
        assert views["Coffee beans"].unit == "g"
        assert views["Coffee beans"].below_reorder_threshold is True
        assert views["Milk"].below_reorder_threshold is False

    def test_at_threshold_counts_as_below(self, ledger, mutations, coffee, store):
        mutations.receive_batch(coffee.id, store.id, Decimal("500"), Decimal("0.02"))
        [view] = ledger.list_stock_levels(ingredient_id=coffee.id)
        assert view.below_reorder_threshold is True

    def test_filters_by_location(self, ledger, mutations, coffee, store, shop):
        mutations.receive_batch(coffee.id, store.id, Decimal("10"), Decimal("1"))
        mutations.receive_batch(coffee.id, shop.id, Decimal("20"), Decimal("1"))

        assert [v.location_name for v in ledger.list_stock_levels()] == ["Central Store", "Westlands Shop"]
        assert [v.quantity for v in ledger.list_stock_levels(location_id=shop.id)] == [Decimal("20")]


class TestMovementQueries:

    def test_history_in_occurrence_order(self, ledger, mutations, coffee, store):
        mutations.receive_batch(coffee.id, store.id, Decimal("10"), Decimal("1"), occurred_at=datetime(2024, 5, 2, 9))
        mutations.receive_batch(coffee.id, store.id, Decimal("5"), Decimal("1"), occurred_at=datetime(2024, 5, 1, 9))
        mutations.consume(coffee.id, store.id, Decimal("3"), "SALE-1", occurred_at=datetime(2024, 5, 3, 9))

        history = ledger.movement_history(coffee.id, store.id)
        assert [m.quantity for m in history] == [Decimal("5"), Decimal("10"), Decimal("-3")]

        window = ledger.movement_history(coffee.id, store.id, start=datetime(2024, 5, 2), end=datetime(2024, 5, 3))
        assert [m.quantity for m in window] == [Decimal("10")]

        assert len(ledger.movement_history(coffee.id, limit=2)) == 2

    def test_transfer_pair_shares_correlation(self, ledger, mutations, coffee, store, shop):
        mutations.receive_batch(coffee.id, store.id, Decimal("10"), Decimal("1"))
        out, _ = mutations.transfer(coffee.id, store.id, shop.id, Decimal("4"))

        pair = ledger.movements_by_correlation(out.correlation_id)
        assert sorted(m.movement_type for m in pair) == ["transfer_in", "transfer_out"]
        assert sum(m.quantity for m in pair) == Decimal("0")

    def test_opening_and_flows(self, ledger, mutations, coffee, store):
        mutations.receive_batch(coffee.id, store.id, Decimal("100"), Decimal("1"), occurred_at=datetime(2024, 5, 1, 8))
        mutations.receive_batch(coffee.id, store.id, Decimal("20"), Decimal("1"), occurred_at=datetime(2024, 5, 2, 8))
        mutations.consume(coffee.id, store.id, Decimal("15"), "SALE-1", occurred_at=datetime(2024, 5, 2, 9))
        mutations.consume(coffee.id, store.id, Decimal("5"), "SALE-2", occurred_at=datetime(2024, 5, 2, 10))

        start, end = datetime(2024, 5, 2), datetime(2024, 5, 3)
        assert ledger.opening_balance(coffee.id, store.id, start) == Decimal("100")
        assert ledger.opening_balances(store.id, start) == {coffee.id: Decimal("100")}

        flow = ledger.period_flows(store.id, start, end)[coffee.id]
        assert flow.inflow == Decimal("20")
        assert flow.outflow == Decimal("20")

    def test_consumption_by_product(self, db, ledger, settings, mutations, coffee, milk, store, make_product):
        mutations.receive_batch(coffee.id, store.id, Decimal("1000"), Decimal("0.02"))
        mutations.receive_batch(milk.id, store.id, Decimal("5000"), Decimal("0.001"))
        latte = make_product("POS-LATTE", [(coffee, "18", "g"), (milk, "250", "ml")])
        espresso = make_product("POS-ESPRESSO", [(coffee, "18", "g")])

        SalesSyncService(db, settings).process_sale(Sale("SALE-1", store.id, [
            SaleLine("POS-LATTE", Decimal("1")),
            SaleLine("POS-ESPRESSO", Decimal("2")),
        ]))

        latte_movements = ledger.consumption_movements(product_id=latte.id)
        assert {m.ingredient_id for m in latte_movements} == {coffee.id, milk.id}

        espresso_movements = ledger.consumption_movements(product_id=espresso.id)
        assert [m.quantity for m in espresso_movements] == [Decimal("-36")]

        assert len(ledger.consumption_movements(location_id=store.id)) == 3

    def test_daily_consumption(self, ledger, mutations, coffee, milk, store, shop):
        mutations.receive_batch(coffee.id, store.id, Decimal("1000"), Decimal("0.02"), occurred_at=datetime(2024, 4, 30, 10))
        mutations.receive_batch(milk.id, store.id, Decimal("5000"), Decimal("0.001"), occurred_at=datetime(2024, 4, 30, 10))
        mutations.receive_batch(coffee.id, shop.id, Decimal("100"), Decimal("0.02"), occurred_at=datetime(2024, 4, 30, 10))

        mutations.consume(coffee.id, store.id, Decimal("18"), "SALE-1", occurred_at=datetime(2024, 5, 1, 12))
        mutations.consume(milk.id, store.id, Decimal("250"), "SALE-1", occurred_at=datetime(2024, 5, 1, 12))
        # before the 04:00 cutoff, still May 1st
        mutations.consume(coffee.id, store.id, Decimal("36"), "SALE-2", occurred_at=datetime(2024, 5, 2, 2, 30))
        mutations.consume(coffee.id, store.id, Decimal("10"), "SALE-3", occurred_at=datetime(2024, 5, 2, 9))
        mutations.consume(coffee.id, shop.id, Decimal("5"), "SALE-9", occurred_at=datetime(2024, 5, 1, 12))
        # wastage is not consumption
        mutations.adjust(coffee.id, store.id, Decimal("-3"), "Spilled", kind="wastage", occurred_at=datetime(2024, 5, 1, 13))

        rows = ledger.daily_consumption(date(2024, 5, 1), date(2024, 5, 2))

        assert [(r.business_date, r.location_name, r.ingredient_name) for r in rows] == [
            (date(2024, 5, 2), "Central Store", "Coffee beans"),
            (date(2024, 5, 1), "Central Store", "Coffee beans"),
            (date(2024, 5, 1), "Central Store", "Milk"),
            (date(2024, 5, 1), "Westlands Shop", "Coffee beans"),
        ]
        may_first = rows[1]
        assert may_first.quantity == Decimal("54")
        assert may_first.cost == Decimal("1.08")
        assert may_first.transaction_count == 2
        assert may_first.unit == "g"
        assert rows[2].cost == Decimal("0.25")

        store_only = ledger.daily_consumption(date(2024, 5, 1), date(2024, 5, 1), location_id=store.id)
        assert [(r.ingredient_name, r.quantity) for r in store_only] == [
            ("Coffee beans", Decimal("54")),
            ("Milk", Decimal("250")),
        ]

    def test_daily_consumption_inverted_range(self, ledger):
        with pytest.raises(ValueError):
            ledger.daily_consumption(date(2024, 5, 2), date(2024, 5, 1))


class TestVerifyAndRebuild:

    def test_consistent_ledger_verifies(self, ledger, mutations, coffee, milk, store, shop):
        mutations.receive_batch(coffee.id, store.id, Decimal("10"), Decimal("2.00"))
        mutations.receive_batch(coffee.id, store.id, Decimal("10"), Decimal("4.00"))
        mutations.transfer(coffee.id, store.id, shop.id, Decimal("5"))
        mutations.consume(coffee.id, shop.id, Decimal("2"), "SALE-1")
        mutations.adjust(coffee.id, store.id, Decimal("3"), "Found a bag")
        mutations.receive_batch(milk.id, store.id, Decimal("10"), Decimal("0.001"))
        mutations.adjust(milk.id, store.id, Decimal("-4"), "Spilled", kind="wastage")

        assert ledger.verify() == []

    def test_corrupted_cache_is_detected_and_rebuilt(self, db, ledger, mutations, coffee, store):
        mutations.receive_batch(coffee.id, store.id, Decimal("10"), Decimal("2.00"))
        mutations.receive_batch(coffee.id, store.id, Decimal("10"), Decimal("4.00"))
        mutations.consume(coffee.id, store.id, Decimal("12"), "SALE-1")

        level = level_of(db, coffee, store)
        level.quantity = Decimal("999")
        level.unit_cost = Decimal("1.2345")
        for batch in db.execute(select(Batch)).scalars():
            batch.quantity_remaining = Decimal("0")
        db.commit()

        [problem] = ledger.verify()
        assert problem.cached_quantity == Decimal("999")
        assert problem.replayed_quantity == Decimal("8")
        assert problem.replayed_unit_cost == Decimal("3")

        rebuilt = ledger.rebuild(coffee.id, store.id)

        assert rebuilt.quantity == Decimal("8")
        assert rebuilt.unit_cost == Decimal("3")
        remaining = db.execute(select(Batch.quantity_remaining).order_by(Batch.received_at)).scalars().all()
        assert remaining == [Decimal("0"), Decimal("8")]
        assert ledger.verify() == []

    def test_rebuild_unknown_key(self, ledger, store):
        with pytest.raises(NotFound):
            ledger.rebuild(uuid4(), store.id)
