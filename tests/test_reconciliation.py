"""
Tests for the reconciliation engine.
"""
from datetime import date, datetime, timedelta
from decimal import Decimal
import pytest
from sqlalchemy import select

from stockledger.core.config import Settings
from stockledger.core.errors import InvalidQuantity, NotFound
from stockledger.models.inventory import Movement, StockLevel
from stockledger.services.reconciliation import (
    ReconciliationEngine,
    classify,
    snapshot_isolation,
    variance_percentage,
)

# Business day 2024-05-01 runs from 04:00 on May 1st to 04:00 on May 2nd (UTC)
DAY = date(2024, 5, 1)
BEFORE = datetime(2024, 4, 30, 10, 0)
DURING = datetime(2024, 5, 1, 12, 0)
LATE_NIGHT = datetime(2024, 5, 2, 2, 30)
AFTER = datetime(2024, 5, 2, 9, 0)


@pytest.fixture
def day_of_movements(db, mutations, coffee, store, shop):
    """
    Opening 100, inflow 50, outflow 40 + 5 wastage on the business day,
    plus movements outside the window that must be ignored.
    """
    mutations.receive_batch(coffee.id, store.id, Decimal("100"), Decimal("2.00"), "PO-OPEN", occurred_at=BEFORE)
    mutations.receive_batch(coffee.id, store.id, Decimal("50"), Decimal("2.00"), "PO-DAY", occurred_at=DURING)
    mutations.consume(coffee.id, store.id, Decimal("30"), "SALE-1", occurred_at=DURING)
    mutations.consume(coffee.id, store.id, Decimal("10"), "SALE-2", occurred_at=LATE_NIGHT)
    mutations.adjust(coffee.id, store.id, Decimal("-5"), "Spilled", kind="wastage", occurred_at=DURING)
    mutations.consume(coffee.id, store.id, Decimal("7"), "SALE-NEXT", occurred_at=AFTER)
    # another location never leaks into this one
    mutations.receive_batch(coffee.id, shop.id, Decimal("999"), Decimal("1.00"), occurred_at=DURING)
    return store


class TestArithmetic:

    def test_expected_and_variance(self, db, settings, day_of_movements, coffee):
        """100 + 50 - 40 - 5 = 105 expected; a count of 100 is 5 under."""
        report = ReconciliationEngine(db, settings).reconcile_day(
            day_of_movements.id, DAY, {coffee.id: Decimal("100")}
        )

        line = report.lines[0]
        assert line.opening == Decimal("100")
        assert line.inflow == Decimal("50")
        assert line.outflow == Decimal("45")
        assert line.expected == Decimal("105")
        assert line.actual == Decimal("100")
        assert line.variance == Decimal("-5")
        assert line.classification == "under"
        assert line.variance_percentage == Decimal("-4.76")
        assert line.percentage_undefined is False
        assert line.variance_value == Decimal("-10.00")

        assert report.under_count == 1
        assert report.over_count == 0
        assert report.total_variance_value == Decimal("-10.00")
        assert report.period_start == datetime(2024, 5, 1, 4, 0)
        assert report.period_end == datetime(2024, 5, 2, 4, 0)

    def test_exact_count_is_ok(self, db, settings, day_of_movements, coffee):
        report = ReconciliationEngine(db, settings).reconcile_day(
            day_of_movements.id, DAY, {coffee.id: Decimal("105")}
        )
        assert report.lines[0].classification == "ok"
        assert report.ok_count == 1

    def test_over(self, db, settings, day_of_movements, coffee):
        report = ReconciliationEngine(db, settings).reconcile_day(
            day_of_movements.id, DAY, {coffee.id: Decimal("106.5")}
        )
        assert report.lines[0].variance == Decimal("1.5")
        assert report.lines[0].classification == "over"

    def test_zero_expected_has_no_percentage(self, db, settings, store, milk):
        report = ReconciliationEngine(db, settings).reconcile_day(store.id, DAY, {milk.id: Decimal("3")})

        line = report.lines[0]
        assert line.expected == Decimal("0")
        assert line.variance == Decimal("3")
        assert line.variance_percentage is None
        assert line.percentage_undefined is True
        assert line.classification == "over"

    def test_reconciliation_does_not_touch_stock(self, db, settings, day_of_movements, coffee):
        level_before = db.execute(
            select(StockLevel.quantity).where(StockLevel.location_id == day_of_movements.id)
        ).scalar()
        movements_before = len(db.execute(select(Movement)).scalars().all())

        report = ReconciliationEngine(db, settings).reconcile_day(
            day_of_movements.id, DAY, {coffee.id: Decimal("90")}
        )

        assert report.adjustments_applied is False
        assert len(db.execute(select(Movement)).scalars().all()) == movements_before
        assert db.execute(
            select(StockLevel.quantity).where(StockLevel.location_id == day_of_movements.id)
        ).scalar() == level_before

    def test_location_timezone_shifts_window(self, db, settings, mutations, coffee, make_location):
        """In Nairobi (UTC+3) the 2024-05-01 business day starts at 01:00 UTC."""
        kiosk = make_location("Airport Kiosk", "kiosk", "Africa/Nairobi")
        mutations.receive_batch(coffee.id, kiosk.id, Decimal("10"), Decimal("1"), occurred_at=datetime(2024, 5, 1, 0, 30))
        mutations.receive_batch(coffee.id, kiosk.id, Decimal("4"), Decimal("1"), occurred_at=datetime(2024, 5, 1, 1, 30))

        report = ReconciliationEngine(db, settings).reconcile_day(kiosk.id, DAY, {coffee.id: Decimal("14")})

        line = report.lines[0]
        assert line.opening == Decimal("10")
        assert line.inflow == Decimal("4")
        assert line.classification == "ok"


class TestReports:

    def test_later_report_supersedes(self, db, settings, day_of_movements, coffee):
        engine = ReconciliationEngine(db, settings)
        first = engine.reconcile_day(day_of_movements.id, DAY, {coffee.id: Decimal("100")})
        second = engine.reconcile_day(day_of_movements.id, DAY, {coffee.id: Decimal("105")})

        latest = engine.latest_report(day_of_movements.id, DAY)
        assert latest.id == second.id
        assert [r.id for r in engine.history(day_of_movements.id, DAY)] == [second.id, first.id]

        # the superseded report is kept unchanged
        db.refresh(first)
        assert first.lines[0].variance == Decimal("-5")

    def test_explicit_period_derives_business_date(self, db, settings, day_of_movements, coffee):
        """A window opening at 02:00 still belongs to the previous business day."""
        report = ReconciliationEngine(db, settings).reconcile(
            day_of_movements.id,
            datetime(2024, 5, 2, 2, 0),
            datetime(2024, 5, 2, 3, 0),
            {coffee.id: Decimal("105")},
        )

        assert report.business_date == DAY
        line = report.lines[0]
        assert line.opening == Decimal("115")
        assert line.outflow == Decimal("10")
        assert line.classification == "ok"

    def test_inverted_period(self, db, settings, store, coffee):
        with pytest.raises(ValueError):
            ReconciliationEngine(db, settings).reconcile(
                store.id, datetime(2024, 5, 2), datetime(2024, 5, 1), {coffee.id: Decimal("1")}
            )

    def test_no_report(self, db, settings, store):
        assert ReconciliationEngine(db, settings).latest_report(store.id, DAY) is None


class TestAdjustments:

    def test_apply_adjustments_aligns_stock(self, db, settings, day_of_movements, coffee):
        report = ReconciliationEngine(db, settings).reconcile_day(
            day_of_movements.id, DAY, {coffee.id: Decimal("100")}, apply_adjustments=True
        )

        assert report.adjustments_applied is True
        adjustment = db.execute(
            select(Movement).where(Movement.correlation_id == f"count:{report.id}")
        ).scalar_one()
        assert adjustment.movement_type == "adjustment"
        assert adjustment.quantity == Decimal("-5")
        # dated inside the counted period, on its last instant
        assert report.period_start <= adjustment.occurred_at < report.period_end
        assert adjustment.occurred_at == report.period_end - timedelta(microseconds=1)

        # the next day opens at the counted quantity
        next_day = ReconciliationEngine(db, settings).reconcile_day(
            day_of_movements.id, date(2024, 5, 2), {coffee.id: Decimal("93")}
        )
        assert next_day.lines[0].opening == Decimal("100")
        assert next_day.lines[0].classification == "ok"

    def test_recount_after_adjusting_is_ok(self, db, settings, day_of_movements, coffee):
        engine = ReconciliationEngine(db, settings)
        first = engine.reconcile_day(day_of_movements.id, DAY, {coffee.id: Decimal("100")}, apply_adjustments=True)
        assert first.lines[0].variance == Decimal("-5")

        second = engine.reconcile_day(day_of_movements.id, DAY, {coffee.id: Decimal("100")}, apply_adjustments=True)

        line = second.lines[0]
        assert line.expected == Decimal("100")
        assert line.variance == Decimal("0")
        assert line.classification == "ok"
        assert second.adjustments_applied is False

        count_movements = db.execute(
            select(Movement).where(Movement.correlation_id.like("count:%"))
        ).scalars().all()
        assert len(count_movements) == 1
        level = db.execute(
            select(StockLevel.quantity).where(
                StockLevel.location_id == day_of_movements.id, StockLevel.ingredient_id == coffee.id
            )
        ).scalar()
        # 98 on hand (incl. the next-day sale) - 5 under, adjusted once
        assert level == Decimal("93")

    def test_auto_adjust_setting(self, db, day_of_movements, coffee):
        report = ReconciliationEngine(db, Settings(AUTO_ADJUST_ON_COUNT=True)).reconcile_day(
            day_of_movements.id, DAY, {coffee.id: Decimal("110")}
        )
        assert report.adjustments_applied is True
        level = db.execute(
            select(StockLevel.quantity).where(
                StockLevel.location_id == day_of_movements.id, StockLevel.ingredient_id == coffee.id
            )
        ).scalar()
        # 98 on hand (incl. the next-day sale) + 5 over
        assert level == Decimal("103")


class TestSnapshot:

    @pytest.fixture
    def opened(self, db, monkeypatch):
        """Isolation levels requested when a connection is procured, with the in-transaction flag at that moment."""
        calls = []
        connection = db.connection

        def recording_connection(*args, **kwargs):
            options = kwargs.get("execution_options")
            if options:
                calls.append((options.get("isolation_level"), db.in_transaction()))
            return connection(*args, **kwargs)

        monkeypatch.setattr(db, "connection", recording_connection)
        return calls

    def test_day_reconciliation_reads_in_snapshot(self, db, settings, day_of_movements, coffee, opened):
        # touching the fixture autobegins a plain read transaction
        location_id = day_of_movements.id
        assert db.in_transaction()

        ReconciliationEngine(db, settings).reconcile_day(location_id, DAY, {coffee.id: Decimal("100")})

        assert opened == [("SERIALIZABLE", False)]

    def test_explicit_period_reads_in_snapshot(self, db, settings, day_of_movements, coffee, opened):
        ReconciliationEngine(db, settings).reconcile(
            day_of_movements.id, datetime(2024, 5, 1, 4), datetime(2024, 5, 2, 4), {coffee.id: Decimal("105")}
        )
        assert opened == [("SERIALIZABLE", False)]

    def test_isolation_per_backend(self, settings):
        assert snapshot_isolation("postgresql", Settings()) == "REPEATABLE READ"
        assert snapshot_isolation("postgresql", Settings(RECONCILIATION_ISOLATION="SERIALIZABLE")) == "SERIALIZABLE"
        assert snapshot_isolation("sqlite", settings) == "SERIALIZABLE"
        assert snapshot_isolation("mysql", settings) is None


class TestReview:

    def test_acknowledge(self, db, settings, day_of_movements, coffee):
        engine = ReconciliationEngine(db, settings)
        report = engine.reconcile_day(day_of_movements.id, DAY, {coffee.id: Decimal("100")})
        assert report.status == "pending"
        assert report.acknowledged_at is None

        acknowledged = engine.acknowledge(report.id, " Area Manager ")

        assert acknowledged.status == "acknowledged"
        assert acknowledged.acknowledged_by == "Area Manager"
        assert acknowledged.acknowledged_at is not None
        # figures are untouched
        assert acknowledged.lines[0].variance == Decimal("-5")
        assert acknowledged.total_variance_value == Decimal("-10.00")

    def test_acknowledge_unknown_report(self, db, settings):
        from uuid import uuid4
        with pytest.raises(NotFound):
            ReconciliationEngine(db, settings).acknowledge(uuid4(), "Manager")

    def test_acknowledge_needs_reviewer(self, db, settings, day_of_movements, coffee):
        engine = ReconciliationEngine(db, settings)
        report = engine.reconcile_day(day_of_movements.id, DAY, {coffee.id: Decimal("100")})
        with pytest.raises(ValueError):
            engine.acknowledge(report.id, "  ")

    def test_variance_lines_worst_first(self, db, settings, day_of_movements, coffee, milk, make_ingredient, mutations):
        sugar = make_ingredient("Sugar", "g")
        mutations.receive_batch(milk.id, day_of_movements.id, Decimal("1000"), Decimal("0.01"), occurred_at=BEFORE)
        mutations.receive_batch(sugar.id, day_of_movements.id, Decimal("10"), Decimal("1"), occurred_at=BEFORE)

        engine = ReconciliationEngine(db, settings)
        report = engine.reconcile_day(
            day_of_movements.id, DAY,
            {coffee.id: Decimal("100"), milk.id: Decimal("400"), sugar.id: Decimal("10")},
        )

        lines = engine.variance_lines(report.id)

        # coffee -5 × 2.00 = -10.00 comes before milk -600 × 0.01 = -6.00; sugar is ok
        assert [line.ingredient_id for line in lines] == [coffee.id, milk.id]
        assert [line.variance_value for line in lines] == [Decimal("-10.00"), Decimal("-6.00")]

    def test_summary_keeps_report_in_force_per_date(self, db, settings, day_of_movements, coffee):
        engine = ReconciliationEngine(db, settings)
        engine.reconcile_day(day_of_movements.id, DAY, {coffee.id: Decimal("100")})
        recount = engine.reconcile_day(day_of_movements.id, DAY, {coffee.id: Decimal("105")})
        next_day = engine.reconcile_day(day_of_movements.id, date(2024, 5, 2), {coffee.id: Decimal("98")})
        engine.reconcile_day(day_of_movements.id, date(2024, 5, 9), {coffee.id: Decimal("98")})

        reports = engine.summary(day_of_movements.id, DAY, date(2024, 5, 3))

        assert [r.id for r in reports] == [next_day.id, recount.id]

    def test_summary_inverted_range(self, db, settings, store):
        with pytest.raises(ValueError):
            ReconciliationEngine(db, settings).summary(store.id, date(2024, 5, 2), DAY)


class TestValidation:

    def test_unknown_location(self, db, settings, coffee):
        from uuid import uuid4
        with pytest.raises(NotFound):
            ReconciliationEngine(db, settings).reconcile_day(uuid4(), DAY, {coffee.id: Decimal("1")})

    def test_unknown_ingredient(self, db, settings, store):
        from uuid import uuid4
        with pytest.raises(NotFound):
            ReconciliationEngine(db, settings).reconcile_day(store.id, DAY, {uuid4(): Decimal("1")})

    def test_negative_count(self, db, settings, store, coffee):
        with pytest.raises(InvalidQuantity):
            ReconciliationEngine(db, settings).reconcile_day(store.id, DAY, {coffee.id: Decimal("-1")})

    def test_empty_count(self, db, settings, store):
        with pytest.raises(InvalidQuantity):
            ReconciliationEngine(db, settings).reconcile_day(store.id, DAY, {})


class TestHelpers:

    def test_classify_with_tolerance(self):
        assert classify(Decimal("0.4"), Decimal("0.5")) == "ok"
        assert classify(Decimal("-0.5"), Decimal("0.5")) == "ok"
        assert classify(Decimal("-0.6"), Decimal("0.5")) == "under"
        assert classify(Decimal("0.0001")) == "over"

    def test_percentage_rounding(self):
        assert variance_percentage(Decimal("1"), Decimal("3")) == Decimal("33.33")
        assert variance_percentage(Decimal("1"), Decimal("0")) is None
