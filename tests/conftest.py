"""
Test configuration and fixtures.
"""
import os
import pytest
from decimal import Decimal
from typing import Callable, Generator
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

# Set test database URL before importing app
os.environ["DATABASE_URL"] = "sqlite://"

from stockledger.main import app
from stockledger.core.config import Settings
from stockledger.db.base import Base
from stockledger.db.session import build_engine, get_db
from stockledger.models.ingredient import Ingredient
from stockledger.models.location import Location
from stockledger.models.recipe import BomLine, Product
from stockledger.services.locking import KeyedLockManager
from stockledger.services.stock_mutation import StockMutationService


# One in-memory database shared by every connection of a test
engine = build_engine("sqlite://", poolclass=StaticPool)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Create a fresh schema and a database session for the test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db: Session) -> Generator[TestClient, None, None]:
    """Create test client with database session override."""
    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def settings() -> Settings:
    """Reject-negative policy with short waits."""
    return Settings(
        ALLOW_NEGATIVE_STOCK=False,
        LOCK_TIMEOUT_SECONDS=2.0,
        CONTENTION_MAX_RETRIES=2,
        CONTENTION_BACKOFF_SECONDS=0.01,
    )


@pytest.fixture
def mutations(db: Session, settings: Settings) -> StockMutationService:
    return StockMutationService(db, settings, locks=KeyedLockManager())


@pytest.fixture
def make_location(db: Session) -> Callable[..., Location]:
    def _make(name: str = "Central Store", kind: str = "store", timezone=None) -> Location:
        location = Location(name=name, kind=kind, timezone=timezone)
        db.add(location)
        db.commit()
        db.refresh(location)
        return location
    return _make


@pytest.fixture
def make_ingredient(db: Session) -> Callable[..., Ingredient]:
    def _make(name: str = "Coffee beans", base_unit: str = "g", reorder_threshold="0") -> Ingredient:
        ingredient = Ingredient(name=name, base_unit=base_unit, reorder_threshold=Decimal(reorder_threshold))
        db.add(ingredient)
        db.commit()
        db.refresh(ingredient)
        return ingredient
    return _make


@pytest.fixture
def make_product(db: Session) -> Callable[..., Product]:
    """
    Create a product from (ingredient, quantity, unit[, line_type, modifier_id]) tuples.
    """
    def _make(external_ref: str, lines, name: str = None) -> Product:
        product = Product(name=name or external_ref, external_ref=external_ref)
        for position, line in enumerate(lines):
            ingredient, quantity, unit = line[:3]
            line_type = line[3] if len(line) > 3 else "base"
            modifier_id = line[4] if len(line) > 4 else None
            product.bom_lines.append(BomLine(
                ingredient_id=ingredient.id,
                quantity=Decimal(quantity),
                unit=unit,
                line_type=line_type,
                modifier_id=modifier_id,
                position=position,
            ))
        db.add(product)
        db.commit()
        db.refresh(product)
        return product
    return _make


@pytest.fixture
def store(make_location) -> Location:
    return make_location("Central Store", "store")


@pytest.fixture
def shop(make_location) -> Location:
    return make_location("Westlands Shop", "shop")


@pytest.fixture
def coffee(make_ingredient) -> Ingredient:
    return make_ingredient("Coffee beans", "g", "500")


@pytest.fixture
def milk(make_ingredient) -> Ingredient:
    return make_ingredient("Milk", "ml", "1000")
