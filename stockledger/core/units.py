"""
Unit conversion table.

Static mapping between compatible units. Each unit belongs to a family
(mass, volume, count) and has a factor relative to the family base unit
(g, ml, pcs). Conversion between families is a configuration error.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional
from uuid import UUID

from stockledger.core.errors import UnitConversionError


MASS = "mass"
VOLUME = "volume"
COUNT = "count"


@dataclass(frozen=True)
class Unit:
    symbol: str
    family: str
    factor: Decimal  # multiples of the family base unit


_UNITS = [
    # Mass: base unit = g
    Unit("mg", MASS, Decimal("0.001")),
    Unit("g", MASS, Decimal("1")),
    Unit("kg", MASS, Decimal("1000")),
    Unit("oz", MASS, Decimal("28.349523125")),
    Unit("lb", MASS, Decimal("453.59237")),

    # Volume: base unit = ml
    Unit("ml", VOLUME, Decimal("1")),
    Unit("cl", VOLUME, Decimal("10")),
    Unit("dl", VOLUME, Decimal("100")),
    Unit("l", VOLUME, Decimal("1000")),
    Unit("tsp", VOLUME, Decimal("5")),
    Unit("tbsp", VOLUME, Decimal("15")),
    Unit("fl_oz", VOLUME, Decimal("29.5735295625")),

    # Count: base unit = pcs
    Unit("pcs", COUNT, Decimal("1")),
    Unit("dozen", COUNT, Decimal("12")),
]

UNITS: Dict[str, Unit] = {u.symbol: u for u in _UNITS}

ALIASES = {
    "gram": "g",
    "grams": "g",
    "kilogram": "kg",
    "kilograms": "kg",
    "milligram": "mg",
    "litre": "l",
    "liter": "l",
    "litres": "l",
    "liters": "l",
    "millilitre": "ml",
    "milliliter": "ml",
    "pc": "pcs",
    "piece": "pcs",
    "pieces": "pcs",
    "unit": "pcs",
    "units": "pcs",
    "ea": "pcs",
    "each": "pcs",
}


def normalize_unit(symbol: str) -> str:
    """Return the canonical symbol for a unit name (case-insensitive)."""
    key = (symbol or "").strip().lower()
    return ALIASES.get(key, key)


def get_unit(symbol: str) -> Optional[Unit]:
    return UNITS.get(normalize_unit(symbol))


def is_known_unit(symbol: str) -> bool:
    return get_unit(symbol) is not None


def are_compatible(from_unit: str, to_unit: str) -> bool:
    """True when both units are known and share a family."""
    a, b = get_unit(from_unit), get_unit(to_unit)
    return a is not None and b is not None and a.family == b.family


def conversion_factor(from_unit: str, to_unit: str, ingredient_id: Optional[UUID] = None) -> Decimal:
    """
    Factor that converts a quantity in ``from_unit`` into ``to_unit``.

    Raises:
        UnitConversionError: if either unit is unknown or the families differ
    """
    source, target = get_unit(from_unit), get_unit(to_unit)
    if source is None or target is None or source.family != target.family:
        raise UnitConversionError(from_unit, to_unit, ingredient_id)
    return source.factor / target.factor


def convert(quantity: Decimal, from_unit: str, to_unit: str, ingredient_id: Optional[UUID] = None) -> Decimal:
    """
    Convert a quantity between compatible units.

    Examples:
        >>> convert(Decimal("0.06"), "kg", "g")
        Decimal('60.00')
        >>> convert(Decimal("250"), "ml", "l")
        Decimal('0.250')
    """
    if normalize_unit(from_unit) == normalize_unit(to_unit) and is_known_unit(from_unit):
        return quantity
    return quantity * conversion_factor(from_unit, to_unit, ingredient_id)
