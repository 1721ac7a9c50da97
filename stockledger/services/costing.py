"""
Costing Engine: weighted-average unit cost per (ingredient, location).

Mathematical Model:
    new_average = (Q × C + q × c) / (Q + q)

Where:
- Q, C = quantity on hand and current average cost at the location
- q, c = quantity received and its unit cost

With Q ≤ 0 the new average is simply c. Outflows (consumption, transfer
out, wastage) never change the average, only the quantity.

All values are fixed-point Decimals with round-half-to-even, matching the
storage columns: quantities and money values to 4 fractional digits
(Numeric(18, 4)), unit costs to 8 (Numeric(20, 8)) because per-gram and
per-millilitre costs live in the thousandths. Cost does not drift across
thousands of small movements.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Iterable, Optional, Union

from stockledger.models.inventory import Batch


QUANTITY_EXPONENT = Decimal("0.0001")
COST_EXPONENT = Decimal("0.00000001")
VALUE_EXPONENT = Decimal("0.0001")
PERCENT_EXPONENT = Decimal("0.01")

ZERO = Decimal("0")

Number = Union[Decimal, int, str]


def to_decimal(value: Number) -> Decimal:
    """Coerce ints, strings and Decimals (never floats) to Decimal."""
    if isinstance(value, float):
        # floats carry binary noise; go through repr so 0.1 stays 0.1
        return Decimal(repr(value))
    if isinstance(value, Decimal):
        return value
    return Decimal(value)


def quantize_quantity(value: Number) -> Decimal:
    return to_decimal(value).quantize(QUANTITY_EXPONENT, rounding=ROUND_HALF_EVEN)


def quantize_cost(value: Number) -> Decimal:
    return to_decimal(value).quantize(COST_EXPONENT, rounding=ROUND_HALF_EVEN)


def quantize_value(value: Number) -> Decimal:
    return to_decimal(value).quantize(VALUE_EXPONENT, rounding=ROUND_HALF_EVEN)


def quantize_percent(value: Number) -> Decimal:
    return to_decimal(value).quantize(PERCENT_EXPONENT, rounding=ROUND_HALF_EVEN)


def weighted_average(
    on_hand: Decimal,
    current_cost: Decimal,
    received: Decimal,
    received_cost: Decimal,
) -> Decimal:
    """
    Blend an incoming quantity into the current weighted-average cost.

    Args:
        on_hand: Quantity currently at the location (may be negative under
            the allow-negative policy; treated as zero for costing)
        current_cost: Current average unit cost
        received: Quantity received (> 0)
        received_cost: Unit cost of the received quantity

    Returns:
        New average unit cost, quantized to the stored precision

    Examples:
        >>> weighted_average(Decimal("0"), Decimal("0"), Decimal("10"), Decimal("2.00"))
        Decimal('2.0000')
        >>> weighted_average(Decimal("10"), Decimal("2.00"), Decimal("10"), Decimal("4.00"))
        Decimal('3.0000')
    """
    if on_hand <= ZERO:
        return quantize_cost(received_cost)

    total_quantity = on_hand + received
    total_value = on_hand * current_cost + received * received_cost
    return quantize_cost(total_value / total_quantity)


def movement_value(quantity: Decimal, unit_cost: Decimal) -> Decimal:
    """Monetary value of a movement (signed like its quantity)."""
    return quantize_value(quantity * unit_cost)


def draw_down(batches: Iterable[Batch], quantity: Decimal) -> Decimal:
    """
    Reduce ``quantity_remaining`` across batches, oldest first.

    Under weighted-average costing every batch carries the same effective
    cost, so the order only makes the result deterministic.

    Returns:
        The part of ``quantity`` that no batch could cover (zero unless the
        location is being driven negative)
    """
    outstanding = quantity
    for batch in sorted(batches, key=lambda b: (b.received_at, str(b.id))):
        if outstanding <= ZERO:
            break
        if batch.quantity_remaining <= ZERO:
            continue
        taken = min(batch.quantity_remaining, outstanding)
        batch.quantity_remaining = quantize_quantity(batch.quantity_remaining - taken)
        outstanding -= taken
    return quantize_quantity(outstanding)


def cover_deficit(on_hand: Decimal, received: Decimal) -> Decimal:
    """
    Remaining quantity a new batch should start with.

    When stock is negative (allow-negative policy) the incoming batch first
    covers the deficit, so that the sum of batch remaining always equals
    max(on_hand, 0).
    """
    if on_hand >= ZERO:
        return received
    return max(ZERO, quantize_quantity(received + on_hand))


@dataclass
class CostedPosition:
    """Quantity and average cost of one (ingredient, location) after replay."""
    quantity: Decimal = ZERO
    unit_cost: Decimal = ZERO

    def receive(self, quantity: Decimal, unit_cost: Decimal) -> None:
        self.unit_cost = weighted_average(self.quantity, self.unit_cost, quantity, unit_cost)
        self.quantity = quantize_quantity(self.quantity + quantity)

    def release(self, quantity: Decimal) -> None:
        self.quantity = quantize_quantity(self.quantity - quantity)


def replay_position(movements: Iterable, opening: Optional[CostedPosition] = None) -> CostedPosition:
    """
    Fold a sequence of movements into a costed position.

    In-flows that carry cost (receipt, transfer_in, positive adjustment) go
    through the weighted average; out-flows only reduce quantity.
    """
    position = opening or CostedPosition()
    for movement in movements:
        if movement.quantity > ZERO:
            position.receive(movement.quantity, movement.unit_cost)
        else:
            position.release(-movement.quantity)
    return position
