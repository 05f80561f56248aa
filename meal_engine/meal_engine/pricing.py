"""Customer-facing meal pricing.

All amounts are :class:`~decimal.Decimal` rounded half-up to cents.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from meal_engine.config import EngineSettings

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Decimal | int | float | str) -> Decimal:
    """Quantize *value* to cents."""
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def unit_price(base_price: Decimal, settings: EngineSettings) -> Decimal:
    """Per-meal price charged to the consumer: vendor base price plus commission and delivery fee."""
    commission = Decimal(base_price) * settings.commission_pct / Decimal(100)
    return to_money(Decimal(base_price) + commission + settings.delivery_fee_per_meal)


def discounted_price(base_price: Decimal, discount_pct: Decimal | int | float) -> Decimal:
    """Apply a percentage discount to a single meal price."""
    pct = Decimal(str(discount_pct))
    if pct < 0 or pct > 100:
        raise ValueError(f"discount_pct must be within 0..100, got {pct}")
    return to_money(Decimal(base_price) * (Decimal(100) - pct) / Decimal(100))


def cycle_amount(scheduled_meals: int, price_per_meal: Decimal, credits: int = 0) -> Decimal:
    """Billable amount for a cycle: meals not covered by credits times the unit price."""
    billable = max(0, scheduled_meals - credits)
    return to_money(billable * Decimal(price_per_meal))
