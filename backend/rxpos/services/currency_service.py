# Overview: Pure dual-currency arithmetic for line totals, taxes, and percentages.

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable
"""
Currency Ledger Invariants (authoritative)

- Money is integer minor units (cents) per currency; no float ever touches it.
- USD and local-currency amounts are computed independently from their own
  catalog prices. Nothing is derived across currencies, so a fluctuating
  exchange rate cannot compound rounding error into a sale.
- Tax rates are basis points (1600 = 16%).
- Rounding is half-up to the cent, applied once per computed amount.
- Tax is 0 when the line is exempt, else subtotal * rate.
"""

BPS_DENOMINATOR = 10_000
_CENT = Decimal("0.01")


@dataclass(frozen=True)
class DualAmount:
    usd_cents: int = 0
    local_cents: int = 0

    def __add__(self, other: "DualAmount") -> "DualAmount":
        return DualAmount(self.usd_cents + other.usd_cents, self.local_cents + other.local_cents)

    def to_dict(self, prefix: str) -> dict:
        return {
            f"{prefix}_usd_cents": self.usd_cents,
            f"{prefix}_local_cents": self.local_cents,
        }


@dataclass(frozen=True)
class LineTotals:
    subtotal: DualAmount
    tax: DualAmount
    total: DualAmount

    def to_dict(self) -> dict:
        data = {}
        data.update(self.subtotal.to_dict("subtotal"))
        data.update(self.tax.to_dict("tax"))
        data.update(self.total.to_dict("total"))
        return data


ZERO_TOTALS = LineTotals(DualAmount(), DualAmount(), DualAmount())


def div_round_half_up(numerator: int, denominator: int) -> int:
    """Integer division rounded half away from zero."""
    if denominator <= 0:
        raise ValueError("denominator must be positive")
    sign = -1 if numerator < 0 else 1
    q, r = divmod(abs(numerator), denominator)
    if r * 2 >= denominator:
        q += 1
    return sign * q


def apply_rate_bps(amount_cents: int, rate_bps: int) -> int:
    return div_round_half_up(amount_cents * rate_bps, BPS_DENOMINATOR)


def calculate_line_totals(
    *,
    unit_price_usd_cents: int,
    unit_price_local_cents: int,
    quantity: int,
    tax_rate_bps: int,
    tax_exempt: bool,
) -> LineTotals:
    if not isinstance(quantity, int) or quantity <= 0:
        raise ValueError("quantity must be a positive integer")
    if unit_price_usd_cents < 0 or unit_price_local_cents < 0:
        raise ValueError("unit prices cannot be negative")
    if not 0 <= tax_rate_bps <= BPS_DENOMINATOR:
        raise ValueError("tax_rate_bps must be between 0 and 10000")

    subtotal = DualAmount(unit_price_usd_cents * quantity, unit_price_local_cents * quantity)
    if tax_exempt:
        tax = DualAmount()
    else:
        tax = DualAmount(
            apply_rate_bps(subtotal.usd_cents, tax_rate_bps),
            apply_rate_bps(subtotal.local_cents, tax_rate_bps),
        )
    return LineTotals(subtotal=subtotal, tax=tax, total=subtotal + tax)


def sum_line_totals(lines: Iterable[LineTotals]) -> LineTotals:
    result = ZERO_TOTALS
    for line in lines:
        result = LineTotals(
            subtotal=result.subtotal + line.subtotal,
            tax=result.tax + line.tax,
            total=result.total + line.total,
        )
    return result


def percent_of_cents(amount_cents: int, percent) -> int:
    """amount * percent / 100, half-up. percent may be int or Decimal."""
    value = Decimal(amount_cents) * Decimal(percent) / Decimal(100)
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents) / Decimal(100)).quantize(_CENT)


def decimal_to_cents(value) -> int:
    """Parse a currency amount ('12.34', Decimal, int) into cents, half-up."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"invalid money amount: {value!r}")
    return int((amount * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def parse_exchange_rate(value) -> Decimal:
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"invalid exchange rate: {value!r}")
    if not rate.is_finite() or rate <= 0:
        raise ValueError("exchange rate must be positive")
    return rate


def convert_usd_to_local_cents(usd_cents: int, exchange_rate) -> int:
    """For payment/display only (e.g. mixed-currency tenders); never used for line totals."""
    rate = parse_exchange_rate(exchange_rate)
    return int((Decimal(usd_cents) * rate).quantize(Decimal(1), rounding=ROUND_HALF_UP))
