"""Fee derivation for bookings.

All money is integer cents. Fractions only appear transiently while solving
for the client price and are rounded half-to-even at the cent boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Iterable

from ..config import Settings, get_settings
from ..core.constants import MAX_BOOKING_DURATION
from ..core.errors import ValidationError

HUNDRED = Decimal(100)


@dataclass(frozen=True, slots=True)
class PriceBreakdown:
    client_pays_cents: int
    processor_fee_cents: int
    platform_fee_cents: int
    coach_payout_cents: int

    def __add__(self, other: "PriceBreakdown") -> "PriceBreakdown":
        return PriceBreakdown(
            client_pays_cents=self.client_pays_cents + other.client_pays_cents,
            processor_fee_cents=self.processor_fee_cents + other.processor_fee_cents,
            platform_fee_cents=self.platform_fee_cents + other.platform_fee_cents,
            coach_payout_cents=self.coach_payout_cents + other.coach_payout_cents,
        )

    def times(self, count: int) -> "PriceBreakdown":
        return PriceBreakdown(
            client_pays_cents=self.client_pays_cents * count,
            processor_fee_cents=self.processor_fee_cents * count,
            platform_fee_cents=self.platform_fee_cents * count,
            coach_payout_cents=self.coach_payout_cents * count,
        )

    def as_dict(self) -> dict[str, int]:
        return {
            "client_pays_cents": self.client_pays_cents,
            "processor_fee_cents": self.processor_fee_cents,
            "platform_fee_cents": self.platform_fee_cents,
            "coach_payout_cents": self.coach_payout_cents,
        }


ZERO = PriceBreakdown(0, 0, 0, 0)


@dataclass(frozen=True, slots=True)
class FeeSchedule:
    """Processor pricing: a percentage of the charge plus a fixed fee."""

    processor_percentage: Decimal
    processor_fixed_cents: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "FeeSchedule":
        return cls(
            processor_percentage=_to_decimal(settings.processor_percentage),
            processor_fixed_cents=settings.processor_fixed_cents,
        )


@dataclass(frozen=True, slots=True)
class GroupTotals:
    headcount: int
    per_person: PriceBreakdown
    total: PriceBreakdown


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid amount {value!r}") from exc


def _round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_EVEN))


def _fees(fees: FeeSchedule | None) -> FeeSchedule:
    return fees or FeeSchedule.from_settings(get_settings())


def _fee_fraction(platform_fee_percentage) -> Decimal:
    percentage = _to_decimal(platform_fee_percentage)
    if percentage < 0 or percentage > HUNDRED:
        raise ValidationError("Platform fee percentage must be between 0 and 100")
    return percentage / HUNDRED


def to_cents(amount) -> int:
    """Convert a currency amount (e.g. ``Decimal("85.50")``) to cents."""
    return _round_cents(_to_decimal(amount) * HUNDRED)


def breakdown_from_charge(
    client_pays_cents: int,
    platform_fee_percentage,
    fees: FeeSchedule | None = None,
) -> PriceBreakdown:
    """Split an amount already charged to the client into its three cuts."""
    if client_pays_cents < 0:
        raise ValidationError("Charged amount cannot be negative")
    fees = _fees(fees)
    fraction = _fee_fraction(platform_fee_percentage)
    if client_pays_cents == 0:
        return ZERO
    processor_fee = _round_cents(
        Decimal(client_pays_cents) * fees.processor_percentage / HUNDRED
        + fees.processor_fixed_cents
    )
    net = client_pays_cents - processor_fee
    platform_fee = _round_cents(Decimal(net) * fraction)
    return PriceBreakdown(
        client_pays_cents=client_pays_cents,
        processor_fee_cents=processor_fee,
        platform_fee_cents=platform_fee,
        coach_payout_cents=net - platform_fee,
    )


def price_for_payout(
    payout_cents: int,
    platform_fee_percentage,
    fees: FeeSchedule | None = None,
) -> PriceBreakdown:
    """Solve for the client price that leaves the coach with ``payout_cents``.

    The platform fee is taken from the amount left after the processor fee,
    so the price is ``(D + F(1-P)) / ((1-S)(1-P))``. The rounded client price
    is then split with :func:`breakdown_from_charge` so the parts always sum
    to the charge.
    """
    if payout_cents <= 0:
        raise ValidationError("Rate must be greater than 0")
    fees = _fees(fees)
    fraction = _fee_fraction(platform_fee_percentage)
    if fraction >= 1:
        raise ValidationError("Platform fee percentage must be below 100 to price a booking")
    processor_fraction = fees.processor_percentage / HUNDRED
    fixed = Decimal(fees.processor_fixed_cents)
    client_pays = (Decimal(payout_cents) + fixed * (1 - fraction)) / (
        (1 - processor_fraction) * (1 - fraction)
    )
    return breakdown_from_charge(_round_cents(client_pays), platform_fee_percentage, fees)


def calculate_booking_pricing(
    hourly_rate,
    duration_min: int,
    platform_fee_percentage,
    fees: FeeSchedule | None = None,
) -> PriceBreakdown:
    rate = _to_decimal(hourly_rate)
    if rate <= 0:
        raise ValidationError("Hourly rate must be greater than 0")
    max_minutes = int(MAX_BOOKING_DURATION.total_seconds() // 60)
    if duration_min <= 0 or duration_min > max_minutes:
        raise ValidationError(f"Duration must be between 1 and {max_minutes} minutes")
    payout_cents = _round_cents(rate * HUNDRED * duration_min / 60)
    return price_for_payout(payout_cents, platform_fee_percentage, fees)


def calculate_group_totals(
    price_per_person_cents: int,
    headcount: int,
    platform_fee_percentage,
    fees: FeeSchedule | None = None,
) -> GroupTotals:
    """Price one seat from the coach's per-person rate and scale by headcount."""
    if headcount <= 0:
        raise ValidationError("Headcount must be positive")
    per_person = price_for_payout(price_per_person_cents, platform_fee_percentage, fees)
    return GroupTotals(headcount=headcount, per_person=per_person, total=per_person.times(headcount))


def aggregate(breakdowns: Iterable[PriceBreakdown]) -> PriceBreakdown:
    total = ZERO
    for breakdown in breakdowns:
        total = total + breakdown
    return total
