"""Money calculator: line items, discounts, VAT and processing fee to a final charge.

All arithmetic is done on integer minor units through Decimal. Each step rounds
to a whole minor unit (half-up) and the next step starts from that rounded
value, so the same input always produces the same amount.

Order of operations:

1. per line: round(unit * (1 - line_discount% / 100))
2. subtotal = sum of line totals
3. document discount: percent -> round(subtotal * (1 - pct / 100)),
   fixed -> max(0, subtotal - fixed)
4. VAT: added on top (round(subtotal * rate)) unless already included
5. fee (optional): ceil((amount * fee% + fixed_fee) / (1 - fee%))
6. reject totals under the minimum charge
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Mapping, Optional, Tuple

from .errors import ValidationError
from .models import DiscountType

_ONE = Decimal(1)
_HUNDRED = Decimal(100)


def _default_fixed_fees() -> Mapping[str, int]:
    return {"GBP": 20, "USD": 30, "EUR": 30}


@dataclass(frozen=True)
class PricingConfig:
    vat_rate: Decimal = Decimal("0.20")
    fee_percent: Decimal = Decimal("0.015")
    fixed_fees: Mapping[str, int] = field(default_factory=_default_fixed_fees)
    default_fixed_fee: int = 30
    minimum_charge_minor_units: int = 100

    def fixed_fee_for(self, currency: str) -> int:
        return int(self.fixed_fees.get((currency or "").upper(), self.default_fixed_fee))

    @classmethod
    def from_settings(cls, settings: Any) -> "PricingConfig":
        return cls(
            vat_rate=Decimal(str(settings.VAT_RATE)),
            fee_percent=Decimal(str(settings.PROCESSING_FEE_PERCENT)),
            fixed_fees=parse_fee_table(settings.PROCESSING_FEE_FIXED),
            default_fixed_fee=int(settings.PROCESSING_FEE_DEFAULT_FIXED),
            minimum_charge_minor_units=int(settings.MINIMUM_CHARGE_MINOR_UNITS),
        )


def parse_fee_table(raw: str) -> Mapping[str, int]:
    """Parse "GBP:20,USD:30" into {"GBP": 20, "USD": 30}."""
    table = {}
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        code, sep, amount = part.partition(":")
        if not sep:
            raise ValueError(f"Invalid fee table entry: {part!r}")
        table[code.strip().upper()] = int(amount.strip())
    return table


@dataclass(frozen=True)
class AmountBreakdown:
    line_totals: Tuple[int, ...]
    subtotal: int
    discount: int
    discounted_subtotal: int
    # VAT added on top, or the VAT share already inside the amount when included.
    vat: int
    vat_included: bool
    amount_before_fee: int
    fee: Optional[int]
    total: int


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(_ONE, rounding=ROUND_HALF_UP))


def _pct(value: Any) -> Decimal:
    return Decimal(str(value or 0))


def line_total(amount_minor_units: int, discount_percent: float = 0.0) -> int:
    dp = min(_HUNDRED, max(Decimal(0), _pct(discount_percent)))
    return round_half_up(Decimal(int(amount_minor_units)) * (_ONE - dp / _HUNDRED))


def apply_document_discount(subtotal: int, discount_type: DiscountType, discount_value: Optional[float]) -> int:
    if discount_type == DiscountType.PERCENT and discount_value and discount_value > 0:
        pct = min(_HUNDRED, _pct(discount_value))
        return round_half_up(Decimal(subtotal) * (_ONE - pct / _HUNDRED))
    if discount_type == DiscountType.FIXED and discount_value and discount_value > 0:
        return max(0, subtotal - int(discount_value))
    return subtotal


def processing_fee(amount_before_fee: int, currency: str, config: PricingConfig) -> int:
    gross = Decimal(amount_before_fee) * config.fee_percent + Decimal(config.fixed_fee_for(currency))
    return int((gross / (_ONE - config.fee_percent)).to_integral_value(rounding=ROUND_CEILING))


def included_vat_share(amount: int, vat_rate: Decimal) -> int:
    """VAT contained in a VAT-inclusive amount (disclosure only)."""
    net = round_half_up(Decimal(amount) / (_ONE + vat_rate))
    return amount - net


def compute_amount(
    line_items: Iterable[Any],
    *,
    currency: str,
    discount_type: DiscountType = DiscountType.NONE,
    discount_value: Optional[float] = None,
    vat_included: bool = False,
    fee_included: bool = False,
    config: Optional[PricingConfig] = None,
    enforce_minimum: bool = True,
) -> AmountBreakdown:
    """Compute the final charge for a set of line items.

    `line_items` only needs `amount_minor_units` and `discount_percent`
    attributes (request inputs and stored line items both qualify).

    Raises ValidationError when the total is under the minimum charge, unless
    `enforce_minimum` is off (read-side breakdowns of stored documents).
    """
    config = config or PricingConfig()

    totals = tuple(line_total(li.amount_minor_units, li.discount_percent) for li in line_items)
    subtotal = sum(totals)

    discounted = apply_document_discount(subtotal, DiscountType(discount_type or DiscountType.NONE), discount_value)

    if vat_included:
        vat = included_vat_share(discounted, config.vat_rate)
        before_fee = discounted
    else:
        vat = round_half_up(Decimal(discounted) * config.vat_rate)
        before_fee = discounted + vat

    fee: Optional[int] = None
    total = before_fee
    if fee_included:
        fee = processing_fee(before_fee, currency, config)
        total = before_fee + fee

    if enforce_minimum and total < config.minimum_charge_minor_units:
        raise ValidationError(
            f"Minimum amount is {config.minimum_charge_minor_units} minor units (got {total})"
        )

    return AmountBreakdown(
        line_totals=totals,
        subtotal=subtotal,
        discount=subtotal - discounted,
        discounted_subtotal=discounted,
        vat=vat,
        vat_included=bool(vat_included),
        amount_before_fee=before_fee,
        fee=fee,
        total=total,
    )
