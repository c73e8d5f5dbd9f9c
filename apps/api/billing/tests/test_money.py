from decimal import Decimal

import pytest

from apps.api.billing.errors import ValidationError
from apps.api.billing.models import DiscountType, LineItemInput
from apps.api.billing.money import (
    PricingConfig,
    compute_amount,
    line_total,
    parse_fee_table,
    processing_fee,
)


def _items(*rows):
    return [LineItemInput(description=f"item {i}", amount_minor_units=a, discount_percent=d) for i, (a, d) in enumerate(rows)]


def test_vat_added_on_top():
    b = compute_amount(_items((10000, 0), (5000, 10)), currency="USD")
    assert b.line_totals == (10000, 4500)
    assert b.subtotal == 14500
    assert b.vat == 2900
    assert b.total == 17400
    assert b.fee is None


def test_vat_included_is_disclosed_not_added():
    b = compute_amount(_items((10000, 0), (5000, 10)), currency="USD", vat_included=True)
    assert b.total == 14500
    # 14500 - round(14500 / 1.2)
    assert b.vat == 2417


def test_processing_fee_on_minimum_amount():
    b = compute_amount(_items((100, 0)), currency="USD", vat_included=True, fee_included=True)
    assert b.fee == 32
    assert b.total == 132


def test_processing_fee_uses_currency_fixed_part():
    config = PricingConfig()
    assert processing_fee(10000, "GBP", config) == 173
    assert processing_fee(10000, "USD", config) == 183
    # Unknown currency falls back to the default fixed fee.
    assert processing_fee(10000, "JPY", config) == 183


def test_line_discount_rounds_half_up():
    assert line_total(25, 50) == 13
    assert line_total(15, 10) == 14  # 13.5
    assert line_total(1000, 100) == 0


def test_percent_document_discount_applies_before_vat():
    b = compute_amount(
        _items((10000, 0), (5000, 10)),
        currency="USD",
        discount_type=DiscountType.PERCENT,
        discount_value=10,
    )
    assert b.discounted_subtotal == 13050
    assert b.discount == 1450
    assert b.vat == 2610
    assert b.total == 15660


def test_fixed_document_discount_floors_at_zero():
    with pytest.raises(ValidationError, match="Minimum amount"):
        compute_amount(_items((500, 0)), currency="USD", discount_type=DiscountType.FIXED, discount_value=900)

    b = compute_amount(
        _items((500, 0)), currency="USD", discount_type=DiscountType.FIXED, discount_value=900, enforce_minimum=False
    )
    assert b.discounted_subtotal == 0
    assert b.total == 0


def test_below_minimum_is_rejected():
    with pytest.raises(ValidationError):
        compute_amount(_items((99, 0)), currency="USD", vat_included=True)


def test_minimum_is_checked_after_fee():
    b = compute_amount(_items((80, 0)), currency="USD", vat_included=True, fee_included=True)
    assert b.total == 112


def test_same_input_same_output():
    items = _items((33333, 12.5), (4999, 0), (1, 50))
    kwargs = dict(currency="EUR", discount_type=DiscountType.PERCENT, discount_value=7.5, fee_included=True)
    assert compute_amount(items, **kwargs) == compute_amount(items, **kwargs)


def test_custom_pricing_config():
    config = PricingConfig(vat_rate=Decimal("0.10"), minimum_charge_minor_units=1)
    b = compute_amount(_items((50, 0)), currency="USD", config=config)
    assert b.vat == 5
    assert b.total == 55


def test_parse_fee_table():
    assert parse_fee_table("gbp:20, USD:30,") == {"GBP": 20, "USD": 30}
    with pytest.raises(ValueError):
        parse_fee_table("GBP20")
