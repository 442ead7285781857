"""
Tests for conversion between gateway units and ledger kobo
"""

from decimal import Decimal

import pytest

from utils.amount_normalizer import AmountNormalizer, AmountUnit, format_naira, from_canonical, to_canonical
from utils.exceptions import ValidationError


class TestToCanonical:
    """Native gateway amount -> integer kobo"""

    def test_minor_unit_passes_through(self):
        assert to_canonical(150050, AmountUnit.MINOR) == 150050
        assert to_canonical("5000", AmountUnit.MINOR) == 5000

    def test_major_unit_multiplies_by_100(self):
        assert to_canonical(1500, AmountUnit.MAJOR) == 150000
        assert to_canonical("1500.50", AmountUnit.MAJOR) == 150050
        assert to_canonical(Decimal("0.01"), AmountUnit.MAJOR) == 1

    def test_float_naira_has_no_binary_artefacts(self):
        # 1.1 * 100 in binary floating point is 110.00000000000001
        assert to_canonical(1.1, AmountUnit.MAJOR) == 110
        assert to_canonical(19.99, AmountUnit.MAJOR) == 1999

    def test_sub_kobo_rounds_half_up(self):
        assert to_canonical("10.005", AmountUnit.MAJOR) == 1001
        assert to_canonical("10.004", AmountUnit.MAJOR) == 1000
        assert to_canonical("0.5", AmountUnit.MINOR) == 1

    @pytest.mark.parametrize("bad", [None, True, "abc", "", "NaN", "Infinity"])
    def test_rejects_non_numbers(self, bad):
        with pytest.raises(ValidationError):
            to_canonical(bad, AmountUnit.MAJOR)


class TestFromCanonical:
    """Integer kobo -> native gateway amount"""

    def test_minor_unit_is_identity(self):
        assert from_canonical(150050, AmountUnit.MINOR) == 150050

    def test_major_unit_is_two_decimal_naira(self):
        assert from_canonical(150050, AmountUnit.MAJOR) == Decimal("1500.50")
        assert from_canonical(1, AmountUnit.MAJOR) == Decimal("0.01")
        assert str(from_canonical(100000, AmountUnit.MAJOR)) == "1000.00"

    def test_round_trip_through_both_units(self):
        for kobo in (1, 99, 100, 150050, 100000000):
            assert AmountNormalizer.to_canonical(from_canonical(kobo, AmountUnit.MAJOR), AmountUnit.MAJOR) == kobo

    def test_rejects_non_integer_kobo(self):
        with pytest.raises(ValidationError):
            from_canonical(Decimal("10.5"), AmountUnit.MAJOR)
        with pytest.raises(ValidationError):
            from_canonical(10.0, AmountUnit.MINOR)


def test_format_naira():
    assert format_naira(150050) == "₦1,500.50"
    assert format_naira(0) == "₦0.00"
