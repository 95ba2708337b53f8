import pytest

from wallet.amounts import format_units, parse_units


class TestFormatUnits:
    """
    Unit tests for base unit formatting.
    """

    def test_whole_amount_shows_two_places(self):
        assert format_units(10_000_000, 6) == "10.00"

    def test_sub_cent_digits_are_kept(self):
        assert format_units(1_234_567, 6) == "1.234567"
        assert format_units(1_500_000, 6) == "1.50"
        assert format_units(1_050_000, 6) == "1.05"

    def test_zero_and_smallest_unit(self):
        assert format_units(0, 6) == "0.00"
        assert format_units(1, 6) == "0.000001"

    def test_zero_decimals(self):
        assert format_units(42, 0) == "42.00"

    def test_negative_decimals_rejected(self):
        with pytest.raises(ValueError):
            format_units(1, -1)


class TestParseUnits:
    """
    Unit tests for decimal string parsing.
    """

    @pytest.mark.parametrize("raw", [0, 1, 99, 10_000_000, 1_234_567, 123_456_789_012])
    def test_formatted_amount_parses_back(self, raw: int):
        assert parse_units(format_units(raw, 6), 6) == raw

    def test_parses_without_fraction(self):
        assert parse_units("25", 6) == 25_000_000

    def test_trailing_zeros_beyond_precision_allowed(self):
        assert parse_units("1.5000000", 6) == 1_500_000

    def test_too_precise_rejected(self):
        with pytest.raises(ValueError):
            parse_units("0.0000001", 6)

    @pytest.mark.parametrize("text", ["", "abc", "1.2.3", "1,5", "0x10"])
    def test_malformed_rejected(self, text: str):
        with pytest.raises(ValueError):
            parse_units(text, 6)
