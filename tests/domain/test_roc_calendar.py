"""Unit tests for ROC calendar conversion and arithmetic."""

from datetime import date

import pytest

from clinisync.domain import roc_calendar


class TestConversion:
    """Test encoding and decoding of 7-digit ROC and 8-digit Gregorian dates."""

    def test_to_roc_encodes_seven_digits(self):
        """Test that a Gregorian date is encoded as YYYMMDD."""
        assert roc_calendar.to_roc(2024, 3, 5) == "1130305"
        assert roc_calendar.to_roc(1990, 6, 15) == "0790615"

    def test_to_gregorian_accepts_both_encodings(self):
        """Test that both encodings decode to the same date."""
        assert roc_calendar.to_gregorian("1130305") == (2024, 3, 5)
        assert roc_calendar.to_gregorian("20240305") == (2024, 3, 5)
        assert roc_calendar.to_gregorian(" 1130305 ") == (2024, 3, 5)

    @pytest.mark.parametrize("value", [
        (2024, 3, 5),
        (2024, 2, 29),
        (1990, 12, 31),
        (2000, 1, 1),
    ])
    def test_round_trip(self, value):
        """Test that toGregorian(toRoc(d)) returns the original date."""
        assert roc_calendar.to_gregorian(roc_calendar.to_roc(*value)) == value

    def test_normalize_converts_gregorian_to_roc(self):
        """Test that normalize yields the ROC form of either encoding."""
        assert roc_calendar.normalize("20240305") == "1130305"
        assert roc_calendar.normalize("1130305") == "1130305"

    @pytest.mark.parametrize("value", [
        None, "", "   ", "abc", "11303", "113030512", "1130230", "1131301", "20230229", "22010101",
    ])
    def test_malformed_dates_return_none(self, value):
        """Test that malformed dates never raise."""
        assert roc_calendar.to_gregorian(value) is None
        assert roc_calendar.normalize(value) is None
        assert roc_calendar.add_days(value, 1) is None

    def test_to_roc_rejects_impossible_and_out_of_range_dates(self):
        """Test that invalid calendar dates and years outside the range yield None."""
        assert roc_calendar.to_roc(2023, 2, 29) is None
        assert roc_calendar.to_roc(2101, 1, 1) is None
        assert roc_calendar.to_roc(1911, 12, 31) is None

    def test_fixed_width_dates_order_as_strings(self):
        """Test that string comparison matches chronological order."""
        earlier = roc_calendar.normalize("20201231")
        later = roc_calendar.normalize("1100101")
        assert earlier < later


class TestArithmetic:
    """Test day and month arithmetic on ROC-encoded dates."""

    def test_add_days_non_leap_year(self):
        """Test adding 71 days across February of a common year."""
        assert roc_calendar.add_days("1120101", 71) == "1120313"

    def test_add_days_leap_year(self):
        """Test adding 71 days across February of a leap year."""
        assert roc_calendar.add_days("1130101", 71) == "1130312"

    def test_add_days_crosses_year(self):
        """Test that adding days rolls over the year."""
        assert roc_calendar.add_days("1131231", 1) == "1140101"
        assert roc_calendar.add_days("1140101", -1) == "1131231"

    def test_add_days_accepts_gregorian_input(self):
        """Test that an 8-digit input produces a ROC output."""
        assert roc_calendar.add_days("20240101", 1) == "1130102"

    def test_add_months_clamps_day(self):
        """Test that the day is clamped to the length of the target month."""
        assert roc_calendar.add_months("1130131", 1) == "1130229"
        assert roc_calendar.add_months("1121130", 3) == "1130229"
        assert roc_calendar.add_months("1130831", -6) == "1130229"

    def test_add_months_crosses_year(self):
        """Test that months roll over into the next year."""
        assert roc_calendar.add_months("1130815", 6) == "1140215"

    def test_years_before_clamps_leap_day(self):
        """Test that Feb 29 maps to Feb 28 in a common year."""
        assert roc_calendar.years_before(date(2024, 2, 29), 1) == "1120228"
        assert roc_calendar.years_before(date(2025, 11, 15), 5) == "1091115"

    def test_today_roc(self):
        """Test the ROC encoding of a given day."""
        assert roc_calendar.today_roc(date(2025, 11, 15)) == "1141115"


class TestDisplayAndAge:
    """Test display formatting and calendar-year age."""

    def test_format_display(self):
        """Test YYY/MM/DD formatting of either encoding."""
        assert roc_calendar.format_display("20240305") == "113/03/05"
        assert roc_calendar.format_display("bad") is None

    def test_format_birth_date(self):
        """Test the combined ROC and Gregorian birth date display."""
        assert roc_calendar.format_birth_date("0790615") == "079/06/15 (1990/06/15)"
        assert roc_calendar.format_birth_date("") is None

    def test_calculate_age_uses_calendar_years(self):
        """Test that age ignores the birthday within the year."""
        today = date(2025, 1, 2)
        assert roc_calendar.calculate_age("0791231", today) == 35
        assert roc_calendar.calculate_age("19901231", today) == 35

    def test_calculate_age_malformed(self):
        """Test that malformed or future birth dates yield None."""
        today = date(2025, 1, 2)
        assert roc_calendar.calculate_age("bad", today) is None
        assert roc_calendar.calculate_age("1150101", today) is None
