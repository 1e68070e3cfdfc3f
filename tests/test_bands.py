"""
Confidence Band Tests
=====================

Nearest-label and range-label assignment against a confidence ladder.
"""

import pytest

from topic_sync.errors import InvalidLadder
from topic_sync.sync.bands import (
    DEFAULT_BAND,
    assign_band,
    assign_band_range,
    parse_ladder,
)

VALUES = ["10", "20", "30"]
PERCENTILES = ["10", "50", "90"]


class TestLadderBoundaries:
    """Measurements on and beyond the ends of the ladder."""

    @pytest.mark.parametrize("measurement,expected", [
        ("10", "10"),
        ("30", "90"),
        ("5", "10"),
        ("35", "90"),
    ])
    def test_ends_map_to_end_labels(self, measurement, expected):
        assert assign_band(measurement, VALUES, PERCENTILES) == expected
        assert assign_band_range(measurement, VALUES, PERCENTILES) == expected

    def test_inside_bracket_range_label(self):
        assert assign_band_range("15", VALUES, PERCENTILES) == "10~50"
        assert assign_band_range("25", VALUES, PERCENTILES) == "50~90"

    def test_interior_ladder_value_uses_first_bracket(self):
        """20 sits on both brackets; the ascending scan picks the first."""
        assert assign_band_range("20", VALUES, PERCENTILES) == "10~50"
        assert assign_band("20", VALUES, PERCENTILES) == "50"


class TestNearestLabel:
    """Single-label assignment inside a bracket."""

    def test_closer_endpoint_wins(self):
        assert assign_band("12", VALUES, PERCENTILES) == "10"
        assert assign_band("18", VALUES, PERCENTILES) == "50"
        assert assign_band("29.9", VALUES, PERCENTILES) == "90"

    def test_tie_goes_to_lower_index(self):
        assert assign_band("15", VALUES, PERCENTILES) == "10"
        assert assign_band("25", VALUES, PERCENTILES) == "50"

    def test_high_precision_decimals(self):
        values = ["0.000001", "0.000002"]
        assert assign_band("0.0000014", values, ["5", "95"]) == "5"
        assert assign_band("0.0000016", values, ["5", "95"]) == "95"

    def test_scientific_notation(self):
        assert assign_band("1.8e1", ["1e1", "2e1"], ["10", "50"]) == "50"


class TestDuplicateValues:
    """Repeated ladder values keep the first matching bracket."""

    def test_first_bracket_on_duplicates(self):
        values = ["10", "20", "20", "30"]
        percentiles = ["5", "25", "75", "95"]
        assert assign_band_range("20", values, percentiles) == "5~25"
        assert assign_band("20", values, percentiles) == "25"


class TestDegradedLadders:
    """Malformed input always yields the default label."""

    def test_empty_ladder(self):
        assert assign_band("15", [], []) == DEFAULT_BAND
        assert assign_band_range("15", [], []) == DEFAULT_BAND

    def test_length_mismatch(self):
        assert assign_band("15", VALUES, ["10", "50"]) == DEFAULT_BAND
        assert assign_band_range("15", ["10", "20"], PERCENTILES) == DEFAULT_BAND

    def test_unparseable_ladder_value(self):
        assert assign_band_range("15", ["10", "abc", "30"], PERCENTILES) == DEFAULT_BAND

    @pytest.mark.parametrize("measurement", ["", "n/a", "NaN", "Infinity"])
    def test_unparseable_measurement(self, measurement):
        assert assign_band(measurement, VALUES, PERCENTILES) == DEFAULT_BAND
        assert assign_band_range(measurement, VALUES, PERCENTILES) == DEFAULT_BAND

    def test_single_entry_ladder(self):
        assert assign_band("1", ["5"], ["50"]) == "50"
        assert assign_band_range("9", ["5"], ["70"]) == "70"


class TestDeterminism:

    def test_repeated_calls_agree(self):
        for measurement in ["1", "10", "14.99", "15", "22", "30", "99"]:
            first = assign_band_range(measurement, VALUES, PERCENTILES)
            assert all(
                assign_band_range(measurement, VALUES, PERCENTILES) == first
                for _ in range(5)
            )


class TestParseLadder:

    def test_returns_decimals(self):
        parsed = parse_ladder(VALUES, PERCENTILES)
        assert [str(v) for v in parsed] == VALUES

    @pytest.mark.parametrize("values,percentiles", [
        ([], []),
        (["1", "2"], ["50"]),
        (["1", "x"], ["10", "90"]),
        (["1", "inf"], ["10", "90"]),
    ])
    def test_invalid_ladders_raise(self, values, percentiles):
        with pytest.raises(InvalidLadder):
            parse_ladder(values, percentiles)
