"""
Tests for rating normalization and CSV row parsing.
"""

import pytest

from safety_ratings.core.exceptions import CsvImportException
from safety_ratings.services.csv_importer import CsvFailureReason, map_columns, parse_row, parse_star
from safety_ratings.services.nhtsa_client import normalize_rating, parse_result
from safety_ratings.services.records import RatingSource


class TestNormalizeRating:
    """Tests for provider rating normalization."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("5", 5.0),
            ("2.5", 2.5),
            (4, 4.0),
            ("Not Rated", None),
            ("", None),
            (None, None),
            ("0", None),
            ("6", None),
            ("-1", None),
            ("abc", None),
            (True, None),
        ],
    )
    def test_normalize_rating(self, value, expected):
        """Test that every provider value maps to a star value or None."""
        assert normalize_rating(value) == expected

    def test_parse_result_maps_provider_fields(self):
        """Test that a provider result becomes an API-sourced record."""
        record = parse_result(
            {
                "OverallRating": "5",
                "OverallFrontCrashRating": "4",
                "OverallSideCrashRating": "Not Rated",
                "RolloverRating": "4",
                "VehicleId": "17001",
                "VehiclePicture": "https://static.nhtsa.gov/images/civic.jpg",
                "VehicleDescription": "2020 Honda Civic 4 DR FWD",
                "ModelYear": 2020,
            },
            2020,
            "Honda",
            "Civic",
        )

        assert record.overall_rating == 5.0
        assert record.front_crash == 4.0
        assert record.side_crash is None
        assert record.rollover == 4.0
        assert record.vehicle_id == 17001
        assert record.description == "2020 Honda Civic 4 DR FWD"
        assert record.source == RatingSource.API
        assert record.has_rating is True

    def test_parse_result_without_ratings(self):
        """Test that an all-unrated result has no overall rating."""
        record = parse_result({"OverallRating": "Not Rated"}, 2021, "Ford", "Bronco")

        assert record.overall_rating is None
        assert record.has_rating is False
        assert record.year == 2021


class TestParseStar:
    """Tests for CSV star parsing."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("5", 5.0),
            ("4.5", 4.5),
            (" 3 ", 3.0),
            ("", None),
            ("Not Rated", None),
            ("0", None),
            ("6", None),
            ("4.55", None),
            (None, None),
        ],
    )
    def test_parse_star(self, value, expected):
        """Test star values in [1, 5] with at most one decimal."""
        assert parse_star(value) == expected


class TestColumnMapping:
    """Tests for CSV header mapping."""

    def test_safercar_headers(self):
        """Test that the standard Safercar headers are mapped."""
        mapping = map_columns(
            ["MAKE", "MODEL", "MODEL_YR", "BODY_STYLE", "OVERALL_STARS", "FRNT_STARS", "SIDE_STARS", "ROLLOVER_STARS"]
        )

        assert mapping == {
            "make": 0,
            "model": 1,
            "year": 2,
            "overall_rating": 4,
            "front_crash": 5,
            "side_crash": 6,
            "rollover": 7,
        }

    def test_alternate_headers(self):
        """Test headers spelled out in words."""
        mapping = map_columns(["Model Year", "Make", "Model", "Overall Rating", "Front Crash", "Side Crash"])

        assert mapping["year"] == 0
        assert mapping["make"] == 1
        assert mapping["model"] == 2
        assert mapping["overall_rating"] == 3
        assert mapping["front_crash"] == 4
        assert mapping["side_crash"] == 5
        assert "rollover" not in mapping

    def test_side_barrier_column_ignored(self):
        """Test that side barrier star columns do not claim the side crash field."""
        mapping = map_columns(["MAKE", "MODEL", "MODEL_YR", "OVERALL_STARS", "SIDE_BARRIER_STAR"])

        assert "side_crash" not in mapping

    def test_missing_required_column(self):
        """Test that a file without an overall column is rejected."""
        with pytest.raises(CsvImportException) as exc_info:
            map_columns(["MAKE", "MODEL", "MODEL_YR", "FRNT_STARS"])

        assert exc_info.value.reason == CsvFailureReason.MISSING_REQUIRED_COLUMNS
        assert "overall_rating" in exc_info.value.message


class TestParseRow:
    """Tests for CSV data row parsing."""

    MAPPING = {"make": 0, "model": 1, "year": 2, "overall_rating": 3, "front_crash": 4}

    def test_complete_row(self):
        """Test that a complete row yields upsert arguments."""
        data = parse_row(["Honda", "Civic", "2020", "5", "4"], self.MAPPING)

        assert data == {
            "year": 2020,
            "make": "Honda",
            "model": "Civic",
            "fields": {"overall_rating": 5.0, "front_crash": 4.0, "side_crash": None, "rollover": None},
        }

    def test_blank_rating_kept_as_none(self):
        """Test that blank ratings still produce a row."""
        data = parse_row(["Toyota", "Camry", "2021", "", ""], self.MAPPING)

        assert data is not None
        assert data["fields"]["overall_rating"] is None

    @pytest.mark.parametrize(
        "row",
        [
            ["", "Civic", "2020", "5", "4"],
            ["Honda", "", "2020", "5", "4"],
            ["Honda", "Civic", "", "5", "4"],
            ["Honda", "Civic", "n/a", "5", "4"],
            ["Honda"],
        ],
    )
    def test_missing_identity(self, row):
        """Test that rows without year, make or model are dropped."""
        assert parse_row(row, self.MAPPING) is None
