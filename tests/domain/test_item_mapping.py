"""Unit tests for the lab item mapping."""

import json

import pytest

from clinisync.domain.item_mapping import LabItemMapping, column_name_for
from clinisync.domain.ports import ConfigurationError


class TestLabItemMapping:
    """Test loading the mapping and deriving wide-table columns."""

    def test_metadata_keys_are_ignored(self):
        """Test that underscore-prefixed keys are skipped at every level."""
        mapping = LabItemMapping.from_dict({
            "_comment": "metadata",
            "DM": {"items": {"_note": {"hitem_code": "X"}, "HBA1C": {"hitem_code": "09006C"}}},
        })
        assert mapping.categories == ["DM"]
        assert [item.key for item in mapping.tracked_items()] == ["HBA1C"]

    def test_value_columns_have_value_and_date_pairs(self):
        """Test that each item yields a typed value column and a date column."""
        mapping = LabItemMapping.from_dict({
            "DM": {"items": {"HBA1C": {"hitem_code": "09006C"}}},
            "VIRUS": {"value_type": "text", "items": {"HBsAg": {"hitem_code": "14032C"}}},
        })
        assert mapping.value_columns() == {
            "hba1c": "DOUBLE",
            "hba1c_date": "VARCHAR",
            "hbsag": "VARCHAR",
            "hbsag_date": "VARCHAR",
        }

    def test_item_codes_are_distinct(self):
        """Test that a code tracked twice is requested once."""
        mapping = LabItemMapping.from_dict({
            "A": {"items": {"X1": {"hitem_code": "09001C"}}},
            "B": {"items": {"X2": {"hitem_code": "09001C"}}},
        })
        assert mapping.item_codes() == ["09001C"]

    def test_duplicate_columns_are_rejected(self):
        """Test that two items deriving the same column raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            LabItemMapping.from_dict({
                "A": {"items": {"ldl": {"hitem_code": "1"}, "LDL": {"hitem_code": "2"}}},
            })

    @pytest.mark.parametrize("items", [
        {"X": {"hitem_code": "1"}, "X_date": {"hitem_code": "2"}},
        {"X_date": {"hitem_code": "2"}, "X": {"hitem_code": "1"}},
        {"X": {"hitem_code": "1"}, "Y": {"hitem_code": "2", "column": "x_date"}},
    ])
    def test_value_column_cannot_shadow_a_date_column(self, items):
        """Test that an item whose value column is another item's date column is rejected."""
        with pytest.raises(ConfigurationError, match="x_date"):
            LabItemMapping.from_dict({"DM": {"items": items}})

    def test_default_mapping(self):
        """Test the built-in mapping tracks the glycemic item."""
        mapping = LabItemMapping.default()
        item = mapping.find("HBA1C")
        assert item.source_code == "09006C"
        assert item.column == "hba1c"
        assert item.date_column == "hba1c_date"
        assert mapping.find("AntiHCV").numeric is False

    def test_from_file(self, tmp_path):
        """Test loading the mapping from a JSON file."""
        path = tmp_path / "items.json"
        path.write_text(json.dumps({"DM": {"items": {"HBA1C": {"hitem_code": "09006C"}}}}), encoding="utf-8")
        assert LabItemMapping.from_file(path).item_codes() == ["09006C"]

    def test_from_file_missing_or_invalid(self, tmp_path):
        """Test that a missing or invalid file raises ConfigurationError."""
        with pytest.raises(ConfigurationError):
            LabItemMapping.from_file(tmp_path / "missing.json")
        bad = tmp_path / "bad.json"
        bad.write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            LabItemMapping.from_file(bad)

    def test_column_name_for(self):
        """Test SQL-safe column name derivation."""
        assert column_name_for("eGFR") == "egfr"
        assert column_name_for("Anti-HCV") == "anti_hcv"
