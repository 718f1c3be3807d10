"""Lab Item Mapping.

Maps tracked lab items to the legacy item codes they are recorded under:

    {
        "_comment": "keys starting with an underscore are metadata",
        "DM": {"items": {"HBA1C": {"hitem_code": "09006C"}}},
        "VIRUS": {"value_type": "text", "items": {"HBsAg": {"hitem_code": "14032C"}}}
    }

The materializer derives one value/date column pair per item from this mapping,
and the eligibility engine resolves threshold items through it.
"""

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from clinisync.domain.ports import ConfigurationError

logger = logging.getLogger(__name__)

ValueType = Literal["numeric", "text"]

_COLUMN_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")


def column_name_for(key: str) -> str:
    """Derive a SQL-safe column name from an item key (``AntiHCV`` -> ``antihcv``)."""
    return re.sub(r"[^a-z0-9_]", "_", key.strip().lower())


class LabItem(BaseModel):
    hitem_code: str = Field(..., min_length=1, description="Legacy lab item code")
    column: Optional[str] = Field(None, description="Explicit wide-table column name")
    value_type: Optional[ValueType] = Field(None, description="Overrides the category value type")

    @field_validator("column")
    @classmethod
    def validate_column(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not _COLUMN_PATTERN.match(v):
            raise ValueError(f"Invalid column name: {v}")
        return v


class LabCategory(BaseModel):
    value_type: ValueType = "numeric"
    items: dict[str, LabItem] = Field(default_factory=dict)


@dataclass(frozen=True)
class TrackedItem:
    """One tracked item with its derived wide-table columns."""

    category: str
    key: str
    source_code: str
    column: str
    numeric: bool

    @property
    def date_column(self) -> str:
        return f"{self.column}_date"


class LabItemMapping:
    """Read-only view over the category -> items -> source code mapping.

    Example Usage:
        ```python
        mapping = LabItemMapping.from_file("config/lab_codes.json")
        mapping.item_codes()      # ['09006C', ...]
        mapping.value_columns()   # {'hba1c': 'DOUBLE', 'hba1c_date': 'VARCHAR', ...}
        ```
    """

    def __init__(self, categories: dict[str, LabCategory]):
        self._categories = categories
        self._tracked = self._build_tracked()

    @classmethod
    def from_dict(cls, data: dict) -> 'LabItemMapping':
        categories = {}
        for name, body in data.items():
            if name.startswith("_"):
                continue
            if not isinstance(body, dict):
                raise ConfigurationError(f"Lab category '{name}' must be an object")
            items = {k: v for k, v in body.get("items", {}).items() if not k.startswith("_")}
            categories[name] = LabCategory(
                value_type=body.get("value_type", "numeric"),
                items=items,
            )
        return cls(categories)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'LabItemMapping':
        mapping_file = Path(path)
        if not mapping_file.exists():
            raise ConfigurationError(f"Lab item mapping not found: {path}")
        try:
            with open(mapping_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in lab item mapping: {str(e)}")
        mapping = cls.from_dict(data)
        logger.info(f"Loaded lab item mapping from {path}: {len(mapping.tracked_items())} items")
        return mapping

    @classmethod
    def default(cls) -> 'LabItemMapping':
        return cls.from_dict(DEFAULT_ITEM_MAP)

    def _build_tracked(self) -> list[TrackedItem]:
        tracked = []
        seen_columns: dict[str, str] = {}
        for category_name, category in self._categories.items():
            for key, item in category.items.items():
                column = item.column or column_name_for(key)
                # Each item owns its value column and its ``_date`` column.
                for owned in (column, f"{column}_date"):
                    if owned in seen_columns:
                        raise ConfigurationError(
                            f"Lab items '{seen_columns[owned]}' and '{key}' map to the same column '{owned}'"
                        )
                    seen_columns[owned] = key
                value_type = item.value_type or category.value_type
                tracked.append(TrackedItem(
                    category=category_name,
                    key=key,
                    source_code=item.hitem_code.strip(),
                    column=column,
                    numeric=value_type == "numeric",
                ))
        return tracked

    @property
    def categories(self) -> list[str]:
        return list(self._categories)

    def tracked_items(self) -> list[TrackedItem]:
        return list(self._tracked)

    def item_codes(self) -> list[str]:
        """Distinct source item codes, in mapping order."""
        return list(dict.fromkeys(item.source_code for item in self._tracked))

    def find(self, key: str) -> Optional[TrackedItem]:
        for item in self._tracked:
            if item.key == key:
                return item
        return None

    def value_columns(self) -> dict[str, str]:
        """Wide-table columns with their SQL types."""
        columns = {}
        for item in self._tracked:
            columns[item.column] = "DOUBLE" if item.numeric else "VARCHAR"
            columns[item.date_column] = "VARCHAR"
        return columns


DEFAULT_ITEM_MAP = {
    "_comment": "Legacy lab item codes tracked in the wide view",
    "DM": {
        "items": {
            "HBA1C": {"hitem_code": "09006C"},
            "UACR": {"hitem_code": "12111C"},
            "eGFR": {"hitem_code": "09015C"},
        }
    },
    "HTN_LIP": {
        "items": {
            "CHOL": {"hitem_code": "09001C"},
            "LDL": {"hitem_code": "09044C", "column": "ldl_c"},
            "TG": {"hitem_code": "09004C"},
            "BMI": {"hitem_code": "BMI"},
        }
    },
    "VIRUS": {
        "value_type": "text",
        "items": {
            "AntiHCV": {"hitem_code": "14051C", "column": "anti_hcv"},
            "HBsAg": {"hitem_code": "14032C"},
        }
    },
}
