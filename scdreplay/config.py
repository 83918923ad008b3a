"""Dimension configuration."""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Mapping

# Stored in valid_to for the active version of every entity.
SENTINEL_DATE = date(9999, 12, 31)

DEFAULT_TYPE = "VARCHAR"


class AbsencePolicy(str, Enum):
    IGNORE = "ignore"   # entities missing from a batch are left untouched
    EXPIRE = "expire"   # entities missing from a batch are expired on its load date


@dataclass
class DimensionConfig:
    """Layout and behaviour of one historized dimension table."""

    table: str
    keys: list[str] | dict[str, str]
    values: list[str] | dict[str, str]
    absence_policy: AbsencePolicy = AbsencePolicy.IGNORE
    date_column: str = "load_date"
    key_types: dict[str, str] = field(init=False)
    value_types: dict[str, str] = field(init=False)

    def __post_init__(self) -> None:
        self.key_types = _column_types(self.keys, "keys")
        self.value_types = _column_types(self.values, "values")
        self.keys = list(self.key_types)
        self.values = list(self.value_types)
        self.absence_policy = AbsencePolicy(self.absence_policy)

        overlap = set(self.keys) & set(self.values)
        if overlap:
            raise ValueError(f"Columns used as both key and value: {sorted(overlap)}")
        reserved = {"valid_from", "valid_to", "is_active"} & set(self.all_cols)
        if reserved:
            raise ValueError(f"Reserved column names: {sorted(reserved)}")

    @property
    def all_cols(self) -> list[str]:
        return self.keys + self.values

    @property
    def column_types(self) -> dict[str, str]:
        return {**self.key_types, **self.value_types}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DimensionConfig":
        """Build a config from a plain mapping, e.g. a parsed TOML table."""
        unknown = set(data) - {"table", "keys", "values", "absence_policy", "date_column"}
        if unknown:
            raise ValueError(f"Unknown config options: {sorted(unknown)}")
        return cls(
            table=data["table"],
            keys=data["keys"],
            values=data["values"],
            absence_policy=data.get("absence_policy", AbsencePolicy.IGNORE),
            date_column=data.get("date_column", "load_date"),
        )


def _column_types(columns: list[str] | Mapping[str, str], what: str) -> dict[str, str]:
    if isinstance(columns, str):
        raise TypeError(f"{what} must be a list or mapping of column names, not a string")
    if isinstance(columns, Mapping):
        types = {str(name): str(sql_type).upper() for name, sql_type in columns.items()}
    else:
        types = {str(name): DEFAULT_TYPE for name in columns}
    if not types:
        raise ValueError(f"At least one column is required in {what}")
    return types
