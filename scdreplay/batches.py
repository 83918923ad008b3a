"""
Batch grouping and ordering.

A batch is "the world as observed on one load date". ``BatchSequence`` turns
an unordered pile of dated records into batches in ascending load_date order,
merging every record that shares a date into a single batch.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable, Iterator, Mapping

import pandas as pd
import polars as pl
import pyarrow as pa

from .config import DimensionConfig
from .errors import OrderingError
from .frames import DataFrameLike, normalize_columns, to_arrow, to_date

logger = logging.getLogger(__name__)


@dataclass
class Batch:
    """Records for a single load date."""

    load_date: date
    table: pa.Table

    def __post_init__(self) -> None:
        self.load_date = to_date(self.load_date)

    @classmethod
    def from_frame(cls, load_date: str | date, df: DataFrameLike) -> "Batch":
        return cls(to_date(load_date), to_arrow(df))

    @classmethod
    def from_records(cls, load_date: str | date, records: Iterable[Mapping[str, Any]]) -> "Batch":
        return cls(to_date(load_date), pa.Table.from_pylist([dict(r) for r in records]))

    @property
    def num_rows(self) -> int:
        return self.table.num_rows


class BatchSequence:
    """Lazy, restartable sequence of batches ordered by load date.

    Batches are built on demand from the grouped source, so iterating twice
    yields the same batches. Records sharing a load date are merged; exact
    duplicates collapse, but differing attributes for one key on one date
    make that date's batch unusable and ``batch_for`` raises ``OrderingError``.
    """

    def __init__(
        self,
        source: DataFrameLike | Iterable[Mapping[str, Any]],
        keys: list[str],
        values: list[str],
        date_column: str = "load_date",
    ):
        self.keys = list(keys)
        self.values = list(values)
        self.date_column = date_column

        frame = self._load(source)
        self._frame = frame.sort(date_column, maintain_order=True)
        self._load_dates: list[date] = (
            self._frame.get_column(date_column).unique().sort().to_list()
        )

    @classmethod
    def from_config(
        cls, source: DataFrameLike | Iterable[Mapping[str, Any]], config: DimensionConfig
    ) -> "BatchSequence":
        return cls(source, config.keys, config.values, date_column=config.date_column)

    def _load(self, source) -> pl.DataFrame:
        columns = [self.date_column] + self.keys + self.values
        if isinstance(source, (pd.DataFrame, pl.DataFrame, pa.Table)):
            table = to_arrow(source)
        else:
            records = [dict(r) for r in source]
            if not records:
                return pl.DataFrame({c: [] for c in columns}).with_columns(
                    pl.col(self.date_column).cast(pl.Date)
                )
            table = pa.Table.from_pylist(records)

        frame = pl.from_arrow(normalize_columns(table, columns))
        try:
            frame = frame.with_columns(self._date_expr(frame.schema[self.date_column]))
        except pl.exceptions.PolarsError as exc:
            raise ValueError(f"Invalid date in {self.date_column}: {exc}") from exc
        if frame.get_column(self.date_column).null_count() > 0:
            raise ValueError(f"Missing date in {self.date_column}")
        return frame

    def _date_expr(self, dtype) -> pl.Expr:
        col = pl.col(self.date_column)
        if dtype == pl.Date:
            return col
        if dtype == pl.Datetime:
            return col.dt.date()
        if dtype == pl.Utf8:
            return col.str.slice(0, 10).str.to_date("%Y-%m-%d")
        if dtype == pl.Null:
            return col.cast(pl.Date)
        raise TypeError(f"Unsupported type for {self.date_column}: {dtype}")

    @property
    def load_dates(self) -> list[date]:
        return list(self._load_dates)

    def __len__(self) -> int:
        return len(self._load_dates)

    def __iter__(self) -> Iterator[Batch]:
        for load_date in self._load_dates:
            yield self.batch_for(load_date)

    def batch_for(self, load_date: str | date) -> Batch:
        """Build the merged batch for one load date."""
        load_date = to_date(load_date)
        if load_date not in self._load_dates:
            raise KeyError(f"No records for load date {load_date}")

        part = (
            self._frame.filter(pl.col(self.date_column) == load_date)
            .drop(self.date_column)
            .unique(maintain_order=True)
        )
        conflicts = (
            part.group_by(self.keys, maintain_order=True)
            .len()
            .filter(pl.col("len") > 1)
        )
        if conflicts.height > 0:
            keys = conflicts.select(self.keys).rows()
            raise OrderingError(
                f"Records dated {load_date} cannot be merged: "
                f"conflicting attributes for key(s) {keys}",
                load_date=load_date,
            )

        logger.debug("Built batch %s with %d rows", load_date, part.height)
        return Batch(load_date, part.to_arrow())
