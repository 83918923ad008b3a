"""Input frame handling shared by batches and the replay engine."""

from datetime import date, datetime

import pandas as pd
import polars as pl
import pyarrow as pa


DataFrameLike = pd.DataFrame | pl.DataFrame | pa.Table


def to_arrow(df: DataFrameLike) -> pa.Table:
    """Convert any supported DataFrame type to PyArrow Table."""
    if isinstance(df, pa.Table):
        return df
    if isinstance(df, pd.DataFrame):
        return pa.Table.from_pandas(df, preserve_index=False)
    if isinstance(df, pl.DataFrame):
        return df.to_arrow()
    raise TypeError(f"Unsupported DataFrame type: {type(df)}")


def normalize_name(name: str) -> str:
    return name.lower().replace("-", "").replace("_", "")


def normalize_columns(table: pa.Table, columns: list[str]) -> pa.Table:
    """Select ``columns`` from ``table``, matching names loosely.

    Case, dashes and underscores are ignored, so ``PRODUCT-ID`` feeds
    ``product_id``. Extra input columns are dropped.
    """
    col_map = {normalize_name(c): c for c in table.column_names}
    arrays = []
    missing = []
    for schema_col in columns:
        actual_col = col_map.get(normalize_name(schema_col))
        if actual_col is None:
            missing.append(schema_col)
        else:
            arrays.append(table.column(actual_col))
    if missing:
        raise ValueError(f"Input is missing columns: {missing}")
    return pa.table(dict(zip(columns, arrays)))


def empty_table(columns: list[str]) -> pa.Table:
    """Zero-row table with the given columns."""
    return pa.table({c: pa.array([], type=pa.string()) for c in columns})


def to_date(value: str | date | datetime) -> date:
    """Coerce a load date given as ISO string, date or datetime."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            raise ValueError(f"Invalid date: {value!r}") from None
    raise TypeError(f"Unsupported date type: {type(value)}")
