"""Shared pytest fixtures for scdreplay tests."""

import pandas as pd
import polars as pl
import pyarrow as pa
import pytest

from scdreplay import DimensionTable, ReplayEngine


@pytest.fixture
def tmp_db(tmp_path):
    """Provide a temporary database path."""
    return tmp_path / "test.duckdb"


@pytest.fixture
def dim_table(tmp_db):
    """Provide a DimensionTable with simple VARCHAR schema."""
    with DimensionTable(
        tmp_db,
        table="items",
        keys=["id"],
        values=["name", "price"],
    ) as db:
        yield db


@pytest.fixture
def engine(dim_table):
    """Provide a ReplayEngine writing to ``dim_table``."""
    return ReplayEngine(dim_table)


@pytest.fixture
def inventory(tmp_db):
    """Provide a typed inventory dimension keyed by integer entity_id."""
    with DimensionTable(
        tmp_db,
        table="inventory",
        keys={"entity_id": "INTEGER"},
        values={"name": "VARCHAR", "quantity": "INTEGER"},
    ) as db:
        yield db


@pytest.fixture
def inventory_engine(inventory):
    return ReplayEngine(inventory)


@pytest.fixture
def expiring_table(tmp_db):
    """Provide a DimensionTable that expires entities missing from a batch."""
    with DimensionTable(
        tmp_db,
        table="items",
        keys=["id"],
        values=["name", "price"],
        absence_policy="expire",
    ) as db:
        yield db


@pytest.fixture
def multi_key_table(tmp_db):
    """Provide a DimensionTable with composite key."""
    with DimensionTable(
        tmp_db,
        table="products",
        keys=["category", "product_id"],
        values=["name", "price"],
    ) as db:
        yield db


def make_df(data: list[dict]) -> pd.DataFrame:
    """Create a pandas DataFrame from list of dicts."""
    return pd.DataFrame(data)


def make_polars_df(data: list[dict]) -> pl.DataFrame:
    """Create a polars DataFrame from list of dicts."""
    return pl.DataFrame(data)


def make_arrow_table(data: list[dict]) -> pa.Table:
    """Create a pyarrow Table from list of dicts."""
    return pa.Table.from_pylist(data)
