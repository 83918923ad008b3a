"""Tests for the read side of DimensionTable."""

from datetime import date

import pyarrow as pa
import pytest

from scdreplay import SENTINEL_DATE, NotFoundError

from .conftest import make_df


@pytest.fixture
def history(inventory, inventory_engine):
    """Three batches: entity 1 changes twice, entity 2 once, entity 3 never."""
    inventory_engine.apply("2025-03-01", make_df([
        {"entity_id": 1, "name": "Nuts", "quantity": 100},
        {"entity_id": 2, "name": "Bolts", "quantity": 50},
        {"entity_id": 3, "name": "Washers", "quantity": 10},
    ]))
    inventory_engine.apply("2025-03-10", make_df([
        {"entity_id": 1, "name": "Nuts", "quantity": 80},
        {"entity_id": 2, "name": "Bolts", "quantity": 50},
    ]))
    inventory_engine.apply("2025-03-20", make_df([
        {"entity_id": 1, "name": "Nuts", "quantity": 120},
        {"entity_id": 2, "name": "Bolts", "quantity": 45},
        {"entity_id": 3, "name": "Washers", "quantity": 10},
    ]))
    return inventory


class TestCurrentSnapshot:

    def test_one_row_per_entity(self, history):
        snapshot = history.current_snapshot()

        assert isinstance(snapshot, pa.Table)
        assert snapshot.column("entity_id").to_pylist() == [1, 2, 3]
        assert snapshot.column("quantity").to_pylist() == [120, 45, 10]
        assert set(snapshot.column("valid_to").to_pylist()) == {SENTINEL_DATE}

    def test_empty_store(self, inventory):
        assert inventory.current_snapshot().num_rows == 0


class TestTimeline:

    def test_ordered_by_effective_date(self, history):
        rows = history.timeline(1).to_pylist()

        assert [r["quantity"] for r in rows] == [100, 80, 120]
        assert [r["valid_from"] for r in rows] == [
            date(2025, 3, 1), date(2025, 3, 10), date(2025, 3, 20),
        ]
        assert [r["is_active"] for r in rows] == [False, False, True]

    def test_unknown_entity_is_empty(self, history):
        assert history.timeline(99).num_rows == 0

    def test_unknown_entity_strict(self, history):
        with pytest.raises(NotFoundError) as excinfo:
            history.timeline(99, strict=True)

        assert excinfo.value.entity_id == 99


class TestAsOf:

    @pytest.mark.parametrize("day, quantity", [
        ("2025-03-01", 100),
        ("2025-03-09", 100),
        ("2025-03-10", 80),
        ("2025-03-19", 80),
        ("2025-03-20", 120),
        (date(2026, 1, 1), 120),
    ])
    def test_point_in_time(self, history, day, quantity):
        assert history.as_of(1, day).column("quantity").to_pylist() == [quantity]

    def test_before_first_version(self, history):
        assert history.as_of(1, "2025-02-28").num_rows == 0

    def test_before_first_version_strict_is_not_an_error(self, history):
        """Known entity, date outside its history: empty, not NotFoundError."""
        assert history.as_of(1, "2025-02-28", strict=True).num_rows == 0

    def test_unknown_entity(self, history):
        assert history.as_of(99, "2025-03-15").num_rows == 0

        with pytest.raises(NotFoundError):
            history.as_of(99, "2025-03-15", strict=True)

    def test_bad_date(self, history):
        with pytest.raises(ValueError):
            history.as_of(1, "not-a-date")


class TestGetData:

    def test_snapshot_between_loads(self, history):
        snap = history.get_data("2025-03-15")

        assert snap.column_names == ["entity_id", "name", "quantity"]
        assert snap.to_pylist() == [
            {"entity_id": 1, "name": "Nuts", "quantity": 80},
            {"entity_id": 2, "name": "Bolts", "quantity": 50},
            {"entity_id": 3, "name": "Washers", "quantity": 10},
        ]


class TestChangeFrequency:

    def test_versions_per_entity(self, history):
        freq = history.change_frequency().to_pylist()

        assert freq == [
            {"entity_id": 1, "version_count": 3},
            {"entity_id": 2, "version_count": 2},
            {"entity_id": 3, "version_count": 1},
        ]
