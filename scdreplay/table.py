"""
Historized dimension table with a DuckDB backend.

- valid_from: inclusive (>=), the load date the version became effective
- valid_to: exclusive (<), SENTINEL_DATE means current
- is_active: true iff valid_to is SENTINEL_DATE
- one row per applied load date in <table>_load_log
"""

import logging
import threading
from datetime import date
from pathlib import Path
from typing import Any, Mapping

import duckdb
import pyarrow as pa

from .config import SENTINEL_DATE, AbsencePolicy, DimensionConfig
from .errors import InvariantViolationError, NotFoundError
from .frames import to_date

logger = logging.getLogger(__name__)

SENTINEL_SQL = f"DATE '{SENTINEL_DATE.isoformat()}'"


class DimensionTable:
    """SCD Type 2 dimension table stored in DuckDB.

    Mutations go through ``ReplayEngine``; this class owns the schema and the
    read side. Reads run on their own cursor and only see committed batches.
    """

    def __init__(
        self,
        db_path: str | Path,
        table: str,
        keys: list[str] | dict[str, str],
        values: list[str] | dict[str, str],
        absence_policy: AbsencePolicy | str = AbsencePolicy.IGNORE,
        date_column: str = "load_date",
    ):
        self.config = DimensionConfig(
            table=table,
            keys=keys,
            values=values,
            absence_policy=absence_policy,
            date_column=date_column,
        )
        self.db_path = Path(db_path)
        self.table = self.config.table
        self.keys = self.config.keys
        self.values = self.config.values
        self.all_cols = self.config.all_cols
        self.load_log = f"{self.table}_load_log"

        self.conn = duckdb.connect(str(self.db_path))
        # Shared by every ReplayEngine writing to this table
        self.write_lock = threading.Lock()
        self._init_schema()

        # Pre-compute SQL fragments used by the engine and the queries
        self.sql = self._build_sql_fragments()

    @classmethod
    def from_config(cls, db_path: str | Path, config: DimensionConfig) -> "DimensionTable":
        return cls(
            db_path,
            table=config.table,
            keys=config.key_types,
            values=config.value_types,
            absence_policy=config.absence_policy,
            date_column=config.date_column,
        )

    @property
    def absence_policy(self) -> AbsencePolicy:
        return self.config.absence_policy

    def _build_sql_fragments(self) -> dict[str, str]:
        """Pre-compute reusable SQL fragments."""
        keys, values, all_cols = self.keys, self.values, self.all_cols
        types = self.config.column_types
        return {
            "cols": ", ".join(all_cols),
            "keys": ", ".join(keys),
            "version_cols": ", ".join(all_cols + ["valid_from", "valid_to", "is_active"]),
            "b_col_aliases": ", ".join(f"b.{c} AS i_{c}" for c in all_cols),
            "v_value_aliases": ", ".join(f"v.{c} AS cur_{c}" for c in values),
            "select_i_cols": ", ".join(f"i_{c}" for c in all_cols),
            "v_keys": ", ".join(f"v.{k}" for k in keys),
            # Join conditions
            "key_join_b_v": " AND ".join(f"b.{k} = v.{k}" for k in keys),
            "key_join_v_c": " AND ".join(f"v.{k} = c.i_{k}" for k in keys),
            "key_params": " AND ".join(
                f"{k} = CAST(? AS {types[k]})" for k in keys
            ),
            # NULL-safe value comparison
            "same_values": " AND ".join(
                f"i_{c} IS NOT DISTINCT FROM cur_{c}" for c in values
            ),
        }

    def cast_columns(self, schema: pa.Schema) -> str:
        """SELECT list casting incoming columns to the declared types.

        Floats headed for VARCHAR keep their integer spelling when they hold
        whole numbers, so 16.0 from a pandas column upcast by a missing
        value compares equal to a stored '16'.
        """
        types = self.config.column_types
        exprs = []
        for c in self.all_cols:
            if types[c] == "VARCHAR" and pa.types.is_floating(schema.field(c).type):
                exprs.append(
                    f"CASE WHEN isfinite(i.{c}) AND i.{c} = trunc(i.{c}) AND abs(i.{c}) < 1e18 "
                    f"THEN CAST(CAST(i.{c} AS BIGINT) AS VARCHAR) "
                    f"ELSE CAST(i.{c} AS VARCHAR) END AS {c}"
                )
            else:
                exprs.append(f"CAST(i.{c} AS {types[c]}) AS {c}")
        return ", ".join(exprs)

    def _init_schema(self) -> None:
        """Create dimension table and load log if they don't exist."""
        types = self.config.column_types
        key_defs = ", ".join(f"{col} {types[col]} NOT NULL" for col in self.keys)
        value_defs = ", ".join(f"{col} {types[col]}" for col in self.values)
        pk_cols = ", ".join(self.keys)

        self.conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                {key_defs}, {value_defs},
                valid_from DATE NOT NULL,
                valid_to DATE NOT NULL DEFAULT {SENTINEL_SQL},
                is_active BOOLEAN NOT NULL,
                PRIMARY KEY ({pk_cols}, valid_from)
            )
        """)
        self.conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.load_log} (
                load_date DATE PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                row_count INTEGER,
                rows_inserted INTEGER,
                rows_expired INTEGER
            )
        """)
        logger.debug("Initialized dimension table %s in %s", self.table, self.db_path)

    def _key_values(self, entity_id: Any) -> list:
        """Map an entity id (scalar, tuple or mapping) onto the key columns."""
        if isinstance(entity_id, Mapping):
            missing = [k for k in self.keys if k not in entity_id]
            if missing:
                raise ValueError(f"Entity id is missing key columns: {missing}")
            return [entity_id[k] for k in self.keys]
        if isinstance(entity_id, (tuple, list)):
            if len(entity_id) != len(self.keys):
                raise ValueError(
                    f"Entity id {entity_id!r} does not match keys {self.keys}"
                )
            return list(entity_id)
        if len(self.keys) != 1:
            raise ValueError(f"Composite key {self.keys} needs a tuple or mapping entity id")
        return [entity_id]

    def _query(self, query: str, params: list | None = None) -> pa.Table:
        with self.conn.cursor() as cur:
            return cur.execute(query, params or []).fetch_arrow_table()

    def current_snapshot(self) -> pa.Table:
        """All active versions, one per entity."""
        return self._query(f"""
            SELECT {self.sql["version_cols"]}
            FROM {self.table}
            WHERE is_active
            ORDER BY {self.sql["keys"]}
        """)

    def timeline(self, entity_id: Any, strict: bool = False) -> pa.Table:
        """Every version of one entity, oldest first."""
        result = self._query(f"""
            SELECT {self.sql["version_cols"]}
            FROM {self.table}
            WHERE {self.sql["key_params"]}
            ORDER BY valid_from
        """, self._key_values(entity_id))
        if strict and result.num_rows == 0:
            raise NotFoundError(entity_id)
        return result

    def as_of(self, entity_id: Any, as_of_date: str | date, strict: bool = False) -> pa.Table:
        """The version of one entity in effect on a date (zero or one row)."""
        day = to_date(as_of_date)
        result = self._query(f"""
            SELECT {self.sql["version_cols"]}
            FROM {self.table}
            WHERE {self.sql["key_params"]}
              AND valid_from <= ?
              AND valid_to > ?
        """, self._key_values(entity_id) + [day, day])
        if strict and result.num_rows == 0 and self.timeline(entity_id).num_rows == 0:
            raise NotFoundError(entity_id)
        return result

    def get_data(self, as_of_date: str | date) -> pa.Table:
        """Get snapshot of all entities for a date."""
        day = to_date(as_of_date)
        return self._query(f"""
            SELECT {self.sql["cols"]}
            FROM {self.table}
            WHERE valid_from <= ?
              AND valid_to > ?
            ORDER BY {self.sql["keys"]}
        """, [day, day])

    def change_frequency(self) -> pa.Table:
        """Number of versions per entity, most changed first."""
        return self._query(f"""
            SELECT {self.sql["keys"]}, COUNT(*) AS version_count
            FROM {self.table}
            GROUP BY {self.sql["keys"]}
            ORDER BY version_count DESC, {self.sql["keys"]}
        """)

    def get_load_dates(self) -> list[str]:
        """Return list of applied load dates."""
        result = self._query(f"SELECT load_date FROM {self.load_log} ORDER BY load_date")
        return [str(d)[:10] for d in result.column("load_date").to_pylist()]

    def last_load_date(self) -> date | None:
        """Return the most recent applied load date, if any."""
        with self.conn.cursor() as cur:
            return cur.execute(f"SELECT MAX(load_date) FROM {self.load_log}").fetchone()[0]

    def get_record_count(self) -> int:
        """Return total number of versions."""
        with self.conn.cursor() as cur:
            return cur.execute(f"SELECT COUNT(*) FROM {self.table}").fetchone()[0]

    def verify(self) -> None:
        """Audit the whole history, raising InvariantViolationError on the first problem."""
        keys = self.sql["keys"]

        multi_active = self._query(f"""
            SELECT {keys}, COUNT(*) AS active_count
            FROM {self.table} WHERE is_active
            GROUP BY {keys} HAVING COUNT(*) > 1
        """)
        if multi_active.num_rows:
            raise InvariantViolationError(
                f"Multiple active versions in {self.table}",
                details={"rows": multi_active.to_pylist()},
            )

        flag_mismatch = self._query(f"""
            SELECT {keys}, valid_from, valid_to, is_active
            FROM {self.table}
            WHERE is_active <> (valid_to = {SENTINEL_SQL})
        """)
        if flag_mismatch.num_rows:
            raise InvariantViolationError(
                f"is_active disagrees with valid_to in {self.table}",
                details={"rows": flag_mismatch.to_pylist()},
            )

        # A gap is only legal when absent entities get expired
        boundary = "next_from <> valid_to"
        if self.absence_policy is AbsencePolicy.EXPIRE:
            boundary = "next_from < valid_to"
        broken = self._query(f"""
            SELECT {keys}, valid_from, valid_to, next_from FROM (
                SELECT {keys}, valid_from, valid_to,
                       LEAD(valid_from) OVER (PARTITION BY {keys} ORDER BY valid_from) AS next_from
                FROM {self.table}
            ) AS ordered
            WHERE valid_to <= valid_from OR (next_from IS NOT NULL AND {boundary})
        """)
        if broken.num_rows:
            raise InvariantViolationError(
                f"Versions in {self.table} overlap or leave gaps",
                details={"rows": broken.to_pylist()},
            )

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
