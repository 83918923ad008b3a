"""
SCD Type 2 replay engine.

Applies one batch at a time, in ascending load_date order, to a
DimensionTable. Each batch runs in a single DuckDB transaction:

1. stage and deduplicate the incoming rows
2. classify each row against the active version (new / unchanged / changed)
3. expire active versions that changed (and, under AbsencePolicy.EXPIRE,
   those missing from the batch)
4. insert a new active version for every new or changed row
5. audit the touched keys, log the load date, commit

Any failure rolls the whole batch back.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from functools import partial
from typing import Callable, Iterable, Iterator

import pyarrow as pa

from .batches import Batch, BatchSequence
from .config import AbsencePolicy
from .errors import DuplicateConflictError, EngineError, InvariantViolationError, OrderingError
from .frames import DataFrameLike, empty_table, normalize_columns
from .table import SENTINEL_SQL, DimensionTable

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    load_date: date
    rows_total: int
    rows_new: int
    rows_changed: int
    rows_unchanged: int
    rows_expired_absent: int
    rows_duplicate: int

    @property
    def applied_count(self) -> int:
        """Versions inserted by this batch."""
        return self.rows_new + self.rows_changed


@dataclass
class ReplayReport:
    results: list[ApplyResult] = field(default_factory=list)
    failures: list[tuple[date, EngineError]] = field(default_factory=list)

    @property
    def batches_applied(self) -> int:
        return len(self.results)

    @property
    def versions_inserted(self) -> int:
        return sum(r.applied_count for r in self.results)

    @property
    def ok(self) -> bool:
        return not self.failures


class ReplayEngine:
    """Writer for a DimensionTable.

    Engines on the same table share its write lock, so batches are applied
    one at a time however many engines exist.
    """

    def __init__(self, table: DimensionTable):
        self.table = table
        self.conn = table.conn
        self._lock = table.write_lock

    def apply(self, load_date: str | date, df: DataFrameLike) -> ApplyResult:
        """Apply a snapshot frame as the batch for ``load_date``."""
        return self.apply_batch(Batch.from_frame(load_date, df))

    def apply_batch(self, batch: Batch) -> ApplyResult:
        """Apply one batch atomically."""
        if batch.table.num_rows == 0 and batch.table.num_columns == 0:
            # No records at all: an empty snapshot of the declared columns
            incoming = empty_table(self.table.all_cols)
        else:
            incoming = normalize_columns(batch.table, self.table.all_cols)
        with self._lock:
            return self._apply(batch.load_date, incoming)

    def replay(
        self, source: BatchSequence | Iterable[Batch], stop_on_error: bool = True
    ) -> ReplayReport:
        """Apply every batch of ``source`` in order.

        With ``stop_on_error=False`` a rejected batch is recorded in the
        report and replay moves on to the next one. Invariant violations
        always propagate.
        """
        report = ReplayReport()
        for load_date, build in _pending(source):
            try:
                result = self.apply_batch(build())
            except InvariantViolationError:
                raise
            except EngineError as exc:
                if stop_on_error:
                    raise
                logger.warning("Rejected batch %s: %s", load_date, exc)
                report.failures.append((load_date, exc))
                continue
            report.results.append(result)

        logger.info(
            "Replay finished: %d batches applied, %d rejected, %d versions inserted",
            report.batches_applied, len(report.failures), report.versions_inserted,
        )
        return report

    def _apply(self, load_date: date, incoming: pa.Table) -> ApplyResult:
        tbl = self.table.table
        sql = self.table.sql
        day = load_date.isoformat()

        self.conn.register("_incoming", incoming)

        self.conn.execute("BEGIN TRANSACTION")
        try:
            last = self.conn.execute(
                f"SELECT MAX(load_date) FROM {self.table.load_log}"
            ).fetchone()[0]
            if last is not None and load_date < last:
                raise OrderingError(
                    f"Batch {load_date} is older than last applied load date {last}",
                    load_date=load_date,
                    last_load_date=last,
                )

            distinct_rows = self._stage(load_date, incoming, sql)
            stats = self._classify(tbl, sql)

            if load_date == last:
                # Re-delivery of the last batch is accepted only as a no-op
                if stats["new"] or stats["changed"] or stats["absent"]:
                    raise OrderingError(
                        f"Load date {load_date} was already applied with different content",
                        load_date=load_date,
                        last_load_date=last,
                    )
                logger.info("Batch %s matches the applied state, nothing to do", load_date)
            else:
                self._expire(day, tbl, sql, stats)
                self._insert_versions(day, tbl, sql)
                self._check_invariants(tbl, sql)
                self.conn.execute(f"""
                    INSERT INTO {self.table.load_log}
                        (load_date, applied_at, row_count, rows_inserted, rows_expired)
                    VALUES (?, ?, ?, ?, ?)
                """, [
                    load_date,
                    datetime.now(),
                    incoming.num_rows,
                    stats["new"] + stats["changed"],
                    stats["changed"] + stats["absent"],
                ])

            self.conn.execute("DROP TABLE IF EXISTS _compare")
            self.conn.execute("DROP TABLE IF EXISTS _batch")
            self.conn.execute("COMMIT")
        except Exception:
            self.conn.execute("ROLLBACK")
            raise
        finally:
            self.conn.unregister("_incoming")

        result = ApplyResult(
            load_date=load_date,
            rows_total=incoming.num_rows,
            rows_new=stats["new"] if load_date != last else 0,
            rows_changed=stats["changed"] if load_date != last else 0,
            rows_unchanged=stats["unchanged"],
            rows_expired_absent=stats["absent"] if load_date != last else 0,
            rows_duplicate=incoming.num_rows - distinct_rows,
        )
        if load_date != last:
            logger.info(
                "Applied batch %s to %s: %d new, %d changed, %d unchanged, %d expired absent",
                load_date, tbl, result.rows_new, result.rows_changed,
                result.rows_unchanged, result.rows_expired_absent,
            )
        return result

    def _stage(self, load_date: date, incoming: pa.Table, sql: dict[str, str]) -> int:
        """Copy incoming rows into _batch, collapsing exact duplicates."""
        self.conn.execute(f"""
            CREATE TEMP TABLE _batch AS
            SELECT DISTINCT {self.table.cast_columns(incoming.schema)} FROM _incoming i
        """)

        conflicts = self.conn.execute(f"""
            SELECT {sql["keys"]} FROM _batch
            GROUP BY {sql["keys"]}
            HAVING COUNT(*) > 1
            ORDER BY {sql["keys"]}
        """).fetchall()
        if conflicts:
            raise DuplicateConflictError(load_date, conflicts)

        return self.conn.execute("SELECT COUNT(*) FROM _batch").fetchone()[0]

    def _classify(self, tbl: str, sql: dict[str, str]) -> dict[str, int]:
        """Join the batch to the active versions and count each change kind."""
        self.conn.execute(f"""
            CREATE TEMP TABLE _compare AS
            SELECT *,
                   CASE WHEN cur_valid_from IS NULL THEN 'new'
                        WHEN {sql["same_values"]} THEN 'unchanged'
                        ELSE 'changed'
                   END AS change_kind
            FROM (
                SELECT {sql["b_col_aliases"]},
                       v.valid_from AS cur_valid_from,
                       {sql["v_value_aliases"]}
                FROM _batch b
                LEFT JOIN {tbl} v ON {sql["key_join_b_v"]} AND v.is_active
            ) AS joined
        """)

        stats = {"new": 0, "unchanged": 0, "changed": 0, "absent": 0}
        rows = self.conn.execute(
            "SELECT change_kind, COUNT(*) FROM _compare GROUP BY change_kind"
        ).fetchall()
        stats.update(dict(rows))

        if self.table.absence_policy is AbsencePolicy.EXPIRE:
            stats["absent"] = self.conn.execute(f"""
                SELECT COUNT(*) FROM {tbl} v
                WHERE v.is_active
                  AND NOT EXISTS (SELECT 1 FROM _batch b WHERE {sql["key_join_b_v"]})
            """).fetchone()[0]

        logger.debug("Classified batch for %s: %s", tbl, stats)
        return stats

    def _expire(self, day: str, tbl: str, sql: dict[str, str], stats: dict[str, int]) -> None:
        """Close active versions that are superseded on ``day``."""
        if stats["changed"] > 0:
            self.conn.execute(f"""
                UPDATE {tbl} v SET valid_to = DATE '{day}', is_active = false
                FROM _compare c
                WHERE {sql["key_join_v_c"]}
                  AND v.is_active
                  AND c.change_kind = 'changed'
            """)

        if stats["absent"] > 0:
            self.conn.execute(f"""
                UPDATE {tbl} v SET valid_to = DATE '{day}', is_active = false
                WHERE v.is_active
                  AND NOT EXISTS (SELECT 1 FROM _batch b WHERE {sql["key_join_b_v"]})
            """)

    def _insert_versions(self, day: str, tbl: str, sql: dict[str, str]) -> None:
        self.conn.execute(f"""
            INSERT INTO {tbl} ({sql["version_cols"]})
            SELECT {sql["select_i_cols"]}, DATE '{day}', {SENTINEL_SQL}, true
            FROM _compare
            WHERE change_kind IN ('new', 'changed')
        """)

    def _check_invariants(self, tbl: str, sql: dict[str, str]) -> None:
        """Fail the commit if a touched key lost its single active version."""
        touched = f"EXISTS (SELECT 1 FROM _batch b WHERE {sql['key_join_b_v']})"

        multi_active = self.conn.execute(f"""
            SELECT {sql["v_keys"]}, COUNT(*) FROM {tbl} v
            WHERE v.is_active AND {touched}
            GROUP BY {sql["v_keys"]}
            HAVING COUNT(*) > 1
        """).fetchall()
        if multi_active:
            raise InvariantViolationError(
                f"Multiple active versions in {tbl} for key(s) {[r[:-1] for r in multi_active]}",
                details={"rows": multi_active},
            )

        mismatched = self.conn.execute(f"""
            SELECT COUNT(*) FROM {tbl} v
            WHERE {touched} AND v.is_active <> (v.valid_to = {SENTINEL_SQL})
        """).fetchone()[0]
        if mismatched:
            raise InvariantViolationError(
                f"{mismatched} version(s) in {tbl} have is_active out of step with valid_to"
            )


def _pending(source: BatchSequence | Iterable[Batch]) -> Iterator[tuple[date, Callable[[], Batch]]]:
    """Yield (load_date, builder) pairs so a bad batch can be skipped."""
    if isinstance(source, BatchSequence):
        for load_date in source.load_dates:
            yield load_date, partial(source.batch_for, load_date)
    else:
        for batch in source:
            yield batch.load_date, partial(_identity, batch)


def _identity(batch: Batch) -> Batch:
    return batch
