from __future__ import annotations

import logging
import time
from datetime import date, datetime
from typing import Any, List, Mapping, Optional, Tuple

import pendulum

from table_replication.errors import InvalidMapping, StoreError, WriteError
from table_replication.mapper import InsertPlan, PlanColumn, build_plan

LOG = logging.getLogger(__name__)

DATE_TYPES = ("date",)


def _is_date_type(col_type: str) -> bool:
    return (col_type or "").lower() in DATE_TYPES


def format_date(value: Any, date_format: str) -> Optional[str]:
    """Reformat a source value to the destination date convention."""
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.strftime(date_format)
    try:
        parsed = pendulum.parse(str(value), strict=False)
    except (ValueError, TypeError) as e:
        raise WriteError(f"Cannot parse {value!r} as a date: {e}") from e
    if not isinstance(parsed, date):
        raise WriteError(f"Cannot parse {value!r} as a date: got {type(parsed).__name__}")
    return parsed.strftime(date_format)


class RowInserter:
    """
    Streams rows into one destination table through an insert plan.

    The plan and its statement are compiled from the first row written and
    stay fixed until close(); rows are sent to the store in pages of
    `batch_size`.
    """

    def __init__(self, store, batch_size: int = 5_000, date_format: str = "%Y-%m-%d",
                 logger: logging.Logger | None = None):
        self.store = store
        self.batch_size = batch_size
        self.date_format = date_format
        self.log = logger or logging.getLogger(__name__)
        self.table: str | None = None
        self.mapping: Mapping[str, Optional[str]] = {}
        self.schema: List[Tuple[str, str]] | None = None
        self.plan: InsertPlan | None = None
        self.statement: str | None = None
        self.rows_written = 0
        self._page: List[Tuple[Any, ...]] = []

    def open(self, table: str, mapping: Mapping[str, Optional[str]] | None = None) -> None:
        self.close()
        self.table = table
        self.mapping = dict(mapping or {})
        self.schema = self.store.describe(table)
        self.rows_written = 0
        self.log.info("Opened %s for writing (%d columns, %d mapping directive(s))",
                      table, len(self.schema), len(self.mapping))

    def write_row(self, row: Mapping[str, Any]) -> None:
        if self.schema is None:
            raise WriteError("write_row() called before open()")
        if self.plan is None:
            self._compile(row)
        params = self.plan.bind(row, self._coerce)
        if len(params) != self.plan.bind_count:
            missing = [f for f in self.plan.source_fields if f not in row]
            raise WriteError(
                f"Row does not match the insert plan of {self.table}: "
                f"{len(params)} value(s) for {self.plan.bind_count} placeholder(s), missing fields {missing}"
            )
        self._page.append(params)
        if len(self._page) >= self.batch_size:
            self.flush()

    def flush(self) -> int:
        if not self._page:
            return 0
        t_batch = time.perf_counter()
        try:
            n = self.store.execute_batch(self.statement, self._page)
        except StoreError as e:
            self._page = []
            raise WriteError(f"Cannot execute insert statement into table {self.table}: {e}") from e
        self._page = []
        self.rows_written += n
        self.log.info("Batch written to %s (rows_written=%d, took %.3fs)",
                      self.table, self.rows_written, time.perf_counter() - t_batch)
        return n

    def close(self) -> None:
        if self._page:
            self.log.warning("Discarding %d unwritten row(s) for %s", len(self._page), self.table)
        self._page = []
        self.plan = None
        self.statement = None
        self.schema = None

    # ------------------------ internals ------------------------

    def _compile(self, row: Mapping[str, Any]) -> None:
        try:
            self.plan = build_plan(row.keys(), self.schema, self.mapping)
        except InvalidMapping as e:
            raise InvalidMapping(f"{self.table}: {e}") from e
        self.statement = self.plan.insert_sql(self.table)
        self.log.info("Insert statement for %s: %s", self.table, self.statement)

    def _coerce(self, col: PlanColumn, value: Any) -> Any:
        if _is_date_type(col.column_type):
            try:
                return format_date(value, self.date_format)
            except WriteError as e:
                raise WriteError(f"{self.table}.{col.column}: {e}") from e
        # Nulls become empty strings regardless of nullability (kept for compatibility).
        if value is None:
            return ""
        return value
