from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Sequence, Tuple

import psycopg2
import psycopg2.extras as extras

from table_replication.errors import SchemaError, StoreError

# Module-level logger for helpers
LOG = logging.getLogger(__name__)

# ============================== Helpers (module-level; stateless) ===============================

def _qi(ident: str) -> str:
    q = '"' + ident.replace('"', '""') + '"'
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Quoted identifier: raw=%r quoted=%r", ident, q)
    return q

def _fq_table(name: str) -> str:
    """Quote a possibly schema-qualified table name part by part."""
    fq = ".".join(_qi(p) for p in name.split(".", 1))
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("FQ table: %s", fq)
    return fq

def _split_name(name: str) -> Tuple[str, str]:
    if "." in name:
        schema, table = name.split(".", 1)
        return schema, table
    return "public", name

def _bare_name(name: str) -> str:
    """Table part only; ALTER TABLE ... RENAME TO never takes a schema."""
    return _split_name(name)[1]

# ============================== Store ===============================

class PgDestinationStore:
    """
    Table-level operations on the destination PostgreSQL database.

    Every method commits on its own unless it runs inside `transaction()`,
    in which case the enclosing block commits once (or rolls back) at exit.
    Driver errors are re-raised as StoreError with the failing statement.
    """

    def __init__(self, conn, batch_size: int = 5_000, logger: logging.Logger | None = None):
        self.conn = conn
        self.batch_size = batch_size
        self.log = logger or logging.getLogger(__name__)
        self._in_tx = False

    # ------------------------ Transaction control ------------------------

    @contextmanager
    def transaction(self) -> Iterator["PgDestinationStore"]:
        if self._in_tx:
            raise StoreError("Nested transactions are not supported")
        self.log.info("BEGIN destination transaction")
        self._in_tx = True
        try:
            yield self
        except Exception:
            self.log.warning("Rolling back destination transaction")
            self._in_tx = False
            try:
                self.conn.rollback()
            except psycopg2.Error:
                self.log.critical("Cannot rollback destination transaction", exc_info=True)
            raise
        self._in_tx = False
        try:
            self.conn.commit()
        except psycopg2.Error as e:
            try:
                self.conn.rollback()
            except psycopg2.Error:
                self.log.critical("Cannot rollback destination transaction after failed commit", exc_info=True)
            raise StoreError(f"Cannot commit transaction: {e}", "COMMIT") from e
        self.log.info("COMMIT destination transaction")

    def _finish(self) -> None:
        if not self._in_tx:
            self.conn.commit()

    def _execute(self, sql: str, params: Sequence[Any] | None = None, fetch: bool = False) -> List[Tuple]:
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("Executing SQL: %s params=%r", sql, params)
        try:
            with self.conn.cursor() as c:
                c.execute(sql, params)
                rows = c.fetchall() if fetch else []
            self._finish()
            return rows
        except psycopg2.Error as e:
            if not self._in_tx:
                self.conn.rollback()
            raise StoreError(str(e).strip(), sql) from e

    # ------------------------ Catalog ------------------------

    def describe(self, table: str) -> List[Tuple[str, str]]:
        schema, name = _split_name(table)
        t0 = time.perf_counter()
        try:
            rows = self._execute(
                """
                SELECT column_name, data_type
                FROM information_schema.columns
                WHERE table_schema = %s AND table_name = %s
                ORDER BY ordinal_position
                """,
                (schema, name),
                fetch=True,
            )
        except StoreError as e:
            raise SchemaError(f"Cannot describe table {table}: {e}") from e
        if not rows:
            raise SchemaError(f"Cannot describe table {table}: no such table")
        cols = [(r[0], r[1].lower()) for r in rows]
        self.log.info("Columns for %s: %s (%.3fs)", table, [c for c, _ in cols], time.perf_counter() - t0)
        return cols

    def table_exists(self, table: str) -> bool:
        schema, name = _split_name(table)
        rows = self._execute(
            """
            SELECT EXISTS (
              SELECT 1 FROM information_schema.tables
              WHERE table_schema=%s AND table_name=%s
            )
            """,
            (schema, name),
            fetch=True,
        )
        exists = bool(rows[0][0])
        self.log.debug("Table %s exists? %s", table, exists)
        return exists

    def row_count(self, table: str) -> int:
        rows = self._execute(f"SELECT COUNT(*) FROM {_fq_table(table)}", fetch=True)
        return int(rows[0][0])

    # ------------------------ DDL ------------------------

    def create_like(self, new_table: str, template: str) -> None:
        self.log.info("Creating %s as a structural copy of %s", new_table, template)
        self._execute(f"CREATE TABLE {_fq_table(new_table)} (LIKE {_fq_table(template)} INCLUDING ALL)")

    def rename(self, old: str, new: str) -> None:
        self.log.info("Renaming table %s to %s", old, _bare_name(new))
        self._execute(f"ALTER TABLE {_fq_table(old)} RENAME TO {_qi(_bare_name(new))}")

    def owned_sequences(self, table: str) -> List[Tuple[str, str]]:
        """(schema-qualified sequence, column) pairs for serial sequences OWNED BY `table`."""
        rows = self._execute(
            """
            SELECT sn.nspname, s.relname, a.attname
            FROM pg_depend d
            JOIN pg_class s ON s.oid = d.objid AND s.relkind = 'S'
            JOIN pg_namespace sn ON sn.oid = s.relnamespace
            JOIN pg_attribute a ON a.attrelid = d.refobjid AND a.attnum = d.refobjsubid
            WHERE d.classid = 'pg_class'::regclass
              AND d.refclassid = 'pg_class'::regclass
              AND d.refobjid = %s::regclass
              AND d.deptype = 'a'
            ORDER BY a.attnum
            """,
            (_fq_table(table),),
            fetch=True,
        )
        return [(f"{r[0]}.{r[1]}", r[2]) for r in rows]

    def transfer_sequences(self, old_table: str, new_table: str) -> int:
        """
        Re-own serial sequences of `old_table` by the same-named columns of `new_table`.

        A LIKE ... INCLUDING ALL copy shares the template's nextval() defaults,
        so the template cannot be dropped while it still owns those sequences.
        """
        moved = 0
        for seq, column in self.owned_sequences(old_table):
            self._execute(f"ALTER SEQUENCE {_fq_table(seq)} OWNED BY {_fq_table(new_table)}.{_qi(column)}")
            self.log.info("Sequence %s now owned by %s.%s", seq, new_table, column)
            moved += 1
        return moved

    def drop(self, table: str) -> None:
        self.log.info("Dropping table %s", table)
        self._execute(f"DROP TABLE {_fq_table(table)}")

    # ------------------------ DML ------------------------

    def execute_batch(self, statement: str, params_pages: Sequence[Sequence[Any]]) -> int:
        """Run one parameterized statement for each params tuple; returns the number run."""
        if not params_pages:
            return 0
        t_batch = time.perf_counter()
        try:
            with self.conn.cursor() as c:
                extras.execute_batch(c, statement, params_pages, page_size=self.batch_size)
            self._finish()
        except psycopg2.Error as e:
            if not self._in_tx:
                self.conn.rollback()
            raise StoreError(str(e).strip(), statement) from e
        self.log.debug("Batch of %d statement(s) took %.3fs", len(params_pages), time.perf_counter() - t_batch)
        return len(params_pages)

    def fetch_columns(self, table: str, columns: Sequence[str], lock: bool = False) -> List[Dict[str, Any]]:
        col_list = ", ".join(_qi(c) for c in columns)
        sql = f"SELECT {col_list} FROM {_fq_table(table)}"
        if lock:
            sql += " FOR SHARE"
        rows = self._execute(sql, fetch=True)
        return [dict(zip(columns, r)) for r in rows]

    def update_by_key(self, table: str, key: str, columns: Sequence[str], rows: Sequence[Dict[str, Any]]) -> int:
        set_list = ", ".join(f"{_qi(c)} = %s" for c in columns)
        sql = f"UPDATE {_fq_table(table)} SET {set_list} WHERE {_qi(key)} = %s"
        params = [tuple(r[c] for c in columns) + (r[key],) for r in rows]
        return self.execute_batch(sql, params)

    def replace_contents(self, table: str, source: str) -> None:
        fq = _fq_table(table)
        self.log.info("Replacing contents of %s with %s", table, source)
        self._execute(f"TRUNCATE TABLE {fq}")
        self._execute(f"INSERT INTO {fq} SELECT * FROM {_fq_table(source)}")

    def optimize(self, table: str) -> None:
        """VACUUM cannot run inside a transaction block; switch to autocommit for it."""
        t0 = time.perf_counter()
        previous = self.conn.autocommit
        self.conn.autocommit = True
        try:
            with self.conn.cursor() as c:
                c.execute(f"VACUUM ANALYZE {_fq_table(table)}")
        except psycopg2.Error as e:
            raise StoreError(str(e).strip(), "VACUUM ANALYZE") from e
        finally:
            self.conn.autocommit = previous
        self.log.info("VACUUM ANALYZE on %s took %.3fs", table, time.perf_counter() - t0)
