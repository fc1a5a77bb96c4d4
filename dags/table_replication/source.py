from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, Iterator

import psycopg2
import psycopg2.extras as extras

from table_replication.store import _fq_table

LOG = logging.getLogger(__name__)


class PgRowSource:
    """
    Streams every row of a source table as an ordered dict.

    Each iteration opens a new server-side cursor, so the same source can be
    replayed for another pass.
    """

    def __init__(self, conn, schema: str, table: str, itersize: int = 5_000,
                 logger: logging.Logger | None = None):
        self.conn = conn
        self.schema = schema
        self.table = table
        self.itersize = itersize
        self.log = logger or logging.getLogger(__name__)

    @property
    def name(self) -> str:
        return f"{self.schema}.{self.table}"

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        t0 = time.perf_counter()
        count = 0
        cur = self.conn.cursor(name=f"replicate_{uuid.uuid4().hex[:8]}", cursor_factory=extras.RealDictCursor)
        cur.itersize = self.itersize
        try:
            self.log.info("Streaming source rows from %s (itersize=%d)", self.name, self.itersize)
            cur.execute(f"SELECT * FROM {_fq_table(self.name)}")
            for row in cur:
                count += 1
                yield dict(row)
        finally:
            try:
                cur.close()
                self.conn.commit()
            except psycopg2.Error:
                self.log.debug("Could not close source cursor cleanly", exc_info=True)
        self.log.info("Streamed %d row(s) from %s (%.3fs)", count, self.name, time.perf_counter() - t0)
