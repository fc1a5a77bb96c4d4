from __future__ import annotations

import logging
import time

from table_replication.TableConfig import KeptDataSpec
from table_replication.errors import MergeError, StoreError

LOG = logging.getLogger(__name__)


class KeptDataPreserver:
    """
    Carries destination-only column values from the live table into the shadow.

    Must run after the shadow is fully loaded and before it is promoted.
    """

    def __init__(self, store, lock_rows: bool = False, logger: logging.Logger | None = None):
        self.store = store
        self.lock_rows = lock_rows
        self.log = logger or logging.getLogger(__name__)

    def preserve(self, spec: KeptDataSpec | None, production_table: str, shadow_table: str) -> bool:
        if spec is None or spec.is_empty():
            self.log.debug("No kept data configured for %s", production_table)
            return True

        t0 = time.perf_counter()
        fields = [f for f in spec.fields if f != spec.key]
        columns = [spec.key] + fields
        try:
            rows = self.store.fetch_columns(production_table, columns, lock=self.lock_rows)
        except StoreError as e:
            raise MergeError(f"Cannot get kept data from table {production_table}: {e}") from e
        self.log.info("Loaded %d kept row(s) (%s by %s) from %s",
                      len(rows), fields, spec.key, production_table)

        # Rows with a NULL key can never be matched in the shadow.
        rows = [r for r in rows if r.get(spec.key) is not None]
        if not rows or not fields:
            return True
        try:
            self.store.update_by_key(shadow_table, spec.key, fields, rows)
        except StoreError as e:
            raise MergeError(f"Cannot update table {shadow_table} with kept data: {e}") from e
        self.log.info("Kept data merged into %s (%d row(s), %.3fs)",
                      shadow_table, len(rows), time.perf_counter() - t0)
        return True
