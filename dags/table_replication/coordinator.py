from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Protocol

from table_replication.TableConfig import KeptDataSpec, TableConfig
from table_replication.errors import (
    ConnectionFailed,
    PromotionError,
    ReplicationError,
    SchemaError,
    StoreError,
)
from table_replication.inserter import RowInserter
from table_replication.preserver import KeptDataPreserver

LOG = logging.getLogger(__name__)


def _json_sanitize(value: Any) -> Any:
    """Ensure value is JSON-serializable (safe for Airflow XCom push)."""
    return json.loads(json.dumps(value, default=str))

# ============================== Pass states / outcomes ===============================

class SwapOutcome(str, Enum):
    COMMITTED = "committed"    # shadow is now production, old data dropped
    DISCARDED = "discarded"    # shadow dropped, production untouched
    FAILED = "failed"          # cleanup attempted, destination may be inconsistent


class PassState(str, Enum):
    IDLE = "idle"
    SHADOW_CREATED = "shadow_created"
    ROWS_LOADED = "rows_loaded"
    DATA_PRESERVED = "data_preserved"
    PROMOTED = "promoted"
    ABORTED = "aborted"


@dataclass
class PassResult:
    source: str
    destination: str
    strategy: str
    outcome: SwapOutcome | None = None
    state: PassState = PassState.IDLE
    reached: PassState = PassState.IDLE     # last non-terminal state before the end
    rows_written: int = 0
    elapsed: float = 0.0
    error: str | None = None
    temp_name: str | None = None            # set when old data is left under a temporary name
    fatal: bool = False
    validation: Dict[str, Any] | None = None

    @property
    def promoted(self) -> bool:
        return self.state is PassState.PROMOTED

    def advance(self, state: PassState) -> None:
        self.state = state
        self.reached = state

    def as_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["outcome"] = self.outcome.value if self.outcome else None
        d["state"] = self.state.value
        d["reached"] = self.reached.value
        return _json_sanitize(d)

# ============================== Promotion strategies ===============================

class PromotionStrategy(Protocol):
    name: str
    lock_kept_rows: bool
    optimize_after_promotion: bool

    def promote(self, store, destination: str, shadow: str, merge: Callable[[], None]) -> Optional[str]:
        """Run `merge`, then make `shadow` the live `destination`. Returns a leftover table name, if any."""
        ...


@dataclass
class RenameDanceStrategy:
    """destination -> temp, shadow -> destination, drop temp. No transaction assumed."""
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))
    name: str = "rename"
    lock_kept_rows: bool = False
    optimize_after_promotion: bool = False

    def temp_name(self, shadow: str) -> str:
        return f"{shadow}_{uuid.uuid4().hex[:8]}"

    def promote(self, store, destination: str, shadow: str, merge: Callable[[], None]) -> Optional[str]:
        merge()
        temp = self.temp_name(shadow)
        try:
            store.rename(destination, temp)
        except StoreError as e:
            raise PromotionError(f"Cannot rename table {destination} to temporary name {temp}: {e}") from e

        try:
            store.rename(shadow, destination)
        except StoreError as e:
            try:
                store.rename(temp, destination)
            except StoreError:
                self.logger.critical(
                    "Couldn't rename temporarily named old data table %s back to %s; "
                    "the previous data is left under %s", temp, destination, temp, exc_info=True)
                raise PromotionError(
                    f"Failed to rename {shadow} to {destination} and could not restore {temp}: {e}",
                    temp_name=temp, fatal=True,
                ) from e
            self.logger.info("Restored %s from %s after failed promotion", destination, temp)
            raise PromotionError(f"Failed to rename {shadow} to {destination}: {e}") from e

        try:
            # The promoted table's defaults still use the old table's serial sequences.
            store.transfer_sequences(temp, destination)
            store.drop(temp)
        except StoreError:
            self.logger.error("Promoted %s but could not drop old data table %s", destination, temp, exc_info=True)
            return temp
        return None


@dataclass
class TransactionalStrategy:
    """Kept-data merge plus TRUNCATE / INSERT ... SELECT in one transaction."""
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))
    name: str = "transactional"
    lock_kept_rows: bool = True
    optimize_after_promotion: bool = True

    def promote(self, store, destination: str, shadow: str, merge: Callable[[], None]) -> Optional[str]:
        try:
            with store.transaction():
                merge()
                store.replace_contents(destination, shadow)
        except StoreError as e:
            raise PromotionError(f"Couldn't commit transaction to update table {destination}: {e}") from e
        return None


def strategy_for(name: str, logger: logging.Logger | None = None) -> PromotionStrategy:
    log = logger or logging.getLogger(__name__)
    if name == "rename":
        return RenameDanceStrategy(logger=log)
    if name == "transactional":
        return TransactionalStrategy(logger=log)
    raise ValueError(f"Unknown swap_strategy: {name}")

# ============================== Coordinator ===============================

class SwapCoordinator:
    """
    Owns one replication pass per call: shadow creation, row loading,
    kept-data merge and promotion. Errors never escape a pass except
    ConnectionFailed; they end up on the returned PassResult.
    """

    def __init__(self, store, strategy: PromotionStrategy, batch_size: int = 5_000,
                 date_format: str = "%Y-%m-%d", shadow_suffix: str = "_copy",
                 optimize_after_sync: bool = False, validate: bool = True,
                 logger: logging.Logger | None = None):
        self.store = store
        self.strategy = strategy
        self.shadow_suffix = shadow_suffix
        self.optimize_after_sync = optimize_after_sync
        self.validate = validate
        self.log = logger or logging.getLogger(__name__)
        self.inserter = RowInserter(store, batch_size=batch_size, date_format=date_format, logger=self.log)
        self.preserver = KeptDataPreserver(store, lock_rows=strategy.lock_kept_rows, logger=self.log)

    @classmethod
    def from_config(cls, cfg: TableConfig, store, logger: logging.Logger | None = None) -> "SwapCoordinator":
        return cls(
            store,
            strategy_for(cfg.swap_strategy, logger),
            batch_size=cfg.batch_size,
            date_format=cfg.date_format,
            shadow_suffix=cfg.shadow_suffix,
            optimize_after_sync=cfg.optimize_after_sync,
            validate=cfg.validate,
            logger=logger,
        )

    def shadow_name(self, destination: str) -> str:
        return f"{destination}{self.shadow_suffix}"

    # ------------------------ One pass ------------------------

    def replicate_table(self, source_table: str, destination_table: str, rows: Iterable[Mapping[str, Any]],
                        mapping: Mapping[str, Optional[str]] | None = None,
                        kept: KeptDataSpec | None = None) -> PassResult:
        t0 = time.perf_counter()
        result = PassResult(source_table, destination_table, self.strategy.name)
        shadow = self.shadow_name(destination_table)
        created = False
        self.inserter.rows_written = 0
        self.log.info("Starting import of table %s into %s (strategy=%s)",
                      source_table, destination_table, self.strategy.name)

        def merge() -> None:
            self.preserver.preserve(kept, destination_table, shadow)
            result.advance(PassState.DATA_PRESERVED)

        try:
            try:
                if not self.store.table_exists(destination_table):
                    raise SchemaError(f"Table {destination_table} doesn't exist")
                if self.store.table_exists(shadow):
                    raise SchemaError(f"Table {shadow} already exists (left over from an earlier run?)")
                self.store.create_like(shadow, destination_table)
            except StoreError as e:
                raise SchemaError(f"Couldn't create table {shadow}: {e}") from e
            created = True
            result.advance(PassState.SHADOW_CREATED)

            self.inserter.open(shadow, mapping)
            for row in rows:
                self.inserter.write_row(row)
            self.inserter.flush()
            result.rows_written = self.inserter.rows_written
            self.inserter.close()
            result.advance(PassState.ROWS_LOADED)
            self.log.info("Loaded %d row(s) into %s", result.rows_written, shadow)

            result.temp_name = self.strategy.promote(self.store, destination_table, shadow, merge)
            result.advance(PassState.PROMOTED)
            result.outcome = SwapOutcome.COMMITTED
        except ConnectionFailed as e:
            self._abort(result, e, shadow if created else None)
            raise
        except Exception as e:
            self._abort(result, e, shadow if created else None)
        else:
            self._after_promotion(result, destination_table, shadow)

        result.elapsed = round(time.perf_counter() - t0, 3)
        if result.promoted:
            self.log.info("Import of table %s into %s finished: %s", source_table, destination_table, result.as_dict())
        else:
            self.log.error("Import of table %s into %s failed: %s", source_table, destination_table, result.as_dict())
        return result

    # ------------------------ internals ------------------------

    def _abort(self, result: PassResult, error: Exception, shadow: str | None) -> None:
        result.rows_written = self.inserter.rows_written
        self.inserter.close()
        result.state = PassState.ABORTED
        result.error = f"{type(error).__name__}: {error}"
        if isinstance(error, (ReplicationError, ConnectionFailed)):
            self.log.error("Pass %s -> %s aborted at %s: %s",
                           result.source, result.destination, result.reached.value, error)
        else:
            self.log.exception("Pass %s -> %s aborted at %s by an unexpected error",
                               result.source, result.destination, result.reached.value)

        result.outcome = SwapOutcome.FAILED if isinstance(error, PromotionError) else SwapOutcome.DISCARDED
        if isinstance(error, PromotionError) and error.temp_name:
            result.temp_name = error.temp_name
            result.fatal = error.fatal
            self.log.critical("Destination %s may be missing; previous data left as %s",
                              result.destination, error.temp_name)

        if shadow is None:
            return
        try:
            if self.store.table_exists(shadow):
                self.store.drop(shadow)
        except StoreError:
            self.log.error("Couldn't drop shadow table %s during cleanup", shadow, exc_info=True)
            result.outcome = SwapOutcome.FAILED

    def _after_promotion(self, result: PassResult, destination: str, shadow: str) -> None:
        try:
            if self.store.table_exists(shadow):
                self.store.drop(shadow)
        except StoreError:
            self.log.error("Promoted %s but couldn't drop shadow table %s; the next pass will refuse to start",
                           destination, shadow, exc_info=True)

        if self.strategy.optimize_after_promotion or self.optimize_after_sync:
            try:
                self.store.optimize(destination)
            except StoreError:
                self.log.warning("Optimize after promotion failed on %s", destination, exc_info=True)

        if self.validate:
            try:
                count = self.store.row_count(destination)
            except StoreError:
                self.log.warning("Row count validation failed on %s", destination, exc_info=True)
                return
            ok = count == result.rows_written
            result.validation = {"check": "row_counts", "written": result.rows_written, "dst": count, "ok": ok}
            if ok:
                self.log.info("Validation (row counts) ok for %s: %d", destination, count)
            else:
                self.log.warning("Validation (row counts) mismatch for %s: written=%d dst=%d",
                                 destination, result.rows_written, count)
