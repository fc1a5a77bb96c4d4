from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, ContextManager, Dict, List, Optional, Sequence

from table_replication.TableConfig import TableConfig
from table_replication.alerts import fatal_pass_message
from table_replication.coordinator import PassResult, SwapCoordinator
from table_replication.errors import ConnectionFailed
from table_replication.source import PgRowSource
from table_replication.store import PgDestinationStore

LOG = logging.getLogger(__name__)

ConnFactory = Callable[[str], ContextManager[Any]]


@dataclass
class BatchReport:
    results: List[PassResult] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    stopped_by: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.stopped_by is None and not self.skipped and all(r.promoted for r in self.results)

    @property
    def failed(self) -> List[PassResult]:
        return [r for r in self.results if not r.promoted]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "results": [r.as_dict() for r in self.results],
            "skipped": list(self.skipped),
            "stopped_by": self.stopped_by,
        }


def replicate_table(cfg: TableConfig, src_conn, dst_conn, logger: logging.Logger | None = None) -> PassResult:
    """One full pass of cfg's source table into its destination table."""
    store = PgDestinationStore(dst_conn, batch_size=cfg.batch_size, logger=logger)
    coordinator = SwapCoordinator.from_config(cfg, store, logger=logger)
    rows = PgRowSource(src_conn, cfg.src_schema, cfg.src_table, itersize=cfg.batch_size, logger=logger)
    return coordinator.replicate_table(cfg.source_name, cfg.destination_name, rows, cfg.mapping, cfg.keep)


def run_batch(configs: Sequence[TableConfig], source_conn: ConnFactory, dest_conn: ConnFactory,
              alert: Callable[[str], None] | None = None,
              logger: logging.Logger | None = None) -> BatchReport:
    """
    Replicate tables one after another. A failed table is logged and the batch
    moves on; a fatal pass or a connection failure stops the batch.
    """
    log = logger or LOG
    report = BatchReport()
    t0 = time.perf_counter()

    for i, cfg in enumerate(configs):
        try:
            with source_conn(cfg.src_conn_id) as src, dest_conn(cfg.dst_conn_id) as dst:
                result = replicate_table(cfg, src, dst, logger=logger)
        except ConnectionFailed as e:
            log.critical("Connection failure while replicating %s: %s; stopping the run", cfg.destination_name, e)
            report.stopped_by = f"{cfg.destination_name}: {e}"
            report.skipped = [c.destination_name for c in configs[i + 1:]]
            break

        report.results.append(result)
        if result.fatal:
            message = fatal_pass_message(result)
            log.critical(message)
            if alert is not None:
                alert(message)
            report.stopped_by = f"{result.destination}: {result.error}"
            report.skipped = [c.destination_name for c in configs[i + 1:]]
            break

    log.info(
        "Batch finished: %d promoted, %d failed, %d skipped (%.3fs)",
        len(report.results) - len(report.failed), len(report.failed), len(report.skipped),
        time.perf_counter() - t0,
    )
    return report
