from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import asdict
from typing import Any, Dict, List, Tuple

import pendulum
from airflow.decorators import dag, task
from airflow.exceptions import AirflowFailException
from airflow.models import Variable

from table_replication.TableConfig import KeptDataSpec, TableConfig
from table_replication.alerts import send_discord_alert
from table_replication.batch import run_batch
from table_replication.catalog import build_table_configs, load_catalog
from table_replication.connections import pg_conn

log = logging.getLogger(__name__)

# ------------------------ Catalog helpers (DAG-layer) ------------------------
def _catalog_path() -> str:
    return Variable.get("JSON_CONFIG_PATH", default_var="/opt/airflow/dags/replication_catalog.json").strip()

def _group_by_pair(configs: List[TableConfig]) -> "OrderedDict[Tuple[str, str], List[TableConfig]]":
    grouped: "OrderedDict[Tuple[str, str], List[TableConfig]]" = OrderedDict()
    for cfg in configs:
        grouped.setdefault((cfg.src_conn_id, cfg.dst_conn_id), []).append(cfg)
    return grouped

def _cfg_from_dict(d: Dict[str, Any]) -> TableConfig:
    d = dict(d)
    keep = d.pop("keep", None) or {}
    return TableConfig(keep=KeptDataSpec(keep.get("key", ""), tuple(keep.get("fields", ()))), **d)

# ------------------------ DAG creation helpers ------------------------
def _build_batch_dag(src_conn_id: str, dst_conn_id: str, configs: List[TableConfig]):
    dag_id = f"table_replication__{src_conn_id}__{dst_conn_id}"

    # Freeze JSON-safe config dicts at parse time (avoid capturing the objects themselves)
    frozen: List[Dict[str, Any]] = [asdict(c) for c in configs]

    @dag(
        dag_id=dag_id,
        schedule="0 3 * * *",
        start_date=pendulum.datetime(2025, 8, 18, tz="UTC"),
        catchup=False,
        max_active_runs=1,
        tags=["replication", src_conn_id, dst_conn_id],
        description=f"Full table replication {src_conn_id} → {dst_conn_id} ({len(configs)} table(s))",
    )
    def replication_dag():

        @task(do_xcom_push=True)
        def replicate_tables() -> Dict[str, Any]:
            cfgs = [_cfg_from_dict(d) for d in frozen]
            webhook = Variable.get("DISCORD_WEBHOOK", default_var="")
            log.info("Replicating %d table(s) %s → %s", len(cfgs), src_conn_id, dst_conn_id)
            report = run_batch(
                cfgs, pg_conn, pg_conn,
                alert=lambda message: send_discord_alert(message, webhook),
            )
            summary = report.as_dict()
            if not report.ok:
                failed = ", ".join(r.destination for r in report.failed) or "none"
                raise AirflowFailException(
                    f"Replication not complete: failed=[{failed}] skipped={report.skipped} "
                    f"stopped_by={report.stopped_by}"
                )
            return summary

        replicate_tables()

    return replication_dag()

# ------------------------ Generate all DAGs from catalog ------------------------
_configs = build_table_configs(load_catalog(_catalog_path()))
for (_src_id, _dst_id), _cfgs in _group_by_pair(_configs).items():
    dag_obj = _build_batch_dag(_src_id, _dst_id, _cfgs)
    # Ensure Airflow UI shows this file as the DAG source
    dag_obj.fileloc = __file__
    globals()[dag_obj.dag_id] = dag_obj
