from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from table_replication.TableConfig import SWAP_STRATEGIES, KeptDataSpec, TableConfig

LOG = logging.getLogger(__name__)

# ------------------------ Catalog loading ------------------------

def load_catalog(path: str | Path) -> Dict[str, Any]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Catalog file not found: {path}")
    raw = path.read_text(encoding="utf-8").strip()
    if not raw:
        raise ValueError(f"Catalog file {path} is empty")
    try:
        catalog = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in catalog file {path}: {e}") from e
    if not isinstance(catalog.get("sources"), list):
        raise ValueError(f"Catalog file {path} must contain a 'sources' list")
    LOG.info("Loaded catalog from %s", path)
    return catalog

# ------------------------ Configuration helpers ------------------------

def _cfg_get(root: Dict[str, Any], src: Dict[str, Any], tbl: Dict[str, Any], key: str, default=None):
    return tbl.get(key, src.get(key, root.get(key, default)))

def _kept_spec(raw: Dict[str, Any] | None) -> KeptDataSpec:
    if not raw:
        return KeptDataSpec()
    fields = raw.get("fields") or []
    if isinstance(fields, str):
        fields = [f.strip() for f in fields.split(",") if f.strip()]
    return KeptDataSpec(key=(raw.get("key") or "").strip(), fields=tuple(fields))

def create_table_config(root: Dict[str, Any], src: Dict[str, Any], tbl: Dict[str, Any]) -> TableConfig:
    swap_strategy = _cfg_get(root, src, tbl, "swap_strategy", "rename")
    if swap_strategy not in SWAP_STRATEGIES:
        raise ValueError(f"Unknown swap_strategy {swap_strategy!r} for table {tbl.get('src_table')}")
    mapping = tbl.get("mapping") or {}
    if not isinstance(mapping, dict):
        raise ValueError(f"mapping for table {tbl.get('src_table')} must be an object")

    return TableConfig(
        src_conn_id=src["src_conn_id"],
        dst_conn_id=_cfg_get(root, src, tbl, "dst_conn_id"),
        src_schema=tbl.get("src_schema", "public"),
        src_table=tbl["src_table"],
        dst_schema=tbl.get("dst_schema", tbl.get("src_schema", "public")),
        dst_table=tbl.get("dst_table", tbl["src_table"]),
        swap_strategy=swap_strategy,
        mapping=dict(mapping),
        keep=_kept_spec(tbl.get("keep")),
        batch_size=int(_cfg_get(root, src, tbl, "batch_size", 5_000)),
        date_format=_cfg_get(root, src, tbl, "date_format", "%Y-%m-%d"),
        shadow_suffix=_cfg_get(root, src, tbl, "shadow_suffix", "_copy"),
        optimize_after_sync=bool(_cfg_get(root, src, tbl, "optimize_after_sync", False)),
        validate=bool(tbl.get("validate", True)),
        comments=tbl.get("comments", ""),
    )

def build_table_configs(catalog: Dict[str, Any]) -> List[TableConfig]:
    """All table configs of a catalog, in catalog order."""
    configs = []
    for src in catalog["sources"]:
        for tbl in src.get("tables", []):
            configs.append(create_table_config(catalog, src, tbl))
    LOG.info("Catalog defines %d table(s)", len(configs))
    return configs
