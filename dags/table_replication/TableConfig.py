from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

# ============================== Config model ===============================

SWAP_STRATEGIES = ("rename", "transactional")


@dataclass(frozen=True)
class KeptDataSpec:
    """Destination-only columns carried across a full replace, matched by `key`."""
    key: str = ""
    fields: Tuple[str, ...] = ()

    def is_empty(self) -> bool:
        return not self.key or not self.fields


@dataclass(frozen=True)
class TableConfig:
    src_conn_id: str
    dst_conn_id: str
    src_schema: str
    src_table: str
    dst_schema: str
    dst_table: str
    swap_strategy: str = "rename"      # "rename" | "transactional"
    mapping: Dict[str, Optional[str]] = field(default_factory=dict)  # dst column -> directive
    keep: KeptDataSpec = field(default_factory=KeptDataSpec)
    batch_size: int = 5_000
    date_format: str = "%Y-%m-%d"
    shadow_suffix: str = "_copy"
    optimize_after_sync: bool = False
    validate: bool = True
    comments: str = ""

    @property
    def source_name(self) -> str:
        return f"{self.src_schema}.{self.src_table}"

    @property
    def destination_name(self) -> str:
        return f"{self.dst_schema}.{self.dst_table}"
