from table_replication.TableConfig import KeptDataSpec, TableConfig
from table_replication.coordinator import (
    PassResult,
    PassState,
    RenameDanceStrategy,
    SwapCoordinator,
    SwapOutcome,
    TransactionalStrategy,
)
from table_replication.mapper import InsertPlan, build_plan
