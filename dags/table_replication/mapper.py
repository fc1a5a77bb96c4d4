"""
Column mapping: turns per-table mapping directives into an insert plan.

Directive syntax (one string per destination column):

    ""  / None              excluded, the column is left out of the INSERT
    "SQL:<expression>"      computed, <expression> is spliced verbatim
    "<field>"               direct, binds the value of source field <field>
    "<field> -> <expr>"     direct, splices <expr>; every %s in it binds <field>

Computed and arrow expressions are trusted text: nothing here escapes or
validates them beyond doubling '%' in computed expressions so that psycopg2
parameter substitution leaves them alone.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from table_replication.errors import InvalidMapping
from table_replication.store import _fq_table, _qi

LOG = logging.getLogger(__name__)

SQL_PREFIX = "SQL:"
ARROW = "->"
PLACEHOLDER = "%s"

# ============================== Mapping entries ===============================

@dataclass(frozen=True)
class Direct:
    column: str
    source_field: str
    expression: Optional[str] = None   # arrow expression, None means a bare placeholder


@dataclass(frozen=True)
class Computed:
    column: str
    expression: str


@dataclass(frozen=True)
class Excluded:
    column: str


MappingEntry = Union[Direct, Computed, Excluded]


def parse_directive(column: str, directive: Optional[str]) -> MappingEntry:
    if directive is None or not str(directive).strip():
        return Excluded(column)
    directive = str(directive)
    if directive.startswith(SQL_PREFIX):
        expression = directive[len(SQL_PREFIX):].strip()
        if not expression:
            raise InvalidMapping(f"Column {column!r}: empty SQL expression in directive {directive!r}")
        return Computed(column, expression)
    if ARROW in directive:
        field, expression = directive.split(ARROW, 1)
        field, expression = field.strip(), expression.strip()
        if not field:
            raise InvalidMapping(f"Column {column!r}: missing source field in directive {directive!r}")
        return Direct(column, field, expression or None)
    return Direct(column, directive.strip())


def parse_mapping(mapping: Mapping[str, Optional[str]]) -> List[MappingEntry]:
    """Parse every directive, keeping configuration order."""
    return [parse_directive(col, directive) for col, directive in mapping.items()]

# ============================== Insert plan ===============================

@dataclass(frozen=True)
class PlanColumn:
    column: str
    column_type: str
    value_sql: str                      # what goes in the VALUES list
    source_field: Optional[str] = None  # None for computed columns
    binds: int = 0                      # how many parameters this column consumes

    @property
    def computed(self) -> bool:
        return self.source_field is None


@dataclass(frozen=True)
class InsertPlan:
    columns: Tuple[PlanColumn, ...]

    @property
    def names(self) -> List[str]:
        return [c.column for c in self.columns]

    @property
    def source_fields(self) -> List[str]:
        return [c.source_field for c in self.columns if not c.computed]

    def insert_sql(self, table: str) -> str:
        col_list = ", ".join(_qi(c.column) for c in self.columns)
        values = ", ".join(c.value_sql for c in self.columns)
        sql = f"INSERT INTO {_fq_table(table)} ({col_list}) VALUES ({values})"
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("Generated INSERT SQL: %s", sql)
        return sql

    def bind(self, row: Mapping[str, Any], coerce: Callable[[PlanColumn, Any], Any]) -> Tuple[Any, ...]:
        """
        Positional parameters for one row, in plan order. A planned source field
        missing from `row` contributes nothing, which leaves fewer parameters than
        placeholders; callers treat that as a broken row.
        """
        params: List[Any] = []
        for col in self.columns:
            if col.computed or col.binds == 0:
                continue
            if col.source_field not in row:
                continue
            value = coerce(col, row[col.source_field])
            params.extend([value] * col.binds)
        return tuple(params)

    @property
    def bind_count(self) -> int:
        return sum(c.binds for c in self.columns)

# ============================== Plan building ===============================

def _escape_percent(expression: str) -> str:
    return expression.replace("%", "%%")


def build_plan(
    source_fields: Iterable[str],
    schema: Sequence[Tuple[str, str]],
    mapping: Mapping[str, Optional[str]],
) -> InsertPlan:
    """
    Intersect the mapping with the destination schema and the first row's fields.

    An empty mapping is the identity mapping over the source fields that also
    exist in the destination. Otherwise only configured columns are considered,
    in configuration order.
    """
    fields = list(source_fields)
    present = set(fields)
    types: Dict[str, str] = {name: t for name, t in schema}
    planned: List[PlanColumn] = []

    if not mapping:
        for name in fields:
            if name in types:
                planned.append(PlanColumn(name, types[name], PLACEHOLDER, name, 1))
            else:
                LOG.debug("Source field %r has no destination column; dropped", name)
    else:
        for entry in parse_mapping(mapping):
            if entry.column not in types:
                LOG.warning("Configured column %r does not exist in destination; skipped", entry.column)
                continue
            col_type = types[entry.column]
            if isinstance(entry, Excluded):
                LOG.debug("Column %r excluded by configuration", entry.column)
            elif isinstance(entry, Computed):
                planned.append(PlanColumn(entry.column, col_type, _escape_percent(entry.expression)))
            elif entry.source_field not in present:
                LOG.debug("Column %r: source field %r absent from rows; dropped", entry.column, entry.source_field)
            elif entry.expression is None:
                planned.append(PlanColumn(entry.column, col_type, PLACEHOLDER, entry.source_field, 1))
            else:
                binds = entry.expression.count(PLACEHOLDER)
                planned.append(PlanColumn(entry.column, col_type, entry.expression, entry.source_field, binds))

    if not planned:
        raise InvalidMapping("No destination columns left after applying the mapping to the table schema")

    plan = InsertPlan(tuple(planned))
    LOG.info("Insert plan: %s", [(c.column, c.source_field or c.value_sql) for c in plan.columns])
    return plan
