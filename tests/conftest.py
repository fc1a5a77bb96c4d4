import copy
import re
from contextlib import contextmanager

import pytest

from table_replication.errors import SchemaError, StoreError

INSERT_RE = re.compile(r'^INSERT INTO (?P<table>\S+) \((?P<cols>.*?)\) VALUES \((?P<vals>.*)\)$', re.S)


def _unquote_table(fq):
    return ".".join(p.strip('"') for p in fq.split("."))


def _split_values(text):
    """Split a VALUES list on top-level commas."""
    parts, depth, quoted, buf = [], 0, False, ""
    for ch in text:
        if ch == "'":
            quoted = not quoted
        elif not quoted and ch == "(":
            depth += 1
        elif not quoted and ch == ")":
            depth -= 1
        if ch == "," and depth == 0 and not quoted:
            parts.append(buf.strip())
            buf = ""
            continue
        buf += ch
    parts.append(buf.strip())
    return parts


class FakeStore:
    """
    In-memory destination store. Computed expressions are stored as their
    SQL text; arrow expressions are stored with the bound values spliced in.
    """

    def __init__(self):
        self.tables = {}
        self.failures = {}
        self.calls = []
        self.in_tx = False
        self.sequences = {}  # sequence -> (owning table, column)

    # -------- test helpers --------

    def add_table(self, name, columns, rows=()):
        self.tables[name] = {"columns": list(columns), "rows": [dict(r) for r in rows]}

    def rows(self, name):
        return self.tables[name]["rows"]

    def fail(self, op, target, after=0):
        """Make `op` on `target` raise StoreError once it has succeeded `after` times."""
        self.failures[(op, target)] = after

    def _check(self, op, target):
        self.calls.append((op, target))
        if (op, target) in self.failures:
            if self.failures[(op, target)] <= 0:
                raise StoreError(f"simulated {op} failure on {target}")
            self.failures[(op, target)] -= 1

    # -------- store interface --------

    @contextmanager
    def transaction(self):
        snapshot = copy.deepcopy(self.tables)
        self.in_tx = True
        try:
            yield self
            self._check("commit", "*")
        except Exception:
            self.tables = snapshot
            raise
        finally:
            self.in_tx = False

    def describe(self, table):
        self._check("describe", table)
        if table not in self.tables:
            raise SchemaError(f"Cannot describe table {table}: no such table")
        return list(self.tables[table]["columns"])

    def table_exists(self, table):
        return table in self.tables

    def row_count(self, table):
        return len(self.tables[table]["rows"])

    def create_like(self, new_table, template):
        self._check("create", new_table)
        if new_table in self.tables:
            raise StoreError(f"relation {new_table} already exists")
        self.tables[new_table] = {"columns": list(self.tables[template]["columns"]), "rows": []}

    def rename(self, old, new):
        self._check("rename", old)
        if new in self.tables:
            raise StoreError(f"relation {new} already exists")
        self.tables[new] = self.tables.pop(old)
        for seq, (owner, col) in list(self.sequences.items()):
            if owner == old:
                self.sequences[seq] = (new, col)

    def owned_sequences(self, table):
        return [(seq, col) for seq, (owner, col) in self.sequences.items() if owner == table]

    def transfer_sequences(self, old_table, new_table):
        self._check("sequences", old_table)
        owned = self.owned_sequences(old_table)
        for seq, col in owned:
            self.sequences[seq] = (new_table, col)
        return len(owned)

    def drop(self, table):
        self._check("drop", table)
        if self.owned_sequences(table):
            raise StoreError(f"cannot drop table {table} because other objects depend on it")
        del self.tables[table]

    def execute_batch(self, statement, params_pages):
        m = INSERT_RE.match(statement)
        assert m, statement
        table = _unquote_table(m.group("table"))
        cols = [c.strip().strip('"') for c in m.group("cols").split(",")]
        exprs = _split_values(m.group("vals"))
        for params in params_pages:
            self._check("insert", table)
            params = list(params)
            row = {}
            for col, expr in zip(cols, exprs):
                n = expr.count("%s")
                if expr == "%s":
                    if not params:
                        raise StoreError("not enough parameters")
                    row[col] = params.pop(0)
                elif n:
                    values, params = params[:n], params[n:]
                    row[col] = expr % tuple(repr(v) for v in values)
                else:
                    row[col] = expr.replace("%%", "%")
            if params:
                raise StoreError("too many parameters")
            self.tables[table]["rows"].append(row)
        return len(params_pages)

    def fetch_columns(self, table, columns, lock=False):
        self._check("fetch", table)
        self.calls.append(("lock", lock))
        return [{c: r.get(c) for c in columns} for r in self.tables[table]["rows"]]

    def update_by_key(self, table, key, columns, rows):
        self._check("update", table)
        by_key = {r[key]: r for r in rows}
        for row in self.tables[table]["rows"]:
            if row.get(key) in by_key:
                for c in columns:
                    row[c] = by_key[row[key]][c]
        return len(rows)

    def replace_contents(self, table, source):
        self._check("replace", table)
        self.tables[table]["rows"] = [dict(r) for r in self.tables[source]["rows"]]

    def optimize(self, table):
        self._check("optimize", table)


@pytest.fixture
def store():
    s = FakeStore()
    s.add_table(
        "public.users",
        [("id", "integer"), ("name", "character varying"), ("notes", "text")],
        [{"id": 1, "name": "old", "notes": "x"}, {"id": 9, "name": "gone", "notes": None}],
    )
    return s
