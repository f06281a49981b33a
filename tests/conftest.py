"""Shared fixtures: an in-memory stand-in for the Supabase query builder."""

import copy
import re
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from scripts.analytics.user_resolver import user_resolver
from scripts.lib import supabase_client
from scripts.lib.cache import cache_service
from scripts.lib.sync_status import sync_status


def _comparable(value):
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return value


def _same(a, b):
    if a == b:
        return True
    return a is not None and b is not None and str(a) == str(b)


def _like(pattern):
    regex = "".join(
        ".*" if ch == "%" else "." if ch == "_" else re.escape(ch) for ch in pattern
    )
    return re.compile(regex, re.IGNORECASE | re.DOTALL)


class FakeQuery:
    """Chainable query over one table of a FakeSupabase."""

    def __init__(self, db, table):
        self.db = db
        self.table_name = table
        self.action = "select"
        self.payload = None
        self.on_conflict = None
        self.want_count = False
        self.predicates = []
        self.ordering = []
        self.bounds = None
        self.max_rows = None
        self._negate = False

    # -- actions ---------------------------------------------------------
    def select(self, columns="*", count=None):
        self.action = "select"
        self.want_count = count is not None
        return self

    def insert(self, rows):
        self.action, self.payload = "insert", rows
        return self

    def upsert(self, rows, on_conflict=None):
        self.action, self.payload, self.on_conflict = "upsert", rows, on_conflict
        return self

    def update(self, values):
        self.action, self.payload = "update", values
        return self

    def delete(self):
        self.action = "delete"
        return self

    # -- filters ---------------------------------------------------------
    def _add(self, predicate):
        if self._negate:
            self._negate = False
            self.predicates.append(lambda row: not predicate(row))
        else:
            self.predicates.append(predicate)
        return self

    @property
    def not_(self):
        self._negate = True
        return self

    def eq(self, col, value):
        return self._add(lambda row: _same(row.get(col), value))

    def neq(self, col, value):
        return self._add(lambda row: not _same(row.get(col), value))

    def ilike(self, col, pattern):
        regex = _like(pattern)
        return self._add(lambda row: row.get(col) is not None and bool(regex.fullmatch(str(row[col]))))

    def gte(self, col, value):
        return self._add(
            lambda row: row.get(col) is not None and _comparable(row[col]) >= _comparable(value)
        )

    def lte(self, col, value):
        return self._add(
            lambda row: row.get(col) is not None and _comparable(row[col]) <= _comparable(value)
        )

    def in_(self, col, values):
        values = list(values)
        return self._add(lambda row: any(_same(row.get(col), v) for v in values))

    def is_(self, col, value):
        assert value == "null"
        return self._add(lambda row: row.get(col) is None)

    def or_(self, conditions):
        checks = []
        for condition in conditions.split(","):
            col, op, value = condition.split(".", 2)
            if op == "ilike":
                regex = _like(value)
                checks.append(lambda row, c=col, r=regex: row.get(c) is not None and bool(r.fullmatch(str(row[c]))))
            elif op == "eq":
                checks.append(lambda row, c=col, v=value: _same(row.get(c), v))
            else:
                raise NotImplementedError(op)
        return self._add(lambda row: any(check(row) for check in checks))

    # -- shaping ---------------------------------------------------------
    def order(self, col, desc=False):
        self.ordering.append((col, desc))
        return self

    def range(self, start, end):
        self.bounds = (start, end)
        return self

    def limit(self, n):
        self.max_rows = n
        return self

    # -- execution -------------------------------------------------------
    def _matching(self):
        return [r for r in self.db.rows(self.table_name) if all(p(r) for p in self.predicates)]

    def execute(self):
        self.db.calls.append((self.action, self.table_name))
        if self.db.fail_on and self.table_name in self.db.fail_on:
            raise RuntimeError(f"simulated failure on {self.table_name}")
        handler = getattr(self, f"_execute_{self.action}")
        return handler()

    def _execute_select(self):
        rows = self._matching()
        for col, desc in reversed(self.ordering):
            present = [r for r in rows if r.get(col) is not None]
            missing = [r for r in rows if r.get(col) is None]
            present.sort(key=lambda r: _comparable(r[col]), reverse=desc)
            rows = present + missing
        total = len(rows)
        if self.bounds:
            rows = rows[self.bounds[0]:self.bounds[1] + 1]
        if self.max_rows is not None:
            rows = rows[:self.max_rows]
        return SimpleNamespace(
            data=[copy.deepcopy(r) for r in rows],
            count=total if self.want_count else None,
        )

    def _execute_insert(self):
        rows = self.payload if isinstance(self.payload, list) else [self.payload]
        return SimpleNamespace(data=[self.db.add(self.table_name, r) for r in rows], count=None)

    def _execute_upsert(self):
        rows = self.payload if isinstance(self.payload, list) else [self.payload]
        keys = [k.strip() for k in (self.on_conflict or "id").split(",")]
        stored = []
        for row in rows:
            existing = next(
                (r for r in self.db.rows(self.table_name)
                 if all(k in row and _same(r.get(k), row[k]) for k in keys)),
                None,
            )
            if existing is not None:
                existing.update(copy.deepcopy(row))
                stored.append(copy.deepcopy(existing))
            else:
                stored.append(self.db.add(self.table_name, row))
        return SimpleNamespace(data=stored, count=None)

    def _execute_update(self):
        rows = self._matching()
        for row in rows:
            row.update(copy.deepcopy(self.payload))
        return SimpleNamespace(data=[copy.deepcopy(r) for r in rows], count=None)

    def _execute_delete(self):
        doomed = self._matching()
        self.db.tables[self.table_name] = [
            r for r in self.db.rows(self.table_name) if r not in doomed
        ]
        return SimpleNamespace(data=doomed, count=None)


class FakeSupabase:
    """In-memory tables behind the supabase-py builder API."""

    def __init__(self):
        self.tables = {}
        self.calls = []
        self.fail_on = set()
        self._next_id = 1

    def table(self, name):
        return FakeQuery(self, name)

    def rows(self, name):
        return self.tables.setdefault(name, [])

    def add(self, name, row):
        row = copy.deepcopy(row)
        if row.get("id") is None:
            row["id"] = self._next_id
            self._next_id += 1
        else:
            self._next_id = max(self._next_id, int(row["id"]) + 1) if str(row["id"]).isdigit() else self._next_id
        self.rows(name).append(row)
        return copy.deepcopy(row)

    def seed(self, name, rows):
        return [self.add(name, r) for r in rows]


@pytest.fixture
def fake_db(monkeypatch):
    fake = FakeSupabase()
    monkeypatch.setattr(supabase_client, "_client", fake)
    return fake


@pytest.fixture(autouse=True)
def reset_shared_state():
    cache_service.clear()
    user_resolver.clear_cache()
    sync_status.reset()
    yield
    cache_service.clear()
    user_resolver.clear_cache()
    sync_status.reset()
