"""SQLite data layer for employees and procurement requests.

Every operation runs through a middleware chain so that monitors can observe
it: a middleware is a callable ``(params, call_next) -> result`` and must
return ``call_next(params)`` (or raise).
"""

import json
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

_SCHEMA = """
CREATE TABLE IF NOT EXISTS employees (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    full_name TEXT NOT NULL,
    email TEXT,
    position TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    request_number TEXT NOT NULL,
    type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'Новая',
    employee_id INTEGER,
    employee_name TEXT,
    details TEXT,
    created_at TEXT NOT NULL
);
"""

MODELS = {
    "Employee": ("employees", ("id", "full_name", "email", "position", "created_at")),
    "Request": (
        "requests",
        ("id", "request_number", "type", "status", "employee_id",
         "employee_name", "details", "created_at"),
    ),
}


@dataclass(frozen=True)
class QueryParams:
    model: Optional[str]
    action: str
    args: dict = field(default_factory=dict)


class Database:
    def __init__(self, path=":memory:"):
        self._path = path
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._middlewares = []
        with self._lock:
            self._conn.executescript(_SCHEMA)
            self._conn.commit()

    @property
    def path(self):
        return self._path

    def use(self, middleware):
        """Register a middleware; the first registered is the outermost."""
        self._middlewares.append(middleware)

    def close(self):
        with self._lock:
            self._conn.close()

    # --- operations ---

    def find_many(self, model, where=None, limit=None):
        return self._dispatch(QueryParams(model, "findMany", {"where": where, "limit": limit}),
                              self._find_many)

    def find_unique(self, model, id):
        return self._dispatch(QueryParams(model, "findUnique", {"where": {"id": id}}),
                              self._find_first)

    def find_first(self, model, where=None):
        return self._dispatch(QueryParams(model, "findFirst", {"where": where}),
                              self._find_first)

    def create(self, model, data):
        return self._dispatch(QueryParams(model, "create", {"data": data}), self._create)

    def update(self, model, id, data):
        return self._dispatch(QueryParams(model, "update", {"where": {"id": id}, "data": data}),
                              self._update)

    def delete(self, model, id):
        return self._dispatch(QueryParams(model, "delete", {"where": {"id": id}}), self._delete)

    def count(self, model, where=None):
        return self._dispatch(QueryParams(model, "count", {"where": where}), self._count)

    def query_raw(self, sql, params=()):
        return self._dispatch(QueryParams(None, "queryRaw", {"sql": sql, "params": tuple(params)}),
                              self._query_raw)

    # --- middleware chain ---

    def _dispatch(self, params, handler):
        def call(index, current):
            if index == len(self._middlewares):
                return handler(current)
            return self._middlewares[index](current, lambda p: call(index + 1, p))

        return call(0, params)

    # --- SQL handlers ---

    def _find_many(self, params):
        table, columns = _table(params.model)
        clause, values = _where(params.args.get("where"), columns)
        sql = f"SELECT * FROM {table}{clause} ORDER BY id"
        if params.args.get("limit"):
            sql += " LIMIT ?"
            values.append(int(params.args["limit"]))
        return self._fetch_all(sql, values)

    def _find_first(self, params):
        table, columns = _table(params.model)
        clause, values = _where(params.args.get("where"), columns)
        rows = self._fetch_all(f"SELECT * FROM {table}{clause} ORDER BY id LIMIT 1", values)
        return rows[0] if rows else None

    def _create(self, params):
        table, columns = _table(params.model)
        data = dict(params.args["data"])
        data.setdefault("created_at", datetime.now(timezone.utc).isoformat())
        if "details" in data and not isinstance(data["details"], (str, type(None))):
            data["details"] = json.dumps(data["details"], ensure_ascii=False)
        _check_columns(data, columns)
        names = ", ".join(data)
        marks = ", ".join("?" for _ in data)
        with self._lock:
            cursor = self._conn.execute(f"INSERT INTO {table} ({names}) VALUES ({marks})",
                                        list(data.values()))
            self._conn.commit()
            row_id = cursor.lastrowid
        return self._fetch_all(f"SELECT * FROM {table} WHERE id = ?", [row_id])[0]

    def _update(self, params):
        table, columns = _table(params.model)
        data = dict(params.args["data"])
        _check_columns(data, columns)
        assignments = ", ".join(f"{name} = ?" for name in data)
        row_id = params.args["where"]["id"]
        with self._lock:
            self._conn.execute(f"UPDATE {table} SET {assignments} WHERE id = ?",
                               [*data.values(), row_id])
            self._conn.commit()
        rows = self._fetch_all(f"SELECT * FROM {table} WHERE id = ?", [row_id])
        return rows[0] if rows else None

    def _delete(self, params):
        table, _ = _table(params.model)
        with self._lock:
            cursor = self._conn.execute(f"DELETE FROM {table} WHERE id = ?",
                                        [params.args["where"]["id"]])
            self._conn.commit()
            return cursor.rowcount

    def _count(self, params):
        table, columns = _table(params.model)
        clause, values = _where(params.args.get("where"), columns)
        with self._lock:
            return self._conn.execute(f"SELECT COUNT(*) FROM {table}{clause}", values).fetchone()[0]

    def _query_raw(self, params):
        return self._fetch_all(params.args["sql"], list(params.args["params"]))

    def _fetch_all(self, sql, values):
        with self._lock:
            return [dict(row) for row in self._conn.execute(sql, values).fetchall()]


def _table(model):
    try:
        return MODELS[model]
    except KeyError:
        raise ValueError(f"Unknown model: {model!r}") from None


def _check_columns(data, columns):
    unknown = set(data) - set(columns)
    if unknown:
        raise ValueError(f"Unknown columns: {sorted(unknown)}")


def _where(where, columns):
    if not where:
        return "", []
    _check_columns(where, columns)
    parts = []
    values = []
    for name, value in where.items():
        if value is None:
            parts.append(f"{name} IS NULL")
        else:
            parts.append(f"{name} = ?")
            values.append(value)
    return " WHERE " + " AND ".join(parts), values
