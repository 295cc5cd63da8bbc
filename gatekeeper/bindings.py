"""
Database bindings the gateway forwards statements to.

A binding is a named, immutable description of how to reach one database.
Each call to ``execute`` opens its own connection (or HTTP request), runs a
single prepared statement with its ordered parameters, materialises the full
result, and closes everything again. Nothing is shared between requests.

Driver failures surface as ``ExecutionFailure`` chained from the driver error,
so the gateway can report the deepest message.
"""
import datetime
import decimal
import logging
import re
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence
from urllib.parse import unquote, urlparse

import mysql.connector
import requests

from gatekeeper.errors import ClientInputError, ConfigError, ExecutionFailure

_log = logging.getLogger("gatekeeper.bindings")

BINDING_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")


@dataclass(frozen=True)
class ExecutionResult:
    rows: list
    columns: tuple = ()
    changes: int = 0
    last_row_id: Optional[int] = None
    rows_read: int = 0
    duration_ms: float = 0.0

    def to_dict(self, binding: str) -> dict:
        return {
            "success": True,
            "results": self.rows,
            "meta": {
                "binding": binding,
                "columns": list(self.columns),
                "changes": self.changes,
                "last_row_id": self.last_row_id,
                "rows_read": self.rows_read,
                "duration": round(self.duration_ms, 3),
            },
        }


def jsonable(value: Any) -> Any:
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        return value.isoformat()
    # mysql TIME columns come back as timedelta
    if isinstance(value, datetime.timedelta):
        return str(value)
    # mysql SET columns
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return value


def _row_dicts(columns: Sequence[str], rows) -> list:
    return [{col: jsonable(v) for col, v in zip(columns, row)} for row in rows]


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


@dataclass(frozen=True)
class MySQLBinding:
    name: str
    host: str
    user: str
    password: str = field(default="", repr=False)
    database: str = ""
    port: int = 3306
    kind = "mysql"

    def _connect(self, timeout: float):
        return mysql.connector.connect(
            host=self.host,
            port=self.port,
            user=self.user,
            password=self.password,
            database=self.database or None,
            autocommit=True,
            connection_timeout=max(1, int(timeout)),
        )

    def _limit_session(self, conn, timeout: float) -> None:
        cur = conn.cursor()
        try:
            cur.execute("SET SESSION max_execution_time = %s", (int(timeout * 1000),))
        except mysql.connector.Error as e:
            # MariaDB and old servers lack the variable; connection_timeout still applies
            _log.warning("binding=%s no statement deadline on server: %s", self.name, e)
        finally:
            cur.close()

    def execute(self, statement: str, parameters: Sequence, timeout: float) -> ExecutionResult:
        start = time.perf_counter()
        try:
            conn = self._connect(timeout)
        except mysql.connector.Error as e:
            raise ExecutionFailure(f"could not connect to binding {self.name!r}") from e

        try:
            self._limit_session(conn, timeout)
            cur = conn.cursor(prepared=True)
            cur.execute(statement, tuple(parameters))
            if cur.with_rows:
                columns = tuple(cur.column_names)
                rows = _row_dicts(columns, cur.fetchall())
            else:
                columns, rows = (), []
            changes = 0 if cur.with_rows else max(cur.rowcount, 0)
            last_row_id = cur.lastrowid or None
            cur.close()
        except mysql.connector.Error as e:
            raise ExecutionFailure(f"statement failed on binding {self.name!r}") from e
        finally:
            conn.close()

        return ExecutionResult(
            rows=rows,
            columns=columns,
            changes=changes,
            last_row_id=last_row_id,
            rows_read=len(rows),
            duration_ms=_elapsed_ms(start),
        )


@dataclass(frozen=True)
class SQLiteBinding:
    name: str
    path: str
    kind = "sqlite"

    def execute(self, statement: str, parameters: Sequence, timeout: float) -> ExecutionResult:
        start = time.perf_counter()
        deadline = time.monotonic() + timeout
        conn = sqlite3.connect(self.path, timeout=timeout)
        # a non-zero return aborts the running statement with "interrupted"
        conn.set_progress_handler(lambda: int(time.monotonic() > deadline), 1000)
        try:
            cur = conn.execute(statement, tuple(parameters))
            columns = tuple(d[0] for d in cur.description or ())
            rows = _row_dicts(columns, cur.fetchall())
            changes = max(cur.rowcount, 0) if not columns else 0
            last_row_id = cur.lastrowid or None
            conn.commit()
        except sqlite3.OperationalError as e:
            if str(e) == "interrupted":
                raise ExecutionFailure(f"statement exceeded the {timeout:g}s deadline") from None
            raise ExecutionFailure(f"statement failed on binding {self.name!r}") from e
        except sqlite3.Error as e:
            raise ExecutionFailure(f"statement failed on binding {self.name!r}") from e
        finally:
            conn.close()

        return ExecutionResult(
            rows=rows,
            columns=columns,
            changes=changes,
            last_row_id=last_row_id,
            rows_read=len(rows),
            duration_ms=_elapsed_ms(start),
        )


@dataclass(frozen=True)
class HttpBinding:
    """
    Remote SQL-over-HTTP endpoint.

    Request body is ``{"sql": ..., "params": [...]}``. The response is expected
    in the shape used by hosted SQLite services::

        {"success": true, "errors": [], "result": [{"results": [...], "meta": {...}}]}
    """
    name: str
    url: str
    token: Optional[str] = field(default=None, repr=False)
    kind = "http"

    def execute(self, statement: str, parameters: Sequence, timeout: float) -> ExecutionResult:
        start = time.perf_counter()
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            resp = requests.post(
                self.url,
                json={"sql": statement, "params": list(parameters)},
                headers=headers,
                timeout=timeout,
            )
        except requests.exceptions.Timeout:
            raise ExecutionFailure(f"statement exceeded the {timeout:g}s deadline") from None
        except requests.exceptions.RequestException as e:
            raise ExecutionFailure(f"binding {self.name!r} unreachable") from e

        try:
            body = resp.json()
        except ValueError:
            raise ExecutionFailure(
                f"binding {self.name!r} returned a non-JSON response (HTTP {resp.status_code})"
            ) from None
        if not isinstance(body, dict):
            raise ExecutionFailure(f"binding {self.name!r} returned an unexpected response")

        if not resp.ok or not body.get("success", True):
            errors = body.get("errors") or []
            msg = "; ".join(
                str(e.get("message")) for e in errors if isinstance(e, dict) and e.get("message")
            )
            raise ExecutionFailure(msg or f"binding {self.name!r} answered HTTP {resp.status_code}")

        result = body.get("result") or {}
        if isinstance(result, list):
            result = result[0] if result else {}
        rows = result.get("results") or []
        meta = result.get("meta") or {}

        return ExecutionResult(
            rows=rows,
            columns=tuple(rows[0]) if rows and isinstance(rows[0], dict) else (),
            changes=meta.get("changes", 0),
            last_row_id=meta.get("last_row_id"),
            rows_read=meta.get("rows_read", len(rows)),
            duration_ms=_elapsed_ms(start),
        )


def _sqlite_path(parsed) -> str:
    if parsed.netloc == ":memory:" or parsed.path in ("", "/:memory:"):
        return ":memory:"
    # sqlite:///relative.db and sqlite:////absolute/path.db
    return unquote(parsed.path[1:])


def binding_from_url(name: str, url: str, token: Optional[str] = None):
    if not BINDING_NAME_RE.match(name):
        raise ConfigError(f"invalid binding name: {name!r}")

    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    if scheme == "mysql":
        if not parsed.hostname:
            raise ConfigError(f"binding {name!r}: mysql url needs a host")
        return MySQLBinding(
            name=name,
            host=parsed.hostname,
            port=parsed.port or 3306,
            user=unquote(parsed.username or ""),
            password=unquote(parsed.password or ""),
            database=parsed.path.lstrip("/"),
        )
    if scheme == "sqlite":
        return SQLiteBinding(name=name, path=_sqlite_path(parsed))
    if scheme in ("http", "https"):
        return HttpBinding(name=name, url=url, token=token)
    raise ConfigError(f"binding {name!r}: unsupported url scheme {parsed.scheme!r}")


def token_env_var(name: str) -> str:
    return "GATEKEEPER_TOKEN_" + name.upper().replace("-", "_")


def parse_bindings(spec: str, environ: Mapping[str, str]) -> dict:
    """Parse ``name=url,name=url`` into an ordered binding table."""
    table = {}
    for entry in spec.split(","):
        entry = entry.strip()
        if not entry:
            continue
        name, sep, url = entry.partition("=")
        name, url = name.strip(), url.strip()
        if not sep or not url:
            raise ConfigError(f"binding entry must look like name=url, got {entry!r}")
        if name in table:
            raise ConfigError(f"binding {name!r} defined twice")
        table[name] = binding_from_url(name, url, token=environ.get(token_env_var(name)))
    if not table:
        raise ConfigError("GATEKEEPER_BINDINGS is set but names no binding")
    return table


def resolve_binding(target: Optional[str], config):
    """Pick the binding a request runs against."""
    if not config.supports_multiple_bindings or target is None:
        name = config.default_binding
        if name is None:
            raise ClientInputError("Invalid request: \"targetBinding\" is required.")
        return config.bindings[name]
    try:
        return config.bindings[target]
    except KeyError:
        raise ClientInputError(f"Invalid request: unknown target binding {target!r}.") from None
