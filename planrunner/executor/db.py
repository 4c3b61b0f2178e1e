"""Database access for database_operation steps.

Supports two backends:
- PostgreSQL (URL starting with "postgres", needs the `postgres` extra)
- SQLite (any other value: a file path, or ":memory:")

Raw SQL via psycopg2 or sqlite3. Each call opens its own connection, since
steps target whatever database the plan names rather than a service DB.

Statements run under the step's deadline and cancellation token: SQLite
is aborted from a progress handler, PostgreSQL through statement_timeout
and `connection.cancel()`.
"""

import json
import logging
import math
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

from planrunner.errors import ExecutionCancelled, StepTimeout

logger = logging.getLogger(__name__)

SQLITE_DEFAULT = "planrunner.db"

# Seconds SQLite waits on a locked database when the step has no deadline
SQLITE_BUSY_TIMEOUT = 5.0

# VM instructions between deadline/cancel checks
SQLITE_PROGRESS_OPS = 1000

CANCEL_POLL_INTERVAL = 0.1


def is_postgres(url: str) -> bool:
    return url.startswith("postgres")


def resolve_sqlite_path(url: str, base_dir: Optional[Path] = None) -> str:
    """Map a sqlite URL or path onto a filesystem path (relative to base_dir)."""
    path = url or SQLITE_DEFAULT
    if path.startswith("sqlite:///"):
        path = path[len("sqlite:///"):]
    if path == ":memory:":
        return path
    p = Path(path)
    if not p.is_absolute() and base_dir is not None:
        p = base_dir / p
    return str(p)


def is_retryable(error: Exception) -> bool:
    """False for errors in the SQL itself, which fail the same way every time."""
    if isinstance(error, sqlite3.ProgrammingError):
        return False
    if isinstance(error, sqlite3.OperationalError) and "syntax error" in str(error):
        return False
    # SQLSTATE class 42: syntax error or access rule violation
    pgcode = getattr(error, "pgcode", None)
    if isinstance(pgcode, str) and pgcode.startswith("42"):
        return False
    return True


@contextmanager
def get_connection(url: str, base_dir: Optional[Path] = None, timeout: Optional[float] = None):
    """Open a connection for `url` (Postgres DSN or sqlite path).

    Usage:
        with get_connection(url) as conn:
            cursor = conn.cursor()
            cursor.execute(...)
            conn.commit()
    """
    if is_postgres(url):
        import psycopg2
        kwargs: dict[str, Any] = {}
        if timeout is not None:
            kwargs["connect_timeout"] = max(1, math.ceil(timeout))
            kwargs["options"] = f"-c statement_timeout={max(1, int(timeout * 1000))}"
        conn = psycopg2.connect(url, **kwargs)
        try:
            yield conn
        finally:
            conn.close()
    else:
        path = resolve_sqlite_path(url, base_dir)
        conn = sqlite3.connect(
            path,
            timeout=timeout if timeout is not None else SQLITE_BUSY_TIMEOUT,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()


def _json_dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, default=str)


def _rows_to_dicts(cursor, rows, postgres: bool) -> list[dict]:
    if postgres:
        columns = [desc[0] for desc in cursor.description or []]
        return [dict(zip(columns, row)) for row in rows]
    return [dict(row) for row in rows]


def _watch_sqlite(conn, deadline: Optional[float], cancel_event: Optional[threading.Event]) -> None:
    def check() -> int:
        if cancel_event is not None and cancel_event.is_set():
            return 1
        if deadline is not None and time.monotonic() >= deadline:
            return 1
        return 0

    conn.set_progress_handler(check, SQLITE_PROGRESS_OPS)


@contextmanager
def _watch_postgres(conn, cancel_event: Optional[threading.Event]):
    """Cancel the running statement from a side thread once the token fires."""
    if cancel_event is None:
        yield
        return

    finished = threading.Event()

    def watch() -> None:
        while not finished.is_set():
            if cancel_event.wait(CANCEL_POLL_INTERVAL):
                logger.info("Cancelling running PostgreSQL statement")
                conn.cancel()
                return

    watcher = threading.Thread(target=watch, name="db-cancel-watch", daemon=True)
    watcher.start()
    try:
        yield
    finally:
        finished.set()
        watcher.join(1.0)


def run_operation(
    operation: str,
    statement: Optional[str],
    url: str,
    base_dir: Optional[Path] = None,
    timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
) -> str:
    """Run one database step and return its output text.

    Args:
        operation: "query" (rows as JSON), "execute" (rowcount),
            "script" (multi-statement), "ping" (connectivity check)
        statement: SQL text (ignored for ping)
        url: sqlite path or postgres:// DSN
        timeout: seconds the whole operation may take
        cancel_event: aborts the running statement when set

    Raises:
        StepTimeout: the deadline passed mid-statement
        ExecutionCancelled: the token fired mid-statement
        the driver's error on any other failure; the dispatcher classifies it
    """
    postgres = is_postgres(url)
    backend = "PostgreSQL" if postgres else f"SQLite ({resolve_sqlite_path(url, base_dir)})"
    deadline = time.monotonic() + timeout if timeout is not None else None

    try:
        with get_connection(url, base_dir, timeout) as conn:
            if postgres:
                with _watch_postgres(conn, cancel_event):
                    return _run(conn, operation, statement, backend, postgres)
            _watch_sqlite(conn, deadline, cancel_event)
            return _run(conn, operation, statement, backend, postgres)
    except Exception as e:
        if cancel_event is not None and cancel_event.is_set():
            raise ExecutionCancelled()
        if deadline is not None and time.monotonic() >= deadline:
            raise StepTimeout(f"Database {operation} timed out after {timeout:.1f}s on {backend}") from e
        if getattr(e, "pgcode", None) == "57014":
            # query_canceled: statement_timeout fired server-side
            raise StepTimeout(f"Database {operation} timed out on {backend}: {e}") from e
        raise


def _run(conn, operation: str, statement: Optional[str], backend: str, postgres: bool) -> str:
    cursor = conn.cursor()

    if operation == "ping":
        cursor.execute("SELECT 1")
        cursor.fetchone()
        return f"Database reachable: {backend}"

    if operation == "query":
        cursor.execute(statement)
        rows = _rows_to_dicts(cursor, cursor.fetchall(), postgres)
        logger.debug(f"Query returned {len(rows)} rows from {backend}")
        return _json_dumps(rows)

    if operation == "script":
        if postgres:
            cursor.execute(statement)
        else:
            cursor.executescript(statement)
        conn.commit()
        return f"Script executed on {backend}"

    if operation == "execute":
        cursor.execute(statement)
        conn.commit()
        return f"Statement executed on {backend}: {cursor.rowcount} row(s) affected"

    raise ValueError(f"Unknown database operation: {operation}")
