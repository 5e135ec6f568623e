"""
Database utilities - pooled engine and safe, parameterized query execution.
"""
import logging
import time
from typing import Any, Dict, List, Sequence, Tuple

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.services.errors import ExecutionError
from backend.services.models import QueryResult
from backend.services.runtime import log_event

logger = logging.getLogger("db_utils")


def create_store_engine(database_url: str, pool_size: int = 5, max_overflow: int = 10) -> Engine:
    """Create the pooled SQLAlchemy engine behind the query executor.

    Connections are not opened here; the pool connects on first checkout.
    """
    kwargs: Dict[str, Any] = {
        "pool_pre_ping": True,   # verify connections before use
        "pool_recycle": 300,     # remote DBs drop idle connections
        "echo": False,
    }
    if not database_url.startswith("sqlite"):
        kwargs.update(pool_size=pool_size, max_overflow=max_overflow)
    engine = create_engine(database_url, **kwargs)

    if engine.dialect.name == "postgresql":
        # Every pooled connection is read-only at the server, whatever SQL reaches it.
        @event.listens_for(engine, "connect")
        def _set_session_options(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            try:
                cursor.execute("SET SESSION CHARACTERISTICS AS TRANSACTION READ ONLY")
                dbapi_conn.commit()
            finally:
                cursor.close()

    log_event(logger, logging.INFO, "engine_created", dialect=engine.dialect.name)
    return engine


def _first_line(exc: Exception) -> str:
    return (str(exc) or exc.__class__.__name__).splitlines()[0]


def bind_positional(sql: str, params: Sequence[Any]) -> Tuple[str, Dict[str, Any]]:
    """Rewrite `?` placeholders (outside string literals) into bound parameters.

    Values are never spliced into the SQL text.
    """
    out: List[str] = []
    binds: Dict[str, Any] = {}
    in_quote = False
    for ch in sql:
        if ch == "'":
            in_quote = not in_quote
        elif ch == "?" and not in_quote:
            name = f"p{len(binds) + 1}"
            if len(binds) >= len(params):
                raise ExecutionError(f"SQL has more placeholders than the {len(params)} params supplied")
            binds[name] = params[len(binds)]
            out.append(f":{name}")
            continue
        out.append(ch)
    if len(binds) != len(params):
        raise ExecutionError(f"SQL has {len(binds)} placeholders but {len(params)} params were supplied")
    return "".join(out), binds


class QueryExecutor:
    """Runs validated statements; a connection is checked out per call and always returned."""

    def __init__(self, engine: Engine, max_rows: int = 1000, chunk_size: int = 500):
        self._engine = engine
        self.max_rows = max(1, int(max_rows))
        self.chunk_size = max(1, int(chunk_size))

    def execute(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        statement, binds = bind_positional(sql, tuple(params or ()))
        started = time.perf_counter()
        try:
            with self._engine.connect() as conn:
                result = conn.execute(text(statement), binds)
                if not result.returns_rows:
                    return []
                columns = list(result.keys())
                rows: List[Any] = []
                # fetchmany keeps peak memory bounded for large result sets
                while True:
                    chunk = result.fetchmany(self.chunk_size)
                    if not chunk:
                        break
                    rows.extend(chunk)
                    if len(rows) >= self.max_rows:
                        rows = rows[:self.max_rows]
                        break
        except SQLAlchemyError as exc:
            reason = _first_line(exc)
            log_event(logger, logging.ERROR, "query_failed", sql=sql, error=reason)
            raise ExecutionError(f"Database error: {reason}") from exc

        log_event(logger, logging.INFO, "query_ok", row_count=len(rows),
                  elapsed_ms=round((time.perf_counter() - started) * 1000, 2))
        return [dict(zip(columns, row)) for row in rows]

    def dispose(self) -> None:
        self._engine.dispose()
