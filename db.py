import logging
from typing import Any, Dict, List, Optional

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

LOGGER = logging.getLogger(__name__)


class QueryEndpointError(Exception):
    """Error reported by the query-execution endpoint, with the server's diagnostics."""

    def __init__(self, message: str, code: Optional[str] = None,
                 details: Optional[str] = None, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details
        self.hint = hint


def _unwrap(rows: List[Dict[str, Any]], result_column: str) -> List[Dict[str, Any]]:
    # a json-returning function yields one row holding the whole result array;
    # a setof-json one yields one document per row. Only the function's own
    # output column is unwrapped.
    if not all(len(r) == 1 and result_column in r for r in rows):
        return [dict(r) for r in rows]
    if len(rows) == 1:
        value = rows[0][result_column]
        if value is None:
            return []
        if isinstance(value, list):
            return [v if isinstance(v, dict) else {"value": v} for v in value]
    return [r[result_column] if isinstance(r[result_column], dict) else dict(r) for r in rows]


class QueryEndpoint:
    """Runs one read-only statement through the server-side dynamic-select function."""

    def __init__(self, dsn: str, function: str = "execute_dynamic_select", statement_timeout_ms: int = 8000):
        self.dsn = dsn
        self.function = function
        self.statement_timeout_ms = statement_timeout_ms

    def __call__(self, statement: str) -> List[Dict[str, Any]]:
        query = sql.SQL("SELECT * FROM {}(%s)").format(sql.Identifier(*self.function.split(".")))
        try:
            # one connection per call; statement_timeout bounds every execution
            with psycopg.connect(self.dsn, row_factory=dict_row, autocommit=True,
                                 options=f"-c statement_timeout={self.statement_timeout_ms}") as conn:
                with conn.cursor() as cur:
                    cur.execute(query, (statement,))
                    rows = cur.fetchall()
        except psycopg.Error as e:
            diag = e.diag
            message = diag.message_primary or str(e).strip() or type(e).__name__
            LOGGER.debug("[db] endpoint error sqlstate=%s message=%s", e.sqlstate, message)
            raise QueryEndpointError(message, code=e.sqlstate, details=diag.message_detail,
                                     hint=diag.message_hint) from e
        return _unwrap(rows, self.function.split(".")[-1])
