"""
AskData - Query Executor
========================

Runs a validated statement through a connector and turns engine failures
into classified ExecutionErrors.

    unknown_column / unknown_table / syntax_error
        generation failures; the caller may re-prompt (retryable)
    connection_lost / engine_error
        infrastructure failures; fatal for the request
"""

import logging
import re
import time
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from connectors import DatabaseConnector
from pipeline_errors import ExecutionError

logger = logging.getLogger(__name__)


class ExecutionErrorKind(str, Enum):
    UNKNOWN_COLUMN = "unknown_column"
    UNKNOWN_TABLE = "unknown_table"
    SYNTAX_ERROR = "syntax_error"
    CONNECTION_LOST = "connection_lost"
    ENGINE_ERROR = "engine_error"

    @property
    def retryable(self) -> bool:
        return self in (
            ExecutionErrorKind.UNKNOWN_COLUMN,
            ExecutionErrorKind.UNKNOWN_TABLE,
            ExecutionErrorKind.SYNTAX_ERROR,
        )


# (pattern, group holding the offending name or None), checked in order
_UNKNOWN_COLUMN_PATTERNS: Sequence[Tuple[re.Pattern, Optional[int]]] = (
    (re.compile(r"Unknown column '([^']+)'", re.IGNORECASE), 1),                 # mysql
    (re.compile(r"no such column: ([^\s,]+)", re.IGNORECASE), 1),                # sqlite
    (re.compile(r'column "?([^"\s]+)"? does not exist', re.IGNORECASE), 1),      # postgres
    (re.compile(r"Invalid column name '([^']+)'", re.IGNORECASE), 1),            # mssql
    (re.compile(r'ORA-00904: "?([^":]+)"?(?:\."?([^":]+)"?)?: invalid identifier', re.IGNORECASE), 1),
)
_UNKNOWN_TABLE_PATTERNS: Sequence[Tuple[re.Pattern, Optional[int]]] = (
    (re.compile(r"Table '([^']+)' doesn't exist", re.IGNORECASE), 1),
    (re.compile(r"no such table: ([^\s,]+)", re.IGNORECASE), 1),
    (re.compile(r'relation "([^"]+)" does not exist', re.IGNORECASE), 1),
    (re.compile(r"Invalid object name '([^']+)'", re.IGNORECASE), 1),
    (re.compile(r"ORA-00942", re.IGNORECASE), None),
)
_SYNTAX_ERROR_PATTERNS = re.compile(
    r"You have an error in your SQL syntax|syntax error|Incorrect syntax near"
    r"|ORA-00933|ORA-00936|ORA-00923|ORA-00907|incomplete input|unrecognized token",
    re.IGNORECASE,
)
_CONNECTION_LOST_PATTERNS = re.compile(
    r"Lost connection|server has gone away|server closed the connection|connection reset"
    r"|terminating connection|broken pipe|ORA-03113|ORA-03114|DPY-4011|Communication link failure"
    r"|timed out|timeout expired|canceling statement due to statement timeout|ORA-03156|DPY-4024",
    re.IGNORECASE,
)


def classify_execution_error(exc: BaseException) -> Tuple[ExecutionErrorKind, Optional[str], str]:
    """Return (kind, offending identifier, engine message) for a driver error."""
    original = getattr(exc, "orig", None)
    message = str(original if original is not None else exc).strip()

    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return ExecutionErrorKind.CONNECTION_LOST, None, message

    for pattern, group in _UNKNOWN_COLUMN_PATTERNS:
        match = pattern.search(message)
        if match:
            return ExecutionErrorKind.UNKNOWN_COLUMN, match.group(group) if group else None, message
    for pattern, group in _UNKNOWN_TABLE_PATTERNS:
        match = pattern.search(message)
        if match:
            return ExecutionErrorKind.UNKNOWN_TABLE, match.group(group) if group else None, message
    if _SYNTAX_ERROR_PATTERNS.search(message):
        return ExecutionErrorKind.SYNTAX_ERROR, None, message
    if _CONNECTION_LOST_PATTERNS.search(message):
        return ExecutionErrorKind.CONNECTION_LOST, None, message
    return ExecutionErrorKind.ENGINE_ERROR, None, message


_KIND_MESSAGES = {
    ExecutionErrorKind.UNKNOWN_COLUMN: "The query references a column the database does not have",
    ExecutionErrorKind.UNKNOWN_TABLE: "The query references a table the database does not have",
    ExecutionErrorKind.SYNTAX_ERROR: "The database rejected the query syntax",
    ExecutionErrorKind.CONNECTION_LOST: "The database connection was lost while running the query",
    ExecutionErrorKind.ENGINE_ERROR: "The database failed to run the query",
}


class QueryExecutor:
    """Executes statements and classifies what goes wrong."""

    def execute(
        self,
        connector: DatabaseConnector,
        sql: str,
        legal_columns: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        start_time = time.perf_counter()
        try:
            rows = connector.execute_query(sql)
        except SQLAlchemyError as e:
            kind, identifier, engine_message = classify_execution_error(e)
            message = _KIND_MESSAGES[kind]
            if identifier:
                message += f": {identifier}"
            logger.warning(f"[EXECUTOR] {kind.value}: {engine_message}")
            raise ExecutionError(
                message,
                kind=kind,
                engine_message=engine_message,
                identifier=identifier,
                legal_columns=list(legal_columns or []) if kind is ExecutionErrorKind.UNKNOWN_COLUMN else [],
            ) from e

        elapsed = time.perf_counter() - start_time
        logger.info(f"[EXECUTOR] Query executed: {len(rows)} rows in {elapsed:.3f}s")
        return rows
