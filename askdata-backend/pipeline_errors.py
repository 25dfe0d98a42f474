"""
AskData - Error Taxonomy
========================

Every failure the query pipeline can surface is one of the classes below.
Callers branch on the class (or on ``ExecutionError.retryable``), never on
message text. Engine and driver messages are kept verbatim in
``engine_message`` so nothing the database said is lost.

    AskDataError
    ├── ConfigurationError
    ├── DataSourceConnectionError (also a builtin ConnectionError)
    │   ├── AuthenticationFailedError
    │   ├── NetworkUnreachableError
    │   └── UnknownDatabaseError
    ├── IngestionError
    ├── GenerationError
    │   └── UngenerableQueryError
    ├── RepairError
    │   ├── StaleTableReferenceError
    │   ├── MissingAnchorError
    │   └── ReadOnlyViolationError
    ├── QueryValidationError
    └── ExecutionError
"""

from typing import Any, Dict, List, Optional


class AskDataError(Exception):
    """Base class for all pipeline errors."""

    code = "askdata_error"

    def __init__(self, message: str, engine_message: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.engine_message = engine_message
        # Filled in by QueryService when the error crosses the request boundary
        self.stage: Optional[str] = None
        self.diagnostics: Dict[str, Any] = {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.engine_message:
            payload["engine_message"] = self.engine_message
        if self.stage:
            payload["stage"] = self.stage
        return payload


class ConfigurationError(AskDataError):
    """Unsupported engine kind, missing fields, missing driver, unknown source."""

    code = "configuration_error"


# =============================================================================
# CONNECTION FAILURES
# =============================================================================

class DataSourceConnectionError(AskDataError, ConnectionError):
    """A connector could not reach or log into its database."""

    code = "connection_error"
    reason = "unknown"

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["reason"] = self.reason
        return payload


class AuthenticationFailedError(DataSourceConnectionError):
    code = "authentication_failed"
    reason = "authentication"


class NetworkUnreachableError(DataSourceConnectionError):
    code = "network_unreachable"
    reason = "network"


class UnknownDatabaseError(DataSourceConnectionError):
    code = "unknown_database"
    reason = "unknown_database"


class IngestionError(AskDataError):
    """Ingestion failed; nothing from the attempt was kept."""

    code = "ingestion_error"


# =============================================================================
# GENERATION / REPAIR FAILURES
# =============================================================================

class GenerationError(AskDataError):
    """The language model produced nothing usable."""

    code = "generation_error"


class UngenerableQueryError(GenerationError):
    """The model answered with the INVALID_QUERY sentinel."""

    code = "ungenerable_query"

    def __init__(self, reason: str):
        super().__init__(f"The question cannot be answered with the available data: {reason}")
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["reason"] = self.reason
        return payload


class RepairError(AskDataError):
    """A required structural anchor could not be located in the statement."""

    code = "repair_error"


class StaleTableReferenceError(RepairError):
    code = "stale_table_reference"

    def __init__(self, reference: str, suggestion: str):
        super().__init__(
            f"FROM clause references raw source name '{reference}'; "
            f"the table is named '{suggestion}'"
        )
        self.reference = reference
        self.suggestion = suggestion

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update(reference=self.reference, suggestion=self.suggestion)
        return payload


class MissingAnchorError(RepairError):
    code = "missing_anchor"


class ReadOnlyViolationError(RepairError):
    code = "read_only_violation"


# =============================================================================
# VALIDATION / EXECUTION FAILURES
# =============================================================================

class QueryValidationError(AskDataError):
    """Statement references identifiers the selected schemas do not expose."""

    code = "validation_error"

    def __init__(
        self,
        message: str,
        unknown_identifiers: Optional[List[str]] = None,
        ambiguous_identifiers: Optional[List[str]] = None,
        unknown_tables: Optional[List[str]] = None,
        legal_columns: Optional[List[str]] = None,
        suggestions: Optional[Dict[str, List[str]]] = None,
    ):
        super().__init__(message)
        self.unknown_identifiers = unknown_identifiers or []
        self.ambiguous_identifiers = ambiguous_identifiers or []
        self.unknown_tables = unknown_tables or []
        self.legal_columns = legal_columns or []
        self.suggestions = suggestions or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            unknown_identifiers=self.unknown_identifiers,
            ambiguous_identifiers=self.ambiguous_identifiers,
            unknown_tables=self.unknown_tables,
            legal_columns=self.legal_columns,
            suggestions=self.suggestions,
        )
        return payload


class ExecutionError(AskDataError):
    """The engine rejected a validated statement."""

    code = "execution_error"

    def __init__(
        self,
        message: str,
        kind,
        engine_message: Optional[str] = None,
        identifier: Optional[str] = None,
        legal_columns: Optional[List[str]] = None,
    ):
        super().__init__(message, engine_message=engine_message)
        self.kind = kind
        self.identifier = identifier
        self.legal_columns = legal_columns or []

    @property
    def retryable(self) -> bool:
        return bool(getattr(self.kind, "retryable", False))

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            kind=getattr(self.kind, "value", str(self.kind)),
            identifier=self.identifier,
            legal_columns=self.legal_columns,
            retryable=self.retryable,
        )
        return payload
