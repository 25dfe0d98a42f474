"""
AskData - Query Service
=======================

PURPOSE:
    The one entry point the HTTP layer talks to. Owns the catalog, the store
    connector, the connector registry and the LLM gateway for one process,
    and drives each question through the request state machine:

        Received -> SchemaResolved -> SQLGenerated -> Repaired
                 -> Validated -> Executed -> Answered

    Terminal failures: FailedAtGeneration | FailedAtValidation |
    FailedAtExecution. Stages only move forward. The only internal retry is
    the single SELECT * correction inside the repair pipeline.

EXPOSED OPERATIONS:
    execute_query(question, source_ids) -> QueryResult(sql, rows, diagnostics)
    test_connection(config)             -> [table names]
    fetch_schemas(config, table_names)  -> {table name: TableSchema}
    register_database / ingest_file / ingest_columns / remove_source
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app_config import Settings
from column_validator import ColumnValidator
from connectors import ConnectionConfig, ConnectorRegistry, DatabaseConnector, create_connector
from llm_gateway import LLMGateway
from pipeline_errors import (
    AskDataError,
    ConfigurationError,
    DataSourceConnectionError,
    ExecutionError,
    GenerationError,
    IngestionError,
    RepairError,
)
from query_executor import QueryExecutor
from schema_catalog import (
    DOCUMENT_EXTENSIONS,
    SPREADSHEET_EXTENSIONS,
    DataSourceRecord,
    SchemaCatalog,
    SourceKind,
    TableSchema,
    read_spreadsheet,
)
from sql_repair import RepairContext, SQLRepairPipeline

logger = logging.getLogger(__name__)


# =============================================================================
# REQUEST STATE MACHINE
# =============================================================================

class RequestStage(str, Enum):
    RECEIVED = "received"
    SCHEMA_RESOLVED = "schema_resolved"
    SQL_GENERATED = "sql_generated"
    REPAIRED = "repaired"
    VALIDATED = "validated"
    EXECUTED = "executed"
    ANSWERED = "answered"
    FAILED_AT_GENERATION = "failed_at_generation"
    FAILED_AT_VALIDATION = "failed_at_validation"
    FAILED_AT_EXECUTION = "failed_at_execution"

    @property
    def is_failure(self) -> bool:
        return self.value.startswith("failed_")


_STAGE_ORDER = [
    RequestStage.RECEIVED,
    RequestStage.SCHEMA_RESOLVED,
    RequestStage.SQL_GENERATED,
    RequestStage.REPAIRED,
    RequestStage.VALIDATED,
    RequestStage.EXECUTED,
    RequestStage.ANSWERED,
]


class RequestTrace:
    """Forward-only record of the stages one request went through."""

    def __init__(self):
        self._started = time.perf_counter()
        self.stage = RequestStage.RECEIVED
        self.history: List[Dict[str, Any]] = [{"stage": self.stage.value, "elapsed_ms": 0.0}]
        self.warnings: List[str] = []
        self.details: Dict[str, Any] = {}

    def advance(self, stage: RequestStage) -> None:
        if self.stage.is_failure:
            raise RuntimeError(f"Request already terminated at {self.stage.value}")
        if stage.is_failure or _STAGE_ORDER.index(stage) <= _STAGE_ORDER.index(self.stage):
            raise RuntimeError(f"Illegal transition {self.stage.value} -> {stage.value}")
        self._record(stage)

    def fail(self, stage: RequestStage) -> None:
        if not stage.is_failure:
            raise RuntimeError(f"{stage.value} is not a failure stage")
        if self.stage.is_failure:
            return
        self._record(stage)

    def _record(self, stage: RequestStage) -> None:
        self.stage = stage
        elapsed = (time.perf_counter() - self._started) * 1000
        self.history.append({"stage": stage.value, "elapsed_ms": round(elapsed, 2)})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "trace": list(self.history),
            "warnings": list(self.warnings),
            **self.details,
        }


@dataclass
class QueryResult:
    sql: str
    rows: List[Dict[str, Any]]
    diagnostics: Dict[str, Any] = field(default_factory=dict)
    answer: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sql": self.sql,
            "rows": self.rows,
            "row_count": len(self.rows),
            "answer": self.answer,
            "diagnostics": self.diagnostics,
        }


# =============================================================================
# SERVICE
# =============================================================================

class QueryService:
    def __init__(
        self,
        catalog: SchemaCatalog,
        store_connector: DatabaseConnector,
        gateway: Optional[LLMGateway],
        registry: Optional[ConnectorRegistry] = None,
        executor: Optional[QueryExecutor] = None,
        settings: Optional[Settings] = None,
    ):
        self.catalog = catalog
        self.store_connector = store_connector
        self.gateway = gateway
        self.registry = registry or ConnectorRegistry()
        self.executor = executor or QueryExecutor()
        self.settings = settings or Settings()

    # ------------------------------------------------------------ questions

    async def execute_query(self, question: str, source_ids: Sequence[str]) -> QueryResult:
        trace = RequestTrace()
        question = (question or "").strip()
        if not question:
            raise ConfigurationError("A question is required")
        if not source_ids:
            raise ConfigurationError("Select at least one data source")
        if self.gateway is None:
            raise ConfigurationError("No language model is configured")

        records = await asyncio.to_thread(self._resolve_sources, source_ids)
        database_record = self._target_database(records)
        schemas = [schema for record in records for schema in record.schemas]
        trace.details["sources"] = [record.name for record in records]
        trace.advance(RequestStage.SCHEMA_RESOLVED)
        logger.info(
            f"[PIPELINE] Question over {len(schemas)} table(s) "
            f"from {', '.join(trace.details['sources'])}: {question!r}"
        )

        # Generation + repair
        try:
            raw_sql = await self.gateway.generate_sql(schemas, question)
            trace.details["raw_sql"] = raw_sql
            trace.advance(RequestStage.SQL_GENERATED)

            pipeline = SQLRepairPipeline(RepairContext.from_schemas(schemas))
            repaired = await pipeline.repair(
                raw_sql,
                correct_projection=lambda sql: self.gateway.correct_projection(sql, question),
            )
        except (GenerationError, RepairError) as e:
            raise self._failed(trace, RequestStage.FAILED_AT_GENERATION, e)

        sql = repaired.sql
        trace.warnings.extend(repaired.warnings)
        trace.details["repair_steps"] = repaired.applied_steps
        trace.advance(RequestStage.REPAIRED)

        # Validation
        validation = ColumnValidator(schemas).validate(sql)
        if not validation.valid:
            raise self._failed(trace, RequestStage.FAILED_AT_VALIDATION, validation.to_error())
        trace.advance(RequestStage.VALIDATED)

        # Execution
        try:
            if database_record is not None:
                connector = await self.registry.aget(
                    database_record.id, self._prepare(database_record.connection_config)
                )
            else:
                connector = self.store_connector
            trace.details["engine"] = connector.engine_kind.value
            rows = await asyncio.to_thread(
                self.executor.execute, connector, sql, validation.legal_columns
            )
        except (ExecutionError, DataSourceConnectionError, ConfigurationError) as e:
            raise self._failed(trace, RequestStage.FAILED_AT_EXECUTION, e)
        trace.details["row_count"] = len(rows)
        trace.advance(RequestStage.EXECUTED)

        answer = None
        if self.settings.generate_answers:
            try:
                answer = await self.gateway.generate_answer(question, rows)
                trace.advance(RequestStage.ANSWERED)
            except GenerationError as e:
                logger.warning(f"[PIPELINE] Answer generation failed, returning rows only: {e}")
                trace.details["answer_error"] = e.message

        logger.info(f"[PIPELINE] Done at {trace.stage.value}: {len(rows)} rows")
        return QueryResult(sql=sql, rows=rows, diagnostics=trace.to_dict(), answer=answer)

    def _resolve_sources(self, source_ids: Sequence[str]) -> List[DataSourceRecord]:
        return [self.catalog.resolve(identifier) for identifier in source_ids]

    def _target_database(self, records: List[DataSourceRecord]) -> Optional[DataSourceRecord]:
        """The saved database all records live on, or None for uploaded sources."""
        databases = [record for record in records if record.is_database]
        if not databases:
            return None
        if len(databases) != len(records):
            raise ConfigurationError(
                "Uploaded files and database connections cannot be queried together"
            )
        first = databases[0]
        for record in databases[1:]:
            if not self._same_database(first.connection_config, record.connection_config):
                raise ConfigurationError("All selected sources must belong to the same database")
        return first

    @staticmethod
    def _same_database(a: Dict[str, Any], b: Dict[str, Any]) -> bool:
        keys = ("engine_kind", "host", "port", "database", "service_name", "connect_string")
        return all((a or {}).get(key) == (b or {}).get(key) for key in keys)

    @staticmethod
    def _failed(trace: RequestTrace, stage: RequestStage, error: AskDataError) -> AskDataError:
        trace.fail(stage)
        error.stage = stage.value
        error.diagnostics = trace.to_dict()
        logger.warning(f"[PIPELINE] {stage.value}: {error.code}: {error.message}")
        return error

    # ------------------------------------------------- live connections

    def _prepare(self, config) -> ConnectionConfig:
        if not isinstance(config, ConnectionConfig):
            config = ConnectionConfig.from_dict(config)
        return config.with_timeouts(
            self.settings.connect_timeout_seconds, self.settings.query_timeout_seconds
        )

    def test_connection(self, config) -> List[str]:
        connector = create_connector(self._prepare(config))
        try:
            connector.connect()
            return connector.get_tables()
        finally:
            connector.disconnect()

    def fetch_schemas(self, config, table_names: Optional[List[str]] = None) -> Dict[str, TableSchema]:
        connector = create_connector(self._prepare(config))
        try:
            connector.connect()
            return {schema.table_name: schema for schema in connector.get_schema(table_names or None)}
        finally:
            connector.disconnect()

    def register_database(
        self, name: str, config, table_names: Optional[List[str]] = None
    ) -> DataSourceRecord:
        """Save a live database as a data source with the chosen tables' schemas."""
        config = self._prepare(config)
        schemas = list(self.fetch_schemas(config, table_names).values())
        if not schemas:
            raise ConfigurationError(f"Database '{name}' has no tables to query")
        return self.catalog.add_database_source(name, config.to_dict(), schemas)

    # ------------------------------------------------------------ ingestion

    def ingest_file(self, path: str, source_name: Optional[str] = None) -> DataSourceRecord:
        file_path = Path(path)
        name = source_name or file_path.name
        suffix = file_path.suffix.lower()

        if suffix in SPREADSHEET_EXTENSIONS:
            try:
                frame = read_spreadsheet(str(file_path))
            except (OSError, ValueError) as e:
                raise IngestionError(f"Could not read spreadsheet '{name}'", engine_message=str(e)) from e
            return self.catalog.ingest_dataframe(name, frame, file_path=str(file_path))

        if suffix in DOCUMENT_EXTENSIONS:
            try:
                text = file_path.read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                raise IngestionError(f"Could not read document '{name}'", engine_message=str(e)) from e
            return self.catalog.ingest_document(name, text, file_path=str(file_path))

        raise IngestionError(f"Unsupported file type: {suffix or name}")

    def ingest_columns(
        self, source_name: str, columns: Sequence[Tuple[Any, Sequence[Any]]]
    ) -> DataSourceRecord:
        return self.catalog.ingest_columns(source_name, columns, kind=SourceKind.SPREADSHEET)

    # ------------------------------------------------------------- catalog

    def list_sources(self) -> List[DataSourceRecord]:
        return self.catalog.list_sources()

    def get_source(self, identifier: str) -> DataSourceRecord:
        return self.catalog.resolve(identifier)

    def remove_source(self, source_id: str) -> DataSourceRecord:
        record = self.catalog.remove_source(source_id)
        self.registry.evict(record.id)
        return record

    async def close(self) -> None:
        self.registry.close_all()
        self.store_connector.disconnect()
        if self.gateway is not None:
            await self.gateway.close()
