"""
AskData - Schema Catalog & Ingestion
====================================

PURPOSE:
Turns uploaded tabular data into typed tables on the store database and keeps
a catalog of every queryable data source (uploaded files and saved live
database connections).

IDENTIFIERS:
Table and column names are re-derived from raw names in two places: here at
ingestion, and in the SQL repair pipeline when it recognises a raw file name
the model copied into a FROM clause. Both sides call ``sanitize_identifier``,
so it must stay pure, deterministic and idempotent.

    "1712345678901-Sales Report (Q1).xlsx" -> "sales_report_q1"
    "2024 totals"                           -> "t2024_totals"

ATOMICITY:
The backing table is created, bulk loaded and recorded in the catalog inside
one transaction. Engines without transactional DDL (MySQL) get a compensating
DROP TABLE when a later step fails, so no orphaned table or orphaned catalog
row survives a failed ingestion. A source becomes visible to queries only when
its catalog row commits, which happens after the load.
"""

import logging
import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    MetaData,
    String,
    Table,
    Text,
    delete,
    inspect,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from pipeline_errors import ConfigurationError, IngestionError

logger = logging.getLogger(__name__)


class EngineType(str, Enum):
    TEXT = "TEXT"
    INTEGER = "INTEGER"
    FLOAT = "FLOAT"
    BOOLEAN = "BOOLEAN"
    DATETIME = "DATETIME"


class SourceKind(str, Enum):
    SPREADSHEET = "spreadsheet"
    DOCUMENT = "document"
    DATABASE = "database"


@dataclass
class ColumnSchema:
    name: str
    engine_type: EngineType = EngineType.TEXT
    nullable: bool = True
    original_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "engine_type": self.engine_type.value,
            "nullable": self.nullable,
            "original_name": self.original_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ColumnSchema":
        return cls(
            name=data["name"],
            engine_type=EngineType(data.get("engine_type", "TEXT")),
            nullable=data.get("nullable", True),
            original_name=data.get("original_name"),
        )


@dataclass
class TableSchema:
    table_name: str
    original_name: str
    columns: List[ColumnSchema] = field(default_factory=list)

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table_name": self.table_name,
            "original_name": self.original_name,
            "columns": [c.to_dict() for c in self.columns],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TableSchema":
        return cls(
            table_name=data["table_name"],
            original_name=data.get("original_name", data["table_name"]),
            columns=[ColumnSchema.from_dict(c) for c in data.get("columns", [])],
        )


@dataclass
class DataSourceRecord:
    """One catalog row: an uploaded file or a saved database connection."""
    id: str
    name: str
    kind: SourceKind
    schemas: List[TableSchema]
    connection_config: Optional[Dict[str, Any]] = None
    file_path: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_database(self) -> bool:
        return self.kind == SourceKind.DATABASE

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        config = dict(self.connection_config) if self.connection_config else None
        if config and not include_secrets and config.get("password"):
            config["password"] = "********"
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "schemas": [s.to_dict() for s in self.schemas],
            "connection_config": config,
            "file_path": self.file_path,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# =============================================================================
# IDENTIFIER SANITIZATION
# =============================================================================

_NUMERIC_PREFIX_RE = re.compile(r"^\d+-")
_EXTENSION_RE = re.compile(r"\.[^/.]+$")
_ILLEGAL_CHARS_RE = re.compile(r"[^a-zA-Z0-9_]")
_REPEATED_UNDERSCORE_RE = re.compile(r"_+")


def sanitize_identifier(raw: str) -> str:
    """
    Derive the engine-safe table name for a raw source name.

    Strips a leading numeric/timestamp prefix and a file extension, maps every
    character outside [a-zA-Z0-9_] to '_', collapses and trims underscores,
    prefixes 't' when the result would start with a digit, and lowercases.
    """
    name = _NUMERIC_PREFIX_RE.sub("", str(raw).strip())
    name = _EXTENSION_RE.sub("", name)
    name = _ILLEGAL_CHARS_RE.sub("_", name)
    name = _REPEATED_UNDERSCORE_RE.sub("_", name).strip("_")
    if not name:
        return "unnamed"
    if name[0].isdigit():
        name = "t" + name
    return name.lower()


def sanitize_column_name(raw: str) -> str:
    name = str(raw).strip().lower()
    name = re.sub(r"[()]", "", name)
    name = re.sub(r"[\s#-]+", "_", name)
    name = re.sub(r"[^a-z0-9_]", "", name)
    name = _REPEATED_UNDERSCORE_RE.sub("_", name).strip("_")
    if not name:
        return "column"
    if name[0].isdigit():
        name = "col_" + name
    return name


def sanitize_column_names(raw_names: Sequence[Any]) -> List[str]:
    """Sanitize a header row; later duplicates get _2, _3, ... in column order."""
    result: List[str] = []
    seen = set()
    for raw in raw_names:
        base = sanitize_column_name(raw)
        candidate = base
        suffix = 2
        while candidate in seen:
            candidate = f"{base}_{suffix}"
            suffix += 1
        seen.add(candidate)
        result.append(candidate)
    return result


# =============================================================================
# TYPE INFERENCE
# =============================================================================

_ALPHA_RE = re.compile(r"[A-Za-z]")
_INTEGER_STRING_RE = re.compile(r"^[+-]?\d+$")
_FLOAT_STRING_RE = re.compile(r"^[+-]?(?:\d+\.\d*|\.\d+|\d+)$")


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, float) and math.isnan(value):
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _classify_value(value: Any) -> Optional[EngineType]:
    """Engine type of a single non-missing value, None for missing."""
    if _is_missing(value):
        return None
    if isinstance(value, (bool, np.bool_)):
        return EngineType.BOOLEAN
    if isinstance(value, (datetime, date, np.datetime64)):
        return EngineType.DATETIME
    if isinstance(value, (int, np.integer)):
        return EngineType.INTEGER
    if isinstance(value, (float, np.floating)):
        return EngineType.FLOAT
    if isinstance(value, str):
        text = value.strip()
        # "1e5" and "NaN" included
        if _ALPHA_RE.search(text):
            return EngineType.TEXT
        if _INTEGER_STRING_RE.match(text):
            return EngineType.INTEGER
        if _FLOAT_STRING_RE.match(text):
            return EngineType.FLOAT
        return EngineType.TEXT
    return EngineType.TEXT


def infer_column_type(values: Iterable[Any]) -> EngineType:
    """
    Infer one engine type for a column of values.

    Missing values are ignored. Any alphabetic or otherwise non-numeric string
    makes the column TEXT. Otherwise the first kind present wins in the order
    DATETIME, BOOLEAN, number; numbers are INTEGER unless one is non-integral,
    then FLOAT. Empty columns are TEXT. Values of a losing kind are coerced
    by ``coerce_value``.
    """
    kinds = set()
    for value in values:
        kind = _classify_value(value)
        if kind is None:
            continue
        if kind is EngineType.TEXT:
            return EngineType.TEXT
        kinds.add(kind)

    if not kinds:
        return EngineType.TEXT
    if EngineType.DATETIME in kinds:
        return EngineType.DATETIME
    if EngineType.BOOLEAN in kinds:
        return EngineType.BOOLEAN
    if EngineType.FLOAT in kinds:
        return EngineType.FLOAT
    return EngineType.INTEGER


def coerce_value(value: Any, engine_type: EngineType) -> Any:
    """Convert a raw cell into the Python value bound for its column type."""
    if _is_missing(value):
        return None
    if engine_type is EngineType.TEXT:
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        return str(value).strip() if isinstance(value, str) else str(value)
    if engine_type is EngineType.INTEGER:
        return int(str(value).strip()) if isinstance(value, str) else int(value)
    if engine_type is EngineType.FLOAT:
        return float(str(value).strip()) if isinstance(value, str) else float(value)
    if engine_type is EngineType.BOOLEAN:
        if isinstance(value, str):
            return float(value.strip()) != 0
        return bool(value)
    # numbers and booleans in a date column have no date to become
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, np.datetime64):
        return pd.Timestamp(value).to_pydatetime()
    return None


_SQLALCHEMY_TYPES = {
    EngineType.TEXT: Text,
    EngineType.INTEGER: BigInteger,
    EngineType.FLOAT: Float,
    EngineType.BOOLEAN: Boolean,
    EngineType.DATETIME: DateTime,
}


# =============================================================================
# FILE READERS
# =============================================================================

SPREADSHEET_EXTENSIONS = {".csv", ".tsv", ".xlsx", ".xls"}
DOCUMENT_EXTENSIONS = {".txt", ".md"}

_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")


def read_spreadsheet(path: str) -> pd.DataFrame:
    """
    First sheet of a CSV/TSV/XLSX/XLS file, fully blank rows dropped.

    Cells are kept raw: delimited files are read as strings and pandas' NA
    markers are disabled, so "N/A" or "null" reach type inference as text.
    """
    suffix = Path(path).suffix.lower()
    if suffix == ".csv":
        frame = pd.read_csv(path, dtype=str, keep_default_na=False)
    elif suffix == ".tsv":
        frame = pd.read_csv(path, sep="\t", dtype=str, keep_default_na=False)
    elif suffix in (".xlsx", ".xls"):
        frame = pd.read_excel(path, sheet_name=0, dtype=object, keep_default_na=False)
    else:
        raise IngestionError(f"Unsupported spreadsheet format: {suffix or path}")
    blank_rows = frame.apply(lambda column: column.map(_is_missing)).all(axis=1)
    return frame[~blank_rows].reset_index(drop=True)


def build_document_rows(text: str) -> List[Dict[str, Any]]:
    """One row per blank-line separated paragraph, positions starting at 1."""
    paragraphs = [p.strip() for p in _PARAGRAPH_SPLIT_RE.split(text or "")]
    return [
        {"content": paragraph, "position": index}
        for index, paragraph in enumerate((p for p in paragraphs if p), start=1)
    ]


DOCUMENT_COLUMNS = [
    ColumnSchema(name="content", engine_type=EngineType.TEXT, nullable=False),
    ColumnSchema(name="position", engine_type=EngineType.INTEGER, nullable=False),
]


# =============================================================================
# CATALOG
# =============================================================================

_catalog_metadata = MetaData()

data_sources = Table(
    "askdata_data_sources",
    _catalog_metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("kind", String(32), nullable=False),
    Column("schemas", JSON, nullable=False),
    Column("connection_config", JSON, nullable=True),
    Column("file_path", String(1024), nullable=True),
    Column("created_at", DateTime, nullable=False),
)


class SchemaCatalog:
    """
    Source catalog store plus ingestion, backed by the store database.

    Ingested tables and the catalog table live on the same engine so that one
    transaction covers both the data and its catalog row.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        _catalog_metadata.create_all(engine, tables=[data_sources])

    # ------------------------------------------------------------------ reads

    def list_sources(self) -> List[DataSourceRecord]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(data_sources).order_by(data_sources.c.created_at, data_sources.c.name)
            ).fetchall()
        return [self._to_record(row) for row in rows]

    def get(self, source_id: str) -> Optional[DataSourceRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(data_sources).where(data_sources.c.id == source_id)
            ).first()
        return self._to_record(row) if row else None

    def find_by_name(self, name: str) -> Optional[DataSourceRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(data_sources).where(data_sources.c.name == name)
            ).first()
        return self._to_record(row) if row else None

    def resolve(self, identifier: str) -> DataSourceRecord:
        """Look a source up by id, exact name, then sanitized name."""
        record = self.get(identifier) or self.find_by_name(identifier)
        if record is None:
            record = self.find_by_name(sanitize_identifier(identifier))
        if record is None:
            raise ConfigurationError(f"Unknown data source: '{identifier}'")
        return record

    # ----------------------------------------------------------- ingestion

    def ingest_dataframe(
        self,
        source_name: str,
        frame: pd.DataFrame,
        file_path: Optional[str] = None,
    ) -> DataSourceRecord:
        columns = [(column, frame[column].tolist()) for column in frame.columns]
        return self.ingest_columns(source_name, columns, file_path=file_path)

    def ingest_columns(
        self,
        source_name: str,
        columns: Sequence[Tuple[Any, Sequence[Any]]],
        kind: SourceKind = SourceKind.SPREADSHEET,
        file_path: Optional[str] = None,
    ) -> DataSourceRecord:
        """
        Ingest already-extracted ``(column_name, values)`` tuples.

        Column names are sanitized and de-duplicated; each column's type is
        inferred from all of its values.
        """
        if not columns:
            raise IngestionError(f"No columns found in '{source_name}'")

        names = sanitize_column_names([name for name, _ in columns])
        schema_columns = []
        for name, (raw_name, values) in zip(names, columns):
            schema_columns.append(ColumnSchema(
                name=name,
                engine_type=infer_column_type(values),
                nullable=True,
                original_name=str(raw_name),
            ))

        row_count = max(len(values) for _, values in columns)
        if row_count == 0:
            raise IngestionError(f"No data rows found in '{source_name}'")

        rows = []
        for index in range(row_count):
            rows.append({
                column.name: values[index] if index < len(values) else None
                for column, (_, values) in zip(schema_columns, columns)
            })

        schema = TableSchema(
            table_name=sanitize_identifier(source_name),
            original_name=source_name,
            columns=schema_columns,
        )
        return self.store_schema(schema, rows, kind=kind, file_path=file_path)

    def ingest_document(
        self, source_name: str, text: str, file_path: Optional[str] = None
    ) -> DataSourceRecord:
        rows = build_document_rows(text)
        if not rows:
            raise IngestionError(f"No text content found in '{source_name}'")
        schema = TableSchema(
            table_name=sanitize_identifier(source_name),
            original_name=source_name,
            columns=[ColumnSchema(c.name, c.engine_type, c.nullable) for c in DOCUMENT_COLUMNS],
        )
        return self.store_schema(schema, rows, kind=SourceKind.DOCUMENT, file_path=file_path)

    def store_schema(
        self,
        schema: TableSchema,
        rows: List[Dict[str, Any]],
        kind: SourceKind = SourceKind.SPREADSHEET,
        file_path: Optional[str] = None,
    ) -> DataSourceRecord:
        """
        Create the backing table, bulk load ``rows`` and write the catalog row.

        Either all three land or none do.
        """
        table_name = schema.table_name
        if self.find_by_name(table_name) is not None or inspect(self.engine).has_table(table_name):
            raise IngestionError(f"A data source named '{table_name}' already exists")

        try:
            payload = [
                {c.name: coerce_value(row.get(c.name), c.engine_type) for c in schema.columns}
                for row in rows
            ]
        except (TypeError, ValueError) as e:
            raise IngestionError(f"Could not convert data for '{table_name}': {e}") from e

        table = Table(
            table_name,
            MetaData(),
            *[
                Column(c.name, _SQLALCHEMY_TYPES[c.engine_type], nullable=c.nullable)
                for c in schema.columns
            ],
        )
        record = DataSourceRecord(
            id=str(uuid.uuid4()),
            name=table_name,
            kind=kind,
            schemas=[schema],
            file_path=file_path,
            created_at=datetime.now(),
        )

        created = False
        try:
            with self.engine.begin() as conn:
                table.create(conn)
                created = True
                if payload:
                    conn.execute(table.insert(), payload)
                conn.execute(data_sources.insert().values(**self._to_row(record)))
        except SQLAlchemyError as e:
            logger.error(f"[CATALOG] Ingestion of '{table_name}' failed, rolling back: {e}")
            if created:
                self._drop_tables([table_name])
            raise IngestionError(
                f"Failed to store data source '{table_name}'", engine_message=str(e)
            ) from e

        logger.info(
            f"[CATALOG] Stored '{table_name}' ({len(schema.columns)} columns, {len(payload)} rows)"
        )
        return record

    # --------------------------------------------------- database sources

    def add_database_source(
        self,
        name: str,
        connection_config: Dict[str, Any],
        schemas: List[TableSchema],
    ) -> DataSourceRecord:
        if self.find_by_name(name) is not None:
            raise ConfigurationError(f"A data source named '{name}' already exists")
        record = DataSourceRecord(
            id=str(uuid.uuid4()),
            name=name,
            kind=SourceKind.DATABASE,
            schemas=schemas,
            connection_config=connection_config,
            created_at=datetime.now(),
        )
        with self.engine.begin() as conn:
            conn.execute(data_sources.insert().values(**self._to_row(record)))
        logger.info(f"[CATALOG] Saved database source '{name}' ({len(schemas)} tables)")
        return record

    # ------------------------------------------------------------- removal

    def remove_source(self, source_id: str) -> DataSourceRecord:
        """Delete a catalog row; uploaded sources also lose their backing table."""
        record = self.get(source_id)
        if record is None:
            raise ConfigurationError(f"Unknown data source: '{source_id}'")

        with self.engine.begin() as conn:
            if not record.is_database:
                for schema in record.schemas:
                    Table(schema.table_name, MetaData()).drop(conn, checkfirst=True)
            conn.execute(delete(data_sources).where(data_sources.c.id == source_id))

        logger.info(f"[CATALOG] Removed data source '{record.name}'")
        return record

    # ------------------------------------------------------------- helpers

    def _drop_tables(self, table_names: List[str]) -> None:
        try:
            with self.engine.begin() as conn:
                for name in table_names:
                    Table(name, MetaData()).drop(conn, checkfirst=True)
        except SQLAlchemyError as e:
            logger.error(f"[CATALOG] Compensating drop failed for {table_names}: {e}")

    @staticmethod
    def _to_row(record: DataSourceRecord) -> Dict[str, Any]:
        return {
            "id": record.id,
            "name": record.name,
            "kind": record.kind.value,
            "schemas": [s.to_dict() for s in record.schemas],
            "connection_config": record.connection_config,
            "file_path": record.file_path,
            "created_at": record.created_at,
        }

    @staticmethod
    def _to_record(row) -> DataSourceRecord:
        data = row._mapping
        return DataSourceRecord(
            id=data["id"],
            name=data["name"],
            kind=SourceKind(data["kind"]),
            schemas=[TableSchema.from_dict(s) for s in data["schemas"] or []],
            connection_config=data["connection_config"],
            file_path=data["file_path"],
            created_at=data["created_at"],
        )
