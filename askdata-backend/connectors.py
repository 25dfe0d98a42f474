"""
AskData - Database Connectors
=============================

One connector per engine, all behind the same five calls:

    connect()        open the engine and ping it; failures are labelled
                     authentication / network / unknown database
    disconnect()     dispose the engine; a no-op when never connected
    execute_query()  run one statement, return rows as dicts
    get_schema()     reflect tables into TableSchema objects
    get_tables()     list table names

Connectors differ only in how they build the SQLAlchemy URL, the driver
connect arguments (timeouts, TLS) and how they adapt MySQL-style backtick
SQL to their own dialect. Nothing outside ``create_connector`` looks at the
engine kind.

Every connector bounds both the connect call and statement execution with
the timeouts carried on its ConnectionConfig.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import NoSuchModuleError, NoSuchTableError, SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import Boolean, Date, DateTime, Float, Integer, Numeric

from pipeline_errors import (
    AuthenticationFailedError,
    ConfigurationError,
    DataSourceConnectionError,
    NetworkUnreachableError,
    UnknownDatabaseError,
)
from schema_catalog import ColumnSchema, EngineType, TableSchema

logger = logging.getLogger(__name__)


class EngineKind(str, Enum):
    MYSQL = "mysql"
    POSTGRES = "postgres"
    MSSQL = "mssql"
    ORACLE = "oracle"
    SQLITE = "sqlite"


_KIND_ALIASES = {
    "postgresql": EngineKind.POSTGRES,
    "sqlserver": EngineKind.MSSQL,
    "mariadb": EngineKind.MYSQL,
}


def parse_engine_kind(raw: Any) -> EngineKind:
    if isinstance(raw, EngineKind):
        return raw
    value = str(raw or "").strip().lower()
    if value in _KIND_ALIASES:
        return _KIND_ALIASES[value]
    try:
        return EngineKind(value)
    except ValueError:
        raise ConfigurationError(f"Unsupported database type: {raw}") from None


@dataclass
class ConnectionConfig:
    engine_kind: EngineKind
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    encrypt: bool = False
    trust_server_certificate: bool = True
    service_name: Optional[str] = None
    connect_string: Optional[str] = None
    odbc_driver: str = "ODBC Driver 18 for SQL Server"
    create_if_missing: bool = False
    connect_timeout: int = 10
    query_timeout: int = 30

    # camelCase keys accepted from API payloads and stored catalog records
    _CAMEL = {
        "engineKind": "engine_kind",
        "type": "engine_kind",
        "user": "username",
        "serviceName": "service_name",
        "connectString": "connect_string",
        "trustServerCertificate": "trust_server_certificate",
        "odbcDriver": "odbc_driver",
    }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionConfig":
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            name = cls._CAMEL.get(key, key)
            if name in known and value is not None:
                values[name] = value
        if "engine_kind" not in values:
            raise ConfigurationError("Connection config is missing the database type")
        values["engine_kind"] = parse_engine_kind(values["engine_kind"])
        if values.get("port") not in (None, ""):
            values["port"] = int(values["port"])
        else:
            values.pop("port", None)
        return cls(**values)

    def to_dict(self, include_password: bool = True) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["engine_kind"] = self.engine_kind.value
        if not include_password:
            data["password"] = "********" if self.password else None
        return data

    def with_timeouts(self, connect_timeout: int, query_timeout: int) -> "ConnectionConfig":
        data = self.to_dict()
        data.update(connect_timeout=connect_timeout, query_timeout=query_timeout)
        return ConnectionConfig.from_dict(data)

    def validate(self) -> None:
        kind = self.engine_kind
        if kind is EngineKind.SQLITE:
            required = ["database"]
        elif kind is EngineKind.ORACLE:
            if self.connect_string:
                required = ["username"]
            else:
                required = ["host", "username"]
                if not (self.service_name or self.database):
                    raise ConfigurationError("Oracle connections need a service name or database")
        else:
            required = ["host", "database", "username"]
        missing = [name for name in required if not getattr(self, name)]
        if missing:
            raise ConfigurationError(
                f"Missing required connection fields for {kind.value}: {', '.join(missing)}"
            )


# =============================================================================
# FAILURE CLASSIFICATION
# =============================================================================

_AUTH_PATTERNS = re.compile(
    r"access denied|authentication failed|password authentication|login failed"
    r"|ORA-01017|invalid username/password|invalid password|no password supplied",
    re.IGNORECASE,
)
_UNKNOWN_DATABASE_PATTERNS = re.compile(
    r"unknown database|database \S+ does not exist|cannot open database"
    r"|unable to open database file|database file does not exist"
    r"|ORA-12514|ORA-12505|does not currently know of service",
    re.IGNORECASE,
)
_NETWORK_PATTERNS = re.compile(
    r"connection refused|could not connect|can't connect|timed out|timeout expired"
    r"|could not translate host name|name or service not known|nodename nor servname"
    r"|no route to host|network is unreachable|getaddrinfo|server was not found"
    r"|TCP Provider|login timeout|ORA-12541|ORA-12170|ORA-12545|DPY-6005",
    re.IGNORECASE,
)


def _driver_message(exc: BaseException) -> str:
    original = getattr(exc, "orig", None)
    return str(original if original is not None else exc).strip()


def classify_connection_error(kind: EngineKind, exc: BaseException) -> DataSourceConnectionError:
    """Map a driver failure during connect() onto the connection error subtypes."""
    message = _driver_message(exc)
    if _AUTH_PATTERNS.search(message):
        error_cls, label = AuthenticationFailedError, "Authentication failed"
    elif _UNKNOWN_DATABASE_PATTERNS.search(message):
        error_cls, label = UnknownDatabaseError, "Unknown database"
    elif _NETWORK_PATTERNS.search(message):
        error_cls, label = NetworkUnreachableError, "Database server unreachable"
    else:
        error_cls, label = DataSourceConnectionError, "Could not connect to database"
    return error_cls(f"{label} ({kind.value})", engine_message=message)


# =============================================================================
# IDENTIFIER QUOTING
# =============================================================================

# String literals are matched first so backticks inside them are left alone
_LITERAL_OR_BACKTICK_RE = re.compile(r"('(?:[^']|'')*')|`([^`]*)`")
_TRAILING_LIMIT_RE = re.compile(r"\s+LIMIT\s+(\d+)\s*(;?)\s*$", re.IGNORECASE)
_LEADING_SELECT_RE = re.compile(r"^\s*SELECT(\s+DISTINCT)?\s+", re.IGNORECASE)


def requote_identifiers(sql: str, open_quote: str, close_quote: str) -> str:
    def _swap(match: re.Match) -> str:
        if match.group(1) is not None:
            return match.group(1)
        return f"{open_quote}{match.group(2)}{close_quote}"

    return _LITERAL_OR_BACKTICK_RE.sub(_swap, sql)


def map_column_type(sa_type: Any) -> EngineType:
    if isinstance(sa_type, Boolean):
        return EngineType.BOOLEAN
    if isinstance(sa_type, (DateTime, Date)):
        return EngineType.DATETIME
    if isinstance(sa_type, Integer):
        return EngineType.INTEGER
    if isinstance(sa_type, Float):
        return EngineType.FLOAT
    if isinstance(sa_type, Numeric):
        return EngineType.INTEGER if getattr(sa_type, "scale", None) == 0 else EngineType.FLOAT
    return EngineType.TEXT


# =============================================================================
# CONNECTOR INTERFACE
# =============================================================================

class DatabaseConnector(ABC):
    """Uniform access to one database."""

    engine_kind: EngineKind
    default_port: Optional[int] = None
    ping_sql = "SELECT 1"
    schema_name: Optional[str] = None

    def __init__(self, config: ConnectionConfig):
        config.validate()
        self.config = config
        self.engine: Optional[Engine] = None

    @property
    def is_connected(self) -> bool:
        return self.engine is not None

    @abstractmethod
    def _build_url(self) -> URL:
        ...

    def _connect_args(self) -> Dict[str, Any]:
        return {}

    def _engine_options(self) -> Dict[str, Any]:
        return {"pool_pre_ping": True}

    def _configure_engine(self, engine: Engine) -> None:
        """Hook for per-connection settings such as statement timeouts."""

    def adapt_sql(self, sql: str) -> str:
        return sql

    def connect(self) -> None:
        if self.engine is not None:
            return

        engine = None
        try:
            engine = create_engine(
                self._build_url(),
                connect_args=self._connect_args(),
                **self._engine_options(),
            )
            self._configure_engine(engine)
            with engine.connect() as conn:
                conn.exec_driver_sql(self.ping_sql)
        except (ImportError, NoSuchModuleError) as e:
            raise ConfigurationError(
                f"Database driver for {self.engine_kind.value} is not installed",
                engine_message=str(e),
            ) from e
        except SQLAlchemyError as e:
            if engine is not None:
                engine.dispose()
            error = classify_connection_error(self.engine_kind, e)
            logger.warning(f"[CONNECTOR] {error.message}: {error.engine_message}")
            raise error from e

        self.engine = engine
        logger.info(f"[CONNECTOR] Connected to {self.engine_kind.value} ({self._describe()})")

    def disconnect(self) -> None:
        if self.engine is None:
            return
        self.engine.dispose()
        self.engine = None
        logger.info(f"[CONNECTOR] Disconnected from {self.engine_kind.value} ({self._describe()})")

    def execute_query(self, sql: str) -> List[Dict[str, Any]]:
        """Run one statement; raises the driver's SQLAlchemy error unchanged."""
        if self.engine is None:
            self.connect()
        with self.engine.connect() as conn:
            result = conn.exec_driver_sql(self.adapt_sql(sql))
            if not result.returns_rows:
                return []
            return [dict(row._mapping) for row in result]

    def get_tables(self) -> List[str]:
        if self.engine is None:
            self.connect()
        return sorted(inspect(self.engine).get_table_names(schema=self.schema_name))

    def get_schema(self, table_names: Optional[List[str]] = None) -> List[TableSchema]:
        if self.engine is None:
            self.connect()
        inspector = inspect(self.engine)
        names = table_names if table_names is not None else self.get_tables()

        schemas = []
        for name in names:
            try:
                columns = inspector.get_columns(name, schema=self.schema_name)
            except NoSuchTableError:
                raise ConfigurationError(
                    f"Table '{name}' does not exist in {self.engine_kind.value} database"
                ) from None
            schemas.append(TableSchema(
                table_name=name,
                original_name=name,
                columns=[
                    ColumnSchema(
                        name=col["name"],
                        engine_type=map_column_type(col["type"]),
                        nullable=bool(col.get("nullable", True)),
                    )
                    for col in columns
                ],
            ))
        return schemas

    def _describe(self) -> str:
        cfg = self.config
        if cfg.host:
            return f"{cfg.host}:{cfg.port or self.default_port}/{cfg.database or cfg.service_name or ''}"
        return cfg.connect_string or cfg.database or ""


class MySQLConnector(DatabaseConnector):
    engine_kind = EngineKind.MYSQL
    default_port = 3306

    def _build_url(self) -> URL:
        cfg = self.config
        return URL.create(
            "mysql+pymysql",
            username=cfg.username,
            password=cfg.password,
            host=cfg.host,
            port=cfg.port or self.default_port,
            database=cfg.database,
            query={"charset": "utf8mb4"},
        )

    def _connect_args(self) -> Dict[str, Any]:
        return {
            "connect_timeout": self.config.connect_timeout,
            "read_timeout": self.config.query_timeout,
            "write_timeout": self.config.query_timeout,
        }


class PostgresConnector(DatabaseConnector):
    engine_kind = EngineKind.POSTGRES
    default_port = 5432

    def _build_url(self) -> URL:
        cfg = self.config
        return URL.create(
            "postgresql+psycopg2",
            username=cfg.username,
            password=cfg.password,
            host=cfg.host,
            port=cfg.port or self.default_port,
            database=cfg.database,
        )

    def _connect_args(self) -> Dict[str, Any]:
        args = {
            "connect_timeout": self.config.connect_timeout,
            "options": f"-c statement_timeout={self.config.query_timeout * 1000}",
        }
        if self.config.encrypt:
            args["sslmode"] = "require"
        return args

    def adapt_sql(self, sql: str) -> str:
        return requote_identifiers(sql, '"', '"')


class MSSQLConnector(DatabaseConnector):
    engine_kind = EngineKind.MSSQL
    default_port = 1433

    def _build_url(self) -> URL:
        cfg = self.config
        return URL.create(
            "mssql+pyodbc",
            username=cfg.username,
            password=cfg.password,
            host=cfg.host,
            port=cfg.port or self.default_port,
            database=cfg.database,
            query={
                "driver": cfg.odbc_driver,
                "Encrypt": "yes" if cfg.encrypt else "no",
                "TrustServerCertificate": "yes" if cfg.trust_server_certificate else "no",
            },
        )

    def _connect_args(self) -> Dict[str, Any]:
        # pyodbc: login timeout
        return {"timeout": self.config.connect_timeout}

    def _configure_engine(self, engine: Engine) -> None:
        query_timeout = self.config.query_timeout

        @event.listens_for(engine, "connect")
        def _set_query_timeout(dbapi_connection, connection_record):
            dbapi_connection.timeout = query_timeout

    def adapt_sql(self, sql: str) -> str:
        sql = requote_identifiers(sql, "[", "]")
        limit = _TRAILING_LIMIT_RE.search(sql)
        select = _LEADING_SELECT_RE.match(sql)
        if limit and select:
            head = select.group(0).rstrip()
            body = sql[select.end():limit.start()]
            sql = f"{head} TOP {limit.group(1)} {body}{limit.group(2)}"
        return sql


class OracleConnector(DatabaseConnector):
    engine_kind = EngineKind.ORACLE
    default_port = 1521
    ping_sql = "SELECT 1 FROM DUAL"

    def _build_url(self) -> URL:
        cfg = self.config
        if cfg.connect_string:
            return URL.create("oracle+oracledb", username=cfg.username, password=cfg.password)
        return URL.create(
            "oracle+oracledb",
            username=cfg.username,
            password=cfg.password,
            host=cfg.host,
            port=cfg.port or self.default_port,
            query={"service_name": cfg.service_name or cfg.database},
        )

    def _connect_args(self) -> Dict[str, Any]:
        args: Dict[str, Any] = {"tcp_connect_timeout": float(self.config.connect_timeout)}
        if self.config.connect_string:
            args["dsn"] = self.config.connect_string
        return args

    def _configure_engine(self, engine: Engine) -> None:
        call_timeout_ms = self.config.query_timeout * 1000

        @event.listens_for(engine, "connect")
        def _set_call_timeout(dbapi_connection, connection_record):
            dbapi_connection.call_timeout = call_timeout_ms

    def adapt_sql(self, sql: str) -> str:
        sql = requote_identifiers(sql, '"', '"')
        sql = _TRAILING_LIMIT_RE.sub(lambda m: f" FETCH FIRST {m.group(1)} ROWS ONLY", sql)
        # the driver rejects a statement terminator
        return sql.rstrip().rstrip(";").rstrip()


class SQLiteConnector(DatabaseConnector):
    engine_kind = EngineKind.SQLITE

    @property
    def in_memory(self) -> bool:
        return self.config.database in (":memory:", "")

    def _build_url(self) -> URL:
        return URL.create("sqlite", database=self.config.database)

    def _connect_args(self) -> Dict[str, Any]:
        return {"timeout": self.config.connect_timeout, "check_same_thread": False}

    def _engine_options(self) -> Dict[str, Any]:
        if self.in_memory:
            return {"poolclass": StaticPool}
        return {}

    def connect(self) -> None:
        if self.engine is None and not self.in_memory and not self.config.create_if_missing:
            if not Path(self.config.database).exists():
                message = f"database file does not exist: {self.config.database}"
                logger.warning(f"[CONNECTOR] {message}")
                raise UnknownDatabaseError("Unknown database (sqlite)", engine_message=message)
        super().connect()


# =============================================================================
# FACTORY
# =============================================================================

_CONNECTORS = {
    EngineKind.MYSQL: MySQLConnector,
    EngineKind.POSTGRES: PostgresConnector,
    EngineKind.MSSQL: MSSQLConnector,
    EngineKind.ORACLE: OracleConnector,
    EngineKind.SQLITE: SQLiteConnector,
}


def create_connector(config: ConnectionConfig) -> DatabaseConnector:
    connector_cls = _CONNECTORS.get(config.engine_kind)
    if connector_cls is None:
        raise ConfigurationError(f"Unsupported database type: {config.engine_kind}")
    return connector_cls(config)


_COMMON_FIELDS = ["host", "port", "database", "username", "password"]


def supported_engines() -> Dict[str, Dict[str, Any]]:
    """Connection fields a client has to supply for each engine kind."""
    return {
        EngineKind.MYSQL.value: {"fields": _COMMON_FIELDS, "default_port": 3306},
        EngineKind.POSTGRES.value: {"fields": _COMMON_FIELDS + ["encrypt"], "default_port": 5432},
        EngineKind.MSSQL.value: {
            "fields": _COMMON_FIELDS + ["encrypt", "trust_server_certificate"],
            "default_port": 1433,
        },
        EngineKind.ORACLE.value: {
            "fields": _COMMON_FIELDS + ["service_name", "connect_string"],
            "default_port": 1521,
        },
        EngineKind.SQLITE.value: {"fields": ["database"], "default_port": None},
    }


# =============================================================================
# REGISTRY
# =============================================================================

class ConnectorRegistry:
    """
    Connected connectors keyed by data source id.

    Entries are created on first use and stored only after connect()
    succeeds. Two first-uses racing on the same id may both connect; the
    loser's engine is disposed and the cached one returned.
    """

    def __init__(self, factory: Callable[[ConnectionConfig], DatabaseConnector] = create_connector):
        self._factory = factory
        self._connectors: Dict[str, DatabaseConnector] = {}

    def __contains__(self, source_id: str) -> bool:
        return source_id in self._connectors

    def __len__(self) -> int:
        return len(self._connectors)

    def get(self, source_id: str, config: ConnectionConfig) -> DatabaseConnector:
        connector = self._connectors.get(source_id)
        if connector is not None:
            return connector

        connector = self._factory(config)
        connector.connect()
        cached = self._connectors.setdefault(source_id, connector)
        if cached is not connector:
            connector.disconnect()
        return cached

    async def aget(self, source_id: str, config: ConnectionConfig) -> DatabaseConnector:
        connector = self._connectors.get(source_id)
        if connector is not None:
            return connector
        return await asyncio.to_thread(self.get, source_id, config)

    def put(self, source_id: str, connector: DatabaseConnector) -> None:
        self._connectors[source_id] = connector

    def evict(self, source_id: str) -> None:
        connector = self._connectors.pop(source_id, None)
        if connector is not None:
            connector.disconnect()

    def close_all(self) -> None:
        for source_id in list(self._connectors):
            self.evict(source_id)
