"""
AskData API
===========

Ask questions about uploaded spreadsheets, documents and saved database
connections in plain language.

Routes are thin: every operation is delegated to QueryService, and every
pipeline error is turned into a JSON payload by one exception handler.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app_config import Settings, get_settings
from connectors import ConnectionConfig, ConnectorRegistry, create_connector, parse_engine_kind, supported_engines
from llm_gateway import create_gateway
from pipeline_errors import (
    AskDataError,
    ConfigurationError,
    DataSourceConnectionError,
    ExecutionError,
    IngestionError,
)
from query_executor import QueryExecutor
from query_service import QueryService
from schema_catalog import SchemaCatalog

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instances
service: Optional[QueryService] = None


def _store_connection_config(settings: Settings) -> ConnectionConfig:
    return ConnectionConfig(
        engine_kind=parse_engine_kind(settings.store_engine),
        host=settings.store_host,
        port=settings.store_port,
        database=settings.store_database,
        username=settings.store_username,
        password=settings.store_password,
        create_if_missing=True,
        connect_timeout=settings.connect_timeout_seconds,
        query_timeout=settings.query_timeout_seconds,
    )


def build_service(settings: Settings) -> QueryService:
    store_connector = create_connector(_store_connection_config(settings))
    store_connector.connect()
    catalog = SchemaCatalog(store_connector.engine)

    try:
        gateway = create_gateway(settings)
    except ConfigurationError as e:
        # Upload and connection routes still work; /api/query answers 503
        logger.error(f"LLM gateway unavailable: {e.message}")
        gateway = None

    return QueryService(
        catalog=catalog,
        store_connector=store_connector,
        gateway=gateway,
        registry=ConnectorRegistry(),
        executor=QueryExecutor(),
        settings=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the service on startup, release connections on shutdown"""
    global service

    settings = get_settings()
    logger.info("Initializing AskData...")
    Path(settings.upload_dir).mkdir(parents=True, exist_ok=True)
    service = build_service(settings)
    logger.info(
        f"AskData ready: store={settings.store_engine}, llm={settings.llm_provider}, "
        f"sources={len(service.list_sources())}"
    )

    yield  # Server is running

    logger.info("Shutting down AskData...")
    await service.close()
    service = None


app = FastAPI(
    title="AskData API",
    description="Natural-language questions over spreadsheets, documents and SQL databases",
    version="1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# ERROR MAPPING
# =============================================================================

def status_for(error: AskDataError) -> int:
    if isinstance(error, ConfigurationError):
        return 400
    if isinstance(error, DataSourceConnectionError):
        return 502
    if isinstance(error, ExecutionError):
        return 422 if error.retryable else 500
    # Ingestion, generation, repair and validation failures
    return 422


@app.exception_handler(AskDataError)
async def askdata_error_handler(request: Request, exc: AskDataError):
    payload: Dict[str, Any] = exc.to_dict()
    if exc.diagnostics:
        payload["diagnostics"] = exc.diagnostics
    return JSONResponse(status_code=status_for(exc), content=payload)


def get_service() -> QueryService:
    if service is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return service


# =============================================================================
# MODELS
# =============================================================================

class QueryRequest(BaseModel):
    question: str
    source_ids: List[str]


class ConnectionRequest(BaseModel):
    engine_kind: str
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    encrypt: bool = False
    trust_server_certificate: bool = True
    service_name: Optional[str] = None
    connect_string: Optional[str] = None

    def to_config(self) -> ConnectionConfig:
        return ConnectionConfig.from_dict(self.model_dump())


class SchemaRequest(BaseModel):
    config: ConnectionRequest
    table_names: Optional[List[str]] = None


class RegisterDatabaseRequest(BaseModel):
    name: str
    config: ConnectionRequest
    table_names: Optional[List[str]] = None


# =============================================================================
# ROUTES
# =============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    if service is None:
        return {"status": "unhealthy", "error": "Service not initialized"}
    return {
        "status": "healthy",
        "version": "1.0",
        "llm_provider": service.gateway.provider if service.gateway else None,
        "store_engine": service.store_connector.engine_kind.value,
        "data_sources": len(service.list_sources()),
        "cached_connections": len(service.registry),
    }


@app.post("/api/upload")
async def upload_file(file: UploadFile = File(...)):
    """Store an uploaded spreadsheet or document and ingest it as a table"""
    svc = get_service()
    if not file.filename:
        raise IngestionError("Uploaded file has no name")

    upload_dir = Path(get_settings().upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    stored = upload_dir / f"{int(time.time() * 1000)}-{Path(file.filename).name}"
    stored.write_bytes(await file.read())

    try:
        record = await asyncio.to_thread(svc.ingest_file, str(stored), Path(file.filename).name)
    except AskDataError:
        stored.unlink(missing_ok=True)
        raise
    return {"success": True, "source": record.to_dict()}


@app.post("/api/query")
async def query(request: QueryRequest):
    svc = get_service()
    if svc.gateway is None:
        raise HTTPException(status_code=503, detail="No language model is configured")
    result = await svc.execute_query(request.question, request.source_ids)
    return {"success": True, **result.to_dict()}


@app.post("/api/databases/test")
def test_database_connection(request: ConnectionRequest):
    """Test a database connection without saving it"""
    tables = get_service().test_connection(request.to_config())
    return {"success": True, "message": "Connection successful", "tables": tables}


@app.post("/api/databases/schemas")
def fetch_database_schemas(request: SchemaRequest):
    schemas = get_service().fetch_schemas(request.config.to_config(), request.table_names)
    return {"success": True, "schemas": {name: s.to_dict() for name, s in schemas.items()}}


@app.post("/api/databases")
def register_database(request: RegisterDatabaseRequest):
    record = get_service().register_database(
        request.name, request.config.to_config(), request.table_names
    )
    return {"success": True, "source": record.to_dict()}


@app.get("/api/databases/engines")
async def list_engines():
    return {"engines": supported_engines()}


@app.get("/api/sources")
def list_sources():
    return {"sources": [record.to_dict() for record in get_service().list_sources()]}


@app.delete("/api/sources/{source_id}")
def delete_source(source_id: str):
    record = get_service().remove_source(source_id)
    if record.file_path:
        Path(record.file_path).unlink(missing_ok=True)
    return {"success": True, "removed": record.id}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
