"""
AskData - Runtime Configuration
===============================

All settings come from the process environment (optionally seeded from a
``.env`` file via python-dotenv). ``get_settings()`` is the only accessor
the rest of the service uses.

ENVIRONMENT:
    ASKDATA_STORE_ENGINE      engine holding ingested tables (default sqlite)
    ASKDATA_STORE_DATABASE    database name / sqlite path (default askdata.db)
    ASKDATA_STORE_HOST, ASKDATA_STORE_PORT, ASKDATA_STORE_USER, ASKDATA_STORE_PASSWORD
    ASKDATA_LLM_PROVIDER      groq | ollama (default ollama)
    GROQ_API_KEY, GROQ_MODEL
    OLLAMA_BASE_URL, OLLAMA_MODEL
    ASKDATA_LLM_TIMEOUT       seconds (default 30)
    ASKDATA_CONNECT_TIMEOUT   seconds (default 10)
    ASKDATA_QUERY_TIMEOUT     seconds (default 30)
    ASKDATA_GENERATE_ANSWERS  true | false (default true)
    ASKDATA_UPLOAD_DIR        where uploads are spooled (default ./uploads)
    ASKDATA_LOG_LEVEL         default INFO
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

_TRUTHY = {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


@dataclass
class Settings:
    store_engine: str = "sqlite"
    store_database: str = "askdata.db"
    store_host: Optional[str] = None
    store_port: Optional[int] = None
    store_username: Optional[str] = None
    store_password: Optional[str] = None

    llm_provider: str = "ollama"
    groq_api_key: Optional[str] = None
    groq_model: str = "llama-3.3-70b-versatile"
    ollama_base_url: str = "http://127.0.0.1:11434"
    ollama_model: str = "llama3"

    llm_timeout_seconds: float = 30.0
    connect_timeout_seconds: int = 10
    query_timeout_seconds: int = 30
    generate_answers: bool = True

    upload_dir: str = "uploads"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        port = os.getenv("ASKDATA_STORE_PORT")
        return cls(
            store_engine=os.getenv("ASKDATA_STORE_ENGINE", "sqlite").lower(),
            store_database=os.getenv("ASKDATA_STORE_DATABASE", "askdata.db"),
            store_host=os.getenv("ASKDATA_STORE_HOST"),
            store_port=int(port) if port else None,
            store_username=os.getenv("ASKDATA_STORE_USER"),
            store_password=os.getenv("ASKDATA_STORE_PASSWORD"),
            llm_provider=os.getenv("ASKDATA_LLM_PROVIDER", "ollama").lower(),
            groq_api_key=os.getenv("GROQ_API_KEY"),
            groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", "http://127.0.0.1:11434"),
            ollama_model=os.getenv("OLLAMA_MODEL", "llama3"),
            llm_timeout_seconds=_env_float("ASKDATA_LLM_TIMEOUT", 30.0),
            connect_timeout_seconds=_env_int("ASKDATA_CONNECT_TIMEOUT", 10),
            query_timeout_seconds=_env_int("ASKDATA_QUERY_TIMEOUT", 30),
            generate_answers=os.getenv("ASKDATA_GENERATE_ANSWERS", "true").lower() in _TRUTHY,
            upload_dir=os.getenv("ASKDATA_UPLOAD_DIR", "uploads"),
            log_level=os.getenv("ASKDATA_LOG_LEVEL", "INFO").upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
