"""
AskData - LLM Gateway
=====================

The language model behind the pipeline. It is an opaque collaborator: it
takes schemas and a question and hands back raw text. Everything it returns
goes through the repair pipeline before it is trusted.

Two providers:
    - GroqGateway   (llama-index Groq integration, hosted)
    - OllamaGateway (Ollama /api/generate over aiohttp, local)

Every call is a single attempt bounded by ``llm_timeout_seconds``.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
from llama_index.llms.groq import Groq

from app_config import Settings
from pipeline_errors import ConfigurationError, GenerationError
from schema_catalog import TableSchema
from sql_repair import INVALID_QUERY_SENTINEL

logger = logging.getLogger(__name__)

# Rows beyond this are not sent back to the model for the answer prompt
ANSWER_ROW_LIMIT = 50


# =============================================================================
# PROMPTS
# =============================================================================

SQL_RULES = """IMPORTANT RULES:
1. Use ONLY the table names listed before '(original name: ...)' in your SQL query, NOT the original file names.
2. ALWAYS enclose column names in backticks (`column_name`), especially when column names contain spaces.
3. For column names with spaces like "Delivery end date and time", use `Delivery end date and time` - NEVER split the backticks around spaces.
4. When performing operations on columns with spaces, the ENTIRE column name goes inside a SINGLE pair of backticks.
   CORRECT: SELECT `Delivery end date and time` - `Delivery start date and time` AS delivery_duration
   INCORRECT: SELECT `Delivery end date` and time - `Delivery start date` and time AS delivery_duration
5. Write SQL that is valid for MySQL.
6. NEVER use SELECT *. Always name the exact columns needed to answer the question.
7. Use WHERE clauses, aggregations and filtering to return only what the question needs.
8. If the question asks for a specific number of results (e.g. "top 5"), use LIMIT.
9. When aggregating, GROUP BY only the dimensions the question is about.
10. Only read data. Never write INSERT, UPDATE, DELETE or DDL statements."""


def describe_schemas(schemas: Sequence[TableSchema]) -> str:
    """One block per table: name, original name and backticked typed columns."""
    blocks = []
    for schema in schemas:
        columns = ", ".join(f"`{c.name}` ({c.engine_type.value})" for c in schema.columns)
        blocks.append(
            f"Table: {schema.table_name} (original name: {schema.original_name})\n"
            f"Columns: {columns}"
        )
    return "\n\n".join(blocks)


def build_sql_prompt(schemas: Sequence[TableSchema], question: str) -> str:
    return (
        f"Given these table schemas:\n{describe_schemas(schemas)}\n\n"
        f"Generate a SQL query to answer this question: {question}\n\n"
        f"{SQL_RULES}\n\n"
        "Respond with ONLY the SQL query, no explanations. "
        f"If you cannot generate a valid SQL query, respond with '{INVALID_QUERY_SENTINEL}' "
        "and explain why."
    )


def build_projection_prompt(sql: str, question: str) -> str:
    return (
        f"The following SQL query uses SELECT * which returns too much data:\n\n{sql}\n\n"
        "Rewrite this query to select ONLY the specific columns needed to answer the "
        f"original question: \"{question}\".\n"
        "Do not use SELECT * under any circumstances. Respond with ONLY the improved SQL query."
    )


def build_answer_prompt(question: str, rows: List[Dict[str, Any]]) -> str:
    data = json.dumps(rows[:ANSWER_ROW_LIMIT], default=str)
    note = ""
    if len(rows) > ANSWER_ROW_LIMIT:
        note = f"\n(Showing the first {ANSWER_ROW_LIMIT} of {len(rows)} rows.)"
    return (
        f"Question: {question}\n\nData: {data}{note}\n\n"
        "Provide a natural language response to the question based on the query results."
    )


# =============================================================================
# GATEWAYS
# =============================================================================

class LLMGateway(ABC):
    """Schema + question in, raw text out."""

    provider = "unknown"

    def __init__(self, timeout_seconds: float = 30.0):
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    async def _complete(self, prompt: str) -> str:
        ...

    async def complete(self, prompt: str, purpose: str = "completion") -> str:
        try:
            text = await asyncio.wait_for(self._complete(prompt), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(f"[LLM] {self.provider} {purpose} timed out after {self.timeout_seconds}s")
            raise GenerationError(
                f"The language model did not answer within {self.timeout_seconds:g}s"
            ) from None

        text = (text or "").strip()
        if not text:
            raise GenerationError(f"The language model returned an empty {purpose}")
        logger.debug(f"[LLM] {purpose}: {text!r}")
        return text

    async def generate_sql(self, schemas: Sequence[TableSchema], question: str) -> str:
        return await self.complete(build_sql_prompt(schemas, question), "sql")

    async def correct_projection(self, sql: str, question: str) -> str:
        return await self.complete(build_projection_prompt(sql, question), "projection fix")

    async def generate_answer(self, question: str, rows: List[Dict[str, Any]]) -> str:
        return await self.complete(build_answer_prompt(question, rows), "answer")

    async def close(self) -> None:
        """Release network resources."""


class GroqGateway(LLMGateway):
    provider = "groq"

    def __init__(self, api_key: str, model: str, timeout_seconds: float = 30.0):
        super().__init__(timeout_seconds)
        self.model = model
        self.llm = Groq(
            model=model,
            api_key=api_key,
            temperature=0.0,  # Deterministic
        )

    async def _complete(self, prompt: str) -> str:
        try:
            response = await self.llm.acomplete(prompt)
        except asyncio.TimeoutError:
            raise
        except Exception as e:
            # The Groq client raises its own exception family for HTTP and auth failures
            logger.error(f"[LLM] Groq call failed: {e}")
            raise GenerationError("The language model request failed", engine_message=str(e)) from e
        return response.text


class OllamaGateway(LLMGateway):
    provider = "ollama"

    def __init__(self, base_url: str, model: str, timeout_seconds: float = 30.0):
        super().__init__(timeout_seconds)
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self.session = aiohttp.ClientSession(timeout=timeout)
        return self.session

    async def _complete(self, prompt: str) -> str:
        session = await self._ensure_session()
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": 0.0},
        }
        try:
            async with session.post(f"{self.base_url}/api/generate", json=payload) as response:
                response.raise_for_status()
                result = await response.json()
        except aiohttp.ClientConnectorError as e:
            logger.error(f"[LLM] Ollama unreachable at {self.base_url}: {e}")
            raise GenerationError(
                f"Unable to connect to Ollama at {self.base_url}. Please ensure it is running.",
                engine_message=str(e),
            ) from e
        except aiohttp.ClientError as e:
            logger.error(f"[LLM] HTTP error calling Ollama: {e}")
            raise GenerationError("The language model request failed", engine_message=str(e)) from e

        if "response" not in result:
            raise GenerationError("Invalid response from Ollama: missing 'response' field")
        return result["response"]

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None


def create_gateway(settings: Settings) -> LLMGateway:
    provider = settings.llm_provider
    if provider == "groq":
        if not settings.groq_api_key:
            raise ConfigurationError(
                "GROQ_API_KEY not found! Set it in your environment. "
                "You can get one at: https://console.groq.com/keys"
            )
        gateway = GroqGateway(settings.groq_api_key, settings.groq_model, settings.llm_timeout_seconds)
        model = settings.groq_model
    elif provider == "ollama":
        gateway = OllamaGateway(settings.ollama_base_url, settings.ollama_model, settings.llm_timeout_seconds)
        model = settings.ollama_model
    else:
        raise ConfigurationError(f"Unsupported LLM provider: '{provider}' (expected groq or ollama)")

    logger.info(f"[LLM] Using {provider} gateway ({model})")
    return gateway
