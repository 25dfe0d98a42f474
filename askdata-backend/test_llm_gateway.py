"""
Tests for prompts and gateway plumbing. No model is called: the network
paths are exercised against a closed local port.
"""

import asyncio
import unittest

from app_config import Settings
from llm_gateway import (
    ANSWER_ROW_LIMIT,
    GroqGateway,
    LLMGateway,
    OllamaGateway,
    build_answer_prompt,
    build_projection_prompt,
    build_sql_prompt,
    create_gateway,
    describe_schemas,
)
from pipeline_errors import ConfigurationError, GenerationError
from schema_catalog import ColumnSchema, EngineType, TableSchema

SALES = TableSchema("quarterly_sales", "1700000000000-quarterly sales.csv", [
    ColumnSchema("region", EngineType.TEXT),
    ColumnSchema("sales_q1", EngineType.FLOAT),
])


class _SlowGateway(LLMGateway):
    provider = "slow"

    async def _complete(self, prompt):
        await asyncio.sleep(5)
        return "SELECT 1"


class _EchoGateway(LLMGateway):
    provider = "echo"

    def __init__(self, reply):
        super().__init__(timeout_seconds=1)
        self.reply = reply
        self.prompts = []

    async def _complete(self, prompt):
        self.prompts.append(prompt)
        return self.reply


class TestPrompts(unittest.TestCase):

    def test_schema_description(self):
        text = describe_schemas([SALES])
        self.assertIn("Table: quarterly_sales (original name: 1700000000000-quarterly sales.csv)", text)
        self.assertIn("`region` (TEXT)", text)
        self.assertIn("`sales_q1` (FLOAT)", text)

    def test_sql_prompt(self):
        prompt = build_sql_prompt([SALES], "total sales by region")
        self.assertIn("total sales by region", prompt)
        self.assertIn("NEVER use SELECT *", prompt)
        self.assertIn("INVALID_QUERY", prompt)

    def test_projection_prompt(self):
        prompt = build_projection_prompt("SELECT * FROM quarterly_sales;", "top region")
        self.assertIn("SELECT * FROM quarterly_sales;", prompt)
        self.assertIn('"top region"', prompt)

    def test_answer_prompt_truncates_rows(self):
        rows = [{"n": i} for i in range(ANSWER_ROW_LIMIT + 10)]
        prompt = build_answer_prompt("how many?", rows)
        self.assertIn(f"first {ANSWER_ROW_LIMIT} of {ANSWER_ROW_LIMIT + 10} rows", prompt)
        self.assertNotIn(f'{{"n": {ANSWER_ROW_LIMIT}}}', prompt)


class TestCreateGateway(unittest.TestCase):

    def test_groq_requires_key(self):
        with self.assertRaises(ConfigurationError):
            create_gateway(Settings(llm_provider="groq", groq_api_key=None))

    def test_unknown_provider(self):
        with self.assertRaises(ConfigurationError):
            create_gateway(Settings(llm_provider="mystery"))

    def test_groq(self):
        gateway = create_gateway(Settings(llm_provider="groq", groq_api_key="gsk-test", llm_timeout_seconds=12))
        self.assertIsInstance(gateway, GroqGateway)
        self.assertEqual(gateway.timeout_seconds, 12)

    def test_ollama(self):
        gateway = create_gateway(Settings(llm_provider="ollama", ollama_base_url="http://ollama:11434/"))
        self.assertIsInstance(gateway, OllamaGateway)
        self.assertEqual(gateway.base_url, "http://ollama:11434")


class TestGatewayCalls(unittest.IsolatedAsyncioTestCase):

    async def test_timeout_is_generation_error(self):
        gateway = _SlowGateway(timeout_seconds=0.05)
        with self.assertRaises(GenerationError):
            await gateway.generate_sql([SALES], "anything")

    async def test_empty_reply_is_generation_error(self):
        with self.assertRaises(GenerationError):
            await _EchoGateway("   \n").generate_sql([SALES], "anything")

    async def test_reply_is_stripped(self):
        gateway = _EchoGateway("  SELECT region FROM quarterly_sales;\n")
        sql = await gateway.generate_sql([SALES], "regions")
        self.assertEqual(sql, "SELECT region FROM quarterly_sales;")
        self.assertIn("Table: quarterly_sales", gateway.prompts[0])

    async def test_unreachable_ollama(self):
        gateway = OllamaGateway("http://127.0.0.1:1", "llama3", timeout_seconds=5)
        try:
            with self.assertRaises(GenerationError):
                await gateway.generate_sql([SALES], "anything")
        finally:
            await gateway.close()
        self.assertIsNone(gateway.session)


if __name__ == "__main__":
    unittest.main()
