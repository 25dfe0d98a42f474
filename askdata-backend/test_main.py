"""
HTTP tests for the AskData API. The app runs its real lifespan against a
temporary SQLite store; the language model is replaced after startup.
"""

import os
import tempfile
import unittest

from fastapi.testclient import TestClient

import main
from app_config import get_settings
from llm_gateway import LLMGateway

SALES_CSV = "Region,Sales Q1\nNorth,100\nSouth,250.5\nNorth,50\n"

_ENV_KEYS = ("ASKDATA_STORE_ENGINE", "ASKDATA_STORE_DATABASE", "ASKDATA_UPLOAD_DIR", "ASKDATA_LLM_PROVIDER")


class FixedGateway(LLMGateway):
    provider = "fixed"

    def __init__(self, sql):
        super().__init__(timeout_seconds=5)
        self.sql = sql

    async def _complete(self, prompt):
        return "Answer from the data."

    async def generate_sql(self, schemas, question):
        return self.sql


class TestAPI(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.upload_dir = os.path.join(self.tmp.name, "uploads")
        self.saved_env = {key: os.environ.get(key) for key in _ENV_KEYS}
        os.environ.update({
            "ASKDATA_STORE_ENGINE": "sqlite",
            "ASKDATA_STORE_DATABASE": os.path.join(self.tmp.name, "store.db"),
            "ASKDATA_UPLOAD_DIR": self.upload_dir,
            "ASKDATA_LLM_PROVIDER": "ollama",
        })
        get_settings.cache_clear()

        self.client = TestClient(main.app)
        self.client.__enter__()
        self.gateway = FixedGateway("SELECT region, SUM(sales_q1) AS total FROM quarterly_sales GROUP BY region ORDER BY region")
        main.service.gateway = self.gateway

    def tearDown(self):
        self.client.__exit__(None, None, None)
        for key, value in self.saved_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        get_settings.cache_clear()
        self.tmp.cleanup()

    def _upload(self, name="quarterly sales.csv", content=SALES_CSV):
        return self.client.post("/api/upload", files={"file": (name, content.encode(), "text/csv")})

    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["status"], "healthy")
        self.assertEqual(data["store_engine"], "sqlite")
        self.assertEqual(data["data_sources"], 0)

    def test_engines(self):
        response = self.client.get("/api/databases/engines")
        self.assertEqual(response.status_code, 200)
        self.assertIn("postgres", response.json()["engines"])

    def test_upload_and_query(self):
        upload = self._upload()
        self.assertEqual(upload.status_code, 200)
        source = upload.json()["source"]
        self.assertEqual(source["name"], "quarterly_sales")
        self.assertEqual(len(os.listdir(self.upload_dir)), 1)

        response = self.client.post(
            "/api/query", json={"question": "total sales by region", "source_ids": [source["id"]]}
        )
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["rows"], [{"region": "North", "total": 150.0}, {"region": "South", "total": 250.5}])
        self.assertEqual(data["row_count"], 2)
        self.assertEqual(data["answer"], "Answer from the data.")
        self.assertEqual(data["diagnostics"]["stage"], "answered")

    def test_unknown_source_is_bad_request(self):
        response = self.client.post("/api/query", json={"question": "anything", "source_ids": ["nope"]})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "configuration_error")

    def test_validation_failure(self):
        source = self._upload().json()["source"]
        self.gateway.sql = "SELECT region, SUM(revenue) FROM quarterly_sales GROUP BY region"

        response = self.client.post("/api/query", json={"question": "revenue", "source_ids": [source["id"]]})
        self.assertEqual(response.status_code, 422)
        data = response.json()
        self.assertEqual(data["error"], "validation_error")
        self.assertEqual(data["stage"], "failed_at_validation")
        self.assertEqual(data["legal_columns"], ["region", "sales_q1"])
        self.assertEqual(data["diagnostics"]["stage"], "failed_at_validation")

    def test_query_without_model(self):
        source = self._upload().json()["source"]
        main.service.gateway = None
        response = self.client.post("/api/query", json={"question": "anything", "source_ids": [source["id"]]})
        self.assertEqual(response.status_code, 503)

    def test_unsupported_upload_is_removed(self):
        response = self._upload(name="slides.pdf", content="%PDF-1.4")
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"], "ingestion_error")
        self.assertEqual(os.listdir(self.upload_dir), [])

    def test_connection_failure(self):
        response = self.client.post(
            "/api/databases/test",
            json={"engine_kind": "sqlite", "database": os.path.join(self.tmp.name, "missing.db")},
        )
        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.json()["reason"], "unknown_database")

    def test_unsupported_engine(self):
        response = self.client.post("/api/databases/test", json={"engine_kind": "db2", "host": "h"})
        self.assertEqual(response.status_code, 400)

    def test_delete_source(self):
        source = self._upload().json()["source"]
        self.assertEqual(len(self.client.get("/api/sources").json()["sources"]), 1)

        response = self.client.delete(f"/api/sources/{source['id']}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get("/api/sources").json()["sources"], [])
        self.assertEqual(os.listdir(self.upload_dir), [])

        self.assertEqual(self.client.delete(f"/api/sources/{source['id']}").status_code, 400)


if __name__ == "__main__":
    unittest.main()
