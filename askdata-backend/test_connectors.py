"""
Connector tests. SQLite runs for real; the other engines are exercised
through configuration, dialect adaptation and failure classification.
"""

import os
import tempfile
import time
import unittest

from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError

from connectors import (
    ConnectionConfig,
    ConnectorRegistry,
    EngineKind,
    MSSQLConnector,
    OracleConnector,
    PostgresConnector,
    SQLiteConnector,
    classify_connection_error,
    create_connector,
    parse_engine_kind,
    supported_engines,
)
from pipeline_errors import (
    AuthenticationFailedError,
    ConfigurationError,
    DataSourceConnectionError,
    NetworkUnreachableError,
    UnknownDatabaseError,
)
from schema_catalog import EngineType


def _sqlite_file(directory):
    path = os.path.join(directory, "warehouse.db")
    engine = create_engine(f"sqlite:///{path}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE orders (id INTEGER, customer TEXT, amount REAL)"))
        conn.execute(text("CREATE TABLE regions (name TEXT)"))
        conn.execute(text("INSERT INTO orders VALUES (1, 'ann', 10.5), (2, 'bob', 20.0)"))
    engine.dispose()
    return path


class TestConnectionConfig(unittest.TestCase):

    def test_aliases(self):
        self.assertIs(parse_engine_kind("postgresql"), EngineKind.POSTGRES)
        self.assertIs(parse_engine_kind("SQLServer"), EngineKind.MSSQL)
        self.assertIs(parse_engine_kind("mariadb"), EngineKind.MYSQL)

    def test_unknown_kind_is_configuration_error(self):
        with self.assertRaises(ConfigurationError):
            parse_engine_kind("db2")

    def test_from_dict_accepts_camel_case(self):
        config = ConnectionConfig.from_dict({
            "type": "oracle", "host": "ora", "port": "1522", "user": "scott",
            "password": "tiger", "serviceName": "ORCLPDB1",
        })
        self.assertIs(config.engine_kind, EngineKind.ORACLE)
        self.assertEqual(config.port, 1522)
        self.assertEqual(config.service_name, "ORCLPDB1")
        self.assertNotIn("tiger", repr(config))

    def test_missing_fields_rejected_at_construction(self):
        with self.assertRaises(ConfigurationError):
            create_connector(ConnectionConfig(EngineKind.POSTGRES, host="db"))
        with self.assertRaises(ConfigurationError):
            create_connector(ConnectionConfig(EngineKind.SQLITE))

    def test_factory_dispatch(self):
        expected = {
            EngineKind.POSTGRES: PostgresConnector,
            EngineKind.MSSQL: MSSQLConnector,
            EngineKind.ORACLE: OracleConnector,
        }
        for kind, cls in expected.items():
            config = ConnectionConfig(kind, host="h", database="d", username="u")
            self.assertIsInstance(create_connector(config), cls)

    def test_supported_engines(self):
        engines = supported_engines()
        self.assertEqual(set(engines), {"mysql", "postgres", "mssql", "oracle", "sqlite"})
        self.assertEqual(engines["sqlite"]["fields"], ["database"])
        self.assertIn("service_name", engines["oracle"]["fields"])


class TestDialectAdaptation(unittest.TestCase):

    def _connector(self, kind):
        return create_connector(ConnectionConfig(kind, host="h", database="d", username="u"))

    def test_postgres_double_quotes(self):
        sql = "SELECT `Sales Q1` FROM sales WHERE note = 'a`b';"
        self.assertEqual(
            self._connector(EngineKind.POSTGRES).adapt_sql(sql),
            "SELECT \"Sales Q1\" FROM sales WHERE note = 'a`b';",
        )

    def test_mssql_brackets_and_top(self):
        sql = "SELECT `region`, amount FROM orders ORDER BY amount DESC LIMIT 5;"
        self.assertEqual(
            self._connector(EngineKind.MSSQL).adapt_sql(sql),
            "SELECT TOP 5 [region], amount FROM orders ORDER BY amount DESC;",
        )

    def test_oracle_fetch_first_without_terminator(self):
        sql = "SELECT `region` FROM orders ORDER BY region LIMIT 3;"
        self.assertEqual(
            self._connector(EngineKind.ORACLE).adapt_sql(sql),
            'SELECT "region" FROM orders ORDER BY region FETCH FIRST 3 ROWS ONLY',
        )


class TestSQLiteConnector(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = _sqlite_file(self.tmp.name)
        self.connector = create_connector(ConnectionConfig(EngineKind.SQLITE, database=self.path))

    def tearDown(self):
        self.connector.disconnect()
        self.tmp.cleanup()

    def test_is_sqlite_connector(self):
        self.assertIsInstance(self.connector, SQLiteConnector)

    def test_tables_and_schema(self):
        self.connector.connect()
        self.assertEqual(self.connector.get_tables(), ["orders", "regions"])

        schemas = self.connector.get_schema(["orders"])
        self.assertEqual(len(schemas), 1)
        self.assertEqual(
            [(c.name, c.engine_type) for c in schemas[0].columns],
            [("id", EngineType.INTEGER), ("customer", EngineType.TEXT), ("amount", EngineType.FLOAT)],
        )

    def test_unknown_table_in_schema_request(self):
        with self.assertRaises(ConfigurationError):
            self.connector.get_schema(["nope"])

    def test_execute_query_returns_dicts(self):
        rows = self.connector.execute_query("SELECT `customer`, amount FROM orders ORDER BY id;")
        self.assertEqual(rows, [{"customer": "ann", "amount": 10.5}, {"customer": "bob", "amount": 20.0}])

    def test_disconnect_is_safe_when_never_connected(self):
        self.connector.disconnect()
        self.connector.disconnect()
        self.assertFalse(self.connector.is_connected)

    def test_missing_file_is_unknown_database(self):
        connector = create_connector(
            ConnectionConfig(EngineKind.SQLITE, database=os.path.join(self.tmp.name, "absent.db"))
        )
        with self.assertRaises(UnknownDatabaseError) as ctx:
            connector.connect()
        self.assertIsInstance(ctx.exception, ConnectionError)
        self.assertIn("absent.db", ctx.exception.engine_message)


class TestConnectionFailures(unittest.TestCase):

    def _error(self, message):
        return OperationalError("SELECT 1", {}, Exception(message))

    def test_classification(self):
        cases = [
            ('FATAL:  password authentication failed for user "bob"', AuthenticationFailedError),
            ("(1045, \"Access denied for user 'bob'@'localhost'\")", AuthenticationFailedError),
            ("ORA-01017: invalid username/password; logon denied", AuthenticationFailedError),
            ("(1049, \"Unknown database 'sales'\")", UnknownDatabaseError),
            ('FATAL:  database "sales" does not exist', UnknownDatabaseError),
            ("Cannot open database \"sales\" requested by the login.", UnknownDatabaseError),
            ("could not translate host name \"nowhere\" to address", NetworkUnreachableError),
            ("(2003, \"Can't connect to MySQL server on 'db' (timed out)\")", NetworkUnreachableError),
            ("ORA-12541: TNS:no listener", NetworkUnreachableError),
            ("something else entirely", DataSourceConnectionError),
        ]
        for message, expected in cases:
            error = classify_connection_error(EngineKind.MYSQL, self._error(message))
            self.assertIs(type(error), expected, message)
            self.assertEqual(error.engine_message, message)

    def test_unreachable_postgres_is_classified_within_timeout(self):
        config = ConnectionConfig(
            EngineKind.POSTGRES, host="127.0.0.1", port=1, database="d",
            username="u", password="p", connect_timeout=3,
        )
        connector = create_connector(config)
        start = time.monotonic()
        with self.assertRaises(NetworkUnreachableError) as ctx:
            connector.connect()
        self.assertLess(time.monotonic() - start, 10)
        self.assertEqual(ctx.exception.reason, "network")
        self.assertFalse(connector.is_connected)
        connector.disconnect()


class TestConnectorRegistry(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.config = ConnectionConfig(EngineKind.SQLITE, database=_sqlite_file(self.tmp.name))
        self.created = []

        def factory(config):
            connector = create_connector(config)
            self.created.append(connector)
            return connector

        self.registry = ConnectorRegistry(factory)

    def tearDown(self):
        self.registry.close_all()
        self.tmp.cleanup()

    def test_connector_cached_after_connect(self):
        first = self.registry.get("src-1", self.config)
        second = self.registry.get("src-1", self.config)
        self.assertIs(first, second)
        self.assertTrue(first.is_connected)
        self.assertEqual(len(self.created), 1)
        self.assertIn("src-1", self.registry)

    def test_failed_connect_is_not_cached(self):
        bad = ConnectionConfig(EngineKind.SQLITE, database=os.path.join(self.tmp.name, "absent.db"))
        with self.assertRaises(UnknownDatabaseError):
            self.registry.get("src-2", bad)
        self.assertNotIn("src-2", self.registry)

    def test_evict_disconnects(self):
        connector = self.registry.get("src-1", self.config)
        self.registry.evict("src-1")
        self.assertFalse(connector.is_connected)
        self.assertEqual(len(self.registry), 0)
        self.registry.evict("src-1")


if __name__ == "__main__":
    unittest.main()
