"""
Tests for the SQL repair steps, one class per step, plus the pipeline and
its single SELECT * correction round-trip. No database required.
"""

import unittest

from pipeline_errors import (
    GenerationError,
    MissingAnchorError,
    ReadOnlyViolationError,
    StaleTableReferenceError,
    UngenerableQueryError,
)
from schema_catalog import ColumnSchema, EngineType, TableSchema
from sql_repair import (
    BROAD_PROJECTION_WARNING,
    RepairContext,
    SQLRepairPipeline,
    extract_statement,
    finalize_statement,
    fix_group_by,
    has_unrestricted_projection,
    normalize_backticks,
    quote_multiword_identifiers,
    reject_stale_table_reference,
    repair_sql,
    restore_literal_quoting,
    unquote_keywords,
)

EMPTY = RepairContext()


def _schema(table, *columns):
    return TableSchema(table, table, [ColumnSchema(c, EngineType.TEXT) for c in columns])


class TestExtractStatement(unittest.TestCase):

    def test_fenced_block(self):
        raw = "Here you go:\n```sql\nSELECT region FROM sales\n```\nHope it helps."
        self.assertEqual(extract_statement(raw, EMPTY), "SELECT region FROM sales")

    def test_lead_in_prose_dropped(self):
        raw = "Sure! The query is: SELECT region FROM sales"
        self.assertEqual(extract_statement(raw, EMPTY), "SELECT region FROM sales")

    def test_with_statement(self):
        raw = "WITH t AS (SELECT 1 AS x FROM sales) SELECT x FROM t"
        self.assertEqual(extract_statement(raw, EMPTY), raw)

    def test_comment_lines_removed(self):
        raw = "SELECT region,\n-- the total\nSUM(amount) AS t\n/* all rows */\nFROM sales"
        self.assertEqual(extract_statement(raw, EMPTY), "SELECT region,\nSUM(amount) AS t\nFROM sales")

    def test_inline_comments_removed_outside_literals(self):
        raw = "SELECT region, -- label\n/* sum */ SUM(amount)\nFROM sales WHERE note = '-- kept'"
        self.assertEqual(
            extract_statement(raw, EMPTY),
            "SELECT region, \n SUM(amount)\nFROM sales WHERE note = '-- kept'",
        )

    def test_sentinel_carries_reason(self):
        with self.assertRaises(UngenerableQueryError) as ctx:
            extract_statement("INVALID_QUERY: the data has no date column", EMPTY)
        self.assertEqual(ctx.exception.reason, "the data has no date column")

    def test_empty_output(self):
        with self.assertRaises(GenerationError):
            extract_statement("   ", EMPTY)

    def test_no_statement(self):
        with self.assertRaises(GenerationError):
            extract_statement("I am not sure what you mean.", EMPTY)

    def test_write_statements_rejected(self):
        for raw in ("DELETE FROM sales", "UPDATE sales SET amount = 0", "```sql\nDROP TABLE sales\n```"):
            with self.assertRaises(ReadOnlyViolationError, msg=raw):
                extract_statement(raw, EMPTY)


class TestRejectStaleTableReference(unittest.TestCase):

    def test_timestamp_prefixed_name(self):
        context = RepairContext(table_names=["sales"])
        with self.assertRaises(StaleTableReferenceError) as ctx:
            reject_stale_table_reference("SELECT a FROM `1700000000000-sales.csv`", context)
        self.assertEqual(ctx.exception.reference, "1700000000000-sales.csv")
        self.assertEqual(ctx.exception.suggestion, "sales")

    def test_file_extension_in_join(self):
        with self.assertRaises(StaleTableReferenceError):
            reject_stale_table_reference(
                "SELECT a FROM sales JOIN regions.xlsx ON sales.r = regions.r", EMPTY
            )

    def test_sanitized_names_pass(self):
        sql = "SELECT a FROM sales JOIN public.regions ON sales.r = regions.r"
        self.assertEqual(reject_stale_table_reference(sql, EMPTY), sql)

    def test_missing_from(self):
        with self.assertRaises(MissingAnchorError):
            reject_stale_table_reference("SELECT 1", EMPTY)


class TestNormalizeBackticks(unittest.TestCase):

    def setUp(self):
        self.context = RepairContext(
            identifiers=["Delivery end date", "amount"], table_names=["orders"]
        )

    def test_doubled_backticks(self):
        self.assertEqual(
            normalize_backticks("SELECT ``amount`` FROM orders", self.context),
            "SELECT `amount` FROM orders",
        )

    def test_pair_split_before_last_word(self):
        result = normalize_backticks("SELECT `Delivery end` date, amount FROM orders", self.context)
        self.assertEqual(result, "SELECT `Delivery end date`, amount FROM orders")
        self.assertEqual(result.count("`"), 2)

    def test_pair_split_between_every_word(self):
        self.assertEqual(
            normalize_backticks("SELECT `Delivery` `end date` FROM orders", self.context),
            "SELECT `Delivery end date` FROM orders",
        )

    def test_spacing_around_rejoined_identifiers_kept(self):
        context = RepairContext(
            identifiers=["Delivery end date and time", "Delivery start date and time"], table_names=["orders"]
        )
        self.assertEqual(
            normalize_backticks(
                "SELECT `Delivery end` date and time - `Delivery start` date and time AS d FROM orders", context
            ),
            "SELECT `Delivery end date and time` - `Delivery start date and time` AS d FROM orders",
        )

    def test_unbalanced_pair_without_schema(self):
        self.assertEqual(
            normalize_backticks("SELECT `Delivery end` date` FROM orders", EMPTY),
            "SELECT `Delivery end date` FROM orders",
        )

    def test_well_formed_untouched(self):
        sql = "SELECT `Delivery end date` FROM orders WHERE note = 'x ` y'"
        self.assertEqual(normalize_backticks(sql, self.context), sql)


class TestQuoteMultiwordIdentifiers(unittest.TestCase):

    def test_known_identifier(self):
        context = RepairContext(identifiers=["region", "Sales Q1"], table_names=["sales"])
        self.assertEqual(
            quote_multiword_identifiers("SELECT region, SUM(Sales Q1) FROM sales", context),
            "SELECT region, SUM(`Sales Q1`) FROM sales",
        )

    def test_word_run_without_schema(self):
        self.assertEqual(
            quote_multiword_identifiers("SELECT Customer Name, amount FROM orders", EMPTY),
            "SELECT `Customer Name`, amount FROM orders",
        )

    def test_table_alias_not_quoted(self):
        sql = "SELECT o.total FROM orders o JOIN customers c ON o.cid = c.id"
        self.assertEqual(quote_multiword_identifiers(sql, EMPTY), sql)

    def test_declared_alias_not_quoted(self):
        sql = "SELECT SUM(amount) AS total FROM orders"
        self.assertEqual(quote_multiword_identifiers(sql, EMPTY), sql)


class TestUnquoteKeywords(unittest.TestCase):

    def test_keywords(self):
        self.assertEqual(
            unquote_keywords("SELECT a `FROM` t `WHERE` a = 1", EMPTY),
            "SELECT a FROM t WHERE a = 1",
        )

    def test_column_named_like_keyword_kept(self):
        context = RepairContext(identifiers=["end"], table_names=["t"])
        sql = "SELECT `end` FROM t"
        self.assertEqual(unquote_keywords(sql, context), sql)


class TestProjection(unittest.TestCase):

    def test_detection(self):
        self.assertTrue(has_unrestricted_projection("SELECT * FROM t"))
        self.assertTrue(has_unrestricted_projection("select distinct * from t"))
        self.assertFalse(has_unrestricted_projection("SELECT COUNT(*) FROM t"))
        self.assertFalse(has_unrestricted_projection("SELECT a FROM t"))


class TestFixGroupBy(unittest.TestCase):

    def test_missing_group_by_column_appended(self):
        self.assertEqual(
            fix_group_by("SELECT region, product, SUM(amount) FROM sales GROUP BY region", EMPTY),
            "SELECT region, product, SUM(amount) FROM sales GROUP BY region, product",
        )

    def test_group_by_added_after_where(self):
        self.assertEqual(
            fix_group_by("SELECT region, SUM(amount) FROM sales WHERE amount > 0", EMPTY),
            "SELECT region, SUM(amount) FROM sales WHERE amount > 0 GROUP BY region",
        )

    def test_alias_and_position_count_as_present(self):
        for sql in (
            "SELECT region AS r, SUM(amount) FROM sales GROUP BY r",
            "SELECT region, SUM(amount) FROM sales GROUP BY 1",
        ):
            self.assertEqual(fix_group_by(sql, EMPTY), sql)

    def test_max_with_plain_column_rewritten(self):
        self.assertEqual(
            fix_group_by("SELECT region, MAX(amount) FROM sales", EMPTY),
            "SELECT region, amount AS max_amount FROM sales "
            "WHERE amount = (SELECT MAX(amount) FROM sales) ORDER BY region LIMIT 1",
        )

    def test_min_keeps_where(self):
        self.assertEqual(
            fix_group_by("SELECT customer, MIN(amount) FROM orders WHERE amount > 0", EMPTY),
            "SELECT customer, amount AS min_amount FROM orders "
            "WHERE (amount > 0) AND amount = (SELECT MIN(amount) FROM orders WHERE amount > 0) "
            "ORDER BY customer LIMIT 1",
        )

    def test_pure_aggregate_untouched(self):
        sql = "SELECT MAX(amount) FROM orders"
        self.assertEqual(fix_group_by(sql, EMPTY), sql)

    def test_window_function_untouched(self):
        sql = "SELECT region, SUM(amount) OVER (PARTITION BY region) FROM sales"
        self.assertEqual(fix_group_by(sql, EMPTY), sql)


class TestRestoreLiteralQuoting(unittest.TestCase):

    def setUp(self):
        self.context = RepairContext(identifiers=["city", "name"], table_names=["people"])

    def test_backticked_literal(self):
        self.assertEqual(
            restore_literal_quoting("SELECT name FROM people WHERE city = '`New York`'", EMPTY),
            "SELECT name FROM people WHERE city = 'New York'",
        )

    def test_comparison_operand(self):
        self.assertEqual(
            restore_literal_quoting("SELECT name FROM people WHERE city = `New York`", self.context),
            "SELECT name FROM people WHERE city = 'New York'",
        )

    def test_in_list(self):
        self.assertEqual(
            restore_literal_quoting(
                "SELECT name FROM people WHERE city IN (`Paris`, `Rome`)", self.context
            ),
            "SELECT name FROM people WHERE city IN ('Paris', 'Rome')",
        )

    def test_known_identifiers_kept(self):
        sql = "SELECT name FROM people WHERE `city` = `name`"
        self.assertEqual(restore_literal_quoting(sql, self.context), sql)

    def test_qualified_operand_kept(self):
        context = RepairContext(identifiers=["cid", "id", "total"], table_names=["orders", "customers"])
        sql = "SELECT o.total FROM orders o JOIN customers c ON o.cid = `c`.`id`"
        self.assertEqual(restore_literal_quoting(sql, context), sql)

    def test_table_alias_operand_kept(self):
        context = RepairContext(identifiers=["cid", "id", "city"], table_names=["orders", "customers"])
        self.assertEqual(
            restore_literal_quoting(
                "SELECT o.id FROM orders o JOIN customers c ON o.cid = c.id "
                "WHERE o.city IN (`c`.`city`, `Rome`) AND o.city <> `c`",
                context,
            ),
            "SELECT o.id FROM orders o JOIN customers c ON o.cid = c.id "
            "WHERE o.city IN (`c`.`city`, 'Rome') AND o.city <> `c`",
        )


class TestFinalizeStatement(unittest.TestCase):

    def test_text_after_terminator_dropped(self):
        self.assertEqual(
            finalize_statement("SELECT a FROM t;\nThis query returns a.", EMPTY),
            "SELECT a FROM t;",
        )

    def test_trailing_block_without_terminator(self):
        self.assertEqual(
            finalize_statement("SELECT a FROM t\n\nThe above returns every a.", EMPTY),
            "SELECT a FROM t;",
        )

    def test_multiline_statement_kept(self):
        result = finalize_statement("SELECT a\nFROM t\n\nWHERE a > 1", EMPTY)
        self.assertTrue(result.startswith("SELECT a"))
        self.assertTrue(result.endswith("WHERE a > 1;"))

    def test_semicolon_inside_literal(self):
        self.assertEqual(
            finalize_statement("SELECT a FROM t WHERE b = 'x;y'", EMPTY),
            "SELECT a FROM t WHERE b = 'x;y';",
        )


class TestRepairPipeline(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.schemas = [_schema("sales", "Region", "Sales Q1")]
        self.pipeline = SQLRepairPipeline(RepairContext.from_schemas(self.schemas))

    def test_sync_end_to_end(self):
        raw = (
            "Here is the query:\n```sql\nSELECT `Region`, SUM(`Sales Q1`) FROM sales\n```\n"
            "This query sums sales by region."
        )
        result = repair_sql(raw, self.schemas)
        self.assertEqual(result.sql, "SELECT `Region`, SUM(`Sales Q1`) FROM sales GROUP BY `Region`;")
        self.assertIn("fix_group_by", result.applied_steps)
        self.assertEqual(result.warnings, [])

    def test_comment_line_does_not_end_statement(self):
        raw = "SELECT region,\n-- the total\nSUM(amount) AS t\nFROM sales\nGROUP BY region"
        result = repair_sql(raw)
        self.assertNotIn("--", result.sql)
        self.assertIn("FROM sales", result.sql)
        self.assertTrue(result.sql.endswith("GROUP BY region;"))

    def test_lead_in_and_trailing_prose_without_schema(self):
        raw = "Sure! Here's the SQL:\n\nSELECT region FROM sales;\n\nThis query lists regions."
        self.assertEqual(repair_sql(raw).sql, "SELECT region FROM sales;")

    async def test_select_star_corrected_once(self):
        calls = []

        async def correct(sql):
            calls.append(sql)
            return "SELECT `Region`, `Sales Q1` FROM sales"

        result = await self.pipeline.repair("SELECT * FROM sales", correct)
        self.assertEqual(calls, ["SELECT * FROM sales;"])
        self.assertEqual(result.sql, "SELECT `Region`, `Sales Q1` FROM sales;")
        self.assertTrue(result.projection_corrected)
        self.assertEqual(result.warnings, [])

    async def test_select_star_kept_with_warning(self):
        calls = []

        async def correct(sql):
            calls.append(sql)
            return "SELECT * FROM sales"

        result = await self.pipeline.repair("SELECT * FROM sales", correct)
        self.assertEqual(len(calls), 1)
        self.assertEqual(result.sql, "SELECT * FROM sales;")
        self.assertFalse(result.projection_corrected)
        self.assertEqual(result.warnings, [BROAD_PROJECTION_WARNING])

    async def test_failed_correction_is_not_fatal(self):
        async def correct(sql):
            raise GenerationError("timeout")

        result = await self.pipeline.repair("SELECT * FROM sales", correct)
        self.assertEqual(result.sql, "SELECT * FROM sales;")
        self.assertEqual(result.warnings, [BROAD_PROJECTION_WARNING])

    async def test_no_round_trip_for_explicit_columns(self):
        async def correct(sql):
            raise AssertionError("should not be called")

        result = await self.pipeline.repair("SELECT `Region` FROM sales", correct)
        self.assertEqual(result.sql, "SELECT `Region` FROM sales;")


if __name__ == "__main__":
    unittest.main()
