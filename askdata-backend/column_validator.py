"""
AskData - Column Validator
==========================

PURPOSE:
Rejects a repaired statement before execution when it references a column
or table the schemas selected for the request do not expose.

SOLUTION:
A small lexer walks the statement once and collects:
1. table references from FROM/JOIN lists, with their aliases
2. derived names (CTEs, subquery aliases) and output aliases (AS x)
3. qualified (t.col) and bare (col) column references

Every reference is matched case-insensitively. A bare column found in more
than one in-scope table is ambiguous. Failures list the offending names, the
full legal column list and close matches, so the caller can re-prompt.

The validator never changes the statement.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Sequence, Set, Tuple

from pipeline_errors import QueryValidationError
from schema_catalog import TableSchema
from sql_repair import SQL_KEYWORDS

logger = logging.getLogger(__name__)

# Never columns unless backtick-quoted
_NILADIC_WORDS = {
    "current_date", "current_time", "current_timestamp", "localtime", "localtimestamp",
    "signed", "unsigned", "dual",
}
# The words below are columns too, unless their neighbours say otherwise
_DATE_PARTS = {
    "epoch", "year", "month", "day", "hour", "minute", "second", "week", "quarter",
    "dow", "doy", "timezone", "microsecond", "millisecond",
    "year_month", "day_hour", "day_minute", "day_second", "hour_minute",
}
_DATE_PART_FUNCTIONS = (
    "EXTRACT", "TIMESTAMPDIFF", "TIMESTAMPADD", "DATEDIFF", "DATEADD", "DATEPART", "DATENAME",
)
_TYPE_WORDS = {
    "date", "time", "timestamp", "char", "varchar", "integer", "int", "decimal",
    "real", "double", "precision", "text", "float", "boolean",
}
_TYPED_LITERAL_WORDS = {"date", "time", "timestamp"}

_TOKEN_RE = re.compile(
    r"""
      (?P<comment>--[^\n]*|/\*.*?\*/)
    | (?P<quoted>`[^`]*`)
    | (?P<literal>'(?:[^'\\]|\\.|'')*'|"(?:[^"\\]|\\.)*")
    | (?P<number>\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)
    | (?P<word>[A-Za-z_][A-Za-z0-9_$]*)
    | (?P<punct>\S)
    """,
    re.VERBOSE | re.DOTALL,
)


class _Token(NamedTuple):
    kind: str
    text: str

    @property
    def is_name(self) -> bool:
        return self.kind in ("word", "quoted")

    @property
    def name(self) -> str:
        return self.text[1:-1] if self.kind == "quoted" else self.text

    def is_keyword(self, *words: str) -> bool:
        return self.kind == "word" and self.text.upper() in words


def _ends_expression(token: _Token) -> bool:
    if token.text == ")" or token.kind in ("number", "literal", "quoted"):
        return True
    if token.kind == "word":
        return token.text.upper() == "END" or token.text.upper() not in SQL_KEYWORDS
    return False


def _is_non_column(tokens: List[_Token], index: int) -> bool:
    """
    Whether a bare word is SQL vocabulary rather than a column reference.

    Date parts count only inside EXTRACT(...)-style calls or after INTERVAL;
    type names only after another type name, a ``::`` cast or as a typed
    literal prefix (DATE '2024-01-01'); LAST only after NULLS and UNKNOWN
    only after IS / NOT. Anywhere else they are checked like other columns.
    """
    word = tokens[index].text.lower()
    if word in _NILADIC_WORDS:
        return True
    prev = tokens[index - 1] if index > 0 else None
    before = tokens[index - 2] if index > 1 else None
    nxt = tokens[index + 1] if index + 1 < len(tokens) else None
    if prev is None:
        return False

    if word in _DATE_PARTS:
        if prev.is_keyword("INTERVAL"):
            return True
        if before is None:
            return False
        if prev.kind in ("number", "literal") and before.is_keyword("INTERVAL"):
            return True
        return prev.text == "(" and before.is_keyword(*_DATE_PART_FUNCTIONS)
    if word in _TYPE_WORDS:
        if word in _TYPED_LITERAL_WORDS and nxt is not None and nxt.kind == "literal":
            return True
        return prev.text == ":" or (prev.kind == "word" and prev.text.lower() in _TYPE_WORDS)
    if word == "last":
        return prev.is_keyword("NULLS")
    if word == "unknown":
        return prev.is_keyword("IS", "NOT")
    return False


def _tokenize(sql: str) -> List[_Token]:
    tokens = []
    for match in _TOKEN_RE.finditer(sql):
        kind = match.lastgroup
        if kind != "comment":
            tokens.append(_Token(kind, match.group(0)))
    return tokens


@dataclass
class ColumnValidationResult:
    """
    Result of column validation.

    Attributes:
        valid: Whether every reference resolved to exactly one legal column
        sql: The statement that was validated (unchanged)
        unknown_identifiers: Column references not exposed by any selected schema
        unknown_tables: Table references not among the selected schemas
        ambiguous_identifiers: Bare columns present in more than one in-scope table
        legal_columns: Every column the selected schemas expose
        suggestions: Close legal matches per unknown identifier
        error_message: Human-readable error (if invalid)
    """
    valid: bool
    sql: str
    unknown_identifiers: List[str] = field(default_factory=list)
    unknown_tables: List[str] = field(default_factory=list)
    ambiguous_identifiers: List[str] = field(default_factory=list)
    legal_columns: List[str] = field(default_factory=list)
    suggestions: Dict[str, List[str]] = field(default_factory=dict)
    error_message: Optional[str] = None

    def to_error(self) -> QueryValidationError:
        return QueryValidationError(
            self.error_message or "Query validation failed",
            unknown_identifiers=self.unknown_identifiers,
            ambiguous_identifiers=self.ambiguous_identifiers,
            unknown_tables=self.unknown_tables,
            legal_columns=self.legal_columns,
            suggestions=self.suggestions,
        )


@dataclass
class _References:
    tables: List[str] = field(default_factory=list)
    aliases: Dict[str, str] = field(default_factory=dict)
    derived: Set[str] = field(default_factory=set)
    output_aliases: Set[str] = field(default_factory=set)
    has_derived_source: bool = False
    qualified: List[Tuple[str, str]] = field(default_factory=list)
    bare: List[str] = field(default_factory=list)


class ColumnValidator:
    """Checks statements against the schemas selected for one request."""

    def __init__(self, schemas: Sequence[TableSchema]):
        self.schemas = list(schemas)
        self._build_column_index()

    def _build_column_index(self) -> None:
        # table (lowercase) -> {column (lowercase): column as stored}
        self.column_index: Dict[str, Dict[str, str]] = {}
        self.legal_columns: List[str] = []
        seen = set()
        for schema in self.schemas:
            columns = {c.name.lower(): c.name for c in schema.columns}
            self.column_index[schema.table_name.lower()] = columns
            for column in schema.columns:
                if column.name.lower() not in seen:
                    seen.add(column.name.lower())
                    self.legal_columns.append(column.name)

    def validate(self, sql: str) -> ColumnValidationResult:
        refs = self._collect_references(_tokenize(sql or ""))

        unknown_tables = []
        for table in refs.tables:
            key = table.lower()
            if key not in self.column_index and key not in refs.derived and table not in unknown_tables:
                unknown_tables.append(table)

        in_scope = [t.lower() for t in refs.tables if t.lower() in self.column_index]
        scope = list(dict.fromkeys(in_scope)) or list(self.column_index)
        all_columns = {c for columns in self.column_index.values() for c in columns}

        unknown: List[str] = []
        ambiguous: List[str] = []

        for qualifier, column in refs.qualified:
            key = qualifier.lower()
            if column == "*" or key in refs.derived:
                continue
            table = refs.aliases.get(key, key)
            if table in self.column_index:
                if column.lower() not in self.column_index[table]:
                    self._add_once(unknown, f"{qualifier}.{column}")
            elif table in refs.derived or table in {t.lower() for t in unknown_tables}:
                continue
            elif column.lower() not in all_columns:
                self._add_once(unknown, f"{qualifier}.{column}")

        for column in refs.bare:
            key = column.lower()
            if key in refs.output_aliases or key in refs.derived or key in refs.aliases:
                continue
            owners = [t for t in scope if key in self.column_index[t]]
            if not owners:
                if refs.has_derived_source and key in all_columns:
                    continue
                self._add_once(unknown, column)
            elif len(owners) > 1 and in_scope:
                self._add_once(ambiguous, column)

        if not (unknown or unknown_tables or ambiguous):
            logger.debug("[VALIDATOR] Validation PASSED")
            return ColumnValidationResult(valid=True, sql=sql, legal_columns=list(self.legal_columns))

        suggestions = {}
        for identifier in unknown:
            similar = self._find_similar_columns(identifier.split(".")[-1], self.legal_columns)
            if similar:
                suggestions[identifier] = similar[:3]

        message = self._build_error_message(unknown, unknown_tables, ambiguous, suggestions)
        logger.warning(f"[VALIDATOR] Validation FAILED: {message}")
        return ColumnValidationResult(
            valid=False,
            sql=sql,
            unknown_identifiers=unknown,
            unknown_tables=unknown_tables,
            ambiguous_identifiers=ambiguous,
            legal_columns=list(self.legal_columns),
            suggestions=suggestions,
            error_message=message,
        )

    # ------------------------------------------------------------------ lexing

    def _collect_references(self, tokens: List[_Token]) -> _References:
        refs = _References()
        skip: Set[int] = set()
        # one entry per open parenthesis: does it contain a SELECT?
        paren_stack: List[bool] = []
        count = len(tokens)

        def _read_chain(index: int) -> Tuple[List[str], int]:
            names = [tokens[index].name]
            skip.add(index)
            index += 1
            while index + 1 < count and tokens[index].text == "." and tokens[index + 1].is_name:
                names.append(tokens[index + 1].name)
                skip.update((index, index + 1))
                index += 2
            return names, index

        def _read_alias(index: int, target: str) -> int:
            if index < count and tokens[index].is_keyword("AS"):
                index += 1
            if index < count and tokens[index].is_name and not (
                tokens[index].kind == "word" and tokens[index].text.upper() in SQL_KEYWORDS
            ):
                refs.aliases[tokens[index].name.lower()] = target
                skip.add(index)
                index += 1
            return index

        i = 0
        while i < count:
            token = tokens[i]
            if token.text == "(":
                paren_stack.append(False)
            elif token.text == ")":
                had_select = paren_stack.pop() if paren_stack else False
                if had_select:
                    j = i + 1
                    if j < count and tokens[j].is_keyword("AS"):
                        j += 1
                    if j < count and tokens[j].is_name and tokens[j].text.upper() not in SQL_KEYWORDS:
                        refs.derived.add(tokens[j].name.lower())
                        skip.add(j)
            elif token.is_keyword("SELECT"):
                if paren_stack:
                    paren_stack[-1] = True
            elif token.is_keyword("WITH") or (token.text == "," and i + 2 < count and tokens[i + 2].is_keyword("AS")
                                               and i + 3 < count and tokens[i + 3].text == "("):
                # CTE name: WITH name AS ( ... ), name AS ( ... )
                j = i + 1
                if j < count and tokens[j].is_keyword("RECURSIVE"):
                    j += 1
                if j < count and tokens[j].is_name and j + 1 < count and tokens[j + 1].is_keyword("AS"):
                    refs.derived.add(tokens[j].name.lower())
                    skip.add(j)
            elif token.is_keyword("FROM", "JOIN"):
                in_function = bool(paren_stack) and not paren_stack[-1]
                if not in_function:
                    i = self._read_table_list(tokens, i + 1, refs, _read_chain, _read_alias)
                    continue
            elif token.is_keyword("AS") and i + 1 < count and tokens[i + 1].is_name:
                if not (i + 2 < count and tokens[i + 2].text == "("):
                    refs.output_aliases.add(tokens[i + 1].name.lower())
                    skip.add(i + 1)
            i += 1

        self._collect_columns(tokens, skip, refs)
        return refs

    def _read_table_list(self, tokens, index, refs, read_chain, read_alias) -> int:
        count = len(tokens)
        while index < count:
            token = tokens[index]
            if token.text == "(":
                refs.has_derived_source = True
                return index
            if not token.is_name:
                return index
            names, index = read_chain(index)
            table = names[-1]
            refs.tables.append(table)
            index = read_alias(index, table.lower())
            if index < count and tokens[index].text == ",":
                index += 1
                continue
            return index
        return index

    def _collect_columns(self, tokens: List[_Token], skip: Set[int], refs: _References) -> None:
        count = len(tokens)
        i = 0
        while i < count:
            token = tokens[i]
            if i in skip or not token.is_name:
                i += 1
                continue

            # dotted chain: qualifier.column (schema.table.column keeps the last two)
            if i + 2 < count and tokens[i + 1].text == "." and (
                tokens[i + 2].is_name or tokens[i + 2].text == "*"
            ):
                names = [token.name]
                j = i
                while j + 2 < count and tokens[j + 1].text == "." and (
                    tokens[j + 2].is_name or tokens[j + 2].text == "*"
                ):
                    names.append(tokens[j + 2].name if tokens[j + 2].is_name else "*")
                    j += 2
                refs.qualified.append((names[-2], names[-1]))
                i = j + 1
                continue

            nxt = tokens[i + 1] if i + 1 < count else None
            if token.kind == "word":
                upper = token.text.upper()
                if nxt is not None and nxt.text == "(":
                    i += 1
                    continue
                if upper in SQL_KEYWORDS or _is_non_column(tokens, i):
                    i += 1
                    continue

            prev = tokens[i - 1] if i > 0 else None
            # implicit output alias: "SUM(x) total" / "region r"
            if prev is not None and _ends_expression(prev) \
                    and (nxt is None or nxt.text in (",", ";") or nxt.is_keyword("FROM")):
                refs.output_aliases.add(token.name.lower())
                i += 1
                continue

            refs.bare.append(token.name)
            i += 1

    # ---------------------------------------------------------------- messages

    @staticmethod
    def _add_once(target: List[str], value: str) -> None:
        if value not in target:
            target.append(value)

    def _build_error_message(
        self,
        unknown: List[str],
        unknown_tables: List[str],
        ambiguous: List[str],
        suggestions: Dict[str, List[str]],
    ) -> str:
        parts = []
        for identifier in unknown:
            part = f"Column '{identifier}' does not exist."
            if identifier in suggestions:
                part += f" Did you mean: {', '.join(suggestions[identifier])}?"
            parts.append(part)
        for table in unknown_tables:
            parts.append(f"Table '{table}' is not among the selected data sources.")
        for identifier in ambiguous:
            parts.append(f"Column '{identifier}' is ambiguous; qualify it with a table name.")
        sample = self.legal_columns[:20]
        legal = ", ".join(sample)
        if len(self.legal_columns) > len(sample):
            legal += f" (and {len(self.legal_columns) - len(sample)} more)"
        parts.append(f"Available columns: {legal}")
        return " ".join(parts)

    def _find_similar_columns(self, target: str, available: List[str]) -> List[str]:
        """Find columns with similar names (simple substring/prefix matching)."""
        target_lower = target.lower()
        similar = []

        for col in available:
            col_lower = col.lower()
            if (target_lower in col_lower or
                col_lower in target_lower or
                target_lower.replace('_', '') in col_lower.replace('_', '')):
                similar.append(col)

        return similar


def validate_columns(sql: str, schemas: Sequence[TableSchema]) -> ColumnValidationResult:
    return ColumnValidator(schemas).validate(sql)
