"""
AskData - SQL Extraction & Repair
=================================

PURPOSE:
Turns raw language-model output into one clean, MySQL-flavoured, read-only
statement that the column validator and connectors can work with.

PROBLEM STATEMENT:
Models wrap SQL in markdown fences and prose, copy raw upload names into the
FROM clause, split backtick pairs in the middle of multi-word column names,
backtick keywords, use SELECT * and produce aggregates that strict engines
reject (ONLY_FULL_GROUP_BY).

SOLUTION:
An ordered list of pure text transforms ``step(sql, context) -> sql``. Each
step may raise a RepairError (or GenerationError for step 1) but never
guesses past a missing anchor. Order matters: later steps assume the
normalisation done by earlier ones.

    1. extract_statement             fences, INVALID_QUERY sentinel, lead-in prose
    2. reject_stale_table_reference  raw file names in FROM/JOIN, missing FROM
    3. normalize_backticks           ``x`` and split pairs around multi-word names
    4. quote_multiword_identifiers   bare multi-word names get backticks
    5. unquote_keywords              `FROM` -> FROM
    6. (pipeline) SELECT *           one corrective round-trip, then a warning
    7. fix_group_by                  missing GROUP BY columns, MIN/MAX rewrite
    8. restore_literal_quoting       backticked values back to 'string' literals
    9. finalize_statement            trailing prose, comments, terminator

Steps 2-8 only touch the statement itself; text after the first top-level
';' (or after a trailing prose block) is carried along untouched until step 9
drops it.

KNOWN LIMITS:
These are regex heuristics, not a SQL parser. Statements with CTEs, set
operators or window functions are passed through step 7 unchanged.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

import sqlparse

from pipeline_errors import (
    GenerationError,
    MissingAnchorError,
    ReadOnlyViolationError,
    RepairError,
    StaleTableReferenceError,
    UngenerableQueryError,
)
from schema_catalog import TableSchema, sanitize_column_name, sanitize_identifier

logger = logging.getLogger(__name__)

INVALID_QUERY_SENTINEL = "INVALID_QUERY"

BROAD_PROJECTION_WARNING = (
    "broad projection: the query selects every column (SELECT *) and the "
    "correction attempt did not produce an explicit column list"
)

SQL_KEYWORDS = {
    "SELECT", "FROM", "WHERE", "AND", "OR", "NOT", "IN", "IS", "NULL", "AS", "ON",
    "JOIN", "LEFT", "RIGHT", "INNER", "OUTER", "FULL", "CROSS", "NATURAL", "USING",
    "GROUP", "BY", "ORDER", "HAVING", "LIMIT", "OFFSET", "FETCH", "FIRST", "NEXT",
    "ROWS", "ROW", "ONLY", "TOP", "ASC", "DESC", "DISTINCT", "ALL", "UNION",
    "INTERSECT", "EXCEPT", "MINUS", "CASE", "WHEN", "THEN", "ELSE", "END", "TRUE",
    "FALSE", "BETWEEN", "LIKE", "ILIKE", "REGEXP", "EXISTS", "ANY", "SOME", "OVER",
    "PARTITION", "WITH", "RECURSIVE", "INTERVAL", "CAST", "INSERT", "UPDATE",
    "DELETE", "CREATE", "ALTER", "DROP", "SET", "VALUES", "INTO", "TABLE", "DIV",
    "MOD", "XOR", "NULLS", "ESCAPE", "COLLATE", "PRECEDING", "FOLLOWING",
    "UNBOUNDED", "CURRENT", "RANGE", "WINDOW",
}

# Keywords the model sometimes wraps in backticks
_BACKTICKED_KEYWORD_RE = re.compile(
    r"`(SELECT|FROM|WHERE|GROUP BY|ORDER BY|HAVING|LIMIT|OFFSET|JOIN|AND|OR|ON|AS"
    r"|UNION|DISTINCT|INSERT|UPDATE|DELETE|CREATE|ALTER|DROP|SET|VALUES|IN|BETWEEN"
    r"|LIKE|CASE|WHEN|THEN|ELSE|END)`",
    re.IGNORECASE,
)

_MASK = "\x00"

# Literals first, then backtick identifiers: whichever opens first wins
_QUOTED_RE = re.compile(r"'(?:[^'\\]|\\.|'')*'|\"(?:[^\"\\]|\\.)*\"|`[^`]*`")

_TRAILING_PROSE_RE = re.compile(
    r"\n\s*\n(?!\s*(?:(?:FROM|WHERE|GROUP|ORDER|HAVING|LIMIT|OFFSET|JOIN|LEFT|RIGHT|INNER"
    r"|OUTER|FULL|CROSS|UNION|AND|OR|ON|AS|SELECT|WITH)\b|[(),]))"
    r"|\n[ \t]*(?:This query|The above|Here)\b",
    re.IGNORECASE,
)


# =============================================================================
# CONTEXT
# =============================================================================

def _collapse_spaces(text: str) -> str:
    return " ".join(text.split())


@dataclass
class RepairContext:
    """Identifiers legal for the request; empty means heuristic mode."""
    identifiers: Sequence[str] = ()
    table_names: Sequence[str] = ()
    identifier_set: Set[str] = field(init=False, default_factory=set)
    table_set: Set[str] = field(init=False, default_factory=set)
    multiword_identifiers: List[str] = field(init=False, default_factory=list)

    def __post_init__(self):
        self.identifier_set = {_collapse_spaces(i).lower() for i in self.identifiers}
        self.table_set = {_collapse_spaces(t).lower() for t in self.table_names}
        multiword = {_collapse_spaces(i) for i in self.identifiers if len(i.split()) > 1}
        self.multiword_identifiers = sorted(multiword, key=lambda i: (-len(i), i))

    @classmethod
    def from_schemas(cls, schemas: Sequence[TableSchema]) -> "RepairContext":
        identifiers: List[str] = []
        for schema in schemas:
            identifiers.extend(schema.column_names)
        return cls(identifiers=identifiers, table_names=[s.table_name for s in schemas])

    @property
    def has_identifiers(self) -> bool:
        return bool(self.identifier_set)

    def is_known(self, name: str) -> bool:
        key = _collapse_spaces(name).lower()
        return key in self.identifier_set or key in self.table_set


# =============================================================================
# SCANNING HELPERS
# =============================================================================

def _mask(sql: str, backticks: bool = False, keep: Optional[Callable[[str], bool]] = None) -> str:
    """
    Blank out the inside of quoted spans, keeping every index aligned.

    String literals are always masked; backtick identifiers only when
    ``backticks`` is set, and then only those for which ``keep`` is false.
    """
    def _blank(match: re.Match) -> str:
        text = match.group(0)
        if text[0] == "`":
            if not backticks or (keep is not None and keep(text[1:-1])):
                return text
        return text[0] + _MASK * (len(text) - 2) + text[-1]

    return _QUOTED_RE.sub(_blank, sql)


def _paren_depths(masked: str) -> List[int]:
    depths = []
    depth = 0
    for char in masked:
        if char == ")":
            depth = max(0, depth - 1)
        depths.append(depth)
        if char == "(":
            depth += 1
    return depths


def _split_statement_tail(sql: str) -> Tuple[str, str]:
    """
    Split text into (statement, tail).

    The statement ends at the first ';' outside quotes and parentheses. With
    no terminator it ends where trailing prose starts: a blank line not
    followed by more SQL or a "This query" / "The above" / "Here" line.
    Comments are part of the statement; step 1 removes them.
    """
    masked = _mask(sql, backticks=True)
    depth = 0
    for i, char in enumerate(masked):
        if char == "(":
            depth += 1
        elif char == ")":
            depth = max(0, depth - 1)
        elif char == ";" and depth == 0:
            return sql[:i], sql[i:]

    prose = _TRAILING_PROSE_RE.search(masked)
    if prose:
        return sql[:prose.start()], sql[prose.start():]
    return sql, ""


def _on_statement(sql: str, transform: Callable[[str], str]) -> str:
    statement, tail = _split_statement_tail(sql)
    return transform(statement) + tail


def _split_top_level(masked: str, start: int, end: int) -> List[Tuple[int, int]]:
    """Comma separated spans of masked[start:end] at parenthesis depth 0."""
    spans = []
    depth = 0
    item_start = start
    for i in range(start, end):
        char = masked[i]
        if char == "(":
            depth += 1
        elif char == ")":
            depth = max(0, depth - 1)
        elif char == "," and depth == 0:
            spans.append((item_start, i))
            item_start = i + 1
    spans.append((item_start, end))
    return spans


def _replace_spans(text: str, replacements: List[Tuple[int, int, str]]) -> str:
    for start, end, value in sorted(replacements, key=lambda r: r[0], reverse=True):
        text = text[:start] + value + text[end:]
    return text


def _declared_aliases(masked: str) -> Set[str]:
    return {a.lower() for a in re.findall(r"\bAS\s+([A-Za-z_]\w*)", masked, re.IGNORECASE)}


_TABLE_ALIAS_RE = re.compile(
    r"\b(?:FROM|JOIN)\s+(?:`[^`]+`|[\w.]+)\s+(?:AS\s+)?([A-Za-z_]\w*)", re.IGNORECASE
)


def _table_aliases(masked: str) -> Set[str]:
    """Aliases given to tables in FROM/JOIN, with or without AS."""
    return {
        a.lower() for a in _TABLE_ALIAS_RE.findall(masked) if a.upper() not in SQL_KEYWORDS
    }


def _quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


# =============================================================================
# STEP 1: EXTRACT STATEMENT
# =============================================================================

_FENCED_BLOCK_RE = re.compile(
    r"```[ \t]*(?:sql|mysql|sqlite|postgres(?:ql)?|tsql|plsql)?[ \t]*\n?(.*?)```",
    re.IGNORECASE | re.DOTALL,
)
_FENCE_MARKER_RE = re.compile(
    r"```[ \t]*(?:sql|mysql|sqlite|postgres(?:ql)?|tsql|plsql)?", re.IGNORECASE
)
_SENTINEL_RE = re.compile(r"\b" + INVALID_QUERY_SENTINEL + r"\b")
_LINE_START_SELECT_RE = re.compile(r"^[ \t]*(SELECT|WITH)\b", re.IGNORECASE | re.MULTILINE)
# Upper-case SQL embedded mid-line after prose ("Sure: SELECT ...")
_INLINE_SELECT_RE = re.compile(r"\b(SELECT|WITH)\b")
_WRITE_STATEMENT_RE = re.compile(
    r"^[ \t]*(INSERT\s+INTO|UPDATE\s+[`\w.]+\s+SET|DELETE\s+FROM|REPLACE\s+INTO|MERGE\s+INTO"
    r"|CREATE\s+(?:OR\s+REPLACE\s+)?(?:TABLE|VIEW|INDEX|DATABASE)|DROP\s+(?:TABLE|VIEW|INDEX|DATABASE)"
    r"|ALTER\s+TABLE|TRUNCATE\b|GRANT\b)",
    re.IGNORECASE | re.MULTILINE,
)


# Whole comment lines go with their newline so no blank line is left behind
_BLOCK_COMMENT = r"/\*(?:[^*]|\*(?!/))*\*/"
_COMMENT_RE = re.compile(
    r"^[ \t]*--[^\n]*(?:\n|$)|^[ \t]*" + _BLOCK_COMMENT + r"[ \t]*(?:\n|$)|--[^\n]*|" + _BLOCK_COMMENT,
    re.MULTILINE,
)


def _statement_start(text: str) -> Optional[re.Match]:
    return _LINE_START_SELECT_RE.search(text) or _INLINE_SELECT_RE.search(text)


def _strip_comments(text: str) -> str:
    masked = _mask(text, backticks=True)
    return _replace_spans(text, [(m.start(), m.end(), "") for m in _COMMENT_RE.finditer(masked)])


def extract_statement(sql: str, context: RepairContext) -> str:
    text = (sql or "").strip()
    if not text:
        raise GenerationError("The language model returned an empty response")

    unfenced = _FENCE_MARKER_RE.sub("", text)
    start = _statement_start(unfenced)
    sentinel = _SENTINEL_RE.search(unfenced)
    if sentinel and (start is None or sentinel.start() < start.start()):
        reason = _collapse_spaces(_SENTINEL_RE.sub(" ", unfenced)).strip(" :-.")
        logger.warning(f"[REPAIR] Model declined to generate SQL: {reason}")
        raise UngenerableQueryError(reason or "no reason given")

    fenced = _FENCED_BLOCK_RE.search(text)
    if fenced and fenced.group(1).strip():
        text = fenced.group(1).strip()
    else:
        text = unfenced.strip()

    start = _statement_start(text)
    write = _WRITE_STATEMENT_RE.search(text)
    if write and (start is None or write.start() < start.start()):
        detected = _collapse_spaces(write.group(1)).split(" ")[0].upper()
        logger.warning(f"[REPAIR] Rejected non-read-only statement ({detected})")
        raise ReadOnlyViolationError(f"Only SELECT queries are allowed. Detected: {detected}")
    if start is None:
        raise GenerationError("No SQL statement found in the language model response")
    return _strip_comments(text[start.start():]).strip()


# =============================================================================
# STEP 2: STALE TABLE REFERENCES
# =============================================================================

_TABLE_REFERENCE_RE = re.compile(
    r"\b(?:FROM|JOIN)\s+(`[^`]+`|'[^']+'|\"[^\"]+\"|[\w.\-]+)", re.IGNORECASE
)
_FILE_EXTENSION_RE = re.compile(
    r"\.(?:xlsx|xlsm|xls|csv|tsv|ods|docx|doc|pdf|txt|md|json)$", re.IGNORECASE
)
_NUMERIC_PREFIX_RE = re.compile(r"^\d+-")


def reject_stale_table_reference(sql: str, context: RepairContext) -> str:
    def _check(statement: str) -> str:
        masked = _mask(statement)
        references = list(_TABLE_REFERENCE_RE.finditer(masked))
        if not references:
            raise MissingAnchorError("Could not locate a FROM clause in the generated SQL")

        for match in references:
            reference = statement[match.start(1):match.end(1)].strip("`'\"")
            if reference.lower() in context.table_set:
                continue
            if _NUMERIC_PREFIX_RE.match(reference) or _FILE_EXTENSION_RE.search(reference):
                suggestion = sanitize_identifier(reference)
                logger.warning(
                    f"[REPAIR] Stale table reference '{reference}' (expected '{suggestion}')"
                )
                raise StaleTableReferenceError(reference, suggestion)
        return statement

    return _on_statement(sql, _check)


# =============================================================================
# STEP 3: BACKTICK NORMALISATION
# =============================================================================

_DOUBLE_BACKTICK_RE = re.compile(r"``([^`]+)``")
# separator between two words of one identifier, possibly with stray backticks
_SPLIT_SEPARATOR = r"(?:\s*`\s*`\s*|\s*`\s*|\s+)"
_UNBALANCED_PAIR_RE = re.compile(r"`([^`]+)`((?:[ \t]+[A-Za-z0-9_]+)+)`")


def _count_backticks(sql: str) -> int:
    return _mask(sql).count("`")


def normalize_backticks(sql: str, context: RepairContext) -> str:
    def _fix(statement: str) -> str:
        statement = _DOUBLE_BACKTICK_RE.sub(r"`\1`", statement)
        statement = _QUOTED_RE.sub(
            lambda m: "`" + _collapse_spaces(m.group(0)[1:-1]) + "`"
            if m.group(0)[0] == "`" else m.group(0),
            statement,
        )

        for identifier in context.multiword_identifiers:
            body = _SPLIT_SEPARATOR.join(re.escape(word) for word in identifier.split())
            # surrounding whitespace belongs to the statement, not the identifier
            pattern = re.compile(r"(?<![\w`])(?:`\s*)?" + body + r"(?:\s*`)?(?![\w`])", re.IGNORECASE)
            masked = _mask(statement, backticks=True, keep=lambda inner: not context.is_known(inner))
            replacements = [
                (m.start(), m.end(), f"`{identifier}`")
                for m in pattern.finditer(masked)
                if "`" in m.group(0)
            ]
            if replacements:
                logger.debug(f"[REPAIR] Rejoined split identifier `{identifier}`")
                statement = _replace_spans(statement, replacements)

        if _count_backticks(statement) % 2:
            statement = _UNBALANCED_PAIR_RE.sub(r"`\1\2`", statement)
        return statement

    return _on_statement(sql, _fix)


# =============================================================================
# STEP 4: QUOTE BARE MULTI-WORD IDENTIFIERS
# =============================================================================

_WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_LAST_CLAUSE_WORD_RE = re.compile(
    r"\b(SELECT|FROM|JOIN|ON|WHERE|GROUP|ORDER|HAVING|LIMIT|USING)\b", re.IGNORECASE
)


def _quote_known_identifiers(statement: str, context: RepairContext) -> str:
    for identifier in context.multiword_identifiers:
        if identifier.upper() in ("GROUP BY", "ORDER BY"):
            continue
        pattern = re.compile(
            r"(?<![\w`.])" + r"\s+".join(re.escape(w) for w in identifier.split()) + r"(?![\w`])",
            re.IGNORECASE,
        )
        masked = _mask(statement, backticks=True)
        replacements = [(m.start(), m.end(), f"`{identifier}`") for m in pattern.finditer(masked)]
        if replacements:
            statement = _replace_spans(statement, replacements)
    return statement


def _quote_word_runs(statement: str) -> str:
    """Backtick runs of two or more bare non-keyword words."""
    masked = _mask(statement, backticks=True)
    aliases = _declared_aliases(masked)
    tokens = list(_WORD_RE.finditer(masked))

    def _is_breaker(token: re.Match) -> bool:
        word = token.group(0)
        before = masked[token.start() - 1] if token.start() > 0 else " "
        after = masked[token.end():].lstrip(" \t")[:1]
        return (
            word.upper() in SQL_KEYWORDS
            or before.isalnum() or before in "._"
            or after in ("(", ".")
            or word.lower() in aliases
        )

    runs: List[List[re.Match]] = []
    current: List[re.Match] = []
    previous: Optional[re.Match] = None
    for token in tokens:
        joined = (
            current
            and previous is not None
            and re.fullmatch(r"[ \t]+", masked[previous.end():token.start()])
        )
        if _is_breaker(token):
            if len(current) > 1:
                runs.append(current)
            current = []
        elif joined:
            current.append(token)
        else:
            if len(current) > 1:
                runs.append(current)
            current = [token]
        previous = token
    if len(current) > 1:
        runs.append(current)

    replacements = []
    for run in runs:
        # table name plus alias inside a FROM/JOIN list
        clause = _LAST_CLAUSE_WORD_RE.findall(masked[:run[0].start()])
        if clause and clause[-1].upper() in ("FROM", "JOIN"):
            continue
        words = [t.group(0) for t in run]
        replacements.append((run[0].start(), run[-1].end(), "`" + " ".join(words) + "`"))
    return _replace_spans(statement, replacements)


def quote_multiword_identifiers(sql: str, context: RepairContext) -> str:
    def _fix(statement: str) -> str:
        if context.has_identifiers:
            return _quote_known_identifiers(statement, context)
        return _quote_word_runs(statement)

    return _on_statement(sql, _fix)


# =============================================================================
# STEP 5: UNQUOTE KEYWORDS
# =============================================================================

def unquote_keywords(sql: str, context: RepairContext) -> str:
    def _fix(statement: str) -> str:
        masked = _mask(statement)
        replacements = []
        for match in _BACKTICKED_KEYWORD_RE.finditer(masked):
            word = statement[match.start(1):match.end(1)]
            if context.is_known(word):
                continue
            replacements.append((match.start(), match.end(), word))
        return _replace_spans(statement, replacements)

    return _on_statement(sql, _fix)


# =============================================================================
# STEP 6: SELECT * DETECTION
# =============================================================================

_SELECT_STAR_RE = re.compile(r"\bSELECT\s+(?:DISTINCT\s+)?\*", re.IGNORECASE)


def has_unrestricted_projection(sql: str) -> bool:
    statement, _ = _split_statement_tail(sql)
    return bool(_SELECT_STAR_RE.search(_mask(statement, backticks=True)))


# =============================================================================
# STEP 7: GROUP BY REPAIR
# =============================================================================

_CLAUSE_RE = re.compile(
    r"\b(SELECT|FROM|WHERE|GROUP\s+BY|HAVING|ORDER\s+BY|LIMIT|OFFSET|FETCH)\b", re.IGNORECASE
)
_AGGREGATE_RE = re.compile(
    r"\b(COUNT|SUM|AVG|MIN|MAX|GROUP_CONCAT|STRING_AGG|ARRAY_AGG|LISTAGG|STDDEV"
    r"|STDDEV_POP|STDDEV_SAMP|VARIANCE|VAR_POP|VAR_SAMP|BIT_AND|BIT_OR)\s*\(",
    re.IGNORECASE,
)
_EXTREME_RE = re.compile(r"^\s*(MIN|MAX)\s*\((.*)\)\s*$", re.IGNORECASE | re.DOTALL)
_WINDOW_RE = re.compile(r"\bOVER\s*\(", re.IGNORECASE)
_SET_OPERATOR_RE = re.compile(r"\b(UNION|INTERSECT|EXCEPT|MINUS)\b", re.IGNORECASE)
_DISTINCT_PREFIX_RE = re.compile(r"^\s*DISTINCT\s+", re.IGNORECASE)
_EXPLICIT_ALIAS_RE = re.compile(r"^(.*?)\s+AS\s+(`[^`]*`|[A-Za-z_]\w*)\s*$", re.IGNORECASE | re.DOTALL)
_IMPLICIT_ALIAS_RE = re.compile(r"^(.*[)`\w])\s+([A-Za-z_]\w*)\s*$", re.DOTALL)


@dataclass
class _Clause:
    keyword_start: int
    start: int
    end: int


@dataclass
class _SelectItem:
    expression: str
    masked: str
    alias: Optional[str] = None

    @property
    def is_star(self) -> bool:
        return self.masked.strip().endswith("*") and not _AGGREGATE_RE.search(self.masked)

    @property
    def is_aggregate(self) -> bool:
        return bool(_AGGREGATE_RE.search(self.masked))

    @property
    def references_columns(self) -> bool:
        if "`" in self.masked:
            return True
        for token in _WORD_RE.finditer(self.masked):
            before = self.masked[token.start() - 1] if token.start() > 0 else " "
            after = self.masked[token.end():].lstrip()[:1]
            if before.isdigit() or after == "(":
                continue
            if token.group(0).upper() not in SQL_KEYWORDS:
                return True
        return False

    def render(self) -> str:
        return f"{self.expression} AS {self.alias}" if self.alias else self.expression


def _normalize_expression(expression: str) -> str:
    return re.sub(r"\s+", "", expression.replace("`", "").replace('"', "")).lower()


def _top_level_clauses(statement: str, masked: str) -> Optional[Dict[str, _Clause]]:
    depths = _paren_depths(masked)
    found: List[Tuple[str, int, int]] = []
    for match in _CLAUSE_RE.finditer(masked):
        if depths[match.start()] != 0:
            continue
        name = re.sub(r"\s+", " ", match.group(1).upper())
        if any(name == existing[0] for existing in found):
            return None
        found.append((name, match.start(), match.end()))

    if not found or found[0][0] != "SELECT" or masked[:found[0][1]].strip():
        return None
    clauses = {}
    for index, (name, keyword_start, keyword_end) in enumerate(found):
        end = found[index + 1][1] if index + 1 < len(found) else len(statement)
        clauses[name] = _Clause(keyword_start, keyword_end, end)
    return clauses


def _select_items(statement: str, masked: str, clause: _Clause) -> Tuple[str, List[_SelectItem]]:
    start = clause.start
    distinct = _DISTINCT_PREFIX_RE.match(masked[start:clause.end])
    prefix = ""
    if distinct:
        prefix = "DISTINCT "
        start += distinct.end()

    items = []
    for item_start, item_end in _split_top_level(masked, start, clause.end):
        text = statement[item_start:item_end]
        masked_text = masked[item_start:item_end]
        match = _EXPLICIT_ALIAS_RE.match(masked_text)
        if match is None:
            match = _IMPLICIT_ALIAS_RE.match(masked_text)
            if match and match.group(2).upper() in SQL_KEYWORDS:
                match = None
        if match:
            items.append(_SelectItem(
                expression=text[:match.end(1)].strip(),
                masked=masked_text[:match.end(1)].strip(),
                alias=text[match.start(2):match.end(2)],
            ))
        else:
            items.append(_SelectItem(expression=text.strip(), masked=masked_text.strip()))
    return prefix, items


def _clause_text(statement: str, clause: Optional[_Clause]) -> str:
    return statement[clause.start:clause.end].strip() if clause else ""


def _content_end(statement: str, clause: _Clause) -> int:
    return clause.start + len(statement[clause.start:clause.end].rstrip())


def _simple_extreme(item: _SelectItem) -> Optional[Tuple[str, str]]:
    """(function, argument) when the item is exactly MIN(expr) or MAX(expr)."""
    match = _EXTREME_RE.match(item.masked)
    if match is None:
        return None
    depth = 0
    for char in match.group(2):
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                return None
    if depth != 0:
        return None
    return match.group(1).upper(), item.expression[match.start(2):match.end(2)].strip()


def _rewrite_extreme(
    statement: str,
    clauses: Dict[str, _Clause],
    prefix: str,
    items: List[_SelectItem],
    aggregate: _SelectItem,
    function: str,
    argument: str,
) -> str:
    """
    MIN/MAX mixed with plain columns and no GROUP BY: select the row holding
    the extreme value. Ties resolve to the first row in ascending order of the
    plain columns.
    """
    alias = aggregate.alias or sanitize_column_name(f"{function}_{argument.split('.')[-1]}")
    select_list = ", ".join(
        f"{argument} AS {alias}" if item is aggregate else item.render() for item in items
    )
    from_text = _clause_text(statement, clauses["FROM"])
    where_text = _clause_text(statement, clauses.get("WHERE"))

    inner = f"SELECT {function}({argument}) FROM {from_text}"
    if where_text:
        inner += f" WHERE {where_text}"
    condition = f"{argument} = ({inner})"
    if where_text:
        condition = f"({where_text}) AND {condition}"

    order_terms = []
    existing_order = _clause_text(statement, clauses.get("ORDER BY"))
    if existing_order:
        order_terms.append(existing_order)
    present = {_normalize_expression(t) for t in existing_order.split(",")} if existing_order else set()
    for item in items:
        if item is aggregate or not item.references_columns:
            continue
        if _normalize_expression(item.expression) not in present:
            order_terms.append(item.expression)

    rewritten = f"SELECT {prefix}{select_list} FROM {from_text} WHERE {condition}"
    if order_terms:
        rewritten += f" ORDER BY {', '.join(order_terms)}"
    return rewritten + " LIMIT 1"


def fix_group_by(sql: str, context: RepairContext) -> str:
    def _fix(statement: str) -> str:
        masked = _mask(statement, backticks=True)
        if _WINDOW_RE.search(masked) or _SET_OPERATOR_RE.search(masked):
            return statement
        clauses = _top_level_clauses(statement, masked)
        if clauses is None or "FROM" not in clauses:
            return statement

        prefix, items = _select_items(statement, masked, clauses["SELECT"])
        if any(item.is_star for item in items):
            return statement
        plain = [i for i in items if not i.is_aggregate and i.references_columns]
        aggregates = [i for i in items if i.is_aggregate]

        group = clauses.get("GROUP BY")
        if group is not None:
            group_terms = [
                statement[s:e].strip() for s, e in _split_top_level(masked, group.start, group.end)
            ]
            present = {_normalize_expression(t) for t in group_terms}
            positions = {int(t) for t in group_terms if t.isdigit()}
            missing = []
            for position, item in enumerate(items, start=1):
                if item not in plain or position in positions:
                    continue
                if _normalize_expression(item.expression) in present:
                    continue
                if item.alias and _normalize_expression(item.alias) in present:
                    continue
                missing.append(item.expression)
            if not missing:
                return statement
            logger.debug(f"[REPAIR] Added non-aggregated columns to GROUP BY: {missing}")
            insert_at = _content_end(statement, group)
            return statement[:insert_at] + ", " + ", ".join(missing) + statement[insert_at:]

        if not aggregates or not plain:
            return statement

        extreme = _simple_extreme(aggregates[0]) if len(aggregates) == 1 else None
        if extreme is not None and "HAVING" not in clauses:
            logger.debug(f"[REPAIR] Rewrote {extreme[0]} with plain columns to a scalar subquery")
            return _rewrite_extreme(statement, clauses, prefix, items, aggregates[0], *extreme)

        anchor = clauses.get("WHERE") or clauses["FROM"]
        insert_at = _content_end(statement, anchor)
        terms = ", ".join(item.expression for item in plain)
        logger.debug(f"[REPAIR] Added GROUP BY {terms}")
        return statement[:insert_at] + f" GROUP BY {terms}" + statement[insert_at:]

    return _on_statement(sql, _fix)


# =============================================================================
# STEP 8: RESTORE LITERAL QUOTING
# =============================================================================

_BACKTICKED_LITERAL_RE = re.compile(r"'`([^`']*)`'")
_COMPARISON_OPERAND_RE = re.compile(
    r"(<>|!=|<=|>=|=|<|>|\bNOT\s+LIKE\b|\bLIKE\b|\bILIKE\b)(\s*)(`[^`]*`)", re.IGNORECASE
)
_IN_LIST_RE = re.compile(r"\bIN\s*\(([^()]*)\)", re.IGNORECASE)
_BACKTICK_PAIR_RE = re.compile(r"`([^`]*)`")


def restore_literal_quoting(sql: str, context: RepairContext) -> str:
    def _fix(statement: str) -> str:
        statement = _BACKTICKED_LITERAL_RE.sub(lambda m: _quote_literal(m.group(1)), statement)
        if not context.has_identifiers:
            return statement

        masked = _mask(statement)
        aliases = _declared_aliases(masked) | _table_aliases(masked)

        def _is_value(quoted: str, end: int) -> bool:
            # `c`.`id` is a qualified column
            if masked[end:end + 1] == ".":
                return False
            inner = quoted[1:-1]
            return not context.is_known(inner) and inner.lower() not in aliases

        replacements = {}
        for match in _COMPARISON_OPERAND_RE.finditer(masked):
            quoted = statement[match.start(3):match.end(3)]
            if _is_value(quoted, match.end(3)):
                replacements[match.start(3)] = (match.end(3), _quote_literal(quoted[1:-1]))
        for in_list in _IN_LIST_RE.finditer(masked):
            for pair in _BACKTICK_PAIR_RE.finditer(masked, in_list.start(1), in_list.end(1)):
                quoted = statement[pair.start():pair.end()]
                if _is_value(quoted, pair.end()):
                    replacements[pair.start()] = (pair.end(), _quote_literal(quoted[1:-1]))

        if replacements:
            logger.debug(f"[REPAIR] Restored {len(replacements)} string literal(s)")
        return _replace_spans(statement, [(s, e, v) for s, (e, v) in replacements.items()])

    return _on_statement(sql, _fix)


# =============================================================================
# STEP 9: FINALIZE
# =============================================================================

def finalize_statement(sql: str, context: RepairContext) -> str:
    statement, _tail = _split_statement_tail(sql)
    statement = sqlparse.format(statement, strip_comments=True).strip()
    statement = statement.rstrip(";").rstrip()
    if not statement:
        raise MissingAnchorError("No SQL statement left after removing trailing text")
    return statement + ";"


# =============================================================================
# PIPELINE
# =============================================================================

RepairStep = Callable[[str, RepairContext], str]

STEPS_BEFORE_PROJECTION: Tuple[RepairStep, ...] = (
    extract_statement,
    reject_stale_table_reference,
    normalize_backticks,
    quote_multiword_identifiers,
    unquote_keywords,
)
STEPS_AFTER_PROJECTION: Tuple[RepairStep, ...] = (
    fix_group_by,
    restore_literal_quoting,
    finalize_statement,
)


@dataclass
class RepairResult:
    sql: str
    warnings: List[str] = field(default_factory=list)
    applied_steps: List[str] = field(default_factory=list)
    projection_corrected: bool = False


class SQLRepairPipeline:
    """Runs the repair steps in order for one request."""

    def __init__(self, context: Optional[RepairContext] = None):
        self.context = context or RepairContext()

    def _run(self, sql: str, steps: Sequence[RepairStep], applied: List[str]) -> str:
        for step in steps:
            repaired = step(sql, self.context)
            if repaired != sql:
                applied.append(step.__name__)
                logger.debug(f"[REPAIR] {step.__name__}: {repaired!r}")
            sql = repaired
        return sql

    def repair_sync(self, raw: str) -> RepairResult:
        """All steps without the SELECT * round-trip."""
        applied: List[str] = []
        warnings: List[str] = []
        sql = self._run(raw, STEPS_BEFORE_PROJECTION, applied)
        if has_unrestricted_projection(sql):
            warnings.append(BROAD_PROJECTION_WARNING)
        sql = self._run(sql, STEPS_AFTER_PROJECTION, applied)
        return RepairResult(sql=sql, warnings=warnings, applied_steps=applied)

    async def repair(
        self,
        raw: str,
        correct_projection: Optional[Callable[[str], Awaitable[str]]] = None,
    ) -> RepairResult:
        """
        Repair raw model output.

        ``correct_projection`` is awaited at most once, only when the
        statement selects every column. Its answer replaces the original
        only if, after steps 1-5, it no longer uses SELECT *.
        """
        applied: List[str] = []
        warnings: List[str] = []
        corrected = False
        sql = self._run(raw, STEPS_BEFORE_PROJECTION, applied)

        if has_unrestricted_projection(sql):
            candidate = None
            if correct_projection is not None:
                logger.info("[REPAIR] SELECT * detected, requesting an explicit column list")
                try:
                    candidate_raw = await correct_projection(finalize_statement(sql, self.context))
                    candidate = self._run(candidate_raw, STEPS_BEFORE_PROJECTION, [])
                except (GenerationError, RepairError) as e:
                    logger.warning(f"[REPAIR] Projection correction unusable: {e}")
                    candidate = None
            if candidate is not None and not has_unrestricted_projection(candidate):
                sql = candidate
                corrected = True
                applied.append("correct_projection")
            else:
                warnings.append(BROAD_PROJECTION_WARNING)

        sql = self._run(sql, STEPS_AFTER_PROJECTION, applied)
        return RepairResult(sql=sql, warnings=warnings, applied_steps=applied, projection_corrected=corrected)


def repair_sql(raw: str, schemas: Sequence[TableSchema] = ()) -> RepairResult:
    return SQLRepairPipeline(RepairContext.from_schemas(schemas)).repair_sync(raw)
