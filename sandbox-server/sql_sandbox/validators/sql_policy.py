"""
SQL validation policy for read-only learner queries.

This is a conservative lexical scanner, not a SQL parser. It tokenizes the
text (string literals, quoted identifiers, dollar quotes and comments are
recognized so their contents never count as keywords or separators) and then
applies the sandbox rules in order. Anything it cannot confidently recognize
as a read-only SELECT is rejected.
"""

from __future__ import annotations

import re
from typing import Iterable, List, NamedTuple, Optional, Tuple

from ..models import Allowed, ErrorKind, Rejected, StatementVerdict

DEFAULT_MAX_QUERY_LENGTH = 10_000

ALLOWED_LEADING_KEYWORDS = ("SELECT", "WITH")

EXPLAIN_FLAG_KEYWORDS = {"ANALYZE", "ANALYSE", "VERBOSE"}

SQL_BLOCKLIST = frozenset(
    {
        "INSERT",
        "UPDATE",
        "DELETE",
        "MERGE",
        "DROP",
        "ALTER",
        "CREATE",
        "TRUNCATE",
        "GRANT",
        "REVOKE",
        "COPY",
        "VACUUM",
        "REINDEX",
        "CLUSTER",
        "REFRESH",
        "INTO",
        "SET",
        "RESET",
        "DISCARD",
        "LOCK",
        "CALL",
        "DO",
        "EXECUTE",
        "PREPARE",
        "DEALLOCATE",
        "LISTEN",
        "NOTIFY",
        "UNLISTEN",
        "BEGIN",
        "COMMIT",
        "ROLLBACK",
        "SAVEPOINT",
        "CHECKPOINT",
        "IMPORT",
        "LOAD",
    }
)

ROW_LOCK_FOLLOWERS = {"UPDATE", "SHARE", "NO", "KEY"}

BLOCKED_FUNCTIONS = frozenset(
    {
        "set_config",
        "pg_terminate_backend",
        "pg_cancel_backend",
        "pg_reload_conf",
        "pg_rotate_logfile",
        "pg_promote",
        "pg_read_file",
        "pg_read_binary_file",
        "pg_stat_file",
        "pg_file_write",
        "pg_switch_wal",
        "pg_notify",
        "pg_logical_emit_message",
        "pg_log_backend_memory_contexts",
        "query_to_xml",
        "query_to_xmlschema",
        "query_to_xml_and_xmlschema",
        "cursor_to_xml",
        "cursor_to_xmlschema",
        "nextval",
        "setval",
    }
)

BLOCKED_FUNCTION_PREFIXES = (
    "pg_advisory",
    "pg_try_advisory",
    "pg_ls_",
    "pg_create_",
    "pg_drop_",
    "pg_replication_",
    "pg_backup_",
    "pg_start_backup",
    "pg_stop_backup",
    "lo_",
    "dblink",
)

_NUMBER_PATTERN = re.compile(
    r"\d+(?:\.\d*)?(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?"
)
_DOLLAR_TAG_PATTERN = re.compile(r"\$(?:[A-Za-z_\u0080-\uffff][A-Za-z0-9_\u0080-\uffff]*)?\$")
_PARAM_PATTERN = re.compile(r"\$\d+")


class Token(NamedTuple):
    kind: str  # word, qident, string, number, param, punct, semicolon, op
    value: str
    start: int
    end: int


class UnterminatedLiteralError(ValueError):
    """Raised when a literal, quoted identifier or comment never closes.

    ``tokens`` holds whatever was lexed before the unterminated construct.
    """

    def __init__(self, message: str, tokens: Iterable[Token] = ()):
        super().__init__(message)
        self.tokens = list(tokens)


# ── Lexer ─────────────────────────────────────────────────────────────────


def _is_word_start(ch: str) -> bool:
    return ch.isalpha() or ch == "_"


def _is_word_char(ch: str) -> bool:
    return ch.isalnum() or ch in "_$"


def _skip_block_comment(sql: str, pos: int) -> int:
    depth = 0
    i = pos
    n = len(sql)
    while i < n:
        if sql.startswith("/*", i):
            depth += 1
            i += 2
        elif sql.startswith("*/", i):
            depth -= 1
            i += 2
            if depth == 0:
                return i
        else:
            i += 1
    raise UnterminatedLiteralError("Unterminated /* comment.")


def _scan_quoted(sql: str, pos: int, quote: str, backslash_escapes: bool) -> int:
    i = pos + 1
    n = len(sql)
    while i < n:
        ch = sql[i]
        if backslash_escapes and ch == "\\":
            i += 2
            continue
        if ch == quote:
            if i + 1 < n and sql[i + 1] == quote:
                i += 2
                continue
            return i + 1
        i += 1
    if quote == '"':
        raise UnterminatedLiteralError("Unterminated quoted identifier.")
    raise UnterminatedLiteralError("Unterminated string literal.")


def _lex(sql: str, tokens: List[Token]) -> None:
    i = 0
    n = len(sql)
    while i < n:
        ch = sql[i]

        if ch.isspace():
            i += 1
            continue

        if sql.startswith("--", i):
            newline = sql.find("\n", i)
            i = n if newline == -1 else newline + 1
            continue

        if sql.startswith("/*", i):
            i = _skip_block_comment(sql, i)
            continue

        if ch == "'":
            # E'...' strings honour backslash escapes.
            escape_string = bool(
                tokens
                and tokens[-1].kind == "word"
                and tokens[-1].end == i
                and tokens[-1].value.upper() == "E"
            )
            end = _scan_quoted(sql, i, "'", escape_string)
            tokens.append(Token("string", sql[i:end], i, end))
            i = end
            continue

        if ch == '"':
            end = _scan_quoted(sql, i, '"', False)
            tokens.append(Token("qident", sql[i + 1 : end - 1].replace('""', '"'), i, end))
            i = end
            continue

        if ch == "$":
            tag = _DOLLAR_TAG_PATTERN.match(sql, i)
            if tag:
                close = sql.find(tag.group(0), tag.end())
                if close == -1:
                    raise UnterminatedLiteralError("Unterminated dollar-quoted string.")
                end = close + len(tag.group(0))
                tokens.append(Token("string", sql[i:end], i, end))
                i = end
                continue
            param = _PARAM_PATTERN.match(sql, i)
            if param:
                tokens.append(Token("param", param.group(0), i, param.end()))
                i = param.end()
                continue
            tokens.append(Token("op", ch, i, i + 1))
            i += 1
            continue

        if _is_word_start(ch):
            j = i + 1
            while j < n and _is_word_char(sql[j]):
                j += 1
            tokens.append(Token("word", sql[i:j], i, j))
            i = j
            continue

        number = _NUMBER_PATTERN.match(sql, i)
        if number:
            tokens.append(Token("number", number.group(0), i, number.end()))
            i = number.end()
            continue

        if ch == ";":
            tokens.append(Token("semicolon", ch, i, i + 1))
        elif ch in "(),":
            tokens.append(Token("punct", ch, i, i + 1))
        else:
            tokens.append(Token("op", ch, i, i + 1))
        i += 1


def tokenize(sql: str) -> List[Token]:
    """Split *sql* into significant tokens, dropping whitespace and comments."""
    tokens: List[Token] = []
    try:
        _lex(sql, tokens)
    except UnterminatedLiteralError as exc:
        raise UnterminatedLiteralError(str(exc), tokens) from None
    return tokens


# ── Rule helpers ──────────────────────────────────────────────────────────


def _keyword(tokens: List[Token], index: int) -> Optional[str]:
    if 0 <= index < len(tokens) and tokens[index].kind == "word":
        return tokens[index].value.upper()
    return None


def _is_punct(tokens: List[Token], index: int, value: str) -> bool:
    return (
        0 <= index < len(tokens)
        and tokens[index].kind == "punct"
        and tokens[index].value == value
    )


def _matching_paren(tokens: List[Token], open_index: int, end: int) -> Optional[int]:
    depth = 0
    for index in range(open_index, end):
        if _is_punct(tokens, index, "("):
            depth += 1
        elif _is_punct(tokens, index, ")"):
            depth -= 1
            if depth == 0:
                return index
    return None


def _forbidden_leading(head: Optional[str]) -> str:
    found = head if head else "that"
    return (
        "Only SELECT queries are allowed in this sandbox. "
        f"Your query must start with SELECT or WITH, not {found}."
    )


UNRECOGNIZED_WITH_MESSAGE = (
    "This WITH query could not be verified as read-only, so it was not run. "
    "Use the form: WITH name AS (SELECT ...) SELECT ..."
)

CTE_WRITE_MESSAGE = (
    "Every common table expression must be a SELECT. Data-modifying "
    "statements inside WITH are not allowed in this sandbox."
)


def _check_query(tokens: List[Token], start: int, end: int) -> Optional[str]:
    """Return an error message unless tokens[start:end] is a SELECT/WITH query."""
    head = _keyword(tokens, start) if start < end else None
    if head == "SELECT":
        return None
    if head == "WITH":
        return _check_with(tokens, start, end)
    return _forbidden_leading(head)


def _check_with(tokens: List[Token], start: int, end: int) -> Optional[str]:
    i = start + 1
    if _keyword(tokens, i) == "RECURSIVE":
        i += 1

    while True:
        if i >= end or tokens[i].kind not in ("word", "qident"):
            return UNRECOGNIZED_WITH_MESSAGE
        i += 1

        if _is_punct(tokens, i, "("):
            close = _matching_paren(tokens, i, end)
            if close is None:
                return UNRECOGNIZED_WITH_MESSAGE
            i = close + 1

        if _keyword(tokens, i) != "AS":
            return UNRECOGNIZED_WITH_MESSAGE
        i += 1

        if _keyword(tokens, i) == "NOT":
            i += 1
            if _keyword(tokens, i) != "MATERIALIZED":
                return UNRECOGNIZED_WITH_MESSAGE
            i += 1
        elif _keyword(tokens, i) == "MATERIALIZED":
            i += 1

        if not _is_punct(tokens, i, "("):
            return UNRECOGNIZED_WITH_MESSAGE
        close = _matching_paren(tokens, i, end)
        if close is None:
            return UNRECOGNIZED_WITH_MESSAGE

        body_head = _keyword(tokens, i + 1)
        if body_head is None:
            return UNRECOGNIZED_WITH_MESSAGE
        if body_head not in ALLOWED_LEADING_KEYWORDS:
            return CTE_WRITE_MESSAGE
        body_error = _check_query(tokens, i + 1, close)
        if body_error:
            return body_error

        i = close + 1
        if _is_punct(tokens, i, ","):
            i += 1
            continue
        break

    main = _keyword(tokens, i)
    if main == "SELECT":
        return None
    if main in SQL_BLOCKLIST:
        return CTE_WRITE_MESSAGE
    return UNRECOGNIZED_WITH_MESSAGE


def _strip_explain(tokens: List[Token]) -> Tuple[int, bool]:
    """Return the index where the explained statement starts."""
    if _keyword(tokens, 0) != "EXPLAIN":
        return 0, False
    i = 1
    if _is_punct(tokens, i, "("):
        close = _matching_paren(tokens, i, len(tokens))
        if close is None:
            return i, True
        return close + 1, True
    while _keyword(tokens, i) in EXPLAIN_FLAG_KEYWORDS:
        i += 1
    return i, True


def _is_blocked_function(name: str) -> bool:
    lowered = name.lower()
    return lowered in BLOCKED_FUNCTIONS or lowered.startswith(BLOCKED_FUNCTION_PREFIXES)


def _scan_forbidden_words(tokens: List[Token]) -> Optional[str]:
    for index, token in enumerate(tokens):
        if token.kind == "qident":
            if _is_blocked_function(token.value):
                return f'The function "{token.value}" is not allowed in sandbox queries.'
            continue
        if token.kind != "word":
            continue
        upper = token.value.upper()
        if upper == "FOR" and _keyword(tokens, index + 1) in ROW_LOCK_FOLLOWERS:
            return (
                "Row-locking clauses such as FOR UPDATE and FOR SHARE are not "
                "allowed in this sandbox."
            )
        if upper in SQL_BLOCKLIST:
            return (
                f'The keyword "{upper}" is not allowed in sandbox queries. '
                "Only read-only SELECT queries are permitted."
            )
        if _is_blocked_function(token.value):
            return f'The function "{token.value}" is not allowed in sandbox queries.'
    return None


MULTIPLE_STATEMENTS_MESSAGE = "Only a single SQL statement is allowed per execution."


def _classify_unterminated(exc: UnterminatedLiteralError) -> Rejected:
    """Apply the separator and leading-keyword rules to the tokens lexed
    before an unterminated literal, falling back to a syntax error."""
    tokens = exc.tokens
    # The unterminated construct itself follows any separator seen so far.
    if any(tok.kind == "semicolon" for tok in tokens):
        return Rejected(kind=ErrorKind.MULTIPLE_STATEMENTS, message=MULTIPLE_STATEMENTS_MESSAGE)

    body_start, _ = _strip_explain(tokens)
    if body_start < len(tokens):
        head = _keyword(tokens, body_start)
        if head not in ALLOWED_LEADING_KEYWORDS:
            return Rejected(
                kind=ErrorKind.FORBIDDEN_STATEMENT_TYPE,
                message=_forbidden_leading(head),
            )
    return Rejected(kind=ErrorKind.SYNTAX_ERROR, message=str(exc))


# ── Public API ────────────────────────────────────────────────────────────


def classify_statement(
    sql: Optional[str], *, max_length: int = DEFAULT_MAX_QUERY_LENGTH
) -> StatementVerdict:
    if sql is None or not sql.strip():
        return Rejected(kind=ErrorKind.EMPTY_STATEMENT, message="Query cannot be empty.")
    if len(sql) > max_length:
        return Rejected(
            kind=ErrorKind.STATEMENT_TOO_LONG,
            message=(
                f"Query is too long ({len(sql)} characters). "
                f"The sandbox accepts at most {max_length} characters."
            ),
        )

    try:
        tokens = tokenize(sql)
    except UnterminatedLiteralError as exc:
        return _classify_unterminated(exc)

    separators = [i for i, tok in enumerate(tokens) if tok.kind == "semicolon"]
    if separators:
        if len(separators) > 1 or separators[0] != len(tokens) - 1:
            return Rejected(kind=ErrorKind.MULTIPLE_STATEMENTS, message=MULTIPLE_STATEMENTS_MESSAGE)
        tokens = tokens[:-1]

    if not tokens:
        return Rejected(kind=ErrorKind.EMPTY_STATEMENT, message="Query cannot be empty.")

    body_start, is_explain = _strip_explain(tokens)
    error = _check_query(tokens, body_start, len(tokens))
    if error is None:
        error = _scan_forbidden_words(tokens)
    if error is not None:
        return Rejected(kind=ErrorKind.FORBIDDEN_STATEMENT_TYPE, message=error)

    statement = sql[tokens[0].start : tokens[-1].end]
    if is_explain:
        statement_type = "explain"
    else:
        statement_type = "with" if _keyword(tokens, 0) == "WITH" else "select"
    return Allowed(statement=statement, statement_type=statement_type)
