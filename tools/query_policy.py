"""Read-only query policy for database-backed tools.

Only a single ``SELECT`` (or ``WITH … SELECT``) statement is accepted.
Mutation keywords are matched as whole words so column names such as
``created_at`` or ``last_update`` do not trip the check.
"""

from __future__ import annotations

import re

from errors.exceptions import UnsafeQueryError

MUTATION_KEYWORDS: tuple[str, ...] = (
    "DROP",
    "DELETE",
    "UPDATE",
    "INSERT",
    "ALTER",
    "CREATE",
    "TRUNCATE",
    "EXEC",
    "EXECUTE",
    "GRANT",
    "REVOKE",
    "MERGE",
)

_KEYWORD_RE = re.compile(r"\b(" + "|".join(MUTATION_KEYWORDS) + r")\b", re.IGNORECASE)
_LEADING_RE = re.compile(r"^\s*(SELECT|WITH)\b", re.IGNORECASE)
_LINE_COMMENT_RE = re.compile(r"--[^\n]*")
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
_STRING_RE = re.compile(r"'(?:[^']|'')*'")


def _strip_noise(query: str) -> str:
    """Drop comments and string literals so they can't hide or fake keywords."""
    query = _BLOCK_COMMENT_RE.sub(" ", query)
    query = _LINE_COMMENT_RE.sub(" ", query)
    return _STRING_RE.sub("''", query)


def check_read_only(query: str, *, tool_name: str = "query_database") -> str:
    """Validate *query* and return it with a trailing ``;`` removed.

    Raises:
        UnsafeQueryError: the query is empty, not a SELECT, stacks several
            statements or contains a mutation keyword.
    """
    cleaned = query.strip().rstrip(";").strip()
    if not cleaned:
        raise UnsafeQueryError(tool_name, "Query is empty")

    code = _strip_noise(cleaned)
    if ";" in code:
        raise UnsafeQueryError(tool_name, "Multiple statements are not allowed")

    if not _LEADING_RE.match(code):
        raise UnsafeQueryError(tool_name, "Only SELECT queries are allowed")

    match = _KEYWORD_RE.search(code)
    if match:
        keyword = match.group(1).upper()
        raise UnsafeQueryError(
            tool_name, f"Query contains a forbidden keyword: {keyword}", keyword=keyword
        )

    if code.lstrip()[:4].upper() == "WITH" and not re.search(r"\bSELECT\b", code, re.IGNORECASE):
        raise UnsafeQueryError(tool_name, "Only SELECT queries are allowed")

    return cleaned
