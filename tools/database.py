"""Read-only database lookup tool.

Every call is gated twice: the read-only query policy rejects anything that
is not a single SELECT, and the tool always asks the user for approval
before the ``QueryExecutor`` collaborator runs the query.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from tools.query_policy import check_read_only
from tools.registry import ToolContext, ToolDefinition, always_approve

logger = logging.getLogger(__name__)

TOOL_NAME = "query_database"
PREVIEW_ROWS = 5


@runtime_checkable
class QueryExecutor(Protocol):
    async def execute(self, query: str, tenant_id: str) -> list[dict[str, Any]]: ...


class QueryDatabaseInput(BaseModel):
    query: str = Field(description="A single read-only SQL SELECT statement")
    description: str = Field(description="What the query is meant to find out (for review and logs)")


def _guard(data: QueryDatabaseInput) -> None:
    check_read_only(data.query, tool_name=TOOL_NAME)


def format_rows(data: QueryDatabaseInput, output: dict[str, Any]) -> str:
    rows = output.get("rows") or []
    if not rows:
        return f'Query succeeded but returned no rows for "{data.description}"'
    preview = "\n".join(json.dumps(row, ensure_ascii=False, default=str) for row in rows[:PREVIEW_ROWS])
    text = f'Query returned {len(rows)} row(s) for "{data.description}":\n\n{preview}'
    if len(rows) > PREVIEW_ROWS:
        text += f"\n\n(showing {PREVIEW_ROWS} of {len(rows)} rows)"
    return text


def create_database_tool(executor: QueryExecutor) -> ToolDefinition:
    async def execute(data: QueryDatabaseInput, ctx: ToolContext) -> dict[str, Any]:
        query = check_read_only(data.query, tool_name=TOOL_NAME)
        logger.info(
            "Executing approved query (%s) tenant=%s user=%s: %s",
            data.description, ctx.tenant_id, ctx.user_id, query[:100],
        )
        rows = await executor.execute(query, ctx.tenant_id)
        return {"rows": rows, "row_count": len(rows), "description": data.description}

    return ToolDefinition(
        name=TOOL_NAME,
        description=(
            "Run a read-only SQL SELECT query against the school database. "
            "Only SELECT statements are allowed and every query needs user approval."
        ),
        input_model=QueryDatabaseInput,
        execute=execute,
        needs_approval=always_approve,
        output_formatter=format_rows,
        guard=_guard,
    )
