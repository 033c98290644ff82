"""Tools: gateway re-exports and default tool set construction."""

from __future__ import annotations

from tools.database import QueryExecutor, create_database_tool
from tools.knowledge import Retriever, create_knowledge_tool
from tools.registry import (  # noqa: F401
    BoundTool,
    PreparedCall,
    ToolContext,
    ToolDefinition,
    ToolExecutionGateway,
    ToolInvocation,
)


def default_tools(
    retriever: Retriever | None = None,
    query_executor: QueryExecutor | None = None,
    top_k_by_mode: dict[str, int] | None = None,
) -> list[ToolDefinition]:
    """Build the built-in tools whose collaborators are available."""
    tools: list[ToolDefinition] = []
    if retriever is not None:
        tools.append(create_knowledge_tool(retriever, top_k_by_mode))
    if query_executor is not None:
        tools.append(create_database_tool(query_executor))
    return tools
