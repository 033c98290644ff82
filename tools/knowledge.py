"""Knowledge-base lookup tool.

Delegates the actual vector search to a ``Retriever`` collaborator and
returns only a compact, mode-dependent rendering of the passages to the
model, keeping the full results for rendering.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from tools.registry import ToolContext, ToolDefinition

logger = logging.getLogger(__name__)

TOOL_NAME = "retrieve_knowledge"

# response_mode → (top_k, max chars per passage)
MODE_LIMITS: dict[str, tuple[int, int]] = {
    "fast": (3, 300),
    "detailed": (6, 800),
}


class Passage(BaseModel):
    id: str = ""
    content: str
    title: str = ""
    category: str | None = None
    section_title: str | None = None
    menu_path: str | None = None
    route_pattern: str | None = None
    similarity: float = 0.0


@runtime_checkable
class Retriever(Protocol):
    async def search(
        self, query: str, top_k: int, filters: dict[str, Any] | None = None
    ) -> list[Passage | dict[str, Any]]: ...


class RetrieveKnowledgeInput(BaseModel):
    query: str = Field(min_length=1, description="Question or search terms for the knowledge base")
    top_k: int | None = Field(default=None, ge=1, le=10, description="Maximum number of passages")
    category: str | None = Field(default=None, description="Restrict results to one category")


def _limits(mode: str) -> tuple[int, int]:
    return MODE_LIMITS.get(mode, MODE_LIMITS["fast"])


def format_passages(data: RetrieveKnowledgeInput, output: dict[str, Any]) -> str:
    results = output.get("results") or []
    if not results:
        return f'No knowledge base results found for "{data.query}"'

    mode = output.get("mode", "fast")
    max_chars = _limits(mode)[1]
    max_results = output.get("top_k") or _limits(mode)[0]
    blocks = []
    for i, item in enumerate(results[:max_results], start=1):
        lines = [f"[Result {i}] {item.get('title') or 'Document'}"]
        if item.get("section_title"):
            lines.append(f"Section: {item['section_title']}")
        if item.get("menu_path"):
            lines.append(f"Menu: {item['menu_path']}")
        if item.get("route_pattern") and mode == "detailed":
            lines.append(f"Route: {item['route_pattern']}")
        lines.append(f"Relevance: {item.get('similarity', 0.0) * 100:.1f}%")
        content = item.get("content", "")
        if len(content) > max_chars:
            content = content[:max_chars] + "..."
        lines.append("")
        lines.append(content)
        blocks.append("\n".join(lines))

    note = ""
    if len(results) > max_results:
        note = f"\n\n(showing the {max_results} most relevant of {len(results)} results)"
    return (
        f'Found {len(results)} result(s) ({mode} mode) for "{data.query}":\n\n'
        + "\n\n---\n\n".join(blocks)
        + note
    )


def create_knowledge_tool(
    retriever: Retriever, top_k_by_mode: dict[str, int] | None = None
) -> ToolDefinition:
    top_k_by_mode = {**{mode: k for mode, (k, _) in MODE_LIMITS.items()}, **(top_k_by_mode or {})}

    async def execute(data: RetrieveKnowledgeInput, ctx: ToolContext) -> dict[str, Any]:
        top_k = data.top_k or top_k_by_mode.get(ctx.response_mode, top_k_by_mode["fast"])
        filters: dict[str, Any] = {"tenant_id": ctx.tenant_id}
        if data.category:
            filters["category"] = data.category
        logger.debug("knowledge search %r top_k=%d mode=%s", data.query, top_k, ctx.response_mode)
        hits = await retriever.search(data.query, top_k, filters)
        results = [
            (h if isinstance(h, Passage) else Passage.model_validate(h)).model_dump()
            for h in hits
        ]
        return {
            "query": data.query,
            "mode": ctx.response_mode,
            "results": results,
            "count": len(results),
            "top_k": top_k,
        }

    return ToolDefinition(
        name=TOOL_NAME,
        description=(
            "Search the school system knowledge base. Use it whenever the user asks "
            "about system features, processes, settings or where to find something."
        ),
        input_model=RetrieveKnowledgeInput,
        execute=execute,
        output_formatter=format_passages,
    )
