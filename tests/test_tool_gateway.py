"""Tests for tools/registry.py and the built-in tools.

The gateway never raises for tool failures: validation errors, denials and
execution errors all come back as a ToolInvocation the model can read.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from errors.exceptions import ToolExecutionError, UnsafeQueryError, ValidationError
from tools import default_tools
from tools.database import PREVIEW_ROWS, create_database_tool
from tools.knowledge import Passage, create_knowledge_tool
from tools.registry import DENIED_MESSAGE, ToolContext, always_approve

from conftest import echo_tool


# ── Registration ──────────────────────────────────────────────


class TestRegistration:
    def test_register_and_list(self, gateway):
        gateway.register(echo_tool())
        assert gateway.has("echo")
        assert gateway.list_names() == ["echo"]

    def test_register_is_last_wins(self, gateway, caplog):
        gateway.register(echo_tool())
        gateway.register(echo_tool(description="second"))
        assert gateway.get("echo").description == "second"
        assert "already registered" in caplog.text

    def test_unregister(self, gateway):
        gateway.register(echo_tool())
        assert gateway.unregister("echo") is True
        assert gateway.unregister("echo") is False

    def test_describe_includes_schema(self, gateway):
        gateway.register(echo_tool())
        [entry] = gateway.describe()
        assert entry["name"] == "echo"
        assert "text" in entry["parameters"]["properties"]

    def test_build_tool_set_skips_unknown(self, gateway, tool_context):
        gateway.register(echo_tool())
        tool_set = gateway.build_tool_set(tool_context, ["echo", "missing"])
        assert list(tool_set) == ["echo"]
        definition = tool_set["echo"].definition()
        assert definition.name == "echo"
        assert definition.parameters_json_schema["required"] == ["text"]


# ── prepare ───────────────────────────────────────────────────


class TestPrepare:
    def test_unknown_tool(self, gateway, tool_context):
        with pytest.raises(ValidationError, match="Unknown tool"):
            gateway.prepare("nope", {}, tool_context)

    def test_schema_failure(self, gateway, tool_context):
        gateway.register(echo_tool())
        with pytest.raises(ValidationError) as exc_info:
            gateway.prepare("echo", {"text": 42}, tool_context)
        assert exc_info.value.errors

    def test_json_string_input(self, gateway, tool_context):
        gateway.register(echo_tool())
        prepared = gateway.prepare("echo", '{"text": "hi"}', tool_context)
        assert prepared.input.text == "hi"
        assert prepared.requires_approval is False

    def test_approval_policy_evaluated(self, gateway, tool_context):
        gateway.register(echo_tool(needs_approval=lambda data: data.text == "risky"))
        assert gateway.prepare("echo", {"text": "risky"}, tool_context).requires_approval
        assert not gateway.prepare("echo", {"text": "fine"}, tool_context).requires_approval


# ── invoke ────────────────────────────────────────────────────


class TestInvoke:
    @pytest.mark.asyncio
    async def test_success(self, gateway, tool_context, metrics):
        gateway.register(echo_tool())
        invocation = await gateway.invoke("echo", {"text": "hi"}, tool_context)
        assert invocation.status == "ok"
        assert invocation.output == {"echo": "HI", "tenant": "tenant-1"}
        assert invocation.model_text == "HI"
        assert metrics.snapshot()["tools"]["echo"]["count"] == 1

    @pytest.mark.asyncio
    async def test_async_execute(self, gateway, tool_context):
        execute = AsyncMock(return_value="done")
        gateway.register(echo_tool(execute=execute, output_formatter=lambda d, o: o))
        invocation = await gateway.invoke("echo", {"text": "hi"}, tool_context)
        assert invocation.model_text == "done"
        execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_validation_failure_becomes_error_result(self, gateway, tool_context):
        gateway.register(echo_tool())
        invocation = await gateway.invoke("echo", {}, tool_context)
        assert invocation.status == "error"
        assert invocation.model_text.startswith("Error: Invalid input")

    @pytest.mark.asyncio
    async def test_execution_failure_is_wrapped(self, gateway, tool_context, metrics):
        def boom(data, ctx):
            raise RuntimeError("database down")

        gateway.register(echo_tool(execute=boom))
        invocation = await gateway.invoke("echo", {"text": "hi"}, tool_context)
        assert invocation.status == "error"
        assert invocation.is_error
        assert invocation.model_text == "Error: RuntimeError: database down"
        assert metrics.get_run_summary("run-test")["tool_error_count"] == 1

    @pytest.mark.asyncio
    async def test_tool_error_keeps_its_message(self, gateway, tool_context):
        def fail(data, ctx):
            raise ToolExecutionError("echo", "no such student")

        gateway.register(echo_tool(execute=fail))
        invocation = await gateway.invoke("echo", {"text": "hi"}, tool_context)
        assert invocation.model_text == "Error: no such student"

    @pytest.mark.asyncio
    async def test_approval_required_does_not_execute(self, gateway, tool_context):
        execute = MagicMock()
        gateway.register(echo_tool(execute=execute, needs_approval=always_approve))
        invocation = await gateway.invoke("echo", {"text": "hi"}, tool_context)
        assert invocation.status == "approval_required"
        assert invocation.requires_approval
        execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_denied(self, gateway, tool_context):
        execute = MagicMock()
        gateway.register(echo_tool(execute=execute, needs_approval=always_approve))
        invocation = await gateway.invoke("echo", {"text": "hi"}, tool_context, approved=False)
        assert invocation.status == "denied"
        assert invocation.error == DENIED_MESSAGE
        execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_approved(self, gateway, tool_context):
        gateway.register(echo_tool(needs_approval=always_approve))
        invocation = await gateway.invoke("echo", {"text": "hi"}, tool_context, approved=True)
        assert invocation.status == "ok"
        assert invocation.requires_approval

    @pytest.mark.asyncio
    async def test_bound_tool_uses_its_context(self, gateway, tool_context):
        gateway.register(echo_tool())
        bound = gateway.build_tool_set(tool_context)["echo"]
        invocation = await bound.invoke({"text": "x"})
        assert invocation.output["tenant"] == "tenant-1"


# ── Built-in tools ────────────────────────────────────────────


class FakeRetriever:
    def __init__(self, hits):
        self.hits = hits
        self.calls = []

    async def search(self, query, top_k, filters=None):
        self.calls.append((query, top_k, filters))
        return self.hits[:top_k]


class TestKnowledgeTool:
    @pytest.mark.asyncio
    async def test_top_k_depends_on_mode(self, gateway, tool_context):
        retriever = FakeRetriever([])
        gateway.register(create_knowledge_tool(retriever))
        await gateway.invoke("retrieve_knowledge", {"query": "enrolment"}, tool_context)
        detailed = ToolContext(
            tenant_id="tenant-1", user_id="user-1", response_mode="detailed"
        )
        await gateway.invoke("retrieve_knowledge", {"query": "enrolment"}, detailed)
        assert [call[1] for call in retriever.calls] == [3, 6]
        assert retriever.calls[0][2] == {"tenant_id": "tenant-1"}

    @pytest.mark.asyncio
    async def test_formatter_lists_passages(self, gateway, tool_context):
        hits = [
            Passage(id="1", title="Enrolment", content="x" * 400, similarity=0.91,
                    menu_path="Students > Enrolment"),
            {"id": "2", "title": "Transfers", "content": "Move a student", "similarity": 0.5},
        ]
        gateway.register(create_knowledge_tool(FakeRetriever(hits)))
        invocation = await gateway.invoke("retrieve_knowledge", {"query": "enrol"}, tool_context)
        assert invocation.status == "ok"
        assert invocation.output["count"] == 2
        assert "[Result 1] Enrolment" in invocation.model_text
        assert "Menu: Students > Enrolment" in invocation.model_text
        assert "Relevance: 91.0%" in invocation.model_text
        assert "x" * 300 + "..." in invocation.model_text

    @pytest.mark.asyncio
    async def test_no_results(self, gateway, tool_context):
        gateway.register(create_knowledge_tool(FakeRetriever([])))
        invocation = await gateway.invoke("retrieve_knowledge", {"query": "zzz"}, tool_context)
        assert invocation.model_text == 'No knowledge base results found for "zzz"'


class TestDatabaseTool:
    def _executor(self, rows):
        executor = MagicMock()
        executor.execute = AsyncMock(return_value=rows)
        return executor

    def test_unsafe_query_rejected_at_prepare(self, gateway, tool_context):
        gateway.register(create_database_tool(self._executor([])))
        with pytest.raises(UnsafeQueryError):
            gateway.prepare(
                "query_database",
                {"query": "DROP TABLE students", "description": "cleanup"},
                tool_context,
            )

    @pytest.mark.asyncio
    async def test_always_needs_approval(self, gateway, tool_context):
        executor = self._executor([])
        gateway.register(create_database_tool(executor))
        invocation = await gateway.invoke(
            "query_database", {"query": "SELECT 1", "description": "ping"}, tool_context
        )
        assert invocation.status == "approval_required"
        executor.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_approved_query_runs_with_tenant_scope(self, gateway, tool_context):
        rows = [{"id": i} for i in range(8)]
        executor = self._executor(rows)
        gateway.register(create_database_tool(executor))
        invocation = await gateway.invoke(
            "query_database",
            {"query": "SELECT id FROM students;", "description": "student ids"},
            tool_context,
            approved=True,
        )
        executor.execute.assert_awaited_once_with("SELECT id FROM students", "tenant-1")
        assert invocation.output["row_count"] == 8
        assert f"(showing {PREVIEW_ROWS} of 8 rows)" in invocation.model_text
        assert json.dumps({"id": 5}) not in invocation.model_text

    @pytest.mark.asyncio
    async def test_unsafe_query_is_error_result_on_invoke(self, gateway, tool_context):
        executor = self._executor([])
        gateway.register(create_database_tool(executor))
        invocation = await gateway.invoke(
            "query_database",
            {"query": "SELECT 1; DELETE FROM t", "description": "x"},
            tool_context,
            approved=True,
        )
        assert invocation.status == "error"
        executor.execute.assert_not_called()


def test_default_tools_only_include_available_collaborators():
    assert default_tools() == []
    names = [t.name for t in default_tools(retriever=FakeRetriever([]))]
    assert names == ["retrieve_knowledge"]
