"""Tests for shipyard.orchestrator — the bounded tool-use loop."""

import pytest

from conftest import ScriptedModel, tool, turn
from shipyard.contracts import ToolResponse, TurnRole, TurnStatus
from shipyard.errors import ModelError, ProtocolViolation, TurnCeilingExceeded
from shipyard.executor import ToolExecutor
from shipyard.file_store import FileStore
from shipyard.orchestrator import (
    CONTINUE_NUDGE,
    CommentaryEvent,
    FinishedEvent,
    OrchestratorConfig,
    ToolExecutedEvent,
    TurnOrchestrator,
    TurnStartedEvent,
    format_tool_result,
)
from shipyard.turns import ModelTurn


def _orchestrator(model, *, store=None, **config):
    turns = []
    orch = TurnOrchestrator(
        model,
        ToolExecutor(store or FileStore()),
        turns,
        config=OrchestratorConfig(**config),
    )
    return orch, turns


class TestRunInstruction:
    @pytest.mark.asyncio
    async def test_write_then_finish(self):
        model = ScriptedModel([
            turn(tool("write_file", path="index.html", content="<h1>Hello World</h1>"),
                 commentary="Creating the page."),
            turn(tool("finish", summary="Added a Hello World page")),
        ])
        orch, turns = _orchestrator(model)

        result = await orch.run_instruction("Build a Hello World page")

        assert result.summary == "Added a Hello World page"
        assert result.turns_used == 2
        assert result.tool_calls_made == 2
        assert orch.executor.store.read("index.html") == "<h1>Hello World</h1>"
        assert [t.role for t in turns] == [TurnRole.USER, TurnRole.AGENT, TurnRole.AGENT]
        assert [t.index for t in turns] == [0, 1, 2]
        assert all(t.status is TurnStatus.COMPLETED for t in turns)
        assert turns[0].commentary == "Build a Hello World page"
        assert turns[1].commentary == "Creating the page."
        assert turns[1].tool_calls[0].success

    @pytest.mark.asyncio
    async def test_opening_message_carries_file_digest(self):
        model = ScriptedModel([turn(tool("finish"))])
        orch, _ = _orchestrator(model, store=FileStore({"src/main.ts": "x"}))
        await orch.run_instruction("Rename the title")

        opening = model.calls[0]["messages"][0]
        assert opening["role"] == "user"
        assert opening["content"].startswith("Rename the title")
        assert "1 file(s)" in opening["content"]
        assert "src/main.ts" in opening["content"]

    @pytest.mark.asyncio
    async def test_tool_results_are_fed_back(self):
        use = tool("write_file", path="a.ts", content="")
        model = ScriptedModel([turn(use), turn(tool("finish"))])
        orch, _ = _orchestrator(model)
        await orch.run_instruction("go")

        assistant, results = model.calls[1]["messages"][1:3]
        assert assistant["content"][0]["type"] == "tool_use"
        (block,) = results["content"]
        assert block["type"] == "tool_result"
        assert block["tool_use_id"] == use.id
        assert block["is_error"] is False

    @pytest.mark.asyncio
    async def test_failed_tool_is_reported_and_model_recovers(self):
        """Patching a never-written file fails; the model then writes it."""
        model = ScriptedModel([
            turn(tool("patch_file", path="src/App.tsx", search="a", replace="b")),
            turn(tool("write_file", path="src/App.tsx", content="b")),
            turn(tool("finish", summary="done")),
        ])
        orch, turns = _orchestrator(model)
        result = await orch.run_instruction("fix it")

        failed = model.calls[1]["messages"][-1]["content"][0]
        assert failed["is_error"] is True
        assert failed["content"].startswith("ERROR (FileNotFound)")
        assert not turns[1].tool_calls[0].success
        assert turns[1].status is TurnStatus.COMPLETED
        assert orch.executor.store.read("src/App.tsx") == "b"
        assert result.turns_used == 3

    @pytest.mark.asyncio
    async def test_tool_uses_run_in_issued_order(self):
        model = ScriptedModel([
            turn(
                tool("write_file", path="a.ts", content="1"),
                tool("rename_file", path="a.ts", new_path="b.ts"),
                tool("patch_file", path="b.ts", search="1", replace="2"),
                tool("finish"),
            ),
        ])
        orch, turns = _orchestrator(model)
        await orch.run_instruction("go")
        assert orch.executor.store.snapshot() == {"b.ts": "2"}
        assert [c.name for c in turns[1].tool_calls] == [
            "write_file", "rename_file", "patch_file", "finish",
        ]

    @pytest.mark.asyncio
    async def test_commentary_only_turn_gets_nudged(self):
        model = ScriptedModel([
            turn(commentary="Let me think about the layout."),
            turn(tool("finish")),
        ])
        orch, turns = _orchestrator(model)
        await orch.run_instruction("go")

        assert model.calls[1]["messages"][-1] == {"role": "user", "content": CONTINUE_NUDGE}
        assert turns[1].status is TurnStatus.COMPLETED
        assert turns[1].tool_calls == []


class TestLimits:
    @pytest.mark.asyncio
    async def test_turn_ceiling(self):
        model = ScriptedModel([turn(commentary="thinking")] * 3)
        orch, turns = _orchestrator(model, max_turns=2)

        with pytest.raises(TurnCeilingExceeded) as exc_info:
            await orch.run_instruction("go")

        assert exc_info.value.max_turns == 2
        assert model.remaining == 1
        assert len(turns) == 3

    @pytest.mark.asyncio
    async def test_empty_turn_is_retried(self):
        model = ScriptedModel([ModelTurn(), turn(tool("finish"))])
        orch, turns = _orchestrator(model)
        result = await orch.run_instruction("go")

        assert result.turns_used == 2
        assert turns[1].status is TurnStatus.FAILED
        assert "no tool calls" in turns[1].error
        assert turns[2].status is TurnStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_repeated_empty_turns_raise(self):
        model = ScriptedModel([ModelTurn()] * 3)
        orch, turns = _orchestrator(model, protocol_retry_limit=2)

        with pytest.raises(ProtocolViolation):
            await orch.run_instruction("go")
        assert [t.status for t in turns[1:]] == [TurnStatus.FAILED] * 3

    @pytest.mark.asyncio
    async def test_model_error_fails_turn(self):
        class BrokenModel:
            async def next_turn(self, messages, tools):
                raise ModelError("overloaded", status_code=529)

        orch, turns = _orchestrator(BrokenModel())
        with pytest.raises(ModelError):
            await orch.run_instruction("go")
        assert turns[-1].status is TurnStatus.FAILED
        assert "overloaded" in turns[-1].error

        # the failed turn is terminal, so the next run can start
        orch.model = ScriptedModel([turn(tool("finish"))])
        await orch.run_instruction("again")

    @pytest.mark.asyncio
    async def test_in_flight_turn_blocks_new_run(self):
        orch, turns = _orchestrator(ScriptedModel([turn(tool("finish"))]))
        await orch.run_instruction("go")
        turns[-1].status = TurnStatus.EXECUTING
        with pytest.raises(RuntimeError, match="still in flight"):
            await orch.run_instruction("again")


class TestRepair:
    @pytest.mark.asyncio
    async def test_repair_excludes_run_build(self):
        model = ScriptedModel([turn(tool("finish"))])
        orch, _ = _orchestrator(model)
        await orch.run_repair("Fix src/App.tsx")

        assert "run_build" not in model.calls[0]["tools"]
        assert "patch_file" in model.calls[0]["tools"]
        assert model.calls[0]["messages"][0]["content"] == "Fix src/App.tsx"

    @pytest.mark.asyncio
    async def test_repair_uses_smaller_ceiling(self):
        model = ScriptedModel([turn(commentary="hmm")] * 5)
        orch, _ = _orchestrator(model, max_turns=10, repair_max_turns=3)
        with pytest.raises(TurnCeilingExceeded) as exc_info:
            await orch.run_repair("fix")
        assert exc_info.value.max_turns == 3

    @pytest.mark.asyncio
    async def test_repair_nests_under_executing_turn(self):
        model = ScriptedModel([
            turn(tool("run_build")),
            turn(tool("write_file", path="index.html", content="fixed")),
            turn(tool("finish", summary="repaired")),
            turn(tool("finish", summary="done")),
        ])
        turns = []

        async def on_build(mode):
            await orch.run_repair("Fix index.html")
            return ToolResponse.ok({"built": True})

        orch = TurnOrchestrator(model, ToolExecutor(FileStore(), on_build=on_build), turns)
        result = await orch.run_instruction("go")

        assert result.summary == "done"
        assert [t.parent_index for t in turns] == [None, None, 1, 1, 1, None]
        assert [t.role for t in turns][2:4] == [TurnRole.USER, TurnRole.AGENT]
        assert turns[1].tool_calls[0].success
        assert all(t.status is TurnStatus.COMPLETED for t in turns)
        assert orch.executor.store.read("index.html") == "fixed"

    @pytest.mark.asyncio
    async def test_repair_outside_a_tool_call_respects_in_flight_turn(self):
        orch, turns = _orchestrator(ScriptedModel([turn(tool("finish"))]))
        await orch.run_instruction("go")
        turns[-1].status = TurnStatus.EXECUTING
        with pytest.raises(RuntimeError, match="still in flight"):
            await orch.run_repair("fix")


class TestEvents:
    @pytest.mark.asyncio
    async def test_events_in_order(self):
        events = []
        model = ScriptedModel([
            turn(tool("write_file", path="a.ts", content=""), commentary="hi"),
            turn(tool("finish", summary="ok")),
        ])
        orch = TurnOrchestrator(model, ToolExecutor(FileStore()), [], on_event=events.append)
        await orch.run_instruction("go")

        assert [type(e) for e in events] == [
            TurnStartedEvent, CommentaryEvent, ToolExecutedEvent,
            TurnStartedEvent, ToolExecutedEvent, FinishedEvent,
        ]
        assert events[-1].summary == "ok"
        assert events[-1].tool_calls_made == 2


class TestFormatToolResult:
    def test_success_is_json(self):
        text = format_tool_result(ToolResponse.ok({"path": "a.ts"}), OrchestratorConfig())
        assert '"path": "a.ts"' in text

    def test_truncates_long_output(self):
        config = OrchestratorConfig(max_tool_result_chars=100)
        text = format_tool_result(ToolResponse.ok({"out": "x" * 500}), config)
        assert "[truncated at 100 chars" in text

    def test_redacts_secrets(self):
        result = ToolResponse.fail("leaked sk-ant-REDACTED", error_type="X")
        assert "sk-ant" not in format_tool_result(result, OrchestratorConfig())
        assert "sk-ant" in format_tool_result(result, OrchestratorConfig(redact_secrets=False))

    def test_redacts_configured_values(self):
        config = OrchestratorConfig(secret_values=("cf-plain-token", ""))
        text = format_tool_result(ToolResponse.fail("auth with cf-plain-token", error_type="X"), config)
        assert "cf-plain-token" not in text
        assert "[REDACTED]" in text
