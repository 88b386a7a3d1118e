"""Tests for the orchestration loop: rounds, the tool barrier, and error folding."""

import threading
import time
from unittest.mock import patch

import pytest

from tandem.loop import EMPTY_RESULT, OrchestrationLoop, outcome_to_result
from tandem.report import AgentError, ReportCollector, TransportError
from tandem.tools import ToolOutcome, ToolRegistry, ToolSpec, default_registry
from tandem.transcript import (
    AssistantTurn,
    TextBlock,
    ToolRequestBlock,
    ToolResult,
    ToolResultTurn,
    UserText,
)


class ScriptedClient:
    """Returns queued turns in order and records what it was sent."""

    def __init__(self, *turns):
        self.turns = list(turns)
        self.calls = []

    def send(self, transcript, system_prompt, catalog):
        self.calls.append((tuple(transcript), system_prompt, tuple(catalog)))
        item = self.turns.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _text(text):
    return AssistantTurn(blocks=(TextBlock(text),), finish_reason="stop")


def _tools(*requests, text=None):
    blocks = [TextBlock(text)] if text else []
    blocks += [ToolRequestBlock(i, name, args) for i, name, args in requests]
    return AssistantTurn(blocks=tuple(blocks), finish_reason="tool_calls")


def _spec(name):
    return ToolSpec(name, f"{name} tool")


def _results(transcript_turns):
    return [t for t in transcript_turns if isinstance(t, ToolResultTurn)]


# =========================================================================
# outcome_to_result
# =========================================================================


class TestOutcomeToResult:
    def test_success(self):
        block = ToolRequestBlock("t1", "bash", {})
        assert outcome_to_result(block, ToolOutcome.ok("out")) == ToolResult("t1", "out")

    def test_empty_success(self):
        block = ToolRequestBlock("t1", "bash", {})
        assert outcome_to_result(block, ToolOutcome.ok("")).content == EMPTY_RESULT

    def test_failure(self):
        block = ToolRequestBlock("t1", "bash", {})
        result = outcome_to_result(block, ToolOutcome.fail("boom"))
        assert result == ToolResult("t1", "Error: boom", is_error=True)


# =========================================================================
# Round structure
# =========================================================================


class TestChat:
    def test_plain_answer_single_round(self):
        client = ScriptedClient(_text("Hello!"))
        loop = OrchestrationLoop(client, ToolRegistry([]), "sys")

        assert loop.chat("hi") == "Hello!"
        assert len(client.calls) == 1
        sent, system_prompt, catalog = client.calls[0]
        assert sent == (UserText("hi"),)
        assert system_prompt == "sys"
        assert catalog == ()
        assert loop.last_transcript.snapshot() == (UserText("hi"), _text("Hello!"))

    def test_empty_final_turn(self):
        client = ScriptedClient(AssistantTurn())
        loop = OrchestrationLoop(client, ToolRegistry([]))
        assert loop.chat("hi") == ""

    def test_text_accumulates_across_rounds(self):
        reg = ToolRegistry([(_spec("noop"), lambda args: "ok")])
        client = ScriptedClient(
            _tools(("t1", "noop", {}), text="Checking. "),
            _tools(("t2", "noop", {})),
            _text("All good."),
        )
        loop = OrchestrationLoop(client, reg)
        assert loop.chat("go") == "Checking. All good."
        assert len(client.calls) == 3

    def test_terminates_when_no_tool_requests(self):
        reg = ToolRegistry([(_spec("noop"), lambda args: "ok")])
        client = ScriptedClient(_tools(("t1", "noop", {})), _text("done"), _text("never"))
        OrchestrationLoop(client, reg).chat("go")
        assert client.turns == [_text("never")]

    def test_each_message_gets_fresh_transcript(self):
        client = ScriptedClient(_text("one"), _text("two"))
        loop = OrchestrationLoop(client, ToolRegistry([]))
        loop.chat("first")
        loop.chat("second")
        assert client.calls[1][0] == (UserText("second"),)

    def test_model_sees_results_before_next_round(self):
        reg = ToolRegistry([(_spec("noop"), lambda args: "result!")])
        client = ScriptedClient(_tools(("t1", "noop", {})), _text("done"))
        OrchestrationLoop(client, reg).chat("go")

        second = client.calls[1][0]
        assert isinstance(second[-1], ToolResultTurn)
        assert second[-1].results == (ToolResult("t1", "result!"),)

    def test_interleaved_blocks_preserved(self):
        reg = ToolRegistry([(_spec("noop"), lambda args: "ok")])
        turn = AssistantTurn(
            blocks=(
                ToolRequestBlock("t1", "noop", {}),
                TextBlock("between"),
                ToolRequestBlock("t2", "noop", {}),
            ),
            finish_reason="tool_calls",
        )
        client = ScriptedClient(turn, _text("end"))
        loop = OrchestrationLoop(client, reg)
        assert loop.chat("go") == "betweenend"
        assert loop.last_transcript.snapshot()[1] == turn

    def test_invalid_limits(self):
        with pytest.raises(ValueError):
            OrchestrationLoop(ScriptedClient(), ToolRegistry([]), max_rounds=0)
        with pytest.raises(ValueError):
            OrchestrationLoop(ScriptedClient(), ToolRegistry([]), max_workers=0)


# =========================================================================
# The hello.txt walkthrough, against the real tools
# =========================================================================


class TestEditScenarios:
    def test_create_file_four_turns(self, tmp_path):
        client = ScriptedClient(
            _tools(
                ("t1", "edit_file", {"path": "hello.txt", "old_str": "", "new_str": "hi"}),
                text="I'll create it.",
            ),
            _text(" Created hello.txt."),
        )
        loop = OrchestrationLoop(client, default_registry(str(tmp_path)))
        answer = loop.chat("Create hello.txt containing hi")

        assert answer == "I'll create it. Created hello.txt."
        assert (tmp_path / "hello.txt").read_text(encoding="utf-8") == "hi"

        turns = loop.last_transcript.snapshot()
        assert len(turns) == 4
        assert isinstance(turns[0], UserText)
        assert isinstance(turns[1], AssistantTurn)
        assert turns[2] == ToolResultTurn(
            results=(ToolResult("t1", "Created new file: hello.txt (2 bytes)"),)
        )
        assert isinstance(turns[3], AssistantTurn)

    def test_string_not_found_is_folded(self, tmp_path):
        (tmp_path / "hello.txt").write_text("hi", encoding="utf-8")
        client = ScriptedClient(
            _tools(("t1", "edit_file", {"path": "hello.txt", "old_str": "foo", "new_str": "bar"})),
            _text("That string isn't there."),
        )
        loop = OrchestrationLoop(client, default_registry(str(tmp_path)))
        loop.chat("replace foo")

        result = _results(loop.last_transcript.snapshot())[0].results[0]
        assert result == ToolResult("t1", 'Error: String not found in file: "foo"', is_error=True)
        assert (tmp_path / "hello.txt").read_text(encoding="utf-8") == "hi"

    def test_unknown_tool_is_folded(self):
        client = ScriptedClient(_tools(("t1", "frobnicate", {})), _text("sorry"))
        loop = OrchestrationLoop(client, ToolRegistry([]))
        assert loop.chat("go") == "sorry"
        result = _results(loop.last_transcript.snapshot())[0].results[0]
        assert result.content == "Error: Unknown tool: frobnicate"
        assert result.is_error

    def test_raw_string_input_is_folded(self):
        reg = ToolRegistry([(_spec("noop"), lambda args: "ok")])
        client = ScriptedClient(_tools(("t1", "noop", "{not json")), _text("retry"))
        loop = OrchestrationLoop(client, reg)
        loop.chat("go")
        result = _results(loop.last_transcript.snapshot())[0].results[0]
        assert result.content.startswith("Error: Invalid input for noop:")


# =========================================================================
# Concurrent tool barrier
# =========================================================================


class TestToolBarrier:
    def test_one_result_per_request_in_order(self):
        def slow(args):
            time.sleep(args["delay"])
            return f"slept {args['delay']}"

        spec = ToolSpec(
            "sleep",
            "Sleeps.",
            {"type": "object", "properties": {"delay": {"type": "number"}}},
        )
        reg = ToolRegistry([(spec, slow)])
        client = ScriptedClient(
            _tools(
                ("a", "sleep", {"delay": 0.3}),
                ("b", "sleep", {"delay": 0.0}),
                ("c", "sleep", {"delay": 0.1}),
            ),
            _text("done"),
        )
        loop = OrchestrationLoop(client, reg)
        loop.chat("go")

        results = _results(loop.last_transcript.snapshot())[0].results
        assert [r.request_id for r in results] == ["a", "b", "c"]
        assert [r.content for r in results] == ["slept 0.3", "slept 0.0", "slept 0.1"]

    def test_tools_run_concurrently(self):
        barrier = threading.Barrier(3, timeout=5)

        def meet(args):
            barrier.wait()
            return "met"

        reg = ToolRegistry([(_spec("meet"), meet)])
        client = ScriptedClient(
            _tools(("a", "meet", {}), ("b", "meet", {}), ("c", "meet", {})),
            _text("done"),
        )
        loop = OrchestrationLoop(client, reg, max_workers=3)
        loop.chat("go")
        results = _results(loop.last_transcript.snapshot())[0].results
        assert all(r.content == "met" for r in results)

    def test_one_failure_does_not_abort_siblings(self):
        def flaky(args):
            if args.get("fail"):
                raise RuntimeError("kaboom")
            return "fine"

        spec = ToolSpec(
            "flaky",
            "Maybe fails.",
            {"type": "object", "properties": {"fail": {"type": "boolean"}}},
        )
        reg = ToolRegistry([(spec, flaky)])
        client = ScriptedClient(
            _tools(
                ("a", "flaky", {}),
                ("b", "flaky", {"fail": True}),
                ("c", "flaky", {}),
                ("d", "missing_tool", {}),
            ),
            _text("recovered"),
        )
        loop = OrchestrationLoop(client, reg)
        assert loop.chat("go") == "recovered"

        results = _results(loop.last_transcript.snapshot())[0].results
        assert len(results) == 4
        assert [r.is_error for r in results] == [False, True, False, True]
        assert results[1].content == "Error: kaboom"
        assert results[3].content == "Error: Unknown tool: missing_tool"

    def test_registry_exception_is_folded(self):
        class ExplodingRegistry(ToolRegistry):
            def execute(self, name, args):
                raise RuntimeError("registry broke")

        reg = ExplodingRegistry([(_spec("noop"), lambda args: "ok")])
        client = ScriptedClient(_tools(("t1", "noop", {})), _text("ok"))
        loop = OrchestrationLoop(client, reg)
        loop.chat("go")
        result = _results(loop.last_transcript.snapshot())[0].results[0]
        assert result == ToolResult("t1", "Error: registry broke", is_error=True)

    def test_worker_cap(self):
        lock = threading.Lock()
        active = [0]
        peak = [0]

        def track(args):
            with lock:
                active[0] += 1
                peak[0] = max(peak[0], active[0])
            time.sleep(0.05)
            with lock:
                active[0] -= 1
            return "ok"

        reg = ToolRegistry([(_spec("track"), track)])
        requests = [(f"t{i}", "track", {}) for i in range(6)]
        client = ScriptedClient(_tools(*requests), _text("done"))
        OrchestrationLoop(client, reg, max_workers=2).chat("go")
        assert peak[0] <= 2


# =========================================================================
# Failures and limits
# =========================================================================


class TestFailures:
    def test_transport_error_propagates(self):
        client = ScriptedClient(TransportError("LLM call failed: down"))
        loop = OrchestrationLoop(client, ToolRegistry([]))
        with pytest.raises(TransportError, match="down"):
            loop.chat("hi")

    def test_transport_error_after_tools_discards_partial_text(self):
        reg = ToolRegistry([(_spec("noop"), lambda args: "ok")])
        client = ScriptedClient(
            _tools(("t1", "noop", {}), text="partial"),
            TransportError("LLM call failed: gone"),
        )
        loop = OrchestrationLoop(client, reg)
        with pytest.raises(TransportError):
            loop.chat("hi")
        assert len(loop.last_transcript) == 3

    def test_duplicate_request_ids_rejected_before_any_tool_runs(self):
        calls = []
        reg = ToolRegistry([(_spec("touch"), lambda args: calls.append(args) or "ok")])
        client = ScriptedClient(_tools(("x", "touch", {}), ("x", "touch", {})))
        loop = OrchestrationLoop(client, reg)
        with pytest.raises(TransportError, match="duplicate tool call id 'x'"):
            loop.chat("go")
        assert calls == []
        assert len(loop.last_transcript) == 1

    def test_duplicate_request_ids_recorded_as_failed_call(self):
        reg = ToolRegistry([(_spec("touch"), lambda args: "ok")])
        client = ScriptedClient(_tools(("x", "touch", {}), ("x", "touch", {})))
        report = ReportCollector()
        with patch("tandem.loop.estimate_tokens", return_value=0):
            with pytest.raises(TransportError):
                OrchestrationLoop(client, reg).chat("go", report=report)
        assert report.events[-1]["finish_reason"] == "error"
        assert report.tool_stats == {}

    def test_max_rounds(self):
        reg = ToolRegistry([(_spec("noop"), lambda args: "ok")])
        client = ScriptedClient(
            _tools(("t1", "noop", {})),
            _tools(("t2", "noop", {})),
            _tools(("t3", "noop", {})),
        )
        loop = OrchestrationLoop(client, reg, max_rounds=2)
        with pytest.raises(AgentError, match="stopped after 2 rounds"):
            loop.chat("go")
        assert len(client.calls) == 2

    def test_no_round_limit_by_default(self):
        reg = ToolRegistry([(_spec("noop"), lambda args: "ok")])
        turns = [_tools((f"t{i}", "noop", {})) for i in range(30)] + [_text("finally")]
        loop = OrchestrationLoop(ScriptedClient(*turns), reg)
        assert loop.chat("go") == "finally"


# =========================================================================
# Report and narration
# =========================================================================


class TestReporting:
    def test_report_records_rounds_and_tools(self):
        def fails(args):
            raise RuntimeError("nope")

        reg = ToolRegistry([(_spec("ok"), lambda args: "fine"), (_spec("bad"), fails)])
        client = ScriptedClient(_tools(("a", "ok", {}), ("b", "bad", {})), _text("done"))
        report = ReportCollector()
        with patch("tandem.loop.estimate_tokens", return_value=42):
            OrchestrationLoop(client, reg).chat("go", report=report)

        assert report.llm_calls == 2
        assert report.max_round_seen == 2
        assert report.tool_stats == {
            "ok": {"succeeded": 1, "failed": 0},
            "bad": {"succeeded": 0, "failed": 1},
        }
        tool_events = [e for e in report.events if e["type"] == "tool_call"]
        assert [e["name"] for e in tool_events] == ["ok", "bad"]
        assert tool_events[1]["error"] == "Error: nope"
        assert report.events[0]["prompt_tokens_est"] == 42

    def test_report_records_failed_model_call(self):
        report = ReportCollector()
        client = ScriptedClient(TransportError("LLM call failed: x"))
        with patch("tandem.loop.estimate_tokens", return_value=0):
            with pytest.raises(TransportError):
                OrchestrationLoop(client, ToolRegistry([])).chat("go", report=report)
        assert report.events[-1]["finish_reason"] == "error"

    def test_verbose_narration(self):
        reg = ToolRegistry([(_spec("noop"), lambda args: "ok")])
        client = ScriptedClient(_tools(("t1", "noop", {}), text="thinking"), _text("done"))
        with (
            patch("tandem.loop.estimate_tokens", return_value=10),
            patch("tandem.loop.fmt") as mock_fmt,
        ):
            OrchestrationLoop(client, reg, verbose=True).chat("go")

        assert mock_fmt.round_header.call_count == 2
        mock_fmt.assistant_text.assert_called_once_with("thinking")
        mock_fmt.tool_call.assert_called_once_with("noop", "{}")
        mock_fmt.completion.assert_called_once_with(2)

    def test_quiet_skips_token_estimate(self):
        client = ScriptedClient(_text("done"))
        with patch("tandem.loop.estimate_tokens") as mock_est:
            OrchestrationLoop(client, ToolRegistry([])).chat("go")
        mock_est.assert_not_called()
