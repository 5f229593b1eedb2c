"""Tests for the round loop in harvest.agent, driven by a scripted fake backend."""

import copy
from io import StringIO

import pytest
from rich.console import Console

from harvest import fmt
from harvest.agent import (
    CONTINUE_NUDGE,
    PHASE_NUDGES,
    compose_system_prompt,
    handle_tool_call,
    run_agent_loop,
)
from harvest.context import ContextWindow
from harvest.llm import ChatResult
from harvest.phase import PRODUCE, SUMMARIZE, Budget, PhaseRouter
from harvest.report import ProviderHTTPError, ReportCollector
from harvest.tools import ToolRegistry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeProvider:
    """Returns scripted ChatResults (or raises scripted exceptions) in order."""

    name = "fake"
    model = "fake-1"

    def __init__(self, script):
        self.script = list(script)
        self.calls = []

    def chat_with_tools(self, prompt=None, **kwargs):
        kwargs["messages"] = copy.deepcopy(kwargs["messages"])
        self.calls.append(kwargs)
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _calls(*specs):
    return [{"id": cid, "name": name, "args": args} for cid, name, args in specs]


def _tools_reply(*specs, text=None):
    return ChatResult(text=text, function_calls=_calls(*specs), usage={"input_tokens": 10, "output_tokens": 2})


def _text_reply(text):
    return ChatResult(text=text, function_calls=None, usage=None)


@pytest.fixture
def registry():
    reg = ToolRegistry()
    reg.register(
        name="search_project_code",
        description="Search",
        parameters={"type": "object", "properties": {"pattern": {"type": "string"}}},
        handler=lambda params, ctx: {"matches": [{"file": "Net.m", "line": 1, "pattern": params.get("pattern")}]},
    )
    reg.register(
        name="submit_candidate",
        description="Submit",
        parameters={"type": "object", "properties": {"title": {"type": "string"}}},
        handler=lambda params, ctx: {"status": "ok", "title": params.get("title")},
    )
    reg.register(
        name="get_project_info",
        description="Info",
        handler=lambda params, ctx: "x" * 10000,
    )
    return reg


def _context(prompt="Analyze the networking layer"):
    ctx = ContextWindow(24000)
    ctx.append_user_message(prompt)
    return ctx


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------


class TestComposeSystemPrompt:
    def test_both(self):
        assert compose_system_prompt("base", "hint") == "base\n\nhint"

    def test_only_one(self):
        assert compose_system_prompt("base", None) == "base"
        assert compose_system_prompt(None, "hint") == "hint"

    def test_neither(self):
        assert compose_system_prompt(None, None) is None


class TestHandleToolCall:
    def test_success(self, registry):
        ctx = _context()
        call = {"id": "c1", "name": "search_project_code", "args": {"query": "URLSession"}}
        content, meta = handle_tool_call(call, registry, ctx)
        assert '"pattern": "URLSession"' in content
        assert meta["name"] == "search_project_code"
        assert meta["succeeded"] is True
        assert meta["elapsed"] >= 0

    def test_unknown_tool(self, registry):
        content, meta = handle_tool_call({"id": "c", "name": "ghost", "args": {}}, registry, _context())
        assert meta["succeeded"] is False
        assert "tool not found" in content

    def test_not_allowed(self, registry):
        content, meta = handle_tool_call(
            {"id": "c", "name": "submit_candidate", "args": {}},
            registry,
            _context(),
            allowed_tools=["search_project_code"],
        )
        assert meta["succeeded"] is False
        assert "not available" in content

    def test_result_limited_by_quota(self, registry):
        content, _ = handle_tool_call({"id": "c", "name": "get_project_info", "args": {}}, registry, _context())
        assert content.startswith("x" * 6000)
        assert content.endswith("[truncated, 10000 total chars]")

    def test_tool_context_forwarded(self):
        reg = ToolRegistry()
        reg.register(name="whoami", handler=lambda params, ctx: ctx["project"])
        content, _ = handle_tool_call(
            {"id": "c", "name": "whoami", "args": {}}, reg, _context(), {"project": "Demo"}
        )
        assert content == "Demo"


# ---------------------------------------------------------------------------
# Loop behaviour
# ---------------------------------------------------------------------------


class TestRunAgentLoop:
    def test_full_session(self, registry):
        provider = FakeProvider(
            [
                _tools_reply(("c1", "search_project_code", {"query": "net"})),
                _tools_reply(("c2", "submit_candidate", {"title": "Networking"}), text="Submitting"),
                _tools_reply(("c3", "submit_candidate", {"title": "Caching"})),
                _text_reply("Final summary"),
            ]
        )
        ctx = _context()
        router = PhaseRouter(Budget(search_budget=3, max_submits=1))
        report = ReportCollector()

        answer, exhausted = run_agent_loop(
            ctx, router, provider, registry, system_prompt="You analyze.", report=report
        )

        assert answer == "Final summary"
        assert exhausted is False
        assert router.phase == SUMMARIZE
        assert router.total_submits == 2
        assert [c["tool_choice"] for c in provider.calls] == ["required", "required", "auto", "none"]
        assert provider.calls[0]["system_prompt"].startswith("You analyze.")
        assert "Search budget almost exhausted" in provider.calls[0]["system_prompt"]
        assert len(provider.calls[0]["tool_schemas"]) == 3

        messages = ctx.to_messages()
        assert [m["role"] for m in messages] == [
            "user",
            "assistant", "tool",
            "assistant", "tool",
            "assistant", "tool",
            "assistant",
        ]
        assert messages[2]["tool_call_id"] == "c1"
        assert messages[3]["content"] == "Submitting"

        assert report.llm_calls == 4
        assert report.phase_transitions == 2
        assert report.tool_stats == {
            "search_project_code": {"succeeded": 1, "failed": 0},
            "submit_candidate": {"succeeded": 2, "failed": 0},
        }
        assert report.input_tokens == 30

    def test_explore_tool_choice_sequence(self, registry):
        provider = FakeProvider(
            [_tools_reply((f"c{i}", "search_project_code", {})) for i in range(4)]
        )
        router = PhaseRouter(Budget(max_iterations=4, search_budget=4))
        run_agent_loop(_context(), router, provider, registry)
        assert [c["tool_choice"] for c in provider.calls] == [
            "required",
            "required",
            "required",
            "auto",
        ]
        assert router.phase == PRODUCE

    def test_failed_submit_not_counted(self, registry):
        registry.register(
            name="submit_candidate",
            parameters={"type": "object", "properties": {}},
            handler=lambda params, ctx: {"error": "duplicate"},
        )
        provider = FakeProvider(
            [_tools_reply(("c1", "submit_candidate", {"title": "X"}))]
        )
        router = PhaseRouter(Budget(max_iterations=1))
        run_agent_loop(_context(), router, provider, registry)
        assert router.total_submits == 0

    def test_backend_failure_resets_and_retries(self, registry):
        provider = FakeProvider(
            [
                _tools_reply(("c1", "submit_candidate", {"title": "Auth"})),
                ProviderHTTPError(503, "overloaded"),
                _text_reply("summary"),
            ]
        )
        ctx = _context("task")
        router = PhaseRouter(Budget(), is_skill_only=True)
        report = ReportCollector()

        answer, exhausted = run_agent_loop(ctx, router, provider, registry, report=report)

        assert answer == "summary"
        assert exhausted is False
        assert len(provider.calls[1]["messages"]) == 3
        # The retried call only carries the prompt.
        assert provider.calls[2]["messages"] == [{"role": "user", "content": "task"}]
        assert provider.calls[2]["tool_choice"] == "none"
        assert report.resets == 1
        assert report.llm_calls == 3
        llm_events = [e for e in report.events if e["type"] == "llm_call"]
        assert [e["is_retry"] for e in llm_events] == [False, False, True]
        assert llm_events[2]["retry_reason"] == "reset_to_prompt_only"
        assert "retry_reason" not in llm_events[1]
        assert ctx.get_compacted_submits() == {"Auth"}
        assert "RESET: cleared all messages except prompt" in ctx.get_compaction_log()

    def test_second_failure_propagates(self, registry):
        provider = FakeProvider(
            [ProviderHTTPError(500, "boom"), ProviderHTTPError(500, "boom again")]
        )
        with pytest.raises(ProviderHTTPError, match="boom again"):
            run_agent_loop(_context(), PhaseRouter(Budget()), provider, registry)

    def test_iteration_cap(self, registry):
        provider = FakeProvider(
            [
                _tools_reply((f"c{i}", "search_project_code", {}), text=f"step {i}")
                for i in range(3)
            ]
        )
        router = PhaseRouter(Budget(max_iterations=3, search_budget=10))
        answer, exhausted = run_agent_loop(_context(), router, provider, registry)
        assert answer == "step 2"
        assert exhausted is True
        assert provider.script == []

    def test_text_round_appends_nudge(self, registry):
        provider = FakeProvider([_text_reply("thoughts"), _text_reply("more")])
        ctx = _context("task")
        router = PhaseRouter(Budget(max_iterations=2))
        answer, exhausted = run_agent_loop(ctx, router, provider, registry)

        assert provider.calls[1]["messages"] == [
            {"role": "user", "content": "task"},
            {"role": "assistant", "content": "thoughts"},
            {"role": "user", "content": PHASE_NUDGES[PRODUCE]},
        ]
        assert router.phase == PRODUCE
        assert answer == "more"
        assert exhausted is True
        # No nudge after the final round.
        assert ctx.to_messages()[-1] == {"role": "assistant", "content": "more"}

    def test_produce_text_below_soft_limit_continues(self, registry):
        provider = FakeProvider(
            [
                _tools_reply(("c1", "submit_candidate", {"title": "A"})),
                _text_reply("let me think"),
                _tools_reply(("c2", "submit_candidate", {"title": "B"})),
            ]
        )
        ctx = _context()
        router = PhaseRouter(Budget(max_iterations=3, idle_rounds_to_exit=5))
        run_agent_loop(ctx, router, provider, registry)
        assert provider.calls[2]["messages"][-1] == {"role": "user", "content": CONTINUE_NUDGE}

    def test_empty_reply_moves_on(self, registry):
        provider = FakeProvider(
            [ChatResult(None, None, None), _text_reply("summary")]
        )
        router = PhaseRouter(Budget(), is_skill_only=True)
        ctx = _context("task")
        answer, _ = run_agent_loop(ctx, router, provider, registry)
        assert answer == "summary"
        assert provider.calls[1]["messages"] == [{"role": "user", "content": "task"}]

    def test_allowed_tools_limits_schemas(self, registry):
        provider = FakeProvider([_tools_reply(("c1", "submit_candidate", {"title": "A"}))])
        ctx = _context()
        run_agent_loop(
            ctx,
            PhaseRouter(Budget(max_iterations=1)),
            provider,
            registry,
            allowed_tools=["search_project_code"],
        )
        assert [s["name"] for s in provider.calls[0]["tool_schemas"]] == ["search_project_code"]
        assert "not available" in ctx.to_messages()[2]["content"]

    def test_generation_settings_forwarded(self, registry):
        provider = FakeProvider([_text_reply("a"), _text_reply("b")])
        run_agent_loop(
            _context(),
            PhaseRouter(Budget(), is_skill_only=True),
            provider,
            registry,
            max_tokens=256,
            temperature=0.1,
        )
        assert provider.calls[0]["max_tokens"] == 256
        assert provider.calls[0]["temperature"] == 0.1

    def test_compaction_recorded(self, registry):
        provider = FakeProvider(
            [_tools_reply((f"c{i}", "get_project_info", {})) for i in range(6)]
        )
        ctx = ContextWindow(2500)
        ctx.append_user_message("task")
        report = ReportCollector()
        run_agent_loop(
            ctx,
            PhaseRouter(Budget(max_iterations=6, search_budget=10)),
            provider,
            registry,
            report=report,
        )
        assert report.compactions >= 1
        assert ctx.get_compaction_log()

    def test_verbose_output(self, registry):
        buf = StringIO()
        old = fmt._console
        fmt._console = Console(file=buf, no_color=True, width=120)
        try:
            provider = FakeProvider(
                [
                    _tools_reply(("c1", "search_project_code", {"pattern": "x"}), text="Looking"),
                    _text_reply("summary"),
                    _text_reply("done"),
                ]
            )
            run_agent_loop(
                _context(),
                PhaseRouter(Budget(), is_skill_only=True),
                provider,
                registry,
                verbose=True,
            )
        finally:
            fmt._console = old
        out = buf.getvalue()
        assert "Round 1/24 [EXPLORE]" in out
        assert "search_project_code" in out
        assert "EXPLORE → SUMMARIZE" in out
        assert "Agent finished: 3 rounds" in out
