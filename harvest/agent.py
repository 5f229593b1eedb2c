"""The round loop: ask the backend, run tools, feed results back, advance the phase."""

import json
import logging
import time

from . import fmt
from .context import ContextWindow
from .limiter import limit_tool_result
from .llm import ProviderAdapter
from .phase import PRODUCE, SUMMARIZE, PhaseRouter, RoundResult
from .report import ProviderError, ReportCollector, ToolNotFoundError
from .tools import SUBMIT_TOOLS, ToolRegistry, is_error_result

logger = logging.getLogger(__name__)

MAX_ARG_LOG = 500
MAX_RESULT_PREVIEW = 500

# User turns appended after a text-only round, so the next request ends on a user turn.
PHASE_NUDGES = {
    PRODUCE: (
        "Exploration is finished. Record each finding with submit_candidate."
    ),
    SUMMARIZE: (
        "Stop calling tools. Write the final summary of this session now."
    ),
}
CONTINUE_NUDGE = "Continue. Submit any remaining candidates, or reply that you are done."


def compose_system_prompt(system_prompt: str | None, hint: str | None) -> str | None:
    parts = [p for p in (system_prompt, hint) if p]
    return "\n\n".join(parts) if parts else None


def handle_tool_call(
    call: dict,
    registry: ToolRegistry,
    context: ContextWindow,
    tool_context=None,
    allowed_tools=None,
    verbose: bool = False,
):
    """Execute a single tool call and return (content, metadata).

    content is the limited result string for the conversation.
    metadata has stable keys: name, arguments, elapsed, succeeded.
    """
    name = call["name"]
    args = call.get("args") or {}

    if verbose:
        pretty = json.dumps(args, indent=2, ensure_ascii=False)
        if len(pretty) > MAX_ARG_LOG:
            pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
        fmt.tool_call(name, pretty)

    t0 = time.monotonic()
    if allowed_tools is not None and name not in allowed_tools:
        result = {"error": f"tool {name!r} is not available in this session"}
    else:
        try:
            result = registry.execute(name, args, tool_context)
        except ToolNotFoundError as e:
            result = {"error": str(e)}
    elapsed = time.monotonic() - t0

    succeeded = not is_error_result(result)
    content = limit_tool_result(name, result, context.get_tool_result_quota())

    if verbose:
        if succeeded:
            fmt.tool_result(name, elapsed, content[:MAX_RESULT_PREVIEW])
        else:
            fmt.tool_error(name, result["error"])

    return content, {
        "name": name,
        "arguments": args,
        "elapsed": elapsed,
        "succeeded": succeeded,
    }


def _chat(provider, context, *, turn, token_est, tool_choice, report, retry_reason=None, **kwargs):
    t0 = time.monotonic()
    retry = dict(is_retry=retry_reason is not None, retry_reason=retry_reason)
    try:
        result = provider.chat_with_tools(messages=context.to_messages(), tool_choice=tool_choice, **kwargs)
    except ProviderError:
        if report:
            report.record_llm_call(turn, time.monotonic() - t0, token_est, tool_choice, **retry)
        raise
    elapsed = time.monotonic() - t0
    if report:
        report.record_llm_call(turn, elapsed, token_est, tool_choice, result.usage, **retry)
    return result, elapsed


def run_agent_loop(
    context: ContextWindow,
    router: PhaseRouter,
    provider: ProviderAdapter,
    registry: ToolRegistry,
    *,
    system_prompt: str | None = None,
    tool_context=None,
    allowed_tools=None,
    submit_tools=SUBMIT_TOOLS,
    max_tokens: int | None = None,
    temperature: float | None = None,
    verbose: bool = False,
    report: ReportCollector | None = None,
) -> tuple[str | None, bool]:
    """Run rounds until the router says to stop.

    ``context`` must already hold the task prompt. Mutates it in place.
    Returns (final_answer, exhausted). final_answer is the last assistant
    text (may be None). exhausted is True if the iteration cap was hit.
    """
    tool_schemas = registry.get_tool_schemas(allowed_tools)
    submit_tools = frozenset(submit_tools)
    max_iterations = router.budget.max_iterations
    last_text = None

    while not router.should_exit():
        router.tick()
        turn = router.total_iterations

        tokens_before = context.estimate_tokens()
        compaction = context.compact_if_needed()
        token_est = context.estimate_tokens()
        if compaction.removed:
            if verbose:
                fmt.compaction(compaction.level, compaction.removed, tokens_before, token_est)
            if report:
                report.record_compaction(
                    turn, compaction.level, compaction.removed, tokens_before, token_est
                )

        if verbose:
            fmt.turn_header(turn, max_iterations, router.phase, token_est)

        tool_choice = router.get_tool_choice()
        chat_kwargs = dict(
            tool_schemas=tool_schemas,
            system_prompt=compose_system_prompt(system_prompt, router.get_phase_hint()),
            temperature=temperature,
            max_tokens=max_tokens,
        )
        try:
            result, elapsed = _chat(
                provider,
                context,
                turn=turn,
                token_est=token_est,
                tool_choice=tool_choice,
                report=report,
                **chat_kwargs,
            )
        except ProviderError as e:
            logger.warning("backend call failed, resetting context: %s", e)
            fmt.warning(f"backend call failed ({e}), retrying with the prompt only")
            context.reset_to_prompt_only()
            if report:
                report.record_reset(turn, str(e))
            token_est = context.estimate_tokens()
            # A second failure in a row propagates.
            result, elapsed = _chat(
                provider,
                context,
                turn=turn,
                token_est=token_est,
                tool_choice=tool_choice,
                report=report,
                retry_reason="reset_to_prompt_only",
                **chat_kwargs,
            )

        if verbose:
            fmt.llm_timing(elapsed, tool_choice, result.usage)

        calls = result.function_calls or []
        if result.text:
            last_text = result.text

        if calls:
            if result.text and verbose:
                fmt.assistant_text(result.text)
            context.append_assistant_with_tool_calls(result.text, calls)
            submit_count = 0
            for call in calls:
                content, meta = handle_tool_call(
                    call,
                    registry,
                    context,
                    tool_context,
                    allowed_tools=allowed_tools,
                    verbose=verbose,
                )
                context.append_tool_result(call["id"], call["name"], content)
                if report:
                    report.record_tool_call(
                        turn,
                        meta["name"],
                        meta["arguments"],
                        meta["succeeded"],
                        meta["elapsed"],
                        len(content),
                        error=content if not meta["succeeded"] else None,
                    )
                if meta["succeeded"] and meta["name"] in submit_tools:
                    submit_count += 1
            round_result = RoundResult(function_calls=calls, submit_count=submit_count)
        else:
            if result.text:
                context.append_assistant_text(result.text)
            round_result = RoundResult(is_text_only=bool(result.text))

        old_phase = router.phase
        update = router.update(round_result)
        if update.transitioned:
            if verbose:
                fmt.phase_change(old_phase, update.new_phase, router.total_submits)
            if report:
                report.record_phase(turn, old_phase, update.new_phase)

        if round_result.is_text_only:
            if old_phase == SUMMARIZE:
                if verbose:
                    fmt.completion(turn, "ok")
                return last_text, False
            if router.should_exit():
                break
            context.append_user_nudge(
                PHASE_NUDGES.get(update.new_phase, CONTINUE_NUDGE)
                if update.transitioned
                else CONTINUE_NUDGE
            )

    exhausted = router.total_iterations >= max_iterations
    if verbose:
        fmt.completion(router.total_iterations, "max_iterations" if exhausted else "ok")
    return last_text, exhausted
