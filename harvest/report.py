"""Error types and JSON report generation for agent sessions."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


class ToolNotFoundError(AgentError):
    """Raised when a tool name is not present in the registry."""


class ProviderError(AgentError):
    """Raised when a backend call fails after any retries."""


class ProviderHTTPError(ProviderError):
    """Raised for non-2xx responses from a backend endpoint."""

    def __init__(self, status: int, message: str):
        super().__init__(f"request failed ({status}): {message}")
        self.status = status
        self.body = message
        self.retry_after: float | None = None


class ProviderTimeoutError(ProviderError):
    """Raised when an outbound backend call exceeds its timeout."""


class ReportCollector:
    """Accumulates events during an agent run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.compactions = 0
        self.resets = 0
        self.phase_transitions = 0
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.input_tokens = 0
        self.output_tokens = 0
        self.max_turn_seen = 0
        self._last_report: dict | None = None

    def record_llm_call(
        self,
        turn: int,
        duration: float,
        token_est: int,
        tool_choice: str,
        usage: dict | None = None,
        *,
        is_retry: bool = False,
        retry_reason: str | None = None,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        if turn > self.max_turn_seen:
            self.max_turn_seen = turn
        if usage:
            self.input_tokens += usage.get("input_tokens", 0)
            self.output_tokens += usage.get("output_tokens", 0)
        event: dict = {
            "turn": turn,
            "type": "llm_call",
            "duration_s": round(duration, 3),
            "prompt_tokens_est": token_est,
            "tool_choice": tool_choice,
            "usage": usage,
            "is_retry": is_retry,
        }
        if retry_reason is not None:
            event["retry_reason"] = retry_reason
        self.events.append(event)

    def record_tool_call(
        self,
        turn: int,
        name: str,
        arguments: dict | None,
        succeeded: bool,
        duration: float,
        result_length: int,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "turn": turn,
            "type": "tool_call",
            "name": name,
            "arguments": arguments,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
            "result_length": result_length,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_compaction(
        self, turn: int, level: int, removed: int, tokens_before: int, tokens_after: int
    ):
        if level == 0:
            return
        self.compactions += 1
        self.events.append(
            {
                "turn": turn,
                "type": "compaction",
                "level": level,
                "removed": removed,
                "tokens_before": tokens_before,
                "tokens_after": tokens_after,
            }
        )

    def record_reset(self, turn: int, reason: str):
        self.resets += 1
        self.events.append({"turn": turn, "type": "reset", "reason": reason})

    def record_phase(self, turn: int, old_phase: str, new_phase: str):
        self.phase_transitions += 1
        self.events.append(
            {"turn": turn, "type": "phase", "from": old_phase, "to": new_phase}
        )

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        turns: int,
        submits: list[str] | None = None,
        context_tokens: int | None = None,
        error_message: str | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {"outcome": outcome, "answer": answer}
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "turns": turns,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "compactions": self.compactions,
                "resets": self.resets,
                "phase_transitions": self.phase_transitions,
                "llm_calls": self.llm_calls,
                "input_tokens": self.input_tokens,
                "output_tokens": self.output_tokens,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
                "submits": list(submits or []),
                "context_tokens": context_tokens,
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for a later write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        if self._last_report is None:
            raise AgentError("no report to write; call finalize() first")
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")
