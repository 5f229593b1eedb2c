"""Conversation buffer for one agent session.

Invariants kept by every method here:

1. ``messages[0]`` is the original task prompt and is never removed.
2. An assistant message carrying tool calls and the tool results that answer
   it form one round. Compaction removes whole rounds or nothing.

Compaction runs in three tiers keyed on estimated usage of the token budget:

    L1 (60-80%)  shorten old tool results in place
    L2 (80-95%)  drop history, keep the last two rounds
    L3 (>=95%)   drop history, keep the last round

Dropped submit calls are remembered so the agent never loses track of work it
already finished. Steering text for the model belongs in the system prompt
(see PhaseRouter.get_phase_hint), not in fabricated user turns.
"""

import json
import logging
import math
from dataclasses import dataclass

from .tools import SUBMIT_TOOLS

DEFAULT_TOKEN_BUDGET = 24000

L1_THRESHOLD = 0.6
L2_THRESHOLD = 0.8
L3_THRESHOLD = 0.95
MIN_MESSAGES_TO_COMPACT = 4

L1_TRUNCATE_ABOVE = 2000
L1_TRUNCATE_TO = 500

# (usage ratio upper bound, max_chars, max_matches); the last tier is the floor.
_QUOTA_TIERS = (
    (0.4, 6000, 15),
    (0.6, 3000, 8),
    (0.8, 1500, 5),
    (None, 800, 3),
)

_encoder = None


def _get_encoder():
    global _encoder
    if _encoder is None:
        import tiktoken

        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


@dataclass
class CompactionResult:
    level: int
    removed: int


def is_tool_round_start(msg: dict) -> bool:
    return msg.get("role") == "assistant" and bool(msg.get("tool_calls"))


def find_round_starts(messages: list[dict]) -> list[int]:
    """Indexes of assistant messages that open a tool round, oldest first.

    Index 0 is the prompt and is never considered.
    """
    return [i for i in range(1, len(messages)) if is_tool_round_start(messages[i])]


def submit_titles(messages: list[dict]) -> list[str]:
    """Titles of submit-type tool calls found in ``messages``, in order."""
    titles = []
    for m in messages:
        if m.get("role") != "assistant" or not m.get("tool_calls"):
            continue
        for tc in m["tool_calls"]:
            if tc.get("name") in SUBMIT_TOOLS:
                args = tc.get("args") or {}
                titles.append(args.get("title") or args.get("category") or "untitled")
    return titles


class ContextWindow:
    """Ordered, provider-agnostic message buffer with budget-driven compaction."""

    def __init__(
        self,
        token_budget: int = DEFAULT_TOKEN_BUDGET,
        logger: logging.Logger | None = None,
    ):
        if token_budget <= 0:
            raise ValueError(f"token_budget must be positive, got {token_budget}")
        self._messages: list[dict] = []
        self._token_budget = token_budget
        self._compaction_log: list[str] = []
        # Insertion-ordered set
        self._compacted_submits: dict[str, None] = {}
        self._logger = logger or logging.getLogger(__name__)

    # -- Appending -------------------------------------------------------------

    def append_user_message(self, content: str) -> None:
        self._messages.append({"role": "user", "content": content})

    def append_user_nudge(self, content: str) -> None:
        """Append a short user message marking a phase change.

        Same shape as append_user_message; kept separate so callers that
        inject steering turns are easy to find.
        """
        self._messages.append({"role": "user", "content": content})

    def append_assistant_with_tool_calls(self, text: str | None, tool_calls: list[dict]) -> None:
        self._messages.append(
            {"role": "assistant", "content": text or None, "tool_calls": tool_calls}
        )

    def append_tool_result(self, tool_call_id: str, name: str, content: str) -> None:
        """Append a tool result. Must follow the assistant message that issued the call."""
        self._messages.append(
            {
                "role": "tool",
                "tool_call_id": tool_call_id,
                "name": name,
                "content": content,
            }
        )

    def append_assistant_text(self, text: str) -> None:
        self._messages.append({"role": "assistant", "content": text})

    # -- Compaction ------------------------------------------------------------

    def compact_if_needed(self) -> CompactionResult:
        """Shrink the buffer according to current usage. Call before each LLM call."""
        usage = self.get_token_usage_ratio()

        if usage < L1_THRESHOLD or len(self._messages) <= MIN_MESSAGES_TO_COMPACT:
            return CompactionResult(0, 0)
        if usage < L2_THRESHOLD:
            return self._compact_l1()
        if usage < L3_THRESHOLD:
            return self._compact_l2()
        return self._compact_l3()

    def _compact_l1(self) -> CompactionResult:
        last_start = self._last_round_start()
        if last_start < 0:
            return CompactionResult(1, 0)

        truncated = 0
        for msg in self._messages[1:last_start]:
            content = msg.get("content")
            if msg.get("role") == "tool" and content and len(content) > L1_TRUNCATE_ABOVE:
                msg["content"] = (
                    content[:L1_TRUNCATE_TO]
                    + f"\n... [truncated from {len(content)} chars]"
                )
                truncated += 1

        if truncated:
            self._compaction_log.append(f"L1: truncated {truncated} tool results")
            self._logger.info("L1 compact: truncated %d tool results", truncated)
        return CompactionResult(1, truncated)

    def _compact_l2(self) -> CompactionResult:
        starts = find_round_starts(self._messages)
        if len(starts) < 2:
            return CompactionResult(2, 0)
        keep_from = starts[-2]
        if keep_from <= 1:
            return CompactionResult(2, 0)
        return self._splice_and_summarize(keep_from, 2)

    def _compact_l3(self) -> CompactionResult:
        last_start = self._last_round_start()
        if last_start < 0:
            # No tool round: keep the prompt and the latest message.
            if len(self._messages) > 3:
                removed = len(self._messages) - 2
                del self._messages[1:-1]
                self._compaction_log.append(
                    f"L3: removed {removed} messages (no tool rounds)"
                )
                self._logger.info("L3 compact: removed %d messages (no tool rounds)", removed)
                return CompactionResult(3, removed)
            return CompactionResult(3, 0)
        if last_start == 1:
            return CompactionResult(3, 0)
        return self._splice_and_summarize(last_start, 3)

    def _splice_and_summarize(self, keep_from: int, level: int) -> CompactionResult:
        """Replace ``messages[1:keep_from]`` with one summary message.

        The summary is a user message at index 1, so it directly follows the
        user prompt; adapters for strict-alternation backends merge the two.
        """
        removed = self._messages[1:keep_from]
        self._record_submits(removed)

        rounds = sum(1 for m in removed if is_tool_round_start(m))
        results = sum(1 for m in removed if m.get("role") == "tool")

        del self._messages[1:keep_from]

        parts = [f"[Context compressed: {rounds} tool rounds, {results} results removed]"]
        if self._compacted_submits:
            parts.append(
                f"[Submitted candidates: {', '.join(self._compacted_submits)}]"
            )
        self._messages.insert(1, {"role": "user", "content": "\n".join(parts)})

        removed_count = keep_from - 1
        self._compaction_log.append(
            f"L{level}: removed {removed_count} messages ({rounds} rounds)"
        )
        self._logger.info(
            "L%d compact: removed %d messages, kept last %d rounds",
            level,
            removed_count,
            2 if level == 2 else 1,
        )
        return CompactionResult(level, removed_count)

    def reset_to_prompt_only(self) -> None:
        """Drop everything but the prompt, keeping the record of submitted work.

        Used to recover after a fatal backend error.
        """
        if len(self._messages) <= 1:
            return
        self._record_submits(self._messages[1:])
        removed = len(self._messages) - 1
        del self._messages[1:]
        self._compaction_log.append("RESET: cleared all messages except prompt")
        self._logger.warning("context reset: cleared %d messages", removed)

    def _record_submits(self, messages: list[dict]) -> None:
        for title in submit_titles(messages):
            self._compacted_submits[title] = None

    def _last_round_start(self) -> int:
        for i in range(len(self._messages) - 1, 0, -1):
            if is_tool_round_start(self._messages[i]):
                return i
        return -1

    # -- Queries ---------------------------------------------------------------

    def to_messages(self) -> list[dict]:
        """The live message list, for adapters and transcript storage."""
        return self._messages

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def token_budget(self) -> int:
        return self._token_budget

    def estimate_tokens(self) -> int:
        """Cheap estimate: one token per three characters of content and tool calls."""
        total = 0.0
        for m in self._messages:
            content = m.get("content")
            if content:
                total += len(content) / 3
            tool_calls = m.get("tool_calls")
            if tool_calls:
                total += (
                    len(json.dumps(tool_calls, ensure_ascii=False, separators=(",", ":")))
                    / 3
                )
        return math.ceil(total)

    def count_tokens(self) -> int:
        """Exact token count with the cl100k_base tokenizer, for reporting only."""
        encoder = _get_encoder()
        total = 0
        for m in self._messages:
            text = m.get("content") or ""
            if m.get("tool_calls"):
                text += json.dumps(m["tool_calls"], ensure_ascii=False)
            total += len(encoder.encode(text))
        # Per-message overhead (role, separators), ~4 tokens each
        return total + 4 * len(self._messages)

    def get_token_usage_ratio(self) -> float:
        return self.estimate_tokens() / self._token_budget

    def get_tool_result_quota(self) -> dict:
        """Size limits for the next tool result, tightening as the buffer fills."""
        usage = self.get_token_usage_ratio()
        for bound, max_chars, max_matches in _QUOTA_TIERS[:-1]:
            if usage < bound:
                return {"max_chars": max_chars, "max_matches": max_matches}
        _, max_chars, max_matches = _QUOTA_TIERS[-1]
        return {"max_chars": max_chars, "max_matches": max_matches}

    def get_compaction_log(self) -> list[str]:
        return list(self._compaction_log)

    def get_compacted_submits(self) -> set[str]:
        return set(self._compacted_submits)
