"""Size limiting for tool results before they enter the conversation buffer."""

import json

from .tools import SUBMIT_TOOLS

SEARCH_TOOLS = frozenset({"search_project_code", "semantic_search_code"})
FILE_READ_TOOLS = frozenset({"read_project_file"})

SUBMIT_RESULT_CEILING = 500
MAX_CONTEXT_LINES = 7
MAX_LEGACY_LINES = 5
DEFAULT_QUOTA = {"max_chars": 4000, "max_matches": 10}


def _serialize(result) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, default=str)


def _truncate_chars(raw: str, max_chars: int) -> str:
    if len(raw) <= max_chars:
        return raw
    return raw[:max_chars] + f"\n... [truncated, {len(raw)} total chars]"


def _truncate_lines(text: str, max_chars: int) -> str:
    """Cut ``text`` at a line boundary so the kept part fits in ``max_chars``."""
    if len(text) <= max_chars:
        return text
    lines = text.split("\n")
    kept: list[str] = []
    used = 0
    for line in lines:
        if used + len(line) + 1 > max_chars:
            break
        kept.append(line)
        used += len(line) + 1
    head = "".join(line + "\n" for line in kept)
    return head + (
        f"... [truncated at line {len(kept)} of {len(lines)}, "
        f"{max_chars} chars, total {len(text)}]"
    )


def _limit_match(match):
    if not isinstance(match, dict):
        return match
    limited = dict(match)
    context = limited.get("context")
    if isinstance(context, str):
        context_lines = context.split("\n")
        if len(context_lines) > MAX_CONTEXT_LINES:
            limited["context"] = (
                "\n".join(context_lines[:MAX_CONTEXT_LINES]) + "\n... [truncated]"
            )
    legacy = limited.get("lines")
    if isinstance(legacy, list) and len(legacy) > MAX_LEGACY_LINES:
        limited["lines"] = legacy[:MAX_LEGACY_LINES]
        limited["_truncated"] = True
    return limited


def _limit_search(result, max_matches: int, max_chars: int) -> str:
    """Keep the top matches and shorten each match's context block.

    Expected shape: ``{"matches": [{"file", "line", "code", "context"}], ...}``.
    """
    if isinstance(result, str):
        return _truncate_chars(result, max_chars)
    if not isinstance(result, dict):
        return _truncate_chars(_serialize(result if result is not None else {}), max_chars)

    limited = dict(result)
    matches = result.get("matches")
    if isinstance(matches, list):
        limited["matches"] = [_limit_match(m) for m in matches[:max_matches]]
        if len(matches) > max_matches:
            limited["_note"] = f"Showing {max_matches} of {len(matches)} matches"

    return _truncate_chars(_serialize(limited), max_chars)


def _limit_file(result, max_chars: int) -> str:
    if isinstance(result, str):
        return _truncate_lines(result, max_chars)
    if not isinstance(result, dict):
        return _serialize(result if result is not None else {})

    limited = dict(result)
    content = limited.get("content")
    if isinstance(content, str) and len(content) > max_chars:
        limited["content"] = _truncate_lines(content, max_chars)
    return _serialize(limited)


def limit_tool_result(tool_name: str, result, quota: dict | None = None) -> str:
    """Compress a raw tool result to fit the given quota.

    ``quota`` has ``max_chars`` and ``max_matches`` keys, normally taken from
    ContextWindow.get_tool_result_quota(). Submit confirmations ignore the
    quota and are only cut at a fixed ceiling.
    """
    quota = {**DEFAULT_QUOTA, **(quota or {})}
    max_chars = quota["max_chars"]
    max_matches = quota["max_matches"]

    if tool_name in SUBMIT_TOOLS:
        return _serialize(result)[:SUBMIT_RESULT_CEILING]

    if tool_name in SEARCH_TOOLS:
        return _limit_search(result, max_matches, max_chars)

    if tool_name in FILE_READ_TOOLS:
        return _limit_file(result, max_chars)

    return _truncate_chars(_serialize(result), max_chars)
