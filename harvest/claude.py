"""Anthropic Messages API adapter.

The system prompt travels in the top-level ``system`` field, tool calls and
results are ``tool_use`` / ``tool_result`` content blocks, and consecutive
same-role messages are merged into one.

Retries are disabled on purpose. A failed Messages call is not safe to repeat
unchanged: overload and rate-limit errors here usually clear only with a
smaller request. Every failure reaches the caller on the first error, and the
agent loop decides whether to reset the context to the prompt and try again.
"""

import json

from .llm import (
    ChatResult,
    ProviderAdapter,
    collect_system_text,
    make_usage,
    merge_consecutive,
    parse_arguments,
    sanitize_schema,
    synthesize_call_id,
)

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096


def _flatten_call(tc: dict) -> str:
    args = json.dumps(tc.get("args") or {}, ensure_ascii=False)
    return f"[called {tc['name']}({args})]"


def convert_messages(messages: list[dict], with_tools: bool = True) -> list[dict]:
    """Internal conversation -> Messages API ``messages``.

    With ``with_tools`` false, tool calls and results are rendered as text
    blocks, since tool blocks are only valid when tools are declared.
    """
    out: list[dict] = []
    for m in messages:
        role = m.get("role")
        if role == "user":
            if m.get("content"):
                merge_consecutive(out, "user", [{"type": "text", "text": m["content"]}], "content")
        elif role == "assistant":
            blocks = []
            if m.get("content"):
                blocks.append({"type": "text", "text": m["content"]})
            for tc in m.get("tool_calls") or []:
                if with_tools:
                    blocks.append(
                        {
                            "type": "tool_use",
                            "id": tc["id"],
                            "name": tc["name"],
                            "input": tc.get("args") or {},
                        }
                    )
                else:
                    blocks.append({"type": "text", "text": _flatten_call(tc)})
            merge_consecutive(out, "assistant", blocks, "content")
        elif role == "tool":
            content = m.get("content") or ""
            if with_tools:
                block = {
                    "type": "tool_result",
                    "tool_use_id": m["tool_call_id"],
                    "content": content,
                }
            else:
                block = {"type": "text", "text": f"[{m.get('name') or 'tool'} result]\n{content}"}
            merge_consecutive(out, "user", [block], "content")
    return out


class ClaudeAdapter(ProviderAdapter):
    name = "claude"
    default_model = "claude-sonnet-4-20250514"
    default_base_url = "https://api.anthropic.com/v1"
    retries_enabled = False
    default_max_retries = 0
    default_temperature = 0.3
    supports_embedding = False

    def _endpoint(self) -> str:
        return f"{self.base_url}/messages"

    def _headers(self) -> dict:
        return {
            "x-api-key": self.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _build_body(self, messages, tool_schemas, tool_choice, system_prompt, temperature, max_tokens) -> dict:
        # "none" has no native value: omit tools and tool_choice altogether.
        with_tools = bool(tool_schemas) and tool_choice != "none"
        body: dict = {
            "model": self.model,
            "max_tokens": max_tokens or DEFAULT_MAX_TOKENS,
            "temperature": temperature,
            "messages": convert_messages(messages, with_tools=with_tools),
        }
        system_text = collect_system_text(messages, system_prompt)
        if system_text:
            body["system"] = system_text
        if with_tools:
            body["tools"] = [
                {
                    "name": s["name"],
                    "description": s.get("description", ""),
                    "input_schema": sanitize_schema(s.get("parameters")),
                }
                for s in tool_schemas
            ]
            body["tool_choice"] = {"type": "any" if tool_choice == "required" else "auto"}
        return body

    def _parse_response(self, data: dict) -> ChatResult:
        raw_usage = data.get("usage") or {}
        usage = make_usage(raw_usage.get("input_tokens"), raw_usage.get("output_tokens"))

        texts = []
        calls = []
        for block in data.get("content") or []:
            kind = block.get("type")
            if kind == "text" and block.get("text"):
                texts.append(block["text"])
            elif kind == "tool_use":
                calls.append(
                    {
                        "id": block.get("id") or synthesize_call_id("toolu"),
                        "name": block.get("name", ""),
                        "args": parse_arguments(block.get("input")),
                    }
                )

        if data.get("stop_reason") == "max_tokens":
            self._logger.warning("response cut at max_tokens")

        return ChatResult(
            text="".join(texts) or None,
            function_calls=calls or None,
            usage=usage,
        )
