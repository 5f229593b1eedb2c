"""Adapter for OpenAI-compatible chat-completions endpoints (OpenAI, DeepSeek, Ollama)."""

import json

from .llm import (
    ChatResult,
    ProviderAdapter,
    make_usage,
    parse_arguments,
    sanitize_schema,
    synthesize_call_id,
)
from .report import ProviderError

EMBEDDING_MODEL = "text-embedding-3-small"

# Hosts that speak chat completions but have no compatible embeddings endpoint.
_NO_EMBEDDING_HOSTS = ("deepseek", "ollama", "localhost:11434")


def convert_messages(messages: list[dict], system_prompt: str | None) -> list[dict]:
    out: list[dict] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})
    for m in messages:
        role = m.get("role")
        if role in ("user", "system"):
            out.append({"role": role, "content": m.get("content") or ""})
        elif role == "assistant":
            msg = {"role": "assistant", "content": m.get("content")}
            if m.get("tool_calls"):
                msg["tool_calls"] = [
                    {
                        "id": tc["id"],
                        "type": "function",
                        "function": {
                            "name": tc["name"],
                            "arguments": json.dumps(tc.get("args") or {}, ensure_ascii=False),
                        },
                    }
                    for tc in m["tool_calls"]
                ]
            elif msg["content"] is None:
                msg["content"] = ""
            out.append(msg)
        elif role == "tool":
            out.append(
                {
                    "role": "tool",
                    "tool_call_id": m["tool_call_id"],
                    "content": m.get("content") or "",
                }
            )
    return out


class OpenAICompatAdapter(ProviderAdapter):
    name = "openai"
    default_model = "gpt-4o-mini"
    default_base_url = "https://api.openai.com/v1"
    default_max_retries = 2
    default_retry_delay = 2.0
    default_temperature = 0.3

    def __init__(self, *, embedding_model: str = EMBEDDING_MODEL, **kwargs):
        super().__init__(**kwargs)
        self.embedding_model = embedding_model

    @property
    def supports_embedding(self) -> bool:
        base = self.base_url.lower()
        return not any(host in base for host in _NO_EMBEDDING_HOSTS)

    def _endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> dict:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    def _build_body(self, messages, tool_schemas, tool_choice, system_prompt, temperature, max_tokens) -> dict:
        # Reasoning "nano" models only accept the default temperature.
        if "nano" in self.model.lower():
            temperature = 1
        body: dict = {
            "model": self.model,
            "messages": convert_messages(messages, system_prompt),
            "temperature": temperature,
        }
        if max_tokens:
            body["max_tokens"] = max_tokens
        if tool_schemas:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": s["name"],
                        "description": s.get("description", ""),
                        "parameters": sanitize_schema(s.get("parameters")),
                    },
                }
                for s in tool_schemas
            ]
            body["tool_choice"] = tool_choice
        return body

    def _parse_response(self, data: dict) -> ChatResult:
        raw_usage = data.get("usage") or {}
        usage = make_usage(
            raw_usage.get("prompt_tokens"),
            raw_usage.get("completion_tokens"),
            raw_usage.get("total_tokens"),
        )

        choices = data.get("choices") or []
        if not choices:
            return ChatResult(text=None, function_calls=None, usage=usage)
        message = choices[0].get("message") or {}

        calls = []
        for tc in message.get("tool_calls") or []:
            fn = tc.get("function") or {}
            calls.append(
                {
                    "id": tc.get("id") or synthesize_call_id(),
                    "name": fn.get("name", ""),
                    "args": parse_arguments(fn.get("arguments")),
                }
            )

        return ChatResult(
            text=message.get("content") or None,
            function_calls=calls or None,
            usage=usage,
        )

    def embed(self, texts):
        if not self.supports_embedding:
            raise ProviderError(f"{self.base_url} does not provide an embeddings endpoint")
        single = isinstance(texts, str)
        items = [texts] if single else list(texts)
        if not items:
            return []
        data = self._call(
            f"{self.base_url}/embeddings",
            {"model": self.embedding_model, "input": items},
        )
        rows = sorted(data.get("data") or [], key=lambda r: r.get("index", 0))
        vectors = [r.get("embedding") for r in rows]
        if len(vectors) != len(items) or any(v is None for v in vectors):
            raise ProviderError(f"expected {len(items)} embeddings, got {len(vectors)}")
        return vectors[0] if single else vectors
