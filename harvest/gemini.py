"""Gemini REST adapter (generateContent).

Gemini requires user and model turns to strictly alternate, so consecutive
messages of the same role are merged into one entry and the tool results of a
round travel together as ``functionResponse`` parts of a single user entry.
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
from .report import ProviderError

# JSON-schema keywords the function-declaration dialect accepts.
GEMINI_SCHEMA_KEYS = frozenset(
    {
        "type",
        "format",
        "description",
        "nullable",
        "enum",
        "properties",
        "required",
        "items",
        "minimum",
        "maximum",
        "minItems",
        "maxItems",
    }
)

TOOL_CHOICE_MODES = {"auto": "AUTO", "required": "ANY", "none": "NONE"}

EMBEDDING_MODEL = "gemini-embedding-001"
EMBEDDING_DIMENSIONS = 768

_ERROR_FINISH_REASONS = frozenset(
    {"SAFETY", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII", "MALFORMED_FUNCTION_CALL", "OTHER"}
)


def _response_payload(content) -> dict:
    """functionResponse.response must be an object."""
    if isinstance(content, str):
        try:
            parsed = json.loads(content)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            return parsed
    return {"content": content if content is not None else ""}


def convert_messages(messages: list[dict]) -> list[dict]:
    """Internal conversation -> Gemini ``contents``. System messages are skipped."""
    contents: list[dict] = []
    for m in messages:
        role = m.get("role")
        if role == "user":
            if m.get("content"):
                merge_consecutive(contents, "user", [{"text": m["content"]}], "parts")
        elif role == "assistant":
            parts = []
            if m.get("content"):
                parts.append({"text": m["content"]})
            for tc in m.get("tool_calls") or []:
                parts.append({"functionCall": {"name": tc["name"], "args": tc.get("args") or {}}})
            merge_consecutive(contents, "model", parts, "parts")
        elif role == "tool":
            part = {
                "functionResponse": {
                    "name": m.get("name") or "",
                    "response": _response_payload(m.get("content")),
                }
            }
            merge_consecutive(contents, "user", [part], "parts")
    return contents


def convert_tools(tool_schemas: list[dict]) -> list[dict]:
    declarations = []
    for schema in tool_schemas:
        decl = {"name": schema["name"], "description": schema.get("description", "")}
        params = sanitize_schema(schema.get("parameters"), GEMINI_SCHEMA_KEYS)
        # An object without properties is rejected, so omit it entirely.
        if params.get("properties"):
            decl["parameters"] = params
        declarations.append(decl)
    return [{"functionDeclarations": declarations}]


class GeminiAdapter(ProviderAdapter):
    name = "gemini"
    default_model = "gemini-2.0-flash"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    default_max_retries = 4
    default_retry_delay = 5.0
    default_temperature = 0.7
    supports_embedding = True

    def _endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    def _headers(self) -> dict:
        return {"x-goog-api-key": self.api_key or ""}

    def _build_body(self, messages, tool_schemas, tool_choice, system_prompt, temperature, max_tokens) -> dict:
        body: dict = {"contents": convert_messages(messages)}

        system_text = collect_system_text(messages, system_prompt)
        if system_text:
            body["systemInstruction"] = {"parts": [{"text": system_text}]}

        if tool_schemas:
            body["tools"] = convert_tools(tool_schemas)
            body["toolConfig"] = {
                "functionCallingConfig": {"mode": TOOL_CHOICE_MODES[tool_choice]}
            }

        generation = {"temperature": temperature}
        if max_tokens:
            generation["maxOutputTokens"] = max_tokens
        body["generationConfig"] = generation
        return body

    def _parse_response(self, data: dict) -> ChatResult:
        meta = data.get("usageMetadata") or {}
        usage = make_usage(
            meta.get("promptTokenCount"),
            meta.get("candidatesTokenCount"),
            meta.get("totalTokenCount"),
        )

        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback") or {}
            if feedback.get("blockReason"):
                self._logger.warning("prompt blocked: %s", feedback["blockReason"])
            return ChatResult(text=None, function_calls=None, usage=usage)

        candidate = candidates[0]
        finish = candidate.get("finishReason")
        if finish in _ERROR_FINISH_REASONS:
            self._logger.warning("Gemini finish reason: %s", finish)

        texts = []
        calls = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if part.get("thought"):
                continue
            if "functionCall" in part:
                fc = part["functionCall"] or {}
                calls.append(
                    {
                        "id": fc.get("id") or synthesize_call_id("gemini"),
                        "name": fc.get("name", ""),
                        "args": parse_arguments(fc.get("args")),
                    }
                )
            elif part.get("text"):
                texts.append(part["text"])

        return ChatResult(
            text="".join(texts) or None,
            function_calls=calls or None,
            usage=usage,
        )

    def embed(self, texts):
        """Return one 768-dim vector for a string, or a list of vectors for a list."""
        single = isinstance(texts, str)
        items = [texts] if single else list(texts)
        if not items:
            return []
        model = f"models/{EMBEDDING_MODEL}"

        def request(text):
            return {
                "model": model,
                "content": {"parts": [{"text": text}]},
                "outputDimensionality": EMBEDDING_DIMENSIONS,
            }

        if single:
            data = self._call(
                f"{self.base_url}/{model}:embedContent", request(items[0])
            )
            values = (data.get("embedding") or {}).get("values")
            if values is None:
                raise ProviderError("embedding response carried no values")
            return values

        data = self._call(
            f"{self.base_url}/{model}:batchEmbedContents",
            {"requests": [request(t) for t in items]},
        )
        vectors = [e.get("values") for e in data.get("embeddings") or []]
        if len(vectors) != len(items) or any(v is None for v in vectors):
            raise ProviderError(
                f"expected {len(items)} embeddings, got {len(vectors)}"
            )
        return vectors
