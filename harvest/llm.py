"""Backend-independent LLM adapter contract and shared wire helpers.

Every adapter takes the same internal conversation (see context.py) and the
same tool schemas, translates them into one backend's request shape, posts it
over HTTPS and parses the reply into a ChatResult. The agent loop only ever
talks to ProviderAdapter.
"""

import copy
import json
import logging
import re
import time
import urllib.error
import urllib.request
import uuid
from dataclasses import dataclass

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from .report import ConfigError, ProviderError, ProviderHTTPError, ProviderTimeoutError

logger = logging.getLogger(__name__)

TOOL_CHOICES = ("auto", "required", "none")

DEFAULT_TIMEOUT = 300.0
MAX_RETRY_DELAY = 60.0
MAX_ERROR_DETAIL = 500

_RATE_LIMIT_RE = re.compile(
    r"429|rate.?limit|quota|resource_exhausted|too many requests", re.IGNORECASE
)


@dataclass
class ChatResult:
    """Unified reply from any backend."""

    text: str | None
    function_calls: list[dict] | None
    usage: dict | None


def make_usage(input_tokens, output_tokens, total_tokens=None) -> dict | None:
    if input_tokens is None and output_tokens is None and total_tokens is None:
        return None
    input_tokens = input_tokens or 0
    output_tokens = output_tokens or 0
    if total_tokens is None:
        total_tokens = input_tokens + output_tokens
    return {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": total_tokens,
    }


def synthesize_call_id(prefix: str = "call") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:24]}"


def parse_arguments(raw) -> dict:
    """Decode tool-call arguments; anything that is not a JSON object becomes {}."""
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("discarding malformed tool arguments: %.200r", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _infer_type(node: dict) -> str:
    if "properties" in node:
        return "object"
    if "items" in node:
        return "array"
    return "string"


def sanitize_schema(schema: dict | None, allowed_keys: frozenset | None = None) -> dict:
    """Return a cleaned copy of a JSON-schema parameters object.

    Every property ends up with a ``type`` (``string`` when nothing better can
    be inferred). With ``allowed_keys`` set, keywords outside it are stripped,
    list-valued types collapse to one type plus ``nullable``, enum values
    become strings and ``required`` only names declared properties.
    """
    root = copy.deepcopy(schema) if schema else {}
    root.setdefault("type", "object")
    root.setdefault("properties", {})
    return _sanitize_node(root, allowed_keys)


def _sanitize_node(node, allowed_keys):
    if not isinstance(node, dict):
        return {"type": "string"}

    if allowed_keys is not None:
        node = {k: v for k, v in node.items() if k in allowed_keys}
        node_type = node.get("type")
        if isinstance(node_type, list):
            non_null = [t for t in node_type if t != "null"]
            node["type"] = non_null[0] if non_null else "string"
            if len(non_null) < len(node_type) and "nullable" in allowed_keys:
                node["nullable"] = True
        if "enum" in node:
            node["enum"] = [str(v) for v in node["enum"]]
            node["type"] = "string"

    if not node.get("type"):
        node["type"] = _infer_type(node)

    props = node.get("properties")
    if isinstance(props, dict):
        node["properties"] = {
            name: _sanitize_node(prop, allowed_keys) for name, prop in props.items()
        }
        if allowed_keys is not None and "required" in node:
            node["required"] = [r for r in node["required"] if r in node["properties"]]
            if not node["required"]:
                del node["required"]

    if "items" in node:
        node["items"] = _sanitize_node(node["items"], allowed_keys)
    return node


def merge_consecutive(entries: list[dict], role: str, blocks: list, key: str) -> None:
    """Append ``blocks`` under ``role``, extending the last entry if it has the same role.

    Used by backends that require user/assistant turns to strictly alternate.
    """
    if not blocks:
        return
    if entries and entries[-1]["role"] == role:
        entries[-1][key].extend(blocks)
    else:
        entries.append({"role": role, key: list(blocks)})


def _error_detail(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace") if raw else ""
    try:
        data = json.loads(text)
    except ValueError:
        return text[:MAX_ERROR_DETAIL]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])[:MAX_ERROR_DETAIL]
        if isinstance(err, str):
            return err[:MAX_ERROR_DETAIL]
    return text[:MAX_ERROR_DETAIL]


def _retry_after(headers) -> float | None:
    value = headers.get("Retry-After") if headers is not None else None
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def post_json(url: str, body: dict, headers: dict | None = None, timeout: float = DEFAULT_TIMEOUT) -> dict:
    """POST ``body`` as JSON and return the decoded object.

    Non-2xx responses raise ProviderHTTPError, an expired timeout raises
    ProviderTimeoutError. An empty or non-object body decodes to ``{}``.
    """
    req = urllib.request.Request(
        url,
        data=json.dumps(body).encode(),
        headers={"Content-Type": "application/json", **(headers or {})},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read()
    except urllib.error.HTTPError as e:
        raw = e.read() if e.fp is not None else b""
        err = ProviderHTTPError(e.code, _error_detail(raw) or str(e.reason))
        err.retry_after = _retry_after(e.headers)
        raise err from e
    except TimeoutError as e:
        raise ProviderTimeoutError(f"request timed out after {timeout}s") from e
    except urllib.error.URLError as e:
        if isinstance(e.reason, TimeoutError):
            raise ProviderTimeoutError(f"request timed out after {timeout}s") from e
        raise ProviderError(f"request failed: {e.reason}") from e

    if not raw or not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("backend returned a non-JSON body (%d bytes)", len(raw))
        return {}
    return data if isinstance(data, dict) else {}


def is_retryable_error(err: BaseException) -> bool:
    """Rate limits, server errors and timeouts are transient; nothing else is."""
    if not isinstance(err, ProviderError):
        return False
    if isinstance(err, ProviderTimeoutError):
        return True
    if isinstance(err, ProviderHTTPError):
        return err.status == 429 or err.status >= 500 or bool(_RATE_LIMIT_RE.search(err.body))
    return bool(_RATE_LIMIT_RE.search(str(err)))


def retry_wait(base_delay: float, max_delay: float = MAX_RETRY_DELAY):
    """Full-jitter exponential wait; a Retry-After header sets the floor."""
    jitter = wait_random_exponential(multiplier=base_delay, max=max_delay)

    def wait(retry_state: RetryCallState) -> float:
        delay = jitter(retry_state)
        retry_after = getattr(retry_state.outcome.exception(), "retry_after", None)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay

    return wait


def with_retry(fn, *, max_retries: int, base_delay: float, log=None, sleep=None):
    """Call ``fn()`` and retry transient ProviderErrors up to ``max_retries`` times."""
    log = log or logger

    def before_sleep(retry_state: RetryCallState) -> None:
        log.warning(
            "transient backend error (attempt %d/%d), retrying in %.1fs: %s",
            retry_state.attempt_number,
            max_retries,
            retry_state.next_action.sleep,
            retry_state.outcome.exception(),
        )

    retrying = Retrying(
        reraise=True,
        stop=stop_after_attempt(max_retries + 1),
        wait=retry_wait(base_delay),
        retry=retry_if_exception(is_retryable_error),
        before_sleep=before_sleep,
        sleep=sleep or time.sleep,
    )
    return retrying(fn)


class ProviderAdapter:
    """Base class for one LLM backend.

    Subclasses provide the endpoint, headers, request translation and
    response parsing; the base class owns the call sequence, timeout and
    retry policy.
    """

    name = "base"
    default_model: str | None = None
    default_base_url: str | None = None
    retries_enabled = True
    default_max_retries = 3
    default_retry_delay = 2.0
    default_temperature = 0.3
    supports_embedding = False

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
        logger: logging.Logger | None = None,
    ):
        self.api_key = api_key
        self.model = model or self.default_model
        self.base_url = (base_url or self.default_base_url or "").rstrip("/")
        self.timeout = timeout
        self.max_retries = (
            self.default_max_retries if max_retries is None else max_retries
        )
        self.retry_base_delay = (
            self.default_retry_delay if retry_base_delay is None else retry_base_delay
        )
        self._logger = logger or logging.getLogger(f"{__name__}.{self.name}")
        if not self.model:
            raise ConfigError(f"{self.name}: no model configured")
        if not self.base_url:
            raise ConfigError(f"{self.name}: no base URL configured")

    # -- Public contract -------------------------------------------------------

    def chat(
        self,
        prompt: str,
        *,
        history: list[dict] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        system_prompt: str | None = None,
    ) -> str:
        """Plain completion without tools. ``history`` holds prior user/assistant turns."""
        messages = [
            {
                "role": "assistant" if m.get("role") == "assistant" else "user",
                "content": m.get("content") or "",
            }
            for m in (history or [])
        ]
        messages.append({"role": "user", "content": prompt})
        result = self.chat_with_tools(
            prompt,
            messages=messages,
            tool_schemas=None,
            tool_choice="none",
            system_prompt=system_prompt,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return (result.text or "").strip()

    def chat_with_tools(
        self,
        prompt: str | None = None,
        *,
        messages: list[dict] | None = None,
        tool_schemas: list[dict] | None = None,
        tool_choice: str = "auto",
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ChatResult:
        """Send the conversation with tool declarations and parse the reply.

        When ``messages`` is empty, ``prompt`` is sent as the only user turn.
        """
        if tool_choice not in TOOL_CHOICES:
            raise ValueError(f"tool_choice must be one of {TOOL_CHOICES}, got {tool_choice!r}")
        if not messages:
            if not prompt:
                raise ValueError("chat_with_tools needs a prompt or messages")
            messages = [{"role": "user", "content": prompt}]

        body = self._build_body(
            messages,
            tool_schemas or [],
            tool_choice,
            system_prompt,
            self.default_temperature if temperature is None else temperature,
            max_tokens,
        )
        data = self._call(self._endpoint(), body)
        return self._parse_response(data)

    def embed(self, texts):
        """Embed one string or a list of strings. See ``supports_embedding``."""
        raise ProviderError(f"{self.name} does not provide an embeddings endpoint")

    # -- Plumbing --------------------------------------------------------------

    def _call(self, url: str, body: dict) -> dict:
        self._logger.debug("POST %s (model=%s)", url, self.model)

        def attempt():
            return post_json(url, body, self._headers(), self.timeout)

        if self.retries_enabled and self.max_retries > 0:
            return with_retry(
                attempt,
                max_retries=self.max_retries,
                base_delay=self.retry_base_delay,
                log=self._logger,
            )
        return attempt()

    def _endpoint(self) -> str:
        raise NotImplementedError

    def _headers(self) -> dict:
        raise NotImplementedError

    def _build_body(self, messages, tool_schemas, tool_choice, system_prompt, temperature, max_tokens) -> dict:
        raise NotImplementedError

    def _parse_response(self, data: dict) -> ChatResult:
        raise NotImplementedError


def collect_system_text(messages: list[dict], system_prompt: str | None) -> str | None:
    """Join the explicit system prompt with any system-role messages."""
    parts = [system_prompt] if system_prompt else []
    parts.extend(m["content"] for m in messages if m.get("role") == "system" and m.get("content"))
    return "\n\n".join(parts) if parts else None


def get_provider(name: str, **kwargs) -> ProviderAdapter:
    """Build the adapter registered under ``name``. No fallback between backends."""
    from .claude import ClaudeAdapter
    from .gemini import GeminiAdapter
    from .openai_compat import OpenAICompatAdapter

    key = name.lower()
    if key in ("google", "gemini"):
        return GeminiAdapter(**kwargs)
    if key in ("claude", "anthropic"):
        return ClaudeAdapter(**kwargs)
    if key == "openai":
        return OpenAICompatAdapter(**kwargs)
    if key == "deepseek":
        kwargs["base_url"] = kwargs.get("base_url") or "https://api.deepseek.com/v1"
        kwargs["model"] = kwargs.get("model") or "deepseek-chat"
        return OpenAICompatAdapter(**kwargs)
    if key == "ollama":
        kwargs["base_url"] = kwargs.get("base_url") or "http://localhost:11434/v1"
        return OpenAICompatAdapter(**kwargs)
    raise ConfigError(f"unknown provider {name!r}")
