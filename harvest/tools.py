"""Tool catalog: registration, schema export, parameter normalization, execution."""

import logging
import re
import time
from typing import Any, Callable

from .report import ToolNotFoundError

# Tools whose successful call records a finished piece of work.
SUBMIT_TOOLS = frozenset({"submit_candidate", "submit_with_check"})

# Synonyms backends emit for the same logical parameter, keyed by the
# lower-cased incoming name. Applied only when the target is declared.
PARAM_ALIASES: dict[str, str] = {
    "file_path": "filePath",
    "filepath": "filePath",
    "path": "filePath",
    "file": "filePath",
    "filename": "filePath",
    "file_name": "filePath",
    "start_line": "startLine",
    "startline": "startLine",
    "end_line": "endLine",
    "endline": "endLine",
    "max_lines": "maxLines",
    "maxlines": "maxLines",
    "query": "pattern",
    "keyword": "pattern",
    "search": "pattern",
    "regex": "pattern",
    "class_name": "className",
    "classname": "className",
    "protocol_name": "protocolName",
    "protocolname": "protocolName",
    "max_results": "maxResults",
    "limit": "maxResults",
}

_SNAKE_RE = re.compile(r"_+([a-zA-Z0-9])")

Handler = Callable[[dict, Any], Any]


def snake_to_camel(name: str) -> str:
    """Convert ``file_path`` to ``filePath``. Leading underscores are kept."""
    stripped = name.lstrip("_")
    prefix = name[: len(name) - len(stripped)]
    return prefix + _SNAKE_RE.sub(lambda m: m.group(1).upper(), stripped)


class ToolRegistry:
    """Catalog of callable tools exposed to the agent.

    Each entry holds a public schema (name, description, JSON-schema
    parameters) and a handler called as ``handler(params, context)``.
    Registering an existing name replaces it, so tests can swap handlers in.
    """

    def __init__(self, logger: logging.Logger | None = None):
        self._tools: dict[str, dict] = {}
        self._logger = logger or logging.getLogger(__name__)
        self._stats = {"total_calls": 0, "succeeded": 0, "failed": 0}

    def register(
        self,
        name: str | dict | None = None,
        description: str = "",
        parameters: dict | None = None,
        handler: Handler | None = None,
    ) -> None:
        """Register a tool. Accepts keyword arguments or a single definition dict."""
        if isinstance(name, dict):
            definition = name
            name = definition.get("name")
            description = definition.get("description", "")
            parameters = definition.get("parameters")
            handler = definition.get("handler")

        if not name:
            raise ValueError("tool definition is missing a name")
        if handler is None or not callable(handler):
            raise ValueError(f"tool {name!r} is missing a handler")

        if name in self._tools:
            self._logger.warning("tool %r already registered, overwriting", name)

        self._tools[name] = {
            "name": name,
            "description": description or "",
            "parameters": parameters or {"type": "object", "properties": {}},
            "handler": handler,
        }
        self._logger.debug("registered tool %s", name)

    def unregister(self, name: str) -> None:
        if self._tools.pop(name, None) is None:
            self._logger.warning("tool %r not found", name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def get_tool_schemas(self, allowed_tools=None) -> list[dict]:
        """Return public schemas, optionally limited to an allow-list of names."""
        allowed = set(allowed_tools) if allowed_tools is not None else None
        schemas = []
        for tool in self._tools.values():
            if allowed is not None and tool["name"] not in allowed:
                continue
            schemas.append(
                {
                    "name": tool["name"],
                    "description": tool["description"],
                    "parameters": tool["parameters"],
                }
            )
        return schemas

    def normalize_params(self, name: str, raw_params: dict | None) -> dict:
        """Map caller-supplied parameter names onto the declared schema names.

        Order per key: exact match, snake_case to camelCase, alias table,
        otherwise the key is kept as-is. A rewritten key never clobbers a
        value the caller already supplied under the canonical name.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(f"tool not found: {name!r}")
        if not raw_params:
            return {}

        declared = set((tool["parameters"] or {}).get("properties", {}) or {})
        normalized: dict = {}
        for key, value in raw_params.items():
            if key in declared:
                normalized[key] = value
                continue

            target = None
            camel = snake_to_camel(key)
            if camel in declared:
                target = camel
            else:
                alias = PARAM_ALIASES.get(key.lower())
                if alias is not None and alias in declared:
                    target = alias

            if target is None or target in raw_params:
                normalized.setdefault(key, value)
            else:
                normalized[target] = value
        return normalized

    def execute(self, name: str, raw_params: dict | None, context: Any = None):
        """Run a tool and return its result.

        Handler exceptions are converted to ``{"error": message}`` so one
        failing tool cannot abort the agent loop. An unknown name raises
        ToolNotFoundError.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(f"tool not found: {name!r}")

        params = self.normalize_params(name, raw_params)
        self._stats["total_calls"] += 1
        t0 = time.monotonic()
        try:
            result = tool["handler"](params, context if context is not None else {})
        except Exception as e:
            self._stats["failed"] += 1
            self._logger.error("tool %r failed: %s", name, e)
            return {"error": str(e) or type(e).__name__}

        self._stats["succeeded"] += 1
        self._logger.debug(
            "tool %r completed in %.0fms", name, (time.monotonic() - t0) * 1000
        )
        return result

    def stats(self) -> dict:
        total = self._stats["total_calls"]
        return {
            **self._stats,
            "registered": len(self._tools),
            "success_rate": (self._stats["succeeded"] / total) if total else 0.0,
        }


def is_error_result(result) -> bool:
    """True for the inline error shape produced by ToolRegistry.execute."""
    return isinstance(result, dict) and set(result) == {"error"}
