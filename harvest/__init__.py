"""harvest: a phase-routed, tool-calling agent core for capturing code knowledge."""

from .context import CompactionResult, ContextWindow
from .limiter import limit_tool_result
from .llm import ChatResult, ProviderAdapter, get_provider
from .phase import ANALYST_BUDGET, PRODUCER_BUDGET, Budget, PhaseRouter, PhaseUpdate, RoundResult
from .report import (
    AgentError,
    ConfigError,
    ProviderError,
    ProviderHTTPError,
    ProviderTimeoutError,
    ToolNotFoundError,
)
from .session import Result, Session
from .tools import ToolRegistry

__all__ = [
    "ANALYST_BUDGET",
    "PRODUCER_BUDGET",
    "AgentError",
    "Budget",
    "ChatResult",
    "CompactionResult",
    "ConfigError",
    "ContextWindow",
    "PhaseRouter",
    "PhaseUpdate",
    "ProviderAdapter",
    "ProviderError",
    "ProviderHTTPError",
    "ProviderTimeoutError",
    "Result",
    "RoundResult",
    "Session",
    "ToolNotFoundError",
    "ToolRegistry",
    "get_provider",
    "limit_tool_result",
]
