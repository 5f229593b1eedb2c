"""Public library API for harvest: Session class and Result dataclass."""

import copy
import logging
from dataclasses import dataclass

from . import fmt
from .context import DEFAULT_TOKEN_BUDGET, ContextWindow, submit_titles
from .phase import Budget, PhaseRouter
from .report import AgentError, ReportCollector
from .tools import SUBMIT_TOOLS, ToolRegistry


@dataclass
class Result:
    """Result of a session run."""

    answer: str | None
    exhausted: bool
    messages: list[dict]
    compacted_submits: set[str]
    report: dict | None


class Session:
    """Programmatic interface to the harvest agent loop.

    Stores configuration as plain attributes. Each call to .run() starts from
    a fresh conversation buffer and phase router; the provider and registry
    are shared between runs.
    """

    def __init__(
        self,
        *,
        provider: str = "gemini",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 300.0,
        max_retries: int | None = None,
        token_budget: int = DEFAULT_TOKEN_BUDGET,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
        budget: Budget | None = None,
        skill_only: bool = False,
        system_prompt: str | None = None,
        allowed_tools: list[str] | None = None,
        registry: ToolRegistry | None = None,
        tool_context=None,
        verbose: bool = False,
        logger: logging.Logger | None = None,
    ):
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.token_budget = token_budget
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.budget = budget or Budget()
        self.skill_only = skill_only
        self.system_prompt = system_prompt
        self.allowed_tools = allowed_tools
        self.registry = registry if registry is not None else ToolRegistry(logger=logger)
        self.tool_context = tool_context
        self.verbose = verbose
        self.logger = logger or logging.getLogger("harvest")

        self._adapter = None
        self.last_report: dict | None = None

    @property
    def adapter(self):
        """The backend adapter, built on first use."""
        if self._adapter is None:
            from .config import resolve_api_key
            from .llm import get_provider

            self._adapter = get_provider(
                self.provider,
                api_key=resolve_api_key(self.provider, self.api_key),
                model=self.model,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=self.max_retries,
                logger=self.logger.getChild(self.provider),
            )
            if self.verbose:
                fmt.init()
                fmt.init_logging(logging.INFO)
                fmt.model_info(f"{self._adapter.name}: {self._adapter.model}")
        return self._adapter

    def run(self, prompt: str, *, report: bool = False) -> Result:
        """Run one task to completion with fresh conversation state.

        With ``report=True`` the JSON report is returned on the Result and
        also kept in ``last_report``. When a backend error ends the run, the
        report is finalized with outcome "error" before the error propagates.
        """
        from .agent import run_agent_loop

        adapter = self.adapter
        context = ContextWindow(self.token_budget, logger=self.logger.getChild("context"))
        context.append_user_message(prompt)
        router = PhaseRouter(
            self.budget,
            is_skill_only=self.skill_only,
            logger=self.logger.getChild("phase"),
        )

        collector = ReportCollector() if report else None
        self.last_report = None

        def finalize(outcome, answer, error_message=None):
            submits = list(
                dict.fromkeys(
                    [
                        *sorted(context.get_compacted_submits()),
                        *submit_titles(context.to_messages()),
                    ]
                )
            )
            self.last_report = collector.finalize(
                task=prompt,
                model=adapter.model,
                provider=adapter.name,
                settings={
                    "token_budget": self.token_budget,
                    "max_iterations": self.budget.max_iterations,
                    "max_output_tokens": self.max_output_tokens,
                    "temperature": self.temperature,
                    "skill_only": self.skill_only,
                },
                outcome=outcome,
                answer=answer,
                turns=router.total_iterations,
                submits=submits,
                context_tokens=context.count_tokens(),
                error_message=error_message,
            )
            return self.last_report

        try:
            answer, exhausted = run_agent_loop(
                context,
                router,
                adapter,
                self.registry,
                system_prompt=self.system_prompt,
                tool_context=self.tool_context,
                allowed_tools=self.allowed_tools,
                submit_tools=SUBMIT_TOOLS,
                max_tokens=self.max_output_tokens,
                temperature=self.temperature,
                verbose=self.verbose,
                report=collector,
            )
        except AgentError as e:
            if self.verbose:
                fmt.error(str(e))
            if collector:
                finalize("error", None, error_message=str(e))
            raise

        report_dict = None
        if collector:
            report_dict = finalize("exhausted" if exhausted else "success", answer)

        return Result(
            answer=answer,
            exhausted=exhausted,
            messages=copy.deepcopy(context.to_messages()),
            compacted_submits=context.get_compacted_submits(),
            report=report_dict,
        )
