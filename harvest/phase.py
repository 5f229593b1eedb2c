"""Phase state machine for the explore / produce / summarize agent loop.

Phase flow:

    candidate sessions:   EXPLORE -> PRODUCE -> SUMMARIZE
    skill-only sessions:  EXPLORE -> SUMMARIZE

Transitions only move forward. The router owns every counter the loop needs to
decide when to stop searching, when to stop submitting and when to exit.
"""

import logging
from dataclasses import dataclass

EXPLORE = "EXPLORE"
PRODUCE = "PRODUCE"
SUMMARIZE = "SUMMARIZE"

PHASE_ORDER = (EXPLORE, PRODUCE, SUMMARIZE)

MAX_SUMMARIZE_ROUNDS = 2


@dataclass(frozen=True)
class Budget:
    max_iterations: int = 24
    search_budget: int = 10
    search_budget_grace: int = 6
    max_submits: int = 6
    soft_submit_limit: int = 4
    idle_rounds_to_exit: int = 2

    def __post_init__(self):
        for field_name, value in self.__dict__.items():
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValueError(f"budget.{field_name} must be a non-negative int, got {value!r}")


# Budget for sessions that only explore and report, with no submissions.
ANALYST_BUDGET = Budget(
    max_iterations=12,
    search_budget=10,
    search_budget_grace=6,
    max_submits=0,
    soft_submit_limit=0,
    idle_rounds_to_exit=2,
)

# Budget for sessions that turn an existing analysis into submissions.
PRODUCER_BUDGET = Budget(
    max_iterations=16,
    search_budget=4,
    search_budget_grace=3,
    max_submits=12,
    soft_submit_limit=10,
    idle_rounds_to_exit=3,
)


@dataclass
class RoundResult:
    """Summary of one model response, reported to PhaseRouter.update()."""

    function_calls: list | None = None
    submit_count: int = 0
    is_text_only: bool = False


@dataclass
class PhaseUpdate:
    transitioned: bool
    new_phase: str


class PhaseRouter:
    def __init__(
        self,
        budget: Budget,
        is_skill_only: bool = False,
        logger: logging.Logger | None = None,
    ):
        self._budget = budget
        self._is_skill_only = is_skill_only
        self._phase = EXPLORE
        self._phase_rounds = 0
        self._idle_rounds = 0
        self._total_iterations = 0
        self._total_submits = 0
        self._logger = logger or logging.getLogger(__name__)

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def budget(self) -> Budget:
        return self._budget

    @property
    def is_skill_only(self) -> bool:
        return self._is_skill_only

    @property
    def total_iterations(self) -> int:
        return self._total_iterations

    @property
    def total_submits(self) -> int:
        return self._total_submits

    @property
    def phase_rounds(self) -> int:
        return self._phase_rounds

    def tick(self) -> None:
        """Count a new round. Call once at the start of every round."""
        self._total_iterations += 1
        self._phase_rounds += 1

    def get_tool_choice(self) -> str:
        """Tool-choice mode for the next call: ``required``, ``auto`` or ``none``."""
        if self._phase == EXPLORE:
            # The final allotted search round may answer in text.
            if self._phase_rounds >= self._budget.search_budget:
                return "auto"
            return "required"
        if self._phase == PRODUCE:
            return "auto"
        return "none"

    def should_exit(self) -> bool:
        if self._total_iterations >= self._budget.max_iterations:
            return True
        return self._phase == SUMMARIZE and self._phase_rounds >= MAX_SUMMARIZE_ROUNDS

    def update(self, round_result: RoundResult) -> PhaseUpdate:
        """Advance the phase from the outcome of the round that just finished."""
        submit_count = round_result.submit_count or 0
        self._total_submits += submit_count

        if self._phase == EXPLORE:
            return self._update_explore(round_result, submit_count)
        if self._phase == PRODUCE:
            return self._update_produce(round_result, submit_count)
        return PhaseUpdate(False, self._phase)

    def _after_explore(self) -> str:
        return SUMMARIZE if self._is_skill_only else PRODUCE

    def _update_explore(self, round_result: RoundResult, submit_count: int) -> PhaseUpdate:
        if submit_count > 0:
            return self._transition_to(self._after_explore())

        if self._phase_rounds >= self._budget.search_budget:
            self._logger.info(
                "search budget exhausted (%d/%d) -> %s",
                self._phase_rounds,
                self._budget.search_budget,
                self._after_explore(),
            )
            return self._transition_to(self._after_explore())

        if round_result.is_text_only or not round_result.function_calls:
            return self._transition_to(self._after_explore())

        return PhaseUpdate(False, self._phase)

    def _update_produce(self, round_result: RoundResult, submit_count: int) -> PhaseUpdate:
        budget = self._budget
        if submit_count > 0:
            self._idle_rounds = 0
        else:
            self._idle_rounds += 1

        if budget.max_submits > 0 and self._total_submits >= budget.max_submits:
            self._logger.info(
                "hard submit cap reached (%d/%d) -> SUMMARIZE",
                self._total_submits,
                budget.max_submits,
            )
            return self._transition_to(SUMMARIZE)

        if self._total_submits > 0 and self._idle_rounds >= budget.idle_rounds_to_exit:
            self._logger.info("idle rounds (%d) -> SUMMARIZE", self._idle_rounds)
            return self._transition_to(SUMMARIZE)

        if round_result.is_text_only:
            if self._total_submits >= budget.soft_submit_limit:
                self._logger.info(
                    "text reply after %d submits (soft limit %d) -> SUMMARIZE",
                    self._total_submits,
                    budget.soft_submit_limit,
                )
                return self._transition_to(SUMMARIZE)
            self._logger.info(
                "text reply in PRODUCE, idle_rounds=%d total_submits=%d, continuing",
                self._idle_rounds,
                self._total_submits,
            )
            return PhaseUpdate(False, self._phase)

        if self._phase_rounds >= budget.search_budget_grace and self._total_submits == 0:
            self._logger.info(
                "PRODUCE grace exhausted (%d/%d rounds, 0 submits) -> SUMMARIZE",
                self._phase_rounds,
                budget.search_budget_grace,
            )
            return self._transition_to(SUMMARIZE)

        return PhaseUpdate(False, self._phase)

    def get_phase_hint(self) -> str | None:
        """Steering text to merge into the system prompt for the next call."""
        budget = self._budget
        if self._phase == EXPLORE:
            if self._phase_rounds >= budget.search_budget - 2:
                return (
                    f"Search budget almost exhausted ({self._phase_rounds}/"
                    f"{budget.search_budget}). Prepare to submit candidates or "
                    "write your summary."
                )
            return None

        if self._phase == PRODUCE:
            if self._total_submits == 0 and self._phase_rounds >= 1:
                return (
                    "Exploration is over and you have enough project context. "
                    "Call submit_candidate **now**. Do not keep searching."
                )
            if budget.soft_submit_limit > 0 and self._total_submits >= budget.soft_submit_limit:
                remaining = budget.max_submits - self._total_submits
                lines = [
                    f"{self._total_submits} candidates submitted "
                    f"(limit {budget.max_submits})."
                ]
                if remaining > 0:
                    lines.append(f"You may submit {remaining} more.")
                lines.append(
                    "Submit anything else worth recording, otherwise write the "
                    "dimensionDigest summary. List unhandled signals in its "
                    "remainingTasks field so the next run can resume them."
                )
                return " ".join(lines)
            return None

        return None

    def _transition_to(self, new_phase: str) -> PhaseUpdate:
        old_phase = self._phase
        if PHASE_ORDER.index(new_phase) <= PHASE_ORDER.index(old_phase):
            raise ValueError(f"phase cannot move from {old_phase} to {new_phase}")
        self._phase = new_phase
        self._phase_rounds = 0
        self._idle_rounds = 0
        self._logger.info(
            "%s -> %s (iter=%d, submits=%d)",
            old_phase,
            new_phase,
            self._total_iterations,
            self._total_submits,
        )
        return PhaseUpdate(True, new_phase)
