"""Tests for PhaseRouter and Budget."""

import logging

import pytest

from harvest.phase import (
    ANALYST_BUDGET,
    EXPLORE,
    PRODUCE,
    PRODUCER_BUDGET,
    SUMMARIZE,
    Budget,
    PhaseRouter,
    PhaseUpdate,
    RoundResult,
)

CALL = [{"id": "c", "name": "search_project_code", "args": {}}]


def _search_round():
    return RoundResult(function_calls=CALL)


def _submit_round(n=1):
    return RoundResult(function_calls=CALL * n, submit_count=n)


def _text_round():
    return RoundResult(is_text_only=True)


def _step(router, result):
    router.tick()
    return router.update(result)


def _into_produce(budget):
    router = PhaseRouter(budget)
    assert _step(router, _text_round()) == PhaseUpdate(True, PRODUCE)
    return router


class TestBudget:
    def test_defaults(self):
        b = Budget()
        assert b.max_iterations == 24
        assert b.search_budget == 10
        assert b.idle_rounds_to_exit == 2

    def test_presets(self):
        assert ANALYST_BUDGET.max_submits == 0
        assert ANALYST_BUDGET.max_iterations == 12
        assert PRODUCER_BUDGET.max_submits == 12
        assert PRODUCER_BUDGET.search_budget == 4

    def test_negative_rejected(self):
        with pytest.raises(ValueError, match="search_budget"):
            Budget(search_budget=-1)

    def test_bool_rejected(self):
        with pytest.raises(ValueError):
            Budget(max_submits=True)

    def test_float_rejected(self):
        with pytest.raises(ValueError):
            Budget(max_iterations=2.5)

    def test_frozen(self):
        with pytest.raises(AttributeError):
            Budget().max_iterations = 3


class TestInitialState:
    def test_starts_in_explore(self):
        router = PhaseRouter(Budget())
        assert router.phase == EXPLORE
        assert router.total_iterations == 0
        assert router.total_submits == 0
        assert router.phase_rounds == 0
        assert not router.should_exit()

    def test_tick_counts(self):
        router = PhaseRouter(Budget())
        router.tick()
        router.tick()
        assert router.total_iterations == 2
        assert router.phase_rounds == 2


class TestExplore:
    def test_search_budget_exhaustion(self):
        router = PhaseRouter(Budget(search_budget=10))
        for _ in range(9):
            assert _step(router, _search_round()) == PhaseUpdate(False, EXPLORE)
        assert _step(router, _search_round()) == PhaseUpdate(True, PRODUCE)
        router.tick()
        assert router.phase == PRODUCE
        assert router.phase_rounds == 1
        assert router.total_iterations == 11

    def test_submit_moves_on(self):
        router = PhaseRouter(Budget())
        assert _step(router, _submit_round()) == PhaseUpdate(True, PRODUCE)
        assert router.total_submits == 1

    def test_text_only_moves_on(self):
        router = PhaseRouter(Budget())
        assert _step(router, _text_round()) == PhaseUpdate(True, PRODUCE)

    def test_empty_round_moves_on(self):
        router = PhaseRouter(Budget())
        assert _step(router, RoundResult()) == PhaseUpdate(True, PRODUCE)

    def test_skill_only_goes_to_summarize(self):
        router = PhaseRouter(Budget(), is_skill_only=True)
        assert router.is_skill_only
        assert _step(router, _text_round()) == PhaseUpdate(True, SUMMARIZE)

    def test_tool_choice(self):
        router = PhaseRouter(Budget(search_budget=4))
        choices = []
        for _ in range(4):
            router.tick()
            assert router.phase == EXPLORE
            choices.append(router.get_tool_choice())
            router.update(_search_round())
        # only the final allotted search round may answer in text
        assert choices == ["required", "required", "required", "auto"]
        assert router.phase == PRODUCE

    def test_tool_choice_budget_of_one(self):
        router = PhaseRouter(Budget(search_budget=1))
        router.tick()
        assert router.get_tool_choice() == "auto"

    def test_hint_near_budget(self):
        router = PhaseRouter(Budget(search_budget=10))
        for _ in range(7):
            _step(router, _search_round())
        assert router.get_phase_hint() is None
        router.tick()
        hint = router.get_phase_hint()
        assert "Search budget almost exhausted (8/10)" in hint


class TestProduce:
    def test_hard_cap(self):
        router = _into_produce(Budget(max_submits=5, soft_submit_limit=4))
        assert _step(router, _submit_round(2)) == PhaseUpdate(False, PRODUCE)
        assert _step(router, _submit_round(2)) == PhaseUpdate(False, PRODUCE)
        assert _step(router, _submit_round(1)) == PhaseUpdate(True, SUMMARIZE)
        assert router.total_submits == 5

    def test_hard_cap_ignores_idle(self):
        router = _into_produce(Budget(max_submits=5, idle_rounds_to_exit=10))
        assert _step(router, _submit_round(5)) == PhaseUpdate(True, SUMMARIZE)

    def test_idle_rounds_after_submits(self):
        router = _into_produce(Budget(idle_rounds_to_exit=2))
        _step(router, _submit_round())
        assert _step(router, _search_round()) == PhaseUpdate(False, PRODUCE)
        assert _step(router, _search_round()) == PhaseUpdate(True, SUMMARIZE)

    def test_idle_reset_by_submit(self):
        router = _into_produce(Budget(idle_rounds_to_exit=2, max_submits=10))
        _step(router, _submit_round())
        _step(router, _search_round())
        _step(router, _submit_round())
        assert _step(router, _search_round()) == PhaseUpdate(False, PRODUCE)

    def test_text_after_soft_limit(self):
        router = _into_produce(Budget(soft_submit_limit=2, max_submits=6, idle_rounds_to_exit=5))
        _step(router, _submit_round(2))
        assert _step(router, _text_round()) == PhaseUpdate(True, SUMMARIZE)

    def test_text_below_soft_limit_continues(self):
        router = _into_produce(Budget(soft_submit_limit=4, idle_rounds_to_exit=5))
        _step(router, _submit_round())
        assert _step(router, _text_round()) == PhaseUpdate(False, PRODUCE)

    def test_grace_without_submits(self):
        router = _into_produce(Budget(search_budget_grace=3))
        assert _step(router, _search_round()) == PhaseUpdate(False, PRODUCE)
        assert _step(router, _search_round()) == PhaseUpdate(False, PRODUCE)
        assert _step(router, _search_round()) == PhaseUpdate(True, SUMMARIZE)

    def test_idle_needs_prior_submit(self):
        router = _into_produce(Budget(idle_rounds_to_exit=1, search_budget_grace=10))
        assert _step(router, _search_round()) == PhaseUpdate(False, PRODUCE)
        assert _step(router, _search_round()) == PhaseUpdate(False, PRODUCE)

    def test_tool_choice_auto(self):
        router = _into_produce(Budget())
        router.tick()
        assert router.get_tool_choice() == "auto"

    def test_hint_no_submits(self):
        router = _into_produce(Budget())
        router.tick()
        assert "submit_candidate" in router.get_phase_hint()

    def test_hint_after_soft_limit(self):
        router = _into_produce(Budget(soft_submit_limit=4, max_submits=6, idle_rounds_to_exit=5))
        _step(router, _submit_round(4))
        router.tick()
        hint = router.get_phase_hint()
        assert "4 candidates submitted (limit 6)" in hint
        assert "You may submit 2 more." in hint

    def test_hint_between_first_submit_and_soft_limit(self):
        router = _into_produce(Budget(soft_submit_limit=4, max_submits=6))
        _step(router, _submit_round(1))
        router.tick()
        assert router.get_phase_hint() is None


class TestSummarize:
    def test_no_transition_and_no_tools(self):
        router = PhaseRouter(Budget(), is_skill_only=True)
        _step(router, _text_round())
        router.tick()
        assert router.get_tool_choice() == "none"
        assert router.get_phase_hint() is None
        assert router.update(_text_round()) == PhaseUpdate(False, SUMMARIZE)

    def test_exit_after_two_rounds(self):
        router = PhaseRouter(Budget(), is_skill_only=True)
        _step(router, _text_round())
        _step(router, _text_round())
        assert not router.should_exit()
        _step(router, _text_round())
        assert router.should_exit()


class TestExit:
    def test_iteration_cap(self):
        router = PhaseRouter(Budget(max_iterations=3, search_budget=10))
        for _ in range(2):
            _step(router, _search_round())
        assert not router.should_exit()
        _step(router, _search_round())
        assert router.should_exit()

    def test_never_goes_backward(self):
        router = _into_produce(Budget())
        with pytest.raises(ValueError):
            router._transition_to(EXPLORE)
        with pytest.raises(ValueError):
            router._transition_to(PRODUCE)

    def test_monotonic_over_long_run(self):
        order = [EXPLORE, PRODUCE, SUMMARIZE]
        router = PhaseRouter(Budget(max_iterations=40))
        seen = [router.phase]
        rounds = [_search_round(), _submit_round(), _text_round(), RoundResult()] * 10
        for r in rounds:
            if router.should_exit():
                break
            _step(router, r)
            seen.append(router.phase)
        indexes = [order.index(p) for p in seen]
        assert indexes == sorted(indexes)

    def test_transition_logged(self, caplog):
        log = logging.getLogger("test.phase")
        router = PhaseRouter(Budget(), logger=log)
        with caplog.at_level(logging.INFO, logger="test.phase"):
            _step(router, _text_round())
        assert "EXPLORE -> PRODUCE" in caplog.text
