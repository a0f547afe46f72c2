"""Tests for the agent selector strategies."""

import pytest

from app.core.routing.selector import AgentSelector, round_robin_key
from app.core.routing.types import AgentPresence, RoutingDecision, RoutingStrategy


def make_agent(agent_id, **kwargs) -> AgentPresence:
    """Available agent with overrides."""
    return AgentPresence(agent_id=agent_id, is_available=True, **kwargs)


class TestRoundRobin:
    """Test fairness ordering."""

    @pytest.fixture
    def selector(self):
        return AgentSelector()

    def test_fewest_total_calls_wins(self, selector):
        """Test A (5 calls) vs B (2 calls) picks B."""
        agents = [make_agent("A", total_calls=5), make_agent("B", total_calls=2)]

        decision = selector.select(agents, strategy=RoutingStrategy.ROUND_ROBIN)

        assert decision.agent_id == "B"
        assert decision.strategy == RoutingStrategy.ROUND_ROBIN

    def test_tie_broken_by_last_assigned(self, selector):
        """Test equal call counts go to the agent idle the longest."""
        agents = [
            make_agent("B1", last_assigned_at=1700000100.0),
            make_agent("A1", last_assigned_at=1700000200.0),
        ]

        decision = selector.select(agents, strategy=RoutingStrategy.ROUND_ROBIN)

        assert decision.agent_id == "B1"

    def test_never_assigned_goes_first(self, selector):
        """Test last_assigned_at=0 beats any real timestamp."""
        agents = [
            make_agent("A1", last_assigned_at=1700000000.0),
            make_agent("B1", last_assigned_at=0.0),
        ]

        assert selector.select(agents).agent_id == "B1"

    def test_full_tie_is_deterministic(self, selector):
        agents = [make_agent("B1"), make_agent("A1")]

        assert selector.select(agents).agent_id == "A1"
        assert selector.select(list(reversed(agents))).agent_id == "A1"

    def test_round_robin_key(self):
        agent = make_agent("A1", total_calls=3, last_assigned_at=12.5)
        assert round_robin_key(agent) == (3, 12.5, "A1")


class TestSkillsBased:
    """Test skill matching and fallback."""

    @pytest.fixture
    def selector(self):
        return AgentSelector(skill_min_level=3)

    def test_highest_skill_sum_wins(self, selector):
        agents = [
            make_agent("A1", skills={"billing": 3, "spanish": 3}),
            make_agent("B1", skills={"billing": 5, "spanish": 4}),
            make_agent("C1", skills={"billing": 5}),
        ]

        decision = selector.select(
            agents,
            strategy=RoutingStrategy.SKILLS_BASED,
            required_skills=["billing", "spanish"],
        )

        assert decision.agent_id == "B1"
        assert decision.strategy == RoutingStrategy.SKILLS_BASED

    def test_low_level_does_not_qualify(self, selector):
        agents = [
            make_agent("A1", skills={"billing": 2}, total_calls=0),
            make_agent("B1", skills={"billing": 3}, total_calls=9),
        ]

        decision = selector.select(
            agents, strategy=RoutingStrategy.SKILLS_BASED, required_skills=["billing"]
        )

        assert decision.agent_id == "B1"

    def test_equal_scores_use_round_robin_order(self, selector):
        agents = [
            make_agent("A1", skills={"billing": 4}, total_calls=4),
            make_agent("B1", skills={"billing": 4}, total_calls=1),
        ]

        decision = selector.select(
            agents, strategy=RoutingStrategy.SKILLS_BASED, required_skills=["billing"]
        )

        assert decision.agent_id == "B1"

    def test_no_qualified_agent_falls_back_to_round_robin(self, selector):
        """Test skills_based with nobody qualified equals round_robin."""
        agents = [
            make_agent("A1", skills={"billing": 1}, total_calls=4),
            make_agent("B1", skills={"sales": 5}, total_calls=2),
            make_agent("C1", total_calls=3),
        ]

        skills = selector.select(
            agents, strategy=RoutingStrategy.SKILLS_BASED, required_skills=["billing"]
        )
        round_robin = selector.select(agents, strategy=RoutingStrategy.ROUND_ROBIN)

        assert skills.agent_id == round_robin.agent_id == "B1"
        assert skills.strategy == RoutingStrategy.ROUND_ROBIN

    def test_no_required_skills_uses_round_robin(self, selector):
        agents = [make_agent("A1", total_calls=2), make_agent("B1", total_calls=1)]

        decision = selector.select(agents, strategy=RoutingStrategy.SKILLS_BASED)

        assert decision.agent_id == "B1"
        assert decision.strategy == RoutingStrategy.ROUND_ROBIN


class TestWeighted:
    """Test performance/load scoring."""

    @pytest.fixture
    def selector(self):
        return AgentSelector(base_score=100, performance_multiplier=10, load_penalty=20)

    def test_weight_formula(self, selector):
        agent = make_agent("A1", satisfaction_score=4.5, current_calls=1)
        assert selector.weight(agent) == 100 + 45 - 20

    def test_missing_score_counts_as_zero(self, selector):
        assert selector.weight(make_agent("A1")) == 100

    def test_highest_weight_wins(self, selector):
        agents = [
            make_agent("A1", satisfaction_score=4.0),
            make_agent("B1", satisfaction_score=4.8),
            make_agent("C1", satisfaction_score=5.0, current_calls=1),
        ]

        decision = selector.select(agents, strategy=RoutingStrategy.WEIGHTED)

        assert decision.agent_id == "B1"
        assert decision.strategy == RoutingStrategy.WEIGHTED

    def test_tie_uses_round_robin_order(self, selector):
        agents = [
            make_agent("A1", satisfaction_score=4.0, total_calls=7),
            make_agent("B1", satisfaction_score=4.0, total_calls=3),
        ]

        assert selector.select(agents, strategy=RoutingStrategy.WEIGHTED).agent_id == "B1"


class TestPriority:
    """Test priority delegation."""

    @pytest.fixture
    def selector(self):
        return AgentSelector(priority_high_threshold=8, priority_medium_threshold=5)

    @pytest.fixture
    def agents(self):
        return [
            make_agent("A1", total_calls=0, skills={"billing": 3}, satisfaction_score=1.0),
            make_agent("B1", total_calls=5, skills={"billing": 5}, satisfaction_score=2.0),
            make_agent("C1", total_calls=9, skills={"billing": 4}, satisfaction_score=5.0),
        ]

    def test_high_priority_uses_weighted(self, selector, agents):
        decision = selector.select(
            agents, strategy=RoutingStrategy.PRIORITY, priority=9, required_skills=["billing"]
        )
        assert decision.agent_id == "C1"
        assert decision.strategy == RoutingStrategy.WEIGHTED

    def test_medium_priority_uses_skills(self, selector, agents):
        decision = selector.select(
            agents, strategy=RoutingStrategy.PRIORITY, priority=5, required_skills=["billing"]
        )
        assert decision.agent_id == "B1"
        assert decision.strategy == RoutingStrategy.SKILLS_BASED

    def test_low_priority_uses_round_robin(self, selector, agents):
        decision = selector.select(
            agents, strategy=RoutingStrategy.PRIORITY, priority=2, required_skills=["billing"]
        )
        assert decision.agent_id == "A1"
        assert decision.strategy == RoutingStrategy.ROUND_ROBIN


class TestExclusion:
    """Test excluded agents are never offered."""

    @pytest.fixture
    def selector(self):
        return AgentSelector()

    @pytest.mark.parametrize("strategy", list(RoutingStrategy))
    def test_excluded_agent_never_selected(self, selector, strategy):
        agents = [
            make_agent("A1", total_calls=0, skills={"billing": 5}, satisfaction_score=5.0),
            make_agent("B1", total_calls=3, skills={"billing": 3}),
        ]

        decision = selector.select(
            agents,
            strategy=strategy,
            required_skills=["billing"],
            priority=9,
            excluded=["A1"],
        )

        assert decision.agent_id == "B1"

    def test_everyone_excluded_returns_none(self, selector):
        decision = selector.select([make_agent("A1")], excluded={"A1"})

        assert decision == RoutingDecision.none()
        assert not decision.has_agent
        assert decision.strategy is None

    def test_empty_candidates(self, selector):
        assert not selector.select([]).has_agent


class TestRoutingDecision:
    def test_partial_decision_rejected(self):
        with pytest.raises(ValueError):
            RoutingDecision(agent=make_agent("A1"))
