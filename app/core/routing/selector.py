"""
Agent Selector

Pure, deterministic choice of one agent from a candidate list. Never touches
the registry; the coordinator turns a decision into a claim.
"""

import logging
from typing import Iterable, Optional, Sequence

from app.config import settings
from app.core.routing.types import AgentPresence, RoutingDecision, RoutingStrategy

logger = logging.getLogger(__name__)


def round_robin_key(agent: AgentPresence) -> tuple[int, float, str]:
    """Fairness order: fewest lifetime calls, then longest since last assignment."""
    return (agent.total_calls, agent.last_assigned_at, agent.agent_id)


class AgentSelector:
    """
    Picks an agent under a queue strategy.

    Strategies:
    - round_robin: fewest total calls, then oldest last assignment
    - skills_based: agents holding every required skill at min level, ranked
      by the sum of those skill levels; round_robin if nobody qualifies
    - weighted: base + satisfaction bonus - load penalty, highest wins
    - priority: weighted for high priority calls, skills_based for medium,
      round_robin otherwise
    """

    def __init__(
        self,
        skill_min_level: Optional[int] = None,
        priority_high_threshold: Optional[int] = None,
        priority_medium_threshold: Optional[int] = None,
        base_score: Optional[float] = None,
        performance_multiplier: Optional[float] = None,
        load_penalty: Optional[float] = None,
    ):
        self.skill_min_level = skill_min_level or settings.skill_min_level
        self.priority_high_threshold = priority_high_threshold or settings.priority_high_threshold
        self.priority_medium_threshold = (
            priority_medium_threshold or settings.priority_medium_threshold
        )
        self.base_score = settings.weighted_base_score if base_score is None else base_score
        self.performance_multiplier = (
            settings.weighted_performance_multiplier
            if performance_multiplier is None
            else performance_multiplier
        )
        self.load_penalty = settings.weighted_load_penalty if load_penalty is None else load_penalty

    def select(
        self,
        candidates: Sequence[AgentPresence],
        *,
        strategy: RoutingStrategy = RoutingStrategy.ROUND_ROBIN,
        required_skills: Iterable[str] = (),
        priority: int = 0,
        excluded: Iterable[str] = (),
    ) -> RoutingDecision:
        """
        Choose one candidate.

        Args:
            candidates: Available agents (already filtered by the caller)
            strategy: Queue strategy
            required_skills: Skills the call needs
            priority: Call priority 0-10
            excluded: Agent ids already tried for this call

        Returns:
            RoutingDecision with the agent and the algorithm applied, or
            RoutingDecision.none() when no candidate remains
        """
        excluded_ids = set(excluded)
        pool = [agent for agent in candidates if agent.agent_id not in excluded_ids]
        if not pool:
            return RoutingDecision.none()

        required = list(dict.fromkeys(required_skills))

        if strategy == RoutingStrategy.PRIORITY:
            strategy = self._strategy_for_priority(priority)

        if strategy == RoutingStrategy.SKILLS_BASED:
            return self._skills_based(pool, required)
        if strategy == RoutingStrategy.WEIGHTED:
            return self._weighted(pool)
        return self._round_robin(pool)

    def _strategy_for_priority(self, priority: int) -> RoutingStrategy:
        if priority >= self.priority_high_threshold:
            return RoutingStrategy.WEIGHTED
        if priority >= self.priority_medium_threshold:
            return RoutingStrategy.SKILLS_BASED
        return RoutingStrategy.ROUND_ROBIN

    def _round_robin(self, pool: Sequence[AgentPresence]) -> RoutingDecision:
        return RoutingDecision.chosen(min(pool, key=round_robin_key), RoutingStrategy.ROUND_ROBIN)

    def _skills_based(
        self,
        pool: Sequence[AgentPresence],
        required: list[str],
    ) -> RoutingDecision:
        if not required:
            return self._round_robin(pool)

        qualified = [agent for agent in pool if self.qualifies(agent, required)]
        if not qualified:
            logger.debug(f"No agent qualifies for skills {required}, using round robin")
            return self._round_robin(pool)

        best = min(
            qualified,
            key=lambda agent: (-self.skill_score(agent, required), round_robin_key(agent)),
        )
        return RoutingDecision.chosen(best, RoutingStrategy.SKILLS_BASED)

    def _weighted(self, pool: Sequence[AgentPresence]) -> RoutingDecision:
        best = min(
            pool,
            key=lambda agent: (-self.weight(agent), round_robin_key(agent)),
        )
        return RoutingDecision.chosen(best, RoutingStrategy.WEIGHTED)

    def qualifies(self, agent: AgentPresence, required: Iterable[str]) -> bool:
        """Agent holds every required skill at min level or above."""
        return all(agent.skills.get(skill, 0) >= self.skill_min_level for skill in required)

    def skill_score(self, agent: AgentPresence, required: Iterable[str]) -> int:
        """Sum of the agent's levels in the required skills."""
        return sum(agent.skills.get(skill, 0) for skill in required)

    def weight(self, agent: AgentPresence) -> float:
        """Weighted-routing score."""
        bonus = (agent.satisfaction_score or 0) * self.performance_multiplier
        penalty = agent.current_calls * self.load_penalty
        return self.base_score + bonus - penalty
