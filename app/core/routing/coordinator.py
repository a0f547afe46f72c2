"""
Assignment Coordinator

Turns a selector decision into a claim in the presence registry.

Flow:
1. Snapshot available agents once
2. Drop excluded agents and non-members of the queue
3. Select a candidate
4. try_claim it
5. Claimed -> notify the agent, done
6. Conflict/not found -> drop the candidate from the local pool, go to 3
7. Pool empty -> exhausted

The pool only shrinks, so the loop ends after at most one claim per
snapshot candidate.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional

from app.core.routing.errors import PresenceBackendError
from app.core.routing.events import PresenceEventBus
from app.core.routing.registry import PresenceRegistry
from app.core.routing.selector import AgentSelector
from app.core.routing.types import (
    AgentPresence,
    CallAssignmentAttempt,
    CallRequest,
    ClaimOutcome,
    PresenceUpdate,
    RoutingStrategy,
)

logger = logging.getLogger(__name__)


class AssignmentOutcome(str, Enum):
    """Terminal result of one assignment round."""

    ASSIGNED = "assigned"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class AssignmentResult:
    """
    Result of AssignmentCoordinator.assign.

    Attributes:
        outcome: ASSIGNED, EXHAUSTED, CANCELLED or FAILED.
        agent: Claimed agent (ASSIGNED only).
        strategy: Algorithm the selector applied (ASSIGNED only).
        conflicts: Agents lost to concurrent claims during this round.
        error: Backend failure description (FAILED only).
    """

    outcome: AssignmentOutcome
    agent: Optional[AgentPresence] = None
    strategy: Optional[RoutingStrategy] = None
    conflicts: list[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def agent_id(self) -> Optional[str]:
        return self.agent.agent_id if self.agent else None

    @property
    def is_assigned(self) -> bool:
        return self.outcome == AssignmentOutcome.ASSIGNED


class AssignmentCoordinator:
    """Owns every claim and release the router performs."""

    def __init__(
        self,
        registry: PresenceRegistry,
        selector: AgentSelector,
        event_bus: PresenceEventBus,
    ):
        self.registry = registry
        self.selector = selector
        self.event_bus = event_bus

    async def assign(
        self,
        request: CallRequest,
        *,
        strategy: RoutingStrategy,
        excluded_agent_ids: Iterable[str] = (),
        member_agent_ids: Optional[Iterable[str]] = None,
        should_abort: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AssignmentResult:
        """
        Claim an agent for a call.

        Args:
            request: Routing inputs of the call
            strategy: Queue strategy
            excluded_agent_ids: Agents already tried for this call
            member_agent_ids: Queue members; None or empty means any agent
            should_abort: Checked before each claim and right after a
                successful one; True stops the round and releases any agent
                just claimed

        Returns:
            AssignmentResult
        """
        excluded = set(excluded_agent_ids)
        members = set(member_agent_ids or ())

        try:
            snapshot = await self.registry.snapshot_available()
        except PresenceBackendError as e:
            logger.error(f"Snapshot failed for call {request.call_id}: {e}")
            return AssignmentResult(AssignmentOutcome.FAILED, error=str(e))

        pool = [
            agent for agent in snapshot
            if agent.agent_id not in excluded and (not members or agent.agent_id in members)
        ]
        conflicts: list[str] = []
        max_attempts = len(pool)

        for _ in range(max_attempts):
            decision = self.selector.select(
                pool,
                strategy=strategy,
                required_skills=request.required_skills,
                priority=request.priority,
                excluded=excluded,
            )
            if not decision.has_agent:
                break

            if should_abort is not None and await should_abort():
                logger.info(f"Call {request.call_id} abandoned during selection")
                return AssignmentResult(AssignmentOutcome.CANCELLED, conflicts=conflicts)

            agent = decision.agent
            try:
                claim = await self.registry.try_claim(agent.agent_id, request.call_id)
            except PresenceBackendError as e:
                logger.error(
                    f"Claim failed for call {request.call_id} agent {agent.agent_id}: {e}"
                )
                # The claim may have committed before the failure surfaced;
                # release is scoped to this call so a foreign claim survives
                await self.release_agent(agent.agent_id, request.call_id)
                return AssignmentResult(AssignmentOutcome.FAILED, conflicts=conflicts, error=str(e))

            if claim == ClaimOutcome.CLAIMED:
                if should_abort is not None and await should_abort():
                    logger.info(
                        f"Call {request.call_id} abandoned as agent {agent.agent_id} "
                        f"was claimed, releasing"
                    )
                    await self.release_agent(agent.agent_id, request.call_id)
                    return AssignmentResult(AssignmentOutcome.CANCELLED, conflicts=conflicts)

                self.event_bus.notify_incoming_call(
                    agent.agent_id,
                    {
                        "call_id": request.call_id,
                        "phone_number": request.phone_number,
                        "direction": request.direction.value,
                        "caller_name": request.caller_name,
                        "priority": request.priority,
                    },
                )
                logger.info(
                    f"Call {request.call_id} assigned to agent {agent.agent_id} "
                    f"via {decision.strategy.value} after {len(conflicts)} conflicts"
                )
                return AssignmentResult(
                    AssignmentOutcome.ASSIGNED,
                    agent=agent,
                    strategy=decision.strategy,
                    conflicts=conflicts,
                )

            logger.info(
                f"Agent {agent.agent_id} unavailable for call {request.call_id} "
                f"({claim.value}), trying next candidate"
            )
            conflicts.append(agent.agent_id)
            pool = [candidate for candidate in pool if candidate.agent_id != agent.agent_id]

        logger.info(
            f"No agent available for call {request.call_id} "
            f"(excluded={sorted(excluded)}, conflicts={conflicts})"
        )
        return AssignmentResult(AssignmentOutcome.EXHAUSTED, conflicts=conflicts)

    async def claim_agent(self, agent_id: str, call_id: str) -> ClaimOutcome:
        """
        Claim a specific agent (agent-initiated outbound calls).

        Raises:
            PresenceBackendError: registry unreachable
        """
        return await self.registry.try_claim(agent_id, call_id)

    async def handle_dial_failure(
        self,
        attempt: CallAssignmentAttempt,
        agent_id: str,
        reason: str,
    ) -> CallAssignmentAttempt:
        """
        Agent device did not take the call.

        Releases the agent and excludes it from further offers of this call.

        Returns:
            The updated attempt
        """
        await self.release_agent(agent_id, attempt.call_id)
        attempt.exclude(agent_id, reason)
        logger.info(
            f"Call {attempt.call_id}: agent {agent_id} failed ({reason}), "
            f"excluded={attempt.excluded_agent_ids}, retry={attempt.retry_count}"
        )
        return attempt

    async def release_agent(self, agent_id: str, call_id: Optional[str] = None) -> bool:
        """
        Release an agent, idempotently.

        With call_id, an agent since claimed for another call is left alone.

        Returns:
            True if the agent was released (or already free), False if it is
            unknown, busy with another call, or the registry failed
        """
        try:
            result = await self.registry.release(agent_id, call_id)
        except PresenceBackendError as e:
            logger.error(
                f"Release failed for agent {agent_id} (call {call_id}, "
                f"operation=release): {e}"
            )
            return False

        if result != PresenceUpdate.OK:
            return False
        self.event_bus.agent_available(agent_id)
        return True
