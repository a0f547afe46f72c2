"""Tests for the assignment coordinator."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from app.core.routing.coordinator import AssignmentCoordinator, AssignmentOutcome
from app.core.routing.errors import PresenceBackendError
from app.core.routing.events import PresenceEventBus
from app.core.routing.registry import InMemoryPresenceRegistry
from app.core.routing.selector import AgentSelector
from app.core.routing.types import (
    AgentStatus,
    CallAssignmentAttempt,
    CallRequest,
    ClaimOutcome,
    PresenceUpdate,
    RoutingStrategy,
    SessionMeta,
)


@pytest.fixture
def channel():
    """Mock notification channel."""
    mock = MagicMock()
    mock.notify_agent = AsyncMock()
    mock.broadcast_to_role = AsyncMock()
    return mock


@pytest.fixture
def registry():
    return InMemoryPresenceRegistry()


@pytest.fixture
def event_bus(registry, channel):
    return PresenceEventBus(registry, channel)


@pytest.fixture
def coordinator(registry, event_bus):
    return AssignmentCoordinator(registry, AgentSelector(), event_bus)


@pytest.fixture
def request_():
    return CallRequest(call_id="call-1", phone_number="+15550100", priority=0)


async def register(registry, *agent_ids):
    for agent_id in agent_ids:
        await registry.register_agent(agent_id, SessionMeta(session_ref=f"sess-{agent_id}"))


class TestAssign:
    """Test selection + claim rounds."""

    @pytest.mark.asyncio
    async def test_assigns_first_in_round_robin_order(self, coordinator, registry, request_):
        """Test A1/B1 with no history: A1 is claimed and leaves the snapshot."""
        await register(registry, "A1", "B1")

        result = await coordinator.assign(request_, strategy=RoutingStrategy.ROUND_ROBIN)

        assert result.outcome == AssignmentOutcome.ASSIGNED
        assert result.agent_id == "A1"
        assert result.strategy == RoutingStrategy.ROUND_ROBIN
        snapshot = await registry.snapshot_available()
        assert [agent.agent_id for agent in snapshot] == ["B1"]
        assert (await registry.get_presence("A1")).current_calls == 1

    @pytest.mark.asyncio
    async def test_notifies_claimed_agent(self, coordinator, registry, event_bus, channel, request_):
        await register(registry, "A1")

        await coordinator.assign(request_, strategy=RoutingStrategy.ROUND_ROBIN)
        await event_bus.drain()

        channel.notify_agent.assert_awaited_once()
        agent_id, payload = channel.notify_agent.await_args.args
        assert agent_id == "A1"
        assert payload["event"] == "call:incoming"
        assert payload["call_id"] == "call-1"
        assert payload["phone_number"] == "+15550100"

    @pytest.mark.asyncio
    async def test_no_agents_is_exhausted(self, coordinator, request_):
        result = await coordinator.assign(request_, strategy=RoutingStrategy.ROUND_ROBIN)

        assert result.outcome == AssignmentOutcome.EXHAUSTED
        assert result.agent is None

    @pytest.mark.asyncio
    async def test_conflict_retries_next_candidate(self, coordinator, registry, request_):
        """Test a lost claim drops that agent and claims the next one."""
        await register(registry, "A1", "B1")
        claim = AsyncMock(side_effect=[ClaimOutcome.CONFLICT, ClaimOutcome.CLAIMED])

        with patch.object(registry, "try_claim", claim):
            result = await coordinator.assign(request_, strategy=RoutingStrategy.ROUND_ROBIN)

        assert result.outcome == AssignmentOutcome.ASSIGNED
        assert result.agent_id == "B1"
        assert result.conflicts == ["A1"]
        assert [c.args[0] for c in claim.await_args_list] == ["A1", "B1"]

    @pytest.mark.asyncio
    async def test_all_conflicts_is_exhausted(self, coordinator, registry, request_):
        await register(registry, "A1", "B1")
        claim = AsyncMock(return_value=ClaimOutcome.CONFLICT)

        with patch.object(registry, "try_claim", claim):
            result = await coordinator.assign(request_, strategy=RoutingStrategy.ROUND_ROBIN)

        assert result.outcome == AssignmentOutcome.EXHAUSTED
        assert claim.await_count == 2
        assert result.conflicts == ["A1", "B1"]

    @pytest.mark.asyncio
    async def test_agent_deregistered_before_claim(self, coordinator, registry, request_):
        await register(registry, "A1", "B1")
        claim = AsyncMock(side_effect=[ClaimOutcome.NOT_FOUND, ClaimOutcome.CLAIMED])

        with patch.object(registry, "try_claim", claim):
            result = await coordinator.assign(request_, strategy=RoutingStrategy.ROUND_ROBIN)

        assert result.agent_id == "B1"

    @pytest.mark.asyncio
    async def test_queue_membership_filter(self, coordinator, registry, request_):
        await register(registry, "A1", "B1")

        result = await coordinator.assign(
            request_, strategy=RoutingStrategy.ROUND_ROBIN, member_agent_ids=["B1"]
        )

        assert result.agent_id == "B1"

    @pytest.mark.asyncio
    async def test_excluded_agent_never_offered_again(self, coordinator, registry, request_):
        """Test an excluded agent stays excluded after becoming available again."""
        await register(registry, "A1")
        await registry.try_claim("A1", "call-1")
        await registry.release("A1", "call-1")

        result = await coordinator.assign(
            request_, strategy=RoutingStrategy.ROUND_ROBIN, excluded_agent_ids=["A1"]
        )

        assert result.outcome == AssignmentOutcome.EXHAUSTED
        assert (await registry.get_presence("A1")).is_available

    @pytest.mark.asyncio
    async def test_abort_before_claim(self, coordinator, registry, request_):
        await register(registry, "A1")
        should_abort = AsyncMock(return_value=True)

        result = await coordinator.assign(
            request_, strategy=RoutingStrategy.ROUND_ROBIN, should_abort=should_abort
        )

        assert result.outcome == AssignmentOutcome.CANCELLED
        assert (await registry.get_presence("A1")).total_calls == 0

    @pytest.mark.asyncio
    async def test_abort_after_claim_releases_agent(self, coordinator, registry, request_):
        """Test an abandonment seen right after a claim frees the agent immediately."""
        await register(registry, "A1")
        should_abort = AsyncMock(side_effect=[False, True])

        result = await coordinator.assign(
            request_, strategy=RoutingStrategy.ROUND_ROBIN, should_abort=should_abort
        )

        assert result.outcome == AssignmentOutcome.CANCELLED
        presence = await registry.get_presence("A1")
        assert presence.is_available
        assert presence.current_calls == 0
        assert presence.status == AgentStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_claim_backend_failure_compensates(self, coordinator, registry, request_):
        """Test a failed claim releases the agent scoped to this call."""
        await register(registry, "A1")
        release = AsyncMock(return_value=PresenceUpdate.OK)

        with patch.object(
            registry, "try_claim", AsyncMock(side_effect=PresenceBackendError("down"))
        ), patch.object(registry, "release", release):
            result = await coordinator.assign(request_, strategy=RoutingStrategy.ROUND_ROBIN)

        assert result.outcome == AssignmentOutcome.FAILED
        assert result.error == "down"
        release.assert_awaited_once_with("A1", "call-1")

    @pytest.mark.asyncio
    async def test_snapshot_failure(self, coordinator, registry, request_):
        with patch.object(
            registry, "snapshot_available", AsyncMock(side_effect=PresenceBackendError("down"))
        ):
            result = await coordinator.assign(request_, strategy=RoutingStrategy.ROUND_ROBIN)

        assert result.outcome == AssignmentOutcome.FAILED


class TestDialFailure:
    """Test release + exclusion after a device failure."""

    @pytest.mark.asyncio
    async def test_no_answer_fails_over_to_next_agent(self, coordinator, registry, request_):
        """Test A1 no-answer: A1 released and excluded, then B1 selected."""
        await register(registry, "A1", "B1")
        first = await coordinator.assign(request_, strategy=RoutingStrategy.ROUND_ROBIN)
        assert first.agent_id == "A1"

        attempt = await coordinator.handle_dial_failure(
            CallAssignmentAttempt(call_id="call-1"), "A1", "no-answer"
        )

        assert attempt.excluded_agent_ids == ["A1"]
        assert attempt.retry_count == 1
        assert attempt.last_failure_reason == "no-answer"
        assert (await registry.get_presence("A1")).is_available

        second = await coordinator.assign(
            request_,
            strategy=RoutingStrategy.ROUND_ROBIN,
            excluded_agent_ids=attempt.excluded_agent_ids,
        )
        assert second.agent_id == "B1"

    @pytest.mark.asyncio
    async def test_exclusion_recorded_once(self, coordinator, registry):
        await register(registry, "A1")
        attempt = CallAssignmentAttempt(call_id="call-1")

        await coordinator.handle_dial_failure(attempt, "A1", "busy")
        await coordinator.handle_dial_failure(attempt, "A1", "failed")

        assert attempt.excluded_agent_ids == ["A1"]
        assert attempt.retry_count == 2
        assert attempt.last_failure_reason == "failed"


class TestRelease:
    """Test release reporting."""

    @pytest.mark.asyncio
    async def test_release_broadcasts_available(self, coordinator, registry, event_bus, channel):
        await register(registry, "A1")
        await registry.try_claim("A1", "call-1")

        assert await coordinator.release_agent("A1", "call-1") is True
        await event_bus.drain()

        events = [c.args[1]["event"] for c in channel.broadcast_to_role.await_args_list]
        assert "agent:available" in events

    @pytest.mark.asyncio
    async def test_release_unknown_agent(self, coordinator):
        assert await coordinator.release_agent("ghost", "call-1") is False

    @pytest.mark.asyncio
    async def test_release_backend_failure_is_reported(self, coordinator, registry):
        with patch.object(
            registry, "release", AsyncMock(side_effect=PresenceBackendError("down"))
        ):
            assert await coordinator.release_agent("A1", "call-1") is False

    @pytest.mark.asyncio
    async def test_claim_agent(self, coordinator, registry):
        await register(registry, "A1")

        assert await coordinator.claim_agent("A1", "call-9") == ClaimOutcome.CLAIMED
        assert await coordinator.claim_agent("A1", "call-10") == ClaimOutcome.CONFLICT
