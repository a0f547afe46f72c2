"""
Call Routing Orchestrator

Drives each call through its routing states:

    new -> selecting -> ringing -> in_progress -> ended
                 |          |
                 v          v (device failed: exclude agent, select again)
             exhausted  selecting
                 |
                 v (hold tick / agent freed)
             selecting

Every state change is written with an expected-state guard, so when two
workers race on the same call only one transition wins. A worker that loses
the guard after claiming an agent releases that agent.

Provider callbacks are the clock: dial outcomes, hold-music loops and final
call statuses each call one method here. A local ring watchdog covers a
provider that never reports the dial outcome.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Optional

from app.config import settings
from app.core.routing.coordinator import AssignmentCoordinator, AssignmentOutcome
from app.core.routing.errors import (
    CallStoreError,
    PresenceBackendError,
    RoutingBackendError,
    TelephonyError,
)
from app.core.routing.events import PresenceEventBus
from app.core.routing.registry import PresenceRegistry, get_presence_registry
from app.core.routing.selector import AgentSelector
from app.core.routing.state import CallRoutingState, can_transition
from app.core.routing.stores import CallStore, QueueStore, SqlCallStore, SqlQueueStore
from app.core.routing.types import (
    AgentPresence,
    CallDirection,
    CallRecord,
    CallRequest,
    ClaimOutcome,
    DialOutcome,
    QueueInfo,
    RoutingStrategy,
)
from app.infra.notifications import get_notification_channel
from app.infra.telephony import TelephonyBackend, get_telephony_backend

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class RoutingResult:
    """
    Where a call ended up after one orchestrator step.

    Attributes:
        call_id: Call identifier.
        state: Routing state after the step (None if the call is unknown).
        agent_id: Agent ringing or talking to the caller, if any.
        strategy: Algorithm that picked the agent.
        message: Short human-readable note for logs and API responses.
    """

    call_id: str
    state: Optional[CallRoutingState]
    agent_id: Optional[str] = None
    strategy: Optional[RoutingStrategy] = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "call_id": self.call_id,
            "state": self.state.value if self.state else None,
            "agent_id": self.agent_id,
            "strategy": self.strategy.value if self.strategy else None,
            "message": self.message,
        }


class CallRoutingOrchestrator:
    """Per-call routing state machine."""

    def __init__(
        self,
        registry: PresenceRegistry,
        coordinator: AssignmentCoordinator,
        call_store: CallStore,
        queue_store: QueueStore,
        telephony: TelephonyBackend,
        event_bus: PresenceEventBus,
        ring_watchdog_seconds: Optional[float] = settings.ring_watchdog_seconds,
        default_queue_id: str = settings.routing_default_queue_id,
        default_strategy: RoutingStrategy = RoutingStrategy(settings.routing_default_strategy),
        recheck_limit: int = settings.waiting_call_recheck_limit,
    ):
        self.registry = registry
        self.coordinator = coordinator
        self.call_store = call_store
        self.queue_store = queue_store
        self.telephony = telephony
        self.event_bus = event_bus
        self.ring_watchdog_seconds = ring_watchdog_seconds
        self.default_queue_id = default_queue_id
        self.default_strategy = default_strategy
        self.recheck_limit = recheck_limit
        self._watchdogs: dict[str, asyncio.Task] = {}

    # === Inbound ===

    async def route_call(self, request: CallRequest, *, caller_on_hold: bool = False) -> RoutingResult:
        """
        Route a new call to an agent.

        Args:
            request: Routing inputs of the call
            caller_on_hold: The caller already hears hold music (the inbound
                webhook answered with hold TwiML), so exhaustion needs no
                extra provider update

        Returns:
            RoutingResult (ringing, exhausted or ended)
        """
        record = CallRecord.from_request(request, self.default_queue_id)
        try:
            await self.call_store.create_call(record)
        except CallStoreError as e:
            logger.error(f"Cannot persist call {record.call_id}, ending it: {e}")
            await self._hangup(record, apology=True)
            return RoutingResult(record.call_id, CallRoutingState.ENDED, message="call store unavailable")

        logger.info(
            f"Routing call {record.call_id} from {record.phone_number} "
            f"(queue={record.queue_id}, priority={record.priority})"
        )
        if not await self._transition(record, CallRoutingState.SELECTING):
            return self._result(record, "call changed before selection")
        return await self._select_and_ring(record, caller_on_hold=caller_on_hold)

    async def handle_dial_outcome(
        self,
        call_id: str,
        outcome: DialOutcome,
        *,
        caller_on_hold: bool = True,
    ) -> RoutingResult:
        """
        Apply the provider's report on ringing the assigned agent.

        answered -> in_progress; completed -> ended; busy/no-answer/failed/
        canceled -> release and exclude the agent, then select again.
        """
        record = await self._load_call(call_id)
        if record is None:
            return RoutingResult(call_id, None, message="unknown call")
        self._cancel_watchdog(call_id)

        if outcome == DialOutcome.ANSWERED:
            if record.state == CallRoutingState.RINGING:
                await self._transition(
                    record, CallRoutingState.IN_PROGRESS, {"answered_at": _utcnow()}
                )
            return self._result(record, "answered")

        if outcome == DialOutcome.COMPLETED:
            return await self._finish(record, "completed")

        if record.state != CallRoutingState.RINGING or not record.assigned_agent_id:
            logger.info(
                f"Ignoring dial outcome {outcome.value} for call {call_id} "
                f"in state {record.state.value}"
            )
            return self._result(record, "stale dial outcome")

        return await self._dial_failed(
            record, record.assigned_agent_id, outcome.value, caller_on_hold=caller_on_hold
        )

    async def handle_hold_tick(self, call_id: str) -> RoutingResult:
        """Re-attempt selection for a call waiting on hold."""
        record = await self._load_call(call_id)
        if record is None:
            return RoutingResult(call_id, None, message="unknown call")
        if record.state != CallRoutingState.EXHAUSTED:
            return self._result(record, "not waiting")

        # Another worker may win the same tick; the guard lets only one through
        if not await self._transition(record, CallRoutingState.SELECTING):
            return self._result(record, "re-check already running")
        return await self._select_and_ring(record, caller_on_hold=True)

    async def recheck_waiting_calls(self) -> list[RoutingResult]:
        """
        Offer the oldest held calls to newly free agents.

        Stops at the first call that still finds nobody.
        """
        try:
            waiting = await self.call_store.find_waiting_calls(self.recheck_limit)
        except CallStoreError as e:
            logger.error(f"Waiting call re-check failed: {e}")
            return []

        results = []
        for record in waiting:
            result = await self.handle_hold_tick(record.call_id)
            results.append(result)
            if result.state == CallRoutingState.EXHAUSTED:
                break
        return results

    async def end_call(self, call_id: str, reason: str) -> RoutingResult:
        """
        Terminate a call and free its agent.

        The release runs even if the call is already ended, so a repeated
        end never leaves an agent stuck on-call.
        """
        record = await self._load_call(call_id)
        if record is None:
            return RoutingResult(call_id, None, message="unknown call")
        self._cancel_watchdog(call_id)
        return await self._finish(record, reason)

    async def handle_agent_disconnected(self, agent_id: str) -> Optional[AgentPresence]:
        """
        Remove a disconnected agent.

        A call still ringing that agent is treated as a failed dial.
        """
        presence = await self.event_bus.agent_disconnected(agent_id)
        if presence is None or not presence.current_call_id:
            return presence

        record = await self._load_call(presence.current_call_id)
        if (
            record is not None
            and record.state == CallRoutingState.RINGING
            and record.assigned_agent_id == agent_id
        ):
            logger.info(f"Agent {agent_id} disconnected while ringing for call {record.call_id}")
            self._cancel_watchdog(record.call_id)
            await self._dial_failed(record, agent_id, "agent-disconnected", caller_on_hold=False)
        return presence

    # === Outbound ===

    async def place_outbound_call(self, request: CallRequest, agent_id: str) -> RoutingResult:
        """
        Place a call on behalf of an agent.

        The initiating agent is claimed directly; outbound calls are never
        re-routed to another agent.

        Raises:
            CallStoreError: the call record could not be created
            PresenceBackendError: the registry failed during the claim
        """
        record = CallRecord.from_request(
            replace(request, direction=CallDirection.OUTBOUND), self.default_queue_id
        )
        await self.call_store.create_call(record)

        if not await self._transition(record, CallRoutingState.SELECTING):
            return self._result(record, "call changed before claim")

        try:
            claim = await self.coordinator.claim_agent(agent_id, record.call_id)
        except PresenceBackendError:
            await self._transition(record, CallRoutingState.ENDED, self._end_patch("presence-failure"))
            raise

        if claim != ClaimOutcome.CLAIMED:
            await self._transition(
                record, CallRoutingState.ENDED, self._end_patch(f"agent-{claim.value}")
            )
            return self._result(record, f"agent {agent_id} unavailable ({claim.value})")

        if not await self._transition(
            record, CallRoutingState.RINGING, {"assigned_agent_id": agent_id}
        ):
            await self.coordinator.release_agent(agent_id, record.call_id)
            return self._result(record, "call changed during claim")

        try:
            provider_call_sid = await self.telephony.connect(agent_id, record)
        except TelephonyError as e:
            logger.error(f"Outbound call {record.call_id} for agent {agent_id} failed: {e}")
            return await self._finish(record, "telephony-failure")

        record.provider_call_sid = provider_call_sid
        await self._save(record, {"provider_call_sid": provider_call_sid})
        return self._result(record, "dialing")

    # === Selection ===

    async def _select_and_ring(self, record: CallRecord, *, caller_on_hold: bool) -> RoutingResult:
        queue = await self._load_queue(record.queue_id)
        request = record.to_request()
        if queue is not None:
            strategy = queue.strategy
            members = queue.member_agent_ids
            if not request.required_skills:
                request.required_skills = list(queue.skills_required)
        else:
            strategy = self.default_strategy
            members = None

        async def abandoned() -> bool:
            return await self._is_abandoned(record.call_id)

        result = await self.coordinator.assign(
            request,
            strategy=strategy,
            excluded_agent_ids=record.excluded_agent_ids,
            member_agent_ids=members,
            should_abort=abandoned,
        )

        if result.outcome == AssignmentOutcome.CANCELLED:
            record.state = CallRoutingState.ENDED
            return self._result(record, "caller abandoned")

        if result.outcome == AssignmentOutcome.ASSIGNED:
            agent_id = result.agent_id
            if not await self._transition(
                record,
                CallRoutingState.RINGING,
                {"assigned_agent_id": agent_id, "strategy": result.strategy},
            ):
                await self.coordinator.release_agent(agent_id, record.call_id)
                return self._result(record, "call changed during selection")

            try:
                await self.telephony.ring(agent_id, record)
            except TelephonyError as e:
                # Counts as a failed attempt: next agent, or hold when none is left
                logger.error(f"Cannot ring agent {agent_id} for call {record.call_id}: {e}")
                return await self._dial_failed(
                    record, agent_id, "telephony-failure", caller_on_hold=caller_on_hold
                )
            except Exception:
                await self.coordinator.release_agent(agent_id, record.call_id)
                raise

            self._start_watchdog(record.call_id, agent_id)
            return RoutingResult(
                record.call_id,
                record.state,
                agent_id=agent_id,
                strategy=result.strategy,
                message="ringing",
            )

        # EXHAUSTED, or FAILED: the registry is down and the caller waits on
        # hold until a later tick finds it healthy again
        if not await self._transition(record, CallRoutingState.EXHAUSTED):
            return self._result(record, "call changed during selection")

        if not caller_on_hold:
            try:
                await self.telephony.hold(record)
            except TelephonyError as e:
                logger.error(f"Cannot put call {record.call_id} on hold: {e}")
                return await self._finish(record, "telephony-failure", apology=True)

        message = "no agent available" if result.outcome == AssignmentOutcome.EXHAUSTED else "presence unavailable"
        return self._result(record, message)

    async def _dial_failed(
        self,
        record: CallRecord,
        agent_id: str,
        reason: str,
        *,
        caller_on_hold: bool,
    ) -> RoutingResult:
        attempt = await self.coordinator.handle_dial_failure(record.attempt(), agent_id, reason)

        patch = record.apply_attempt(attempt)
        if record.direction == CallDirection.OUTBOUND:
            return await self._finish(record, reason, apology=True, patch=patch)

        patch["assigned_agent_id"] = None
        if not await self._transition(record, CallRoutingState.SELECTING, patch):
            return self._result(record, "call changed after dial failure")
        return await self._select_and_ring(record, caller_on_hold=caller_on_hold)

    # === Termination ===

    async def _finish(
        self,
        record: CallRecord,
        reason: str,
        apology: bool = False,
        patch: Optional[dict[str, Any]] = None,
    ) -> RoutingResult:
        """End the call (if not already) and release its agent."""
        if record.state == CallRoutingState.NEW:
            logger.warning(f"Call {record.call_id} ended before routing started ({reason})")
            return self._result(record, "not routing yet")

        if record.state != CallRoutingState.ENDED:
            await self._transition(
                record, CallRoutingState.ENDED, {**(patch or {}), **self._end_patch(reason)}
            )
            if apology:
                await self._hangup(record, apology=True)

        released = False
        if record.assigned_agent_id:
            released = await self.coordinator.release_agent(record.assigned_agent_id, record.call_id)

        logger.info(f"Call {record.call_id} ended ({reason})")
        if released:
            await self.recheck_waiting_calls()
        return self._result(record, reason)

    @staticmethod
    def _end_patch(reason: str) -> dict[str, Any]:
        return {"end_reason": reason, "ended_at": _utcnow()}

    async def _hangup(self, record: CallRecord, apology: bool) -> None:
        if not record.provider_call_sid:
            return
        try:
            await self.telephony.hangup(record, apology=apology)
        except TelephonyError as e:
            logger.error(f"Hangup failed for call {record.call_id}: {e}")

    # === Ring watchdog ===

    def _start_watchdog(self, call_id: str, agent_id: str) -> None:
        if self.ring_watchdog_seconds is None:
            return
        self._cancel_watchdog(call_id)
        task = asyncio.create_task(self._watch_ring(call_id, agent_id))
        self._watchdogs[call_id] = task

    def _cancel_watchdog(self, call_id: str) -> None:
        task = self._watchdogs.pop(call_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _watch_ring(self, call_id: str, agent_id: str) -> None:
        await asyncio.sleep(self.ring_watchdog_seconds)
        if self._watchdogs.get(call_id) is asyncio.current_task():
            del self._watchdogs[call_id]

        try:
            record = await self._load_call(call_id)
            if (
                record is None
                or record.state != CallRoutingState.RINGING
                or record.assigned_agent_id != agent_id
            ):
                return
            logger.warning(
                f"No dial outcome for call {call_id} after {self.ring_watchdog_seconds}s, "
                f"failing agent {agent_id}"
            )
            await self._dial_failed(record, agent_id, "ring-timeout", caller_on_hold=False)
        except RoutingBackendError as e:
            logger.error(f"Ring watchdog for call {call_id} failed: {e}")

    async def shutdown(self) -> None:
        """Cancel pending watchdogs."""
        tasks = list(self._watchdogs.values())
        self._watchdogs.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # === Persistence ===

    async def _transition(
        self,
        record: CallRecord,
        to_state: CallRoutingState,
        patch: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Move the call to to_state if it is still in record.state.

        A store failure is logged and the step proceeds on the local record,
        so an agent already claimed is never dropped because of the store.

        Returns:
            False if the transition is invalid or another worker moved the
            call first
        """
        from_state = record.state
        if not can_transition(from_state, to_state):
            logger.warning(
                f"Invalid transition for call {record.call_id}: "
                f"{from_state.value} -> {to_state.value}"
            )
            return False

        values = {"state": to_state, **(patch or {})}
        try:
            applied = await self.call_store.update_call(
                record.call_id, values, expected_state=from_state
            )
        except CallStoreError as e:
            logger.error(
                f"Call store failed on {from_state.value} -> {to_state.value} "
                f"for call {record.call_id} (agent={record.assigned_agent_id}): {e}"
            )
            applied = True

        if not applied:
            logger.info(
                f"Call {record.call_id} left {from_state.value} elsewhere, "
                f"dropping {to_state.value}"
            )
            return False

        for key, value in values.items():
            if hasattr(record, key):
                setattr(record, key, value)
        self.event_bus.call_updated(
            record.call_id,
            {"state": to_state.value, "agent_id": record.assigned_agent_id},
        )
        return True

    async def _save(self, record: CallRecord, patch: dict[str, Any]) -> None:
        try:
            await self.call_store.update_call(record.call_id, patch)
        except CallStoreError as e:
            logger.error(f"Failed to save call {record.call_id} ({list(patch)}): {e}")

    async def _load_call(self, call_id: str) -> Optional[CallRecord]:
        try:
            return await self.call_store.find_call(call_id)
        except CallStoreError as e:
            logger.error(f"Failed to load call {call_id}: {e}")
            return None

    async def _load_queue(self, queue_id: Optional[str]) -> Optional[QueueInfo]:
        if not queue_id:
            return None
        try:
            queue = await self.queue_store.get_queue(queue_id)
        except CallStoreError as e:
            logger.error(f"Failed to load queue {queue_id}, using default strategy: {e}")
            return None
        if queue is None:
            logger.debug(f"Queue {queue_id} not found, using {self.default_strategy.value}")
        return queue

    async def _is_abandoned(self, call_id: str) -> bool:
        try:
            record = await self.call_store.find_call(call_id)
        except CallStoreError as e:
            logger.warning(f"Abandonment check failed for call {call_id}: {e}")
            return False
        return record is None or record.state == CallRoutingState.ENDED

    @staticmethod
    def _result(record: CallRecord, message: str) -> RoutingResult:
        return RoutingResult(
            record.call_id,
            record.state,
            agent_id=record.assigned_agent_id,
            strategy=record.strategy,
            message=message,
        )


# Singleton
_orchestrator: Optional[CallRoutingOrchestrator] = None


async def get_orchestrator() -> CallRoutingOrchestrator:
    """Get singleton CallRoutingOrchestrator wired to the configured backends."""
    global _orchestrator
    if _orchestrator is None:
        registry = await get_presence_registry()
        event_bus = PresenceEventBus(registry, get_notification_channel())
        coordinator = AssignmentCoordinator(registry, AgentSelector(), event_bus)
        _orchestrator = CallRoutingOrchestrator(
            registry=registry,
            coordinator=coordinator,
            call_store=SqlCallStore(),
            queue_store=SqlQueueStore(),
            telephony=get_telephony_backend(),
            event_bus=event_bus,
        )
    return _orchestrator


def reset_orchestrator() -> None:
    """Drop the singleton (useful for testing)."""
    global _orchestrator
    _orchestrator = None
