"""
Presence Registry

Single source of truth for which agents can take a call right now.

Two sets partition connected agents:
- available: idle agents that may be claimed
- on-call: agents claimed for a call

An agent is in at most one of them. try_claim is the only operation that
moves an agent from available to on-call, and it does so atomically.

Redis key pattern (all under APP_PREFIX):
- presence:agents:available -> set of agent ids
- presence:agents:on-call -> set of agent ids
- presence:agent:{agent_id}:status -> hash (status, session fields)
- presence:agent:{agent_id}:calls -> hash (current_calls, total_calls)
- presence:agent:{agent_id}:last-assigned -> epoch seconds
- presence:agent:{agent_id}:version -> bumped by every write for the agent

Every write WATCHes the agent's version key, so writes for the same agent
are linearizable while writes for different agents never contend.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar

from redis.asyncio import Redis
from redis.asyncio.client import Pipeline
from redis.exceptions import RedisError, WatchError

from app.config import settings
from app.infra.redis import get_redis, namespaced
from app.core.routing.errors import PresenceBackendError
from app.core.routing.types import (
    AgentPresence,
    AgentStatus,
    ClaimOutcome,
    PresenceStatistics,
    PresenceUpdate,
    SessionMeta,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

AVAILABLE_KEY = namespaced("presence", "agents", "available")
ON_CALL_KEY = namespaced("presence", "agents", "on-call")
AGENT_PREFIX = namespaced("presence", "agent", "")


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class PresenceRegistry(ABC):
    """
    Contract for the shared presence store.

    Unknown agent ids never raise: they come back as NOT_FOUND (or None).
    Store failures raise PresenceBackendError.
    """

    @abstractmethod
    async def register_agent(self, agent_id: str, meta: SessionMeta) -> AgentPresence:
        """
        Add an agent to the available set.

        Idempotent. Counters are created at zero only when absent, so a
        reconnecting agent keeps its history. An agent that is still on a
        call is not made available.
        """

    @abstractmethod
    async def deregister_agent(self, agent_id: str) -> Optional[AgentPresence]:
        """
        Remove the agent from both sets and delete its record.

        Returns:
            The presence as it was just before removal, or None if unknown
        """

    @abstractmethod
    async def set_status(self, agent_id: str, status: AgentStatus) -> PresenceUpdate:
        """
        Change an agent's status.

        available re-adds the agent to the available set; any other status
        removes it. An on-call agent cannot be made available (ON_CALL).
        """

    @abstractmethod
    async def snapshot_available(self) -> list[AgentPresence]:
        """
        Agents in the available set and not in the on-call set.

        Point-in-time and possibly stale by the time it is used; only
        try_claim decides whether an agent can be taken.
        """

    @abstractmethod
    async def try_claim(self, agent_id: str, call_id: Optional[str] = None) -> ClaimOutcome:
        """
        Atomically move an agent from available to on-call.

        Returns:
            CLAIMED, CONFLICT (no longer available) or NOT_FOUND
        """

    @abstractmethod
    async def release(self, agent_id: str, call_id: Optional[str] = None) -> PresenceUpdate:
        """
        Take an agent off its call.

        Decrements current_calls (floored at zero) and restores the agent to
        the available set unless it went offline meanwhile. Releasing an
        agent that is not on a call changes nothing. A deregistered agent
        stays deregistered.

        With call_id, an agent already claimed for a different call is left
        untouched (ON_CALL), so a late release cannot free someone else's
        claim.
        """

    @abstractmethod
    async def get_presence(self, agent_id: str) -> Optional[AgentPresence]:
        """Read one agent's presence, or None if unknown."""

    @abstractmethod
    async def get_statistics(self) -> PresenceStatistics:
        """Counts and rows for every agent in either set."""


class RedisPresenceRegistry(PresenceRegistry):
    """
    Presence registry on Redis using WATCH/MULTI optimistic locking.

    Safe to share between worker processes.
    """

    def __init__(
        self,
        redis_client: Redis,
        write_retries: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis_client
        self._write_retries = write_retries or settings.presence_write_retries
        self._clock = clock

    # === Keys ===

    def _status_key(self, agent_id: str) -> str:
        return f"{AGENT_PREFIX}{agent_id}:status"

    def _calls_key(self, agent_id: str) -> str:
        return f"{AGENT_PREFIX}{agent_id}:calls"

    def _last_assigned_key(self, agent_id: str) -> str:
        return f"{AGENT_PREFIX}{agent_id}:last-assigned"

    def _version_key(self, agent_id: str) -> str:
        return f"{AGENT_PREFIX}{agent_id}:version"

    # === Write helper ===

    async def _write(
        self,
        agent_id: str,
        operation: str,
        body: Callable[[Pipeline], Awaitable[T]],
    ) -> T:
        """
        Run body under WATCH on the agent's version key.

        body reads in immediate mode, calls pipe.multi(), queues writes and
        executes. A lost WATCH re-runs body with fresh reads.
        """
        for attempt in range(1, self._write_retries + 1):
            try:
                async with self.redis.pipeline(transaction=True) as pipe:
                    await pipe.watch(self._version_key(agent_id))
                    return await body(pipe)
            except WatchError:
                logger.debug(
                    f"Presence {operation} for agent {agent_id} lost WATCH "
                    f"(attempt {attempt}/{self._write_retries})"
                )
            except RedisError as e:
                logger.error(f"Presence {operation} failed for agent {agent_id}: {e}")
                raise PresenceBackendError(
                    f"Presence {operation} failed: {e}",
                    operation=operation,
                    agent_id=agent_id,
                ) from e

        logger.error(
            f"Presence {operation} for agent {agent_id} gave up after "
            f"{self._write_retries} concurrent modifications"
        )
        raise PresenceBackendError(
            f"Presence {operation} kept conflicting",
            operation=operation,
            agent_id=agent_id,
        )

    # === Operations ===

    async def register_agent(self, agent_id: str, meta: SessionMeta) -> AgentPresence:
        async def body(pipe: Pipeline) -> AgentPresence:
            calls = await pipe.hgetall(self._calls_key(agent_id))
            last_assigned = await pipe.get(self._last_assigned_key(agent_id))
            previous = await pipe.hgetall(self._status_key(agent_id))
            on_call = bool(await pipe.sismember(ON_CALL_KEY, agent_id))

            presence = AgentPresence(
                agent_id=agent_id,
                status=AgentStatus.BUSY if on_call else AgentStatus.AVAILABLE,
                current_call_id=(previous.get("current_call_id") or None) if on_call else None,
                current_calls=int(calls.get("current_calls") or 0),
                total_calls=int(calls.get("total_calls") or 0),
                last_assigned_at=float(last_assigned or 0),
                connected_at=_utcnow(),
                session_ref=meta.session_ref,
                role=meta.role,
                skills=dict(meta.skills),
                satisfaction_score=meta.satisfaction_score,
                is_available=not on_call,
            )

            pipe.multi()
            pipe.hset(self._status_key(agent_id), mapping=presence.status_mapping())
            if not calls:
                pipe.hset(
                    self._calls_key(agent_id),
                    mapping={"current_calls": 0, "total_calls": 0},
                )
            if last_assigned is None:
                pipe.set(self._last_assigned_key(agent_id), 0)
            if not on_call:
                pipe.sadd(AVAILABLE_KEY, agent_id)
            pipe.incr(self._version_key(agent_id))
            await pipe.execute()
            return presence

        presence = await self._write(agent_id, "register", body)
        logger.info(f"Agent {agent_id} registered (available={presence.is_available})")
        return presence

    async def deregister_agent(self, agent_id: str) -> Optional[AgentPresence]:
        async def body(pipe: Pipeline) -> Optional[AgentPresence]:
            status = await pipe.hgetall(self._status_key(agent_id))
            if not status:
                return None
            calls = await pipe.hgetall(self._calls_key(agent_id))
            last_assigned = await pipe.get(self._last_assigned_key(agent_id))
            presence = AgentPresence.from_redis(agent_id, status, calls, last_assigned)

            pipe.multi()
            pipe.srem(AVAILABLE_KEY, agent_id)
            pipe.srem(ON_CALL_KEY, agent_id)
            pipe.delete(
                self._status_key(agent_id),
                self._calls_key(agent_id),
                self._last_assigned_key(agent_id),
                self._version_key(agent_id),
            )
            await pipe.execute()
            return presence

        presence = await self._write(agent_id, "deregister", body)
        if presence is None:
            logger.debug(f"Deregister for unknown agent {agent_id}")
        else:
            logger.info(f"Agent {agent_id} deregistered")
        return presence

    async def set_status(self, agent_id: str, status: AgentStatus) -> PresenceUpdate:
        async def body(pipe: Pipeline) -> PresenceUpdate:
            current = await pipe.hget(self._status_key(agent_id), "status")
            if current is None:
                return PresenceUpdate.NOT_FOUND
            on_call = bool(await pipe.sismember(ON_CALL_KEY, agent_id))
            if on_call and status == AgentStatus.AVAILABLE:
                return PresenceUpdate.ON_CALL

            pipe.multi()
            pipe.hset(
                self._status_key(agent_id),
                mapping={"status": status.value, "status_changed_at": _utcnow().isoformat()},
            )
            if status == AgentStatus.AVAILABLE:
                pipe.sadd(AVAILABLE_KEY, agent_id)
            else:
                pipe.srem(AVAILABLE_KEY, agent_id)
            pipe.incr(self._version_key(agent_id))
            await pipe.execute()
            return PresenceUpdate.OK

        result = await self._write(agent_id, "set_status", body)
        logger.debug(f"Agent {agent_id} status -> {status.value}: {result.value}")
        return result

    async def snapshot_available(self) -> list[AgentPresence]:
        try:
            agent_ids = sorted(await self.redis.sdiff([AVAILABLE_KEY, ON_CALL_KEY]))
            if not agent_ids:
                return []

            async with self.redis.pipeline(transaction=False) as pipe:
                for agent_id in agent_ids:
                    pipe.hgetall(self._status_key(agent_id))
                    pipe.hgetall(self._calls_key(agent_id))
                    pipe.get(self._last_assigned_key(agent_id))
                results = await pipe.execute()
        except RedisError as e:
            logger.error(f"Presence snapshot failed: {e}")
            raise PresenceBackendError(f"Presence snapshot failed: {e}", operation="snapshot") from e

        snapshot = []
        for index, agent_id in enumerate(agent_ids):
            status, calls, last_assigned = results[index * 3:index * 3 + 3]
            # Deregistered between the set read and the hash read
            if not status or status.get("status") != AgentStatus.AVAILABLE.value:
                continue
            snapshot.append(
                AgentPresence.from_redis(agent_id, status, calls, last_assigned, is_available=True)
            )
        return snapshot

    async def try_claim(self, agent_id: str, call_id: Optional[str] = None) -> ClaimOutcome:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                await pipe.watch(self._version_key(agent_id))

                status = await pipe.hget(self._status_key(agent_id), "status")
                if status is None:
                    return ClaimOutcome.NOT_FOUND

                available = bool(await pipe.sismember(AVAILABLE_KEY, agent_id))
                on_call = bool(await pipe.sismember(ON_CALL_KEY, agent_id))
                if not available or on_call or status != AgentStatus.AVAILABLE.value:
                    return ClaimOutcome.CONFLICT

                pipe.multi()
                pipe.srem(AVAILABLE_KEY, agent_id)
                pipe.sadd(ON_CALL_KEY, agent_id)
                pipe.hset(
                    self._status_key(agent_id),
                    mapping={
                        "status": AgentStatus.BUSY.value,
                        "current_call_id": call_id or "",
                        "call_started_at": _utcnow().isoformat(),
                    },
                )
                pipe.hincrby(self._calls_key(agent_id), "current_calls", 1)
                pipe.hincrby(self._calls_key(agent_id), "total_calls", 1)
                pipe.set(self._last_assigned_key(agent_id), self._clock())
                pipe.incr(self._version_key(agent_id))
                await pipe.execute()

        except WatchError:
            logger.info(f"Claim of agent {agent_id} for call {call_id} lost to a concurrent write")
            return ClaimOutcome.CONFLICT
        except RedisError as e:
            logger.error(f"Claim of agent {agent_id} for call {call_id} failed: {e}")
            raise PresenceBackendError(
                f"Claim failed: {e}",
                operation="try_claim",
                call_id=call_id,
                agent_id=agent_id,
            ) from e

        logger.info(f"Agent {agent_id} claimed for call {call_id}")
        return ClaimOutcome.CLAIMED

    async def release(self, agent_id: str, call_id: Optional[str] = None) -> PresenceUpdate:
        async def body(pipe: Pipeline) -> PresenceUpdate:
            status = await pipe.hget(self._status_key(agent_id), "status")
            if status is None:
                return PresenceUpdate.NOT_FOUND
            if call_id is not None:
                claimed_for = await pipe.hget(self._status_key(agent_id), "current_call_id")
                if claimed_for and claimed_for != call_id:
                    return PresenceUpdate.ON_CALL
            if not await pipe.sismember(ON_CALL_KEY, agent_id):
                # Already released
                return PresenceUpdate.OK
            current_calls = int(await pipe.hget(self._calls_key(agent_id), "current_calls") or 0)

            pipe.multi()
            pipe.srem(ON_CALL_KEY, agent_id)
            pipe.hset(self._calls_key(agent_id), "current_calls", max(0, current_calls - 1))
            if status == AgentStatus.OFFLINE.value:
                pipe.hset(self._status_key(agent_id), "current_call_id", "")
            else:
                pipe.hset(
                    self._status_key(agent_id),
                    mapping={
                        "status": AgentStatus.AVAILABLE.value,
                        "current_call_id": "",
                        "call_ended_at": _utcnow().isoformat(),
                    },
                )
                pipe.sadd(AVAILABLE_KEY, agent_id)
            pipe.incr(self._version_key(agent_id))
            await pipe.execute()
            return PresenceUpdate.OK

        result = await self._write(agent_id, "release", body)
        if result == PresenceUpdate.NOT_FOUND:
            logger.info(f"Release for agent {agent_id} skipped: agent no longer registered")
        elif result == PresenceUpdate.ON_CALL:
            logger.info(f"Release of agent {agent_id} for call {call_id} skipped: claimed elsewhere")
        else:
            logger.info(f"Agent {agent_id} released")
        return result

    async def get_presence(self, agent_id: str) -> Optional[AgentPresence]:
        try:
            async with self.redis.pipeline(transaction=False) as pipe:
                pipe.hgetall(self._status_key(agent_id))
                pipe.hgetall(self._calls_key(agent_id))
                pipe.get(self._last_assigned_key(agent_id))
                pipe.sismember(AVAILABLE_KEY, agent_id)
                pipe.sismember(ON_CALL_KEY, agent_id)
                status, calls, last_assigned, available, on_call = await pipe.execute()
        except RedisError as e:
            raise PresenceBackendError(
                f"Presence read failed: {e}", operation="get_presence", agent_id=agent_id
            ) from e

        if not status:
            return None
        return AgentPresence.from_redis(
            agent_id, status, calls, last_assigned,
            is_available=bool(available) and not bool(on_call),
        )

    async def get_statistics(self) -> PresenceStatistics:
        try:
            available_ids = await self.redis.smembers(AVAILABLE_KEY)
            on_call_ids = await self.redis.smembers(ON_CALL_KEY)
        except RedisError as e:
            raise PresenceBackendError(
                f"Presence statistics failed: {e}", operation="get_statistics"
            ) from e

        agents = []
        for agent_id in sorted(set(available_ids) | set(on_call_ids)):
            presence = await self.get_presence(agent_id)
            if presence is not None:
                agents.append(presence)

        return PresenceStatistics(
            total_agents=len(agents),
            available_agents=len(set(available_ids) - set(on_call_ids)),
            on_call_agents=len(on_call_ids),
            agents=agents,
        )


class InMemoryPresenceRegistry(PresenceRegistry):
    """
    Single-process presence registry guarded by one asyncio.Lock.

    Same contract as the Redis registry. Only valid when one process
    routes all calls (development, tests).
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = asyncio.Lock()
        self._agents: dict[str, AgentPresence] = {}
        self._available: set[str] = set()
        self._on_call: set[str] = set()

    def _view(self, presence: AgentPresence) -> AgentPresence:
        """Copy with the derived availability filled in."""
        agent_id = presence.agent_id
        return AgentPresence(
            agent_id=agent_id,
            status=presence.status,
            current_call_id=presence.current_call_id,
            current_calls=presence.current_calls,
            total_calls=presence.total_calls,
            last_assigned_at=presence.last_assigned_at,
            connected_at=presence.connected_at,
            session_ref=presence.session_ref,
            role=presence.role,
            skills=dict(presence.skills),
            satisfaction_score=presence.satisfaction_score,
            is_available=agent_id in self._available and agent_id not in self._on_call,
        )

    async def register_agent(self, agent_id: str, meta: SessionMeta) -> AgentPresence:
        async with self._lock:
            previous = self._agents.get(agent_id)
            on_call = agent_id in self._on_call
            presence = AgentPresence(
                agent_id=agent_id,
                status=AgentStatus.BUSY if on_call else AgentStatus.AVAILABLE,
                current_call_id=previous.current_call_id if (previous and on_call) else None,
                current_calls=previous.current_calls if previous else 0,
                total_calls=previous.total_calls if previous else 0,
                last_assigned_at=previous.last_assigned_at if previous else 0.0,
                connected_at=_utcnow(),
                session_ref=meta.session_ref,
                role=meta.role,
                skills=dict(meta.skills),
                satisfaction_score=meta.satisfaction_score,
            )
            self._agents[agent_id] = presence
            if not on_call:
                self._available.add(agent_id)
            return self._view(presence)

    async def deregister_agent(self, agent_id: str) -> Optional[AgentPresence]:
        async with self._lock:
            presence = self._agents.get(agent_id)
            if presence is None:
                return None
            view = self._view(presence)
            del self._agents[agent_id]
            self._available.discard(agent_id)
            self._on_call.discard(agent_id)
            return view

    async def set_status(self, agent_id: str, status: AgentStatus) -> PresenceUpdate:
        async with self._lock:
            presence = self._agents.get(agent_id)
            if presence is None:
                return PresenceUpdate.NOT_FOUND
            if agent_id in self._on_call and status == AgentStatus.AVAILABLE:
                return PresenceUpdate.ON_CALL
            presence.status = status
            if status == AgentStatus.AVAILABLE:
                self._available.add(agent_id)
            else:
                self._available.discard(agent_id)
            return PresenceUpdate.OK

    async def snapshot_available(self) -> list[AgentPresence]:
        async with self._lock:
            return [
                self._view(self._agents[agent_id])
                for agent_id in sorted(self._available - self._on_call)
                if self._agents[agent_id].status == AgentStatus.AVAILABLE
            ]

    async def try_claim(self, agent_id: str, call_id: Optional[str] = None) -> ClaimOutcome:
        async with self._lock:
            presence = self._agents.get(agent_id)
            if presence is None:
                return ClaimOutcome.NOT_FOUND
            if (
                agent_id not in self._available
                or agent_id in self._on_call
                or presence.status != AgentStatus.AVAILABLE
            ):
                return ClaimOutcome.CONFLICT
            self._available.discard(agent_id)
            self._on_call.add(agent_id)
            presence.status = AgentStatus.BUSY
            presence.current_call_id = call_id
            presence.current_calls += 1
            presence.total_calls += 1
            presence.last_assigned_at = self._clock()
            return ClaimOutcome.CLAIMED

    async def release(self, agent_id: str, call_id: Optional[str] = None) -> PresenceUpdate:
        async with self._lock:
            presence = self._agents.get(agent_id)
            if presence is None:
                return PresenceUpdate.NOT_FOUND
            if call_id is not None and presence.current_call_id not in (None, call_id):
                return PresenceUpdate.ON_CALL
            if agent_id not in self._on_call:
                return PresenceUpdate.OK
            self._on_call.discard(agent_id)
            presence.current_calls = max(0, presence.current_calls - 1)
            presence.current_call_id = None
            if presence.status != AgentStatus.OFFLINE:
                presence.status = AgentStatus.AVAILABLE
                self._available.add(agent_id)
            return PresenceUpdate.OK

    async def get_presence(self, agent_id: str) -> Optional[AgentPresence]:
        async with self._lock:
            presence = self._agents.get(agent_id)
            return self._view(presence) if presence else None

    async def get_statistics(self) -> PresenceStatistics:
        async with self._lock:
            agents = [self._view(self._agents[a]) for a in sorted(self._agents)]
            return PresenceStatistics(
                total_agents=len(agents),
                available_agents=len(self._available - self._on_call),
                on_call_agents=len(self._on_call),
                agents=agents,
            )


# Singleton
_registry: Optional[PresenceRegistry] = None


async def get_presence_registry() -> PresenceRegistry:
    """
    Get singleton PresenceRegistry for the configured backend.

    In development an unreachable Redis falls back to the in-memory
    registry; elsewhere it raises PresenceBackendError.
    """
    global _registry
    if _registry is not None:
        return _registry

    if settings.presence_backend == "memory":
        _registry = InMemoryPresenceRegistry()
        return _registry

    client = await get_redis()
    if client is not None:
        _registry = RedisPresenceRegistry(client)
    elif settings.is_development:
        logger.warning("Redis unavailable, using in-memory presence registry")
        _registry = InMemoryPresenceRegistry()
    else:
        raise PresenceBackendError("Redis unavailable for presence registry", operation="connect")
    return _registry


def reset_presence_registry() -> None:
    """Drop the singleton (useful for testing)."""
    global _registry
    _registry = None
