"""
Presence Event Bus

Applies agent connect/disconnect/status events to the presence registry and
fans the resulting notices out to supervisors, admins and the claimed agent.

Delivery is best-effort: notices are sent from background tasks and a failed
send is only logged. Registry outcomes never depend on delivery.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Coroutine, Optional

from app.infra.notifications import NotificationChannel
from app.core.routing.registry import PresenceRegistry
from app.core.routing.types import AgentPresence, AgentStatus, PresenceUpdate, SessionMeta

logger = logging.getLogger(__name__)

# Roles that see every presence change
SUPERVISOR_ROLES = ("supervisor", "admin")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class PresenceEventBus:
    """Presence mutations plus their notifications."""

    def __init__(
        self,
        registry: PresenceRegistry,
        channel: NotificationChannel,
        supervisor_roles: tuple[str, ...] = SUPERVISOR_ROLES,
    ):
        self.registry = registry
        self.channel = channel
        self.supervisor_roles = supervisor_roles
        self._pending: set[asyncio.Task] = set()

    # === Delivery ===

    def _dispatch(self, coro: Coroutine[Any, Any, None], description: str) -> None:
        """Schedule a send without waiting for it."""
        task = asyncio.create_task(self._deliver(coro, description))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, coro: Coroutine[Any, Any, None], description: str) -> None:
        try:
            await coro
        except Exception as e:
            logger.warning(f"Notification {description} failed: {e}")

    def _broadcast(self, event: str, data: dict[str, Any]) -> None:
        payload = {"event": event, "timestamp": _timestamp(), **data}
        for role in self.supervisor_roles:
            self._dispatch(self.channel.broadcast_to_role(role, payload), f"{event} -> {role}")

    async def drain(self) -> None:
        """Wait for in-flight notifications (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # === Presence events ===

    async def agent_connected(self, agent_id: str, meta: SessionMeta) -> AgentPresence:
        """Register the agent and announce it."""
        presence = await self.registry.register_agent(agent_id, meta)
        self._broadcast("agent:connected", {"agent_id": agent_id})
        return presence

    async def agent_disconnected(self, agent_id: str) -> Optional[AgentPresence]:
        """
        Deregister the agent and announce it.

        Returns:
            Presence as it was before removal (None if unknown)
        """
        presence = await self.registry.deregister_agent(agent_id)
        if presence is not None:
            self._broadcast("agent:disconnected", {"agent_id": agent_id})
        return presence

    async def agent_status_changed(self, agent_id: str, status: AgentStatus) -> PresenceUpdate:
        """Apply a status change and announce it when it took effect."""
        result = await self.registry.set_status(agent_id, status)
        if result == PresenceUpdate.OK:
            self._broadcast(
                "agent:status-changed", {"agent_id": agent_id, "status": status.value}
            )
        return result

    def agent_available(self, agent_id: str) -> None:
        """Announce an agent freed from a call."""
        self._broadcast("agent:available", {"agent_id": agent_id})

    # === Call events ===

    def notify_incoming_call(self, agent_id: str, call: dict[str, Any]) -> None:
        """Tell a claimed agent a call is being offered to them."""
        payload = {"event": "call:incoming", "assigned_at": _timestamp(), **call}
        self._dispatch(self.channel.notify_agent(agent_id, payload), f"call:incoming -> {agent_id}")

    def call_updated(self, call_id: str, data: dict[str, Any]) -> None:
        """Announce a call state change to supervisors."""
        self._broadcast("call:updated", {"call_id": call_id, **data})
