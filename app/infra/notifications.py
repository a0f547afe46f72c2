"""
Notification Channel

Real-time delivery to connected agent, supervisor and admin sessions.

Sessions are grouped the way the dashboard expects:
- per agent: targeted notices such as an incoming call
- per role: presence broadcasts for supervisors and admins
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional
from uuid import uuid4

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


class NotificationChannel(ABC):
    """Fire-and-forget delivery to agents and roles."""

    @abstractmethod
    async def notify_agent(self, agent_id: str, payload: dict[str, Any]) -> None:
        """Send payload to one agent's live session."""

    @abstractmethod
    async def broadcast_to_role(self, role: str, payload: dict[str, Any]) -> None:
        """Send payload to every live session with the role."""


class WebSocketNotificationChannel(NotificationChannel):
    """
    Notification channel over FastAPI WebSockets.

    One live socket per agent id; a reconnect replaces the previous socket.
    """

    def __init__(self):
        """Initialize connection tables."""
        self._sockets: dict[str, WebSocket] = {}
        self._session_refs: dict[str, str] = {}
        self._roles: dict[str, set[str]] = {}

    def connect(self, agent_id: str, role: str, websocket: WebSocket) -> str:
        """
        Track an accepted socket.

        Returns:
            Opaque session reference stored in the presence registry
        """
        self._drop(agent_id)
        session_ref = str(uuid4())
        self._sockets[agent_id] = websocket
        self._session_refs[agent_id] = session_ref
        self._roles.setdefault(role, set()).add(agent_id)
        logger.debug(f"Session {session_ref} connected for {role} {agent_id}")
        return session_ref

    def disconnect(self, agent_id: str, session_ref: Optional[str] = None) -> bool:
        """
        Forget a socket.

        A stale session_ref (the agent already reconnected) is ignored.

        Returns:
            True if the socket was removed
        """
        if session_ref is not None and self._session_refs.get(agent_id) != session_ref:
            return False
        return self._drop(agent_id)

    def _drop(self, agent_id: str) -> bool:
        if agent_id not in self._sockets:
            return False
        del self._sockets[agent_id]
        self._session_refs.pop(agent_id, None)
        for members in self._roles.values():
            members.discard(agent_id)
        return True

    def is_connected(self, agent_id: str) -> bool:
        """Check if the agent has a live socket."""
        return agent_id in self._sockets

    async def notify_agent(self, agent_id: str, payload: dict[str, Any]) -> None:
        websocket = self._sockets.get(agent_id)
        if websocket is None:
            logger.debug(f"No live session for agent {agent_id}, dropping {payload.get('event')}")
            return
        await websocket.send_json(payload)

    async def broadcast_to_role(self, role: str, payload: dict[str, Any]) -> None:
        for agent_id in list(self._roles.get(role, ())):
            websocket = self._sockets.get(agent_id)
            if websocket is None:
                continue
            try:
                await websocket.send_json(payload)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.warning(f"Broadcast to {role} {agent_id} failed: {e}")


# Singleton
_channel: Optional[WebSocketNotificationChannel] = None


def get_notification_channel() -> WebSocketNotificationChannel:
    """Get singleton WebSocketNotificationChannel."""
    global _channel
    if _channel is None:
        _channel = WebSocketNotificationChannel()
    return _channel
