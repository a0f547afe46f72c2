"""
Agent Session Endpoints

- WS /agents/{agent_id}/ws: live agent (or supervisor) session. Agents are
  registered in the presence registry for the lifetime of the socket.
- GET /agents/presence: who is connected, available and on a call.

Client messages on the socket:
    {"type": "status-update", "status": "available" | "busy" | "break" | "offline"}
    {"type": "call-ended", "call_id": "..."}
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from app.core.routing.errors import CallStoreError, PresenceBackendError
from app.core.routing.orchestrator import CallRoutingOrchestrator, get_orchestrator
from app.core.routing.stores import AgentDirectory, SqlAgentDirectory
from app.core.routing.types import AgentStatus, PresenceUpdate, SessionMeta
from app.infra.notifications import WebSocketNotificationChannel, get_notification_channel

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agents", tags=["Agents"])

# Roles that take calls; others only receive broadcasts
ROUTABLE_ROLES = ("agent",)


def get_agent_directory() -> AgentDirectory:
    """Agent profile source."""
    return SqlAgentDirectory()


@router.get("/presence", summary="Presence statistics")
async def presence_statistics(
    orchestrator: CallRoutingOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Counts plus one row per connected agent."""
    try:
        stats = await orchestrator.registry.get_statistics()
    except PresenceBackendError as e:
        logger.error(f"Presence statistics unavailable: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Presence registry unavailable",
        )
    return stats.to_dict()


async def _session_meta(
    directory: AgentDirectory,
    agent_id: str,
    role: str,
    session_ref: str,
) -> SessionMeta:
    try:
        profile = await directory.get_agent_profile(agent_id)
    except CallStoreError as e:
        logger.warning(f"No profile for agent {agent_id}, registering without skills: {e}")
        profile = None

    if profile is None:
        return SessionMeta(session_ref=session_ref, role=role)
    profile.session_ref = session_ref
    return profile


async def _handle_message(
    orchestrator: CallRoutingOrchestrator,
    websocket: WebSocket,
    agent_id: str,
    message: dict[str, Any],
) -> None:
    message_type = message.get("type")

    if message_type == "status-update":
        try:
            new_status = AgentStatus(message.get("status"))
        except ValueError:
            await websocket.send_json({"event": "error", "detail": "Unknown status"})
            return

        result = await orchestrator.event_bus.agent_status_changed(agent_id, new_status)
        await websocket.send_json(
            {"event": "status-update:result", "status": new_status.value, "result": result.value}
        )
        if result == PresenceUpdate.OK and new_status == AgentStatus.AVAILABLE:
            await orchestrator.recheck_waiting_calls()

    elif message_type == "call-ended":
        call_id = message.get("call_id")
        if not call_id:
            await websocket.send_json({"event": "error", "detail": "call_id required"})
            return
        result = await orchestrator.end_call(call_id, "agent-ended")
        await websocket.send_json({"event": "call-ended:result", **result.to_dict()})

    else:
        await websocket.send_json({"event": "error", "detail": f"Unknown message type {message_type}"})


@router.websocket("/{agent_id}/ws")
async def agent_session(
    websocket: WebSocket,
    agent_id: str,
    role: str = Query("agent"),
    orchestrator: CallRoutingOrchestrator = Depends(get_orchestrator),
    channel: WebSocketNotificationChannel = Depends(get_notification_channel),
    directory: AgentDirectory = Depends(get_agent_directory),
) -> None:
    """Agent session: register on connect, deregister on disconnect."""
    await websocket.accept()
    session_ref = channel.connect(agent_id, role, websocket)
    routable = role in ROUTABLE_ROLES

    try:
        if routable:
            meta = await _session_meta(directory, agent_id, role, session_ref)
            presence = await orchestrator.event_bus.agent_connected(agent_id, meta)
            await websocket.send_json({"event": "agent:registered", **presence.to_dict()})
            if presence.is_available:
                await orchestrator.recheck_waiting_calls()

        while True:
            message = await websocket.receive_json()
            if not routable:
                continue
            await _handle_message(orchestrator, websocket, agent_id, message)

    except WebSocketDisconnect:
        logger.info(f"{role} {agent_id} disconnected")
    except PresenceBackendError as e:
        logger.error(f"Presence failure in session for {agent_id}: {e}")
        await websocket.close(code=1011)
    finally:
        # A newer session for the same agent keeps the agent registered
        if channel.disconnect(agent_id, session_ref) and routable:
            try:
                await orchestrator.handle_agent_disconnected(agent_id)
            except PresenceBackendError as e:
                logger.error(f"Failed to deregister agent {agent_id}: {e}")
