"""Tests for the agent session and outbound call endpoints."""

import asyncio

import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, MagicMock

from app.api.routes.agents import get_agent_directory
from app.core.routing.coordinator import AssignmentCoordinator
from app.core.routing.errors import CallStoreError, PresenceBackendError
from app.core.routing.events import PresenceEventBus
from app.core.routing.orchestrator import CallRoutingOrchestrator, RoutingResult, get_orchestrator
from app.core.routing.registry import InMemoryPresenceRegistry
from app.core.routing.selector import AgentSelector
from app.core.routing.state import CallRoutingState
from app.core.routing.types import SessionMeta
from app.infra.notifications import WebSocketNotificationChannel, get_notification_channel
from app.main import app


class TestOutboundCalls:
    """Test POST /calls/outbound."""

    @pytest.fixture
    def orchestrator(self):
        mock = MagicMock()
        mock.place_outbound_call = AsyncMock()
        return mock

    @pytest.fixture
    def client(self, orchestrator):
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator
        yield TestClient(app)
        app.dependency_overrides.clear()

    def test_dialing(self, client, orchestrator):
        orchestrator.place_outbound_call.return_value = RoutingResult(
            "out-1", CallRoutingState.RINGING, agent_id="A1", message="dialing"
        )

        response = client.post(
            "/calls/outbound", json={"agent_id": "A1", "phone_number": "+15550199"}
        )

        assert response.status_code == 201
        assert response.json()["state"] == "ringing"
        request, agent_id = orchestrator.place_outbound_call.await_args.args
        assert agent_id == "A1"
        assert request.phone_number == "+15550199"

    def test_agent_unavailable(self, client, orchestrator):
        orchestrator.place_outbound_call.return_value = RoutingResult(
            "out-1", CallRoutingState.ENDED, message="agent A1 unavailable (conflict)"
        )

        response = client.post(
            "/calls/outbound", json={"agent_id": "A1", "phone_number": "+15550199"}
        )

        assert response.status_code == 409

    @pytest.mark.parametrize("error", [CallStoreError("db down"), PresenceBackendError("redis down")])
    def test_backend_failure(self, client, orchestrator, error):
        orchestrator.place_outbound_call.side_effect = error

        response = client.post(
            "/calls/outbound", json={"agent_id": "A1", "phone_number": "+15550199"}
        )

        assert response.status_code == 503

    def test_missing_agent(self, client):
        response = client.post("/calls/outbound", json={"phone_number": "+15550199"})

        assert response.status_code == 422


class TestAgentSession:
    """Test the agent WebSocket session against an in-memory registry."""

    @pytest.fixture
    def registry(self):
        return InMemoryPresenceRegistry()

    @pytest.fixture
    def orchestrator(self, registry):
        channel = MagicMock()
        channel.notify_agent = AsyncMock()
        channel.broadcast_to_role = AsyncMock()
        event_bus = PresenceEventBus(registry, channel)
        call_store = MagicMock()
        call_store.find_waiting_calls = AsyncMock(return_value=[])
        return CallRoutingOrchestrator(
            registry=registry,
            coordinator=AssignmentCoordinator(registry, AgentSelector(), event_bus),
            call_store=call_store,
            queue_store=MagicMock(),
            telephony=MagicMock(),
            event_bus=event_bus,
            ring_watchdog_seconds=None,
        )

    @pytest.fixture
    def directory(self):
        mock = MagicMock()
        mock.get_agent_profile = AsyncMock(
            return_value=SessionMeta(skills={"billing": 4}, satisfaction_score=4.5)
        )
        return mock

    @pytest.fixture
    def client(self, orchestrator, directory):
        channel = WebSocketNotificationChannel()
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator
        app.dependency_overrides[get_notification_channel] = lambda: channel
        app.dependency_overrides[get_agent_directory] = lambda: directory
        yield TestClient(app)
        app.dependency_overrides.clear()

    def test_register_and_deregister(self, client, registry, orchestrator):
        with client.websocket_connect("/agents/A1/ws") as websocket:
            registered = websocket.receive_json()
            assert registered["event"] == "agent:registered"
            assert registered["agent_id"] == "A1"
            assert registered["is_available"] is True

            presence = asyncio.run(registry.get_presence("A1"))
            assert presence.skills == {"billing": 4}
            assert presence.satisfaction_score == 4.5

        assert asyncio.run(registry.get_presence("A1")) is None
        orchestrator.call_store.find_waiting_calls.assert_awaited()

    def test_status_update(self, client, registry):
        with client.websocket_connect("/agents/A1/ws") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "status-update", "status": "break"})
            reply = websocket.receive_json()

            assert reply == {"event": "status-update:result", "status": "break", "result": "ok"}
            assert not asyncio.run(registry.get_presence("A1")).is_available

    def test_unknown_status(self, client):
        with client.websocket_connect("/agents/A1/ws") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "status-update", "status": "napping"})

            assert websocket.receive_json()["event"] == "error"

    def test_unknown_message_type(self, client):
        with client.websocket_connect("/agents/A1/ws") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "dance"})

            assert websocket.receive_json()["event"] == "error"

    def test_supervisor_not_registered(self, client, registry):
        with client.websocket_connect("/agents/S1/ws?role=supervisor"):
            assert asyncio.run(registry.get_presence("S1")) is None

    def test_presence_statistics(self, client, registry):
        asyncio.run(registry.register_agent("A1", SessionMeta()))

        response = client.get("/agents/presence")

        assert response.status_code == 200
        data = response.json()
        assert data["total_agents"] == 1
        assert data["available_agents"] == 1
        assert data["agents"][0]["agent_id"] == "A1"
