"""Tests for the presence event bus."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from app.core.routing.events import PresenceEventBus
from app.core.routing.registry import InMemoryPresenceRegistry
from app.core.routing.types import AgentStatus, PresenceUpdate, SessionMeta


@pytest.fixture
def channel():
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


def broadcasts(channel):
    """(role, event) pairs sent so far."""
    return [(c.args[0], c.args[1]["event"]) for c in channel.broadcast_to_role.await_args_list]


class TestPresenceEvents:
    @pytest.mark.asyncio
    async def test_connect_registers_and_broadcasts(self, event_bus, registry, channel):
        presence = await event_bus.agent_connected("A1", SessionMeta(session_ref="s1"))
        await event_bus.drain()

        assert presence.is_available
        assert (await registry.get_presence("A1")).session_ref == "s1"
        assert broadcasts(channel) == [
            ("supervisor", "agent:connected"),
            ("admin", "agent:connected"),
        ]

    @pytest.mark.asyncio
    async def test_disconnect_returns_previous_presence(self, event_bus, registry, channel):
        await event_bus.agent_connected("A1", SessionMeta())
        await registry.try_claim("A1", "call-1")

        presence = await event_bus.agent_disconnected("A1")
        await event_bus.drain()

        assert presence.current_call_id == "call-1"
        assert await registry.get_presence("A1") is None
        assert ("supervisor", "agent:disconnected") in broadcasts(channel)

    @pytest.mark.asyncio
    async def test_disconnect_unknown_agent_is_silent(self, event_bus, channel):
        assert await event_bus.agent_disconnected("ghost") is None
        await event_bus.drain()

        channel.broadcast_to_role.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_status_change(self, event_bus, registry, channel):
        await event_bus.agent_connected("A1", SessionMeta())

        result = await event_bus.agent_status_changed("A1", AgentStatus.BREAK)
        await event_bus.drain()

        assert result == PresenceUpdate.OK
        assert not (await registry.get_presence("A1")).is_available
        payload = channel.broadcast_to_role.await_args.args[1]
        assert payload["event"] == "agent:status-changed"
        assert payload["status"] == "break"

    @pytest.mark.asyncio
    async def test_rejected_status_change_not_broadcast(self, event_bus, registry, channel):
        await event_bus.agent_connected("A1", SessionMeta())
        await registry.try_claim("A1", "call-1")
        await event_bus.drain()
        channel.broadcast_to_role.reset_mock()

        result = await event_bus.agent_status_changed("A1", AgentStatus.AVAILABLE)
        await event_bus.drain()

        assert result == PresenceUpdate.ON_CALL
        channel.broadcast_to_role.assert_not_awaited()


class TestDelivery:
    @pytest.mark.asyncio
    async def test_incoming_call_notice(self, event_bus, channel):
        event_bus.notify_incoming_call("A1", {"call_id": "call-1"})
        await event_bus.drain()

        agent_id, payload = channel.notify_agent.await_args.args
        assert agent_id == "A1"
        assert payload["event"] == "call:incoming"
        assert payload["call_id"] == "call-1"
        assert "assigned_at" in payload

    @pytest.mark.asyncio
    async def test_failed_delivery_is_swallowed(self, event_bus, channel):
        """Test a broken socket never fails the presence write."""
        channel.broadcast_to_role = AsyncMock(side_effect=RuntimeError("socket closed"))

        presence = await event_bus.agent_connected("A1", SessionMeta())
        await event_bus.drain()

        assert presence.agent_id == "A1"

    @pytest.mark.asyncio
    async def test_call_updated(self, event_bus, channel):
        event_bus.call_updated("call-1", {"state": "ringing", "agent_id": "A1"})
        await event_bus.drain()

        payload = channel.broadcast_to_role.await_args.args[1]
        assert payload["event"] == "call:updated"
        assert payload["call_id"] == "call-1"
        assert payload["state"] == "ringing"
