"""Tests for TwiML builders and the Twilio telephony backend."""

import pytest
from unittest.mock import MagicMock, patch

import requests
from twilio.base.exceptions import TwilioRestException, TwilioException

from app.config import settings
from app.core.routing.errors import TelephonyError
from app.core.routing.types import CallRecord
from app.infra.telephony import (
    APOLOGY_MESSAGE,
    TwilioTelephonyBackend,
    dial_agent_twiml,
    empty_twiml,
    hangup_twiml,
    hold_music_twiml,
    hold_twiml,
    webhook_url,
)


@pytest.fixture(autouse=True)
def base_url():
    with patch.object(settings, "twilio_webhook_base_url", "https://router.example.com/"):
        yield


class TestTwiml:
    """Test TwiML documents returned to the provider."""

    def test_webhook_url(self):
        assert webhook_url("/webhooks/hold") == "https://router.example.com/webhooks/hold"
        assert (
            webhook_url("/webhooks/dial-status", call_id="call-1")
            == "https://router.example.com/webhooks/dial-status?call_id=call-1"
        )

    def test_hold_enqueues_caller(self):
        twiml = hold_twiml()

        assert "<Enqueue" in twiml
        assert settings.telephony_queue_name in twiml
        assert "https://router.example.com/webhooks/hold" in twiml

    def test_hold_music(self):
        assert "<Play>" in hold_music_twiml()

    def test_dial_agent(self):
        twiml = dial_agent_twiml("A1", "call-1")

        assert "<Dial" in twiml
        assert f'timeout="{settings.ring_timeout_seconds}"' in twiml
        assert "/webhooks/dial-status?call_id=call-1" in twiml
        assert "/webhooks/agent-answered?call_id=call-1" in twiml
        assert ">A1</Client>" in twiml

    def test_hangup_with_apology(self):
        twiml = hangup_twiml(apology=True)

        assert APOLOGY_MESSAGE in twiml
        assert "<Hangup" in twiml

    def test_plain_hangup(self):
        twiml = hangup_twiml()

        assert "<Say" not in twiml
        assert "<Hangup" in twiml

    def test_empty(self):
        assert "<Response" in empty_twiml()


class TestTwilioTelephonyBackend:
    """Test REST call control."""

    @pytest.fixture
    def client(self):
        return MagicMock()

    @pytest.fixture
    def backend(self, client):
        return TwilioTelephonyBackend(client=client)

    @pytest.fixture
    def call(self):
        return CallRecord(call_id="call-1", phone_number="+15550100", provider_call_sid="CA1")

    @pytest.mark.asyncio
    async def test_ring_updates_live_call(self, backend, client, call):
        await backend.ring("A1", call)

        client.calls.assert_called_with("CA1")
        twiml = client.calls.return_value.update.call_args.kwargs["twiml"]
        assert ">A1</Client>" in twiml

    @pytest.mark.asyncio
    async def test_hold(self, backend, client, call):
        await backend.hold(call)

        assert "<Enqueue" in client.calls.return_value.update.call_args.kwargs["twiml"]

    @pytest.mark.asyncio
    async def test_hangup_completes_call(self, backend, client, call):
        await backend.hangup(call)

        client.calls.return_value.update.assert_called_once_with(status="completed")

    @pytest.mark.asyncio
    async def test_hangup_with_apology(self, backend, client, call):
        await backend.hangup(call, apology=True)

        twiml = client.calls.return_value.update.call_args.kwargs["twiml"]
        assert APOLOGY_MESSAGE in twiml

    @pytest.mark.asyncio
    async def test_connect_places_call(self, backend, client, call):
        client.calls.create.return_value.sid = "CA-new"

        with patch.object(settings, "twilio_caller_id", "+15550000"):
            sid = await backend.connect("A1", call)

        assert sid == "CA-new"
        kwargs = client.calls.create.call_args.kwargs
        assert kwargs["to"] == "+15550100"
        assert kwargs["from_"] == "+15550000"
        assert kwargs["status_callback"].endswith("/webhooks/call-status")

    @pytest.mark.asyncio
    async def test_connect_without_caller_id(self, backend, client, call):
        with patch.object(settings, "twilio_caller_id", ""):
            with pytest.raises(TelephonyError):
                await backend.connect("A1", call)

        client.calls.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_provider_error_wrapped(self, backend, client, call):
        client.calls.return_value.update.side_effect = TwilioRestException(
            404, "/Calls/CA1", msg="not found", code=20404
        )

        with pytest.raises(TelephonyError) as exc_info:
            await backend.ring("A1", call)

        assert exc_info.value.operation == "ring"
        assert exc_info.value.call_id == "call-1"
        assert exc_info.value.agent_id == "A1"

    @pytest.mark.parametrize(
        "error",
        [
            requests.exceptions.ConnectionError("connection refused"),
            requests.exceptions.Timeout("read timed out"),
            TwilioException("unexpected response"),
        ],
    )
    @pytest.mark.asyncio
    async def test_network_error_wrapped(self, backend, client, call, error):
        """Test transport failures surface as TelephonyError like REST errors."""
        client.calls.return_value.update.side_effect = error

        with pytest.raises(TelephonyError) as exc_info:
            await backend.ring("A1", call)

        assert exc_info.value.operation == "ring"
        assert exc_info.value.agent_id == "A1"
        assert exc_info.value.__cause__ is error

    @pytest.mark.asyncio
    async def test_missing_provider_sid(self, backend, client):
        call = CallRecord(call_id="call-1", phone_number="+15550100")

        with pytest.raises(TelephonyError):
            await backend.hold(call)

        client.calls.assert_not_called()

    @pytest.mark.asyncio
    async def test_unconfigured_client(self, call):
        with patch.object(settings, "twilio_account_sid", ""):
            backend = TwilioTelephonyBackend()

        with pytest.raises(TelephonyError):
            await backend.ring("A1", call)
