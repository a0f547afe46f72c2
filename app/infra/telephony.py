"""
Telephony Backend

Call control through the telephony provider (Twilio).

The router never waits on the provider in a request: webhooks answer with
TwiML right away and later changes (ring an agent, back to hold, hang up) are
pushed as live call updates through the REST API.

The Twilio client is synchronous, so every REST call runs in the default
executor.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional, TypeVar
from urllib.parse import urlencode

from requests.exceptions import RequestException
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client as TwilioClient
from twilio.twiml.voice_response import Dial, VoiceResponse

from app.config import settings
from app.core.routing.errors import TelephonyError
from app.core.routing.types import CallRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

APOLOGY_MESSAGE = (
    "We are sorry, we are unable to connect your call right now. "
    "Please try again later. Goodbye."
)


# === TwiML ===

def webhook_url(path: str, **params: str) -> str:
    """Absolute URL of one of our webhooks."""
    url = f"{settings.twilio_webhook_base_url.rstrip('/')}{path}"
    if params:
        url = f"{url}?{urlencode(params)}"
    return url


def hold_twiml() -> str:
    """Put the caller in the provider-side hold queue."""
    response = VoiceResponse()
    response.enqueue(
        settings.telephony_queue_name,
        wait_url=webhook_url("/webhooks/hold"),
        wait_url_method="POST",
    )
    return str(response)


def hold_music_twiml() -> str:
    """One hold loop; the provider requests it again when it finishes."""
    response = VoiceResponse()
    response.play(settings.hold_music_url)
    return str(response)


def dial_agent_twiml(agent_id: str, call_id: str) -> str:
    """
    Ring an agent's soft phone.

    The agent leg reports when it is answered; the dial action reports how
    the dial ended (completed, busy, no-answer, failed, canceled).
    """
    response = VoiceResponse()
    dial = Dial(
        timeout=settings.ring_timeout_seconds,
        action=webhook_url("/webhooks/dial-status", call_id=call_id),
        method="POST",
    )
    dial.client(
        agent_id,
        status_callback_event="answered",
        status_callback=webhook_url("/webhooks/agent-answered", call_id=call_id),
        status_callback_method="POST",
    )
    response.append(dial)
    return str(response)


def hangup_twiml(apology: bool = False) -> str:
    """End the call, optionally apologizing first."""
    response = VoiceResponse()
    if apology:
        response.say(APOLOGY_MESSAGE)
    response.hangup()
    return str(response)


def empty_twiml() -> str:
    """Acknowledge a callback without changing the call."""
    return str(VoiceResponse())


# === Backend ===

class TelephonyBackend(ABC):
    """Provider call control used by the orchestrator."""

    @abstractmethod
    async def ring(self, agent_id: str, call: CallRecord) -> None:
        """Ring the agent's device for a call waiting on hold."""

    @abstractmethod
    async def connect(self, agent_id: str, call: CallRecord) -> str:
        """
        Place an outbound call and bridge it to the agent.

        Returns:
            Provider call id
        """

    @abstractmethod
    async def hold(self, call: CallRecord) -> None:
        """Send the caller back to hold."""

    @abstractmethod
    async def hangup(self, call: CallRecord, apology: bool = False) -> None:
        """End the call."""


class TwilioTelephonyBackend(TelephonyBackend):
    """TelephonyBackend over the Twilio REST API."""

    def __init__(self, client: Optional[TwilioClient] = None):
        if client is None and settings.twilio_account_sid and settings.twilio_auth_token:
            client = TwilioClient(settings.twilio_account_sid, settings.twilio_auth_token)
        self._client = client

    async def _run(
        self,
        operation: str,
        call: CallRecord,
        fn: Callable[[TwilioClient], T],
        agent_id: Optional[str] = None,
    ) -> T:
        if self._client is None:
            raise TelephonyError(
                "Twilio client not configured",
                operation=operation,
                call_id=call.call_id,
                agent_id=agent_id,
            )

        client = self._client
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, lambda: fn(client))
        except TwilioRestException as e:
            logger.error(
                f"Twilio {operation} failed for call {call.call_id} "
                f"(agent={agent_id}): {e.code} {e.msg}"
            )
            raise TelephonyError(
                f"Twilio {operation} failed: {e.msg}",
                operation=operation,
                call_id=call.call_id,
                agent_id=agent_id,
            ) from e
        except (TwilioException, RequestException) as e:
            logger.error(
                f"Twilio {operation} failed for call {call.call_id} "
                f"(agent={agent_id}): {type(e).__name__} {e}"
            )
            raise TelephonyError(
                f"Twilio {operation} failed: {e}",
                operation=operation,
                call_id=call.call_id,
                agent_id=agent_id,
            ) from e

    def _require_sid(self, operation: str, call: CallRecord) -> str:
        if not call.provider_call_sid:
            raise TelephonyError(
                "Call has no provider call id", operation=operation, call_id=call.call_id
            )
        return call.provider_call_sid

    async def ring(self, agent_id: str, call: CallRecord) -> None:
        sid = self._require_sid("ring", call)
        twiml = dial_agent_twiml(agent_id, call.call_id)
        await self._run("ring", call, lambda c: c.calls(sid).update(twiml=twiml), agent_id)
        logger.info(f"Ringing agent {agent_id} for call {call.call_id}")

    async def connect(self, agent_id: str, call: CallRecord) -> str:
        if not settings.twilio_caller_id:
            raise TelephonyError(
                "No outbound caller id configured",
                operation="connect",
                call_id=call.call_id,
                agent_id=agent_id,
            )

        twiml = dial_agent_twiml(agent_id, call.call_id)
        created = await self._run(
            "connect",
            call,
            lambda c: c.calls.create(
                to=call.phone_number,
                from_=settings.twilio_caller_id,
                twiml=twiml,
                status_callback=webhook_url("/webhooks/call-status"),
                status_callback_method="POST",
            ),
            agent_id,
        )
        logger.info(f"Outbound call {call.call_id} placed for agent {agent_id}: {created.sid}")
        return created.sid

    async def hold(self, call: CallRecord) -> None:
        sid = self._require_sid("hold", call)
        twiml = hold_twiml()
        await self._run("hold", call, lambda c: c.calls(sid).update(twiml=twiml))

    async def hangup(self, call: CallRecord, apology: bool = False) -> None:
        sid = self._require_sid("hangup", call)
        if apology:
            twiml = hangup_twiml(apology=True)
            await self._run("hangup", call, lambda c: c.calls(sid).update(twiml=twiml))
        else:
            await self._run("hangup", call, lambda c: c.calls(sid).update(status="completed"))


# Singleton
_telephony: Optional[TwilioTelephonyBackend] = None


def get_telephony_backend() -> TwilioTelephonyBackend:
    """Get singleton TwilioTelephonyBackend."""
    global _telephony
    if _telephony is None:
        _telephony = TwilioTelephonyBackend()
    return _telephony
