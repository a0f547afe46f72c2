"""
Telephony Provider Webhooks

Twilio calls these endpoints as a call progresses. Each one answers with
TwiML immediately and hands the routing work to a background task, so the
provider is never kept waiting on agent selection.

- /voice: new inbound call -> hold, start routing
- /agent-answered: agent leg picked up -> in progress
- /dial-status: agent leg ended -> hang up, or hold and fail over
- /hold: hold music loop -> re-check for a free agent
- /call-status: final provider status -> end the call
"""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, BackgroundTasks, Depends, Form, HTTPException, Query, Request, Response, status
from twilio.request_validator import RequestValidator

from app.config import settings
from app.core.routing.errors import CallStoreError
from app.core.routing.orchestrator import CallRoutingOrchestrator, get_orchestrator
from app.core.routing.types import CallRequest, DialOutcome
from app.infra.telephony import empty_twiml, hangup_twiml, hold_music_twiml, hold_twiml

logger = logging.getLogger(__name__)

# Final provider call statuses
TERMINAL_CALL_STATUSES = {"completed", "busy", "no-answer", "failed", "canceled"}


async def verify_twilio_signature(request: Request) -> None:
    """
    Reject webhooks not signed by the provider.

    The signature covers the public URL the provider called plus the form
    parameters.
    """
    if not settings.twilio_validate_signatures:
        return

    signature = request.headers.get("X-Twilio-Signature", "")
    url = f"{settings.twilio_webhook_base_url.rstrip('/')}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    form = await request.form()

    validator = RequestValidator(settings.twilio_auth_token)
    if not signature or not validator.validate(url, dict(form), signature):
        logger.warning(f"Rejected webhook with invalid signature: {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature",
        )


router = APIRouter(
    prefix="/webhooks",
    tags=["Webhooks"],
    dependencies=[Depends(verify_twilio_signature)],
)


def _twiml(body: str) -> Response:
    return Response(content=body, media_type="application/xml")


async def _resolve_call_id(
    orchestrator: CallRoutingOrchestrator,
    call_id: Optional[str],
    call_sid: str,
) -> Optional[str]:
    """Our call id from the query string, else looked up by provider id."""
    if call_id:
        return call_id
    try:
        record = await orchestrator.call_store.find_call_by_provider_sid(call_sid)
    except CallStoreError as e:
        logger.error(f"Call lookup failed for provider call {call_sid}: {e}")
        return None
    return record.call_id if record else None


@router.post("/voice", summary="Inbound call")
async def incoming_call(
    background_tasks: BackgroundTasks,
    CallSid: str = Form(...),
    From: str = Form(""),
    CallerName: Optional[str] = Form(None),
    queue_id: Optional[str] = Query(None),
    priority: int = Query(0),
    skills: Optional[str] = Query(None, description="Comma-separated required skills"),
    orchestrator: CallRoutingOrchestrator = Depends(get_orchestrator),
) -> Response:
    """Put the caller on hold and start looking for an agent."""
    request = CallRequest(
        call_id=str(uuid4()),
        phone_number=From,
        required_skills=[s.strip() for s in skills.split(",") if s.strip()] if skills else [],
        priority=priority,
        queue_id=queue_id,
        provider_call_sid=CallSid,
        caller_name=CallerName,
    )
    logger.info(f"Incoming call {CallSid} from {From} as {request.call_id}")
    background_tasks.add_task(orchestrator.route_call, request, caller_on_hold=True)
    return _twiml(hold_twiml())


@router.post("/agent-answered", summary="Agent leg answered")
async def agent_answered(
    background_tasks: BackgroundTasks,
    CallSid: str = Form(...),
    call_id: Optional[str] = Query(None),
    orchestrator: CallRoutingOrchestrator = Depends(get_orchestrator),
) -> Response:
    """Mark the call in progress. CallSid here is the agent leg."""
    if call_id:
        background_tasks.add_task(orchestrator.handle_dial_outcome, call_id, DialOutcome.ANSWERED)
    else:
        logger.warning(f"Agent leg {CallSid} answered without a call id")
    return _twiml(empty_twiml())


@router.post("/dial-status", summary="Agent dial finished")
async def dial_status(
    background_tasks: BackgroundTasks,
    CallSid: str = Form(...),
    DialCallStatus: str = Form(...),
    call_id: Optional[str] = Query(None),
    orchestrator: CallRoutingOrchestrator = Depends(get_orchestrator),
) -> Response:
    """
    Dial action callback.

    completed ends the call. Any failure, or a status we do not recognise,
    sends the caller back to hold while the next agent is selected.
    """
    resolved = await _resolve_call_id(orchestrator, call_id, CallSid)
    if resolved is None:
        logger.warning(f"Dial status {DialCallStatus} for unknown call {CallSid}")
        return _twiml(hangup_twiml(apology=True))

    try:
        outcome = DialOutcome(DialCallStatus)
    except ValueError:
        logger.warning(f"Unknown dial status {DialCallStatus} for call {resolved}, treating as failed")
        outcome = DialOutcome.FAILED

    logger.info(f"Dial status for call {resolved}: {outcome.value}")
    if outcome in (DialOutcome.COMPLETED, DialOutcome.ANSWERED):
        background_tasks.add_task(orchestrator.end_call, resolved, "completed")
        return _twiml(hangup_twiml())

    background_tasks.add_task(
        orchestrator.handle_dial_outcome, resolved, outcome, caller_on_hold=True
    )
    return _twiml(hold_twiml())


@router.post("/hold", summary="Hold music loop")
async def hold_loop(
    background_tasks: BackgroundTasks,
    CallSid: str = Form(...),
    orchestrator: CallRoutingOrchestrator = Depends(get_orchestrator),
) -> Response:
    """Play one hold loop and re-check for a free agent."""
    call_id = await _resolve_call_id(orchestrator, None, CallSid)
    if call_id is not None:
        background_tasks.add_task(orchestrator.handle_hold_tick, call_id)
    return _twiml(hold_music_twiml())


@router.post("/call-status", summary="Call status callback")
async def call_status(
    background_tasks: BackgroundTasks,
    CallSid: str = Form(...),
    CallStatus: str = Form(...),
    orchestrator: CallRoutingOrchestrator = Depends(get_orchestrator),
) -> Response:
    """End the call on a final status (caller hung up, outbound not answered)."""
    if CallStatus in TERMINAL_CALL_STATUSES:
        call_id = await _resolve_call_id(orchestrator, None, CallSid)
        if call_id is not None:
            logger.info(f"Call {call_id} finished with provider status {CallStatus}")
            background_tasks.add_task(orchestrator.end_call, call_id, CallStatus)
    return _twiml(empty_twiml())
