"""
Call Endpoints

Outbound calls placed on behalf of an agent.
"""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from app.core.routing.errors import CallStoreError, PresenceBackendError
from app.core.routing.orchestrator import CallRoutingOrchestrator, get_orchestrator
from app.core.routing.state import CallRoutingState
from app.core.routing.types import CallDirection, CallRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calls", tags=["Calls"])


class OutboundCallRequest(BaseModel):
    """Outbound call parameters."""
    agent_id: str = Field(..., min_length=1)
    phone_number: str = Field(..., min_length=3)
    caller_name: Optional[str] = None
    queue_id: Optional[str] = None


class CallResponse(BaseModel):
    """Routing state of a call."""
    call_id: str
    state: Optional[str]
    agent_id: Optional[str] = None
    strategy: Optional[str] = None
    message: str = ""


@router.post(
    "/outbound",
    response_model=CallResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place an outbound call",
    responses={
        409: {"description": "Agent is not available"},
        503: {"description": "Call store or presence registry unavailable"},
    },
)
async def place_outbound_call(
    body: OutboundCallRequest,
    orchestrator: CallRoutingOrchestrator = Depends(get_orchestrator),
) -> CallResponse:
    """Claim the agent and dial the customer, bridging to the agent's phone."""
    request = CallRequest(
        call_id=str(uuid4()),
        phone_number=body.phone_number,
        direction=CallDirection.OUTBOUND,
        queue_id=body.queue_id,
        caller_name=body.caller_name,
    )

    try:
        result = await orchestrator.place_outbound_call(request, body.agent_id)
    except (CallStoreError, PresenceBackendError) as e:
        logger.error(f"Outbound call for agent {body.agent_id} failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Routing backend unavailable",
        )

    if result.state != CallRoutingState.RINGING:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.message)

    return CallResponse(**result.to_dict())
