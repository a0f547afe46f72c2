"""
Routing Types

Value objects shared by the presence registry, selector, coordinator and
orchestrator. Expected outcomes (claim conflicts, missing agents, exhaustion)
are represented here as enums rather than exceptions.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from app.core.routing.state import CallRoutingState


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class AgentStatus(str, Enum):
    """Agent availability status."""

    AVAILABLE = "available"
    BUSY = "busy"
    BREAK = "break"
    OFFLINE = "offline"


class RoutingStrategy(str, Enum):
    """Queue routing strategy."""

    ROUND_ROBIN = "round_robin"
    SKILLS_BASED = "skills_based"
    WEIGHTED = "weighted"
    PRIORITY = "priority"


class CallDirection(str, Enum):
    """Direction of a call relative to the call center."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class DialOutcome(str, Enum):
    """Outcome of ringing an agent device, as reported by the provider."""

    ANSWERED = "answered"
    COMPLETED = "completed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_failure(self) -> bool:
        """Device did not take the call."""
        return self in (
            DialOutcome.BUSY,
            DialOutcome.NO_ANSWER,
            DialOutcome.FAILED,
            DialOutcome.CANCELED,
        )


class ClaimOutcome(str, Enum):
    """Result of an atomic claim attempt."""

    CLAIMED = "claimed"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


class PresenceUpdate(str, Enum):
    """Result of a non-claim presence write."""

    OK = "ok"
    NOT_FOUND = "not_found"
    ON_CALL = "on_call"


@dataclass
class SessionMeta:
    """Data captured when an agent session connects."""

    session_ref: str = ""
    role: str = "agent"
    skills: dict[str, int] = field(default_factory=dict)
    satisfaction_score: Optional[float] = None


@dataclass
class AgentPresence:
    """
    Presence of one connected agent.

    Attributes:
        agent_id: Stable external agent identifier.
        status: Current AgentStatus.
        current_call_id: Call the agent is claimed for, if any.
        current_calls: Concurrent calls (never below zero).
        total_calls: Lifetime claims.
        last_assigned_at: Epoch seconds of the last claim, 0.0 if never.
        connected_at: When the current session connected.
        session_ref: Opaque handle to the live connection.
        role: Session role (agent, supervisor, admin).
        skills: Skill name -> level (1-5).
        satisfaction_score: Performance score used by weighted routing.
        is_available: In the available set and not on a call.
    """

    agent_id: str
    status: AgentStatus = AgentStatus.AVAILABLE
    current_call_id: Optional[str] = None
    current_calls: int = 0
    total_calls: int = 0
    last_assigned_at: float = 0.0
    connected_at: Optional[datetime] = None
    session_ref: str = ""
    role: str = "agent"
    skills: dict[str, int] = field(default_factory=dict)
    satisfaction_score: Optional[float] = None
    is_available: bool = False

    def status_mapping(self) -> dict[str, str]:
        """Flatten the session fields for a Redis hash."""
        return {
            "status": self.status.value,
            "current_call_id": self.current_call_id or "",
            "connected_at": self.connected_at.isoformat() if self.connected_at else "",
            "session_ref": self.session_ref,
            "role": self.role,
            "skills": json.dumps(self.skills),
            "satisfaction_score": (
                "" if self.satisfaction_score is None else str(self.satisfaction_score)
            ),
        }

    @classmethod
    def from_redis(
        cls,
        agent_id: str,
        status: dict[str, str],
        calls: dict[str, str],
        last_assigned: Optional[str],
        is_available: bool = False,
    ) -> "AgentPresence":
        """Build from the status hash, calls hash and last-assigned value."""
        connected_at = status.get("connected_at") or None
        satisfaction = status.get("satisfaction_score") or None
        return cls(
            agent_id=agent_id,
            status=AgentStatus(status.get("status") or AgentStatus.OFFLINE.value),
            current_call_id=status.get("current_call_id") or None,
            current_calls=max(0, int(calls.get("current_calls") or 0)),
            total_calls=int(calls.get("total_calls") or 0),
            last_assigned_at=float(last_assigned or 0),
            connected_at=datetime.fromisoformat(connected_at) if connected_at else None,
            session_ref=status.get("session_ref", ""),
            role=status.get("role") or "agent",
            skills=json.loads(status.get("skills") or "{}"),
            satisfaction_score=float(satisfaction) if satisfaction else None,
            is_available=is_available,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "agent_id": self.agent_id,
            "status": self.status.value,
            "current_call_id": self.current_call_id,
            "current_calls": self.current_calls,
            "total_calls": self.total_calls,
            "last_assigned_at": self.last_assigned_at,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "is_available": self.is_available,
        }


@dataclass
class PresenceStatistics:
    """Point-in-time counts over the registry."""

    total_agents: int
    available_agents: int
    on_call_agents: int
    agents: list[AgentPresence] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_agents": self.total_agents,
            "available_agents": self.available_agents,
            "on_call_agents": self.on_call_agents,
            "agents": [agent.to_dict() for agent in self.agents],
        }


@dataclass
class CallRequest:
    """Per-call inputs supplied by whoever hands a call to the router."""

    call_id: str
    phone_number: str
    direction: CallDirection = CallDirection.INBOUND
    required_skills: list[str] = field(default_factory=list)
    priority: int = 0
    queue_id: Optional[str] = None
    provider_call_sid: Optional[str] = None
    caller_name: Optional[str] = None

    def __post_init__(self) -> None:
        self.priority = max(0, min(10, int(self.priority)))


@dataclass
class CallAssignmentAttempt:
    """
    Per-call assignment history.

    Agents in excluded_agent_ids have already been offered this call and
    failed; they are never offered it again.
    """

    call_id: str
    excluded_agent_ids: list[str] = field(default_factory=list)
    retry_count: int = 0
    last_failure_reason: Optional[str] = None

    def exclude(self, agent_id: str, reason: str) -> None:
        """Record a failed offer to agent_id."""
        if agent_id not in self.excluded_agent_ids:
            self.excluded_agent_ids.append(agent_id)
        self.retry_count += 1
        self.last_failure_reason = reason


@dataclass(frozen=True)
class RoutingDecision:
    """Selector output: an agent and the strategy applied, or nothing."""

    agent: Optional[AgentPresence] = None
    strategy: Optional[RoutingStrategy] = None

    def __post_init__(self) -> None:
        if (self.agent is None) != (self.strategy is None):
            raise ValueError("RoutingDecision needs both agent and strategy, or neither")

    @classmethod
    def chosen(cls, agent: AgentPresence, strategy: RoutingStrategy) -> "RoutingDecision":
        return cls(agent=agent, strategy=strategy)

    @classmethod
    def none(cls) -> "RoutingDecision":
        return cls()

    @property
    def has_agent(self) -> bool:
        return self.agent is not None

    @property
    def agent_id(self) -> Optional[str]:
        return self.agent.agent_id if self.agent else None


@dataclass
class QueueInfo:
    """Queue as read from the queue store. The router never writes it."""

    queue_id: str
    strategy: RoutingStrategy = RoutingStrategy.ROUND_ROBIN
    member_agent_ids: list[str] = field(default_factory=list)
    weights: dict[str, float] = field(default_factory=dict)
    skills_required: list[str] = field(default_factory=list)


@dataclass
class CallRecord:
    """
    Persisted call document.

    Carries the routing state and the assignment attempt so that any worker
    can pick up the next provider event for the call.
    """

    call_id: str
    phone_number: str
    direction: CallDirection = CallDirection.INBOUND
    state: CallRoutingState = CallRoutingState.NEW
    provider_call_sid: Optional[str] = None
    queue_id: Optional[str] = None
    priority: int = 0
    required_skills: list[str] = field(default_factory=list)
    caller_name: Optional[str] = None
    assigned_agent_id: Optional[str] = None
    strategy: Optional[RoutingStrategy] = None
    excluded_agent_ids: list[str] = field(default_factory=list)
    retry_count: int = 0
    last_failure_reason: Optional[str] = None
    end_reason: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_request(cls, request: CallRequest, queue_id: str) -> "CallRecord":
        """Create the initial record for a new call."""
        return cls(
            call_id=request.call_id,
            phone_number=request.phone_number,
            direction=request.direction,
            provider_call_sid=request.provider_call_sid,
            queue_id=request.queue_id or queue_id,
            priority=request.priority,
            required_skills=list(request.required_skills),
            caller_name=request.caller_name,
        )

    def attempt(self) -> CallAssignmentAttempt:
        """Current assignment attempt for this call."""
        return CallAssignmentAttempt(
            call_id=self.call_id,
            excluded_agent_ids=list(self.excluded_agent_ids),
            retry_count=self.retry_count,
            last_failure_reason=self.last_failure_reason,
        )

    def apply_attempt(self, attempt: CallAssignmentAttempt) -> dict[str, Any]:
        """Copy an attempt onto the record and return the store patch."""
        self.excluded_agent_ids = list(attempt.excluded_agent_ids)
        self.retry_count = attempt.retry_count
        self.last_failure_reason = attempt.last_failure_reason
        return {
            "excluded_agent_ids": self.excluded_agent_ids,
            "retry_count": self.retry_count,
            "last_failure_reason": self.last_failure_reason,
        }

    def to_request(self) -> CallRequest:
        """Rebuild the routing inputs from the stored record."""
        return CallRequest(
            call_id=self.call_id,
            phone_number=self.phone_number,
            direction=self.direction,
            required_skills=list(self.required_skills),
            priority=self.priority,
            queue_id=self.queue_id,
            provider_call_sid=self.provider_call_sid,
            caller_name=self.caller_name,
        )
