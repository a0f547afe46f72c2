"""
Call routing core.

- Registry: shared agent presence with atomic claims
- Selector: pure strategy-based agent choice
- Coordinator: selection + claim with conflict retry
- Events: presence mutations and their notifications

The orchestrator and stores live in their own modules since they pull in
the database and telephony layers.
"""

from app.core.routing.state import CallRoutingState, can_transition, is_terminal_state
from app.core.routing.types import (
    AgentPresence,
    AgentStatus,
    CallAssignmentAttempt,
    CallDirection,
    CallRecord,
    CallRequest,
    ClaimOutcome,
    DialOutcome,
    PresenceUpdate,
    QueueInfo,
    RoutingDecision,
    RoutingStrategy,
    SessionMeta,
)
from app.core.routing.errors import (
    CallStoreError,
    PresenceBackendError,
    RoutingBackendError,
    TelephonyError,
)
from app.core.routing.registry import (
    InMemoryPresenceRegistry,
    PresenceRegistry,
    RedisPresenceRegistry,
    get_presence_registry,
)
from app.core.routing.selector import AgentSelector
from app.core.routing.events import PresenceEventBus
from app.core.routing.coordinator import AssignmentCoordinator, AssignmentOutcome, AssignmentResult

__all__ = [
    # State
    "CallRoutingState",
    "can_transition",
    "is_terminal_state",
    # Types
    "AgentPresence",
    "AgentStatus",
    "CallAssignmentAttempt",
    "CallDirection",
    "CallRecord",
    "CallRequest",
    "ClaimOutcome",
    "DialOutcome",
    "PresenceUpdate",
    "QueueInfo",
    "RoutingDecision",
    "RoutingStrategy",
    "SessionMeta",
    # Errors
    "CallStoreError",
    "PresenceBackendError",
    "RoutingBackendError",
    "TelephonyError",
    # Registry
    "PresenceRegistry",
    "RedisPresenceRegistry",
    "InMemoryPresenceRegistry",
    "get_presence_registry",
    # Selection
    "AgentSelector",
    "AssignmentCoordinator",
    "AssignmentOutcome",
    "AssignmentResult",
    # Events
    "PresenceEventBus",
]
