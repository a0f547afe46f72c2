"""Per-call routing state machine."""

from enum import Enum
from typing import Set


class CallRoutingState(str, Enum):
    """States a call moves through while it is routed to an agent."""

    # Initial
    NEW = "new"

    # Looking for an agent
    SELECTING = "selecting"

    # Offered to a claimed agent's device
    RINGING = "ringing"

    # Agent answered
    IN_PROGRESS = "in_progress"

    # No candidate left; caller is on hold
    EXHAUSTED = "exhausted"

    # Terminal
    ENDED = "ended"


# Valid state transitions
VALID_TRANSITIONS: dict[CallRoutingState, Set[CallRoutingState]] = {
    CallRoutingState.NEW: {
        CallRoutingState.SELECTING,
    },
    CallRoutingState.SELECTING: {
        CallRoutingState.RINGING,
        CallRoutingState.EXHAUSTED,
        CallRoutingState.ENDED,
    },
    CallRoutingState.RINGING: {
        CallRoutingState.IN_PROGRESS,
        CallRoutingState.SELECTING,  # Device failed, retry with exclusion
        CallRoutingState.ENDED,
    },
    CallRoutingState.EXHAUSTED: {
        CallRoutingState.SELECTING,  # Hold re-check
        CallRoutingState.ENDED,
    },
    CallRoutingState.IN_PROGRESS: {
        CallRoutingState.ENDED,
    },
    CallRoutingState.ENDED: set(),  # Terminal state
}


def can_transition(from_state: CallRoutingState, to_state: CallRoutingState) -> bool:
    """Check if a state transition is valid."""
    return to_state in VALID_TRANSITIONS.get(from_state, set())


def get_valid_transitions(state: CallRoutingState) -> Set[CallRoutingState]:
    """Get all valid transitions from a state."""
    return VALID_TRANSITIONS.get(state, set())


def is_terminal_state(state: CallRoutingState) -> bool:
    """Check if state is terminal (no further transitions)."""
    return state == CallRoutingState.ENDED


def has_agent_claimed(state: CallRoutingState) -> bool:
    """Check if an agent is held by the call in this state."""
    return state in {
        CallRoutingState.RINGING,
        CallRoutingState.IN_PROGRESS,
    }
