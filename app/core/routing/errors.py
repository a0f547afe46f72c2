"""
Routing Backend Errors

Only backend failures are exceptions. Claim conflicts, unknown agents and
exhausted candidates are returned as values (see types.py).
"""

from typing import Optional


class RoutingBackendError(Exception):
    """A collaborator (registry store, telephony, call store) failed."""

    def __init__(
        self,
        message: str,
        *,
        operation: str = "",
        call_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.operation = operation
        self.call_id = call_id
        self.agent_id = agent_id

    def context(self) -> dict[str, Optional[str]]:
        """Fields for structured log lines."""
        return {
            "operation": self.operation,
            "call_id": self.call_id,
            "agent_id": self.agent_id,
        }


class PresenceBackendError(RoutingBackendError):
    """Presence registry store unreachable, or a write kept losing its WATCH."""
    pass


class TelephonyError(RoutingBackendError):
    """Telephony provider call failed."""
    pass


class CallStoreError(RoutingBackendError):
    """Call/queue document store failed."""
    pass
