"""
Routing Stores

Read/write access to call records and read-only access to queues and agent
profiles. The orchestrator depends only on the abstract interfaces; the SQL
implementations sit on the async SQLAlchemy session from app.infra.database.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from app.core.routing.errors import CallStoreError
from app.core.routing.state import CallRoutingState
from app.core.routing.types import CallRecord, QueueInfo, SessionMeta
from app.infra.database import get_db_context
from app.models.database import AgentProfile, Call, RoutingQueue

logger = logging.getLogger(__name__)

# CallRecord field -> Call column where the names differ
_COLUMN_NAMES = {"state": "routing_state"}


class CallStore(ABC):
    """Call documents."""

    @abstractmethod
    async def create_call(self, record: CallRecord) -> CallRecord:
        """Persist a new call."""

    @abstractmethod
    async def update_call(
        self,
        call_id: str,
        patch: dict[str, Any],
        expected_state: Optional[CallRoutingState] = None,
    ) -> bool:
        """
        Apply a partial update.

        With expected_state the write only happens if the stored state still
        matches; the return value says whether it happened.
        """

    @abstractmethod
    async def find_call(self, call_id: str) -> Optional[CallRecord]:
        """Get a call by its id."""

    @abstractmethod
    async def find_call_by_provider_sid(self, provider_call_sid: str) -> Optional[CallRecord]:
        """Get a call by the telephony provider's id."""

    @abstractmethod
    async def find_waiting_calls(self, limit: int) -> list[CallRecord]:
        """Oldest calls with no agent found yet."""


class QueueStore(ABC):
    """Queue definitions (read-only for the router)."""

    @abstractmethod
    async def get_queue(self, queue_id: str) -> Optional[QueueInfo]:
        """Get an active queue, or None."""


class AgentDirectory(ABC):
    """Agent profiles (read-only for the router)."""

    @abstractmethod
    async def get_agent_profile(self, agent_id: str) -> Optional[SessionMeta]:
        """Role, skills and satisfaction score for an agent, or None."""


def _record_from_row(row: Call) -> CallRecord:
    return CallRecord(
        call_id=row.call_id,
        phone_number=row.phone_number,
        direction=row.direction,
        state=row.routing_state,
        provider_call_sid=row.provider_call_sid,
        queue_id=row.queue_id,
        priority=row.priority,
        required_skills=list(row.required_skills or []),
        caller_name=row.caller_name,
        assigned_agent_id=row.assigned_agent_id,
        strategy=row.strategy,
        excluded_agent_ids=list(row.excluded_agent_ids or []),
        retry_count=row.retry_count,
        last_failure_reason=row.last_failure_reason,
        end_reason=row.end_reason,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlCallStore(CallStore):
    """CallStore over the calls table."""

    async def create_call(self, record: CallRecord) -> CallRecord:
        row = Call(
            call_id=record.call_id,
            provider_call_sid=record.provider_call_sid,
            phone_number=record.phone_number,
            direction=record.direction,
            routing_state=record.state,
            queue_id=record.queue_id,
            priority=record.priority,
            required_skills=list(record.required_skills),
            caller_name=record.caller_name,
            excluded_agent_ids=list(record.excluded_agent_ids),
            retry_count=record.retry_count,
            started_at=record.created_at,
        )
        try:
            async with get_db_context() as db:
                db.add(row)
        except SQLAlchemyError as e:
            raise CallStoreError(
                f"Failed to create call: {e}", operation="create_call", call_id=record.call_id
            ) from e
        return record

    async def update_call(
        self,
        call_id: str,
        patch: dict[str, Any],
        expected_state: Optional[CallRoutingState] = None,
    ) -> bool:
        values = {_COLUMN_NAMES.get(key, key): value for key, value in patch.items()}
        values["updated_at"] = func.now()

        stmt = update(Call).where(Call.call_id == call_id)
        if expected_state is not None:
            stmt = stmt.where(Call.routing_state == expected_state)

        try:
            async with get_db_context() as db:
                result = await db.execute(stmt.values(**values))
        except SQLAlchemyError as e:
            raise CallStoreError(
                f"Failed to update call: {e}", operation="update_call", call_id=call_id
            ) from e

        if result.rowcount == 0:
            logger.debug(
                f"Call {call_id} not updated (expected_state="
                f"{expected_state.value if expected_state else None})"
            )
            return False
        return True

    async def find_call(self, call_id: str) -> Optional[CallRecord]:
        return await self._find_one(Call.call_id == call_id, "find_call", call_id)

    async def find_call_by_provider_sid(self, provider_call_sid: str) -> Optional[CallRecord]:
        return await self._find_one(
            Call.provider_call_sid == provider_call_sid, "find_call_by_provider_sid", None
        )

    async def _find_one(self, condition, operation: str, call_id: Optional[str]) -> Optional[CallRecord]:
        try:
            async with get_db_context() as db:
                row = await db.scalar(select(Call).where(condition))
        except SQLAlchemyError as e:
            raise CallStoreError(
                f"Failed to load call: {e}", operation=operation, call_id=call_id
            ) from e
        return _record_from_row(row) if row is not None else None

    async def find_waiting_calls(self, limit: int) -> list[CallRecord]:
        stmt = (
            select(Call)
            .where(Call.routing_state == CallRoutingState.EXHAUSTED)
            .order_by(Call.created_at.asc())
            .limit(limit)
        )
        try:
            async with get_db_context() as db:
                rows = (await db.scalars(stmt)).all()
        except SQLAlchemyError as e:
            raise CallStoreError(
                f"Failed to list waiting calls: {e}", operation="find_waiting_calls"
            ) from e
        return [_record_from_row(row) for row in rows]


class SqlQueueStore(QueueStore):
    """QueueStore over routing_queues and queue_members."""

    async def get_queue(self, queue_id: str) -> Optional[QueueInfo]:
        stmt = select(RoutingQueue).where(
            RoutingQueue.queue_id == queue_id,
            RoutingQueue.is_active.is_(True),
        )
        try:
            async with get_db_context() as db:
                queue = await db.scalar(stmt)
        except SQLAlchemyError as e:
            raise CallStoreError(f"Failed to load queue {queue_id}: {e}", operation="get_queue") from e

        if queue is None:
            return None
        return QueueInfo(
            queue_id=queue.queue_id,
            strategy=queue.strategy,
            member_agent_ids=[member.agent_id for member in queue.members],
            weights={member.agent_id: member.weight for member in queue.members},
            skills_required=list(queue.skills_required or []),
        )


class SqlAgentDirectory(AgentDirectory):
    """AgentDirectory over agent_profiles."""

    async def get_agent_profile(self, agent_id: str) -> Optional[SessionMeta]:
        stmt = select(AgentProfile).where(
            AgentProfile.agent_id == agent_id,
            AgentProfile.is_active.is_(True),
        )
        try:
            async with get_db_context() as db:
                profile = await db.scalar(stmt)
        except SQLAlchemyError as e:
            raise CallStoreError(
                f"Failed to load agent profile: {e}",
                operation="get_agent_profile",
                agent_id=agent_id,
            ) from e

        if profile is None:
            return None
        return SessionMeta(
            role=profile.role,
            skills={name: int(level) for name, level in (profile.skills or {}).items()},
            satisfaction_score=profile.satisfaction_score,
        )
