"""
Database Models

SQLAlchemy ORM models for call records, routing queues and agent profiles.
Presence (who is online right now) lives in the presence registry, not here.
"""

import uuid
from datetime import datetime
from typing import Optional, List

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text,
    Enum as SQLEnum, text
)
from sqlalchemy.dialects.postgresql import UUID, JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.core.routing.state import CallRoutingState
from app.core.routing.types import CallDirection, RoutingStrategy


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )


class AgentProfile(Base, TimestampMixin):
    """
    Agent profile.

    agent_id is the stable external identifier used everywhere in routing;
    id is internal to the database.
    """

    __tablename__ = "agent_profiles"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    agent_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(20), default="agent")
    skills: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        doc="Skill name -> proficiency level (1-5)"
    )
    satisfaction_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    max_concurrent_calls: Mapped[int] = mapped_column(Integer, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    def __repr__(self) -> str:
        return f"<AgentProfile(agent_id='{self.agent_id}', role='{self.role}')>"


class RoutingQueue(Base, TimestampMixin):
    """
    Routing queue.

    Defines the strategy and the agents eligible for calls placed in it.
    """

    __tablename__ = "routing_queues"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    queue_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    strategy: Mapped[RoutingStrategy] = mapped_column(
        SQLEnum(RoutingStrategy),
        default=RoutingStrategy.ROUND_ROBIN
    )
    skills_required: Mapped[list] = mapped_column(JSON, default=list)
    max_wait_seconds: Mapped[int] = mapped_column(Integer, default=300)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Relationships
    members: Mapped[List["QueueMember"]] = relationship(
        "QueueMember",
        back_populates="queue",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<RoutingQueue(queue_id='{self.queue_id}', strategy={self.strategy.value})>"


class QueueMember(Base):
    """Agent membership in a queue, with its weight."""

    __tablename__ = "queue_members"
    __table_args__ = (
        Index("idx_queue_member_unique", "queue_id", "agent_id", unique=True),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    queue_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("routing_queues.id", ondelete="CASCADE"),
        nullable=False
    )
    agent_id: Mapped[str] = mapped_column(String(100), nullable=False)
    weight: Mapped[float] = mapped_column(Float, default=1.0)
    added_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )

    # Relationships
    queue: Mapped["RoutingQueue"] = relationship("RoutingQueue", back_populates="members")


class Call(Base, TimestampMixin):
    """
    Call record.

    Holds the routing state and assignment history so any worker can handle
    the next provider event for the call.
    """

    __tablename__ = "calls"
    __table_args__ = (
        Index("idx_call_provider_sid", "provider_call_sid", unique=True),
        Index("idx_call_routing_state", "routing_state"),
        Index("idx_call_assigned_agent", "assigned_agent_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    call_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    provider_call_sid: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    phone_number: Mapped[str] = mapped_column(String(50), nullable=False)
    direction: Mapped[CallDirection] = mapped_column(SQLEnum(CallDirection), nullable=False)
    routing_state: Mapped[CallRoutingState] = mapped_column(
        SQLEnum(CallRoutingState),
        default=CallRoutingState.NEW,
        nullable=False
    )
    queue_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    required_skills: Mapped[list] = mapped_column(JSON, default=list)
    caller_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    assigned_agent_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    strategy: Mapped[Optional[RoutingStrategy]] = mapped_column(
        SQLEnum(RoutingStrategy),
        nullable=True
    )
    excluded_agent_ids: Mapped[list] = mapped_column(
        JSON,
        default=list,
        doc="Agents already offered this call and failed, in order"
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_failure_reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    end_reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    answered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Call(call_id='{self.call_id}', state={self.routing_state.value})>"
