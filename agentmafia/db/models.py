"""
Database Models for Agent Mafia
===============================

SQLAlchemy models for conversations, the agent hierarchy, transcripts,
escalations, saved crew templates, settings and per-conversation progress
state.

Agents form an arena: each row carries only a parent_id pointer, and the
communication graph lives in the separate relationships table. Cascades are
performed explicitly by the ConversationStore rather than through ORM
relationship() graphs.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    # Client-side default so freshly committed rows carry their timestamps
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


# =============================================================================
# Core tables
# =============================================================================

class Conversation(Base):
    """One task execution context."""
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    title: Mapped[str] = mapped_column(String(200))
    status: Mapped[str] = mapped_column(String(20), default="active")  # pending, active, paused, completed, failed, stopped
    working_directory: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class Agent(Base):
    """A node in the static or dynamic hierarchy."""
    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(100))
    role: Mapped[str] = mapped_column(String(20))  # underboss, capo, soldier
    specialty: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    system_prompt: Mapped[str] = mapped_column(Text, default="")
    model: Mapped[str] = mapped_column(String(100))
    provider_id: Mapped[str] = mapped_column(String(20), default="anthropic")

    # Tree edge and sibling order
    parent_id: Mapped[Optional[str]] = mapped_column(ForeignKey("agents.id"), nullable=True, index=True)
    order_index: Mapped[int] = mapped_column(Integer, default=0)

    # Non-null only for conversation-scoped dynamic agents
    conversation_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("conversations.id"), nullable=True, index=True
    )
    is_dynamic: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class Relationship(Base):
    """Directed communication edge between two agents."""
    __tablename__ = "relationships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    from_agent_id: Mapped[str] = mapped_column(ForeignKey("agents.id"), index=True)
    to_agent_id: Mapped[str] = mapped_column(ForeignKey("agents.id"), index=True)
    action: Mapped[str] = mapped_column(String(20))  # delegate, ask, review, summarize
    cardinality: Mapped[str] = mapped_column(String(10))  # derived from action
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class Message(Base):
    """Append-only transcript entry."""
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(ForeignKey("conversations.id"), index=True)
    agent_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    role: Mapped[str] = mapped_column(String(20))  # user, assistant, activity
    content: Mapped[str] = mapped_column(Text, default="")
    # Metadata (renamed to avoid SQLAlchemy reserved name)
    message_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class Escalation(Base):
    """A question an agent raised for the human boss."""
    __tablename__ = "escalations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    conversation_id: Mapped[str] = mapped_column(ForeignKey("conversations.id"), index=True)
    agent_id: Mapped[str] = mapped_column(String(36))
    question: Mapped[str] = mapped_column(Text)
    answer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending, answered
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    answered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class AgentContext(Base):
    """Rolling summary of what an agent did earlier in a conversation."""
    __tablename__ = "agent_contexts"
    __table_args__ = (UniqueConstraint("conversation_id", "agent_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(ForeignKey("conversations.id"), index=True)
    agent_id: Mapped[str] = mapped_column(String(36))
    summary: Mapped[str] = mapped_column(Text, default="")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class OrgTemplate(Base):
    """A saved crew design, reusable for new jobs."""
    __tablename__ = "org_templates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Name-keyed design: agents by character name, edges by fromName/toName
    agents: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    relationships: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class Setting(Base):
    """Key/value runtime override (e.g. maxAgentTurns)."""
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text)


# =============================================================================
# Progress tables
# =============================================================================

class ProjectProgress(Base):
    """Project header for one conversation's progress ledger."""
    __tablename__ = "project_progress"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(ForeignKey("conversations.id"), unique=True, index=True)
    project_name: Mapped[str] = mapped_column(String(200))
    objective: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="in_progress")  # in_progress, blocked, paused, complete
    current_phase: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    total_phases: Mapped[int] = mapped_column(Integer, default=0)
    completed_phases: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    last_active_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class ProgressPhase(Base):
    """A phase of work; the only progress row mutated in place."""
    __tablename__ = "progress_phases"
    __table_args__ = (UniqueConstraint("conversation_id", "name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(ForeignKey("conversations.id"), index=True)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending, in_progress, completed, blocked
    order_index: Mapped[int] = mapped_column(Integer, default=0)
    assigned_to: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    blocked_by: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class DecisionRecord(Base):
    """Append-only decision log entry."""
    __tablename__ = "decision_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(ForeignKey("conversations.id"), index=True)
    topic: Mapped[str] = mapped_column(String(200))
    question: Mapped[str] = mapped_column(Text)
    decision: Mapped[str] = mapped_column(Text)
    rationale: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    made_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    phase: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class FileChange(Base):
    """Append-only file change ledger entry."""
    __tablename__ = "file_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(ForeignKey("conversations.id"), index=True)
    file_path: Mapped[str] = mapped_column(Text)
    change_type: Mapped[str] = mapped_column(String(20))  # created, modified, deleted
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    agent: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    phase: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class CheckpointRecord(Base):
    """Compressed snapshot of progress state for context re-injection."""
    __tablename__ = "checkpoint_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(ForeignKey("conversations.id"), index=True)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    phase_snapshot: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    context_summary: Mapped[str] = mapped_column(Text, default="")
    pending_tasks: Mapped[List[str]] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
