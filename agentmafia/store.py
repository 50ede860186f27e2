"""
Conversation Store
==================

Durable CRUD for conversations, agents, relationships, messages,
escalations, agent contexts, crew templates and settings, on top of the async SQLAlchemy
session maker.

The store is the single source of truth; the orchestrator's in-memory run
state is only a cache of it. All cascades are explicit: deleting an agent
removes its descendants (found by parent_id lookups over the agent arena),
their relationship edges and their contexts, and detaches their messages.
Deleting a conversation removes every row it owns, dynamic agents included.

Usage:
    from agentmafia.db import init_db
    from agentmafia.store import ConversationStore

    await init_db(Path(".agentmafia"))
    store = ConversationStore()

    boss = await store.create_agent(name="Tony Soprano", role="underboss")
    conv = await store.create_conversation("Refactor the billing module")
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentmafia.capabilities import (
    DEFAULT_PROVIDER,
    check_capability,
    resolve_agent_fields,
    validate_role,
)
from agentmafia.config import DEFAULT_MODEL, MAX_AGENT_TURNS_KEY, parse_max_agent_turns
from agentmafia.db.connection import get_session_maker
from agentmafia.db.models import (
    Agent,
    AgentContext,
    CheckpointRecord,
    Conversation,
    DecisionRecord,
    Escalation,
    FileChange,
    Message,
    OrgTemplate,
    ProgressPhase,
    ProjectProgress,
    Relationship,
    Setting,
    new_id,
)
from agentmafia.errors import InvalidTransition, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# Static rules
# =============================================================================

ACTION_CARDINALITY = {
    "delegate": "1:many",
    "ask": "1:1",
    "review": "1:1",
    "summarize": "1:1",
}

CONVERSATION_STATUSES = ("pending", "active", "paused", "completed", "failed", "stopped")

CONVERSATION_TRANSITIONS = {
    "pending": {"active", "stopped"},
    "active": {"completed", "stopped", "paused", "failed"},
    "paused": {"active", "stopped"},
    "completed": {"active"},
    "failed": {"active"},
    "stopped": set(),
}

MESSAGE_ROLES = ("user", "assistant", "activity")

AGENT_FIELDS = (
    "name", "role", "specialty", "system_prompt", "model", "provider_id",
    "parent_id", "order_index",
)

CONTEXT_RESULT_CHARS = 2000
CONTEXT_WINDOW_CHARS = 4000


def derive_cardinality(action: str) -> str:
    """Cardinality is a function of the action alone."""
    try:
        return ACTION_CARDINALITY[action]
    except KeyError:
        raise ValidationError(
            f"Invalid action '{action}'. Must be one of: {', '.join(ACTION_CARDINALITY)}"
        ) from None


def to_dict(row: Any) -> dict:
    """Serialize an ORM row to a JSON-friendly dict."""
    data = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        if isinstance(value, datetime):
            value = value.isoformat()
        key = "metadata" if column.key == "message_metadata" else column.key
        data[key] = value
    return data


def children_by_parent(agents: Iterable[Agent]) -> dict[Optional[str], list[Agent]]:
    """Index the agent arena by parent id, children in sibling order."""
    index: dict[Optional[str], list[Agent]] = defaultdict(list)
    for agent in sorted(agents, key=lambda a: (a.order_index, a.name)):
        index[agent.parent_id].append(agent)
    return index


def collect_descendants(agent_id: str, index: dict[Optional[str], list[Agent]]) -> list[str]:
    """Ids of every agent below agent_id, breadth first."""
    found: list[str] = []
    frontier = [agent_id]
    seen = {agent_id}
    while frontier:
        current = frontier.pop(0)
        for child in index.get(current, ()):
            if child.id not in seen:
                seen.add(child.id)
                found.append(child.id)
                frontier.append(child.id)
    return found


def merge_context_summary(existing: Optional[str], task: str, result: str) -> str:
    """Append a task/result pair to an agent's rolling context window."""
    entry = f"TASK: {task}\nRESULT SUMMARY: {result[:CONTEXT_RESULT_CHARS]}"
    if not existing:
        return entry
    return f"{existing}\n\n---\n\n{entry}"[-CONTEXT_WINDOW_CHARS:]


class ConversationStore:
    """Async repository over the Agent Mafia database."""

    def __init__(self, session_maker: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_maker = session_maker
        # Per-agent locks serialize validate-then-write updates
        self._agent_locks: dict[str, asyncio.Lock] = {}

    def _session(self) -> AsyncSession:
        maker = self._session_maker or get_session_maker()
        return maker()

    # =========================================================================
    # Conversations
    # =========================================================================

    async def create_conversation(
        self,
        title: str,
        working_directory: Optional[str] = None,
        status: str = "active",
    ) -> Conversation:
        if status not in CONVERSATION_STATUSES:
            raise ValidationError(f"Invalid conversation status: {status}")
        conversation = Conversation(
            id=new_id(),
            title=title.strip()[:100] or "Untitled job",
            status=status,
            working_directory=working_directory,
        )
        async with self._session() as session:
            session.add(conversation)
            await session.commit()
        return conversation

    async def find_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with self._session() as session:
            return await session.get(Conversation, conversation_id)

    async def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = await self.find_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("conversation", conversation_id)
        return conversation

    async def list_conversations(self) -> list[Conversation]:
        async with self._session() as session:
            result = await session.execute(
                select(Conversation).order_by(Conversation.created_at.desc(), Conversation.id)
            )
            return list(result.scalars().all())

    async def set_conversation_status(self, conversation_id: str, status: str) -> Conversation:
        """
        Move a conversation to a new status.

        Setting the current status again is a no-op. Any other move outside
        CONVERSATION_TRANSITIONS raises InvalidTransition.
        """
        if status not in CONVERSATION_STATUSES:
            raise ValidationError(f"Invalid conversation status: {status}")
        async with self._session() as session:
            conversation = await session.get(Conversation, conversation_id)
            if conversation is None:
                raise NotFoundError("conversation", conversation_id)
            if conversation.status == status:
                return conversation
            if status not in CONVERSATION_TRANSITIONS[conversation.status]:
                raise InvalidTransition("conversation", conversation.status, status)
            conversation.status = status
            await session.commit()
            return conversation

    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation and everything it owns."""
        async with self._session() as session:
            conversation = await session.get(Conversation, conversation_id)
            if conversation is None:
                raise NotFoundError("conversation", conversation_id)

            dynamic_ids = list((await session.execute(
                select(Agent.id).where(Agent.conversation_id == conversation_id)
            )).scalars().all())
            if dynamic_ids:
                all_agents = (await session.execute(select(Agent))).scalars().all()
                index = children_by_parent(all_agents)
                doomed = set(dynamic_ids)
                for agent_id in dynamic_ids:
                    doomed.update(collect_descendants(agent_id, index))
                await self._delete_agent_rows(session, sorted(doomed))

            for model in (Message, Escalation, AgentContext, DecisionRecord,
                          FileChange, CheckpointRecord, ProgressPhase, ProjectProgress):
                await session.execute(delete(model).where(model.conversation_id == conversation_id))
            await session.delete(conversation)
            await session.commit()
        logger.info("Deleted conversation %s", conversation_id)

    # =========================================================================
    # Agents
    # =========================================================================

    async def create_agent(
        self,
        name: str,
        role: str,
        model: Optional[str] = None,
        provider_id: Optional[str] = None,
        specialty: Optional[str] = None,
        system_prompt: str = "",
        parent_id: Optional[str] = None,
        order_index: Optional[int] = None,
        conversation_id: Optional[str] = None,
        is_dynamic: bool = False,
        agent_id: Optional[str] = None,
    ) -> Agent:
        """Create an agent after validating its capability pair."""
        if not name or not name.strip():
            raise ValidationError("Agent name is required")
        role, provider_id = resolve_agent_fields(None, {"role": role, "provider_id": provider_id})
        check_capability(role, provider_id)

        async with self._session() as session:
            if parent_id is not None and await session.get(Agent, parent_id) is None:
                raise NotFoundError("agent", parent_id, f"Parent agent not found: {parent_id}")
            if order_index is None:
                max_order = (await session.execute(
                    select(func.max(Agent.order_index)).where(Agent.parent_id == parent_id)
                )).scalar()
                order_index = 0 if max_order is None else max_order + 1
            agent = Agent(
                id=agent_id or new_id(),
                name=name.strip(),
                role=role,
                specialty=specialty,
                system_prompt=system_prompt or "",
                model=model or DEFAULT_MODEL,
                provider_id=provider_id,
                parent_id=parent_id,
                order_index=order_index,
                conversation_id=conversation_id,
                is_dynamic=is_dynamic,
            )
            session.add(agent)
            await session.commit()
        return agent

    async def find_agent(self, agent_id: str) -> Optional[Agent]:
        async with self._session() as session:
            return await session.get(Agent, agent_id)

    async def get_agent(self, agent_id: str) -> Agent:
        agent = await self.find_agent(agent_id)
        if agent is None:
            raise NotFoundError("agent", agent_id)
        return agent

    async def get_agents(self, agent_ids: Iterable[str]) -> dict[str, Agent]:
        ids = list(agent_ids)
        if not ids:
            return {}
        async with self._session() as session:
            result = await session.execute(select(Agent).where(Agent.id.in_(ids)))
            return {agent.id: agent for agent in result.scalars().all()}

    async def list_agents(self, conversation_id: Optional[str] = None) -> list[Agent]:
        """Static agents, plus the dynamic agents of conversation_id if given."""
        condition = Agent.conversation_id.is_(None)
        if conversation_id is not None:
            condition = or_(condition, Agent.conversation_id == conversation_id)
        async with self._session() as session:
            result = await session.execute(
                select(Agent).where(condition).order_by(Agent.order_index, Agent.name)
            )
            return list(result.scalars().all())

    async def find_root_agent(self, conversation_id: Optional[str] = None) -> Optional[Agent]:
        """
        The agent a run starts from: the conversation's dynamic underboss if
        it has one, otherwise the first static underboss.
        """
        async with self._session() as session:
            if conversation_id is not None:
                result = await session.execute(
                    select(Agent)
                    .where(Agent.conversation_id == conversation_id, Agent.role == "underboss")
                    .order_by(Agent.order_index)
                    .limit(1)
                )
                agent = result.scalars().first()
                if agent is not None:
                    return agent
            result = await session.execute(
                select(Agent)
                .where(Agent.conversation_id.is_(None), Agent.role == "underboss")
                .order_by(Agent.order_index, Agent.name)
                .limit(1)
            )
            return result.scalars().first()

    def _agent_lock(self, agent_id: str) -> asyncio.Lock:
        return self._agent_locks.setdefault(agent_id, asyncio.Lock())

    async def update_agent(self, agent_id: str, changes: dict[str, Any]) -> Agent:
        """
        Apply a partial update to an agent.

        The capability rule is checked against the pair that results from
        merging ``changes`` over the persisted row. Concurrent updates to one
        agent are serialized, each validated against the state left by the
        previous writer; the last writer wins.
        """
        unknown = set(changes) - set(AGENT_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown agent fields: {', '.join(sorted(unknown))}")

        async with self._agent_lock(agent_id):
            async with self._session() as session:
                agent = await session.get(Agent, agent_id)
                if agent is None:
                    raise NotFoundError("agent", agent_id)

                role, provider_id = resolve_agent_fields(
                    {"role": agent.role, "provider_id": agent.provider_id}, changes
                )
                check_capability(role, provider_id)

                if "name" in changes and not (changes["name"] or "").strip():
                    raise ValidationError("Agent name cannot be empty")
                if changes.get("parent_id") is not None:
                    await self._check_parent(session, agent_id, changes["parent_id"])

                for key, value in changes.items():
                    if key in ("role", "provider_id"):
                        continue
                    if value is None and key in ("name", "model", "order_index"):
                        continue
                    setattr(agent, key, value)
                agent.role = role
                agent.provider_id = provider_id
                await session.commit()
                return agent

    async def _check_parent(self, session: AsyncSession, agent_id: str, parent_id: str) -> None:
        if parent_id == agent_id:
            raise ValidationError("An agent cannot be its own parent")
        if await session.get(Agent, parent_id) is None:
            raise NotFoundError("agent", parent_id, f"Parent agent not found: {parent_id}")
        all_agents = (await session.execute(select(Agent))).scalars().all()
        if parent_id in collect_descendants(agent_id, children_by_parent(all_agents)):
            raise ValidationError("Cannot move an agent under one of its own descendants")

    async def delete_agent(self, agent_id: str) -> list[str]:
        """Delete an agent and all of its descendants. Returns deleted ids."""
        async with self._session() as session:
            if await session.get(Agent, agent_id) is None:
                raise NotFoundError("agent", agent_id)
            all_agents = (await session.execute(select(Agent))).scalars().all()
            doomed = [agent_id] + collect_descendants(agent_id, children_by_parent(all_agents))
            await self._delete_agent_rows(session, doomed)
            await session.commit()
        for deleted in doomed:
            self._agent_locks.pop(deleted, None)
        return doomed

    async def _delete_agent_rows(self, session: AsyncSession, agent_ids: list[str]) -> None:
        await session.execute(delete(Relationship).where(or_(
            Relationship.from_agent_id.in_(agent_ids),
            Relationship.to_agent_id.in_(agent_ids),
        )))
        await session.execute(delete(AgentContext).where(AgentContext.agent_id.in_(agent_ids)))
        await session.execute(
            update(Message).where(Message.agent_id.in_(agent_ids)).values(agent_id=None)
        )
        await session.execute(delete(Agent).where(Agent.id.in_(agent_ids)))

    async def descendants_of(self, agent_id: str) -> list[str]:
        async with self._session() as session:
            all_agents = (await session.execute(select(Agent))).scalars().all()
        return collect_descendants(agent_id, children_by_parent(all_agents))

    # =========================================================================
    # Relationships
    # =========================================================================

    async def create_relationship(
        self,
        from_agent_id: str,
        to_agent_id: str,
        action: str,
        cardinality: Optional[str] = None,
    ) -> Relationship:
        """
        Create a directed edge. Any caller-supplied cardinality is ignored;
        it is always derived from the action.
        """
        derived = derive_cardinality(action)
        if cardinality is not None and cardinality != derived:
            logger.debug("Ignoring cardinality %s for %s edge", cardinality, action)
        if from_agent_id == to_agent_id:
            raise ValidationError("An agent cannot have a relationship with itself")

        async with self._session() as session:
            for endpoint in (from_agent_id, to_agent_id):
                if await session.get(Agent, endpoint) is None:
                    raise NotFoundError("agent", endpoint)
            relationship = Relationship(
                id=new_id(),
                from_agent_id=from_agent_id,
                to_agent_id=to_agent_id,
                action=action,
                cardinality=derived,
            )
            session.add(relationship)
            await session.commit()
        return relationship

    async def list_relationships(self, agent_id: Optional[str] = None) -> list[Relationship]:
        query = select(Relationship).order_by(Relationship.created_at, Relationship.id)
        if agent_id is not None:
            query = query.where(or_(
                Relationship.from_agent_id == agent_id,
                Relationship.to_agent_id == agent_id,
            ))
        async with self._session() as session:
            return list((await session.execute(query)).scalars().all())

    async def delete_relationship(self, relationship_id: str) -> None:
        async with self._session() as session:
            relationship = await session.get(Relationship, relationship_id)
            if relationship is None:
                raise NotFoundError("relationship", relationship_id)
            await session.delete(relationship)
            await session.commit()

    # =========================================================================
    # Messages
    # =========================================================================

    async def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        agent_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Message:
        if role not in MESSAGE_ROLES:
            raise ValidationError(f"Invalid message role: {role}")
        message = Message(
            conversation_id=conversation_id,
            agent_id=agent_id,
            role=role,
            content=content or "",
            message_metadata=metadata,
        )
        async with self._session() as session:
            session.add(message)
            await session.commit()
        return message

    async def list_messages(
        self,
        conversation_id: str,
        roles: Optional[Iterable[str]] = None,
        last: Optional[int] = None,
    ) -> list[Message]:
        """Transcript in creation order; ``last`` keeps only the newest N."""
        query = select(Message).where(Message.conversation_id == conversation_id)
        if roles is not None:
            query = query.where(Message.role.in_(list(roles)))
        async with self._session() as session:
            if last is not None:
                result = await session.execute(query.order_by(Message.id.desc()).limit(last))
                return list(reversed(result.scalars().all()))
            result = await session.execute(query.order_by(Message.id))
            return list(result.scalars().all())

    async def count_messages(self, conversation_id: str) -> int:
        async with self._session() as session:
            return (await session.execute(
                select(func.count(Message.id)).where(Message.conversation_id == conversation_id)
            )).scalar_one()

    # =========================================================================
    # Escalations
    # =========================================================================

    async def create_escalation(self, conversation_id: str, agent_id: str, question: str) -> Escalation:
        escalation = Escalation(
            id=new_id(),
            conversation_id=conversation_id,
            agent_id=agent_id,
            question=question,
            status="pending",
        )
        async with self._session() as session:
            session.add(escalation)
            await session.commit()
        return escalation

    async def find_escalation(self, escalation_id: str) -> Optional[Escalation]:
        async with self._session() as session:
            return await session.get(Escalation, escalation_id)

    async def get_escalation(self, escalation_id: str) -> Escalation:
        escalation = await self.find_escalation(escalation_id)
        if escalation is None:
            raise NotFoundError("escalation", escalation_id)
        return escalation

    async def list_escalations(self, conversation_id: str, status: Optional[str] = None) -> list[Escalation]:
        query = select(Escalation).where(Escalation.conversation_id == conversation_id)
        if status is not None:
            query = query.where(Escalation.status == status)
        async with self._session() as session:
            result = await session.execute(query.order_by(Escalation.created_at, Escalation.id))
            return list(result.scalars().all())

    async def mark_escalation_answered(self, escalation_id: str, answer: str) -> bool:
        """Conditionally record an answer; False if the row is not pending."""
        async with self._session() as session:
            result = await session.execute(
                update(Escalation)
                .where(Escalation.id == escalation_id, Escalation.status == "pending")
                .values(status="answered", answer=answer, answered_at=datetime.now(timezone.utc))
            )
            await session.commit()
            return result.rowcount == 1

    # =========================================================================
    # Agent contexts
    # =========================================================================

    async def get_agent_context(self, conversation_id: str, agent_id: str) -> Optional[str]:
        async with self._session() as session:
            result = await session.execute(select(AgentContext.summary).where(
                AgentContext.conversation_id == conversation_id,
                AgentContext.agent_id == agent_id,
            ))
            return result.scalar()

    async def record_agent_context(self, conversation_id: str, agent_id: str, task: str, result: str) -> str:
        """Fold a finished task into the agent's rolling context summary."""
        async with self._session() as session:
            row = (await session.execute(select(AgentContext).where(
                AgentContext.conversation_id == conversation_id,
                AgentContext.agent_id == agent_id,
            ))).scalars().first()
            summary = merge_context_summary(row.summary if row else None, task, result)
            if row is None:
                session.add(AgentContext(conversation_id=conversation_id, agent_id=agent_id, summary=summary))
            else:
                row.summary = summary
            await session.commit()
        return summary

    # =========================================================================
    # Settings
    # =========================================================================

    async def get_settings(self) -> dict[str, str]:
        async with self._session() as session:
            result = await session.execute(select(Setting))
            return {row.key: row.value for row in result.scalars().all()}

    async def get_setting(self, key: str) -> Optional[str]:
        async with self._session() as session:
            row = await session.get(Setting, key)
            return row.value if row else None

    async def set_setting(self, key: str, value: Any) -> str:
        if key == MAX_AGENT_TURNS_KEY:
            value = parse_max_agent_turns(value)
        text = str(value)
        async with self._session() as session:
            row = await session.get(Setting, key)
            if row is None:
                session.add(Setting(key=key, value=text))
            else:
                row.value = text
            await session.commit()
        return text

    async def get_max_agent_turns(self, default: int) -> int:
        raw = await self.get_setting(MAX_AGENT_TURNS_KEY)
        if raw is None:
            return default
        try:
            return parse_max_agent_turns(raw)
        except ValidationError:
            logger.warning("Ignoring invalid %s setting %r", MAX_AGENT_TURNS_KEY, raw)
            return default

    # =========================================================================
    # Dynamic organizations
    # =========================================================================

    async def create_org(
        self,
        conversation_id: str,
        agents: list[dict[str, Any]],
        relationships: list[dict[str, Any]],
    ) -> tuple[list[Agent], list[Relationship]]:
        """
        Bulk-create a planned organization in one transaction.

        ``agents`` carry pre-assigned ids and parent ids; ``relationships``
        reference those ids. Nothing is written unless every row validates.
        """
        agent_rows = []
        for spec in agents:
            role, provider_id = resolve_agent_fields(None, spec)
            check_capability(role, provider_id)
            agent_rows.append(Agent(
                id=spec["id"],
                name=spec["name"],
                role=role,
                specialty=spec.get("specialty"),
                system_prompt=spec.get("system_prompt") or "",
                model=spec.get("model") or DEFAULT_MODEL,
                provider_id=provider_id or DEFAULT_PROVIDER,
                parent_id=spec.get("parent_id"),
                order_index=spec.get("order_index", 0),
                conversation_id=conversation_id,
                is_dynamic=True,
            ))
        known_ids = {row.id for row in agent_rows}
        relationship_rows = []
        for spec in relationships:
            if spec["from_agent_id"] not in known_ids or spec["to_agent_id"] not in known_ids:
                raise ValidationError("Relationship references an agent outside the organization")
            relationship_rows.append(Relationship(
                id=new_id(),
                from_agent_id=spec["from_agent_id"],
                to_agent_id=spec["to_agent_id"],
                action=spec["action"],
                cardinality=derive_cardinality(spec["action"]),
            ))

        async with self._session() as session:
            if await session.get(Conversation, conversation_id) is None:
                raise NotFoundError("conversation", conversation_id)
            session.add_all(agent_rows)
            await session.flush()
            session.add_all(relationship_rows)
            await session.commit()
        return agent_rows, relationship_rows

    # =========================================================================
    # Crew templates
    # =========================================================================

    async def create_org_template(
        self,
        name: str,
        agents: list[dict[str, Any]],
        relationships: list[dict[str, Any]],
        description: Optional[str] = None,
    ) -> OrgTemplate:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Template name is required")
        async with self._session() as session:
            row = OrgTemplate(
                id=new_id(),
                name=name,
                description=description,
                agents=agents,
                relationships=relationships,
            )
            session.add(row)
            await session.commit()
            return row

    async def list_org_templates(self) -> list[OrgTemplate]:
        """Newest first."""
        async with self._session() as session:
            result = await session.execute(select(OrgTemplate).order_by(OrgTemplate.created_at.desc()))
            return list(result.scalars().all())

    async def get_org_template(self, template_id: str) -> OrgTemplate:
        async with self._session() as session:
            row = await session.get(OrgTemplate, template_id)
            if row is None:
                raise NotFoundError("org template", template_id)
            return row

    async def update_org_template(self, template_id: str, changes: dict[str, Any]) -> OrgTemplate:
        """Apply changes to name, description, agents or relationships."""
        unknown = set(changes) - {"name", "description", "agents", "relationships"}
        if unknown:
            raise ValidationError(f"Unknown template fields: {', '.join(sorted(unknown))}")
        if "name" in changes:
            changes = {**changes, "name": (changes["name"] or "").strip()}
            if not changes["name"]:
                raise ValidationError("Template name is required")
        async with self._session() as session:
            row = await session.get(OrgTemplate, template_id)
            if row is None:
                raise NotFoundError("org template", template_id)
            for key, value in changes.items():
                setattr(row, key, value)
            await session.commit()
            return row

    async def delete_org_template(self, template_id: str) -> None:
        async with self._session() as session:
            row = await session.get(OrgTemplate, template_id)
            if row is None:
                raise NotFoundError("org template", template_id)
            await session.delete(row)
            await session.commit()
