"""
Tests for the Conversation Store
================================

Tests for conversations, the agent arena, relationships, messages,
escalation rows, agent contexts and settings.
"""

import asyncio

import pytest

from agentmafia.errors import CapabilityViolation, InvalidTransition, NotFoundError, ValidationError
from agentmafia.store import (
    CONTEXT_WINDOW_CHARS,
    derive_cardinality,
    merge_context_summary,
    to_dict,
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def make_family(store):
    async def _make():
        boss = await store.create_agent(name="Tony Soprano", role="underboss")
        capo = await store.create_agent(name="Silvio Dante", role="capo", parent_id=boss.id)
        soldier = await store.create_agent(name="Paulie Gualtieri", role="soldier", parent_id=capo.id)
        await store.create_relationship(boss.id, capo.id, "delegate")
        await store.create_relationship(capo.id, soldier.id, "delegate")
        return boss, capo, soldier
    return _make


# =============================================================================
# Conversations
# =============================================================================

class TestConversations:
    """Tests for conversation CRUD and status transitions."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        """Test a conversation is created active with a trimmed title."""
        conversation = await store.create_conversation("  Fix the login page  ", "/work")
        loaded = await store.get_conversation(conversation.id)
        assert loaded.title == "Fix the login page"
        assert loaded.status == "active"
        assert loaded.working_directory == "/work"
        assert loaded.created_at is not None

    @pytest.mark.asyncio
    async def test_long_title_truncated(self, store):
        """Test titles are capped at 100 characters."""
        conversation = await store.create_conversation("x" * 300)
        assert len(conversation.title) == 100

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        """Test a missing conversation raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await store.get_conversation("nope")

    @pytest.mark.asyncio
    async def test_status_transitions(self, store):
        """Test allowed and refused status moves."""
        conversation = await store.create_conversation("Job")
        await store.set_conversation_status(conversation.id, "completed")
        await store.set_conversation_status(conversation.id, "active")
        await store.set_conversation_status(conversation.id, "stopped")
        with pytest.raises(InvalidTransition):
            await store.set_conversation_status(conversation.id, "active")

    @pytest.mark.asyncio
    async def test_same_status_is_noop(self, store):
        """Test setting the current status again is accepted."""
        conversation = await store.create_conversation("Job")
        updated = await store.set_conversation_status(conversation.id, "active")
        assert updated.status == "active"

    @pytest.mark.asyncio
    async def test_pending_cannot_complete(self, store):
        """Test a pending conversation must be activated first."""
        conversation = await store.create_conversation("Job", status="pending")
        with pytest.raises(InvalidTransition):
            await store.set_conversation_status(conversation.id, "completed")

    @pytest.mark.asyncio
    async def test_delete_cascades(self, store, make_family):
        """Test deleting a conversation removes its rows and dynamic agents."""
        boss, _, _ = await make_family()
        conversation = await store.create_conversation("Job")
        dynamic = await store.create_agent(
            name="Vito Spatafore", role="underboss",
            conversation_id=conversation.id, is_dynamic=True,
        )
        await store.append_message(conversation.id, "user", "hello")
        await store.create_escalation(conversation.id, dynamic.id, "Which way?")
        await store.record_agent_context(conversation.id, boss.id, "task", "result")

        await store.delete_conversation(conversation.id)

        assert await store.find_conversation(conversation.id) is None
        assert await store.find_agent(dynamic.id) is None
        assert await store.find_agent(boss.id) is not None
        assert await store.list_messages(conversation.id) == []
        assert await store.list_escalations(conversation.id) == []
        assert await store.get_agent_context(conversation.id, boss.id) is None


# =============================================================================
# Agents
# =============================================================================

class TestAgents:
    """Tests for the agent arena."""

    @pytest.mark.asyncio
    async def test_defaults(self, store):
        """Test role, provider, model and sibling order defaults."""
        first = await store.create_agent(name="Bobby Bacala", role=None)
        second = await store.create_agent(name="Furio Giunta", role="soldier")
        assert first.role == "soldier"
        assert first.provider_id == "anthropic"
        assert first.model
        assert (first.order_index, second.order_index) == (0, 1)

    @pytest.mark.asyncio
    async def test_name_required(self, store):
        """Test a blank name is refused."""
        with pytest.raises(ValidationError):
            await store.create_agent(name="   ", role="soldier")

    @pytest.mark.asyncio
    async def test_capability_enforced_on_create(self, store):
        """Test a hierarchy role cannot use an analysis-only provider."""
        with pytest.raises(CapabilityViolation) as exc:
            await store.create_agent(name="Kimi", role="soldier", provider_id="kimi")
        assert exc.value.to_dict()["hint"]

    @pytest.mark.asyncio
    async def test_missing_parent(self, store):
        """Test a dangling parent id is refused."""
        with pytest.raises(NotFoundError):
            await store.create_agent(name="Orphan", role="soldier", parent_id="ghost")

    @pytest.mark.asyncio
    async def test_update_checks_resulting_pair(self, store):
        """Test provider-only updates are validated against the stored role."""
        agent = await store.create_agent(name="Christopher", role="soldier")
        with pytest.raises(CapabilityViolation):
            await store.update_agent(agent.id, {"provider_id": "openai"})
        unchanged = await store.get_agent(agent.id)
        assert unchanged.provider_id == "anthropic"

    @pytest.mark.asyncio
    async def test_update_fields(self, store):
        """Test a partial update leaves other fields alone."""
        agent = await store.create_agent(name="Christopher", role="soldier", specialty="frontend")
        updated = await store.update_agent(agent.id, {"specialty": "backend", "model": None})
        assert updated.specialty == "backend"
        assert updated.model == agent.model
        assert updated.name == "Christopher"

    @pytest.mark.asyncio
    async def test_update_unknown_field(self, store):
        """Test unknown fields are refused."""
        agent = await store.create_agent(name="Christopher", role="soldier")
        with pytest.raises(ValidationError, match="Unknown agent fields"):
            await store.update_agent(agent.id, {"salary": 10})

    @pytest.mark.asyncio
    async def test_reparent_cycle_refused(self, store, make_family):
        """Test an agent cannot move under its own descendant."""
        boss, capo, soldier = await make_family()
        with pytest.raises(ValidationError):
            await store.update_agent(capo.id, {"parent_id": soldier.id})
        with pytest.raises(ValidationError):
            await store.update_agent(capo.id, {"parent_id": capo.id})

    @pytest.mark.asyncio
    async def test_concurrent_updates_serialize(self, store):
        """Test concurrent updates to one agent all apply, last writer wins."""
        agent = await store.create_agent(name="Christopher", role="soldier")
        await asyncio.gather(*(
            store.update_agent(agent.id, {"specialty": f"job-{i}"}) for i in range(5)
        ))
        final = await store.get_agent(agent.id)
        assert final.specialty == "job-4"

    @pytest.mark.asyncio
    async def test_delete_cascades_to_descendants(self, store, make_family):
        """Test deleting an agent removes its subtree and edges."""
        boss, capo, soldier = await make_family()
        conversation = await store.create_conversation("Job")
        await store.append_message(conversation.id, "assistant", "done", agent_id=soldier.id)

        deleted = await store.delete_agent(capo.id)

        assert set(deleted) == {capo.id, soldier.id}
        assert await store.find_agent(boss.id) is not None
        assert await store.list_relationships() == []
        messages = await store.list_messages(conversation.id)
        assert messages[0].agent_id is None

    @pytest.mark.asyncio
    async def test_list_scopes_dynamic_agents(self, store):
        """Test dynamic agents only show up for their own conversation."""
        await store.create_agent(name="Static", role="underboss")
        conversation = await store.create_conversation("Job")
        await store.create_agent(
            name="Dynamic", role="soldier", conversation_id=conversation.id, is_dynamic=True
        )
        assert [a.name for a in await store.list_agents()] == ["Static"]
        assert {a.name for a in await store.list_agents(conversation.id)} == {"Static", "Dynamic"}

    @pytest.mark.asyncio
    async def test_find_root_prefers_dynamic_underboss(self, store):
        """Test the conversation's own underboss wins over the static one."""
        static = await store.create_agent(name="Static Boss", role="underboss")
        conversation = await store.create_conversation("Job")
        dynamic = await store.create_agent(
            name="Dynamic Boss", role="underboss", conversation_id=conversation.id, is_dynamic=True
        )
        assert (await store.find_root_agent()).id == static.id
        assert (await store.find_root_agent(conversation.id)).id == dynamic.id


# =============================================================================
# Relationships
# =============================================================================

class TestRelationships:
    """Tests for communication edges."""

    def test_cardinality_is_derived(self):
        """Test cardinality comes from the action."""
        assert derive_cardinality("delegate") == "1:many"
        assert derive_cardinality("ask") == "1:1"
        with pytest.raises(ValidationError):
            derive_cardinality("whack")

    @pytest.mark.asyncio
    async def test_supplied_cardinality_ignored(self, store, make_family):
        """Test a caller's cardinality is overridden."""
        boss, capo, _ = await make_family()
        edge = await store.create_relationship(capo.id, boss.id, "ask", cardinality="1:many")
        assert edge.cardinality == "1:1"

    @pytest.mark.asyncio
    async def test_self_edge_refused(self, store, make_family):
        """Test an agent cannot point at itself."""
        boss, _, _ = await make_family()
        with pytest.raises(ValidationError):
            await store.create_relationship(boss.id, boss.id, "ask")

    @pytest.mark.asyncio
    async def test_list_by_agent(self, store, make_family):
        """Test filtering edges by either endpoint."""
        boss, capo, soldier = await make_family()
        assert len(await store.list_relationships(capo.id)) == 2
        assert len(await store.list_relationships(soldier.id)) == 1

    @pytest.mark.asyncio
    async def test_delete_missing(self, store):
        """Test deleting an unknown edge raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await store.delete_relationship("ghost")


# =============================================================================
# Messages, escalations, contexts
# =============================================================================

class TestMessages:
    """Tests for the transcript."""

    @pytest.mark.asyncio
    async def test_order_and_filters(self, store):
        """Test creation order, role filter and last-N window."""
        conversation = await store.create_conversation("Job")
        for i in range(5):
            await store.append_message(conversation.id, "user" if i % 2 == 0 else "activity", f"m{i}")
        assert [m.content for m in await store.list_messages(conversation.id)] == ["m0", "m1", "m2", "m3", "m4"]
        assert [m.content for m in await store.list_messages(conversation.id, roles=["user"])] == ["m0", "m2", "m4"]
        assert [m.content for m in await store.list_messages(conversation.id, last=2)] == ["m3", "m4"]
        assert await store.count_messages(conversation.id) == 5

    @pytest.mark.asyncio
    async def test_metadata_serialized(self, store):
        """Test message metadata is exposed as 'metadata'."""
        conversation = await store.create_conversation("Job")
        message = await store.append_message(conversation.id, "activity", "", metadata={"eventType": "task_start"})
        data = to_dict(message)
        assert data["metadata"] == {"eventType": "task_start"}
        assert isinstance(data["created_at"], str)

    @pytest.mark.asyncio
    async def test_invalid_role(self, store):
        """Test unknown message roles are refused."""
        conversation = await store.create_conversation("Job")
        with pytest.raises(ValidationError):
            await store.append_message(conversation.id, "system", "nope")


class TestEscalationRows:
    """Tests for persisted escalations."""

    @pytest.mark.asyncio
    async def test_answer_once(self, store):
        """Test only the first answer is recorded."""
        conversation = await store.create_conversation("Job")
        escalation = await store.create_escalation(conversation.id, "agent-1", "Ship it?")
        assert await store.mark_escalation_answered(escalation.id, "Yes")
        assert not await store.mark_escalation_answered(escalation.id, "No")
        loaded = await store.get_escalation(escalation.id)
        assert (loaded.status, loaded.answer) == ("answered", "Yes")
        assert loaded.answered_at is not None
        assert await store.list_escalations(conversation.id, status="pending") == []


class TestAgentContext:
    """Tests for rolling agent context summaries."""

    def test_merge(self):
        """Test entries are appended and the window is capped."""
        first = merge_context_summary(None, "task one", "result one")
        assert first == "TASK: task one\nRESULT SUMMARY: result one"
        merged = merge_context_summary(first, "task two", "r" * 5000)
        assert len(merged) == CONTEXT_WINDOW_CHARS

    @pytest.mark.asyncio
    async def test_record(self, store):
        """Test contexts accumulate per agent and conversation."""
        conversation = await store.create_conversation("Job")
        await store.record_agent_context(conversation.id, "a1", "first", "ok")
        summary = await store.record_agent_context(conversation.id, "a1", "second", "ok too")
        assert "TASK: first" in summary and "TASK: second" in summary
        assert await store.get_agent_context(conversation.id, "a1") == summary
        assert await store.get_agent_context(conversation.id, "a2") is None


# =============================================================================
# Settings
# =============================================================================

class TestSettings:
    """Tests for key-value settings."""

    @pytest.mark.asyncio
    async def test_max_agent_turns(self, store):
        """Test the turn limit setting is validated and read back."""
        assert await store.get_max_agent_turns(200) == 200
        assert await store.set_setting("maxAgentTurns", "50") == "50"
        assert await store.get_max_agent_turns(200) == 50
        with pytest.raises(ValidationError):
            await store.set_setting("maxAgentTurns", 0)
        assert await store.get_settings() == {"maxAgentTurns": "50"}

    @pytest.mark.asyncio
    async def test_free_form_setting(self, store):
        """Test other keys are stored as strings."""
        await store.set_setting("theme", "dark")
        await store.set_setting("theme", "light")
        assert await store.get_setting("theme") == "light"
        assert await store.get_setting("missing") is None


# =============================================================================
# Crew templates
# =============================================================================

CREW = [{"name": "Tony Soprano", "role": "underboss"}, {"name": "Silvio Dante", "role": "capo"}]
EDGES = [{"fromName": "Tony Soprano", "toName": "Silvio Dante", "action": "delegate"}]


class TestOrgTemplates:
    """Tests for saved crew templates."""

    @pytest.mark.asyncio
    async def test_create_and_list_newest_first(self, store):
        """Test templates are stored and listed newest first."""
        first = await store.create_org_template("API crew", CREW, EDGES)
        await asyncio.sleep(0.01)
        second = await store.create_org_template("  UI crew  ", CREW, EDGES, description="Frontend work")
        assert second.name == "UI crew"
        listed = await store.list_org_templates()
        assert [t.id for t in listed] == [second.id, first.id]
        fetched = await store.get_org_template(first.id)
        assert fetched.agents == CREW
        assert fetched.relationships == EDGES

    @pytest.mark.asyncio
    async def test_name_required(self, store):
        """Test a blank name is refused."""
        with pytest.raises(ValidationError):
            await store.create_org_template(" ", CREW, EDGES)

    @pytest.mark.asyncio
    async def test_update(self, store):
        """Test renaming and unknown fields."""
        template = await store.create_org_template("API crew", CREW, EDGES)
        updated = await store.update_org_template(template.id, {"name": "Backend crew", "description": "v2"})
        assert (updated.name, updated.description) == ("Backend crew", "v2")
        with pytest.raises(ValidationError):
            await store.update_org_template(template.id, {"owner": "Tony"})
        with pytest.raises(ValidationError):
            await store.update_org_template(template.id, {"name": ""})

    @pytest.mark.asyncio
    async def test_delete_and_missing(self, store):
        """Test deletion and lookups of unknown ids."""
        template = await store.create_org_template("API crew", CREW, EDGES)
        await store.delete_org_template(template.id)
        assert await store.list_org_templates() == []
        with pytest.raises(NotFoundError):
            await store.get_org_template(template.id)
        with pytest.raises(NotFoundError):
            await store.delete_org_template(template.id)
        with pytest.raises(NotFoundError):
            await store.update_org_template(template.id, {"name": "x"})
