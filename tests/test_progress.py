"""
Tests for the Progress Tracker
==============================

Tests for project phases, append-only logs, checkpoints and the context
summaries handed to agents.
"""

import asyncio

import pytest

from agentmafia.errors import InvalidTransition, NotFoundError, ValidationError
from agentmafia.progress import (
    ProgressTracker,
    apply_progress_action,
    forget_progress_tracker,
    get_progress_tracker,
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def tracker(store):
    async def _make(phases=("Recon", "Rewrite", "Verify")):
        conversation = await store.create_conversation("Billing refactor")
        project = ProgressTracker(conversation.id)
        await project.initialize_project("Billing", "Split the billing module", list(phases))
        return project
    return _make


# =============================================================================
# Project lifecycle
# =============================================================================

class TestInitialize:
    """Tests for initialize_project."""

    @pytest.mark.asyncio
    async def test_initialize(self, store):
        """Test a fresh project with phases."""
        conversation = await store.create_conversation("Job")
        tracker = ProgressTracker(conversation.id)
        assert not await tracker.is_initialized()
        created = await tracker.initialize_project("Billing", "Fix it", [
            {"name": "Recon", "description": "Map the code"},
            "Rewrite",
        ])
        assert created
        summary = await tracker.get_summary()
        assert summary.total_phases == 2
        assert summary.progress == "0/2 phases complete"
        assert summary.phases[0]["description"] == "Map the code"

    @pytest.mark.asyncio
    async def test_idempotent(self, tracker):
        """Test a second initialize changes nothing."""
        t = await tracker()
        assert not await t.initialize_project("Other", "Other objective", ["Only"])
        summary = await t.get_summary()
        assert summary.project_name == "Billing"
        assert summary.total_phases == 3

    @pytest.mark.asyncio
    async def test_zero_phases_counts_as_initialized(self, tracker):
        """Test a project without phases is still initialized."""
        t = await tracker(phases=())
        assert await t.is_initialized()

    @pytest.mark.asyncio
    async def test_validation(self, store):
        """Test missing fields and duplicate phases are refused."""
        conversation = await store.create_conversation("Job")
        t = ProgressTracker(conversation.id)
        with pytest.raises(ValidationError):
            await t.initialize_project("", "objective")
        with pytest.raises(ValidationError):
            await t.initialize_project("Billing", "objective", ["A", "A"])

    @pytest.mark.asyncio
    async def test_uninitialized_operations(self, store):
        """Test mutations before initialize raise NotFoundError."""
        conversation = await store.create_conversation("Job")
        t = ProgressTracker(conversation.id)
        with pytest.raises(NotFoundError):
            await t.add_phase("Recon")
        with pytest.raises(NotFoundError):
            await t.get_summary()


# =============================================================================
# Phases
# =============================================================================

class TestPhases:
    """Tests for the phase state machine."""

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, tracker):
        """Test pending -> in_progress -> completed."""
        t = await tracker()
        await t.start_phase("Recon", assignee="Paulie")
        summary = await t.get_summary()
        assert summary.current_phase == "Recon"
        assert summary.phases[0]["assigned_to"] == "Paulie"

        await t.complete_phase("Recon", "Found three entry points")
        summary = await t.get_summary()
        assert summary.completed_phases == 1
        assert summary.phases[0]["result"] == "Found three entry points"

    @pytest.mark.asyncio
    async def test_block_and_resume(self, tracker):
        """Test blocking marks the project blocked and starting clears it."""
        t = await tracker()
        await t.start_phase("Recon")
        await t.block_phase("Recon", "Waiting on credentials")
        summary = await t.get_summary()
        assert summary.status == "blocked"
        assert "blocked by: Waiting on credentials" in summary.pending_work[0]

        await t.start_phase("Recon")
        summary = await t.get_summary()
        assert summary.status == "in_progress"
        assert summary.phases[0]["blocked_by"] is None

    @pytest.mark.asyncio
    async def test_invalid_transitions(self, tracker):
        """Test refused moves."""
        t = await tracker()
        await t.complete_phase("Recon")
        with pytest.raises(InvalidTransition):
            await t.complete_phase("Recon")
        with pytest.raises(InvalidTransition):
            await t.start_phase("Recon")
        with pytest.raises(InvalidTransition):
            await t.block_phase("Recon", "too late")

    @pytest.mark.asyncio
    async def test_complete_from_pending(self, tracker):
        """Test a pending phase can be completed directly."""
        t = await tracker()
        await t.complete_phase("Verify", "Nothing to verify")
        assert (await t.get_summary()).completed_phases == 1

    @pytest.mark.asyncio
    async def test_add_phase(self, tracker):
        """Test added phases go last and bump the total."""
        t = await tracker()
        await t.add_phase("Deploy", "Ship it")
        summary = await t.get_summary()
        assert summary.total_phases == 4
        assert summary.phases[-1]["name"] == "Deploy"
        with pytest.raises(ValidationError):
            await t.add_phase("Deploy")

    @pytest.mark.asyncio
    async def test_unknown_phase(self, tracker):
        """Test an unknown phase name raises NotFoundError."""
        t = await tracker()
        with pytest.raises(NotFoundError):
            await t.start_phase("Nope")


# =============================================================================
# Logs and checkpoints
# =============================================================================

class TestLogs:
    """Tests for decisions, file changes and checkpoints."""

    @pytest.mark.asyncio
    async def test_concurrent_appends_all_land(self, tracker):
        """Test concurrent branches never lose a log entry."""
        t = await tracker()
        await asyncio.gather(*(
            t.record_file_change(f"src/file_{i}.py", "modified", agent=f"soldier-{i}")
            for i in range(8)
        ))
        summary = await t.get_summary()
        assert len(summary.recent_file_changes) == 8

    @pytest.mark.asyncio
    async def test_decision_on_unknown_phase(self, tracker):
        """Test a decision tied to an unknown phase is refused."""
        t = await tracker()
        with pytest.raises(NotFoundError):
            await t.record_decision("DB", "Which?", "Postgres", phase="Nope")

    @pytest.mark.asyncio
    async def test_invalid_change_type(self, tracker):
        """Test change types are validated."""
        t = await tracker()
        with pytest.raises(ValidationError):
            await t.record_file_change("a.py", "renamed")

    @pytest.mark.asyncio
    async def test_checkpoint(self, tracker):
        """Test a checkpoint snapshots phases and pending tasks."""
        t = await tracker()
        await t.start_phase("Recon")
        checkpoint = await t.create_checkpoint("midway", "Half done", ["write tests"])
        assert checkpoint.phase_snapshot[0] == {"name": "Recon", "status": "in_progress", "result": None}
        assert checkpoint.context_summary.startswith("# PROJECT: Billing")
        latest = await t.get_latest_checkpoint()
        assert latest.name == "midway"
        assert latest.pending_tasks == ["write tests"]


# =============================================================================
# Summaries
# =============================================================================

class TestSummaries:
    """Tests for the markdown digests."""

    @pytest.mark.asyncio
    async def test_context_summary(self, tracker):
        """Test the digest sections."""
        t = await tracker()
        await t.start_phase("Recon", assignee="Paulie")
        await t.complete_phase("Recon", "r" * 300)
        await t.record_decision("Storage", "Which DB?", "SQLite", rationale="Local only")
        await t.record_file_change("billing.py", "modified", "split module")

        text = await t.build_context_summary()
        assert "**Progress:** 1/3 phases complete" in text
        assert "[x] **Recon**: completed" in text
        assert "   Assigned to: Paulie" in text
        assert "r" * 200 + "..." in text
        assert "- **Storage**: SQLite" in text
        assert "  Rationale: Local only" in text
        assert "- [modified] billing.py: split module" in text
        assert "## PENDING WORK" in text

    @pytest.mark.asyncio
    async def test_summary_is_deterministic(self, tracker):
        """Test unchanged state renders identically."""
        t = await tracker()
        await t.record_decision("A", "q", "d")
        assert await t.build_context_summary() == await t.build_context_summary()

    @pytest.mark.asyncio
    async def test_resume_context(self, tracker, store):
        """Test the follow-up block, and None for untracked conversations."""
        t = await tracker()
        await t.create_checkpoint("cp1", "Paused for review", ["finish Verify"])
        context = await t.build_resume_context()
        assert context.startswith("=== PROJECT PROGRESS CONTEXT ===")
        assert "=== LAST CHECKPOINT: cp1" in context
        assert "- finish Verify" in context
        assert context.endswith("=== END PROGRESS CONTEXT ===")

        other = await store.create_conversation("Untracked")
        assert await ProgressTracker(other.id).build_resume_context() is None


# =============================================================================
# Action dispatch and registry
# =============================================================================

class TestApplyProgressAction:
    """Tests for the shared action dispatcher."""

    @pytest.mark.asyncio
    async def test_actor_fills_authorship(self, tracker):
        """Test the actor becomes assignee and author when unset."""
        t = await tracker()
        await apply_progress_action(t, "start_phase", {"phase": "Recon"}, actor="boss")
        message = await apply_progress_action(
            t, "record_decision", {"topic": "Scope", "decision": "Keep it small"}, actor="boss"
        )
        assert message.startswith("Decision recorded")
        summary = await t.get_summary()
        assert summary.phases[0]["assigned_to"] == "boss"
        assert summary.recent_decisions[0]["made_by"] == "boss"

    @pytest.mark.asyncio
    async def test_missing_fields(self, tracker):
        """Test required fields are enforced per action."""
        t = await tracker()
        with pytest.raises(ValidationError, match="blocked_by"):
            await apply_progress_action(t, "block_phase", {"phase": "Recon"})

    @pytest.mark.asyncio
    async def test_update_status(self, tracker):
        """Test the status action validates its value."""
        t = await tracker()
        assert await apply_progress_action(t, "update_status", {"status": "paused"}) == "Project status: paused"
        with pytest.raises(ValidationError):
            await apply_progress_action(t, "update_status", {"status": "asleep"})

    def test_registry(self):
        """Test trackers are cached per conversation until forgotten."""
        first = get_progress_tracker("conv-x")
        assert get_progress_tracker("conv-x") is first
        forget_progress_tracker("conv-x")
        assert get_progress_tracker("conv-x") is not first
        forget_progress_tracker("conv-x")
