"""
Tests for the Escalation Manager
================================

Tests for parking a branch on a human answer and waking it exactly once.
"""

import asyncio
import threading

import pytest

from agentmafia.errors import EscalationCancelled
from agentmafia.escalation import EscalationManager, get_escalation_manager


@pytest.fixture
def manager():
    return EscalationManager()


class TestEscalationManager:
    """Tests for EscalationManager."""

    @pytest.mark.asyncio
    async def test_answer_wakes_waiter(self, manager):
        """Test a waiting branch receives the answer."""
        manager.register("e1", "c1", "boss", "Which database?")
        waiter = asyncio.create_task(manager.wait_for_answer("e1"))
        await asyncio.sleep(0)
        assert manager.resolve_answer("e1", "Postgres")
        assert await asyncio.wait_for(waiter, timeout=1) == "Postgres"
        assert not manager.has_pending("e1")

    @pytest.mark.asyncio
    async def test_exactly_once(self, manager):
        """Test a second answer is refused without side effects."""
        manager.register("e1", "c1", "boss", "Ship it?")
        assert manager.resolve_answer("e1", "Yes")
        assert not manager.resolve_answer("e1", "No")
        assert await manager.wait_for_answer("e1") == "Yes"

    @pytest.mark.asyncio
    async def test_answer_before_wait(self, manager):
        """Test an answer that lands before the branch awaits is kept."""
        manager.register("e1", "c1", "boss", "Ship it?")
        manager.resolve_answer("e1", "Early")
        await asyncio.sleep(0)
        assert await manager.wait_for_answer("e1") == "Early"

    @pytest.mark.asyncio
    async def test_unknown_id(self, manager):
        """Test unknown ids resolve to False and cannot be awaited."""
        assert not manager.resolve_answer("ghost", "hello")
        with pytest.raises(KeyError):
            await manager.wait_for_answer("ghost")

    @pytest.mark.asyncio
    async def test_duplicate_register(self, manager):
        """Test an id cannot be registered twice."""
        manager.register("e1", "c1", "boss", "Q")
        with pytest.raises(ValueError):
            manager.register("e1", "c1", "boss", "Q")

    @pytest.mark.asyncio
    async def test_cancel_conversation(self, manager):
        """Test teardown wakes only that conversation's waiters."""
        manager.register("e1", "c1", "boss", "Q1")
        manager.register("e2", "c2", "boss", "Q2")
        waiter = asyncio.create_task(manager.wait_for_answer("e1"))
        await asyncio.sleep(0)

        assert manager.cancel_conversation("c1") == 1
        with pytest.raises(EscalationCancelled):
            await asyncio.wait_for(waiter, timeout=1)
        assert not manager.resolve_answer("e1", "too late")
        assert manager.has_pending("e2")
        assert [p.escalation_id for p in manager.pending_for("c2")] == ["e2"]

    @pytest.mark.asyncio
    async def test_answer_from_another_thread(self, manager):
        """Test an answer from a foreign thread wakes the waiter."""
        manager.register("e1", "c1", "boss", "Q")
        waiter = asyncio.create_task(manager.wait_for_answer("e1"))
        results = []
        thread = threading.Thread(target=lambda: results.append(manager.resolve_answer("e1", "From afar")))
        thread.start()
        thread.join()
        assert results == [True]
        assert await asyncio.wait_for(waiter, timeout=1) == "From afar"

    @pytest.mark.asyncio
    async def test_racing_answers(self, manager):
        """Test only one of many concurrent answers wins."""
        manager.register("e1", "c1", "boss", "Q")
        results = []
        threads = [
            threading.Thread(target=lambda i=i: results.append(manager.resolve_answer("e1", f"answer {i}")))
            for i in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert results.count(True) == 1

    def test_process_wide_manager(self):
        """Test the shared manager is a singleton."""
        assert get_escalation_manager() is get_escalation_manager()

    @pytest.mark.asyncio
    async def test_summary(self, manager):
        """Test the pending summary payload."""
        pending = manager.register("e1", "c1", "boss", "Q")
        summary = pending.summary()
        assert summary["question"] == "Q"
        assert summary["conversation_id"] == "c1"
        assert manager.get("e1") is pending
