"""
Escalation Manager
==================

Process-wide table of questions waiting on the human boss.

When an underboss calls ``escalate_to_boss`` its branch registers the
escalation here and awaits it. The branch is parked on an asyncio Future, so
it is woken by the answer, never by polling. Resolution is exactly-once:
the entry is popped under a lock, so of two racing ``resolve_answer`` calls
only one can find it.

Lookup is global by escalation id so any caller (an operator UI, the CLI)
can answer without knowing which conversation asked.

Usage:
    from agentmafia.escalation import get_escalation_manager

    manager = get_escalation_manager()
    manager.register(escalation_id, conversation_id, agent_id, "Which approach?")

    # in the suspended branch
    answer = await manager.wait_for_answer(escalation_id)

    # anywhere else
    manager.resolve_answer(escalation_id, "Approach B")   # True
    manager.resolve_answer(escalation_id, "Approach C")   # False
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from agentmafia.errors import EscalationCancelled

logger = logging.getLogger(__name__)


@dataclass
class PendingEscalation:
    """A suspended branch waiting on a human answer."""
    escalation_id: str
    conversation_id: str
    agent_id: str
    question: str
    future: asyncio.Future
    loop: asyncio.AbstractEventLoop
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def summary(self) -> dict:
        return {
            "escalation_id": self.escalation_id,
            "conversation_id": self.conversation_id,
            "agent_id": self.agent_id,
            "question": self.question,
            "created_at": self.created_at,
        }


class EscalationManager:
    """
    Map of escalation id to its wake-up channel.

    Two maps, both guarded by ``self._lock``: ``_pending`` holds escalations
    still open for an answer, ``_channels`` holds every registered wake-up
    channel until its waiter has consumed it. An answer that lands before
    the branch starts awaiting is therefore not lost. Futures are completed
    on their own event loop via ``call_soon_threadsafe`` so an answer can
    come from any thread.
    """

    def __init__(self):
        self._pending: dict[str, PendingEscalation] = {}
        self._channels: dict[str, PendingEscalation] = {}
        self._lock = threading.Lock()

    def register(
        self,
        escalation_id: str,
        conversation_id: str,
        agent_id: str,
        question: str,
    ) -> PendingEscalation:
        """Create the wake-up channel. Must be called from the waiting loop."""
        loop = asyncio.get_running_loop()
        pending = PendingEscalation(
            escalation_id=escalation_id,
            conversation_id=conversation_id,
            agent_id=agent_id,
            question=question,
            future=loop.create_future(),
            loop=loop,
        )
        with self._lock:
            if escalation_id in self._channels:
                raise ValueError(f"Escalation already registered: {escalation_id}")
            self._pending[escalation_id] = pending
            self._channels[escalation_id] = pending
        logger.info("Escalation %s registered for conversation %s", escalation_id, conversation_id)
        return pending

    async def wait_for_answer(self, escalation_id: str) -> str:
        """
        Suspend until the escalation is answered.

        Raises:
            KeyError: If the id was never registered or its answer has
                already been consumed.
            EscalationCancelled: If the conversation was torn down first.
        """
        with self._lock:
            pending = self._channels.get(escalation_id)
        if pending is None:
            raise KeyError(escalation_id)
        try:
            return await pending.future
        finally:
            with self._lock:
                if self._channels.get(escalation_id) is pending:
                    del self._channels[escalation_id]
                if self._pending.get(escalation_id) is pending:
                    del self._pending[escalation_id]

    def resolve_answer(self, escalation_id: str, answer: str) -> bool:
        """
        Answer a pending escalation and wake its branch.

        Returns False, with no side effects, when the id is unknown or has
        already been resolved.
        """
        with self._lock:
            pending = self._pending.pop(escalation_id, None)
        if pending is None:
            return False
        pending.loop.call_soon_threadsafe(_settle, pending.future, answer, None)
        logger.info("Escalation %s answered", escalation_id)
        return True

    def cancel_conversation(self, conversation_id: str) -> int:
        """Wake every escalation of a conversation with EscalationCancelled."""
        with self._lock:
            doomed = [p for p in self._pending.values() if p.conversation_id == conversation_id]
            for pending in doomed:
                del self._pending[pending.escalation_id]
            # Answered-but-unconsumed channels are left for their waiters
        for pending in doomed:
            pending.loop.call_soon_threadsafe(
                _settle, pending.future, None, EscalationCancelled(pending.escalation_id)
            )
        if doomed:
            logger.info("Cancelled %d escalation(s) for conversation %s", len(doomed), conversation_id)
        return len(doomed)

    def has_pending(self, escalation_id: str) -> bool:
        with self._lock:
            return escalation_id in self._pending

    def pending_for(self, conversation_id: str) -> list[PendingEscalation]:
        with self._lock:
            return [p for p in self._pending.values() if p.conversation_id == conversation_id]

    def get(self, escalation_id: str) -> Optional[PendingEscalation]:
        with self._lock:
            return self._pending.get(escalation_id)


def _settle(future: asyncio.Future, result: Optional[str], error: Optional[BaseException]) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


# Process-wide table
_manager: Optional[EscalationManager] = None
_manager_lock = threading.Lock()


def get_escalation_manager() -> EscalationManager:
    """Get the process-wide EscalationManager."""
    global _manager
    with _manager_lock:
        if _manager is None:
            _manager = EscalationManager()
        return _manager
