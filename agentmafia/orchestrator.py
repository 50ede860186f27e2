"""
Task Orchestrator
=================

Runs a job through the agent hierarchy.

A run is a tree of branches. Each branch is one invocation of one agent: a
bounded turn loop that calls the agent's model provider, then interprets the
tool calls it returns. Routing tools (delegate_task, ask_agent, review_work,
summarize_for) start child branches; escalate_to_boss parks the branch until
the human answers; submit_result ends it. Everything else goes to the work
tools.

All branches of a run share one RunState: the cancel signal, the turn
counter and the per-agent invocation counts. Cancellation is cooperative and
is checked at every turn boundary and before every delegation.

Usage:
    from agentmafia.orchestrator import Orchestrator

    orchestrator = Orchestrator(ConversationStore(), AgentMafiaConfig.load())
    conversation_id = await orchestrator.start_task("Add a /health endpoint")
    outcome = await orchestrator.wait_for_run(conversation_id)
"""

import asyncio
import copy
import logging
import re
import threading
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, List, Optional, Sequence, Union

from agentmafia.capabilities import CAPABILITY_HINT, is_allowed
from agentmafia.config import AgentMafiaConfig
from agentmafia.db.models import Escalation, OrgTemplate
from agentmafia.errors import (
    AgentMafiaError,
    CapabilityViolation,
    EscalationCancelled,
    InvalidStateError,
    InvalidTransition,
    NotFoundError,
    ProviderError,
    ProviderUnavailable,
    TurnLimitExceeded,
    ValidationError,
)
from agentmafia.escalation import EscalationManager, get_escalation_manager
from agentmafia.events import TRANSIENT_EVENTS, EventBus, EventType, event_bus
from agentmafia.org_builder import (
    OrgDesign,
    OrgResult,
    design_from_org,
    design_org,
    design_to_json,
    parse_design,
    plan_entities,
    validate_design,
)
from agentmafia.progress import forget_progress_tracker, get_progress_tracker
from agentmafia.prompts import build_system_prompt, wrap_task
from agentmafia.providers.base import ImageInput, ProviderResponse, ToolCall
from agentmafia.providers.router import ProviderRegistry
from agentmafia.retry import with_retry
from agentmafia.store import ConversationStore, to_dict
from agentmafia.tools import definitions as tool_names
from agentmafia.tools.base import ExtraTool, ToolContext
from agentmafia.tools.definitions import Toolbox, build_toolbox
from agentmafia.tools.dispatch import run_work_tool
from agentmafia.visual import route_visual_task

logger = logging.getLogger(__name__)

STOPPED_TEXT = "[Job stopped by the boss]"
TURN_LIMIT_TEXT = "[Turn limit reached]"
AGENT_ERROR_PREFIX = "[Agent error]"
HISTORY_MESSAGES = 20
HISTORY_CHARS = 500
EVENT_PREVIEW_CHARS = 1000

# Text that announces waiting instead of calling a tool
WAITING_PATTERNS = [
    re.compile(r"\b(wait|waiting)\s+(for|on)\s+(him|her|them|it|the|results?|report)", re.IGNORECASE),
    re.compile(r"\blemme\s+wait", re.IGNORECASE),
    re.compile(r"\bstanding\s+by", re.IGNORECASE),
    re.compile(r"\blet\s+me\s+wait", re.IGNORECASE),
    re.compile(r"\bwill\s+wait\s+for", re.IGNORECASE),
    re.compile(r"\bi'll\s+wait", re.IGNORECASE),
    re.compile(r"\bwaiting\s+for\s+(.*?)\s+to\s+(report|finish|complete|respond)", re.IGNORECASE),
    re.compile(r"\b(await|expecting)\s+(his|her|their|the)\s+(report|results?|response)", re.IGNORECASE),
]


def announces_waiting(text: str) -> bool:
    return any(pattern.search(text) for pattern in WAITING_PATTERNS)


# =============================================================================
# Run State
# =============================================================================

class BranchState(str, Enum):
    RUNNING = "running"
    AWAITING_ESCALATION = "awaiting_escalation"
    AWAITING_CHILDREN = "awaiting_children"
    TERMINAL = "terminal"


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    STOPPED = "stopped"
    TURN_LIMIT_EXCEEDED = "turn_limit_exceeded"
    FAILED = "failed"


class TurnCounter:
    """Run-wide turn budget. ``try_acquire`` is atomic across threads."""

    def __init__(self, limit: int):
        self.limit = limit
        self._used = 0
        self._lock = threading.Lock()

    @property
    def used(self) -> int:
        with self._lock:
            return self._used

    def try_acquire(self) -> bool:
        with self._lock:
            if self._used >= self.limit:
                return False
            self._used += 1
            return True


@dataclass
class Branch:
    """One agent invocation inside a run."""
    branch_id: int
    agent_id: str
    agent_name: str
    depth: int
    parent_id: Optional[int] = None
    state: BranchState = BranchState.RUNNING
    turns: int = 0
    result: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RunState:
    """Shared state of one in-flight run."""
    conversation_id: str
    counter: TurnCounter
    working_directory: Optional[str] = None
    cancel: threading.Event = field(default_factory=threading.Event)
    invocations: Counter = field(default_factory=Counter)
    branches: List[Branch] = field(default_factory=list)
    task: Optional[asyncio.Task] = None
    turn_limit_hit: bool = False

    def is_cancelled(self) -> bool:
        return self.cancel.is_set()

    def new_branch(self, agent: dict, depth: int, parent: Optional[Branch]) -> Branch:
        branch = Branch(
            branch_id=len(self.branches) + 1,
            agent_id=agent["id"],
            agent_name=agent["name"],
            depth=depth,
            parent_id=parent.branch_id if parent else None,
        )
        self.branches.append(branch)
        return branch


class _BranchHalted(Exception):
    """Internal: the branch saw the cancel signal or the turn budget ran out."""


ImageLike = Union[ImageInput, dict]


def _coerce_images(images: Optional[Iterable[ImageLike]]) -> List[ImageInput]:
    return [img if isinstance(img, ImageInput) else ImageInput.from_dict(img) for img in images or ()]


def _append_user_text(messages: List[dict], text: str) -> None:
    """Add text to the trailing user turn, or open a new one."""
    last = messages[-1] if messages else None
    if last and last["role"] == "user" and isinstance(last["content"], list):
        last["content"].append({"type": "text", "text": text})
    else:
        messages.append({"role": "user", "content": [{"type": "text", "text": text}]})


def _tool_result(call: ToolCall, text: str, is_error: bool = False) -> dict:
    block = {"type": "tool_result", "tool_use_id": call.id, "content": text}
    if is_error:
        block["is_error"] = True
    return block


# =============================================================================
# Orchestrator
# =============================================================================

class Orchestrator:
    """
    Owns task lifecycle for every conversation in the process.

    The run registry is guarded by ``self._lock``; each RunState's cancel
    signal and turn counter are thread-safe on their own.
    """

    def __init__(
        self,
        store: ConversationStore,
        config: Optional[AgentMafiaConfig] = None,
        providers: Optional[ProviderRegistry] = None,
        escalations: Optional[EscalationManager] = None,
        bus: Optional[EventBus] = None,
        extra_tools: Sequence[ExtraTool] = (),
    ):
        self.store = store
        self.config = config or AgentMafiaConfig()
        self.providers = providers or ProviderRegistry()
        self.escalations = escalations or get_escalation_manager()
        self.bus = bus or event_bus
        self.extra_tools = list(extra_tools)
        self._runs: dict[str, RunState] = {}
        self._lock = threading.Lock()

    # =========================================================================
    # Public operations
    # =========================================================================

    async def start_task(
        self,
        task: str,
        images: Optional[Iterable[ImageLike]] = None,
        working_directory: Optional[str] = None,
        root_agent_id: Optional[str] = None,
        dynamic: bool = False,
    ) -> str:
        """
        Start a job and return its conversation id without waiting for it.

        Raises:
            ValidationError: Empty task or relative working directory.
            NotFoundError: No root agent could be found.
        """
        task = self._validate_task(task)
        self._validate_working_directory(working_directory)

        if dynamic:
            org = await self.create_dynamic_org(task, working_directory)
            await self.confirm_dynamic_org(org.conversation_id, images=images)
            return org.conversation_id

        root = await self._resolve_root(None, root_agent_id)
        conversation = await self.store.create_conversation(task, working_directory)
        await self._append_user_message(conversation.id, task, images, working_directory)
        run = await self._reserve_run(conversation.id, working_directory)
        self._launch(run, root, task, images)
        return conversation.id

    async def continue_task(
        self,
        conversation_id: str,
        message: str,
        images: Optional[Iterable[ImageLike]] = None,
    ) -> None:
        """
        Send a follow-up into an existing conversation and resume the crew.

        Raises:
            NotFoundError: Unknown conversation.
            InvalidStateError: Conversation stopped, already running, or
                deleted while the follow-up was being prepared.
        """
        message = self._validate_task(message)
        conversation = await self.store.get_conversation(conversation_id)
        if conversation.status == "stopped":
            raise InvalidStateError("Conversation was stopped and cannot be continued")

        run = await self._reserve_run(conversation_id, conversation.working_directory)
        try:
            root = await self._resolve_root(conversation_id, None)
            history = await self._history_prefix(conversation_id)
            resume = None
            tracker = get_progress_tracker(conversation_id)
            if await tracker.is_initialized():
                resume = await tracker.build_resume_context()

            await self._append_user_message(conversation_id, message, images, None)
            try:
                await self.store.set_conversation_status(conversation_id, "active")
            except NotFoundError:
                raise InvalidStateError("Conversation was deleted while resuming") from None
        except BaseException:
            self._release_run(run)
            raise

        parts = []
        if history:
            parts.append(history)
        if resume:
            parts.append(resume)
        parts.append(f"FOLLOW-UP REQUEST: {message}")
        self._launch(run, root, "\n\n---\n".join(parts), images)

    async def execute_conversation(
        self,
        agent_id: str,
        task: str,
        images: Optional[Iterable[ImageLike]] = None,
        working_directory: Optional[str] = None,
    ) -> str:
        """Run a single agent on a task, outside the hierarchy."""
        task = self._validate_task(task)
        self._validate_working_directory(working_directory)
        agent = to_dict(await self.store.get_agent(agent_id))
        conversation = await self.store.create_conversation(task, working_directory)
        await self._append_user_message(conversation.id, task, images, working_directory)
        run = await self._reserve_run(conversation.id, working_directory)
        self._launch(run, agent, task, images, allow_delegation=False)
        return conversation.id

    def cancel_orchestration(self, conversation_id: str) -> bool:
        """
        Signal a run to stop.

        Returns True only when an in-flight run was found that had not
        already been signalled.
        """
        with self._lock:
            run = self._runs.get(conversation_id)
            if run is None or run.cancel.is_set():
                return False
            run.cancel.set()
        woken = self.escalations.cancel_conversation(conversation_id)
        logger.info("Cancel requested for %s (%d escalation(s) woken)", conversation_id, woken)
        return True

    async def create_dynamic_org(self, task: str, working_directory: Optional[str] = None) -> OrgResult:
        """
        Design and persist a crew for ``task`` in a new pending conversation.

        Nothing runs until ``confirm_dynamic_org``.
        """
        task = self._validate_task(task)
        self._validate_working_directory(working_directory)
        conversation = await self.store.create_conversation(task, working_directory, status="pending")
        try:
            planner_model = self.config.planner_model
            provider = self.providers.get(None, planner_model)
            design = await with_retry(lambda: design_org(task, provider, planner_model))
            return await self._install_design(conversation.id, design, task, working_directory)
        except Exception:
            logger.warning("Dynamic organization failed for %s; discarding", conversation.id)
            await self.store.delete_conversation(conversation.id)
            raise

    async def create_org_from_template(
        self,
        template_id: str,
        task: str,
        working_directory: Optional[str] = None,
    ) -> OrgResult:
        """Like ``create_dynamic_org``, but the crew comes from a saved template."""
        task = self._validate_task(task)
        self._validate_working_directory(working_directory)
        template = await self.store.get_org_template(template_id)
        design = parse_design(template.agents, template.relationships)
        conversation = await self.store.create_conversation(task, working_directory, status="pending")
        try:
            return await self._install_design(conversation.id, design, task, working_directory)
        except Exception:
            logger.warning("Template %s could not be staffed for %s; discarding", template_id, conversation.id)
            await self.store.delete_conversation(conversation.id)
            raise

    async def save_org_template(
        self,
        conversation_id: str,
        name: str,
        description: Optional[str] = None,
    ) -> OrgTemplate:
        """Save the dynamic crew of a conversation as a reusable template."""
        await self.store.get_conversation(conversation_id)
        agents = [a for a in await self.store.list_agents(conversation_id) if a.conversation_id == conversation_id]
        if not agents:
            raise ValidationError("Conversation has no crew of its own to save")
        ids = {a.id for a in agents}
        relationships = [r for r in await self.store.list_relationships() if r.from_agent_id in ids]
        design = design_from_org(agents, relationships)
        validate_design(design)
        agent_specs, relationship_specs = design_to_json(design)
        return await self.store.create_org_template(name, agent_specs, relationship_specs, description)

    async def confirm_dynamic_org(
        self,
        conversation_id: str,
        images: Optional[Iterable[ImageLike]] = None,
    ) -> None:
        """Start a pending dynamic conversation with its stored task."""
        conversation = await self.store.get_conversation(conversation_id)
        if conversation.status != "pending":
            raise InvalidStateError(f"Conversation is {conversation.status}, not pending")
        messages = await self.store.list_messages(conversation_id, roles=("user",))
        if not messages:
            raise InvalidStateError("Pending conversation has no task")
        task = messages[0].content

        run = await self._reserve_run(conversation_id, conversation.working_directory)
        try:
            root = await self._resolve_root(conversation_id, None)
            await self.store.set_conversation_status(conversation_id, "active")
        except BaseException:
            self._release_run(run)
            raise
        self._launch(run, root, task, images)

    async def answer_escalation(self, escalation_id: str, answer: str) -> bool:
        """
        Answer a pending escalation and wake its branch.

        Returns False when nothing is waiting on that id.
        """
        if not answer or not answer.strip():
            raise ValidationError("Answer is required")
        if not self.escalations.resolve_answer(escalation_id, answer):
            return False
        await self.store.mark_escalation_answered(escalation_id, answer)
        return True

    def describe_escalation(self, escalation: Escalation) -> dict:
        """
        Escalation row as a dict, flagged with whether a branch is still
        waiting on it. A pending row nobody waits on (its run ended, or the
        process restarted) is stale and can no longer be answered.
        """
        data = to_dict(escalation)
        data["awaitingAnswer"] = self.escalations.has_pending(escalation.id)
        data["stale"] = escalation.status == "pending" and not data["awaitingAnswer"]
        return data

    def is_running(self, conversation_id: str) -> bool:
        with self._lock:
            return conversation_id in self._runs

    async def wait_for_run(self, conversation_id: str) -> Optional[RunOutcome]:
        """Await the in-flight run of a conversation, if any."""
        with self._lock:
            run = self._runs.get(conversation_id)
        if run is None or run.task is None:
            return None
        return await asyncio.shield(run.task)

    def branch_states(self, conversation_id: str) -> List[Branch]:
        """Snapshot of the branches of the in-flight run."""
        with self._lock:
            run = self._runs.get(conversation_id)
            return [copy.copy(b) for b in run.branches] if run else []

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Stop every run and wait for them to unwind."""
        with self._lock:
            ids = list(self._runs)
        for conversation_id in ids:
            self.cancel_orchestration(conversation_id)
        with self._lock:
            tasks = [r.task for r in self._runs.values() if r.task is not None]
        await asyncio.gather(*(self._drain_run(task, timeout) for task in tasks))

    async def delete_conversation(self, conversation_id: str, timeout: float = 10.0) -> None:
        """
        Stop any run of the conversation, then delete it and its rows.

        The run is always awaited to the end before rows are removed, so its
        final events cannot land on a deleted conversation. A run that does
        not unwind within ``timeout`` is cancelled.
        """
        await self.store.get_conversation(conversation_id)
        self.cancel_orchestration(conversation_id)
        with self._lock:
            run = self._runs.get(conversation_id)
        if run is not None and run.task is not None:
            await self._drain_run(run.task, timeout)
        await self.store.delete_conversation(conversation_id)
        self.bus.clear(conversation_id)
        forget_progress_tracker(conversation_id)

    @staticmethod
    async def _drain_run(task: asyncio.Task, timeout: float) -> None:
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            logger.warning("Run %s did not stop within %gs; cancelling it", task.get_name(), timeout)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # =========================================================================
    # Launch helpers
    # =========================================================================

    @staticmethod
    def _validate_task(task: str) -> str:
        if not task or not task.strip():
            raise ValidationError("Task is required")
        return task.strip()

    @staticmethod
    def _validate_working_directory(working_directory: Optional[str]) -> None:
        if working_directory is None:
            return
        if not working_directory.startswith("/") and not re.match(r"^[A-Za-z]:[\\/]", working_directory):
            raise ValidationError(f"Working directory must be an absolute path: {working_directory}")

    async def _resolve_root(self, conversation_id: Optional[str], root_agent_id: Optional[str]) -> dict:
        if root_agent_id:
            return to_dict(await self.store.get_agent(root_agent_id))
        root = await self.store.find_root_agent(conversation_id)
        if root is None:
            raise NotFoundError(
                "agent", "underboss", "No underboss configured. Set up your mafia hierarchy first."
            )
        return to_dict(root)

    async def _append_user_message(
        self,
        conversation_id: str,
        content: str,
        images: Optional[Iterable[ImageLike]],
        working_directory: Optional[str],
    ) -> None:
        metadata: dict[str, Any] = {}
        image_list = _coerce_images(images)
        if image_list:
            metadata["images"] = [{"media_type": i.media_type, "data": i.data} for i in image_list]
        if working_directory:
            metadata["workingDirectory"] = working_directory
        await self.store.append_message(conversation_id, "user", content, metadata=metadata or None)

    async def _history_prefix(self, conversation_id: str) -> str:
        messages = await self.store.list_messages(
            conversation_id, roles=("user", "assistant"), last=HISTORY_MESSAGES
        )
        if not messages:
            return ""
        agents = await self.store.get_agents({m.agent_id for m in messages if m.agent_id})
        lines = []
        for m in messages:
            if m.role == "user":
                speaker = "USER"
            else:
                speaker = agents[m.agent_id].name if m.agent_id in agents else "AGENT"
            lines.append(f"{speaker}: {m.content[:HISTORY_CHARS]}")
        return "CONVERSATION HISTORY:\n" + "\n\n".join(lines)

    async def _reserve_run(self, conversation_id: str, working_directory: Optional[str]) -> RunState:
        limit = await self.store.get_max_agent_turns(self.config.max_agent_turns)
        run = RunState(
            conversation_id=conversation_id,
            counter=TurnCounter(limit),
            working_directory=working_directory,
        )
        with self._lock:
            if conversation_id in self._runs:
                raise InvalidStateError("A run is already in progress for this conversation")
            self._runs[conversation_id] = run
        return run

    async def _install_design(
        self,
        conversation_id: str,
        design: OrgDesign,
        task: str,
        working_directory: Optional[str],
    ) -> OrgResult:
        validate_design(design)
        plan = plan_entities(design, self.config.default_model)
        agents, relationships = await self.store.create_org(conversation_id, plan.agents, plan.relationships)
        await self._append_user_message(conversation_id, task, None, working_directory)
        logger.info("Organization built for %s: %d agents", conversation_id, len(agents))
        return OrgResult(
            conversation_id=conversation_id,
            agents=[to_dict(a) for a in agents],
            relationships=[to_dict(r) for r in relationships],
        )

    def _release_run(self, run: RunState) -> None:
        with self._lock:
            if self._runs.get(run.conversation_id) is run:
                del self._runs[run.conversation_id]

    def _launch(
        self,
        run: RunState,
        root: dict,
        task: str,
        images: Optional[Iterable[ImageLike]],
        allow_delegation: bool = True,
    ) -> None:
        run.task = asyncio.create_task(
            self._run(run, root, task, _coerce_images(images), allow_delegation),
            name=f"agentmafia-run-{run.conversation_id}",
        )

    # =========================================================================
    # Run lifecycle
    # =========================================================================

    async def _run(
        self,
        run: RunState,
        root: dict,
        task: str,
        images: List[ImageInput],
        allow_delegation: bool,
    ) -> RunOutcome:
        conversation_id = run.conversation_id
        logger.info("Run started for %s at %s", conversation_id, root["name"])
        try:
            await self._emit(run, EventType.TASK_START, {"task": task[:EVENT_PREVIEW_CHARS]})
            if images and allow_delegation:
                task = await self._route_visual(run, task, images)
            result = await self._run_branch(
                run, root["id"], task, depth=0, images=images, allow_delegation=allow_delegation
            )
            root_branch = run.branches[0] if run.branches else None

            if run.turn_limit_hit:
                exc = TurnLimitExceeded(run.counter.used, run.counter.limit)
                outcome, status = RunOutcome.TURN_LIMIT_EXCEEDED, "failed"
                await self._emit(run, EventType.TASK_TURN_LIMIT, {
                    "turns": run.counter.used,
                    "limit": run.counter.limit,
                    "error": str(exc),
                }, force=True)
            elif run.is_cancelled():
                outcome, status = RunOutcome.STOPPED, "stopped"
                await self._emit(run, EventType.TASK_STOPPED, {}, force=True)
            elif root_branch is not None and root_branch.error:
                outcome, status = RunOutcome.FAILED, "failed"
                await self._emit(run, EventType.TASK_ERROR, {"error": root_branch.error}, force=True)
            else:
                outcome, status = RunOutcome.COMPLETED, "completed"
                await self._emit(run, EventType.TASK_COMPLETE, {"result": result}, force=True)
            await self._finish_status(conversation_id, status)
        except asyncio.CancelledError:
            logger.warning("Run task for %s was cancelled", conversation_id)
            await asyncio.shield(self._finish_status(conversation_id, "stopped"))
            raise
        except Exception as e:
            logger.exception("Run failed for %s", conversation_id)
            outcome = RunOutcome.FAILED
            self.bus.publish(conversation_id, EventType.TASK_ERROR, {"error": str(e)})
            await self._finish_status(conversation_id, "failed")
        finally:
            self.escalations.cancel_conversation(conversation_id)
            self._release_run(run)
        logger.info("Run finished for %s: %s (%d turns)", conversation_id, outcome.value, run.counter.used)
        return outcome

    async def _route_visual(self, run: RunState, task: str, images: List[ImageInput]) -> str:
        """Have the visual analyst read the attachments before the crew starts."""
        route = await route_visual_task(task, images, self.providers, self.config.visual_analyst_model)
        if route.analyzed or route.error:
            await self._emit(run, EventType.VISUAL_ANALYSIS, {
                "model": self.config.visual_analyst_model,
                "detection": route.detection.to_dict(),
                "analysis": (route.analysis or "")[:EVENT_PREVIEW_CHARS],
                "error": route.error,
            })
        return route.task

    async def _finish_status(self, conversation_id: str, status: str) -> None:
        try:
            await self.store.set_conversation_status(conversation_id, status)
        except (InvalidTransition, NotFoundError) as e:
            logger.warning("Could not record final status %s for %s: %s", status, conversation_id, e)

    async def _emit(self, run: RunState, event_type: EventType, data: dict, force: bool = False) -> None:
        """Publish an event and persist it as an activity message."""
        if run.is_cancelled() and not force:
            return
        self.bus.publish(run.conversation_id, event_type, data)
        if event_type in TRANSIENT_EVENTS:
            return
        await self.store.append_message(
            run.conversation_id,
            "activity",
            "",
            agent_id=data.get("agentId"),
            metadata={"eventType": event_type.value, **data},
        )

    # =========================================================================
    # Branch execution
    # =========================================================================

    async def _run_branch(
        self,
        run: RunState,
        agent_id: str,
        task: str,
        depth: int,
        parent: Optional[Branch] = None,
        images: Sequence[ImageInput] = (),
        allow_delegation: bool = True,
    ) -> str:
        if run.is_cancelled():
            return TURN_LIMIT_TEXT if run.turn_limit_hit else STOPPED_TEXT
        if depth > self.config.max_delegation_depth:
            return "[Max delegation depth reached]"
        if run.invocations[agent_id] >= self.config.max_invocations_per_agent:
            return "[Agent already called too many times in this job - skipping to prevent a loop]"
        run.invocations[agent_id] += 1

        row = await self.store.find_agent(agent_id)
        if row is None:
            return "[Agent not found]"
        agent = to_dict(row)

        if not is_allowed(agent["role"], agent["provider_id"]):
            violation = CapabilityViolation(agent["role"], agent["provider_id"], CAPABILITY_HINT)
            await self._emit(run, EventType.AGENT_ERROR, {
                "agentId": agent_id,
                "agentName": agent["name"],
                "error": str(violation),
            })
            return f"[Capability violation]: {violation} {violation.hint}"

        branch = run.new_branch(agent, depth, parent)
        await self._emit(run, EventType.AGENT_START, {
            "agentId": agent_id,
            "agentName": agent["name"],
            "role": agent["role"],
            "task": task[:EVENT_PREVIEW_CHARS],
        })

        try:
            result = await self._turn_loop(run, branch, agent, task, images, allow_delegation)
        except _BranchHalted:
            branch.state = BranchState.TERMINAL
            branch.result = TURN_LIMIT_TEXT if run.turn_limit_hit else STOPPED_TEXT
            return branch.result
        except Exception as e:
            if isinstance(e, AgentMafiaError):
                logger.warning("Agent %s failed: %s", agent["name"], e)
            else:
                logger.exception("Agent %s crashed", agent["name"])
            result = f"{AGENT_ERROR_PREFIX}: {e}"
            branch.error = result
            await self._emit(run, EventType.AGENT_ERROR, {
                "agentId": agent_id,
                "agentName": agent["name"],
                "error": result,
            })

        branch.state = BranchState.TERMINAL
        branch.result = result
        if run.is_cancelled():
            return TURN_LIMIT_TEXT if run.turn_limit_hit else STOPPED_TEXT

        await self.store.append_message(
            run.conversation_id, "assistant", result, agent_id=agent_id, metadata={"depth": depth}
        )
        await self.store.record_agent_context(run.conversation_id, agent_id, task, result)
        await self._emit(run, EventType.AGENT_MESSAGE, {
            "agentId": agent_id,
            "agentName": agent["name"],
            "content": result,
        })
        await self._emit(run, EventType.AGENT_DONE, {"agentId": agent_id, "agentName": agent["name"]})
        return result

    async def _turn_loop(
        self,
        run: RunState,
        branch: Branch,
        agent: dict,
        task: str,
        images: Sequence[ImageInput],
        allow_delegation: bool,
    ) -> str:
        toolbox = await self._build_toolbox(run, agent, allow_delegation)
        previous = await self.store.get_agent_context(run.conversation_id, agent["id"])
        system = build_system_prompt(agent, run.working_directory, previous, allow_delegation)
        provider = self.providers.get(agent["provider_id"], agent["model"])
        model = agent["model"] or self.config.default_model

        content = [{"type": "text", "text": wrap_task(task)}]
        content.extend(image.to_block() for image in images)
        messages: List[dict] = [{"role": "user", "content": content}]
        consecutive_errors = 0

        while True:
            self._check_halt(run)
            if not run.counter.try_acquire():
                logger.warning("Turn limit %d reached in %s", run.counter.limit, run.conversation_id)
                with self._lock:
                    run.turn_limit_hit = True
                    run.cancel.set()
                self.escalations.cancel_conversation(run.conversation_id)
                raise _BranchHalted()
            branch.turns += 1

            try:
                response: ProviderResponse = await with_retry(
                    lambda: provider.complete(
                        model, system, messages, toolbox.specs, self.config.max_tokens
                    ),
                    should_stop=run.is_cancelled,
                )
            except ProviderUnavailable:
                raise
            except ProviderError as e:
                consecutive_errors += 1
                if consecutive_errors >= self.config.max_consecutive_provider_errors:
                    raise
                logger.warning("Provider error for %s (%d in a row): %s", agent["name"], consecutive_errors, e)
                _append_user_text(messages, f"[Provider error]: {e}. Carry on with the job.")
                continue
            consecutive_errors = 0
            self._check_halt(run)

            if not response.tool_calls:
                text = response.text
                if announces_waiting(text):
                    await self._emit(run, EventType.AGENT_WARNING, {
                        "agentId": agent["id"],
                        "agentName": agent["name"],
                        "warning": "Agent said it would wait but ended its turn without a tool call",
                        "lastText": text[:200],
                    })
                    text += (
                        "\n\n[WARNING: Agent turn ended early. The agent said it would wait "
                        "for results but made no tool call, so some work may not have been collected.]"
                    )
                return text

            messages.append({"role": "assistant", "content": response.content_blocks()})
            results = []
            submitted: Optional[str] = None
            for call in response.tool_calls:
                if submitted is not None:
                    results.append(_tool_result(call, "Result already submitted; call ignored.", True))
                    continue
                if call.name == tool_names.SUBMIT_RESULT:
                    submitted = str(call.input.get("result") or response.text or "")
                    results.append(_tool_result(call, "Result submitted."))
                    continue
                self._check_halt(run)
                text, is_error = await self._dispatch(run, branch, agent, toolbox, call)
                self._check_halt(run)
                results.append(_tool_result(call, text, is_error))

            if submitted is not None:
                return submitted
            messages.append({"role": "user", "content": results})

    def _check_halt(self, run: RunState) -> None:
        if run.is_cancelled():
            raise _BranchHalted()

    async def _build_toolbox(self, run: RunState, agent: dict, allow_delegation: bool) -> Toolbox:
        relationships = [to_dict(r) for r in await self.store.list_relationships(agent["id"])]
        other_ids = {r["from_agent_id"] for r in relationships} | {r["to_agent_id"] for r in relationships}
        agents_by_id = {
            agent_id: to_dict(row) for agent_id, row in (await self.store.get_agents(other_ids)).items()
        }
        return build_toolbox(
            agent,
            relationships,
            agents_by_id,
            working_directory=run.working_directory,
            allow_delegation=allow_delegation,
            extra_tools=self.extra_tools,
        )

    # =========================================================================
    # Tool dispatch
    # =========================================================================

    async def _dispatch(
        self,
        run: RunState,
        branch: Branch,
        agent: dict,
        toolbox: Toolbox,
        call: ToolCall,
    ) -> tuple[str, bool]:
        """Run one tool call; returns (result text, is_error)."""
        if call.name not in toolbox.names:
            return f"[Error]: Tool '{call.name}' is not available to you", True

        await self._emit(run, EventType.TOOL_CALL, {
            "agentId": agent["id"],
            "agentName": agent["name"],
            "tool": call.name,
            "input": call.input,
        })

        if call.name in tool_names.DELEGATION_TOOLS:
            text, is_error = await self._route(run, branch, agent, toolbox, call)
        elif call.name == tool_names.ESCALATE_TO_BOSS:
            text, is_error = await self._escalate(run, branch, agent, call), False
        else:
            ctx = ToolContext(
                conversation_id=run.conversation_id,
                agent_id=agent["id"],
                agent_name=agent["name"],
                working_directory=run.working_directory,
                command_timeout=self.config.command_timeout,
                sandbox_timeout=self.config.sandbox_timeout,
            )
            try:
                result = await run_work_tool(call.name, call.input, ctx, toolbox.extra)
                text, is_error = result.to_text(), result.is_error
            except Exception as e:
                logger.exception("Tool %s crashed for %s", call.name, agent["name"])
                text, is_error = f"[Tool error]: {e}", True
            if call.name == tool_names.UPDATE_PROGRESS and not is_error:
                await self._emit(run, EventType.PROGRESS_UPDATE, {
                    "agentId": agent["id"],
                    "agentName": agent["name"],
                    "action": call.input.get("action"),
                    "detail": text,
                })

        await self._emit(run, EventType.TOOL_RESULT, {
            "agentId": agent["id"],
            "agentName": agent["name"],
            "tool": call.name,
            "output": text[:EVENT_PREVIEW_CHARS],
            "isError": is_error,
        })
        return text, is_error

    async def _route(
        self,
        run: RunState,
        branch: Branch,
        agent: dict,
        toolbox: Toolbox,
        call: ToolCall,
    ) -> tuple[str, bool]:
        valid = toolbox.targets_for(call.name)
        args = call.input

        if call.name == tool_names.DELEGATE_TASK:
            requested = args.get("targets") or []
            if isinstance(requested, str):
                requested = [requested]
            targets = list(dict.fromkeys(t for t in requested if t in valid))
            if not targets:
                return f"[Error: No valid target IDs. Valid IDs: {', '.join(valid)}]", True
            child_task = str(args.get("task") or "")
        else:
            target = args.get("target")
            if target not in valid:
                return f"[Error: Invalid target. Valid IDs: {', '.join(valid)}]", True
            targets = [target]
            if call.name == tool_names.ASK_AGENT:
                child_task = str(args.get("question") or "")
            elif call.name == tool_names.REVIEW_WORK:
                child_task = (
                    f"{agent['name']} wants your review of the following work. "
                    f"Report problems and concrete fixes:\n\n{args.get('content', '')}"
                )
            else:
                child_task = (
                    f"{agent['name']} sent you this summary. Acknowledge it and note "
                    f"anything you need to act on:\n\n{args.get('content', '')}"
                )

        self._check_halt(run)
        branch.state = BranchState.AWAITING_CHILDREN
        try:
            results = await asyncio.gather(*(
                self._run_branch(run, target_id, child_task, branch.depth + 1, parent=branch)
                for target_id in targets
            ))
        finally:
            branch.state = BranchState.RUNNING

        if call.name != tool_names.DELEGATE_TASK:
            return results[0], False
        combined = "\n\n".join(
            f"[Result from {valid[target_id]['name']}]:\n{result}"
            for target_id, result in zip(targets, results)
        )
        return combined, False

    async def _escalate(self, run: RunState, branch: Branch, agent: dict, call: ToolCall) -> str:
        question = str(call.input.get("question") or "Need guidance from the boss")
        escalation = await self.store.create_escalation(run.conversation_id, agent["id"], question)
        self.escalations.register(escalation.id, run.conversation_id, agent["id"], question)
        if run.is_cancelled():
            # Cancel raced the registration; wake ourselves
            self.escalations.cancel_conversation(run.conversation_id)

        await self._emit(run, EventType.ESCALATION, {
            "escalationId": escalation.id,
            "agentId": agent["id"],
            "agentName": agent["name"],
            "question": question,
        })
        branch.state = BranchState.AWAITING_ESCALATION
        try:
            answer = await self.escalations.wait_for_answer(escalation.id)
        except EscalationCancelled:
            raise _BranchHalted() from None
        finally:
            branch.state = BranchState.RUNNING

        await self._emit(run, EventType.ESCALATION_ANSWERED, {
            "escalationId": escalation.id,
            "agentId": agent["id"],
            "agentName": agent["name"],
            "answer": answer,
        })
        return answer
