"""
Progress Tracker
================

Per-conversation ledger of project phases, decisions, file changes and
checkpoints, so long jobs never lose track of where they are.

Phases follow a small state machine:

    pending ──start──> in_progress ──complete──> completed
       │                   │
       └──block──> blocked <┘        (blocked ──start──> in_progress)

Decisions, file changes and checkpoints are append-only. Every mutating
call on a tracker runs under that tracker's asyncio.Lock, and each log entry
is its own insert, so concurrent branches never lose an entry.

Storage: All data is persisted in the agentmafia.db SQLite database.

Usage:
    from agentmafia.progress import get_progress_tracker

    tracker = get_progress_tracker(conversation_id)
    await tracker.initialize_project("Billing refactor", "Split the module", [
        {"name": "Recon", "description": "Map the current code"},
        {"name": "Rewrite"},
    ])
    await tracker.start_phase("Recon", assignee="Paulie Gualtieri")
    await tracker.complete_phase("Recon", "Found three entry points")
    print(await tracker.build_context_summary())
"""

import asyncio
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentmafia.db.connection import get_session_maker
from agentmafia.db.models import (
    CheckpointRecord,
    DecisionRecord,
    FileChange,
    ProgressPhase,
    ProjectProgress,
)
from agentmafia.errors import InvalidTransition, NotFoundError, ValidationError

PHASE_STATUSES = ("pending", "in_progress", "completed", "blocked")
PROJECT_STATUSES = ("in_progress", "blocked", "paused", "complete")
CHANGE_TYPES = ("created", "modified", "deleted")

# Allowed source states per phase operation
_START_FROM = {"pending", "blocked"}
_BLOCK_FROM = {"pending", "in_progress"}

_PHASE_MARKERS = {
    "completed": "[x]",
    "in_progress": "[>]",
    "blocked": "[!]",
    "pending": "[ ]",
}

RESULT_PREVIEW_CHARS = 200
RECENT_ENTRIES = 10


@dataclass
class PhaseSpec:
    """A phase to create."""
    name: str
    description: Optional[str] = None

    @classmethod
    def coerce(cls, value: Union["PhaseSpec", dict, str]) -> "PhaseSpec":
        if isinstance(value, PhaseSpec):
            return value
        if isinstance(value, str):
            return cls(name=value)
        return cls(name=value["name"], description=value.get("description"))


@dataclass
class Checkpoint:
    """A saved snapshot for resuming work."""
    name: str
    description: Optional[str]
    context_summary: str
    pending_tasks: list[str]
    phase_snapshot: list[dict]
    created_at: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ProgressSummary:
    """Full structured snapshot of a conversation's progress."""
    project_name: str
    objective: str
    status: str
    current_phase: Optional[str]
    completed_phases: int
    total_phases: int
    last_active: str
    phases: list[dict] = field(default_factory=list)
    recent_decisions: list[dict] = field(default_factory=list)
    recent_file_changes: list[dict] = field(default_factory=list)
    pending_work: list[str] = field(default_factory=list)
    latest_checkpoint: Optional[dict] = None

    @property
    def progress(self) -> str:
        return f"{self.completed_phases}/{self.total_phases} phases complete"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["progress"] = self.progress
        return data


def _iso(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ProgressTracker:
    """Progress ledger for one conversation."""

    def __init__(
        self,
        conversation_id: str,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.conversation_id = conversation_id
        self._session_maker = session_maker
        self._lock = asyncio.Lock()

    def _session(self) -> AsyncSession:
        maker = self._session_maker or get_session_maker()
        return maker()

    async def _project(self, session: AsyncSession) -> ProjectProgress:
        project = (await session.execute(
            select(ProjectProgress).where(ProjectProgress.conversation_id == self.conversation_id)
        )).scalars().first()
        if project is None:
            raise NotFoundError(
                "progress", self.conversation_id,
                f"Progress tracking not initialized for conversation {self.conversation_id}",
            )
        return project

    async def _phase(self, session: AsyncSession, name: str) -> ProgressPhase:
        phase = (await session.execute(select(ProgressPhase).where(
            ProgressPhase.conversation_id == self.conversation_id,
            ProgressPhase.name == name,
        ))).scalars().first()
        if phase is None:
            raise NotFoundError("phase", name)
        return phase

    async def _phases(self, session: AsyncSession) -> list[ProgressPhase]:
        result = await session.execute(
            select(ProgressPhase)
            .where(ProgressPhase.conversation_id == self.conversation_id)
            .order_by(ProgressPhase.order_index, ProgressPhase.id)
        )
        return list(result.scalars().all())

    # =========================================================================
    # Project lifecycle
    # =========================================================================

    async def is_initialized(self) -> bool:
        """True once initialize_project has run, even with zero phases."""
        async with self._session() as session:
            count = (await session.execute(
                select(func.count(ProjectProgress.id))
                .where(ProjectProgress.conversation_id == self.conversation_id)
            )).scalar_one()
        return count > 0

    async def initialize_project(
        self,
        name: str,
        objective: str,
        initial_phases: Iterable[Union[PhaseSpec, dict, str]] = (),
    ) -> bool:
        """
        Create the project and its phases.

        Idempotent: returns False and changes nothing if the project already
        exists.
        """
        if not name or not objective:
            raise ValidationError("Project name and objective are required")
        specs = [PhaseSpec.coerce(p) for p in initial_phases]
        names = [s.name for s in specs]
        if len(set(names)) != len(names):
            raise ValidationError("Phase names must be unique")

        async with self._lock:
            async with self._session() as session:
                existing = (await session.execute(
                    select(ProjectProgress.id)
                    .where(ProjectProgress.conversation_id == self.conversation_id)
                )).scalar()
                if existing is not None:
                    return False
                session.add(ProjectProgress(
                    conversation_id=self.conversation_id,
                    project_name=name,
                    objective=objective,
                    total_phases=len(specs),
                ))
                for index, spec in enumerate(specs):
                    session.add(ProgressPhase(
                        conversation_id=self.conversation_id,
                        name=spec.name,
                        description=spec.description,
                        order_index=index,
                    ))
                await session.commit()
        return True

    async def update_status(self, status: str, current_phase: Optional[str] = None) -> None:
        if status not in PROJECT_STATUSES:
            raise ValidationError(
                f"Invalid project status '{status}'. Must be one of: {', '.join(PROJECT_STATUSES)}"
            )
        async with self._lock:
            async with self._session() as session:
                project = await self._project(session)
                project.status = status
                if current_phase:
                    project.current_phase = current_phase
                await session.commit()

    # =========================================================================
    # Phases
    # =========================================================================

    async def add_phase(self, name: str, description: Optional[str] = None) -> None:
        async with self._lock:
            async with self._session() as session:
                project = await self._project(session)
                phases = await self._phases(session)
                if any(p.name == name for p in phases):
                    raise ValidationError(f"Phase already exists: {name}")
                next_index = max((p.order_index for p in phases), default=-1) + 1
                session.add(ProgressPhase(
                    conversation_id=self.conversation_id,
                    name=name,
                    description=description,
                    order_index=next_index,
                ))
                project.total_phases = len(phases) + 1
                await session.commit()

    async def start_phase(self, name: str, assignee: Optional[str] = None) -> None:
        """pending/blocked -> in_progress."""
        async with self._lock:
            async with self._session() as session:
                project = await self._project(session)
                phase = await self._phase(session, name)
                if phase.status not in _START_FROM:
                    raise InvalidTransition(f"phase '{name}'", phase.status, "in_progress")
                phase.status = "in_progress"
                phase.blocked_by = None
                if assignee:
                    phase.assigned_to = assignee
                phase.started_at = _now()
                project.current_phase = name
                if project.status == "blocked":
                    project.status = "in_progress"
                await session.commit()

    async def complete_phase(self, name: str, result: Optional[str] = None) -> None:
        """any non-terminal state -> completed."""
        async with self._lock:
            async with self._session() as session:
                project = await self._project(session)
                phase = await self._phase(session, name)
                if phase.status == "completed":
                    raise InvalidTransition(f"phase '{name}'", phase.status, "completed")
                phase.status = "completed"
                phase.result = result
                phase.blocked_by = None
                phase.completed_at = _now()
                await session.flush()
                project.completed_phases = (await session.execute(
                    select(func.count(ProgressPhase.id)).where(
                        ProgressPhase.conversation_id == self.conversation_id,
                        ProgressPhase.status == "completed",
                    )
                )).scalar_one()
                await session.commit()

    async def block_phase(self, name: str, blocked_by: str) -> None:
        """pending/in_progress -> blocked, recording the reason."""
        async with self._lock:
            async with self._session() as session:
                project = await self._project(session)
                phase = await self._phase(session, name)
                if phase.status not in _BLOCK_FROM:
                    raise InvalidTransition(f"phase '{name}'", phase.status, "blocked")
                phase.status = "blocked"
                phase.blocked_by = blocked_by
                project.status = "blocked"
                await session.commit()

    # =========================================================================
    # Append-only logs
    # =========================================================================

    async def record_decision(
        self,
        topic: str,
        question: str,
        decision: str,
        rationale: Optional[str] = None,
        made_by: Optional[str] = None,
        phase: Optional[str] = None,
    ) -> int:
        async with self._lock:
            async with self._session() as session:
                await self._project(session)
                if phase:
                    await self._phase(session, phase)
                row = DecisionRecord(
                    conversation_id=self.conversation_id,
                    topic=topic,
                    question=question,
                    decision=decision,
                    rationale=rationale,
                    made_by=made_by,
                    phase=phase,
                )
                session.add(row)
                await session.commit()
                return row.id

    async def record_file_change(
        self,
        path: str,
        change_type: str,
        description: Optional[str] = None,
        agent: Optional[str] = None,
        phase: Optional[str] = None,
    ) -> int:
        if change_type not in CHANGE_TYPES:
            raise ValidationError(
                f"Invalid change type '{change_type}'. Must be one of: {', '.join(CHANGE_TYPES)}"
            )
        async with self._lock:
            async with self._session() as session:
                await self._project(session)
                row = FileChange(
                    conversation_id=self.conversation_id,
                    file_path=path,
                    change_type=change_type,
                    description=description,
                    agent=agent,
                    phase=phase,
                )
                session.add(row)
                await session.commit()
                return row.id

    async def create_checkpoint(
        self,
        name: str,
        description: Optional[str] = None,
        pending_tasks: Optional[list[str]] = None,
    ) -> Checkpoint:
        async with self._lock:
            async with self._session() as session:
                await self._project(session)
                phases = await self._phases(session)
                summary = await self._render_summary(session)
                row = CheckpointRecord(
                    conversation_id=self.conversation_id,
                    name=name,
                    description=description,
                    phase_snapshot=[
                        {"name": p.name, "status": p.status, "result": p.result} for p in phases
                    ],
                    context_summary=summary,
                    pending_tasks=list(pending_tasks or []),
                )
                session.add(row)
                await session.commit()
                return _checkpoint(row)

    async def get_latest_checkpoint(self) -> Optional[Checkpoint]:
        async with self._session() as session:
            row = (await session.execute(
                select(CheckpointRecord)
                .where(CheckpointRecord.conversation_id == self.conversation_id)
                .order_by(CheckpointRecord.id.desc())
                .limit(1)
            )).scalars().first()
        return _checkpoint(row) if row else None

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_summary(self) -> ProgressSummary:
        async with self._session() as session:
            project = await self._project(session)
            phases = await self._phases(session)
            decisions = await self._recent(session, DecisionRecord)
            changes = await self._recent(session, FileChange)
            latest = (await session.execute(
                select(CheckpointRecord)
                .where(CheckpointRecord.conversation_id == self.conversation_id)
                .order_by(CheckpointRecord.id.desc())
                .limit(1)
            )).scalars().first()

        return ProgressSummary(
            project_name=project.project_name,
            objective=project.objective,
            status=project.status,
            current_phase=project.current_phase,
            completed_phases=project.completed_phases,
            total_phases=project.total_phases,
            last_active=_iso(project.last_active_at),
            phases=[{
                "name": p.name,
                "description": p.description,
                "status": p.status,
                "assigned_to": p.assigned_to,
                "result": p.result,
                "blocked_by": p.blocked_by,
            } for p in phases],
            recent_decisions=[{
                "topic": d.topic,
                "question": d.question,
                "decision": d.decision,
                "rationale": d.rationale,
                "made_by": d.made_by,
            } for d in decisions],
            recent_file_changes=[{
                "path": c.file_path,
                "change_type": c.change_type,
                "description": c.description,
                "agent": c.agent,
            } for c in changes],
            pending_work=[
                f"{p.name} ({p.status})" + (f" - blocked by: {p.blocked_by}" if p.blocked_by else "")
                for p in phases if p.status != "completed"
            ],
            latest_checkpoint=_checkpoint(latest).to_dict() if latest else None,
        )

    async def _recent(self, session: AsyncSession, model: Any) -> list:
        result = await session.execute(
            select(model)
            .where(model.conversation_id == self.conversation_id)
            .order_by(model.id.desc())
            .limit(RECENT_ENTRIES)
        )
        return list(result.scalars().all())

    async def build_context_summary(self) -> str:
        """
        Condensed markdown digest sized for an agent's context window.

        Output depends only on stored state (rows are ordered by id), so
        repeated calls on unchanged state return identical text.
        """
        async with self._session() as session:
            return await self._render_summary(session)

    async def _render_summary(self, session: AsyncSession) -> str:
        project = await self._project(session)
        phases = await self._phases(session)
        decisions = await self._recent(session, DecisionRecord)
        changes = await self._recent(session, FileChange)

        lines = [
            f"# PROJECT: {project.project_name}",
            f"**Objective:** {project.objective}",
            f"**Status:** {project.status} (Phase: {project.current_phase or 'none'})",
            f"**Progress:** {project.completed_phases}/{project.total_phases} phases complete",
            "",
            "## PHASES",
        ]
        for phase in phases:
            lines.append(f"{_PHASE_MARKERS.get(phase.status, '[?]')} **{phase.name}**: {phase.status}")
            if phase.assigned_to:
                lines.append(f"   Assigned to: {phase.assigned_to}")
            if phase.result:
                preview = phase.result[:RESULT_PREVIEW_CHARS]
                ellipsis = "..." if len(phase.result) > RESULT_PREVIEW_CHARS else ""
                lines.append(f"   Result: {preview}{ellipsis}")
            if phase.blocked_by:
                lines.append(f"   Blocked by: {phase.blocked_by}")
        lines.append("")

        if decisions:
            lines.append("## KEY DECISIONS MADE")
            for decision in decisions:
                lines.append(f"- **{decision.topic}**: {decision.decision}")
                if decision.rationale:
                    lines.append(f"  Rationale: {decision.rationale}")
            lines.append("")

        if changes:
            lines.append("## RECENT FILE CHANGES")
            for change in changes:
                lines.append(f"- [{change.change_type}] {change.file_path}: {change.description or ''}".rstrip())
            lines.append("")

        pending = [p for p in phases if p.status in ("pending", "in_progress")]
        if pending:
            lines.append("## PENDING WORK")
            for phase in pending:
                lines.append(f"- {phase.name}: {phase.description or phase.status}")

        return "\n".join(lines).rstrip() + "\n"

    async def build_resume_context(self) -> Optional[str]:
        """Progress block injected into a follow-up task, or None if untracked."""
        if not await self.is_initialized():
            return None
        summary = await self.build_context_summary()
        checkpoint = await self.get_latest_checkpoint()

        parts = ["=== PROJECT PROGRESS CONTEXT ===", summary]
        if checkpoint:
            parts.append(f"=== LAST CHECKPOINT: {checkpoint.name} ({checkpoint.created_at}) ===")
            if checkpoint.description:
                parts.append(checkpoint.description)
            if checkpoint.pending_tasks:
                parts.append("Pending tasks from checkpoint:")
                parts.extend(f"- {task}" for task in checkpoint.pending_tasks)
        parts.append("=== END PROGRESS CONTEXT ===")
        return "\n".join(parts)


def _checkpoint(row: CheckpointRecord) -> Checkpoint:
    return Checkpoint(
        name=row.name,
        description=row.description,
        context_summary=row.context_summary,
        pending_tasks=list(row.pending_tasks or []),
        phase_snapshot=list(row.phase_snapshot or []),
        created_at=_iso(row.created_at),
    )


# =============================================================================
# Action Dispatch
# =============================================================================

def _require(args: dict, *keys: str) -> None:
    missing = [k for k in keys if not args.get(k)]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}")


async def apply_progress_action(
    tracker: ProgressTracker,
    action: str,
    args: dict,
    actor: Optional[str] = None,
) -> str:
    """
    Apply one named progress action and describe what happened.

    Shared by the ``update_progress`` agent tool and the HTTP PATCH route.
    ``actor`` fills assignee/author fields the caller left empty.
    """
    if action == "initialize":
        _require(args, "project_name", "objective")
        created = await tracker.initialize_project(
            args["project_name"], args["objective"], args.get("phases") or ()
        )
        return "Project initialized" if created else "Project already initialized; nothing changed"
    if action == "add_phase":
        _require(args, "phase")
        await tracker.add_phase(args["phase"], args.get("description"))
        return f"Phase added: {args['phase']}"
    if action == "start_phase":
        _require(args, "phase")
        await tracker.start_phase(args["phase"], args.get("assignee") or actor)
        return f"Phase started: {args['phase']}"
    if action == "complete_phase":
        _require(args, "phase")
        await tracker.complete_phase(args["phase"], args.get("result"))
        return f"Phase completed: {args['phase']}"
    if action == "block_phase":
        _require(args, "phase", "blocked_by")
        await tracker.block_phase(args["phase"], args["blocked_by"])
        return f"Phase blocked: {args['phase']}"
    if action == "record_decision":
        _require(args, "topic", "decision")
        entry_id = await tracker.record_decision(
            args["topic"],
            args.get("question") or "",
            args["decision"],
            rationale=args.get("rationale"),
            made_by=args.get("made_by") or actor,
            phase=args.get("phase"),
        )
        return f"Decision recorded (#{entry_id})"
    if action == "record_file_change":
        _require(args, "file_path", "change_type")
        entry_id = await tracker.record_file_change(
            args["file_path"],
            args["change_type"],
            description=args.get("description"),
            agent=args.get("agent") or actor,
            phase=args.get("phase"),
        )
        return f"File change recorded (#{entry_id})"
    if action == "create_checkpoint":
        _require(args, "checkpoint_name")
        checkpoint = await tracker.create_checkpoint(
            args["checkpoint_name"], args.get("description"), args.get("pending_tasks")
        )
        return f"Checkpoint saved: {checkpoint.name}"
    if action == "update_status":
        _require(args, "status")
        await tracker.update_status(args["status"], args.get("phase"))
        return f"Project status: {args['status']}"
    raise ValidationError(f"Unknown progress action: {action}")


# =============================================================================
# Registry
# =============================================================================

_trackers: dict[str, ProgressTracker] = {}
_trackers_lock = threading.Lock()


def get_progress_tracker(conversation_id: str) -> ProgressTracker:
    """Get (creating lazily) the tracker for a conversation."""
    with _trackers_lock:
        tracker = _trackers.get(conversation_id)
        if tracker is None:
            tracker = ProgressTracker(conversation_id)
            _trackers[conversation_id] = tracker
        return tracker


def forget_progress_tracker(conversation_id: str) -> None:
    """Drop a cached tracker (after its conversation is deleted)."""
    with _trackers_lock:
        _trackers.pop(conversation_id, None)
