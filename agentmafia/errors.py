"""
Error Taxonomy
==============

Exceptions raised by the orchestration engine and its collaborators.

Everything derives from AgentMafiaError so callers (the HTTP layer, the CLI)
can map a whole family to one response. Provider and tool failures are
normally caught by the orchestrator and fed back to the agent as turn input;
the rest surface to the caller of a public operation.
"""

from typing import Optional


class AgentMafiaError(Exception):
    """Base class for all engine errors."""


class ValidationError(AgentMafiaError):
    """Malformed or missing input to a public operation. Never retried."""


class NotFoundError(AgentMafiaError):
    """A referenced conversation, agent, escalation or phase does not exist."""

    def __init__(self, kind: str, identifier: str, message: Optional[str] = None):
        self.kind = kind
        self.identifier = identifier
        super().__init__(message or f"{kind} not found: {identifier}")


class CapabilityViolation(ValidationError):
    """A role was paired with a provider that cannot execute tools."""

    def __init__(self, role: str, provider_id: str, hint: str):
        self.role = role
        self.provider_id = provider_id
        self.hint = hint
        super().__init__(
            f'Provider "{provider_id}" cannot be used for role "{role}". '
            "Non-Anthropic providers (Kimi, OpenAI) can only analyze/report, "
            "not execute tasks. Use Anthropic for agents that need to delegate, "
            "execute code, or use tools."
        )

    def to_dict(self) -> dict:
        return {
            "error": str(self),
            "role": self.role,
            "provider_id": self.provider_id,
            "hint": self.hint,
        }


class InvalidTransition(AgentMafiaError):
    """A state machine was asked to move along an edge it does not have."""

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {entity} from '{current}' to '{target}'")


class InvalidStateError(AgentMafiaError):
    """An operation was applied to a conversation that cannot accept it."""


class TurnLimitExceeded(AgentMafiaError):
    """
    The per-run turn budget ran out.

    Recorded as a run outcome; never raised to the caller of start_task.
    """

    def __init__(self, turns: int, limit: int):
        self.turns = turns
        self.limit = limit
        super().__init__(f"Turn limit reached: {turns}/{limit} turns used")


class ProviderError(AgentMafiaError):
    """A model provider call failed."""

    def __init__(
        self,
        message: str,
        provider: str = "unknown",
        status_code: Optional[int] = None,
        transient: bool = False,
    ):
        self.provider = provider
        self.status_code = status_code
        self.transient = transient
        super().__init__(message)


class ProviderUnavailable(ProviderError):
    """The provider could not be reached at all. Fatal to the calling branch."""


class ToolError(AgentMafiaError):
    """A work tool (file, shell, sandbox) failed."""

    def __init__(self, tool: str, message: str):
        self.tool = tool
        super().__init__(message)


class EscalationCancelled(AgentMafiaError):
    """A parked escalation was abandoned because its conversation was torn down."""

    def __init__(self, escalation_id: str):
        self.escalation_id = escalation_id
        super().__init__(f"Escalation {escalation_id} cancelled")
