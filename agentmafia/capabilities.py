"""
Capability Registry
===================

Static knowledge about which model providers may back which agent roles.

Every role in the hierarchy (underboss, capo, soldier) needs to call tools:
delegating, running code, touching files. Only the Anthropic provider is
wired for that, so pairing any of those roles with an analysis-only provider
(Kimi, OpenAI) is refused. Checks always run against the pair that *would*
result from a change, so an update touching only the role is validated
against the persisted provider and vice versa.

Usage:
    from agentmafia.capabilities import check_capability, resolve_agent_fields

    role, provider_id = resolve_agent_fields(current, {"provider_id": "kimi"})
    check_capability(role, provider_id)   # raises CapabilityViolation
"""

from dataclasses import asdict, dataclass
from typing import Any, Mapping, Optional

from agentmafia.errors import CapabilityViolation, ValidationError

DEFAULT_PROVIDER = "anthropic"
DEFAULT_ROLE = "soldier"

ROLES = ("underboss", "capo", "soldier")
TOOL_REQUIRED_ROLES = frozenset(ROLES)

PROVIDER_IDS = ("anthropic", "kimi", "openai")

CAPABILITY_HINT = (
    "Kimi is best used as a visual analysis helper, not as a task executor "
    "in the hierarchy."
)


@dataclass(frozen=True)
class ProviderCapabilities:
    """What a provider integration can do."""
    supports_tools: bool
    supports_images: bool
    supports_streaming: bool
    executes_tools: bool
    max_context_tokens: int
    max_output_tokens: int

    def to_dict(self) -> dict:
        return asdict(self)


PROVIDER_CAPABILITIES: dict[str, ProviderCapabilities] = {
    "anthropic": ProviderCapabilities(
        supports_tools=True,
        supports_images=True,
        supports_streaming=True,
        executes_tools=True,
        max_context_tokens=200000,
        max_output_tokens=8192,
    ),
    "kimi": ProviderCapabilities(
        supports_tools=True,
        supports_images=True,
        supports_streaming=True,
        executes_tools=False,
        max_context_tokens=128000,
        max_output_tokens=8192,
    ),
    "openai": ProviderCapabilities(
        supports_tools=True,
        supports_images=True,
        supports_streaming=True,
        executes_tools=False,
        max_context_tokens=128000,
        max_output_tokens=4096,
    ),
}


def get_provider_capabilities(provider_id: str) -> ProviderCapabilities:
    """Look up capabilities, raising ValidationError for unknown providers."""
    try:
        return PROVIDER_CAPABILITIES[provider_id]
    except KeyError:
        raise ValidationError(f"Unknown provider: {provider_id}") from None


def validate_role(role: str) -> str:
    if role not in ROLES:
        raise ValidationError(f"Invalid role '{role}'. Must be one of: {', '.join(ROLES)}")
    return role


def is_allowed(role: str, provider_id: str) -> bool:
    """True when the (role, provider) pair satisfies the capability rule."""
    return role not in TOOL_REQUIRED_ROLES or provider_id == DEFAULT_PROVIDER


def check_capability(role: str, provider_id: str) -> None:
    """
    Enforce the capability rule for a resulting (role, provider) pair.

    Raises:
        ValidationError: If the role or provider is unknown.
        CapabilityViolation: If a tool-requiring role is paired with an
            analysis-only provider.
    """
    validate_role(role)
    get_provider_capabilities(provider_id)
    if not is_allowed(role, provider_id):
        raise CapabilityViolation(role, provider_id, CAPABILITY_HINT)


def resolve_agent_fields(
    current: Optional[Mapping[str, Any]],
    changes: Mapping[str, Any],
) -> tuple[str, str]:
    """
    Apply a requested change hypothetically and return the resulting pair.

    Fields missing from ``changes`` (or given as None) fall back to the
    persisted value in ``current``, then to the defaults.
    """
    current = current or {}
    role = changes.get("role") or current.get("role") or DEFAULT_ROLE
    provider_id = (
        changes.get("provider_id") or current.get("provider_id") or DEFAULT_PROVIDER
    )
    return role, provider_id
