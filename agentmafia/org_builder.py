"""
Dynamic Organization Builder
============================

Designs a task-specific crew with the planner model, validates the design and
turns it into rows ready for a single bulk insert.

The pipeline is split so each step is testable on its own:

    design_org(task, provider, model)  -> OrgDesign     (model call)
    validate_design(design)                             (pure, raises)
    plan_entities(design)              -> PlannedOrg    (pure, assigns ids)
    store.create_org(...)                               (one transaction)

Usage:
    design = await design_org(task, registry.get("anthropic"), config.planner_model)
    validate_design(design)
    plan = plan_entities(design)

Saved templates reuse the last three steps with a stored design:

    design = parse_design(template.agents, template.relationships)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from agentmafia.config import DEFAULT_MODEL
from agentmafia.errors import ValidationError
from agentmafia.prompts import load_prompt
from agentmafia.providers.base import ModelProvider, ToolSpec
from agentmafia.store import new_id

logger = logging.getLogger(__name__)

SOPRANOS_CHARACTERS = (
    "Tony Soprano",
    "Silvio Dante",
    "Paulie Gualtieri",
    "Christopher Moltisanti",
    "Bobby Baccalieri",
    "Furio Giunta",
    "Vito Spatafore",
    "Johnny Sack",
    "Junior Soprano",
    "Carmela Soprano",
    "Adriana La Cerva",
    "Big Pussy Bonpensiero",
    "Richie Aprile",
    "Ralph Cifaretto",
    "Eugene Pontecorpo",
    "Patsy Parisi",
    "Benny Fazio",
    "Carlo Gervasi",
    "Raymond Curto",
    "Mikey Palmice",
)

MAX_CAPOS = 4
MAX_SOLDIERS_PER_CAPO = 3
PLANNER_MAX_TOKENS = 4096


# =============================================================================
# Design Models
# =============================================================================

class DynamicAgentSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    role: Literal["underboss", "capo", "soldier"]
    specialty: str = ""
    system_prompt: str = Field(default="", alias="systemPrompt")
    model: Optional[str] = None


class DynamicRelationshipSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_name: str = Field(alias="fromName")
    to_name: str = Field(alias="toName")
    action: Literal["delegate", "ask"]

    @field_validator("action", mode="before")
    @classmethod
    def _collaborate_is_ask(cls, value):
        # Peer edges are offered to the planner as "collaborate"
        return "ask" if value == "collaborate" else value


class OrgDesign(BaseModel):
    agents: List[DynamicAgentSpec]
    relationships: List[DynamicRelationshipSpec] = []

    def by_role(self, role: str) -> List[DynamicAgentSpec]:
        return [a for a in self.agents if a.role == role]


DESIGN_TOOL = ToolSpec(
    name="design_organization",
    description="Submit the complete organizational design for the crew",
    input_schema={
        "type": "object",
        "properties": {
            "agents": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string", "enum": list(SOPRANOS_CHARACTERS)},
                        "role": {"type": "string", "enum": ["underboss", "capo", "soldier"]},
                        "specialty": {"type": "string", "description": "Specialty relevant to the task"},
                        "systemPrompt": {"type": "string", "description": "1-2 sentence focus for this agent"},
                    },
                    "required": ["name", "role", "specialty", "systemPrompt"],
                },
            },
            "relationships": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "fromName": {"type": "string"},
                        "toName": {"type": "string"},
                        "action": {"type": "string", "enum": ["delegate", "collaborate"]},
                    },
                    "required": ["fromName", "toName", "action"],
                },
            },
        },
        "required": ["agents", "relationships"],
    },
)


# =============================================================================
# Planner
# =============================================================================

async def design_org(task: str, provider: ModelProvider, model: str) -> OrgDesign:
    """Ask the planner model for a crew design."""
    system = load_prompt("org_planner", {"CHARACTERS": ", ".join(SOPRANOS_CHARACTERS)})
    response = await provider.complete(
        model=model,
        system=system,
        messages=[{"role": "user", "content": f"<task>\n{task}\n</task>"}],
        tools=[DESIGN_TOOL],
        max_tokens=PLANNER_MAX_TOKENS,
    )
    call = next((c for c in response.tool_calls if c.name == DESIGN_TOOL.name), None)
    if call is None:
        raise ValidationError("Planner did not return an organization design")
    try:
        return OrgDesign.model_validate(call.input)
    except PydanticValidationError as e:
        raise ValidationError(f"Planner returned a malformed design: {e}") from e


def validate_design(design: OrgDesign) -> None:
    """
    Check the structural rules of a crew design.

    Raises:
        ValidationError: listing every problem found.
    """
    problems = []
    names = [a.name for a in design.agents]

    for name in names:
        if name not in SOPRANOS_CHARACTERS:
            problems.append(f"Invalid character name: {name}")
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        problems.append(f"Duplicate names: {', '.join(duplicates)}")

    underbosses = design.by_role("underboss")
    capos = design.by_role("capo")
    if len(underbosses) != 1:
        problems.append(f"Expected exactly 1 underboss, got {len(underbosses)}")
    if not 1 <= len(capos) <= MAX_CAPOS:
        problems.append(f"Expected 1-{MAX_CAPOS} capos, got {len(capos)}")

    known = set(names)
    roles = {a.name: a.role for a in design.agents}
    for rel in design.relationships:
        if rel.from_name not in known or rel.to_name not in known:
            problems.append(f"Relationship references unknown agent: {rel.from_name} -> {rel.to_name}")
        elif rel.from_name == rel.to_name:
            problems.append(f"Self relationship: {rel.from_name}")

    for capo in capos:
        soldiers = [
            r.to_name for r in design.relationships
            if r.action == "delegate" and r.from_name == capo.name and roles.get(r.to_name) == "soldier"
        ]
        if not 1 <= len(soldiers) <= MAX_SOLDIERS_PER_CAPO:
            problems.append(
                f"Capo {capo.name} must delegate to 1-{MAX_SOLDIERS_PER_CAPO} soldiers, got {len(soldiers)}"
            )

    if problems:
        raise ValidationError("Invalid organization design: " + "; ".join(problems))


# =============================================================================
# Templates
# =============================================================================

def parse_design(agents: List[dict], relationships: List[dict]) -> OrgDesign:
    """
    Build a checked design from stored or submitted JSON.

    Raises:
        ValidationError: malformed entries or a design that breaks the crew rules.
    """
    try:
        design = OrgDesign.model_validate({"agents": agents, "relationships": relationships})
    except PydanticValidationError as e:
        raise ValidationError(f"Malformed organization design: {e}") from e
    validate_design(design)
    return design


def design_to_json(design: OrgDesign) -> Tuple[List[dict], List[dict]]:
    """The name-keyed agents and relationships stored on a template."""
    data = design.model_dump(by_alias=True, exclude_none=True)
    return data["agents"], data["relationships"]


def design_from_org(agents: Iterable[Any], relationships: Iterable[Any]) -> OrgDesign:
    """Recover the design of an existing crew from its agent and relationship rows."""
    agents = list(agents)
    names = {a.id: a.name for a in agents}
    return OrgDesign(
        agents=[
            DynamicAgentSpec(
                name=a.name,
                role=a.role,
                specialty=a.specialty or "",
                system_prompt=a.system_prompt or "",
                model=a.model,
            )
            for a in sorted(agents, key=lambda a: a.order_index)
        ],
        relationships=[
            DynamicRelationshipSpec(from_name=names[r.from_agent_id], to_name=names[r.to_agent_id], action=r.action)
            for r in relationships
            if r.from_agent_id in names and r.to_agent_id in names and r.action in ("delegate", "ask")
        ],
    )


# =============================================================================
# Entity Planning
# =============================================================================

@dataclass
class PlannedOrg:
    """Rows for ``ConversationStore.create_org``."""
    agents: List[dict] = field(default_factory=list)
    relationships: List[dict] = field(default_factory=list)

    @property
    def underboss_id(self) -> Optional[str]:
        return next((a["id"] for a in self.agents if a["role"] == "underboss"), None)


def plan_entities(design: OrgDesign, default_model: str = DEFAULT_MODEL) -> PlannedOrg:
    """Assign ids, derive parents from delegate edges and order the agents."""
    ids = {spec.name: new_id() for spec in design.agents}
    parents = {}
    for rel in design.relationships:
        if rel.action == "delegate":
            parents.setdefault(rel.to_name, ids[rel.from_name])

    plan = PlannedOrg()
    for index, spec in enumerate(design.agents):
        plan.agents.append({
            "id": ids[spec.name],
            "name": spec.name,
            "role": spec.role,
            "provider_id": "anthropic",
            "specialty": spec.specialty or None,
            "system_prompt": spec.system_prompt,
            "model": spec.model or default_model,
            "parent_id": parents.get(spec.name),
            "order_index": index,
        })
    for rel in design.relationships:
        plan.relationships.append({
            "from_agent_id": ids[rel.from_name],
            "to_agent_id": ids[rel.to_name],
            "action": rel.action,
        })
    return plan


@dataclass
class OrgResult:
    """A created dynamic organization, awaiting confirmation."""
    conversation_id: str
    agents: List[dict]
    relationships: List[dict]

    def to_dict(self) -> dict:
        return {
            "conversationId": self.conversation_id,
            "agents": self.agents,
            "relationships": self.relationships,
        }
