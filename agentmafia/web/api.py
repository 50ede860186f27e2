"""
HTTP API Routes
===============

REST surface over the orchestrator and the conversation store. Handlers stay
thin: validation lives in the engine, and engine errors are mapped to status
codes by the exception handlers in agentmafia.web.main.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from agentmafia.errors import NotFoundError
from agentmafia.orchestrator import Orchestrator
from agentmafia.org_builder import design_to_json, parse_design
from agentmafia.progress import apply_progress_action, get_progress_tracker
from agentmafia.store import ConversationStore, to_dict
from agentmafia.web.stream import SSE_HEADERS, event_stream

router = APIRouter()

BOSS = "boss"


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def get_store(request: Request) -> ConversationStore:
    return request.app.state.orchestrator.store


# =============================================================================
# Request Models
# =============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ImagePayload(CamelModel):
    media_type: str = Field(alias="mediaType")
    data: str

    def as_dict(self) -> dict:
        return {"media_type": self.media_type, "data": self.data}


class StartTaskRequest(CamelModel):
    task: str
    working_directory: Optional[str] = Field(default=None, alias="workingDirectory")
    images: List[ImagePayload] = []
    agent_id: Optional[str] = Field(default=None, alias="agentId")
    dynamic: bool = False


class ContinueRequest(CamelModel):
    message: str
    images: List[ImagePayload] = []


class ConfirmRequest(CamelModel):
    images: List[ImagePayload] = []


class DynamicOrgRequest(CamelModel):
    task: str
    working_directory: Optional[str] = Field(default=None, alias="workingDirectory")


class OrgTemplateRequest(CamelModel):
    name: str
    description: Optional[str] = None
    agents: List[Dict[str, Any]]
    relationships: List[Dict[str, Any]] = []


class UpdateOrgTemplateRequest(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    agents: Optional[List[Dict[str, Any]]] = None
    relationships: Optional[List[Dict[str, Any]]] = None


class SaveTemplateRequest(CamelModel):
    name: str
    description: Optional[str] = None


class AnswerRequest(CamelModel):
    answer: str = ""


class ExecuteRequest(CamelModel):
    task: str
    working_directory: Optional[str] = Field(default=None, alias="workingDirectory")
    images: List[ImagePayload] = []


class CreateAgentRequest(CamelModel):
    name: str
    role: str = "soldier"
    model: Optional[str] = None
    provider_id: Optional[str] = Field(default=None, alias="providerId")
    specialty: Optional[str] = None
    system_prompt: str = Field(default="", alias="systemPrompt")
    parent_id: Optional[str] = Field(default=None, alias="parentId")
    order_index: Optional[int] = Field(default=None, alias="orderIndex")


class UpdateAgentRequest(CamelModel):
    name: Optional[str] = None
    role: Optional[str] = None
    model: Optional[str] = None
    provider_id: Optional[str] = Field(default=None, alias="providerId")
    specialty: Optional[str] = None
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")
    parent_id: Optional[str] = Field(default=None, alias="parentId")
    order_index: Optional[int] = Field(default=None, alias="orderIndex")


class CreateRelationshipRequest(CamelModel):
    from_agent_id: str = Field(alias="fromAgentId")
    to_agent_id: str = Field(alias="toAgentId")
    action: str
    cardinality: Optional[str] = None


class ProgressActionRequest(CamelModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    action: str


def _images(items: List[ImagePayload]) -> List[dict]:
    return [item.as_dict() for item in items]


# =============================================================================
# Conversations
# =============================================================================

@router.post("/conversations", status_code=201)
async def start_conversation(req: StartTaskRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Start a job; returns as soon as the run is launched."""
    conversation_id = await orchestrator.start_task(
        req.task,
        images=_images(req.images),
        working_directory=req.working_directory,
        root_agent_id=req.agent_id,
        dynamic=req.dynamic,
    )
    return {"conversationId": conversation_id}


@router.get("/conversations")
async def list_conversations(store: ConversationStore = Depends(get_store)):
    return [to_dict(c) for c in await store.list_conversations()]


@router.get("/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Conversation with its transcript, agents and escalations."""
    store = orchestrator.store
    conversation = await store.get_conversation(conversation_id)
    data = to_dict(conversation)
    data["messages"] = [to_dict(m) for m in await store.list_messages(conversation_id)]
    data["agents"] = [to_dict(a) for a in await store.list_agents(conversation_id)]
    data["escalations"] = [orchestrator.describe_escalation(e) for e in await store.list_escalations(conversation_id)]
    data["isRunning"] = orchestrator.is_running(conversation_id)
    return data


@router.delete("/conversations/{conversation_id}", status_code=204)
async def delete_conversation(conversation_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    await orchestrator.delete_conversation(conversation_id)
    return Response(status_code=204)


@router.post("/conversations/{conversation_id}/continue", status_code=202)
async def continue_conversation(
    conversation_id: str,
    req: ContinueRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    await orchestrator.continue_task(conversation_id, req.message, images=_images(req.images))
    return {"conversationId": conversation_id}


@router.post("/conversations/{conversation_id}/stop")
async def stop_conversation(conversation_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    await orchestrator.store.get_conversation(conversation_id)
    return {"stopped": orchestrator.cancel_orchestration(conversation_id)}


@router.post("/conversations/{conversation_id}/confirm", status_code=202)
async def confirm_conversation(
    conversation_id: str,
    req: Optional[ConfirmRequest] = Body(default=None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Run a pending dynamic organization."""
    images = _images(req.images) if req else None
    await orchestrator.confirm_dynamic_org(conversation_id, images=images)
    return {"conversationId": conversation_id}


@router.get("/conversations/{conversation_id}/stream")
async def stream_conversation(
    conversation_id: str,
    request: Request,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Live activity as server-sent events."""
    await orchestrator.store.get_conversation(conversation_id)
    return StreamingResponse(
        event_stream(conversation_id, orchestrator.bus, request.app.state.config.heartbeat_seconds),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/conversations/{conversation_id}/escalations")
async def list_escalations(
    conversation_id: str,
    status: Optional[str] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    await orchestrator.store.get_conversation(conversation_id)
    rows = await orchestrator.store.list_escalations(conversation_id, status)
    return [orchestrator.describe_escalation(e) for e in rows]


# =============================================================================
# Dynamic organizations and escalations
# =============================================================================

@router.post("/orgs/dynamic", status_code=201)
async def create_dynamic_org(req: DynamicOrgRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Design a crew for a task; it waits in a pending conversation."""
    result = await orchestrator.create_dynamic_org(req.task, req.working_directory)
    return result.to_dict()


@router.post("/escalations/{escalation_id}/answer")
async def answer_escalation(
    escalation_id: str,
    req: AnswerRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    if not await orchestrator.answer_escalation(escalation_id, req.answer):
        row = await orchestrator.store.find_escalation(escalation_id)
        if row is not None and row.status == "pending":
            raise NotFoundError(
                "escalation",
                escalation_id,
                "Escalation is stale: the run that raised it is no longer active. "
                "Send a follow-up to the conversation instead.",
            )
        raise NotFoundError("escalation", escalation_id, "No pending escalation with that id")
    return {"answered": True}


# =============================================================================
# Crew templates
# =============================================================================

@router.get("/org-templates")
async def list_org_templates(store: ConversationStore = Depends(get_store)):
    return [to_dict(t) for t in await store.list_org_templates()]


@router.post("/org-templates", status_code=201)
async def create_org_template(req: OrgTemplateRequest, store: ConversationStore = Depends(get_store)):
    agents, relationships = design_to_json(parse_design(req.agents, req.relationships))
    template = await store.create_org_template(req.name, agents, relationships, req.description)
    return to_dict(template)


@router.get("/org-templates/{template_id}")
async def get_org_template(template_id: str, store: ConversationStore = Depends(get_store)):
    return to_dict(await store.get_org_template(template_id))


@router.patch("/org-templates/{template_id}")
async def update_org_template(
    template_id: str,
    req: UpdateOrgTemplateRequest,
    store: ConversationStore = Depends(get_store),
):
    changes = req.model_dump(exclude_unset=True)
    if "agents" in changes or "relationships" in changes:
        current = await store.get_org_template(template_id)
        design = parse_design(
            changes.get("agents") or current.agents,
            changes.get("relationships", current.relationships) or [],
        )
        changes["agents"], changes["relationships"] = design_to_json(design)
    return to_dict(await store.update_org_template(template_id, changes))


@router.delete("/org-templates/{template_id}", status_code=204)
async def delete_org_template(template_id: str, store: ConversationStore = Depends(get_store)):
    await store.delete_org_template(template_id)
    return Response(status_code=204)


@router.post("/org-templates/{template_id}/orgs", status_code=201)
async def create_org_from_template(
    template_id: str,
    req: DynamicOrgRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Staff a new pending conversation with a saved crew."""
    result = await orchestrator.create_org_from_template(template_id, req.task, req.working_directory)
    return result.to_dict()


@router.post("/conversations/{conversation_id}/template", status_code=201)
async def save_conversation_template(
    conversation_id: str,
    req: SaveTemplateRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    template = await orchestrator.save_org_template(conversation_id, req.name, req.description)
    return to_dict(template)


# =============================================================================
# Agents
# =============================================================================

@router.get("/agents")
async def list_agents(conversation_id: Optional[str] = None, store: ConversationStore = Depends(get_store)):
    return [to_dict(a) for a in await store.list_agents(conversation_id)]


@router.post("/agents", status_code=201)
async def create_agent(req: CreateAgentRequest, store: ConversationStore = Depends(get_store)):
    agent = await store.create_agent(**req.model_dump())
    return to_dict(agent)


@router.get("/agents/{agent_id}")
async def get_agent(agent_id: str, store: ConversationStore = Depends(get_store)):
    return to_dict(await store.get_agent(agent_id))


@router.patch("/agents/{agent_id}")
async def update_agent(agent_id: str, req: UpdateAgentRequest, store: ConversationStore = Depends(get_store)):
    agent = await store.update_agent(agent_id, req.model_dump(exclude_unset=True))
    return to_dict(agent)


@router.delete("/agents/{agent_id}")
async def delete_agent(agent_id: str, store: ConversationStore = Depends(get_store)):
    return {"deleted": await store.delete_agent(agent_id)}


@router.post("/agents/{agent_id}/execute", status_code=201)
async def execute_agent(
    agent_id: str,
    req: ExecuteRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Run one agent on a task without delegation."""
    conversation_id = await orchestrator.execute_conversation(
        agent_id, req.task, images=_images(req.images), working_directory=req.working_directory
    )
    return {"conversationId": conversation_id}


# =============================================================================
# Relationships
# =============================================================================

@router.get("/relationships")
async def list_relationships(agent_id: Optional[str] = None, store: ConversationStore = Depends(get_store)):
    return [to_dict(r) for r in await store.list_relationships(agent_id)]


@router.post("/relationships", status_code=201)
async def create_relationship(req: CreateRelationshipRequest, store: ConversationStore = Depends(get_store)):
    relationship = await store.create_relationship(
        req.from_agent_id, req.to_agent_id, req.action, req.cardinality
    )
    return to_dict(relationship)


@router.delete("/relationships/{relationship_id}", status_code=204)
async def delete_relationship(relationship_id: str, store: ConversationStore = Depends(get_store)):
    await store.delete_relationship(relationship_id)
    return Response(status_code=204)


# =============================================================================
# Settings
# =============================================================================

@router.get("/settings")
async def get_settings(store: ConversationStore = Depends(get_store)):
    return await store.get_settings()


@router.put("/settings")
async def put_settings(values: Dict[str, Any] = Body(...), store: ConversationStore = Depends(get_store)):
    for key, value in values.items():
        await store.set_setting(key, value)
    return await store.get_settings()


# =============================================================================
# Progress
# =============================================================================

@router.get("/conversations/{conversation_id}/progress")
async def get_progress(conversation_id: str, store: ConversationStore = Depends(get_store)):
    await store.get_conversation(conversation_id)
    tracker = get_progress_tracker(conversation_id)
    if not await tracker.is_initialized():
        return {"initialized": False}
    summary = await tracker.get_summary()
    return {
        "initialized": True,
        **summary.to_dict(),
        "context": await tracker.build_context_summary(),
    }


@router.patch("/conversations/{conversation_id}/progress")
async def update_progress(
    conversation_id: str,
    req: ProgressActionRequest,
    store: ConversationStore = Depends(get_store),
):
    """Apply one progress action on behalf of the human boss."""
    await store.get_conversation(conversation_id)
    tracker = get_progress_tracker(conversation_id)
    args = req.model_dump()
    message = await apply_progress_action(tracker, req.action, args, actor=BOSS)
    return {"message": message}
