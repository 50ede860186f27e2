"""
Agent Tool Definitions
======================

Builds the tool list an agent is offered on a given invocation. What an agent
can do follows from its role and its relationship edges:

- delegate_task: outgoing ``delegate`` edges (parallel fan-out)
- ask_agent: any connected agent, either direction
- review_work / summarize_for: outgoing ``review`` / ``summarize`` edges
- escalate_to_boss: underbosses only
- submit_result: everyone
- work tools: soldiers, and any agent without subordinates
- progress tools: everyone

Usage:
    toolbox = build_toolbox(agent, relationships, agents_by_id, working_directory="/work")
    specs = toolbox.specs
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from agentmafia.progress import CHANGE_TYPES, PROJECT_STATUSES
from agentmafia.providers.base import ToolSpec
from agentmafia.tools.base import ExtraTool
from agentmafia.tools.runners import FRAMEWORKS
from agentmafia.tools.sandbox import LANGUAGES


# =============================================================================
# Tool Names
# =============================================================================

DELEGATE_TASK = "delegate_task"
ASK_AGENT = "ask_agent"
REVIEW_WORK = "review_work"
SUMMARIZE_FOR = "summarize_for"
ESCALATE_TO_BOSS = "escalate_to_boss"
SUBMIT_RESULT = "submit_result"

READ_FILE = "read_file"
WRITE_FILE = "write_file"
LIST_FILES = "list_files"
RUN_COMMAND = "run_command"
RUN_TESTS = "run_tests"
RUN_BUILD = "run_build"
EXECUTE_CODE = "execute_code"
UPDATE_PROGRESS = "update_progress"
GET_PROGRESS = "get_progress"

DELEGATION_TOOLS = frozenset({DELEGATE_TASK, ASK_AGENT, REVIEW_WORK, SUMMARIZE_FOR})
FILE_TOOLS = frozenset({READ_FILE, WRITE_FILE, LIST_FILES, RUN_COMMAND, RUN_TESTS, RUN_BUILD})

PROGRESS_ACTIONS = (
    "initialize",
    "add_phase",
    "start_phase",
    "complete_phase",
    "block_phase",
    "record_decision",
    "record_file_change",
    "create_checkpoint",
    "update_status",
)


@dataclass
class Toolbox:
    """Tool specs plus the valid targets behind each routing tool."""
    specs: List[ToolSpec] = field(default_factory=list)
    delegate_targets: Dict[str, dict] = field(default_factory=dict)
    ask_targets: Dict[str, dict] = field(default_factory=dict)
    review_targets: Dict[str, dict] = field(default_factory=dict)
    summarize_targets: Dict[str, dict] = field(default_factory=dict)
    extra: Dict[str, ExtraTool] = field(default_factory=dict)

    @property
    def names(self) -> List[str]:
        return [spec.name for spec in self.specs]

    def targets_for(self, tool: str) -> Dict[str, dict]:
        return {
            DELEGATE_TASK: self.delegate_targets,
            ASK_AGENT: self.ask_targets,
            REVIEW_WORK: self.review_targets,
            SUMMARIZE_FOR: self.summarize_targets,
        }.get(tool, {})


def describe_agent(agent: dict) -> str:
    desc = f'- "{agent["name"]}" (ID: {agent["id"]}) - {agent["role"]}'
    if agent.get("specialty"):
        desc += f", specialty: {agent['specialty']}"
    prompt = agent.get("system_prompt") or ""
    if prompt:
        snippet = prompt[:120] + ("..." if len(prompt) > 120 else "")
        desc += f' | prompt: "{snippet}"'
    return desc


def _target_block(targets: Dict[str, dict]) -> str:
    return "\n".join(describe_agent(a) for a in targets.values())


def _edge_targets(agent_id: str, relationships: Iterable[dict], agents_by_id: Dict[str, dict], action: str) -> Dict[str, dict]:
    targets = {}
    for rel in relationships:
        if rel["from_agent_id"] == agent_id and rel["action"] == action:
            target = agents_by_id.get(rel["to_agent_id"])
            if target is not None and target["id"] != agent_id:
                targets[target["id"]] = target
    return targets


def _connected_targets(agent_id: str, relationships: Iterable[dict], agents_by_id: Dict[str, dict]) -> Dict[str, dict]:
    targets = {}
    for rel in relationships:
        if rel["from_agent_id"] == agent_id:
            other = rel["to_agent_id"]
        elif rel["to_agent_id"] == agent_id:
            other = rel["from_agent_id"]
        else:
            continue
        target = agents_by_id.get(other)
        if target is not None and other != agent_id:
            targets.setdefault(other, target)
    return targets


# =============================================================================
# Tool Schema Builders
# =============================================================================

def _delegate_spec(targets: Dict[str, dict]) -> ToolSpec:
    return ToolSpec(
        name=DELEGATE_TASK,
        description=(
            "Delegate a task to one or more subordinate agents. They run in parallel "
            "and their results come back to you directly. Choose agents by specialty.\n\n"
            f"Available targets:\n{_target_block(targets)}"
        ),
        input_schema={
            "type": "object",
            "properties": {
                "targets": {
                    "type": "array",
                    "items": {"type": "string", "enum": list(targets)},
                    "description": "Agent IDs to delegate to",
                },
                "task": {"type": "string", "description": "The task description to delegate"},
            },
            "required": ["targets", "task"],
        },
    )


def _single_target_spec(name: str, description: str, field_name: str, field_desc: str, targets: Dict[str, dict]) -> ToolSpec:
    return ToolSpec(
        name=name,
        description=f"{description}\n\nAvailable targets:\n{_target_block(targets)}",
        input_schema={
            "type": "object",
            "properties": {
                "target": {"type": "string", "enum": list(targets), "description": "Agent ID"},
                field_name: {"type": "string", "description": field_desc},
            },
            "required": ["target", field_name],
        },
    )


ESCALATE_SPEC = ToolSpec(
    name=ESCALATE_TO_BOSS,
    description="Ask the human boss for a decision. The job pauses until they answer. Use sparingly.",
    input_schema={
        "type": "object",
        "properties": {"question": {"type": "string", "description": "The question for the boss"}},
        "required": ["question"],
    },
)

SUBMIT_RESULT_SPEC = ToolSpec(
    name=SUBMIT_RESULT,
    description="Submit your completed result to whoever gave you this job. This ends your turn.",
    input_schema={
        "type": "object",
        "properties": {"result": {"type": "string", "description": "Your completed result or report"}},
        "required": ["result"],
    },
)

READ_FILE_SPEC = ToolSpec(
    name=READ_FILE,
    description="Read a text file from the working directory.",
    input_schema={
        "type": "object",
        "properties": {"path": {"type": "string", "description": "Path relative to the working directory"}},
        "required": ["path"],
    },
)

WRITE_FILE_SPEC = ToolSpec(
    name=WRITE_FILE,
    description="Create or overwrite a file in the working directory. Parent directories are created.",
    input_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path relative to the working directory"},
            "content": {"type": "string", "description": "Full file content"},
        },
        "required": ["path", "content"],
    },
)

LIST_FILES_SPEC = ToolSpec(
    name=LIST_FILES,
    description="List a directory inside the working directory.",
    input_schema={
        "type": "object",
        "properties": {"path": {"type": "string", "description": "Sub-directory (default: root)"}},
    },
)

RUN_COMMAND_SPEC = ToolSpec(
    name=RUN_COMMAND,
    description="Run a shell command in the working directory (builds, tests, linters).",
    input_schema={
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "Shell command"},
            "timeout": {"type": "number", "description": "Timeout in seconds"},
        },
        "required": ["command"],
    },
)

RUN_TESTS_SPEC = ToolSpec(
    name=RUN_TESTS,
    description=(
        "Run the project's tests and get pass/fail counts with the failing test names "
        "and messages."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "framework": {"type": "string", "enum": list(FRAMEWORKS)},
            "test_path": {"type": "string", "description": "File or directory to run (default: whole suite)"},
            "timeout": {"type": "number", "description": "Timeout in seconds"},
        },
        "required": ["framework"],
    },
)

RUN_BUILD_SPEC = ToolSpec(
    name=RUN_BUILD,
    description="Run a build or type-check command and get its compiler errors as file/line/message.",
    input_schema={
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "Build command, e.g. 'npx tsc --noEmit'"},
            "timeout": {"type": "number", "description": "Timeout in seconds"},
        },
        "required": ["command"],
    },
)

EXECUTE_CODE_SPEC = ToolSpec(
    name=EXECUTE_CODE,
    description=(
        "Execute a snippet in a sandboxed temp directory. Returns stdout, stderr, "
        "exit code, and structured errors when it fails."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "code": {"type": "string", "description": "The code to execute"},
            "language": {"type": "string", "enum": list(LANGUAGES)},
            "timeout": {"type": "number", "description": "Timeout in seconds (default 30)"},
        },
        "required": ["code", "language"],
    },
)

UPDATE_PROGRESS_SPEC = ToolSpec(
    name=UPDATE_PROGRESS,
    description=(
        "Record project progress: initialize the project, manage phases, log decisions "
        "and file changes, or save a checkpoint."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "action": {"type": "string", "enum": list(PROGRESS_ACTIONS)},
            "project_name": {"type": "string"},
            "objective": {"type": "string"},
            "phases": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {"name": {"type": "string"}, "description": {"type": "string"}},
                    "required": ["name"],
                },
            },
            "phase": {"type": "string", "description": "Phase name"},
            "description": {"type": "string"},
            "result": {"type": "string"},
            "blocked_by": {"type": "string"},
            "topic": {"type": "string"},
            "question": {"type": "string"},
            "decision": {"type": "string"},
            "rationale": {"type": "string"},
            "file_path": {"type": "string"},
            "change_type": {"type": "string", "enum": list(CHANGE_TYPES)},
            "checkpoint_name": {"type": "string"},
            "pending_tasks": {"type": "array", "items": {"type": "string"}},
            "status": {"type": "string", "enum": list(PROJECT_STATUSES)},
        },
        "required": ["action"],
    },
)

GET_PROGRESS_SPEC = ToolSpec(
    name=GET_PROGRESS,
    description="Get the current project progress summary (phases, decisions, recent file changes).",
    input_schema={"type": "object", "properties": {}},
)


# =============================================================================
# Toolbox Assembly
# =============================================================================

def build_toolbox(
    agent: dict,
    relationships: Iterable[dict],
    agents_by_id: Dict[str, dict],
    *,
    working_directory: Optional[str] = None,
    allow_delegation: bool = True,
    extra_tools: Iterable[ExtraTool] = (),
) -> Toolbox:
    """
    Assemble the tools for one invocation of ``agent``.

    With ``allow_delegation=False`` (single-agent execution) the routing tools
    and escalation are withheld and the agent always gets work tools.
    """
    relationships = list(relationships)
    box = Toolbox()
    agent_id = agent["id"]

    if allow_delegation:
        box.delegate_targets = _edge_targets(agent_id, relationships, agents_by_id, "delegate")
        box.ask_targets = _connected_targets(agent_id, relationships, agents_by_id)
        box.review_targets = _edge_targets(agent_id, relationships, agents_by_id, "review")
        box.summarize_targets = _edge_targets(agent_id, relationships, agents_by_id, "summarize")

        if box.delegate_targets:
            box.specs.append(_delegate_spec(box.delegate_targets))
        if box.ask_targets:
            box.specs.append(_single_target_spec(
                ASK_AGENT, "Ask a question to any connected agent.",
                "question", "The question to ask", box.ask_targets,
            ))
        if box.review_targets:
            box.specs.append(_single_target_spec(
                REVIEW_WORK, "Send work to another agent for review.",
                "content", "The work to review", box.review_targets,
            ))
        if box.summarize_targets:
            box.specs.append(_single_target_spec(
                SUMMARIZE_FOR, "Send a summary to another agent.",
                "content", "The summary", box.summarize_targets,
            ))
        if agent["role"] == "underboss":
            box.specs.append(ESCALATE_SPEC)

    box.specs.append(SUBMIT_RESULT_SPEC)

    is_worker = agent["role"] == "soldier" or not box.delegate_targets
    if is_worker:
        if working_directory:
            box.specs.extend([
                READ_FILE_SPEC, WRITE_FILE_SPEC, LIST_FILES_SPEC, RUN_COMMAND_SPEC, RUN_TESTS_SPEC, RUN_BUILD_SPEC,
            ])
        box.specs.append(EXECUTE_CODE_SPEC)
    elif working_directory:
        box.specs.extend([READ_FILE_SPEC, LIST_FILES_SPEC])

    box.specs.extend([UPDATE_PROGRESS_SPEC, GET_PROGRESS_SPEC])

    taken = set(box.names)
    for tool in extra_tools:
        if tool.applies_to(agent["role"]) and tool.spec.name not in taken:
            box.specs.append(tool.spec)
            box.extra[tool.spec.name] = tool
            taken.add(tool.spec.name)
    return box
