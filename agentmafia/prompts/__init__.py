"""
Prompt Loading Utilities
========================

Loads prompt templates from the prompts package and assembles agent system
prompts from them.
"""

from importlib import resources
from typing import Mapping, Optional

PROMPTS_PACKAGE = "agentmafia.prompts"


def _get_prompt_path(name: str):
    return resources.files(PROMPTS_PACKAGE) / f"{name}.md"


def load_prompt(name: str, substitutions: Optional[Mapping[str, str]] = None) -> str:
    """
    Load a prompt template from the prompts package.

    Args:
        name: Name of the prompt file (without .md extension)
        substitutions: ``{{PLACEHOLDER}}`` -> value replacements

    Returns:
        Prompt text with substitutions applied
    """
    prompt = _get_prompt_path(name).read_text(encoding="utf-8").strip()
    for placeholder, value in (substitutions or {}).items():
        prompt = prompt.replace("{{" + placeholder + "}}", value)
    return prompt


def delegation_directive(role: str) -> str:
    """Base operating orders plus the role-specific section."""
    base = load_prompt("delegation_base", {"ROLE": role})
    if role in ("underboss", "capo", "soldier"):
        return f"{base}\n\n{load_prompt(f'delegation_{role}')}"
    return base


def build_system_prompt(
    agent: dict,
    working_directory: Optional[str] = None,
    previous_context: Optional[str] = None,
    allow_delegation: bool = True,
) -> str:
    """
    Assemble the full system prompt for one agent invocation.

    The agent's own prompt leads (or a generated one-liner if it has none),
    followed by the standing directives, the working directory and any
    context carried over from earlier invocations in the same conversation.
    """
    base = agent.get("system_prompt") or (
        f"You are {agent['name']}, a {agent['role']} in the organization."
        + (f" Your specialty is: {agent['specialty']}." if agent.get("specialty") else "")
    )
    sections = [base]
    if allow_delegation:
        sections.append(delegation_directive(agent["role"]))
    sections.append(load_prompt("communication"))
    sections.append(load_prompt("personality"))

    if working_directory:
        sections.append(
            f'WORKING DIRECTORY: This job has a project directory at "{working_directory}". '
            "File and command tools work relative to it. When you delegate, say where the work is."
        )
    if previous_context:
        sections.append(
            "PREVIOUS CONTEXT FROM THIS OPERATION:\n"
            f"{previous_context}\n\n"
            "Use this context to inform your work. The boss is following up on a previous request."
        )

    sections.append(load_prompt("lifecycle"))
    sections.append(load_prompt("input_safety"))
    return "\n\n".join(sections)


def wrap_task(task: str) -> str:
    """Mark a task as untrusted user input."""
    return f"<user-task>\n{task}\n</user-task>"
