"""
Tool Result Types
=================

Every work tool returns a ToolResult; the orchestrator renders it with
``to_text()`` as the tool_result content sent back to the model.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from agentmafia.providers.base import ToolSpec
from agentmafia.tools.error_parser import ParsedError


class ToolStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    RUNNING = "running"


@dataclass
class ToolResult:
    """Outcome of one work-tool invocation."""
    status: ToolStatus = ToolStatus.SUCCESS
    output: str = ""
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    errors: List[ParsedError] = field(default_factory=list)

    @classmethod
    def ok(cls, output: str) -> "ToolResult":
        return cls(status=ToolStatus.SUCCESS, output=output)

    @classmethod
    def fail(cls, message: str) -> "ToolResult":
        return cls(status=ToolStatus.ERROR, output=message)

    @property
    def is_error(self) -> bool:
        return self.status == ToolStatus.ERROR

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "output": self.output,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "errors": [e.to_dict() for e in self.errors],
        }

    def to_text(self) -> str:
        """Render for the model: plain output, or JSON when process fields are set."""
        if self.exit_code is None and not self.errors:
            return self.output
        payload = {
            "exitCode": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }
        if self.output:
            payload["output"] = self.output
        if self.errors:
            payload["errors"] = [e.to_dict() for e in self.errors]
        return json.dumps(payload, indent=2)


ToolHandler = Callable[[Dict[str, Any], "ToolContext"], Awaitable[ToolResult]]


@dataclass
class ToolContext:
    """What a work tool knows about the invocation it serves."""
    conversation_id: str
    agent_id: str
    agent_name: str
    working_directory: Optional[str] = None
    command_timeout: float = 120.0
    sandbox_timeout: float = 30.0


@dataclass
class ExtraTool:
    """An additional tool registered on the orchestrator (e.g. a browser-debug channel)."""
    spec: ToolSpec
    handler: ToolHandler
    roles: Optional[frozenset] = None  # None = every role

    def applies_to(self, role: str) -> bool:
        return self.roles is None or role in self.roles
