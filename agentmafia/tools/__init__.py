"""
Agent Tools
===========

Work tools (files, shell, test and build runners, sandbox, progress) and the per-agent tool builder.
"""

from agentmafia.tools.base import ExtraTool, ToolContext, ToolResult, ToolStatus
from agentmafia.tools.error_parser import ParsedError, parse_errors
from agentmafia.tools.filesystem import safe_path
from agentmafia.tools.definitions import Toolbox, build_toolbox
from agentmafia.tools.dispatch import run_work_tool
