"""
Work Tool Dispatch
==================

Routes a non-routing tool call (files, shell, tests, builds, sandbox, progress, extras) to
its implementation. Engine errors are turned into error results so the agent
can read them and try again.
"""

import json
import logging
from typing import Any, Dict, Mapping, Optional

from agentmafia.errors import AgentMafiaError
from agentmafia.progress import apply_progress_action, get_progress_tracker
from agentmafia.tools import definitions as names
from agentmafia.tools.base import ExtraTool, ToolContext, ToolResult
from agentmafia.tools.filesystem import list_files, read_file, write_file
from agentmafia.tools.runners import run_build, run_tests, suite_to_tool_result
from agentmafia.tools.sandbox import execute_code, run_command

logger = logging.getLogger(__name__)

NO_WORKING_DIR = "[Error]: No working directory set for this job"


def _timeout(args: Dict[str, Any], default: float) -> float:
    value = args.get("timeout")
    if isinstance(value, (int, float)) and value > 0:
        return float(value)
    return default


async def _progress_snapshot(conversation_id: str) -> ToolResult:
    tracker = get_progress_tracker(conversation_id)
    if not await tracker.is_initialized():
        return ToolResult.ok("No project progress recorded yet. Use update_progress with action 'initialize'.")
    summary = await tracker.get_summary()
    return ToolResult.ok(
        await tracker.build_context_summary()
        + "\n"
        + json.dumps({"progress": summary.progress, "status": summary.status})
    )


async def run_work_tool(
    name: str,
    args: Dict[str, Any],
    ctx: ToolContext,
    extra: Optional[Mapping[str, ExtraTool]] = None,
) -> ToolResult:
    """Execute one work tool and return its result."""
    extra = extra or {}
    try:
        if name in names.FILE_TOOLS and not ctx.working_directory:
            return ToolResult.fail(NO_WORKING_DIR)

        if name == names.READ_FILE:
            return await read_file(ctx.working_directory, args.get("path", ""))
        if name == names.WRITE_FILE:
            return await write_file(ctx.working_directory, args.get("path", ""), args.get("content", ""))
        if name == names.LIST_FILES:
            return await list_files(ctx.working_directory, args.get("path") or None)
        if name == names.RUN_COMMAND:
            return await run_command(
                args.get("command", ""), ctx.working_directory, _timeout(args, ctx.command_timeout)
            )
        if name == names.RUN_TESTS:
            suite = await run_tests(
                args.get("framework", ""),
                ctx.working_directory,
                args.get("test_path") or None,
                _timeout(args, ctx.command_timeout),
            )
            return suite_to_tool_result(suite)
        if name == names.RUN_BUILD:
            return await run_build(
                args.get("command", ""), ctx.working_directory, _timeout(args, ctx.command_timeout)
            )
        if name == names.EXECUTE_CODE:
            return await execute_code(
                args.get("language", ""), args.get("code", ""), _timeout(args, ctx.sandbox_timeout)
            )
        if name == names.UPDATE_PROGRESS:
            tracker = get_progress_tracker(ctx.conversation_id)
            message = await apply_progress_action(
                tracker, args.get("action", ""), args, actor=ctx.agent_name
            )
            return ToolResult.ok(message)
        if name == names.GET_PROGRESS:
            return await _progress_snapshot(ctx.conversation_id)
        if name in extra:
            return await extra[name].handler(args, ctx)
    except AgentMafiaError as e:
        logger.debug("Tool %s failed for %s: %s", name, ctx.agent_name, e)
        return ToolResult.fail(f"[Error]: {e}")

    return ToolResult.fail(f"[Error]: Unknown tool '{name}'")
