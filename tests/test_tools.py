"""
Tests for Agent Tools
=====================

Tests for the workspace file tools, the sandbox, the error parser, the
per-agent toolbox builder and work-tool dispatch.
"""

import asyncio
import json
import sys
import time

import pytest

from agentmafia.errors import ToolError
from agentmafia.providers.base import ToolSpec
from agentmafia.tools import ExtraTool, ToolContext, ToolResult, ToolStatus, build_toolbox, run_work_tool
from agentmafia.tools.dispatch import NO_WORKING_DIR
from agentmafia.tools.error_parser import (
    parse_errors,
    parse_eslint_errors,
    parse_node_stack,
    parse_python_traceback,
    parse_typescript_errors,
)
from agentmafia.tools.filesystem import FileOps, safe_path
from agentmafia.tools.sandbox import execute_code, run_command


# =============================================================================
# Filesystem
# =============================================================================

class TestSafePath:
    """Tests for working-directory confinement."""

    def test_inside_root(self, temp_dir):
        """Test a nested relative path resolves under the root."""
        resolved = safe_path(str(temp_dir), "src/app.py")
        assert resolved == (temp_dir / "src" / "app.py").resolve()

    def test_root_itself(self, temp_dir):
        """Test the root is allowed."""
        assert safe_path(str(temp_dir), ".") == temp_dir.resolve()

    def test_traversal_blocked(self, temp_dir):
        """Test escaping the root raises ToolError."""
        with pytest.raises(ToolError, match="Path traversal blocked"):
            safe_path(str(temp_dir), "../outside.txt")

    def test_absolute_path_blocked(self, temp_dir):
        """Test an absolute path elsewhere is refused."""
        with pytest.raises(ToolError):
            safe_path(str(temp_dir), "/etc/passwd")


class TestFileOps:
    """Tests for read, write and list."""

    def test_write_then_read(self, temp_dir):
        """Test creating, updating and reading a file."""
        created = FileOps.write(str(temp_dir), "pkg/mod.py", "x = 1\n")
        assert created.output == "File created: pkg/mod.py"
        updated = FileOps.write(str(temp_dir), "pkg/mod.py", "x = 2\n")
        assert updated.output == "File updated: pkg/mod.py"
        assert FileOps.read(str(temp_dir), "pkg/mod.py").output == "x = 2\n"

    def test_read_missing_file(self, temp_dir):
        """Test reading a missing file is an error result, not an exception."""
        result = FileOps.read(str(temp_dir), "nope.txt")
        assert result.is_error
        assert result.output.startswith("[Error reading file]")

    def test_write_outside_root(self, temp_dir):
        """Test writing outside the root is refused."""
        result = FileOps.write(str(temp_dir), "../escape.txt", "boom")
        assert result.is_error
        assert "Path traversal blocked" in result.output

    def test_list_dir(self, temp_dir):
        """Test directories are listed before files."""
        (temp_dir / "b.txt").write_text("b")
        (temp_dir / "a_dir").mkdir()
        result = FileOps.list_dir(str(temp_dir))
        assert result.output.splitlines() == ["[DIR] a_dir", "[FILE] b.txt"]

    def test_list_empty_dir(self, temp_dir):
        """Test an empty directory says so."""
        assert FileOps.list_dir(str(temp_dir)).output == "(empty directory)"


# =============================================================================
# Sandbox
# =============================================================================

class TestSandbox:
    """Tests for code execution and shell commands."""

    @pytest.mark.asyncio
    async def test_python_success(self):
        """Test a passing snippet reports stdout and exit code 0."""
        result = await execute_code("python", "print('hello sandbox')")
        assert result.status == ToolStatus.SUCCESS
        assert result.exit_code == 0
        assert "hello sandbox" in result.stdout
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_python_error_is_parsed(self):
        """Test a failing snippet yields a structured error."""
        result = await execute_code("python", "x = 1\nraise ValueError('bad value')\n")
        assert result.is_error
        assert result.exit_code == 1
        assert result.errors
        assert result.errors[0].line == 2
        assert "ValueError: bad value" in result.errors[0].message
        payload = json.loads(result.to_text())
        assert payload["exitCode"] == 1
        assert payload["errors"][0]["line"] == 2

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        """Test an overrunning snippet is killed and reported."""
        result = await execute_code("python", "import time\ntime.sleep(10)\n", timeout=0.5)
        assert result.exit_code == -1
        assert "[Execution timed out after 0.5 seconds]" in result.stderr

    @pytest.mark.asyncio
    async def test_unsupported_language(self):
        """Test an unknown language is refused."""
        result = await execute_code("cobol", "DISPLAY 'HI'.")
        assert result.is_error
        assert "Unsupported language" in result.output

    @pytest.mark.asyncio
    async def test_run_command(self, temp_dir):
        """Test a shell command runs in the given directory."""
        (temp_dir / "marker.txt").write_text("here")
        command = f'"{sys.executable}" -c "import os; print(sorted(os.listdir()))"'
        result = await run_command(command, str(temp_dir))
        assert result.exit_code == 0
        assert "marker.txt" in result.stdout

    @pytest.mark.asyncio
    async def test_run_empty_command(self, temp_dir):
        """Test an empty command is an error result."""
        result = await run_command("  ", str(temp_dir))
        assert result.is_error

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell syntax")
    async def test_run_command_timeout_kills_children(self, temp_dir):
        """Test a timeout also kills processes the shell spawned."""
        started = time.monotonic()
        result = await run_command("echo begun; sleep 6; echo done", str(temp_dir), timeout=1)
        elapsed = time.monotonic() - started

        assert elapsed < 4
        assert result.exit_code == -1
        assert "[Execution timed out after 1 seconds]" in result.stderr
        assert "begun" in result.stdout
        assert "done" not in result.stdout

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell syntax")
    async def test_run_command_cancel_kills_children(self, temp_dir):
        """Test cancelling the caller stops a running command promptly."""
        marker = temp_dir / "finished.txt"
        task = asyncio.create_task(run_command(f"sleep 2; touch {marker}", str(temp_dir), timeout=30))
        await asyncio.sleep(0.3)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(2.5)
        assert not marker.exists()


# =============================================================================
# Error Parser
# =============================================================================

class TestErrorParser:
    """Tests for structured error extraction."""

    def test_typescript(self):
        """Test tsc diagnostics."""
        output = "src/app.ts(12,5): error TS2322: Type 'string' is not assignable to type 'number'."
        errors = parse_typescript_errors(output)
        assert len(errors) == 1
        assert errors[0].file == "src/app.ts"
        assert (errors[0].line, errors[0].column) == (12, 5)
        assert errors[0].code == "TS2322"
        assert parse_errors(output) == errors

    def test_eslint(self):
        """Test ESLint stylish output."""
        output = (
            "/work/src/index.js\n"
            "  3:10  error  'foo' is defined but never used  no-unused-vars\n"
            "  7:1   warning  Unexpected console statement  no-console\n"
        )
        errors = parse_eslint_errors(output)
        assert [e.line for e in errors] == [3, 7]
        assert errors[0].code == "no-unused-vars"
        assert errors[1].severity == "warning"
        assert parse_errors(output) == errors

    def test_node_stack(self):
        """Test the first Node.js frame is used."""
        output = (
            "TypeError: Cannot read properties of undefined\n"
            "    at main (/tmp/script.js:4:11)\n"
            "    at Object.<anonymous> (/tmp/script.js:9:1)\n"
        )
        errors = parse_node_stack(output)
        assert errors[0].file == "/tmp/script.js"
        assert (errors[0].line, errors[0].column) == (4, 11)
        assert errors[0].message.startswith("TypeError")

    def test_python_traceback(self):
        """Test the innermost Python frame is used."""
        output = (
            "Traceback (most recent call last):\n"
            '  File "/tmp/a.py", line 10, in <module>\n'
            "    main()\n"
            '  File "/tmp/a.py", line 4, in main\n'
            "    raise KeyError('x')\n"
            "KeyError: 'x'\n"
        )
        errors = parse_python_traceback(output)
        assert errors[0].line == 4
        assert errors[0].message == "KeyError: 'x'"

    def test_unrecognised_output(self):
        """Test plain output yields nothing."""
        assert parse_errors("all good") == []
        assert parse_errors("") == []


# =============================================================================
# Toolbox
# =============================================================================

def agent(agent_id, role, name=None):
    return {"id": agent_id, "name": name or agent_id, "role": role, "specialty": None, "system_prompt": ""}


def edge(source, target, action="delegate"):
    return {"from_agent_id": source, "to_agent_id": target, "action": action}


@pytest.fixture
def family():
    agents = {
        "boss": agent("boss", "underboss"),
        "capo": agent("capo", "capo"),
        "s1": agent("s1", "soldier"),
        "s2": agent("s2", "soldier"),
    }
    relationships = [
        edge("boss", "capo"),
        edge("capo", "s1"),
        edge("capo", "s2"),
        edge("s1", "s2", "review"),
    ]
    return agents, relationships


class TestToolbox:
    """Tests for build_toolbox."""

    def test_underboss_tools(self, family):
        """Test the underboss delegates, escalates and does not get work tools."""
        agents, relationships = family
        box = build_toolbox(agents["boss"], relationships, agents, working_directory="/work")
        assert list(box.delegate_targets) == ["capo"]
        assert "escalate_to_boss" in box.names
        assert "submit_result" in box.names
        assert "write_file" not in box.names
        assert "run_tests" not in box.names
        assert "read_file" in box.names
        assert "execute_code" not in box.names

    def test_capo_targets(self, family):
        """Test delegate and ask targets follow edges."""
        agents, relationships = family
        box = build_toolbox(agents["capo"], relationships, agents)
        assert set(box.delegate_targets) == {"s1", "s2"}
        assert set(box.ask_targets) == {"boss", "s1", "s2"}
        assert "escalate_to_boss" not in box.names

    def test_soldier_work_tools(self, family):
        """Test soldiers get file and shell tools with a working directory."""
        agents, relationships = family
        box = build_toolbox(agents["s1"], relationships, agents, working_directory="/work")
        for name in ("read_file", "write_file", "list_files", "run_command", "run_tests", "run_build", "execute_code"):
            assert name in box.names
        assert "delegate_task" not in box.names
        assert list(box.review_targets) == ["s2"]
        assert "review_work" in box.names

    def test_soldier_without_working_directory(self, family):
        """Test file tools are withheld without a working directory."""
        agents, relationships = family
        box = build_toolbox(agents["s2"], relationships, agents)
        assert "write_file" not in box.names
        assert "run_build" not in box.names
        assert "execute_code" in box.names
        assert "update_progress" in box.names

    def test_no_delegation_mode(self, family):
        """Test single-agent mode withholds routing tools."""
        agents, relationships = family
        box = build_toolbox(agents["capo"], relationships, agents, allow_delegation=False)
        assert "delegate_task" not in box.names
        assert "ask_agent" not in box.names
        assert "execute_code" in box.names

    def test_extra_tools_by_role(self, family):
        """Test extra tools are offered only to their roles."""
        agents, relationships = family

        async def handler(args, ctx):
            return ToolResult.ok("seen")

        extra = ExtraTool(
            ToolSpec("browser_debug", "Inspect the page", {"type": "object", "properties": {}}),
            handler,
            roles=frozenset({"soldier"}),
        )
        soldier_box = build_toolbox(agents["s1"], relationships, agents, extra_tools=[extra])
        boss_box = build_toolbox(agents["boss"], relationships, agents, extra_tools=[extra])
        assert "browser_debug" in soldier_box.names
        assert "browser_debug" not in boss_box.names


# =============================================================================
# Dispatch
# =============================================================================

def context(working_directory=None, conversation_id="conv-1"):
    return ToolContext(
        conversation_id=conversation_id,
        agent_id="s1",
        agent_name="Christopher Moltisanti",
        working_directory=working_directory,
    )


class TestDispatch:
    """Tests for run_work_tool."""

    @pytest.mark.asyncio
    async def test_file_tool_needs_working_directory(self):
        """Test file tools fail cleanly without a working directory."""
        result = await run_work_tool("read_file", {"path": "a.txt"}, context())
        assert result.is_error
        assert result.output == NO_WORKING_DIR

    @pytest.mark.asyncio
    async def test_write_and_list(self, temp_dir):
        """Test write_file and list_files through dispatch."""
        ctx = context(str(temp_dir))
        await run_work_tool("write_file", {"path": "notes.md", "content": "# Notes"}, ctx)
        listing = await run_work_tool("list_files", {}, ctx)
        assert "[FILE] notes.md" in listing.output

    @pytest.mark.asyncio
    async def test_progress_tools(self, store):
        """Test update_progress and get_progress through dispatch."""
        conversation = await store.create_conversation("Track me")
        ctx = context(conversation_id=conversation.id)

        empty = await run_work_tool("get_progress", {}, ctx)
        assert "No project progress recorded yet" in empty.output

        init = await run_work_tool("update_progress", {
            "action": "initialize",
            "project_name": "Billing",
            "objective": "Fix invoices",
            "phases": [{"name": "Audit"}, {"name": "Fix"}],
        }, ctx)
        assert init.output == "Project initialized"

        started = await run_work_tool("update_progress", {"action": "start_phase", "phase": "Audit"}, ctx)
        assert not started.is_error

        snapshot = await run_work_tool("get_progress", {}, ctx)
        assert "# PROJECT: Billing" in snapshot.output
        assert "Assigned to: Christopher Moltisanti" in snapshot.output
        assert '"progress": "0/2 phases complete"' in snapshot.output

    @pytest.mark.asyncio
    async def test_progress_errors_become_results(self, store):
        """Test engine errors are returned to the agent as error results."""
        conversation = await store.create_conversation("Track me")
        ctx = context(conversation_id=conversation.id)
        missing = await run_work_tool("update_progress", {"action": "add_phase"}, ctx)
        assert missing.is_error
        assert missing.output.startswith("[Error]:")
        unknown = await run_work_tool("update_progress", {"action": "celebrate"}, ctx)
        assert "Unknown progress action" in unknown.output

    @pytest.mark.asyncio
    async def test_extra_tool_dispatch(self):
        """Test extra tool handlers receive args and context."""
        seen = {}

        async def handler(args, ctx):
            seen.update(args=args, agent=ctx.agent_name)
            return ToolResult.ok("page looks fine")

        extra = ExtraTool(ToolSpec("browser_debug", "Inspect", {"type": "object"}), handler)
        result = await run_work_tool("browser_debug", {"url": "http://x"}, context(), {"browser_debug": extra})
        assert result.output == "page looks fine"
        assert seen == {"args": {"url": "http://x"}, "agent": "Christopher Moltisanti"}

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        """Test an unknown tool name is an error result."""
        result = await run_work_tool("teleport", {}, context())
        assert result.is_error
        assert "Unknown tool" in result.output
