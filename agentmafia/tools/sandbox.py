"""
Code Sandbox
============

Runs agent-supplied code in a throwaway temp directory, and shell commands in
the task's working directory. Both are bounded by a timeout; a process that
overruns is killed along with everything it spawned, and reported with exit
code -1.

This is isolation by directory only. It is not a security boundary.
"""

import asyncio
import logging
import os
import platform
import shutil
import signal
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import List, Optional, Tuple

from agentmafia.tools.base import ToolResult, ToolStatus
from agentmafia.tools.error_parser import parse_errors

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 20_000

# How long to wait for the pipes to close once the process group is killed
KILL_GRACE_SECONDS = 2.0

LANGUAGES = ("python", "javascript", "typescript")

IS_WINDOWS = platform.system() == "Windows"


def _interpreter(language: str, script: Path) -> List[str]:
    if language == "python":
        return [sys.executable, str(script)]
    if language == "javascript":
        return ["node", str(script)]
    if language == "typescript":
        return ["npx", "tsx", str(script)]
    raise ValueError(f"Unsupported language: {language}")


def _clip(text: str) -> str:
    if len(text) > MAX_OUTPUT_CHARS:
        return text[:MAX_OUTPUT_CHARS] + "\n... [output truncated]"
    return text


def _group_options() -> dict:
    """Spawn options that give the child its own process group."""
    if IS_WINDOWS:
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


async def _kill_group(proc: asyncio.subprocess.Process) -> None:
    """Kill the process and every descendant still in its group."""
    if IS_WINDOWS:
        killer = await asyncio.create_subprocess_exec(
            "taskkill", "/T", "/F", "/PID", str(proc.pid),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await killer.wait()
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        # Whole group already exited
        return


async def _communicate(proc: asyncio.subprocess.Process, timeout: float) -> Tuple[str, str, Optional[int]]:
    """
    Collect output, killing the process group on timeout or cancellation.

    Exit code None means timed out. Output written before the kill is kept.
    """
    reader = asyncio.ensure_future(proc.communicate())
    timed_out = False
    try:
        done, _ = await asyncio.wait({reader}, timeout=timeout)
        if not done:
            timed_out = True
            await _kill_group(proc)
            done, _ = await asyncio.wait({reader}, timeout=KILL_GRACE_SECONDS)
            if not done:
                logger.warning("Process %s kept its pipes open after kill; dropping output", proc.pid)
                reader.cancel()
                return "", "", None
    except asyncio.CancelledError:
        reader.cancel()
        await _kill_group(proc)
        raise

    stdout, stderr = reader.result()
    return (
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
        None if timed_out else proc.returncode,
    )


def _to_result(stdout: str, stderr: str, exit_code: Optional[int], timeout: float) -> ToolResult:
    if exit_code is None:
        stderr += f"\n[Execution timed out after {timeout:g} seconds]"
        exit_code = -1
    errors = parse_errors(stderr or stdout) if exit_code != 0 else []
    return ToolResult(
        status=ToolStatus.SUCCESS if exit_code == 0 else ToolStatus.ERROR,
        stdout=_clip(stdout),
        stderr=_clip(stderr),
        exit_code=exit_code,
        errors=errors,
    )


async def execute_code(language: str, code: str, timeout: float = 30.0) -> ToolResult:
    """
    Execute a code snippet in a fresh temp directory.

    Args:
        language: python, javascript or typescript
        code: Source text
        timeout: Seconds before the process is killed

    Returns:
        ToolResult with stdout, stderr, exit code and parsed errors
    """
    if language not in LANGUAGES:
        return ToolResult.fail(f"Unsupported language: {language}. Use one of: {', '.join(LANGUAGES)}")

    workdir = Path(tempfile.mkdtemp(prefix="agentmafia-sandbox-"))
    ext = {"python": "py", "javascript": "js", "typescript": "ts"}[language]
    script = workdir / f"script.{ext}"
    try:
        script.write_text(code, encoding="utf-8")
        try:
            proc = await asyncio.create_subprocess_exec(
                *_interpreter(language, script),
                cwd=str(workdir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **_group_options(),
            )
        except FileNotFoundError as e:
            return ToolResult.fail(f"[Sandbox error]: interpreter not found: {e}")
        stdout, stderr, exit_code = await _communicate(proc, timeout)
        return _to_result(stdout, stderr, exit_code, timeout)
    finally:
        shutil.rmtree(workdir, ignore_errors=True)


async def run_command(command: str, cwd: str, timeout: float = 120.0) -> ToolResult:
    """Run a shell command in ``cwd`` with a timeout."""
    if not command.strip():
        return ToolResult.fail("[Command error]: empty command")
    logger.debug("run_command in %s: %s", cwd, command)
    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            **_group_options(),
        )
    except OSError as e:
        return ToolResult.fail(f"[Command error]: {e}")
    stdout, stderr, exit_code = await _communicate(proc, timeout)
    return _to_result(stdout, stderr, exit_code, timeout)
