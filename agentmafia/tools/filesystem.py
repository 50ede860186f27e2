"""
Workspace File Operations
=========================

File tools confined to a task's working directory. Blocking I/O runs on a
worker thread so a branch reading a large file does not stall its siblings.

Usage:
    from agentmafia.tools.filesystem import read_file, write_file, list_files

    result = await read_file("/work/project", "src/app.py")
"""

import asyncio
from pathlib import Path
from typing import Optional

from agentmafia.errors import ToolError
from agentmafia.tools.base import ToolResult

MAX_READ_CHARS = 100_000


def safe_path(root: str, relative: str) -> Path:
    """
    Resolve ``relative`` inside ``root``.

    Raises:
        ToolError: if the resolved path escapes the root.
    """
    base = Path(root).resolve()
    target = (base / relative).resolve()
    if target != base and base not in target.parents:
        raise ToolError("filesystem", f"Path traversal blocked: {relative}")
    return target


class FileOps:
    """Synchronous workspace file operations returning ToolResults."""

    @staticmethod
    def read(root: str, path: str) -> ToolResult:
        try:
            target = safe_path(root, path)
            text = target.read_text(encoding="utf-8", errors="replace")
        except ToolError as e:
            return ToolResult.fail(f"[Error reading file]: {e}")
        except OSError as e:
            return ToolResult.fail(f"[Error reading file]: {e}")
        if len(text) > MAX_READ_CHARS:
            text = text[:MAX_READ_CHARS] + f"\n... [truncated, {len(text)} chars total]"
        return ToolResult.ok(text)

    @staticmethod
    def write(root: str, path: str, content: str) -> ToolResult:
        try:
            target = safe_path(root, path)
            existed = target.exists()
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except ToolError as e:
            return ToolResult.fail(f"[Error writing file]: {e}")
        except OSError as e:
            return ToolResult.fail(f"[Error writing file]: {e}")
        verb = "updated" if existed else "created"
        return ToolResult.ok(f"File {verb}: {path}")

    @staticmethod
    def list_dir(root: str, path: Optional[str] = None) -> ToolResult:
        try:
            target = safe_path(root, path) if path else Path(root).resolve()
            entries = sorted(target.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
        except ToolError as e:
            return ToolResult.fail(f"[Error listing files]: {e}")
        except OSError as e:
            return ToolResult.fail(f"[Error listing files]: {e}")
        lines = [f"{'[DIR]' if p.is_dir() else '[FILE]'} {p.name}" for p in entries]
        return ToolResult.ok("\n".join(lines) if lines else "(empty directory)")


async def read_file(root: str, path: str) -> ToolResult:
    return await asyncio.to_thread(FileOps.read, root, path)


async def write_file(root: str, path: str, content: str) -> ToolResult:
    return await asyncio.to_thread(FileOps.write, root, path, content)


async def list_files(root: str, path: Optional[str] = None) -> ToolResult:
    return await asyncio.to_thread(FileOps.list_dir, root, path)
