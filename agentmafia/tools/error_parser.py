"""
Error Parser
============

Turns raw compiler, linter and runtime output into structured errors so an
agent can act on file/line/column instead of scraping text.

Recognised formats:
- Python tracebacks
- TypeScript compiler (tsc) diagnostics
- ESLint "stylish" output
- Node.js stack traces
"""

import re
from dataclasses import asdict, dataclass
from typing import List, Optional


@dataclass
class ParsedError:
    """One diagnostic extracted from tool output."""
    file: str
    line: int
    column: int
    message: str
    severity: str = "error"  # error, warning, info
    code: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# Patterns
# =============================================================================

_TS_ERROR = re.compile(r"^(.+?)\((\d+),(\d+)\):\s+(error|warning)\s+TS(\d+):\s+(.+)$")
_ESLINT_FILE = re.compile(r"^(\S.*\.(?:ts|tsx|js|jsx|mjs|cjs))\s*$")
_ESLINT_ERROR = re.compile(r"^\s+(\d+):(\d+)\s+(error|warning)\s+(.+?)\s{2,}(\S+)\s*$")
_NODE_FRAME = re.compile(r"at .+? \((.+?):(\d+):(\d+)\)")
_PY_FRAME = re.compile(r'^\s*File "(.+?)", line (\d+)')
_PY_EXCEPTION = re.compile(r"^(\w[\w.]*(?:Error|Exception|Exit|Interrupt|Warning)\b.*)$")


def parse_typescript_errors(output: str) -> List[ParsedError]:
    """Parse ``file(line,col): error TSxxxx: message`` lines."""
    errors = []
    for line in output.splitlines():
        match = _TS_ERROR.match(line.strip())
        if match:
            file, line_no, col, severity, code, message = match.groups()
            errors.append(ParsedError(
                file=file.strip(),
                line=int(line_no),
                column=int(col),
                message=message.strip(),
                severity=severity,
                code=f"TS{code}",
            ))
    return errors


def parse_eslint_errors(output: str) -> List[ParsedError]:
    """Parse ESLint stylish output: a file header followed by indented findings."""
    errors = []
    current_file = ""
    for line in output.splitlines():
        file_match = _ESLINT_FILE.match(line)
        if file_match:
            current_file = file_match.group(1).strip()
            continue
        error_match = _ESLINT_ERROR.match(line)
        if error_match and current_file:
            line_no, col, severity, message, rule = error_match.groups()
            errors.append(ParsedError(
                file=current_file,
                line=int(line_no),
                column=int(col),
                message=message.strip(),
                severity=severity,
                code=rule,
            ))
    return errors


def parse_node_stack(output: str) -> List[ParsedError]:
    """First stack frame of a Node.js runtime error."""
    lines = output.splitlines()
    message = lines[0].strip() if lines else "Runtime error"
    for line in lines:
        match = _NODE_FRAME.search(line)
        if match:
            file, line_no, col = match.groups()
            return [ParsedError(file=file.strip(), line=int(line_no), column=int(col), message=message)]
    return []


def parse_python_traceback(output: str) -> List[ParsedError]:
    """Innermost frame of a Python traceback, labelled with the exception line."""
    last_frame = None
    message = None
    for line in output.splitlines():
        frame = _PY_FRAME.match(line)
        if frame:
            last_frame = frame
            continue
        exc = _PY_EXCEPTION.match(line.strip())
        if exc and last_frame is not None:
            message = exc.group(1)
    if last_frame is None:
        return []
    return [ParsedError(
        file=last_frame.group(1),
        line=int(last_frame.group(2)),
        column=0,
        message=message or "Python error",
    )]


def parse_errors(output: str) -> List[ParsedError]:
    """Detect the output format and route to the matching parser."""
    if not output:
        return []
    if "Traceback (most recent call last)" in output:
        return parse_python_traceback(output)
    if "error TS" in output or "warning TS" in output:
        return parse_typescript_errors(output)
    if ("error " in output or "warning " in output) and re.search(r"^\s+\d+:\d+\s", output, re.MULTILINE):
        return parse_eslint_errors(output)
    if " at " in output and re.search(r"\(.+:\d+:\d+\)", output):
        return parse_node_stack(output)
    return []
