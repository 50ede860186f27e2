"""
Test and Build Runners
======================

Runs a project's test suite or build in the working directory and reduces
the output to something an agent can act on: pass/fail counts and failing
test names for tests, structured diagnostics for builds.

Supported test frameworks:
- jest and vitest (JSON reporter, jest-compatible shape)
- mocha (JSON reporter)
- pytest (``-rA`` short summary)

When the structured output cannot be found the counts fall back to the
"N passed / N failed" summary most runners print.
"""

import json
import logging
import re
import shlex
from dataclasses import dataclass, field
from typing import List, Optional

from agentmafia.errors import ToolError
from agentmafia.tools.base import ToolResult, ToolStatus
from agentmafia.tools.error_parser import parse_errors
from agentmafia.tools.filesystem import safe_path
from agentmafia.tools.sandbox import run_command

logger = logging.getLogger(__name__)

FRAMEWORKS = ("jest", "vitest", "pytest", "mocha")

# Test cases reported back to the model
MAX_REPORTED_CASES = 50

_PYTEST_CASE = re.compile(r"^(PASSED|FAILED|ERROR|XFAIL|XPASS)\s+(\S+)(?:\s+-\s+(.*))?$")
_PYTEST_SKIP = re.compile(r"^SKIPPED\s+\[\d+\]\s+(.+?):\s*(.*)$")
_PYTEST_TOTALS = re.compile(r"(\d+)\s+(passed|failed|skipped|errors?|xfailed|xpassed|deselected)")
_FALLBACK_PASSED = re.compile(r"(\d+)\s+(?:passed|passing)", re.IGNORECASE)
_FALLBACK_FAILED = re.compile(r"(\d+)\s+(?:failed|failing)", re.IGNORECASE)
_FALLBACK_SKIPPED = re.compile(r"(\d+)\s+(?:skipped|pending)", re.IGNORECASE)


@dataclass
class CaseResult:
    """One test case."""
    name: str
    status: str  # passed, failed, skipped
    error: Optional[str] = None
    duration_ms: Optional[float] = None

    def to_dict(self) -> dict:
        data = {"name": self.name, "status": self.status}
        if self.error:
            data["error"] = self.error
        if self.duration_ms is not None:
            data["durationMs"] = self.duration_ms
        return data


@dataclass
class SuiteResult:
    """Parsed outcome of a test run."""
    framework: str
    test_path: Optional[str] = None
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    exit_code: Optional[int] = None
    errors: List[str] = field(default_factory=list)
    cases: List[CaseResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.skipped

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and self.failed == 0 and not self.errors

    def count_cases(self) -> None:
        self.passed = sum(1 for c in self.cases if c.status == "passed")
        self.failed = sum(1 for c in self.cases if c.status == "failed")
        self.skipped = sum(1 for c in self.cases if c.status == "skipped")

    def to_dict(self) -> dict:
        # Failures first so they survive the cut
        ordered = sorted(self.cases, key=lambda c: c.status != "failed")
        return {
            "framework": self.framework,
            "testPath": self.test_path,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "total": self.total,
            "exitCode": self.exit_code,
            "errors": self.errors,
            "testCases": [c.to_dict() for c in ordered[:MAX_REPORTED_CASES]],
        }


# =============================================================================
# Commands
# =============================================================================

def suite_command(framework: str, test_path: Optional[str] = None) -> List[str]:
    """The argv that runs ``framework`` with machine-readable output."""
    if framework == "jest":
        argv = ["npx", "jest", "--json", "--testLocationInResults"]
    elif framework == "vitest":
        argv = ["npx", "vitest", "run", "--reporter=json"]
    elif framework == "mocha":
        argv = ["npx", "mocha", "--reporter", "json"]
    elif framework == "pytest":
        argv = ["pytest", "-q", "-rA", "--color=no"]
    else:
        raise ToolError("run_tests", f"Unsupported framework: {framework}. Use one of: {', '.join(FRAMEWORKS)}")
    if test_path:
        argv.append(test_path)
    return argv


# =============================================================================
# Parsers
# =============================================================================

def find_json(text: str, key: str) -> Optional[dict]:
    """Return the first JSON object in ``text`` that has ``key`` at top level."""
    decoder = json.JSONDecoder()
    index = text.find("{")
    while index != -1:
        try:
            data, end = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            index = text.find("{", index + 1)
            continue
        if isinstance(data, dict) and key in data:
            return data
        index = text.find("{", end)
    return None


def parse_jest(output: str, framework: str = "jest") -> Optional[SuiteResult]:
    """Parse jest's ``--json`` report (vitest's JSON reporter has the same shape)."""
    data = find_json(output, "testResults")
    if data is None:
        return None
    result = SuiteResult(framework=framework)
    for suite in data.get("testResults") or []:
        assertions = suite.get("assertionResults") or []
        if not assertions and suite.get("status") == "failed" and suite.get("message"):
            # Suite failed to load; no assertions ran
            result.errors.append(f"{suite.get('name', '?')}: {suite['message'][:500]}")
        for case in assertions:
            status = case.get("status")
            failures = case.get("failureMessages") or []
            result.cases.append(CaseResult(
                name=case.get("fullName") or case.get("title", ""),
                status="passed" if status == "passed" else "failed" if status == "failed" else "skipped",
                error="\n".join(failures)[:1000] or None,
                duration_ms=case.get("duration"),
            ))
    result.count_cases()
    return result


def parse_mocha(output: str) -> Optional[SuiteResult]:
    """Parse mocha's JSON reporter."""
    data = find_json(output, "stats")
    if data is None:
        return None
    result = SuiteResult(framework="mocha")
    for key, status in (("passes", "passed"), ("failures", "failed"), ("pending", "skipped")):
        for case in data.get(key) or []:
            err = case.get("err") or {}
            result.cases.append(CaseResult(
                name=case.get("fullTitle") or case.get("title", ""),
                status=status,
                error=err.get("message"),
                duration_ms=case.get("duration"),
            ))
    result.count_cases()
    return result


def parse_pytest(output: str) -> Optional[SuiteResult]:
    """Parse pytest's short test summary (``-rA``) and its totals line."""
    result = SuiteResult(framework="pytest")
    for line in output.splitlines():
        line = line.strip()
        case = _PYTEST_CASE.match(line)
        if case:
            outcome, name, message = case.groups()
            if outcome == "ERROR":
                result.errors.append(f"{name}: {message or 'error'}")
                continue
            failed = outcome == "FAILED"
            result.cases.append(CaseResult(
                name=name,
                status="failed" if failed else "skipped" if outcome == "XFAIL" else "passed",
                error=message if failed else None,
            ))
            continue
        skip = _PYTEST_SKIP.match(line)
        if skip:
            result.cases.append(CaseResult(name=skip.group(1), status="skipped", error=None))

    totals = {}
    for line in reversed(output.splitlines()):
        found = _PYTEST_TOTALS.findall(line)
        if found and (" in " in line or "no tests ran" in line):
            totals = {word: int(count) for count, word in found}
            break

    if not result.cases and not totals:
        return None
    if totals:
        result.passed = totals.get("passed", 0) + totals.get("xpassed", 0)
        result.failed = totals.get("failed", 0)
        result.skipped = totals.get("skipped", 0) + totals.get("xfailed", 0)
    else:
        result.count_cases()
    return result


def parse_summary_counts(output: str, framework: str) -> SuiteResult:
    """Last resort: pick pass/fail counts out of free text."""
    result = SuiteResult(framework=framework)
    passed = _FALLBACK_PASSED.search(output)
    failed = _FALLBACK_FAILED.search(output)
    skipped = _FALLBACK_SKIPPED.search(output)
    result.passed = int(passed.group(1)) if passed else 0
    result.failed = int(failed.group(1)) if failed else 0
    result.skipped = int(skipped.group(1)) if skipped else 0
    result.errors.append("Could not parse structured test output; counts are approximate")
    return result


def parse_test_output(framework: str, stdout: str, stderr: str = "") -> SuiteResult:
    """Route runner output to the parser for ``framework``."""
    if framework in ("jest", "vitest"):
        parsed = parse_jest(stdout, framework) or parse_jest(stderr, framework)
    elif framework == "mocha":
        parsed = parse_mocha(stdout)
    else:
        parsed = parse_pytest(stdout)
    return parsed or parse_summary_counts(f"{stdout}\n{stderr}", framework)


# =============================================================================
# Tools
# =============================================================================

async def run_tests(
    framework: str,
    cwd: str,
    test_path: Optional[str] = None,
    timeout: float = 120.0,
) -> SuiteResult:
    """
    Run the test suite in ``cwd``.

    Raises:
        ToolError: for an unknown framework or a test path outside ``cwd``.
    """
    if test_path:
        safe_path(cwd, test_path)
    argv = suite_command(framework, test_path)
    logger.debug("run_tests (%s) in %s", framework, cwd)
    run = await run_command(shlex.join(argv), cwd, timeout)

    if run.exit_code is None:
        # The command never started
        result = SuiteResult(framework=framework, errors=[run.output])
    else:
        result = parse_test_output(framework, run.stdout, run.stderr)
        result.exit_code = run.exit_code
        if run.exit_code == -1:
            result.errors.append(f"Test run timed out after {timeout:g} seconds")
        elif run.exit_code != 0 and not result.failed and not result.errors:
            result.errors.append((run.stderr or run.stdout).strip()[-1000:] or f"exit code {run.exit_code}")
    result.test_path = test_path
    return result


def suite_to_tool_result(suite: SuiteResult) -> ToolResult:
    return ToolResult(
        status=ToolStatus.SUCCESS if suite.ok else ToolStatus.ERROR,
        output=json.dumps(suite.to_dict(), indent=2),
    )


async def run_build(command: str, cwd: str, timeout: float = 120.0) -> ToolResult:
    """
    Run a build or type-check command and collect its diagnostics.

    Compilers disagree on which stream they report to (tsc uses stdout), so
    both are parsed.
    """
    result = await run_command(command, cwd, timeout)
    if result.exit_code is None:
        return result
    result.errors = parse_errors(f"{result.stderr}\n{result.stdout}".strip())
    error_count = sum(1 for e in result.errors if e.severity == "error")
    outcome = "succeeded" if result.exit_code == 0 else "failed"
    result.output = f"Build {outcome}: {error_count} error(s), {len(result.errors) - error_count} warning(s)"
    return result
