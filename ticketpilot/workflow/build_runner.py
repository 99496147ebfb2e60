"""Subprocess build and test runner.

CommandBuildRunner runs the configured build and test commands in the
repository and turns their console output into BuildResult and TestResult
values. Test counts are read from either dotnet-style summaries
("Passed: 10", "Failed: 0", ...) or pytest-style summaries
("10 passed, 2 failed, 1 skipped"); coverage is read from the pytest-cov
"TOTAL" line.
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
from typing import Optional

from ticketpilot.workflow.models import BuildResult, TestResult

logger = logging.getLogger(__name__)

_LABELED_COUNT = {
    "total_tests": re.compile(r"Total:\s*(\d+)"),
    "passed_tests": re.compile(r"Passed:\s*(\d+)"),
    "failed_tests": re.compile(r"Failed:\s*(\d+)"),
    "skipped_tests": re.compile(r"Skipped:\s*(\d+)"),
}

_PYTEST_COUNT = re.compile(r"(\d+) (passed|failed|skipped|error|errors)\b")
_PYTEST_SUMMARY = re.compile(r"=+ .*\b(passed|failed|skipped|error|errors)\b.* =+")
_COVERAGE_TOTAL = re.compile(r"^TOTAL\s.*?(\d+(?:\.\d+)?)%\s*$", re.MULTILINE)


def extract_build_errors(output: str) -> list[str]:
    """Lines mentioning "error" (any case) and containing a colon, stripped."""
    return [
        line.strip()
        for line in output.split("\n")
        if "error" in line.lower() and ":" in line
    ]


def extract_build_warnings(output: str) -> list[str]:
    return [
        line.strip()
        for line in output.split("\n")
        if "warning" in line.lower() and ":" in line
    ]


def parse_test_output(output: str) -> TestResult:
    """Parse test counts and coverage from test runner output.

    Args:
        output: Combined stdout/stderr of the test command

    Returns:
        TestResult; total is derived from the other counts when the output
        does not state it
    """
    counts = {"total_tests": 0, "passed_tests": 0, "failed_tests": 0, "skipped_tests": 0}
    labeled = False

    for line in output.split("\n"):
        for name, pattern in _LABELED_COUNT.items():
            match = pattern.search(line)
            if match:
                counts[name] = int(match.group(1))
                labeled = True

    if not labeled:
        summaries = [line for line in output.split("\n") if _PYTEST_SUMMARY.search(line)]
        if summaries:
            for number, kind in _PYTEST_COUNT.findall(summaries[-1]):
                if kind == "passed":
                    counts["passed_tests"] = int(number)
                elif kind == "skipped":
                    counts["skipped_tests"] = int(number)
                else:
                    counts["failed_tests"] += int(number)

    if counts["total_tests"] == 0:
        counts["total_tests"] = (
            counts["passed_tests"] + counts["failed_tests"] + counts["skipped_tests"]
        )

    coverage = None
    coverage_matches = _COVERAGE_TOTAL.findall(output)
    if coverage_matches:
        coverage = min(float(coverage_matches[-1]) / 100, 1.0)

    return TestResult(code_coverage=coverage, **counts)


class CommandBuildRunner:
    """Runs build and test shell commands in the repository."""

    def __init__(
        self,
        repo_path: Optional[str] = None,
        build_command: str = "make build",
        test_command: str = "pytest",
        timeout: int = 1800,
    ):
        """Initialize the runner.

        Args:
            repo_path: Working directory of the commands (default: current directory)
            build_command: Command line of the build step
            test_command: Command line of the test step
            timeout: Seconds before a step is abandoned
        """
        self.repo_path = repo_path
        self.build_command = build_command
        self.test_command = test_command
        self.timeout = timeout

    def _run(self, command: str) -> subprocess.CompletedProcess:
        logger.info(f"Running: {command}")
        return subprocess.run(
            shlex.split(command),
            cwd=self.repo_path,
            capture_output=True,
            text=True,
            timeout=self.timeout,
            check=False,
        )

    def build(self) -> BuildResult:
        """Run the build command.

        A command that cannot be started or times out yields a failed
        BuildResult carrying the reason as its only error.
        """
        try:
            result = self._run(self.build_command)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Build could not run: {e}")
            return BuildResult(is_success=False, errors=[str(e)])

        output = result.stdout + result.stderr
        is_success = result.returncode == 0
        errors = [] if is_success else extract_build_errors(output)
        if not is_success and not errors:
            errors = [f"Build command exited with code {result.returncode}"]

        return BuildResult(
            is_success=is_success,
            errors=errors,
            warnings=extract_build_warnings(output),
            output=output,
        )

    def test(self) -> TestResult:
        """Run the test command and parse its summary.

        A command that cannot be started, times out, or exits non-zero
        without reporting any failure counts as one failed test.
        """
        try:
            result = self._run(self.test_command)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Tests could not run: {e}")
            return TestResult(total_tests=1, failed_tests=1)

        parsed = parse_test_output(result.stdout + result.stderr)
        if result.returncode != 0 and parsed.failed_tests == 0:
            logger.warning(
                f"Test command exited with code {result.returncode} without reported failures"
            )
            return TestResult(
                total_tests=parsed.total_tests + 1,
                passed_tests=parsed.passed_tests,
                failed_tests=1,
                skipped_tests=parsed.skipped_tests,
                code_coverage=parsed.code_coverage,
            )
        return parsed
