"""Subprocess runners for compilation, linting, tests, and builds.

Each runner expands a configured command template, executes it with a bounded
timeout, and returns a :class:`RunnerResult`.  A command that exceeds its
timeout yields exit code ``124`` with ``timed_out`` set instead of hanging the
run.  A command that cannot be spawned raises :class:`RunnerError`, which the
orchestrator records as an infrastructure failure.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Sequence

from ..settings import TIMEOUT_EXIT_CODE, RunnerSettings, expand_command

LOGGER = logging.getLogger(__name__)

_COLON_FINDING_RE = re.compile(r"^(?P<path>[^\s:()][^:()]*?\.[A-Za-z0-9]+):(?P<line>\d+)(?::(?P<col>\d+))?:?\s*(?P<message>.+)$")
_PAREN_FINDING_RE = re.compile(r"^(?P<path>[^\s()]+\.[A-Za-z0-9]+)\((?P<line>\d+),(?P<col>\d+)\):\s*(?P<message>.+)$")
_COLLECT_RE = re.compile(r"collected\s+(\d+)\s+item")
_SUMMARY_RE = re.compile(r"(\d+)\s+(passed|failed|errors?|skipped)")
_MAX_OUTPUT_CHARS = 20000


class RunnerError(RuntimeError):
    """Raised when a runner command cannot be started."""


@dataclass(slots=True)
class RunnerFinding:
    """A located diagnostic parsed from tool output."""

    path: str
    line: int | None
    column: int | None
    message: str

    def to_dict(self) -> Dict[str, object]:
        return {"path": self.path, "line": self.line, "column": self.column, "message": self.message}


@dataclass(slots=True)
class RunnerResult:
    """Structured summary of a runner invocation."""

    command: tuple[str, ...]
    cwd: Path
    exit_code: int
    output: str
    duration_ms: int
    timed_out: bool = False
    errors: List[RunnerFinding] = field(default_factory=list)
    collected: int | None = None
    failed_tests: int | None = None

    @property
    def passed(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def short_message(self) -> str:
        if self.timed_out:
            return f"timed out after {self.duration_ms / 1000:.0f}s"
        if self.passed:
            return "passed"
        if self.errors:
            first = self.errors[0]
            location = first.path if first.line is None else f"{first.path}:{first.line}"
            return f"{location} :: {first.message}"
        stripped = self.output.strip()
        return stripped.splitlines()[-1] if stripped else f"exit code {self.exit_code}"


def parse_findings(output: str) -> List[RunnerFinding]:
    """Extract ``path:line[:col]: message`` style diagnostics from tool output."""

    findings: List[RunnerFinding] = []
    seen: set[tuple[str, int | None, str]] = set()
    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            continue
        match = _PAREN_FINDING_RE.match(line) or _COLON_FINDING_RE.match(line)
        if not match:
            continue
        path = match.group("path").replace("\\", "/")
        line_no = int(match.group("line"))
        column = match.group("col")
        message = match.group("message").strip()
        key = (path, line_no, message)
        if key in seen:
            continue
        seen.add(key)
        findings.append(
            RunnerFinding(
                path=path,
                line=line_no,
                column=int(column) if column else None,
                message=message,
            )
        )
    return findings


def _merge_env(extra: Mapping[str, str] | None) -> Dict[str, str]:
    """Merge provided environment overrides with the current process state."""
    env: Dict[str, str] = os.environ.copy()
    if extra:
        env.update({str(key): str(value) for key, value in extra.items()})
    return env


def _decode(payload: bytes | str | None) -> str:
    if payload is None:
        return ""
    if isinstance(payload, bytes):
        return payload.decode("utf-8", errors="replace")
    return payload


class CommandRunner:
    """Run an argv list with a timeout and collect its combined output."""

    def __init__(
        self,
        cwd: Path | str,
        *,
        timeout: float = 300.0,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.cwd = Path(cwd).resolve()
        self.timeout = float(timeout)
        self.env = dict(env or {})

    def run(self, args: Sequence[str], *, cwd: Path | str | None = None) -> RunnerResult:
        command = [str(item) for item in args]
        if not command:
            raise RunnerError("Empty command.")
        workdir = Path(cwd).resolve() if cwd is not None else self.cwd
        if shutil.which(command[0], path=_merge_env(self.env).get("PATH")) is None and not Path(command[0]).exists():
            raise RunnerError(f"Executable not available: {command[0]}")

        LOGGER.debug("Running %s in %s", " ".join(command), workdir)
        started = time.monotonic()
        try:
            process = subprocess.run(  # noqa: S603 - command sourced from project config
                command,
                cwd=workdir,
                env=_merge_env(self.env),
                capture_output=True,
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as error:
            duration = int((time.monotonic() - started) * 1000)
            output = (_decode(error.stdout) + _decode(error.stderr))[-_MAX_OUTPUT_CHARS:]
            LOGGER.warning("Command %s timed out after %ss", command[0], self.timeout)
            return RunnerResult(
                command=tuple(command),
                cwd=workdir,
                exit_code=TIMEOUT_EXIT_CODE,
                output=output + f"\nCommand timed out after {self.timeout:g}s",
                duration_ms=duration,
                timed_out=True,
            )
        except OSError as error:
            raise RunnerError(f"Unable to start {command[0]}: {error}") from error

        duration = int((time.monotonic() - started) * 1000)
        output = "\n".join(
            part for part in (_decode(process.stdout), _decode(process.stderr)) if part
        )[-_MAX_OUTPUT_CHARS:]
        return RunnerResult(
            command=tuple(command),
            cwd=workdir,
            exit_code=process.returncode,
            output=output,
            duration_ms=duration,
            errors=parse_findings(output) if process.returncode != 0 else [],
        )


class _TemplateRunner:
    kind = "command"

    def __init__(
        self,
        template: Sequence[str] | None,
        cwd: Path | str,
        *,
        timeout: float = 300.0,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.template = list(template) if template else None
        self.runner = CommandRunner(cwd, timeout=timeout, env=env)

    @property
    def configured(self) -> bool:
        return bool(self.template)

    def _require_template(self) -> List[str]:
        if not self.template:
            raise RunnerError(f"No {self.kind} command configured.")
        return self.template


class CompilerRunner(_TemplateRunner):
    """Type-check or byte-compile the project (or selected paths)."""

    kind = "compile"

    def compile(self, paths: Sequence[str] | None = None, *, cwd: Path | str | None = None) -> RunnerResult:
        command = expand_command(self._require_template(), paths=list(paths) if paths else ["."])
        return self.runner.run(command, cwd=cwd)


class LintRunner(_TemplateRunner):
    kind = "lint"

    def lint(self, paths: Sequence[str], *, cwd: Path | str | None = None) -> RunnerResult:
        command = expand_command(self._require_template(), paths=list(paths))
        return self.runner.run(command, cwd=cwd)


class TestRunner:
    """Run a single test file or the full suite."""

    __test__ = False

    def __init__(
        self,
        single_template: Sequence[str] | None,
        suite_template: Sequence[str] | None,
        cwd: Path | str,
        *,
        timeout: float = 300.0,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.single_template = list(single_template) if single_template else None
        self.suite_template = list(suite_template) if suite_template else None
        self.runner = CommandRunner(cwd, timeout=timeout, env=env)

    @staticmethod
    def _annotate(result: RunnerResult) -> RunnerResult:
        match = _COLLECT_RE.search(result.output)
        if match:
            result.collected = int(match.group(1))
        failed = 0
        found = False
        for count, label in _SUMMARY_RE.findall(result.output):
            if label.startswith("failed") or label.startswith("error"):
                failed += int(count)
                found = True
        if found:
            result.failed_tests = failed
        return result

    def run_single(self, test_path: str, *, cwd: Path | str | None = None) -> RunnerResult:
        if not self.single_template:
            raise RunnerError("No test command configured.")
        command = expand_command(self.single_template, path=test_path, paths=[test_path])
        return self._annotate(self.runner.run(command, cwd=cwd))

    def run_all(self, *, cwd: Path | str | None = None) -> RunnerResult:
        if not self.suite_template:
            raise RunnerError("No test_all command configured.")
        command = expand_command(self.suite_template)
        return self._annotate(self.runner.run(command, cwd=cwd))


class BuildRunner(_TemplateRunner):
    kind = "build"

    def build(self, *, cwd: Path | str | None = None) -> RunnerResult:
        return self.runner.run(expand_command(self._require_template()), cwd=cwd)


class SetupRunner(_TemplateRunner):
    """Prepare a freshly created worktree (dependency install and similar)."""

    kind = "worktree_setup"

    def setup(self, cwd: Path | str) -> RunnerResult | None:
        if not self.template:
            return None
        return self.runner.run(expand_command(self.template), cwd=cwd)


@dataclass(slots=True)
class Runners:
    """The runner set handed to validators."""

    compiler: CompilerRunner
    lint: LintRunner
    tests: TestRunner
    build: BuildRunner
    setup: SetupRunner

    @classmethod
    def from_settings(cls, settings: RunnerSettings, cwd: Path | str) -> "Runners":
        return cls(
            compiler=CompilerRunner(settings.compile, cwd, timeout=settings.timeout("compile")),
            lint=LintRunner(settings.lint, cwd, timeout=settings.timeout("lint")),
            tests=TestRunner(settings.test, settings.test_all, cwd, timeout=settings.timeout("test")),
            build=BuildRunner(settings.build, cwd, timeout=settings.timeout("build")),
            setup=SetupRunner(settings.worktree_setup, cwd, timeout=settings.timeout("build")),
        )


__all__ = [
    "BuildRunner",
    "CommandRunner",
    "CompilerRunner",
    "LintRunner",
    "RunnerError",
    "RunnerFinding",
    "RunnerResult",
    "Runners",
    "SetupRunner",
    "TestRunner",
    "parse_findings",
]
