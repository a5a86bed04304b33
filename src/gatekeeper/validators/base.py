"""Validator protocol, validation context, and result helpers.

A validator is a :class:`ValidatorDefinition`: static metadata (code, gate,
order, hard-block flag) plus an ``evaluate`` callable that inspects a
:class:`ValidationContext` and returns a :class:`ValidatorOutput`.  Expected
policy failures are returned as outputs; anything a validator raises is an
infrastructure fault that the orchestrator records on its behalf.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from ..manifest import Manifest
from ..paths import PathResolverService
from ..settings import ValidatorSettings
from ..store.schema import ValidatorStatus
from ..tools.runners import RunnerResult, Runners
from ..tools.vcs import GitRepository
from ..utils.pathspec import matches_any, relative_to_project, to_posix

TEST_FILE_NOT_CONFIGURED = "Test file path not configured"
_EVIDENCE_CHARS = 4000


@dataclass(slots=True)
class ValidationServices:
    """Collaborators the validators may call."""

    git: GitRepository
    runners: Runners
    resolver: PathResolverService


@dataclass(frozen=True, slots=True)
class ValidationContext:
    """Immutable inputs for one run, shared by every validator in it."""

    run_id: str
    project_path: Path
    base_ref: str
    target_ref: str
    task_prompt: str
    test_file_path: str | None
    manifest: Manifest | None
    services: ValidationServices
    settings: ValidatorSettings
    bypassed_validators: frozenset[str] = frozenset()
    danger_mode: bool = False
    output_id: str | None = None
    manifest_error: str | None = None

    @property
    def git(self) -> GitRepository:
        return self.services.git

    @property
    def runners(self) -> Runners:
        return self.services.runners

    def test_file_relative(self) -> str | None:
        """Project-relative posix path of the declared test file, if inside the project."""

        if not self.test_file_path:
            return None
        return relative_to_project(self.test_file_path, self.project_path.as_posix())

    def test_file_absolute(self) -> Path | None:
        relative = self.test_file_relative()
        if relative is None:
            return None
        return self.project_path / relative

    def read_test_file(self) -> str | None:
        path = self.test_file_absolute()
        if path is None or not path.is_file():
            return None
        return path.read_text(encoding="utf-8", errors="replace")

    def actual_diff(self) -> List[str]:
        """Files changed by the implementation, minus configured ignore patterns."""

        diff_settings = self.settings.diff_scope
        if diff_settings.include_working_tree:
            files = self.git.diff_files_with_working_tree(self.base_ref)
        else:
            files = self.git.diff_files(self.base_ref, self.target_ref)
        return [
            to_posix(path)
            for path in files
            if not matches_any(path, diff_settings.ignored_patterns)
        ]


@dataclass(slots=True)
class ValidatorOutput:
    """What a validator reports; the orchestrator adds identity and timing."""

    status: ValidatorStatus
    passed: bool
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    evidence: str | None = None
    metrics: Dict[str, Any] = field(default_factory=dict)
    findings: List[Dict[str, Any]] = field(default_factory=list)


def ok(message: str, **extra: Any) -> ValidatorOutput:
    return ValidatorOutput(status=ValidatorStatus.PASSED, passed=True, message=message, **extra)


def fail(message: str, **extra: Any) -> ValidatorOutput:
    return ValidatorOutput(status=ValidatorStatus.FAILED, passed=False, message=message, **extra)


def warn(message: str, **extra: Any) -> ValidatorOutput:
    return ValidatorOutput(status=ValidatorStatus.WARNING, passed=True, message=message, **extra)


def skip(message: str, **extra: Any) -> ValidatorOutput:
    return ValidatorOutput(status=ValidatorStatus.SKIPPED, passed=True, message=message, **extra)


def finding(kind: str, message: str, **location: Any) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"type": kind, "message": message}
    entry.update({key: value for key, value in location.items() if value is not None})
    return entry


def evidence_from(result: RunnerResult) -> str:
    text = result.output.strip()
    if len(text) > _EVIDENCE_CHARS:
        text = "...\n" + text[-_EVIDENCE_CHARS:]
    return f"$ {' '.join(result.command)}\n{text}"


def runner_output(result: RunnerResult, *, passed_message: str, failed_message: str) -> ValidatorOutput:
    """Translate a runner result into a validator outcome."""

    details: Dict[str, Any] = {
        "exitCode": result.exit_code,
        "durationMs": result.duration_ms,
        "timedOut": result.timed_out,
    }
    findings = [finding("error", item.message, path=item.path, line=item.line) for item in result.errors]
    if result.errors:
        details["errors"] = [item.to_dict() for item in result.errors]
    if result.collected is not None:
        details["collected"] = result.collected
    if result.passed:
        return ok(passed_message, details=details, evidence=evidence_from(result))
    message = failed_message
    if result.timed_out:
        message = f"{failed_message} (timed out after {result.duration_ms / 1000:.0f}s)"
    return fail(message, details=details, evidence=evidence_from(result), findings=findings)


Evaluate = Callable[[ValidationContext], ValidatorOutput]


@dataclass(slots=True)
class ValidatorDefinition:
    """Static metadata plus the evaluation function of one validator."""

    code: str
    name: str
    description: str
    gate: int
    order: int
    is_hard_block: bool
    evaluate: Evaluate


__all__ = [
    "Evaluate",
    "TEST_FILE_NOT_CONFIGURED",
    "ValidationContext",
    "ValidationServices",
    "ValidatorDefinition",
    "ValidatorOutput",
    "evidence_from",
    "fail",
    "finding",
    "ok",
    "runner_output",
    "skip",
    "warn",
]
