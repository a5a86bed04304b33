"""Tool integrations: git and subprocess runners."""

from .runners import (
    BuildRunner,
    CommandRunner,
    CompilerRunner,
    LintRunner,
    RunnerError,
    RunnerFinding,
    RunnerResult,
    Runners,
    SetupRunner,
    TestRunner,
)
from .vcs import CommitError, GitError, GitRepository, PushError, WorktreeHandle, project_lock

__all__ = [
    "BuildRunner",
    "CommandRunner",
    "CommitError",
    "CompilerRunner",
    "GitError",
    "GitRepository",
    "LintRunner",
    "PushError",
    "RunnerError",
    "RunnerFinding",
    "RunnerResult",
    "Runners",
    "SetupRunner",
    "TestRunner",
    "WorktreeHandle",
    "project_lock",
]
