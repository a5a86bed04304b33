"""Gate 2 (EXECUTION): the implementation makes the contract test pass and builds cleanly."""

from __future__ import annotations

from typing import List

from ..manifest import Manifest, ManifestAction
from ..utils.pathspec import to_posix
from .base import (
    TEST_FILE_NOT_CONFIGURED,
    ValidationContext,
    ValidatorDefinition,
    ValidatorOutput,
    fail,
    runner_output,
    skip,
)

GATE = 2


def _task_test_passes(context: ValidationContext) -> ValidatorOutput:
    if not context.test_file_path:
        return fail(TEST_FILE_NOT_CONFIGURED)
    relative = context.test_file_relative()
    if relative is None:
        return fail(f"Test file is outside the project: {context.test_file_path}")
    if not (context.project_path / relative).is_file():
        return fail(f"Test file not found: {relative}")
    result = context.runners.tests.run_single(relative, cwd=context.project_path)
    output = runner_output(
        result,
        passed_message=f"Task test passes: {relative}",
        failed_message=f"Task test fails: {relative}",
    )
    output.details["testFile"] = relative
    if result.failed_tests is not None:
        output.metrics["failedTests"] = result.failed_tests
    return output


def _strict_compilation(context: ValidationContext) -> ValidatorOutput:
    result = context.runners.compiler.compile(None, cwd=context.project_path)
    output = runner_output(result, passed_message="Project compiles", failed_message="Compilation failed")
    output.metrics["errorCount"] = len(result.errors)
    return output


def _lint_targets(context: ValidationContext, manifest: Manifest) -> List[str]:
    targets: List[str] = []
    for entry in manifest.files:
        if entry.normalized_action == ManifestAction.DELETE.value:
            continue
        path = to_posix(entry.path)
        if (context.project_path / path).is_file() and path not in targets:
            targets.append(path)
    return targets


def _style_consistency_lint(context: ValidationContext) -> ValidatorOutput:
    if context.manifest is None:
        return skip("No manifest provided")
    if not context.runners.lint.configured:
        return skip("No lint command configured")
    targets = _lint_targets(context, context.manifest)
    if not targets:
        return skip("No manifest files to lint")
    result = context.runners.lint.lint(targets, cwd=context.project_path)
    output = runner_output(
        result,
        passed_message=f"Lint clean for {len(targets)} file(s)",
        failed_message=f"Lint reported problems in {len(targets)} manifest file(s)",
    )
    output.details["files"] = targets
    output.metrics["issueCount"] = len(result.errors)
    return output


VALIDATORS: tuple[ValidatorDefinition, ...] = (
    ValidatorDefinition(
        code="TASK_TEST_PASSES",
        name="Task Test Passes",
        description="The declared contract test passes against the implementation.",
        gate=GATE,
        order=3,
        is_hard_block=True,
        evaluate=_task_test_passes,
    ),
    ValidatorDefinition(
        code="STRICT_COMPILATION",
        name="Strict Compilation",
        description="The project compiles without errors.",
        gate=GATE,
        order=4,
        is_hard_block=True,
        evaluate=_strict_compilation,
    ),
    ValidatorDefinition(
        code="STYLE_CONSISTENCY_LINT",
        name="Style Consistency Lint",
        description="Files in the manifest pass the configured linter.",
        gate=GATE,
        order=5,
        is_hard_block=False,
        evaluate=_style_consistency_lint,
    ),
)


__all__ = ["VALIDATORS"]
