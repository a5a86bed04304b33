"""Gate 0 (SANITIZATION): checks on the task prompt and the declared scope."""

from __future__ import annotations

import math
import re
from typing import List

from ..manifest import ManifestAction
from ..utils.pathspec import matches_any, normalize_path, to_posix
from .base import (
    ValidationContext,
    ValidatorDefinition,
    ValidatorOutput,
    fail,
    finding,
    ok,
    skip,
    warn,
)
from .imports import SOURCE_EXTENSIONS, imports_for, python_local_roots

GATE = 0
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN) if text else 0


def find_terms(text: str, terms) -> List[str]:
    """Return the configured terms that occur in ``text`` as whole words, case-insensitively."""

    found: List[str] = []
    for term in terms:
        pattern = re.compile(rf"(?<!\w){re.escape(term)}(?!\w)", re.IGNORECASE)
        if pattern.search(text):
            found.append(term)
    return found


def _token_budget_fit(context: ValidationContext) -> ValidatorOutput:
    budget = context.settings.token_budget
    test_content = context.read_test_file() or ""
    tokens = estimate_tokens(context.task_prompt) + estimate_tokens(test_content)
    metrics = {"estimatedTokens": tokens, "budget": budget}
    if tokens > budget:
        return fail(
            f"Task context needs ~{tokens} tokens, over the budget of {budget}",
            metrics=metrics,
        )
    return ok(f"Task context fits the token budget ({tokens}/{budget})", metrics=metrics)


def _task_scope_size(context: ValidationContext) -> ValidatorOutput:
    if context.manifest is None:
        return skip("No manifest provided")
    count = len(context.manifest.files)
    limit = context.settings.max_manifest_files
    metrics = {"fileCount": count, "maxFiles": limit}
    if count > limit:
        return fail(
            f"Task touches {count} files; split it into tasks of at most {limit}",
            metrics=metrics,
        )
    return ok(f"Task scope is {count} file(s)", metrics=metrics)


def _task_clarity_check(context: ValidationContext) -> ValidatorOutput:
    found = find_terms(context.task_prompt, context.settings.ambiguous_terms)
    details = {"foundTerms": found, "totalFound": len(found)}
    if found:
        return fail(
            f"Task prompt contains ambiguous terms: {', '.join(found)}",
            details=details,
            findings=[finding("error", f"Ambiguous term: {term}") for term in found],
        )
    return ok("Task prompt is free of ambiguous terms", details=details)


def sensitive_files(context: ValidationContext) -> List[str]:
    if context.manifest is None:
        return []
    patterns = context.settings.sensitive_patterns
    return [path for path in context.manifest.paths if matches_any(path, patterns)]


def _sensitive_files_lock(context: ValidationContext) -> ValidatorOutput:
    if context.manifest is None:
        return skip("No manifest provided")
    blocked = sensitive_files(context)
    details = {"blockedFiles": blocked}
    if not blocked:
        return ok("No sensitive files in manifest", details=details)
    if context.danger_mode:
        return ok(
            f"Danger mode allows {len(blocked)} sensitive file(s)",
            details={**details, "dangerMode": True},
        )
    return fail(
        f"Manifest touches sensitive files: {', '.join(blocked)}",
        details=details,
        findings=[finding("error", "Sensitive file", path=path) for path in blocked],
    )


def _danger_mode_explicit(context: ValidationContext) -> ValidatorOutput:
    if not context.danger_mode:
        return skip("Danger mode not enabled")
    if context.manifest is None:
        return fail("Danger mode requires a manifest listing the sensitive files")
    blocked = sensitive_files(context)
    if not blocked:
        return skip("Danger mode enabled but no sensitive files are declared")
    return ok(
        f"Danger mode explicitly covers {len(blocked)} sensitive file(s)",
        details={"sensitiveFiles": blocked},
    )


def _path_convention(context: ValidationContext) -> ValidatorOutput:
    relative = context.test_file_relative()
    if relative is None:
        return skip("No test file to check")
    resolver = context.services.resolver
    test_type = resolver.detect_test_type(context.manifest)
    pattern = resolver.get_convention(test_type)
    details = {"testType": test_type, "testFile": relative}
    if pattern is None:
        return warn(f"No path convention configured for test type '{test_type}'", details=details)
    expected = resolver.canonical_path(relative, context.manifest)
    details["expectedPath"] = expected
    if normalize_path(expected) != normalize_path(relative):
        return fail(
            f"Test file should live at {expected} for a {test_type} change",
            details=details,
            findings=[finding("error", f"Expected {expected}", path=relative)],
        )
    return ok(f"Test file follows the {test_type} convention", details=details)


def _delete_dependency_check(context: ValidationContext) -> ValidatorOutput:
    if context.manifest is None:
        return skip("No manifest provided")
    deleted = {normalize_path(entry.path) for entry in context.manifest.entries_for(ManifestAction.DELETE)}
    if not deleted:
        return ok("No files are deleted")

    declared = context.manifest.declared()
    tracked = [to_posix(path) for path in context.git.list_tracked_paths()]
    roots = python_local_roots(tracked)
    violations: List[dict] = []
    for importer in tracked:
        key = normalize_path(importer)
        if key in deleted or not importer.endswith(SOURCE_EXTENSIONS):
            continue
        source = context.git.read_file(importer)
        if not source:
            continue
        for ref in imports_for(source, importer, roots):
            hits = [candidate for candidate in ref.candidates if normalize_path(candidate) in deleted]
            if hits and key not in declared:
                violations.append({"importer": importer, "deletedFile": hits[0], "import": ref.specifier})
                break

    details = {"deletedFiles": sorted(deleted), "violations": violations}
    if violations:
        return fail(
            f"{len(violations)} file(s) import deleted files but are not in the manifest",
            details=details,
            findings=[
                finding("error", f"Imports deleted {item['deletedFile']}", path=item["importer"])
                for item in violations
            ],
        )
    return ok("Every importer of a deleted file is declared", details=details)


VALIDATORS: tuple[ValidatorDefinition, ...] = (
    ValidatorDefinition(
        code="TOKEN_BUDGET_FIT",
        name="Token Budget Fit",
        description="Task prompt and test fit within the configured context budget.",
        gate=GATE,
        order=1,
        is_hard_block=False,
        evaluate=_token_budget_fit,
    ),
    ValidatorDefinition(
        code="TASK_SCOPE_SIZE",
        name="Task Scope Size",
        description="Manifest declares no more files than the configured maximum.",
        gate=GATE,
        order=2,
        is_hard_block=False,
        evaluate=_task_scope_size,
    ),
    ValidatorDefinition(
        code="TASK_CLARITY_CHECK",
        name="Task Clarity Check",
        description="Task prompt contains no ambiguous wording.",
        gate=GATE,
        order=3,
        is_hard_block=True,
        evaluate=_task_clarity_check,
    ),
    ValidatorDefinition(
        code="SENSITIVE_FILES_LOCK",
        name="Sensitive Files Lock",
        description="Sensitive files may only be touched in danger mode.",
        gate=GATE,
        order=4,
        is_hard_block=True,
        evaluate=_sensitive_files_lock,
    ),
    ValidatorDefinition(
        code="DANGER_MODE_EXPLICIT",
        name="Danger Mode Explicit",
        description="Danger mode is only enabled when sensitive files are declared.",
        gate=GATE,
        order=5,
        is_hard_block=True,
        evaluate=_danger_mode_explicit,
    ),
    ValidatorDefinition(
        code="PATH_CONVENTION",
        name="Path Convention",
        description="Test file lives where the project's convention expects it.",
        gate=GATE,
        order=6,
        is_hard_block=False,
        evaluate=_path_convention,
    ),
    ValidatorDefinition(
        code="DELETE_DEPENDENCY_CHECK",
        name="Delete Dependency Check",
        description="Files importing a deleted file are part of the manifest.",
        gate=GATE,
        order=7,
        is_hard_block=True,
        evaluate=_delete_dependency_check,
    ),
)


__all__ = ["VALIDATORS", "estimate_tokens", "find_terms", "sensitive_files"]
