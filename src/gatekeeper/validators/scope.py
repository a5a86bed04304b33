"""Scope enforcement: the manifest is the boundary of what a change may touch.

``MANIFEST_FILE_LOCK`` (gate 1) checks the manifest itself and the committed
diff between the base and target refs.  ``DIFF_SCOPE_ENFORCEMENT`` and
``TEST_READ_ONLY_ENFORCEMENT`` (gate 2) check the files that actually changed,
including the working tree when configured, so an implementation cannot slip
in undeclared edits or rewrite existing tests to make them pass.
"""

from __future__ import annotations

from typing import Any, Dict, List

from ..manifest import Manifest, ManifestAction
from ..utils.pathspec import (
    has_test_file_name,
    is_test_file,
    matches_any,
    normalize_path,
    to_posix,
)
from .base import (
    ValidationContext,
    ValidatorDefinition,
    ValidatorOutput,
    fail,
    finding,
    ok,
    warn,
)

_GLOB_CHARS = ("*", "?")
_VAGUE_SEGMENTS = frozenset({"etc", "other", "others", "misc", "various", "stuff", "whatever"})

CREATE_BUT_FILE_EXISTED = "CREATE_BUT_FILE_EXISTED"
CREATE_NOT_CREATED = "CREATE_NOT_CREATED"
MODIFY_BUT_FILE_NOT_EXISTED = "MODIFY_BUT_FILE_NOT_EXISTED"
MODIFY_NOT_MODIFIED = "MODIFY_NOT_MODIFIED"
DELETE_NOT_DELETED = "DELETE_NOT_DELETED"


def _is_vague(path: str) -> bool:
    if "..." in path:
        return True
    return any(segment.split(".", 1)[0].casefold() in _VAGUE_SEGMENTS for segment in to_posix(path).split("/"))


def manifest_issues(manifest: Manifest) -> List[str]:
    """Return structural problems with the declared manifest."""

    issues: List[str] = []
    if not manifest.files:
        return ["Manifest.files cannot be empty"]
    for entry in manifest.files:
        path = entry.path.strip()
        if not path:
            issues.append("Manifest contains an entry with an empty path")
            continue
        if any(char in path for char in _GLOB_CHARS):
            issues.append(f"{path}: glob patterns are not allowed, list each file explicitly")
        if _is_vague(path):
            issues.append(f"{path}: vague references are not allowed")
        if not entry.is_valid_action:
            issues.append(f"{path}: invalid action '{entry.action}' (expected CREATE, MODIFY or DELETE)")

    test_file = (manifest.test_file or "").strip()
    if not test_file:
        issues.append("Manifest.testFile is required")
    else:
        if not has_test_file_name(test_file):
            issues.append(f"{test_file}: testFile must have a .test or .spec extension (or test_*.py)")
        listed = [
            entry
            for entry in manifest.files
            if normalize_path(entry.path) == normalize_path(test_file)
        ]
        if not any(
            entry.normalized_action in {ManifestAction.CREATE.value, ManifestAction.MODIFY.value}
            for entry in listed
        ):
            issues.append(f"{test_file}: testFile must be listed in files with CREATE or MODIFY")
    return issues


def _manifest_file_lock(context: ValidationContext) -> ValidatorOutput:
    if context.manifest is None:
        if context.manifest_error:
            return fail(context.manifest_error)
        return fail("No manifest provided")

    manifest = context.manifest
    metrics = {
        "createCount": len(manifest.entries_for(ManifestAction.CREATE)),
        "modifyCount": len(manifest.entries_for(ManifestAction.MODIFY)),
        "deleteCount": len(manifest.entries_for(ManifestAction.DELETE)),
    }
    issues = manifest_issues(manifest)
    if issues:
        return fail(
            issues[0] if len(issues) == 1 else f"Manifest has {len(issues)} problems",
            details={"issues": issues},
            metrics=metrics,
            findings=[finding("error", issue) for issue in issues],
        )

    declared = manifest.declared()
    ignored = context.settings.diff_scope.ignored_patterns
    diff = [
        to_posix(path)
        for path in context.git.diff_files(context.base_ref, context.target_ref)
        if not matches_any(path, ignored)
    ]
    undeclared = [path for path in diff if normalize_path(path) not in declared]
    details = {"diffFiles": diff, "violations": undeclared}
    if undeclared:
        return fail(
            f"{len(undeclared)} changed file(s) are not declared in the manifest",
            details=details,
            metrics=metrics,
            findings=[finding("error", "Not declared in manifest", path=path) for path in undeclared],
        )
    return ok(f"Manifest is well-formed and covers all {len(diff)} changed file(s)", details=details, metrics=metrics)


def _exists_after(context: ValidationContext, path: str) -> bool:
    if context.settings.diff_scope.include_working_tree:
        return context.git.file_exists_at(path)
    return context.git.file_exists_at(path, context.target_ref)


def _incomplete_entries(
    context: ValidationContext,
    manifest: Manifest,
    changed: set[str],
    test_key: str | None,
) -> List[Dict[str, Any]]:
    incomplete: List[Dict[str, Any]] = []
    for entry in manifest.files:
        key = normalize_path(entry.path)
        if test_key is not None and key == test_key:
            continue
        action = entry.normalized_action
        path = to_posix(entry.path)
        existed = context.git.file_exists_at(path, context.base_ref)
        if action == ManifestAction.CREATE.value:
            if existed:
                incomplete.append({"path": path, "action": action, "reason": CREATE_BUT_FILE_EXISTED})
            elif key not in changed or not _exists_after(context, path):
                incomplete.append({"path": path, "action": action, "reason": CREATE_NOT_CREATED})
        elif action == ManifestAction.MODIFY.value:
            if not existed:
                incomplete.append({"path": path, "action": action, "reason": MODIFY_BUT_FILE_NOT_EXISTED})
            elif key not in changed:
                incomplete.append({"path": path, "action": action, "reason": MODIFY_NOT_MODIFIED})
        elif action == ManifestAction.DELETE.value:
            if _exists_after(context, path):
                incomplete.append({"path": path, "action": action, "reason": DELETE_NOT_DELETED})
    return incomplete


def overall_health(rate: float, scope_creep: int) -> str:
    if rate >= 1.0 and scope_creep == 0:
        return "PERFECT"
    if rate >= 0.8:
        return "GOOD"
    if rate >= 0.5:
        return "PARTIAL"
    return "POOR"


def _diff_scope_enforcement(context: ValidationContext) -> ValidatorOutput:
    if context.manifest is None:
        return fail("No manifest provided; cannot verify diff scope")

    manifest = context.manifest
    diff = context.actual_diff()
    declared = manifest.declared()
    test_keys = {
        normalize_path(path)
        for path in (context.test_file_relative(), manifest.test_file)
        if path
    }
    test_key = normalize_path(manifest.test_file) if manifest.test_file else None
    changed = {normalize_path(path) for path in diff}

    if diff and context.settings.diff_scope.allow_test_only_diff and changed <= test_keys:
        return ok(
            "Diff only touches the declared test file",
            details={"diffFiles": diff, "violations": [], "incomplete": []},
        )

    scope_creep = [path for path in diff if normalize_path(path) not in declared | test_keys]
    incomplete = _incomplete_entries(context, manifest, changed, test_key)
    implementable = [
        entry for entry in manifest.files if test_key is None or normalize_path(entry.path) != test_key
    ]
    total = len(implementable)
    rate = 1.0 if total == 0 else (total - len(incomplete)) / total
    metrics = {
        "declaredFiles": total,
        "changedFiles": len(diff),
        "scopeCreepCount": len(scope_creep),
        "incompleteCount": len(incomplete),
        "implementationRate": round(rate, 3),
        "overallHealth": overall_health(rate, len(scope_creep)),
    }
    details = {"diffFiles": diff, "violations": scope_creep, "incomplete": incomplete}
    findings = [finding("error", "Changed but not declared in manifest", path=path) for path in scope_creep]
    findings.extend(
        finding("warning", item["reason"], path=item["path"]) for item in incomplete
    )

    if scope_creep:
        return fail(
            f"Scope creep: {len(scope_creep)} file(s) changed outside the manifest",
            details=details,
            metrics=metrics,
            findings=findings,
        )
    if incomplete:
        message = f"Incomplete implementation: {len(incomplete)} declared change(s) missing"
        if context.settings.diff_scope.incomplete_fail_mode == "WARNING":
            return warn(message, details=details, metrics=metrics, findings=findings)
        return fail(message, details=details, metrics=metrics, findings=findings)
    return ok("Diff matches the manifest exactly", details=details, metrics=metrics)


def _test_read_only_enforcement(context: ValidationContext) -> ValidatorOutput:
    allowed = {
        normalize_path(path)
        for path in (
            context.test_file_relative(),
            context.manifest.test_file if context.manifest is not None else None,
        )
        if path
    }
    excluded = context.settings.read_only_excluded_patterns
    diff = context.actual_diff()
    violations = [
        path
        for path in diff
        if is_test_file(path)
        and normalize_path(path) not in allowed
        and not matches_any(path, excluded)
    ]
    details = {"allowedTestFiles": sorted(allowed), "violations": violations}
    if violations:
        return fail(
            f"{len(violations)} existing test file(s) were modified",
            details=details,
            findings=[finding("error", "Test files are read-only", path=path) for path in violations],
        )
    return ok("No existing test files were modified", details=details)


VALIDATORS: tuple[ValidatorDefinition, ...] = (
    ValidatorDefinition(
        code="MANIFEST_FILE_LOCK",
        name="Manifest File Lock",
        description="Manifest is explicit and covers every changed file.",
        gate=1,
        order=6,
        is_hard_block=True,
        evaluate=_manifest_file_lock,
    ),
    ValidatorDefinition(
        code="DIFF_SCOPE_ENFORCEMENT",
        name="Diff Scope Enforcement",
        description="Actual changes match the manifest: no scope creep, nothing missing.",
        gate=2,
        order=1,
        is_hard_block=True,
        evaluate=_diff_scope_enforcement,
    ),
    ValidatorDefinition(
        code="TEST_READ_ONLY_ENFORCEMENT",
        name="Test Read-Only Enforcement",
        description="Only the declared test file may change among test files.",
        gate=2,
        order=2,
        is_hard_block=True,
        evaluate=_test_read_only_enforcement,
    ),
)


__all__ = [
    "CREATE_BUT_FILE_EXISTED",
    "CREATE_NOT_CREATED",
    "DELETE_NOT_DELETED",
    "MODIFY_BUT_FILE_NOT_EXISTED",
    "MODIFY_NOT_MODIFIED",
    "VALIDATORS",
    "manifest_issues",
    "overall_health",
]
