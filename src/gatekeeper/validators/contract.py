"""Gate 1 (CONTRACT): the generated test is a meaningful, well-formed contract."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import List

from ..manifest import ManifestAction
from ..utils.pathspec import normalize_path, to_posix
from .base import (
    TEST_FILE_NOT_CONFIGURED,
    ValidationContext,
    ValidatorDefinition,
    ValidatorOutput,
    fail,
    finding,
    ok,
    runner_output,
    skip,
    warn,
)
from .imports import imports_for, is_python, python_local_roots
from .sanitization import find_terms

GATE = 1

_ASSERTION_PATTERNS = (
    re.compile(r"\bexpect\s*\("),
    re.compile(r"^\s*assert\b", re.MULTILINE),
    re.compile(r"\bself\.assert\w+\s*\("),
    re.compile(r"\bpytest\.raises\s*\("),
    re.compile(r"\bassert\.\w+\s*\("),
    re.compile(r"\.should\b"),
)
_JS_TEST_NAME_RE = re.compile(r"""\b(?:it|test)(?:\.\w+)?\s*\(\s*(['"`])(.+?)\1""")
_JS_DESCRIBE_RE = re.compile(r"""\bdescribe(?:\.\w+)?\s*\(\s*(['"`])(.+?)\1""")
_PY_TEST_NAME_RE = re.compile(r"^\s*(?:async\s+)?def\s+(test_\w+)\s*\(", re.MULTILINE)
_PY_CLASS_RE = re.compile(r"^\s*class\s+(Test\w*)", re.MULTILINE)

HAPPY_PATH_RE = re.compile(r"success|succeed|should|valid|passes|returns|creates|works|correct", re.IGNORECASE)
SAD_PATH_RE = re.compile(
    r"error|fail|throw|invalid|raise|reject|\bnot\b|missing|empty|denied|wrong|cannot",
    re.IGNORECASE,
)

_DECORATIVE_PATTERNS = (
    (
        re.compile(r"""expect\(\s*(true|false|null|\d+|'[^']*'|"[^"]*")\s*\)\s*\.\s*(?:toBe|toEqual|toStrictEqual)\(\s*\1\s*\)"""),
        "Tautological expect() comparing a literal with itself",
    ),
    (
        re.compile(r"""\b(?:it|test)\s*\(\s*(['"`]).*?\1\s*,\s*(?:async\s*)?(?:\(\s*\)\s*=>|function\s*\(\s*\))\s*\{\s*\}\s*\)"""),
        "Test with an empty body",
    ),
    (re.compile(r"^\s*assert\s+(True|1)\s*$", re.MULTILINE), "assert True is always satisfied"),
    (re.compile(r"^\s*assert\s+(\w+|\d+)\s*==\s*\1\s*$", re.MULTILINE), "Assertion compares a value with itself"),
    (re.compile(r"self\.assertTrue\(\s*True\s*\)"), "assertTrue(True) is always satisfied"),
    (
        re.compile(
            r"^[ \t]*def\s+test_\w+\s*\([^)]*\)\s*(?:->\s*[^:]+)?:\s*\n(?:[ \t]*(?:#.*)?\n)*[ \t]+(?:pass|\.\.\.)\s*$",
            re.MULTILINE,
        ),
        "Test function with an empty body",
    ),
)

_STOPWORDS = frozenset(
    """
    a an the and or but if then else when with without for from into onto this that these those
    should must will would could can make makes made add adds added use uses using new file files
    test tests testing it its be is are was were been being have has had do does did to of in on
    at by as so not no yes all any each every some such than too very just also only
    """.split()
)


def extract_test_names(source: str) -> List[str]:
    names = [match.group(2) for match in _JS_TEST_NAME_RE.finditer(source)]
    names.extend(match.group(1) for match in _PY_TEST_NAME_RE.finditer(source))
    return names


def _words(text: str) -> set[str]:
    tokens = re.findall(r"[a-z][a-z0-9]+", re.sub(r"([a-z])([A-Z])", r"\1 \2", text).replace("_", " ").lower())
    return {token for token in tokens if len(token) >= 4 and token not in _STOPWORDS}


def _missing_test_file(context: ValidationContext) -> ValidatorOutput | None:
    if not context.test_file_path:
        return fail(TEST_FILE_NOT_CONFIGURED)
    if context.test_file_relative() is None:
        return fail(f"Test file is outside the project: {context.test_file_path}")
    if context.read_test_file() is None:
        return fail(f"Test file not found: {context.test_file_relative()}")
    return None


def _test_syntax_valid(context: ValidationContext) -> ValidatorOutput:
    problem = _missing_test_file(context)
    if problem is not None:
        return problem
    relative = context.test_file_relative()
    result = context.runners.compiler.compile([relative], cwd=context.project_path)
    return runner_output(
        result,
        passed_message="Test file compiles",
        failed_message=f"Test file {relative} does not compile",
    )


def _test_has_assertions(context: ValidationContext) -> ValidatorOutput:
    problem = _missing_test_file(context)
    if problem is not None:
        return problem
    source = context.read_test_file() or ""
    count = sum(len(pattern.findall(source)) for pattern in _ASSERTION_PATTERNS)
    metrics = {"assertionCount": count}
    if count == 0:
        return fail("Test file contains no assertions", metrics=metrics)
    return ok(f"Test file contains {count} assertion(s)", metrics=metrics)


def _test_covers_happy_and_sad_path(context: ValidationContext) -> ValidatorOutput:
    problem = _missing_test_file(context)
    if problem is not None:
        return problem
    names = extract_test_names(context.read_test_file() or "")
    if not names:
        return fail("No test cases found in test file")
    readable = [name.replace("_", " ") for name in names]
    happy = [name for name in readable if HAPPY_PATH_RE.search(name)]
    sad = [name for name in readable if SAD_PATH_RE.search(name)]
    details = {"testNames": names, "happyPathTests": happy, "sadPathTests": sad}
    missing = []
    if not happy:
        missing.append("happy path")
    if not sad:
        missing.append("sad path")
    if missing:
        return fail(f"Tests do not cover the {' or '.join(missing)}", details=details)
    return ok(
        f"Tests cover the happy path ({len(happy)}) and the sad path ({len(sad)})",
        details=details,
    )


def _no_decorative_tests(context: ValidationContext) -> ValidatorOutput:
    problem = _missing_test_file(context)
    if problem is not None:
        return problem
    source = context.read_test_file() or ""
    relative = context.test_file_relative()
    issues = []
    for pattern, label in _DECORATIVE_PATTERNS:
        for match in pattern.finditer(source):
            line = source.count("\n", 0, match.start()) + 1
            issues.append({"line": line, "issue": label, "snippet": match.group(0).strip()[:120]})
    issues.sort(key=lambda item: item["line"])
    if issues:
        return fail(
            f"Found {len(issues)} decorative test construct(s)",
            details={"issues": issues},
            findings=[finding("error", item["issue"], path=relative, line=item["line"]) for item in issues],
        )
    return ok("No decorative tests found")


def _no_implicit_files(context: ValidationContext) -> ValidatorOutput:
    found = find_terms(context.task_prompt, context.settings.implicit_file_terms)
    details = {"implicitReferences": found}
    if found:
        return fail(
            f"Task prompt references files implicitly: {', '.join(found)}",
            details=details,
        )
    return ok("Task prompt names its files explicitly", details=details)


def _declared_packages(project_path: Path) -> set[str]:
    package_json = project_path / "package.json"
    if not package_json.is_file():
        return set()
    try:
        data = json.loads(package_json.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return set()
    packages: set[str] = set()
    for section in ("dependencies", "devDependencies", "peerDependencies", "optionalDependencies"):
        packages.update((data.get(section) or {}).keys())
    return packages


def _package_name(specifier: str) -> str:
    parts = specifier.split("/")
    if specifier.startswith("@") and len(parts) > 1:
        return "/".join(parts[:2])
    return parts[0]


def _import_reality_check(context: ValidationContext) -> ValidatorOutput:
    problem = _missing_test_file(context)
    if problem is not None:
        return problem
    relative = context.test_file_relative()
    source = context.read_test_file() or ""

    declared: set[str] = set()
    deleted: set[str] = set()
    if context.manifest is not None:
        for entry in context.manifest.files:
            key = normalize_path(entry.path)
            if entry.normalized_action == ManifestAction.DELETE.value:
                deleted.add(key)
            else:
                declared.add(key)

    tracked = [to_posix(path) for path in context.git.list_tracked_paths()]
    manifest_paths = context.manifest.paths if context.manifest is not None else []
    roots = python_local_roots([*tracked, *manifest_paths])
    packages = _declared_packages(context.project_path)

    invalid: List[dict] = []
    checked = 0
    for ref in imports_for(source, relative, roots):
        if not ref.local:
            if is_python(relative) or not packages:
                continue
            if ref.specifier.startswith("node:"):
                continue
            checked += 1
            if _package_name(ref.specifier) not in packages:
                invalid.append({"import": ref.specifier, "reason": "package not declared in package.json"})
            continue
        checked += 1
        keys = [normalize_path(candidate) for candidate in ref.candidates]
        if any(key in deleted for key in keys):
            invalid.append({"import": ref.specifier, "reason": "imports a file the manifest deletes"})
            continue
        exists = any((context.project_path / candidate).exists() for candidate in ref.candidates)
        if exists or any(key in declared for key in keys):
            continue
        invalid.append({"import": ref.specifier, "reason": "no such file in project or manifest"})

    details = {"checkedImports": checked, "invalidImports": invalid}
    if invalid:
        return fail(
            f"{len(invalid)} import(s) in the test do not resolve",
            details=details,
            findings=[finding("error", f"{item['import']}: {item['reason']}", path=relative) for item in invalid],
        )
    return ok(f"All {checked} checked import(s) resolve", details=details)


def _test_intent_alignment(context: ValidationContext) -> ValidatorOutput:
    prompt_words = _words(context.task_prompt)
    if not prompt_words:
        return skip("Task prompt has no keywords to compare")
    source = context.read_test_file()
    if source is None:
        return skip("Test file not available")
    descriptions = extract_test_names(source)
    descriptions.extend(match.group(2) for match in _JS_DESCRIBE_RE.finditer(source))
    descriptions.extend(match.group(1) for match in _PY_CLASS_RE.finditer(source))
    test_words = _words(" ".join(descriptions))
    overlap = prompt_words & test_words
    ratio = len(overlap) / len(prompt_words)
    threshold = context.settings.intent_alignment_threshold
    metrics = {"alignmentRatio": round(ratio, 3), "threshold": threshold}
    details = {"promptKeywords": sorted(prompt_words), "matchedKeywords": sorted(overlap)}
    if ratio < threshold:
        return warn(
            f"Test names share {ratio:.0%} of the prompt keywords (threshold {threshold:.0%})",
            details=details,
            metrics=metrics,
        )
    return ok(f"Test names align with the task prompt ({ratio:.0%})", details=details, metrics=metrics)


VALIDATORS: tuple[ValidatorDefinition, ...] = (
    ValidatorDefinition(
        code="TEST_SYNTAX_VALID",
        name="Test Syntax Valid",
        description="Test file compiles.",
        gate=GATE,
        order=1,
        is_hard_block=True,
        evaluate=_test_syntax_valid,
    ),
    ValidatorDefinition(
        code="TEST_HAS_ASSERTIONS",
        name="Test Has Assertions",
        description="Test file contains at least one assertion.",
        gate=GATE,
        order=2,
        is_hard_block=True,
        evaluate=_test_has_assertions,
    ),
    ValidatorDefinition(
        code="TEST_COVERS_HAPPY_AND_SAD_PATH",
        name="Test Covers Happy and Sad Path",
        description="Test names cover both the success and the error path.",
        gate=GATE,
        order=3,
        is_hard_block=True,
        evaluate=_test_covers_happy_and_sad_path,
    ),
    ValidatorDefinition(
        code="NO_DECORATIVE_TESTS",
        name="No Decorative Tests",
        description="Tests are not empty or tautological.",
        gate=GATE,
        order=5,
        is_hard_block=True,
        evaluate=_no_decorative_tests,
    ),
    ValidatorDefinition(
        code="NO_IMPLICIT_FILES",
        name="No Implicit Files",
        description="Task prompt does not refer to unnamed files.",
        gate=GATE,
        order=7,
        is_hard_block=True,
        evaluate=_no_implicit_files,
    ),
    ValidatorDefinition(
        code="IMPORT_REALITY_CHECK",
        name="Import Reality Check",
        description="Project imports of the test resolve to real or declared files.",
        gate=GATE,
        order=8,
        is_hard_block=True,
        evaluate=_import_reality_check,
    ),
    ValidatorDefinition(
        code="TEST_INTENT_ALIGNMENT",
        name="Test Intent Alignment",
        description="Test names share vocabulary with the task prompt.",
        gate=GATE,
        order=9,
        is_hard_block=False,
        evaluate=_test_intent_alignment,
    ),
)


__all__ = ["HAPPY_PATH_RE", "SAD_PATH_RE", "VALIDATORS", "extract_test_names"]
