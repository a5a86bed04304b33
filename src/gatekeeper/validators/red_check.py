"""Red-before-green: the contract test must fail against the base ref.

The declared test file is copied into an isolated checkout of ``base_ref`` (a
detached git worktree by default, or the main working tree behind a stash when
``red_check.isolation`` is ``stash``) and executed there.  A test that passes
before the implementation exists cannot tell implementation presence from
absence, so it is rejected.  A failure is only accepted when its output does
not point at broken infrastructure (missing tooling, missing test file).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from ..tools.runners import RunnerResult
from .base import (
    TEST_FILE_NOT_CONFIGURED,
    ValidationContext,
    ValidatorDefinition,
    ValidatorOutput,
    evidence_from,
    fail,
    finding,
    ok,
)

LOGGER = logging.getLogger(__name__)

VALID_TEST_FAILURE = "VALID_TEST_FAILURE"
INFRA_FAILURE = "INFRA_FAILURE"
UNKNOWN = "UNKNOWN"


@dataclass(slots=True)
class FailureClassification:
    kind: str
    matched: str | None = None


def classify_failure(
    output: str,
    *,
    infra_patterns: Sequence[str],
    valid_patterns: Sequence[str],
) -> FailureClassification:
    """Decide whether a failing test run failed for a test reason or an infrastructure one.

    Infrastructure patterns are checked first: a run that cannot even load the
    test is never evidence of a meaningful red state.
    """

    for pattern in infra_patterns:
        if re.search(pattern, output, re.IGNORECASE):
            return FailureClassification(INFRA_FAILURE, pattern)
    for pattern in valid_patterns:
        if re.search(pattern, output):
            return FailureClassification(VALID_TEST_FAILURE, pattern)
    return FailureClassification(UNKNOWN)


def _run_in_worktree(context: ValidationContext, relative: str, content: bytes) -> RunnerResult | ValidatorOutput:
    with context.git.worktree(context.base_ref) as handle:
        setup = context.runners.setup.setup(handle.path)
        if setup is not None and not setup.passed:
            return fail(
                "Worktree setup failed; cannot run the test at the base ref",
                details={"classification": INFRA_FAILURE, "exitCode": setup.exit_code},
                evidence=evidence_from(setup),
            )
        target = handle.path / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        return context.runners.tests.run_single(relative, cwd=handle.path)


def _run_in_baseline(context: ValidationContext, relative: str, content: bytes) -> RunnerResult:
    with context.git.baseline(context.base_ref) as root:
        target = Path(root) / relative
        previous = target.read_bytes() if target.is_file() else None
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        try:
            return context.runners.tests.run_single(relative, cwd=root)
        finally:
            # Leave the base checkout as it was so the stash pops cleanly.
            if previous is None:
                target.unlink(missing_ok=True)
            else:
                target.write_bytes(previous)


def _test_fails_before_implementation(context: ValidationContext) -> ValidatorOutput:
    if not context.test_file_path:
        return fail(TEST_FILE_NOT_CONFIGURED)
    relative = context.test_file_relative()
    if relative is None:
        return fail(f"Test file is outside the project: {context.test_file_path}")
    source = context.project_path / relative
    if not source.is_file():
        return fail(f"Test file not found: {relative}")

    content = source.read_bytes()
    red_settings = context.settings.red_check
    if red_settings.isolation == "stash":
        outcome = _run_in_baseline(context, relative, content)
    else:
        outcome = _run_in_worktree(context, relative, content)
    if isinstance(outcome, ValidatorOutput):
        return outcome

    result = outcome
    details = {
        "baseRef": context.base_ref,
        "isolation": red_settings.isolation,
        "exitCode": result.exit_code,
        "timedOut": result.timed_out,
    }
    evidence = evidence_from(result)

    if result.timed_out:
        details["classification"] = INFRA_FAILURE
        return fail(
            f"Test run at {context.base_ref} timed out; red state could not be established",
            details=details,
            evidence=evidence,
        )
    if result.passed:
        return fail(
            f"Test passes at {context.base_ref}: it does not discriminate implementation absence",
            details=details,
            evidence=evidence,
            findings=[finding("error", "Test passed before implementation", path=relative)],
        )

    classification = classify_failure(
        result.output,
        infra_patterns=red_settings.infra_patterns,
        valid_patterns=red_settings.valid_failure_patterns,
    )
    details["classification"] = classification.kind
    details["matchedPattern"] = classification.matched
    if classification.kind == INFRA_FAILURE:
        return fail(
            f"Test failed at {context.base_ref} for an infrastructure reason ({classification.matched})",
            details=details,
            evidence=evidence,
            findings=[finding("error", "Infrastructure failure, not a red test", path=relative)],
        )
    findings = []
    if classification.kind == UNKNOWN:
        LOGGER.info("Red check for run %s failed with unclassified output", context.run_id)
        findings.append(finding("warning", "Failure output did not match a known test-failure pattern", path=relative))
    return ok(
        f"Test fails at {context.base_ref} as expected",
        details=details,
        evidence=evidence,
        findings=findings,
    )


VALIDATORS: tuple[ValidatorDefinition, ...] = (
    ValidatorDefinition(
        code="TEST_FAILS_BEFORE_IMPLEMENTATION",
        name="Test Fails Before Implementation",
        description="The contract test fails against the base ref in an isolated checkout.",
        gate=1,
        order=4,
        is_hard_block=True,
        evaluate=_test_fails_before_implementation,
    ),
)


__all__ = [
    "FailureClassification",
    "INFRA_FAILURE",
    "UNKNOWN",
    "VALIDATORS",
    "VALID_TEST_FAILURE",
    "classify_failure",
]
