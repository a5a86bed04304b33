"""Gate 3 (INTEGRITY): nothing else in the project broke."""

from __future__ import annotations

from .base import ValidationContext, ValidatorDefinition, ValidatorOutput, runner_output, skip

GATE = 3


def _full_regression_pass(context: ValidationContext) -> ValidatorOutput:
    result = context.runners.tests.run_all(cwd=context.project_path)
    output = runner_output(
        result,
        passed_message="Full test suite passes",
        failed_message="Full test suite has failures",
    )
    if result.failed_tests is not None:
        output.metrics["failedTests"] = result.failed_tests
    if result.collected is not None:
        output.metrics["collectedTests"] = result.collected
    return output


def _production_build_pass(context: ValidationContext) -> ValidatorOutput:
    if not context.runners.build.configured:
        return skip("No build command configured")
    result = context.runners.build.build(cwd=context.project_path)
    return runner_output(result, passed_message="Production build succeeds", failed_message="Production build failed")


VALIDATORS: tuple[ValidatorDefinition, ...] = (
    ValidatorDefinition(
        code="FULL_REGRESSION_PASS",
        name="Full Regression Pass",
        description="The full test suite passes.",
        gate=GATE,
        order=1,
        is_hard_block=True,
        evaluate=_full_regression_pass,
    ),
    ValidatorDefinition(
        code="PRODUCTION_BUILD_PASS",
        name="Production Build Pass",
        description="The configured production build succeeds.",
        gate=GATE,
        order=2,
        is_hard_block=True,
        evaluate=_production_build_pass,
    ),
)


__all__ = ["VALIDATORS"]
