from __future__ import annotations

from pathlib import Path

from conftest import FakeTestRunner, FakeTool, division_manifest, fake_runners, make_result

from gatekeeper.store.schema import ValidatorStatus
from gatekeeper.validators.base import TEST_FILE_NOT_CONFIGURED
from gatekeeper.validators.registry import get_validator


def _evaluate(code: str, context):
    return get_validator(code).evaluate(context)


def test_task_test_runs_in_the_project(implemented_repo) -> None:
    tests = FakeTestRunner(single=lambda path, cwd: make_result(0, "3 passed", failed_tests=0))
    context = implemented_repo.context(manifest=division_manifest(), runners=fake_runners(tests=tests))

    result = _evaluate("TASK_TEST_PASSES", context)

    assert result.status is ValidatorStatus.PASSED
    assert result.details["testFile"] == "tests/test_division.py"
    assert result.metrics["failedTests"] == 0
    assert tests.calls == [("single", "tests/test_division.py", implemented_repo.root)]


def test_task_test_failure_is_reported(implemented_repo) -> None:
    tests = FakeTestRunner(single=lambda path, cwd: make_result(1, "1 failed, 2 passed", failed_tests=1))
    context = implemented_repo.context(manifest=division_manifest(), runners=fake_runners(tests=tests))

    result = _evaluate("TASK_TEST_PASSES", context)

    assert result.status is ValidatorStatus.FAILED
    assert result.message == "Task test fails: tests/test_division.py"
    assert result.metrics["failedTests"] == 1
    assert result.evidence.startswith("$ fake")


def test_task_test_requires_existing_file(tiny_repo) -> None:
    assert _evaluate("TASK_TEST_PASSES", tiny_repo.context(test_file_path=None)).message == TEST_FILE_NOT_CONFIGURED
    missing = _evaluate("TASK_TEST_PASSES", tiny_repo.context())
    assert missing.message == "Test file not found: tests/test_division.py"


def test_strict_compilation_counts_errors(implemented_repo) -> None:
    output = "src/tiny_app/calculator.py:9:5: undefined name 'righ'\nsrc/tiny_app/calculator.py:10:1: bad indent"
    compiler = FakeTool(result=make_result(2, output))
    context = implemented_repo.context(runners=fake_runners(compiler=compiler))

    result = _evaluate("STRICT_COMPILATION", context)

    assert result.status is ValidatorStatus.FAILED
    assert result.metrics["errorCount"] == 2
    assert [item["line"] for item in result.findings] == [9, 10]
    assert compiler.calls == [{"paths": None, "cwd": implemented_repo.root}]


def test_lint_targets_existing_manifest_files(implemented_repo) -> None:
    lint = FakeTool()
    manifest = division_manifest(
        files=[
            {"path": "src/tiny_app/calculator.py", "action": "MODIFY", "reason": "add divide"},
            {"path": "tests/test_division.py", "action": "CREATE", "reason": "contract test"},
            {"path": "src/tiny_app/legacy.py", "action": "DELETE", "reason": "unused"},
        ]
    )
    context = implemented_repo.context(manifest=manifest, runners=fake_runners(lint=lint))

    result = _evaluate("STYLE_CONSISTENCY_LINT", context)

    assert result.status is ValidatorStatus.PASSED
    assert result.details["files"] == ["src/tiny_app/calculator.py", "tests/test_division.py"]
    assert lint.calls[0]["paths"] == ["src/tiny_app/calculator.py", "tests/test_division.py"]


def test_lint_skips_without_command_or_manifest(implemented_repo) -> None:
    unconfigured = implemented_repo.context(
        manifest=division_manifest(),
        runners=fake_runners(lint=FakeTool(configured=False)),
    )
    assert _evaluate("STYLE_CONSISTENCY_LINT", unconfigured).status is ValidatorStatus.SKIPPED
    no_manifest = implemented_repo.context(manifest=None)
    assert _evaluate("STYLE_CONSISTENCY_LINT", no_manifest).message == "No manifest provided"


def test_regression_records_suite_counts(implemented_repo) -> None:
    tests = FakeTestRunner(suite=make_result(1, "1 failed, 3 passed", collected=4, failed_tests=1))
    context = implemented_repo.context(runners=fake_runners(tests=tests))

    result = _evaluate("FULL_REGRESSION_PASS", context)

    assert result.status is ValidatorStatus.FAILED
    assert result.metrics == {"failedTests": 1, "collectedTests": 4}
    assert result.details["collected"] == 4
    assert tests.calls == [("all", None, Path(implemented_repo.root))]


def test_build_skips_when_unconfigured_and_reports_timeouts(implemented_repo) -> None:
    assert _evaluate("PRODUCTION_BUILD_PASS", implemented_repo.context()).message == "No build command configured"

    build = FakeTool(result=make_result(124, "", timed_out=True))
    result = _evaluate("PRODUCTION_BUILD_PASS", implemented_repo.context(runners=fake_runners(build=build)))

    assert result.status is ValidatorStatus.FAILED
    assert result.message.startswith("Production build failed (timed out")
    assert result.details["timedOut"] is True
