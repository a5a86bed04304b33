from __future__ import annotations

import logging
from pathlib import Path

import pytest
from conftest import CALCULATOR_TEST, FakeTestRunner, FakeTool, division_manifest, fake_runners, make_result

from gatekeeper.settings import GatekeeperSettings
from gatekeeper.store.schema import ValidatorStatus
from gatekeeper.validators.base import TEST_FILE_NOT_CONFIGURED
from gatekeeper.validators.red_check import (
    INFRA_FAILURE,
    UNKNOWN,
    VALID_TEST_FAILURE,
    classify_failure,
)
from gatekeeper.validators.registry import get_validator

CODE = "TEST_FAILS_BEFORE_IMPLEMENTATION"


def _red_check(context):
    return get_validator(CODE).evaluate(context)


def _context(repo, tests: FakeTestRunner, **kwargs):
    return repo.context(manifest=division_manifest(), runners=fake_runners(tests=tests, **kwargs.pop("runners", {})), **kwargs)


@pytest.fixture()
def red_patterns(tmp_path):
    return GatekeeperSettings.from_mapping({}, base_dir=tmp_path).validators.red_check


def test_classify_failure_checks_infra_patterns_first(red_patterns) -> None:
    def classify(output: str):
        return classify_failure(
            output,
            infra_patterns=red_patterns.infra_patterns,
            valid_patterns=red_patterns.valid_failure_patterns,
        )

    infra = classify("Error: Cannot find module 'vitest'\nnpm ERR! code 1")
    assert infra.kind == INFRA_FAILURE
    assert infra.matched == "npm ERR!"
    assert classify("bash: VITEST: COMMAND NOT FOUND").kind == INFRA_FAILURE
    assert classify("1 failed, 2 passed in 0.20s").kind == VALID_TEST_FAILURE
    assert classify("Segmentation fault").kind == UNKNOWN


def test_red_check_passes_when_test_fails_in_base_worktree(implemented_repo) -> None:
    seen: list[Path] = []

    def at_base(path: str, cwd: Path | None):
        assert cwd is not None and cwd != implemented_repo.root
        assert (cwd / path).read_text(encoding="utf-8") == CALCULATOR_TEST
        assert "divide" not in (cwd / "src" / "tiny_app" / "calculator.py").read_text(encoding="utf-8")
        seen.append(cwd)
        return make_result(1, "ImportError: cannot import name 'divide'\n1 failed in 0.01s")

    tests = FakeTestRunner(single=at_base)
    result = _red_check(_context(implemented_repo, tests))

    assert result.status is ValidatorStatus.PASSED
    assert result.details["classification"] == VALID_TEST_FAILURE
    assert result.details["isolation"] == "worktree"
    assert result.details["baseRef"] == implemented_repo.base
    assert tests.calls == [("single", "tests/test_division.py", seen[0])]
    assert not seen[0].exists()
    assert implemented_repo.repository().list_worktrees() == [implemented_repo.root]


def test_red_check_rejects_test_that_passes_at_base(implemented_repo) -> None:
    tests = FakeTestRunner(single=lambda path, cwd: make_result(0, "3 passed in 0.01s"))
    result = _red_check(_context(implemented_repo, tests))
    assert result.status is ValidatorStatus.FAILED
    assert "does not discriminate implementation absence" in result.message


def test_red_check_rejects_infrastructure_failures(implemented_repo) -> None:
    tests = FakeTestRunner(single=lambda path, cwd: make_result(127, "sh: vitest: command not found"))
    result = _red_check(_context(implemented_repo, tests))
    assert result.status is ValidatorStatus.FAILED
    assert result.details["classification"] == INFRA_FAILURE
    assert result.details["matchedPattern"] == "command not found"


def test_red_check_timeout_is_an_infrastructure_failure(implemented_repo) -> None:
    tests = FakeTestRunner(single=lambda path, cwd: make_result(124, "", timed_out=True))
    result = _red_check(_context(implemented_repo, tests))
    assert result.status is ValidatorStatus.FAILED
    assert result.details["classification"] == INFRA_FAILURE
    assert result.details["timedOut"] is True


def test_red_check_accepts_unclassified_failure_with_warning(implemented_repo, caplog) -> None:
    tests = FakeTestRunner(single=lambda path, cwd: make_result(1, "Segmentation fault"))
    with caplog.at_level(logging.INFO, logger="gatekeeper.validators.red_check"):
        result = _red_check(_context(implemented_repo, tests))
    assert result.status is ValidatorStatus.PASSED
    assert result.details["classification"] == UNKNOWN
    assert result.findings[0]["type"] == "warning"
    assert "unclassified output" in caplog.text


def test_red_check_setup_failure_skips_test_run(implemented_repo) -> None:
    tests = FakeTestRunner()
    setup = FakeTool(result=make_result(1, "npm ERR! install failed"))
    result = _red_check(_context(implemented_repo, tests, runners={"setup": setup}))
    assert result.status is ValidatorStatus.FAILED
    assert result.details["classification"] == INFRA_FAILURE
    assert tests.calls == []
    assert len(setup.calls) == 1


def test_red_check_without_test_file(tiny_repo) -> None:
    tests = FakeTestRunner()
    unconfigured = _red_check(_context(tiny_repo, tests, test_file_path=None))
    assert unconfigured.message == TEST_FILE_NOT_CONFIGURED

    missing = _red_check(_context(tiny_repo, tests))
    assert missing.status is ValidatorStatus.FAILED
    assert missing.message == "Test file not found: tests/test_division.py"
    assert tests.calls == []


def test_stash_isolation_restores_working_tree(implemented_repo) -> None:
    calculator = implemented_repo.root / "src" / "tiny_app" / "calculator.py"

    def at_base(path: str, cwd: Path | None):
        assert cwd == implemented_repo.root
        assert "divide" not in calculator.read_text(encoding="utf-8")
        assert (cwd / path).read_text(encoding="utf-8") == CALCULATOR_TEST
        return make_result(1, "AssertionError")

    settings = implemented_repo.settings(validators={"red_check": {"isolation": "stash"}})
    result = _red_check(_context(implemented_repo, FakeTestRunner(single=at_base), settings=settings))

    assert result.status is ValidatorStatus.PASSED
    assert result.details["isolation"] == "stash"
    assert "divide" in calculator.read_text(encoding="utf-8")
    assert (implemented_repo.root / "tests" / "test_division.py").read_text(encoding="utf-8") == CALCULATOR_TEST
    assert implemented_repo.repository().current_branch() == "main"


def test_stash_pop_failure_still_reports_result(implemented_repo, caplog) -> None:
    calculator = implemented_repo.root / "src" / "tiny_app" / "calculator.py"

    def dirty_base(path: str, cwd: Path | None):
        calculator.write_text("VALUE = 'left behind by the test run'\n", encoding="utf-8")
        return make_result(1, "AssertionError")

    settings = implemented_repo.settings(validators={"red_check": {"isolation": "stash"}})
    with caplog.at_level(logging.WARNING, logger="gatekeeper.tools.vcs"):
        result = _red_check(_context(implemented_repo, FakeTestRunner(single=dirty_base), settings=settings))

    assert result.status is ValidatorStatus.PASSED
    assert "git stash pop failed" in caplog.text
