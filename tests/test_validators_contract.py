from __future__ import annotations

import textwrap

from conftest import FakeTool, division_manifest, fake_runners, make_result

from gatekeeper.store.schema import ValidatorStatus
from gatekeeper.validators.base import TEST_FILE_NOT_CONFIGURED
from gatekeeper.validators.contract import extract_test_names
from gatekeeper.validators.registry import get_validator

CONTRACT_CODES = (
    "TEST_SYNTAX_VALID",
    "TEST_HAS_ASSERTIONS",
    "TEST_COVERS_HAPPY_AND_SAD_PATH",
    "NO_DECORATIVE_TESTS",
    "IMPORT_REALITY_CHECK",
)


def _evaluate(code: str, context):
    return get_validator(code).evaluate(context)


def test_missing_test_path_fails_fast(tiny_repo) -> None:
    context = tiny_repo.context(manifest=division_manifest(), test_file_path=None)
    for code in CONTRACT_CODES:
        result = _evaluate(code, context)
        assert result.status is ValidatorStatus.FAILED, code
        assert result.message == TEST_FILE_NOT_CONFIGURED


def test_well_formed_contract_passes(implemented_repo) -> None:
    context = implemented_repo.context(manifest=division_manifest())
    for code in CONTRACT_CODES:
        assert _evaluate(code, context).status is ValidatorStatus.PASSED, code


def test_syntax_check_compiles_only_the_test_file(implemented_repo) -> None:
    compiler = FakeTool(result=make_result(1, "tests/test_division.py:3:1: invalid syntax"))
    context = implemented_repo.context(manifest=division_manifest(), runners=fake_runners(compiler=compiler))
    result = _evaluate("TEST_SYNTAX_VALID", context)
    assert result.status is ValidatorStatus.FAILED
    assert compiler.calls == [{"paths": ["tests/test_division.py"], "cwd": implemented_repo.root}]
    assert result.findings[0]["line"] == 3


def test_assertion_and_coverage_failures(tiny_repo) -> None:
    tiny_repo.write(
        "tests/test_division.py",
        textwrap.dedent(
            """
            from tiny_app.calculator import add


            def test_add_returns_sum():
                add(1, 2)
            """
        ).lstrip(),
    )
    context = tiny_repo.context(manifest=division_manifest())
    assert _evaluate("TEST_HAS_ASSERTIONS", context).status is ValidatorStatus.FAILED
    coverage = _evaluate("TEST_COVERS_HAPPY_AND_SAD_PATH", context)
    assert coverage.status is ValidatorStatus.FAILED
    assert coverage.message == "Tests do not cover the sad path"


def test_extract_test_names_for_python_and_script_sources() -> None:
    script = "describe('Button', () => { it('renders label', () => {}); test.only(\"fails on empty\", () => {}) })"
    assert extract_test_names(script) == ["renders label", "fails on empty"]
    assert extract_test_names("def test_one():\n    pass\nasync def test_two():\n    pass\n") == ["test_one", "test_two"]


def test_decorative_tests_are_reported_with_lines(tiny_repo) -> None:
    tiny_repo.write(
        "tests/test_division.py",
        textwrap.dedent(
            """
            def test_divide_returns_value():
                assert True


            def test_divide_fails_on_zero():
                pass
            """
        ).lstrip(),
    )
    result = _evaluate("NO_DECORATIVE_TESTS", tiny_repo.context(manifest=division_manifest()))
    assert result.status is ValidatorStatus.FAILED
    assert [item["line"] for item in result.details["issues"]] == [2, 5]


def test_no_implicit_files(tiny_repo) -> None:
    context = tiny_repo.context(task_prompt="Add divide and update related files")
    result = _evaluate("NO_IMPLICIT_FILES", context)
    assert result.status is ValidatorStatus.FAILED
    assert result.details["implicitReferences"] == ["related files"]


def test_import_reality_check_flags_unknown_modules(tiny_repo) -> None:
    tiny_repo.write(
        "tests/test_division.py",
        "from tiny_app.missing import divide\n\n\ndef test_divide_returns_value():\n    assert divide(4, 2) == 2\n",
    )
    result = _evaluate("IMPORT_REALITY_CHECK", tiny_repo.context(manifest=division_manifest()))
    assert result.status is ValidatorStatus.FAILED
    assert result.details["invalidImports"][0]["import"] == "tiny_app.missing"


def test_import_reality_check_accepts_manifest_declared_files(tiny_repo) -> None:
    tiny_repo.write(
        "tests/test_division.py",
        "from tiny_app.division import divide\n\n\ndef test_divide_returns_value():\n    assert divide(4, 2) == 2\n",
    )
    manifest = division_manifest()
    manifest["files"].append({"path": "src/tiny_app/division.py", "action": "CREATE", "reason": "new module"})
    result = _evaluate("IMPORT_REALITY_CHECK", tiny_repo.context(manifest=manifest))
    assert result.status is ValidatorStatus.PASSED


def test_script_imports_check_package_json(tiny_repo) -> None:
    tiny_repo.write("package.json", '{"devDependencies": {"vitest": "^1.0.0"}}\n')
    tiny_repo.write("src/Button.tsx", "export const Button = () => null\n")
    tiny_repo.write(
        "src/Button.spec.tsx",
        "import { it, expect } from 'vitest'\nimport { render } from '@testing-library/react'\n"
        "import { Button } from './Button'\n",
    )
    context = tiny_repo.context(test_file_path="src/Button.spec.tsx")
    result = _evaluate("IMPORT_REALITY_CHECK", context)
    assert result.status is ValidatorStatus.FAILED
    assert [item["import"] for item in result.details["invalidImports"]] == ["@testing-library/react"]


def test_intent_alignment_warns_instead_of_failing(implemented_repo) -> None:
    aligned = _evaluate("TEST_INTENT_ALIGNMENT", implemented_repo.context(manifest=division_manifest()))
    assert aligned.status is ValidatorStatus.PASSED

    unrelated = implemented_repo.context(
        manifest=division_manifest(),
        task_prompt="Render localized currency symbols inside invoices",
    )
    result = _evaluate("TEST_INTENT_ALIGNMENT", unrelated)
    assert result.status is ValidatorStatus.WARNING
    assert result.passed is True
