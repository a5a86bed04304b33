from __future__ import annotations

import subprocess
import sys
import textwrap
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from gatekeeper.manifest import Manifest  # noqa: E402
from gatekeeper.paths import PathResolverService  # noqa: E402
from gatekeeper.settings import GatekeeperSettings  # noqa: E402
from gatekeeper.store.artifacts import ArtifactStore  # noqa: E402
from gatekeeper.tools.runners import RunnerResult, Runners, parse_findings  # noqa: E402
from gatekeeper.tools.vcs import GitRepository  # noqa: E402
from gatekeeper.validators.base import ValidationContext, ValidationServices  # noqa: E402

CALCULATOR_TEST = textwrap.dedent(
    """
    from tiny_app.calculator import add, divide


    def test_add_returns_sum() -> None:
        assert add(2, 3) == 5


    def test_divide_returns_quotient() -> None:
        assert divide(6, 3) == 2


    def test_divide_by_zero_raises_error() -> None:
        import pytest

        with pytest.raises(ZeroDivisionError):
            divide(1, 0)
    """
).lstrip()


IMPLEMENTED_CALCULATOR = textwrap.dedent(
    """
    from __future__ import annotations


    def add(left: int, right: int) -> int:
        return left + right


    def divide(left: int, right: int) -> float:
        if right == 0:
            raise ZeroDivisionError("division by zero")
        return left / right
    """
).lstrip()


def run_git(root: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=root,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


def make_result(exit_code: int = 0, output: str = "", *, command: tuple[str, ...] = ("fake",), **extra: Any) -> RunnerResult:
    if exit_code != 0:
        extra.setdefault("errors", parse_findings(output))
    return RunnerResult(
        command=command,
        cwd=Path("."),
        exit_code=exit_code,
        output=output,
        duration_ms=1,
        **extra,
    )


@dataclass(slots=True)
class FakeTool:
    """Stand-in for the compile, lint, build and setup runners."""

    result: RunnerResult = field(default_factory=make_result)
    configured: bool = True
    error: Exception | None = None
    calls: List[dict] = field(default_factory=list)

    def _invoke(self, **call: Any) -> RunnerResult:
        self.calls.append(call)
        if self.error is not None:
            raise self.error
        return self.result

    def compile(self, paths=None, *, cwd=None) -> RunnerResult:
        return self._invoke(paths=paths, cwd=cwd)

    def lint(self, paths, *, cwd=None) -> RunnerResult:
        return self._invoke(paths=list(paths), cwd=cwd)

    def build(self, *, cwd=None) -> RunnerResult:
        return self._invoke(cwd=cwd)

    def setup(self, cwd) -> RunnerResult | None:
        if not self.configured:
            return None
        return self._invoke(cwd=cwd)


@dataclass(slots=True)
class FakeTestRunner:
    """Scripted test runner; ``single`` decides the outcome per (path, cwd)."""

    __test__ = False

    single: Callable[[str, Path | None], RunnerResult] = lambda path, cwd: make_result()
    suite: RunnerResult = field(default_factory=make_result)
    calls: List[tuple] = field(default_factory=list)

    def run_single(self, test_path: str, *, cwd=None) -> RunnerResult:
        location = Path(cwd) if cwd is not None else None
        self.calls.append(("single", test_path, location))
        return self.single(test_path, location)

    def run_all(self, *, cwd=None) -> RunnerResult:
        self.calls.append(("all", None, Path(cwd) if cwd is not None else None))
        return self.suite


def fake_runners(**overrides: Any) -> Runners:
    parts = {
        "compiler": FakeTool(),
        "lint": FakeTool(),
        "tests": FakeTestRunner(),
        "build": FakeTool(configured=False),
        "setup": FakeTool(configured=False),
    }
    parts.update(overrides)
    return Runners(**parts)


@dataclass(slots=True)
class TinyRepo:
    """Fixture payload representing the synthetic repository under test."""

    root: Path
    base: str

    def git(self, *args: str) -> str:
        return run_git(self.root, *args)

    def write(self, relative: str, content: str) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    def commit_all(self, message: str = "Update tiny repo") -> str:
        self.git("add", "--all")
        self.git("commit", "-m", message)
        return self.git("rev-parse", "HEAD").strip()

    def settings(self, **data: Any) -> GatekeeperSettings:
        return GatekeeperSettings.from_mapping(data, base_dir=self.root)

    def repository(self) -> GitRepository:
        return GitRepository(self.root, worktrees_root=self.root / ".gatekeeper" / "worktrees")

    def context(
        self,
        *,
        manifest: dict | None = None,
        test_file_path: str | None = "tests/test_division.py",
        task_prompt: str = "Add a divide function to the calculator that raises on zero",
        runners: Runners | None = None,
        settings: GatekeeperSettings | None = None,
        **extra: Any,
    ) -> ValidationContext:
        resolved = settings or self.settings()
        services = ValidationServices(
            git=self.repository(),
            runners=runners or fake_runners(),
            resolver=PathResolverService(resolved.conventions, ArtifactStore(self.root / "artifacts")),
        )
        return ValidationContext(
            run_id="run-test",
            project_path=self.root,
            base_ref=extra.pop("base_ref", self.base),
            target_ref=extra.pop("target_ref", "HEAD"),
            task_prompt=task_prompt,
            test_file_path=test_file_path,
            manifest=Manifest.parse(manifest) if manifest is not None else None,
            services=services,
            settings=resolved.validators,
            **extra,
        )


def division_manifest(**changes: Any) -> dict:
    manifest = {
        "files": [
            {"path": "src/tiny_app/calculator.py", "action": "MODIFY", "reason": "add divide"},
            {"path": "tests/test_division.py", "action": "CREATE", "reason": "contract test"},
        ],
        "testFile": "tests/test_division.py",
    }
    manifest.update(changes)
    return manifest


@pytest.fixture()
def tiny_repo(tmp_path: Path) -> TinyRepo:
    """Create a tiny committed git repository with one package and one test."""

    repo_root = (tmp_path / "tiny-repo").resolve()
    repo_root.mkdir()
    run_git(repo_root, "init", "--quiet")
    run_git(repo_root, "symbolic-ref", "HEAD", "refs/heads/main")
    run_git(repo_root, "config", "user.email", "gatekeeper@example.com")
    run_git(repo_root, "config", "user.name", "Gatekeeper Tests")
    run_git(repo_root, "config", "commit.gpgsign", "false")

    repo = TinyRepo(root=repo_root, base="")
    repo.write(".gitignore", "__pycache__/\n.pytest_cache/\n")
    repo.write(
        "src/tiny_app/__init__.py",
        '"""Tiny app package used for gatekeeper tests."""\n',
    )
    repo.write(
        "src/tiny_app/calculator.py",
        textwrap.dedent(
            """
            from __future__ import annotations


            def add(left: int, right: int) -> int:
                return left + right
            """
        ).lstrip(),
    )
    repo.write(
        "tests/conftest.py",
        textwrap.dedent(
            """
            import sys
            from pathlib import Path

            SRC = Path(__file__).resolve().parents[1] / "src"
            if str(SRC) not in sys.path:
                sys.path.insert(0, str(SRC))
            """
        ).lstrip(),
    )
    repo.write(
        "tests/test_calculator.py",
        textwrap.dedent(
            """
            from tiny_app.calculator import add


            def test_add_returns_sum() -> None:
                assert add(2, 3) == 5
            """
        ).lstrip(),
    )
    repo.base = repo.commit_all("Initial tiny repo state")
    return repo


@pytest.fixture()
def implemented_repo(tiny_repo: TinyRepo) -> TinyRepo:
    """The tiny repo with the division change applied in the working tree."""

    tiny_repo.write("src/tiny_app/calculator.py", IMPLEMENTED_CALCULATOR)
    tiny_repo.write("tests/test_division.py", CALCULATOR_TEST)
    return tiny_repo
