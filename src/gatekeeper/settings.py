"""Configuration loading for the gatekeeper runtime.

Settings live in a YAML document (``config.yaml`` by default).  Every section is
optional; missing keys fall back to :data:`DEFAULT_CONFIG_TEMPLATE` so a bare
repository can be validated without writing any configuration first.
"""

from __future__ import annotations

import copy
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Sequence

import yaml

DEFAULT_CONFIG_NAME = "config.yaml"
TIMEOUT_EXIT_CODE = 124

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "repo_root": ".",
    },
    "paths": {
        "data": ".gatekeeper",
        "db_path": ".gatekeeper/gatekeeper.sqlite",
        "artifacts": "artifacts",
        "worktrees": ".gatekeeper/worktrees",
    },
    "runners": {
        "compile": ["{python}", "-m", "compileall", "-q", "{paths}"],
        "lint": ["ruff", "check", "{paths}"],
        "test": ["{python}", "-m", "pytest", "-q", "{path}"],
        "test_all": ["{python}", "-m", "pytest", "-q"],
        "build": None,
        "worktree_setup": None,
        "timeouts": {
            "compile": 120,
            "lint": 120,
            "test": 300,
            "build": 600,
            "git": 60,
        },
    },
    "gates": {
        "contract": [0, 1],
        "execution": [2, 3],
        "max_concurrent_runs": 1,
    },
    "validators": {
        "disabled": [],
        "fail_modes": {},
        "sensitive_patterns": [
            ".env",
            ".env.*",
            "**/.env",
            "**/.env.*",
            "*.pem",
            "*.key",
            "**/secrets/**",
            "**/credentials*",
            ".github/workflows/**",
            "Dockerfile",
            "docker-compose*.yml",
        ],
        "ambiguous_terms": [
            "maybe",
            "somehow",
            "something like",
            "if possible",
            "as needed",
            "whatever",
            "tbd",
            "etc.",
            "and so on",
        ],
        "implicit_file_terms": [
            "and other files",
            "related files",
            "all files",
            "any files",
            "other modules",
            "wherever needed",
            "where necessary",
            "across the codebase",
            "throughout the project",
        ],
        "max_manifest_files": 10,
        "token_budget": 12000,
        "intent_alignment_threshold": 0.3,
        "diff_scope": {
            "include_working_tree": True,
            "ignored_patterns": [
                "package-lock.json",
                "yarn.lock",
                "pnpm-lock.yaml",
                "poetry.lock",
                "uv.lock",
                "artifacts/**",
                ".gatekeeper/**",
            ],
            "allow_test_only_diff": True,
            "incomplete_fail_mode": "HARD",
        },
        "test_read_only": {
            "excluded_patterns": ["artifacts/**", ".gatekeeper/**"],
        },
        "red_check": {
            "isolation": "worktree",
            "infra_patterns": [
                "command not found",
                "ENOENT",
                "ERR_MODULE_NOT_FOUND",
                "Cannot find package",
                "npm ERR!",
                "failed to load config",
                "file or directory not found",
                "Test file not found",
                "no tests ran",
                "No test files found",
            ],
            "valid_failure_patterns": [
                r"\d+ failed",
                "AssertionError",
                "assert ",
                "FAILED ",
                "ModuleNotFoundError",
                "ImportError",
                "Cannot find module",
                "is not defined",
                r"FAIL\s+\S+\.(spec|test)\.",
                "✕",
                "×",
            ],
        },
    },
    "conventions": {
        "layout": "tests/{name}",
        "component": "tests/{name}",
        "hook": "tests/{name}",
        "widget": "tests/{name}",
        "lib": "tests/{name}",
    },
    "logging": {
        "level": "INFO",
    },
}


class ConfigError(ValueError):
    """Raised when the configuration file cannot be loaded or is malformed."""


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return data


def _merge(defaults: Mapping[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = copy.deepcopy(dict(defaults))
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _resolve(base: Path, value: str | Path) -> Path:
    candidate = Path(value)
    if not candidate.is_absolute():
        candidate = base / candidate
    return candidate.resolve()


def _command(value: Any) -> List[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        parts = value.split()
        return parts or None
    parts = [str(item) for item in value]
    return parts or None


def _strings(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(item) for item in value)


def _gates(value: Any) -> tuple[int, ...]:
    numbers = sorted({int(item) for item in (value or ())})
    invalid = [number for number in numbers if number not in (0, 1, 2, 3)]
    if invalid:
        raise ConfigError(f"Unknown gate number(s): {invalid}")
    return tuple(numbers)


@dataclass(slots=True)
class RunnerSettings:
    """Command templates and timeouts for the subprocess runners."""

    compile: List[str] | None
    lint: List[str] | None
    test: List[str] | None
    test_all: List[str] | None
    build: List[str] | None = None
    worktree_setup: List[str] | None = None
    timeouts: Dict[str, float] = field(default_factory=dict)

    def timeout(self, name: str) -> float:
        value = self.timeouts.get(name)
        if value is None:
            value = DEFAULT_CONFIG_TEMPLATE["runners"]["timeouts"].get(name, 300)
        return float(value)


@dataclass(slots=True)
class DiffScopeSettings:
    include_working_tree: bool = True
    ignored_patterns: tuple[str, ...] = ()
    allow_test_only_diff: bool = True
    incomplete_fail_mode: str = "HARD"


@dataclass(slots=True)
class RedCheckSettings:
    isolation: str = "worktree"
    infra_patterns: tuple[str, ...] = ()
    valid_failure_patterns: tuple[str, ...] = ()


@dataclass(slots=True)
class ValidatorSettings:
    """Tunables consumed by individual validators."""

    disabled: frozenset[str] = frozenset()
    fail_modes: Dict[str, str] = field(default_factory=dict)
    sensitive_patterns: tuple[str, ...] = ()
    ambiguous_terms: tuple[str, ...] = ()
    implicit_file_terms: tuple[str, ...] = ()
    max_manifest_files: int = 10
    token_budget: int = 12000
    intent_alignment_threshold: float = 0.3
    diff_scope: DiffScopeSettings = field(default_factory=DiffScopeSettings)
    read_only_excluded_patterns: tuple[str, ...] = ()
    red_check: RedCheckSettings = field(default_factory=RedCheckSettings)

    def effective_hard_block(self, code: str, default: bool) -> bool:
        """Apply a ``fail_modes`` override to a validator's static hard-block flag."""

        mode = str(self.fail_modes.get(code, "")).upper()
        if mode == "HARD":
            return True
        if mode == "WARNING":
            return False
        return default


@dataclass(slots=True)
class GatekeeperSettings:
    """Resolved runtime settings."""

    repo_root: Path
    data_root: Path
    db_path: Path
    artifacts_root: Path
    worktrees_root: Path
    runners: RunnerSettings
    validators: ValidatorSettings
    conventions: Dict[str, str]
    contract_gates: tuple[int, ...] = (0, 1)
    execution_gates: tuple[int, ...] = (2, 3)
    max_concurrent_runs: int = 1
    log_level: str = "INFO"
    project_name: str = ""
    config_path: Path | None = None

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any] | None = None,
        *,
        base_dir: Path | str | None = None,
        config_path: Path | None = None,
    ) -> "GatekeeperSettings":
        merged = _merge(DEFAULT_CONFIG_TEMPLATE, data or {})
        base = Path(base_dir or Path.cwd()).resolve()

        project = merged.get("project") or {}
        repo_root = _resolve(base, project.get("repo_root") or ".")

        paths = merged.get("paths") or {}
        data_root = _resolve(repo_root, paths.get("data") or ".gatekeeper")
        db_value = paths.get("db_path")
        db_path = _resolve(repo_root, db_value) if db_value else data_root / "gatekeeper.sqlite"
        artifacts_root = _resolve(repo_root, paths.get("artifacts") or "artifacts")
        worktrees_value = paths.get("worktrees")
        worktrees_root = _resolve(repo_root, worktrees_value) if worktrees_value else data_root / "worktrees"

        runners_cfg = merged.get("runners") or {}
        runners = RunnerSettings(
            compile=_command(runners_cfg.get("compile")),
            lint=_command(runners_cfg.get("lint")),
            test=_command(runners_cfg.get("test")),
            test_all=_command(runners_cfg.get("test_all")),
            build=_command(runners_cfg.get("build")),
            worktree_setup=_command(runners_cfg.get("worktree_setup")),
            timeouts={str(key): float(value) for key, value in (runners_cfg.get("timeouts") or {}).items()},
        )

        validators_cfg = merged.get("validators") or {}
        diff_cfg = validators_cfg.get("diff_scope") or {}
        red_cfg = validators_cfg.get("red_check") or {}
        isolation = str(red_cfg.get("isolation") or "worktree").lower()
        if isolation not in {"worktree", "stash"}:
            raise ConfigError(f"Unsupported red_check isolation: {isolation}")
        incomplete_mode = str(diff_cfg.get("incomplete_fail_mode") or "HARD").upper()
        if incomplete_mode not in {"HARD", "WARNING"}:
            raise ConfigError(f"Unsupported incomplete_fail_mode: {incomplete_mode}")

        validators = ValidatorSettings(
            disabled=frozenset(_strings(validators_cfg.get("disabled"))),
            fail_modes={
                str(code): str(mode).upper()
                for code, mode in (validators_cfg.get("fail_modes") or {}).items()
            },
            sensitive_patterns=_strings(validators_cfg.get("sensitive_patterns")),
            ambiguous_terms=_strings(validators_cfg.get("ambiguous_terms")),
            implicit_file_terms=_strings(validators_cfg.get("implicit_file_terms")),
            max_manifest_files=int(validators_cfg.get("max_manifest_files") or 10),
            token_budget=int(validators_cfg.get("token_budget") or 12000),
            intent_alignment_threshold=float(validators_cfg.get("intent_alignment_threshold") or 0.3),
            diff_scope=DiffScopeSettings(
                include_working_tree=bool(diff_cfg.get("include_working_tree", True)),
                ignored_patterns=_strings(diff_cfg.get("ignored_patterns")),
                allow_test_only_diff=bool(diff_cfg.get("allow_test_only_diff", True)),
                incomplete_fail_mode=incomplete_mode,
            ),
            read_only_excluded_patterns=_strings(
                (validators_cfg.get("test_read_only") or {}).get("excluded_patterns")
            ),
            red_check=RedCheckSettings(
                isolation=isolation,
                infra_patterns=_strings(red_cfg.get("infra_patterns")),
                valid_failure_patterns=_strings(red_cfg.get("valid_failure_patterns")),
            ),
        )

        gates_cfg = merged.get("gates") or {}
        conventions = {
            str(key): str(value)
            for key, value in (merged.get("conventions") or {}).items()
            if value
        }
        logging_cfg = merged.get("logging") or {}

        return cls(
            repo_root=repo_root,
            data_root=data_root,
            db_path=db_path,
            artifacts_root=artifacts_root,
            worktrees_root=worktrees_root,
            runners=runners,
            validators=validators,
            conventions=conventions,
            contract_gates=_gates(gates_cfg.get("contract")),
            execution_gates=_gates(gates_cfg.get("execution")),
            max_concurrent_runs=max(1, int(gates_cfg.get("max_concurrent_runs") or 1)),
            log_level=str(logging_cfg.get("level") or "INFO").upper(),
            project_name=str(project.get("name") or ""),
            config_path=config_path,
        )

    @classmethod
    def load(cls, config_path: Path | str | None = None) -> "GatekeeperSettings":
        """Load settings from ``config_path``; defaults apply when the file is absent."""

        path = Path(config_path or DEFAULT_CONFIG_NAME).resolve()
        if not path.exists():
            return cls.from_mapping({}, base_dir=path.parent)
        return cls.from_mapping(load_config(path), base_dir=path.parent, config_path=path)

    def gates_for(self, run_type: str) -> tuple[int, ...]:
        if str(run_type).upper() == "EXECUTION":
            return self.execution_gates
        return self.contract_gates


def expand_command(
    template: Sequence[str],
    *,
    path: str | None = None,
    paths: Sequence[str] | None = None,
) -> List[str]:
    """Substitute ``{python}``, ``{path}`` and ``{paths}`` placeholders in ``template``."""

    command: List[str] = []
    for token in template:
        if token == "{paths}":
            command.extend(paths or ())
            continue
        if token == "{python}":
            command.append(sys.executable)
            continue
        if "{path}" in token:
            if path is None:
                continue
            command.append(token.replace("{path}", path))
            continue
        command.append(token)
    return command


__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "DiffScopeSettings",
    "GatekeeperSettings",
    "RedCheckSettings",
    "RunnerSettings",
    "TIMEOUT_EXIT_CODE",
    "ValidatorSettings",
    "copy_config_template",
    "expand_command",
    "load_config",
    "write_config",
]
