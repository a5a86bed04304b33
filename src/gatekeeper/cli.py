"""CLI commands for running and inspecting gatekeeper validation runs."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer

from .manifest import Manifest, ManifestError
from .orchestrator import InvalidRunStateError
from .service import GatekeeperService
from .settings import (
    DEFAULT_CONFIG_NAME,
    ConfigError,
    GatekeeperSettings,
    copy_config_template,
    write_config,
)
from .store.schema import Run, RunResults, RunStatus, ValidatorStatus
from .store.store import RunNotFoundError
from .tools.runners import RunnerError
from .tools.vcs import CommitError, GitError, PushError, ensure_ignored_directory
from .validators.registry import GATES, UnknownGateError, UnknownValidatorError

APP_HELP = "Gate-based validation for declared code changes."

app = typer.Typer(help=APP_HELP)

_CONFIG_OPTION = typer.Option(
    DEFAULT_CONFIG_NAME,
    "--config",
    "-c",
    help="Path to the gatekeeper configuration file.",
)

_STATUS_MARKERS = {
    ValidatorStatus.PASSED: "PASS",
    ValidatorStatus.FAILED: "FAIL",
    ValidatorStatus.WARNING: "WARN",
    ValidatorStatus.SKIPPED: "SKIP",
    ValidatorStatus.RUNNING: "....",
    ValidatorStatus.PENDING: "....",
}

_HANDLED_ERRORS = (
    ConfigError,
    GitError,
    InvalidRunStateError,
    ManifestError,
    RunNotFoundError,
    RunnerError,
    UnknownGateError,
    UnknownValidatorError,
    ValueError,
)


def _configure_logging(level: str, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _error_text(error: Exception) -> str:
    if isinstance(error, KeyError) and error.args:
        return str(error.args[0])
    return str(error)


@contextmanager
def _service(config: str, verbose: bool = False) -> Iterator[GatekeeperService]:
    try:
        settings = GatekeeperSettings.load(Path(config))
    except ConfigError as error:
        typer.echo(f"Error: {error}")
        raise typer.Exit(code=1) from error
    _configure_logging(settings.log_level, verbose)
    service = GatekeeperService.from_settings(settings)
    try:
        yield service
    except PushError as error:
        typer.echo(f"Push failed ({error.kind}): {error}")
        if error.kind == PushError.REMOTE_AHEAD:
            typer.echo("Remote has new commits: pull and retry, or keep the commit local.")
        elif error.kind == PushError.PERMISSION_DENIED:
            typer.echo("Fix the repository credentials before pushing again.")
        raise typer.Exit(code=1) from error
    except CommitError as error:
        typer.echo(f"Commit failed ({error.kind}): {error}")
        raise typer.Exit(code=1) from error
    except _HANDLED_ERRORS as error:
        typer.echo(f"Error: {_error_text(error)}")
        raise typer.Exit(code=1) from error
    finally:
        service.close()


def _render_run(run: Run) -> None:
    typer.echo(f"Run {run.id} [{run.run_type.value}] {run.status.value}")
    if run.parent_run_id:
        typer.echo(f"  rerun of {run.parent_run_id}")
    if run.contract_run_id:
        typer.echo(f"  contract run {run.contract_run_id}")
    if run.bypassed_validators:
        typer.echo(f"  bypassed: {', '.join(run.bypassed_validators)}")
    if run.status in {RunStatus.FAILED, RunStatus.ABORTED}:
        location = f"gate {run.failed_at}" if run.failed_at is not None else "run"
        code = f" {run.failed_validator_code}" if run.failed_validator_code else ""
        typer.echo(f"  stopped at {location}{code}: {run.failure_message}")
    if run.commit_hash:
        typer.echo(f"  commit {run.commit_hash}")


def _render_results(results: RunResults) -> None:
    _render_run(results.run)
    for gate in results.gates:
        typer.echo(
            f"Gate {gate.gate_number} {gate.gate_name}: {gate.status.value}"
            f" ({gate.passed_count} passed, {gate.failed_count} failed,"
            f" {gate.warning_count} warnings, {gate.skipped_count} skipped)"
        )
        for result in results.validators_for_gate(gate.gate_number):
            severity = "hard" if result.is_hard_block else "soft"
            typer.echo(f"  [{_STATUS_MARKERS[result.status]}] {result.code} ({severity}): {result.message}")
            for item in result.findings[:10]:
                location = item.get("path") or ""
                if item.get("line"):
                    location = f"{location}:{item['line']}"
                prefix = f"{location} " if location else ""
                typer.echo(f"        - {prefix}{item.get('message', '')}")


def _exit_for(run: Run) -> None:
    if run.status in {RunStatus.FAILED, RunStatus.ABORTED}:
        raise typer.Exit(code=1)


def _finish(service: GatekeeperService, run: Run) -> None:
    _render_results(service.get_run_results(run.id))
    _exit_for(run)


@app.command()
def init(
    config: str = _CONFIG_OPTION,
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a default configuration file and prepare the data directory."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Config already exists at {config_path}; use --force to overwrite.")
    else:
        write_config(config_path, copy_config_template())
        typer.echo(f"Wrote default configuration to {config_path}")
    settings = GatekeeperSettings.load(config_path)
    ensure_ignored_directory(settings.data_root)
    typer.echo(f"Data directory: {settings.data_root}")


@app.command()
def run(
    config: str = _CONFIG_OPTION,
    manifest: Optional[Path] = typer.Option(None, "--manifest", "-m", help="Manifest JSON file."),
    prompt: str = typer.Option("", "--prompt", "-p", help="Task prompt text."),
    prompt_file: Optional[Path] = typer.Option(None, "--prompt-file", help="Read the task prompt from a file."),
    test_file: Optional[str] = typer.Option(
        None,
        "--test-file",
        "-t",
        help="Declared test file (defaults to the manifest's testFile).",
    ),
    base: str = typer.Option("HEAD", "--base", help="Base ref the change starts from."),
    target: str = typer.Option("HEAD", "--target", help="Target ref holding the change."),
    output_id: Optional[str] = typer.Option(None, "--output-id", help="Artifact folder for generated files."),
    project: Optional[Path] = typer.Option(None, "--project", help="Project root (defaults to project.repo_root)."),
    danger: bool = typer.Option(False, "--danger", help="Allow the manifest to touch sensitive files."),
    bypass: List[str] = typer.Option(None, "--bypass", "-b", help="Validator code to bypass (repeatable)."),
    contract_run: Optional[str] = typer.Option(
        None,
        "--contract-run",
        help="Start an execution run for this passed contract run instead.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Create a run and execute its gates."""
    with _service(config, verbose) as service:
        if contract_run:
            result = service.create_execution_run(contract_run, target_ref=target)
            _finish(service, result)
            return

        manifest_text = manifest.read_text(encoding="utf-8") if manifest else None
        if test_file is None and manifest_text:
            try:
                parsed = Manifest.parse(manifest_text)
            except ManifestError:
                parsed = None
            if parsed is not None:
                test_file = parsed.test_file
        task_prompt = prompt_file.read_text(encoding="utf-8") if prompt_file else prompt
        result = service.create_run(
            project_path=project,
            base_ref=base,
            target_ref=target,
            task_prompt=task_prompt,
            manifest=manifest_text,
            test_file_path=test_file,
            output_id=output_id,
            danger_mode=danger,
            bypassed_validators=bypass or (),
        )
        _finish(service, result)


@app.command()
def results(
    run_id: str = typer.Argument(..., help="Run identifier."),
    config: str = _CONFIG_OPTION,
    as_json: bool = typer.Option(False, "--json", help="Print the raw results as JSON."),
) -> None:
    """Show a run with its gate and validator results."""
    with _service(config) as service:
        payload = service.get_run_results(run_id)
        if as_json:
            typer.echo(payload.model_dump_json(indent=2))
            return
        _render_results(payload)


@app.command()
def rerun(
    run_id: str = typer.Argument(..., help="Run to correct."),
    gate: int = typer.Argument(..., help="Gate number to re-execute."),
    config: str = _CONFIG_OPTION,
) -> None:
    """Re-execute one gate as a new run that inherits the original inputs."""
    with _service(config) as service:
        _finish(service, service.rerun_gate(run_id, gate))


@app.command()
def bypass(
    run_id: str = typer.Argument(..., help="Run to correct."),
    code: str = typer.Argument(..., help="Validator code to bypass."),
    config: str = _CONFIG_OPTION,
) -> None:
    """Bypass a validator and rerun the gate that owns it."""
    with _service(config) as service:
        _finish(service, service.bypass_validator(run_id, code))


@app.command()
def commit(
    run_id: str = typer.Argument(..., help="Passed execution run."),
    message: str = typer.Option(..., "--message", "-m", help="Commit message (at least 10 characters)."),
    config: str = _CONFIG_OPTION,
) -> None:
    """Commit the working tree for a passed execution run."""
    with _service(config) as service:
        updated = service.commit_run(run_id, message)
        typer.echo(f"Committed {updated.commit_hash}")


@app.command()
def push(
    run_id: str = typer.Argument(..., help="Committed execution run."),
    remote: str = typer.Option("origin", "--remote", help="Remote to push to."),
    branch: Optional[str] = typer.Option(None, "--branch", help="Branch to push (defaults to current)."),
    config: str = _CONFIG_OPTION,
) -> None:
    """Push the commit recorded on a run."""
    with _service(config) as service:
        updated = service.push_run(run_id, remote, branch)
        typer.echo(f"Pushed {updated.commit_hash} to {remote}")


@app.command()
def gates() -> None:
    """List the gates and their validators in execution order."""
    for number in sorted(GATES):
        gate = GATES[number]
        typer.echo(f"Gate {gate.number} {gate.name}: {gate.description}")
        for definition in gate.validators:
            severity = "hard" if definition.is_hard_block else "soft"
            typer.echo(f"  {definition.order}. {definition.code} ({severity}) {definition.description}")


if __name__ == "__main__":
    app()
